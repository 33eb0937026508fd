import asyncio
import json

import httpx
import pytest

from storytime.db.models import AIProviderName
from storytime.services.ai.base import ProviderAdapter
from storytime.services.ai.claude import ANTHROPIC_VERSION, ClaudeAdapter
from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.gemini import GeminiAdapter
from storytime.services.ai.openai import OpenAIAdapter
from storytime.services.ai.types import NormalizedRequest

OPENAI_URL = "https://openai.test/v1/chat/completions"
CLAUDE_URL = "https://anthropic.test/v1/messages"
GEMINI_URL = "https://gemini.test/v1beta/models"

STORY = {
    "story_text": "Hail, Champion! The council of coin gathers at the third bell for the treasury.",
    "emoji": "👑",
    "plain_text": "Budget meeting at 3 PM",
}


def story_request(**overrides) -> NormalizedRequest:
    values = {"prompt": "Transform the budget meeting", "api_key": "sk-test", "max_tokens": 300}
    values.update(overrides)
    return NormalizedRequest(**values)


def openai_body(content: str | None = None) -> dict:
    return {
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"message": {"content": content or json.dumps(STORY)}}],
        "usage": {"total_tokens": 120},
    }


def call_adapter(adapter_cls: type[ProviderAdapter], endpoint: str, handler, request=None):
    async def run():
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as client:
            adapter = adapter_cls(client=client, endpoint=endpoint)
            return await adapter.generate_story(request or story_request())

    return asyncio.run(run())


def provider_error(adapter_cls, endpoint, handler, request=None) -> ProviderError:
    with pytest.raises(ProviderError) as exc_info:
        call_adapter(adapter_cls, endpoint, handler, request)
    return exc_info.value


def test_openai_success_normalizes_response():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=openai_body())

    response = call_adapter(OpenAIAdapter, OPENAI_URL, handler)

    assert response.provider is AIProviderName.openai
    assert response.model == "gpt-4o-mini-2024-07-18"
    assert response.tokens_used == 120
    assert response.emoji == "👑"
    sent = seen[0]
    assert str(sent.url) == OPENAI_URL
    assert sent.headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(sent.content)
    assert payload["model"] == "gpt-4o-mini"
    assert payload["max_tokens"] == 300
    assert payload["response_format"] == {"type": "json_object"}


def test_openai_recovers_fenced_content():
    content = f"```json\n{json.dumps(STORY)}\n```"

    response = call_adapter(
        OpenAIAdapter,
        OPENAI_URL,
        lambda request: httpx.Response(200, json=openai_body(content)),
    )

    assert response.story_text == STORY["story_text"]


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (400, AIErrorType.invalid_request),
        (401, AIErrorType.invalid_api_key),
        (403, AIErrorType.quota_exceeded),
        (429, AIErrorType.rate_limit_exceeded),
        (500, AIErrorType.network_error),
        (503, AIErrorType.network_error),
    ],
)
def test_http_status_mapping(status_code, expected):
    error = provider_error(
        OpenAIAdapter,
        OPENAI_URL,
        lambda request: httpx.Response(status_code, json={"error": {"message": "nope"}}),
    )

    assert error.kind is expected
    assert error.provider == AIProviderName.openai
    assert "nope" in error.message


def test_openai_body_code_overrides_status():
    body = {"error": {"code": "insufficient_quota", "message": "You exceeded your quota"}}

    error = provider_error(
        OpenAIAdapter, OPENAI_URL, lambda request: httpx.Response(429, json=body)
    )

    assert error.kind is AIErrorType.quota_exceeded


def test_error_body_on_success_status_is_classified():
    body = {"error": {"code": "invalid_api_key", "message": "Incorrect API key"}}

    error = provider_error(
        OpenAIAdapter, OPENAI_URL, lambda request: httpx.Response(200, json=body)
    )

    assert error.kind is AIErrorType.invalid_api_key


def test_unknown_error_body_on_success_status():
    error = provider_error(
        OpenAIAdapter,
        OPENAI_URL,
        lambda request: httpx.Response(200, json={"error": {"type": "mystery"}}),
    )

    assert error.kind is AIErrorType.unknown_error


def test_non_json_error_response_uses_status():
    error = provider_error(
        OpenAIAdapter, OPENAI_URL, lambda request: httpx.Response(502, text="Bad gateway")
    )

    assert error.kind is AIErrorType.network_error
    assert "HTTP 502" in error.message


@pytest.mark.parametrize(
    "exc_cls",
    [httpx.ConnectError, httpx.ReadTimeout],
)
def test_transport_failures_are_network_errors(exc_cls):
    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_cls("boom", request=request)

    error = provider_error(OpenAIAdapter, OPENAI_URL, handler)

    assert error.kind is AIErrorType.network_error


def test_missing_text_is_parsing_error():
    body = {"choices": [], "usage": {"total_tokens": 3}}

    error = provider_error(OpenAIAdapter, OPENAI_URL, lambda request: httpx.Response(200, json=body))

    assert error.kind is AIErrorType.parsing_error


def test_short_story_fails_validation():
    content = json.dumps({"story_text": "Tiny", "emoji": "👑", "plain_text": "Meeting"})

    error = provider_error(
        OpenAIAdapter, OPENAI_URL, lambda request: httpx.Response(200, json=openai_body(content))
    )

    assert error.kind is AIErrorType.parsing_error


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"prompt": "  "}, AIErrorType.invalid_request),
        ({"api_key": ""}, AIErrorType.invalid_api_key),
        ({"max_tokens": 0}, AIErrorType.invalid_request),
        ({"max_tokens": 5000}, AIErrorType.invalid_request),
        ({"temperature": 2.5}, AIErrorType.invalid_request),
        ({"temperature": -0.1}, AIErrorType.invalid_request),
    ],
)
def test_request_validation_happens_before_sending(overrides, expected):
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=openai_body())

    error = provider_error(OpenAIAdapter, OPENAI_URL, handler, story_request(**overrides))

    assert error.kind is expected
    assert calls == []


def test_claude_request_shape_and_token_sum():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-7-sonnet-20250219",
                "content": [{"type": "text", "text": json.dumps(STORY)}],
                "usage": {"input_tokens": 80, "output_tokens": 45},
            },
        )

    response = call_adapter(ClaudeAdapter, CLAUDE_URL, handler)

    assert response.provider is AIProviderName.claude
    assert response.tokens_used == 125
    sent = seen[0]
    assert sent.headers["x-api-key"] == "sk-test"
    assert sent.headers["anthropic-version"] == ANTHROPIC_VERSION
    payload = json.loads(sent.content)
    assert payload["system"]
    assert payload["messages"] == [{"role": "user", "content": "Transform the budget meeting"}]


@pytest.mark.parametrize(
    ("status_code", "error_type", "expected"),
    [
        (401, "authentication_error", AIErrorType.invalid_api_key),
        (429, "rate_limit_error", AIErrorType.rate_limit_exceeded),
        (529, "overloaded_error", AIErrorType.rate_limit_exceeded),
    ],
)
def test_claude_error_types(status_code, error_type, expected):
    body = {"type": "error", "error": {"type": error_type, "message": "nope"}}

    error = provider_error(
        ClaudeAdapter, CLAUDE_URL, lambda request: httpx.Response(status_code, json=body)
    )

    assert error.kind is expected


def test_gemini_url_params_and_tokens():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": json.dumps(STORY)}]}}],
                "usageMetadata": {"totalTokenCount": 64},
            },
        )

    response = call_adapter(GeminiAdapter, GEMINI_URL, handler)

    assert response.provider is AIProviderName.gemini
    assert response.model == "gemini-1.5-flash"
    assert response.tokens_used == 64
    sent = seen[0]
    assert sent.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert sent.url.params["key"] == "sk-test"
    payload = json.loads(sent.content)
    assert payload["generationConfig"]["responseMimeType"] == "application/json"
    assert payload["generationConfig"]["maxOutputTokens"] == 300


def test_gemini_invalid_key_in_bad_request():
    body = {
        "error": {
            "code": 400,
            "message": "API key not valid. Please pass a valid API key.",
            "status": "INVALID_ARGUMENT",
            "details": [{"reason": "API_KEY_INVALID"}],
        }
    }

    error = provider_error(
        GeminiAdapter, GEMINI_URL, lambda request: httpx.Response(400, json=body)
    )

    assert error.kind is AIErrorType.invalid_api_key


def test_gemini_resource_exhausted_is_rate_limit():
    body = {"error": {"code": 429, "message": "Quota", "status": "RESOURCE_EXHAUSTED"}}

    error = provider_error(
        GeminiAdapter, GEMINI_URL, lambda request: httpx.Response(429, json=body)
    )

    assert error.kind is AIErrorType.rate_limit_exceeded


def test_gemini_uses_default_max_tokens_when_unset():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": json.dumps(STORY)}]}}]},
        )

    response = call_adapter(GeminiAdapter, GEMINI_URL, handler, story_request(max_tokens=None))

    assert response.tokens_used is None
    assert json.loads(seen[0].content)["generationConfig"]["maxOutputTokens"] == 150


def test_validate_api_key():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == "Bearer sk-good":
            return httpx.Response(200, json=openai_body())
        return httpx.Response(401, json={"error": {"code": "invalid_api_key"}})

    async def run() -> tuple[bool, bool, bool]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            adapter = OpenAIAdapter(client=client, endpoint=OPENAI_URL)
            return (
                await adapter.validate_api_key("sk-good"),
                await adapter.validate_api_key("sk-bad"),
                await adapter.validate_api_key(""),
            )

    assert asyncio.run(run()) == (True, False, False)


def test_capabilities():
    async def run():
        async with httpx.AsyncClient() as client:
            return GeminiAdapter(client=client, endpoint=GEMINI_URL).capabilities()

    capabilities = asyncio.run(run())

    assert capabilities.provider is AIProviderName.gemini
    assert capabilities.max_tokens == 2048
    assert capabilities.default_model in capabilities.supported_models
