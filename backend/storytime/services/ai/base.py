from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import httpx

from storytime.db.models import AIProviderName
from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.parsing import parse_story_response, validate_story_payload
from storytime.services.ai.types import (
    GenerationContext,
    NormalizedRequest,
    NormalizedResponse,
    ProviderCapabilities,
)

logger = logging.getLogger(__name__)

STORY_SYSTEM_INSTRUCTION = (
    "You are a creative story generator. Always respond with valid JSON containing exactly "
    "these fields: story_text, emoji, and plain_text. Do not include any other text or explanation."
)
VALIDATION_PROMPT = (
    'Return valid JSON with these fields: {"story_text": "Test", "emoji": "🧪", "plain_text": "Test"}'
)
MAX_TEMPERATURE = 2.0
DEFAULT_MAX_OUTPUT_TOKENS = 150

_STATUS_ERRORS: dict[int, AIErrorType] = {
    400: AIErrorType.invalid_request,
    401: AIErrorType.invalid_api_key,
    403: AIErrorType.quota_exceeded,
    429: AIErrorType.rate_limit_exceeded,
}


def _error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else None
    if isinstance(error, str):
        return error
    return None


class ProviderAdapter(ABC):
    """Shared request flow for one generative-text API.

    Subclasses describe the wire format (endpoint, headers, payload, where the
    text and token usage live in the response) and how provider-specific error
    bodies map onto :class:`AIErrorType`. Validation, transport error mapping,
    the parsing cascade and the response invariants live here.
    """

    name: ClassVar[AIProviderName]
    default_model: ClassVar[str]
    supported_models: ClassVar[tuple[str, ...]]
    max_tokens: ClassVar[int]
    default_temperature: ClassVar[float] = 0.7

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        endpoint: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._timeout = timeout_seconds

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.name,
            default_model=self.default_model,
            supported_models=self.supported_models,
            max_tokens=self.max_tokens,
            default_temperature=self.default_temperature,
        )

    def validate_request(self, request: NormalizedRequest) -> None:
        if not request.prompt or not request.prompt.strip():
            raise ProviderError(
                AIErrorType.invalid_request,
                "Prompt is required and cannot be empty",
                provider=self.name,
            )
        if not request.api_key or not request.api_key.strip():
            raise ProviderError(
                AIErrorType.invalid_api_key,
                "API key is required",
                provider=self.name,
            )
        if request.max_tokens is not None and not 1 <= request.max_tokens <= self.max_tokens:
            raise ProviderError(
                AIErrorType.invalid_request,
                f"Max tokens must be between 1 and {self.max_tokens}",
                provider=self.name,
            )
        if request.temperature is not None and not 0 <= request.temperature <= MAX_TEMPERATURE:
            raise ProviderError(
                AIErrorType.invalid_request,
                f"Temperature must be between 0 and {MAX_TEMPERATURE:g}",
                provider=self.name,
            )

    async def generate_story(
        self,
        request: NormalizedRequest,
        context: GenerationContext | None = None,
    ) -> NormalizedResponse:
        self.validate_request(request)
        model = request.model or self.default_model
        max_tokens = request.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS
        temperature = (
            request.temperature if request.temperature is not None else self.default_temperature
        )

        data = await self._post(
            api_key=request.api_key,
            model=model,
            payload=self.build_payload(
                prompt=request.prompt,
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
            ),
        )

        try:
            text = self.extract_text(data)
            tokens_used = self.extract_tokens(data)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ProviderError(
                AIErrorType.parsing_error,
                f"Unexpected {self.name} response shape",
                provider=self.name,
            ) from exc
        if not text:
            raise ProviderError(
                AIErrorType.parsing_error,
                f"No text content in {self.name} response",
                provider=self.name,
            )

        payload = validate_story_payload(
            parse_story_response(text, provider=self.name),
            provider=self.name,
        )
        resolved_model = data.get("model") if isinstance(data.get("model"), str) else None
        return NormalizedResponse(
            story_text=payload.story_text,
            emoji=payload.emoji,
            plain_text=payload.plain_text,
            model=resolved_model or model,
            provider=self.name,
            tokens_used=tokens_used,
        )

    async def validate_api_key(self, api_key: str) -> bool:
        request = NormalizedRequest(
            prompt=VALIDATION_PROMPT,
            api_key=api_key,
            max_tokens=50,
            temperature=0.1,
        )
        try:
            self.validate_request(request)
            await self._post(
                api_key=api_key,
                model=self.default_model,
                payload=self.build_payload(
                    prompt=request.prompt,
                    model=self.default_model,
                    max_tokens=50,
                    temperature=0.1,
                ),
            )
        except ProviderError as exc:
            if exc.kind is not AIErrorType.invalid_api_key:
                logger.warning("%s key validation hit a non-auth error: %s", self.name, exc)
            return False
        return True

    async def _post(self, *, api_key: str, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self.endpoint_url(model),
                json=payload,
                headers=self.request_headers(api_key),
                params=self.request_params(api_key),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                AIErrorType.network_error,
                f"{self.name} request timed out",
                provider=self.name,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                AIErrorType.network_error,
                f"Network error contacting {self.name}: {exc}",
                provider=self.name,
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            raise self._http_error(response.status_code, body)

        if not isinstance(body, dict):
            raise ProviderError(
                AIErrorType.parsing_error,
                f"{self.name} returned a non-JSON response",
                provider=self.name,
            )
        if body.get("error"):
            kind = self.classify_error_body(response.status_code, body) or AIErrorType.unknown_error
            raise ProviderError(
                kind,
                f"{self.name} API error: {_error_message(body) or 'unknown'}",
                provider=self.name,
            )
        return body

    def _http_error(self, status_code: int, body: Any) -> ProviderError:
        kind = None
        if isinstance(body, dict):
            kind = self.classify_error_body(status_code, body)
        if kind is None:
            kind = _STATUS_ERRORS.get(status_code, AIErrorType.network_error)
        detail = _error_message(body) or f"HTTP {status_code}"
        return ProviderError(kind, f"{self.name} API error: {detail}", provider=self.name)

    def endpoint_url(self, model: str) -> str:
        return self._endpoint

    def request_params(self, api_key: str) -> dict[str, str] | None:
        return None

    @abstractmethod
    def request_headers(self, api_key: str) -> dict[str, str]: ...

    @abstractmethod
    def build_payload(
        self,
        *,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def extract_text(self, data: dict[str, Any]) -> str | None: ...

    @abstractmethod
    def extract_tokens(self, data: dict[str, Any]) -> int | None: ...

    def classify_error_body(self, status_code: int, body: dict[str, Any]) -> AIErrorType | None:
        return None
