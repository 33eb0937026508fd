from __future__ import annotations

from typing import Any

from storytime.db.models import AIProviderName
from storytime.services.ai.base import STORY_SYSTEM_INSTRUCTION, ProviderAdapter
from storytime.services.ai.errors import AIErrorType

_ERROR_CODES = {
    "invalid_api_key": AIErrorType.invalid_api_key,
    "rate_limit_exceeded": AIErrorType.rate_limit_exceeded,
    "insufficient_quota": AIErrorType.quota_exceeded,
}


class OpenAIAdapter(ProviderAdapter):
    name = AIProviderName.openai
    default_model = "gpt-4o-mini"
    supported_models = (
        "gpt-4o-mini",
        "gpt-4.1-mini",
        "gpt-4.1",
        "gpt-4o",
        "o3-mini",
        "o4-mini",
    )
    max_tokens = 4096
    default_temperature = 0.7

    def request_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }

    def build_payload(
        self,
        *,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": STORY_SYSTEM_INSTRUCTION},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            "top_p": 1,
            "frequency_penalty": 0,
            "presence_penalty": 0,
        }

    def extract_text(self, data: dict[str, Any]) -> str | None:
        choices = data.get("choices") or []
        if not choices:
            return None
        content = choices[0].get("message", {}).get("content")
        return content.strip() if isinstance(content, str) else None

    def extract_tokens(self, data: dict[str, Any]) -> int | None:
        usage = data.get("usage")
        if isinstance(usage, dict) and isinstance(usage.get("total_tokens"), int):
            return usage["total_tokens"]
        return None

    def classify_error_body(self, status_code: int, body: dict[str, Any]) -> AIErrorType | None:
        error = body.get("error")
        if isinstance(error, dict):
            return _ERROR_CODES.get(str(error.get("code") or error.get("type") or ""))
        return None
