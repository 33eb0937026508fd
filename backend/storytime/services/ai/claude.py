from __future__ import annotations

from typing import Any

from storytime.db.models import AIProviderName
from storytime.services.ai.base import ProviderAdapter
from storytime.services.ai.errors import AIErrorType

ANTHROPIC_VERSION = "2023-06-01"
CLAUDE_SYSTEM_INSTRUCTION = (
    "You are a creative story generator. CRITICAL: You MUST respond with ONLY valid JSON "
    "containing exactly these fields: story_text, emoji, and plain_text. Do not include any "
    "explanations, markdown, or text outside the JSON object. The response must be parseable JSON."
)

_ERROR_TYPES = {
    "authentication_error": AIErrorType.invalid_api_key,
    "rate_limit_error": AIErrorType.rate_limit_exceeded,
    "overloaded_error": AIErrorType.rate_limit_exceeded,
}


class ClaudeAdapter(ProviderAdapter):
    name = AIProviderName.claude
    default_model = "claude-3-7-sonnet-20250219"
    supported_models = (
        "claude-3-7-sonnet-20250219",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
    )
    max_tokens = 4096
    default_temperature = 0.7

    def request_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
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
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": CLAUDE_SYSTEM_INSTRUCTION,
            "messages": [{"role": "user", "content": prompt}],
        }

    def extract_text(self, data: dict[str, Any]) -> str | None:
        blocks = data.get("content") or []
        for block in blocks:
            if block.get("type", "text") == "text" and isinstance(block.get("text"), str):
                return block["text"].strip()
        return None

    def extract_tokens(self, data: dict[str, Any]) -> int | None:
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        input_tokens = usage.get("input_tokens") or 0
        output_tokens = usage.get("output_tokens") or 0
        total = input_tokens + output_tokens
        return total or None

    def classify_error_body(self, status_code: int, body: dict[str, Any]) -> AIErrorType | None:
        if status_code == 529:
            return AIErrorType.rate_limit_exceeded
        error = body.get("error")
        if isinstance(error, dict):
            return _ERROR_TYPES.get(str(error.get("type") or ""))
        return None
