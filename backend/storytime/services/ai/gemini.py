from __future__ import annotations

from typing import Any

from storytime.db.models import AIProviderName
from storytime.services.ai.base import ProviderAdapter
from storytime.services.ai.errors import AIErrorType

STORY_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "story_text": {
            "type": "string",
            "description": "The themed story text with emoji",
        },
        "emoji": {
            "type": "string",
            "description": "Single emoji that captures the essence",
        },
        "plain_text": {
            "type": "string",
            "description": "Professional version without theme elements",
        },
    },
    "required": ["story_text", "emoji", "plain_text"],
}

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GeminiAdapter(ProviderAdapter):
    name = AIProviderName.gemini
    default_model = "gemini-1.5-flash"
    supported_models = (
        "gemini-1.5-flash",
        "gemini-1.5-flash-8b",
        "gemini-1.5-pro",
        "gemini-2.0-flash",
    )
    max_tokens = 2048
    default_temperature = 0.7

    def endpoint_url(self, model: str) -> str:
        return f"{self._endpoint.rstrip('/')}/{model}:generateContent"

    def request_params(self, api_key: str) -> dict[str, str] | None:
        return {"key": api_key}

    def request_headers(self, api_key: str) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def build_payload(
        self,
        *,
        prompt: str,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "candidateCount": 1,
                "responseMimeType": "application/json",
                "responseSchema": STORY_RESPONSE_SCHEMA,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
                for category in SAFETY_CATEGORIES
            ],
        }

    def extract_text(self, data: dict[str, Any]) -> str | None:
        candidates = data.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        if not parts:
            return None
        text = parts[0].get("text")
        return text.strip() if isinstance(text, str) else None

    def extract_tokens(self, data: dict[str, Any]) -> int | None:
        metadata = data.get("usageMetadata")
        if isinstance(metadata, dict) and isinstance(metadata.get("totalTokenCount"), int):
            return metadata["totalTokenCount"]
        return None

    def classify_error_body(self, status_code: int, body: dict[str, Any]) -> AIErrorType | None:
        error = body.get("error")
        if not isinstance(error, dict):
            return None
        code = error.get("code") or status_code
        message = str(error.get("message") or "")
        status = str(error.get("status") or "")
        if code == 400 and "API_KEY_INVALID" in f"{message} {error.get('details', '')}":
            return AIErrorType.invalid_api_key
        if code == 429 or status == "RESOURCE_EXHAUSTED":
            return AIErrorType.rate_limit_exceeded
        return None
