from __future__ import annotations

import enum


class AIErrorType(enum.StrEnum):
    invalid_api_key = "INVALID_API_KEY"
    rate_limit_exceeded = "RATE_LIMIT_EXCEEDED"
    quota_exceeded = "QUOTA_EXCEEDED"
    network_error = "NETWORK_ERROR"
    parsing_error = "PARSING_ERROR"
    invalid_request = "INVALID_REQUEST"
    unknown_error = "UNKNOWN_ERROR"


class ProviderError(Exception):
    """Normalized failure raised by provider adapters and the registry."""

    def __init__(self, kind: AIErrorType, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.message = message

    def __str__(self) -> str:
        prefix = f"{self.provider} " if self.provider else ""
        return f"{prefix}{self.kind.value}: {self.message}"
