from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping

import httpx

from storytime.core.config import Settings
from storytime.db.models import AIProviderName
from storytime.services.ai.base import ProviderAdapter
from storytime.services.ai.claude import ClaudeAdapter
from storytime.services.ai.errors import AIErrorType, ProviderError
from storytime.services.ai.gemini import GeminiAdapter
from storytime.services.ai.openai import OpenAIAdapter
from storytime.services.ai.types import ProviderCapabilities

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], ProviderAdapter]


def default_factories(
    *,
    client: httpx.AsyncClient,
    settings: Settings,
) -> dict[AIProviderName, AdapterFactory]:
    timeout = settings.ai_http_timeout_seconds
    return {
        AIProviderName.openai: lambda: OpenAIAdapter(
            client=client,
            endpoint=settings.openai_api_url,
            timeout_seconds=timeout,
        ),
        AIProviderName.claude: lambda: ClaudeAdapter(
            client=client,
            endpoint=settings.claude_api_url,
            timeout_seconds=timeout,
        ),
        AIProviderName.gemini: lambda: GeminiAdapter(
            client=client,
            endpoint=settings.gemini_api_base_url,
            timeout_seconds=timeout,
        ),
    }


def normalize_provider_id(provider_id: str | AIProviderName) -> AIProviderName:
    try:
        return AIProviderName(str(provider_id).strip().upper())
    except ValueError as exc:
        raise ProviderError(
            AIErrorType.invalid_request,
            f"Unsupported AI provider: {provider_id}",
        ) from exc


class ProviderRegistry:
    """Builds one adapter per provider on first use and hands out the cached instance.

    Adapters carry no per-call state, so the cached instances are shared by every
    concurrent generation task.
    """

    def __init__(self, factories: Mapping[AIProviderName, AdapterFactory]) -> None:
        self._factories = dict(factories)
        self._adapters: dict[AIProviderName, ProviderAdapter] = {}

    @classmethod
    def from_settings(cls, *, client: httpx.AsyncClient, settings: Settings) -> ProviderRegistry:
        return cls(default_factories(client=client, settings=settings))

    def get_adapter(self, provider_id: str | AIProviderName) -> ProviderAdapter:
        name = normalize_provider_id(provider_id)
        adapter = self._adapters.get(name)
        if adapter is not None:
            return adapter

        factory = self._factories.get(name)
        if factory is None:
            raise ProviderError(
                AIErrorType.invalid_request,
                f"Unsupported AI provider: {provider_id}",
            )
        adapter = factory()
        self._adapters[name] = adapter
        logger.debug("Created %s adapter", name)
        return adapter

    def get_capabilities(self, provider_id: str | AIProviderName) -> ProviderCapabilities:
        return self.get_adapter(provider_id).capabilities()

    def providers(self) -> list[AIProviderName]:
        return list(self._factories)

    def is_supported(self, provider_id: str | AIProviderName) -> bool:
        try:
            name = normalize_provider_id(provider_id)
        except ProviderError:
            return False
        return name in self._factories

    async def validate_api_key(self, provider_id: str | AIProviderName, api_key: str) -> bool:
        try:
            adapter = self.get_adapter(provider_id)
        except ProviderError:
            return False
        return await adapter.validate_api_key(api_key)

    async def test_connections(
        self,
        credentials: Iterable[tuple[str | AIProviderName, str]],
    ) -> dict[str, bool]:
        pairs = list(credentials)
        outcomes = await asyncio.gather(
            *(self.validate_api_key(provider_id, api_key) for provider_id, api_key in pairs),
            return_exceptions=True,
        )
        results: dict[str, bool] = {}
        for (provider_id, _), outcome in zip(pairs, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Connection test for %s failed: %s", provider_id, outcome)
                results[str(provider_id)] = False
            else:
                results[str(provider_id)] = outcome
        return results

    def clear(self) -> None:
        self._adapters.clear()
