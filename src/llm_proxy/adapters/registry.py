from __future__ import annotations

from collections.abc import Iterable

import httpx
import structlog

from ..config import ProxyConfig
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter

log = structlog.get_logger()


class AdapterRegistry:
    """
    Lookup table from provider name to adapter.

    Owns the shared `httpx.AsyncClient` when one is handed in; `aclose()`
    must be called on shutdown.
    """

    def __init__(self, adapters: Iterable[ProviderAdapter] = (), *, client: httpx.AsyncClient | None = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        self._client = client
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if not adapter.name:
            raise ValueError("Adapter must declare a provider name.")
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        return self._adapters[name]

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def build_registry(cfg: ProxyConfig, *, client: httpx.AsyncClient | None = None) -> AdapterRegistry:
    client = client or httpx.AsyncClient(timeout=cfg.upstream_timeout_seconds)
    common = {"client": client, "timeout_seconds": cfg.upstream_timeout_seconds}
    registry = AdapterRegistry(
        [
            OpenAIAdapter(
                api_key=cfg.openai_api_key,
                base_url=cfg.openai_base_url,
                default_model=cfg.openai_model,
                **common,
            ),
            AnthropicAdapter(
                api_key=cfg.anthropic_api_key,
                base_url=cfg.anthropic_base_url,
                default_model=cfg.anthropic_model,
                **common,
            ),
            GeminiAdapter(
                api_key=cfg.gemini_api_key,
                base_url=cfg.gemini_base_url,
                default_model=cfg.gemini_model,
                **common,
            ),
        ],
        client=client,
    )
    missing = [name for name in registry.names() if not registry.get(name).api_key]
    if missing:
        log.warning("provider_keys_missing", providers=missing)
    return registry
