from __future__ import annotations

import typing as t

import structlog

from batchrelay.providers.base import BaseProvider

log = structlog.get_logger(__name__)

RegistryInitializer = t.Callable[["ProviderRegistry"], None]


class ProviderRegistry:
    """
    Ordered name -> adapter map owned by one orchestrator.

    Registration is expected at startup or through ``initializer``, which runs
    at most once, before the first read or explicit registration, so explicit
    registrations override it. Concurrent registration under the same name is
    last-write-wins.
    """

    def __init__(self, initializer: RegistryInitializer | None = None) -> None:
        self._providers: dict[str, BaseProvider] = {}
        self._initializer = initializer
        self._initialized = initializer is None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        # at most once, even when the initializer raises
        self._initialized = True
        initializer = t.cast(RegistryInitializer, self._initializer)
        log.debug(event="Running deferred provider registration")
        initializer(self)

    def register(self, provider: BaseProvider) -> None:
        self._ensure_initialized()
        replaced = provider.name in self._providers
        self._providers[provider.name] = provider
        log.info(event="Registered batch provider", provider=provider.name, replaced=replaced)

    def get(self, name: str) -> BaseProvider | None:
        self._ensure_initialized()
        return self._providers.get(name)

    def names(self) -> list[str]:
        self._ensure_initialized()
        return list(self._providers)

    def providers(self) -> list[BaseProvider]:
        self._ensure_initialized()
        return list(self._providers.values())
