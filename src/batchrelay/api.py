import typing as t

from batchrelay.config import register_env_providers
from batchrelay.core import BatchOrchestrator
from batchrelay.registry import ProviderRegistry


def create_orchestrator(**kwargs: t.Any) -> BatchOrchestrator:
    """
    Build an orchestrator whose providers are registered from the environment on first use.

    Parameters
    ----------
    **kwargs : typing.Any
        Forwarded to ``BatchOrchestrator`` (``recorder``, ``sleep``, ``clock``).

    Returns
    -------
    BatchOrchestrator
        Orchestrator with a lazily initialized registry.
    """
    registry = ProviderRegistry(initializer=register_env_providers)
    return BatchOrchestrator(registry=registry, **kwargs)
