"""Tests for provider registration, lazy initialization and env configuration."""

import pytest

from batchrelay.api import create_orchestrator
from batchrelay.config import get_default_model_from_env, register_env_providers
from batchrelay.providers import AnthropicProvider, OpenAIProvider
from batchrelay.registry import ProviderRegistry
from tests.mocks.providers import ScriptedProvider, make_requests


def test_registry_without_initializer_is_ready():
    registry = ProviderRegistry()

    assert registry.names() == []
    assert registry.get("anything") is None


def test_initializer_runs_once_on_first_read():
    calls: list[ProviderRegistry] = []

    def initializer(registry: ProviderRegistry) -> None:
        calls.append(registry)
        registry.register(ScriptedProvider(name="lazy"))

    registry = ProviderRegistry(initializer=initializer)
    assert calls == []

    assert registry.names() == ["lazy"]
    assert registry.get("lazy") is not None
    assert len(registry.providers()) == 1
    assert calls == [registry]


def test_failing_initializer_is_not_retried():
    calls = 0

    def initializer(registry: ProviderRegistry) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("bad configuration")

    registry = ProviderRegistry(initializer=initializer)

    with pytest.raises(RuntimeError, match="bad configuration"):
        registry.names()
    assert registry.names() == []
    assert calls == 1


def test_registration_keeps_order_and_last_write_wins():
    registry = ProviderRegistry()
    first_alpha = ScriptedProvider(name="alpha")
    beta = ScriptedProvider(name="beta")
    second_alpha = ScriptedProvider(name="alpha")

    registry.register(first_alpha)
    registry.register(beta)
    registry.register(second_alpha)

    assert registry.names() == ["alpha", "beta"]
    assert registry.get("alpha") is second_alpha


def test_env_providers_follow_api_keys(monkeypatch):
    registry = ProviderRegistry()
    register_env_providers(registry)

    assert registry.names() == ["anthropic", "openai"]
    assert isinstance(registry.get("anthropic"), AnthropicProvider)
    assert isinstance(registry.get("openai"), OpenAIProvider)

    monkeypatch.delenv("ANTHROPIC_API_KEY")
    monkeypatch.setenv("OPENAI_API_KEY", "   ")
    registry = ProviderRegistry()
    register_env_providers(registry)

    assert registry.names() == []


def test_env_model_override(monkeypatch):
    monkeypatch.setenv("BATCHRELAY_OPENAI_MODEL", " gpt-4.1-mini ")
    monkeypatch.setenv("BATCHRELAY_ANTHROPIC_MODEL", "")

    assert get_default_model_from_env("openai") == "gpt-4.1-mini"
    assert get_default_model_from_env("anthropic") is None

    registry = ProviderRegistry()
    register_env_providers(registry)
    assert registry.get("openai").model == "gpt-4.1-mini"
    assert registry.get("anthropic").model == AnthropicProvider.default_model


@pytest.mark.asyncio
async def test_create_orchestrator_registers_lazily(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY")
    orchestrator = create_orchestrator()

    # providers are read from the environment on first use, not at construction
    monkeypatch.setenv("ANTHROPIC_API_KEY", "late-key")

    assert orchestrator.provider_names() == ["anthropic", "openai"]
    assert await orchestrator.is_available("anthropic") is True


@pytest.mark.asyncio
async def test_create_orchestrator_without_keys(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY")
    monkeypatch.delenv("OPENAI_API_KEY")

    orchestrator = create_orchestrator()

    assert await orchestrator.is_available() is False


def test_explicit_registration_runs_initializer_first():
    def initializer(registry: ProviderRegistry) -> None:
        registry.register(ScriptedProvider(name="alpha"))
        registry.register(ScriptedProvider(name="beta"))

    registry = ProviderRegistry(initializer=initializer)
    custom = ScriptedProvider(name="alpha")
    registry.register(custom)

    assert registry.names() == ["alpha", "beta"]
    assert registry.get("alpha") is custom


@pytest.mark.asyncio
async def test_explicit_provider_overrides_env_provider():
    orchestrator = create_orchestrator()
    custom = ScriptedProvider(name="anthropic")
    orchestrator.register_provider(custom)

    job = await orchestrator.submit_batch(make_requests(1))

    assert job.provider_name == "anthropic"
    assert len(custom.submitted) == 1
    assert orchestrator.provider_names() == ["anthropic", "openai"]
