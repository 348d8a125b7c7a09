"""Environment-driven provider configuration."""

import os

import structlog
from dotenv import load_dotenv

from batchrelay.providers import PROVIDER_CLASSES
from batchrelay.registry import ProviderRegistry
from batchrelay.utils.api import get_api_key_from_env

log = structlog.get_logger(__name__)

MODEL_ENV_TEMPLATE = "BATCHRELAY_{provider}_MODEL"


def get_default_model_from_env(provider: str) -> str | None:
    model = os.getenv(MODEL_ENV_TEMPLATE.format(provider=provider.upper()))
    return model.strip() if model and model.strip() else None


def register_env_providers(registry: ProviderRegistry) -> None:
    """
    Register every provider whose API key is configured.

    Parameters
    ----------
    registry : ProviderRegistry
        Registry receiving the providers, in ``PROVIDER_CLASSES`` order.
    """
    load_dotenv()
    for provider_cls in PROVIDER_CLASSES:
        api_key = get_api_key_from_env(provider=provider_cls.name)
        if api_key is None:
            log.debug(event="Skipping unconfigured batch provider", provider=provider_cls.name)
            continue
        registry.register(
            provider_cls(
                api_key=api_key,
                default_model=get_default_model_from_env(provider=provider_cls.name),
            )
        )
