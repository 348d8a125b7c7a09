from batchrelay.providers.anthropic import AnthropicProvider
from batchrelay.providers.base import BaseProvider
from batchrelay.providers.openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
]

# registration order is fallback order when no provider is requested explicitly
PROVIDER_CLASSES: tuple[type[BaseProvider], ...] = (AnthropicProvider, OpenAIProvider)
