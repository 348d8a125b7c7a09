from .api import create_orchestrator as create_orchestrator
from .core import BatchOrchestrator as BatchOrchestrator
from .core import JobRecorder as JobRecorder
from .exceptions import BatchError as BatchError
from .exceptions import BatchTimeoutError as BatchTimeoutError
from .exceptions import BatchValidationError as BatchValidationError
from .exceptions import PersistentPollFailure as PersistentPollFailure
from .exceptions import ProviderTerminalFailure as ProviderTerminalFailure
from .exceptions import TransientPollError as TransientPollError
from .models import BatchJob as BatchJob
from .models import BatchRequest as BatchRequest
from .models import BatchResult as BatchResult
from .models import BatchStatus as BatchStatus
from .models import BatchSubmitOptions as BatchSubmitOptions
from .models import BatchWaitOptions as BatchWaitOptions
from .providers import AnthropicProvider as AnthropicProvider
from .providers import OpenAIProvider as OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BatchError",
    "BatchJob",
    "BatchOrchestrator",
    "BatchRequest",
    "BatchResult",
    "BatchStatus",
    "BatchSubmitOptions",
    "BatchTimeoutError",
    "BatchValidationError",
    "BatchWaitOptions",
    "JobRecorder",
    "OpenAIProvider",
    "PersistentPollFailure",
    "ProviderTerminalFailure",
    "TransientPollError",
    "create_orchestrator",
]
