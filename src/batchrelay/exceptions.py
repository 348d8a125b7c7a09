"""
Batchrelay error taxonomy.

Every error carries enough identifying context (provider name, provider job
id, request counts) for callers to log or alert on without parsing messages.
"""

from __future__ import annotations


class BatchError(Exception):
    """
    Base class for batch orchestration errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    provider_name : str | None
        Provider that owns the batch, when known.
    provider_job_id : str | None
        Remote batch identifier, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_name: str | None = None,
        provider_job_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_name = provider_name
        self.provider_job_id = provider_job_id


class BatchValidationError(BatchError, ValueError):
    """Raised before any network access for invalid input or provider selection."""


class TransientPollError(BatchError):
    """A single status or results fetch failed after exhausting its retries."""

    def __init__(self, message: str, *, attempts: int, **context: str | None) -> None:
        super().__init__(message, **context)
        self.attempts = attempts


class PersistentPollFailure(BatchError):
    """
    Too many whole poll cycles failed in a row.

    Notes
    -----
    The remote job is left running: only the local polling path is known to
    be broken.
    """

    def __init__(self, message: str, *, consecutive_failures: int, **context: str | None) -> None:
        super().__init__(message, **context)
        self.consecutive_failures = consecutive_failures


class BatchTimeoutError(BatchError, TimeoutError):
    """The wall-clock deadline passed while the job was still running."""

    def __init__(
        self,
        message: str,
        *,
        completed_requests: int,
        total_requests: int,
        timeout_seconds: float,
        **context: str | None,
    ) -> None:
        super().__init__(message, **context)
        self.completed_requests = completed_requests
        self.total_requests = total_requests
        self.timeout_seconds = timeout_seconds


class ProviderTerminalFailure(BatchError):
    """The provider reported a definitive non-successful outcome."""

    def __init__(
        self,
        message: str,
        *,
        status: str,
        failed_requests: int,
        total_requests: int,
        **context: str | None,
    ) -> None:
        super().__init__(message, **context)
        self.status = status
        self.failed_requests = failed_requests
        self.total_requests = total_requests


class BatchFailedError(ProviderTerminalFailure):
    pass


class BatchExpiredError(ProviderTerminalFailure):
    pass


class BatchCancelledError(ProviderTerminalFailure):
    pass
