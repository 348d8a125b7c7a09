import typing as t
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

MAX_CORRELATION_ID_LENGTH = 64
DEFAULT_MAX_REQUESTS_PER_BATCH = 5_000


class BatchStatus(StrEnum):
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can leave this status."""
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        BatchStatus.COMPLETED,
        BatchStatus.FAILED,
        BatchStatus.EXPIRED,
        BatchStatus.CANCELLED,
    }
)


class BatchRequest(BaseModel):
    """One independent work item submitted as part of a batch."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(min_length=1, max_length=MAX_CORRELATION_ID_LENGTH)
    system_prompt: str | None = None
    user_prompt: str
    model: str | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class BatchResult(BaseModel):
    """
    Outcome of a single batch request, matched to it by ``correlation_id``.

    ``content`` is set only on success and ``error`` only on failure.
    """

    correlation_id: str
    success: bool
    content: str | None = None
    error: str | None = None
    usage: TokenUsage | None = None

    @model_validator(mode="after")
    def check_outcome_fields(self) -> "BatchResult":
        if self.success:
            if self.content is None:
                raise ValueError("successful result requires content")
            if self.error is not None:
                raise ValueError("successful result cannot carry an error")
        else:
            if self.error is None:
                raise ValueError("failed result requires an error")
            if self.content is not None:
                raise ValueError("failed result cannot carry content")
        return self


class BatchJob(BaseModel):
    """Provider-normalized snapshot of a submitted batch."""

    id: str
    provider_job_id: str
    provider_name: str
    status: BatchStatus
    total_requests: int = Field(ge=0)
    completed_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    submitted_at: datetime
    completed_at: datetime | None = None
    metadata: dict[str, t.Any] | None = None

    @model_validator(mode="after")
    def check_counts(self) -> "BatchJob":
        if self.completed_requests + self.failed_requests > self.total_requests:
            raise ValueError(
                f"completed ({self.completed_requests}) + failed ({self.failed_requests}) "
                f"exceeds total ({self.total_requests})"
            )
        return self


class BatchSubmitOptions(BaseModel):
    provider: str | None = Field(default=None, description="registered provider name to use")
    model: str | None = Field(
        default=None, description="model applied to requests that do not set one"
    )
    max_requests_per_batch: int = Field(default=DEFAULT_MAX_REQUESTS_PER_BATCH, gt=0)
    agent_name: str | None = Field(default=None, description="caller name, for observability")
    purpose: str | None = Field(default=None, description="free-form batch purpose")


ProgressCallback = t.Callable[[BatchJob], t.Awaitable[None] | None]


class BatchWaitOptions(BatchSubmitOptions):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    poll_interval_seconds: float = Field(default=30.0, gt=0)
    max_poll_interval_seconds: float = Field(default=720.0, gt=0)
    timeout_seconds: float = Field(default=3_600.0, gt=0)
    on_progress: ProgressCallback | None = Field(default=None, exclude=True)


batch_request_list_adapter = TypeAdapter(list[BatchRequest])
