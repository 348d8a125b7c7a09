"""
Core engine containing the provider-agnostic batch orchestration.

A batch is submitted once, then polled with exponential backoff until the
provider reports a terminal status. Single flaky calls are retried in place;
whole poll cycles that keep failing abort the wait without touching the
remote job; a wall-clock timeout asks the provider to cancel.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import typing as t
from collections import Counter

import structlog

from batchrelay.exceptions import (
    BatchCancelledError,
    BatchExpiredError,
    BatchFailedError,
    BatchTimeoutError,
    BatchValidationError,
    PersistentPollFailure,
    TransientPollError,
)
from batchrelay.models import (
    BatchJob,
    BatchRequest,
    BatchResult,
    BatchStatus,
    BatchSubmitOptions,
    BatchWaitOptions,
)
from batchrelay.providers.base import BaseProvider
from batchrelay.registry import ProviderRegistry
from batchrelay.utils.logging import logging_context

log = structlog.get_logger(__name__)

POLL_RETRY_ATTEMPTS = 3
POLL_RETRY_DELAY_SECONDS = 5.0
MAX_CONSECUTIVE_POLL_FAILURES = 5
# 2**32 poll intervals is far beyond any cap; keeps the float multiplication bounded
_MAX_BACKOFF_EXPONENT = 32

T = t.TypeVar("T")


class JobRecorder(t.Protocol):
    """
    Durable sink for job metadata, used to resume polling after a restart.

    The orchestrator calls ``record`` right after submission and whenever a
    poll observes a new status or new counts.
    """

    async def record(self, job: BatchJob) -> None: ...


class BatchOrchestrator:
    """
    Submit batches to registered providers and wait for their results.

    Each instance owns its provider registry. Many ``submit_and_wait`` calls
    may run concurrently on one instance: all poll state is local to a call.
    """

    def __init__(
        self,
        providers: t.Iterable[BaseProvider] = (),
        *,
        registry: ProviderRegistry | None = None,
        recorder: JobRecorder | None = None,
        sleep: t.Callable[[float], t.Awaitable[t.Any]] = asyncio.sleep,
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the orchestrator.

        Parameters
        ----------
        providers : typing.Iterable[BaseProvider], optional
            Provider adapters registered immediately, in fallback order.
        registry : ProviderRegistry | None, optional
            Registry to use, e.g. one with a deferred initializer.
        recorder : JobRecorder | None, optional
            Sink receiving job snapshots for crash recovery.
        sleep : typing.Callable[[float], typing.Awaitable[typing.Any]], optional
            Coroutine used for every backoff wait.
        clock : typing.Callable[[], float], optional
            Monotonic clock in seconds, used for the wait timeout.
        """
        self._registry = registry if registry is not None else ProviderRegistry()
        for provider in providers:
            self._registry.register(provider)
        self._recorder = recorder
        self._sleep = sleep
        self._clock = clock

    def register_provider(self, provider: BaseProvider) -> None:
        self._registry.register(provider)

    def provider_names(self) -> list[str]:
        return self._registry.names()

    async def _provider_available(self, provider: BaseProvider) -> bool:
        try:
            return await provider.is_available()
        except Exception as error:
            log.warning(
                event="Provider availability check failed",
                provider=provider.name,
                error=str(error),
            )
            return False

    async def is_available(self, provider_name: str | None = None) -> bool:
        """
        Check whether a batch provider can be used.

        Parameters
        ----------
        provider_name : str | None, optional
            Provider to check. When omitted, any registered provider counts.

        Returns
        -------
        bool
            Availability. Never raises.
        """
        try:
            if provider_name is not None:
                provider = self._registry.get(provider_name)
                return provider is not None and await self._provider_available(provider)
            for provider in self._registry.providers():
                if await self._provider_available(provider):
                    return True
            return False
        except Exception as error:
            log.warning(event="Provider registry unavailable", error=str(error))
            return False

    async def _resolve_provider(self, preferred: str | None = None) -> BaseProvider:
        if preferred:
            provider = self._registry.get(preferred)
            if provider is None:
                raise BatchValidationError(
                    f"Batch provider '{preferred}' not registered", provider_name=preferred
                )
            if not await self._provider_available(provider):
                raise BatchValidationError(
                    f"Batch provider '{preferred}' is not available", provider_name=preferred
                )
            return provider

        for provider in self._registry.providers():
            if await self._provider_available(provider):
                return provider
        raise BatchValidationError("No batch provider available")

    @staticmethod
    def _validate_requests(
        requests: t.Sequence[BatchRequest], options: BatchSubmitOptions
    ) -> None:
        if len(requests) == 0:
            raise BatchValidationError("Batch must contain at least one request")
        if len(requests) > options.max_requests_per_batch:
            raise BatchValidationError(
                f"Batch of {len(requests)} requests exceeds maximum of "
                f"{options.max_requests_per_batch}"
            )
        counts = Counter(request.correlation_id for request in requests)
        duplicates = sorted(correlation_id for correlation_id, n in counts.items() if n > 1)
        if duplicates:
            raise BatchValidationError(
                f"Batch contains duplicate correlation ids: {', '.join(duplicates)}"
            )

    async def _submit(
        self, requests: t.Sequence[BatchRequest], options: BatchSubmitOptions
    ) -> tuple[BaseProvider, BatchJob]:
        self._validate_requests(requests, options)
        provider = await self._resolve_provider(options.provider)
        log.info(
            event="Submitting batch",
            provider=provider.name,
            request_count=len(requests),
            agent_name=options.agent_name,
            purpose=options.purpose,
        )
        job = await provider.submit_batch(requests, options)
        if self._recorder is not None:
            await self._recorder.record(job)
        return provider, job

    async def submit_batch(
        self,
        requests: t.Sequence[BatchRequest],
        options: BatchSubmitOptions | None = None,
    ) -> BatchJob:
        """
        Validate and submit a batch without waiting for it.

        Parameters
        ----------
        requests : typing.Sequence[BatchRequest]
            Requests to submit.
        options : BatchSubmitOptions | None, optional
            Provider selection and batch limits.

        Returns
        -------
        BatchJob
            The submitted job.

        Raises
        ------
        BatchValidationError
            For an empty or oversized batch, duplicate correlation ids, or an
            unknown/unavailable provider. Raised before any network call.
        """
        _, job = await self._submit(requests, options or BatchSubmitOptions())
        return job

    async def get_batch_status(
        self, provider_job_id: str, provider_name: str | None = None
    ) -> BatchJob:
        provider = await self._resolve_provider(provider_name)
        return await provider.get_batch_status(provider_job_id)

    async def get_batch_results(
        self, provider_job_id: str, provider_name: str | None = None
    ) -> list[BatchResult]:
        provider = await self._resolve_provider(provider_name)
        return await provider.get_batch_results(provider_job_id)

    async def cancel_batch(self, provider_job_id: str, provider_name: str | None = None) -> None:
        provider = await self._resolve_provider(provider_name)
        await provider.cancel_batch(provider_job_id)

    async def submit_and_wait(
        self,
        requests: t.Sequence[BatchRequest],
        options: BatchWaitOptions | None = None,
    ) -> list[BatchResult]:
        """
        Submit a batch and wait for its results.

        Parameters
        ----------
        requests : typing.Sequence[BatchRequest]
            Requests to submit.
        options : BatchWaitOptions | None, optional
            Submission options plus polling and timeout settings.

        Returns
        -------
        list[BatchResult]
            Results of the completed batch, in provider order.

        Raises
        ------
        BatchValidationError
            If the batch is rejected before submission.
        BatchTimeoutError
            If the job is still running after ``timeout_seconds``.
        PersistentPollFailure
            If ``MAX_CONSECUTIVE_POLL_FAILURES`` poll cycles failed in a row.
        ProviderTerminalFailure
            If the provider reports the job failed, expired or cancelled.
        TransientPollError
            If the results download kept failing after retries.
        """
        options = options or BatchWaitOptions()
        provider, job = await self._submit(requests, options)
        return await self._wait_for_job(provider=provider, job=job, options=options)

    async def wait_for_batch(
        self,
        provider_job_id: str,
        provider_name: str,
        options: BatchWaitOptions | None = None,
    ) -> list[BatchResult]:
        """
        Resume waiting on a previously submitted batch, e.g. after a restart.

        Parameters
        ----------
        provider_job_id : str
            Remote batch identifier.
        provider_name : str
            Provider that owns the batch.
        options : BatchWaitOptions | None, optional
            Polling and timeout settings; submission fields are ignored.

        Returns
        -------
        list[BatchResult]
            Results of the completed batch.
        """
        options = options or BatchWaitOptions()
        provider = await self._resolve_provider(provider_name)
        job = await self._call_with_retries(
            lambda: provider.get_batch_status(provider_job_id),
            operation="status fetch",
            provider=provider,
            provider_job_id=provider_job_id,
        )
        log.info(
            event="Resuming batch wait",
            provider=provider.name,
            provider_job_id=provider_job_id,
            status=job.status,
        )
        results = await self._settle(provider=provider, job=job)
        if results is not None:
            return results
        return await self._wait_for_job(provider=provider, job=job, options=options)

    @staticmethod
    def poll_interval(*, poll_count: int, options: BatchWaitOptions) -> float:
        """Backoff before poll number ``poll_count``: doubling from the initial interval, capped."""
        exponent = min(poll_count, _MAX_BACKOFF_EXPONENT)
        return min(options.poll_interval_seconds * 2**exponent, options.max_poll_interval_seconds)

    async def _call_with_retries(
        self,
        fetch: t.Callable[[], t.Awaitable[T]],
        *,
        operation: str,
        provider: BaseProvider,
        provider_job_id: str,
    ) -> T:
        """
        Run one provider call, retrying with linear backoff.

        Parameters
        ----------
        fetch : typing.Callable[[], typing.Awaitable[T]]
            Provider call to run.
        operation : str
            Call description for logs and errors.
        provider : BaseProvider
            Provider owning the batch.
        provider_job_id : str
            Remote batch identifier.

        Returns
        -------
        T
            The first successful call result.

        Raises
        ------
        TransientPollError
            If the initial call and all ``POLL_RETRY_ATTEMPTS`` retries failed.
        """
        attempts = POLL_RETRY_ATTEMPTS + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            if attempt:
                delay = POLL_RETRY_DELAY_SECONDS * attempt
                log.debug(
                    event="Retrying provider call",
                    operation=operation,
                    retry=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)
            try:
                return await fetch()
            except Exception as error:
                last_error = error
                log.warning(
                    event="Provider call failed",
                    provider=provider.name,
                    provider_job_id=provider_job_id,
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=str(error),
                )
        raise TransientPollError(
            f"Batch {provider_job_id}: {operation} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            provider_name=provider.name,
            provider_job_id=provider_job_id,
        ) from last_error

    async def _cancel_quietly(self, *, provider: BaseProvider, provider_job_id: str) -> None:
        try:
            await provider.cancel_batch(provider_job_id)
        except Exception as error:
            log.warning(
                event="Failed to cancel timed-out batch",
                provider=provider.name,
                provider_job_id=provider_job_id,
                error=str(error),
            )

    async def _notify_progress(self, *, options: BatchWaitOptions, job: BatchJob) -> None:
        if options.on_progress is None:
            return
        outcome = options.on_progress(job)
        if inspect.isawaitable(outcome):
            await outcome

    async def _settle(self, *, provider: BaseProvider, job: BatchJob) -> list[BatchResult] | None:
        """
        Turn a terminal job into results or an error.

        Returns ``None`` while the job is still running.
        """
        context = {"provider_name": provider.name, "provider_job_id": job.provider_job_id}
        if job.status == BatchStatus.COMPLETED:
            return await self._call_with_retries(
                lambda: provider.get_batch_results(job.provider_job_id),
                operation="results fetch",
                provider=provider,
                provider_job_id=job.provider_job_id,
            )
        if job.status == BatchStatus.FAILED:
            raise BatchFailedError(
                f"Batch {job.provider_job_id} failed: "
                f"{job.failed_requests}/{job.total_requests} requests failed",
                status=job.status,
                failed_requests=job.failed_requests,
                total_requests=job.total_requests,
                **context,
            )
        if job.status == BatchStatus.EXPIRED:
            raise BatchExpiredError(
                f"Batch {job.provider_job_id} expired before completion "
                f"({job.completed_requests}/{job.total_requests} completed)",
                status=job.status,
                failed_requests=job.failed_requests,
                total_requests=job.total_requests,
                **context,
            )
        if job.status in (BatchStatus.CANCELLED, BatchStatus.CANCELLING):
            raise BatchCancelledError(
                f"Batch {job.provider_job_id} was cancelled "
                f"({job.completed_requests}/{job.total_requests} completed)",
                status=job.status,
                failed_requests=job.failed_requests,
                total_requests=job.total_requests,
                **context,
            )
        return None

    async def _wait_for_job(
        self,
        *,
        provider: BaseProvider,
        job: BatchJob,
        options: BatchWaitOptions,
    ) -> list[BatchResult]:
        provider_job_id = job.provider_job_id
        total_requests = job.total_requests
        current = job
        start = self._clock()
        poll_count = 0
        consecutive_failures = 0

        with logging_context(provider=provider.name, provider_job_id=provider_job_id):
            log.info(
                event="Waiting for batch",
                total_requests=total_requests,
                poll_interval_seconds=options.poll_interval_seconds,
                max_poll_interval_seconds=options.max_poll_interval_seconds,
                timeout_seconds=options.timeout_seconds,
            )
            while True:
                if self._clock() - start > options.timeout_seconds:
                    log.warning(
                        event="Batch wait timed out, cancelling",
                        timeout_seconds=options.timeout_seconds,
                        completed_requests=current.completed_requests,
                        total_requests=current.total_requests,
                    )
                    await self._cancel_quietly(provider=provider, provider_job_id=provider_job_id)
                    raise BatchTimeoutError(
                        f"Batch {provider_job_id} timed out after {options.timeout_seconds}s "
                        f"({current.completed_requests}/{current.total_requests} completed)",
                        completed_requests=current.completed_requests,
                        total_requests=current.total_requests,
                        timeout_seconds=options.timeout_seconds,
                        provider_name=provider.name,
                        provider_job_id=provider_job_id,
                    )

                interval = self.poll_interval(poll_count=poll_count, options=options)
                await self._sleep(interval)

                try:
                    polled = await self._call_with_retries(
                        lambda: provider.get_batch_status(provider_job_id),
                        operation="status poll",
                        provider=provider,
                        provider_job_id=provider_job_id,
                    )
                except TransientPollError as error:
                    consecutive_failures += 1
                    if consecutive_failures >= MAX_CONSECUTIVE_POLL_FAILURES:
                        log.error(
                            event="Abandoning batch wait after repeated poll failures",
                            consecutive_failures=consecutive_failures,
                        )
                        raise PersistentPollFailure(
                            f"Batch {provider_job_id}: status polling failed "
                            f"{consecutive_failures} consecutive times; remote job left running",
                            consecutive_failures=consecutive_failures,
                            provider_name=provider.name,
                            provider_job_id=provider_job_id,
                        ) from error
                    log.warning(
                        event="Poll cycle failed",
                        consecutive_failures=consecutive_failures,
                        poll_count=poll_count,
                    )
                    poll_count += 1
                    continue

                consecutive_failures = 0
                if polled.total_requests == 0 and total_requests:
                    polled = polled.model_copy(update={"total_requests": total_requests})
                if self._recorder is not None and _observed_change(current, polled):
                    await self._recorder.record(polled)
                current = polled

                await self._notify_progress(options=options, job=current)
                log.info(
                    event="Polled batch status",
                    status=current.status,
                    completed_requests=current.completed_requests,
                    failed_requests=current.failed_requests,
                    total_requests=current.total_requests,
                    poll_count=poll_count,
                    interval_seconds=interval,
                )

                results = await self._settle(provider=provider, job=current)
                if results is not None:
                    log.info(
                        event="Batch completed",
                        elapsed_seconds=round(self._clock() - start, 1),
                        result_count=len(results),
                    )
                    return results
                poll_count += 1


def _observed_change(previous: BatchJob, current: BatchJob) -> bool:
    return (previous.status, previous.completed_requests, previous.failed_requests) != (
        current.status,
        current.completed_requests,
        current.failed_requests,
    )
