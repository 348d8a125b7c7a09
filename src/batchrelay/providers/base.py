from __future__ import annotations

import json
import typing as t
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx
import structlog

from batchrelay.models import BatchJob, BatchRequest, BatchResult, BatchSubmitOptions
from batchrelay.utils.api import get_api_key_from_env

log = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 1024
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
_ERROR_BODY_PREVIEW_CHARS = 500
_RESULT_LINE_PREVIEW_CHARS = 100


def _default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)


def timestamp_to_datetime(value: int | float | str | None) -> datetime | None:
    """
    Convert a provider timestamp into an aware ``datetime``.

    Parameters
    ----------
    value : int | float | str | None
        Unix seconds or an ISO 8601 string.

    Returns
    -------
    datetime | None
        Parsed timestamp, ``None`` when the provider sent nothing.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class BaseProvider(ABC):
    """
    Standard interface mapping canonical batch requests to/from a provider Batch API.

    Providers implement:
    - submit_batch: create a provider batch job from canonical requests
    - get_batch_status: translate the provider status payload into a ``BatchJob``
    - get_batch_results: download and parse per-item results
    - cancel_batch: ask the provider to stop the job
    - parse_result_item: map one decoded result line to a ``BatchResult``
    """

    name: str = "base"
    default_base_url: str
    default_model: str

    def __init__(
        self,
        *,
        api_key: str | None = None,
        default_model: str | None = None,
        base_url: str | None = None,
        client_factory: t.Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        """
        Initialize the provider adapter.

        Parameters
        ----------
        api_key : str | None, optional
            Provider API key, falls back to ``<NAME>_API_KEY``.
        default_model : str | None, optional
            Model used when neither the request nor the options set one.
        base_url : str | None, optional
            Provider API base URL override.
        client_factory : typing.Callable[[], httpx.AsyncClient] | None, optional
            Async client factory for provider API calls.
        """
        self.api_key = api_key or get_api_key_from_env(provider=self.name)
        self.model = default_model or self.default_model
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._client_factory = client_factory or _default_client_factory

    async def is_available(self) -> bool:
        """Report whether the provider is configured for use."""
        return bool(self.api_key)

    @abstractmethod
    def build_api_headers(self) -> dict[str, str]:
        """Build authentication and versioning headers for provider API calls."""

    @abstractmethod
    async def submit_batch(
        self,
        requests: t.Sequence[BatchRequest],
        options: BatchSubmitOptions | None = None,
    ) -> BatchJob:
        """Create a provider batch job for ``requests``."""

    @abstractmethod
    async def get_batch_status(self, provider_job_id: str) -> BatchJob:
        """Fetch the current job snapshot from the provider."""

    @abstractmethod
    async def get_batch_results(self, provider_job_id: str) -> list[BatchResult]:
        """Download per-item results of a finished job."""

    @abstractmethod
    async def cancel_batch(self, provider_job_id: str) -> None:
        """Ask the provider to stop the job."""

    @abstractmethod
    def parse_result_item(self, result_item: dict[str, t.Any]) -> BatchResult:
        """Map one decoded result line to a canonical result."""

    def resolve_model(
        self, *, request: BatchRequest, options: BatchSubmitOptions | None
    ) -> str:
        if request.model:
            return request.model
        if options is not None and options.model:
            return options.model
        return self.model

    def build_metadata(self, *, options: BatchSubmitOptions | None) -> dict[str, str]:
        if options is None:
            return {}
        metadata: dict[str, str] = {}
        if options.agent_name:
            metadata["agent_name"] = options.agent_name
        if options.purpose:
            metadata["purpose"] = options.purpose
        return metadata

    async def _request_json(
        self,
        *,
        method: str,
        path: str,
        json_body: dict[str, t.Any] | None = None,
        files: dict[str, t.Any] | None = None,
        data: dict[str, t.Any] | None = None,
    ) -> dict[str, t.Any]:
        """
        Send a provider API request and decode its JSON response.

        Parameters
        ----------
        method : str
            HTTP method.
        path : str
            Path relative to the provider base URL.
        json_body : dict[str, typing.Any] | None, optional
            JSON payload.
        files : dict[str, typing.Any] | None, optional
            Multipart files payload.
        data : dict[str, typing.Any] | None, optional
            Form data payload.

        Returns
        -------
        dict[str, typing.Any]
            Decoded JSON payload.

        Raises
        ------
        httpx.HTTPStatusError
            If the provider answered with an error status.
        """
        url = f"{self.base_url}{path}"
        log.debug(
            event="Sending provider request",
            provider=self.name,
            method=method,
            url=url,
            headers={k: "***" for k in self.build_api_headers().keys()},
        )
        async with self._client_factory() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=self.build_api_headers(),
                json=json_body,
                files=files,
                data=data,
            )
            self._log_error_response(response=response, method=method, url=url)
            response.raise_for_status()
            return response.json()

    async def _download_text(self, *, path: str) -> str:
        url = f"{self.base_url}{path}"
        async with self._client_factory() as client:
            response = await client.get(url=url, headers=self.build_api_headers())
            self._log_error_response(response=response, method="GET", url=url)
            response.raise_for_status()
            return response.text

    def _log_error_response(self, *, response: httpx.Response, method: str, url: str) -> None:
        if not response.is_error:
            return
        log.error(
            event="Provider request failed",
            provider=self.name,
            method=method,
            url=url,
            status_code=response.status_code,
            error_body=response.text[:_ERROR_BODY_PREVIEW_CHARS],
        )

    def parse_result_line(self, *, line: str, provider_job_id: str) -> BatchResult | None:
        """
        Parse a single JSONL result line.

        Parameters
        ----------
        line : str
            Raw result line.
        provider_job_id : str
            Batch identifier, for observability.

        Returns
        -------
        BatchResult | None
            Parsed result, ``None`` for blank, malformed or unmappable lines.
        """
        stripped = line.strip()
        if not stripped:
            return None
        try:
            return self.parse_result_item(result_item=json.loads(stripped))
        except (ValueError, TypeError, KeyError, AttributeError) as error:
            # pydantic.ValidationError and json.JSONDecodeError are both ValueErrors
            log.warning(
                event="Skipping unparseable batch result line",
                provider=self.name,
                provider_job_id=provider_job_id,
                line_preview=stripped[:_RESULT_LINE_PREVIEW_CHARS],
                error=str(error),
            )
            return None

    def parse_result_lines(
        self, *, lines: t.Iterable[str], provider_job_id: str
    ) -> list[BatchResult]:
        results: list[BatchResult] = []
        for line in lines:
            result = self.parse_result_line(line=line, provider_job_id=provider_job_id)
            if result is not None:
                results.append(result)
        return results
