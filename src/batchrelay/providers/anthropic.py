from __future__ import annotations

import typing as t
from datetime import datetime, timezone

import structlog

from batchrelay.models import (
    BatchJob,
    BatchRequest,
    BatchResult,
    BatchStatus,
    BatchSubmitOptions,
    TokenUsage,
)
from batchrelay.providers.base import DEFAULT_MAX_TOKENS, BaseProvider, timestamp_to_datetime

log = structlog.get_logger(__name__)

API_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    """
    Provider adapter for Anthropic's Message Batches API.

    Requests are sent inline in the creation call, status comes from one
    endpoint with aggregate counters, and results are streamed as JSONL
    keyed by batch id.
    """

    name = "anthropic"
    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-haiku-4-5"
    batch_endpoint = "/messages/batches"

    def build_api_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": API_VERSION,
        }

    def build_request_item(
        self, *, request: BatchRequest, options: BatchSubmitOptions | None
    ) -> dict[str, t.Any]:
        params: dict[str, t.Any] = {
            "model": self.resolve_model(request=request, options=options),
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": request.user_prompt}],
        }
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.system_prompt:
            params["system"] = request.system_prompt
        return {"custom_id": request.correlation_id, "params": params}

    async def submit_batch(
        self,
        requests: t.Sequence[BatchRequest],
        options: BatchSubmitOptions | None = None,
    ) -> BatchJob:
        if not requests:
            raise ValueError("Cannot process an empty request batch")

        payload = {
            "requests": [
                self.build_request_item(request=request, options=options) for request in requests
            ]
        }
        log.debug(
            event="Creating inline batch",
            provider=self.name,
            request_count=len(requests),
        )
        response = await self._request_json(
            method="POST", path=self.batch_endpoint, json_body=payload
        )
        job = self.map_batch_response(payload=response, total_requests=len(requests))
        metadata = self.build_metadata(options=options)
        if metadata:
            job = job.model_copy(update={"metadata": metadata})
        log.info(
            event="Created inline batch",
            provider=self.name,
            provider_job_id=job.provider_job_id,
            request_count=len(requests),
        )
        return job

    async def get_batch_status(self, provider_job_id: str) -> BatchJob:
        response = await self._request_json(
            method="GET", path=f"{self.batch_endpoint}/{provider_job_id}"
        )
        counts = response.get("request_counts") or {}
        total = sum(
            int(counts.get(key, 0))
            for key in ("processing", "succeeded", "errored", "canceled", "expired")
        )
        return self.map_batch_response(payload=response, total_requests=total)

    async def get_batch_results(self, provider_job_id: str) -> list[BatchResult]:
        url = f"{self.base_url}{self.batch_endpoint}/{provider_job_id}/results"
        results: list[BatchResult] = []
        async with self._client_factory() as client:
            async with client.stream("GET", url, headers=self.build_api_headers()) as response:
                if response.is_error:
                    await response.aread()
                    self._log_error_response(response=response, method="GET", url=url)
                response.raise_for_status()
                async for line in response.aiter_lines():
                    result = self.parse_result_line(line=line, provider_job_id=provider_job_id)
                    if result is not None:
                        results.append(result)
        log.info(
            event="Downloaded batch results",
            provider=self.name,
            provider_job_id=provider_job_id,
            result_count=len(results),
        )
        return results

    async def cancel_batch(self, provider_job_id: str) -> None:
        await self._request_json(
            method="POST", path=f"{self.batch_endpoint}/{provider_job_id}/cancel"
        )
        log.info(
            event="Requested batch cancellation",
            provider=self.name,
            provider_job_id=provider_job_id,
        )

    def parse_result_item(self, result_item: dict[str, t.Any]) -> BatchResult:
        correlation_id = result_item["custom_id"]
        result = result_item["result"]
        result_type = result.get("type")
        message = result.get("message")
        if result_type == "succeeded" and message:
            text = "".join(
                block.get("text", "")
                for block in message.get("content") or []
                if block.get("type") == "text"
            )
            usage = message.get("usage") or {}
            return BatchResult(
                correlation_id=correlation_id,
                success=True,
                content=text,
                usage=TokenUsage(
                    input_tokens=usage.get("input_tokens", 0),
                    output_tokens=usage.get("output_tokens", 0),
                ),
            )

        # errored items carry {"type": "error", "error": {"type": ..., "message": ...}}
        error = result.get("error") or {}
        if isinstance(error.get("error"), dict):
            error = error["error"]
        return BatchResult(
            correlation_id=correlation_id,
            success=False,
            error=error.get("message") or f"Batch item {result_type}",
        )

    def map_status(self, *, payload: dict[str, t.Any], total_requests: int) -> BatchStatus:
        processing_status = payload.get("processing_status")
        if processing_status == "canceling":
            return BatchStatus.CANCELLING
        if processing_status != "ended":
            return BatchStatus.IN_PROGRESS

        counts = payload.get("request_counts") or {}
        succeeded = int(counts.get("succeeded", 0))
        if total_requests and int(counts.get("errored", 0)) == total_requests:
            return BatchStatus.FAILED
        if total_requests and int(counts.get("expired", 0)) == total_requests:
            return BatchStatus.EXPIRED
        if payload.get("cancel_initiated_at") and succeeded == 0:
            return BatchStatus.CANCELLED
        return BatchStatus.COMPLETED

    def map_batch_response(self, *, payload: dict[str, t.Any], total_requests: int) -> BatchJob:
        counts = payload.get("request_counts") or {}
        failed = sum(int(counts.get(key, 0)) for key in ("errored", "canceled", "expired"))
        return BatchJob(
            id=payload["id"],
            provider_job_id=payload["id"],
            provider_name=self.name,
            status=self.map_status(payload=payload, total_requests=total_requests),
            total_requests=total_requests,
            completed_requests=int(counts.get("succeeded", 0)),
            failed_requests=failed,
            submitted_at=timestamp_to_datetime(payload.get("created_at"))
            or datetime.now(tz=timezone.utc),
            completed_at=timestamp_to_datetime(payload.get("ended_at")),
        )
