from __future__ import annotations

import json
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

_STATUS_MAP: dict[str, BatchStatus] = {
    "validating": BatchStatus.SUBMITTED,
    "in_progress": BatchStatus.IN_PROGRESS,
    "finalizing": BatchStatus.IN_PROGRESS,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
    "expired": BatchStatus.EXPIRED,
    "cancelling": BatchStatus.CANCELLING,
    "cancelled": BatchStatus.CANCELLED,
}


class OpenAIProvider(BaseProvider):
    """
    Provider adapter for OpenAI's Batch API.

    Submission is two-phase: the JSONL input is uploaded as a file, then a
    batch referencing the file id is created. Results live in output and
    error files whose ids only appear once the batch has finished.
    """

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o-mini"
    file_upload_endpoint = "/files"
    file_content_endpoint = "/files/{id}/content"
    batch_endpoint = "/batches"
    chat_endpoint = "/v1/chat/completions"
    completion_window = "24h"

    def build_api_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key or ''}"}

    def build_jsonl_line(
        self, *, request: BatchRequest, options: BatchSubmitOptions | None
    ) -> dict[str, t.Any]:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.user_prompt})

        body: dict[str, t.Any] = {
            "model": self.resolve_model(request=request, options=options),
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        return {
            "custom_id": request.correlation_id,
            "method": "POST",
            "url": self.chat_endpoint,
            "body": body,
        }

    async def _upload_batch_file(self, *, jsonl_lines: list[dict[str, t.Any]]) -> str:
        """
        Upload the JSONL batch input file.

        Parameters
        ----------
        jsonl_lines : list[dict[str, typing.Any]]
            JSONL line payloads.

        Returns
        -------
        str
            Uploaded file ID.
        """
        file_content = "\n".join(json.dumps(line) for line in jsonl_lines).encode("utf-8")
        log.debug(
            event="Uploading batch file",
            provider=self.name,
            line_count=len(jsonl_lines),
            bytes=len(file_content),
        )
        payload = await self._request_json(
            method="POST",
            path=self.file_upload_endpoint,
            files={"file": ("batch_requests.jsonl", file_content, "application/jsonl")},
            data={"purpose": "batch"},
        )
        return payload["id"]

    async def submit_batch(
        self,
        requests: t.Sequence[BatchRequest],
        options: BatchSubmitOptions | None = None,
    ) -> BatchJob:
        if not requests:
            raise ValueError("Cannot process an empty request batch")

        jsonl_lines = [
            self.build_jsonl_line(request=request, options=options) for request in requests
        ]
        file_id = await self._upload_batch_file(jsonl_lines=jsonl_lines)
        log.info(
            event="Uploaded batch file",
            provider=self.name,
            file_id=file_id,
            request_count=len(jsonl_lines),
        )

        batch_payload: dict[str, t.Any] = {
            "input_file_id": file_id,
            "endpoint": self.chat_endpoint,
            "completion_window": self.completion_window,
        }
        metadata = self.build_metadata(options=options)
        if metadata:
            batch_payload["metadata"] = metadata
        response = await self._request_json(
            method="POST", path=self.batch_endpoint, json_body=batch_payload
        )
        job = self.map_batch_response(payload=response, total_requests=len(requests))
        log.info(
            event="Created batch from uploaded file",
            provider=self.name,
            provider_job_id=job.provider_job_id,
            file_id=file_id,
        )
        return job

    async def get_batch_status(self, provider_job_id: str) -> BatchJob:
        response = await self._request_json(
            method="GET", path=f"{self.batch_endpoint}/{provider_job_id}"
        )
        return self.map_batch_response(payload=response)

    async def get_batch_results(self, provider_job_id: str) -> list[BatchResult]:
        batch = await self._request_json(
            method="GET", path=f"{self.batch_endpoint}/{provider_job_id}"
        )
        file_ids = [
            file_id
            for file_id in (batch.get("output_file_id"), batch.get("error_file_id"))
            if file_id
        ]
        if not file_ids:
            raise ValueError("Batch has no output file yet")

        results: list[BatchResult] = []
        for file_id in file_ids:
            content = await self._download_text(
                path=self.file_content_endpoint.format(id=file_id)
            )
            results.extend(
                self.parse_result_lines(
                    lines=content.splitlines(), provider_job_id=provider_job_id
                )
            )
        log.info(
            event="Downloaded batch results",
            provider=self.name,
            provider_job_id=provider_job_id,
            file_count=len(file_ids),
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
        response = result_item.get("response") or {}
        error = result_item.get("error") or {}
        status_code = response.get("status_code")
        body = response.get("body") or {}

        if status_code == 200:
            choices = body.get("choices") or [{}]
            content = (choices[0].get("message") or {}).get("content") or ""
            usage = body.get("usage") or {}
            return BatchResult(
                correlation_id=correlation_id,
                success=True,
                content=content,
                usage=TokenUsage(
                    input_tokens=usage.get("prompt_tokens", 0),
                    output_tokens=usage.get("completion_tokens", 0),
                ),
            )

        body_error = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = (
            error.get("message")
            or body_error.get("message")
            or f"HTTP {status_code or 'unknown'}"
        )
        return BatchResult(correlation_id=correlation_id, success=False, error=message)

    def map_batch_response(
        self, *, payload: dict[str, t.Any], total_requests: int | None = None
    ) -> BatchJob:
        counts = payload.get("request_counts") or {}
        provider_status = payload.get("status", "")
        status = _STATUS_MAP.get(provider_status)
        if status is None:
            log.warning(
                event="Unknown provider batch status",
                provider=self.name,
                provider_status=provider_status,
            )
            status = BatchStatus.IN_PROGRESS

        total = int(counts.get("total") or 0)
        if total_requests is not None and total == 0:
            total = total_requests
        return BatchJob(
            id=payload["id"],
            provider_job_id=payload["id"],
            provider_name=self.name,
            status=status,
            total_requests=total,
            completed_requests=int(counts.get("completed") or 0),
            failed_requests=int(counts.get("failed") or 0),
            submitted_at=timestamp_to_datetime(payload.get("created_at"))
            or datetime.now(tz=timezone.utc),
            completed_at=timestamp_to_datetime(payload.get("completed_at")),
            metadata=payload.get("metadata") or None,
        )
