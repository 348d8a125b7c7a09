import json
import typing as t
from email.parser import BytesParser
from email.policy import default

import httpx


def _read_request_body(*, request: httpx.Request) -> bytes:
    if hasattr(request, "read"):
        return request.read()
    return t.cast(bytes, request.content)


def _json_response(*, status_code: int, payload: dict[str, t.Any]) -> httpx.Response:
    return httpx.Response(status_code=status_code, json=payload)


class FakeOpenAIAPI:
    """
    Emulate the subset of OpenAI file and batch endpoints used in tests.

    Parameters
    ----------
    statuses : list[str] | None
        Batch status returned by successive polls, the last one repeating.
    failing_ids : set[str] | None
        Custom ids answered with an HTTP 400 line in the error file.
    extra_output_lines : list[str] | None
        Raw lines appended to the output file.
    """

    def __init__(
        self,
        *,
        statuses: list[str] | None = None,
        failing_ids: set[str] | None = None,
        extra_output_lines: list[str] | None = None,
    ) -> None:
        self.statuses = statuses or ["in_progress", "completed"]
        self.failing_ids = failing_ids or set()
        self.extra_output_lines = extra_output_lines or []
        self.uploads: list[list[dict[str, t.Any]]] = []
        self.upload_purposes: list[str] = []
        self.created_batches: list[dict[str, t.Any]] = []
        self.cancelled: list[str] = []
        self.seen_headers: list[httpx.Headers] = []
        self._files: dict[str, str] = {}
        self._batches: dict[str, dict[str, t.Any]] = {}
        self._poll_counts: dict[str, int] = {}
        self._counter = 0

    def _next_id(self, *, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _parse_multipart(self, *, request: httpx.Request) -> tuple[list[dict[str, t.Any]], str]:
        """
        Parse the multipart upload into JSONL entries and the declared purpose.

        Parameters
        ----------
        request : httpx.Request
            Incoming HTTP request.

        Returns
        -------
        tuple[list[dict[str, typing.Any]], str]
            Parsed JSONL entries and the ``purpose`` form field.
        """
        content_type = request.headers.get("content-type", "")
        body = _read_request_body(request=request)
        message = BytesParser(policy=default).parsebytes(
            text=b"Content-Type: " + content_type.encode("utf-8") + b"\r\n\r\n" + body
        )
        lines: list[dict[str, t.Any]] = []
        purpose = ""
        for part in message.iter_parts():
            if part.get_content_disposition() != "form-data":
                continue
            name = part.get_param("name", header="content-disposition")
            payload = part.get_payload(decode=True)
            if not isinstance(payload, bytes):
                payload = b""
            if name == "file":
                lines = [
                    json.loads(s=line)
                    for line in payload.decode("utf-8").splitlines()
                    if line.strip()
                ]
            elif name == "purpose":
                purpose = payload.decode("utf-8")
        return lines, purpose

    def _batch_payload(self, *, batch_id: str, status: str) -> dict[str, t.Any]:
        batch = self._batches[batch_id]
        total = len(batch["lines"])
        failed = len([line for line in batch["lines"] if line["custom_id"] in self.failing_ids])
        done = status == "completed"
        payload: dict[str, t.Any] = {
            "id": batch_id,
            "object": "batch",
            "status": status,
            "created_at": 1761194530,
            "completed_at": 1761198130 if done else None,
            "request_counts": {
                "total": total if status != "validating" else 0,
                "completed": total - failed if done else 0,
                "failed": failed if done else 0,
            },
            "output_file_id": batch["output_file_id"] if done else None,
            "error_file_id": batch["error_file_id"] if done and failed else None,
            "metadata": batch["metadata"],
        }
        return payload

    def _handle_upload(self, *, request: httpx.Request) -> httpx.Response:
        lines, purpose = self._parse_multipart(request=request)
        file_id = self._next_id(prefix="file")
        self.uploads.append(lines)
        self.upload_purposes.append(purpose)
        self._files[file_id] = "\n".join(json.dumps(line) for line in lines)
        return _json_response(status_code=200, payload={"id": file_id, "purpose": purpose})

    def _handle_batch_create(self, *, request: httpx.Request) -> httpx.Response:
        payload = json.loads(s=_read_request_body(request=request))
        self.created_batches.append(payload)
        batch_id = self._next_id(prefix="batch")
        lines = [json.loads(line) for line in self._files[payload["input_file_id"]].splitlines()]
        output_file_id = self._next_id(prefix="output")
        error_file_id = self._next_id(prefix="errors")
        self._batches[batch_id] = {
            "lines": lines,
            "output_file_id": output_file_id,
            "error_file_id": error_file_id,
            "metadata": payload.get("metadata"),
        }
        self._files[output_file_id] = "\n".join(
            [
                json.dumps(
                    {
                        "id": f"batch_req_{line['custom_id']}",
                        "custom_id": line["custom_id"],
                        "response": {
                            "status_code": 200,
                            "body": {
                                "model": line["body"]["model"],
                                "choices": [
                                    {"message": {"content": f"answer to {line['custom_id']}"}}
                                ],
                                "usage": {"prompt_tokens": 24, "completion_tokens": 7},
                            },
                        },
                        "error": None,
                    }
                )
                for line in lines
                if line["custom_id"] not in self.failing_ids
            ]
            + self.extra_output_lines
        )
        self._files[error_file_id] = "\n".join(
            json.dumps(
                {
                    "id": f"batch_req_{line['custom_id']}",
                    "custom_id": line["custom_id"],
                    "response": {
                        "status_code": 400,
                        "body": {"error": {"message": "Invalid value for 'max_tokens'"}},
                    },
                    "error": None,
                }
            )
            for line in lines
            if line["custom_id"] in self.failing_ids
        )
        return _json_response(
            status_code=200, payload=self._batch_payload(batch_id=batch_id, status="validating")
        )

    def _handle_batch_status(self, *, batch_id: str) -> httpx.Response:
        if batch_id not in self._batches:
            return _json_response(status_code=404, payload={"error": {"message": "not found"}})
        poll_count = self._poll_counts.get(batch_id, 0)
        self._poll_counts[batch_id] = poll_count + 1
        status = self.statuses[min(poll_count, len(self.statuses) - 1)]
        return _json_response(
            status_code=200, payload=self._batch_payload(batch_id=batch_id, status=status)
        )

    def _handle_cancel(self, *, batch_id: str) -> httpx.Response:
        self.cancelled.append(batch_id)
        return _json_response(
            status_code=200, payload=self._batch_payload(batch_id=batch_id, status="cancelling")
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        """
        Dispatch incoming requests to mock handlers.

        Parameters
        ----------
        request : httpx.Request
            Incoming HTTP request.

        Returns
        -------
        httpx.Response
            Mock response.
        """
        self.seen_headers.append(request.headers)
        path = request.url.path
        if request.method == "POST" and path == "/v1/files":
            return self._handle_upload(request=request)

        if request.method == "POST" and path == "/v1/batches":
            return self._handle_batch_create(request=request)

        if request.method == "POST" and path.endswith("/cancel"):
            return self._handle_cancel(batch_id=path.split("/")[-2])

        if request.method == "GET" and path.startswith("/v1/batches/"):
            return self._handle_batch_status(batch_id=path.split("/")[-1])

        if request.method == "GET" and path.startswith("/v1/files/") and path.endswith("/content"):
            return httpx.Response(status_code=200, text=self._files[path.split("/")[-2]])

        return _json_response(status_code=404, payload={"error": {"message": "not found"}})


class FakeAnthropicAPI:
    """
    Emulate the subset of Anthropic Message Batches endpoints used in tests.

    Parameters
    ----------
    processing_statuses : list[str] | None
        ``processing_status`` returned by successive polls, the last one repeating.
    errored_ids : set[str] | None
        Custom ids reported as errored once the batch has ended.
    extra_result_lines : list[str] | None
        Raw lines appended to the results stream.
    """

    def __init__(
        self,
        *,
        processing_statuses: list[str] | None = None,
        errored_ids: set[str] | None = None,
        extra_result_lines: list[str] | None = None,
    ) -> None:
        self.processing_statuses = processing_statuses or ["in_progress", "ended"]
        self.errored_ids = errored_ids or set()
        self.extra_result_lines = extra_result_lines or []
        self.created_batches: list[dict[str, t.Any]] = []
        self.cancelled: list[str] = []
        self.seen_headers: list[httpx.Headers] = []
        self._batches: dict[str, list[dict[str, t.Any]]] = {}
        self._poll_counts: dict[str, int] = {}

    def _batch_payload(self, *, batch_id: str, processing_status: str) -> dict[str, t.Any]:
        items = self._batches[batch_id]
        ended = processing_status == "ended"
        errored = len([item for item in items if item["custom_id"] in self.errored_ids])
        return {
            "id": batch_id,
            "type": "message_batch",
            "processing_status": processing_status,
            "request_counts": {
                "processing": 0 if ended else len(items),
                "succeeded": len(items) - errored if ended else 0,
                "errored": errored if ended else 0,
                "canceled": 0,
                "expired": 0,
            },
            "created_at": "2024-09-24T18:37:24.100435Z",
            "ended_at": "2024-09-24T18:39:03.114875Z" if ended else None,
            "cancel_initiated_at": None,
        }

    def _result_line(self, *, item: dict[str, t.Any]) -> str:
        if item["custom_id"] in self.errored_ids:
            result = {
                "type": "errored",
                "error": {
                    "type": "error",
                    "error": {"type": "invalid_request_error", "message": "max_tokens: too large"},
                },
            }
        else:
            result = {
                "type": "succeeded",
                "message": {
                    "id": f"msg_{item['custom_id']}",
                    "type": "message",
                    "role": "assistant",
                    "model": item["params"]["model"],
                    "content": [{"type": "text", "text": f"answer to {item['custom_id']}"}],
                    "usage": {"input_tokens": 10, "output_tokens": 4},
                },
            }
        return json.dumps({"custom_id": item["custom_id"], "result": result})

    def _handle_batch_create(self, *, request: httpx.Request) -> httpx.Response:
        payload = json.loads(s=_read_request_body(request=request))
        self.created_batches.append(payload)
        batch_id = f"msgbatch_{len(self.created_batches)}"
        self._batches[batch_id] = payload["requests"]
        return _json_response(
            status_code=200,
            payload=self._batch_payload(batch_id=batch_id, processing_status="in_progress"),
        )

    def _handle_batch_status(self, *, batch_id: str) -> httpx.Response:
        if batch_id not in self._batches:
            return _json_response(
                status_code=404,
                payload={"type": "error", "error": {"type": "not_found_error", "message": "nope"}},
            )
        poll_count = self._poll_counts.get(batch_id, 0)
        self._poll_counts[batch_id] = poll_count + 1
        status = self.processing_statuses[min(poll_count, len(self.processing_statuses) - 1)]
        return _json_response(
            status_code=200,
            payload=self._batch_payload(batch_id=batch_id, processing_status=status),
        )

    def _handle_results(self, *, batch_id: str) -> httpx.Response:
        lines = [self._result_line(item=item) for item in self._batches[batch_id]]
        return httpx.Response(
            status_code=200, text="\n".join(lines + self.extra_result_lines) + "\n"
        )

    def _handle_cancel(self, *, batch_id: str) -> httpx.Response:
        self.cancelled.append(batch_id)
        return _json_response(
            status_code=200,
            payload=self._batch_payload(batch_id=batch_id, processing_status="canceling"),
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        """
        Dispatch incoming requests to mock handlers.

        Parameters
        ----------
        request : httpx.Request
            Incoming HTTP request.

        Returns
        -------
        httpx.Response
            Mock response.
        """
        self.seen_headers.append(request.headers)
        path = request.url.path
        prefix = "/v1/messages/batches"
        if request.method == "POST" and path == prefix:
            return self._handle_batch_create(request=request)

        if request.method == "POST" and path.startswith(prefix) and path.endswith("/cancel"):
            return self._handle_cancel(batch_id=path.split("/")[-2])

        if request.method == "GET" and path.startswith(prefix) and path.endswith("/results"):
            return self._handle_results(batch_id=path.split("/")[-2])

        if request.method == "GET" and path.startswith(f"{prefix}/"):
            return self._handle_batch_status(batch_id=path.split("/")[-1])

        return _json_response(status_code=404, payload={"type": "error"})


def make_client_factory(api: FakeOpenAIAPI | FakeAnthropicAPI) -> t.Callable[[], httpx.AsyncClient]:
    """
    Build a provider client factory routed to a fake API.

    Parameters
    ----------
    api : FakeOpenAIAPI | FakeAnthropicAPI
        Fake API handling every request.

    Returns
    -------
    typing.Callable[[], httpx.AsyncClient]
        Factory creating clients bound to a mock transport.
    """
    transport = httpx.MockTransport(handler=api.handler)
    return lambda: httpx.AsyncClient(transport=transport)
