from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable

import httpx

from .app_logging import LOGGER_NAME, log_with_fields
from .config import ServerConfig, TimeoutConfig
from .models import FALLBACK_CONTENT_TYPE, JobStatusResponse
from .utils import excerpt

ProgressCallback = Callable[[int, int], None]


def _describe(http_status: int | None, body_excerpt: str | None, reason: str | None, fallback: str) -> str:
    if http_status is None:
        return reason or fallback
    if body_excerpt:
        return f"HTTP {http_status} - {body_excerpt}"
    return f"HTTP {http_status}"


class RemoteError(RuntimeError):
    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class UploadError(RemoteError):
    def __init__(
        self,
        *,
        http_status: int | None = None,
        body_excerpt: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(_describe(http_status, body_excerpt, reason, "upload failed"))
        self.http_status = http_status
        self.body_excerpt = body_excerpt
        self.reason = reason


class NotFoundError(RemoteError):
    def __init__(self, job_id: str) -> None:
        super().__init__("Job ID not found on server.", job_id=job_id)


class TransientPollFault(RemoteError):
    def __init__(self, job_id: str, *, http_status: int | None = None, reason: str | None = None) -> None:
        detail = f"HTTP {http_status}" if http_status is not None else reason or "transient fault"
        super().__init__(f"status check skipped: {detail}", job_id=job_id)
        self.http_status = http_status


class JobTimeoutError(RemoteError):
    def __init__(self, job_id: str, attempts: int) -> None:
        super().__init__("Processing timed out.", job_id=job_id)
        self.attempts = attempts


class MissingUrlError(RemoteError):
    def __init__(self, job_id: str) -> None:
        super().__init__("Result URL missing.", job_id=job_id)


class RemoteFailure(RemoteError):
    def __init__(self, job_id: str, reason: str) -> None:
        super().__init__(f"Processing failed: {reason}", job_id=job_id)
        self.reason = reason


class DownloadError(RemoteError):
    def __init__(
        self,
        *,
        http_status: int | None = None,
        body_excerpt: str | None = None,
        reason: str | None = None,
        job_id: str | None = None,
    ) -> None:
        super().__init__(_describe(http_status, body_excerpt, reason, "download failed"), job_id=job_id)
        self.http_status = http_status
        self.body_excerpt = body_excerpt
        self.reason = reason


class ProgressReader:
    """File wrapper that reports bytes handed to the multipart encoder."""

    def __init__(self, handle: BinaryIO, total: int, callback: ProgressCallback) -> None:
        self._handle = handle
        self._total = total
        self._callback = callback
        self._written = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._handle.read(size)
        if chunk:
            self._written += len(chunk)
            self._callback(self._written, self._total)
        return chunk

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        position = self._handle.seek(offset, whence)
        self._written = position
        return position

    def tell(self) -> int:
        return self._handle.tell()


class RemoteClient:
    def __init__(
        self,
        server: ServerConfig,
        timeouts: TimeoutConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.server = server
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        timeouts = timeouts or TimeoutConfig()
        event_hooks: dict[str, list[Callable]] = {"request": [], "response": []}
        if server.log_http:
            event_hooks["request"].append(self._log_request)
            event_hooks["response"].append(self._log_response)
        self.http = httpx.Client(
            timeout=httpx.Timeout(
                timeouts.read_seconds,
                connect=timeouts.connect_seconds,
                read=timeouts.read_seconds,
                write=timeouts.write_seconds,
            ),
            transport=transport,
            event_hooks=event_hooks,
        )

    def close(self) -> None:
        self.http.close()

    def _log_request(self, request: httpx.Request) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "http_request",
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
        )

    def _log_response(self, response: httpx.Response) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "http_response",
            method=response.request.method,
            url=str(response.request.url),
            status=response.status_code,
            headers=dict(response.headers),
        )

    def submit(
        self,
        path: Path,
        filename: str,
        content_type: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> str:
        total = path.stat().st_size
        with path.open("rb") as handle:
            fileobj: BinaryIO | ProgressReader = handle
            if progress is not None:
                fileobj = ProgressReader(handle, total, progress)
            files = {
                self.server.upload_field: (
                    filename,
                    fileobj,
                    content_type or FALLBACK_CONTENT_TYPE,
                )
            }
            try:
                response = self.http.post(self.server.upload_url(), files=files)
            except httpx.HTTPError as exc:
                raise UploadError(reason=str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise UploadError(http_status=response.status_code, body_excerpt=excerpt(response.text))

        if not response.text.strip():
            raise UploadError(reason="empty response body")
        try:
            payload = response.json()
        except ValueError as exc:
            raise UploadError(reason="missing job id") from exc
        job_id = payload.get("job_id") if isinstance(payload, dict) else None
        if not job_id:
            raise UploadError(reason="missing job id")
        return str(job_id)

    def fetch_status(self, job_id: str) -> JobStatusResponse:
        try:
            response = self.http.get(self.server.status_url(job_id))
        except httpx.HTTPError as exc:
            raise RemoteError(str(exc) or type(exc).__name__, job_id=job_id) from exc

        if response.status_code == 404:
            raise NotFoundError(job_id)
        if not response.is_success:
            raise TransientPollFault(job_id, http_status=response.status_code)
        if not response.text.strip():
            raise TransientPollFault(job_id, reason="empty status body")
        try:
            return JobStatusResponse.from_payload(response.json())
        except ValueError as exc:
            raise TransientPollFault(job_id, reason=f"unparseable status body: {exc}") from exc

    def download(self, url: str, job_id: str | None = None) -> str:
        try:
            response = self.http.get(url)
        except httpx.HTTPError as exc:
            raise DownloadError(reason=str(exc) or type(exc).__name__, job_id=job_id) from exc

        if not response.is_success:
            raise DownloadError(
                http_status=response.status_code,
                body_excerpt=excerpt(response.text),
                job_id=job_id,
            )
        content = response.text
        if not content:
            raise DownloadError(reason="empty body", job_id=job_id)
        return content
