from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from .app_logging import log_with_fields
from .config import PollConfig
from .models import (
    Downloading,
    Failed,
    Idle,
    JobState,
    JobStatusResponse,
    Polling,
    Submitted,
    Succeeded,
    UploadSource,
    Uploading,
    job_id_of,
)
from .poller import JobPoller
from .remote import (
    DownloadError,
    JobTimeoutError,
    MissingUrlError,
    ProgressCallback,
    RemoteError,
    RemoteFailure,
    UploadError,
)
from .state import StateStore
from .utils import Cancelled, CancelToken, stage_stream

JOIN_TIMEOUT_SECONDS = 5.0


class JobClient(Protocol):
    def submit(
        self,
        path: Path,
        filename: str,
        content_type: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> str: ...

    def fetch_status(self, job_id: str) -> JobStatusResponse: ...

    def download(self, url: str, job_id: str | None = None) -> str: ...

    def close(self) -> None: ...


def failure_message(exc: RemoteError) -> str:
    match exc:
        case UploadError():
            return f"Upload failed: {exc}"
        case DownloadError():
            return f"Download failed: {exc}"
        case JobTimeoutError() | MissingUrlError() | RemoteFailure():
            return str(exc)
        case _:
            return f"Error checking status: {exc}"


class JobOrchestrator:
    """Drives upload, polling and download for one job at a time.

    ``state`` is the only place outcomes are reported. Each ``start`` gets a
    new run id and every state write from a background run is checked
    against the current id, so a superseded or cancelled run can never
    overwrite the state of a newer one.
    """

    def __init__(
        self,
        client: JobClient,
        poll: PollConfig,
        logger: logging.Logger,
        *,
        state: StateStore | None = None,
        staging_dir: Path | None = None,
    ) -> None:
        self.client = client
        self.logger = logger
        self.poller = JobPoller(client, poll, logger)
        self.state = state or StateStore()
        self.staging_dir = staging_dir
        self._lock = threading.RLock()
        self._run_id = 0
        self._token: CancelToken | None = None
        self._thread: threading.Thread | None = None
        self._live_runs = 0
        self._closing = False

    def __enter__(self) -> JobOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def current_state(self) -> JobState:
        return self.state.get()

    def start(self, source: UploadSource) -> int:
        with self._lock:
            self._invalidate_active_run("superseded")
            self._run_id += 1
            run_id = self._run_id
            token = CancelToken()
            self._token = token
            self.state.set(Uploading(0.0))
            thread = threading.Thread(
                target=self._run,
                args=(run_id, token, source),
                name=f"pcapjob-run-{run_id}",
                daemon=True,
            )
            self._thread = thread
            self._live_runs += 1
        thread.start()
        return run_id

    def cancel(self, *, reset: bool = True) -> None:
        with self._lock:
            self._invalidate_active_run("cancelled")
            if reset:
                self.state.set(Idle())

    def close(self) -> None:
        self.cancel()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(JOIN_TIMEOUT_SECONDS)
        with self._lock:
            self._closing = True
            if self._live_runs:
                # the last run to finish closes the client
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "close_deferred",
                    live_runs=self._live_runs,
                    join_timeout=JOIN_TIMEOUT_SECONDS,
                )
                return
        self.client.close()

    def _invalidate_active_run(self, reason: str) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None
            log_with_fields(self.logger, logging.INFO, "run_invalidated", run_id=self._run_id, reason=reason)
        self._run_id += 1

    def _publish(self, run_id: int, new_state: JobState) -> bool:
        with self._lock:
            if run_id != self._run_id:
                log_with_fields(
                    self.logger,
                    logging.DEBUG,
                    "stale_update_ignored",
                    run_id=run_id,
                    current_run_id=self._run_id,
                    job_id=job_id_of(new_state),
                    state=type(new_state).__name__,
                )
                return False
            self.state.set(new_state)
            return True

    def _advance(self, run_id: int, new_state: JobState) -> None:
        if not self._publish(run_id, new_state):
            raise Cancelled()

    def _finish(self, token: CancelToken) -> None:
        with self._lock:
            if self._token is token:
                self._token = None
            self._live_runs -= 1
            if self._closing and self._live_runs == 0:
                self.client.close()

    def _report_progress(self, run_id: int, token: CancelToken, written: int, total: int) -> None:
        token.raise_if_cancelled()
        if total <= 0:
            return
        progress = min(max(written / total, 0.0), 1.0)
        with self._lock:
            if run_id != self._run_id:
                raise Cancelled()
            current = self.state.get()
            if isinstance(current, Uploading) and progress > current.progress:
                self.state.set(Uploading(progress))

    def _upload(self, run_id: int, token: CancelToken, source: UploadSource) -> str:
        if token.cancelled:
            source.stream.close()
            raise Cancelled()
        log_with_fields(self.logger, logging.INFO, "upload_started", run_id=run_id, filename=source.filename)
        try:
            staged = stage_stream(
                source.stream,
                suffix=Path(source.filename).suffix or ".pcap",
                directory=self.staging_dir,
            )
        except (OSError, ValueError) as exc:
            raise UploadError(reason=f"could not read {source.filename}: {exc}") from exc
        try:
            token.raise_if_cancelled()
            job_id = self.client.submit(
                staged,
                source.filename,
                source.content_type,
                progress=lambda written, total: self._report_progress(run_id, token, written, total),
            )
        finally:
            staged.unlink(missing_ok=True)
        log_with_fields(self.logger, logging.INFO, "upload_succeeded", run_id=run_id, job_id=job_id)
        return job_id

    def _run(self, run_id: int, token: CancelToken, source: UploadSource) -> None:
        try:
            job_id = self._upload(run_id, token, source)
            self._advance(run_id, Submitted(job_id))

            url = self.poller.wait_for_result(
                job_id,
                token,
                on_attempt=lambda attempt: self._advance(run_id, Polling(job_id, attempt)),
            )

            self._advance(run_id, Downloading(job_id, url))
            token.raise_if_cancelled()
            content = self.client.download(url, job_id)
            self._advance(run_id, Succeeded(job_id, content))
            log_with_fields(
                self.logger,
                logging.INFO,
                "download_succeeded",
                job_id=job_id,
                url=url,
                size=len(content),
            )
        except Cancelled:
            log_with_fields(self.logger, logging.INFO, "run_cancelled", run_id=run_id)
        except RemoteError as exc:
            self._fail(run_id, failure_message(exc), exc.job_id, exc)
        except Exception as exc:
            self.logger.exception("unexpected error in job run %s", run_id)
            self._fail(run_id, f"Unexpected error: {exc}", None, exc)
        finally:
            self._finish(token)

    def _fail(self, run_id: int, message: str, job_id: str | None, exc: Exception) -> None:
        match exc:
            case UploadError():
                event = "upload_failed"
            case DownloadError():
                event = "download_failed"
            case _:
                event = "run_failed"
        with self._lock:
            log_with_fields(
                self.logger,
                logging.ERROR if run_id == self._run_id else logging.DEBUG,
                event,
                run_id=run_id,
                job_id=job_id,
                error=message,
                error_type=type(exc).__name__,
            )
            self._publish(run_id, Failed(message, job_id))
