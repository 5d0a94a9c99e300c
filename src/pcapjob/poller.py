from __future__ import annotations

import logging
from typing import Callable, Protocol

from .app_logging import log_with_fields
from .config import PollConfig
from .models import JobStatus, JobStatusResponse
from .remote import JobTimeoutError, MissingUrlError, RemoteFailure, TransientPollFault
from .utils import CancelToken


class StatusSource(Protocol):
    def fetch_status(self, job_id: str) -> JobStatusResponse: ...


class JobPoller:
    def __init__(self, client: StatusSource, policy: PollConfig, logger: logging.Logger) -> None:
        self.client = client
        self.policy = policy
        self.logger = logger

    def wait_for_result(
        self,
        job_id: str,
        token: CancelToken,
        on_attempt: Callable[[int], None],
    ) -> str:
        """Poll until the job reaches a terminal status and return its result URL.

        ``on_attempt`` is called with the attempt number before each status
        request; it may raise ``Cancelled`` to stop a superseded run.
        Raises ``NotFoundError``, ``MissingUrlError``, ``RemoteFailure``,
        ``JobTimeoutError`` or a hard ``RemoteError``.
        """
        token.sleep(self.policy.initial_delay_seconds)

        attempt = 0
        while attempt < self.policy.max_attempts:
            token.raise_if_cancelled()
            attempt += 1
            on_attempt(attempt)
            log_with_fields(self.logger, logging.DEBUG, "poll_attempt", job_id=job_id, attempt=attempt)

            try:
                response = self.client.fetch_status(job_id)
            except TransientPollFault as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "poll_transient_fault",
                    job_id=job_id,
                    attempt=attempt,
                    error=str(exc),
                )
            else:
                url = self.interpret(job_id, response)
                if url is not None:
                    return url

            if attempt < self.policy.max_attempts:
                token.sleep(self.policy.interval_seconds)

        log_with_fields(self.logger, logging.WARNING, "poll_timed_out", job_id=job_id, attempts=attempt)
        raise JobTimeoutError(job_id, attempt)

    def interpret(self, job_id: str, response: JobStatusResponse) -> str | None:
        """Return the result URL for a completed job, None to keep polling."""
        if response.status == JobStatus.COMPLETED.value:
            if not response.url:
                log_with_fields(self.logger, logging.ERROR, "job_completed_without_url", job_id=job_id)
                raise MissingUrlError(job_id)
            log_with_fields(self.logger, logging.INFO, "job_completed", job_id=job_id, url=response.url)
            return response.url
        if response.status == JobStatus.FAILED.value:
            reason = response.error or "Unknown server error"
            log_with_fields(self.logger, logging.ERROR, "job_failed", job_id=job_id, error=reason)
            raise RemoteFailure(job_id, reason)
        if response.status != JobStatus.PROCESSING.value:
            # unknown values are treated as still running
            log_with_fields(
                self.logger,
                logging.WARNING,
                "poll_unknown_status",
                job_id=job_id,
                status=response.status,
            )
        return None
