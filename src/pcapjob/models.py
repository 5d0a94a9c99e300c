from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO

DEFAULT_CONTENT_TYPE = "application/vnd.tcpdump.pcap"
FALLBACK_CONTENT_TYPE = "application/octet-stream"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Uploading:
    progress: float = 0.0


@dataclass(frozen=True, slots=True)
class Submitted:
    job_id: str


@dataclass(frozen=True, slots=True)
class Polling:
    job_id: str
    attempt: int


@dataclass(frozen=True, slots=True)
class Downloading:
    job_id: str
    url: str


@dataclass(frozen=True, slots=True)
class Succeeded:
    job_id: str
    content: str


@dataclass(frozen=True, slots=True)
class Failed:
    message: str
    job_id: str | None = None


JobState = Idle | Uploading | Submitted | Polling | Downloading | Succeeded | Failed


def is_terminal(state: JobState) -> bool:
    return isinstance(state, (Succeeded, Failed))


def job_id_of(state: JobState) -> str | None:
    match state:
        case Submitted(job_id=job_id) | Polling(job_id=job_id) | Downloading(job_id=job_id):
            return job_id
        case Succeeded(job_id=job_id) | Failed(job_id=job_id):
            return job_id
        case Idle() | Uploading():
            return None


@dataclass(frozen=True, slots=True)
class JobStatusResponse:
    status: str
    url: str | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> JobStatusResponse:
        if not isinstance(payload, dict) or not isinstance(payload.get("status"), str):
            raise ValueError("status payload must be an object with a string `status`")
        url = payload.get("url")
        error = payload.get("error")
        # anything but a non-empty string counts as absent
        return cls(
            status=payload["status"],
            url=url if isinstance(url, str) and url else None,
            error=error if isinstance(error, str) and error else None,
        )


@dataclass(slots=True)
class UploadSource:
    """A readable capture plus the name and media type to send it under."""

    stream: BinaryIO
    filename: str
    content_type: str | None = DEFAULT_CONTENT_TYPE

    @classmethod
    def from_path(cls, path: Path, content_type: str | None = DEFAULT_CONTENT_TYPE) -> UploadSource:
        return cls(stream=path.open("rb"), filename=path.name, content_type=content_type)
