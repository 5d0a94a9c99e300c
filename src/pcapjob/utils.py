from __future__ import annotations

import shutil
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO

COPY_CHUNK_BYTES = 1024 * 1024


class Cancelled(Exception):
    """Raised inside a run once its token has been cancelled."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    def sleep(self, seconds: float) -> None:
        # wakes as soon as cancel() is called
        if self._event.wait(max(seconds, 0.0)):
            raise Cancelled()


def stage_stream(stream: BinaryIO, suffix: str = ".pcap", directory: Path | None = None) -> Path:
    """Copy ``stream`` into a temporary file and close it.

    The caller owns the returned path and must remove it.
    """
    with stream:
        handle = tempfile.NamedTemporaryFile(
            prefix="upload_",
            suffix=suffix,
            dir=str(directory) if directory is not None else None,
            delete=False,
        )
        try:
            with handle:
                shutil.copyfileobj(stream, handle, COPY_CHUNK_BYTES)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise
    return Path(handle.name)


def excerpt(text: str, limit: int = 200) -> str:
    return text[:limit]
