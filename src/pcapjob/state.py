from __future__ import annotations

import logging
import threading
from typing import Callable

from .app_logging import LOGGER_NAME
from .models import Idle, JobState

Subscriber = Callable[[JobState], None]


class StateStore:
    """Holds the current JobState and fans every replacement out to subscribers.

    There is a single writer (the orchestrator). Readers take snapshots with
    ``get`` or register a callback with ``subscribe``; callbacks run on the
    writer's thread, in publish order, and must not block.
    """

    def __init__(self, initial: JobState | None = None) -> None:
        self._condition = threading.Condition(threading.RLock())
        self._value: JobState = initial if initial is not None else Idle()
        self._subscribers: list[Subscriber] = []
        self._logger = logging.getLogger(LOGGER_NAME)

    def get(self) -> JobState:
        with self._condition:
            return self._value

    def set(self, value: JobState) -> None:
        with self._condition:
            self._value = value
            for subscriber in list(self._subscribers):
                try:
                    subscriber(value)
                except Exception:
                    self._logger.exception("state subscriber failed")
            self._condition.notify_all()

    def subscribe(self, subscriber: Subscriber, *, replay: bool = True) -> Callable[[], None]:
        with self._condition:
            self._subscribers.append(subscriber)
            if replay:
                subscriber(self._value)

        def unsubscribe() -> None:
            with self._condition:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def wait_for(self, predicate: Callable[[JobState], bool], timeout: float | None = None) -> JobState:
        with self._condition:
            matched = self._condition.wait_for(lambda: predicate(self._value), timeout=timeout)
            if not matched:
                raise TimeoutError(f"state did not match within {timeout}s; current={self._value!r}")
            return self._value
