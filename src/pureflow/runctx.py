from __future__ import annotations

import threading
import time
from typing import Callable


class RunCancelledError(RuntimeError):
    pass


class RunContext:
    """Deadline and cancel flag shared by everything one invocation does.

    ``cancel`` may be called from another thread (a supervisor); the run
    notices at the next ``check`` or ``timeout_for`` call.
    """

    def __init__(
        self,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds else None
        self._cancelled = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    def check(self) -> None:
        if self._cancelled.is_set():
            raise RunCancelledError(f"run_cancelled: {self._reason}")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise RunCancelledError("run_cancelled: deadline_exceeded")

    def timeout_for(self, default_seconds: float) -> float:
        self.check()
        remaining = self.remaining()
        if remaining is None:
            return default_seconds
        return max(0.001, min(default_seconds, remaining))
