"""
Worker thread wrapper shared by the write and read drivers.

A `WorkerTask` runs one driver loop on a daemon thread. A fatal exception
(anything escaping the loop, typically `BackendConnectionError`) is captured
on the task and reported through `on_fatal` so the coordinator can start
draining; it is never re-raised on the worker thread.
"""

from __future__ import annotations

import threading
from typing import Callable, List, Optional, Protocol

from rr_bench.utils.logging import get_logger

log = get_logger(__name__)


class Closable(Protocol):
    def close(self) -> None: ...


class WorkerTask:
    def __init__(
        self,
        name: str,
        target: Callable[[], None],
        closables: Optional[List[Closable]] = None,
        on_fatal: Optional[Callable[["WorkerTask", BaseException], None]] = None,
    ) -> None:
        self.name = name
        self.error: Optional[BaseException] = None
        self.closables: List[Closable] = list(closables or [])
        self._target = target
        self._on_fatal = on_fatal
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self._target()
        except Exception as exc:  # noqa: BLE001 - recorded and reported, never re-raised
            self.error = exc
            log.error(
                f"[WORKER FAILED] {self.name}",
                extra={"task": self.name, "error": repr(exc)},
                exc_info=True,
            )
            if self._on_fatal is not None:
                self._on_fatal(self, exc)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the task; returns True once it has finished."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def force_close(self) -> None:
        """Close the task's connections to unblock a hung call."""
        for closable in self.closables:
            closable.close()


__all__ = ["Closable", "WorkerTask"]
