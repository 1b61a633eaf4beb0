"""
Rate-limited write driver.

A single loop paces write transactions against the primary at a target rate
using absolute deadlines: deadline(0) = start, deadline(n+1) = deadline(n) + 1/R.
When an operation overruns, the loop does not try to catch up. It advances to
the first grid deadline at or after "now" and counts the skipped slots as
`missed_ticks`.

With one writer connection each operation executes inline on the loop thread.
With N > 1 the loop dispatches operations to a pool of N threads, each
checking out an exclusive primary handle, so at most N operations are in
flight. Parameters are always generated on the loop thread, keeping the
operation stream deterministic for a given seed.
"""

from __future__ import annotations

import math
import queue
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rr_bench.backends.abstract import PrimaryConnection
from rr_bench.config import OperationMix
from rr_bench.domain.models import OpAction, WriteOperation
from rr_bench.drivers.task import WorkerTask
from rr_bench.errors import CallTimeoutError, EmptyRegistryError, OperationError
from rr_bench.metrics import MetricsRecorder, Outcome, SampleBuffer
from rr_bench.utils.logging import get_logger
from rr_bench.workload.generator import DeleteScope, OperationGenerator
from rr_bench.workload.registry import VisibleIdRegistry

log = get_logger(__name__)

# Poll interval while all writer slots are busy.
_SLOT_POLL = 0.05


@dataclass
class WriterStats:
    issued: Dict[str, int] = field(default_factory=lambda: {a.value: 0 for a in OpAction})
    missed_ticks: int = 0
    skipped: int = 0

    @property
    def total_issued(self) -> int:
        return sum(self.issued.values())

    def to_dict(self) -> Dict[str, object]:
        return {
            "issued": dict(self.issued),
            "total_issued": self.total_issued,
            "missed_ticks": self.missed_ticks,
            "skipped": self.skipped,
        }


class RateLimitedWriteDriver:
    """
    Paced producer of weighted-random write transactions.

    Parameters
    ----------
    connections : sequence of PrimaryConnection
        One exclusive handle per writer slot (at least one).
    registry : VisibleIdRegistry
        Source of FK and target ids; updated only after a write commits.
    recorder : MetricsRecorder
        Receives one `write` sample per executed operation.
    cancel : threading.Event
        Shared cancellation signal; also the sleep primitive.
    rate : float
        Target operations per second.
    mix : OperationMix
        Insert/update/delete weights.
    seed : int
        Seed for action selection and value generation.
    delete_scope : {"any", "corpus"}
        Whether deletes may target rows inserted during the run.
    clock : callable
        Monotonic clock in seconds.
    """

    def __init__(
        self,
        connections: Sequence[PrimaryConnection],
        registry: VisibleIdRegistry,
        recorder: MetricsRecorder,
        cancel: threading.Event,
        rate: float,
        mix: Optional[OperationMix] = None,
        seed: int = 42,
        delete_scope: DeleteScope = "any",
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if not connections:
            raise ValueError("the write driver needs at least one primary connection")
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.connections = list(connections)
        self.rate = rate
        self.period = 1.0 / rate
        self.stats = WriterStats()
        self._registry = registry
        self._cancel = cancel
        self._clock = clock
        self._rng = random.Random(seed)
        self._actions = (mix or OperationMix()).chooser()
        self._generator = OperationGenerator(registry, self._rng, delete_scope=delete_scope)
        if len(self.connections) == 1:
            labels = ["writer"]
        else:
            labels = [f"writer-{i}" for i in range(len(self.connections))]
        self._buffers: List[SampleBuffer] = [recorder.buffer(label, "write") for label in labels]
        self._fatal: Optional[BaseException] = None

    def task(
        self, on_fatal: Optional[Callable[[WorkerTask, BaseException], None]] = None
    ) -> WorkerTask:
        return WorkerTask("writer", self.run, closables=list(self.connections), on_fatal=on_fatal)

    def run(self) -> None:
        """Drive writes until the cancellation event is set."""
        if len(self.connections) == 1:
            self._run_inline()
        else:
            self._run_pooled()

    def _next_operation(self) -> Optional[WriteOperation]:
        action = self._actions.choose(self._rng)
        try:
            op = self._generator.generate(action)
        except EmptyRegistryError as exc:
            self.stats.skipped += 1
            log.debug("Write tick skipped", extra={"action": action.value, "reason": str(exc)})
            return None
        self.stats.issued[action.value] += 1
        return op

    def _advance(self, deadline: float) -> float:
        """Next deadline after a tick, skipping grid slots already in the past."""
        deadline += self.period
        now = self._clock()
        if now > deadline:
            missed = math.ceil((now - deadline) / self.period)
            self.stats.missed_ticks += missed
            deadline += missed * self.period
        return deadline

    def _wait_until(self, deadline: float) -> bool:
        """Sleep until `deadline`; returns False if cancelled first."""
        delay = deadline - self._clock()
        if delay > 0:
            return not self._cancel.wait(delay)
        return not self._cancel.is_set()

    def _run_inline(self) -> None:
        conn, buffer = self.connections[0], self._buffers[0]
        deadline = self._clock()
        while not self._cancel.is_set():
            if not self._wait_until(deadline):
                break
            op = self._next_operation()
            if op is not None:
                self._execute(conn, buffer, op)
            deadline = self._advance(deadline)

    def _run_pooled(self) -> None:
        slots = threading.BoundedSemaphore(len(self.connections))
        handles: "queue.SimpleQueue[Tuple[PrimaryConnection, SampleBuffer]]" = queue.SimpleQueue()
        for pair in zip(self.connections, self._buffers):
            handles.put(pair)

        with ThreadPoolExecutor(
            max_workers=len(self.connections), thread_name_prefix="writer"
        ) as pool:
            deadline = self._clock()
            while not self._cancel.is_set() and self._fatal is None:
                if not self._wait_until(deadline):
                    break
                if not self._acquire(slots):
                    break
                op = self._next_operation()
                if op is None:
                    slots.release()
                else:
                    pool.submit(self._dispatch, op, handles, slots)
                deadline = self._advance(deadline)
        if self._fatal is not None:
            raise self._fatal

    def _acquire(self, slots: threading.BoundedSemaphore) -> bool:
        while not slots.acquire(timeout=_SLOT_POLL):
            if self._cancel.is_set() or self._fatal is not None:
                return False
        return True

    def _dispatch(
        self,
        op: WriteOperation,
        handles: "queue.SimpleQueue[Tuple[PrimaryConnection, SampleBuffer]]",
        slots: threading.BoundedSemaphore,
    ) -> None:
        conn, buffer = handles.get()
        try:
            self._execute(conn, buffer, op)
        except Exception as exc:  # noqa: BLE001 - re-raised by the loop thread
            if self._fatal is None:
                self._fatal = exc
        finally:
            handles.put((conn, buffer))
            slots.release()

    def _execute(self, conn: PrimaryConnection, buffer: SampleBuffer, op: WriteOperation) -> None:
        """Run one write, record its sample and, on success, update the registry."""
        new_id: Optional[int] = None
        start = time.perf_counter()
        try:
            new_id = conn.execute_write(op)
            outcome = Outcome.SUCCESS
        except CallTimeoutError as exc:
            outcome = Outcome.TIMEOUT
            log.debug("Write timed out", extra={"operation": op.name, "error": str(exc)})
        except OperationError as exc:
            outcome = Outcome.ERROR
            log.debug("Write failed", extra={"operation": op.name, "error": str(exc)})
        buffer.record(op.name, start, time.perf_counter() - start, outcome)

        if outcome is Outcome.SUCCESS:
            self._apply(op, new_id)

    def _apply(self, op: WriteOperation, new_id: Optional[int]) -> None:
        if op.action is OpAction.INSERT:
            if new_id is None:
                log.warning("Insert returned no id", extra={"operation": op.name})
                return
            self._registry.add(
                op.entity,
                new_id,
                parents=op.parent_ids,
                ticker=op.values.get("ticker"),
                sector=op.values.get("sector"),
            )
        elif op.action is OpAction.DELETE and op.target_id is not None:
            self._registry.remove(op.entity, op.target_id)


__all__ = ["RateLimitedWriteDriver", "WriterStats"]
