"""
Replica query driver: a pool of independent read workers.

Each worker owns exactly one replica connection and loops until cancelled:
draw a query (uniformly, or by configured weight), sample its parameters from
the visible id registry, execute, record a sample. Workers share nothing but
the registry (read-only) and the recorder (one buffer each). Worker `i` seeds
its random source with `seed + i`.
"""

from __future__ import annotations

import random
import threading
import time
from typing import Callable, List, Mapping, Optional, Sequence

from rr_bench.backends.abstract import ReplicaConnection
from rr_bench.drivers.task import WorkerTask
from rr_bench.errors import CallTimeoutError, EmptyRegistryError, OperationError
from rr_bench.metrics import MetricsRecorder, Outcome, SampleBuffer
from rr_bench.utils.logging import get_logger
from rr_bench.workload.catalog import QUERY_CATALOG, QueryDefinition, query_chooser, sample_params
from rr_bench.workload.registry import VisibleIdRegistry

log = get_logger(__name__)

# Pause after a skipped draw.
_SKIP_BACKOFF = 0.001


class ReplicaQueryDriver:
    """
    Pool of C read workers, one per replica connection.

    Parameters
    ----------
    connections : sequence of ReplicaConnection
        One dedicated handle per worker; the pool size is `len(connections)`.
    registry : VisibleIdRegistry
        Parameter source; never mutated here.
    recorder : MetricsRecorder
        Receives `read` samples under producers `reader-0` .. `reader-{C-1}`.
    cancel : threading.Event
        Checked at every loop head; in-flight queries are never interrupted.
    seed : int
        Base seed; worker `i` uses `seed + i`.
    catalog : sequence of QueryDefinition
        Queries to draw from.
    weights : mapping, optional
        Per-query selection weights; uniform when omitted.
    """

    def __init__(
        self,
        connections: Sequence[ReplicaConnection],
        registry: VisibleIdRegistry,
        recorder: MetricsRecorder,
        cancel: threading.Event,
        seed: int = 42,
        catalog: Sequence[QueryDefinition] = QUERY_CATALOG,
        weights: Optional[Mapping[str, float]] = None,
    ) -> None:
        if not connections:
            raise ValueError("the read driver needs at least one replica connection")
        self.connections = list(connections)
        self.seed = seed
        self._registry = registry
        self._cancel = cancel
        self._chooser = query_chooser(catalog, weights)
        self._buffers: List[SampleBuffer] = [
            recorder.buffer(f"reader-{i}", "read") for i in range(len(self.connections))
        ]
        self.skipped: List[int] = [0] * len(self.connections)

    @property
    def concurrency(self) -> int:
        return len(self.connections)

    def tasks(
        self, on_fatal: Optional[Callable[[WorkerTask, BaseException], None]] = None
    ) -> List[WorkerTask]:
        return [
            WorkerTask(
                f"reader-{i}",
                lambda i=i: self.run_worker(i),
                closables=[conn],
                on_fatal=on_fatal,
            )
            for i, conn in enumerate(self.connections)
        ]

    def run_worker(self, index: int) -> None:
        """Loop one worker until the cancellation event is set."""
        rng = random.Random(self.seed + index)
        conn = self.connections[index]
        buffer = self._buffers[index]
        while not self._cancel.is_set():
            query = self._chooser.choose(rng)
            try:
                params = sample_params(query, self._registry, rng)
            except EmptyRegistryError:
                self.skipped[index] += 1
                self._cancel.wait(_SKIP_BACKOFF)
                continue

            rows: Optional[int] = None
            start = time.perf_counter()
            try:
                rows = conn.execute_read(query, params)
                outcome = Outcome.SUCCESS
            except CallTimeoutError as exc:
                outcome = Outcome.TIMEOUT
                log.debug("Read timed out", extra={"query": query.name, "error": str(exc)})
            except OperationError as exc:
                outcome = Outcome.ERROR
                log.debug("Read failed", extra={"query": query.name, "error": str(exc)})
            buffer.record(query.name, start, time.perf_counter() - start, outcome, rows)


__all__ = ["ReplicaQueryDriver"]
