"""
Benchmark coordinator: run lifecycle, deadline, cancellation and drain.

Usage (example from CLI):
    from rr_bench.config import RunConfig
    from rr_bench.orchestrator import run_benchmark

    config = RunConfig.from_settings(writer_url="sqlite:///bench.db", duration="30s")
    report = run_benchmark(config)
    print(report.status)

Outputs are saved to `results/` by default:
- `results/latest.json` (last run)
- `results/run-<timestamp>.json` (timestamped archive)
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from rr_bench.backends import Backend, build_backend
from rr_bench.backends.abstract import PrimaryConnection, ReplicaConnection
from rr_bench.config import RunConfig, format_duration
from rr_bench.drivers import RateLimitedWriteDriver, ReplicaQueryDriver, WorkerTask
from rr_bench.errors import BackendConnectionError, CallTimeoutError, ConfigError, OperationError
from rr_bench.metrics import MetricsRecorder, MetricsSummary
from rr_bench.reporter import run_progress
from rr_bench.utils.logging import get_logger
from rr_bench.utils.profiler import profile_block
from rr_bench.workload.catalog import QUERY_CATALOG, QueryDefinition
from rr_bench.workload.registry import VisibleIdRegistry

log = get_logger(__name__)

# Upper bound on waiting for a force-closed task to unwind.
_CLOSE_SETTLE = 1.0
_PROGRESS_TICK = 1.0


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.COMPLETED: 0,
            RunStatus.DEGRADED: 0,
            RunStatus.ABORTED: 1,
            RunStatus.FAILED: 3,
        }[self]


def _round_float(value: float, decimals: int = 2) -> float:
    """Round a float to specified decimal places for human-readable output."""
    return round(value, decimals)


@dataclass
class RunReport:
    """Everything a finished run produced, ready for rendering or persistence."""

    status: RunStatus
    backend: str
    config: RunConfig
    started_at: str
    run_duration: float
    cancel_reason: str
    summary: MetricsSummary
    writer: Dict[str, Any]
    reader_skipped: Dict[str, int]
    failures: List[Dict[str, str]] = field(default_factory=list)
    hung_tasks: List[str] = field(default_factory=list)
    failed_components: List[str] = field(default_factory=list)
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.started_at,
            "status": self.status.value,
            "backend": self.backend,
            "config": self.config.model_dump(mode="json"),
            "run_duration_seconds": _round_float(self.run_duration, 3),
            "cancel_reason": self.cancel_reason,
            "metrics": self.summary.to_dict(),
            "writer": self.writer,
            "readers": {"skipped": dict(self.reader_skipped)},
            "failures": list(self.failures),
            "hung_tasks": list(self.hung_tasks),
            "failed_components": list(self.failed_components),
            "profile": dict(self.profile),
        }


class BenchmarkCoordinator:
    """
    Runs one benchmark: Idle -> Running -> Draining -> Done.

    Parameters
    ----------
    config : RunConfig
        Validated run configuration.
    backend : Backend, optional
        Backend to use; built from the configured URLs when omitted.
    catalog : sequence of QueryDefinition
        Read queries issued by the reader pool.
    clock : callable
        Monotonic clock in seconds.
    """

    def __init__(
        self,
        config: RunConfig,
        backend: Optional[Backend] = None,
        catalog: Sequence[QueryDefinition] = QUERY_CATALOG,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config
        self.backend = backend or build_backend(
            config.writer_url,
            config.reader_url,
            call_timeout=config.call_timeout,
            writer_connections=config.writer_connections,
        )
        self.catalog = tuple(catalog)
        self.state = RunState.IDLE
        self.cancelled_at: Optional[float] = None
        self.cancel_reason: Optional[str] = None
        self.recorder: Optional[MetricsRecorder] = None
        self._clock = clock
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Broadcast cancellation to every worker; the first call wins.

        Returns True if this call triggered the cancellation.
        """
        with self._lock:
            if self._cancel.is_set():
                return False
            self.cancelled_at = self._clock()
            self.cancel_reason = reason
            self._cancel.set()
        log.info(f"[DRAINING] {reason}", extra={"reason": reason})
        return True

    def _on_fatal(self, task: WorkerTask, exc: BaseException) -> None:
        self.cancel(f"fatal error in {task.name}")

    def _open_connections(self) -> tuple[List[PrimaryConnection], List[ReplicaConnection]]:
        opened: List[Any] = []
        try:
            primaries = []
            for _ in range(self.config.writer_connections):
                primaries.append(self.backend.open_primary())
                opened.append(primaries[-1])
            replicas = []
            for _ in range(self.config.concurrency):
                replicas.append(self.backend.open_replica())
                opened.append(replicas[-1])
        except Exception:
            for conn in opened:
                conn.close()
            raise
        return primaries, replicas

    def _validate_queries(self, replica: ReplicaConnection) -> None:
        """Check each query's result columns against its definition."""
        for query in self.catalog:
            try:
                columns = replica.describe(query)
            except (OperationError, CallTimeoutError) as exc:
                raise ConfigError(f"cannot describe query {query.name}: {exc}") from exc
            if [c.lower() for c in columns] != list(query.columns):
                raise ConfigError(
                    f"query {query.name} returns columns {columns}, expected {list(query.columns)}"
                )

    def _seed_registry(self, primary: PrimaryConnection) -> VisibleIdRegistry:
        try:
            snapshot = primary.snapshot(timeout=self.config.snapshot_timeout)
        except (OperationError, CallTimeoutError) as exc:
            raise BackendConnectionError(f"cannot read the primary snapshot: {exc}") from exc
        registry = VisibleIdRegistry.from_snapshot(snapshot)
        log.info("Registry seeded", extra={"counts": registry.counts()})
        return registry

    def _await_deadline(self, start: float, progress: Callable[[float], None]) -> None:
        """Block until cancelled or the run window closes, ticking `progress`."""
        deadline = start + self.config.duration
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self.cancel("deadline reached")
                return
            if self._cancel.wait(min(remaining, _PROGRESS_TICK)):
                return
            progress(self._clock() - start)

    def _drain(self, tasks: Sequence[WorkerTask]) -> List[str]:
        """Join every task within the grace period; force-close and briefly re-join the rest."""
        deadline = self._clock() + self.config.grace_period
        hung: List[str] = []
        for task in tasks:
            if not task.join(max(0.0, deadline - self._clock())):
                hung.append(task.name)
        for task in tasks:
            if task.name in hung:
                log.error(
                    f"[HUNG] {task.name} still running after {self.config.grace_period:.1f}s grace",
                    extra={"task": task.name},
                )
                task.force_close()
        settle = self._clock() + min(self.config.grace_period, _CLOSE_SETTLE)
        for task in tasks:
            if task.name in hung:
                task.join(max(0.0, settle - self._clock()))
        return hung

    def run(self) -> RunReport:
        """
        Execute the run and return its report.

        Raises
        ------
        BackendConnectionError
            A required connection could not be opened or seeded; nothing started.
        ConfigError
            Query validation failed; nothing started.
        """
        if self.state is not RunState.IDLE:
            raise RuntimeError("a coordinator can only run once")
        config = self.config

        primaries, replicas = self._open_connections()
        connections: List[Any] = [*primaries, *replicas]
        try:
            registry = self._seed_registry(primaries[0])
            if config.validate_queries:
                self._validate_queries(replicas[0])
        except Exception:
            for conn in connections:
                conn.close()
            self.backend.close()
            raise

        recorder = self.recorder = MetricsRecorder()
        writer = RateLimitedWriteDriver(
            primaries,
            registry,
            recorder,
            self._cancel,
            rate=config.tps,
            mix=config.mix,
            seed=config.seed,
            delete_scope=config.delete_scope,
        )
        reader = ReplicaQueryDriver(
            replicas,
            registry,
            recorder,
            self._cancel,
            seed=config.seed,
            catalog=self.catalog,
            weights=config.query_weights,
        )
        tasks = [writer.task(self._on_fatal), *reader.tasks(self._on_fatal)]

        started_at = datetime.now(timezone.utc).isoformat()
        log.info(
            f"[RUN START] {self.backend.name} for {format_duration(config.duration)}",
            extra={
                "backend": self.backend.name,
                "duration": config.duration,
                "tps": config.tps,
                "concurrency": config.concurrency,
                "writer_connections": config.writer_connections,
                "seed": config.seed,
            },
        )
        with profile_block("benchmark") as profile:
            start = self._clock()
            self.state = RunState.RUNNING
            for task in tasks:
                task.start()
            try:
                with run_progress(config.duration, enabled=config.progress) as progress:
                    self._await_deadline(start, progress)
            except KeyboardInterrupt:
                self.cancel("interrupted")
            self.state = RunState.DRAINING
            hung = self._drain(tasks)

        run_duration = (self.cancelled_at or self._clock()) - start
        summary = recorder.finalize(run_duration)
        for conn in connections:
            conn.close()
        self.backend.close()

        failures = [
            {"task": task.name, "error": repr(task.error)} for task in tasks if task.error is not None
        ]
        failed_components = self._failed_components(summary, reader.concurrency)
        status = self._classify(summary, failures, hung, failed_components)
        self.state = RunState.DONE

        report = RunReport(
            status=status,
            backend=self.backend.name,
            config=config,
            started_at=started_at,
            run_duration=run_duration,
            cancel_reason=self.cancel_reason or "",
            summary=summary,
            writer=writer.stats.to_dict(),
            reader_skipped={f"reader-{i}": n for i, n in enumerate(reader.skipped)},
            failures=failures,
            hung_tasks=hung,
            failed_components=failed_components,
            profile=profile.to_dict(),
        )
        log.info(
            f"[RUN COMPLETE] status={status.value}",
            extra={
                "status": status.value,
                "samples": summary.total_samples,
                "run_duration": _round_float(run_duration, 3),
                "hung_tasks": hung,
            },
        )
        return report

    @staticmethod
    def _failed_components(summary: MetricsSummary, readers: int) -> List[str]:
        failed = []
        if summary.category_successes("write") == 0:
            failed.append("writer")
        for i in range(readers):
            stats = summary.producers.get(f"reader-{i}")
            if stats is None or stats.successes == 0:
                failed.append(f"reader-{i}")
        return failed

    @staticmethod
    def _classify(
        summary: MetricsSummary,
        failures: List[Dict[str, str]],
        hung: List[str],
        failed_components: List[str],
    ) -> RunStatus:
        if failures or hung:
            return RunStatus.ABORTED
        if failed_components:
            return RunStatus.FAILED
        if any(metric.errors or metric.timeouts for metric in summary.metrics):
            return RunStatus.DEGRADED
        return RunStatus.COMPLETED


def persist_report(payload: dict, results_dir: Path) -> Path:
    """Write `latest.json` and a timestamped archive; returns the archive path."""
    results_dir.mkdir(parents=True, exist_ok=True)
    latest_path = results_dir / "latest.json"
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    archive_path = results_dir / f"run-{timestamp}.json"

    with latest_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    with archive_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)

    log.info("Results persisted", extra={"latest": str(latest_path), "archive": str(archive_path)})
    return archive_path


def run_benchmark(config: RunConfig, backend: Optional[Backend] = None) -> RunReport:
    """
    Run one benchmark and optionally persist its report.

    Parameters
    ----------
    config : RunConfig
        Validated run configuration; `persist` and `results_dir` control output.
    backend : Backend, optional
        Pre-built backend (tests); built from the configured URLs otherwise.
    """
    coordinator = BenchmarkCoordinator(config, backend=backend)
    report = coordinator.run()
    if config.persist:
        persist_report(report.to_dict(), Path(config.results_dir))
    return report


__all__ = [
    "BenchmarkCoordinator",
    "RunReport",
    "RunState",
    "RunStatus",
    "persist_report",
    "run_benchmark",
]
