from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path

import pytest

from rr_bench.backends.memory import MemoryBackend, MemoryReplica
from rr_bench.domain.models import EntityKind
from rr_bench.errors import BackendConnectionError, ConfigError
from rr_bench.orchestrator import BenchmarkCoordinator, RunState, RunStatus, run_benchmark

CUSTOMERS = 20
CANCEL_SLACK = 0.05
UNRESPONSIVE_READ = 0.4


class StuckReplica(MemoryReplica):
    """Replica whose reads block until the connection is closed."""

    def execute_read(self, query, params):
        self._closed.wait()
        raise BackendConnectionError("replica closed while stuck")


class StuckBackend(MemoryBackend):
    def open_replica(self) -> StuckReplica:
        return self._track(StuckReplica(self))


class UnresponsiveReplica(MemoryReplica):
    """Replica whose reads ignore close and return late."""

    def execute_read(self, query, params):
        time.sleep(UNRESPONSIVE_READ)
        return 0


class UnresponsiveBackend(MemoryBackend):
    def open_replica(self) -> UnresponsiveReplica:
        return self._track(UnresponsiveReplica(self))


def _backend(**kwargs) -> MemoryBackend:
    return MemoryBackend.seeded(customers=CUSTOMERS, **kwargs)


def test_completed_run_reports_both_sides(run_config) -> None:
    backend = _backend()
    coordinator = BenchmarkCoordinator(run_config(), backend=backend)

    report = coordinator.run()

    assert report.status is RunStatus.COMPLETED
    assert report.exit_code == 0
    assert coordinator.state is RunState.DONE
    assert report.cancel_reason == "deadline reached"
    assert report.run_duration == pytest.approx(0.5, abs=0.1)
    assert report.summary.category_successes("write") > 0
    assert report.summary.producers["reader-0"].successes > 0
    assert report.summary.producers["reader-1"].successes > 0
    assert backend.open_handles == 0


def test_report_serializes_to_json(run_config) -> None:
    report = BenchmarkCoordinator(run_config(), backend=_backend()).run()

    payload = json.loads(json.dumps(report.to_dict()))

    assert payload["status"] == "completed"
    assert payload["backend"] == "memory"
    assert payload["config"]["concurrency"] == 2
    assert payload["readers"]["skipped"].keys() == {"reader-0", "reader-1"}
    assert payload["metrics"]["total_samples"] > 0
    assert payload["profile"]["label"] == "benchmark"


def test_no_call_starts_after_cancellation(run_config) -> None:
    coordinator = BenchmarkCoordinator(run_config(tps=200.0, concurrency=4), backend=_backend())

    coordinator.run()

    samples = coordinator.recorder.samples()
    assert samples
    assert max(sample.start for sample in samples) <= coordinator.cancelled_at + CANCEL_SLACK


def test_lost_connection_aborts_the_run_early(run_config) -> None:
    backend = _backend()
    coordinator = BenchmarkCoordinator(run_config(duration=10.0), backend=backend)
    timer = threading.Timer(0.2, backend.drop_connections)
    timer.start()

    started = time.perf_counter()
    report = coordinator.run()
    timer.cancel()

    assert time.perf_counter() - started < 5.0
    assert report.status is RunStatus.ABORTED
    assert report.exit_code == 1
    assert report.cancel_reason.startswith("fatal error in ")
    assert report.failures


def test_hung_reader_is_force_closed_after_grace(run_config) -> None:
    backend = StuckBackend.seeded(customers=CUSTOMERS)
    coordinator = BenchmarkCoordinator(
        run_config(duration=0.3, concurrency=1, grace_period=0.2), backend=backend
    )

    started = time.perf_counter()
    report = coordinator.run()

    assert time.perf_counter() - started < 3.0
    assert report.status is RunStatus.ABORTED
    assert report.hung_tasks == ["reader-0"]
    assert backend.open_handles == 0
    # the force-closed reader unwinds before the report is built
    assert [failure["task"] for failure in report.failures] == ["reader-0"]


def test_all_writes_failing_is_a_failed_run(run_config) -> None:
    backend = _backend()
    for action in ("insert", "update", "delete"):
        backend.failing.update(f"{action}_{kind.value}" for kind in EntityKind)

    report = BenchmarkCoordinator(run_config(), backend=backend).run()

    assert report.status is RunStatus.FAILED
    assert report.exit_code == 3
    assert report.failed_components == ["writer"]


def test_some_query_errors_degrade_the_run(run_config) -> None:
    backend = _backend()
    backend.failing.add("top_performers")

    report = BenchmarkCoordinator(run_config(), backend=backend).run()

    assert report.status is RunStatus.DEGRADED
    assert report.exit_code == 0
    assert report.summary.by_name()["top_performers"].errors > 0


def test_mismatched_query_columns_stop_before_starting(run_config) -> None:
    backend = _backend()
    backend.columns["top_performers"] = ["wrong"]
    coordinator = BenchmarkCoordinator(run_config(), backend=backend)

    with pytest.raises(ConfigError, match="top_performers"):
        coordinator.run()

    assert coordinator.recorder is None
    assert backend.open_handles == 0


def test_validation_can_be_skipped(run_config) -> None:
    backend = _backend()
    backend.columns["top_performers"] = ["wrong"]

    report = BenchmarkCoordinator(run_config(validate_queries=False), backend=backend).run()

    assert report.status is RunStatus.COMPLETED


def test_unreachable_backend_raises_connection_error(run_config) -> None:
    backend = _backend()
    backend.refuse_connections = True

    with pytest.raises(BackendConnectionError):
        BenchmarkCoordinator(run_config(), backend=backend).run()


def test_cancel_is_idempotent_and_first_reason_wins(run_config) -> None:
    coordinator = BenchmarkCoordinator(run_config(duration=10.0), backend=_backend())
    threading.Timer(0.1, coordinator.cancel, args=("operator stop",)).start()

    report = coordinator.run()

    assert report.cancel_reason == "operator stop"
    assert coordinator.cancel("again") is False
    assert report.run_duration < 2.0


def test_a_coordinator_runs_once(run_config) -> None:
    coordinator = BenchmarkCoordinator(run_config(duration=0.1), backend=_backend())
    coordinator.run()

    with pytest.raises(RuntimeError):
        coordinator.run()


def test_run_benchmark_persists_results(run_config, tmp_path: Path) -> None:
    results = tmp_path / "results"
    config = run_config(duration=0.2, persist=True, results_dir=results)

    report = run_benchmark(config, backend=_backend())

    latest = json.loads((results / "latest.json").read_text(encoding="utf-8"))
    assert latest["status"] == report.status.value
    assert len(list(results.glob("run-*.json"))) == 1


def test_reader_outliving_the_drain_only_adds_late_samples(run_config, caplog) -> None:
    backend = UnresponsiveBackend.seeded(customers=CUSTOMERS)
    coordinator = BenchmarkCoordinator(
        run_config(duration=0.1, concurrency=1, grace_period=0.05), backend=backend
    )

    with caplog.at_level(logging.INFO):
        report = coordinator.run()
        time.sleep(UNRESPONSIVE_READ + 0.2)

    assert report.status is RunStatus.ABORTED
    assert report.hung_tasks == ["reader-0"]
    assert coordinator.recorder.late_samples >= 1
    assert report.summary.late_samples == coordinator.recorder.late_samples
    assert not [r for r in caplog.records if r.getMessage().startswith("[WORKER FAILED]")]


def test_snapshot_is_bounded_separately_from_calls(run_config) -> None:
    config = run_config(
        duration=0.2, call_timeout=0.05, snapshot_timeout=1.0, validate_queries=False
    )
    backend = _backend(latency=0.2, call_timeout=config.call_timeout)

    report = BenchmarkCoordinator(config, backend=backend).run()

    assert report.cancel_reason == "deadline reached"
    assert report.summary.producers["writer"].timeouts > 0

    strict = run_config(duration=0.2, call_timeout=0.05, snapshot_timeout=0.05)
    with pytest.raises(BackendConnectionError):
        BenchmarkCoordinator(strict, backend=_backend(latency=0.2, call_timeout=0.05)).run()


def test_deadline_wait_ticks_progress_until_the_deadline(run_config) -> None:
    coordinator = BenchmarkCoordinator(run_config(duration=1.3), backend=_backend())
    ticks: list[float] = []

    coordinator._await_deadline(time.perf_counter(), ticks.append)

    assert ticks == [pytest.approx(1.0, abs=0.15), pytest.approx(1.3, abs=0.15)]
    assert coordinator.cancel_reason == "deadline reached"


def test_run_with_progress_bar(run_config) -> None:
    report = BenchmarkCoordinator(run_config(duration=0.2, progress=True), backend=_backend()).run()

    assert report.status is RunStatus.COMPLETED
