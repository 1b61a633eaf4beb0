from __future__ import annotations

import threading
import time
from collections import Counter
from typing import List

import pytest

from rr_bench.backends.memory import MemoryBackend
from rr_bench.drivers.reader import ReplicaQueryDriver
from rr_bench.errors import BackendConnectionError
from rr_bench.metrics import MetricsRecorder, Outcome
from rr_bench.workload.catalog import get_query
from rr_bench.workload.registry import VisibleIdRegistry

LATENCY = 0.01
WINDOW = 1.0


def _run_pool(driver: ReplicaQueryDriver, cancel: threading.Event, seconds: float) -> List:
    tasks = driver.tasks()
    for task in tasks:
        task.start()
    time.sleep(seconds)
    cancel.set()
    for task in tasks:
        assert task.join(timeout=5.0)
    return tasks


def _throughput(concurrency: int, registry: VisibleIdRegistry) -> float:
    backend = MemoryBackend.seeded(customers=20, latency=LATENCY)
    recorder = MetricsRecorder()
    cancel = threading.Event()
    driver = ReplicaQueryDriver(
        [backend.open_replica() for _ in range(concurrency)], registry, recorder, cancel
    )
    _run_pool(driver, cancel, WINDOW)
    summary = recorder.finalize(WINDOW)
    return summary.category_successes("read") / WINDOW


def test_each_worker_records_under_its_own_producer(
    memory_backend: MemoryBackend, registry: VisibleIdRegistry
) -> None:
    recorder = MetricsRecorder()
    cancel = threading.Event()
    driver = ReplicaQueryDriver(
        [memory_backend.open_replica() for _ in range(3)], registry, recorder, cancel, seed=1
    )

    tasks = _run_pool(driver, cancel, 0.2)

    summary = recorder.finalize(0.2)
    assert driver.concurrency == 3
    assert [task.name for task in tasks] == ["reader-0", "reader-1", "reader-2"]
    for name in ("reader-0", "reader-1", "reader-2"):
        assert summary.producers[name].successes > 0
    assert all(sample.category == "read" for sample in recorder.samples())


def test_concurrency_scales_throughput(registry: VisibleIdRegistry) -> None:
    single = _throughput(1, registry)
    eight = _throughput(8, registry)

    assert eight > 3 * single
    assert eight <= 8 * (1 / LATENCY) * 1.05


def test_weights_restrict_the_query_mix(
    memory_backend: MemoryBackend, registry: VisibleIdRegistry
) -> None:
    recorder = MetricsRecorder()
    cancel = threading.Event()
    weights = {query: 0.0 for query in ("customer_portfolio", "top_performers")}
    weights["market_overview"] = 1.0
    driver = ReplicaQueryDriver(
        [memory_backend.open_replica()],
        registry,
        recorder,
        cancel,
        catalog=[get_query(name) for name in weights],
        weights=weights,
    )

    _run_pool(driver, cancel, 0.1)

    names = Counter(sample.name for sample in recorder.samples())
    assert set(names) == {"market_overview"}


def test_empty_registry_skips_parameterized_queries(memory_backend: MemoryBackend) -> None:
    recorder = MetricsRecorder()
    cancel = threading.Event()
    driver = ReplicaQueryDriver(
        [memory_backend.open_replica()],
        VisibleIdRegistry(),
        recorder,
        cancel,
        catalog=[get_query("customer_portfolio")],
    )

    _run_pool(driver, cancel, 0.1)

    assert driver.skipped[0] > 0
    assert recorder.samples() == []


def test_query_failures_and_timeouts_are_recorded(registry: VisibleIdRegistry) -> None:
    backend = MemoryBackend.seeded(customers=20)
    backend.failing.add("top_performers")
    recorder = MetricsRecorder()
    cancel = threading.Event()
    driver = ReplicaQueryDriver(
        [backend.open_replica()],
        registry,
        recorder,
        cancel,
        catalog=[get_query("top_performers"), get_query("high_value_customers")],
    )

    _run_pool(driver, cancel, 0.1)

    outcomes = {(s.name, s.outcome) for s in recorder.samples()}
    assert ("top_performers", Outcome.ERROR) in outcomes
    assert ("high_value_customers", Outcome.SUCCESS) in outcomes

    slow = MemoryBackend.seeded(customers=5, latency=0.2, call_timeout=0.01)
    recorder = MetricsRecorder()
    cancel = threading.Event()
    driver = ReplicaQueryDriver([slow.open_replica()], registry, recorder, cancel)
    _run_pool(driver, cancel, 0.1)
    assert {s.outcome for s in recorder.samples()} == {Outcome.TIMEOUT}


def test_lost_connection_fails_the_worker(
    memory_backend: MemoryBackend, registry: VisibleIdRegistry
) -> None:
    failed = []
    cancel = threading.Event()
    driver = ReplicaQueryDriver(
        [memory_backend.open_replica()], registry, MetricsRecorder(), cancel
    )
    memory_backend.drop_connections()

    tasks = driver.tasks(on_fatal=lambda task, exc: failed.append((task.name, exc)))
    tasks[0].start()

    assert tasks[0].join(timeout=2.0)
    assert isinstance(tasks[0].error, BackendConnectionError)
    assert failed and failed[0][0] == "reader-0"


def test_requires_a_connection(registry: VisibleIdRegistry) -> None:
    with pytest.raises(ValueError):
        ReplicaQueryDriver([], registry, MetricsRecorder(), threading.Event())
