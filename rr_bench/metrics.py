"""
Concurrent-safe latency and outcome aggregation.

Every producer (the writer, each reader worker) owns a private append-only
`SampleBuffer`, so recording never contends across producers. `finalize()`
runs once, after all producers have stopped, and merges the buffers into
per-name aggregates with nearest-rank percentiles.

Usage:
    recorder = MetricsRecorder()
    buf = recorder.buffer("reader-0", category="read")
    buf.record("top_performers", start=t0, duration=0.012, outcome=Outcome.SUCCESS, rows=10)
    summary = recorder.finalize(run_duration=30.0)
"""

from __future__ import annotations

import math
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from rr_bench.utils.logging import get_logger

log = get_logger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Sample:
    name: str
    category: str
    start: float
    duration: float
    outcome: Outcome
    rows: Optional[int] = None


def nearest_rank(sorted_values: Sequence[float], percentile: float) -> float:
    """
    Nearest-rank percentile on an ascending sequence (no interpolation).

    The rank is `ceil(p/100 * n)`, clamped to `[1, n]`.
    """
    if not sorted_values:
        raise ValueError("percentile of an empty sample set")
    if not 0 < percentile <= 100:
        raise ValueError(f"percentile must be in (0, 100], got {percentile}")
    rank = math.ceil(percentile / 100.0 * len(sorted_values))
    return sorted_values[min(max(rank, 1), len(sorted_values)) - 1]


def _population_stddev(values: Sequence[float]) -> float:
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


@dataclass
class AggregateMetric:
    """Per-name aggregate; latencies are in seconds."""

    name: str
    category: str
    count: int
    successes: int
    errors: int
    timeouts: int
    min: float
    max: float
    mean: float
    p50: float
    p95: float
    p99: float
    throughput: float
    rows: int = 0
    stddev: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("min", "max", "mean", "stddev", "p50", "p95", "p99"):
            payload[f"{key}_ms"] = round(payload.pop(key) * 1000.0, 3)
        payload["throughput"] = round(self.throughput, 3)
        return payload


@dataclass
class ProducerStats:
    producer: str
    category: str
    samples: int = 0
    successes: int = 0
    errors: int = 0
    timeouts: int = 0


@dataclass
class MetricsSummary:
    run_duration: float
    metrics: List[AggregateMetric] = field(default_factory=list)
    producers: Dict[str, ProducerStats] = field(default_factory=dict)
    late_samples: int = 0

    @property
    def total_samples(self) -> int:
        return sum(p.samples for p in self.producers.values())

    def by_name(self) -> Dict[str, AggregateMetric]:
        return {metric.name: metric for metric in self.metrics}

    def category_successes(self, category: str) -> int:
        return sum(p.successes for p in self.producers.values() if p.category == category)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_duration_seconds": round(self.run_duration, 3),
            "total_samples": self.total_samples,
            "metrics": [metric.to_dict() for metric in self.metrics],
            "producers": {name: asdict(stats) for name, stats in self.producers.items()},
            "late_samples": self.late_samples,
        }


class SampleBuffer:
    """
    Append-only sample list owned by exactly one producer.

    A producer that outlives `finalize()` (a hung worker whose call returns
    after the drain gave up on it) has its late samples counted on the summary
    and otherwise dropped.
    """

    def __init__(self, owner: "MetricsRecorder", producer: str, category: str) -> None:
        self._owner = owner
        self.producer = producer
        self.category = category
        self.samples: List[Sample] = []

    def record(
        self,
        name: str,
        start: float,
        duration: float,
        outcome: Outcome,
        rows: Optional[int] = None,
    ) -> None:
        if self._owner.finalized:
            self._owner.count_late(self.producer)
            return
        self.samples.append(Sample(name, self.category, start, duration, outcome, rows))

    def __len__(self) -> int:
        return len(self.samples)


class MetricsRecorder:
    """
    Collects samples from many producers and merges them once.

    `buffer()` hands out a dedicated buffer per producer. `record()` is a
    convenience for ad-hoc callers: it routes to a per-thread buffer, so it is
    equally safe to call from any number of threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buffers: List[SampleBuffer] = []
        self._local = threading.local()
        self._summary: Optional[MetricsSummary] = None

    @property
    def finalized(self) -> bool:
        return self._summary is not None

    @property
    def late_samples(self) -> int:
        return self._summary.late_samples if self._summary is not None else 0

    def count_late(self, producer: str) -> None:
        with self._lock:
            if self._summary is not None:
                self._summary.late_samples += 1
        log.debug("Sample recorded after finalize dropped", extra={"producer": producer})

    def buffer(self, producer: str, category: str) -> SampleBuffer:
        buf = SampleBuffer(self, producer, category)
        with self._lock:
            if self._summary is not None:
                raise RuntimeError("cannot register producers after finalize()")
            self._buffers.append(buf)
        return buf

    def record(
        self,
        name: str,
        duration: float,
        outcome: Outcome,
        rows: Optional[int] = None,
        start: Optional[float] = None,
        category: str = "read",
    ) -> None:
        buffers: Optional[Dict[str, SampleBuffer]] = getattr(self._local, "buffers", None)
        if buffers is None:
            buffers = self._local.buffers = {}
        buf = buffers.get(category)
        if buf is None:
            thread = threading.current_thread()
            buf = buffers[category] = self.buffer(f"{thread.name}-{thread.ident}", category)
        buf.record(
            name,
            start if start is not None else time.perf_counter() - duration,
            duration,
            outcome,
            rows,
        )

    def samples(self) -> List[Sample]:
        """All recorded samples; only meaningful once producers have stopped."""
        with self._lock:
            buffers = list(self._buffers)
        return [sample for buf in buffers for sample in buf.samples]

    def finalize(self, run_duration: float) -> MetricsSummary:
        """
        Merge every buffer into per-name aggregates.

        Must be called after all producers have stopped. The first call
        computes the summary; later calls return it unchanged.
        """
        with self._lock:
            if self._summary is not None:
                return self._summary
            summary = MetricsSummary(run_duration=run_duration)
            durations: Dict[str, List[float]] = defaultdict(list)
            grouped: Dict[str, List[Sample]] = defaultdict(list)
            for buf in self._buffers:
                stats = summary.producers.setdefault(
                    buf.producer, ProducerStats(buf.producer, buf.category)
                )
                for sample in buf.samples:
                    grouped[sample.name].append(sample)
                    durations[sample.name].append(sample.duration)
                    stats.samples += 1
                    if sample.outcome is Outcome.SUCCESS:
                        stats.successes += 1
                    elif sample.outcome is Outcome.TIMEOUT:
                        stats.timeouts += 1
                    else:
                        stats.errors += 1

            for name in sorted(grouped):
                samples = grouped[name]
                ordered = sorted(durations[name])
                successes = sum(1 for s in samples if s.outcome is Outcome.SUCCESS)
                summary.metrics.append(
                    AggregateMetric(
                        name=name,
                        category=samples[0].category,
                        count=len(samples),
                        successes=successes,
                        errors=sum(1 for s in samples if s.outcome is Outcome.ERROR),
                        timeouts=sum(1 for s in samples if s.outcome is Outcome.TIMEOUT),
                        min=ordered[0],
                        max=ordered[-1],
                        mean=sum(ordered) / len(ordered),
                        stddev=_population_stddev(ordered),
                        p50=nearest_rank(ordered, 50),
                        p95=nearest_rank(ordered, 95),
                        p99=nearest_rank(ordered, 99),
                        throughput=successes / run_duration if run_duration > 0 else 0.0,
                        rows=sum(s.rows or 0 for s in samples),
                    )
                )
            self._summary = summary
            return summary


__all__ = [
    "AggregateMetric",
    "MetricsRecorder",
    "MetricsSummary",
    "Outcome",
    "ProducerStats",
    "Sample",
    "SampleBuffer",
    "nearest_rank",
]
