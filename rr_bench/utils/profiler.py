"""
Harness resource footprint for benchmark runs.

The coordinator wraps the Running and Draining phases in `profile_block` so the
report carries the harness's own resource usage next to the database
latencies. A run whose CPU is pinned at 100% is measuring the harness, not the
replica.

Sampled with psutil on a background thread:
- peak resident set size
- peak thread count (driver workers, pool threads, the sampler itself)
- process CPU percent over the whole block

Usage:
    from rr_bench.utils.profiler import profile_block

    with profile_block("benchmark") as stats:
        run()

    print(stats.to_dict())
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """Measurements of one profiled block."""

    label: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    duration_seconds: float = 0.0
    peak_rss_bytes: Optional[int] = None
    peak_threads: Optional[int] = None
    cpu_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "duration_seconds": round(self.duration_seconds, 2),
            "peak_rss_bytes": self.peak_rss_bytes,
            "peak_threads": self.peak_threads,
            "cpu_percent": round(self.cpu_percent, 1) if self.cpu_percent is not None else None,
        }


class _Sampler(threading.Thread):
    def __init__(self, process: psutil.Process, interval: float, label: str) -> None:
        super().__init__(name=f"profiler-{label}", daemon=True)
        self.process = process
        self.interval = interval
        self.peak_rss = 0
        self.peak_threads = 0
        self.stopped = threading.Event()
        self.sample()

    def sample(self) -> None:
        with self.process.oneshot():
            self.peak_rss = max(self.peak_rss, self.process.memory_info().rss)
            self.peak_threads = max(self.peak_threads, self.process.num_threads())

    def run(self) -> None:
        while not self.stopped.wait(self.interval):
            try:
                self.sample()
            except psutil.Error:
                return


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 50) -> Generator[ProfileStats, None, None]:
    """
    Profile the enclosed block.

    Parameters
    ----------
    label : str
        Name recorded on the stats.
    sample_interval_ms : int
        Milliseconds between RSS and thread-count samples.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    sampler = _Sampler(process, sample_interval_ms / 1000.0, label)

    # cpu_percent measures from the previous call
    process.cpu_percent(interval=None)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        sampler.stopped.set()
        sampler.join(timeout=1.0)
        stats.peak_rss_bytes = sampler.peak_rss or None
        stats.peak_threads = sampler.peak_threads or None
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "profile_block"]
