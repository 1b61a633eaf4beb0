"""
rr-bench - Price-performance benchmark harness for database read replicas.

Drives a rate-controlled synthetic OLTP write stream against a primary while a
pool of workers issues a fixed catalog of analytical queries against the
replica, then reports per-query latency percentiles and throughput:

- Paced, weighted-random writes with FK-valid parameters
- Independent read workers, one dedicated replica connection each
- One deadline and cancellation signal for both workloads
- Lossless per-producer metrics with a single merge step
- SQLite, PostgreSQL and in-memory backends behind one interface
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from rr_bench.backends import Backend, build_backend
from rr_bench.config import RunConfig, Settings, get_settings
from rr_bench.errors import (
    BackendConnectionError,
    BenchError,
    CallTimeoutError,
    ConfigError,
    OperationError,
)
from rr_bench.metrics import MetricsRecorder, MetricsSummary
from rr_bench.orchestrator import BenchmarkCoordinator, RunReport, RunStatus, run_benchmark
from rr_bench.utils.logging import configure_logging, get_logger
from rr_bench.utils.profiler import ProfileStats, profile_block

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "RunConfig",
    "Settings",
    "get_settings",
    # Errors
    "BackendConnectionError",
    "BenchError",
    "CallTimeoutError",
    "ConfigError",
    "OperationError",
    # Backends
    "Backend",
    "build_backend",
    # Orchestration
    "BenchmarkCoordinator",
    "RunReport",
    "RunStatus",
    "run_benchmark",
    # Metrics
    "MetricsRecorder",
    "MetricsSummary",
    # Logging
    "configure_logging",
    "get_logger",
    # Profiling
    "ProfileStats",
    "profile_block",
]
