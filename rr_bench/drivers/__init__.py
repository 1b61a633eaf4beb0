"""
Drivers package for the read-replica benchmark.

The write driver paces transactions against the primary; the read driver runs
a pool of query workers against the replica. Both run as `WorkerTask`s under
the coordinator's shared cancellation event.
"""

from rr_bench.drivers.reader import ReplicaQueryDriver
from rr_bench.drivers.task import WorkerTask
from rr_bench.drivers.writer import RateLimitedWriteDriver, WriterStats

__all__ = [
    "RateLimitedWriteDriver",
    "ReplicaQueryDriver",
    "WorkerTask",
    "WriterStats",
]
