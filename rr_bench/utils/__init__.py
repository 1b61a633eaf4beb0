"""
Utilities package for the read-replica benchmark.

Exports shared helpers for logging and profiling.
Keep this package lightweight and free of domain-specific logic.
"""

from rr_bench.utils.logging import configure_logging, get_logger
from rr_bench.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
