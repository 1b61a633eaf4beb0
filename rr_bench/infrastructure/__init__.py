"""
Infrastructure package for the read-replica benchmark.

Centralizes database plumbing outside the hot path: PostgreSQL connection
factories and pooling, schema setup, and corpus loading. Keep this layer
focused on I/O and resource management, decoupled from driver/coordinator logic.
"""

from rr_bench.infrastructure.db_factory import PoolManager, get_sync_connection, get_sync_pool
from rr_bench.infrastructure.loader import apply_schema, load_dataset, read_corpus, schema_sql

__all__ = [
    "PoolManager",
    "apply_schema",
    "get_sync_connection",
    "get_sync_pool",
    "load_dataset",
    "read_corpus",
    "schema_sql",
]
