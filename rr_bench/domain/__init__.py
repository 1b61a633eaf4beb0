"""
Domain package for the read-replica benchmark.

Exports the entity models, table metadata and the write-operation variant used
across the workload, drivers and backends. Keep this package focused on data
definitions and validation concerns.
"""

from rr_bench.domain.models import (
    ENTITY_SCHEMAS,
    LOAD_ORDER,
    Account,
    Customer,
    EntityKind,
    EntitySchema,
    MarketData,
    OpAction,
    Order,
    Security,
    Trade,
    WriteOperation,
)

__all__ = [
    "Account",
    "Customer",
    "ENTITY_SCHEMAS",
    "EntityKind",
    "EntitySchema",
    "LOAD_ORDER",
    "MarketData",
    "OpAction",
    "Order",
    "Security",
    "Trade",
    "WriteOperation",
]
