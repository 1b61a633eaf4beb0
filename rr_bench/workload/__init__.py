"""
Workload package: the query catalog, the visible id registry and the write
operation generator shared by the drivers.
"""

from rr_bench.workload.catalog import (
    QUERY_CATALOG,
    ParamKind,
    QueryDefinition,
    WeightedChoice,
    get_query,
    query_chooser,
    sample_params,
)
from rr_bench.workload.generator import OperationGenerator
from rr_bench.workload.registry import RegistrySnapshot, VisibleIdRegistry

__all__ = [
    "OperationGenerator",
    "ParamKind",
    "QUERY_CATALOG",
    "QueryDefinition",
    "RegistrySnapshot",
    "VisibleIdRegistry",
    "WeightedChoice",
    "get_query",
    "query_chooser",
    "sample_params",
]
