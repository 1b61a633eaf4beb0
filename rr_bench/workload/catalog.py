"""
Workload catalog: the fixed set of analytical read queries and the weighted
chooser shared by the write and read drivers.

Each query is a view shipped with the schema (`rr_bench/sql/*.sql`); the
engine treats it as an opaque name with parameter slots and issues
`SELECT * FROM <view> [WHERE <column> = ?]`. Expected columns are only used by
the pre-run shape validation, never for scoring.
"""

from __future__ import annotations

import bisect
import itertools
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Generic, Mapping, Optional, Sequence, Tuple, TypeVar

from rr_bench.domain.models import EntityKind
from rr_bench.workload.registry import VisibleIdRegistry

T = TypeVar("T")


class ParamKind(str, Enum):
    CUSTOMER_ID = "customer_id"
    ACCOUNT_ID = "account_id"
    SECURITY_ID = "security_id"
    SECTOR = "sector"
    TICKER = "ticker"

    @property
    def column(self) -> str:
        return self.value


_ID_PARAMS: Dict[ParamKind, EntityKind] = {
    ParamKind.CUSTOMER_ID: EntityKind.CUSTOMER,
    ParamKind.ACCOUNT_ID: EntityKind.ACCOUNT,
    ParamKind.SECURITY_ID: EntityKind.SECURITY,
}


@dataclass(frozen=True)
class QueryDefinition:
    """
    A named, parameterized read against the replica.

    Attributes
    ----------
    name : str
        View name; also the metric name.
    params : tuple[ParamKind, ...]
        Parameter slots, bound in order to `WHERE <column> = ?` clauses.
    source : EntityKind
        Driving table of the view; used by the memory backend to size results.
    columns : tuple[str, ...]
        Expected result columns.
    weight : float
        Relative selection weight when the catalog is sampled by weight.
    """

    name: str
    params: Tuple[ParamKind, ...]
    source: EntityKind
    columns: Tuple[str, ...]
    weight: float = 1.0

    def sql(self, placeholder: str = "?") -> str:
        statement = f"SELECT * FROM {self.name}"
        if self.params:
            clauses = " AND ".join(f"{param.column} = {placeholder}" for param in self.params)
            statement = f"{statement} WHERE {clauses}"
        return statement


def _query(
    name: str, param: Optional[ParamKind], source: EntityKind, *columns: str
) -> QueryDefinition:
    return QueryDefinition(
        name=name,
        params=(param,) if param is not None else (),
        source=source,
        columns=columns,
    )


QUERY_CATALOG: Tuple[QueryDefinition, ...] = (
    _query(
        "customer_portfolio",
        ParamKind.CUSTOMER_ID,
        EntityKind.ACCOUNT,
        "customer_id", "name", "account_id", "ticker", "security_name", "total_value",
    ),
    _query(
        "top_performers",
        None,
        EntityKind.SECURITY,
        "ticker", "name", "total_traded_volume", "rank",
    ),
    _query(
        "market_overview",
        ParamKind.SECTOR,
        EntityKind.SECURITY,
        "sector", "avg_price", "total_volume", "last_update",
    ),
    _query(
        "recent_large_trades",
        ParamKind.ACCOUNT_ID,
        EntityKind.TRADE,
        "trade_id", "account_id", "ticker", "quantity", "price", "trade_date",
    ),
    _query(
        "customer_order_book",
        ParamKind.CUSTOMER_ID,
        EntityKind.ACCOUNT,
        "customer_id", "name", "open_orders", "completed_orders",
    ),
    _query(
        "sector_performance",
        ParamKind.SECTOR,
        EntityKind.SECURITY,
        "sector", "avg_trade_price", "trade_count", "total_volume",
    ),
    _query(
        "account_activity_summary",
        ParamKind.ACCOUNT_ID,
        EntityKind.TRADE,
        "account_id", "trade_count", "total_trade_value", "last_trade_date",
    ),
    _query(
        "daily_market_movements",
        ParamKind.SECURITY_ID,
        EntityKind.MARKET_DATA,
        "security_id", "ticker", "name", "current_price", "previous_price",
        "price_change", "market_date",
    ),
    _query(
        "high_value_customers",
        None,
        EntityKind.CUSTOMER,
        "customer_id", "name", "total_balance",
    ),
    _query(
        "pending_orders_summary",
        ParamKind.TICKER,
        EntityKind.SECURITY,
        "ticker", "name", "pending_order_count", "pending_volume", "avg_limit_price",
    ),
    _query(
        "trade_volume_by_hour",
        None,
        EntityKind.TRADE,
        "trade_hour", "trade_count", "total_quantity",
    ),
    _query(
        "top_securities_by_sector",
        ParamKind.SECTOR,
        EntityKind.SECURITY,
        "sector", "ticker", "name", "total_volume", "sector_rank",
    ),
    _query(
        "recent_trades_by_account",
        ParamKind.ACCOUNT_ID,
        EntityKind.TRADE,
        "account_id", "ticker", "quantity", "price", "trade_date",
    ),
    _query(
        "order_fulfillment_rates",
        ParamKind.CUSTOMER_ID,
        EntityKind.ACCOUNT,
        "customer_id", "name", "total_orders", "fulfilled_orders", "fulfillment_rate",
    ),
    _query(
        "sector_order_activity",
        ParamKind.SECTOR,
        EntityKind.SECURITY,
        "sector", "order_count", "total_quantity", "avg_limit_price",
    ),
    _query(
        "cascading_order_cancellation_alert",
        None,
        EntityKind.ORDER,
        "order_id", "account_id", "security_id", "status", "order_date",
        "parent_order_id", "cancellation_depth",
    ),
)


def get_query(name: str) -> QueryDefinition:
    for query in QUERY_CATALOG:
        if query.name == name:
            return query
    raise KeyError(f"Unknown query '{name}'. Available: {', '.join(q.name for q in QUERY_CATALOG)}")


class WeightedChoice(Generic[T]):
    """
    Weighted random selection over a cumulative-weight table.

    Deterministic for a seeded `random.Random`: one uniform draw in
    `[0, total)` followed by a bisect.
    """

    def __init__(self, items: Sequence[T], weights: Sequence[float]) -> None:
        if len(items) != len(weights):
            raise ValueError("items and weights must have the same length")
        if any(w < 0 for w in weights):
            raise ValueError("weights must be non-negative")
        pairs = [(item, float(w)) for item, w in zip(items, weights) if w > 0]
        if not pairs:
            raise ValueError("at least one weight must be positive")
        self.items: Tuple[T, ...] = tuple(item for item, _ in pairs)
        self._cumulative = list(itertools.accumulate(w for _, w in pairs))
        self.total = self._cumulative[-1]

    def choose(self, rng: random.Random) -> T:
        draw = rng.random() * self.total
        index = bisect.bisect_right(self._cumulative, draw)
        return self.items[min(index, len(self.items) - 1)]

    def probability(self, item: T) -> float:
        previous = 0.0
        for candidate, cumulative in zip(self.items, self._cumulative):
            if candidate == item:
                return (cumulative - previous) / self.total
            previous = cumulative
        return 0.0


def query_chooser(
    catalog: Sequence[QueryDefinition] = QUERY_CATALOG,
    weights: Optional[Mapping[str, float]] = None,
) -> WeightedChoice[QueryDefinition]:
    """
    Build a chooser over `catalog`. Without `weights` every query uses its
    definition weight (uniform by default); names missing from `weights` keep
    their definition weight.
    """
    if weights:
        unknown = set(weights) - {q.name for q in catalog}
        if unknown:
            raise KeyError(f"Unknown queries in weights: {', '.join(sorted(unknown))}")
    resolved = [
        (weights or {}).get(query.name, query.weight) for query in catalog
    ]
    return WeightedChoice(list(catalog), resolved)


def sample_params(
    query: QueryDefinition, registry: VisibleIdRegistry, rng: random.Random
) -> Tuple[object, ...]:
    """
    Draw one value per parameter slot from the registry.

    Raises `EmptyRegistryError` when a slot has no candidate.
    """
    values = []
    for param in query.params:
        if param in _ID_PARAMS:
            values.append(registry.sample_id(_ID_PARAMS[param], rng))
        elif param is ParamKind.SECTOR:
            values.append(registry.sample_sector(rng))
        else:
            values.append(registry.sample_ticker(rng))
    return tuple(values)


__all__ = [
    "ParamKind",
    "QUERY_CATALOG",
    "QueryDefinition",
    "WeightedChoice",
    "get_query",
    "query_chooser",
    "sample_params",
]
