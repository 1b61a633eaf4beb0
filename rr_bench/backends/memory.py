"""
In-process backend for dry runs and tests.

Tables are plain dicts guarded by one lock. Inserts enforce FK existence,
deletes cascade along `ENTITY_SCHEMAS` parents, and ids come from a
per-table counter that starts above the seeded corpus. Reads return the number
of rows of the query's driving table matching its parameters; there is no
query engine.

Per-call latency, named failures and lost connections can be injected so the
drivers and coordinator can be exercised without a database.
"""

from __future__ import annotations

import itertools
import random
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from faker import Faker

from rr_bench.backends.abstract import AbstractBackend
from rr_bench.domain.models import ENTITY_SCHEMAS, EntityKind, OpAction, WriteOperation
from rr_bench.errors import BackendConnectionError, CallTimeoutError, OperationError
from rr_bench.workload.catalog import QueryDefinition
from rr_bench.workload.generator import ACCOUNT_TYPES, DEFAULT_SECTORS, ORDER_STATUSES, SIDES
from rr_bench.workload.registry import RegistrySnapshot

Row = Dict[str, Any]


class MemoryStore:
    """Thread-safe entity tables with FK checks and cascading deletes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.tables: Dict[EntityKind, Dict[int, Row]] = {kind: {} for kind in EntityKind}
        self._ids: Dict[EntityKind, Iterator[int]] = {kind: itertools.count(1) for kind in EntityKind}

    def load(self, kind: EntityKind, rows: Iterable[Row]) -> None:
        """Bulk-load corpus rows that carry their own ids."""
        id_column = ENTITY_SCHEMAS[kind].id_column
        with self._lock:
            table = self.tables[kind]
            for row in rows:
                table[int(row[id_column])] = dict(row)
            self._ids[kind] = itertools.count(max(table, default=0) + 1)

    def insert(self, kind: EntityKind, values: Row) -> int:
        schema = ENTITY_SCHEMAS[kind]
        with self._lock:
            for column, parent_kind in schema.parents.items():
                parent_id = values.get(column)
                if parent_id is not None and parent_id not in self.tables[parent_kind]:
                    raise OperationError(
                        f"FOREIGN KEY constraint failed: {schema.table}.{column}={parent_id}"
                    )
            row_id = next(self._ids[kind])
            self.tables[kind][row_id] = {schema.id_column: row_id, **values}
            return row_id

    def update(self, kind: EntityKind, row_id: int, values: Row) -> int:
        with self._lock:
            row = self.tables[kind].get(row_id)
            if row is None:
                return 0
            row.update(values)
            return 1

    def delete(self, kind: EntityKind, row_id: int) -> int:
        with self._lock:
            removed = 0
            stack: List[Tuple[EntityKind, int]] = [(kind, row_id)]
            while stack:
                current_kind, current_id = stack.pop()
                if self.tables[current_kind].pop(current_id, None) is None:
                    continue
                removed += 1
                for child_kind, child_schema in ENTITY_SCHEMAS.items():
                    for column, parent_kind in child_schema.parents.items():
                        if parent_kind is not current_kind:
                            continue
                        stack.extend(
                            (child_kind, child_id)
                            for child_id, child in self.tables[child_kind].items()
                            if child.get(column) == current_id
                        )
            return removed

    def count_matching(self, kind: EntityKind, filters: Sequence[Tuple[str, Any]]) -> int:
        with self._lock:
            rows = self.tables[kind].values()
            if not filters:
                return len(rows)
            return sum(1 for row in rows if all(row.get(col) == value for col, value in filters))

    def snapshot(self) -> RegistrySnapshot:
        snapshot = RegistrySnapshot()
        with self._lock:
            for kind, table in self.tables.items():
                parents = list(ENTITY_SCHEMAS[kind].parents)
                snapshot.rows[kind] = [
                    (row_id, {col: row[col] for col in parents if row.get(col) is not None})
                    for row_id, row in table.items()
                ]
                if kind is EntityKind.SECURITY:
                    snapshot.securities = {
                        row_id: (row.get("ticker"), row.get("sector")) for row_id, row in table.items()
                    }
        return snapshot

    def size(self, kind: EntityKind) -> int:
        with self._lock:
            return len(self.tables[kind])


class _MemoryHandle:
    role = "handle"

    def __init__(self, backend: "MemoryBackend") -> None:
        self._backend = backend
        self._store = backend.store
        self._closed = threading.Event()

    def _call(self, label: str, timeout: Optional[float] = None) -> None:
        """Simulate the round trip: latency, timeout, injected failures."""
        if self._closed.is_set() or self._backend.connections_lost:
            raise BackendConnectionError(f"memory {self.role} connection lost")
        latency = self._backend.latency
        if timeout is None:
            timeout = self._backend.call_timeout
        if latency > 0:
            self._closed.wait(min(latency, timeout))
            if self._closed.is_set():
                raise BackendConnectionError(f"{label}: memory {self.role} closed mid-call")
            if latency > timeout:
                raise CallTimeoutError(f"{label} exceeded {timeout:.3f}s")
        if label in self._backend.failing:
            raise OperationError(f"{label}: injected failure")

    def close(self) -> None:
        self._closed.set()
        self._backend.forget(self)


class MemoryPrimary(_MemoryHandle):
    role = "primary"

    def execute_write(self, op: WriteOperation) -> Optional[int]:
        self._call(op.name)
        if op.action is OpAction.INSERT:
            return self._store.insert(op.entity, dict(op.values))
        if op.action is OpAction.UPDATE:
            self._store.update(op.entity, op.target_id, dict(op.values))
        else:
            self._store.delete(op.entity, op.target_id)
        return None

    def snapshot(self, timeout: Optional[float] = None) -> RegistrySnapshot:
        self._call("snapshot", timeout)
        return self._store.snapshot()


class MemoryReplica(_MemoryHandle):
    role = "replica"

    def execute_read(self, query: QueryDefinition, params: Sequence[Any]) -> int:
        self._call(query.name)
        filters = [(param.column, value) for param, value in zip(query.params, params)]
        return self._store.count_matching(query.source, filters)

    def describe(self, query: QueryDefinition) -> List[str]:
        self._call(f"describe {query.name}")
        return list(self._backend.columns.get(query.name, query.columns))


class MemoryBackend(AbstractBackend):
    """
    In-process backend with injectable latency and failures.

    Parameters
    ----------
    store : MemoryStore | None
        Shared tables; a fresh empty store by default.
    latency : float
        Seconds every call takes. A latency above `call_timeout` makes each
        call wait `call_timeout` and raise `CallTimeoutError`.
    call_timeout : float
        Per-call bound in seconds.
    failing : iterable[str]
        Operation or query names whose calls raise `OperationError`.
    """

    name = "memory"
    description = "In-process memory tables (no database)"

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        latency: float = 0.0,
        call_timeout: float = 30.0,
        failing: Iterable[str] = (),
    ) -> None:
        self.store = store or MemoryStore()
        self.latency = latency
        self.call_timeout = call_timeout
        self.failing: Set[str] = set(failing)
        self.columns: Dict[str, List[str]] = {}
        self.connections_lost = False
        self.refuse_connections = False
        self._handles: List[_MemoryHandle] = []
        self._lock = threading.Lock()

    @classmethod
    def seeded(
        cls,
        customers: int = 50,
        seed: int = 42,
        latency: float = 0.0,
        call_timeout: float = 30.0,
    ) -> "MemoryBackend":
        """Build a backend over a small generated corpus."""
        return cls(
            store=generate_corpus(customers=customers, seed=seed),
            latency=latency,
            call_timeout=call_timeout,
        )

    def _track(self, handle: _MemoryHandle) -> _MemoryHandle:
        if self.refuse_connections:
            raise BackendConnectionError(f"memory backend refused {handle.role} connection")
        with self._lock:
            self._handles.append(handle)
        return handle

    def forget(self, handle: _MemoryHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    @property
    def open_handles(self) -> int:
        with self._lock:
            return len(self._handles)

    def open_primary(self) -> MemoryPrimary:
        return self._track(MemoryPrimary(self))

    def open_replica(self) -> MemoryReplica:
        return self._track(MemoryReplica(self))

    def drop_connections(self) -> None:
        """Make every subsequent call fail as a lost connection."""
        self.connections_lost = True

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            handle.close()


def generate_corpus(customers: int = 50, seed: int = 42) -> MemoryStore:
    """
    Generate a small FK-consistent corpus.

    Each customer gets one or two accounts; each account three trades and two
    orders; securities number a fifth of the customers (at least five), each
    with three market data points.
    """
    rng = random.Random(seed)
    fake = Faker()
    fake.seed_instance(seed)
    store = MemoryStore()

    customer_rows = [
        {"customer_id": i, "name": fake.name(), "address": fake.street_address()}
        for i in range(1, customers + 1)
    ]
    account_rows: List[Row] = []
    for customer in customer_rows:
        for _ in range(rng.randint(1, 2)):
            account_rows.append(
                {
                    "account_id": len(account_rows) + 1,
                    "customer_id": customer["customer_id"],
                    "account_type": rng.choice(ACCOUNT_TYPES),
                    "balance": round(rng.uniform(0.0, 10_000.0), 2),
                }
            )

    security_rows: List[Row] = []
    for i in range(1, max(5, customers // 5) + 1):
        ticker = f"S{i:03d}"
        security_rows.append(
            {
                "security_id": i,
                "ticker": ticker,
                "name": fake.company(),
                "sector": rng.choice(DEFAULT_SECTORS),
            }
        )

    trade_rows: List[Row] = []
    order_rows: List[Row] = []
    for account in account_rows:
        for _ in range(3):
            trade_rows.append(
                {
                    "trade_id": len(trade_rows) + 1,
                    "account_id": account["account_id"],
                    "security_id": rng.randint(1, len(security_rows)),
                    "trade_type": rng.choice(SIDES),
                    "quantity": rng.randint(1, 999),
                    "price": round(rng.uniform(100.0, 500.0), 4),
                }
            )
        for _ in range(2):
            order_rows.append(
                {
                    "order_id": len(order_rows) + 1,
                    "account_id": account["account_id"],
                    "security_id": rng.randint(1, len(security_rows)),
                    "order_type": rng.choice(SIDES),
                    "quantity": rng.randint(1, 999),
                    "limit_price": float(rng.randint(1, 999)),
                    "status": rng.choice(ORDER_STATUSES),
                }
            )

    market_rows = [
        {
            "market_data_id": n,
            "security_id": security["security_id"],
            "price": round(rng.uniform(100.0, 500.0), 4),
            "volume": rng.randint(1_000, 99_999),
        }
        for n, security in enumerate(
            (s for s in security_rows for _ in range(3)), start=1
        )
    ]

    store.load(EntityKind.CUSTOMER, customer_rows)
    store.load(EntityKind.ACCOUNT, account_rows)
    store.load(EntityKind.SECURITY, security_rows)
    store.load(EntityKind.TRADE, trade_rows)
    store.load(EntityKind.ORDER, order_rows)
    store.load(EntityKind.MARKET_DATA, market_rows)
    return store


__all__ = [
    "MemoryBackend",
    "MemoryPrimary",
    "MemoryReplica",
    "MemoryStore",
    "generate_corpus",
]
