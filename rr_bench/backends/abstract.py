"""
Backend interfaces and shared statement builders for the read-replica benchmark.

A backend opens handles: one `PrimaryConnection` per writer slot and one
`ReplicaConnection` per reader worker. Each handle is owned by exactly one
task and is never shared. Concrete backends (embedded SQLite, networked
PostgreSQL, in-process memory) implement the `Backend` protocol; the
`AbstractBackend` ABC is an optional helper for class-based implementations.

Every call on a handle is bounded by the backend's `call_timeout`:

- exceeding it raises `CallTimeoutError`;
- any other statement failure raises `OperationError`;
- a lost or closed connection raises `BackendConnectionError`.
"""

from __future__ import annotations

import abc
from typing import Any, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from rr_bench.domain.models import ENTITY_SCHEMAS, EntityKind, OpAction, WriteOperation
from rr_bench.workload.catalog import QueryDefinition
from rr_bench.workload.registry import RegistrySnapshot


@runtime_checkable
class PrimaryConnection(Protocol):
    """A write handle on the primary database."""

    def execute_write(self, op: WriteOperation) -> Optional[int]:
        """
        Execute `op` as exactly one committed transaction.

        Returns
        -------
        int | None
            The database-generated id for inserts, `None` otherwise.
        """
        ...

    def snapshot(self, timeout: Optional[float] = None) -> RegistrySnapshot:
        """
        Read every live id, its FK parents and security ticker/sector.

        `timeout` bounds this one call in place of the per-call timeout, since
        a full-corpus read can legitimately outlast a single write.
        """
        ...

    def close(self) -> None: ...


@runtime_checkable
class ReplicaConnection(Protocol):
    """A read handle on a replica."""

    def execute_read(self, query: QueryDefinition, params: Sequence[Any]) -> int:
        """Run `query` with bound `params` and return the number of rows."""
        ...

    def describe(self, query: QueryDefinition) -> List[str]:
        """Return the result column names of `query` without fetching rows."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class Backend(Protocol):
    """
    Capability interface every database backend implements.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier.
    description : str
        A human-friendly summary of the engine and topology.
    """

    name: str
    description: str

    def open_primary(self) -> PrimaryConnection: ...

    def open_replica(self) -> ReplicaConnection: ...

    def close(self) -> None: ...


class AbstractBackend(abc.ABC):
    """
    Optional ABC helper for class-based backends.

    Subclasses set `name` and `description` and implement the two factories.
    `close()` defaults to a no-op for backends that hold no shared resources.
    """

    name: str
    description: str

    @abc.abstractmethod
    def open_primary(self) -> PrimaryConnection:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def open_replica(self) -> ReplicaConnection:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self) -> "AbstractBackend":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_write_statement(
    op: WriteOperation, placeholder: str = "?", returning: bool = False
) -> Tuple[str, Tuple[Any, ...]]:
    """
    Render `op` as one parameterized SQL statement.

    Column order follows `op.values`. Market data updates also refresh
    `market_date` so freshness-filtered views observe the write. With
    `returning`, inserts end in `RETURNING <id column>`.
    """
    schema = ENTITY_SCHEMAS[op.entity]
    if op.action is OpAction.INSERT:
        columns = list(op.values)
        marks = ", ".join(placeholder for _ in columns)
        sql = f"INSERT INTO {schema.table} ({', '.join(columns)}) VALUES ({marks})"
        if returning:
            sql = f"{sql} RETURNING {schema.id_column}"
        return sql, tuple(op.values[col] for col in columns)

    if op.action is OpAction.UPDATE:
        assignments = [f"{col} = {placeholder}" for col in op.values]
        if op.entity is EntityKind.MARKET_DATA:
            assignments.append("market_date = CURRENT_TIMESTAMP")
        sql = (
            f"UPDATE {schema.table} SET {', '.join(assignments)} "
            f"WHERE {schema.id_column} = {placeholder}"
        )
        return sql, tuple(op.values.values()) + (op.target_id,)

    sql = f"DELETE FROM {schema.table} WHERE {schema.id_column} = {placeholder}"
    return sql, (op.target_id,)


def snapshot_statements() -> List[Tuple[EntityKind, str]]:
    """
    One `SELECT` per entity kind returning the id, then each FK column, and
    for securities the ticker and sector.
    """
    statements = []
    for kind, schema in ENTITY_SCHEMAS.items():
        columns = [schema.id_column, *schema.parents]
        if kind is EntityKind.SECURITY:
            columns += ["ticker", "sector"]
        statements.append((kind, f"SELECT {', '.join(columns)} FROM {schema.table}"))
    return statements


def snapshot_from_rows(
    rows_by_kind: Sequence[Tuple[EntityKind, Sequence[Sequence[Any]]]]
) -> RegistrySnapshot:
    """Assemble a `RegistrySnapshot` from the result rows of `snapshot_statements()`."""
    snapshot = RegistrySnapshot()
    for kind, rows in rows_by_kind:
        fk_columns = list(ENTITY_SCHEMAS[kind].parents)
        entries = snapshot.rows.setdefault(kind, [])
        for row in rows:
            row_id = int(row[0])
            parents = {
                col: int(value)
                for col, value in zip(fk_columns, row[1 : 1 + len(fk_columns)])
                if value is not None
            }
            entries.append((row_id, parents))
            if kind is EntityKind.SECURITY:
                snapshot.securities[row_id] = (row[1], row[2])
    return snapshot


__all__ = [
    "AbstractBackend",
    "Backend",
    "PrimaryConnection",
    "ReplicaConnection",
    "build_write_statement",
    "snapshot_from_rows",
    "snapshot_statements",
]
