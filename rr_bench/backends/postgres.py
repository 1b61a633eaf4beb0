"""
Networked backend: a PostgreSQL primary and one or more replicas via psycopg 3.

Primary handles check out an exclusive connection from a shared
`psycopg_pool.ConnectionPool` for each write; the pool is sized to
`writer_connections + 1` so the snapshot and every writer slot can hold a
connection at once. Replica handles own a dedicated connection opened with
tenacity retry. Per-call timeouts are enforced server-side through
`statement_timeout`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Generator, List, Optional, Sequence

import psycopg
from psycopg import Connection, errors
from psycopg_pool import ConnectionPool, PoolClosed, PoolTimeout

from rr_bench.backends.abstract import (
    AbstractBackend,
    build_write_statement,
    snapshot_from_rows,
    snapshot_statements,
)
from rr_bench.domain.models import OpAction, WriteOperation
from rr_bench.errors import BackendConnectionError, CallTimeoutError, OperationError
from rr_bench.infrastructure.db_factory import PoolManager, get_sync_connection, get_sync_pool
from rr_bench.utils.logging import get_logger
from rr_bench.workload.catalog import QueryDefinition
from rr_bench.workload.registry import RegistrySnapshot

log = get_logger(__name__)

_FETCH_BATCH = 1_000


def _statement_timeout_setter(call_timeout: float):
    millis = str(max(1, int(call_timeout * 1000)))

    def configure(conn: Connection) -> None:
        conn.execute("SELECT set_config('statement_timeout', %s, false)", (millis,))

    return configure


def _is_connection_lost(conn: Optional[Connection]) -> bool:
    return conn is None or conn.closed or conn.broken


class _PostgresHandle:
    role = "handle"

    def __init__(self, call_timeout: float) -> None:
        self._call_timeout = call_timeout
        self._closed = False
        self._active: Optional[Connection] = None
        self._last: Optional[Connection] = None
        self._state_lock = threading.Lock()

    @contextmanager
    def _translate(
        self, label: str, timeout: Optional[float] = None
    ) -> Generator[None, None, None]:
        """Map psycopg failures onto the benchmark error taxonomy."""
        bound = self._call_timeout if timeout is None else timeout
        if self._closed:
            raise BackendConnectionError(f"PostgreSQL {self.role} is closed")
        try:
            yield
        except errors.QueryCanceled as exc:
            if self._closed:
                raise BackendConnectionError(f"{label}: connection closed mid-call") from exc
            raise CallTimeoutError(f"{label} exceeded {bound:.3f}s: {exc}") from exc
        except PoolTimeout as exc:
            raise CallTimeoutError(f"{label}: no primary connection within timeout") from exc
        except PoolClosed as exc:
            raise BackendConnectionError(f"{label}: primary pool closed") from exc
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            if self._closed or _is_connection_lost(self._last):
                raise BackendConnectionError(f"{label}: {exc}") from exc
            raise OperationError(f"{label}: {exc}") from exc
        except psycopg.Error as exc:
            raise OperationError(f"{label}: {exc}") from exc

    def _cancel_active(self) -> None:
        conn = self._active
        if conn is not None and not conn.closed:
            try:
                conn.cancel()
            except psycopg.Error as exc:
                log.debug("Cancel failed", extra={"role": self.role, "error": str(exc)})


class PostgresPrimary(_PostgresHandle):
    role = "primary"

    def __init__(self, pool: ConnectionPool, call_timeout: float) -> None:
        super().__init__(call_timeout)
        self._pool = pool

    @contextmanager
    def _checkout(self) -> Generator[Connection, None, None]:
        with self._pool.connection(timeout=self._call_timeout) as conn:
            self._active = self._last = conn
            try:
                yield conn
            finally:
                self._active = None

    def execute_write(self, op: WriteOperation) -> Optional[int]:
        sql, params = build_write_statement(op, placeholder="%s", returning=True)
        with self._translate(op.name), self._checkout() as conn:
            cursor = conn.execute(sql, params)
            if op.action is OpAction.INSERT:
                row = cursor.fetchone()
                return int(row[0]) if row else None
            return None

    def snapshot(self, timeout: Optional[float] = None) -> RegistrySnapshot:
        with self._translate("snapshot", timeout), self._checkout() as conn:
            with conn.transaction():
                conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
                if timeout is not None:
                    # transaction-local; the pooled session keeps its per-call timeout
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(max(1, int(timeout * 1000))),),
                    )
                rows = [(kind, conn.execute(sql).fetchall()) for kind, sql in snapshot_statements()]
        return snapshot_from_rows(rows)

    def close(self) -> None:
        # The pool is owned by the backend; a handle only interrupts its own call.
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._cancel_active()


class PostgresReplica(_PostgresHandle):
    role = "replica"

    def __init__(self, conninfo: str, call_timeout: float) -> None:
        super().__init__(call_timeout)
        try:
            self._conn = get_sync_connection(
                conninfo, autocommit=True, connect_timeout=max(1, int(call_timeout))
            )
            _statement_timeout_setter(call_timeout)(self._conn)
        except psycopg.Error as exc:
            raise BackendConnectionError(f"cannot open PostgreSQL replica: {exc}") from exc
        self._active = self._last = self._conn

    def execute_read(self, query: QueryDefinition, params: Sequence[Any]) -> int:
        rows = 0
        with self._translate(query.name), self._conn.cursor() as cur:
            cur.execute(query.sql(placeholder="%s"), tuple(params))
            while True:
                batch = cur.fetchmany(_FETCH_BATCH)
                if not batch:
                    break
                rows += len(batch)
        return rows

    def describe(self, query: QueryDefinition) -> List[str]:
        with self._translate(f"describe {query.name}"), self._conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {query.name} LIMIT 0")
            return [column.name for column in cur.description or ()]

    def close(self) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._cancel_active()
        try:
            self._conn.close()
        except psycopg.Error as exc:
            log.debug("Replica close failed", extra={"error": str(exc)})


class PostgresBackend(AbstractBackend):
    """
    Networked PostgreSQL backend.

    Parameters
    ----------
    writer_url : str
        `postgresql://` URL of the primary.
    reader_url : str | None
        URL of the replica; defaults to the primary.
    call_timeout : float
        Per-call bound in seconds (`statement_timeout` and pool checkout).
    writer_connections : int
        Number of concurrent writer slots; the pool holds one more.
    """

    name = "postgres"

    def __init__(
        self,
        writer_url: str,
        reader_url: Optional[str] = None,
        call_timeout: float = 30.0,
        writer_connections: int = 1,
    ) -> None:
        self.writer_url = writer_url
        self.reader_url = reader_url or writer_url
        self.call_timeout = call_timeout
        self.writer_connections = writer_connections
        self.description = (
            "PostgreSQL primary/replica via psycopg"
            f" (replica {'separate' if reader_url else 'same as primary'})"
        )
        self._lock = threading.Lock()
        self._pool: Optional[ConnectionPool] = None

    def _primary_pool(self) -> ConnectionPool:
        with self._lock:
            if self._pool is None:
                try:
                    self._pool = get_sync_pool(
                        self.writer_url,
                        min_size=1,
                        max_size=self.writer_connections + 1,
                        configure=_statement_timeout_setter(self.call_timeout),
                        timeout=self.call_timeout,
                    )
                except (PoolTimeout, psycopg.Error) as exc:
                    raise BackendConnectionError(f"cannot open PostgreSQL primary: {exc}") from exc
            return self._pool

    def open_primary(self) -> PostgresPrimary:
        return PostgresPrimary(self._primary_pool(), self.call_timeout)

    def open_replica(self) -> PostgresReplica:
        return PostgresReplica(self.reader_url, self.call_timeout)

    def close(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            PoolManager().close_pool(self.writer_url)


__all__ = ["PostgresBackend", "PostgresPrimary", "PostgresReplica"]
