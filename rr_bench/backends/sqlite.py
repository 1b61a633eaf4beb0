"""
Embedded backend: one SQLite database file shared by the writer and readers.

Each handle opens its own `sqlite3` connection in autocommit mode, so every
statement is its own transaction. The file runs in WAL mode so readers never
block the writer. Per-call timeouts combine the busy timeout (lock waits) with
a progress-handler deadline (long-running statements).
"""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, List, Optional, Sequence

from rr_bench.backends.abstract import (
    AbstractBackend,
    build_write_statement,
    snapshot_from_rows,
    snapshot_statements,
)
from rr_bench.domain.models import OpAction, WriteOperation
from rr_bench.errors import BackendConnectionError, CallTimeoutError, OperationError
from rr_bench.utils.logging import get_logger
from rr_bench.workload.catalog import QueryDefinition
from rr_bench.workload.registry import RegistrySnapshot

log = get_logger(__name__)

# VM instructions between deadline checks.
_PROGRESS_STEPS = 1_000
_FETCH_BATCH = 1_000


def connect_sqlite(path: str | Path, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Open an autocommit connection with WAL and foreign keys enabled.

    The file is created if missing; callers that require an existing database
    check for it first.
    """
    conn = sqlite3.connect(
        str(path),
        timeout=timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


class _SQLiteHandle:
    """Shared connection plumbing for the primary and replica handles."""

    role = "handle"

    def __init__(self, path: Path, call_timeout: float) -> None:
        self._path = path
        self._call_timeout = call_timeout
        self._deadline: Optional[float] = None
        self._closed = False
        self._close_lock = threading.Lock()
        try:
            self._conn = connect_sqlite(path, timeout=call_timeout)
        except sqlite3.Error as exc:
            raise BackendConnectionError(f"cannot open SQLite {self.role} at {path}: {exc}") from exc
        self._conn.set_progress_handler(self._past_deadline, _PROGRESS_STEPS)

    def _past_deadline(self) -> int:
        deadline = self._deadline
        return 1 if deadline is not None and time.perf_counter() > deadline else 0

    @contextmanager
    def _bounded(
        self, label: str, timeout: Optional[float] = None
    ) -> Generator[sqlite3.Connection, None, None]:
        """Run one call under the per-call deadline, translating sqlite3 errors."""
        if self._closed:
            raise BackendConnectionError(f"SQLite {self.role} is closed")
        bound = self._call_timeout if timeout is None else timeout
        self._deadline = time.perf_counter() + bound
        try:
            yield self._conn
        except sqlite3.ProgrammingError as exc:
            raise BackendConnectionError(f"{label}: {exc}") from exc
        except sqlite3.OperationalError as exc:
            if self._closed:
                raise BackendConnectionError(f"{label}: connection closed mid-call") from exc
            message = str(exc).lower()
            if "interrupted" in message or "locked" in message or "busy" in message:
                raise CallTimeoutError(
                    f"{label} exceeded {bound:.3f}s: {exc}"
                ) from exc
            raise OperationError(f"{label}: {exc}") from exc
        except sqlite3.Error as exc:
            raise OperationError(f"{label}: {exc}") from exc
        finally:
            self._deadline = None

    def close(self) -> None:
        """Close the connection; safe to call from another thread."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        # Unblocks a statement still running on the owning thread.
        self._conn.interrupt()
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            log.debug("SQLite close failed", extra={"path": str(self._path), "error": str(exc)})


class SQLitePrimary(_SQLiteHandle):
    role = "primary"

    def execute_write(self, op: WriteOperation) -> Optional[int]:
        sql, params = build_write_statement(op, placeholder="?")
        with self._bounded(op.name) as conn:
            cursor = conn.execute(sql, params)
            if op.action is OpAction.INSERT:
                return int(cursor.lastrowid)
            return None

    def snapshot(self, timeout: Optional[float] = None) -> RegistrySnapshot:
        with self._bounded("snapshot", timeout) as conn:
            conn.execute("BEGIN")
            try:
                rows = [(kind, conn.execute(sql).fetchall()) for kind, sql in snapshot_statements()]
            except sqlite3.Error:
                conn.rollback()
                raise
            conn.commit()
        return snapshot_from_rows(rows)


class SQLiteReplica(_SQLiteHandle):
    role = "replica"

    def execute_read(self, query: QueryDefinition, params: Sequence[Any]) -> int:
        rows = 0
        with self._bounded(query.name) as conn:
            cursor = conn.execute(query.sql(placeholder="?"), tuple(params))
            while True:
                batch = cursor.fetchmany(_FETCH_BATCH)
                if not batch:
                    break
                rows += len(batch)
        return rows

    def describe(self, query: QueryDefinition) -> List[str]:
        with self._bounded(f"describe {query.name}") as conn:
            cursor = conn.execute(f"SELECT * FROM {query.name} LIMIT 0")
            return [column[0] for column in cursor.description or ()]


class SQLiteBackend(AbstractBackend):
    """
    Embedded SQLite backend.

    Parameters
    ----------
    path : str | Path
        Database file receiving writes. Must already exist (see `rr-bench setup`).
    replica_path : str | Path | None
        File queried by readers; defaults to `path`.
    call_timeout : float
        Per-call bound in seconds.
    """

    name = "sqlite"

    def __init__(
        self,
        path: str | Path,
        replica_path: str | Path | None = None,
        call_timeout: float = 30.0,
    ) -> None:
        self.path = Path(path)
        self.replica_path = Path(replica_path) if replica_path is not None else self.path
        self.call_timeout = call_timeout
        self.description = f"Embedded SQLite file {self.path} (WAL)"

    def _require(self, path: Path) -> Path:
        if not path.exists():
            raise BackendConnectionError(
                f"SQLite database not found: {path} (run `rr-bench setup` first)"
            )
        return path

    def open_primary(self) -> SQLitePrimary:
        return SQLitePrimary(self._require(self.path), self.call_timeout)

    def open_replica(self) -> SQLiteReplica:
        return SQLiteReplica(self._require(self.replica_path), self.call_timeout)


__all__ = ["SQLiteBackend", "SQLitePrimary", "SQLiteReplica", "connect_sqlite"]
