"""
Schema setup and CSV corpus loading for the SQLite and PostgreSQL backends.

The corpus is one CSV per entity (`customers.csv`, `accounts.csv`, ...) with a
header row in the fixed interchange column order. Files are loaded in FK
order; every row is validated against its pydantic row model before it reaches
the database. After loading, each id sequence continues at `max(id) + 1`.

SQLite rows go through batched `executemany`; PostgreSQL rows are streamed with
`COPY ... FROM STDIN`.
"""

from __future__ import annotations

import csv
import sqlite3
import time
from importlib import resources
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from pydantic import ValidationError

from rr_bench.backends import sqlite_path, url_scheme
from rr_bench.backends.sqlite import connect_sqlite
from rr_bench.domain.models import ENTITY_SCHEMAS, LOAD_ORDER, EntityKind, EntitySchema
from rr_bench.errors import BackendConnectionError, ConfigError
from rr_bench.infrastructure.db_factory import get_sync_connection
from rr_bench.utils.logging import get_logger

log = get_logger(__name__)

_SUPPORTED = ("sqlite", "postgresql")
_BATCH_SIZE = 5_000


def _engine(url: str) -> str:
    engine = url_scheme(url)
    if engine not in _SUPPORTED:
        raise ConfigError(
            f"{engine!r} databases cannot be set up or loaded; use a sqlite or postgresql URL"
        )
    return engine


def schema_sql(engine: str) -> str:
    """DDL and views for `engine` (`sqlite` or `postgresql`)."""
    name = "sqlite.sql" if engine == "sqlite" else "postgres.sql"
    return resources.files("rr_bench").joinpath("sql", name).read_text(encoding="utf-8")


def apply_schema(url: str) -> str:
    """
    Create tables, indexes and views on the database at `url`.

    Every statement is idempotent, so re-running setup is safe. Returns the
    engine name.
    """
    engine = _engine(url)
    ddl = schema_sql(engine)
    if engine == "sqlite":
        conn = connect_sqlite(sqlite_path(url))
        try:
            conn.executescript(ddl)
        finally:
            conn.close()
    else:
        with _postgres(url) as conn:
            conn.execute(ddl)
    log.info("Schema applied", extra={"engine": engine})
    return engine


def read_corpus(path: Path, schema: EntitySchema) -> Iterator[Tuple[Optional[str], ...]]:
    """
    Yield validated rows of one corpus file in interchange column order.

    Empty fields become NULL. Values are passed through as text so each
    engine applies its own type conversion.

    Raises
    ------
    ConfigError
        Missing file, header mismatch, or a row failing validation.
    """
    if not path.is_file():
        raise ConfigError(f"corpus file not found: {path}")
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = tuple(column.strip() for column in next(reader, ()))
        if header != schema.columns:
            raise ConfigError(
                f"{path.name}: header {list(header)} does not match {list(schema.columns)}"
            )
        for line_no, record in enumerate(reader, start=2):
            if not record:
                continue
            if len(record) != len(schema.columns):
                raise ConfigError(
                    f"{path.name}:{line_no}: expected {len(schema.columns)} fields, got {len(record)}"
                )
            row = tuple(value if value != "" else None for value in record)
            try:
                schema.row_model.model_validate(
                    {k: v for k, v in zip(schema.columns, row) if v is not None}
                )
            except ValidationError as exc:
                raise ConfigError(f"{path.name}:{line_no}: {exc.errors()[0]['msg']}") from exc
            yield row


def _batches(
    rows: Iterator[Tuple[Optional[str], ...]], size: int
) -> Iterator[List[Tuple[Optional[str], ...]]]:
    batch: List[Tuple[Optional[str], ...]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def _load_sqlite(url: str, data_dir: Path, kinds: Sequence[EntityKind]) -> Dict[EntityKind, int]:
    path = Path(sqlite_path(url))
    if not path.exists():
        raise BackendConnectionError(f"SQLite database not found: {path} (run setup first)")
    counts: Dict[EntityKind, int] = {}
    conn = connect_sqlite(path)
    try:
        conn.execute("BEGIN")
        for kind in kinds:
            schema = ENTITY_SCHEMAS[kind]
            placeholders = ", ".join("?" for _ in schema.columns)
            statement = (
                f"INSERT INTO {schema.table} ({', '.join(schema.columns)}) VALUES ({placeholders})"
            )
            counts[kind] = 0
            for batch in _batches(read_corpus(data_dir / schema.csv_file, schema), _BATCH_SIZE):
                conn.executemany(statement, batch)
                counts[kind] += len(batch)
        # AUTOINCREMENT tracks the largest explicit id, so sequences are already past max(id).
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        _rollback(conn)
        raise ConfigError(f"loading the corpus failed: {exc}") from exc
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()
    return counts


def _postgres(url: str) -> psycopg.Connection:
    try:
        return get_sync_connection(url)
    except psycopg.Error as exc:
        raise BackendConnectionError(f"cannot connect to {url_scheme(url)} database: {exc}") from exc


def _load_postgres(
    url: str, data_dir: Path, kinds: Sequence[EntityKind]
) -> Dict[EntityKind, int]:
    counts: Dict[EntityKind, int] = {}
    try:
        with _postgres(url) as conn:
            with conn.cursor() as cur:
                for kind in kinds:
                    schema = ENTITY_SCHEMAS[kind]
                    counts[kind] = 0
                    with cur.copy(
                        f"COPY {schema.table} ({', '.join(schema.columns)}) FROM STDIN"
                    ) as copy:
                        for row in read_corpus(data_dir / schema.csv_file, schema):
                            copy.write_row(row)
                            counts[kind] += 1
                for kind in kinds:
                    schema = ENTITY_SCHEMAS[kind]
                    cur.execute(
                        f"SELECT setval(pg_get_serial_sequence(%s, %s), "
                        f"COALESCE(MAX({schema.id_column}), 1), MAX({schema.id_column}) IS NOT NULL) "
                        f"FROM {schema.table}",
                        (schema.table, schema.id_column),
                    )
    except psycopg.Error as exc:
        raise ConfigError(f"loading the corpus failed: {exc}") from exc
    return counts


def load_dataset(
    url: str, data_dir: Path, kinds: Sequence[EntityKind] = LOAD_ORDER
) -> Dict[EntityKind, int]:
    """
    Load the CSV corpus in `data_dir` into the database at `url`.

    Runs in a single transaction; a bad file leaves the database untouched.
    Returns the number of rows loaded per entity kind.
    """
    engine = _engine(url)
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise ConfigError(f"data directory not found: {data_dir}")

    start = time.perf_counter()
    if engine == "sqlite":
        counts = _load_sqlite(url, data_dir, kinds)
    else:
        counts = _load_postgres(url, data_dir, kinds)
    log.info(
        "Corpus loaded",
        extra={
            "engine": engine,
            "rows": {kind.value: count for kind, count in counts.items()},
            "duration_seconds": round(time.perf_counter() - start, 2),
        },
    )
    return counts


__all__ = ["apply_schema", "load_dataset", "read_corpus", "schema_sql"]
