from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from rr_bench.backends import sqlite_path
from rr_bench.domain.models import ENTITY_SCHEMAS, EntityKind
from rr_bench.errors import BackendConnectionError, ConfigError
from rr_bench.infrastructure.loader import apply_schema, load_dataset, read_corpus, schema_sql

EXPECTED_VIEWS = 16


def _count(url: str, table: str) -> int:
    conn = sqlite3.connect(sqlite_path(url))
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def test_schema_resources_ship_with_the_package() -> None:
    assert "CREATE VIEW IF NOT EXISTS top_performers" in schema_sql("sqlite")
    assert "CREATE OR REPLACE VIEW top_performers" in schema_sql("postgresql")


def test_apply_schema_is_idempotent(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'fresh.db'}"

    assert apply_schema(url) == "sqlite"
    apply_schema(url)

    conn = sqlite3.connect(sqlite_path(url))
    views = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type = 'view'").fetchone()[0]
    conn.close()
    assert views == EXPECTED_VIEWS


def test_load_dataset_loads_every_file_in_order(sqlite_url: str) -> None:
    assert _count(sqlite_url, "customers") == 3
    assert _count(sqlite_url, "accounts") == 4
    assert _count(sqlite_url, "securities") == 3
    assert _count(sqlite_url, "trades") == 4
    assert _count(sqlite_url, "orders") == 3
    assert _count(sqlite_url, "market_data") == 3


def test_empty_fields_load_as_null(sqlite_url: str) -> None:
    conn = sqlite3.connect(sqlite_path(sqlite_url))
    try:
        address = conn.execute("SELECT address FROM customers WHERE customer_id = 3").fetchone()[0]
        limit_price = conn.execute("SELECT limit_price FROM orders WHERE order_id = 2").fetchone()[0]
    finally:
        conn.close()

    assert address is None
    assert limit_price is None


def test_sequences_continue_after_max_id(sqlite_url: str) -> None:
    conn = sqlite3.connect(sqlite_path(sqlite_url))
    try:
        cursor = conn.execute("INSERT INTO customers (name) VALUES ('New Customer')")
        conn.commit()
    finally:
        conn.close()

    assert cursor.lastrowid == 4


def test_header_mismatch_is_a_config_error(tmp_path: Path, corpus_dir: Path) -> None:
    path = corpus_dir / "customers.csv"
    path.write_text("id,name,address,created_at\n1,Ada,,\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="header"):
        list(read_corpus(path, ENTITY_SCHEMAS[EntityKind.CUSTOMER]))


def test_invalid_row_is_rejected_and_nothing_is_loaded(tmp_path: Path, corpus_dir: Path) -> None:
    url = f"sqlite:///{tmp_path / 'bad.db'}"
    apply_schema(url)
    path = corpus_dir / "trades.csv"
    path.write_text(
        "trade_id,account_id,security_id,trade_type,quantity,price,trade_date\n"
        "1,1,1,hold,10,1.0,\n",
        encoding="utf-8",
    )

    with pytest.raises(ConfigError, match="trades.csv:2"):
        load_dataset(url, corpus_dir)
    assert _count(url, "customers") == 0


def test_missing_inputs(tmp_path: Path, corpus_dir: Path) -> None:
    with pytest.raises(ConfigError, match="data directory"):
        load_dataset(f"sqlite:///{tmp_path / 'x.db'}", tmp_path / "nowhere")
    with pytest.raises(BackendConnectionError):
        load_dataset(f"sqlite:///{tmp_path / 'never-set-up.db'}", corpus_dir)

    (corpus_dir / "orders.csv").unlink()
    url = f"sqlite:///{tmp_path / 'partial.db'}"
    apply_schema(url)
    with pytest.raises(ConfigError, match="not found"):
        load_dataset(url, corpus_dir)


def test_memory_urls_cannot_be_loaded(corpus_dir: Path) -> None:
    with pytest.raises(ConfigError):
        apply_schema("memory://")
    with pytest.raises(ConfigError):
        load_dataset("memory://", corpus_dir)
