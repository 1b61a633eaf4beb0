"""
Integration tests against a real PostgreSQL instance.

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
import threading

import psycopg
import pytest

from rr_bench.backends import build_backend
from rr_bench.config import RunConfig
from rr_bench.domain.models import EntityKind, OpAction, WriteOperation
from rr_bench.errors import CallTimeoutError, OperationError
from rr_bench.orchestrator import RunStatus, run_benchmark
from rr_bench.workload.catalog import QUERY_CATALOG, QueryDefinition, get_query

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
        reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
    ),
]


class TestPostgresBackend:
    def test_snapshot_matches_loaded_corpus(self, postgres_corpus: str) -> None:
        backend = build_backend(postgres_corpus)
        primary = backend.open_primary()
        try:
            snapshot = primary.snapshot()
        finally:
            primary.close()
            backend.close()

        assert snapshot.count(EntityKind.CUSTOMER) == 3
        assert snapshot.count(EntityKind.ORDER) == 3
        assert snapshot.securities[2] == ("BBB", "Energy")

    def test_every_view_matches_its_columns(self, postgres_corpus: str) -> None:
        backend = build_backend(postgres_corpus)
        replica = backend.open_replica()
        try:
            for query in QUERY_CATALOG:
                assert replica.describe(query) == list(query.columns), query.name
        finally:
            replica.close()
            backend.close()

    def test_insert_returns_sequence_id_and_fk_violations_fail(self, postgres_corpus: str) -> None:
        backend = build_backend(postgres_corpus)
        primary = backend.open_primary()
        values = {"name": "Grace", "address": "1 Main St"}
        try:
            new_id = primary.execute_write(
                WriteOperation(action=OpAction.INSERT, entity=EntityKind.CUSTOMER, values=values)
            )
            assert new_id == 4

            with pytest.raises(OperationError):
                primary.execute_write(
                    WriteOperation(
                        action=OpAction.INSERT,
                        entity=EntityKind.ACCOUNT,
                        values={"customer_id": 999, "account_type": "cash", "balance": 1.0},
                    )
                )
        finally:
            primary.close()
            backend.close()

    def test_statement_timeout_is_a_call_timeout(self, postgres_corpus: str) -> None:
        with psycopg.connect(postgres_corpus, autocommit=True) as conn:
            conn.execute(
                "CREATE VIEW endless AS WITH RECURSIVE c(x) AS "
                "(SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT x FROM c"
            )
        endless = QueryDefinition(
            name="endless", params=(), source=EntityKind.TRADE, columns=("x",)
        )
        backend = build_backend(postgres_corpus, call_timeout=0.2)
        replica = backend.open_replica()
        try:
            with pytest.raises(CallTimeoutError):
                replica.execute_read(endless, ())
            assert replica.execute_read(get_query("top_performers"), ()) == 3
        finally:
            replica.close()
            backend.close()


def test_short_run_against_postgres(postgres_corpus: str) -> None:
    config = RunConfig.build(
        writer_url=postgres_corpus,
        duration=2.0,
        tps=20.0,
        concurrency=2,
        writer_connections=2,
        persist=False,
        call_timeout=5.0,
    )

    report = run_benchmark(config)

    assert report.status in (RunStatus.COMPLETED, RunStatus.DEGRADED)
    assert report.summary.category_successes("write") > 0
    assert report.summary.category_successes("read") > 0
    assert threading.active_count() < 10
