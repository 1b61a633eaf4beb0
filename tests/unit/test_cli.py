from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from rr_bench.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.setenv("COLUMNS", "200")


def test_run_prints_a_json_report() -> None:
    result = runner.invoke(
        app,
        [
            "run",
            "--writer-url", "memory://?customers=20",
            "--duration", "300ms",
            "--tps", "20",
            "--concurrency", "2",
            "--no-persist",
            "--output", "json",
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["status"] == "completed"
    assert payload["config"]["tps"] == 20.0
    assert payload["metrics"]["total_samples"] > 0


def test_run_table_output_and_persistence(tmp_path: Path) -> None:
    results = tmp_path / "results"

    result = runner.invoke(
        app,
        [
            "run",
            "-w", "memory://?customers=20",
            "-d", "200ms",
            "--results-dir", str(results),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Read-Replica Benchmark" in result.stdout
    assert (results / "latest.json").exists()


@pytest.mark.parametrize(
    "args",
    [
        ["run", "-w", "memory://", "--duration", "soon"],
        ["run", "-w", "memory://", "--concurrency", "0"],
        ["run", "-w", "memory://", "--delete-scope", "everything"],
        ["run", "-w", "mysql://localhost/bench", "-d", "1s"],
        ["run", "-d", "1s"],
    ],
)
def test_invalid_configuration_exits_with_2(args: list) -> None:
    result = runner.invoke(app, args)

    assert result.exit_code == 2
    assert "Error:" in result.output


def test_unreachable_database_exits_with_1(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'missing.db'}"

    result = runner.invoke(app, ["run", "-w", url, "-d", "1s", "--no-persist"])

    assert result.exit_code == 1
    assert "Error:" in result.output


def test_setup_then_load_sqlite(tmp_path: Path, corpus_dir: Path) -> None:
    url = f"sqlite:///{tmp_path / 'cli.db'}"

    setup = runner.invoke(app, ["setup", "--writer-url", url])
    load = runner.invoke(app, ["load", "--writer-url", url, "--data-dir", str(corpus_dir)])

    assert setup.exit_code == 0, setup.output
    assert "Schema applied (sqlite)" in setup.stdout
    assert load.exit_code == 0, load.output
    assert "customer=3" in load.stdout
    assert "market_data=3" in load.stdout


def test_load_requires_a_writer_url(corpus_dir: Path) -> None:
    result = runner.invoke(app, ["load", "--data-dir", str(corpus_dir)])

    assert result.exit_code == 2


def test_queries_lists_the_catalog() -> None:
    result = runner.invoke(app, ["queries"])

    assert result.exit_code == 0
    assert "Query Catalog" in result.stdout
    assert "top_performers" in result.stdout


def test_info_shows_effective_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WRITER_URL", "memory://")
    monkeypatch.setenv("BENCHMARK_TPS", "25")

    result = runner.invoke(app, ["info"])

    assert result.exit_code == 0
    assert "writer=memory://" in result.stdout
    assert "tps=25" in result.stdout
