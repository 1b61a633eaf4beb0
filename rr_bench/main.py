from __future__ import annotations

import json
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

import typer

from rr_bench.config import RunConfig, get_settings
from rr_bench.errors import BackendConnectionError, ConfigError
from rr_bench.infrastructure.loader import apply_schema, load_dataset
from rr_bench.orchestrator import run_benchmark
from rr_bench.reporter import print_catalog, print_report
from rr_bench.utils.logging import configure_logging
from rr_bench.workload.catalog import QUERY_CATALOG

app = typer.Typer(help="Read-replica price-performance benchmark CLI.")

EXIT_CANNOT_CONNECT = 1
EXIT_CONFIG = 2


class OutputFormat(str, Enum):
    table = "table"
    json = "json"


def _fail(message: str, code: int) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=code)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"writer={settings.writer_url or '-'} reader={settings.reader_url or '(writer)'} | "
        f"env={settings.app_env} log={settings.log_level}{' json' if settings.log_json else ''}"
    )
    typer.echo(
        f"duration={settings.benchmark_duration} tps={settings.benchmark_tps:g} "
        f"concurrency={settings.benchmark_concurrency} seed={settings.benchmark_seed} "
        f"writer_connections={settings.benchmark_writer_connections} "
        f"delete_scope={settings.benchmark_delete_scope}"
    )
    typer.echo(
        f"mix=insert:{settings.benchmark_insert_weight:g}/update:{settings.benchmark_update_weight:g}"
        f"/delete:{settings.benchmark_delete_weight:g} "
        f"call_timeout={settings.benchmark_call_timeout:g}s grace={settings.benchmark_grace_period:g}s "
        f"snapshot_timeout={settings.benchmark_snapshot_timeout:g}s "
        f"results={settings.benchmark_results_dir}"
    )


@app.command()
def queries() -> None:
    """
    List the read query catalog.
    """
    print_catalog(list(QUERY_CATALOG))


@app.command()
def setup(
    writer_url: Optional[str] = typer.Option(
        None, "--writer-url", "-w", help="Primary database URL (default: WRITER_URL)."
    ),
) -> None:
    """
    Create the schema and analytical views on the primary.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    url = writer_url or settings.writer_url
    if not url:
        raise _fail("a writer URL is required (--writer-url or WRITER_URL)", EXIT_CONFIG)
    try:
        engine = apply_schema(url)
    except ConfigError as exc:
        raise _fail(str(exc), EXIT_CONFIG) from exc
    except BackendConnectionError as exc:
        raise _fail(str(exc), EXIT_CANNOT_CONNECT) from exc
    typer.echo(f"Schema applied ({engine}).")


@app.command()
def load(
    writer_url: Optional[str] = typer.Option(
        None, "--writer-url", "-w", help="Primary database URL (default: WRITER_URL)."
    ),
    data_dir: Path = typer.Option(
        ..., "--data-dir", "-d", help="Directory holding customers.csv, accounts.csv, ..."
    ),
) -> None:
    """
    Load the CSV corpus into the primary.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    url = writer_url or settings.writer_url
    if not url:
        raise _fail("a writer URL is required (--writer-url or WRITER_URL)", EXIT_CONFIG)
    try:
        counts = load_dataset(url, data_dir)
    except ConfigError as exc:
        raise _fail(str(exc), EXIT_CONFIG) from exc
    except BackendConnectionError as exc:
        raise _fail(str(exc), EXIT_CANNOT_CONNECT) from exc
    typer.echo(
        "Loaded " + ", ".join(f"{kind.value}={count:,}" for kind, count in counts.items()) + "."
    )


@app.command()
def run(
    duration: Optional[str] = typer.Option(
        None, "--duration", "-d", help="Run length, e.g. 250ms, 10s, 5m, 1h30m."
    ),
    tps: Optional[float] = typer.Option(
        None, "--transactions-per-second", "--tps", "-t", help="Target write rate."
    ),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", help="Number of read workers."
    ),
    writer_url: Optional[str] = typer.Option(
        None, "--writer-url", "-w", help="Primary database URL (default: WRITER_URL)."
    ),
    reader_url: Optional[str] = typer.Option(
        None, "--reader-url", "-r", help="Replica URL (default: READER_URL, else the writer)."
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Deterministic RNG seed."),
    call_timeout: Optional[str] = typer.Option(
        None, "--call-timeout", help="Per-call timeout (duration)."
    ),
    snapshot_timeout: Optional[str] = typer.Option(
        None, "--snapshot-timeout", help="Bound on the startup id snapshot (duration)."
    ),
    grace_period: Optional[str] = typer.Option(
        None, "--grace-period", help="Drain bound after cancellation (duration)."
    ),
    writer_connections: Optional[int] = typer.Option(
        None, "--writer-connections", help="Max concurrent in-flight writes."
    ),
    delete_scope: Optional[str] = typer.Option(
        None, "--delete-scope", help="Delete targets: 'any' or 'corpus' (pre-run rows only)."
    ),
    insert_weight: Optional[float] = typer.Option(None, "--insert-weight", help="Insert weight."),
    update_weight: Optional[float] = typer.Option(None, "--update-weight", help="Update weight."),
    delete_weight: Optional[float] = typer.Option(None, "--delete-weight", help="Delete weight."),
    validate: bool = typer.Option(
        True, "--validate/--no-validate", help="Check query result columns before starting."
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Write results JSON."),
    results_dir: Optional[Path] = typer.Option(
        None, "--results-dir", help="Directory for latest.json and run-<timestamp>.json."
    ),
    output: OutputFormat = typer.Option(
        OutputFormat.table, "--output", "-o", help="Report format on stdout."
    ),
    progress: Optional[bool] = typer.Option(
        None,
        "--progress/--no-progress",
        help="Progress bar on stderr (default: on for table output in a terminal).",
    ),
) -> None:
    """
    Run one benchmark and report per-operation latency and throughput.

    Exit codes: 0 completed or degraded, 1 aborted or cannot connect,
    2 invalid configuration, 3 a component produced no successful samples.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=json_logs or settings.log_json)

    try:
        config = RunConfig.from_settings(
            settings,
            writer_url=writer_url,
            reader_url=reader_url,
            duration=duration,
            tps=tps,
            concurrency=concurrency,
            seed=seed,
            call_timeout=call_timeout,
            snapshot_timeout=snapshot_timeout,
            grace_period=grace_period,
            writer_connections=writer_connections,
            delete_scope=delete_scope,
            insert_weight=insert_weight,
            update_weight=update_weight,
            delete_weight=delete_weight,
            validate_queries=validate,
            persist=persist,
            results_dir=results_dir,
            progress=progress
            if progress is not None
            else output is OutputFormat.table and sys.stderr.isatty(),
        )
        report = run_benchmark(config)
    except ConfigError as exc:
        raise _fail(str(exc), EXIT_CONFIG) from exc
    except BackendConnectionError as exc:
        raise _fail(str(exc), EXIT_CANNOT_CONNECT) from exc

    if output is OutputFormat.json:
        typer.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        print_report(report.to_dict())
    raise typer.Exit(code=report.exit_code)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
