from __future__ import annotations

import contextlib
import os
from typing import Any, Callable, Dict, Generator, List, Optional

from rich import box
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn, TimeRemainingColumn
from rich.table import Table

from rr_bench.workload.catalog import QueryDefinition

_STATUS_STYLES = {
    "completed": "bold green",
    "degraded": "bold yellow",
    "failed": "bold red",
    "aborted": "bold red",
}


def _format_memory(mem_bytes: int) -> str:
    mem_gb = mem_bytes / (1024**3)
    if mem_gb >= 1:
        return f"{mem_gb:.1f}GB"
    return f"{mem_bytes / (1024**2):.0f}MB"


def get_container_resources() -> Dict[str, Optional[str]]:
    """
    Get container resource constraints.

    Reads from environment variables or cgroup files when running in a container.
    Returns dict with 'cpus' and 'memory' keys.
    """
    resources: Dict[str, Optional[str]] = {"cpus": None, "memory": None}

    # Environment first (set by docker-compose or manually)
    if os.environ.get("BENCHMARK_CPU_LIMIT"):
        resources["cpus"] = os.environ["BENCHMARK_CPU_LIMIT"]
    if os.environ.get("BENCHMARK_MEMORY_LIMIT"):
        resources["memory"] = os.environ["BENCHMARK_MEMORY_LIMIT"]

    # cgroup v2
    if resources["cpus"] is None:
        try:
            with open("/sys/fs/cgroup/cpu.max", "r") as f:
                parts = f.read().strip().split()
            if len(parts) == 2 and parts[0] != "max":
                resources["cpus"] = f"{int(parts[0]) / int(parts[1]):.1f}"
        except (FileNotFoundError, PermissionError, ValueError):
            pass

    if resources["memory"] is None:
        try:
            with open("/sys/fs/cgroup/memory.max", "r") as f:
                content = f.read().strip()
            if content != "max":
                resources["memory"] = _format_memory(int(content))
        except (FileNotFoundError, PermissionError, ValueError):
            pass

    return resources


def _ms(value: float) -> str:
    return f"{value:,.2f}"


def print_report(report: Dict[str, Any], console: Optional[Console] = None) -> None:
    """
    Render a run report (the dict form of `RunReport`) as rich tables.

    One row per operation or query name, writes first, then the writer's
    pacing stats and any failures.
    """
    console = console or Console()
    status = report.get("status", "unknown")
    style = _STATUS_STYLES.get(status, "bold")

    resources = get_container_resources()
    resource_parts = []
    if resources["cpus"]:
        resource_parts.append(f"CPU: {resources['cpus']} cores")
    if resources["memory"]:
        resource_parts.append(f"Memory: {resources['memory']}")

    title = f"Read-Replica Benchmark: {report.get('backend', '?')} [{style}]{status}[/{style}]"
    if resource_parts:
        title = f"{title}\n[dim]Container Resources: {' │ '.join(resource_parts)}[/dim]"

    metrics = report.get("metrics", {})
    caption = (
        f"{metrics.get('total_samples', 0):,} samples over "
        f"{report.get('run_duration_seconds', 0.0):.2f}s ({report.get('cancel_reason') or 'n/a'})"
    )
    table = Table(title=title, box=box.ROUNDED, caption=caption)
    table.add_column("Operation", style="cyan", no_wrap=True)
    table.add_column("Kind", style="blue")
    table.add_column("Count", justify="right", style="magenta")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Timeouts", justify="right", style="red")
    table.add_column("Min (ms)", justify="right", style="green")
    table.add_column("Mean (ms)", justify="right", style="green")
    table.add_column("Stddev (ms)", justify="right", style="green")
    table.add_column("p50 (ms)", justify="right", style="green")
    table.add_column("p95 (ms)", justify="right", style="yellow")
    table.add_column("p99 (ms)", justify="right", style="yellow")
    table.add_column("Max (ms)", justify="right", style="yellow")
    table.add_column("Ops/s", justify="right", style="bold green")

    rows: List[Dict[str, Any]] = sorted(
        metrics.get("metrics", []),
        key=lambda m: (m.get("category") != "write", m.get("name", "")),
    )
    for metric in rows:
        table.add_row(
            metric["name"],
            metric["category"],
            f"{metric['count']:,}",
            f"{metric['errors']:,}",
            f"{metric['timeouts']:,}",
            _ms(metric["min_ms"]),
            _ms(metric["mean_ms"]),
            _ms(metric.get("stddev_ms", 0.0)),
            _ms(metric["p50_ms"]),
            _ms(metric["p95_ms"]),
            _ms(metric["p99_ms"]),
            _ms(metric["max_ms"]),
            f"{metric['throughput']:,.2f}",
        )
    if not rows:
        table.add_row("[dim]no samples[/dim]", *[""] * 12)
    console.print(table)

    writer = report.get("writer", {})
    issued = writer.get("issued", {})
    console.print(
        "[bold]Writer[/bold] issued "
        + ", ".join(f"{action}={count:,}" for action, count in issued.items())
        + f" | missed ticks={writer.get('missed_ticks', 0):,}"
        + f" | skipped={writer.get('skipped', 0):,}"
    )
    skipped = report.get("readers", {}).get("skipped", {})
    if any(skipped.values()):
        console.print(
            "[bold]Readers[/bold] skipped "
            + ", ".join(f"{name}={count:,}" for name, count in skipped.items())
        )

    profile = report.get("profile") or {}
    if profile.get("peak_rss_bytes"):
        cpu = profile.get("cpu_percent")
        console.print(
            f"[dim]Harness: peak RSS {_format_memory(profile['peak_rss_bytes'])}"
            + (f", CPU {cpu:.1f}%" if cpu is not None else "")
            + (f", {profile['peak_threads']} threads" if profile.get("peak_threads") else "")
            + "[/dim]"
        )

    for failure in report.get("failures", []):
        console.print(f"[red]Worker {failure['task']} failed: {failure['error']}[/red]")
    for name in report.get("hung_tasks", []):
        console.print(f"[red]Worker {name} did not stop within the grace period[/red]")
    late = metrics.get("late_samples", 0)
    if late:
        console.print(f"[yellow]{late:,} samples arrived after the report was finalized[/yellow]")
    for name in report.get("failed_components", []):
        console.print(f"[red]{name} produced no successful samples[/red]")


def print_catalog(catalog: List[QueryDefinition], console: Optional[Console] = None) -> None:
    """Render the read query catalog."""
    console = console or Console()
    table = Table(title="Query Catalog", box=box.ROUNDED)
    table.add_column("Query", style="cyan", no_wrap=True)
    table.add_column("Parameters", style="magenta")
    table.add_column("Source", style="blue")
    table.add_column("Weight", justify="right", style="green")
    table.add_column("Columns", style="dim")
    for query in catalog:
        table.add_row(
            query.name,
            ", ".join(param.value for param in query.params) or "-",
            query.source.value,
            f"{query.weight:g}",
            ", ".join(query.columns),
        )
    console.print(table)


@contextlib.contextmanager
def run_progress(
    total: float, enabled: bool = True, console: Optional[Console] = None
) -> Generator[Callable[[float], None], None, None]:
    """
    Progress bar over the run window, drawn on stderr.

    Yields an `update(elapsed_seconds)` callable; when disabled the callable
    does nothing, so callers never branch on it.
    """
    if not enabled:
        yield lambda elapsed: None
        return

    progress = Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed:.0f}/{task.total:.0f}s"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console or Console(stderr=True),
        transient=True,
    )
    task_id = progress.add_task("benchmark", total=total)

    def update(elapsed: float) -> None:
        progress.update(task_id, completed=min(elapsed, total))

    with progress:
        yield update
