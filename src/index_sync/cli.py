"""
Typer CLI for index-sync.

Provides commands for running the sync service and for one-shot retention sweeps.
"""

import asyncio
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from index_sync.clients.elasticsearch import ElasticsearchClient
from index_sync.config import Settings, get_settings
from index_sync.coordination.coordinator import build_sweeper
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.errors import ConnectivityError, SearchEngineError
from index_sync.main import run as run_service
from index_sync.retention.sweeper import SweepReport
from index_sync.utils.logging import configure_logging, get_logger

app = typer.Typer(
    name="index-sync",
    help="Kafka to Elasticsearch sync service with index retention sweeping",
    add_completion=False,
)
console = Console()
logger = get_logger(__name__)


def _settings(**overrides: Any) -> Settings:
    """Settings from the environment, with CLI flags that were given taking precedence."""
    settings = get_settings()
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return settings
    return Settings.model_validate({**settings.model_dump(), **updates})


def _configure_logging(settings: Settings) -> None:
    configure_logging(
        level="DEBUG" if settings.debug else "INFO",
        json_format=settings.log_json and not settings.debug,
    )


@app.command()
def run(
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Debug logging with human-readable output"),
    ] = False,
) -> None:
    """
    Run the sync service.

    Consumes the configured topics into Elasticsearch and sweeps expired
    indices until SIGTERM or SIGINT.
    """
    settings = _settings(debug=debug or None)
    _configure_logging(settings)
    code = run_service(settings)
    raise typer.Exit(code)


@app.command()
def sweep(
    elasticsearch_url: Annotated[
        str | None,
        typer.Option("--elasticsearch-url", "-e", help="Elasticsearch base URL"),
    ] = None,
    index_filter: Annotated[
        str | None,
        typer.Option(
            "--index-filter",
            "-f",
            help="Comma-separated index patterns to sweep (e.g. 'logs-*,metrics-*')",
        ),
    ] = None,
    keep_days: Annotated[
        int | None,
        typer.Option("--keep-days", "-k", help="Delete indices older than this many days", min=0),
    ] = None,
    repository: Annotated[
        str | None,
        typer.Option("--repository", "-r", help="Snapshot repository to back up indices first"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="List expired indices without deleting them"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", "-d", help="Debug logging with human-readable output"),
    ] = False,
) -> None:
    """
    Run a single retention sweep and exit.

    Exits non-zero when indices could not be listed or a deletion failed.
    """
    settings = _settings(
        elasticsearch_url=elasticsearch_url,
        index_patterns=index_filter,
        retention_days=keep_days,
        snapshot_repository=repository,
        debug=debug or None,
    )
    _configure_logging(settings)

    try:
        report = asyncio.run(_sweep(settings, dry_run))
    except (ConnectivityError, SearchEngineError) as e:
        console.print(f"[bold red]✗ Cannot reach Elasticsearch:[/bold red] {e}")
        raise typer.Exit(1) from e

    _print_report(report)
    raise typer.Exit(1 if report.error or report.failed else 0)


async def _sweep(settings: Settings, dry_run: bool) -> SweepReport:
    async with ElasticsearchClient.from_settings(settings) as client:
        sweeper = build_sweeper(settings, client, IndexLeaseTable())
        logger.info(
            f"Sweeping {sweeper.config.patterns}, keeping {sweeper.config.retention_days} days"
        )
        return await sweeper.sweep_once(dry_run=dry_run)


def _print_report(report: SweepReport) -> None:
    if report.error:
        console.print(f"[bold red]✗ Sweep failed:[/bold red] {report.error}")
        return

    table = Table(title="Retention sweep (dry run)" if report.dry_run else "Retention sweep")
    table.add_column("Index", style="cyan")
    table.add_column("Action")

    deleted, deferred, failed = set(report.deleted), set(report.deferred), set(report.failed)
    for name in report.expired:
        if report.dry_run:
            action = "[yellow]would delete[/yellow]"
        elif name in deleted:
            action = "[green]deleted[/green]"
        elif name in deferred:
            action = "[yellow]deferred[/yellow]"
        elif name in failed:
            action = "[red]failed[/red]"
        else:
            action = "skipped"
        table.add_row(name, action)
    for name in report.kept:
        table.add_row(name, "kept")

    console.print(table)
    console.print(
        f"{len(report.deleted)} deleted, {len(report.deferred)} deferred, "
        f"{len(report.failed)} failed, {len(report.kept)} kept"
    )
