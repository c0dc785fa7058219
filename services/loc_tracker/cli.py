#!/usr/bin/env python3
"""
LoC Tracker CLI

Command-line interface for watching repositories, running one-off
reconciliations and printing the tracked totals.

Examples:
    loc-tracker watch ~/src/app ~/src/lib --author "Jane Doe <jane@example.com>"
    loc-tracker reconcile ~/src/app --author jane@example.com
    loc-tracker report
    loc-tracker history app --limit 5
"""

import asyncio
import json
import logging
import signal
import sys
from datetime import timedelta
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.settings import (
    DatabaseSettings,
    Settings,
    get_database_url,
    get_settings,
    sqlite_path,
    validate_configuration,
)
from services.loc_tracker import __version__
from services.loc_tracker.main import LocTrackerService
from services.loc_tracker.reporter import format_summary_lines
from shared.exceptions import StoreFailure
from shared.models import LocChange, ReconcileResult, RepositorySummary, ReportTotals

logger = logging.getLogger(__name__)

# Initialize Rich console
console = Console()


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, config.monitoring.log_level),
        format=config.monitoring.log_format,
    )


def build_settings(
    base: Settings,
    paths: List[str],
    author: Optional[str],
    db_url: Optional[str] = None,
    debounce: Optional[float] = None,
    poll: Optional[float] = None,
) -> Settings:
    """Apply command-line overrides on top of environment configuration."""
    config = base.with_repositories(list(paths), author)
    if db_url:
        config = config.model_copy(
            update={"database": DatabaseSettings(url=db_url, echo=config.database.echo)}
        )
    watcher_updates = {}
    if debounce is not None:
        watcher_updates["debounce_seconds"] = debounce
    if poll is not None:
        watcher_updates["fallback_poll_seconds"] = poll
    if watcher_updates:
        watcher = config.watcher.model_validate(
            {**config.watcher.model_dump(), **watcher_updates}
        )
        config = config.model_copy(update={"watcher": watcher})
    return config


def display_summary(summaries: List[RepositorySummary], totals: ReportTotals):
    """Display per-repository totals in a table."""
    if not summaries:
        console.print(Panel("No repositories have been reconciled yet.", title="LoC Summary"))
        return

    table = Table(title="LoC Summary", show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Committed", justify="right", style="green")
    table.add_column("In Progress", justify="right", style="yellow")
    table.add_column("Total", justify="right", style="bold")
    table.add_column("Last Commit", style="dim")
    table.add_column("Updated", style="blue")

    for summary in summaries:
        updated = summary.last_updated_at.isoformat(timespec="seconds") if summary.last_updated_at else "never"
        if summary.stale:
            updated = f"[red]{updated} (stale)[/red]"
        table.add_row(
            summary.repo_id,
            str(summary.committed_loc),
            str(summary.pending_loc),
            str(summary.total),
            (summary.last_commit or "-")[:12],
            updated,
        )

    table.add_section()
    table.add_row(
        f"Total ({totals.repositories})",
        str(totals.committed_loc),
        str(totals.pending_loc),
        str(totals.total),
        "",
        "",
    )
    console.print(table)


def display_history(repo_id: str, changes: List[LocChange]):
    """Display reconciliation history for one repository."""
    if not changes:
        console.print(Panel(f"No history for {repo_id}.", title="LoC History"))
        return

    table = Table(title=f"LoC History: {repo_id}", show_header=True, header_style="bold magenta")
    table.add_column("When", style="blue")
    table.add_column("Head", style="dim")
    table.add_column("Committed", justify="right")
    table.add_column("Pending", justify="right")
    table.add_column("Trigger", style="cyan")

    for change in changes:
        committed = f"[green]+{change.committed_added}[/green] [red]-{change.committed_removed}[/red]"
        if change.rebaselined:
            committed += " [yellow](recount)[/yellow]"
        table.add_row(
            change.timestamp.isoformat(timespec="seconds"),
            (change.head_commit or "-")[:12],
            committed,
            f"[green]+{change.pending_added}[/green] [red]-{change.pending_removed}[/red]",
            change.trigger,
        )
    console.print(table)


def display_result(result: ReconcileResult):
    """One line per reconciliation outcome."""
    if result.ok and result.state is not None:
        note = " [yellow](history rewritten, recounted)[/yellow]" if result.rebaselined else ""
        console.print(
            f"[green]✓[/green] {result.repo_id}: {result.state.committed_loc} LoC committed, "
            f"{result.state.pending_loc} LoC In Progress{note}"
        )
    else:
        console.print(f"[red]✗[/red] {result.repo_id}: {result.status.value}: {result.error}")


def _fail(message: str):
    console.print(f"[red]❌ Error: {message}[/red]")
    sys.exit(1)


def require_store(config: Settings):
    """Inspection commands never create a database; stop early when there is none."""
    db_path = sqlite_path(get_database_url(config))
    if db_path is not None and not db_path.exists():
        _fail(f"no LoC store at {db_path}; run 'reconcile' or 'watch' first")


def run_on_existing_store(config: Settings, action):
    """Run ``action(service)`` against an existing store without creating or altering its schema."""
    require_store(config)

    async def run():
        service = LocTrackerService(config)
        try:
            await service.initialize(create_schema=False)
            return await action(service)
        finally:
            await service.shutdown()

    try:
        return asyncio.run(run())
    except StoreFailure as e:
        _fail(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option("--db", "db_url", help="Database URL (default: sqlite:///loc_stats.db)")
@click.option("--log-level", help="Logging level override")
@click.pass_context
def cli(ctx, db_url: Optional[str], log_level: Optional[str]):
    """LoC Tracker - attribute committed and pending line changes to one author."""
    try:
        config = get_settings()
        if log_level:
            monitoring = config.monitoring.model_validate(
                {**config.monitoring.model_dump(), "log_level": log_level}
            )
            config = config.model_copy(update={"monitoring": monitoring})
    except ValueError as e:
        _fail(str(e))
    configure_logging(config)
    ctx.obj = {"settings": config, "db_url": db_url}


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, file_okay=False))
@click.option("--author", "-a", help="Author name, e-mail or 'Name <email>' for the given paths")
@click.option("--debounce", type=float, help="Seconds of quiet before reconciling")
@click.option("--poll", type=float, help="Polling interval when filesystem events are unavailable")
@click.pass_context
def watch(ctx, paths, author: Optional[str], debounce: Optional[float], poll: Optional[float]):
    """Watch repositories and keep their totals up to date until interrupted."""
    try:
        config = build_settings(
            ctx.obj["settings"], paths, author, ctx.obj["db_url"], debounce, poll
        )
    except ValueError as e:
        _fail(str(e))

    for warning in validate_configuration(config)["warnings"]:
        console.print(f"[yellow]⚠ {warning}[/yellow]")

    async def run():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                pass

        def on_result(result: ReconcileResult):
            if result.changed or not result.ok:
                display_result(result)

        service = LocTrackerService(config, on_result=on_result)
        await service.initialize()
        if not service.reconciler.repo_ids:
            await service.shutdown()
            _fail("no valid repositories to watch")
        console.print(
            Panel(
                "\n".join(service.reconciler.repo_ids),
                title=f"Watching {len(service.reconciler.repo_ids)} repositories (Ctrl+C to stop)",
                border_style="green",
            )
        )
        await service.run(stop)
        summaries = await service.reporter.summarize()
        for line in format_summary_lines(summaries):
            console.print(line)

    asyncio.run(run())


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path(exists=True, file_okay=False))
@click.option("--author", "-a", help="Author name, e-mail or 'Name <email>' for the given paths")
@click.pass_context
def reconcile(ctx, paths, author: Optional[str]):
    """Reconcile every configured repository once and print the results."""
    try:
        config = build_settings(ctx.obj["settings"], paths, author, ctx.obj["db_url"])
    except ValueError as e:
        _fail(str(e))

    async def run() -> bool:
        service = LocTrackerService(config)
        try:
            results = await service.reconcile_all()
            for repo_id, reason in service.configuration_errors.items():
                console.print(f"[red]✗[/red] {repo_id}: configuration error: {reason}")
            for result in results:
                display_result(result)
            return all(result.ok for result in results) and not service.configuration_errors
        finally:
            await service.shutdown()

    if not asyncio.run(run()):
        sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.option("--stale-after", type=float, help="Flag repositories not updated for this many seconds")
@click.pass_context
def report(ctx, as_json: bool, stale_after: Optional[float]):
    """Show the persisted totals for every repository."""
    config = build_settings(ctx.obj["settings"], [], None, ctx.obj["db_url"])
    window = timedelta(seconds=stale_after) if stale_after is not None else None

    async def collect(service: LocTrackerService):
        return await service.reporter.summarize(window), await service.reporter.totals()

    summaries, totals = run_on_existing_store(config, collect)
    if as_json:
        payload = {
            "repositories": [summary.model_dump(mode="json") for summary in summaries],
            "totals": totals.model_dump(mode="json"),
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        display_summary(summaries, totals)


@cli.command()
@click.argument("repo_id")
@click.option("--limit", "-l", default=20, show_default=True, help="Number of entries to show")
@click.pass_context
def history(ctx, repo_id: str, limit: int):
    """Show recent reconciliation history for one repository."""
    config = build_settings(ctx.obj["settings"], [], None, ctx.obj["db_url"])

    async def collect(service: LocTrackerService):
        return await service.reporter.history(repo_id, limit=limit)

    display_history(repo_id, run_on_existing_store(config, collect))


@cli.command()
@click.argument("repo_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def forget(ctx, repo_id: str, yes: bool):
    """Delete a repository's totals and history."""
    config = build_settings(ctx.obj["settings"], [], None, ctx.obj["db_url"])
    require_store(config)
    if not yes and not click.confirm(f"Delete all tracked totals for {repo_id}?"):
        console.print("Aborted.")
        return

    async def remove(service: LocTrackerService):
        return await service.store.delete(repo_id)

    if run_on_existing_store(config, remove):
        console.print(f"[green]✓[/green] Removed {repo_id}")
    else:
        _fail(f"unknown repository: {repo_id}")


if __name__ == "__main__":
    cli()
