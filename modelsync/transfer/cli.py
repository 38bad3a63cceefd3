"""
CLI commands for artifact transfer.

Provides the download, import and upload verbs plus status and list views.
"""

import asyncio
import dataclasses
import sys
from typing import Iterable, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from ..config import Config
from ..errors import SyncError
from .importer import ImportReport
from .outcome import Outcome, OutcomeStatus
from .pipeline import BatchReport, SyncPipeline
from .reconcile import ALL

console = Console()

STATUS_STYLE = {
    OutcomeStatus.SUCCESS: "[green]✓ success[/green]",
    OutcomeStatus.SKIPPED: "[yellow]- skipped[/yellow]",
    OutcomeStatus.FAILED: "[red]✗ failed[/red]",
}

# Lets "-all" through as a positional selector
SELECTOR_SETTINGS = {"ignore_unknown_options": True}


def run_async(coro):
    """Run an async function."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        return loop.run_until_complete(coro)


def _config(ctx: click.Context, **overrides) -> Config:
    config: Config = ctx.obj["config"]
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def _selectors(selectors: Tuple[str, ...], select_all: bool) -> List[str]:
    items = list(selectors)
    if select_all:
        items.append(ALL)
    unknown = [s for s in items if s.startswith("--")]
    if unknown:
        raise click.UsageError(f"Unknown option(s): {', '.join(unknown)}")
    if not items:
        raise click.UsageError("Give at least one selector (name or identifier) or -all")
    return items


def _print_outcomes(title: str, outcomes: Iterable[Outcome]) -> None:
    outcomes = list(outcomes)
    if not outcomes:
        return

    console.print(f"\n[bold]{title}[/bold]\n")

    table = Table()
    table.add_column("Item", style="cyan")
    table.add_column("Status")
    table.add_column("Reason")

    for outcome in outcomes:
        table.add_row(outcome.item, STATUS_STYLE[outcome.status], outcome.reason)

    console.print(table)


def _print_summary(succeeded: int, skipped: int, failed: int) -> None:
    console.print(
        f"\n[dim]{succeeded} succeeded, {skipped} skipped, {failed} failed[/dim]"
    )


def _fail(error: Exception) -> None:
    console.print(f"[red]{error}[/red]")
    sys.exit(1)


@click.command('download', context_settings=SELECTOR_SETTINGS)
@click.argument('selectors', nargs=-1, type=click.UNPROCESSED)
@click.option('--all', 'select_all', is_flag=True, help='Download every artifact the source lists')
@click.option('--source', help='Source registry URL')
@click.option('--local', help='Local registry URL')
@click.pass_context
def download(ctx, selectors: Tuple[str, ...], select_all: bool, source: Optional[str], local: Optional[str]):
    """Package source artifacts missing from the local registry."""

    items = _selectors(selectors, select_all)
    config = _config(ctx, source_registry_url=source, local_registry_url=local)

    async def _run() -> BatchReport:
        async with SyncPipeline(config) as pipeline:
            return await pipeline.download(items)

    try:
        report = run_async(_run())
    except SyncError as e:
        _fail(e)

    if report.no_work:
        console.print("[green]Nothing to download.[/green]")
        return

    _print_outcomes("Download", report.outcomes)
    _print_summary(len(report.succeeded), len(report.skipped), len(report.failed))

    if not report.ok:
        sys.exit(1)


@click.command('import')
@click.pass_context
def import_archives(ctx):
    """Unpack pending archives into the model store."""

    config = _config(ctx)

    async def _run() -> ImportReport:
        async with SyncPipeline(config) as pipeline:
            return await pipeline.import_archives()

    try:
        report = run_async(_run())
    except SyncError as e:
        _fail(e)

    if report.no_work:
        console.print(f"[green]No archives pending in {config.archive_store_dir}.[/green]")
        return

    _print_outcomes("Import", report.outcomes)
    _print_summary(report.imported_count, len(report.skipped), report.failed_count)

    if report.failed_count:
        sys.exit(1)


@click.command('upload', context_settings=SELECTOR_SETTINGS)
@click.argument('selectors', nargs=-1, type=click.UNPROCESSED)
@click.option('--all', 'select_all', is_flag=True, help='Upload every artifact the local registry lists')
@click.option('--local', help='Local registry URL')
@click.option('--mirror', help='Mirror registry URL')
@click.option('--verify/--no-verify', default=None, help='Confirm the remote import by re-listing the mirror')
@click.pass_context
def upload(
    ctx,
    selectors: Tuple[str, ...],
    select_all: bool,
    local: Optional[str],
    mirror: Optional[str],
    verify: Optional[bool]
):
    """Push local artifacts to the mirror."""

    items = _selectors(selectors, select_all)
    config = _config(
        ctx,
        local_registry_url=local,
        mirror_registry_url=mirror,
        verify_remote_import=verify,
    )

    async def _run() -> BatchReport:
        async with SyncPipeline(config) as pipeline:
            return await pipeline.upload(items)

    try:
        report = run_async(_run())
    except SyncError as e:
        _fail(e)

    _print_outcomes("Upload", report.outcomes)
    _print_summary(len(report.succeeded), len(report.skipped), len(report.failed))

    if not report.ok:
        sys.exit(1)


@click.command('status')
@click.pass_context
def status(ctx):
    """Show pending archives and resumable downloads."""

    config = _config(ctx)
    pipeline = SyncPipeline(config)
    state = pipeline.status()

    console.print("\n[bold]Transfer Status[/bold]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Archive store", state["archive_store_dir"])
    table.add_row("Staging", state["staging_root"])
    table.add_row("Model store", state["model_store_dir"])
    table.add_row("Pending import", str(len(state["pending"])))
    table.add_row("Being imported", str(len(state["claimed"])))
    table.add_row("Resumable downloads", str(len(state["staged"])))

    console.print(table)

    for label, key in (("Pending", "pending"), ("Claimed", "claimed"), ("Staged", "staged")):
        if state[key]:
            console.print(f"\n[bold]{label}:[/bold]")
            for item in state[key]:
                console.print(f"  • {item}")

    console.print()


@click.command('list')
@click.option(
    '--registry', '-r',
    type=click.Choice(['source', 'local', 'mirror']),
    default='local',
    show_default=True,
    help='Registry to list'
)
@click.option('--missing', is_flag=True, help='Show source artifacts missing from the local registry')
@click.pass_context
def list_artifacts(ctx, registry: str, missing: bool):
    """List artifacts of a registry."""

    config = _config(ctx)

    async def _run():
        async with SyncPipeline(config) as pipeline:
            if missing:
                return await pipeline.missing()
            return await pipeline.listing(registry)

    try:
        result = run_async(_run())
    except SyncError as e:
        _fail(e)

    if missing:
        if not result:
            console.print("[green]The local registry has every source artifact.[/green]")
            return
        console.print(f"\n[bold]Missing from local ({len(result)})[/bold]\n")
        for identifier in result:
            console.print(f"  • {identifier}")
        console.print("\n[dim]Fetch with: modelsync download -all[/dim]")
        return

    if not result:
        console.print(f"[yellow]The {registry} registry lists no artifacts.[/yellow]")
        return

    table = Table(title=f"{registry.capitalize()} registry")
    table.add_column("Name", style="cyan")
    table.add_column("Identifier")

    for record in result:
        table.add_row(record.name or "-", record.identifier)

    console.print(table)


# Function to register with main CLI
def register_commands(cli):
    """Register transfer commands with the main CLI."""
    for command in (download, import_archives, upload, status, list_artifacts):
        cli.add_command(command)
