"""
Main CLI entry point for the Site Migrator.

This module provides the command-line interface using Click with Rich
formatting. ``export`` and ``import`` start a job and keep calling
``continue_job`` until it finishes, showing a progress bar meanwhile.
"""

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Tuple

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table
from rich.text import Text

from site_migrator import __version__
from site_migrator.core.exceptions import SiteMigratorError
from site_migrator.models.config import MigratorSettings, load_settings
from site_migrator.models.job import Direction, JobStatus, ProgressReport
from site_migrator.models.selection import ContentSelection, SelectionBuilder
from site_migrator.orchestrator.orchestrator import MigrationOrchestrator, build_orchestrator
from site_migrator.utils.logging import setup_logging

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
}


def _settings(ctx: click.Context) -> MigratorSettings:
    return ctx.obj['settings']


def _orchestrator(ctx: click.Context) -> MigrationOrchestrator:
    if 'orchestrator' not in ctx.obj:
        ctx.obj['orchestrator'] = build_orchestrator(_settings(ctx))
    return ctx.obj['orchestrator']


def parse_selection(items: Tuple[str, ...], option_keys: Tuple[str, ...],
                    widget_groups: Tuple[str, ...]) -> ContentSelection:
    """Build a selection from ``TYPE:ID`` item arguments and key lists."""
    builder = SelectionBuilder()
    for item in items:
        content_type, sep, item_id = item.partition(":")
        if not sep or not builder.add_item(content_type, item_id):
            raise click.BadParameter(f"expected TYPE:ID, got {item!r}", param_hint="--item")
    for key in option_keys:
        if not builder.add_option(key):
            raise click.BadParameter(f"invalid settings key {key!r}", param_hint="--option-key")
    for group in widget_groups:
        if not builder.add_widget_group(group):
            raise click.BadParameter(f"invalid widget group {group!r}", param_hint="--widget-group")
    return builder.freeze()


def render_report(report: ProgressReport) -> Panel:
    """Rich panel describing one job's progress."""
    style = STATUS_STYLES.get(report.status, "white")
    text = Text()
    text.append(f"Job: {report.job_id}\n", style="bold")
    text.append(f"Direction: {report.direction.value}\n", style="dim")
    text.append("Status: ", style="dim")
    text.append(f"{report.status.value}\n", style=f"bold {style}")
    text.append(f"Progress: {report.percent:.1f}% ({report.cursor}/{report.total_units} steps)\n", style="dim")
    text.append(f"Message: {report.message}", style="cyan")
    if report.archive_path:
        text.append(f"\nArchive: {report.archive_path}", style="dim")
    if report.eta_seconds is not None:
        text.append(f"\nEstimated time left: {report.eta_seconds}s", style="dim")
    if report.error:
        text.append(f"\nError ({report.error.kind}): {report.error.message}", style="red")
    for warning in report.warnings:
        text.append(f"\nWarning: {warning}", style="yellow")
    return Panel(text, title="Migration Job", border_style=style, padding=(1, 2))


def render_job_table(reports: List[ProgressReport]) -> Table:
    table = Table(
        title="Migration Jobs",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
        title_style="bold blue"
    )
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Direction", style="blue")
    table.add_column("Status")
    table.add_column("Progress", justify="right", style="yellow")
    table.add_column("Message", style="dim")
    table.add_column("Updated", style="dim")

    for report in reports:
        style = STATUS_STYLES.get(report.status, "white")
        updated = report.updated_at.strftime("%Y-%m-%d %H:%M") if report.updated_at else ""
        table.add_row(
            report.job_id,
            report.direction.value,
            f"[{style}]{report.status.value}[/{style}]",
            f"{report.percent:.1f}%",
            escape(report.message),
            updated
        )
    return table


def _print_report(report: ProgressReport, output_format: str):
    if output_format == 'json':
        console.print_json(report.model_dump_json())
    else:
        console.print(render_report(report))


async def drive_job(
    orchestrator: MigrationOrchestrator,
    direction: Direction,
    selection: ContentSelection,
    options: Dict[str, Any],
    job_id: Optional[str] = None,
    show_progress: bool = True
) -> ProgressReport:
    """Start (or attach to) a job and run it to a terminal state."""
    job = await orchestrator.start_job(direction, selection=selection, options=options, job_id=job_id)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
        disable=not show_progress,
    ) as progress:
        task = progress.add_task(job.status_message, total=100)
        while True:
            report = await orchestrator.continue_job(job.job_id)
            progress.update(task, completed=report.percent, description=report.message)
            if report.is_terminal:
                return report


def _run_job(ctx: click.Context, direction: Direction, selection: ContentSelection,
             options: Dict[str, Any], job_id: Optional[str]):
    try:
        orchestrator = _orchestrator(ctx)
        report = asyncio.run(drive_job(
            orchestrator, direction, selection, options,
            job_id=job_id, show_progress=not ctx.obj['verbose']
        ))
    except SiteMigratorError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)

    console.print(render_report(report))
    if report.status != JobStatus.COMPLETED:
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--config', '-c', type=click.Path(exists=True, dir_okay=False), help='Settings file (YAML or JSON)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def main(ctx: click.Context, version: bool, config: Optional[str], verbose: bool):
    """
    Site Migrator

    Export a site's database, media, plugins and themes to a single
    archive and import such an archive into another site.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose

    if version:
        console.print(f"Site Migrator version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    if 'settings' not in ctx.obj:
        try:
            ctx.obj['settings'] = load_settings(config)
        except SiteMigratorError as e:
            console.print(f"[red]Configuration error: {escape(e.message)}[/red]")
            sys.exit(2)

    settings = ctx.obj['settings']
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_file=settings.log_file,
        structured_logging=settings.structured_logging
    )


def category_options(func):
    """Flags switching archive sections off."""
    for flag in ('database', 'media', 'plugins', 'themes'):
        func = click.option(
            f'--{flag}/--no-{flag}', default=True, help=f'Include {flag}'
        )(func)
    return func


@main.command(name='export')
@category_options
@click.option('--archive', '-a', type=click.Path(dir_okay=False), help='Where to write the archive')
@click.option('--item', '-i', 'items', multiple=True, metavar='TYPE:ID', help='Export only this item (repeatable)')
@click.option('--option-key', 'option_keys', multiple=True, help='Settings key to include (repeatable)')
@click.option('--widget-group', 'widget_groups', multiple=True, help='Widget group to include (repeatable)')
@click.option('--job-id', help='Resume or reuse a job with this id')
@click.pass_context
def export_command(ctx: click.Context, database: bool, media: bool, plugins: bool, themes: bool,
                   archive: Optional[str], items: Tuple[str, ...], option_keys: Tuple[str, ...],
                   widget_groups: Tuple[str, ...], job_id: Optional[str]):
    """Export the site into an archive."""
    selection = parse_selection(items, option_keys, widget_groups)
    options = {
        "database": database,
        "media": media,
        "plugins": plugins,
        "themes": themes,
        "archive_path": archive,
    }
    if ctx.obj['verbose']:
        console.print(f"[dim]Options: {json.dumps(options)}[/dim]")
        console.print(f"[dim]Selection: {json.dumps(selection.to_dict())}[/dim]")
    _run_job(ctx, Direction.EXPORT, selection, options, job_id)


@main.command(name='import')
@click.argument('archive', type=click.Path(exists=True, dir_okay=False))
@category_options
@click.option('--replace-urls/--no-replace-urls', default=True, help='Rewrite source URLs and paths')
@click.option('--site-url', help='Site URL to keep after import')
@click.option('--home-url', help='Home URL to keep after import')
@click.option('--item', '-i', 'items', multiple=True, metavar='TYPE:ID', help='Import only this item (repeatable)')
@click.option('--option-key', 'option_keys', multiple=True, help='Settings key to import (repeatable)')
@click.option('--widget-group', 'widget_groups', multiple=True, help='Widget group to import (repeatable)')
@click.option('--job-id', help='Resume or reuse a job with this id')
@click.pass_context
def import_command(ctx: click.Context, archive: str, database: bool, media: bool, plugins: bool,
                   themes: bool, replace_urls: bool, site_url: Optional[str], home_url: Optional[str],
                   items: Tuple[str, ...], option_keys: Tuple[str, ...],
                   widget_groups: Tuple[str, ...], job_id: Optional[str]):
    """Import an archive into the site."""
    selection = parse_selection(items, option_keys, widget_groups)
    options = {
        "database": database,
        "media": media,
        "plugins": plugins,
        "themes": themes,
        "archive_path": archive,
        "replace_urls": replace_urls,
        "target_site_url": site_url,
        "target_home_url": home_url,
    }
    _run_job(ctx, Direction.IMPORT, selection, options, job_id)


@main.command()
@click.argument('job_id')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']),
              default='table', help='Output format')
@click.pass_context
def status(ctx: click.Context, job_id: str, output_format: str):
    """Show the progress of a job."""
    try:
        report = _orchestrator(ctx).status(job_id)
    except SiteMigratorError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)
    _print_report(report, output_format)


@main.command()
@click.argument('job_id')
@click.pass_context
def cancel(ctx: click.Context, job_id: str):
    """Cancel a pending or running job."""
    try:
        report = asyncio.run(_orchestrator(ctx).cancel_job(job_id))
    except SiteMigratorError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)
    console.print(render_report(report))


@main.command()
@click.argument('job_id')
@click.pass_context
def rollback(ctx: click.Context, job_id: str):
    """Restore the database from the pre-import snapshot of an import job."""
    try:
        report = asyncio.run(_orchestrator(ctx).rollback_job(job_id))
    except SiteMigratorError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)
    console.print(render_report(report))


@main.command()
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']),
              default='table', help='Output format')
@click.pass_context
def jobs(ctx: click.Context, output_format: str):
    """List the jobs of this site."""
    try:
        reports = _orchestrator(ctx).list_jobs()
    except SiteMigratorError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        sys.exit(1)

    if output_format == 'json':
        console.print_json(json.dumps([json.loads(r.model_dump_json()) for r in reports]))
    elif not reports:
        console.print("[yellow]No migration jobs found[/yellow]")
    else:
        console.print(render_job_table(reports))


@main.command()
@click.option('--port', '-p', default=8000, help='API server port')
@click.option('--host', '-h', default='127.0.0.1', help='API server host')
@click.option('--reload', is_flag=True, help='Enable auto-reload for development')
def serve(port: int, host: str, reload: bool):
    """Start the API server."""
    console.print(f"[green]Starting API server on {host}:{port}[/green]")
    from site_migrator.api.main import start_server

    start_server(host=host, port=port, reload=reload)


if __name__ == '__main__':
    main()
