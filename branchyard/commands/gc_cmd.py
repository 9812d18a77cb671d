"""Branchyard gc command - reclaim idle environments."""

import json

import click
from rich.console import Console
from rich.table import Table

from branchyard.commands._utils import open_orchestrator
from branchyard.gc import SweepReport
from branchyard.logging import get_logger

console = Console()
logger = get_logger("gc_cmd")


@click.command("gc")
@click.option("--dry-run", is_flag=True, help="Report idle environments without submitting destroys")
@click.option("--prune", is_flag=True, help="Also remove destroyed records past retention")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile after submitting destroys")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def gc_cmd(ctx: click.Context, dry_run: bool, prune: bool, reconcile_now: bool, json_output: bool) -> None:
    """Sweep for idle ephemeral environments.

    Examples:

        branchyard gc --dry-run

        branchyard gc --prune --reconcile
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            report = orchestrator.gc.sweep(dry_run=True if dry_run else None)
            pruned = orchestrator.gc.prune() if prune and not report.dry_run else []
            if reconcile_now and report.submitted:
                orchestrator.reconciler.reconcile_all()

        if json_output:
            click.echo(json.dumps({**report.to_dict(), "pruned": pruned}, indent=2))
        else:
            show_report(report, pruned)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def show_report(report: SweepReport, pruned: list[str]) -> None:
    """Render a sweep report."""
    mode = " [yellow](dry run)[/yellow]" if report.dry_run else ""
    console.print(f"\n[bold cyan]GC sweep[/bold cyan]{mode} - scanned {report.scanned} environments\n")

    if report.candidates:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Environment", style="cyan")
        table.add_column("Owner")
        table.add_column("Idle (h)", justify="right")
        table.add_column("Threshold (h)", justify="right")
        table.add_column("Destroy")
        for candidate in report.candidates:
            submitted = candidate.environment_id in report.submitted
            table.add_row(
                candidate.environment_id,
                candidate.owner_id,
                f"{candidate.idle_hours:.1f}",
                f"{candidate.threshold_hours:g}",
                "[green]✓[/green]" if submitted else "[dim]-[/dim]",
            )
        console.print(table)
    else:
        console.print("[green]✓[/green] No idle environments")

    if report.excluded:
        console.print(f"[dim]Excluded by tag: {', '.join(report.excluded)}[/dim]")
    if pruned:
        console.print(f"[dim]Pruned {len(pruned)} destroyed records[/dim]")
