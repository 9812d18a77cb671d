"""Branchyard logs command - read structured reconcile records."""

import json
from pathlib import Path

import click
from rich.console import Console

from branchyard.commands._utils import load_config
from branchyard.constants import LogEvent
from branchyard.log_writer import read_records
from branchyard.logging import get_logger

console = Console()
logger = get_logger("logs")

LEVEL_COLORS = {
    "debug": "dim",
    "info": "blue",
    "warn": "yellow",
    "warning": "yellow",
    "error": "red",
}


@click.command()
@click.option("--environment", "-e", "environment_id", default=None, help="Only records for this environment")
@click.option(
    "--event",
    type=click.Choice([e.value for e in LogEvent]),
    default=None,
    help="Filter by event type",
)
@click.option("--tail", "-n", default=50, type=int, help="Records to show")
@click.option("--json", "json_output", is_flag=True, help="Raw JSON output")
@click.pass_context
def logs(
    ctx: click.Context,
    environment_id: str | None,
    event: str | None,
    tail: int,
    json_output: bool,
) -> None:
    """Show structured reconcile records.

    Examples:

        branchyard logs

        branchyard logs --event reconcile_attempt -e alice--feature-login

        branchyard logs --tail 200 --json
    """
    try:
        config = load_config(ctx)
        path = Path(config.logging.directory) / "reconcile.jsonl"
        records = read_records(path, event)
        if environment_id:
            records = [r for r in records if _environment_of(r) == environment_id]
        records = records[-tail:] if tail > 0 else records

        if not records:
            console.print("[dim]No records[/dim]")
            return

        for record in records:
            if json_output:
                click.echo(json.dumps(record))
                continue
            level = record.get("level", "info")
            color = LEVEL_COLORS.get(level, "white")
            ts = record.get("ts", "")[11:19]
            event_name = record.get("event", "")
            console.print(
                f"[dim]{ts}[/dim] [{color}]{level:5s}[/{color}] [cyan]{event_name}[/cyan] {record['message']}"
            )
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def _environment_of(record: dict) -> str | None:
    data = record.get("data") or {}
    return data.get("environment_id") or data.get("environmentId")
