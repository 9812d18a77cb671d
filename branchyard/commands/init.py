"""Branchyard init command - write a default configuration."""

from pathlib import Path

import click
from rich.console import Console

from branchyard.config import BranchyardConfig
from branchyard.constants import CONFIG_FILE

console = Console()


@click.command()
@click.option("--force", is_flag=True, help="Overwrite an existing configuration")
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Write a default configuration file.

    Examples:

        branchyard init

        branchyard --config deploy/branchyard.yaml init --force
    """
    path = Path((ctx.obj or {}).get("config_path") or CONFIG_FILE)
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists[/yellow] (use --force to overwrite)")
        raise SystemExit(1)

    try:
        BranchyardConfig().save(path)
    except OSError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e
    console.print(f"[green]✓[/green] Wrote {path}")
