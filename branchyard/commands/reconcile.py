"""Branchyard reconcile command - converge environments once."""

import json

import click
from rich.console import Console
from rich.table import Table

from branchyard.commands._utils import open_orchestrator
from branchyard.logging import get_logger
from branchyard.reconciler import EnvironmentOutcome

console = Console()
logger = get_logger("reconcile")


@click.command()
@click.argument("environment_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def reconcile(ctx: click.Context, environment_id: str | None, json_output: bool) -> None:
    """Run one reconcile pass.

    Reconciles every environment that needs work, or only ENVIRONMENT_ID.
    Exits non-zero when any environment ended in an error.

    Examples:

        branchyard reconcile

        branchyard reconcile alice--feature-login --json
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            if environment_id:
                outcomes = [orchestrator.reconciler.reconcile_environment(environment_id)]
                errors: list[str] = []
            else:
                result = orchestrator.reconciler.reconcile_all()
                outcomes = result.outcomes
                errors = result.errors

        if json_output:
            click.echo(json.dumps({"outcomes": [o.to_dict() for o in outcomes], "errors": errors}, indent=2))
        else:
            show_outcomes(outcomes, errors)

        if errors or any(o.error for o in outcomes):
            raise SystemExit(1)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def show_outcomes(outcomes: list[EnvironmentOutcome], errors: list[str]) -> None:
    """Render reconcile outcomes as a table."""
    changed = [o for o in outcomes if o.changed]
    if not changed and not errors:
        console.print("[green]✓[/green] Nothing to reconcile")
        return

    table = Table(title="Reconcile", show_header=True, header_style="bold")
    table.add_column("Environment", style="cyan")
    table.add_column("Plan")
    table.add_column("State")
    table.add_column("Steps", justify="right")
    table.add_column("Error", style="red")
    for outcome in changed:
        table.add_row(
            outcome.environment_id,
            outcome.plan_kind.value if outcome.plan_kind else "-",
            outcome.final_state.value if outcome.final_state else "-",
            str(len(outcome.actions)),
            outcome.error or "",
        )
    console.print(table)
    for error in errors:
        console.print(f"[red]✗[/red] {error}")
