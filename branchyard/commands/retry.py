"""Branchyard retry command - re-arm failed environments."""

import click
from rich.console import Console

from branchyard.commands._utils import open_orchestrator
from branchyard.constants import LifecycleState
from branchyard.logging import get_logger

console = Console()
logger = get_logger("retry")


@click.command()
@click.argument("environment_id", required=False)
@click.option("--all-failed", is_flag=True, help="Retry every failed environment")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile immediately after re-arming")
@click.pass_context
def retry(ctx: click.Context, environment_id: str | None, all_failed: bool, reconcile_now: bool) -> None:
    """Reset the retry budget of failed environments.

    Failed environments are retried automatically a few times; after that,
    and after structural failures, an operator has to re-arm them.

    Examples:

        branchyard retry alice--feature-login

        branchyard retry --all-failed --reconcile
    """
    try:
        if not environment_id and not all_failed:
            console.print("[red]Error:[/red] Specify an environment id or use --all-failed")
            raise SystemExit(1)

        with open_orchestrator(ctx) as orchestrator:
            if all_failed:
                targets = [e.id for e in orchestrator.store.list_environments(states={LifecycleState.FAILED})]
            else:
                targets = [environment_id] if environment_id else []

            if not targets:
                console.print("[yellow]No failed environments[/yellow]")
                return

            for target in targets:
                orchestrator.retry(target)
                console.print(f"  [green]✓[/green] {target} re-armed")
                if reconcile_now:
                    outcome = orchestrator.reconciler.reconcile_environment(target)
                    state = outcome.final_state.value if outcome.final_state else "unknown"
                    suffix = f": {outcome.error}" if outcome.error else ""
                    console.print(f"    -> {state}{suffix}")
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e
