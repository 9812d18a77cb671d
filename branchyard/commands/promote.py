"""Branchyard promote and integration commands."""

import click
from rich.console import Console

from branchyard.commands._utils import open_orchestrator
from branchyard.constants import PromotionStatus
from branchyard.logging import get_logger

console = Console()
logger = get_logger("promote")


@click.command()
@click.argument("sources", nargs=-1, required=True)
@click.option("--target", "-t", required=True, help="Integration environment id")
@click.option("--requester", "-r", default=None, help="Identity of the person asking")
@click.pass_context
def promote(ctx: click.Context, sources: tuple[str, ...], target: str, requester: str | None) -> None:
    """Promote artifacts of SOURCES into an integration environment.

    Artifacts are merged in the order given.

    Examples:

        branchyard promote alice--feature-a bob--feature-b --target integration--staging
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            record = orchestrator.promote(list(sources), target, requester)

        if record.status == PromotionStatus.COMPLETED:
            console.print(
                f"[green]✓[/green] Promotion {record.id}: {target} now serves "
                f"[cyan]{record.merged_artifact_ref}[/cyan]"
            )
        else:
            console.print(f"[red]✗[/red] Promotion {record.id} failed: {record.error}")
            raise SystemExit(1)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


@click.command()
@click.argument("name")
@click.option("--artifact", "-a", default=None, help="Initial artifact reference")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile the environment immediately")
@click.pass_context
def integration(ctx: click.Context, name: str, artifact: str | None, reconcile_now: bool) -> None:
    """Create an integration environment.

    Examples:

        branchyard integration staging

        branchyard integration staging --artifact registry/app:main --reconcile
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            result = orchestrator.promotions.ensure_integration(name, artifact)
            if result.accepted:
                console.print(
                    f"[green]✓[/green] Integration environment [cyan]{result.environment_id}[/cyan] requested"
                )
            else:
                console.print(f"[yellow]{result.environment_id}: {result.reason}[/yellow]")
            if reconcile_now and result.environment_id:
                outcome = orchestrator.reconciler.reconcile_environment(result.environment_id)
                if outcome.error:
                    console.print(f"[red]✗[/red] {outcome.error}")
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e
