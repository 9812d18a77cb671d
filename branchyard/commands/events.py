"""Branchyard event commands - feed pipeline and manual events."""

import click
from rich.console import Console

from branchyard.commands._utils import open_orchestrator, parse_tags
from branchyard.constants import ManualAction
from branchyard.logging import get_logger
from branchyard.orchestrator import Orchestrator
from branchyard.types import BranchDeleteEvent, BranchPushEvent, ManualRequestEvent, SubmitResult

console = Console()
logger = get_logger("events")


@click.command()
@click.argument("owner")
@click.argument("branch")
@click.argument("artifact")
@click.option("--sequence", "-s", required=True, type=int, help="Push sequence number for the branch")
@click.option("--tag", "tags", multiple=True, help="Owner tag key=value (repeatable)")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile the environment immediately")
@click.pass_context
def push(
    ctx: click.Context,
    owner: str,
    branch: str,
    artifact: str,
    sequence: int,
    tags: tuple[str, ...],
    reconcile_now: bool,
) -> None:
    """Record a branch push carrying a new artifact.

    Examples:

        branchyard push alice feature/login registry/app:abc123 --sequence 7

        branchyard push alice feature/login registry/app:abc124 -s 8 --reconcile
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            event = BranchPushEvent(owner, branch, artifact, sequence, owner_tags=parse_tags(tags))
            result = orchestrator.handle(event)
            show_result(result)
            if reconcile_now and result.accepted and result.environment_id:
                reconcile_one(orchestrator, result.environment_id)
    except click.BadParameter:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


@click.command()
@click.argument("owner")
@click.argument("branch")
@click.option("--sequence", "-s", type=int, default=None, help="Sequence number of the deletion")
@click.option("--merged", is_flag=True, help="Branch was merged rather than deleted")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile the environment immediately")
@click.pass_context
def delete(
    ctx: click.Context,
    owner: str,
    branch: str,
    sequence: int | None,
    merged: bool,
    reconcile_now: bool,
) -> None:
    """Record a branch deletion or merge.

    Examples:

        branchyard delete alice feature/login

        branchyard delete alice feature/login --merged --reconcile
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            result = orchestrator.handle(BranchDeleteEvent(owner, branch, sequence=sequence, merged=merged))
            show_result(result)
            if reconcile_now and result.accepted and result.environment_id:
                reconcile_one(orchestrator, result.environment_id)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


@click.command()
@click.argument("action", type=click.Choice([a.value for a in ManualAction]))
@click.argument("owner")
@click.argument("branch")
@click.option("--requester", "-r", required=True, help="Identity of the person asking")
@click.option("--artifact", "-a", default=None, help="Artifact reference for create/update")
@click.option("--requester-tag", "requester_tags", multiple=True, help="Requester tag key=value (repeatable)")
@click.option("--reconcile", "reconcile_now", is_flag=True, help="Reconcile the environment immediately")
@click.pass_context
def request(
    ctx: click.Context,
    action: str,
    owner: str,
    branch: str,
    requester: str,
    artifact: str | None,
    requester_tags: tuple[str, ...],
    reconcile_now: bool,
) -> None:
    """Submit a manual create, update, destroy or ping request.

    Only the environment's owner or a configured operator may act on it.

    Examples:

        branchyard request ping alice feature/login --requester alice

        branchyard request destroy alice feature/login -r ops-bot
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            event = ManualRequestEvent(
                requester_id=requester,
                owner_id=owner,
                branch_id=branch,
                action=ManualAction(action),
                artifact_ref=artifact,
                requester_tags=parse_tags(requester_tags),
            )
            result = orchestrator.handle(event)
            show_result(result)
            if reconcile_now and result.accepted and result.environment_id:
                reconcile_one(orchestrator, result.environment_id)
    except click.BadParameter:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def show_result(result: SubmitResult) -> None:
    """Print the outcome of an intent submission."""
    entry = result.entry
    if result.accepted and entry is not None:
        target = result.environment_id or "no live environment"
        console.print(
            f"[green]✓[/green] Accepted {entry.action.value} "
            f"(generation {entry.generation}) for [cyan]{target}[/cyan]"
        )
    else:
        console.print(f"[yellow]Discarded:[/yellow] {result.reason}")


def reconcile_one(orchestrator: Orchestrator, environment_id: str) -> None:
    """Reconcile one environment and print where it ended up."""
    outcome = orchestrator.reconciler.reconcile_environment(environment_id)
    state = outcome.final_state.value if outcome.final_state else "unknown"
    if outcome.error:
        console.print(f"[red]✗[/red] {outcome.environment_id} -> {state}: {outcome.error}")
    else:
        console.print(f"[green]✓[/green] {outcome.environment_id} -> {state}")
