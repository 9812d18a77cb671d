"""Branchyard status command - show environments and recent events."""

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from branchyard.commands._utils import load_config
from branchyard.constants import LifecycleState
from branchyard.logging import get_logger
from branchyard.state import StateStore
from branchyard.types import Environment

console = Console()
logger = get_logger("status")

STATE_COLORS = {
    LifecycleState.PENDING: "dim",
    LifecycleState.PROVISIONING: "cyan",
    LifecycleState.RUNNING: "green",
    LifecycleState.UPDATING: "cyan",
    LifecycleState.DRAINING: "yellow",
    LifecycleState.DESTROYED: "dim",
    LifecycleState.FAILED: "red",
}


@click.command()
@click.argument("environment_id", required=False)
@click.option(
    "--state",
    "states",
    multiple=True,
    type=click.Choice([s.value for s in LifecycleState]),
    help="Filter by lifecycle state (repeatable)",
)
@click.option("--events", "-e", "event_count", default=0, type=int, help="Show the last N audit events")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(
    ctx: click.Context,
    environment_id: str | None,
    states: tuple[str, ...],
    event_count: int,
    json_output: bool,
) -> None:
    """Show environments, their routing keys and lifecycle state.

    Examples:

        branchyard status

        branchyard status --state failed

        branchyard status alice--feature-login --json
    """
    try:
        store = StateStore.from_config(load_config(ctx))

        if environment_id:
            env = store.get_environment(environment_id)
            if env is None:
                console.print(f"[red]Error:[/red] Unknown environment '{environment_id}'")
                raise SystemExit(1)
            environments = [env]
        else:
            wanted = {LifecycleState(s) for s in states} if states else None
            environments = store.list_environments(states=wanted)

        events = store.get_events(limit=event_count) if event_count else []

        if json_output:
            payload: dict[str, Any] = {"environments": [e.to_dict() for e in environments]}
            if events:
                payload["events"] = events
            click.echo(json.dumps(payload, indent=2))
            return

        if environment_id:
            show_environment(environments[0])
        else:
            show_table(environments)
        if events:
            show_events(events)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e


def show_table(environments: list[Environment]) -> None:
    """Render all environments as a table."""
    if not environments:
        console.print("[dim]No environments[/dim]")
        return

    table = Table(title="Environments", show_header=True, header_style="bold")
    table.add_column("Environment", style="cyan")
    table.add_column("Kind")
    table.add_column("State")
    table.add_column("Routing key")
    table.add_column("Desired")
    table.add_column("Deployed")
    table.add_column("Last activity")
    for env in environments:
        color = STATE_COLORS.get(env.lifecycle_state, "white")
        state = f"[{color}]{env.lifecycle_state.value}[/{color}]"
        if not env.desired_present and not env.is_terminal:
            state += " [dim](destroy requested)[/dim]"
        table.add_row(
            env.id,
            env.kind.value,
            state,
            str(env.routing_key) if env.routing_key is not None else "-",
            env.desired_artifact_ref or "-",
            env.deployed_artifact_ref or "-",
            env.last_activity_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def show_environment(env: Environment) -> None:
    """Render one environment in detail."""
    color = STATE_COLORS.get(env.lifecycle_state, "white")
    console.print(f"\n[bold cyan]{env.id}[/bold cyan] [{color}]{env.lifecycle_state.value}[/{color}]\n")
    console.print(f"  Owner/branch:   {env.owner_id} / {env.branch_id}")
    console.print(f"  Kind:           {env.kind.value}")
    console.print(f"  Routing key:    {env.routing_key if env.routing_key is not None else '-'}")
    console.print(f"  Desired:        {env.desired_artifact_ref or '-'} (generation {env.desired_generation})")
    console.print(f"  Deployed:       {env.deployed_artifact_ref or '-'}")
    console.print(f"  Last activity:  {env.last_activity_at.isoformat()}")
    if env.observed and not env.observed.is_empty:
        console.print("  Resources:")
        for key, value in env.observed.to_dict().items():
            if value and key != "artifact_ref":
                console.print(f"    {key}: {value}")
    if env.owner_tags:
        tags = ", ".join(f"{k}={v}" for k, v in sorted(env.owner_tags.items()))
        console.print(f"  Tags:           {tags}")
    if env.last_error:
        retry = "auto-retry pending" if env.retryable else "needs operator retry"
        console.print(
            f"  [red]Last error:[/red]     {env.last_error.get('type')}: {env.last_error.get('message')} "
            f"(step {env.failed_step}, attempts {env.retry_count}, {retry})"
        )


def show_events(events: list[dict[str, Any]]) -> None:
    """Render recent audit events."""
    console.print("\n[bold]Recent events[/bold]")
    for event in events:
        data = event.get("data") or {}
        subject = data.get("environment_id") or data.get("target_id") or ""
        console.print(f"  [dim]{event.get('timestamp', '')}[/dim] {event.get('event')} {subject}")
