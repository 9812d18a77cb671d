"""Branchyard run command - long-running reconcile loop."""

import signal
import threading
from types import FrameType

import click
from rich.console import Console

from branchyard.commands._utils import open_orchestrator
from branchyard.logging import get_logger

console = Console()
logger = get_logger("run")


@click.command()
@click.option("--max-ticks", type=int, default=None, help="Stop after N iterations")
@click.option("--interval", type=float, default=None, help="Override reconciler.interval_seconds")
@click.pass_context
def run(ctx: click.Context, max_ticks: int | None, interval: float | None) -> None:
    """Run the reconcile loop until interrupted.

    Each iteration sweeps for idle environments when the GC interval has
    elapsed, prunes old records and reconciles everything that drifted.

    Examples:

        branchyard run

        branchyard run --interval 5 --max-ticks 10
    """
    try:
        with open_orchestrator(ctx) as orchestrator:
            if interval is not None:
                orchestrator.config.reconciler.interval_seconds = interval

            stop_event = threading.Event()

            def _stop(signum: int, frame: FrameType | None) -> None:
                logger.info(f"Received signal {signum}, stopping")
                stop_event.set()

            signal.signal(signal.SIGTERM, _stop)
            console.print(
                f"[bold cyan]branchyard[/bold cyan] reconciling every "
                f"{orchestrator.config.reconciler.interval_seconds:g}s (Ctrl+C to stop)"
            )
            try:
                ticks = orchestrator.run(stop_event=stop_event, max_ticks=max_ticks)
            except KeyboardInterrupt:
                stop_event.set()
                ticks = -1
        if ticks >= 0:
            console.print(f"[green]✓[/green] Stopped after {ticks} ticks")
        else:
            console.print("\n[yellow]Interrupted[/yellow]")
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        raise SystemExit(1) from e
