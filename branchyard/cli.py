"""Branchyard command-line interface."""

import click

from branchyard import __version__
from branchyard.commands import (
    delete,
    gc_cmd,
    init,
    integration,
    logs,
    promote,
    push,
    reconcile,
    request,
    retry,
    run,
    status,
)


@click.group()
@click.version_option(version=__version__, prog_name="branchyard")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Configuration file (default: .branchyard/config.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log to the console at debug level")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Branchyard - ephemeral per-branch environments.

    Every pushed branch gets a running environment reachable through its own
    routing key; merged, deleted and idle branches are reclaimed.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


# Register commands
cli.add_command(init)
cli.add_command(push)
cli.add_command(delete)
cli.add_command(request)
cli.add_command(reconcile)
cli.add_command(gc_cmd, name="gc")
cli.add_command(promote)
cli.add_command(integration)
cli.add_command(status)
cli.add_command(retry)
cli.add_command(run)
cli.add_command(logs)


if __name__ == "__main__":
    cli()
