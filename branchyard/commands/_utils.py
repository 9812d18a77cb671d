"""Shared utilities for branchyard CLI commands."""

import contextlib
from collections.abc import Iterator
from typing import Any

import click

from branchyard.config import BranchyardConfig
from branchyard.logging import setup_logging
from branchyard.orchestrator import Orchestrator


def parse_tags(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated ``key=value`` options into a dict.

    Raises:
        click.BadParameter: If an entry has no '='
    """
    tags: dict[str, str] = {}
    for value in values:
        key, sep, tag_value = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {value!r}", param_hint="--tag")
        tags[key] = tag_value
    return tags


def load_config(ctx: click.Context) -> BranchyardConfig:
    """Load configuration from the path given to the CLI group."""
    obj: dict[str, Any] = ctx.obj or {}
    return BranchyardConfig.load(obj.get("config_path"))


def build_orchestrator(ctx: click.Context) -> Orchestrator:
    """Load config, configure logging and wire an orchestrator.

    Console logging is only enabled with ``--verbose`` so it does not
    interleave with command output.
    """
    obj: dict[str, Any] = ctx.obj or {}
    config = load_config(ctx)
    setup_logging(
        level="debug" if obj.get("verbose") else config.logging.level,
        log_dir=config.logging.directory,
        json_output=config.logging.structured_output,
        console_output=bool(obj.get("verbose")),
        max_bytes=config.logging.max_log_size_mb * 1024 * 1024,
    )
    return Orchestrator(config)


@contextlib.contextmanager
def open_orchestrator(ctx: click.Context) -> Iterator[Orchestrator]:
    """Build an orchestrator for one command and close it however the command ends."""
    orchestrator = build_orchestrator(ctx)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
