"""Branchyard CLI commands."""

from branchyard.commands.events import delete, push, request
from branchyard.commands.gc_cmd import gc_cmd
from branchyard.commands.init import init
from branchyard.commands.logs import logs
from branchyard.commands.promote import integration, promote
from branchyard.commands.reconcile import reconcile
from branchyard.commands.retry import retry
from branchyard.commands.run import run
from branchyard.commands.status import status

__all__ = [
    "delete",
    "gc_cmd",
    "init",
    "integration",
    "logs",
    "promote",
    "push",
    "reconcile",
    "request",
    "retry",
    "run",
    "status",
]
