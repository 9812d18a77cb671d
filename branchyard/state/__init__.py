"""Branchyard state package: durable environment store."""

from branchyard.state.manager import StateStore
from branchyard.state.persistence import PersistenceLayer

__all__ = ["PersistenceLayer", "StateStore"]
