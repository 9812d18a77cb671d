"""Bundled infrastructure drivers."""

from branchyard.drivers.memory import InMemoryDriver

__all__ = ["InMemoryDriver"]
