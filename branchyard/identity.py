"""Canonical, collision-free environment identities.

An identity is ``<owner><sep><branch>`` after sanitizing and truncating both
components. Truncation is lossy, so two distinct pairs can compose to the same
name; when the store already maps that name to a different pair, a short hash
of the untruncated inputs is appended.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable

from branchyard.config import NamingConfig
from branchyard.exceptions import InvalidIdentityError
from branchyard.logging import get_logger

logger = get_logger("identity")

_INVALID_CHARS = re.compile(r"[^a-z0-9]+")
MAX_SUFFIX_ATTEMPTS = 64

OwnerLookup = Callable[[str], "tuple[str, str] | None"]


def sanitize(value: str) -> str:
    """Lowercase and map every run of disallowed characters to a single '-'."""
    return _INVALID_CHARS.sub("-", value.lower()).strip("-")


class IdentityResolver:
    """Derive canonical ids from (owner, branch) pairs."""

    def __init__(self, config: NamingConfig | None = None, owner_lookup: OwnerLookup | None = None) -> None:
        """Initialize resolver.

        Args:
            config: Naming constraints of the substrate
            owner_lookup: Returns the (owner, branch) pair holding a canonical id, or None
        """
        self.config = config or NamingConfig()
        self._owner_lookup = owner_lookup or (lambda _id: None)

    def base_name(self, owner_id: str, branch_id: str) -> str:
        """Sanitized, truncated name without any collision suffix.

        Raises:
            InvalidIdentityError: If either component is empty after sanitization
        """
        owner = sanitize(owner_id)
        branch = sanitize(branch_id)
        if not owner or not branch:
            raise InvalidIdentityError(
                "Owner and branch must contain at least one alphanumeric character",
                owner_id=owner_id,
                branch_id=branch_id,
            )

        limit = self.config.max_component_length
        owner = owner[:limit].rstrip("-") or owner[:1]
        branch = branch[:limit].rstrip("-") or branch[:1]
        name = f"{owner}{self.config.separator}{branch}"
        return name[: self.config.max_name_length].rstrip("-")

    def suffixed_name(self, owner_id: str, branch_id: str, salt: int = 0) -> str:
        """Base name with a deterministic hash suffix of the raw inputs."""
        material = f"{owner_id}\x00{branch_id}" if salt == 0 else f"{owner_id}\x00{branch_id}\x00{salt}"
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[: self.config.hash_length]
        room = self.config.max_name_length - len(digest) - 1
        stem = self.base_name(owner_id, branch_id)[:room].rstrip("-")
        return f"{stem}-{digest}"

    def resolve(self, owner_id: str, branch_id: str, force_suffix: bool = False, salt: int = 0) -> str:
        """Resolve the canonical id for a pair.

        Args:
            owner_id: Owner identifier as received
            branch_id: Branch identifier as received
            force_suffix: Always append a hash suffix (re-derivation after a substrate conflict)
            salt: First salt to try for the suffix

        Returns:
            Canonical id unique among ids known to the store

        Raises:
            InvalidIdentityError: If either input is empty after sanitization, or no
                unique name exists within the suffix attempt budget
        """
        pair = (owner_id, branch_id)
        if not force_suffix:
            candidate = self.base_name(owner_id, branch_id)
            if self._available(candidate, pair):
                return candidate
            logger.info(f"Identity {candidate} collides with another pair, deriving suffix")

        for attempt in range(salt, salt + MAX_SUFFIX_ATTEMPTS):
            candidate = self.suffixed_name(owner_id, branch_id, attempt)
            if self._available(candidate, pair):
                return candidate

        raise InvalidIdentityError(
            "Could not derive a unique identity within the name length limit",
            owner_id=owner_id,
            branch_id=branch_id,
        )

    def _available(self, candidate: str, pair: tuple[str, str]) -> bool:
        holder = self._owner_lookup(candidate)
        return holder is None or tuple(holder) == pair
