# =============================================================================
# Auth Service — Principals, Roles, Permissions, API Keys
# =============================================================================
#
# Pure functions and value types. No FastAPI dependency — used by the API
# dependency layer, the checkpoint store, the tool sandbox, and tests.
#
# ROLE HIERARCHY (numeric, higher includes lower):
#   user  = 1
#   admin = 2   → bypasses ownership and minimum-role checks
#
# PERMISSIONS are strings like "tools:weather". A principal holding "*"
# has every permission; "tools:*" covers every "tools:..." permission.
#
# DESIGN DECISION: SHA-256 hashing for API keys (not bcrypt). Keys are
# 32-byte random tokens, so a fast deterministic hash is enough and
# allows direct DB lookup.
# =============================================================================

from __future__ import annotations

import enum
import hashlib
import secrets
from collections.abc import Iterable
from dataclasses import dataclass, field


class Role(enum.IntEnum):
    USER = 1
    ADMIN = 2

    @classmethod
    def parse(cls, value: str | int | Role) -> Role:
        """Accept "admin", 2 or Role.ADMIN. Unknown names raise ValueError."""
        if isinstance(value, Role):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown role '{value}'") from None


@dataclass(frozen=True)
class Principal:
    """The acting identity for a request or run."""

    user_id: str
    role: Role = Role.USER
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role >= Role.ADMIN

    def has_role(self, minimum: Role) -> bool:
        return self.is_admin or self.role >= minimum

    def has_permissions(self, required: Iterable[str]) -> bool:
        return all(permission_granted(self.permissions, p) for p in required)


SYSTEM_USER_ID = "system"

# Acting identity when auth is disabled and for background jobs.
SYSTEM_PRINCIPAL = Principal(
    user_id=SYSTEM_USER_ID, role=Role.ADMIN, permissions=frozenset({"*"})
)

# Stand-in when a caller passes no principal: the system user, no privileges.
ANONYMOUS_PRINCIPAL = Principal(user_id=SYSTEM_USER_ID, role=Role.USER)


def permission_granted(held: Iterable[str], required: str) -> bool:
    """
    True if any held permission covers `required`.

    Supports exact matches, the global "*" wildcard, and scoped
    wildcards ("tools:*" covers "tools:weather").
    """
    for permission in held:
        if permission == "*" or permission == required:
            return True
        if permission.endswith(":*") and required.startswith(permission[:-1]):
            return True
    return False


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash):
        - raw_key: Full key to return to the user (only visible once)
        - key_prefix: First 8 chars for identification in logs/admin
        - key_hash: SHA-256 hex digest for storage in the database
    """
    raw_key = f"cf-{secrets.token_hex(32)}"
    return raw_key, raw_key[:8], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """Hash an API key using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_key.encode()).hexdigest()
