"""
FileVault Request Context: the identity an operation runs on behalf of.

The core keeps no session state between calls: the caller (HTTP layer, CLI,
tests) builds a RequestContext after authentication and hands it to every
LifecycleService method explicitly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict

ADMIN_ROLES = frozenset({"admin", "superadmin"})
VALID_ROLES = frozenset({"user"}) | ADMIN_ROLES


@dataclass(frozen=True)
class RequestContext:
    """Per-request identity. Built by the auth boundary, never stored."""

    user_id: str
    role: str = "user"  # "user" | "admin" | "superadmin"
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("RequestContext requires a user_id")
        if self.role not in VALID_ROLES:
            raise ValueError(f"role must be one of {sorted(VALID_ROLES)}, got '{self.role}'")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        return {
            "user_id": self.user_id,
            "role": self.role,
            "request_id": self.request_id,
        }
