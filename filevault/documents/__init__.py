"""
FileVault Documents: entity records, version ledger, entity store, trash.

The lifecycle service (filevault.documents.service) is imported from its
module directly; it depends on filevault.security, which depends on the
records defined here.
"""

from filevault.documents.ledger import VersionLedger  # noqa: F401
from filevault.documents.models import (  # noqa: F401
    AccessLevel,
    Breadcrumb,
    Entity,
    EntityKind,
    EntityState,
    Permission,
    ShareGrantInfo,
    Snapshot,
    VersionRecord,
)
from filevault.documents.store import EntityStore  # noqa: F401
from filevault.documents.trash import TrashView  # noqa: F401

__all__ = [
    "AccessLevel",
    "Breadcrumb",
    "Entity",
    "EntityKind",
    "EntityState",
    "Permission",
    "ShareGrantInfo",
    "Snapshot",
    "VersionRecord",
    "VersionLedger",
    "EntityStore",
    "TrashView",
]
