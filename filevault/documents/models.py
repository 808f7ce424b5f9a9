"""
FileVault Records: Pydantic models returned by the lifecycle service.

Entity: a Document or Container (one model, tagged by EntityKind).
VersionRecord: one immutable snapshot in an entity's history.
ShareGrantInfo: a (user, permission) grant attached to an entity.

These are detached copies of the SQLAlchemy rows in filevault.db.models;
callers never hold live ORM objects.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityKind(str, Enum):
    DOCUMENT = "document"
    CONTAINER = "container"


class EntityState(str, Enum):
    LIVE = "live"
    TRASHED = "trashed"


class Permission(str, Enum):
    """A grantable permission. Ownership is never a grant."""
    READ = "read"
    WRITE = "write"


class AccessLevel(str, Enum):
    """Effective access of a user on an entity, weakest to strongest."""
    NONE = "none"
    READ = "read"
    WRITE = "write"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ACCESS_RANK[self]

    def satisfies(self, required: "AccessLevel") -> bool:
        return self.rank >= required.rank


_ACCESS_RANK = {
    AccessLevel.NONE: 0,
    AccessLevel.READ: 1,
    AccessLevel.WRITE: 2,
    AccessLevel.OWNER: 3,
}


# ---------------------------------------------------------------------------
# Share grant
# ---------------------------------------------------------------------------

class ShareGrantInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    permission: Permission
    granted_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Entity
# ---------------------------------------------------------------------------

class Entity(BaseModel):
    """
    Live metadata for a Document or Container.

    Documents carry content_type / size_bytes / storage_key; Containers
    leave them None. ``current_version`` is the number of the entity's
    single current VersionRecord.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: EntityKind
    name: str = Field(max_length=255)
    owner_id: str
    parent_id: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)
    storage_key: Optional[str] = None
    current_version: int = Field(ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    shares: List[ShareGrantInfo] = Field(default_factory=list)

    @property
    def state(self) -> EntityState:
        return EntityState.TRASHED if self.deleted_at is not None else EntityState.LIVE

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_document(self) -> bool:
        return self.kind == EntityKind.DOCUMENT

    @property
    def is_container(self) -> bool:
        return self.kind == EntityKind.CONTAINER

    def grant_for(self, user_id: str) -> Optional[ShareGrantInfo]:
        for grant in self.shares:
            if grant.user_id == user_id:
                return grant
        return None


# ---------------------------------------------------------------------------
# Version record
# ---------------------------------------------------------------------------

class Snapshot(BaseModel):
    """The mutable descriptive fields captured by a version."""
    name: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    storage_key: Optional[str] = None
    parent_id: Optional[str] = None


class VersionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_id: str
    entity_kind: EntityKind
    version_number: int = Field(ge=1)
    name: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    storage_key: Optional[str] = None
    parent_id: Optional[str] = None
    author_id: str
    description: str = ""
    is_current: bool = False
    created_at: Optional[datetime] = None

    @property
    def snapshot(self) -> Snapshot:
        return Snapshot(
            name=self.name,
            content_type=self.content_type,
            size_bytes=self.size_bytes,
            storage_key=self.storage_key,
            parent_id=self.parent_id,
        )


class Breadcrumb(BaseModel):
    id: str
    name: str
