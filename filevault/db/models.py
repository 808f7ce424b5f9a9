"""
FileVault Tables: SQLAlchemy models for entities, version history and grants.

Tables:
1. entities        : Documents and Containers (one table, tagged by kind)
2. entity_versions : Append-only version ledger (no FK: survives purge)
3. share_grants    : Per-user read/write grants (owner is never a grant)
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from filevault.db.base import Base, SoftDeleteMixin, TimestampMixin, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# 1. Entities
# ---------------------------------------------------------------------------

class EntityRecord(Base, TimestampMixin, SoftDeleteMixin):
    """
    Canonical record for a Document or Container.

    ``current_version`` mirrors the number of the entity's current
    EntityVersion row and is the compare-and-set column that serializes
    version allocation per entity.
    """
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=_uuid)
    kind = Column(String(16), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)
    parent_id = Column(String(36), ForeignKey("entities.id"), nullable=True, index=True)

    # Documents only
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    storage_key = Column(String(255), nullable=True)

    current_version = Column(Integer, default=0, nullable=False)

    shares = relationship(
        "ShareGrant",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ShareGrant.id",
    )

    __table_args__ = (
        CheckConstraint("kind IN ('document', 'container')", name="ck_entities_kind"),
        Index("idx_entities_parent_deleted", "parent_id", "deleted_at"),
        Index("idx_entities_owner_deleted", "owner_id", "deleted_at"),
    )

    def __repr__(self) -> str:
        state = "trashed" if self.deleted_at else "live"
        return f"<EntityRecord(id={self.id}, kind='{self.kind}', name='{self.name}', v{self.current_version}, {state})>"


# ---------------------------------------------------------------------------
# 2. Entity Versions
# ---------------------------------------------------------------------------

class EntityVersion(Base):
    """
    Immutable snapshot of an entity's descriptive fields.
    Only ``is_current`` is ever updated after insert.
    """
    __tablename__ = "entity_versions"

    id = Column(String(36), primary_key=True, default=_uuid)
    entity_id = Column(String(36), nullable=False, index=True)
    entity_kind = Column(String(16), nullable=False)
    version_number = Column(Integer, nullable=False)

    # Snapshot
    name = Column(String(255), nullable=False)
    content_type = Column(String(255), nullable=True)
    size_bytes = Column(BigInteger, nullable=True)
    storage_key = Column(String(255), nullable=True)
    parent_id = Column(String(36), nullable=True)

    author_id = Column(String(64), nullable=False)
    description = Column(Text, default="", nullable=False)
    is_current = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_id", "version_number", name="uq_entity_version_number"),
        Index(
            "uq_entity_version_current",
            "entity_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
        CheckConstraint("version_number >= 1", name="ck_entity_versions_number"),
    )

    def __repr__(self) -> str:
        marker = " current" if self.is_current else ""
        return f"<EntityVersion(entity_id={self.entity_id}, v{self.version_number}{marker})>"


# ---------------------------------------------------------------------------
# 3. Share Grants
# ---------------------------------------------------------------------------

class ShareGrant(Base, TimestampMixin):
    __tablename__ = "share_grants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(String(36), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    permission = Column(String(8), nullable=False)
    granted_by = Column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_id", "user_id", name="uq_share_grant"),
        CheckConstraint("permission IN ('read', 'write')", name="ck_share_grants_permission"),
        Index("idx_share_grants_entity", "entity_id"),
    )

    def __repr__(self) -> str:
        return f"<ShareGrant(entity_id={self.entity_id}, user_id='{self.user_id}', {self.permission})>"
