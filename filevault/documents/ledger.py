"""
FileVault Version Ledger: append-only, per-entity version history.

Every entity owns a contiguous sequence of EntityVersion rows numbered
1..N with exactly one flagged current. The ledger never updates a row
except to clear ``is_current`` on the previous head, and never deletes.

Version allocation is serialized per entity with a compare-and-set on
``entities.current_version``:

    UPDATE entities SET current_version = N + 1
     WHERE id = :id AND current_version = N

A concurrent writer that already advanced the entity makes the update
match zero rows, and the loser gets ConflictError. The
(entity_id, version_number) unique constraint and the partial unique
index on current rows back this up at the database level.

All methods run inside the caller's session/transaction; the ledger never
commits.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from filevault.db.base import utcnow
from filevault.db.models import EntityRecord, EntityVersion
from filevault.documents.models import EntityKind, Snapshot
from filevault.engine.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger("filevault.documents.ledger")


def snapshot_of(record: EntityRecord) -> Snapshot:
    """Capture the descriptive fields of an entity as they are right now."""
    return Snapshot(
        name=record.name,
        content_type=record.content_type,
        size_bytes=record.size_bytes,
        storage_key=record.storage_key,
        parent_id=record.parent_id,
    )


class VersionLedger:
    """Version history operations bound to one session."""

    def __init__(self, session: Session):
        self._session = session

    # -------------------------------------------------------------------
    # Append
    # -------------------------------------------------------------------

    def append_version(
        self,
        entity: EntityRecord,
        snapshot: Snapshot,
        author_id: str,
        description: str = "",
    ) -> EntityVersion:
        """
        Append the next version for ``entity`` and make it current.

        1. Next number = max(version_number) + 1
        2. Compare-and-set entities.current_version from N to N+1
        3. Clear is_current on the previous head
        4. Insert the new row as current

        Raises:
            ConflictError: another transaction advanced the entity first.
        """
        session = self._session
        expected = entity.current_version or 0

        latest = session.execute(
            select(func.max(EntityVersion.version_number)).where(
                EntityVersion.entity_id == entity.id
            )
        ).scalar() or 0
        if latest != expected:
            raise ConflictError(
                f"Version ledger for '{entity.id}' is at v{latest}, entity expects v{expected}",
                entity_id=entity.id,
                operation="append_version",
                expected_version=expected,
                current_version=latest,
            )

        new_number = latest + 1
        result = session.execute(
            update(EntityRecord)
            .where(EntityRecord.id == entity.id, EntityRecord.current_version == expected)
            .values(current_version=new_number, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Concurrent modification of '{entity.id}' (expected v{expected})",
                entity_id=entity.id,
                operation="append_version",
                expected_version=expected,
            )
        set_committed_value(entity, "current_version", new_number)

        session.execute(
            update(EntityVersion)
            .where(EntityVersion.entity_id == entity.id, EntityVersion.is_current.is_(True))
            .values(is_current=False)
            .execution_options(synchronize_session=False)
        )

        version = EntityVersion(
            entity_id=entity.id,
            entity_kind=entity.kind,
            version_number=new_number,
            name=snapshot.name,
            content_type=snapshot.content_type,
            size_bytes=snapshot.size_bytes,
            storage_key=snapshot.storage_key,
            parent_id=snapshot.parent_id,
            author_id=author_id,
            description=description or "",
            is_current=True,
            created_at=utcnow(),
        )
        session.add(version)
        try:
            session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Version v{new_number} of '{entity.id}' was allocated concurrently",
                entity_id=entity.id,
                operation="append_version",
                current_version=new_number,
            ) from e

        # Older rows loaded in this session still hold is_current=True in memory
        for other in session.identity_map.values():
            if isinstance(other, EntityVersion) and other.entity_id == entity.id and other is not version:
                set_committed_value(other, "is_current", False)

        logger.debug(f"Appended v{new_number} for {entity.kind} '{entity.id}': {description}")
        return version

    # -------------------------------------------------------------------
    # Forward restore
    # -------------------------------------------------------------------

    def restore_version(
        self,
        entity: EntityRecord,
        version_id: str,
        author_id: str,
    ) -> EntityVersion:
        """
        Copy a past version's snapshot onto the live entity and append a new
        current version describing the restore. History is never rewritten.

        Location is not restored: moves go through the cycle-checked move
        operation, so ``parent_id`` on the new version is the entity's
        present parent.
        """
        target = self.get_version(entity.id, version_id)
        if target.is_current:
            raise ValidationError(
                f"v{target.version_number} is already the current version",
                entity_id=entity.id,
                operation="restore_version",
            )

        entity.name = target.name
        if entity.kind == EntityKind.DOCUMENT.value:
            entity.content_type = target.content_type
            entity.size_bytes = target.size_bytes
            entity.storage_key = target.storage_key

        return self.append_version(
            entity,
            snapshot_of(entity),
            author_id=author_id,
            description=f"restored to v{target.version_number}",
        )

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def list_versions(self, entity_id: str) -> List[EntityVersion]:
        """All versions of an entity, newest first."""
        return list(
            self._session.execute(
                select(EntityVersion)
                .where(EntityVersion.entity_id == entity_id)
                .order_by(EntityVersion.version_number.desc())
            ).scalars()
        )

    def get_version(self, entity_id: str, version_id: str) -> EntityVersion:
        version = self._session.execute(
            select(EntityVersion).where(
                EntityVersion.id == version_id,
                EntityVersion.entity_id == entity_id,
            )
        ).scalar_one_or_none()
        if version is None:
            raise NotFoundError(
                f"Version '{version_id}' not found for entity '{entity_id}'",
                entity_id=entity_id,
                version_id=version_id,
            )
        return version

    def current_version(self, entity_id: str) -> Optional[EntityVersion]:
        return self._session.execute(
            select(EntityVersion).where(
                EntityVersion.entity_id == entity_id,
                EntityVersion.is_current.is_(True),
            )
        ).scalar_one_or_none()

    def storage_keys(self, entity_id: str) -> List[str]:
        """Every distinct blob key referenced by an entity's history."""
        rows = self._session.execute(
            select(EntityVersion.storage_key)
            .where(EntityVersion.entity_id == entity_id, EntityVersion.storage_key.is_not(None))
            .distinct()
        ).scalars()
        return list(rows)

    def check_invariants(self, entity_id: str) -> List[str]:
        """
        Return a list of violations of the ledger invariant for one entity:
        exactly one current row, numbers contiguous from 1. Empty = healthy.
        """
        versions = sorted(self.list_versions(entity_id), key=lambda v: v.version_number)
        problems: List[str] = []
        if not versions:
            return [f"entity '{entity_id}' has no versions"]

        numbers = [v.version_number for v in versions]
        expected = list(range(1, len(versions) + 1))
        if numbers != expected:
            problems.append(f"version numbers {numbers} are not contiguous from 1")

        current = [v.version_number for v in versions if v.is_current]
        if len(current) != 1:
            problems.append(f"expected exactly one current version, found {current}")
        elif current[0] != numbers[-1]:
            problems.append(f"current version v{current[0]} is not the latest v{numbers[-1]}")

        entity = self._session.get(EntityRecord, entity_id)
        if entity is not None and entity.current_version != numbers[-1]:
            problems.append(
                f"entity points at v{entity.current_version}, ledger head is v{numbers[-1]}"
            )
        return problems
