"""
FileVault Entity Store: canonical records for Documents and Containers.

One table, one code path: Documents and Containers differ only in the
content fields (content_type / size_bytes / storage_key), which Containers
leave empty. Every method runs inside the caller's session; the store never
commits. Mutations that change name, location or content go through
update_entity(), which pairs the field patch with exactly one Version Ledger
append so both land in the same transaction or neither does.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from filevault.db.base import utcnow
from filevault.db.models import EntityRecord, EntityVersion, ShareGrant
from filevault.documents.ledger import VersionLedger, snapshot_of
from filevault.documents.models import EntityKind, Permission
from filevault.engine.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger("filevault.documents.store")

DEFAULT_MAX_NAME_LENGTH = 255

# Fields update_entity() may patch. Owner and kind are immutable.
PATCHABLE_FIELDS = frozenset({"name", "parent_id", "content_type", "size_bytes", "storage_key"})


def normalize_name(name: Optional[str], max_length: int = DEFAULT_MAX_NAME_LENGTH) -> str:
    """
    Validate a display name. Surrounding whitespace is stripped.

    Raises:
        ValidationError: empty, too long, or containing control characters.
    """
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(
            "Name must not be empty",
            validation_errors=[{"field": "name", "error": "empty"}],
        )
    if len(cleaned) > max_length:
        raise ValidationError(
            f"Name exceeds {max_length} characters",
            validation_errors=[{"field": "name", "error": "too_long"}],
        )
    if any(not c.isprintable() for c in cleaned):
        raise ValidationError(
            "Name contains control characters",
            validation_errors=[{"field": "name", "error": "unprintable"}],
        )
    return cleaned


class EntityStore:
    """Entity CRUD, containment queries and grants, bound to one session."""

    def __init__(
        self,
        session: Session,
        ledger: Optional[VersionLedger] = None,
        max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
    ):
        self._session = session
        self._ledger = ledger or VersionLedger(session)
        self._max_name_length = max_name_length

    @property
    def session(self) -> Session:
        return self._session

    @property
    def ledger(self) -> VersionLedger:
        return self._ledger

    # -------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------

    def create_entity(
        self,
        kind: EntityKind,
        name: str,
        owner_id: str,
        parent_id: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: Optional[int] = None,
        storage_key: Optional[str] = None,
    ) -> EntityRecord:
        """
        Insert a new live entity at version 0. The caller appends v1.

        Raises:
            ValidationError: empty name, missing owner, or a parent that does
                not exist, is trashed, or is not a container.
        """
        kind = EntityKind(kind)
        name = normalize_name(name, self._max_name_length)
        if not owner_id:
            raise ValidationError(
                "Owner is required",
                validation_errors=[{"field": "owner_id", "error": "missing"}],
            )
        if parent_id is not None:
            self._require_parent(parent_id)

        record = EntityRecord(
            kind=kind.value,
            name=name,
            owner_id=owner_id,
            parent_id=parent_id,
            current_version=0,
        )
        if kind == EntityKind.DOCUMENT:
            record.content_type = content_type or "application/octet-stream"
            record.size_bytes = size_bytes or 0
            record.storage_key = storage_key
        self._session.add(record)
        self._session.flush()
        logger.debug(f"Created {kind.value} '{name}' ({record.id}) for owner {owner_id}")
        return record

    def _require_parent(self, parent_id: str) -> EntityRecord:
        parent = self._session.get(EntityRecord, parent_id)
        if parent is None:
            raise ValidationError(
                f"Parent container '{parent_id}' does not exist",
                validation_errors=[{"field": "parent_id", "error": "not_found"}],
            )
        if parent.kind != EntityKind.CONTAINER.value:
            raise ValidationError(
                f"Parent '{parent_id}' is not a container",
                validation_errors=[{"field": "parent_id", "error": "not_container"}],
            )
        if parent.deleted_at is not None:
            raise ValidationError(
                f"Parent container '{parent_id}' is in the trash",
                validation_errors=[{"field": "parent_id", "error": "trashed"}],
            )
        return parent

    def get_entity(self, entity_id: str, for_update: bool = False) -> EntityRecord:
        """
        Fetch an entity, trashed or not.

        ``for_update`` takes a row lock (SELECT ... FOR UPDATE) where the
        database supports it, serializing concurrent mutations of one entity.
        It also reloads an already-loaded record from committed state.

        Raises:
            NotFoundError: no such entity (never existed or purged).
        """
        stmt = select(EntityRecord).where(EntityRecord.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        record = self._session.execute(stmt).scalar_one_or_none()
        if record is None:
            raise NotFoundError(f"Entity '{entity_id}' not found", entity_id=entity_id)
        return record

    # -------------------------------------------------------------------
    # Versioned update
    # -------------------------------------------------------------------

    def update_entity(
        self,
        record: EntityRecord,
        patch: Dict[str, Any],
        author_id: str,
        description: str = "",
    ) -> EntityVersion:
        """
        Apply a field patch and append the paired version in one unit.

        Raises:
            ValidationError: unknown / immutable field or an empty name.
        """
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Cannot patch fields: {sorted(unknown)}",
                entity_id=record.id,
                validation_errors=[{"field": f, "error": "immutable"} for f in sorted(unknown)],
            )
        if "name" in patch:
            patch = dict(patch, name=normalize_name(patch["name"], self._max_name_length))

        for field, value in patch.items():
            setattr(record, field, value)
        return self._ledger.append_version(record, snapshot_of(record), author_id, description)

    # -------------------------------------------------------------------
    # Trash lifecycle
    # -------------------------------------------------------------------

    def soft_delete(self, record: EntityRecord, deleted_by: str) -> EntityRecord:
        if record.deleted_at is not None:
            raise ConflictError(
                f"'{record.name}' is already in the trash",
                entity_id=record.id,
                operation="soft_delete",
            )
        record.deleted_at = utcnow()
        record.deleted_by = deleted_by
        self._session.flush()
        return record

    def restore(self, record: EntityRecord) -> EntityRecord:
        if record.deleted_at is None:
            raise ConflictError(
                f"'{record.name}' is not in the trash",
                entity_id=record.id,
                operation="restore",
            )
        record.deleted_at = None
        record.deleted_by = None
        self._session.flush()
        return record

    def purge(self, record: EntityRecord, owner_id: Optional[str] = None) -> List[str]:
        """
        Permanently delete a trashed entity (and, for a container, every
        entity beneath it) together with its grants. Version rows are kept.

        Every descendant must already be in the trash and, when ``owner_id``
        is given, belong to that user. Nothing is deleted otherwise.

        Returns:
            The blob keys referenced by the purged entities' histories; the
            caller removes them from the Blob Store after commit.

        Raises:
            ConflictError: the entity is not in the trash, or its subtree
                still holds live entities or entities owned by someone else.
        """
        if record.deleted_at is None:
            raise ConflictError(
                f"'{record.name}' must be in the trash before it can be purged",
                entity_id=record.id,
                operation="purge",
            )

        descendants = self.descendant_ids(record.id)
        locked: List[EntityRecord] = []
        if descendants:
            locked = self._session.execute(
                select(EntityRecord)
                .where(EntityRecord.id.in_(descendants))
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()
            live = sorted(r.id for r in locked if r.deleted_at is None)
            foreign = sorted(
                r.id for r in locked
                if owner_id is not None and r.owner_id != owner_id
            )
            if live or foreign:
                raise ConflictError(
                    f"'{record.name}' still contains {len(live)} live and "
                    f"{len(foreign)} foreign-owned entities",
                    entity_id=record.id,
                    operation="purge",
                    live_ids=live,
                    foreign_ids=foreign,
                )

        # Deepest first so no row is deleted while a child still references it
        doomed = [record.id] + descendants
        keys: List[str] = []
        for entity_id in doomed:
            for key in self._ledger.storage_keys(entity_id):
                if key not in keys:
                    keys.append(key)

        self._session.execute(
            delete(ShareGrant)
            .where(ShareGrant.entity_id.in_(doomed))
            .execution_options(synchronize_session=False)
        )
        for entity_id in reversed(doomed):
            self._session.execute(
                delete(EntityRecord)
                .where(EntityRecord.id == entity_id)
                .execution_options(synchronize_session=False)
            )
        for purged in [record, *locked]:
            self._session.expunge(purged)
        self._session.flush()
        logger.info(f"Purged {len(doomed)} entities rooted at '{record.id}' ({len(keys)} blobs)")
        return keys

    # -------------------------------------------------------------------
    # Containment queries
    # -------------------------------------------------------------------

    def list_children(
        self,
        parent_id: Optional[str],
        owner_id: Optional[str] = None,
        include_trashed: bool = False,
    ) -> List[EntityRecord]:
        """Children of a container (None = root), containers first, then by name."""
        stmt = select(EntityRecord)
        if parent_id is None:
            stmt = stmt.where(EntityRecord.parent_id.is_(None))
        else:
            stmt = stmt.where(EntityRecord.parent_id == parent_id)
        if owner_id is not None:
            stmt = stmt.where(EntityRecord.owner_id == owner_id)
        if not include_trashed:
            stmt = stmt.where(EntityRecord.deleted_at.is_(None))
        stmt = stmt.order_by(EntityRecord.kind, EntityRecord.name)
        return list(self._session.execute(stmt).scalars())

    def list_containers(self, owner_id: Optional[str] = None) -> List[EntityRecord]:
        """Every live container, optionally restricted to one owner."""
        stmt = select(EntityRecord).where(
            EntityRecord.kind == EntityKind.CONTAINER.value,
            EntityRecord.deleted_at.is_(None),
        )
        if owner_id is not None:
            stmt = stmt.where(EntityRecord.owner_id == owner_id)
        return list(self._session.execute(stmt.order_by(EntityRecord.name)).scalars())

    def list_trashed(self, owner_id: Optional[str] = None) -> List[EntityRecord]:
        """Trashed entities, most recently deleted first."""
        stmt = select(EntityRecord).where(EntityRecord.deleted_at.is_not(None))
        if owner_id is not None:
            stmt = stmt.where(EntityRecord.owner_id == owner_id)
        stmt = stmt.order_by(EntityRecord.deleted_at.desc(), EntityRecord.name)
        return list(self._session.execute(stmt).scalars())

    def list_shared_with(self, user_id: str) -> List[EntityRecord]:
        """Live entities carrying a direct grant for ``user_id``."""
        stmt = (
            select(EntityRecord)
            .join(ShareGrant, ShareGrant.entity_id == EntityRecord.id)
            .where(ShareGrant.user_id == user_id, EntityRecord.deleted_at.is_(None))
            .order_by(EntityRecord.kind, EntityRecord.name)
        )
        return list(self._session.execute(stmt).scalars())

    def ancestors(self, entity_id: str, for_update: bool = False) -> List[EntityRecord]:
        """
        Parent chain of an entity, nearest first (excluding the entity).

        Raises:
            ConflictError: the stored chain loops back on itself.
        """
        chain: List[EntityRecord] = []
        seen: Set[str] = {entity_id}
        current = self.get_entity(entity_id, for_update=for_update)
        while current.parent_id is not None:
            if current.parent_id in seen:
                raise ConflictError(
                    f"Containment cycle detected at '{current.parent_id}'",
                    entity_id=entity_id,
                    operation="ancestors",
                )
            seen.add(current.parent_id)
            current = self.get_entity(current.parent_id, for_update=for_update)
            chain.append(current)
        return chain

    def descendant_ids(self, entity_id: str) -> List[str]:
        """All entities beneath a container, breadth-first, trashed included."""
        result: List[str] = []
        frontier = [entity_id]
        seen: Set[str] = {entity_id}
        while frontier:
            children = self._session.execute(
                select(EntityRecord.id).where(EntityRecord.parent_id.in_(frontier))
            ).scalars().all()
            frontier = [c for c in children if c not in seen]
            seen.update(frontier)
            result.extend(frontier)
        return result

    def assert_not_descendant(self, entity_id: str, destination_id: str, for_update: bool = False) -> None:
        """
        Walk the destination's ancestor chain up to the root; fail if the
        entity being moved appears in it (or is the destination itself).

        Raises:
            ConflictError: the move would create a containment cycle.
        """
        if destination_id == entity_id:
            raise ConflictError(
                "Cannot move an entity into itself",
                entity_id=entity_id,
                operation="move",
            )
        for ancestor in self.ancestors(destination_id, for_update=for_update):
            if ancestor.id == entity_id:
                raise ConflictError(
                    "Cannot move a container into one of its own descendants",
                    entity_id=entity_id,
                    operation="move",
                    destination_id=destination_id,
                )

    # -------------------------------------------------------------------
    # Share grants
    # -------------------------------------------------------------------

    def upsert_grants(
        self,
        record: EntityRecord,
        user_ids: Iterable[str],
        permission: Permission,
        granted_by: str,
    ) -> List[ShareGrant]:
        """Create or update one grant per user. Re-sharing updates permission."""
        permission = Permission(permission)
        existing = {g.user_id: g for g in record.shares}
        touched: List[ShareGrant] = []
        for user_id in user_ids:
            grant = existing.get(user_id)
            if grant is None:
                grant = ShareGrant(
                    entity_id=record.id,
                    user_id=user_id,
                    permission=permission.value,
                    granted_by=granted_by,
                )
                record.shares.append(grant)
                existing[user_id] = grant
            else:
                grant.permission = permission.value
                grant.granted_by = granted_by
            touched.append(grant)
        self._session.flush()
        return touched

    def remove_grant(self, record: EntityRecord, user_id: str) -> bool:
        """Remove a user's grant. Returns False if there was none."""
        for grant in list(record.shares):
            if grant.user_id == user_id:
                record.shares.remove(grant)
                self._session.flush()
                return True
        return False
