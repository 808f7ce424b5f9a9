"""
FileVault Lifecycle Service: the operation set over Documents and Containers.

Handles:
- Upload (create document) and container creation, each with version 1
- Content update, rename, move (cycle-checked), restore-to-version: each
  appends exactly one version
- Share / unshare (grant upsert / removal, no version)
- Soft-delete / restore (delete marker flip, no version)
- Purge (trashed only; removes records, grants and blobs; keeps history)
- Reads: get, download, versions, children, shared-with-me, breadcrumbs,
  move targets, trash

Every call receives the caller's RequestContext explicitly and runs inside
one database transaction. Permission checks happen before any side effect.
Blob writes happen before commit and are removed again if the transaction
fails, so no version ever points at a blob that was not written. Audit
events are emitted after commit and can never fail an operation.

State machine per entity:
    live ──soft_delete──▶ trashed ──purge──▶ (gone)
      ▲                      │
      └──────restore─────────┘
"""

from __future__ import annotations

import logging
import mimetypes
from contextlib import contextmanager
from typing import BinaryIO, Dict, Generator, Iterable, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from filevault.db.models import EntityRecord, EntityVersion
from filevault.db.session import session_scope
from filevault.documents.models import (
    AccessLevel,
    Breadcrumb,
    Entity,
    EntityKind,
    Permission,
    VersionRecord,
)
from filevault.documents.store import EntityStore, normalize_name
from filevault.documents.trash import TrashView
from filevault.engine.context import RequestContext
from filevault.engine.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from filevault.engine.logging import AuditSink, log_lifecycle_event, log_security_event
from filevault.security.permissions import PermissionEvaluator
from filevault.storage.blob_store import BlobStore, StoredBlob

logger = logging.getLogger("filevault.documents.service")

Content = Union[bytes, BinaryIO]

INITIAL_UPLOAD_DESCRIPTION = "initial upload"
CONTAINER_CREATED_DESCRIPTION = "created"


def _to_entity(record: EntityRecord) -> Entity:
    return Entity.model_validate(record)


def _to_version(version: EntityVersion) -> VersionRecord:
    return VersionRecord.model_validate(version)


class LifecycleService:
    """
    Entity lifecycle and versioning manager.

    Stateless between calls: holds only its collaborators (session factory,
    blob store, permission evaluator, audit sink) and limits.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        audit_sink: Optional[AuditSink] = None,
        evaluator: Optional[PermissionEvaluator] = None,
        max_upload_size_mb: int = 50,
        max_name_length: int = 255,
    ):
        self._session_factory = session_factory
        self._blobs = blob_store
        self._audit = audit_sink or AuditSink()
        self._evaluator = evaluator or PermissionEvaluator()
        self._max_upload_bytes = max_upload_size_mb * 1024 * 1024
        self._max_name_length = max_name_length

    @classmethod
    def from_config(cls, config, audit_sink: Optional[AuditSink] = None) -> "LifecycleService":
        """Build a service from a loaded PlatformConfig."""
        from filevault.db.session import init_db

        factory = init_db(
            config.database.url,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
            pool_timeout=config.database.pool_timeout,
            pool_recycle=config.database.pool_recycle,
            pool_pre_ping=config.database.pool_pre_ping,
            echo=config.database.echo,
        )
        return cls(
            session_factory=factory,
            blob_store=BlobStore(config.storage.root, chunk_size=config.storage.chunk_size),
            audit_sink=audit_sink,
            max_upload_size_mb=config.documents.max_upload_size_mb,
            max_name_length=config.documents.max_name_length,
        )

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    # -------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str) -> Generator[EntityStore, None, None]:
        """One session per operation; constraint violations surface as Conflict."""
        try:
            with session_scope(self._session_factory) as session:
                yield EntityStore(session, max_name_length=self._max_name_length)
        except IntegrityError as e:
            raise ConflictError(
                f"Concurrent modification during {operation}",
                operation=operation,
            ) from e

    def _authorize(
        self,
        ctx: RequestContext,
        store: EntityStore,
        record: EntityRecord,
        operation: str,
        required: Optional[AccessLevel] = None,
    ) -> AccessLevel:
        """Resolve access (with inherited grants) or raise ForbiddenError."""
        if ctx.is_admin:
            return AccessLevel.OWNER
        ancestors: List[EntityRecord] = []
        if record.owner_id != ctx.user_id and record.parent_id is not None:
            ancestors = store.ancestors(record.id)
        try:
            return self._evaluator.require_access(ctx, record, operation, ancestors, required)
        except ForbiddenError as e:
            self._audit.emit(log_security_event(
                event="access_denied",
                entity_id=record.id,
                entity_kind=record.kind,
                operation=operation,
                required_access=e.required_access or "",
                actual_access=e.actual_access or "",
                user_id=ctx.user_id,
                request_id=ctx.request_id,
            ))
            raise

    @staticmethod
    def _require_live(record: EntityRecord, operation: str) -> None:
        if record.deleted_at is not None:
            raise ConflictError(
                f"'{record.name}' is in the trash; restore it first",
                entity_id=record.id,
                operation=operation,
            )

    @staticmethod
    def _require_document(record: EntityRecord, operation: str) -> None:
        if record.kind != EntityKind.DOCUMENT.value:
            raise ValidationError(
                f"'{operation}' applies to documents only",
                entity_id=record.id,
                operation=operation,
            )

    @staticmethod
    def _check_expected(record: EntityRecord, expected_version: Optional[int], operation: str) -> None:
        if expected_version is not None and record.current_version != expected_version:
            raise ConflictError(
                f"'{record.name}' is at v{record.current_version}, not v{expected_version}",
                entity_id=record.id,
                operation=operation,
                expected_version=expected_version,
                current_version=record.current_version,
            )

    def _store_blob(self, data: Content, operation: str) -> StoredBlob:
        if data is None:
            raise ValidationError(
                "Content is required",
                operation=operation,
                validation_errors=[{"field": "data", "error": "missing"}],
            )
        return self._blobs.put(data, max_bytes=self._max_upload_bytes)

    def _discard_blob(self, key: str) -> None:
        try:
            self._blobs.delete(key)
        except StorageError as e:
            logger.error(f"Could not remove unreferenced blob {key}: {e}")

    def _emit(
        self,
        ctx: RequestContext,
        operation: str,
        entity: Entity,
        version: Optional[VersionRecord] = None,
        **details,
    ) -> None:
        self._audit.emit(log_lifecycle_event(
            operation=operation,
            entity_id=entity.id,
            entity_kind=entity.kind.value,
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            version_number=version.version_number if version else None,
            details=details or None,
        ))

    @staticmethod
    def _guess_content_type(name: str, content_type: Optional[str]) -> str:
        if content_type:
            return content_type
        guessed, _ = mimetypes.guess_type(name)
        return guessed or "application/octet-stream"

    def _authorize_parent(self, ctx: RequestContext, store: EntityStore, parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        try:
            parent = store.get_entity(parent_id)
        except NotFoundError as e:
            raise ValidationError(
                f"Parent container '{parent_id}' does not exist",
                validation_errors=[{"field": "parent_id", "error": "not_found"}],
            ) from e
        self._authorize(ctx, store, parent, "create_in")

    # -------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------

    def upload(
        self,
        ctx: RequestContext,
        name: str,
        data: Content,
        parent_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """
        Store bytes and create a live Document with version 1 "initial upload".

        Raises:
            ValidationError: empty name, bad parent, missing or oversized content.
            ForbiddenError: no write access on the parent container.
            StorageError: the blob could not be written.
        """
        name = normalize_name(name, self._max_name_length)
        content_type = self._guess_content_type(name, content_type)
        stored: Optional[StoredBlob] = None
        try:
            with self._transaction("upload") as store:
                self._authorize_parent(ctx, store, parent_id)
                stored = self._store_blob(data, "upload")
                record = store.create_entity(
                    EntityKind.DOCUMENT,
                    name,
                    owner_id=ctx.user_id,
                    parent_id=parent_id,
                    content_type=content_type,
                    size_bytes=stored.size_bytes,
                    storage_key=stored.key,
                )
                version = store.update_entity(record, {}, ctx.user_id, INITIAL_UPLOAD_DESCRIPTION)
                entity, version_out = _to_entity(record), _to_version(version)
        except Exception:
            if stored is not None:
                self._discard_blob(stored.key)
            raise

        logger.info(f"Uploaded '{entity.name}' ({entity.id}, {entity.size_bytes} bytes) by {ctx.user_id}")
        self._emit(ctx, "upload", entity, version_out, sha256=stored.sha256, size_bytes=stored.size_bytes)
        return entity, version_out

    def create_container(
        self,
        ctx: RequestContext,
        name: str,
        parent_id: Optional[str] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """Create a live Container with version 1 "created"."""
        name = normalize_name(name, self._max_name_length)
        with self._transaction("create_container") as store:
            self._authorize_parent(ctx, store, parent_id)
            record = store.create_entity(EntityKind.CONTAINER, name, owner_id=ctx.user_id, parent_id=parent_id)
            version = store.update_entity(record, {}, ctx.user_id, CONTAINER_CREATED_DESCRIPTION)
            entity, version_out = _to_entity(record), _to_version(version)

        logger.info(f"Created container '{entity.name}' ({entity.id}) by {ctx.user_id}")
        self._emit(ctx, "create", entity, version_out)
        return entity, version_out

    # -------------------------------------------------------------------
    # Versioned mutations
    # -------------------------------------------------------------------

    def update_content(
        self,
        ctx: RequestContext,
        entity_id: str,
        data: Content,
        description: Optional[str] = None,
        content_type: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """
        Store new bytes under a new key and append version N+1.
        The previous blob stays in place for the now non-current versions.
        """
        stored: Optional[StoredBlob] = None
        try:
            with self._transaction("update_content") as store:
                record = store.get_entity(entity_id, for_update=True)
                self._authorize(ctx, store, record, "update_content")
                self._require_document(record, "update_content")
                self._require_live(record, "update_content")
                self._check_expected(record, expected_version, "update_content")

                stored = self._store_blob(data, "update_content")
                patch = {
                    "storage_key": stored.key,
                    "size_bytes": stored.size_bytes,
                    "content_type": content_type or record.content_type,
                }
                next_number = record.current_version + 1
                version = store.update_entity(
                    record, patch, ctx.user_id,
                    (description or "").strip() or f"Version {next_number}",
                )
                entity, version_out = _to_entity(record), _to_version(version)
        except Exception:
            if stored is not None:
                self._discard_blob(stored.key)
            raise

        logger.info(f"New content v{version_out.version_number} for '{entity.name}' ({entity.id})")
        self._emit(ctx, "update_content", entity, version_out, sha256=stored.sha256, size_bytes=stored.size_bytes)
        return entity, version_out

    def rename(
        self,
        ctx: RequestContext,
        entity_id: str,
        new_name: str,
        expected_version: Optional[int] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """
        Rename and append a version describing old → new. Renaming to the
        current name changes nothing and appends nothing.
        """
        new_name = normalize_name(new_name, self._max_name_length)
        with self._transaction("rename") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "rename")
            self._require_live(record, "rename")
            self._check_expected(record, expected_version, "rename")

            old_name = record.name
            if new_name == old_name:
                current = store.ledger.current_version(record.id)
                return _to_entity(record), _to_version(current)

            version = store.update_entity(
                record, {"name": new_name}, ctx.user_id,
                f'renamed "{old_name}" to "{new_name}"',
            )
            entity, version_out = _to_entity(record), _to_version(version)

        logger.info(f"Renamed {entity.id}: '{old_name}' → '{new_name}'")
        self._emit(ctx, "rename", entity, version_out, old_name=old_name, new_name=new_name)
        return entity, version_out

    def move(
        self,
        ctx: RequestContext,
        entity_id: str,
        new_parent_id: Optional[str],
        expected_version: Optional[int] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """
        Move an entity under another container (None = root).

        The destination must exist, be a live container the caller can write
        to, and not be the entity or one of its descendants. The ancestor walk takes row locks
        and runs inside the committing transaction, so a destination moved
        concurrently is re-validated against committed state.
        """
        with self._transaction("move") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "move")
            self._require_live(record, "move")
            self._check_expected(record, expected_version, "move")

            old_parent_id = record.parent_id
            if new_parent_id == old_parent_id:
                current = store.ledger.current_version(record.id)
                return _to_entity(record), _to_version(current)

            new_label = "root"
            if new_parent_id is not None:
                destination = store.get_entity(new_parent_id, for_update=True)
                if destination.kind != EntityKind.CONTAINER.value:
                    raise ValidationError(
                        f"Destination '{destination.name}' is not a container",
                        entity_id=entity_id,
                        operation="move",
                    )
                if destination.deleted_at is not None:
                    raise ValidationError(
                        f"Destination '{destination.name}' is in the trash",
                        entity_id=entity_id,
                        operation="move",
                    )
                self._authorize(ctx, store, destination, "move_into")
                store.assert_not_descendant(record.id, destination.id, for_update=True)
                new_label = f'"{destination.name}"'

            old_label = "root"
            if old_parent_id is not None:
                old_parent = store.session.get(EntityRecord, old_parent_id)
                old_label = f'"{old_parent.name}"' if old_parent is not None else old_parent_id

            version = store.update_entity(
                record, {"parent_id": new_parent_id}, ctx.user_id,
                f"moved from {old_label} to {new_label}",
            )
            entity, version_out = _to_entity(record), _to_version(version)

        logger.info(f"Moved {entity.id}: {old_parent_id} → {new_parent_id}")
        self._emit(ctx, "move", entity, version_out, old_parent_id=old_parent_id, new_parent_id=new_parent_id)
        return entity, version_out

    def restore_to_version(
        self,
        ctx: RequestContext,
        entity_id: str,
        version_id: str,
        expected_version: Optional[int] = None,
    ) -> Tuple[Entity, VersionRecord]:
        """Forward restore: copy vK's snapshot onto the entity as version N+1."""
        with self._transaction("restore_version") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "restore_version")
            self._require_live(record, "restore_version")
            self._check_expected(record, expected_version, "restore_version")

            version = store.ledger.restore_version(record, version_id, ctx.user_id)
            entity, version_out = _to_entity(record), _to_version(version)

        logger.info(f"Restored {entity.id}: {version_out.description}")
        self._emit(ctx, "restore_version", entity, version_out, restored_from=version_id)
        return entity, version_out

    # -------------------------------------------------------------------
    # Sharing (no version)
    # -------------------------------------------------------------------

    def share(
        self,
        ctx: RequestContext,
        entity_id: str,
        user_ids: Iterable[str],
        permission: Union[Permission, str] = Permission.READ,
    ) -> Entity:
        """
        Grant ``permission`` to each user. Re-sharing updates the permission.

        ``user_ids`` are identities already resolved by the caller (e.g. from
        e-mail addresses).
        """
        try:
            permission = Permission(permission)
        except ValueError as e:
            raise ValidationError(
                f"Permission must be 'read' or 'write', got '{permission}'",
                entity_id=entity_id,
                operation="share",
                validation_errors=[{"field": "permission", "error": "invalid"}],
            ) from e

        targets: List[str] = []
        for user_id in user_ids or ():
            if user_id and user_id not in targets:
                targets.append(user_id)
        if not targets:
            raise ValidationError(
                "At least one user is required to share with",
                entity_id=entity_id,
                operation="share",
                validation_errors=[{"field": "user_ids", "error": "empty"}],
            )

        with self._transaction("share") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "share")
            self._require_live(record, "share")
            if record.owner_id in targets:
                raise ValidationError(
                    "The owner already has full access and cannot be granted a share",
                    entity_id=entity_id,
                    operation="share",
                    validation_errors=[{"field": "user_ids", "error": "owner"}],
                )
            store.upsert_grants(record, targets, permission, granted_by=ctx.user_id)
            entity = _to_entity(record)

        logger.info(f"Shared {entity.id} with {targets} ({permission.value})")
        self._emit(ctx, "share", entity, user_ids=targets, permission=permission.value)
        return entity

    def unshare(self, ctx: RequestContext, entity_id: str, user_id: str) -> Entity:
        """Remove a user's grant. Removing a grant that does not exist is a no-op."""
        with self._transaction("unshare") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "unshare")
            removed = store.remove_grant(record, user_id)
            entity = _to_entity(record)

        if removed:
            logger.info(f"Unshared {entity.id} from {user_id}")
            self._emit(ctx, "unshare", entity, user_id=user_id)
        return entity

    # -------------------------------------------------------------------
    # Trash lifecycle (no version)
    # -------------------------------------------------------------------

    def soft_delete(self, ctx: RequestContext, entity_id: str) -> Entity:
        """Move a live entity to the trash. History and grants are untouched."""
        with self._transaction("soft_delete") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "soft_delete")
            store.soft_delete(record, deleted_by=ctx.user_id)
            entity = _to_entity(record)

        logger.info(f"Moved '{entity.name}' ({entity.id}) to trash")
        self._emit(ctx, "soft_delete", entity)
        return entity

    def restore(self, ctx: RequestContext, entity_id: str) -> Entity:
        """
        Bring a trashed entity back to live, exactly as it was.

        Raises:
            ConflictError: the entity is not in the trash, or a container
                above it still is (restore that container first).
        """
        with self._transaction("restore") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "restore")
            if record.deleted_at is not None:
                trashed = [a for a in store.ancestors(record.id) if a.deleted_at is not None]
                if trashed:
                    raise ConflictError(
                        f"'{record.name}' is inside '{trashed[-1].name}', which is in the trash; restore it first",
                        entity_id=record.id,
                        operation="restore",
                    )
            store.restore(record)
            entity = _to_entity(record)

        logger.info(f"Restored '{entity.name}' ({entity.id}) from trash")
        self._emit(ctx, "restore", entity)
        return entity

    def purge(self, ctx: RequestContext, entity_id: str) -> Entity:
        """
        Irreversibly remove a trashed entity, its subtree and their blobs.

        A container is purged only when everything beneath it is already in
        the trash and owned by the caller (admins may purge other users'
        trashed content). Live or foreign entities block the purge.

        Version records are retained as audit history. Blobs are removed only
        after the records are committed; a blob that cannot be removed is
        logged and left behind unreferenced.

        Raises:
            ConflictError: the entity is not in the trash, or its subtree holds
                live or foreign-owned entities.
        """
        with self._transaction("purge") as store:
            record = store.get_entity(entity_id, for_update=True)
            self._authorize(ctx, store, record, "purge")
            entity = _to_entity(record)
            keys = store.purge(record, owner_id=None if ctx.is_admin else ctx.user_id)

        for key in keys:
            self._discard_blob(key)

        logger.info(f"Purged '{entity.name}' ({entity.id}), {len(keys)} blobs")
        self._emit(ctx, "purge", entity, blobs_removed=len(keys))
        return entity

    def empty_trash(self, ctx: RequestContext) -> List[Entity]:
        """
        Purge every top-level trash entry visible to the caller.

        Containers still holding live or foreign-owned entities are left in
        the trash and reported in the log.
        """
        with self._transaction("list_trash") as store:
            owner = None if ctx.is_admin else ctx.user_id
            candidates = [r.id for r in TrashView(store).top_level(owner_id=owner)]

        purged: List[Entity] = []
        for entity_id in candidates:
            try:
                purged.append(self.purge(ctx, entity_id))
            except NotFoundError:
                # Already removed with a purged ancestor
                continue
            except ConflictError as e:
                logger.warning(f"Left '{entity_id}' in trash: {e.message}")
        return purged

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, ctx: RequestContext, entity_id: str) -> Entity:
        with self._transaction("get") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "get")
            return _to_entity(record)

    def open_content(
        self,
        ctx: RequestContext,
        entity_id: str,
        version_id: Optional[str] = None,
    ) -> Tuple[Entity, BinaryIO]:
        """
        Open a document's bytes (current, or a specific version) for reading.
        The caller closes the returned handle.
        """
        with self._transaction("download") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "download")
            self._require_document(record, "download")
            self._require_live(record, "download")
            key = record.storage_key
            if version_id is not None:
                key = store.ledger.get_version(record.id, version_id).storage_key
            entity = _to_entity(record)

        self._emit(ctx, "download", entity, version_id=version_id)
        return entity, self._blobs.open(key)

    def list_versions(self, ctx: RequestContext, entity_id: str) -> List[VersionRecord]:
        """All versions, newest first. Works for trashed entities too."""
        with self._transaction("list_versions") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "list_versions")
            return [_to_version(v) for v in store.ledger.list_versions(record.id)]

    def get_version(self, ctx: RequestContext, entity_id: str, version_id: str) -> VersionRecord:
        with self._transaction("list_versions") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "list_versions")
            return _to_version(store.ledger.get_version(record.id, version_id))

    def list_children(self, ctx: RequestContext, parent_id: Optional[str] = None) -> List[Entity]:
        """
        Default listing: live children of a container. At the root a user sees
        their own entities; an admin sees every root entity.
        """
        with self._transaction("list_children") as store:
            if parent_id is None:
                owner = None if ctx.is_admin else ctx.user_id
                return [_to_entity(r) for r in store.list_children(None, owner_id=owner)]

            parent = store.get_entity(parent_id)
            if parent.kind != EntityKind.CONTAINER.value:
                raise ValidationError(
                    f"'{parent.name}' is not a container",
                    entity_id=parent_id,
                    operation="list_children",
                )
            self._authorize(ctx, store, parent, "list_children")
            self._require_live(parent, "list_children")
            return [_to_entity(r) for r in store.list_children(parent_id)]

    def list_shared_with_me(self, ctx: RequestContext) -> List[Entity]:
        """Live entities carrying a direct grant for the caller."""
        with self._transaction("list_shared") as store:
            return [_to_entity(r) for r in store.list_shared_with(ctx.user_id)]

    def breadcrumbs(self, ctx: RequestContext, entity_id: str) -> List[Breadcrumb]:
        """Container path from the root down to (and including) ``entity_id``."""
        with self._transaction("breadcrumbs") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "breadcrumbs")
            chain = list(reversed(store.ancestors(record.id))) + [record]
            return [Breadcrumb(id=r.id, name=r.name) for r in chain]

    def move_targets(self, ctx: RequestContext, entity_id: str) -> List[Entity]:
        """
        Live containers the caller could move ``entity_id`` into: writable,
        not trashed, and outside the entity's own subtree.
        """
        with self._transaction("move_targets") as store:
            record = store.get_entity(entity_id)
            self._authorize(ctx, store, record, "move")
            excluded = {record.id, *store.descendant_ids(record.id)}
            owner = None if ctx.is_admin else ctx.user_id

            candidates = {c.id: c for c in store.list_containers(owner_id=owner)}
            if not ctx.is_admin:
                for shared in store.list_shared_with(ctx.user_id):
                    if shared.kind == EntityKind.CONTAINER.value:
                        candidates.setdefault(shared.id, shared)

            targets = []
            for container in candidates.values():
                if container.id in excluded:
                    continue
                if self._has(ctx, store, container, AccessLevel.WRITE):
                    targets.append(container)
            targets.sort(key=lambda c: c.name)
            return [_to_entity(c) for c in targets]

    def list_trash(self, ctx: RequestContext) -> List[Entity]:
        """Trashed entities: the caller's own, or everything for admins."""
        with self._transaction("list_trash") as store:
            owner = None if ctx.is_admin else ctx.user_id
            return [_to_entity(r) for r in TrashView(store).entries(owner_id=owner)]

    def verify(self, ctx: RequestContext) -> Dict[str, List[str]]:
        """
        Integrity sweep over every entity (admins only).

        Checks the ledger invariant per entity and that every blob key the
        entity's history references still exists. Returns problems keyed by
        entity id; an empty dict means the store is consistent.
        """
        if not ctx.is_admin:
            raise ForbiddenError(
                "Integrity verification requires an administrative role",
                request_id=ctx.request_id,
                operation="verify",
                user_id=ctx.user_id,
                required_access="admin",
                actual_access=ctx.role,
            )

        report: Dict[str, List[str]] = {}
        with self._transaction("verify") as store:
            entity_ids = store.session.execute(select(EntityRecord.id)).scalars().all()
            for entity_id in entity_ids:
                problems = store.ledger.check_invariants(entity_id)
                for key in store.ledger.storage_keys(entity_id):
                    if not self._blobs.exists(key):
                        problems.append(f"blob '{key}' is missing")
                if problems:
                    report[entity_id] = problems

        if report:
            logger.warning(f"Integrity check found problems on {len(report)} entities")
        else:
            logger.info(f"Integrity check passed for {len(entity_ids)} entities")
        return report

    def _has(self, ctx: RequestContext, store: EntityStore, record: EntityRecord, required: AccessLevel) -> bool:
        ancestors = store.ancestors(record.id) if record.parent_id is not None else []
        return self._evaluator.has_access(ctx, record, required, ancestors)

    def __repr__(self) -> str:
        return f"<LifecycleService blobs='{self._blobs.root}'>"
