"""FileVault Trash View: deleted-only read over the Entity Store."""

from __future__ import annotations

from typing import List, Optional

from filevault.db.models import EntityRecord
from filevault.documents.models import EntityKind
from filevault.documents.store import EntityStore


class TrashView:
    """
    The set of entities with a delete marker, feeding restore and purge.

    Regular users see what they own; admins pass owner_id=None to see all.
    """

    def __init__(self, store: EntityStore):
        self._store = store

    def entries(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[EntityKind] = None,
    ) -> List[EntityRecord]:
        records = self._store.list_trashed(owner_id=owner_id)
        if kind is not None:
            kind = EntityKind(kind)
            records = [r for r in records if r.kind == kind.value]
        return records

    def top_level(self, owner_id: Optional[str] = None) -> List[EntityRecord]:
        """
        Trashed entities whose parent is not itself in the trash listing.
        Purging these empties the trash, since purge cascades to contents.
        """
        records = self.entries(owner_id=owner_id)
        trashed_ids = {r.id for r in records}
        return [r for r in records if r.parent_id not in trashed_ids]

    def contains(self, entity_id: str) -> bool:
        record = self._store.session.get(EntityRecord, entity_id)
        return record is not None and record.deleted_at is not None
