"""Unit tests for filevault.documents.ledger: append-only version history."""

import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from filevault.db.models import EntityRecord
from filevault.documents.ledger import snapshot_of
from filevault.documents.models import EntityKind
from filevault.engine.errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def doc(store):
    record = store.create_entity(
        EntityKind.DOCUMENT, "report.pdf", owner_id="alice",
        content_type="application/pdf", size_bytes=10, storage_key="k1" * 16,
    )
    store.update_entity(record, {}, "alice", "initial upload")
    return record


class TestAppendVersion:

    def test_first_version(self, store, doc):
        versions = store.ledger.list_versions(doc.id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].is_current
        assert versions[0].description == "initial upload"
        assert versions[0].author_id == "alice"
        assert doc.current_version == 1

    def test_append_moves_current_flag(self, store, doc):
        store.update_entity(doc, {"name": "final.pdf"}, "alice", "renamed")
        versions = store.ledger.list_versions(doc.id)
        assert [v.version_number for v in versions] == [2, 1]
        assert [v.is_current for v in versions] == [True, False]
        assert versions[0].name == "final.pdf"
        assert versions[1].name == "report.pdf"
        assert doc.current_version == 2

    def test_snapshot_captures_fields(self, doc):
        snap = snapshot_of(doc)
        assert snap.name == "report.pdf"
        assert snap.content_type == "application/pdf"
        assert snap.size_bytes == 10
        assert snap.parent_id is None

    def test_stale_entity_conflicts(self, store, doc):
        set_committed_value(doc, "current_version", 0)
        with pytest.raises(ConflictError) as exc_info:
            store.ledger.append_version(doc, snapshot_of(doc), "bob")
        assert exc_info.value.expected_version == 0
        assert exc_info.value.current_version == 1

    def test_lost_compare_and_set_conflicts(self, store, doc):
        # Another writer advanced the row behind this session's back
        store.session.execute(
            update(EntityRecord)
            .where(EntityRecord.id == doc.id)
            .values(current_version=7)
            .execution_options(synchronize_session=False)
        )
        with pytest.raises(ConflictError):
            store.ledger.append_version(doc, snapshot_of(doc), "bob")


class TestRestoreVersion:

    def test_forward_restore(self, store, doc):
        store.update_entity(
            doc, {"storage_key": "k2" * 16, "size_bytes": 20}, "alice", "Version 2",
        )
        v1 = store.ledger.list_versions(doc.id)[-1]
        restored = store.ledger.restore_version(doc, v1.id, "alice")

        assert restored.version_number == 3
        assert restored.description == "restored to v1"
        assert restored.storage_key == "k1" * 16
        assert doc.storage_key == "k1" * 16
        assert doc.size_bytes == 10
        assert [v.version_number for v in store.ledger.list_versions(doc.id)] == [3, 2, 1]

    def test_restore_current_rejected(self, store, doc):
        current = store.ledger.current_version(doc.id)
        with pytest.raises(ValidationError):
            store.ledger.restore_version(doc, current.id, "alice")

    def test_unknown_version(self, store, doc):
        with pytest.raises(NotFoundError):
            store.ledger.get_version(doc.id, "missing")


class TestLedgerReads:

    def test_storage_keys_distinct(self, store, doc):
        store.update_entity(doc, {"name": "renamed.pdf"}, "alice", "rename")
        store.update_entity(doc, {"storage_key": "k3" * 16}, "alice", "Version 3")
        assert sorted(store.ledger.storage_keys(doc.id)) == sorted(["k1" * 16, "k3" * 16])

    def test_invariants_hold(self, store, doc):
        store.update_entity(doc, {"name": "b.pdf"}, "alice", "rename")
        assert store.ledger.check_invariants(doc.id) == []

    def test_invariants_report_missing_history(self, store):
        record = store.create_entity(EntityKind.CONTAINER, "empty", owner_id="alice")
        assert store.ledger.check_invariants(record.id) == [f"entity '{record.id}' has no versions"]
