"""
Integration tests for filevault.documents.service: the lifecycle operations
end-to-end over in-memory SQLite and a temporary blob directory.
"""

import io
import uuid
from unittest.mock import patch

import pytest

from filevault.db.models import EntityVersion
from filevault.documents.models import EntityKind, EntityState, Permission
from filevault.documents.store import EntityStore
from filevault.engine.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
)


def _read(service, ctx, entity_id, version_id=None) -> bytes:
    _, handle = service.open_content(ctx, entity_id, version_id)
    with handle:
        return handle.read()


def _blob_files(service):
    return [p for p in service.blob_store.root.rglob("*") if p.is_file()]


class TestReportScenario:
    """report.pdf through its whole life."""

    def test_full_flow(self, service, alice):
        doc, v1 = service.upload(alice, "report.pdf", b"Q1 numbers")
        folder, _ = service.create_container(alice, "F")
        assert doc.kind == EntityKind.DOCUMENT
        assert doc.content_type == "application/pdf"
        assert v1.version_number == 1
        assert v1.description == "initial upload"

        _, v2 = service.update_content(alice, doc.id, b"Q2 numbers!", description="Q2 numbers")
        assert v2.version_number == 2
        assert v2.description == "Q2 numbers"

        _, v3 = service.rename(alice, doc.id, "final.pdf")
        assert v3.description == 'renamed "report.pdf" to "final.pdf"'

        moved, v4 = service.move(alice, doc.id, folder.id)
        assert v4.description == 'moved from root to "F"'
        assert moved.parent_id == folder.id

        trashed = service.soft_delete(alice, doc.id)
        assert trashed.state == EntityState.TRASHED
        assert doc.id not in [e.id for e in service.list_children(alice, folder.id)]
        assert doc.id in [e.id for e in service.list_trash(alice)]

        restored = service.restore(alice, doc.id)
        assert restored.state == EntityState.LIVE
        assert restored.current_version == 4
        assert [e.id for e in service.list_children(alice, folder.id)] == [doc.id]

        versions = service.list_versions(alice, doc.id)
        assert [v.version_number for v in versions] == [4, 3, 2, 1]
        assert [v.is_current for v in versions] == [True, False, False, False]

    def test_content_versions_are_downloadable(self, service, alice):
        doc, v1 = service.upload(alice, "notes.txt", b"first")
        _, v2 = service.update_content(alice, doc.id, b"second")
        assert v2.description == "Version 2"
        assert _read(service, alice, doc.id) == b"second"
        assert _read(service, alice, doc.id, v1.id) == b"first"

    def test_restore_to_version(self, service, alice):
        doc, v1 = service.upload(alice, "a.txt", b"one")
        service.update_content(alice, doc.id, b"two")
        service.rename(alice, doc.id, "b.txt")

        entity, v4 = service.restore_to_version(alice, doc.id, v1.id)
        assert v4.version_number == 4
        assert v4.description == "restored to v1"
        assert entity.name == "a.txt"
        assert entity.size_bytes == 3
        assert _read(service, alice, doc.id) == b"one"

        with pytest.raises(ValidationError):
            service.restore_to_version(alice, doc.id, v4.id)


class TestCreate:

    def test_container(self, service, alice):
        folder, v1 = service.create_container(alice, "Projects")
        assert folder.is_container
        assert folder.size_bytes is None
        assert v1.description == "created"

    def test_nested_upload_and_breadcrumbs(self, service, alice):
        a, _ = service.create_container(alice, "A")
        b, _ = service.create_container(alice, "B", parent_id=a.id)
        doc, _ = service.upload(alice, "x.bin", io.BytesIO(b"\x00\x01"), parent_id=b.id)
        assert doc.content_type == "application/octet-stream"
        assert [c.name for c in service.breadcrumbs(alice, doc.id)] == ["A", "B", "x.bin"]

    def test_empty_name_writes_nothing(self, service, alice):
        with pytest.raises(ValidationError):
            service.upload(alice, "   ", b"data")
        assert _blob_files(service) == []

    def test_oversized_upload(self, service, alice):
        with pytest.raises(ValidationError):
            service.upload(alice, "big.bin", b"x" * (1024 * 1024 + 1))
        assert service.list_children(alice) == []
        assert _blob_files(service) == []

    def test_parent_must_be_writable(self, service, alice, bob):
        folder, _ = service.create_container(alice, "Private")
        with pytest.raises(ForbiddenError):
            service.upload(bob, "intruder.txt", b"x", parent_id=folder.id)
        assert _blob_files(service) == []

    def test_parent_must_exist(self, service, alice):
        with pytest.raises(ValidationError):
            service.create_container(alice, "Child", parent_id="missing")


class TestStorageFailures:

    def test_blob_failure_creates_nothing(self, service, alice):
        with patch.object(service.blob_store, "put", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                service.upload(alice, "a.txt", b"data")
        assert service.list_children(alice) == []

    def test_blob_failure_keeps_version(self, service, alice):
        doc, _ = service.upload(alice, "a.txt", b"data")
        with patch.object(service.blob_store, "put", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                service.update_content(alice, doc.id, b"more")
        assert service.get(alice, doc.id).current_version == 1
        assert len(service.list_versions(alice, doc.id)) == 1

    def test_failed_transaction_removes_blob(self, service, alice):
        with patch(
            "filevault.documents.service.EntityStore.update_entity",
            side_effect=RuntimeError("db down"),
        ):
            with pytest.raises(RuntimeError):
                service.upload(alice, "a.txt", b"data")
        assert _blob_files(service) == []
        assert service.list_children(alice) == []


class TestMove:

    def test_into_own_descendant_conflicts(self, service, alice):
        a, _ = service.create_container(alice, "A")
        b, _ = service.create_container(alice, "B", parent_id=a.id)
        c, _ = service.create_container(alice, "C", parent_id=b.id)

        with pytest.raises(ConflictError):
            service.move(alice, a.id, c.id)
        with pytest.raises(ConflictError):
            service.move(alice, a.id, a.id)

        unchanged = service.get(alice, a.id)
        assert unchanged.parent_id is None
        assert unchanged.current_version == 1

    def test_destination_must_be_live_container(self, service, alice):
        doc, _ = service.upload(alice, "a.txt", b"x")
        other, _ = service.upload(alice, "b.txt", b"y")
        old, _ = service.create_container(alice, "Old")
        service.soft_delete(alice, old.id)

        with pytest.raises(ValidationError):
            service.move(alice, doc.id, other.id)
        with pytest.raises(ValidationError):
            service.move(alice, doc.id, old.id)
        with pytest.raises(NotFoundError):
            service.move(alice, doc.id, "missing")

    def test_destination_requires_write(self, service, alice, bob):
        doc, _ = service.upload(alice, "a.txt", b"x")
        inbox, _ = service.create_container(bob, "Inbox")

        with pytest.raises(ForbiddenError):
            service.move(alice, doc.id, inbox.id)
        service.share(bob, inbox.id, ["alice"], "read")
        with pytest.raises(ForbiddenError):
            service.move(alice, doc.id, inbox.id)
        assert service.get(alice, doc.id).parent_id is None

        service.share(bob, inbox.id, ["alice"], "write")
        moved, _ = service.move(alice, doc.id, inbox.id)
        assert moved.parent_id == inbox.id
        assert moved.owner_id == "alice"

    def test_move_back_to_root(self, service, alice):
        folder, _ = service.create_container(alice, "F")
        doc, _ = service.upload(alice, "a.txt", b"x", parent_id=folder.id)
        moved, version = service.move(alice, doc.id, None)
        assert moved.parent_id is None
        assert version.description == 'moved from "F" to root'

    def test_same_parent_is_noop(self, service, alice):
        doc, v1 = service.upload(alice, "a.txt", b"x")
        _, current = service.move(alice, doc.id, None)
        assert current.id == v1.id

    def test_move_targets(self, service, alice):
        a, _ = service.create_container(alice, "A")
        b, _ = service.create_container(alice, "B", parent_id=a.id)
        c, _ = service.create_container(alice, "C")
        doc, _ = service.upload(alice, "x.txt", b"x", parent_id=a.id)

        assert [t.name for t in service.move_targets(alice, a.id)] == ["C"]
        assert [t.name for t in service.move_targets(alice, doc.id)] == ["A", "B", "C"]


class TestConcurrentMove:

    @pytest.fixture
    def file_service(self, tmp_path, blob_store):
        """A service over a file database, so two sessions use two connections."""
        from filevault.db.base import engine_registry
        from filevault.db.session import init_db
        from filevault.documents.service import LifecycleService

        name = f"race_{uuid.uuid4().hex[:8]}"
        factory = init_db(f"sqlite:///{tmp_path / 'race.db'}", create_tables=True, engine_name=name)
        yield LifecycleService(factory, blob_store)
        engine_registry.dispose(name)

    def test_destination_reparented_before_commit(self, file_service, alice):
        a, _ = file_service.create_container(alice, "A")
        b, _ = file_service.create_container(alice, "B")
        original = EntityStore.assert_not_descendant
        interleaved = []

        def reparent_destination_first(store, entity_id, destination_id, for_update=False):
            if not interleaved:
                interleaved.append(destination_id)
                # Commits B under A after this move has already loaded B
                file_service.move(alice, b.id, a.id)
            return original(store, entity_id, destination_id, for_update=for_update)

        with patch.object(
            EntityStore, "assert_not_descendant",
            autospec=True, side_effect=reparent_destination_first,
        ):
            with pytest.raises(ConflictError):
                file_service.move(alice, a.id, b.id)

        assert interleaved == [b.id]
        assert file_service.get(alice, a.id).parent_id is None
        assert file_service.get(alice, a.id).current_version == 1
        assert file_service.get(alice, b.id).parent_id == a.id


class TestRenameAndOptimisticConcurrency:

    def test_rename_same_name_appends_nothing(self, service, alice):
        doc, v1 = service.upload(alice, "a.txt", b"x")
        _, current = service.rename(alice, doc.id, "  a.txt ")
        assert current.id == v1.id
        assert len(service.list_versions(alice, doc.id)) == 1

    def test_stale_expected_version(self, service, alice):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.rename(alice, doc.id, "b.txt", expected_version=1)
        with pytest.raises(ConflictError) as exc_info:
            service.rename(alice, doc.id, "c.txt", expected_version=1)
        assert exc_info.value.current_version == 2
        assert service.get(alice, doc.id).name == "b.txt"

    def test_update_content_on_container_rejected(self, service, alice):
        folder, _ = service.create_container(alice, "F")
        with pytest.raises(ValidationError):
            service.update_content(alice, folder.id, b"x")


class TestSharing:

    def test_read_only_grantee(self, service, alice, bob):
        doc, _ = service.upload(alice, "a.txt", b"secret")
        service.share(alice, doc.id, ["bob"], Permission.READ)

        assert service.get(bob, doc.id).name == "a.txt"
        assert _read(service, bob, doc.id) == b"secret"
        assert len(service.list_versions(bob, doc.id)) == 1

        with pytest.raises(ForbiddenError):
            service.rename(bob, doc.id, "mine.txt")
        with pytest.raises(ForbiddenError):
            service.update_content(bob, doc.id, b"x")
        with pytest.raises(ForbiddenError):
            service.soft_delete(bob, doc.id)
        assert service.get(alice, doc.id).current_version == 1

    def test_share_appends_no_version_and_upserts(self, service, alice, bob):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.share(alice, doc.id, ["bob"], "read")
        shared = service.share(alice, doc.id, ["bob"], "write")
        assert shared.current_version == 1
        assert shared.grant_for("bob").permission == Permission.WRITE

        service.rename(bob, doc.id, "b.txt")
        with pytest.raises(ForbiddenError):
            service.share(bob, doc.id, ["carol"], "read")

    def test_unshare_is_idempotent(self, service, alice, bob):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.share(alice, doc.id, ["bob"], "read")
        assert service.unshare(alice, doc.id, "bob").shares == []
        assert service.unshare(alice, doc.id, "bob").shares == []
        with pytest.raises(ForbiddenError):
            service.get(bob, doc.id)

    @pytest.mark.parametrize("targets,permission", [
        ([], "read"),
        (["alice"], "read"),
        (["bob"], "owner"),
    ])
    def test_share_validation(self, service, alice, targets, permission):
        doc, _ = service.upload(alice, "a.txt", b"x")
        with pytest.raises(ValidationError):
            service.share(alice, doc.id, targets, permission)

    def test_folder_grant_covers_contents(self, service, alice, bob):
        folder, _ = service.create_container(alice, "Team")
        inner, _ = service.upload(alice, "plan.txt", b"plan", parent_id=folder.id)
        service.share(alice, folder.id, ["bob"], "write")

        assert [e.id for e in service.list_shared_with_me(bob)] == [folder.id]
        assert [e.name for e in service.list_children(bob, folder.id)] == ["plan.txt"]
        assert _read(service, bob, inner.id) == b"plan"

        added, _ = service.upload(bob, "notes.txt", b"n", parent_id=folder.id)
        assert added.owner_id == "bob"
        service.rename(bob, inner.id, "plan-v2.txt")
        with pytest.raises(ForbiddenError):
            service.purge(bob, inner.id)

    def test_denial_is_audited(self, service, alice, bob, audit_sink):
        doc, _ = service.upload(alice, "a.txt", b"x")
        with pytest.raises(ForbiddenError):
            service.rename(bob, doc.id, "b.txt")
        denied = [e for e in audit_sink.entries if e.data["event"] == "access_denied"]
        assert len(denied) == 1
        assert denied[0].category == "security"
        assert denied[0].data["user_id"] == "bob"


class TestTrash:

    def test_delete_restore_exact_state(self, service, alice, bob):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.share(alice, doc.id, ["bob"], "write")
        before = service.get(alice, doc.id)

        service.soft_delete(bob, doc.id)
        with pytest.raises(ForbiddenError):
            service.restore(bob, doc.id)
        after = service.restore(alice, doc.id)

        assert after.model_dump(exclude={"updated_at"}) == before.model_dump(exclude={"updated_at"})
        assert len(service.list_versions(alice, doc.id)) == 1

    def test_invalid_transitions(self, service, alice):
        doc, _ = service.upload(alice, "a.txt", b"x")
        with pytest.raises(ConflictError):
            service.restore(alice, doc.id)
        service.soft_delete(alice, doc.id)
        with pytest.raises(ConflictError):
            service.soft_delete(alice, doc.id)
        with pytest.raises(ConflictError):
            service.rename(alice, doc.id, "b.txt")
        with pytest.raises(ConflictError):
            service.open_content(alice, doc.id)
        assert service.get(alice, doc.id).is_trashed

    def test_purge_live_conflicts(self, service, alice):
        doc, _ = service.upload(alice, "a.txt", b"x")
        with pytest.raises(ConflictError):
            service.purge(alice, doc.id)
        assert _read(service, alice, doc.id) == b"x"

    def test_purge_removes_blobs_keeps_history(self, service, alice, session_factory):
        folder, _ = service.create_container(alice, "Old")
        doc, _ = service.upload(alice, "a.txt", b"one", parent_id=folder.id)
        service.update_content(alice, doc.id, b"two")
        assert len(_blob_files(service)) == 2

        service.soft_delete(alice, doc.id)
        service.soft_delete(alice, folder.id)
        service.purge(alice, folder.id)

        assert _blob_files(service) == []
        with pytest.raises(NotFoundError):
            service.get(alice, doc.id)
        with pytest.raises(NotFoundError):
            service.get(alice, folder.id)
        with session_factory() as session:
            assert session.query(EntityVersion).filter_by(entity_id=doc.id).count() == 2

    def test_purge_refuses_live_contents(self, service, alice):
        folder, _ = service.create_container(alice, "Old")
        doc, _ = service.upload(alice, "a.txt", b"keep", parent_id=folder.id)
        service.soft_delete(alice, folder.id)

        with pytest.raises(ConflictError) as exc_info:
            service.purge(alice, folder.id)
        assert exc_info.value.context["live_ids"] == [doc.id]
        assert service.get(alice, folder.id).is_trashed
        assert _read(service, alice, doc.id) == b"keep"

        service.soft_delete(alice, doc.id)
        service.purge(alice, folder.id)
        assert _blob_files(service) == []

    def test_purge_refuses_other_users_contents(self, service, alice, bob, admin):
        team, _ = service.create_container(alice, "Team")
        service.share(alice, team.id, ["bob"], "write")
        bobs, _ = service.upload(bob, "bob-live.txt", b"mine", parent_id=team.id)
        service.soft_delete(alice, team.id)

        with pytest.raises(ConflictError):
            service.purge(alice, team.id)
        assert _read(service, bob, bobs.id) == b"mine"

        service.soft_delete(bob, bobs.id)
        with pytest.raises(ConflictError) as exc_info:
            service.purge(alice, team.id)
        assert exc_info.value.context["foreign_ids"] == [bobs.id]
        assert service.get(bob, bobs.id).is_trashed

        service.purge(admin, team.id)
        with pytest.raises(NotFoundError):
            service.get(admin, bobs.id)

    def test_restore_inside_trashed_container_conflicts(self, service, alice):
        outer, _ = service.create_container(alice, "Outer")
        inner, _ = service.create_container(alice, "Inner", parent_id=outer.id)
        doc, _ = service.upload(alice, "a.txt", b"x", parent_id=inner.id)
        service.soft_delete(alice, doc.id)
        service.soft_delete(alice, outer.id)

        with pytest.raises(ConflictError) as exc_info:
            service.restore(alice, doc.id)
        assert "'Outer'" in exc_info.value.message
        assert service.get(alice, doc.id).is_trashed

        service.restore(alice, outer.id)
        assert not service.restore(alice, doc.id).is_trashed
        assert [e.name for e in service.list_children(alice, inner.id)] == ["a.txt"]

    def test_empty_trash(self, service, alice, bob):
        folder, _ = service.create_container(alice, "Old")
        inner, _ = service.upload(alice, "inner.txt", b"i", parent_id=folder.id)
        loose, _ = service.upload(alice, "loose.txt", b"l")
        kept, _ = service.upload(bob, "bob.txt", b"b")
        busy, _ = service.create_container(alice, "Busy")
        service.upload(alice, "still-live.txt", b"s", parent_id=busy.id)
        service.soft_delete(alice, inner.id)
        service.soft_delete(alice, folder.id)
        service.soft_delete(alice, loose.id)
        service.soft_delete(alice, busy.id)
        service.soft_delete(bob, kept.id)

        purged = service.empty_trash(alice)
        assert {e.name for e in purged} == {"Old", "loose.txt"}
        assert [e.name for e in service.list_trash(alice)] == ["Busy"]
        with pytest.raises(NotFoundError):
            service.get(alice, inner.id)
        assert [e.name for e in service.list_trash(bob)] == ["bob.txt"]


class TestAdmin:

    def test_admin_override(self, service, alice, admin):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.rename(admin, doc.id, "b.txt")
        service.soft_delete(admin, doc.id)
        assert [e.id for e in service.list_trash(admin)] == [doc.id]
        service.purge(admin, doc.id)
        with pytest.raises(NotFoundError):
            service.get(admin, doc.id)

    def test_admin_root_listing(self, service, alice, bob, admin):
        service.upload(alice, "a.txt", b"x")
        service.upload(bob, "b.txt", b"y")
        assert [e.name for e in service.list_children(bob)] == ["b.txt"]
        assert [e.name for e in service.list_children(admin)] == ["a.txt", "b.txt"]

    def test_verify(self, service, alice, admin):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.rename(alice, doc.id, "b.txt")
        assert service.verify(admin) == {}

        with pytest.raises(ForbiddenError):
            service.verify(alice)

        service.blob_store.delete(service.get(alice, doc.id).storage_key)
        report = service.verify(admin)
        assert list(report) == [doc.id]
        assert "missing" in report[doc.id][0]


class TestAudit:

    def test_lifecycle_events_emitted_after_commit(self, service, alice, audit_sink):
        doc, _ = service.upload(alice, "a.txt", b"x")
        service.rename(alice, doc.id, "b.txt")
        service.soft_delete(alice, doc.id)
        assert audit_sink.events() == ["entity_upload", "entity_rename", "entity_soft_delete"]
        assert audit_sink.entries[1].data["version_number"] == 2

    def test_failing_sink_never_fails_operation(self, session_factory, blob_store, alice):
        from unittest.mock import MagicMock

        from filevault.documents.service import LifecycleService
        from filevault.engine.logging import AuditSink

        queue = MagicMock()
        queue.push.side_effect = RuntimeError("queue broken")
        service = LifecycleService(session_factory, blob_store, audit_sink=AuditSink(queue))
        doc, version = service.upload(alice, "a.txt", b"x")
        assert version.version_number == 1
