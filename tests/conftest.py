"""
FileVault Test Suite: Shared fixtures and configuration.

Run:  pytest tests/ -v

Every test gets its own in-memory SQLite engine (registered under a unique
name) and its own blob directory under tmp_path.
"""

from __future__ import annotations

import uuid

import pytest


# ---------------------------------------------------------------------------
# Environment setup: reset global singletons between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset the cached platform config between tests."""
    import filevault.engine.config as cfg_mod

    cfg_mod._platform_config = None
    yield
    cfg_mod._platform_config = None


@pytest.fixture
def project_root(tmp_path):
    """A project directory holding a filevault.yaml pointing into tmp_path."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "filevault.yaml").write_text(
        "platform:\n"
        "  name: TestVault\n"
        "  environment: dev\n"
        "database:\n"
        f"  url: sqlite:///{root / 'data' / 'filevault.db'}\n"
        "storage:\n"
        f"  root: {root / 'blobs'}\n"
        "  chunk_size: 4096\n"
        "logging:\n"
        "  level: WARNING\n"
        f"  directory: {root / 'logs'}\n"
        "  compress_after_days: 3\n"
        "  retention:\n"
        "    execution_days: 30\n"
        "documents:\n"
        "  max_upload_size_mb: 1\n",
        encoding="utf-8",
    )
    return root


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory database with all tables."""
    from filevault.db.base import engine_registry
    from filevault.db.session import init_db

    name = f"test_{uuid.uuid4().hex[:8]}"
    factory = init_db("sqlite://", create_tables=True, engine_name=name)
    yield factory
    engine_registry.dispose(name)


@pytest.fixture
def db_session(session_factory):
    """A single session for store / ledger level tests. Rolled back at teardown."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(db_session):
    from filevault.documents.store import EntityStore

    return EntityStore(db_session)


@pytest.fixture
def blob_store(tmp_path):
    from filevault.storage.blob_store import BlobStore

    return BlobStore(tmp_path / "blobs", chunk_size=8)


# ---------------------------------------------------------------------------
# Service + identities
# ---------------------------------------------------------------------------

class RecordingSink:
    """AuditSink stand-in that keeps every emitted entry."""

    def __init__(self):
        self.entries = []

    def emit(self, entry) -> bool:
        self.entries.append(entry)
        return True

    def events(self):
        return [e.data["event"] for e in self.entries]


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def service(session_factory, blob_store, audit_sink):
    from filevault.documents.service import LifecycleService

    return LifecycleService(
        session_factory=session_factory,
        blob_store=blob_store,
        audit_sink=audit_sink,
        max_upload_size_mb=1,
    )


@pytest.fixture
def alice():
    from filevault.engine.context import RequestContext

    return RequestContext(user_id="alice")


@pytest.fixture
def bob():
    from filevault.engine.context import RequestContext

    return RequestContext(user_id="bob")


@pytest.fixture
def carol():
    from filevault.engine.context import RequestContext

    return RequestContext(user_id="carol")


@pytest.fixture
def admin():
    from filevault.engine.context import RequestContext

    return RequestContext(user_id="root", role="admin")
