"""FileVault persistence: SQLAlchemy base, sessions and tables."""

from filevault.db.base import Base, EngineRegistry, engine_registry  # noqa: F401
from filevault.db.models import EntityRecord, EntityVersion, ShareGrant  # noqa: F401
from filevault.db.session import init_db, session_scope  # noqa: F401

__all__ = [
    "Base",
    "EngineRegistry",
    "engine_registry",
    "EntityRecord",
    "EntityVersion",
    "ShareGrant",
    "init_db",
    "session_scope",
]
