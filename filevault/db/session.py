"""
FileVault Database Session Management.

Single entry point for database initialisation plus the transactional
session scope every lifecycle operation runs inside.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from filevault.db.base import Base, engine_registry

logger = logging.getLogger("filevault.db.session")

ENGINE_NAME = "filevault"

_session_factory: Optional[sessionmaker] = None


def init_db(
    db_url: str,
    create_tables: bool = False,
    engine_name: str = ENGINE_NAME,
    **engine_kwargs,
) -> sessionmaker:
    """
    Register the FileVault engine and return its session factory.

    Args:
        db_url:        SQLAlchemy URL (sqlite:///..., postgresql://...).
        create_tables: Run Base.metadata.create_all(): for ``filevault init``
                       and tests. Production deployments manage schema separately.
        engine_name:   Registry name, so tests can run isolated engines.
        engine_kwargs: Pool settings forwarded to EngineRegistry.register().
    """
    global _session_factory

    # Import tables so they're attached to Base.metadata
    from filevault.db import models  # noqa: F401

    engine = engine_registry.register(engine_name, db_url, **engine_kwargs)
    if create_tables:
        Base.metadata.create_all(engine)
        logger.info("Created FileVault tables on %s", engine.url.render_as_string(hide_password=True))

    factory = engine_registry.get_session_factory(engine_name)
    if engine_name == ENGINE_NAME:
        _session_factory = factory
    return factory


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        raise RuntimeError("FileVault DB not initialized. Call init_db() first.")
    return _session_factory


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, rollback on any exception.

    Usage:
        with session_scope(factory) as session:
            session.add(record)
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions() -> None:
    """Dispose all engines. Used during shutdown."""
    global _session_factory
    _session_factory = None
    engine_registry.dispose()
