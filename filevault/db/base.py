"""
FileVault Database Base: SQLAlchemy declarative base, mixins, and engine registry.

Provides:
- Base: SQLAlchemy declarative base for all FileVault tables
- TimestampMixin: created_at, updated_at
- SoftDeleteMixin: deleted_at, deleted_by (null deleted_at = live)
- EngineRegistry: named engine registry (platform DB + test engines)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, String, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all FileVault models."""
    pass


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class SoftDeleteMixin:
    """Adds deleted_at and deleted_by columns for soft delete support."""
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    deleted_by = Column(String(64), nullable=True)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class EngineRegistry:
    """
    Registry of named SQLAlchemy engines and their session factories.

    Usage:
        registry = EngineRegistry()
        registry.register("filevault", "postgresql://...")
        session = registry.get_session("filevault")
    """

    def __init__(self):
        self._engines: Dict[str, Engine] = {}
        self._session_factories: Dict[str, sessionmaker] = {}

    def register(
        self,
        name: str,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
        pool_pre_ping: bool = True,
        **kwargs: Any,
    ) -> Engine:
        """Register (or replace) a database engine."""
        if name in self._engines:
            self._engines[name].dispose()

        if _is_sqlite(url):
            # SQLite pools don't take sizing args; in-memory DBs must share one connection
            connect_args = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs.setdefault("poolclass", StaticPool)
            engine = create_engine(url, connect_args=connect_args, **kwargs)
            _enable_sqlite_foreign_keys(engine)
        else:
            engine = create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=pool_pre_ping,
                **kwargs,
            )

        self._engines[name] = engine
        self._session_factories[name] = sessionmaker(bind=engine, expire_on_commit=False)
        return engine

    def get(self, name: str) -> Engine:
        """Get a registered engine by name."""
        if name not in self._engines:
            raise KeyError(f"Engine '{name}' not registered. Available: {list(self._engines.keys())}")
        return self._engines[name]

    def get_session_factory(self, name: str) -> sessionmaker:
        if name not in self._session_factories:
            raise KeyError(f"Session factory '{name}' not found. Available: {list(self._session_factories.keys())}")
        return self._session_factories[name]

    def get_session(self, name: str) -> Session:
        """Get a new session for a registered engine."""
        return self.get_session_factory(name)()

    def dispose(self, name: Optional[str] = None) -> None:
        """Dispose one or all engines (close connection pools)."""
        if name:
            engine = self._engines.pop(name, None)
            self._session_factories.pop(name, None)
            if engine is not None:
                engine.dispose()
        else:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._session_factories.clear()

    @property
    def registered_names(self) -> list:
        return list(self._engines.keys())

    def health_check(self, name: str) -> bool:
        """Check if an engine can connect."""
        from sqlalchemy import text
        from sqlalchemy.exc import SQLAlchemyError

        try:
            with self.get(name).connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except (KeyError, SQLAlchemyError):
            return False


# Global engine registry singleton
engine_registry = EngineRegistry()
