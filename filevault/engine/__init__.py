"""FileVault Engine: errors, request context, configuration, audit logging."""

from filevault.engine.context import RequestContext  # noqa: F401
from filevault.engine.errors import (  # noqa: F401
    ConfigError,
    ConflictError,
    FileVaultError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
)

__all__ = [
    "RequestContext",
    "FileVaultError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "StorageError",
    "ConfigError",
]
