"""
FileVault Error Hierarchy: Structured exceptions for lifecycle operations.

Every error carries the request_id of the operation that raised it, plus the
entity_id / operation when known, so a failure can be traced end-to-end
through the audit trail.

Hierarchy:
    FileVaultError
    ├── ValidationError  : Malformed input (empty name, bad permission)
    ├── NotFoundError    : Entity, version or grant target does not exist
    ├── ForbiddenError   : Permission evaluator denied the access level
    ├── ConflictError    : Structural invariant / state transition / lost race
    ├── StorageError     : Blob write/read/delete failed
    └── ConfigError      : Invalid filevault.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class FileVaultError(Exception):
    """
    Base error for all FileVault failures.
    All context is serializable to JSON for the audit log.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.request_id: Optional[str] = context.get("request_id")
        self.entity_id: Optional[str] = context.get("entity_id")
        self.operation: Optional[str] = context.get("operation")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "request_id": self.request_id,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("request_id", "entity_id", "operation")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.entity_id:
            parts.append(f"entity_id={self.entity_id}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " | ".join(parts)


class ValidationError(FileVaultError):
    """
    Malformed input. Always raised before any mutation.
    Includes field-level error details when available.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[List[Dict[str, Any]]] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class NotFoundError(FileVaultError):
    """Entity, version, or grant target does not exist."""
    pass


class ForbiddenError(FileVaultError):
    """
    Access denied by the permission evaluator.
    Includes the requesting user, the level they hold and the level required.
    """

    def __init__(self, message: str, **context: Any):
        self.user_id: Optional[str] = context.get("user_id")
        self.required_access: Optional[str] = context.get("required_access")
        self.actual_access: Optional[str] = context.get("actual_access")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["user_id"] = self.user_id
        d["required_access"] = self.required_access
        d["actual_access"] = self.actual_access
        return d


class ConflictError(FileVaultError):
    """
    Structural invariant violation: cycle on move, purge of a live entity,
    invalid state transition, or a lost version-number race.
    Callers may retry after refreshing state.
    """

    def __init__(self, message: str, **context: Any):
        self.expected_version: Optional[int] = context.get("expected_version")
        self.current_version: Optional[int] = context.get("current_version")
        super().__init__(message, **context)


class StorageError(FileVaultError):
    """Blob store failure. Transient from the caller's point of view."""

    def __init__(self, message: str, **context: Any):
        self.storage_key: Optional[str] = context.get("storage_key")
        super().__init__(message, **context)


class ConfigError(FileVaultError):
    """Configuration error: invalid filevault.yaml."""
    pass
