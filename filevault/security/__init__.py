"""FileVault Security: owner / grant / admin access resolution."""

from filevault.security.permissions import OPERATION_ACCESS, PermissionEvaluator  # noqa: F401

__all__ = ["OPERATION_ACCESS", "PermissionEvaluator"]
