"""
FileVault: multi-tenant document store core.

Entity lifecycle and versioning for Documents (files) and Containers
(folders): upload, rename, move, share, soft-delete, restore, purge, with
an append-only version ledger per entity.

Entry point for callers:

    from filevault.documents.service import LifecycleService
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "storage", "documents", "security"]
