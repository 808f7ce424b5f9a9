"""FileVault Blob Store: append-only content storage."""

from filevault.storage.blob_store import BlobStore, StoredBlob  # noqa: F401

__all__ = ["BlobStore", "StoredBlob"]
