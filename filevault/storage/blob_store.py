"""
FileVault Blob Store: append-only byte storage on the local filesystem.

Layout:
    {root}/{key[0:2]}/{key[2:4]}/{key}

Keys are random (uuid4 hex) and never reused, so a stored blob's bytes are
never overwritten and writers need no locking. Writes are streamed in
chunks to a temporary ``.part`` file and renamed into place only once
complete; a reader never observes a half-written blob.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

from filevault.engine.errors import StorageError, ValidationError

logger = logging.getLogger("filevault.storage.blob_store")

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StoredBlob:
    """Result of a completed write."""
    key: str
    size_bytes: int
    sha256: str


class BlobStore:
    """Filesystem-backed, append-only blob storage."""

    def __init__(self, root: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._root = Path(root)
        self._chunk_size = chunk_size
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @staticmethod
    def new_key() -> str:
        return uuid.uuid4().hex

    def _path_for(self, key: str) -> Path:
        if len(key) < 5 or not key.isalnum():
            raise StorageError(f"Malformed storage key '{key}'", storage_key=key)
        return self._root / key[:2] / key[2:4] / key

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------

    def put(
        self,
        data: Union[bytes, BinaryIO],
        max_bytes: Optional[int] = None,
    ) -> StoredBlob:
        """
        Stream ``data`` into a new blob and return its key, size and digest.

        Raises:
            ValidationError: the stream exceeded ``max_bytes`` (nothing is kept).
            StorageError: the filesystem write failed (nothing is kept).

        A partial file is removed whatever interrupts the write, including
        errors raised by ``data.read``.
        """
        stream: BinaryIO = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
        key = self.new_key()
        final_path = self._path_for(key)
        part_path = final_path.with_name(final_path.name + ".part")

        bytes_written = 0
        file_hash = hashlib.sha256()
        completed = False
        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            with open(part_path, "xb") as f:
                while True:
                    chunk = stream.read(self._chunk_size)
                    if not chunk:
                        break
                    bytes_written += len(chunk)
                    if max_bytes is not None and bytes_written > max_bytes:
                        raise ValidationError(
                            f"Upload exceeds limit of {max_bytes} bytes",
                            max_bytes=max_bytes,
                        )
                    f.write(chunk)
                    file_hash.update(chunk)
                f.flush()
                os.fsync(f.fileno())
            if final_path.exists():
                raise StorageError(f"Storage key collision '{key}'", storage_key=key)
            os.replace(part_path, final_path)
            completed = True
        except OSError as e:
            raise StorageError(f"Blob write failed: {e}", storage_key=key) from e
        finally:
            if not completed:
                self._discard(part_path)

        digest = file_hash.hexdigest()
        logger.info(f"Stored blob {key} ({bytes_written} bytes, sha256={digest[:12]})")
        return StoredBlob(key=key, size_bytes=bytes_written, sha256=digest)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial blob {path}: {e}")

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def open(self, key: str) -> BinaryIO:
        """Open a blob for binary reading. Caller closes the handle."""
        path = self._path_for(key)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise StorageError(f"Blob '{key}' is missing", storage_key=key) from e
        except OSError as e:
            raise StorageError(f"Blob read failed: {e}", storage_key=key) from e

    def iter_chunks(self, key: str) -> Iterator[bytes]:
        """Yield a blob's bytes in chunk_size pieces."""
        with self.open(key) as f:
            while True:
                chunk = f.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk

    def read_bytes(self, key: str) -> bytes:
        """Whole blob in memory. Small blobs and tests only."""
        return b"".join(self.iter_chunks(key))

    # -------------------------------------------------------------------
    # Deletes (purge only)
    # -------------------------------------------------------------------

    def delete(self, key: str) -> bool:
        """
        Remove a blob. Returns False if it was already gone.

        Raises:
            StorageError: the file exists but could not be removed.
        """
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Blob delete failed: {e}", storage_key=key) from e
        logger.info(f"Deleted blob {key}")
        return True

    def __repr__(self) -> str:
        return f"<BlobStore root='{self._root}'>"
