"""Sampler - Storage backend.

A Storage maps logical, slash-separated paths onto a root directory. The
pipeline uses two disks: a private local disk for temporary uploads and
downloads, and a public disk for the servable artifacts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from sampler.config import LOCAL_DIR, PUBLIC_DIR
from sampler.utils.atomic_io import (
    atomic_stream_to_file,
    atomic_write_bytes,
    cleanup_orphan_temp_files,
)

logger = logging.getLogger(__name__)


class StoragePathError(ValueError):
    """Raised when a logical path escapes the storage root."""


class Storage:
    """Filesystem storage rooted at a directory."""

    def __init__(self, root: str | Path, name: str = "local"):
        self.root = Path(root).resolve()
        self.name = name

    def __repr__(self) -> str:
        return f"Storage(name={self.name!r}, root={str(self.root)!r})"

    def path(self, logical_path: str) -> Path:
        """Resolve a logical path to an absolute path under the root.

        Raises:
            StoragePathError: If the path is absolute or escapes the root.
        """
        if not logical_path or Path(logical_path).is_absolute():
            raise StoragePathError(f"invalid logical path: {logical_path!r}")
        resolved = (self.root / logical_path).resolve()
        if not resolved.is_relative_to(self.root):
            raise StoragePathError(f"path escapes storage root: {logical_path!r}")
        return resolved

    def ensure_directory(self, logical_dir: str) -> Path:
        directory = self.path(logical_dir)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def put(self, data: bytes | BinaryIO, logical_path: str) -> Path:
        """Atomically store bytes or a readable stream at logical_path.

        Returns:
            Absolute path of the stored file.
        """
        target = self.path(logical_path)
        if isinstance(data, (bytes, bytearray)):
            atomic_write_bytes(target, bytes(data))
        else:
            atomic_stream_to_file(data, target)
        return target

    def exists(self, logical_path: str | None) -> bool:
        if not logical_path:
            return False
        try:
            return self.path(logical_path).is_file()
        except StoragePathError:
            return False

    def delete(self, logical_path: str) -> bool:
        """Best-effort delete. Returns True if a file was removed."""
        try:
            self.path(logical_path).unlink()
        except FileNotFoundError:
            return False
        except (OSError, StoragePathError) as e:
            logger.warning("Failed to delete %s from %s storage: %s", logical_path, self.name, e)
            return False
        return True

    def cleanup_orphans(self) -> int:
        """Remove incomplete *.tmp writes left by a crash."""
        return cleanup_orphan_temp_files(self.root)


def default_local_storage() -> Storage:
    return Storage(LOCAL_DIR, name="local")


def default_public_storage() -> Storage:
    return Storage(PUBLIC_DIR, name="public")
