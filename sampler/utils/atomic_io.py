"""Sampler - Atomic file publication.

Every artifact the pipeline writes reaches its final name the same way:
1. Content goes to a sibling "<name>.tmp" in the destination directory
2. The temp file is fsynced
3. os.replace() moves it onto the final name (the publish boundary)

A reader therefore sees either the complete artifact or nothing, and a link
re-run after a crash simply overwrites the stale temp file. Temp files left
behind by a crash are removed at startup by cleanup_orphan_temp_files.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

TEMP_SUFFIX = ".tmp"

STREAM_CHUNK_BYTES = 64 * 1024


def temp_path_for(final_path: str | Path, temp_suffix: str = TEMP_SUFFIX) -> Path:
    """Sibling temp path used while producing final_path."""
    final_path = Path(final_path)
    return final_path.with_name(final_path.name + temp_suffix)


def _sync_parent(path: Path) -> None:
    """fsync the directory entry of path; not every platform supports it."""
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(path.parent, flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _replace(temp_path: Path, final_path: Path) -> None:
    os.replace(temp_path, final_path)
    _sync_parent(final_path)


@contextmanager
def _temp_sibling(final_path: Path, temp_suffix: str) -> Iterator[BinaryIO]:
    """Open the temp sibling for writing and publish it on clean exit.

    On any exception the temp file is removed and the final path is left
    untouched.
    """
    temp_path = temp_path_for(final_path, temp_suffix)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(temp_path, "wb") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        _remove_quietly(temp_path)
        raise
    _replace(temp_path, final_path)


def atomic_write_bytes(
    final_path: str | Path,
    data: bytes,
    temp_suffix: str = TEMP_SUFFIX,
) -> None:
    """Atomically replace final_path with data.

    Raises:
        OSError: If the directory, the temp file or the rename fails.
    """
    with _temp_sibling(Path(final_path), temp_suffix) as handle:
        handle.write(data)


def atomic_write_text(
    final_path: str | Path,
    text: str,
    encoding: str = "utf-8",
    temp_suffix: str = TEMP_SUFFIX,
) -> None:
    atomic_write_bytes(final_path, text.encode(encoding), temp_suffix)


def atomic_stream_to_file(
    stream,
    final_path: str | Path,
    temp_suffix: str = TEMP_SUFFIX,
    chunk_size: int = STREAM_CHUNK_BYTES,
) -> int:
    """Copy a readable stream (an upload) to final_path atomically.

    Text chunks are encoded as UTF-8.

    Returns:
        Number of bytes written.
    """
    written = 0
    with _temp_sibling(Path(final_path), temp_suffix) as handle:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            handle.write(chunk)
            written += len(chunk)
    return written


def atomic_publish_file(temp_path: str | Path, final_path: str | Path) -> None:
    """Publish a file an external tool already wrote at temp_path.

    Raises:
        OSError: If the temp file is missing or the rename fails.
    """
    temp_path = Path(temp_path)
    final_path = Path(final_path)
    final_path.parent.mkdir(parents=True, exist_ok=True)

    with open(temp_path, "rb") as handle:
        os.fsync(handle.fileno())
    _replace(temp_path, final_path)


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = TEMP_SUFFIX) -> int:
    """Delete temp files left under directory by interrupted writes.

    Returns:
        Number of files removed.
    """
    root = Path(directory)
    if not root.is_dir():
        return 0

    removed = 0
    for candidate in root.rglob(f"*{temp_suffix}"):
        if not candidate.is_file():
            continue
        try:
            candidate.unlink()
        except OSError:
            continue
        removed += 1
    return removed
