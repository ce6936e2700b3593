"""Filesystem helpers for durable state: atomic writes and an exclusive run lock."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import IO

from src.core.exceptions import ConcurrentRunError


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """Write via a temp file in the same directory, then os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def _lock_posix(fd: int) -> None:
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_posix(fd: int) -> None:
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_UN)


def _lock_windows(fd: int) -> None:
    import msvcrt  # Windows only

    msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)


def _unlock_windows(fd: int) -> None:
    import msvcrt  # Windows only

    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)


def acquire_lockfile(path: Path) -> IO[bytes]:
    """Open + lock a lockfile without blocking. Keep the handle open to hold the lock.

    Raises:
        ConcurrentRunError: If another process already holds the lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    f.seek(0, os.SEEK_END)
    if f.tell() <= 0:
        # region locks on Windows need at least one byte
        f.write(b"\0")
        f.flush()
    f.seek(0)
    try:
        if os.name == "nt":
            _lock_windows(f.fileno())
        else:
            _lock_posix(f.fileno())
    except OSError as e:
        f.close()
        raise ConcurrentRunError(
            f"State directory is locked by another orchestrator process ({path}). "
            "Running two orchestrators against the same snapshot is unsupported."
        ) from e
    f.seek(0)
    f.truncate()
    f.write(f"{os.getpid()}\n".encode("ascii"))
    f.flush()
    return f


def release_lockfile(f: IO[bytes]) -> None:
    """Release a lockfile acquired via acquire_lockfile."""
    try:
        if os.name == "nt":
            _unlock_windows(f.fileno())
        else:
            _unlock_posix(f.fileno())
    finally:
        f.close()
