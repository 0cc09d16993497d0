"""
Atomic file writing with fsync, so readers on other nodes sharing the
certificate volume never see a half-written record or PEM file.

Pattern:
  1. Write to a temporary file in the same directory
  2. Apply the final permissions and fsync
  3. Rename atomically (atomic on POSIX filesystems)
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None, encoding: str = "utf-8") -> None:
    """
    Atomically replace *path* with *content*.

    When *mode* is given the permissions are set on the temp file before the
    rename, so secrets are never briefly world-readable under their final name.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
