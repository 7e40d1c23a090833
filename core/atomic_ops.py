#!/usr/bin/env python3
"""
Atomic Operations Utility
Atomic file writes and directory swaps so a crash never leaves half-written
state on a node (status files, store objects, restored data directories).
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict


def write_bytes_atomic(data: bytes, path: Path, mode: int = 0o644) -> None:
    """
    Write bytes atomically

    Uses write-to-temp-then-rename, which is atomic on POSIX when the temp
    file lives on the same filesystem as the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.tmp.",
    )

    try:
        with os.fdopen(temp_fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def write_json_atomic(data: Dict[str, Any], path: Path, mode: int = 0o644) -> None:
    """Write JSON file atomically"""
    write_bytes_atomic(json.dumps(data, indent=2, sort_keys=True).encode(), path, mode=mode)


def replace_directory_atomic(staged: Path, dest: Path) -> None:
    """
    Move a fully-populated staging directory into place

    Any existing `dest` is moved aside first and removed only after the new
    directory is in place. `staged` must be on the same filesystem as `dest`.
    """
    staged = Path(staged)
    dest = Path(dest)
    backup = dest.parent / f".{dest.name}.old.{os.getpid()}"

    if dest.exists():
        os.rename(dest, backup)
    try:
        os.rename(staged, dest)
    except Exception:
        if backup.exists():
            os.rename(backup, dest)
        raise

    if backup.exists():
        shutil.rmtree(backup, ignore_errors=True)
