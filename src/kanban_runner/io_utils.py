"""Locked, atomic access to the board's YAML files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import IO, Any, Optional

import yaml

from .constants import WINDOWS_LOCK_BYTES

if os.name == "nt":
    import msvcrt
else:
    import fcntl


class FileLock:
    """Exclusive advisory lock on a sidecar file, held for the ``with`` block.

    Serializes writers across processes; threads within one process must
    still hold their own lock around it.
    """

    def __init__(self, lock_path: Path, lock_bytes: int = WINDOWS_LOCK_BYTES):
        self.lock_path = lock_path
        self.lock_bytes = lock_bytes
        self.handle: Optional[IO[str]] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+")
        if os.name == "nt":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, self.lock_bytes)
        else:
            fcntl.flock(handle, fcntl.LOCK_EX)
        self.handle = handle
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            if os.name == "nt":
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, self.lock_bytes)
            else:
                fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    """Write ``data`` next to ``path`` and swap it in, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, default_flow_style=False, allow_unicode=True)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_data_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Load a YAML mapping and return ``(data, error_message)``.

    A missing or empty file yields ``default`` with no error. Unreadable or
    malformed files yield ``default`` plus a message, letting callers refuse
    to overwrite them.
    """
    if not path.exists():
        return default, None
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text)
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected mapping, got {type(data).__name__}"
    return data, None
