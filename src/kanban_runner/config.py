"""Load optional runner configuration from ``<board dir>/config.yaml``."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    DEFAULT_PREVIEW_BASE_PORT,
    DEFAULT_PREVIEW_COMMAND,
    DEFAULT_PREVIEW_GRACE_SECONDS,
    DEFAULT_PREVIEW_HOST,
    DEFAULT_PREVIEW_KILL_AFTER_SECONDS,
    DEFAULT_PREVIEW_PORT_WINDOW,
    DEFAULT_SHARED_DATA_PATH,
    MAIN_APP_PORT,
    STATE_DIR_ENV,
    STATE_DIR_NAME,
    WORKTREES_DIR_NAME,
)
from .io_utils import _load_data_with_error


def resolve_board_dir(board_dir: Optional[str] = None) -> Path:
    """Pick the board state directory: explicit value, then env var, then home."""
    if board_dir:
        return Path(board_dir).expanduser().resolve()
    env_value = os.environ.get(STATE_DIR_ENV)
    if env_value:
        return Path(env_value).expanduser().resolve()
    return Path.home() / STATE_DIR_NAME


def load_runner_config(board_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        board_dir: Board state directory.

    Returns:
        A tuple of ``(config, error_message)``. If the file is missing, returns ``({}, None)``.
    """
    path = Path(board_dir) / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def _positive_number(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return default
    return value


def _bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def get_git_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _section(config, "git")
    worktrees_dir = raw.get("worktrees_dir")
    return {
        "timeout_seconds": _positive_number(raw.get("timeout_seconds"), DEFAULT_GIT_TIMEOUT_SECONDS),
        "worktrees_dir": worktrees_dir if isinstance(worktrees_dir, str) and worktrees_dir else WORKTREES_DIR_NAME,
    }


def get_preview_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the preview block, filling defaults for anything missing or malformed.

    A window that would reach back to the board's own port is moved above it.
    """
    raw = _section(config, "preview")
    base_port = raw.get("base_port")
    if isinstance(base_port, bool) or not isinstance(base_port, int) or not 0 < base_port < 65536:
        base_port = DEFAULT_PREVIEW_BASE_PORT
    window = raw.get("port_window")
    if isinstance(window, bool) or not isinstance(window, int) or window <= 0:
        window = DEFAULT_PREVIEW_PORT_WINDOW
    if base_port <= MAIN_APP_PORT < base_port + window:
        base_port = MAIN_APP_PORT + 1
    command = raw.get("command")
    if not (isinstance(command, list) and command and all(isinstance(p, str) for p in command)):
        command = list(DEFAULT_PREVIEW_COMMAND)
    host = raw.get("host")
    shared = raw.get("shared_data_path")
    return {
        "base_port": base_port,
        "port_window": window,
        "host": host if isinstance(host, str) and host else DEFAULT_PREVIEW_HOST,
        "grace_seconds": _positive_number(raw.get("grace_seconds"), DEFAULT_PREVIEW_GRACE_SECONDS),
        "kill_after_seconds": _positive_number(raw.get("kill_after_seconds"), DEFAULT_PREVIEW_KILL_AFTER_SECONDS),
        "command": command,
        "shared_data_path": shared if isinstance(shared, str) and shared else DEFAULT_SHARED_DATA_PATH,
    }


def get_merge_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _section(config, "merge")
    return {"commit_first": _bool(raw.get("commit_first"), False)}


def get_rollback_config(config: dict[str, Any]) -> dict[str, Any]:
    raw = _section(config, "rollback")
    return {"delete_branch": _bool(raw.get("delete_branch"), True)}
