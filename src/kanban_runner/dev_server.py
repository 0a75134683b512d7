"""Supervise per-task preview servers running out of task worktrees.

A preview is spawned detached from the caller and tracked only through the
``{pid, port}`` pair persisted on the task. Nothing here owns a process
handle across calls: liveness is always re-checked against the OS process
table before stored state is trusted.
"""

from __future__ import annotations

import os
import signal
import socket
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence, Union

from loguru import logger

from .constants import (
    DEFAULT_PREVIEW_BASE_PORT,
    DEFAULT_PREVIEW_COMMAND,
    DEFAULT_PREVIEW_GRACE_SECONDS,
    DEFAULT_PREVIEW_KILL_AFTER_SECONDS,
    DEFAULT_PREVIEW_PORT_WINDOW,
    DEFAULT_SHARED_DATA_PATH,
)
from .errors import PortExhausted, ProcessSpawnFailed
from .models import PreviewResult, Task

PathLike = Union[str, Path]


def is_port_in_use(port: int, host: str = "") -> bool:
    """Probe ``port`` by trying to bind it; an empty host means all interfaces."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def allocate_preview_port(
    base: int = DEFAULT_PREVIEW_BASE_PORT,
    window: int = DEFAULT_PREVIEW_PORT_WINDOW,
    host: str = "",
) -> int:
    """Return the first free port in ``[base, base + window)``.

    Raises:
        PortExhausted: If every port in the window is bound.
    """
    for port in range(base, base + window):
        if not is_port_in_use(port, host):
            return port
    raise PortExhausted(base, window)


def _reap_if_child(pid: int) -> bool:
    """Reap ``pid`` if it is an exited child of this process; return True when reaped."""
    if os.name != "posix":
        return False
    try:
        reaped, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return False
    except OSError:
        return False
    return reaped == pid


def is_process_running(pid: Optional[int]) -> bool:
    """Check process existence with signal 0; exited children read as dead."""
    if not pid or pid <= 0:
        return False
    if _reap_if_child(pid):
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


def build_preview_command(port: int, command: Optional[Sequence[str]] = None) -> list[str]:
    template = list(command) if command else list(DEFAULT_PREVIEW_COMMAND)
    return [str(part).replace("{port}", str(port)) for part in template]


def start_preview(
    worktree_path: PathLike,
    port: int,
    *,
    command: Optional[Sequence[str]] = None,
    grace_seconds: float = DEFAULT_PREVIEW_GRACE_SECONDS,
) -> PreviewResult:
    """Spawn a detached preview server and confirm it survives a short grace delay.

    The child gets its own session and no inherited stdio, so it outlives the
    request that started it.

    Raises:
        ProcessSpawnFailed: If the directory or executable is missing, or the
            process has already exited when the grace delay ends.
    """
    cwd = Path(worktree_path)
    if not cwd.is_dir():
        raise ProcessSpawnFailed(f"Preview directory does not exist: {cwd}")

    argv = build_preview_command(port, command)
    env = dict(os.environ)
    env["PORT"] = str(port)
    logger.info("Starting preview in {} on port {}: {}", cwd, port, " ".join(argv))
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
            env=env,
        )
    except OSError as exc:
        raise ProcessSpawnFailed(f"Failed to start preview ({argv[0]}): {exc}") from exc

    time.sleep(max(grace_seconds, 0.0))
    exit_code = process.poll()
    if exit_code is not None:
        raise ProcessSpawnFailed(
            f"Preview process exited with code {exit_code} within {grace_seconds:g}s"
        )
    logger.info("Preview started with pid {} on port {}", process.pid, port)
    return PreviewResult(pid=process.pid, port=port)


def _send_signal(pid: int, sig: int) -> None:
    if os.name == "posix":
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, sig)
                return
        except OSError:
            pass
    os.kill(pid, sig)


def stop_preview(pid: Optional[int], *, kill_after: float = DEFAULT_PREVIEW_KILL_AFTER_SECONDS) -> bool:
    """Terminate a preview: SIGTERM first, SIGKILL if it outlives ``kill_after``.

    Returns:
        True if a running process was signalled, False if none existed.
    """
    if pid is None or not is_process_running(pid):
        return False
    try:
        _send_signal(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        logger.warning("Not permitted to stop preview pid {}: {}", pid, exc)
        return False

    deadline = time.monotonic() + max(kill_after, 0.0)
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            return True
        time.sleep(0.05)

    if is_process_running(pid):
        logger.warning("Preview pid {} ignored SIGTERM; sending SIGKILL", pid)
        try:
            _send_signal(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except ProcessLookupError:
            pass
        is_process_running(pid)
    return True


def check_preview_liveness(task: Task) -> bool:
    """Return whether the task's recorded preview is alive.

    A failed check clears both ``dev_server_port`` and ``dev_server_pid`` so
    records left by a crashed process never linger.
    """
    if task.dev_server_pid and is_process_running(task.dev_server_pid):
        return True
    if task.dev_server_pid is not None or task.dev_server_port is not None:
        logger.info("Clearing stale preview record for {} (pid {})", task.id, task.dev_server_pid)
    task.clear_dev_server()
    return False


def symlink_database(
    main_path: PathLike,
    worktree_path: PathLike,
    relative_path: str = DEFAULT_SHARED_DATA_PATH,
) -> Optional[Path]:
    """Point the preview's data file at the main project's store.

    The store is shared on purpose, not copied. An already-correct link is
    left alone; stale links and plain files are replaced.

    Returns:
        The link path, or None when the main store does not exist.
    """
    main_db = Path(main_path) / relative_path
    link = Path(worktree_path) / relative_path

    if not main_db.exists():
        logger.warning("Main database not found at {}; preview will start without it", main_db)
        return None

    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink():
        if os.readlink(link) == str(main_db):
            return link
        link.unlink()
    elif link.exists():
        link.unlink()
        logger.info("Removed existing database file {}", link)

    link.symlink_to(main_db)
    logger.info("Linked {} -> {}", link, main_db)
    return link


def preview_url(port: int, host: str = "localhost") -> str:
    return f"http://{host}:{port}"
