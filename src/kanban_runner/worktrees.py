"""Manage the one-worktree-per-task layout under ``<repo>/.worktrees/<branch>``.

The directory convention is part of the operator-facing surface: a human may
inspect or delete these directories by hand, so every operation reconciles
git's worktree registry with what is actually on disk.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import WORKTREES_DIR_NAME
from .git_utils import (
    PathLike,
    _run_git,
    branch_exists,
    default_branch,
    ensure_locally_excluded,
)
from .models import WorktreeResult


def worktree_path(project_dir: PathLike, branch: str, worktrees_dir: str = WORKTREES_DIR_NAME) -> Path:
    """Return the deterministic worktree location for ``branch``."""
    return Path(project_dir).resolve() / worktrees_dir / branch


def list_worktrees(project_dir: PathLike) -> list[dict[str, Optional[str]]]:
    """Parse ``git worktree list --porcelain`` into path/branch/head records."""
    result = _run_git(project_dir, ["worktree", "list", "--porcelain"])
    entries: list[dict[str, Optional[str]]] = []
    current: dict[str, Optional[str]] = {}
    for line in result.stdout.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            if current:
                entries.append(current)
            current = {"path": value, "branch": None, "head": None, "prunable": None}
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.replace("refs/heads/", "", 1)
        elif key == "prunable":
            current["prunable"] = value or "prunable"
    if current:
        entries.append(current)
    return entries


def _same_path(left: PathLike, right: PathLike) -> bool:
    try:
        return Path(left).resolve() == Path(right).resolve()
    except OSError:
        return str(left) == str(right)


def _registered(project_dir: PathLike, path: Path) -> Optional[dict[str, Optional[str]]]:
    for entry in list_worktrees(project_dir):
        if entry.get("path") and _same_path(str(entry["path"]), path):
            return entry
    return None


def worktree_for_branch(project_dir: PathLike, branch: str) -> Optional[Path]:
    """Return the live worktree that has ``branch`` checked out, if any."""
    main = Path(project_dir).resolve()
    for entry in list_worktrees(project_dir):
        path = entry.get("path")
        if entry.get("branch") != branch or not path:
            continue
        if _same_path(path, main):
            continue
        if Path(path).exists():
            return Path(path)
    return None


def worktree_exists(project_dir: PathLike, branch: str, worktrees_dir: str = WORKTREES_DIR_NAME) -> bool:
    path = worktree_path(project_dir, branch, worktrees_dir)
    return path.exists() and _registered(project_dir, path) is not None


def prune_worktrees(project_dir: PathLike) -> None:
    """Drop registry entries whose directories no longer exist."""
    _run_git(project_dir, ["worktree", "prune"])


def create_worktree(
    project_dir: PathLike,
    branch: str,
    *,
    base: Optional[str] = None,
    worktrees_dir: str = WORKTREES_DIR_NAME,
) -> WorktreeResult:
    """Ensure ``branch`` is checked out in its own worktree.

    Calling this again for the same branch returns ``existed=True`` and never
    registers a second worktree. A registration left behind by a manually
    deleted directory is pruned and the worktree recreated.

    Raises:
        GitCommandError: If ``git worktree add`` fails.
    """
    path = worktree_path(project_dir, branch, worktrees_dir)
    ensure_locally_excluded(project_dir, f"{worktrees_dir}/")

    existing = worktree_for_branch(project_dir, branch)
    if existing is not None:
        return WorktreeResult(worktree_path=str(existing), existed=True)

    if _registered(project_dir, path) is not None:
        logger.info("Pruning stale worktree registration for {}", path)
        prune_worktrees(project_dir)

    path.parent.mkdir(parents=True, exist_ok=True)
    if branch_exists(project_dir, branch):
        _run_git(project_dir, ["worktree", "add", str(path), branch])
    else:
        start = base or default_branch(project_dir)
        _run_git(project_dir, ["worktree", "add", "-b", branch, str(path), start])
    logger.info("Created worktree {} for {}", path, branch)
    return WorktreeResult(worktree_path=str(path), existed=False)


def remove_worktree(project_dir: PathLike, path: PathLike) -> bool:
    """Remove a worktree directory and its registration.

    Returns:
        True when something was removed, False when neither the directory nor
        a registration existed.
    """
    target = Path(path)
    if not target.exists():
        if _registered(project_dir, target) is None:
            return False
        prune_worktrees(project_dir)
        return True
    _run_git(project_dir, ["worktree", "remove", "--force", str(target)])
    logger.info("Removed worktree {}", target)
    return True
