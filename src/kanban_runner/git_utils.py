"""Provide the git helpers the workspace manager and merge protocol are built on.

All git access goes through ``_run_git`` so every invocation carries a timeout,
never waits on an interactive prompt, and reports failures with git's stderr
verbatim.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Union

from loguru import logger

from .constants import (
    AUTO_STASH_MESSAGE,
    BRANCH_PREFIX,
    BRANCH_SLUG_MAX_CHARS,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    FALLBACK_DEFAULT_BRANCHES,
)
from .errors import GitCommandError, GitNotInstalled, StashRestoreFailed
from .models import BranchResult

PathLike = Union[str, Path]

_git_timeout: float = DEFAULT_GIT_TIMEOUT_SECONDS
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def configure_git_timeout(seconds: Optional[float]) -> None:
    """Set the timeout applied to every git subprocess."""
    global _git_timeout
    _git_timeout = float(seconds) if seconds and seconds > 0 else DEFAULT_GIT_TIMEOUT_SECONDS


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    # rebase/commit must never open an editor
    env["GIT_EDITOR"] = "true"
    env.setdefault("GIT_MERGE_AUTOEDIT", "no")
    return env


def _run_git(
    project_dir: PathLike,
    args: Sequence[str],
    *,
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        result = subprocess.run(
            command,
            cwd=str(project_dir),
            capture_output=True,
            text=True,
            check=False,
            env=_git_env(),
            stdin=subprocess.DEVNULL,
            timeout=timeout or _git_timeout,
        )
    except subprocess.TimeoutExpired as exc:
        stderr = exc.stderr.decode(errors="replace") if isinstance(exc.stderr, bytes) else (exc.stderr or "")
        raise GitCommandError(command, None, stderr, timed_out=True) from exc
    if check and result.returncode != 0:
        raise GitCommandError(command, result.returncode, result.stderr, result.stdout)
    return result


def ensure_git_available() -> str:
    """Return the git executable path or raise ``GitNotInstalled``."""
    path = shutil.which("git")
    if not path:
        raise GitNotInstalled("git executable not found on PATH")
    return path


def is_git_repo(project_dir: PathLike) -> bool:
    path = Path(project_dir)
    if not path.is_dir():
        return False
    try:
        result = _run_git(path, ["rev-parse", "--is-inside-work-tree"], check=False)
    except GitCommandError:
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def slugify(text: str) -> str:
    """Turn a task title into a branch-safe slug capped at 50 characters."""
    slug = _SLUG_RE.sub("-", (text or "").lower()).strip("-")
    return slug[:BRANCH_SLUG_MAX_CHARS]


def generate_branch_name(id_prefix: str, task_number: Optional[int], title: str) -> str:
    """Build ``kanban/<idPrefix>-<taskNumber>-<slug>`` for a task."""
    number = task_number if task_number is not None else "X"
    name = f"{BRANCH_PREFIX}/{id_prefix}-{number}"
    slug = slugify(title)
    return f"{name}-{slug}" if slug else name


def current_branch(project_dir: PathLike) -> Optional[str]:
    result = _run_git(project_dir, ["branch", "--show-current"], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def head_sha(project_dir: PathLike, ref: str = "HEAD") -> Optional[str]:
    result = _run_git(project_dir, ["rev-parse", "--verify", "--quiet", ref], check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def branch_exists(project_dir: PathLike, branch: str) -> bool:
    if not branch:
        return False
    result = _run_git(project_dir, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
    return result.returncode == 0


def default_branch(project_dir: PathLike) -> str:
    """Resolve the integration branch: origin's HEAD, else local main, else master."""
    result = _run_git(project_dir, ["symbolic-ref", "--quiet", "refs/remotes/origin/HEAD"], check=False)
    ref = result.stdout.strip()
    if result.returncode == 0 and ref:
        return ref.replace("refs/remotes/origin/", "", 1)
    for candidate in FALLBACK_DEFAULT_BRANCHES[:-1]:
        if branch_exists(project_dir, candidate):
            return candidate
    return FALLBACK_DEFAULT_BRANCHES[-1]


def status_porcelain(project_dir: PathLike) -> str:
    return _run_git(project_dir, ["status", "--porcelain"]).stdout.strip()


def has_changes(project_dir: PathLike) -> bool:
    return bool(status_porcelain(project_dir))


def commits_ahead(project_dir: PathLike, base: str, branch: str) -> int:
    result = _run_git(project_dir, ["rev-list", "--count", f"{base}..{branch}"])
    try:
        return int(result.stdout.strip() or 0)
    except ValueError:
        return 0


def branch_status(project_dir: PathLike, branch: str) -> dict[str, object]:
    """Report how far ``branch`` has diverged from the default branch."""
    if not branch_exists(project_dir, branch):
        return {"exists": False, "ahead": 0, "behind": 0, "base": None}
    base = default_branch(project_dir)
    result = _run_git(
        project_dir,
        ["rev-list", "--left-right", "--count", f"{base}...{branch}"],
        check=False,
    )
    behind, ahead = 0, 0
    if result.returncode == 0:
        parts = result.stdout.split()
        if len(parts) == 2:
            behind, ahead = int(parts[0]), int(parts[1])
    return {"exists": True, "ahead": ahead, "behind": behind, "base": base}


def conflicted_files(project_dir: PathLike) -> list[str]:
    result = _run_git(project_dir, ["diff", "--name-only", "--diff-filter=U"], check=False)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def checkout(project_dir: PathLike, branch: str) -> None:
    _run_git(project_dir, ["checkout", branch])


def create_branch_ref(project_dir: PathLike, branch: str, base: Optional[str] = None) -> None:
    """Create ``branch`` at ``base`` without touching the current checkout."""
    _run_git(project_dir, ["branch", branch, base or default_branch(project_dir)])


def delete_branch(project_dir: PathLike, branch: str, *, force: bool = True) -> None:
    _run_git(project_dir, ["branch", "-D" if force else "-d", branch])


def commit_all(project_dir: PathLike, message: str) -> Optional[str]:
    _run_git(project_dir, ["add", "-A", "--", "."])
    _run_git(project_dir, ["commit", "-m", message])
    return head_sha(project_dir)


def create_branch(project_dir: PathLike, branch: str) -> BranchResult:
    """Create and check out ``branch`` from the default branch, carrying local edits along.

    A dirty tree is stashed first and popped onto the new branch. When the pop
    conflicts the branch is kept and the edits stay in the stash; the result
    then reports ``stash_applied=False`` with a warning instead of failing.

    Raises:
        GitCommandError: If checking out the default branch or creating the
            branch fails. The stash is restored before the error propagates.
    """
    stashed = False
    if has_changes(project_dir):
        logger.info("Stashing uncommitted changes before creating {}", branch)
        _run_git(project_dir, ["stash", "push", "--include-untracked", "-m", f"{AUTO_STASH_MESSAGE}:{branch}"])
        stashed = True

    try:
        base = default_branch(project_dir)
        _run_git(project_dir, ["checkout", base])
        _run_git(project_dir, ["checkout", "-b", branch])
    except GitCommandError:
        if stashed:
            restore = _run_git(project_dir, ["stash", "pop"], check=False)
            if restore.returncode != 0:
                logger.error("Could not restore stash after failing to create {}: {}", branch, restore.stderr.strip())
        raise

    if not stashed:
        return BranchResult(branch_name=branch, created=True)

    logger.info("Restoring stashed changes onto {}", branch)
    pop = _run_git(project_dir, ["stash", "pop"], check=False)
    if pop.returncode != 0:
        warning = StashRestoreFailed(branch, pop.stderr.strip())
        logger.warning("{} ({})", warning, pop.stderr.strip())
        return BranchResult(branch_name=branch, created=True, stash_applied=False, warning=str(warning))
    return BranchResult(branch_name=branch, created=True, stash_applied=True)


def _exclude_file(project_dir: PathLike) -> Path:
    result = _run_git(project_dir, ["rev-parse", "--git-path", "info/exclude"])
    path = Path(result.stdout.strip())
    if not path.is_absolute():
        path = Path(project_dir) / path
    return path


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _append_ignore_entry(path: Path, ignore_entry: str) -> None:
    contents = ""
    if path.exists():
        contents = path.read_text()
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += ignore_entry + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents)


def ensure_locally_excluded(project_dir: PathLike, ignore_entry: str) -> None:
    """Add ``ignore_entry`` to the repository's local exclude file.

    The local exclude file is not tracked, so this never dirties the checkout.
    """
    try:
        path = _exclude_file(project_dir)
        if not _ignore_file_has_entry(path, ignore_entry):
            _append_ignore_entry(path, ignore_entry)
    except (OSError, GitCommandError) as exc:
        logger.warning("Unable to update local git exclude file: {}", exc)
