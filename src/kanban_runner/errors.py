"""Define the error taxonomy shared by the git, merge and preview layers.

Every error carries a stable ``error_type`` code. The merge/rollback protocol
turns these into structured results; the preview supervisor and the
orchestrator raise them.
"""

from __future__ import annotations

from typing import Optional, Sequence

from .constants import (
    ERROR_TYPE_BRANCH_NOT_FOUND,
    ERROR_TYPE_GIT_COMMAND,
    ERROR_TYPE_GIT_NOT_INSTALLED,
    ERROR_TYPE_NO_COMMITS_TO_MERGE,
    ERROR_TYPE_NOT_A_GIT_REPOSITORY,
    ERROR_TYPE_PORT_EXHAUSTED,
    ERROR_TYPE_PROCESS_NOT_RUNNING,
    ERROR_TYPE_PROCESS_SPAWN_FAILED,
    ERROR_TYPE_REBASE_CONFLICT,
    ERROR_TYPE_STASH_RESTORE_FAILED,
    ERROR_TYPE_TASK_STATE,
    ERROR_TYPE_UNCOMMITTED_CHANGES,
)


class KanbanRunnerError(Exception):
    """Base class for all runner errors."""

    error_type = "error"

    def to_dict(self) -> dict[str, object]:
        return {"error_type": self.error_type, "error": str(self)}


class GitNotInstalled(KanbanRunnerError):
    error_type = ERROR_TYPE_GIT_NOT_INSTALLED


class GitCommandError(KanbanRunnerError):
    """A git subprocess exited non-zero or timed out.

    ``stderr`` is kept verbatim so the repository state stays diagnosable.
    """

    error_type = ERROR_TYPE_GIT_COMMAND

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        stdout: str = "",
        *,
        timed_out: bool = False,
    ) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        self.stdout = stdout or ""
        self.timed_out = timed_out
        joined = " ".join(self.command)
        if timed_out:
            message = f"`{joined}` timed out"
        else:
            message = f"`{joined}` exited with {returncode}"
        detail = self.stderr.strip() or self.stdout.strip()
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data.update(
            {
                "command": self.command,
                "returncode": self.returncode,
                "stderr": self.stderr,
                "timed_out": self.timed_out,
            }
        )
        return data


class NotAGitRepository(KanbanRunnerError):
    error_type = ERROR_TYPE_NOT_A_GIT_REPOSITORY

    def __init__(self, path: object) -> None:
        self.path = str(path)
        super().__init__(f"Not a git repository: {self.path}")


class UncommittedChanges(KanbanRunnerError):
    error_type = ERROR_TYPE_UNCOMMITTED_CHANGES

    def __init__(self, location: str, path: object, message: Optional[str] = None) -> None:
        self.location = location
        self.path = str(path)
        if message is None:
            if location == "worktree":
                message = (
                    f"The task worktree has uncommitted changes ({self.path}). "
                    "Commit them before merging."
                )
            else:
                message = (
                    f"The main checkout has uncommitted changes ({self.path}). "
                    "Commit or stash them, or retry with commit_first enabled."
                )
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["location"] = self.location
        return data


class NoCommitsToMerge(KanbanRunnerError):
    error_type = ERROR_TYPE_NO_COMMITS_TO_MERGE

    def __init__(self, branch: str, base: str) -> None:
        self.branch = branch
        self.base = base
        super().__init__(f"Branch {branch} has no commits ahead of {base}; nothing to merge")


class RebaseConflict(KanbanRunnerError):
    error_type = ERROR_TYPE_REBASE_CONFLICT

    def __init__(self, branch: str, files: Sequence[str]) -> None:
        self.branch = branch
        self.files = list(files)
        listed = ", ".join(self.files) or "unknown files"
        super().__init__(f"Rebase of {branch} stopped on conflicts in: {listed}")

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["files"] = list(self.files)
        return data


class BranchNotFound(KanbanRunnerError):
    error_type = ERROR_TYPE_BRANCH_NOT_FOUND

    def __init__(self, branch: Optional[str]) -> None:
        self.branch = branch
        super().__init__(f"Branch not found: {branch}" if branch else "Task has no git branch")


class StashRestoreFailed(KanbanRunnerError):
    error_type = ERROR_TYPE_STASH_RESTORE_FAILED

    def __init__(self, branch: str, detail: str = "") -> None:
        self.branch = branch
        self.detail = detail
        super().__init__(
            f"Branch {branch} created but stashed changes could not be applied. "
            "Run 'git stash pop' manually."
        )


class PortExhausted(KanbanRunnerError):
    error_type = ERROR_TYPE_PORT_EXHAUSTED

    def __init__(self, base: int, window: int) -> None:
        self.base = base
        self.window = window
        super().__init__(f"No available ports in range {base}-{base + window - 1}")


class ProcessSpawnFailed(KanbanRunnerError):
    error_type = ERROR_TYPE_PROCESS_SPAWN_FAILED


class ProcessNotRunning(KanbanRunnerError):
    error_type = ERROR_TYPE_PROCESS_NOT_RUNNING

    def __init__(self, pid: Optional[int]) -> None:
        self.pid = pid
        super().__init__(f"No running process with pid {pid}" if pid else "No preview process recorded")


class TaskStateError(KanbanRunnerError):
    """The caller asked for an operation the task's current state does not allow."""

    error_type = ERROR_TYPE_TASK_STATE

    def __init__(self, message: str, *, not_found: bool = False) -> None:
        self.not_found = not_found
        super().__init__(message)
