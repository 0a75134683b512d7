"""Drive task git workspaces and previews from durable board state.

``TaskOrchestrator`` is the only caller of the merge protocol and the preview
supervisor that writes results back to the store. Git-mutating chains run
under the per-repository lock from ``git_coordinator``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from loguru import logger

from . import dev_server
from .config import (
    get_git_config,
    get_merge_config,
    get_preview_config,
    get_rollback_config,
    load_runner_config,
)
from .constants import BLOCKING_RESOLUTION_STEPS, ERROR_TYPE_REBASE_CONFLICT
from .errors import NotAGitRepository, ProcessNotRunning, TaskStateError
from .git_coordinator import GitCoordinator, get_git_coordinator
from .git_utils import (
    branch_exists,
    branch_status,
    checkout as git_checkout,
    configure_git_timeout,
    create_branch,
    create_branch_ref,
    current_branch,
    default_branch,
    ensure_git_available,
    ensure_locally_excluded,
    generate_branch_name,
    is_git_repo,
)
from .logging_utils import pretty, summarize_result
from .merge import merge_task, rollback_task
from .models import (
    BranchResult,
    BranchStatus,
    MergeResult,
    Phase,
    PreviewResult,
    Project,
    RollbackResult,
    StartResult,
    Task,
    TaskStatus,
    WorktreeResult,
    WorktreeStatus,
)
from .phase import detect_phase
from .store import BoardStore
from .worktrees import create_worktree

T = TypeVar("T")

_STARTABLE = {TaskStatus.IDEATION, TaskStatus.BACKLOG, TaskStatus.BUGS}


class TaskOrchestrator:
    """Run start/merge/rollback/preview operations for tasks in a ``BoardStore``."""

    def __init__(
        self,
        store: BoardStore,
        config: Optional[dict[str, Any]] = None,
        *,
        coordinator: Optional[GitCoordinator] = None,
    ) -> None:
        ensure_git_available()
        self.store = store
        self.config = config or {}
        self.git_config = get_git_config(self.config)
        self.preview_config = get_preview_config(self.config)
        self.merge_config = get_merge_config(self.config)
        self.rollback_config = get_rollback_config(self.config)
        self._coordinator = coordinator or get_git_coordinator()
        configure_git_timeout(self.git_config["timeout_seconds"])

    @classmethod
    def from_board_dir(cls, board_dir: Path) -> "TaskOrchestrator":
        config, err = load_runner_config(board_dir)
        if err:
            logger.warning("Ignoring unreadable config: {}", err)
        return cls(BoardStore(board_dir), config)

    # -- lookups ---------------------------------------------------------

    def _task(self, task_id: str) -> Task:
        task = self.store.tasks.get(task_id)
        if task is None:
            raise TaskStateError(f"Task not found: {task_id}", not_found=True)
        return task

    def _project(self, task: Task) -> Project:
        project = self.store.project_for(task)
        if project is None:
            raise TaskStateError(f"Task {task.id} is not attached to a project")
        return project

    def _repo(self, project: Project) -> Path:
        repo = Path(project.folder_path).expanduser().resolve()
        if not is_git_repo(repo):
            raise NotAGitRepository(repo)
        return repo

    def _locked(self, repo: Path, name: str, operation: Callable[[], T]) -> T:
        return self._coordinator.execute_git_operation(repo, operation, operation_name=name)

    def _save(self, task: Task) -> Task:
        return self.store.tasks.upsert(task)

    # -- phase / start ---------------------------------------------------

    def detect_phase(self, task_id: str) -> Phase:
        return detect_phase(self._task(task_id))

    def start_task(self, task_id: str) -> StartResult:
        """Prepare the working directory for the task's current phase.

        Planning needs no git work. Implementation and retest get the task's
        branch and worktree (created on first use) unless the project works
        directly in its main checkout.
        """
        task = self._task(task_id)
        phase = detect_phase(task)
        project = self.store.project_for(task)

        if phase == Phase.PLANNING:
            working_dir = project.folder_path if project else ""
            logger.info("Task {} is in planning; no git workspace needed", task.id)
            return StartResult(phase=phase, working_dir=working_dir)

        if project is None:
            raise TaskStateError(f"Task {task.id} is not attached to a project")

        if task.status in _STARTABLE:
            task.status = TaskStatus.PROGRESS

        if not project.use_worktrees:
            self._save(task)
            return StartResult(phase=phase, working_dir=project.folder_path)

        repo = self._repo(project)

        def _prepare() -> tuple[BranchResult, WorktreeResult]:
            branch = self._ensure_branch(repo, project, task, checkout=False)
            return branch, self._ensure_worktree(repo, branch.branch_name)

        branch, worktree = self._locked(repo, "start_task", _prepare)
        task.git_worktree_path = worktree.worktree_path
        task.git_worktree_status = WorktreeStatus.ACTIVE
        self._save(task)

        warnings = [branch.warning] if branch.warning else []
        logger.info("Task {} ({}) working in {}", task.id, phase.value, worktree.worktree_path)
        return StartResult(
            phase=phase,
            working_dir=worktree.worktree_path,
            branch_name=branch.branch_name,
            worktree_path=worktree.worktree_path,
            created=branch.created or not worktree.existed,
            warnings=warnings,
        )

    # -- branches / worktrees --------------------------------------------

    def _ensure_branch(self, repo: Path, project: Project, task: Task, *, checkout: bool) -> BranchResult:
        name = task.git_branch_name or generate_branch_name(project.id_prefix, task.task_number, task.title)
        if branch_exists(repo, name):
            if checkout and current_branch(repo) != name:
                git_checkout(repo, name)
            result = BranchResult(branch_name=name, created=False)
        elif checkout:
            result = create_branch(repo, name)
        else:
            create_branch_ref(repo, name, default_branch(repo))
            result = BranchResult(branch_name=name, created=True)
        task.git_branch_name = name
        task.git_branch_status = BranchStatus.ACTIVE
        logger.info("Branch {} {} for task {}", name, "created" if result.created else "reused", task.id)
        return result

    def ensure_branch(self, project: Project, task: Task, *, checkout: bool = False) -> BranchResult:
        """Give ``task`` its deterministic branch, creating it if needed.

        With ``checkout`` the branch is checked out in the main checkout using
        the stash-safe path; otherwise only the ref is created for worktree use.
        The caller persists ``task``.
        """
        repo = self._repo(project)
        return self._locked(repo, "ensure_branch", lambda: self._ensure_branch(repo, project, task, checkout=checkout))

    def _ensure_worktree(self, repo: Path, branch: str) -> WorktreeResult:
        return create_worktree(repo, branch, worktrees_dir=self.git_config["worktrees_dir"])

    def ensure_worktree(self, repo_path: Path, branch: str) -> WorktreeResult:
        repo = Path(repo_path).resolve()
        return self._locked(repo, "ensure_worktree", lambda: self._ensure_worktree(repo, branch))

    # -- merge / rollback ------------------------------------------------

    def _require_test_status(self, task: Task, action: str) -> None:
        if task.status != TaskStatus.TEST:
            raise TaskStateError(
                f"Task {task.id} must be in '{TaskStatus.TEST.value}' to {action} (currently '{task.status.value}')"
            )

    def _stop_recorded_preview(self, task: Task) -> None:
        if task.dev_server_pid is not None:
            dev_server.stop_preview(task.dev_server_pid, kill_after=self.preview_config["kill_after_seconds"])
        task.clear_dev_server()

    def merge(self, task_id: str, *, commit_first: Optional[bool] = None) -> MergeResult:
        """Squash-merge a tested task; conflict state is persisted before returning."""
        task = self._task(task_id)
        self._require_test_status(task, "merge")
        if not task.git_branch_name:
            raise TaskStateError(f"Task {task.id} has no git branch to merge")
        project = self._project(task)
        repo = self._repo(project)
        if commit_first is None:
            commit_first = self.merge_config["commit_first"]

        self._stop_recorded_preview(task)
        result = self._locked(
            repo,
            "merge",
            lambda: merge_task(
                repo,
                task,
                commit_first=commit_first,
                display_id=task.display_id(project),
                worktrees_dir=self.git_config["worktrees_dir"],
            ),
        )
        self._save(task)
        logger.info("Merge of {}: {}", task.id, summarize_result(result))
        logger.debug("Merge steps for {}:\n{}", task.id, pretty(result.steps))
        return result

    def rollback(self, task_id: str, *, delete_branch: Optional[bool] = None) -> RollbackResult:
        task = self._task(task_id)
        self._require_test_status(task, "roll back")
        project = self._project(task)
        repo = self._repo(project)
        if delete_branch is None:
            delete_branch = self.rollback_config["delete_branch"]

        self._stop_recorded_preview(task)
        result = self._locked(repo, "rollback", lambda: rollback_task(repo, task, delete_branch=delete_branch))
        if result.ok:
            self._save(task)
        logger.info("Rollback of {}: {}", task.id, summarize_result(result))
        return result

    # -- previews --------------------------------------------------------

    def start_preview(self, task_id: str) -> PreviewResult:
        """Start a preview server in the task's worktree.

        ``{pid, port}`` is persisted only once the process survived the grace
        delay; a failed start leaves both fields empty.

        Raises:
            TaskStateError: If the task has no active worktree or a live preview.
            PortExhausted: If no preview port is free.
            ProcessSpawnFailed: If the server could not be started.
        """
        task = self._task(task_id)
        project = self._project(task)
        worktree = task.git_worktree_path
        if not worktree or task.git_worktree_status != WorktreeStatus.ACTIVE or not Path(worktree).is_dir():
            raise TaskStateError(f"Task {task.id} has no active worktree to preview")

        had_record = task.dev_server_pid is not None
        if dev_server.check_preview_liveness(task):
            raise TaskStateError(
                f"Preview for task {task.id} is already running (pid {task.dev_server_pid}, port {task.dev_server_port})"
            )
        if had_record:
            self._save(task)

        cfg = self.preview_config
        link = dev_server.symlink_database(project.folder_path, worktree, cfg["shared_data_path"])
        if link is not None:
            ensure_locally_excluded(worktree, cfg["shared_data_path"])

        port = dev_server.allocate_preview_port(cfg["base_port"], cfg["port_window"], cfg["host"])
        preview = dev_server.start_preview(
            worktree,
            port,
            command=cfg["command"],
            grace_seconds=cfg["grace_seconds"],
        )
        task.dev_server_pid = preview.pid
        task.dev_server_port = preview.port
        self._save(task)
        return preview

    def stop_preview(self, task_id: str) -> bool:
        """Stop the recorded preview and clear its fields even if the process was already gone.

        Raises:
            ProcessNotRunning: If the task has no preview recorded.
        """
        task = self._task(task_id)
        if task.dev_server_pid is None:
            raise ProcessNotRunning(None)
        stopped = dev_server.stop_preview(task.dev_server_pid, kill_after=self.preview_config["kill_after_seconds"])
        task.clear_dev_server()
        self._save(task)
        return stopped

    def preview_status(self, task_id: str) -> dict[str, Any]:
        task = self._task(task_id)
        had_record = task.dev_server_pid is not None or task.dev_server_port is not None
        running = dev_server.check_preview_liveness(task)
        if had_record and not running:
            self._save(task)
        return {
            "running": running,
            "pid": task.dev_server_pid,
            "port": task.dev_server_port,
            "url": dev_server.preview_url(task.dev_server_port) if running and task.dev_server_port else None,
        }

    # -- reporting -------------------------------------------------------

    def git_status(self, task_id: str) -> dict[str, Any]:
        task = self._task(task_id)
        report: dict[str, Any] = {
            "branch_name": task.git_branch_name,
            "branch_status": task.git_branch_status.value if task.git_branch_status else None,
            "worktree_path": task.git_worktree_path,
            "worktree_status": task.git_worktree_status.value if task.git_worktree_status else None,
            "worktree_exists": bool(task.git_worktree_path and Path(task.git_worktree_path).is_dir()),
            "rebase_conflict": task.rebase_conflict,
            "conflict_files": list(task.conflict_files),
            "exists": False,
            "ahead": 0,
            "behind": 0,
            "base": None,
        }
        project = self.store.project_for(task)
        if project is None or not task.git_branch_name:
            return report
        repo = Path(project.folder_path).expanduser().resolve()
        if not is_git_repo(repo):
            return report
        report.update(branch_status(repo, task.git_branch_name))
        return report

    def conflict_context(self, task_id: str) -> dict[str, Any]:
        """Collect what is needed to resolve a stopped rebase by hand or by an agent."""
        task = self._task(task_id)
        if not task.rebase_conflict:
            raise TaskStateError(f"Task {task.id} has no rebase conflict")
        project = self._project(task)
        repo = Path(project.folder_path).expanduser().resolve()
        base = default_branch(repo) if is_git_repo(repo) else None
        return {
            "task_id": task.id,
            "display_id": task.display_id(project),
            "title": task.title,
            "branch_name": task.git_branch_name,
            "base": base,
            "worktree_path": task.git_worktree_path,
            "conflict_files": list(task.conflict_files),
            "resolution_steps": list(BLOCKING_RESOLUTION_STEPS[ERROR_TYPE_REBASE_CONFLICT]),
        }
