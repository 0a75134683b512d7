"""Finalize or abandon a task branch: conflict-aware squash merge and rollback.

``merge_task`` runs an ordered protocol. Each step short-circuits on failure
without touching anything later steps would change:

1. refuse when the task worktree has uncommitted changes;
2. refuse when the branch has no commits ahead of the default branch;
3. refuse (or auto-commit) when the main checkout is dirty;
4. rebase the branch inside its worktree to surface conflicts, then refuse
   again if the rebase dropped every commit as already upstream;
5. squash-merge into the default branch from the main checkout;
6. remove the worktree, 7. force-delete the branch, 8. prune metadata;
9. mark the task completed.

Steps 6-8 run only after the squash commit exists and their failures are
reported as warnings. Precondition failures come back as ``MergeResult``
values rather than exceptions so the caller can prompt the user.

Neither function takes a lock. Callers must serialize merge, rollback and
branch creation per repository.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import WORKTREES_DIR_NAME
from .errors import (
    BranchNotFound,
    GitCommandError,
    KanbanRunnerError,
    NoCommitsToMerge,
    NotAGitRepository,
    RebaseConflict,
    UncommittedChanges,
)
from .git_utils import (
    PathLike,
    _run_git,
    branch_exists,
    checkout,
    commit_all,
    commits_ahead,
    conflicted_files,
    current_branch,
    default_branch,
    delete_branch as _git_delete_branch,
    has_changes,
    head_sha,
    is_git_repo,
)
from .models import (
    BranchStatus,
    MergeResult,
    MergeState,
    RollbackResult,
    Task,
    TaskStatus,
    WorktreeStatus,
)
from .worktrees import create_worktree, prune_worktrees, remove_worktree


def squash_commit_message(display_id: str, title: str, branch: str) -> str:
    return f"feat({display_id}): {title}\n\nSquash merge from branch: {branch}"


def _fail(result: MergeResult, step: str, exc: KanbanRunnerError) -> MergeResult:
    result.ok = False
    result.error = str(exc)
    result.error_type = exc.error_type
    if isinstance(exc, UncommittedChanges):
        result.location = exc.location
    result.record(step, ok=False, detail=str(exc))
    logger.warning("Merge stopped at {}: {}", step, exc)
    return result


def _recreate_worktree(repo: Path, task: Task, branch: str, result: MergeResult, worktrees_dir: str) -> Path:
    # The worktree is derived state; bring it back so the rebase can run in it.
    recorded = task.git_worktree_path
    prune_worktrees(repo)
    created = create_worktree(repo, branch, worktrees_dir=worktrees_dir)
    if recorded:
        result.warnings.append(f"Worktree {recorded} was missing; recreated at {created.worktree_path}")
    task.git_worktree_path = created.worktree_path
    task.git_worktree_status = WorktreeStatus.ACTIVE
    return Path(created.worktree_path)


def _rebase_in_worktree(worktree: Path, base: str, branch: str) -> None:
    """Replay ``branch`` onto ``base`` inside the worktree.

    Raises:
        RebaseConflict: With the conflicting paths, after aborting the rebase.
        GitCommandError: For any other rebase failure, after aborting.
    """
    rebase = _run_git(worktree, ["rebase", base], check=False)
    if rebase.returncode == 0:
        return
    files = conflicted_files(worktree)
    abort = _run_git(worktree, ["rebase", "--abort"], check=False)
    if abort.returncode != 0:
        logger.error("git rebase --abort failed in {}: {}", worktree, abort.stderr.strip())
    if files:
        raise RebaseConflict(branch, files)
    raise GitCommandError(["git", "rebase", base], rebase.returncode, rebase.stderr, rebase.stdout)


def _squash_merge(repo: Path, branch: str, message: str) -> Optional[str]:
    merge = _run_git(repo, ["merge", "--squash", branch], check=False)
    if merge.returncode != 0:
        _run_git(repo, ["reset", "--merge"], check=False)
        raise GitCommandError(["git", "merge", "--squash", branch], merge.returncode, merge.stderr, merge.stdout)
    try:
        _run_git(repo, ["commit", "-m", message])
    except GitCommandError:
        _run_git(repo, ["reset", "--merge"], check=False)
        raise
    return head_sha(repo)


def merge_task(
    repo_path: PathLike,
    task: Task,
    *,
    commit_first: bool = False,
    display_id: Optional[str] = None,
    worktrees_dir: str = WORKTREES_DIR_NAME,
) -> MergeResult:
    """Squash-merge the task's branch into the default branch.

    Args:
        repo_path: Main checkout of the project repository.
        task: Task to merge; its git, conflict and dev-server fields are
            updated in place and must be persisted by the caller.
        commit_first: Auto-commit pending changes in the main checkout
            instead of refusing.
        display_id: Identifier used in the squash commit subject.
        worktrees_dir: Worktree root used if the task worktree must be recreated.

    Returns:
        A ``MergeResult``. ``state`` is MERGED on success, CONFLICT when the
        rebase stopped on conflicts, ACTIVE for any other early stop.
    """
    repo = Path(repo_path).resolve()
    result = MergeResult(ok=False)
    branch = task.git_branch_name or ""

    if not is_git_repo(repo):
        return _fail(result, "preconditions", NotAGitRepository(repo))
    if not branch or not branch_exists(repo, branch):
        return _fail(result, "preconditions", BranchNotFound(branch or None))

    try:
        base = default_branch(repo)
        worktree: Optional[Path] = None
        if task.git_worktree_path and Path(task.git_worktree_path).exists():
            worktree = Path(task.git_worktree_path)
        result.record("preconditions", detail=f"{branch} -> {base}")

        if worktree is not None and has_changes(worktree):
            return _fail(result, "worktree_clean", UncommittedChanges("worktree", worktree))
        result.record("worktree_clean")

        if commits_ahead(repo, base, branch) == 0:
            return _fail(result, "commits_ahead", NoCommitsToMerge(branch, base))
        result.record("commits_ahead")

        if has_changes(repo):
            if not commit_first:
                return _fail(result, "main_clean", UncommittedChanges("main", repo))
            sha = commit_all(repo, f"chore: save work before merging {branch}")
            result.warnings.append(f"Auto-committed pending changes in the main checkout ({sha})")
            logger.info("Auto-committed main checkout before merging {}: {}", branch, sha)
        if current_branch(repo) != base:
            checkout(repo, base)
        result.record("main_clean")

        if worktree is None:
            worktree = _recreate_worktree(repo, task, branch, result, worktrees_dir)
        base_head = head_sha(repo, base)
        try:
            _rebase_in_worktree(worktree, base, branch)
        except RebaseConflict as exc:
            task.rebase_conflict = True
            task.conflict_files = list(exc.files)
            result.state = MergeState.CONFLICT
            result.conflict_files = list(exc.files)
            return _fail(result, "rebase", exc)
        task.clear_conflict()
        result.record("rebase", detail=f"onto {base} at {base_head}")

        if commits_ahead(repo, base, branch) == 0:
            return _fail(result, "commits_ahead", NoCommitsToMerge(branch, base))

        message = squash_commit_message(display_id or task.display_id(), task.title, branch)
        result.commit_sha = _squash_merge(repo, branch, message)
        result.record("squash_merge", detail=result.commit_sha)
    except KanbanRunnerError as exc:
        return _fail(result, "git", exc)

    logger.info("Squash-merged {} into {} as {}", branch, base, result.commit_sha)
    result.ok = True
    result.state = MergeState.MERGED

    try:
        remove_worktree(repo, worktree)
        result.record("remove_worktree")
    except GitCommandError as exc:
        result.warnings.append(f"Failed to remove worktree {worktree}: {exc}")
        result.record("remove_worktree", ok=False, detail=str(exc))

    try:
        _git_delete_branch(repo, branch, force=True)
        result.record("delete_branch")
    except GitCommandError as exc:
        result.warnings.append(f"Failed to delete branch {branch}: {exc}")
        result.record("delete_branch", ok=False, detail=str(exc))

    try:
        prune_worktrees(repo)
        result.record("prune")
    except GitCommandError as exc:
        result.warnings.append(f"Failed to prune worktrees: {exc}")
        result.record("prune", ok=False, detail=str(exc))

    for warning in result.warnings:
        logger.warning("Merge cleanup for {}: {}", branch, warning)

    task.status = TaskStatus.COMPLETED
    task.git_branch_status = BranchStatus.MERGED
    task.git_worktree_status = WorktreeStatus.REMOVED
    task.clear_conflict()
    task.clear_dev_server()
    result.record("complete")
    return result


def rollback_task(repo_path: PathLike, task: Task, *, delete_branch: bool = True) -> RollbackResult:
    """Abandon the task's branch and send the task back to ``bugs``.

    No stash is taken: rollback is the explicit abandon path. The main
    checkout is switched to the default branch. With ``delete_branch``
    the task worktree is removed (a checked-out branch cannot be deleted) and
    the branch force-deleted; otherwise both are left untouched. Cleanup
    failures become warnings.

    The task's test scenarios are cleared: a rollback means the validated
    tests were wrong and must be rewritten.
    """
    repo = Path(repo_path).resolve()
    result = RollbackResult(ok=False)
    branch = task.git_branch_name

    if not is_git_repo(repo):
        exc = NotAGitRepository(repo)
        result.error, result.error_type = str(exc), exc.error_type
        return result

    try:
        base = default_branch(repo)
        if current_branch(repo) != base:
            checkout(repo, base)
    except GitCommandError as exc:
        result.error, result.error_type = str(exc), exc.error_type
        logger.warning("Rollback of {} could not check out the default branch: {}", branch, exc)
        return result

    if delete_branch and branch:
        if task.git_worktree_path:
            try:
                result.worktree_removed = remove_worktree(repo, task.git_worktree_path)
            except GitCommandError as exc:
                result.warnings.append(f"Failed to remove worktree {task.git_worktree_path}: {exc}")
        if branch_exists(repo, branch):
            try:
                _git_delete_branch(repo, branch, force=True)
                result.branch_deleted = True
            except GitCommandError as exc:
                result.warnings.append(f"Failed to delete branch {branch}: {exc}")
        try:
            prune_worktrees(repo)
        except GitCommandError as exc:
            result.warnings.append(f"Failed to prune worktrees: {exc}")

    for warning in result.warnings:
        logger.warning("Rollback cleanup for {}: {}", branch, warning)

    result.ok = True
    task.status = TaskStatus.BUGS
    task.test_scenarios = ""
    if branch:
        task.git_branch_status = BranchStatus.ROLLED_BACK
    if result.worktree_removed:
        task.git_worktree_status = WorktreeStatus.REMOVED
    task.clear_conflict()
    task.clear_dev_server()
    logger.info(
        "Rolled back {} ({})",
        branch,
        "branch deleted" if result.branch_deleted else "branch preserved",
    )
    return result
