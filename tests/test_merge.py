"""Tests for the squash-merge protocol and rollback."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from conftest import commit_file, git
from kanban_runner.errors import GitCommandError
from kanban_runner.git_utils import branch_exists, create_branch, current_branch
from kanban_runner.merge import merge_task, rollback_task, squash_commit_message
from kanban_runner.models import (
    BranchStatus,
    MergeState,
    Task,
    TaskStatus,
    WorktreeStatus,
)
from kanban_runner.worktrees import create_worktree

BRANCH = "kanban/KAN-1-add-greeting"


def _task_with_worktree(repo: Path, **fields) -> Task:
    created = create_worktree(repo, BRANCH)
    task = Task(
        title="Add greeting",
        status=TaskStatus.TEST,
        task_number=1,
        solution_summary="<p>print hello</p>",
        test_scenarios="<p>prints hello</p>",
        git_branch_name=BRANCH,
        git_branch_status=BranchStatus.ACTIVE,
        git_worktree_path=created.worktree_path,
        git_worktree_status=WorktreeStatus.ACTIVE,
        **fields,
    )
    return task


def _worktree(task: Task) -> Path:
    assert task.git_worktree_path
    return Path(task.git_worktree_path)


def test_squash_commit_message_format() -> None:
    assert squash_commit_message("KAN-1", "Add greeting", BRANCH) == (
        "feat(KAN-1): Add greeting\n\nSquash merge from branch: kanban/KAN-1-add-greeting"
    )


def test_merge_happy_path(repo: Path) -> None:
    task = _task_with_worktree(repo, dev_server_pid=None)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    commit_file(_worktree(task), "greeting.txt", "hello world\n", "tweak greeting")
    worktree = _worktree(task)

    result = merge_task(repo, task, display_id="KAN-1")

    assert result.ok, result.error
    assert result.state == MergeState.MERGED
    assert result.warnings == []
    assert (repo / "greeting.txt").read_text() == "hello world\n"
    assert git(repo, "log", "-1", "--format=%s") == "feat(KAN-1): Add greeting"
    assert "Squash merge from branch: kanban/KAN-1-add-greeting" in git(repo, "log", "-1", "--format=%B")
    # squash: exactly one new commit on main
    assert git(repo, "rev-list", "--count", "main") == "2"
    assert result.commit_sha == git(repo, "rev-parse", "main")

    assert not worktree.exists()
    assert not branch_exists(repo, BRANCH)
    assert task.status == TaskStatus.COMPLETED
    assert task.git_branch_status == BranchStatus.MERGED
    assert task.git_worktree_status == WorktreeStatus.REMOVED
    assert task.rebase_conflict is False
    assert task.conflict_files == []


def test_merge_cleanup_runs_after_squash_commit(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")

    result = merge_task(repo, task)

    ok_steps = [entry["step"] for entry in result.steps if entry["ok"]]
    assert ok_steps == [
        "preconditions",
        "worktree_clean",
        "commits_ahead",
        "main_clean",
        "rebase",
        "squash_merge",
        "remove_worktree",
        "delete_branch",
        "prune",
        "complete",
    ]
    squash_at = result.step_time("squash_merge")
    assert squash_at is not None
    assert squash_at <= result.step_time("remove_worktree")
    assert squash_at <= result.step_time("delete_branch")
    assert result.step_time("rebase") <= squash_at


def test_merge_conflict_leaves_default_branch_untouched(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "README.md", "# branch version\n", "branch edit")
    commit_file(repo, "README.md", "# main version\n", "main edit")
    main_head = git(repo, "rev-parse", "main")

    result = merge_task(repo, task)

    assert not result.ok
    assert result.state == MergeState.CONFLICT
    assert result.error_type == "rebase_conflict"
    assert result.conflict_files == ["README.md"]
    assert task.rebase_conflict is True
    assert task.conflict_files == ["README.md"]
    assert task.status == TaskStatus.TEST

    assert git(repo, "rev-parse", "main") == main_head
    assert branch_exists(repo, BRANCH)
    worktree = _worktree(task)
    assert worktree.is_dir()
    # rebase was aborted, the worktree is usable again
    assert git(worktree, "status", "--porcelain") == ""
    assert git(worktree, "branch", "--show-current") == BRANCH


def test_merge_after_resolving_conflict_clears_flags(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "README.md", "# branch version\n", "branch edit")
    commit_file(repo, "README.md", "# main version\n", "main edit")
    assert merge_task(repo, task).state == MergeState.CONFLICT

    worktree = _worktree(task)
    git(worktree, "reset", "--hard", "main")
    commit_file(worktree, "README.md", "# resolved\n", "resolve")

    result = merge_task(repo, task)
    assert result.ok, result.error
    assert task.rebase_conflict is False
    assert task.conflict_files == []
    assert (repo / "README.md").read_text() == "# resolved\n"


def test_merge_refuses_dirty_worktree(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    (_worktree(task) / "greeting.txt").write_text("unsaved\n")
    main_head = git(repo, "rev-parse", "main")

    result = merge_task(repo, task)

    assert not result.ok
    assert result.error_type == "uncommitted_changes"
    assert result.location == "worktree"
    assert git(repo, "rev-parse", "main") == main_head
    assert task.status == TaskStatus.TEST


def test_merge_refuses_branch_without_commits(repo: Path) -> None:
    task = _task_with_worktree(repo)
    result = merge_task(repo, task)
    assert not result.ok
    assert result.error_type == "no_commits_to_merge"
    assert branch_exists(repo, BRANCH)


def test_merge_refuses_branch_already_upstream_after_rebase(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "notes.txt", "same\n", "add notes")
    commit_file(repo, "notes.txt", "same\n", "add notes on main")
    main_head = git(repo, "rev-parse", "main")

    result = merge_task(repo, task)

    assert not result.ok
    assert result.state == MergeState.ACTIVE
    assert result.error_type == "no_commits_to_merge"
    assert git(repo, "rev-parse", "main") == main_head
    assert branch_exists(repo, BRANCH)
    assert task.status == TaskStatus.TEST


def test_merge_refuses_dirty_main_checkout(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    (repo / "README.md").write_text("# pending main edit\n")

    result = merge_task(repo, task)

    assert not result.ok
    assert result.error_type == "uncommitted_changes"
    assert result.location == "main"
    assert (repo / "README.md").read_text() == "# pending main edit\n"


def test_merge_commit_first_saves_main_changes(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    (repo / "README.md").write_text("# pending main edit\n")

    result = merge_task(repo, task, commit_first=True)

    assert result.ok, result.error
    assert any("Auto-committed" in warning for warning in result.warnings)
    assert (repo / "README.md").read_text() == "# pending main edit\n"
    assert (repo / "greeting.txt").exists()


def test_merge_recreates_missing_worktree(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    shutil.rmtree(_worktree(task))

    result = merge_task(repo, task)

    assert result.ok, result.error
    assert any("recreated" in warning for warning in result.warnings)
    assert (repo / "greeting.txt").exists()


def test_merge_reports_missing_branch(repo: Path) -> None:
    task = Task(title="ghost", status=TaskStatus.TEST, git_branch_name="kanban/none")
    result = merge_task(repo, task)
    assert not result.ok
    assert result.error_type == "branch_not_found"


def test_merge_reports_non_repository(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    result = merge_task(plain, Task(title="x", git_branch_name=BRANCH))
    assert result.error_type == "not_a_git_repository"


def test_rollback_deletes_branch_and_worktree(repo: Path) -> None:
    task = _task_with_worktree(repo, dev_server_pid=4242, dev_server_port=3031)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")
    worktree = _worktree(task)
    main_head = git(repo, "rev-parse", "main")

    result = rollback_task(repo, task)

    assert result.ok
    assert result.branch_deleted is True
    assert result.worktree_removed is True
    assert not branch_exists(repo, BRANCH)
    assert not worktree.exists()
    assert git(repo, "rev-parse", "main") == main_head
    assert current_branch(repo) == "main"

    assert task.status == TaskStatus.BUGS
    assert task.test_scenarios == ""
    assert task.solution_summary == "<p>print hello</p>"
    assert task.git_branch_status == BranchStatus.ROLLED_BACK
    assert task.git_worktree_status == WorktreeStatus.REMOVED
    assert task.dev_server_pid is None
    assert task.dev_server_port is None


def test_rollback_can_preserve_branch(repo: Path) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")

    result = rollback_task(repo, task, delete_branch=False)

    assert result.ok
    assert result.branch_deleted is False
    assert branch_exists(repo, BRANCH)
    assert _worktree(task).is_dir()
    assert task.git_branch_status == BranchStatus.ROLLED_BACK
    assert task.git_worktree_status == WorktreeStatus.ACTIVE
    assert task.status == TaskStatus.BUGS


def test_rollback_from_in_place_branch(repo: Path) -> None:
    create_branch(repo, BRANCH)
    commit_file(repo, "greeting.txt", "hello\n", "add greeting")
    task = Task(title="in place", status=TaskStatus.TEST, git_branch_name=BRANCH)

    result = rollback_task(repo, task)

    assert result.ok
    assert current_branch(repo) == "main"
    assert not branch_exists(repo, BRANCH)
    assert not (repo / "greeting.txt").exists()


@pytest.mark.parametrize("delete_branch", [True, False])
def test_rollback_without_branch(repo: Path, delete_branch: bool) -> None:
    task = Task(title="no branch", status=TaskStatus.TEST, test_scenarios="<p>t</p>")
    result = rollback_task(repo, task, delete_branch=delete_branch)
    assert result.ok
    assert task.status == TaskStatus.BUGS
    assert task.git_branch_status is None


def test_merge_completes_when_branch_delete_fails(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")

    def refuse_delete(*args, **kwargs):
        raise GitCommandError(["git", "branch", "-D", BRANCH], 1, "branch is locked")

    monkeypatch.setattr("kanban_runner.merge._git_delete_branch", refuse_delete)

    result = merge_task(repo, task)

    assert result.ok
    assert result.state == MergeState.MERGED
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith(f"Failed to delete branch {BRANCH}")
    assert (repo / "greeting.txt").read_text() == "hello\n"
    assert task.status == TaskStatus.COMPLETED
    assert task.git_branch_status == BranchStatus.MERGED
    failed = [entry["step"] for entry in result.steps if not entry["ok"]]
    assert failed == ["delete_branch"]


def test_merge_completes_when_worktree_removal_fails(repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    task = _task_with_worktree(repo)
    commit_file(_worktree(task), "greeting.txt", "hello\n", "add greeting")

    def refuse_remove(*args, **kwargs):
        raise GitCommandError(["git", "worktree", "remove"], 128, "worktree is locked")

    monkeypatch.setattr("kanban_runner.merge.remove_worktree", refuse_remove)

    result = merge_task(repo, task)

    assert result.ok
    assert result.state == MergeState.MERGED
    assert any(w.startswith("Failed to remove worktree") for w in result.warnings)
    assert git(repo, "log", "-1", "--format=%s") == "feat(KAN-1): Add greeting"
    assert task.status == TaskStatus.COMPLETED
    assert "remove_worktree" in [entry["step"] for entry in result.steps if not entry["ok"]]
