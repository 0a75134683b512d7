STATE_DIR_NAME = ".kanban_runner"
STATE_DIR_ENV = "KANBAN_RUNNER_HOME"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
PROJECTS_FILE = "projects.yaml"
WINDOWS_LOCK_BYTES = 4096

BRANCH_PREFIX = "kanban"
BRANCH_SLUG_MAX_CHARS = 50
WORKTREES_DIR_NAME = ".worktrees"
AUTO_STASH_MESSAGE = "kanban-auto-stash"
FALLBACK_DEFAULT_BRANCHES = ("main", "master")

DEFAULT_GIT_TIMEOUT_SECONDS = 60

# The board itself serves on 3030; previews probe upward from the next port.
MAIN_APP_PORT = 3030
DEFAULT_PREVIEW_BASE_PORT = 3031
DEFAULT_PREVIEW_PORT_WINDOW = 100
DEFAULT_PREVIEW_HOST = "127.0.0.1"
DEFAULT_PREVIEW_GRACE_SECONDS = 1.0
DEFAULT_PREVIEW_KILL_AFTER_SECONDS = 0.5
DEFAULT_PREVIEW_COMMAND = ["npm", "run", "dev", "--", "-p", "{port}"]
DEFAULT_SHARED_DATA_PATH = "data/kanban.db"

ERROR_TYPE_NOT_A_GIT_REPOSITORY = "not_a_git_repository"
ERROR_TYPE_UNCOMMITTED_CHANGES = "uncommitted_changes"
ERROR_TYPE_NO_COMMITS_TO_MERGE = "no_commits_to_merge"
ERROR_TYPE_REBASE_CONFLICT = "rebase_conflict"
ERROR_TYPE_BRANCH_NOT_FOUND = "branch_not_found"
ERROR_TYPE_STASH_RESTORE_FAILED = "stash_restore_failed"
ERROR_TYPE_PORT_EXHAUSTED = "port_exhausted"
ERROR_TYPE_PROCESS_SPAWN_FAILED = "process_spawn_failed"
ERROR_TYPE_PROCESS_NOT_RUNNING = "process_not_running"
ERROR_TYPE_GIT_COMMAND = "git_command_failed"
ERROR_TYPE_GIT_NOT_INSTALLED = "git_not_installed"
ERROR_TYPE_TASK_STATE = "task_state"

# Resolution steps surfaced to the user when a merge stops early
BLOCKING_RESOLUTION_STEPS = {
    ERROR_TYPE_UNCOMMITTED_CHANGES: [
        "Commit or discard the pending changes in the reported checkout.",
        "Re-run the merge, or pass commit_first to auto-commit the main checkout.",
    ],
    ERROR_TYPE_NO_COMMITS_TO_MERGE: [
        "Commit the task's work inside its worktree before merging.",
    ],
    ERROR_TYPE_REBASE_CONFLICT: [
        "Open the task worktree and run the rebase onto the default branch.",
        "Resolve the conflict markers, `git add` the files and `git rebase --continue`.",
        "Re-run the merge once the rebase completes.",
    ],
    ERROR_TYPE_BRANCH_NOT_FOUND: [
        "Start the task again to recreate its branch, or roll it back.",
    ],
}
