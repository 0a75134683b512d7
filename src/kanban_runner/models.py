"""Define durable task/project state and the structured results of git and preview operations."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .utils import _now_iso


class TaskStatus(str, Enum):
    """Enumerate the kanban columns a task can sit in."""

    IDEATION = "ideation"
    BACKLOG = "backlog"
    BUGS = "bugs"
    PROGRESS = "progress"
    TEST = "test"
    COMPLETED = "completed"


class Phase(str, Enum):
    """Describe the workflow stage inferred from a task's content."""

    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    RETEST = "retest"


class BranchStatus(str, Enum):
    ACTIVE = "active"
    MERGED = "merged"
    ROLLED_BACK = "rolled_back"


class WorktreeStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


class MergeState(str, Enum):
    """Represent where a task's branch sits in the merge protocol."""

    ACTIVE = "active"
    CONFLICT = "conflict"
    MERGED = "merged"
    ROLLED_BACK = "rolled_back"


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _enum_or_none(enum_cls: type[Enum], value: Any) -> Any:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class Project:
    """Store a board project: the repository a task's git work happens in."""

    id: str = field(default_factory=lambda: _id("project"))
    name: str = ""
    folder_path: str = ""
    id_prefix: str = "TASK"
    next_task_number: int = 1
    use_worktrees: bool = True
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or _id("project")),
            name=str(data.get("name") or ""),
            folder_path=str(data.get("folder_path") or ""),
            id_prefix=str(data.get("id_prefix") or "TASK"),
            next_task_number=int(data.get("next_task_number") or 1),
            use_worktrees=bool(data.get("use_worktrees", True)),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


@dataclass
class Task:
    """Store a kanban task together with its git and preview bookkeeping."""

    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    description: str = ""
    solution_summary: str = ""
    test_scenarios: str = ""
    project_id: Optional[str] = None
    task_number: Optional[int] = None

    git_branch_name: Optional[str] = None
    git_branch_status: Optional[BranchStatus] = None
    git_worktree_path: Optional[str] = None
    git_worktree_status: Optional[WorktreeStatus] = None

    dev_server_port: Optional[int] = None
    dev_server_pid: Optional[int] = None

    rebase_conflict: bool = False
    conflict_files: list[str] = field(default_factory=list)

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def display_id(self, project: Optional[Project] = None) -> str:
        if project is not None and self.task_number:
            return f"{project.id_prefix}-{self.task_number}"
        return f"TASK-{self.task_number or 'X'}"

    def clear_dev_server(self) -> None:
        self.dev_server_port = None
        self.dev_server_pid = None

    def clear_conflict(self) -> None:
        self.rebase_conflict = False
        self.conflict_files = []

    def check_invariants(self) -> list[str]:
        problems: list[str] = []
        if self.git_worktree_path and not self.git_branch_name:
            problems.append("git_worktree_path is set without git_branch_name")
        if (self.dev_server_pid is None) != (self.dev_server_port is None):
            problems.append("dev_server_pid and dev_server_port must be set together")
        if self.conflict_files and not self.rebase_conflict:
            problems.append("conflict_files is non-empty while rebase_conflict is false")
        return problems

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("status", "git_branch_status", "git_worktree_status"):
            value = data.get(key)
            data[key] = value.value if isinstance(value, Enum) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("task"))
        payload["title"] = str(data.get("title") or "")
        payload["status"] = _enum_or_none(TaskStatus, data.get("status")) or TaskStatus.BACKLOG
        payload["description"] = str(data.get("description") or "")
        payload["solution_summary"] = str(data.get("solution_summary") or "")
        payload["test_scenarios"] = str(data.get("test_scenarios") or "")
        payload["task_number"] = _int_or_none(data.get("task_number"))
        payload["git_branch_status"] = _enum_or_none(BranchStatus, data.get("git_branch_status"))
        payload["git_worktree_status"] = _enum_or_none(WorktreeStatus, data.get("git_worktree_status"))
        payload["dev_server_port"] = _int_or_none(data.get("dev_server_port"))
        payload["dev_server_pid"] = _int_or_none(data.get("dev_server_pid"))
        payload["rebase_conflict"] = bool(data.get("rebase_conflict", False))
        payload["conflict_files"] = [str(p) for p in list(data.get("conflict_files") or [])]
        payload["created_at"] = str(data.get("created_at") or _now_iso())
        payload["updated_at"] = str(data.get("updated_at") or _now_iso())
        return cls(**payload)


@dataclass
class BranchResult:
    branch_name: str
    created: bool
    stash_applied: Optional[bool] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class WorktreeResult:
    worktree_path: str
    existed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MergeResult:
    """Describe how far a merge got and what the caller should do next."""

    ok: bool
    state: MergeState = MergeState.ACTIVE
    commit_sha: Optional[str] = None
    conflict_files: list[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    location: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    steps: list[dict[str, Any]] = field(default_factory=list)

    def record(self, step: str, ok: bool = True, detail: Optional[str] = None) -> None:
        self.steps.append({"step": step, "at": _now_iso(), "ok": ok, "detail": detail})

    def step_time(self, step: str) -> Optional[str]:
        for entry in self.steps:
            if entry["step"] == step and entry["ok"]:
                return entry["at"]
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class RollbackResult:
    ok: bool
    branch_deleted: bool = False
    worktree_removed: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PreviewResult:
    pid: int
    port: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StartResult:
    phase: Phase
    working_dir: str
    branch_name: Optional[str] = None
    worktree_path: Optional[str] = None
    created: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data
