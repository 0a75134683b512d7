from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

from loguru import logger

from .constants import PROJECTS_FILE, TASKS_FILE
from .io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from .models import Project, Task
from .utils import _now_iso

T = TypeVar("T")

STORE_VERSION = 1


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        data, err = _load_data_with_error(self._path, {})
        if err:
            # Refuse to continue so a later save cannot clobber the damaged file.
            raise ValueError(f"Unable to read {self._path}: {err}")
        items = data.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        payload = {"version": STORE_VERSION, self._key: [self._dumper(item) for item in items]}
        _atomic_write_yaml(self._path, payload)


class FileTaskRepository:
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Task](
            path,
            lock_path,
            "tasks",
            loader=Task.from_dict,
            dumper=lambda t: t.to_dict(),
        )

    def list(self, project_id: Optional[str] = None) -> list[Task]:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
        if project_id is not None:
            tasks = [t for t in tasks if t.project_id == project_id]
        return tasks

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.list():
            if task.id == task_id:
                return task
        return None

    def upsert(self, task: Task) -> Task:
        """Insert or replace ``task``.

        Raises:
            ValueError: If the task violates a field invariant; nothing is written.
        """
        problems = task.check_invariants()
        if problems:
            raise ValueError(f"Refusing to persist task {task.id}: {'; '.join(problems)}")
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
                task.updated_at = _now_iso()
                for idx, existing in enumerate(tasks):
                    if existing.id == task.id:
                        tasks[idx] = task
                        break
                else:
                    task.created_at = task.created_at or _now_iso()
                    tasks.append(task)
                self._repo._save(tasks)
        return task

    def delete(self, task_id: str) -> bool:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
                keep = [t for t in tasks if t.id != task_id]
                if len(keep) == len(tasks):
                    return False
                self._repo._save(keep)
        return True


class FileProjectRepository:
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Project](
            path,
            lock_path,
            "projects",
            loader=Project.from_dict,
            dumper=lambda p: p.to_dict(),
        )

    def list(self) -> list[Project]:
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, project_id: str) -> Optional[Project]:
        for project in self.list():
            if project.id == project_id:
                return project
        return None

    def upsert(self, project: Project) -> Project:
        with self._repo._thread_lock:
            with self._repo._lock:
                projects = self._repo._load()
                project.updated_at = _now_iso()
                for idx, existing in enumerate(projects):
                    if existing.id == project.id:
                        projects[idx] = project
                        break
                else:
                    projects.append(project)
                self._repo._save(projects)
        return project

    def delete(self, project_id: str) -> bool:
        with self._repo._thread_lock:
            with self._repo._lock:
                projects = self._repo._load()
                keep = [p for p in projects if p.id != project_id]
                if len(keep) == len(projects):
                    return False
                self._repo._save(keep)
        return True

    def allocate_task_number(self, project_id: str) -> int:
        """Reserve and return the project's next task number.

        Raises:
            KeyError: If the project does not exist.
        """
        with self._repo._thread_lock:
            with self._repo._lock:
                projects = self._repo._load()
                for project in projects:
                    if project.id == project_id:
                        number = project.next_task_number
                        project.next_task_number = number + 1
                        project.updated_at = _now_iso()
                        self._repo._save(projects)
                        return number
        raise KeyError(project_id)


class BoardStore:
    """File-backed task and project store rooted at ``board_dir``."""

    def __init__(self, board_dir: Path) -> None:
        self.board_dir = Path(board_dir)
        self.board_dir.mkdir(parents=True, exist_ok=True)
        self.tasks = FileTaskRepository(
            self.board_dir / TASKS_FILE,
            self.board_dir / f"{TASKS_FILE}.lock",
        )
        self.projects = FileProjectRepository(
            self.board_dir / PROJECTS_FILE,
            self.board_dir / f"{PROJECTS_FILE}.lock",
        )
        logger.debug("Board store at {}", self.board_dir)

    def create_task(self, title: str, *, project_id: Optional[str] = None, **fields: Any) -> Task:
        task = Task(title=title, project_id=project_id, **fields)
        if project_id is not None and task.task_number is None:
            task.task_number = self.projects.allocate_task_number(project_id)
        return self.tasks.upsert(task)

    def project_for(self, task: Task) -> Optional[Project]:
        if not task.project_id:
            return None
        return self.projects.get(task.project_id)
