"""Serialize git-mutating operations per repository.

Branch creation, merge and rollback each run a chain of git commands against
one repository. Two chains interleaving on the same repository can corrupt
its state, so every such chain runs under that repository's lock. Chains on
different repositories proceed in parallel.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

from loguru import logger

T = TypeVar("T")


class GitCoordinator:
    """Hand out one re-entrant lock per resolved repository path."""

    _instance: Optional[GitCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> GitCoordinator:
        """One coordinator per process so every caller shares the same locks."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._repo_locks = {}
        return cls._instance

    def __init__(self) -> None:
        if not hasattr(self, "_initialized"):
            self._repo_locks: dict[str, threading.RLock] = getattr(self, "_repo_locks", {})
            self._initialized = True

    def lock_for(self, repo_path: Union[str, Path]) -> threading.RLock:
        key = str(Path(repo_path).resolve())
        with self._lock:
            lock = self._repo_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._repo_locks[key] = lock
            return lock

    def execute_git_operation(
        self,
        repo_path: Union[str, Path],
        operation: Callable[[], T],
        operation_name: str = "git operation",
    ) -> T:
        """Run ``operation`` while holding the lock for ``repo_path``.

        Args:
            repo_path: Repository the operation mutates.
            operation: Zero-argument callable doing the git work.
            operation_name: Label for debug logging.

        Returns:
            Whatever ``operation`` returns; its exceptions propagate.
        """
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for git lock on {} ({})", thread_id, repo_path, operation_name)
        with self.lock_for(repo_path):
            logger.debug("Thread {} acquired git lock on {} ({})", thread_id, repo_path, operation_name)
            try:
                return operation()
            except Exception as e:
                logger.error("Thread {} git operation failed ({}): {}", thread_id, operation_name, e)
                raise
            finally:
                logger.debug("Thread {} releasing git lock on {} ({})", thread_id, repo_path, operation_name)


_git_coordinator = GitCoordinator()


def get_git_coordinator() -> GitCoordinator:
    return _git_coordinator
