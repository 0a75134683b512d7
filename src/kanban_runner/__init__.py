"""Provide the public `kanban_runner` package exports."""

from __future__ import annotations

from .merge import merge_task, rollback_task
from .orchestrator import TaskOrchestrator
from .phase import detect_phase
from .store import BoardStore

__all__ = ["BoardStore", "TaskOrchestrator", "detect_phase", "merge_task", "rollback_task"]
