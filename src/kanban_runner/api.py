"""HTTP routes for task git workspaces, merges and preview servers."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, NoReturn, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel

from .constants import BLOCKING_RESOLUTION_STEPS
from .errors import (
    GitCommandError,
    GitNotInstalled,
    KanbanRunnerError,
    PortExhausted,
    ProcessSpawnFailed,
    TaskStateError,
)
from .orchestrator import TaskOrchestrator


class MergeRequest(BaseModel):
    commit_first: Optional[bool] = None


class RollbackRequest(BaseModel):
    delete_branch: Optional[bool] = None


def _raise_http(exc: KanbanRunnerError) -> NoReturn:
    if isinstance(exc, TaskStateError):
        raise HTTPException(status_code=404 if exc.not_found else 400, detail=str(exc)) from exc
    if isinstance(exc, PortExhausted):
        raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
    if isinstance(exc, (ProcessSpawnFailed, GitCommandError, GitNotInstalled)):
        logger.error("Request failed: {}", exc)
        raise HTTPException(status_code=500, detail=exc.to_dict()) from exc
    raise HTTPException(status_code=400, detail=exc.to_dict()) from exc


def create_router(resolve_orchestrator: Callable[[], TaskOrchestrator]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["api"])

    def _call(operation: Callable[[TaskOrchestrator], Any]) -> Any:
        try:
            return operation(resolve_orchestrator())
        except KanbanRunnerError as exc:
            _raise_http(exc)

    @router.post("/cards/{task_id}/start")
    def start_card(task_id: str) -> dict[str, Any]:
        return _call(lambda orch: orch.start_task(task_id)).to_dict()

    @router.get("/cards/{task_id}/phase")
    def card_phase(task_id: str) -> dict[str, Any]:
        phase = _call(lambda orch: orch.detect_phase(task_id))
        return {"task_id": task_id, "phase": phase.value}

    @router.get("/cards/{task_id}/git")
    def card_git_status(task_id: str) -> dict[str, Any]:
        return _call(lambda orch: orch.git_status(task_id))

    @router.post("/cards/{task_id}/git/merge")
    def merge_card(task_id: str, body: Optional[MergeRequest] = None) -> dict[str, Any]:
        """Squash-merge the card's branch.

        Protocol stops (dirty checkouts, nothing to merge, rebase conflicts)
        come back with ``ok: false`` and the resolution steps for the error.
        """
        commit_first = body.commit_first if body else None
        result = _call(lambda orch: orch.merge(task_id, commit_first=commit_first))
        payload = result.to_dict()
        if not result.ok and result.error_type:
            payload["resolution_steps"] = BLOCKING_RESOLUTION_STEPS.get(result.error_type, [])
        return payload

    @router.post("/cards/{task_id}/git/rollback")
    def rollback_card(task_id: str, body: Optional[RollbackRequest] = None) -> dict[str, Any]:
        delete_branch = body.delete_branch if body else None
        return _call(lambda orch: orch.rollback(task_id, delete_branch=delete_branch)).to_dict()

    @router.get("/cards/{task_id}/conflict")
    def card_conflict(task_id: str) -> dict[str, Any]:
        return _call(lambda orch: orch.conflict_context(task_id))

    @router.post("/cards/{task_id}/dev-server")
    def start_dev_server(task_id: str) -> dict[str, Any]:
        preview = _call(lambda orch: orch.start_preview(task_id))
        return {"running": True, **preview.to_dict()}

    @router.delete("/cards/{task_id}/dev-server")
    def stop_dev_server(task_id: str) -> dict[str, Any]:
        stopped = _call(lambda orch: orch.stop_preview(task_id))
        return {"stopped": stopped}

    @router.get("/cards/{task_id}/dev-server")
    def dev_server_status(task_id: str) -> dict[str, Any]:
        return _call(lambda orch: orch.preview_status(task_id))

    return router


def create_app(
    board_dir: Optional[Path] = None,
    *,
    orchestrator: Optional[TaskOrchestrator] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create the FastAPI application serving the card routes.

    Args:
        board_dir: Board state directory used to build an orchestrator when
            none is passed.
        orchestrator: Pre-built orchestrator, mainly for tests.
        enable_cors: Whether to enable CORS.
    """
    app = FastAPI(
        title="Kanban Runner",
        description="Git workspaces, merges and preview servers for kanban tasks",
        version="0.1.0",
    )
    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if orchestrator is None:
        if board_dir is None:
            raise ValueError("create_app needs board_dir or orchestrator")
        orchestrator = TaskOrchestrator.from_board_dir(board_dir)
    app.state.orchestrator = orchestrator

    @app.get("/")
    def root() -> dict[str, Any]:
        return {"name": "Kanban Runner", "status": "running"}

    app.include_router(create_router(lambda: app.state.orchestrator))
    return app
