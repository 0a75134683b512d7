from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import commit_file
from kanban_runner.api import create_app
from kanban_runner.models import Project, TaskStatus
from kanban_runner.orchestrator import TaskOrchestrator
from kanban_runner.store import BoardStore


@pytest.fixture
def orch(board_dir: Path) -> TaskOrchestrator:
    config = {"preview": {"base_port": 45400, "grace_seconds": 0.3, "command": [sys.executable, "-c", "import time; time.sleep(30)"]}}
    return TaskOrchestrator(BoardStore(board_dir), config)


@pytest.fixture
def client(orch: TaskOrchestrator) -> TestClient:
    return TestClient(create_app(orchestrator=orch))


@pytest.fixture
def project(orch: TaskOrchestrator, repo: Path) -> Project:
    return orch.store.projects.upsert(Project(name="demo", folder_path=str(repo), id_prefix="KAN"))


def test_root(client: TestClient) -> None:
    assert client.get("/").json()["status"] == "running"


def test_unknown_card_is_404(client: TestClient) -> None:
    resp = client.get("/api/cards/task-missing/phase")
    assert resp.status_code == 404


def test_phase_and_start(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("Add greeting", project_id=project.id, solution_summary="<p>x</p>")

    assert client.get(f"/api/cards/{task.id}/phase").json() == {"task_id": task.id, "phase": "implementation"}

    resp = client.post(f"/api/cards/{task.id}/start")
    assert resp.status_code == 200
    body = resp.json()
    assert body["branch_name"] == "kanban/KAN-1-add-greeting"
    assert body["phase"] == "implementation"

    git_status = client.get(f"/api/cards/{task.id}/git").json()
    assert git_status["exists"] is True
    assert git_status["worktree_exists"] is True
    assert git_status["ahead"] == 0


def test_merge_wrong_status_is_400(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("Add greeting", project_id=project.id, solution_summary="<p>x</p>")
    client.post(f"/api/cards/{task.id}/start")
    resp = client.post(f"/api/cards/{task.id}/git/merge", json={})
    assert resp.status_code == 400
    assert "must be in 'test'" in resp.json()["detail"]


def test_merge_blocked_returns_resolution_steps(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("Add greeting", project_id=project.id, solution_summary="<p>x</p>")
    client.post(f"/api/cards/{task.id}/start")
    stored = orch.store.tasks.get(task.id)
    stored.status = TaskStatus.TEST
    orch.store.tasks.upsert(stored)

    body = client.post(f"/api/cards/{task.id}/git/merge").json()

    assert body["ok"] is False
    assert body["error_type"] == "no_commits_to_merge"
    assert body["resolution_steps"]


def test_merge_and_rollback_routes(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    first = orch.store.create_task("First", project_id=project.id, solution_summary="<p>x</p>")
    second = orch.store.create_task("Second", project_id=project.id, solution_summary="<p>x</p>")
    for task in (first, second):
        client.post(f"/api/cards/{task.id}/start")
        stored = orch.store.tasks.get(task.id)
        commit_file(Path(stored.git_worktree_path), f"{task.id}.txt", "work\n", "work")
        stored.status = TaskStatus.TEST
        orch.store.tasks.upsert(stored)

    merged = client.post(f"/api/cards/{first.id}/git/merge", json={"commit_first": False}).json()
    assert merged["ok"] is True
    assert merged["state"] == "merged"

    rolled = client.post(f"/api/cards/{second.id}/git/rollback", json={"delete_branch": True}).json()
    assert rolled["ok"] is True
    assert rolled["branch_deleted"] is True
    assert orch.store.tasks.get(second.id).status == TaskStatus.BUGS


def test_conflict_route_without_conflict(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("x", project_id=project.id)
    assert client.get(f"/api/cards/{task.id}/conflict").status_code == 400


def test_dev_server_routes(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("Preview me", project_id=project.id, solution_summary="<p>x</p>")
    client.post(f"/api/cards/{task.id}/start")

    started = client.post(f"/api/cards/{task.id}/dev-server")
    assert started.status_code == 200
    assert started.json()["running"] is True

    status = client.get(f"/api/cards/{task.id}/dev-server").json()
    assert status["running"] is True
    assert status["port"] == started.json()["port"]

    assert client.delete(f"/api/cards/{task.id}/dev-server").json() == {"stopped": True}
    assert client.get(f"/api/cards/{task.id}/dev-server").json()["running"] is False


def test_dev_server_get_heals_dead_record(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("x", project_id=project.id)
    task.dev_server_pid = 2**22 + 11
    task.dev_server_port = 45401
    orch.store.tasks.upsert(task)

    assert client.get(f"/api/cards/{task.id}/dev-server").json()["running"] is False
    stored = orch.store.tasks.get(task.id)
    assert stored.dev_server_pid is None and stored.dev_server_port is None


def test_dev_server_start_without_worktree_is_400(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("x", project_id=project.id)
    assert client.post(f"/api/cards/{task.id}/dev-server").status_code == 400


def test_dev_server_stop_without_record_is_400(client: TestClient, orch: TaskOrchestrator, project: Project) -> None:
    task = orch.store.create_task("x", project_id=project.id)
    resp = client.delete(f"/api/cards/{task.id}/dev-server")
    assert resp.status_code == 400
    assert resp.json()["detail"]["error_type"] == "process_not_running"
