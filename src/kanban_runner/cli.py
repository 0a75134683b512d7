from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .config import resolve_board_dir
from .errors import KanbanRunnerError
from .git_utils import is_git_repo
from .logging_utils import configure_logging
from .models import Project, Task, TaskStatus
from .orchestrator import TaskOrchestrator
from .phase import detect_phase
from .store import BoardStore

_STATUS_CHOICES = [status.value for status in TaskStatus]


def _write(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + '\n')


def _fail(exc: Exception) -> int:
    detail = exc.to_dict() if isinstance(exc, KanbanRunnerError) else {'error': str(exc)}
    sys.stderr.write(json.dumps(detail) + '\n')
    return 1


def _board_dir(args: argparse.Namespace) -> Path:
    return resolve_board_dir(args.board_dir)


def _store(args: argparse.Namespace) -> BoardStore:
    return BoardStore(_board_dir(args))


def _orchestrator(args: argparse.Namespace) -> TaskOrchestrator:
    return TaskOrchestrator.from_board_dir(_board_dir(args))


def _project_add(args: argparse.Namespace) -> int:
    store = _store(args)
    path = Path(args.path).expanduser().resolve()
    if not path.is_dir():
        sys.stderr.write(f"Invalid path: {path}\n")
        return 1
    if not args.no_worktrees and not is_git_repo(path):
        sys.stderr.write("Path must be a git repository unless --no-worktrees is set\n")
        return 1
    project = Project(
        name=args.name or path.name,
        folder_path=str(path),
        id_prefix=args.id_prefix,
        use_worktrees=not args.no_worktrees,
    )
    store.projects.upsert(project)
    _write({'project': project.to_dict()})
    return 0


def _project_list(args: argparse.Namespace) -> int:
    store = _store(args)
    _write({'projects': [project.to_dict() for project in store.projects.list()]})
    return 0


def _task_create(args: argparse.Namespace) -> int:
    store = _store(args)
    if args.project_id and store.projects.get(args.project_id) is None:
        sys.stderr.write(f"Unknown project: {args.project_id}\n")
        return 1
    task = store.create_task(
        args.title,
        project_id=args.project_id,
        description=args.description or '',
        solution_summary=args.solution or '',
        test_scenarios=args.tests or '',
        status=TaskStatus(args.status),
    )
    _write({'task': task.to_dict()})
    return 0


def _print_task_table(store: BoardStore, tasks: list[Task]) -> None:
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Key")
    table.add_column("Title")
    table.add_column("Status", style="magenta")
    table.add_column("Phase")
    table.add_column("Branch", style="green")
    table.add_column("Preview")
    projects = {project.id: project for project in store.projects.list()}
    for task in tasks:
        preview = f":{task.dev_server_port}" if task.dev_server_port else "-"
        branch = task.git_branch_name or "-"
        if task.rebase_conflict:
            branch = f"{branch} [red](conflict)[/red]"
        table.add_row(
            task.id,
            task.display_id(projects.get(task.project_id or "")),
            task.title,
            task.status.value,
            detect_phase(task).value,
            branch,
            preview,
        )
    Console().print(table)


def _task_list(args: argparse.Namespace) -> int:
    store = _store(args)
    tasks = store.tasks.list(project_id=args.project_id)
    if args.status:
        tasks = [task for task in tasks if task.status.value == args.status]
    if args.table:
        _print_task_table(store, tasks)
        return 0
    _write({'tasks': [task.to_dict() for task in tasks]})
    return 0


def _task_show(args: argparse.Namespace) -> int:
    store = _store(args)
    task = store.tasks.get(args.task_id)
    if task is None:
        sys.stderr.write(f"Task not found: {args.task_id}\n")
        return 1
    payload = task.to_dict()
    payload['phase'] = detect_phase(task).value
    _write({'task': payload})
    return 0


def _task_update(args: argparse.Namespace) -> int:
    store = _store(args)
    task = store.tasks.get(args.task_id)
    if task is None:
        sys.stderr.write(f"Task not found: {args.task_id}\n")
        return 1
    if args.title is not None:
        task.title = args.title
    if args.description is not None:
        task.description = args.description
    if args.solution is not None:
        task.solution_summary = args.solution
    if args.tests is not None:
        task.test_scenarios = args.tests
    if args.status is not None:
        task.status = TaskStatus(args.status)
    store.tasks.upsert(task)
    _write({'task': task.to_dict()})
    return 0


def _task_start(args: argparse.Namespace) -> int:
    try:
        result = _orchestrator(args).start_task(args.task_id)
    except KanbanRunnerError as exc:
        return _fail(exc)
    _write(result.to_dict())
    return 0


def _task_merge(args: argparse.Namespace) -> int:
    try:
        result = _orchestrator(args).merge(args.task_id, commit_first=True if args.commit_first else None)
    except KanbanRunnerError as exc:
        return _fail(exc)
    _write(result.to_dict())
    return 0 if result.ok else 1


def _task_rollback(args: argparse.Namespace) -> int:
    try:
        result = _orchestrator(args).rollback(args.task_id, delete_branch=False if args.keep_branch else None)
    except KanbanRunnerError as exc:
        return _fail(exc)
    _write(result.to_dict())
    return 0 if result.ok else 1


def _task_git(args: argparse.Namespace) -> int:
    try:
        _write(_orchestrator(args).git_status(args.task_id))
    except KanbanRunnerError as exc:
        return _fail(exc)
    return 0


def _task_conflict(args: argparse.Namespace) -> int:
    try:
        _write(_orchestrator(args).conflict_context(args.task_id))
    except KanbanRunnerError as exc:
        return _fail(exc)
    return 0


def _preview_start(args: argparse.Namespace) -> int:
    try:
        preview = _orchestrator(args).start_preview(args.task_id)
    except KanbanRunnerError as exc:
        return _fail(exc)
    _write(preview.to_dict())
    return 0


def _preview_stop(args: argparse.Namespace) -> int:
    try:
        stopped = _orchestrator(args).stop_preview(args.task_id)
    except KanbanRunnerError as exc:
        return _fail(exc)
    _write({'stopped': stopped})
    return 0


def _preview_status(args: argparse.Namespace) -> int:
    try:
        _write(_orchestrator(args).preview_status(args.task_id))
    except KanbanRunnerError as exc:
        return _fail(exc)
    return 0


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'kanban-runner[server]'\n")
        return 1

    from .api import create_app

    app = create_app(board_dir=_board_dir(args))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Kanban Runner: git worktrees, merges and previews for kanban tasks')
    parser.add_argument('--board-dir', default=None, help='Board state directory (default: $KANBAN_RUNNER_HOME or ~/.kanban_runner)')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the HTTP server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=3030, type=int)
    server.set_defaults(func=_server)

    project = subparsers.add_parser('project', help='Manage projects')
    project_sub = project.add_subparsers(dest='project_cmd', required=True)
    padd = project_sub.add_parser('add', help='Register a repository as a project')
    padd.add_argument('path')
    padd.add_argument('--name', default=None)
    padd.add_argument('--id-prefix', default='TASK')
    padd.add_argument('--no-worktrees', action='store_true', help='Work directly in the main checkout')
    padd.set_defaults(func=_project_add)
    plist = project_sub.add_parser('list', help='List projects')
    plist.set_defaults(func=_project_list)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Create a task')
    tcreate.add_argument('title')
    tcreate.add_argument('--project-id', default=None)
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--solution', default='')
    tcreate.add_argument('--tests', default='')
    tcreate.add_argument('--status', default=TaskStatus.BACKLOG.value, choices=_STATUS_CHOICES)
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--project-id', default=None)
    tlist.add_argument('--status', default=None, choices=_STATUS_CHOICES)
    tlist.add_argument('--table', action='store_true', help='Render a table instead of JSON')
    tlist.set_defaults(func=_task_list)
    tshow = task_sub.add_parser('show', help='Show a task with its phase')
    tshow.add_argument('task_id')
    tshow.set_defaults(func=_task_show)
    tupdate = task_sub.add_parser('update', help='Edit task content or move it between columns')
    tupdate.add_argument('task_id')
    tupdate.add_argument('--title', default=None)
    tupdate.add_argument('--description', default=None)
    tupdate.add_argument('--solution', default=None)
    tupdate.add_argument('--tests', default=None)
    tupdate.add_argument('--status', default=None, choices=_STATUS_CHOICES)
    tupdate.set_defaults(func=_task_update)
    tstart = task_sub.add_parser('start', help='Prepare the branch and worktree for the task phase')
    tstart.add_argument('task_id')
    tstart.set_defaults(func=_task_start)
    tmerge = task_sub.add_parser('merge', help='Squash-merge a tested task')
    tmerge.add_argument('task_id')
    tmerge.add_argument('--commit-first', action='store_true', help='Auto-commit pending changes in the main checkout')
    tmerge.set_defaults(func=_task_merge)
    trollback = task_sub.add_parser('rollback', help='Abandon the task branch and send the task to bugs')
    trollback.add_argument('task_id')
    trollback.add_argument('--keep-branch', action='store_true', help='Leave the branch and worktree in place')
    trollback.set_defaults(func=_task_rollback)
    tgit = task_sub.add_parser('git', help='Show branch and worktree status')
    tgit.add_argument('task_id')
    tgit.set_defaults(func=_task_git)
    tconflict = task_sub.add_parser('conflict', help='Show what is needed to resolve a rebase conflict')
    tconflict.add_argument('task_id')
    tconflict.set_defaults(func=_task_conflict)

    preview = subparsers.add_parser('preview', help='Manage task preview servers')
    preview_sub = preview.add_subparsers(dest='preview_cmd', required=True)
    for name, func, help_text in (
        ('start', _preview_start, 'Start a preview server in the task worktree'),
        ('stop', _preview_stop, 'Stop the task preview server'),
        ('status', _preview_status, 'Check whether the task preview is alive'),
    ):
        sub = preview_sub.add_parser(name, help=help_text)
        sub.add_argument('task_id')
        sub.set_defaults(func=func)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
