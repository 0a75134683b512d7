from __future__ import annotations

from pathlib import Path

import pytest

from kanban_runner.config import (
    get_git_config,
    get_merge_config,
    get_preview_config,
    get_rollback_config,
    load_runner_config,
    resolve_board_dir,
)


def test_missing_config_uses_defaults(board_dir: Path) -> None:
    config, err = load_runner_config(board_dir)
    assert (config, err) == ({}, None)

    preview = get_preview_config(config)
    assert preview["base_port"] == 3031
    assert preview["port_window"] == 100
    assert preview["command"] == ["npm", "run", "dev", "--", "-p", "{port}"]
    assert preview["shared_data_path"] == "data/kanban.db"
    assert get_git_config(config) == {"timeout_seconds": 60, "worktrees_dir": ".worktrees"}
    assert get_merge_config(config) == {"commit_first": False}
    assert get_rollback_config(config) == {"delete_branch": True}


def test_config_values_are_read(board_dir: Path) -> None:
    (board_dir / "config.yaml").write_text(
        "git:\n"
        "  timeout_seconds: 5\n"
        "preview:\n"
        "  base_port: 4000\n"
        "  port_window: 10\n"
        "  command: [yarn, dev, --port, '{port}']\n"
        "merge:\n"
        "  commit_first: true\n"
        "rollback:\n"
        "  delete_branch: false\n"
    )
    config, err = load_runner_config(board_dir)
    assert err is None
    assert get_git_config(config)["timeout_seconds"] == 5
    preview = get_preview_config(config)
    assert (preview["base_port"], preview["port_window"]) == (4000, 10)
    assert preview["command"] == ["yarn", "dev", "--port", "{port}"]
    assert get_merge_config(config)["commit_first"] is True
    assert get_rollback_config(config)["delete_branch"] is False


def test_preview_window_never_covers_main_app_port() -> None:
    preview = get_preview_config({"preview": {"base_port": 3000, "port_window": 50}})
    assert preview["base_port"] == 3031


def test_malformed_values_fall_back() -> None:
    config = {"git": {"timeout_seconds": "soon"}, "preview": {"base_port": "x", "command": "npm start"}}
    assert get_git_config(config)["timeout_seconds"] == 60
    preview = get_preview_config(config)
    assert preview["base_port"] == 3031
    assert preview["command"][0] == "npm"


def test_unreadable_config_reports_error(board_dir: Path) -> None:
    (board_dir / "config.yaml").write_text("preview: [broken\n")
    config, err = load_runner_config(board_dir)
    assert config == {}
    assert err and "YAMLError" in err


def test_resolve_board_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    assert resolve_board_dir(str(tmp_path / "explicit")) == (tmp_path / "explicit").resolve()
    monkeypatch.setenv("KANBAN_RUNNER_HOME", str(tmp_path / "env"))
    assert resolve_board_dir() == (tmp_path / "env").resolve()
    monkeypatch.delenv("KANBAN_RUNNER_HOME")
    monkeypatch.setenv("HOME", str(tmp_path))
    assert resolve_board_dir() == tmp_path / ".kanban_runner"
