"""Test logging helpers that summarize operation results."""

from __future__ import annotations

import json

from kanban_runner.logging_utils import pretty, summarize_result
from kanban_runner.models import BranchResult, MergeResult, MergeState, RollbackResult


def test_summarize_merge_conflict() -> None:
    result = MergeResult(
        ok=False,
        state=MergeState.CONFLICT,
        conflict_files=["a.py", "b.py", "c.py", "d.py"],
        error="Rebase stopped " + "x" * 400,
        error_type="rebase_conflict",
    )
    result.record("preconditions")
    result.record("rebase", ok=False, detail="conflict")

    summary = summarize_result(result)

    assert summary["result"] == "MergeResult"
    assert summary["ok"] is False
    assert summary["state"] == "conflict"
    assert summary["conflict_n"] == 4
    assert summary["conflict_sample"] == ["a.py", "b.py", "c.py"]
    assert summary["last_step"] == "preconditions"
    assert len(summary["error"]) <= 241


def test_summarize_other_results() -> None:
    rollback = summarize_result(RollbackResult(ok=True, branch_deleted=True, warnings=["prune failed"]))
    assert rollback["branch_deleted"] is True
    assert rollback["warnings_n"] == 1

    branch = summarize_result(BranchResult(branch_name="kanban/T-1-x", created=True, stash_applied=False))
    assert branch["stash_applied"] is False

    assert summarize_result(None) == {"result": None}


def test_pretty_serializes_or_falls_back() -> None:
    assert json.loads(pretty({"a": 1})) == {"a": 1}
    assert pretty({"path": object()}).startswith("{")
