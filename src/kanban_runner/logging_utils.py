"""Configure loguru and summarize operation results for log lines."""

import json
import sys
from typing import Any

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)

_DETAIL_LIMIT = 240


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's sinks with a single stderr sink at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def _truncate(text: str) -> str:
    return (text[:_DETAIL_LIMIT] + "…") if len(text) > _DETAIL_LIMIT else text


def summarize_result(result: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a merge/rollback/branch result.

    Args:
        result: Result dataclass instance (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if result is None:
        return {"result": None}

    name = result.__class__.__name__
    d: dict[str, Any] = {"result": name}

    ok = getattr(result, "ok", None)
    if ok is not None:
        d["ok"] = bool(ok)

    state = getattr(result, "state", None)
    if state is not None:
        d["state"] = getattr(state, "value", str(state))

    error_type = getattr(result, "error_type", None)
    if error_type:
        d["error_type"] = error_type
        d["error"] = _truncate(str(getattr(result, "error", "") or ""))

    if name == "MergeResult":
        d["commit_sha"] = result.commit_sha
        d["conflict_n"] = len(result.conflict_files or [])
        d["conflict_sample"] = list(result.conflict_files or [])[:3]
        steps = [s["step"] for s in result.steps if s.get("ok")]
        d["last_step"] = steps[-1] if steps else None
    elif name == "RollbackResult":
        d["branch_deleted"] = result.branch_deleted
        d["worktree_removed"] = result.worktree_removed
    elif name == "BranchResult":
        d["branch_name"] = result.branch_name
        d["created"] = result.created
        if result.stash_applied is not None:
            d["stash_applied"] = result.stash_applied

    warnings = getattr(result, "warnings", None)
    if warnings:
        d["warnings_n"] = len(warnings)
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise ``str(obj)``.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
