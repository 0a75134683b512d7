"""Infer a task's workflow phase from the content it carries.

The phase is never stored. It is recomputed from which rich-text fields are
populated, so stored state cannot drift from the task's actual content.
"""

from __future__ import annotations

from .models import Phase, Task
from .utils import has_content


def phase_for(has_solution: bool, has_tests: bool) -> Phase:
    """Map content presence to a phase.

    Args:
        has_solution: Whether the task carries a solution summary.
        has_tests: Whether the task carries test scenarios.

    Returns:
        PLANNING without a solution, IMPLEMENTATION with a solution but no
        tests, RETEST when both are present.
    """
    if not has_solution:
        return Phase.PLANNING
    if not has_tests:
        return Phase.IMPLEMENTATION
    return Phase.RETEST


def detect_phase(task: Task) -> Phase:
    """Return the phase for ``task``; its status column is ignored."""
    return phase_for(has_content(task.solution_summary), has_content(task.test_scenarios))
