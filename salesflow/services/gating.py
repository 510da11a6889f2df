"""
Sequential gating policy for the eight workflow steps.

Pure functions only: nothing here reads the database or mutates state. The
engine calls ``require_can_start`` immediately before every mutating
operation, so a refused transition never leaves a partial write behind.
"""

from __future__ import annotations

from salesflow.core.exceptions import GatingViolationError, StepNotFoundError
from salesflow.models.workflow import STEP_COUNT


def can_start(workflow, step_number: int) -> bool:
    """Step 1 may always start; step N may start iff step N-1 is completed."""
    if step_number == 1:
        return True
    previous = workflow.step(step_number - 1)
    return bool(previous and previous.completed)


def prerequisite_state(workflow, step_number: int) -> dict:
    """Describe the step before ``step_number`` as it actually is."""
    previous = workflow.step(step_number - 1)
    if previous is None:
        return {"step_number": step_number - 1, "completed": False, "outcome": None, "phase": None}
    return {
        "step_number": previous.step_number,
        "step_name": previous.step_name,
        "completed": previous.completed,
        "outcome": previous.outcome.value,
        "phase": previous.phase.value,
        "needs_external_action": previous.needs_external_action,
        "external_module": previous.external_module.value if previous.external_module else None,
        "external_action_completed": previous.external_action_completed,
    }


def require_can_start(workflow, step_number: int) -> None:
    """Raise GatingViolationError (or StepNotFoundError) when the step may not start."""
    if not 1 <= step_number <= STEP_COUNT:
        raise StepNotFoundError(workflow.id, step_number)
    if not can_start(workflow, step_number):
        raise GatingViolationError(
            step_number,
            prerequisite_state(workflow, step_number),
            current_step=workflow.current_step,
        )
