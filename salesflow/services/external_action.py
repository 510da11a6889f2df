"""
External action tracker.

Records that a step has been delegated to another module and that the
module has signed off. A completed external action never completes the
step by itself; the engine decides that.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from salesflow.core.exceptions import ConflictError
from salesflow.models import db
from salesflow.models.workflow import ExternalModule, StepState, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


def mark_needs_external_action(step: StepState, module: ExternalModule) -> None:
    """Delegate ``step`` to ``module``; any previous sign-off is reset."""
    step.needs_external_action = True
    step.external_module = module
    step.external_action_completed = False
    step.external_completed_by = None
    step.external_completed_at = None
    logger.debug(
        "Step delegated",
        extra={"workflow_id": step.workflow_id, "step_number": step.step_number, "external_module": module.value},
    )


def complete_external_action(step: StepState, actor: str) -> None:
    step.external_action_completed = True
    step.external_completed_by = actor
    step.external_completed_at = datetime.now(timezone.utc)


def awaiting_module(step: StepState) -> ExternalModule | None:
    """Return the module the step is waiting on, or None."""
    if step.needs_external_action and not step.external_action_completed:
        return step.external_module
    return None


def require_delegated_to(step: StepState, module: ExternalModule) -> None:
    """Raise ConflictError unless ``step`` is currently awaiting ``module``."""
    if awaiting_module(step) != module:
        current = step.external_module.value if step.external_module else None
        raise ConflictError(
            "Workflow step",
            message=(
                f"Step {step.step_number} is not awaiting {module.value} "
                f"(needs_external_action={step.needs_external_action}, "
                f"external_module={current}, "
                f"external_action_completed={step.external_action_completed})"
            ),
            details={"step_number": step.step_number, "expected_module": module.value,
                     "external_module": current},
        )


def pending_for_module(module: ExternalModule) -> list[StepState]:
    """Steps of active, in-progress workflows still waiting on ``module``."""
    stmt = (
        select(StepState)
        .join(Workflow, Workflow.id == StepState.workflow_id)
        .where(
            Workflow.deleted_at.is_(None),
            Workflow.status == WorkflowStatus.IN_PROGRESS,
            StepState.needs_external_action.is_(True),
            StepState.external_action_completed.is_(False),
            StepState.external_module == module,
            StepState.completed.is_(False),
        )
        .order_by(StepState.workflow_id, StepState.step_number)
    )
    return list(db.session.execute(stmt).scalars())
