"""
Delay escalation.

A delay is an orthogonal flag on an in-progress step: it never changes
``completed`` or the workflow's ``current_step``. The danger alarm is sent
to MASTER at most once per step.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select

from salesflow.models import db
from salesflow.models.workflow import StepState, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


def report_delay(step: StepState, expected_date: date | None, details: str | None = None) -> bool:
    """Flag ``step`` as delayed.

    Returns True when the step was already flagged (a delay update).
    """
    already_delayed = step.is_delayed
    step.is_delayed = True
    step.expected_completion_date = expected_date
    if details:
        step.delay_details = details
    return already_delayed


def trigger_alarm(step: StepState) -> bool:
    """Mark the danger alarm as sent. Returns False if it already was."""
    if step.danger_alarm_sent:
        logger.info(
            "Danger alarm already sent",
            extra={"workflow_id": step.workflow_id, "step_number": step.step_number},
        )
        return False
    step.danger_alarm_sent = True
    return True


def delayed_steps() -> list[StepState]:
    """Open delayed steps across active, in-progress workflows."""
    stmt = (
        select(StepState)
        .join(Workflow, Workflow.id == StepState.workflow_id)
        .where(
            Workflow.deleted_at.is_(None),
            Workflow.status == WorkflowStatus.IN_PROGRESS,
            StepState.is_delayed.is_(True),
            StepState.completed.is_(False),
        )
        .order_by(StepState.expected_completion_date, StepState.workflow_id)
    )
    return list(db.session.execute(stmt).scalars())
