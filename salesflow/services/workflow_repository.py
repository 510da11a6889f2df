"""
Repository boundary for workflows.

Every lookup filters out inactive (soft-deleted) workflows. Reads made inside
a transition use ``for_update=True``: a ``SELECT ... FOR UPDATE`` row lock on
databases that support it (SQLite ignores the clause) and a refresh of any
instance already in the session.
"""

from __future__ import annotations

from sqlalchemy import func, select

from salesflow.core.exceptions import NotFoundError, WorkflowNotFoundError
from salesflow.models import db
from salesflow.models.workflow import (
    AssignmentStatus,
    MissingItemApproval,
    Role,
    StepState,
    Workflow,
    WorkflowStatus,
)


def _active_workflows():
    return select(Workflow).where(Workflow.deleted_at.is_(None))


def get_active(workflow_id: int, *, for_update: bool = False) -> Workflow:
    """Return the active workflow or raise WorkflowNotFoundError."""
    stmt = _active_workflows().where(Workflow.id == workflow_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    workflow = db.session.execute(stmt).scalar_one_or_none()
    if workflow is None:
        raise WorkflowNotFoundError(workflow_id=workflow_id)
    return workflow


def find_for_project(project_id: int) -> Workflow | None:
    stmt = _active_workflows().where(Workflow.project_id == project_id)
    return db.session.execute(stmt).scalar_one_or_none()


def get_for_project(project_id: int) -> Workflow:
    workflow = find_for_project(project_id)
    if workflow is None:
        raise WorkflowNotFoundError(project_id=project_id)
    return workflow


def list_active(created_by: str | None = None) -> list[Workflow]:
    stmt = _active_workflows()
    if created_by:
        stmt = stmt.where(Workflow.created_by == created_by)
    stmt = stmt.order_by(Workflow.created_at.desc(), Workflow.id.desc())
    return list(db.session.execute(stmt).scalars())


def get_missing_item(item_id: int, *, for_update: bool = False) -> MissingItemApproval:
    """Return a missing-item request belonging to an active workflow."""
    stmt = (
        select(MissingItemApproval)
        .join(Workflow, Workflow.id == MissingItemApproval.workflow_id)
        .where(MissingItemApproval.id == item_id, Workflow.deleted_at.is_(None))
    )
    if for_update:
        stmt = stmt.with_for_update(of=MissingItemApproval).execution_options(populate_existing=True)
    item = db.session.execute(stmt).scalar_one_or_none()
    if item is None:
        raise NotFoundError(resource="MissingItemApproval", resource_id=item_id)
    return item


def missing_items_for(workflow_id: int) -> list[MissingItemApproval]:
    stmt = (
        select(MissingItemApproval)
        .where(MissingItemApproval.workflow_id == workflow_id)
        .order_by(MissingItemApproval.id)
    )
    return list(db.session.execute(stmt).scalars())


# ── Step assignment ───────────────────────────────────────────────────────────


def _open_steps():
    """Steps of active, in-progress workflows."""
    return (
        select(StepState)
        .join(Workflow, Workflow.id == StepState.workflow_id)
        .where(Workflow.deleted_at.is_(None), Workflow.status == WorkflowStatus.IN_PROGRESS)
    )


def steps_assigned_to(username: str, *, pending_only: bool = False) -> list[StepState]:
    """Steps assigned to ``username``, newest assignment first."""
    stmt = (
        select(StepState)
        .join(Workflow, Workflow.id == StepState.workflow_id)
        .where(Workflow.deleted_at.is_(None), StepState.assigned_to == username)
    )
    if pending_only:
        stmt = stmt.where(Workflow.status == WorkflowStatus.IN_PROGRESS, StepState.completed.is_(False))
    stmt = stmt.order_by(StepState.assigned_at.desc(), StepState.id.desc())
    return list(db.session.execute(stmt).scalars())


def count_pending_steps_for(username: str) -> int:
    stmt = (
        select(func.count(StepState.id))
        .join(Workflow, Workflow.id == StepState.workflow_id)
        .where(
            Workflow.deleted_at.is_(None),
            Workflow.status == WorkflowStatus.IN_PROGRESS,
            StepState.assigned_to == username,
            StepState.completed.is_(False),
        )
    )
    return db.session.execute(stmt).scalar_one()


def unassigned_steps_for_role(role: Role) -> list[StepState]:
    """Open steps routed to ``role`` that nobody has been assigned to yet."""
    stmt = (
        _open_steps()
        .where(
            StepState.target_role == role,
            StepState.assignment_status == AssignmentStatus.PENDING_ASSIGNMENT,
            StepState.completed.is_(False),
        )
        .order_by(StepState.workflow_id, StepState.step_number)
    )
    return list(db.session.execute(stmt).scalars())
