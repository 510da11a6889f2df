"""
Sales Project Workflow — domain models.

Models:
    - Workflow: one eight-step approval pipeline per project
    - StepState: per-step completion, delegation, delay and hold state
    - MissingItemApproval: step 4 dual-control item request
    - StepDocument: stored summary of an already validated step document

Timestamps are set by the explicit factory functions at the bottom of this
module (``new_workflow``, ``new_missing_item``, ``new_step_document``) and by
the services that complete steps; no ORM lifecycle hooks are used.
"""

import enum
from datetime import datetime, timezone

from salesflow.models import db
from salesflow.models.soft_delete import SoftDeleteMixin


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Closed variant types ─────────────────────────────────────────────────────


class WorkflowStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class StepOutcome(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    COMPLETED_WITH_ISSUES = "COMPLETED_WITH_ISSUES"
    REJECTED = "REJECTED"


class StepPhase(str, enum.Enum):
    """Derived per-step state; never stored."""

    NOT_STARTED = "NOT_STARTED"
    AWAITING_EXTERNAL = "AWAITING_EXTERNAL"
    EXTERNAL_COMPLETED = "EXTERNAL_COMPLETED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class Role(str, enum.Enum):
    MASTER = "MASTER"
    SALES = "SALES"
    SALES_MANAGER = "SALES_MANAGER"
    PRESALES = "PRESALES"
    FINANCE = "FINANCE"
    PROJECTS = "PROJECTS"
    QUALITY_ASSURANCE = "QUALITY_ASSURANCE"
    STORAGE = "STORAGE"


class ExternalModule(str, enum.Enum):
    PROJECT = "PROJECT"
    PRESALES = "PRESALES"
    FINANCE = "FINANCE"
    MASTER_SALES_MANAGER = "MASTER_SALES_MANAGER"
    QUALITY_ASSURANCE = "QUALITY_ASSURANCE"


class ApproverRole(str, enum.Enum):
    """Signature slot of a step 4 missing-item request."""

    MASTER = "MASTER"
    SALES_MANAGER = "SALES_MANAGER"

    @property
    def counterpart(self) -> "ApproverRole":
        return ApproverRole.SALES_MANAGER if self is ApproverRole.MASTER else ApproverRole.MASTER

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").lower()


class AssignmentStatus(str, enum.Enum):
    PENDING_ASSIGNMENT = "PENDING_ASSIGNMENT"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED_BY_MASTER = "APPROVED_BY_MASTER"
    APPROVED_BY_SALES_MANAGER = "APPROVED_BY_SALES_MANAGER"
    FULLY_APPROVED = "FULLY_APPROVED"


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# Roles allowed to act for a delegated module.
MODULE_ROLES = {
    ExternalModule.PROJECT: frozenset({Role.PROJECTS}),
    ExternalModule.PRESALES: frozenset({Role.PRESALES}),
    ExternalModule.FINANCE: frozenset({Role.FINANCE}),
    ExternalModule.MASTER_SALES_MANAGER: frozenset({Role.MASTER, Role.SALES_MANAGER}),
    ExternalModule.QUALITY_ASSURANCE: frozenset({Role.QUALITY_ASSURANCE}),
}


# ── Step catalog ─────────────────────────────────────────────────────────────

STEP_COUNT = 8

# step_number -> (name, target role, optional)
STEP_DEFINITIONS = {
    1: ("Site Survey", Role.PROJECTS, False),
    2: ("Selection & Design", Role.PRESALES, True),
    3: ("Bank Guarantee", Role.FINANCE, True),
    4: ("Missing Items", Role.STORAGE, True),
    5: ("Tender Acceptance", None, False),
    6: ("Project Execution", Role.PROJECTS, False),
    7: ("After-Sales Check", Role.QUALITY_ASSURANCE, True),
    8: ("Completion", Role.MASTER, False),
}

OPTIONAL_STEPS = frozenset(n for n, (_, _, optional) in STEP_DEFINITIONS.items() if optional)
MANDATORY_STEPS = frozenset(STEP_DEFINITIONS) - OPTIONAL_STEPS

DOCUMENT_KINDS = frozenset({"site_survey", "sizing_pricing", "bank_guarantee", "project_cost"})


def _enum_column(enum_cls, **kwargs):
    return db.Column(
        db.Enum(enum_cls, native_enum=False, length=40, validate_strings=True),
        **kwargs,
    )


class Workflow(SoftDeleteMixin, db.Model):
    """
    Workflow tracker for the "sell as new project" lifecycle.

    Business rules:
    - At most one active (deleted_at IS NULL) workflow per project.
    - current_step moves forward by exactly one per completing transition.
    - REJECTED and COMPLETED are terminal.
    - ``version`` is the optimistic-concurrency counter; every mutating
      transition touches the workflow row so that a stale writer fails.
    """

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, nullable=False, index=True)
    created_by = db.Column(db.String(100), nullable=False)
    current_step = db.Column(db.Integer, nullable=False, default=1)
    status = _enum_column(WorkflowStatus, nullable=False, default=WorkflowStatus.IN_PROGRESS)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_updated_by = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    steps = db.relationship(
        "StepState",
        back_populates="workflow",
        order_by="StepState.step_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    missing_items = db.relationship(
        "MissingItemApproval",
        back_populates="workflow",
        order_by="MissingItemApproval.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.Index(
            "uq_workflows_active_project",
            "project_id",
            unique=True,
            sqlite_where=db.text("deleted_at IS NULL"),
            postgresql_where=db.text("deleted_at IS NULL"),
        ),
        db.CheckConstraint("current_step BETWEEN 1 AND 8", name="ck_workflows_current_step"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in (WorkflowStatus.COMPLETED, WorkflowStatus.REJECTED)

    def step(self, step_number: int):
        """Return the StepState for step_number, or None."""
        for s in self.steps:
            if s.step_number == step_number:
                return s
        return None

    def to_dict(self, include_steps: bool = True) -> dict:
        data = {
            "id": self.id,
            "project_id": self.project_id,
            "created_by": self.created_by,
            "current_step": self.current_step,
            "status": self.status.value,
            "completed_at": _iso(self.completed_at),
            "last_updated_by": self.last_updated_by,
            "created_at": _iso(self.created_at),
            "last_updated_at": _iso(self.last_updated_at),
            "active": self.is_active,
        }
        if include_steps:
            data["steps"] = [s.to_dict() for s in self.steps]
        return data

    def __repr__(self) -> str:
        return f"<Workflow #{self.id} project={self.project_id} step={self.current_step} {self.status.value}>"


class StepState(db.Model):
    """One of the eight ordered steps of a workflow."""

    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    step_name = db.Column(db.String(100), nullable=False)
    target_role = _enum_column(Role, nullable=True)

    # Completion
    completed = db.Column(db.Boolean, nullable=False, default=False)
    outcome = _enum_column(StepOutcome, nullable=False, default=StepOutcome.PENDING)
    completed_by = db.Column(db.String(100), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Delegation to another module
    needs_external_action = db.Column(db.Boolean, nullable=False, default=False)
    external_module = _enum_column(ExternalModule, nullable=True)
    external_action_completed = db.Column(db.Boolean, nullable=False, default=False)
    external_completed_by = db.Column(db.String(100), nullable=True)
    external_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Step 5
    rejection_reason = db.Column(db.Text, nullable=True)

    # Delay escalation
    is_delayed = db.Column(db.Boolean, nullable=False, default=False)
    expected_completion_date = db.Column(db.Date, nullable=True)
    delay_details = db.Column(db.Text, nullable=True)
    danger_alarm_sent = db.Column(db.Boolean, nullable=False, default=False)

    # Step 6 execution result
    has_issues = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)

    # Assignment
    assigned_to = db.Column(db.String(100), nullable=True)
    assigned_by = db.Column(db.String(100), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    assignment_status = _enum_column(
        AssignmentStatus, nullable=False, default=AssignmentStatus.PENDING_ASSIGNMENT,
    )

    # Hold (step 6, after tender acceptance)
    is_on_hold = db.Column(db.Boolean, nullable=False, default=False)
    hold_reason = db.Column(db.Text, nullable=True)
    held_by = db.Column(db.String(100), nullable=True)
    held_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_by = db.Column(db.String(100), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    workflow = db.relationship("Workflow", back_populates="steps")

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_number", name="uq_workflow_steps_number"),
        db.Index("ix_workflow_steps_external", "external_module", "external_action_completed"),
        db.Index("ix_workflow_steps_assignee", "assigned_to", "completed"),
    )

    @property
    def is_optional(self) -> bool:
        return self.step_number in OPTIONAL_STEPS

    @property
    def phase(self) -> StepPhase:
        if self.outcome == StepOutcome.REJECTED:
            return StepPhase.REJECTED
        if self.completed:
            return StepPhase.COMPLETED
        if self.needs_external_action:
            if self.external_action_completed:
                return StepPhase.EXTERNAL_COMPLETED
            return StepPhase.AWAITING_EXTERNAL
        return StepPhase.NOT_STARTED

    def append_note(self, text: str) -> None:
        self.notes = f"{self.notes}\n{text}" if self.notes else text

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "step_name": self.step_name,
            "target_role": self.target_role.value if self.target_role else None,
            "optional": self.is_optional,
            "phase": self.phase.value,
            "completed": self.completed,
            "outcome": self.outcome.value,
            "completed_by": self.completed_by,
            "completed_at": _iso(self.completed_at),
            "needs_external_action": self.needs_external_action,
            "external_module": self.external_module.value if self.external_module else None,
            "external_action_completed": self.external_action_completed,
            "external_completed_by": self.external_completed_by,
            "external_completed_at": _iso(self.external_completed_at),
            "rejection_reason": self.rejection_reason,
            "is_delayed": self.is_delayed,
            "expected_completion_date": _iso(self.expected_completion_date),
            "danger_alarm_sent": self.danger_alarm_sent,
            "has_issues": self.has_issues,
            "notes": self.notes,
            "assigned_to": self.assigned_to,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "assignment_status": self.assignment_status.value,
            "is_on_hold": self.is_on_hold,
            "hold_reason": self.hold_reason,
        }

    def __repr__(self) -> str:
        return f"<StepState wf={self.workflow_id} #{self.step_number} {self.phase.value}>"


class MissingItemApproval(db.Model):
    """
    Step 4 missing-item request.

    Dual control: the item is delivered (and step 4 can complete) only once
    both a MASTER and a SALES_MANAGER have signed, and they are different
    people.
    """

    __tablename__ = "missing_item_approvals"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    item_name = db.Column(db.String(255), nullable=False)
    item_description = db.Column(db.Text, nullable=True)
    quantity_needed = db.Column(db.Integer, nullable=False)
    requested_by = db.Column(db.String(100), nullable=False)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False)

    approval_status = _enum_column(ApprovalStatus, nullable=False, default=ApprovalStatus.PENDING)
    approved_by_master = db.Column(db.String(100), nullable=True)
    master_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_by_sales_manager = db.Column(db.String(100), nullable=True)
    sales_manager_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    item_delivered = db.Column(db.Boolean, nullable=False, default=False)
    delivery_confirmed_by = db.Column(db.String(100), nullable=True)
    delivery_confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    workflow = db.relationship("Workflow", back_populates="missing_items")

    @property
    def is_fully_approved(self) -> bool:
        return self.approved_by_master is not None and self.approved_by_sales_manager is not None

    def signer(self, role: ApproverRole) -> str | None:
        if role is ApproverRole.MASTER:
            return self.approved_by_master
        return self.approved_by_sales_manager

    def sign(self, role: ApproverRole, username: str, at: datetime) -> None:
        if role is ApproverRole.MASTER:
            self.approved_by_master = username
            self.master_approved_at = at
            self.approval_status = ApprovalStatus.APPROVED_BY_MASTER
        else:
            self.approved_by_sales_manager = username
            self.sales_manager_approved_at = at
            self.approval_status = ApprovalStatus.APPROVED_BY_SALES_MANAGER

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "item_name": self.item_name,
            "item_description": self.item_description,
            "quantity_needed": self.quantity_needed,
            "requested_by": self.requested_by,
            "requested_at": _iso(self.requested_at),
            "approval_status": self.approval_status.value,
            "approved_by_master": self.approved_by_master,
            "master_approved_at": _iso(self.master_approved_at),
            "approved_by_sales_manager": self.approved_by_sales_manager,
            "sales_manager_approved_at": _iso(self.sales_manager_approved_at),
            "item_delivered": self.item_delivered,
            "delivery_confirmed_by": self.delivery_confirmed_by,
            "delivery_confirmed_at": _iso(self.delivery_confirmed_at),
        }

    def __repr__(self) -> str:
        return f"<MissingItemApproval #{self.id} {self.item_name} x{self.quantity_needed}>"


class StepDocument(db.Model):
    """Summary of a document handed to the engine after external validation."""

    __tablename__ = "workflow_step_documents"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(30), nullable=False, comment="site_survey | sizing_pricing | bank_guarantee | project_cost")
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, nullable=True)
    mime_type = db.Column(db.String(120), nullable=True)
    summary = db.Column(db.JSON, nullable=True)
    uploaded_by = db.Column(db.String(100), nullable=False)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "step_number": self.step_number,
            "kind": self.kind,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "summary": self.summary,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": _iso(self.uploaded_at),
        }


# ── Factories ────────────────────────────────────────────────────────────────


def new_workflow(project_id: int, created_by: str) -> Workflow:
    """Build a workflow with its eight incomplete steps (not yet added to the session)."""
    now = _utcnow()
    wf = Workflow(
        project_id=project_id,
        created_by=created_by,
        current_step=1,
        status=WorkflowStatus.IN_PROGRESS,
        created_at=now,
        last_updated_at=now,
        last_updated_by=created_by,
    )
    for number, (name, role, _optional) in sorted(STEP_DEFINITIONS.items()):
        wf.steps.append(StepState(
            step_number=number,
            step_name=name,
            target_role=role,
            completed=False,
            outcome=StepOutcome.PENDING,
            needs_external_action=False,
            external_action_completed=False,
            is_delayed=False,
            danger_alarm_sent=False,
            has_issues=False,
            is_on_hold=False,
            assignment_status=AssignmentStatus.PENDING_ASSIGNMENT,
        ))
    return wf


def new_missing_item(workflow_id: int, item_name: str, quantity_needed: int,
                     requested_by: str, item_description: str | None = None) -> MissingItemApproval:
    return MissingItemApproval(
        workflow_id=workflow_id,
        item_name=item_name,
        item_description=item_description,
        quantity_needed=quantity_needed,
        requested_by=requested_by,
        requested_at=_utcnow(),
        approval_status=ApprovalStatus.PENDING,
        item_delivered=False,
    )


def new_step_document(workflow_id: int, step_number: int, kind: str, summary, uploaded_by: str) -> StepDocument:
    return StepDocument(
        workflow_id=workflow_id,
        step_number=step_number,
        kind=kind,
        file_name=summary.file_name,
        file_size=summary.file_size,
        mime_type=summary.mime_type,
        summary=summary.to_dict(),
        uploaded_by=uploaded_by,
        uploaded_at=_utcnow(),
    )
