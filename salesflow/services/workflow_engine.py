"""
Workflow Engine — eight-step sales project approval pipeline.

Steps:
    1 Site Survey          mandatory  direct or delegated to PROJECT
    2 Selection & Design   optional   delegated to PRESALES
    3 Bank Guarantee       optional   delegated to FINANCE
    4 Missing Items        optional   dual control by MASTER + SALES_MANAGER
    5 Tender Acceptance    mandatory  accept (delegates to PROJECT) or reject
    6 Project Execution    mandatory  delay escalation, hold, issues outcome
    7 After-Sales Check    optional   delegated to QUALITY_ASSURANCE
    8 Completion           mandatory  sets COMPLETED and runs the export hook

Design decisions:
    - Every mutating operation runs inside ``_transition``: per-workflow
      in-process lock, locking read, gating check, mutation, commit. Events
      are published only after the commit succeeds (commit-then-notify).
    - A stale optimistic-lock write (``StaleDataError``) is retried up to
      ``max_retries`` times, then surfaces as ConcurrentModificationError.
      Business-rule errors are never retried.
    - Completing transitions advance ``current_step`` by exactly one and emit
      exactly one event. Step 8 sets the status instead of advancing.
    - Dispatcher and exporter failures are logged; the committed transition
      stands.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from salesflow.core.exceptions import (
    ConcurrentModificationError,
    ConflictError,
    DuplicateWorkflowError,
    StepAlreadyCompletedError,
    StepNotFoundError,
    TerminalStateError,
    UnauthorizedError,
    ValidationError,
)
from salesflow.models import db
from salesflow.models.workflow import (
    MODULE_ROLES,
    STEP_COUNT,
    ApprovalStatus,
    ApproverRole,
    AssignmentStatus,
    ExternalModule,
    Role,
    StepOutcome,
    WorkflowStatus,
    new_missing_item,
    new_step_document,
    new_workflow,
)
from salesflow.services import delay_escalation, external_action, gating
from salesflow.services import workflow_repository as repo
from salesflow.services.documents import STEP_DOCUMENT_KINDS, check_summary
from salesflow.services.notification import (
    ENTITY_MISSING_ITEM,
    EventType,
    build_event,
    module_for_role,
)

logger = logging.getLogger(__name__)

SALES_ROLES = frozenset({Role.SALES, Role.SALES_MANAGER, Role.MASTER})
APPROVER_ROLES = frozenset({Role.MASTER, Role.SALES_MANAGER})


@dataclass(frozen=True)
class Actor:
    """The acting user of a transition."""
    username: str
    role: Role


@dataclass
class TransitionResult:
    """Updated workflow and step plus the events emitted by one operation."""
    workflow: object
    step: object = None
    events: list = field(default_factory=list)
    missing_item: object = None

    def to_dict(self) -> dict:
        data = {
            "workflow": self.workflow.to_dict(),
            "step": self.step.to_dict() if self.step is not None else None,
            "events": [e.to_dict() for e in self.events],
        }
        if self.missing_item is not None:
            data["missing_item"] = self.missing_item.to_dict()
        return data


class _LockRegistry:
    """One re-entrant lock per key, shared while any caller holds it.

    Locks are kept in a ``WeakValueDictionary``: once no thread references a
    key's lock it is dropped, so the registry only holds locks in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, key) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """Orchestrates step transitions for sales project workflows.

    Collaborators are injected:
        dispatcher          NotificationDispatcher, receives committed events
        document_validator  DocumentValidator used by callers to build summaries
        exporter            optional WorkflowExporter run after step 8
    """

    def __init__(self, dispatcher, document_validator=None, exporter=None, max_retries: int = 3):
        self.dispatcher = dispatcher
        self.document_validator = document_validator
        self.exporter = exporter
        self.max_retries = max(0, int(max_retries))
        self._locks = _LockRegistry()

    # ── Infrastructure ────────────────────────────────────────────────────

    def lock_for(self, workflow_id: int) -> threading.RLock:
        return self._locks.get(("workflow", workflow_id))

    @staticmethod
    def _require_role(actor: Actor, allowed, action: str) -> None:
        if actor.role is Role.MASTER or actor.role in allowed:
            return
        raise UnauthorizedError(actor.username, actor.role.value, action.replace("_", " "))

    @staticmethod
    def _open_step(workflow, step_number: int):
        """Gate ``step_number`` and return it, refusing completed steps."""
        gating.require_can_start(workflow, step_number)
        step = workflow.step(step_number)
        if step is None:
            raise StepNotFoundError(workflow.id, step_number)
        if step.completed:
            raise StepAlreadyCompletedError(workflow.id, step_number)
        return step

    @staticmethod
    def _touch(workflow, actor: Actor) -> None:
        workflow.last_updated_by = actor.username
        workflow.last_updated_at = _utcnow()

    def _complete_step(self, workflow, step, actor: Actor, outcome=StepOutcome.COMPLETED) -> None:
        step.completed = True
        step.outcome = outcome
        step.completed_by = actor.username
        step.completed_at = _utcnow()
        step.assignment_status = AssignmentStatus.COMPLETED
        if step.step_number < STEP_COUNT:
            workflow.current_step = step.step_number + 1
        self._touch(workflow, actor)

    @staticmethod
    def _store_document(workflow, step_number: int, summary, actor: Actor) -> None:
        db.session.add(new_step_document(
            workflow.id, step_number, STEP_DOCUMENT_KINDS[step_number], summary, actor.username,
        ))

    @staticmethod
    def _event(event_type, workflow, actor: Actor, body: str, **kwargs):
        kwargs.setdefault("entity_id", workflow.id)
        return build_event(
            event_type,
            body=body,
            source_module=module_for_role(actor.role),
            actor=actor.username,
            **kwargs,
        )

    def _transition(self, workflow_id: int, actor: Actor, action: str, mutate, *,
                    roles=None, validate=None) -> TransitionResult:
        """Run ``mutate(workflow) -> (step, events[, extra])`` serialized per workflow.

        A terminal workflow refuses every operation before ``roles`` and
        ``validate`` (the payload check) are consulted.
        """
        attempts = 0
        with self.lock_for(workflow_id):
            while True:
                attempts += 1
                try:
                    workflow = repo.get_active(workflow_id, for_update=True)
                    if workflow.is_terminal:
                        raise TerminalStateError(workflow.id, workflow.status.value)
                    if roles is not None:
                        self._require_role(actor, roles, action)
                    if validate is not None:
                        validate()
                    outcome = mutate(workflow)
                    # commit expires these
                    log_extra = {
                        "workflow_id": workflow_id,
                        "project_id": workflow.project_id,
                        "step_number": outcome[0].step_number if outcome[0] is not None else None,
                        "actor": actor.username,
                    }
                    db.session.commit()
                    break
                except StaleDataError:
                    db.session.rollback()
                    if attempts > self.max_retries:
                        logger.warning(
                            "Concurrent modification, giving up",
                            extra={"workflow_id": workflow_id, "action": action, "attempts": attempts},
                        )
                        raise ConcurrentModificationError(workflow_id, attempts)
                    logger.info(
                        "Concurrent modification, retrying",
                        extra={"workflow_id": workflow_id, "action": action, "attempts": attempts},
                    )
                except Exception:
                    db.session.rollback()
                    raise

        step, events, *rest = outcome
        logger.info("Workflow transition %s", action, extra=log_extra)
        self._dispatch(events)
        return TransitionResult(workflow=workflow, step=step, events=events,
                                missing_item=rest[0] if rest else None)

    def _dispatch(self, events) -> None:
        for event in events:
            try:
                self.dispatcher.publish(event)
            except Exception:
                db.session.rollback()
                logger.exception(
                    "Notification dispatch failed",
                    extra={"event_type": event.event_type.value, "workflow_id": event.entity_id},
                )

    # ── Generic step shapes ───────────────────────────────────────────────

    def _request_external(self, workflow_id, actor, step_number, module, event_type, action):
        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            external_action.mark_needs_external_action(step, module)
            self._touch(workflow, actor)
            body = f"{step.step_name} requested for project {workflow.project_id} by {actor.username}"
            return step, [self._event(event_type, workflow, actor, body)]

        return self._transition(workflow_id, actor, action, mutate, roles=SALES_ROLES)

    def _submit_external(self, workflow_id, actor, step_number, module, event_type, action,
                         document=None, notes=None):
        def validate():
            if step_number in STEP_DOCUMENT_KINDS:
                check_summary(document, step_number)

        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            external_action.require_delegated_to(step, module)
            if document is not None:
                self._store_document(workflow, step_number, document, actor)
            if notes:
                step.append_note(notes)
            external_action.complete_external_action(step, actor.username)
            self._complete_step(workflow, step, actor)
            body = f"{step.step_name} for project {workflow.project_id} completed by {actor.username}"
            return step, [self._event(event_type, workflow, actor, body)]

        return self._transition(workflow_id, actor, action, mutate,
                                roles=MODULE_ROLES[module], validate=validate)

    def _skip(self, workflow_id, actor, step_number, event_type, action):
        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            if not step.is_optional:
                raise ValidationError(f"Step {step_number} is mandatory and cannot be skipped")
            self._complete_step(workflow, step, actor, StepOutcome.SKIPPED)
            body = f"{step.step_name} not needed for project {workflow.project_id}"
            return step, [self._event(event_type, workflow, actor, body)]

        return self._transition(workflow_id, actor, action, mutate, roles=SALES_ROLES)

    # ── Creation & queries ────────────────────────────────────────────────

    def create(self, project_id: int, actor: Actor) -> TransitionResult:
        """Start the workflow for ``project_id``; one active workflow per project."""
        self._require_role(actor, SALES_ROLES, "create a workflow")
        with self._locks.get(("project", project_id)):
            if repo.find_for_project(project_id) is not None:
                raise DuplicateWorkflowError(project_id)
            workflow = new_workflow(project_id, actor.username)
            db.session.add(workflow)
            try:
                db.session.commit()
            except IntegrityError as exc:
                db.session.rollback()
                logger.warning("Duplicate workflow rejected by index: %s", exc.orig,
                               extra={"project_id": project_id})
                raise DuplicateWorkflowError(project_id) from exc

        logger.info("Workflow created",
                    extra={"workflow_id": workflow.id, "project_id": project_id, "actor": actor.username})
        events = [self._event(EventType.WORKFLOW_CREATED, workflow, actor,
                              f"Workflow started for project {project_id} by {actor.username}")]
        self._dispatch(events)
        return TransitionResult(workflow=workflow, step=workflow.step(1), events=events)

    def get_workflow(self, workflow_id: int):
        return repo.get_active(workflow_id)

    def get_workflow_for_project(self, project_id: int):
        return repo.get_for_project(project_id)

    def list_active_workflows(self, created_by: str | None = None):
        return repo.list_active(created_by)

    def get_steps(self, workflow_id: int):
        return list(repo.get_active(workflow_id).steps)

    def get_missing_items(self, workflow_id: int):
        repo.get_active(workflow_id)
        return repo.missing_items_for(workflow_id)

    def pending_external_actions(self, module: ExternalModule):
        return external_action.pending_for_module(module)

    def delayed_steps(self):
        return delay_escalation.delayed_steps()

    def deactivate(self, workflow_id: int, actor: Actor) -> TransitionResult:
        """Soft-delete the workflow so a new one may be created for the project."""
        self._require_role(actor, APPROVER_ROLES, "deactivate a workflow")
        with self.lock_for(workflow_id):
            workflow = repo.get_active(workflow_id, for_update=True)
            workflow.soft_delete()
            self._touch(workflow, actor)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
        logger.info("Workflow deactivated",
                    extra={"workflow_id": workflow_id, "project_id": workflow.project_id,
                           "actor": actor.username})
        return TransitionResult(workflow=workflow)

    # ── Assignment ────────────────────────────────────────────────────────

    def assign_step(self, workflow_id: int, step_number: int, assignee: str, actor: Actor) -> TransitionResult:
        """Route an open step to a named user. Reassigning resets it to ASSIGNED."""
        assignee = (assignee or "").strip()

        def validate():
            if not assignee:
                raise ValidationError("assignee is required", details={"assignee": "required"})

        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            step.assigned_to = assignee
            step.assigned_by = actor.username
            step.assigned_at = _utcnow()
            step.assignment_status = AssignmentStatus.ASSIGNED
            self._touch(workflow, actor)
            body = f"{step.step_name} of project {workflow.project_id} assigned to {assignee}"
            return step, [self._event(EventType.STEP_ASSIGNED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "assign_step", mutate,
                                roles=SALES_ROLES, validate=validate)

    def start_step(self, workflow_id: int, step_number: int, actor: Actor) -> TransitionResult:
        """The assignee reports that work on the step has started. Emits nothing."""
        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            if step.assignment_status is not AssignmentStatus.ASSIGNED:
                raise ConflictError(
                    "Workflow step",
                    message=f"Step {step_number} is {step.assignment_status.value}, not ASSIGNED",
                )
            if actor.role is not Role.MASTER and step.assigned_to != actor.username:
                raise UnauthorizedError(actor.username, actor.role.value,
                                        f"start a step assigned to {step.assigned_to}")
            step.assignment_status = AssignmentStatus.IN_PROGRESS
            self._touch(workflow, actor)
            return step, []

        return self._transition(workflow_id, actor, "start_step", mutate)

    def steps_assigned_to(self, username: str, pending_only: bool = False):
        return repo.steps_assigned_to(username, pending_only=pending_only)

    def count_pending_steps_for(self, username: str) -> int:
        return repo.count_pending_steps_for(username)

    def unassigned_steps_for_role(self, role: Role):
        return repo.unassigned_steps_for_role(role)

    # ── Step 1: Site Survey ───────────────────────────────────────────────

    def complete_site_survey(self, workflow_id: int, actor: Actor, document) -> TransitionResult:
        """Sales uploads the site survey directly."""
        def mutate(workflow):
            step = self._open_step(workflow, 1)
            self._store_document(workflow, 1, document, actor)
            self._complete_step(workflow, step, actor)
            body = f"Site survey for project {workflow.project_id} uploaded by {actor.username}"
            return step, [self._event(EventType.SITE_SURVEY_COMPLETED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "complete_site_survey", mutate,
                                roles=SALES_ROLES, validate=lambda: check_summary(document, 1))

    def request_site_survey(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._request_external(workflow_id, actor, 1, ExternalModule.PROJECT,
                                      EventType.SITE_SURVEY_REQUESTED, "request_site_survey")

    def submit_site_survey(self, workflow_id: int, actor: Actor, document) -> TransitionResult:
        return self._submit_external(workflow_id, actor, 1, ExternalModule.PROJECT,
                                     EventType.SITE_SURVEY_SUBMITTED, "submit_site_survey",
                                     document=document)

    # ── Step 2: Selection & Design ────────────────────────────────────────

    def mark_selection_design_not_needed(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._skip(workflow_id, actor, 2, EventType.SELECTION_DESIGN_SKIPPED,
                          "mark_selection_design_not_needed")

    def request_selection_design(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._request_external(workflow_id, actor, 2, ExternalModule.PRESALES,
                                      EventType.SELECTION_DESIGN_REQUESTED, "request_selection_design")

    def submit_selection_design(self, workflow_id: int, actor: Actor, document) -> TransitionResult:
        return self._submit_external(workflow_id, actor, 2, ExternalModule.PRESALES,
                                     EventType.SELECTION_DESIGN_SUBMITTED, "submit_selection_design",
                                     document=document)

    # ── Step 3: Bank Guarantee ────────────────────────────────────────────

    def mark_bank_guarantee_not_needed(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._skip(workflow_id, actor, 3, EventType.BANK_GUARANTEE_SKIPPED,
                          "mark_bank_guarantee_not_needed")

    def request_bank_guarantee(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._request_external(workflow_id, actor, 3, ExternalModule.FINANCE,
                                      EventType.BANK_GUARANTEE_REQUESTED, "request_bank_guarantee")

    def submit_bank_guarantee(self, workflow_id: int, actor: Actor, document) -> TransitionResult:
        return self._submit_external(workflow_id, actor, 3, ExternalModule.FINANCE,
                                     EventType.BANK_GUARANTEE_SUBMITTED, "submit_bank_guarantee",
                                     document=document)

    # ── Step 4: Missing Items ─────────────────────────────────────────────

    @staticmethod
    def _require_no_open_items(workflow) -> None:
        open_items = [i.id for i in repo.missing_items_for(workflow.id) if not i.item_delivered]
        if open_items:
            raise ConflictError(
                "Workflow step",
                message=f"Step 4 has {len(open_items)} missing-item request(s) awaiting dual approval",
                details={"open_items": open_items},
            )

    @staticmethod
    def _require_positive_int(value, field_name: str) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"{field_name} must be a positive integer", details={field_name: "invalid"})

    def mark_no_missing_items(self, workflow_id: int, actor: Actor) -> TransitionResult:
        def mutate(workflow):
            step = self._open_step(workflow, 4)
            self._require_no_open_items(workflow)
            self._complete_step(workflow, step, actor, StepOutcome.SKIPPED)
            body = f"No missing items for project {workflow.project_id}"
            return step, [self._event(EventType.NO_MISSING_ITEMS, workflow, actor, body)]

        return self._transition(workflow_id, actor, "mark_no_missing_items", mutate, roles=SALES_ROLES)

    def complete_with_elements_added(self, workflow_id: int, actor: Actor, count: int) -> TransitionResult:
        """Storage confirms ``count`` elements were added to the project."""
        def mutate(workflow):
            step = self._open_step(workflow, 4)
            self._require_no_open_items(workflow)
            step.append_note(f"{count} element(s) added")
            self._complete_step(workflow, step, actor)
            body = f"{count} missing element(s) added to project {workflow.project_id} by {actor.username}"
            return step, [self._event(EventType.MISSING_ITEMS_ADDED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "complete_with_elements_added", mutate,
                                roles=SALES_ROLES | {Role.STORAGE},
                                validate=lambda: self._require_positive_int(count, "count"))

    def submit_missing_item(self, workflow_id: int, actor: Actor, item_name: str, quantity_needed: int,
                            item_description: str | None = None) -> TransitionResult:
        """Request a missing item; it needs MASTER and SALES_MANAGER approval."""
        item_name = (item_name or "").strip()

        def validate():
            if not item_name:
                raise ValidationError("item_name is required", details={"item_name": "required"})
            self._require_positive_int(quantity_needed, "quantity_needed")

        def mutate(workflow):
            step = self._open_step(workflow, 4)
            item = new_missing_item(workflow.id, item_name, quantity_needed, actor.username, item_description)
            db.session.add(item)
            db.session.flush()
            if external_action.awaiting_module(step) != ExternalModule.MASTER_SALES_MANAGER:
                external_action.mark_needs_external_action(step, ExternalModule.MASTER_SALES_MANAGER)
            self._touch(workflow, actor)
            body = (f"{item_name} x{quantity_needed} requested for project {workflow.project_id} "
                    f"by {actor.username}; master and sales manager approval required")
            event = self._event(EventType.MISSING_ITEM_SUBMITTED, workflow, actor, body,
                                entity_type=ENTITY_MISSING_ITEM, entity_id=item.id)
            return step, [event], item

        return self._transition(workflow_id, actor, "submit_missing_item", mutate,
                                roles=SALES_ROLES | {Role.STORAGE}, validate=validate)

    def approve_missing_item(self, item_id: int, actor: Actor) -> TransitionResult:
        """Sign a missing-item request as MASTER or SALES_MANAGER.

        The item is delivered once both roles have signed (distinct users).
        Step 4 completes when every request of the workflow is delivered.
        """
        workflow_id = repo.get_missing_item(item_id).workflow_id

        def validate():
            if actor.role not in APPROVER_ROLES:
                raise UnauthorizedError(actor.username, actor.role.value, "approve a missing item")

        def mutate(workflow):
            step = self._open_step(workflow, 4)
            item = repo.get_missing_item(item_id, for_update=True)
            if item.item_delivered:
                raise ConflictError("MissingItemApproval", message=f"Missing item {item_id} is already approved")
            slot = ApproverRole(actor.role.value)
            if item.signer(slot):
                raise ConflictError("MissingItemApproval",
                                    message=f"Missing item {item_id} is already signed by {slot.label}")
            if item.signer(slot.counterpart) == actor.username:
                raise ConflictError("MissingItemApproval",
                                    message="Master and sales manager signatures must come from different users")
            now = _utcnow()
            item.sign(slot, actor.username, now)
            self._touch(workflow, actor)

            if not item.is_fully_approved:
                body = f"{item.item_name} approved by {actor.username}; second signature pending"
                event = self._event(EventType.MISSING_ITEM_PARTIALLY_APPROVED, workflow, actor, body,
                                    entity_type=ENTITY_MISSING_ITEM, entity_id=item.id)
                return step, [event], item

            item.approval_status = ApprovalStatus.FULLY_APPROVED
            item.item_delivered = True
            item.delivery_confirmed_by = actor.username
            item.delivery_confirmed_at = now
            db.session.flush()

            body = f"{item.item_name} x{item.quantity_needed} fully approved for project {workflow.project_id}"
            if all(i.item_delivered for i in repo.missing_items_for(workflow.id)):
                external_action.complete_external_action(step, actor.username)
                self._complete_step(workflow, step, actor)
                body += "; step 4 completed"
            event = self._event(EventType.MISSING_ITEM_APPROVED, workflow, actor, body,
                                entity_type=ENTITY_MISSING_ITEM, entity_id=item.id)
            return step, [event], item

        return self._transition(workflow_id, actor, "approve_missing_item", mutate, validate=validate)

    # ── Step 5: Tender Acceptance ─────────────────────────────────────────

    def mark_tender_accepted(self, workflow_id: int, actor: Actor) -> TransitionResult:
        """Accept the tender; the step completes once PROJECTS confirms."""
        def mutate(workflow):
            step = self._open_step(workflow, 5)
            if external_action.awaiting_module(step) == ExternalModule.PROJECT:
                raise ConflictError("Workflow step", message="Tender is already accepted")
            external_action.mark_needs_external_action(step, ExternalModule.PROJECT)
            self._touch(workflow, actor)
            body = f"Tender accepted for project {workflow.project_id}; project team may start"
            return step, [self._event(EventType.TENDER_ACCEPTED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "mark_tender_accepted", mutate, roles=SALES_ROLES)

    def mark_tender_rejected(self, workflow_id: int, actor: Actor, reason: str) -> TransitionResult:
        """Reject the tender. The workflow becomes REJECTED (terminal)."""
        reason = (reason or "").strip()

        def validate():
            if not reason:
                raise ValidationError("A rejection reason is required", details={"reason": "required"})

        def mutate(workflow):
            step = self._open_step(workflow, 5)
            step.rejection_reason = reason
            step.outcome = StepOutcome.REJECTED
            step.assignment_status = AssignmentStatus.REJECTED
            workflow.status = WorkflowStatus.REJECTED
            self._touch(workflow, actor)
            body = f"Tender for project {workflow.project_id} rejected: {reason}"
            return step, [self._event(EventType.TENDER_REJECTED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "mark_tender_rejected", mutate,
                                roles=SALES_ROLES, validate=validate)

    def notify_project_completion(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._submit_external(workflow_id, actor, 5, ExternalModule.PROJECT,
                                     EventType.PROJECT_WORK_COMPLETED, "notify_project_completion")

    # ── Step 6: Project Execution ─────────────────────────────────────────

    @staticmethod
    def _require_not_held(step) -> None:
        if step.is_on_hold:
            raise ConflictError(
                "Workflow step",
                message=f"Project execution is on hold: {step.hold_reason}",
                details={"hold_reason": step.hold_reason, "held_by": step.held_by},
            )

    def confirm_project_finished(self, workflow_id: int, actor: Actor, cost_document) -> TransitionResult:
        """Sales confirms the project is finished and uploads the cost sheet."""
        def mutate(workflow):
            step = self._open_step(workflow, 6)
            self._require_not_held(step)
            self._store_document(workflow, 6, cost_document, actor)
            self._complete_step(workflow, step, actor)
            body = f"Project {workflow.project_id} finished; cost data uploaded by {actor.username}"
            return step, [self._event(EventType.PROJECT_FINISHED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "confirm_project_finished", mutate,
                                roles=SALES_ROLES, validate=lambda: check_summary(cost_document, 6))

    def mark_execution_completed(self, workflow_id: int, actor: Actor, success: bool = True,
                                 explanation: str | None = None) -> TransitionResult:
        """Projects closes execution, successfully or with issues. Both advance."""
        explanation = (explanation or "").strip()

        def validate():
            if not isinstance(success, bool):
                raise ValidationError("success must be a boolean", details={"success": "invalid"})
            if not success and not explanation:
                raise ValidationError("An explanation is required when execution completed with issues",
                                      details={"explanation": "required"})

        def mutate(workflow):
            step = self._open_step(workflow, 6)
            self._require_not_held(step)
            if success:
                outcome, event_type = StepOutcome.COMPLETED, EventType.EXECUTION_COMPLETED
                if explanation:
                    step.append_note(explanation)
                body = f"Project {workflow.project_id} execution completed successfully"
            else:
                outcome, event_type = StepOutcome.COMPLETED_WITH_ISSUES, EventType.EXECUTION_COMPLETED_WITH_ISSUES
                step.has_issues = True
                step.append_note(explanation)
                body = f"Project {workflow.project_id} execution completed with issues: {explanation}"
            self._complete_step(workflow, step, actor, outcome)
            return step, [self._event(event_type, workflow, actor, body)]

        return self._transition(workflow_id, actor, "mark_execution_completed", mutate,
                                roles={Role.PROJECTS}, validate=validate)

    def report_delay(self, workflow_id: int, actor: Actor, expected_date: date | None,
                     details: str | None = None, step_number: int = 6) -> TransitionResult:
        """Flag an in-progress step as delayed. The first report escalates to MASTER."""
        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            already_delayed = delay_escalation.report_delay(step, expected_date, details)
            self._touch(workflow, actor)
            due = expected_date.isoformat() if expected_date else "unknown"
            body = (f"{step.step_name} of project {workflow.project_id} is delayed; "
                    f"expected completion {due}")
            if details:
                body += f". {details}"
            if not already_delayed and delay_escalation.trigger_alarm(step):
                event_type = EventType.DELAY_ALARM
            else:
                event_type = EventType.DELAY_UPDATED
            return step, [self._event(event_type, workflow, actor, body)]

        return self._transition(workflow_id, actor, "report_delay", mutate,
                                roles=SALES_ROLES | {Role.PROJECTS})

    def trigger_alarm(self, workflow_id: int, actor: Actor, step_number: int = 6) -> TransitionResult:
        """Send the danger alarm for a step once; later calls emit nothing."""
        def mutate(workflow):
            step = self._open_step(workflow, step_number)
            if not delay_escalation.trigger_alarm(step):
                return step, []
            self._touch(workflow, actor)
            body = f"{step.step_name} of project {workflow.project_id} needs immediate attention"
            return step, [self._event(EventType.DELAY_ALARM, workflow, actor, body)]

        return self._transition(workflow_id, actor, "trigger_alarm", mutate,
                                roles=SALES_ROLES | {Role.PROJECTS})

    def hold_execution(self, workflow_id: int, actor: Actor, reason: str) -> TransitionResult:
        reason = (reason or "").strip()

        def validate():
            if not reason:
                raise ValidationError("A hold reason is required", details={"reason": "required"})

        def mutate(workflow):
            step = self._open_step(workflow, 6)
            if step.is_on_hold:
                raise ConflictError("Workflow step", message="Project execution is already on hold")
            step.is_on_hold = True
            step.hold_reason = reason
            step.held_by = actor.username
            step.held_at = _utcnow()
            self._touch(workflow, actor)
            body = f"Project {workflow.project_id} execution put on hold: {reason}"
            return step, [self._event(EventType.EXECUTION_HELD, workflow, actor, body)]

        return self._transition(workflow_id, actor, "hold_execution", mutate,
                                roles=SALES_ROLES, validate=validate)

    def release_execution(self, workflow_id: int, actor: Actor) -> TransitionResult:
        def mutate(workflow):
            step = self._open_step(workflow, 6)
            if not step.is_on_hold:
                raise ConflictError("Workflow step", message="Project execution is not on hold")
            step.is_on_hold = False
            step.released_by = actor.username
            step.released_at = _utcnow()
            self._touch(workflow, actor)
            body = f"Project {workflow.project_id} execution released by {actor.username}"
            return step, [self._event(EventType.EXECUTION_RELEASED, workflow, actor, body)]

        return self._transition(workflow_id, actor, "release_execution", mutate, roles=SALES_ROLES)

    # ── Step 7: After-Sales Check ─────────────────────────────────────────

    def mark_after_sales_not_needed(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._skip(workflow_id, actor, 7, EventType.AFTER_SALES_SKIPPED,
                          "mark_after_sales_not_needed")

    def request_after_sales_check(self, workflow_id: int, actor: Actor) -> TransitionResult:
        return self._request_external(workflow_id, actor, 7, ExternalModule.QUALITY_ASSURANCE,
                                      EventType.AFTER_SALES_REQUESTED, "request_after_sales_check")

    def complete_after_sales_check(self, workflow_id: int, actor: Actor, notes: str | None = None) -> TransitionResult:
        return self._submit_external(workflow_id, actor, 7, ExternalModule.QUALITY_ASSURANCE,
                                     EventType.AFTER_SALES_COMPLETED, "complete_after_sales_check",
                                     notes=(notes or "").strip() or None)

    # ── Step 8: Completion ────────────────────────────────────────────────

    def complete_workflow(self, workflow_id: int, actor: Actor) -> TransitionResult:
        """Close the workflow. ``current_step`` stays at 8; status becomes COMPLETED."""
        def mutate(workflow):
            step = self._open_step(workflow, 8)
            self._complete_step(workflow, step, actor)
            workflow.status = WorkflowStatus.COMPLETED
            workflow.completed_at = step.completed_at
            body = f"All steps completed for project {workflow.project_id}"
            return step, [self._event(EventType.WORKFLOW_COMPLETED, workflow, actor, body)]

        result = self._transition(workflow_id, actor, "complete_workflow", mutate, roles=SALES_ROLES)
        if self.exporter is not None:
            try:
                self.exporter.export_completed(result.workflow)
            except Exception:
                logger.exception("Workflow export failed", extra={"workflow_id": workflow_id})
        return result
