"""
Sales Project Workflow Platform
Notification contract, event catalog and stored-notification service.

The engine emits exactly one ``NotificationEvent`` per distinct transition and
hands it to a ``NotificationDispatcher``. Title, priority and target module of
every event come from ``EVENT_CATALOG``. Fan-out to individual users, delivery
and read tracking belong to the dispatcher; the shipped
``DatabaseNotificationDispatcher`` stores one ``Notification`` row per event,
addressed to the target module.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Protocol

from salesflow.models import db
from salesflow.models.notification import Notification
from salesflow.models.workflow import Priority, Role

logger = logging.getLogger(__name__)


# ── Module names used as notification sources/targets ────────────────────────

MODULE_SALES = "sales"
MODULE_PRESALES = "presales"
MODULE_FINANCE = "finance"
MODULE_PROJECTS = "projects"
MODULE_STORAGE = "storage"
MODULE_QA = "qualityassurance"
MODULE_MASTER = "master"
MODULE_MASTER_SALES_MANAGER = "master_sales_manager"
MODULE_ALL = "all"

ENTITY_WORKFLOW = "workflow"
ENTITY_MISSING_ITEM = "missing_item"

_ROLE_MODULES = {
    Role.MASTER: MODULE_MASTER,
    Role.SALES: MODULE_SALES,
    Role.SALES_MANAGER: MODULE_SALES,
    Role.PRESALES: MODULE_PRESALES,
    Role.FINANCE: MODULE_FINANCE,
    Role.PROJECTS: MODULE_PROJECTS,
    Role.QUALITY_ASSURANCE: MODULE_QA,
    Role.STORAGE: MODULE_STORAGE,
}


def module_for_role(role: Role) -> str:
    """Notification module name a role acts from."""
    return _ROLE_MODULES[role]


class EventType(str, enum.Enum):
    WORKFLOW_CREATED = "workflow_created"
    SITE_SURVEY_COMPLETED = "site_survey_completed"
    SITE_SURVEY_REQUESTED = "site_survey_requested"
    SITE_SURVEY_SUBMITTED = "site_survey_submitted"
    SELECTION_DESIGN_SKIPPED = "selection_design_skipped"
    SELECTION_DESIGN_REQUESTED = "selection_design_requested"
    SELECTION_DESIGN_SUBMITTED = "selection_design_submitted"
    BANK_GUARANTEE_SKIPPED = "bank_guarantee_skipped"
    BANK_GUARANTEE_REQUESTED = "bank_guarantee_requested"
    BANK_GUARANTEE_SUBMITTED = "bank_guarantee_submitted"
    NO_MISSING_ITEMS = "no_missing_items"
    MISSING_ITEM_SUBMITTED = "missing_item_submitted"
    MISSING_ITEM_PARTIALLY_APPROVED = "missing_item_partially_approved"
    MISSING_ITEM_APPROVED = "missing_item_approved"
    MISSING_ITEMS_ADDED = "missing_items_added"
    TENDER_ACCEPTED = "tender_accepted"
    TENDER_REJECTED = "tender_rejected"
    PROJECT_WORK_COMPLETED = "project_work_completed"
    PROJECT_FINISHED = "project_finished"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_COMPLETED_WITH_ISSUES = "execution_completed_with_issues"
    EXECUTION_HELD = "execution_held"
    EXECUTION_RELEASED = "execution_released"
    DELAY_ALARM = "delay_alarm"
    DELAY_UPDATED = "delay_updated"
    AFTER_SALES_SKIPPED = "after_sales_skipped"
    AFTER_SALES_REQUESTED = "after_sales_requested"
    AFTER_SALES_COMPLETED = "after_sales_completed"
    WORKFLOW_COMPLETED = "workflow_completed"
    STEP_ASSIGNED = "step_assigned"


# event type -> (title, priority, target module)
EVENT_CATALOG: dict[EventType, tuple[str, Priority, str]] = {
    EventType.WORKFLOW_CREATED: ("Project Workflow Started", Priority.LOW, MODULE_SALES),
    EventType.SITE_SURVEY_COMPLETED: ("Site Survey Completed", Priority.HIGH, MODULE_SALES),
    EventType.SITE_SURVEY_REQUESTED: ("Site Survey Request", Priority.HIGH, MODULE_PROJECTS),
    EventType.SITE_SURVEY_SUBMITTED: ("Site Survey Completed", Priority.HIGH, MODULE_SALES),
    EventType.SELECTION_DESIGN_SKIPPED: ("Selection & Design Not Needed", Priority.LOW, MODULE_SALES),
    EventType.SELECTION_DESIGN_REQUESTED: ("Selection & Design Request", Priority.HIGH, MODULE_PRESALES),
    EventType.SELECTION_DESIGN_SUBMITTED: ("Sizing & Pricing Completed", Priority.HIGH, MODULE_SALES),
    EventType.BANK_GUARANTEE_SKIPPED: ("Bank Guarantee Not Needed", Priority.LOW, MODULE_SALES),
    EventType.BANK_GUARANTEE_REQUESTED: ("Bank Guarantee Request", Priority.HIGH, MODULE_FINANCE),
    EventType.BANK_GUARANTEE_SUBMITTED: ("Bank Guarantee Completed", Priority.HIGH, MODULE_SALES),
    EventType.NO_MISSING_ITEMS: ("No Missing Items", Priority.LOW, MODULE_SALES),
    EventType.MISSING_ITEM_SUBMITTED: (
        "Missing Item Approval Required", Priority.URGENT, MODULE_MASTER_SALES_MANAGER,
    ),
    EventType.MISSING_ITEM_PARTIALLY_APPROVED: (
        "Missing Item Partially Approved", Priority.HIGH, MODULE_MASTER_SALES_MANAGER,
    ),
    EventType.MISSING_ITEM_APPROVED: ("Missing Item Approved", Priority.HIGH, MODULE_STORAGE),
    EventType.MISSING_ITEMS_ADDED: ("Missing Elements Added", Priority.MEDIUM, MODULE_ALL),
    EventType.TENDER_ACCEPTED: ("Project Start - Tender Accepted", Priority.URGENT, MODULE_PROJECTS),
    EventType.TENDER_REJECTED: ("Tender Rejected", Priority.HIGH, MODULE_ALL),
    EventType.PROJECT_WORK_COMPLETED: ("Project Work Completed", Priority.HIGH, MODULE_SALES),
    EventType.PROJECT_FINISHED: ("Project Finished", Priority.HIGH, MODULE_QA),
    EventType.EXECUTION_COMPLETED: ("Project Execution Completed", Priority.HIGH, MODULE_SALES),
    EventType.EXECUTION_COMPLETED_WITH_ISSUES: (
        "Project Execution Completed With Issues", Priority.HIGH, MODULE_MASTER,
    ),
    EventType.EXECUTION_HELD: ("Project Execution On Hold", Priority.HIGH, MODULE_PROJECTS),
    EventType.EXECUTION_RELEASED: ("Project Execution Released", Priority.MEDIUM, MODULE_PROJECTS),
    EventType.DELAY_ALARM: ("DANGER: Project Delay", Priority.URGENT, MODULE_MASTER),
    EventType.DELAY_UPDATED: ("Project Delay Updated", Priority.HIGH, MODULE_MASTER),
    EventType.AFTER_SALES_SKIPPED: ("After-Sales Check Not Needed", Priority.LOW, MODULE_SALES),
    EventType.AFTER_SALES_REQUESTED: ("After-Sales Check Required", Priority.MEDIUM, MODULE_QA),
    EventType.AFTER_SALES_COMPLETED: ("After-Sales Check Completed", Priority.MEDIUM, MODULE_SALES),
    EventType.WORKFLOW_COMPLETED: ("Project Workflow Completed", Priority.MEDIUM, MODULE_ALL),
    EventType.STEP_ASSIGNED: ("Workflow Step Assigned", Priority.MEDIUM, MODULE_ALL),
}


@dataclass(frozen=True)
class NotificationEvent:
    """One logical notification emitted by a workflow transition."""
    event_type: EventType
    title: str
    body: str
    source_module: str
    target_module: str
    entity_type: str
    entity_id: int | None
    priority: Priority
    actor: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        data["priority"] = self.priority.value
        return data


def build_event(
    event_type: EventType,
    *,
    body: str,
    source_module: str,
    entity_id: int | None,
    actor: str,
    entity_type: str = ENTITY_WORKFLOW,
    target_module: str | None = None,
) -> NotificationEvent:
    """Create an event whose title and priority come from the catalog.

    ``target_module`` overrides the catalog target (e.g. step assignment).
    """
    title, priority, default_target = EVENT_CATALOG[event_type]
    return NotificationEvent(
        event_type=event_type,
        title=title,
        body=body,
        source_module=source_module,
        target_module=target_module or default_target,
        entity_type=entity_type,
        entity_id=entity_id,
        priority=priority,
        actor=actor,
    )


class NotificationDispatcher(Protocol):
    """Receives one event per transition, after the transition is committed."""

    def publish(self, event: NotificationEvent) -> None: ...


class DatabaseNotificationDispatcher:
    """Stores each event as a ``Notification`` row addressed to its target module."""

    def publish(self, event: NotificationEvent) -> None:
        NotificationService.create(
            title=event.title,
            message=event.body,
            priority=event.priority.value,
            recipient=event.target_module,
            source_module=event.source_module,
            actor=event.actor,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
        )
        logger.info(
            "Notification stored",
            extra={"event_type": event.event_type.value, "entity_id": event.entity_id,
                   "target_module": event.target_module},
        )


class NotificationService:
    """Stateless service class for stored notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", priority="MEDIUM", recipient="all",
               source_module="workflow", actor=None, entity_type="workflow", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            source_module=source_module,
            title=title,
            message=message,
            priority=priority,
            actor=actor,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", entity_id=None, unread_only=False,
                           limit=50, offset=0):
        """
        Retrieve notifications for a recipient module, newest first.
        """
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        )
        if entity_id:
            q = q.filter_by(entity_id=entity_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()) \
            .offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient="all"):
        """Return count of unread notifications."""
        return Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        ).filter_by(is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient="all"):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        ).filter_by(is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
