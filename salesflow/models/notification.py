"""
Sales Project Workflow Platform
Stored notification model.

Models:
    - Notification: one persisted workflow event per recipient module, with
      read tracking
"""

from datetime import datetime, timezone

from salesflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_PRIORITIES = {"LOW", "MEDIUM", "HIGH", "URGENT"}
NOTIFICATION_ENTITY_TYPES = {"workflow", "workflow_step", "missing_item"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient module per published event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(60), default="all", index=True, comment="Target module or 'all' for broadcast")
    source_module = db.Column(db.String(60), default="workflow")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), default="MEDIUM")
    actor = db.Column(db.String(100), nullable=True)

    # Link to source entity
    entity_type = db.Column(db.String(30), default="workflow", comment="workflow/workflow_step/missing_item")
    entity_id = db.Column(db.Integer, nullable=True, index=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "source_module": self.source_module,
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "actor": self.actor,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
