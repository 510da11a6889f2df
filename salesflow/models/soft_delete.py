"""
Soft Delete Mixin — active-record filter for workflow rows.

Adds a `deleted_at` timestamp column and query helpers. Workflow rows are
never physically removed; the surrounding application marks them inactive
and every repository lookup goes through ``query_active()``.

Usage:
    class Workflow(SoftDeleteMixin, db.Model):
        ...

    # Mark inactive
    wf.soft_delete()
    db.session.commit()

    # Query only active records
    Workflow.query_active().filter_by(project_id=7).first()
"""

from datetime import datetime, timezone

from salesflow.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as inactive."""
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_active(self):
        return self.deleted_at is None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
