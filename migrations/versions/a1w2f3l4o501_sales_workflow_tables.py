"""Sales project workflow, steps, missing items, documents & notifications

Revision ID: a1w2f3l4o501
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "a1w2f3l4o501"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "workflows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False, index=True),
        sa.Column("created_by", sa.String(100), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(40), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("last_updated_by", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_updated_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_at", sa.DateTime(timezone=True), index=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("current_step BETWEEN 1 AND 8", name="ck_workflows_current_step"),
    )
    op.create_index(
        "uq_workflows_active_project",
        "workflows",
        ["project_id"],
        unique=True,
        sqlite_where=sa.text("deleted_at IS NULL"),
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "workflow_steps",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(100), nullable=False),
        sa.Column("target_role", sa.String(40)),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outcome", sa.String(40), nullable=False, server_default="PENDING"),
        sa.Column("completed_by", sa.String(100)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("needs_external_action", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("external_module", sa.String(40)),
        sa.Column("external_action_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("external_completed_by", sa.String(100)),
        sa.Column("external_completed_at", sa.DateTime(timezone=True)),
        sa.Column("rejection_reason", sa.Text()),
        sa.Column("is_delayed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expected_completion_date", sa.Date()),
        sa.Column("delay_details", sa.Text()),
        sa.Column("danger_alarm_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_issues", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text()),
        sa.Column("assigned_to", sa.String(100)),
        sa.Column("assigned_by", sa.String(100)),
        sa.Column("assigned_at", sa.DateTime(timezone=True)),
        sa.Column("assignment_status", sa.String(40), nullable=False, server_default="PENDING_ASSIGNMENT"),
        sa.Column("is_on_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("hold_reason", sa.Text()),
        sa.Column("held_by", sa.String(100)),
        sa.Column("held_at", sa.DateTime(timezone=True)),
        sa.Column("released_by", sa.String(100)),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("workflow_id", "step_number", name="uq_workflow_steps_number"),
    )
    op.create_index("ix_workflow_steps_external", "workflow_steps", ["external_module", "external_action_completed"])
    op.create_index("ix_workflow_steps_assignee", "workflow_steps", ["assigned_to", "completed"])

    op.create_table(
        "missing_item_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("item_description", sa.Text()),
        sa.Column("quantity_needed", sa.Integer(), nullable=False),
        sa.Column("requested_by", sa.String(100), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("approval_status", sa.String(40), nullable=False, server_default="PENDING"),
        sa.Column("approved_by_master", sa.String(100)),
        sa.Column("master_approved_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by_sales_manager", sa.String(100)),
        sa.Column("sales_manager_approved_at", sa.DateTime(timezone=True)),
        sa.Column("item_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivery_confirmed_by", sa.String(100)),
        sa.Column("delivery_confirmed_at", sa.DateTime(timezone=True)),
    )

    op.create_table(
        "workflow_step_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("workflow_id", sa.Integer(), sa.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(30), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.Integer()),
        sa.Column("mime_type", sa.String(120)),
        sa.Column("summary", sa.JSON()),
        sa.Column("uploaded_by", sa.String(100), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient", sa.String(60), server_default="all", index=True),
        sa.Column("source_module", sa.String(60), server_default="workflow"),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), server_default=""),
        sa.Column("priority", sa.String(20), server_default="MEDIUM"),
        sa.Column("actor", sa.String(100)),
        sa.Column("entity_type", sa.String(30), server_default="workflow"),
        sa.Column("entity_id", sa.Integer(), index=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("notifications")
    op.drop_table("workflow_step_documents")
    op.drop_table("missing_item_approvals")
    op.drop_index("ix_workflow_steps_assignee", table_name="workflow_steps")
    op.drop_index("ix_workflow_steps_external", table_name="workflow_steps")
    op.drop_table("workflow_steps")
    op.drop_index("uq_workflows_active_project", table_name="workflows")
    op.drop_table("workflows")
