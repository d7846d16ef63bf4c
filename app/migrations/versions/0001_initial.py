"""Role-scoped access and notification dispatch schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

employee_status = postgresql.ENUM(
    "Active",
    "Inactive",
    "Terminated",
    name="employee_status",
    create_type=False,
)
approval_status = postgresql.ENUM(
    "Approved",
    "Pending",
    "Rejected",
    name="approval_status",
    create_type=False,
)
delivery_status = postgresql.ENUM(
    "sent",
    "no_targets",
    "failed",
    name="delivery_status",
    create_type=False,
)

JSON_COLUMN = postgresql.JSONB(astext_type=sa.Text())


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    employee_status.create(bind, checkfirst=True)
    approval_status.create(bind, checkfirst=True)
    delivery_status.create(bind, checkfirst=True)

    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("allowed_radius_m", sa.Float(), nullable=True),
        _timestamp("updated_at"),
        sa.CheckConstraint("allowed_radius_m IS NULL OR allowed_radius_m >= 0", name="ck_sites_radius_non_negative"),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("employee_code", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("status", employee_status, nullable=False, server_default="Active"),
        sa.Column("supervisor_id", sa.String(length=128), nullable=True),
        sa.Column("leave_approver_id", sa.String(length=128), nullable=True),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_employees_email", "employees", ["email"])
    op.create_index("ix_employees_supervisor_id", "employees", ["supervisor_id"])
    op.create_index("ix_employees_leave_approver_id", "employees", ["leave_approver_id"])

    op.create_table(
        "users",
        sa.Column("uid", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("employee_id", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("push_tokens", JSON_COLUMN, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_employee_id", "users", ["employee_id"])

    op.create_table(
        "user_roles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_uid", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(["user_uid"], ["users.uid"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_uid", "role", name="uq_user_roles_user_role"),
    )
    op.create_index("ix_user_roles_role", "user_roles", ["role"])

    op.create_table(
        "supervisor_links",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("supervisor_id", sa.String(length=128), nullable=False),
        sa.Column("is_supervisor", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_leave_approver", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_direct_supervisor", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "supervisor_id", name="uq_supervisor_links_employee_supervisor"),
    )
    op.create_index("ix_supervisor_links_supervisor_id", "supervisor_links", ["supervisor_id"])

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("site_id", sa.Integer(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", approval_status, nullable=False),
        sa.Column("distance_m", sa.Float(), nullable=True),
        sa.Column("is_inside_geofence", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(length=128), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_attendance_events_employee_id", "attendance_events", ["employee_id"])
    op.create_index("ix_attendance_events_ts_utc", "attendance_events", ["ts_utc"])

    op.create_table(
        "leave_applications",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("employee_name", sa.String(length=255), nullable=True),
        sa.Column("leave_type", sa.String(length=64), nullable=True),
        sa.Column("from_date", sa.Date(), nullable=True),
        sa.Column("to_date", sa.Date(), nullable=True),
        sa.Column("total_days", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", approval_status, nullable=False, server_default="Pending"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_leave_applications_employee_id", "leave_applications", ["employee_id"])
    op.create_index("ix_leave_applications_created_at", "leave_applications", ["created_at"])

    op.create_table(
        "visit_applications",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("employee_name", sa.String(length=255), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("from_date", sa.Date(), nullable=True),
        sa.Column("to_date", sa.Date(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", approval_status, nullable=False, server_default="Pending"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_visit_applications_employee_id", "visit_applications", ["employee_id"])
    op.create_index("ix_visit_applications_created_at", "visit_applications", ["created_at"])

    op.create_table(
        "expense_claims",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=128), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", approval_status, nullable=False, server_default="Pending"),
        _timestamp("created_at"),
    )
    op.create_index("ix_expense_claims_employee_id", "expense_claims", ["employee_id"])
    op.create_index("ix_expense_claims_created_at", "expense_claims", ["created_at"])

    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=False, server_default="Active"),
        _timestamp("created_at"),
    )
    op.create_index("ix_projects_employee_id", "projects", ["employee_id"])
    op.create_index("ix_projects_created_at", "projects", ["created_at"])

    op.create_table(
        "holidays",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("holiday_type", sa.String(length=64), nullable=True),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("announcement_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("email_sent_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "notification_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False, server_default=""),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("variables", JSON_COLUMN, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("updated_at"),
        sa.UniqueConstraint("slug", name="uq_notification_templates_slug"),
    )

    op.create_table(
        "delivery_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("dispatch_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("template_slug", sa.String(length=128), nullable=True),
        sa.Column("target_roles", JSON_COLUMN, nullable=True),
        sa.Column("user_ids", JSON_COLUMN, nullable=True),
        sa.Column("employee_ids", JSON_COLUMN, nullable=True),
        sa.Column("channels", JSON_COLUMN, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notified_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invalid_token_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("channel_breakdown", JSON_COLUMN, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("skipped_channels", JSON_COLUMN, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", delivery_status, nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        _timestamp("created_at"),
        sa.UniqueConstraint("dispatch_id", name="uq_delivery_records_dispatch_id"),
    )
    op.create_index("ix_delivery_records_event_type", "delivery_records", ["event_type"])
    op.create_index("ix_delivery_records_created_at", "delivery_records", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_delivery_records_created_at", table_name="delivery_records")
    op.drop_index("ix_delivery_records_event_type", table_name="delivery_records")
    op.drop_table("delivery_records")
    op.drop_table("notification_templates")
    op.drop_table("holidays")
    for table in ("projects", "expense_claims", "visit_applications", "leave_applications"):
        op.drop_index(f"ix_{table}_created_at", table_name=table)
        op.drop_index(f"ix_{table}_employee_id", table_name=table)
        op.drop_table(table)
    op.drop_index("ix_attendance_events_ts_utc", table_name="attendance_events")
    op.drop_index("ix_attendance_events_employee_id", table_name="attendance_events")
    op.drop_table("attendance_events")
    op.drop_index("ix_supervisor_links_supervisor_id", table_name="supervisor_links")
    op.drop_table("supervisor_links")
    op.drop_index("ix_user_roles_role", table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_index("ix_users_employee_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_employees_leave_approver_id", table_name="employees")
    op.drop_index("ix_employees_supervisor_id", table_name="employees")
    op.drop_index("ix_employees_email", table_name="employees")
    op.drop_table("employees")
    op.drop_table("sites")

    bind = op.get_bind()
    delivery_status.drop(bind, checkfirst=True)
    approval_status.drop(bind, checkfirst=True)
    employee_status.drop(bind, checkfirst=True)
