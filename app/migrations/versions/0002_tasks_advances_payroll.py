"""Add project tasks, advance salary requests, payroll records and employee birthdays

Revision ID: 0002_tasks_advances_payroll
Revises: 0001_initial
Create Date: 2026-10-19 12:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0002_tasks_advances_payroll"
down_revision: Union[str, None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

approval_status = postgresql.ENUM(
    "Approved",
    "Pending",
    "Rejected",
    name="approval_status",
    create_type=False,
)


def upgrade() -> None:
    op.add_column("employees", sa.Column("date_of_birth", sa.Date(), nullable=True))

    op.create_table(
        "project_tasks",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("task_code", sa.String(length=64), nullable=True),
        sa.Column("project_id", sa.String(length=128), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("priority", sa.String(length=32), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("task_code", name="uq_project_tasks_task_code"),
    )
    op.create_index("ix_project_tasks_project_id", "project_tasks", ["project_id"])

    op.create_table(
        "advance_salary_requests",
        sa.Column("id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("employee_name", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("approved_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("request_date", sa.Date(), nullable=True),
        sa.Column("status", approval_status, nullable=False, server_default="Pending"),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_advance_salary_requests_employee_id", "advance_salary_requests", ["employee_id"])
    op.create_index("ix_advance_salary_requests_created_at", "advance_salary_requests", ["created_at"])

    op.create_table(
        "payroll_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.String(length=128), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("basic_salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_allowances", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_deductions", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("net_salary", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint("employee_id", "month", name="uq_payroll_records_employee_month"),
    )
    op.create_index("ix_payroll_records_employee_id", "payroll_records", ["employee_id"])
    op.create_index("ix_payroll_records_month", "payroll_records", ["month"])


def downgrade() -> None:
    op.drop_index("ix_payroll_records_month", table_name="payroll_records")
    op.drop_index("ix_payroll_records_employee_id", table_name="payroll_records")
    op.drop_table("payroll_records")
    op.drop_index("ix_advance_salary_requests_created_at", table_name="advance_salary_requests")
    op.drop_index("ix_advance_salary_requests_employee_id", table_name="advance_salary_requests")
    op.drop_table("advance_salary_requests")
    op.drop_index("ix_project_tasks_project_id", table_name="project_tasks")
    op.drop_table("project_tasks")
    op.drop_column("employees", "date_of_birth")
