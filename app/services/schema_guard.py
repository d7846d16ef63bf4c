from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "users": {"uid", "employee_id", "is_active", "push_tokens"},
    "user_roles": {"user_uid", "role"},
    "employees": {"id", "status", "supervisor_id", "leave_approver_id", "site_id", "date_of_birth"},
    "supervisor_links": {"employee_id", "supervisor_id", "is_supervisor", "is_leave_approver"},
    "sites": {"id", "latitude", "longitude", "allowed_radius_m"},
    "attendance_events": {"id", "employee_id", "ts_utc", "status", "distance_m"},
    "holidays": {"id", "announcement_date", "email_sent"},
    "advance_salary_requests": {"id", "employee_id", "amount", "status"},
    "payroll_records": {"employee_id", "month", "net_salary"},
    "project_tasks": {"id", "task_code", "title"},
    "notification_templates": {"slug", "subject", "body", "is_active"},
    "delivery_records": {"dispatch_id", "event_type", "status", "channel_breakdown"},
    "alembic_version": {"version_num"},
}

REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "approval_status": {"Approved", "Pending", "Rejected"},
    "delivery_status": {"sent", "no_targets", "failed"},
}


def _column_issues(inspector: Any) -> list[str]:
    issues: list[str] = []
    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue
        missing = sorted(required_columns - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _enum_findings(inspector: Any) -> tuple[list[str], list[str]]:
    """Native enum labels only exist on PostgreSQL; elsewhere they surface as warnings."""
    get_enums = getattr(inspector, "get_enums", None)
    if get_enums is None:
        return [], ["ENUM_INSPECTION_UNSUPPORTED"]
    try:
        enums = get_enums() or []
    except SQLAlchemyError as exc:
        return [], [f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}"]

    labels_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    issues: list[str] = []
    warnings: list[str] = []
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        labels = labels_by_name.get(enum_name)
        if labels is None:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required_values - labels)
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")
    return issues, warnings


def _migration_issues(engine: Engine) -> list[str]:
    try:
        with engine.connect() as connection:
            version = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
    except SQLAlchemyError as exc:
        return [f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}"]
    if version is None or not str(version).strip():
        return ["ALEMBIC_VERSION_EMPTY"]
    return []


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    checked_at_utc = datetime.now(timezone.utc)
    try:
        inspector = inspect(engine)
    except SQLAlchemyError as exc:
        return SchemaGuardResult(
            ok=False,
            checked_at_utc=checked_at_utc,
            issues=[f"DATABASE_UNREACHABLE:{exc.__class__.__name__}"],
        )

    issues = _column_issues(inspector)
    enum_issues, warnings = _enum_findings(inspector)
    issues.extend(enum_issues)
    issues.extend(_migration_issues(engine))
    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
