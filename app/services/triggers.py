from __future__ import annotations

import calendar
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.errors import ApiError, SetupError
from app.models import (
    AdvanceSalaryRequest,
    ApprovalStatus,
    AttendanceEvent,
    Employee,
    EmployeeStatus,
    Holiday,
    LeaveApplication,
    PayrollRecord,
    ProjectTask,
    Site,
    VisitApplication,
)
from app.security import Actor
from app.services.capabilities import REVIEWER_ROLES
from app.services.channels import ChannelName
from app.services.dispatcher import (
    CONTACT_CHANNELS,
    DispatchRequest,
    DispatchSummary,
    NotificationDispatcher,
    recipient_from_employee,
)
from app.settings import get_public_base_url, get_settings

logger = logging.getLogger("app.triggers")

NEW_REQUEST = "new_request"
DECISION = "decision"
DEFAULT_TIMEZONE = "Europe/Istanbul"

LEAVE_TEMPLATES = {
    NEW_REQUEST: "admin_new_leave_application",
    ApprovalStatus.APPROVED: "employee_leave_application_approved",
    ApprovalStatus.REJECTED: "employee_leave_application_rejected",
}
VISIT_TEMPLATES = {
    NEW_REQUEST: "admin_new_visit_application",
    ApprovalStatus.APPROVED: "employee_visit_application_approved",
    ApprovalStatus.REJECTED: "employee_visit_application_rejected",
}
ADVANCE_SALARY_TEMPLATES = {
    NEW_REQUEST: "admin_new_advance_salary_request",
    ApprovalStatus.APPROVED: "employee_advance_salary_approved",
    ApprovalStatus.REJECTED: "employee_advance_salary_rejected",
}
ATTENDANCE_TEMPLATES = {
    ApprovalStatus.APPROVED: "attendance_decision_approved",
    ApprovalStatus.REJECTED: "attendance_decision_rejected",
}
ATTENDANCE_PENDING_TEMPLATE = "attendance_pending_review"
HOLIDAY_TEMPLATE = "holiday_announcement"
TASK_TEMPLATES = {
    "task_assigned": "task_assigned",
    "task_update": "task_update",
}
BIRTHDAY_TEMPLATE = "employee_birthday_wish"
REPORT_TEMPLATES = {
    "attendance": "employee_monthly_attendance_report",
    "payslip": "employee_monthly_payslip_summary",
}

NO_REASON = "No reason provided"


def _text(value: Any, default: str = "N/A") -> str:
    if value is None or value == "":
        return default
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _long_date(value: date | None) -> str:
    if value is None:
        return "N/A"
    return value.strftime("%A, %B %d, %Y")


def _total_days(from_date: date | None, to_date: date | None, stored: int | None) -> int:
    if stored:
        return stored
    if from_date is None or to_date is None:
        return 0
    return abs((to_date - from_date).days) + 1


def _amount(value: Any) -> str:
    if value is None:
        return "0"
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return str(value)


def _company_timezone() -> ZoneInfo:
    name = (get_settings().company_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def _local_today() -> date:
    return datetime.now(_company_timezone()).date()


def _month_bounds(month: str) -> tuple[date, date]:
    try:
        first = datetime.strptime((month or "").strip(), "%Y-%m").date()
    except ValueError:
        raise SetupError("INVALID_MONTH", "Month must be formatted as YYYY-MM.") from None
    return first, first.replace(day=calendar.monthrange(first.year, first.month)[1])


def _overlap_days(start: date | None, end: date | None, first: date, last: date) -> int:
    if start is None:
        return 0
    low = max(start, first)
    high = min(end or start, last)
    return (high - low).days + 1 if high >= low else 0


def _decision_status(status: str | None) -> ApprovalStatus:
    try:
        resolved = ApprovalStatus(status or "")
    except ValueError:
        resolved = None
    if resolved not in {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}:
        raise SetupError("INVALID_DECISION", "Decision status must be Approved or Rejected.")
    return resolved


def _reviewer_employee_ids(employee: Employee | None) -> list[str]:
    if employee is None:
        return []
    return [item for item in (employee.leave_approver_id, employee.supervisor_id) if item]


def _application_event(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    kind: str,
    application: LeaveApplication | VisitApplication | AdvanceSalaryRequest,
    templates: dict[Any, str],
    variables: dict[str, Any],
    link_path: str,
    event_type: str,
    status: str | None,
    rejection_reason: str | None,
    actor: Actor,
    channels: frozenset[ChannelName] = CONTACT_CHANNELS,
) -> DispatchSummary:
    employee = db.get(Employee, application.employee_id)
    employee_name = application.employee_name or (employee.full_name if employee is not None else None) or "Employee"
    variables = {"employee_name": employee_name, **variables}

    if event_type == NEW_REQUEST:
        request = DispatchRequest(
            event_type=f"{kind}_new_request",
            template_slug=templates[NEW_REQUEST],
            variables={**variables, "link": f"{get_public_base_url()}{link_path}"},
            target_roles=list(REVIEWER_ROLES),
            employee_ids=_reviewer_employee_ids(employee),
            channels=channels,
            url=link_path,
            created_by=actor.uid,
        )
        return dispatcher.dispatch(request)

    if event_type != DECISION:
        raise SetupError("INVALID_EVENT_TYPE", "Type must be new_request or decision.")

    decision = _decision_status(status or application.status.value)
    request = DispatchRequest(
        event_type=f"{kind}_decision",
        template_slug=templates[decision],
        variables={
            **variables,
            "status": decision.value,
            "rejection_reason": rejection_reason or application.rejection_reason or NO_REASON,
        },
        employee_ids=[application.employee_id],
        channels=channels,
        created_by=actor.uid,
    )
    return dispatcher.dispatch(request)


def notify_leave_event(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event_type: str,
    leave_id: str,
    actor: Actor,
    status: str | None = None,
    rejection_reason: str | None = None,
) -> DispatchSummary:
    leave = db.get(LeaveApplication, leave_id)
    if leave is None:
        raise ApiError(status_code=404, code="LEAVE_NOT_FOUND", message="Leave application not found.")

    variables = {
        "leave_type": _text(leave.leave_type),
        "start_date": _text(leave.from_date),
        "end_date": _text(leave.to_date),
        "days": str(_total_days(leave.from_date, leave.to_date, leave.total_days)),
        "reason": _text(leave.reason),
    }
    return _application_event(
        db,
        dispatcher,
        kind="leave",
        application=leave,
        templates=LEAVE_TEMPLATES,
        variables=variables,
        link_path="/dashboard/hr/leaves",
        event_type=event_type,
        status=status,
        rejection_reason=rejection_reason,
        actor=actor,
    )


def notify_visit_event(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event_type: str,
    visit_id: str,
    actor: Actor,
    status: str | None = None,
    rejection_reason: str | None = None,
) -> DispatchSummary:
    visit = db.get(VisitApplication, visit_id)
    if visit is None:
        raise ApiError(status_code=404, code="VISIT_NOT_FOUND", message="Visit application not found.")

    variables = {
        "customer_name": _text(visit.customer_name),
        "location": _text(visit.location),
        "visit_date_start": _text(visit.from_date),
        "visit_date_end": _text(visit.to_date or visit.from_date),
        "reason": _text(visit.reason),
    }
    return _application_event(
        db,
        dispatcher,
        kind="visit",
        application=visit,
        templates=VISIT_TEMPLATES,
        variables=variables,
        link_path="/dashboard/hr/visit-applications",
        event_type=event_type,
        status=status,
        rejection_reason=rejection_reason,
        actor=actor,
    )


def notify_advance_salary_event(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event_type: str,
    request_id: str,
    actor: Actor,
    status: str | None = None,
    rejection_reason: str | None = None,
) -> DispatchSummary:
    advance = db.get(AdvanceSalaryRequest, request_id)
    if advance is None:
        raise ApiError(
            status_code=404,
            code="ADVANCE_SALARY_NOT_FOUND",
            message="Advance salary request not found.",
        )

    requested = _amount(advance.amount)
    variables = {
        "amount": _amount(advance.approved_amount) if advance.approved_amount is not None else requested,
        "requested_amount": requested,
        "reason": _text(advance.reason),
        "date": _text(advance.request_date or (advance.created_at.date() if advance.created_at else None)),
    }
    # Salary advances also reach devices, unlike leave and visit requests.
    return _application_event(
        db,
        dispatcher,
        kind="advance_salary",
        application=advance,
        templates=ADVANCE_SALARY_TEMPLATES,
        variables=variables,
        link_path="/dashboard/hr/payroll/advance-salary",
        event_type=event_type,
        status=status,
        rejection_reason=rejection_reason,
        actor=actor,
        channels=CONTACT_CHANNELS | {ChannelName.PUSH},
    )


def notify_task_event(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event_type: str,
    task_id: str,
    target_user_ids: list[str],
    actor: Actor,
) -> DispatchSummary:
    """Tell each assignee about a task; ``target_user_ids`` may hold employee ids or employee codes."""
    if event_type not in TASK_TEMPLATES:
        raise SetupError("INVALID_EVENT_TYPE", "Type must be task_assigned or task_update.")
    assignee_ids = list(dict.fromkeys(item.strip() for item in target_user_ids or [] if item and item.strip()))
    if not assignee_ids:
        raise SetupError("MISSING_AUDIENCE", "At least one target user id is required.")

    task = db.get(ProjectTask, task_id)
    if task is None:
        task = db.scalar(select(ProjectTask).where(ProjectTask.task_code == task_id))
    if task is None:
        raise ApiError(status_code=404, code="TASK_NOT_FOUND", message="Task not found.")

    employees = db.scalars(
        select(Employee)
        .where(or_(Employee.id.in_(assignee_ids), Employee.employee_code.in_(assignee_ids)))
        .order_by(Employee.full_name.asc())
    ).all()
    matched = {employee.id for employee in employees} | {
        employee.employee_code for employee in employees if employee.employee_code
    }
    unmatched = [item for item in assignee_ids if item not in matched]
    if unmatched:
        logger.warning("task_assignees_unmatched", extra={"task_id": task.id, "assignee_ids": unmatched})

    request = DispatchRequest(
        event_type=event_type,
        template_slug=TASK_TEMPLATES[event_type],
        variables={
            "task_id": task.task_code or task.id,
            "task_title": task.title or "Untitled Task",
            "project_title": task.project.name if task.project is not None else "General Project",
            "priority": task.priority or "Medium",
            "due_date": _text(task.due_date, "No due date"),
            "link": f"{get_public_base_url()}/dashboard/account-details",
        },
        recipients=[
            recipient_from_employee(employee, variables={"employee_name": employee.full_name or "Employee"})
            for employee in employees
        ],
        created_by=actor.uid,
        audience_resolved=True,
    )
    return dispatcher.dispatch(request)


def _attendance_variables(db: Session, event: AttendanceEvent) -> dict[str, Any]:
    employee = db.get(Employee, event.employee_id)
    site = db.get(Site, event.site_id) if event.site_id is not None else None
    return {
        "employee_name": employee.full_name if employee is not None else "Employee",
        "employee_code": _text(employee.employee_code if employee is not None else None),
        "attendance_date": event.ts_utc.date().isoformat(),
        "attendance_time": event.ts_utc.strftime("%H:%M"),
        "location": f"{event.lat:.6f}, {event.lon:.6f}",
        "site_name": site.name if site is not None else "N/A",
        "distance_m": f"{event.distance_m:.0f}" if event.distance_m is not None else "N/A",
        "remarks": event.remarks or "No remarks provided",
    }


def notify_attendance_escalation(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event: AttendanceEvent,
    actor: Actor,
) -> DispatchSummary:
    employee = db.get(Employee, event.employee_id)
    request = DispatchRequest(
        event_type="attendance_pending_review",
        template_slug=ATTENDANCE_PENDING_TEMPLATE,
        variables={
            **_attendance_variables(db, event),
            "link": f"{get_public_base_url()}/mobile/attendance/remote-approval",
        },
        target_roles=list(REVIEWER_ROLES),
        employee_ids=[employee.supervisor_id] if employee is not None and employee.supervisor_id else [],
        created_by=actor.uid,
    )
    return dispatcher.dispatch(request)


def notify_attendance_decision(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    event_id: int,
    actor: Actor,
    reason: str | None = None,
) -> DispatchSummary:
    event = db.get(AttendanceEvent, event_id)
    if event is None:
        raise ApiError(status_code=404, code="ATTENDANCE_EVENT_NOT_FOUND", message="Attendance event not found.")
    if event.status not in ATTENDANCE_TEMPLATES:
        raise ApiError(
            status_code=409,
            code="ATTENDANCE_NOT_DECIDED",
            message="Attendance event has not been decided yet.",
        )

    request = DispatchRequest(
        event_type="attendance_decision",
        template_slug=ATTENDANCE_TEMPLATES[event.status],
        variables={
            **_attendance_variables(db, event),
            "status": event.status.value,
            "reason": reason or event.review_reason or NO_REASON,
        },
        employee_ids=[event.employee_id],
        created_by=actor.uid,
    )
    return dispatcher.dispatch(request)


def notify_holiday(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    holiday_id: str,
    created_by: str,
) -> DispatchSummary | None:
    """Announce a holiday to every active employee; returns None when already announced."""
    holiday = db.get(Holiday, holiday_id)
    if holiday is None:
        raise ApiError(status_code=404, code="HOLIDAY_NOT_FOUND", message="Holiday not found.")
    if holiday.email_sent:
        logger.info("holiday_already_announced", extra={"holiday_id": holiday_id})
        return None

    start_text = _long_date(holiday.from_date)
    end_text = _long_date(holiday.to_date) if holiday.to_date else start_text
    employees = db.scalars(
        select(Employee)
        .where(
            Employee.status == EmployeeStatus.ACTIVE,
            or_(Employee.email.is_not(None), Employee.phone.is_not(None)),
        )
        .order_by(Employee.full_name.asc())
    ).all()
    recipients = [
        recipient_from_employee(employee, variables={"employee_name": employee.full_name or "Employee"})
        for employee in employees
    ]

    request = DispatchRequest(
        event_type="holiday_announcement",
        template_slug=HOLIDAY_TEMPLATE,
        variables={
            "holiday_title": holiday.title,
            "holiday_date": start_text,
            "holiday_start_date": start_text,
            "holiday_end_date": end_text,
            "holiday_type": _text(holiday.holiday_type),
            "holiday_description": holiday.description or "No additional details provided.",
        },
        recipients=recipients,
        created_by=created_by,
        audience_resolved=True,
    )
    summary = dispatcher.dispatch(request)
    if summary.success_count > 0:
        holiday.email_sent = True
        holiday.email_sent_at = datetime.now(timezone.utc)
        db.commit()
    return summary


def send_broadcast(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    actor: Actor,
    title: str | None,
    body: str | None,
    template_slug: str | None = None,
    variables: dict[str, Any] | None = None,
    target_roles: list[str] | None = None,
    user_ids: list[str] | None = None,
    badge_count: int | None = None,
    url: str | None = None,
    include_email: bool = False,
    include_whatsapp: bool = False,
) -> DispatchSummary:
    channels = {ChannelName.PUSH}
    if include_email:
        channels.add(ChannelName.EMAIL)
    if include_whatsapp:
        channels.add(ChannelName.WHATSAPP)

    request = DispatchRequest(
        event_type="broadcast",
        title=title,
        body=body,
        template_slug=template_slug,
        variables=dict(variables or {}),
        target_roles=list(target_roles or []),
        user_ids=list(user_ids or []),
        channels=frozenset(channels),
        badge_count=badge_count,
        url=url,
        created_by=actor.uid,
    )
    return dispatcher.dispatch(request)


def run_due_announcements(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    holidays = db.scalars(
        select(Holiday)
        .where(
            Holiday.announcement_date.is_not(None),
            Holiday.announcement_date <= now,
            Holiday.email_sent.is_(False),
        )
        .order_by(Holiday.announcement_date.asc())
    ).all()

    results: list[dict[str, Any]] = []
    for holiday in holidays:
        try:
            summary = notify_holiday(db, dispatcher, holiday_id=holiday.id, created_by="cron")
        except ApiError as exc:
            logger.error(
                "scheduled_announcement_failed",
                extra={"holiday_id": holiday.id, "code": exc.code, "error": exc.message},
            )
            results.append({"holiday_id": holiday.id, "error": exc.code})
            continue
        results.append(
            {
                "holiday_id": holiday.id,
                "summary": summary.to_dict() if summary is not None else None,
            }
        )
    return results


@dataclass(frozen=True, slots=True)
class BirthdayRun:
    run_date: date
    checked: int
    celebrant_ids: list[str]
    summary: DispatchSummary


def _is_birthday(born: date, today: date) -> bool:
    if (born.month, born.day) == (today.month, today.day):
        return True
    # Feb 29 birthdays fall on Feb 28 in common years.
    return (
        (born.month, born.day) == (2, 29)
        and (today.month, today.day) == (2, 28)
        and not calendar.isleap(today.year)
    )


def send_birthday_wishes(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    today: date | None = None,
) -> BirthdayRun:
    today = today or _local_today()
    employees = db.scalars(
        select(Employee)
        .where(Employee.status == EmployeeStatus.ACTIVE, Employee.date_of_birth.is_not(None))
        .order_by(Employee.full_name.asc())
    ).all()
    celebrants = [employee for employee in employees if _is_birthday(employee.date_of_birth, today)]

    request = DispatchRequest(
        event_type="birthday_wish",
        template_slug=BIRTHDAY_TEMPLATE,
        recipients=[
            recipient_from_employee(employee, variables={"employee_name": employee.full_name or "Employee"})
            for employee in celebrants
        ],
        created_by="cron",
        audience_resolved=True,
    )
    summary = dispatcher.dispatch(request)
    logger.info(
        "birthday_wishes_run",
        extra={"run_date": today.isoformat(), "checked": len(employees), "celebrants": len(celebrants)},
    )
    return BirthdayRun(
        run_date=today,
        checked=len(employees),
        celebrant_ids=[employee.id for employee in celebrants],
        summary=summary,
    )


def _attendance_report(
    db: Session,
    employee_ids: set[str],
    first: date,
    last: date,
) -> dict[str, dict[str, int]]:
    tz = _company_timezone()
    start_utc = datetime.combine(first, time.min, tzinfo=tz).astimezone(timezone.utc)
    end_utc = datetime.combine(last + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    stats = {
        employee_id: {"present": 0, "pending": 0, "rejected": 0, "leave": 0, "visit": 0}
        for employee_id in employee_ids
    }

    present_days: dict[str, set[date]] = defaultdict(set)
    events = db.scalars(
        select(AttendanceEvent).where(AttendanceEvent.ts_utc >= start_utc, AttendanceEvent.ts_utc < end_utc)
    ).all()
    for event in events:
        bucket = stats.get(event.employee_id)
        if bucket is None:
            continue
        if event.status == ApprovalStatus.APPROVED:
            ts = event.ts_utc if event.ts_utc.tzinfo else event.ts_utc.replace(tzinfo=timezone.utc)
            present_days[event.employee_id].add(ts.astimezone(tz).date())
        elif event.status == ApprovalStatus.PENDING:
            bucket["pending"] += 1
        else:
            bucket["rejected"] += 1
    for employee_id, days in present_days.items():
        stats[employee_id]["present"] = len(days)

    for model, key in ((LeaveApplication, "leave"), (VisitApplication, "visit")):
        rows = db.scalars(
            select(model).where(
                model.status == ApprovalStatus.APPROVED,
                model.from_date <= last,
                func.coalesce(model.to_date, model.from_date) >= first,
            )
        ).all()
        for row in rows:
            bucket = stats.get(row.employee_id)
            if bucket is not None:
                bucket[key] += _overlap_days(row.from_date, row.to_date, first, last)
    return stats


def _attendance_summary(stats: dict[str, int]) -> str:
    return (
        f"Present: {stats['present']}\n"
        f"Pending review: {stats['pending']}\n"
        f"Rejected: {stats['rejected']}\n"
        f"Leave: {stats['leave']}\n"
        f"Visit: {stats['visit']}"
    )


def _payslip_summary(record: PayrollRecord) -> str:
    return (
        f"Basic Salary: {_amount(record.basic_salary)}\n"
        f"Allowances: {_amount(record.total_allowances)}\n"
        f"Deductions: {_amount(record.total_deductions)}\n"
        f"Net Salary: {_amount(record.net_salary)}"
    )


def send_monthly_reports(
    db: Session,
    dispatcher: NotificationDispatcher,
    *,
    report_type: str,
    month: str,
    actor: Actor,
    target_email: str | None = None,
) -> DispatchSummary:
    """Send each active employee their attendance or payslip summary for ``month`` (``YYYY-MM``).

    ``target_email`` narrows the run to one employee. Payslip runs skip employees
    without a payroll record for the month.
    """
    if report_type not in REPORT_TEMPLATES:
        raise SetupError("INVALID_REPORT_TYPE", "Report type must be attendance or payslip.")
    first, last = _month_bounds(month)

    stmt = select(Employee).where(
        Employee.status == EmployeeStatus.ACTIVE,
        or_(Employee.email.is_not(None), Employee.phone.is_not(None)),
    )
    if target_email and target_email.strip():
        stmt = stmt.where(func.lower(Employee.email) == target_email.strip().lower())
    employees = db.scalars(stmt.order_by(Employee.full_name.asc())).all()
    if not employees:
        raise ApiError(status_code=404, code="NO_MATCHING_EMPLOYEES", message="No matching employees found.")

    recipients = []
    if report_type == "attendance":
        report = _attendance_report(db, {employee.id for employee in employees}, first, last)
        for employee in employees:
            stats = report[employee.id]
            recipients.append(
                recipient_from_employee(
                    employee,
                    variables={
                        "employee_name": employee.full_name or "Employee",
                        "attendance_chart": _attendance_summary(stats),
                        "present_days": str(stats["present"]),
                        "leave_days": str(stats["leave"]),
                        "visit_days": str(stats["visit"]),
                    },
                )
            )
    else:
        records = db.scalars(select(PayrollRecord).where(PayrollRecord.month == first.strftime("%Y-%m"))).all()
        by_employee = {record.employee_id: record for record in records}
        for employee in employees:
            record = by_employee.get(employee.id)
            if record is None:
                continue
            recipients.append(
                recipient_from_employee(
                    employee,
                    variables={
                        "employee_name": employee.full_name or "Employee",
                        "payslip_summary": _payslip_summary(record),
                        "net_salary": _amount(record.net_salary),
                    },
                )
            )

    request = DispatchRequest(
        event_type=f"monthly_{report_type}_report",
        template_slug=REPORT_TEMPLATES[report_type],
        variables={"month_year": first.strftime("%B %Y"), "month": first.strftime("%Y-%m")},
        recipients=recipients,
        created_by=actor.uid,
        audience_resolved=True,
    )
    return dispatcher.dispatch(request)


__all__ = [
    "BirthdayRun",
    "notify_advance_salary_event",
    "notify_attendance_decision",
    "notify_attendance_escalation",
    "notify_holiday",
    "notify_leave_event",
    "notify_task_event",
    "notify_visit_event",
    "run_due_announcements",
    "send_birthday_wishes",
    "send_broadcast",
    "send_monthly_reports",
]
