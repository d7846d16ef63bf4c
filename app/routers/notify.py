import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.audit import list_delivery_records
from app.db import get_db
from app.schemas import (
    AnnouncementRunResponse,
    ApplicationNotifyRequest,
    AttendanceNotifyRequest,
    BirthdayRunResponse,
    BroadcastRequest,
    DeliveryRecordRead,
    DispatchSummaryRead,
    HolidayNotifyRequest,
    HolidayNotifyResponse,
    MonthlyReportRequest,
    TaskNotifyRequest,
)
from app.security import Actor, require_actor, require_cron_secret, require_reviewer
from app.services.dispatcher import NotificationDispatcher
from app.services.triggers import (
    notify_advance_salary_event,
    notify_attendance_decision,
    notify_holiday,
    notify_leave_event,
    notify_task_event,
    notify_visit_event,
    run_due_announcements,
    send_birthday_wishes,
    send_broadcast,
    send_monthly_reports,
)

router = APIRouter(prefix="/api", tags=["notifications"])
logger = logging.getLogger("app.triggers")


def get_dispatcher(db: Session = Depends(get_db)) -> NotificationDispatcher:
    return NotificationDispatcher(db)


def _mark_request(request: Request, event_type: str) -> None:
    request.state.event_type = event_type


@router.post("/notify/leave", response_model=DispatchSummaryRead)
def notify_leave(
    payload: ApplicationNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, f"leave_{payload.type}")
    summary = notify_leave_event(
        db,
        dispatcher,
        event_type=payload.type,
        leave_id=payload.id,
        actor=actor,
        status=payload.status,
        rejection_reason=payload.rejection_reason,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/visit", response_model=DispatchSummaryRead)
def notify_visit(
    payload: ApplicationNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, f"visit_{payload.type}")
    summary = notify_visit_event(
        db,
        dispatcher,
        event_type=payload.type,
        visit_id=payload.id,
        actor=actor,
        status=payload.status,
        rejection_reason=payload.rejection_reason,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/attendance", response_model=DispatchSummaryRead)
def notify_attendance(
    payload: AttendanceNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, "attendance_decision")
    summary = notify_attendance_decision(
        db,
        dispatcher,
        event_id=payload.event_id,
        actor=actor,
        reason=payload.reason,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/advance-salary", response_model=DispatchSummaryRead)
def notify_advance_salary(
    payload: ApplicationNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, f"advance_salary_{payload.type}")
    summary = notify_advance_salary_event(
        db,
        dispatcher,
        event_type=payload.type,
        request_id=payload.id,
        actor=actor,
        status=payload.status,
        rejection_reason=payload.rejection_reason,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/task", response_model=DispatchSummaryRead)
def notify_task(
    payload: TaskNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, payload.type)
    summary = notify_task_event(
        db,
        dispatcher,
        event_type=payload.type,
        task_id=payload.task_id,
        target_user_ids=payload.target_user_ids,
        actor=actor,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/reports", response_model=DispatchSummaryRead)
def notify_reports(
    payload: MonthlyReportRequest,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, f"monthly_{payload.type}_report")
    summary = send_monthly_reports(
        db,
        dispatcher,
        report_type=payload.type,
        month=payload.month,
        actor=actor,
        target_email=payload.target_email,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post("/notify/holiday", response_model=HolidayNotifyResponse)
def notify_holiday_endpoint(
    payload: HolidayNotifyRequest,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> HolidayNotifyResponse:
    _mark_request(request, "holiday_announcement")
    summary = notify_holiday(db, dispatcher, holiday_id=payload.holiday_id, created_by=actor.uid)
    if summary is None:
        return HolidayNotifyResponse(holiday_id=payload.holiday_id, already_sent=True)
    return HolidayNotifyResponse(
        holiday_id=payload.holiday_id,
        already_sent=False,
        summary=DispatchSummaryRead(**summary.to_dict()),
    )


@router.post("/notifications/send", response_model=DispatchSummaryRead)
def send_notification(
    payload: BroadcastRequest,
    request: Request,
    actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> DispatchSummaryRead:
    _mark_request(request, "broadcast")
    summary = send_broadcast(
        db,
        dispatcher,
        actor=actor,
        title=payload.title,
        body=payload.body,
        template_slug=payload.template_slug,
        variables=payload.variables,
        target_roles=payload.target_roles,
        user_ids=payload.user_ids,
        badge_count=payload.badge_count,
        url=payload.url,
        include_email=payload.include_email,
        include_whatsapp=payload.include_whatsapp,
    )
    return DispatchSummaryRead(**summary.to_dict())


@router.post(
    "/cron/announcements",
    response_model=AnnouncementRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def run_announcements(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AnnouncementRunResponse:
    request.state.actor = "cron"
    request.state.actor_id = "cron"
    results = run_due_announcements(db, dispatcher, now=datetime.now(timezone.utc))
    logger.info("scheduled_announcements_run", extra={"processed": len(results)})
    return AnnouncementRunResponse(processed=len(results), results=results)


@router.post(
    "/cron/daily-birthdays",
    response_model=BirthdayRunResponse,
    dependencies=[Depends(require_cron_secret)],
)
def run_daily_birthdays(
    request: Request,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> BirthdayRunResponse:
    request.state.actor = "cron"
    request.state.actor_id = "cron"
    _mark_request(request, "birthday_wish")
    run = send_birthday_wishes(db, dispatcher)
    return BirthdayRunResponse(
        run_date=run.run_date,
        checked=run.checked,
        celebrant_ids=run.celebrant_ids,
        summary=DispatchSummaryRead(**run.summary.to_dict()),
    )


@router.get("/delivery-records", response_model=list[DeliveryRecordRead])
def get_delivery_records(
    event_type: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> list[DeliveryRecordRead]:
    rows = list_delivery_records(db, event_type=event_type, limit=limit, offset=offset)
    return [DeliveryRecordRead.model_validate(row) for row in rows]
