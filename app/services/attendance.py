from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.errors import ApiError
from app.models import ApprovalStatus, AttendanceEvent, Employee, Site
from app.security import Actor
from app.services.capabilities import Resource
from app.services.geofence import GeofenceResult, evaluate_geofence
from app.services.scoping import ScopeContext, resolve_scope_for_actor

logger = logging.getLogger("app.attendance")

DECISION_STATUSES = {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


def _resolve_employee(db: Session, actor: Actor) -> Employee:
    if not actor.employee_id:
        raise ApiError(
            status_code=422,
            code="EMPLOYEE_NOT_LINKED",
            message="User has no linked employee record.",
        )
    employee = db.get(Employee, actor.employee_id)
    if employee is None:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found.")
    return employee


def _resolve_site(db: Session, employee: Employee, site_id: int | None) -> Site | None:
    resolved_id = site_id if site_id is not None else employee.site_id
    if resolved_id is None:
        return None
    site = db.get(Site, resolved_id)
    if site is None and site_id is not None:
        raise ApiError(status_code=404, code="SITE_NOT_FOUND", message="Site not found.")
    return site


def create_checkin_event(
    db: Session,
    actor: Actor,
    *,
    lat: float,
    lon: float,
    site_id: int | None = None,
    remarks: str | None = None,
    ts_utc: datetime | None = None,
) -> tuple[AttendanceEvent, GeofenceResult]:
    employee = _resolve_employee(db, actor)
    site = _resolve_site(db, employee, site_id)
    result = evaluate_geofence(site, lat, lon)

    # Outside the fence the event is still recorded, only held for review.
    status = ApprovalStatus.APPROVED if result.is_inside else ApprovalStatus.PENDING
    event = AttendanceEvent(
        employee_id=employee.id,
        site_id=site.id if site is not None else None,
        lat=lat,
        lon=lon,
        ts_utc=_normalize_ts(ts_utc),
        status=status,
        distance_m=round(result.distance_m, 2) if result.distance_m is not None else None,
        is_inside_geofence=result.is_inside,
        remarks=remarks,
    )
    db.add(event)
    db.commit()
    db.refresh(event)

    logger.info(
        "attendance_checkin",
        extra={
            "employee_id": employee.id,
            "event_id": event.id,
            "site_id": event.site_id,
            "status": status.value,
            "distance_m": event.distance_m,
            "allowed_radius_m": result.allowed_radius_m,
            "geofence_validated": result.validated,
        },
    )
    return event, result


def decide_attendance_event(
    db: Session,
    reviewer: Actor,
    *,
    event_id: int,
    decision: ApprovalStatus,
    reason: str | None = None,
) -> AttendanceEvent:
    if decision not in DECISION_STATUSES:
        raise ApiError(status_code=422, code="INVALID_DECISION", message="Decision must be Approved or Rejected.")

    event = db.get(AttendanceEvent, event_id)
    if event is None:
        raise ApiError(status_code=404, code="ATTENDANCE_EVENT_NOT_FOUND", message="Attendance event not found.")

    scope, capabilities = resolve_scope_for_actor(db, reviewer, Resource.ATTENDANCE)
    if not capabilities.attendance.approve or not scope.allows(event.employee_id):
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    # Only org-wide reviewers may decide their own escalated check-ins.
    own_ids = ScopeContext(uid=reviewer.uid, employee_id=reviewer.employee_id).self_aliases()
    if event.employee_id in own_ids and not capabilities.attendance.view_all:
        raise ApiError(
            status_code=403,
            code="SELF_APPROVAL_FORBIDDEN",
            message="Reviewers cannot decide their own attendance events.",
        )

    if event.status != ApprovalStatus.PENDING:
        raise ApiError(
            status_code=409,
            code="ATTENDANCE_ALREADY_DECIDED",
            message="Attendance event has already been decided.",
        )

    event.status = decision
    event.reviewed_by = reviewer.uid
    event.reviewed_at = datetime.now(timezone.utc)
    event.review_reason = (reason or "").strip() or None
    db.commit()
    db.refresh(event)

    logger.info(
        "attendance_decided",
        extra={
            "event_id": event.id,
            "employee_id": event.employee_id,
            "status": decision.value,
            "reviewer": reviewer.uid,
            "scope": scope.scope.value,
        },
    )
    return event


def create_site(
    db: Session,
    *,
    name: str,
    latitude: float | None,
    longitude: float | None,
    allowed_radius_m: float | None,
) -> Site:
    if allowed_radius_m is not None and allowed_radius_m < 0:
        raise ApiError(status_code=422, code="INVALID_RADIUS", message="Allowed radius must not be negative.")
    site = Site(
        name=name.strip(),
        latitude=latitude,
        longitude=longitude,
        allowed_radius_m=allowed_radius_m,
    )
    db.add(site)
    db.commit()
    db.refresh(site)
    logger.info(
        "site_created",
        extra={"site_id": site.id, "geofence_enabled": None not in (latitude, longitude, allowed_radius_m)},
    )
    return site
