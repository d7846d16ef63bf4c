import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import get_db
from app.errors import ApiError, ScopeResolutionError
from app.models import ApprovalStatus, AttendanceEvent
from app.routers.notify import get_dispatcher
from app.schemas import (
    AttendanceCheckinRequest,
    AttendanceCheckinResponse,
    AttendanceDecisionRequest,
    AttendanceDecisionResponse,
    AttendanceEventRead,
    CapabilitiesResponse,
    GeofenceRead,
    PushTokenRequest,
    PushTokenResponse,
    ScopedRecordsResponse,
    SiteCreate,
)
from app.security import Actor, require_actor, require_reviewer
from app.services.attendance import create_checkin_event, create_site, decide_attendance_event
from app.services.capabilities import Resource, compute_capabilities
from app.services.dispatcher import NotificationDispatcher
from app.services.push_tokens import register_push_token, remove_push_tokens
from app.services.scoping import RESOURCE_MODELS, find_subordinate_ids, resolve_scope_for_actor
from app.services.triggers import notify_attendance_decision, notify_attendance_escalation

router = APIRouter(prefix="/api", tags=["attendance"])
logger = logging.getLogger("app.attendance")


def _row_to_dict(row: Any) -> dict[str, Any]:
    mapper = inspect(type(row))
    return jsonable_encoder({attr.key: getattr(row, attr.key) for attr in mapper.column_attrs})


def _parse_resource(value: str) -> Resource:
    try:
        return Resource(value.strip().lower())
    except ValueError as exc:
        raise ApiError(status_code=404, code="UNKNOWN_RESOURCE", message="Unknown resource.") from exc


@router.post(
    "/attendance/check-in",
    response_model=AttendanceCheckinResponse,
    status_code=status.HTTP_201_CREATED,
)
def check_in(
    payload: AttendanceCheckinRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AttendanceCheckinResponse:
    event, result = create_checkin_event(
        db,
        actor,
        lat=payload.lat,
        lon=payload.lon,
        site_id=payload.site_id,
        remarks=payload.remarks,
        ts_utc=payload.ts_utc,
    )
    request.state.employee_id = event.employee_id
    request.state.event_id = event.id

    escalated = event.status == ApprovalStatus.PENDING
    notification: dict[str, Any] | None = None
    if escalated:
        # The event is already stored; a notification setup problem must not undo the check-in.
        try:
            notification = notify_attendance_escalation(db, dispatcher, event=event, actor=actor).to_dict()
        except ApiError as exc:
            logger.error(
                "attendance_escalation_notify_failed",
                extra={"event_id": event.id, "code": exc.code, "error": exc.message},
            )

    return AttendanceCheckinResponse(
        event=AttendanceEventRead.model_validate(event),
        geofence=GeofenceRead(
            is_inside=result.is_inside,
            distance_m=event.distance_m,
            allowed_radius_m=result.allowed_radius_m,
            decision=result.decision.value,
            validated=result.validated,
        ),
        escalated=escalated,
        notification=notification,
    )


@router.post("/attendance/{event_id}/decision", response_model=AttendanceDecisionResponse)
def decide(
    event_id: int,
    payload: AttendanceDecisionRequest,
    request: Request,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> AttendanceDecisionResponse:
    event: AttendanceEvent = decide_attendance_event(
        db,
        actor,
        event_id=event_id,
        decision=ApprovalStatus(payload.status),
        reason=payload.reason,
    )
    request.state.event_id = event.id

    notification: dict[str, Any] | None = None
    try:
        notification = notify_attendance_decision(
            db,
            dispatcher,
            event_id=event.id,
            actor=actor,
            reason=payload.reason,
        ).to_dict()
    except ApiError as exc:
        logger.error(
            "attendance_decision_notify_failed",
            extra={"event_id": event.id, "code": exc.code, "error": exc.message},
        )
    return AttendanceDecisionResponse(event=AttendanceEventRead.model_validate(event), notification=notification)


@router.get("/records/{resource}", response_model=ScopedRecordsResponse)
def list_scoped_records(
    resource: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> ScopedRecordsResponse:
    parsed = _parse_resource(resource)
    scope, _capabilities = resolve_scope_for_actor(db, actor, parsed)
    stmt = scope.to_statement(RESOURCE_MODELS[parsed], limit=limit, offset=offset)
    try:
        rows = db.scalars(stmt).all()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("scoped_read_failed", extra={"resource": parsed.value, "scope": scope.scope.value})
        raise ApiError(status_code=503, code="STORE_UNAVAILABLE", message="Records are unavailable.") from exc

    return ScopedRecordsResponse(
        resource=parsed.value,
        scope=scope.scope.value,
        truncated=scope.truncated,
        degraded=scope.degraded,
        items=[_row_to_dict(row) for row in rows],
    )


@router.get("/me/capabilities", response_model=CapabilitiesResponse)
def my_capabilities(
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> CapabilitiesResponse:
    try:
        has_subordinates = bool(find_subordinate_ids(db, actor.employee_id))
    except ScopeResolutionError:
        logger.warning("scope_resolution_failed", exc_info=True, extra={"uid": actor.uid})
        has_subordinates = False
    matrix = compute_capabilities(actor.roles, has_subordinates=has_subordinates)
    return CapabilitiesResponse(
        uid=actor.uid,
        roles=list(actor.roles),
        has_subordinates=has_subordinates,
        capabilities=matrix.to_dict(),
    )


@router.post("/push-tokens", response_model=PushTokenResponse)
def add_push_token(
    payload: PushTokenRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PushTokenResponse:
    tokens = register_push_token(db, user_uid=actor.uid, token=payload.token)
    return PushTokenResponse(ok=True, token_count=len(tokens))


@router.delete("/push-tokens", response_model=PushTokenResponse)
def delete_push_token(
    payload: PushTokenRequest,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> PushTokenResponse:
    tokens = remove_push_tokens(db, user_uid=actor.uid, tokens=[payload.token])
    return PushTokenResponse(ok=True, token_count=len(tokens))


@router.post("/sites", status_code=status.HTTP_201_CREATED)
def add_site(
    payload: SiteCreate,
    _actor: Actor = Depends(require_reviewer),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    site = create_site(
        db,
        name=payload.name,
        latitude=payload.latitude,
        longitude=payload.longitude,
        allowed_radius_m=payload.allowed_radius_m,
    )
    return _row_to_dict(site)
