from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import Select, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.errors import ScopeResolutionError
from app.models import (
    AttendanceEvent,
    Employee,
    ExpenseClaim,
    LeaveApplication,
    Project,
    SupervisorLink,
    VisitApplication,
)
from app.services.capabilities import CapabilityMatrix, Resource, compute_capabilities
from app.settings import get_settings

if TYPE_CHECKING:
    from app.security import Actor

logger = logging.getLogger("app.scope")

IDENTITY_FIELD = "employee_id"

RESOURCE_MODELS: dict[Resource, type[Any]] = {
    Resource.ATTENDANCE: AttendanceEvent,
    Resource.LEAVE: LeaveApplication,
    Resource.VISIT: VisitApplication,
    Resource.CLAIM: ExpenseClaim,
    Resource.PROJECT: Project,
}

RESOURCE_ORDER_FIELDS: dict[Resource, str] = {
    Resource.ATTENDANCE: "ts_utc",
    Resource.LEAVE: "created_at",
    Resource.VISIT: "created_at",
    Resource.CLAIM: "created_at",
    Resource.PROJECT: "created_at",
}


class ScopeLevel(str, enum.Enum):
    ALL = "ALL"
    TEAM = "TEAM"
    SELF = "SELF"


@dataclass(frozen=True, slots=True)
class ScopeContext:
    uid: str
    employee_id: str | None = None
    subordinate_ids: tuple[str, ...] = field(default_factory=tuple)

    def self_aliases(self) -> tuple[str, ...]:
        # Historical records reference either the auth uid or the employee record id.
        return _dedupe([self.uid, self.employee_id])


@dataclass(frozen=True, slots=True)
class ScopedQuery:
    resource: Resource
    scope: ScopeLevel
    identity_field: str
    identities: tuple[str, ...] | None
    order_field: str
    since: datetime | None
    truncated: bool = False
    degraded: bool = False

    def allows(self, employee_id: str | None) -> bool:
        if self.identities is None:
            return True
        return bool(employee_id) and employee_id in self.identities

    def to_statement(
        self,
        model: type[Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Select[Any]:
        model = model or RESOURCE_MODELS[self.resource]
        order_column = getattr(model, self.order_field)
        stmt = select(model)
        if self.identities is not None:
            stmt = stmt.where(getattr(model, self.identity_field).in_(self.identities))
        if self.since is not None:
            stmt = stmt.where(order_column >= self.since)
        stmt = stmt.order_by(order_column.desc(), model.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        return stmt

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource.value,
            "scope": self.scope.value,
            "identity_field": self.identity_field,
            "identities": list(self.identities) if self.identities is not None else None,
            "order_field": self.order_field,
            "order": "desc",
            "since": self.since.isoformat() if self.since else None,
            "truncated": self.truncated,
            "degraded": self.degraded,
        }


def _dedupe(values: list[str | None] | tuple[str | None, ...]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


def _lookback_days(resource: Resource) -> int | None:
    settings = get_settings()
    if resource is Resource.ATTENDANCE:
        return settings.attendance_lookback_days
    return settings.request_lookback_days


def build_scoped_query(
    resource: Resource | str,
    capabilities: CapabilityMatrix,
    context: ScopeContext,
    *,
    now: datetime | None = None,
) -> ScopedQuery:
    resource = Resource(resource)
    capability = capabilities.for_resource(resource)
    now = now or datetime.now(timezone.utc)
    lookback = _lookback_days(resource)
    since = now - timedelta(days=lookback) if lookback else None
    order_field = RESOURCE_ORDER_FIELDS[resource]
    self_ids = context.self_aliases()

    if capability.view_all:
        return ScopedQuery(
            resource=resource,
            scope=ScopeLevel.ALL,
            identity_field=IDENTITY_FIELD,
            identities=None,
            order_field=order_field,
            since=since,
        )

    if capability.view_team and context.subordinate_ids:
        limit = get_settings().scope_disjunction_limit
        team_ids = _dedupe(list(self_ids) + list(context.subordinate_ids))
        truncated = len(team_ids) > limit
        if truncated:
            # Known scale ceiling of the store's "in" predicate: the tail of the team is not visible.
            logger.warning(
                "scope_identity_limit_reached",
                extra={
                    "resource": resource.value,
                    "uid": context.uid,
                    "team_size": len(team_ids),
                    "limit": limit,
                },
            )
        return ScopedQuery(
            resource=resource,
            scope=ScopeLevel.TEAM,
            identity_field=IDENTITY_FIELD,
            identities=team_ids[:limit],
            order_field=order_field,
            since=since,
            truncated=truncated,
        )

    return ScopedQuery(
        resource=resource,
        scope=ScopeLevel.SELF,
        identity_field=IDENTITY_FIELD,
        identities=self_ids,
        order_field=order_field,
        since=since,
    )


def find_subordinate_ids(db: Session, employee_id: str | None) -> list[str]:
    """Employees who report to ``employee_id`` through any supervisor field."""
    if not employee_id:
        return []

    try:
        direct_ids = db.scalars(
            select(Employee.id)
            .where(
                or_(
                    Employee.supervisor_id == employee_id,
                    Employee.leave_approver_id == employee_id,
                )
            )
            .order_by(Employee.id.asc())
        ).all()
        linked_ids = db.scalars(
            select(SupervisorLink.employee_id)
            .where(
                SupervisorLink.supervisor_id == employee_id,
                or_(
                    SupervisorLink.is_supervisor.is_(True),
                    SupervisorLink.is_leave_approver.is_(True),
                    SupervisorLink.is_direct_supervisor.is_(True),
                ),
            )
            .order_by(SupervisorLink.employee_id.asc())
        ).all()
    except SQLAlchemyError as exc:
        raise ScopeResolutionError(f"subordinate lookup failed for {employee_id}") from exc

    return [item for item in _dedupe(list(direct_ids) + list(linked_ids)) if item != employee_id]


def resolve_scope_for_actor(
    db: Session,
    actor: Actor,
    resource: Resource | str,
    *,
    now: datetime | None = None,
) -> tuple[ScopedQuery, CapabilityMatrix]:
    resource = Resource(resource)
    base_capabilities = compute_capabilities(actor.roles, has_subordinates=False)
    if base_capabilities.for_resource(resource).view_all:
        context = ScopeContext(uid=actor.uid, employee_id=actor.employee_id)
        return build_scoped_query(resource, base_capabilities, context, now=now), base_capabilities

    try:
        subordinate_ids = find_subordinate_ids(db, actor.employee_id)
    except ScopeResolutionError:
        logger.warning(
            "scope_resolution_failed",
            exc_info=True,
            extra={"uid": actor.uid, "employee_id": actor.employee_id, "resource": resource.value},
        )
        # Without a subordinate list the builder can only produce the self-only branch.
        context = ScopeContext(uid=actor.uid, employee_id=actor.employee_id)
        narrowed = build_scoped_query(resource, base_capabilities, context, now=now)
        return replace(narrowed, degraded=True), base_capabilities

    capabilities = compute_capabilities(actor.roles, has_subordinates=bool(subordinate_ids))
    context = ScopeContext(
        uid=actor.uid,
        employee_id=actor.employee_id,
        subordinate_ids=tuple(subordinate_ids),
    )
    return build_scoped_query(resource, capabilities, context, now=now), capabilities
