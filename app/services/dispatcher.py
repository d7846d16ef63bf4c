from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.audit import record_delivery
from app.errors import ChannelSendError, SetupError
from app.models import DeliveryStatus, Employee, User, UserRole
from app.services.capabilities import canonical_roles, normalize_role_key
from app.services.channels import (
    ChannelName,
    NotificationChannel,
    default_channels,
    normalize_email,
    normalize_phone,
)
from app.services.push_tokens import prune_invalid_tokens
from app.services.templates import MessageSource, RenderedMessage, load_message_source
from app.settings import get_settings

logger = logging.getLogger("app.dispatch")

CONTACT_CHANNELS: frozenset[ChannelName] = frozenset({ChannelName.EMAIL, ChannelName.WHATSAPP})


@dataclass(slots=True)
class Recipient:
    key: str
    name: str
    email: str | None = None
    phone: str | None = None
    user_uid: str | None = None
    employee_id: str | None = None
    push_tokens: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)

    def merge(self, other: Recipient) -> None:
        self.email = self.email or other.email
        self.phone = self.phone or other.phone
        self.user_uid = self.user_uid or other.user_uid
        self.employee_id = self.employee_id or other.employee_id
        if self.name in {"", "Employee"} and other.name:
            self.name = other.name
        self.push_tokens = tuple(dict.fromkeys(self.push_tokens + other.push_tokens))
        for key, value in other.variables.items():
            self.variables.setdefault(key, value)


@dataclass(slots=True)
class DispatchRequest:
    event_type: str
    title: str | None = None
    body: str | None = None
    template_slug: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    user_ids: list[str] = field(default_factory=list)
    employee_ids: list[str] = field(default_factory=list)
    target_roles: list[str] = field(default_factory=list)
    recipients: list[Recipient] = field(default_factory=list)
    channels: frozenset[ChannelName] = CONTACT_CHANNELS
    badge_count: int | None = None
    url: str | None = None
    created_by: str = "system"
    # Set when the caller already enumerated the audience, even if it came back empty.
    audience_resolved: bool = False

    def has_audience(self) -> bool:
        if self.audience_resolved:
            return True
        return bool(self.user_ids or self.employee_ids or self.target_roles or self.recipients)


@dataclass(frozen=True, slots=True)
class ChannelOutcome:
    channel: ChannelName
    recipient_key: str
    target: str
    success: bool
    error: str | None = None
    status_code: int | None = None
    invalid_target: bool = False


@dataclass(slots=True)
class DispatchSummary:
    dispatch_id: str
    event_type: str
    title: str
    template_slug: str | None
    target_roles: list[str]
    user_ids: list[str]
    employee_ids: list[str]
    channels: list[str]
    status: str
    recipient_count: int = 0
    attempted_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    notified_count: int = 0
    invalid_token_count: int = 0
    channel_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)
    skipped_channels: list[str] = field(default_factory=list)
    created_by: str = "system"
    created_at: datetime | None = None
    record_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatch_id": self.dispatch_id,
            "event_type": self.event_type,
            "status": self.status,
            "recipient_count": self.recipient_count,
            "attempted_count": self.attempted_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "notified_count": self.notified_count,
            "invalid_token_count": self.invalid_token_count,
            "channels": dict(self.channel_breakdown),
            "skipped_channels": list(self.skipped_channels),
            "record_id": self.record_id,
        }


@dataclass(frozen=True, slots=True)
class _SendJob:
    channel: ChannelName
    recipient_key: str
    target: str
    message: RenderedMessage
    data: dict[str, Any] | None = None


def _chunks(values: list[str], size: int) -> Iterable[list[str]]:
    for index in range(0, len(values), size):
        yield values[index : index + size]


def _unique(values: Iterable[str] | None) -> list[str]:
    return list(dict.fromkeys(item.strip() for item in (values or []) if item and item.strip()))


def _recipient_from_user(user: User) -> Recipient:
    employee = user.employee
    return Recipient(
        key=user.employee_id or f"user:{user.uid}",
        name=user.display_name or (employee.full_name if employee is not None else "") or "Employee",
        email=user.email or (employee.email if employee is not None else None),
        phone=user.phone or (employee.phone if employee is not None else None),
        user_uid=user.uid,
        employee_id=user.employee_id,
        push_tokens=tuple(_unique(user.push_tokens)),
    )


def recipient_from_employee(employee: Employee, *, variables: Mapping[str, Any] | None = None) -> Recipient:
    return Recipient(
        key=employee.id,
        name=employee.full_name or "Employee",
        email=employee.email,
        phone=employee.phone,
        employee_id=employee.id,
        variables=dict(variables or {}),
    )


class AudienceResolver:
    """Expands explicit ids and role labels to concrete recipients."""

    def __init__(self, db: Session):
        self.db = db
        self.chunk_size = max(1, get_settings().scope_disjunction_limit)

    def users_by_ids(self, user_ids: list[str]) -> list[User]:
        rows: list[User] = []
        for chunk in _chunks(user_ids, self.chunk_size):
            rows.extend(
                self.db.scalars(select(User).where(User.uid.in_(chunk), User.is_active.is_(True))).all()
            )
        return rows

    def stored_role_labels(self, roles: list[str]) -> list[str]:
        """Stored labels that normalize to one of ``roles`` (``"admin "`` counts as Admin)."""
        wanted = {normalize_role_key(role) for role in roles}
        labels = self.db.scalars(select(UserRole.role).distinct()).all()
        return sorted(label for label in labels if label and normalize_role_key(label) in wanted)

    def users_by_roles(self, roles: list[str]) -> list[User]:
        if not roles:
            return []
        labels = self.stored_role_labels(roles)
        if not labels:
            return []
        stmt = (
            select(User)
            .join(UserRole, UserRole.user_uid == User.uid)
            .where(UserRole.role.in_(labels), User.is_active.is_(True))
            .order_by(User.uid.asc())
        )
        return list(dict.fromkeys(self.db.scalars(stmt).all()))

    def employees_by_ids(self, employee_ids: list[str]) -> list[Employee]:
        rows: list[Employee] = []
        for chunk in _chunks(employee_ids, self.chunk_size):
            rows.extend(self.db.scalars(select(Employee).where(Employee.id.in_(chunk))).all())
        return rows

    def linked_users(self, employee_ids: list[str]) -> list[User]:
        rows: list[User] = []
        for chunk in _chunks(employee_ids, self.chunk_size):
            rows.extend(
                self.db.scalars(
                    select(User).where(User.employee_id.in_(chunk), User.is_active.is_(True))
                ).all()
            )
        return rows

    def resolve(self, request: DispatchRequest) -> list[Recipient]:
        merged: dict[str, Recipient] = {}

        def _add(recipient: Recipient) -> None:
            existing = merged.get(recipient.key)
            if existing is None:
                merged[recipient.key] = recipient
            else:
                existing.merge(recipient)

        for recipient in request.recipients:
            _add(recipient)

        employee_ids = _unique(request.employee_ids)
        if employee_ids:
            for employee in self.employees_by_ids(employee_ids):
                _add(recipient_from_employee(employee))
            if ChannelName.PUSH in request.channels:
                for user in self.linked_users(employee_ids):
                    _add(_recipient_from_user(user))

        for user in self.users_by_ids(_unique(request.user_ids)):
            _add(_recipient_from_user(user))

        for user in self.users_by_roles(canonical_roles(_unique(request.target_roles))):
            _add(_recipient_from_user(user))

        return list(merged.values())


class NotificationDispatcher:
    def __init__(
        self,
        db: Session,
        *,
        channels: Mapping[ChannelName, NotificationChannel] | None = None,
        max_workers: int | None = None,
    ):
        self.db = db
        self.channels: dict[ChannelName, NotificationChannel] = dict(channels or default_channels())
        self.max_workers = max(1, max_workers or get_settings().dispatch_max_workers)

    def _active_channels(self, requested: Iterable[ChannelName]) -> tuple[list[ChannelName], list[str]]:
        active: list[ChannelName] = []
        skipped: list[str] = []
        for name in sorted(set(requested), key=lambda item: item.value):
            channel = self.channels.get(name)
            if channel is None or not channel.enabled:
                skipped.append(name.value)
                continue
            channel.ensure_ready()
            active.append(name)
        return active, skipped

    def _push_data(self, request: DispatchRequest) -> dict[str, Any]:
        return {
            "badgeCount": str(request.badge_count) if request.badge_count else "1",
            "url": request.url or get_settings().push_default_url,
        }

    def _build_jobs(
        self,
        request: DispatchRequest,
        source: MessageSource,
        recipients: list[Recipient],
        active: list[ChannelName],
    ) -> list[_SendJob]:
        jobs: list[_SendJob] = []
        seen_tokens: set[str] = set()
        push_data = self._push_data(request) if ChannelName.PUSH in active else None
        for recipient in recipients:
            variables = {
                "recipient_name": recipient.name,
                **request.variables,
                **recipient.variables,
            }
            message = source.render(variables)
            email = normalize_email(recipient.email)
            phone = normalize_phone(recipient.phone)
            if ChannelName.EMAIL in active and email:
                jobs.append(_SendJob(ChannelName.EMAIL, recipient.key, email, message))
            if ChannelName.WHATSAPP in active and phone:
                jobs.append(_SendJob(ChannelName.WHATSAPP, recipient.key, phone, message))
            if ChannelName.PUSH in active:
                for token in recipient.push_tokens:
                    if token in seen_tokens:
                        continue
                    seen_tokens.add(token)
                    jobs.append(_SendJob(ChannelName.PUSH, recipient.key, token, message, push_data))
        return jobs

    def _attempt(self, job: _SendJob) -> ChannelOutcome:
        channel = self.channels[job.channel]
        try:
            channel.send(job.target, job.message, data=job.data)
        except ChannelSendError as exc:
            logger.warning(
                "channel_send_failed",
                extra={
                    "channel": job.channel.value,
                    "recipient_key": job.recipient_key,
                    "status_code": exc.status_code,
                    "invalid_target": exc.invalid_target,
                    "error": str(exc)[:500],
                },
            )
            return ChannelOutcome(
                channel=job.channel,
                recipient_key=job.recipient_key,
                target=job.target,
                success=False,
                error=str(exc)[:500],
                status_code=exc.status_code,
                invalid_target=exc.invalid_target,
            )
        except Exception as exc:  # provider SDKs raise arbitrary types
            logger.exception(
                "channel_send_crashed",
                extra={"channel": job.channel.value, "recipient_key": job.recipient_key},
            )
            return ChannelOutcome(
                channel=job.channel,
                recipient_key=job.recipient_key,
                target=job.target,
                success=False,
                error=str(exc)[:500],
            )
        return ChannelOutcome(
            channel=job.channel,
            recipient_key=job.recipient_key,
            target=job.target,
            success=True,
        )

    def _run_jobs(self, jobs: list[_SendJob]) -> list[ChannelOutcome]:
        if not jobs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(jobs))) as executor:
            futures = [executor.submit(self._attempt, job) for job in jobs]
            # Every attempt settles before anything is summarised.
            wait(futures)
        return [future.result() for future in futures]

    def _prune_tokens(self, recipients: list[Recipient], outcomes: list[ChannelOutcome]) -> int:
        owners = {token: recipient.user_uid for recipient in recipients for token in recipient.push_tokens}
        invalid: dict[str, list[str]] = defaultdict(list)
        for outcome in outcomes:
            if outcome.channel is ChannelName.PUSH and outcome.invalid_target:
                owner = owners.get(outcome.target)
                if owner:
                    invalid[owner].append(outcome.target)
        if not invalid:
            return 0
        try:
            prune_invalid_tokens(self.db, invalid)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("push_token_prune_failed", extra={"users": len(invalid)})
        return sum(len(tokens) for tokens in invalid.values())

    def dispatch(self, request: DispatchRequest) -> DispatchSummary:
        if not request.has_audience():
            raise SetupError("MISSING_AUDIENCE", "At least one recipient, user id or target role is required.")

        source = load_message_source(
            self.db,
            template_slug=request.template_slug,
            subject=request.title,
            body=request.body,
        )
        active, skipped = self._active_channels(request.channels)
        recipients = AudienceResolver(self.db).resolve(request)
        jobs = self._build_jobs(request, source, recipients, active)
        outcomes = self._run_jobs(jobs)

        breakdown: dict[str, dict[str, int]] = {
            name.value: {"attempted": 0, "success": 0, "failure": 0} for name in active
        }
        notified: set[str] = set()
        for outcome in outcomes:
            bucket = breakdown[outcome.channel.value]
            bucket["attempted"] += 1
            if outcome.success:
                bucket["success"] += 1
                notified.add(outcome.recipient_key)
            else:
                bucket["failure"] += 1

        invalid_token_count = self._prune_tokens(recipients, outcomes)
        success_count = sum(1 for item in outcomes if item.success)
        if not outcomes:
            status = DeliveryStatus.NO_TARGETS
        elif success_count == 0:
            status = DeliveryStatus.FAILED
        else:
            status = DeliveryStatus.SENT

        summary = DispatchSummary(
            dispatch_id=uuid4().hex,
            event_type=request.event_type,
            title=source.render(request.variables).subject or request.title or request.event_type,
            template_slug=source.template_slug,
            target_roles=_unique(request.target_roles),
            user_ids=_unique(request.user_ids),
            employee_ids=_unique(request.employee_ids),
            channels=[name.value for name in active],
            status=status.value,
            recipient_count=len(recipients),
            attempted_count=len(outcomes),
            success_count=success_count,
            failure_count=len(outcomes) - success_count,
            notified_count=len(notified),
            invalid_token_count=invalid_token_count,
            channel_breakdown=breakdown,
            skipped_channels=skipped,
            created_by=request.created_by,
            created_at=datetime.now(timezone.utc),
        )
        record = record_delivery(self.db, summary)
        summary.record_id = record.id if record is not None else None
        logger.info("dispatch_complete", extra=summary.to_dict())
        return summary
