from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import DeliveryRecord, DeliveryStatus

if TYPE_CHECKING:
    from app.services.dispatcher import DispatchSummary

logger = logging.getLogger("app.audit")


def record_delivery(db: Session, summary: DispatchSummary) -> DeliveryRecord | None:
    """Append the one audit row of a dispatch. Existing rows are never touched."""
    record = DeliveryRecord(
        dispatch_id=summary.dispatch_id,
        event_type=summary.event_type,
        title=summary.title,
        template_slug=summary.template_slug,
        target_roles=list(summary.target_roles) or None,
        user_ids=list(summary.user_ids) or None,
        employee_ids=list(summary.employee_ids) or None,
        channels=list(summary.channels),
        recipient_count=summary.recipient_count,
        attempted_count=summary.attempted_count,
        success_count=summary.success_count,
        failure_count=summary.failure_count,
        notified_count=summary.notified_count,
        invalid_token_count=summary.invalid_token_count,
        channel_breakdown=dict(summary.channel_breakdown),
        skipped_channels=list(summary.skipped_channels),
        status=DeliveryStatus(summary.status),
        created_by=summary.created_by,
        created_at=summary.created_at or datetime.now(timezone.utc),
    )
    db.add(record)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "delivery_record_write_failed",
            extra={
                "dispatch_id": summary.dispatch_id,
                "event_type": summary.event_type,
                "status": summary.status,
            },
        )
        return None

    logger.info(
        "delivery_recorded",
        extra={
            "dispatch_id": summary.dispatch_id,
            "event_type": summary.event_type,
            "status": summary.status,
            "recipient_count": summary.recipient_count,
            "attempted_count": summary.attempted_count,
            "success_count": summary.success_count,
            "failure_count": summary.failure_count,
            "notified_count": summary.notified_count,
        },
    )
    return record


def list_delivery_records(
    db: Session,
    *,
    event_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[DeliveryRecord]:
    stmt = select(DeliveryRecord).order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id.desc())
    if event_type:
        stmt = stmt.where(DeliveryRecord.event_type == event_type)
    stmt = stmt.limit(limit).offset(offset)
    return list(db.scalars(stmt).all())
