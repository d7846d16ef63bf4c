from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import SetupError, TemplateNotFound
from app.models import NotificationTemplate
from app.settings import get_settings

logger = logging.getLogger("app.templates")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}\s][^{}]*?)\s*\}\}")
WHATSAPP_SEPARATOR = "-" * 40


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    subject: str
    body: str
    template_slug: str | None = None


@dataclass(frozen=True, slots=True)
class MessageSource:
    """Unrendered subject/body patterns, fetched once and rendered per recipient."""

    subject: str
    body: str
    template_slug: str | None = None

    def render(self, variables: Mapping[str, Any] | None = None) -> RenderedMessage:
        merged = {**default_variables(), **dict(variables or {})}
        return RenderedMessage(
            subject=substitute(self.subject, merged),
            body=substitute(self.body, merged),
            template_slug=self.template_slug,
        )


def default_variables(now: datetime | None = None) -> dict[str, str]:
    now = now or datetime.now(timezone.utc)
    return {
        "company_name": get_settings().company_name,
        "year": str(now.year),
        "date": now.date().isoformat(),
    }


def substitute(text: str, variables: Mapping[str, Any]) -> str:
    # Unknown placeholders become empty strings so template syntax never reaches a recipient.
    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, text or "")


def placeholders_in(text: str) -> set[str]:
    return set(PLACEHOLDER_PATTERN.findall(text or ""))


def get_template_by_slug(db: Session, slug: str) -> NotificationTemplate:
    normalized = (slug or "").strip()
    if not normalized:
        raise SetupError("MISSING_TEMPLATE_SLUG", "Template slug is empty.")
    template = db.scalar(select(NotificationTemplate).where(NotificationTemplate.slug == normalized))
    if template is None or not template.is_active:
        logger.warning("template_not_found", extra={"template_slug": normalized})
        raise TemplateNotFound(normalized)
    return template


def load_message_source(
    db: Session,
    *,
    template_slug: str | None = None,
    subject: str | None = None,
    body: str | None = None,
) -> MessageSource:
    if template_slug:
        template = get_template_by_slug(db, template_slug)
        undeclared = (placeholders_in(template.subject) | placeholders_in(template.body)) - set(template.variables or [])
        if undeclared:
            logger.warning(
                "template_placeholders_undeclared",
                extra={"template_slug": template.slug, "placeholders": sorted(undeclared)},
            )
        return MessageSource(subject=template.subject, body=template.body, template_slug=template.slug)

    if not (subject or "").strip() or not (body or "").strip():
        raise SetupError(
            "MISSING_MESSAGE_CONTENT",
            "Either a template slug or both subject and body are required.",
        )
    return MessageSource(subject=subject or "", body=body or "")


def resolve_message(
    db: Session,
    *,
    template_slug: str | None = None,
    variables: Mapping[str, Any] | None = None,
    subject: str | None = None,
    body: str | None = None,
) -> RenderedMessage:
    source = load_message_source(db, template_slug=template_slug, subject=subject, body=body)
    return source.render(variables)


def format_whatsapp_text(message: RenderedMessage) -> str:
    if not message.subject:
        return message.body
    return f"*// {message.subject} //*\n{WHATSAPP_SEPARATOR}\n{message.body}"
