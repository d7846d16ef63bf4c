from __future__ import annotations

import enum
import json
import logging
import re
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any

import requests
from pywebpush import WebPushException, webpush

from app.errors import ChannelSendError, ProviderNotConfigured
from app.services.templates import RenderedMessage, format_whatsapp_text
from app.settings import (
    get_settings,
    missing_email_fields,
    missing_push_fields,
    missing_whatsapp_fields,
)

logger = logging.getLogger("app.channels")

EMAIL_ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
INVALID_PUSH_STATUS_CODES = {404, 410}


class ChannelName(str, enum.Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    PUSH = "push"


def normalize_email(value: str | None) -> str | None:
    normalized = " ".join((value or "").strip().lower().split())
    if not normalized or not EMAIL_ADDRESS_PATTERN.match(normalized):
        return None
    return normalized


def normalize_phone(value: str | None) -> str | None:
    digits = re.sub(r"\D", "", value or "")
    return digits or None


class NotificationChannel:
    name: ChannelName

    @property
    def enabled(self) -> bool:
        raise NotImplementedError

    def missing_fields(self) -> list[str]:
        raise NotImplementedError

    @property
    def configured(self) -> bool:
        return not self.missing_fields()

    def ensure_ready(self) -> None:
        missing = self.missing_fields()
        if self.enabled and missing:
            raise ProviderNotConfigured(self.name.value, missing)

    def send(self, target: str, message: RenderedMessage, *, data: dict[str, Any] | None = None) -> None:
        raise NotImplementedError

    def config_status(self) -> dict[str, Any]:
        missing = self.missing_fields()
        return {
            "enabled": self.enabled,
            "configured": not missing,
            "missing_fields": missing,
        }


class EmailChannel(NotificationChannel):
    name = ChannelName.EMAIL

    @property
    def enabled(self) -> bool:
        return bool(get_settings().email_enabled)

    def missing_fields(self) -> list[str]:
        return missing_email_fields()

    def send(self, target: str, message: RenderedMessage, *, data: dict[str, Any] | None = None) -> None:
        settings = get_settings()
        email_message = EmailMessage()
        email_message["From"] = settings.smtp_from
        email_message["To"] = target
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)
        email_message.add_alternative(message.body, subtype="html")

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as smtp_client:
                if settings.smtp_use_tls:
                    smtp_client.starttls()
                if settings.smtp_user:
                    smtp_client.login(settings.smtp_user, settings.smtp_pass)
                smtp_client.send_message(email_message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise ChannelSendError(self.name.value, target, str(exc), invalid_target=True) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelSendError(self.name.value, target, str(exc)[:500]) from exc


class WhatsAppChannel(NotificationChannel):
    name = ChannelName.WHATSAPP

    @property
    def enabled(self) -> bool:
        return bool(get_settings().whatsapp_enabled)

    def missing_fields(self) -> list[str]:
        return missing_whatsapp_fields()

    def send(self, target: str, message: RenderedMessage, *, data: dict[str, Any] | None = None) -> None:
        settings = get_settings()
        form = {
            "secret": settings.whatsapp_api_secret,
            "account": settings.whatsapp_account_id,
            "recipient": target,
            "type": "text",
            "message": format_whatsapp_text(message),
        }
        try:
            response = requests.post(
                settings.whatsapp_api_url,
                data=form,
                timeout=settings.whatsapp_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ChannelSendError(self.name.value, target, str(exc)[:500]) from exc

        try:
            result = response.json()
        except ValueError:
            result = {}
        provider_status = result.get("status") if isinstance(result, dict) else None
        if response.ok and provider_status in {200, "200", "success"}:
            return
        provider_message = result.get("message") if isinstance(result, dict) else None
        raise ChannelSendError(
            self.name.value,
            target,
            str(provider_message or f"provider_status_{response.status_code}"),
            status_code=response.status_code,
        )


class PushChannel(NotificationChannel):
    """Web Push delivery; a device token is a serialized push subscription."""

    name = ChannelName.PUSH

    @property
    def enabled(self) -> bool:
        return bool(get_settings().push_enabled)

    def missing_fields(self) -> list[str]:
        return missing_push_fields()

    @staticmethod
    def parse_token(token: str) -> dict[str, Any]:
        try:
            subscription = json.loads(token)
        except (TypeError, ValueError) as exc:
            raise ChannelSendError("push", token, "token_not_a_subscription", invalid_target=True) from exc
        keys = subscription.get("keys") if isinstance(subscription, dict) else None
        if (
            not isinstance(keys, dict)
            or not str(subscription.get("endpoint") or "").strip()
            or not keys.get("p256dh")
            or not keys.get("auth")
        ):
            raise ChannelSendError("push", token, "token_incomplete", invalid_target=True)
        return {
            "endpoint": str(subscription["endpoint"]).strip(),
            "keys": {"p256dh": keys["p256dh"], "auth": keys["auth"]},
        }

    def send(self, target: str, message: RenderedMessage, *, data: dict[str, Any] | None = None) -> None:
        settings = get_settings()
        subscription_info = self.parse_token(target)
        payload = {
            "title": message.subject,
            "body": message.body,
            "data": data or {},
            "ts_utc": datetime.now(timezone.utc).isoformat(),
        }
        try:
            webpush(
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=settings.push_vapid_private_key,
                vapid_claims={"sub": settings.push_vapid_subject},
                ttl=60,
            )
        except WebPushException as exc:
            status_code: int | None = None
            if exc.response is not None:
                status_code = exc.response.status_code
            raise ChannelSendError(
                self.name.value,
                target,
                str(exc)[:500],
                status_code=status_code,
                invalid_target=status_code in INVALID_PUSH_STATUS_CODES,
            ) from exc


def default_channels() -> dict[ChannelName, NotificationChannel]:
    return {
        ChannelName.EMAIL: EmailChannel(),
        ChannelName.WHATSAPP: WhatsAppChannel(),
        ChannelName.PUSH: PushChannel(),
    }


def get_notification_channel_health() -> dict[str, Any]:
    return {name.value: channel.config_status() for name, channel in default_channels().items()}
