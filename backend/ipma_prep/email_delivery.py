"""Outbound email: reminder templates and delivery backends."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel

from .config import Settings
from .models import Subscription, UserProfile, utcnow

logger = logging.getLogger(__name__)

TemplateType = Literal["expiry_warning", "expiry_final", "subscription_extended"]

_SIGNATURE = "Best regards,\nIPMA Certification Prep Team"


@dataclass(frozen=True)
class EmailTemplate:
    type: TemplateType
    subject: str
    body: str


EMAIL_TEMPLATES: Dict[TemplateType, EmailTemplate] = {
    "expiry_warning": EmailTemplate(
        type="expiry_warning",
        subject="Your IPMA Certification Prep access expires soon",
        body=(
            "Dear {{userName}},\n\n"
            "Your IPMA Certification Prep platform access will expire in {{daysLeft}} days.\n\n"
            "To continue your certification preparation, please contact your administrator "
            "to renew your subscription.\n\n"
            "Important reminders:\n"
            "- You have {{daysLeft}} days left to complete your studies\n"
            "- Your progress will be saved until the expiry date\n"
            "- Contact your administrator for renewal options\n\n" + _SIGNATURE
        ),
    ),
    "expiry_final": EmailTemplate(
        type="expiry_final",
        subject="Final reminder: Your IPMA Certification Prep access expires tomorrow",
        body=(
            "Dear {{userName}},\n\n"
            "This is your final reminder that your IPMA Certification Prep platform access "
            "expires tomorrow.\n\n"
            "Please contact your administrator immediately if you need to extend your access.\n\n"
            "Your progress has been saved and will be available once your subscription is renewed.\n\n"
            + _SIGNATURE
        ),
    ),
    "subscription_extended": EmailTemplate(
        type="subscription_extended",
        subject="Your IPMA Certification Prep access has been extended",
        body=(
            "Dear {{userName}},\n\n"
            "Your IPMA Certification Prep platform access has been extended by {{extensionDays}} days.\n\n"
            "You now have access until {{newExpiryDate}}.\n\n"
            "Continue your certification preparation with confidence!\n\n" + _SIGNATURE
        ),
    ),
}


class EmailMessage(BaseModel):
    to: str
    subject: str
    body: str


class EmailSendResult(BaseModel):
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> EmailSendResult:  # pragma: no cover - protocol definition
        ...


def days_left(subscription: Subscription, now: Optional[datetime] = None) -> int:
    remaining = subscription.end_date - (now or utcnow())
    return math.ceil(remaining.total_seconds() / 86400)


def render_template(
    template_type: TemplateType,
    user: UserProfile,
    subscription: Optional[Subscription] = None,
    *,
    extension_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> EmailMessage:
    template = EMAIL_TEMPLATES[template_type]
    values: Dict[str, str] = {"userName": user.display_name}
    if subscription is not None:
        values["daysLeft"] = str(days_left(subscription, now))
        values["newExpiryDate"] = subscription.end_date.date().isoformat()
    if extension_days:
        values["extensionDays"] = str(extension_days)

    subject, body = template.subject, template.body
    for name, value in values.items():
        placeholder = "{{" + name + "}}"
        subject = subject.replace(placeholder, value)
        body = body.replace(placeholder, value)
    return EmailMessage(to=user.email, subject=subject, body=body)


class LoggingEmailSender:
    """Development sender: logs the message and reports success."""

    def send(self, message: EmailMessage) -> EmailSendResult:
        logger.info("Email to %s: %s", message.to, message.subject)
        logger.debug("Email body for %s:\n%s", message.to, message.body)
        return EmailSendResult(success=True)


class HttpEmailSender:
    """Posts messages as JSON to a transactional email endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        sender: str = "no-reply@ipma-prep.local",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._client = client

    def send(self, message: EmailMessage) -> EmailSendResult:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {"from": self._sender, **message.model_dump()}

        local_client = self._client or httpx.Client(timeout=self._timeout)
        close_client = self._client is None
        try:
            response = local_client.post(self._endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Email delivery to %s failed: %s", message.to, exc)
            return EmailSendResult(success=False, error=str(exc))
        finally:
            if close_client:
                local_client.close()

        message_id: Optional[str] = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("id") is not None:
            message_id = str(data["id"])
        return EmailSendResult(success=True, message_id=message_id)


def build_sender(settings: Settings) -> EmailSender:
    if not settings.email_endpoint:
        return LoggingEmailSender()
    return HttpEmailSender(
        settings.email_endpoint,
        api_key=settings.email_api_key,
        sender=settings.email_from,
        timeout=settings.email_timeout_seconds,
    )


__all__ = [
    "EMAIL_TEMPLATES",
    "EmailMessage",
    "EmailSendResult",
    "EmailSender",
    "EmailTemplate",
    "HttpEmailSender",
    "LoggingEmailSender",
    "build_sender",
    "days_left",
    "render_template",
]
