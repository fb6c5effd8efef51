"""Subscription lifecycle: trial grants, extensions, expiry buckets and reminders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Literal, Optional, Tuple

from .email_delivery import EmailSender, LoggingEmailSender, TemplateType, render_template
from .errors import ValidationError
from .models import Subscription, UserProfile
from .reconciliation import ReconciliationEngine
from .telemetry import emit_event

logger = logging.getLogger(__name__)

EXPIRING_SOON_WINDOW = timedelta(days=7)
FINAL_REMINDER_WINDOW = timedelta(days=1)

ReminderKind = Literal["seven_days", "one_day"]
Pending = Tuple[UserProfile, Subscription]


@dataclass(frozen=True)
class ExpiryReport:
    expired: List[UserProfile] = field(default_factory=list)
    expiring_soon: List[UserProfile] = field(default_factory=list)


@dataclass(frozen=True)
class PendingReminders:
    warning: List[Pending] = field(default_factory=list)
    final: List[Pending] = field(default_factory=list)


@dataclass
class ReminderRunReport:
    warning_sent: int = 0
    final_sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class SubscriptionLifecycle:
    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        trial_days: int = 60,
        sender: Optional[EmailSender] = None,
    ) -> None:
        self._engine = engine
        self._trial_days = trial_days
        self._sender = sender or LoggingEmailSender()

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self._engine.clock()

    def ensure_user(
        self,
        email: str,
        name: str = "",
        *,
        role: str = "user",
        company_code: Optional[str] = None,
        company_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserProfile:
        """First-login hook: create the profile if needed and grant a trial to plain users."""
        user = self._engine.get_user_by_email(email)
        if user is None:
            user = self._engine.add_user(
                email, name, role=role, company_code=company_code, company_name=company_name
            )
            logger.info("Created profile %s for %s", user.id, user.email)
        if user.role == "user" and self._engine.get_subscription(user.id) is None:
            self.grant_trial(user.id, now=now)
        return user

    def grant_trial(self, user_id: str, *, now: Optional[datetime] = None) -> Subscription:
        start = self._now(now)
        return self._engine.add_subscription(
            user_id,
            start,
            start + timedelta(days=self._trial_days),
            plan_type="trial",
            auto_renew=False,
        )

    def extend_subscription(self, user_id: str, days: int, *, notify: bool = False) -> Subscription:
        """Push the end date out by ``days``, counted from the current end date."""
        if days <= 0:
            raise ValidationError("Extension must be at least one day", field="days")
        subscription = self._engine.get_subscription(user_id)
        if subscription is None:
            raise LookupError(f"User '{user_id}' has no subscription.")
        extended = self._engine.update_subscription(
            subscription.id, end_date=subscription.end_date + timedelta(days=days)
        )
        logger.info("Extended subscription %s by %d days to %s", extended.id, days, extended.end_date)

        if notify:
            user = self._engine.get_user(user_id)
            if user is not None:
                message = render_template("subscription_extended", user, extended, extension_days=days)
                result = self._sender.send(message)
                if not result.success:
                    logger.warning("Extension notice to %s failed: %s", user.email, result.error)
        return extended

    def check_expiry(self, now: Optional[datetime] = None) -> ExpiryReport:
        current = self._now(now)
        horizon = current + EXPIRING_SOON_WINDOW
        report = ExpiryReport()
        for subscription in self._engine.subscriptions:
            user = self._engine.get_user(subscription.user_id)
            if user is None:
                continue
            if subscription.end_date <= current:
                report.expired.append(user)
            elif subscription.end_date <= horizon:
                report.expiring_soon.append(user)
        return report

    def pending_reminders(self, now: Optional[datetime] = None) -> PendingReminders:
        current = self._now(now)
        warning_horizon = current + EXPIRING_SOON_WINDOW
        final_horizon = current + FINAL_REMINDER_WINDOW
        pending = PendingReminders()
        for user in self._engine.users:
            if user.role != "user":
                continue
            subscription = self._engine.get_subscription(user.id)
            if subscription is None or not subscription.is_active:
                continue
            end = subscription.end_date
            if final_horizon < end <= warning_horizon and not subscription.reminder_sent.seven_days:
                pending.warning.append((user, subscription))
            if current < end <= final_horizon and not subscription.reminder_sent.one_day:
                pending.final.append((user, subscription))
        return pending

    def process_reminders(
        self, sender: Optional[EmailSender] = None, *, now: Optional[datetime] = None
    ) -> ReminderRunReport:
        """Send due reminders. A flag is only set after its send reported success."""
        current = self._now(now)
        pending = self.pending_reminders(current)
        report = ReminderRunReport()
        delivery = sender or self._sender

        batches: Tuple[Tuple[TemplateType, ReminderKind, List[Pending]], ...] = (
            ("expiry_warning", "seven_days", pending.warning),
            ("expiry_final", "one_day", pending.final),
        )
        for template_type, kind, batch in batches:
            for user, subscription in batch:
                message = render_template(template_type, user, subscription, now=current)
                try:
                    result = delivery.send(message)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Reminder to %s raised: %s", user.email, exc)
                    success, error = False, str(exc)
                else:
                    success, error = result.success, result.error

                if not success:
                    report.failed += 1
                    report.errors.append(f"{user.email}: {error or 'unknown error'}")
                    continue

                self._mark_reminder(subscription.id, kind)
                if kind == "seven_days":
                    report.warning_sent += 1
                else:
                    report.final_sent += 1
                emit_event("reminder_sent", user_id=user.id, subscription_id=subscription.id, reminder=kind)

        logger.info(
            "Reminder run: %d warning, %d final, %d failed",
            report.warning_sent,
            report.final_sent,
            report.failed,
        )
        return report

    def _mark_reminder(self, subscription_id: str, kind: ReminderKind) -> Subscription:
        current = self._engine.find("subscriptions", subscription_id)
        if current is None:
            raise LookupError(f"No subscription with id '{subscription_id}'.")
        flags = current.reminder_sent.model_copy(update={kind: True})  # type: ignore[attr-defined]
        return self._engine.update_subscription(subscription_id, reminder_sent=flags.model_dump())


__all__ = [
    "EXPIRING_SOON_WINDOW",
    "ExpiryReport",
    "FINAL_REMINDER_WINDOW",
    "PendingReminders",
    "ReminderRunReport",
    "SubscriptionLifecycle",
]
