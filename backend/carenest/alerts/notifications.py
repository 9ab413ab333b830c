"""
notifications.py — Caregiver message text and per-recipient SMS fan-out.

Every recipient is attempted independently: an invalid number is
skipped and logged, a gateway failure is caught and logged, and neither
stops the remaining recipients.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from backend.carenest.alerts.channels.sms_gateway import SmsGateway
from backend.carenest.alerts.models import Alert, DeliveryAttempt, DeliveryStatus
from backend.carenest.storage.models import Subject

logger = logging.getLogger(__name__)

# E.164: leading +, no leading zero, at most 15 digits
PHONE_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_phone(phone: Optional[str]) -> bool:
    return isinstance(phone, str) and bool(PHONE_PATTERN.match(phone))


@dataclass(frozen=True)
class Recipient:
    label: str
    phone: Optional[str]


def guardian_recipients(guardian: Subject, *, include_trusted: bool = True) -> List[Recipient]:
    """The guardian's own phone followed by each trusted contact's."""
    recipients = [Recipient("guardian", guardian.contact_phone)]
    if include_trusted:
        recipients.extend(
            Recipient(f"trusted_contact:{c.name}", c.phone)
            for c in guardian.trusted_contacts
        )
    return recipients


def build_panic_text(subject_name: str, latitude: float, longitude: float, message: str) -> str:
    name = subject_name or "Child"
    return (
        "🚨 PANIC ALERT 🚨\n"
        f"{name} triggered a panic alert!\n"
        f"Location: ({latitude:.4f}, {longitude:.4f})\n"
        f"Message: {message}"
    )


def build_alert_text(alert: Alert, prefix: str = "CareNest Alert") -> str:
    return f"{prefix}: {alert.message}"


def fan_out(
    gateway: SmsGateway,
    recipients: Iterable[Recipient],
    text: str,
    *,
    alert_id: str,
) -> List[DeliveryAttempt]:
    """
    Send ``text`` to every recipient with a valid phone.

    Returns
    -------
    list of DeliveryAttempt
        One entry per recipient, in input order.
    """
    attempts: List[DeliveryAttempt] = []

    for recipient in recipients:
        if not recipient.phone:
            attempts.append(DeliveryAttempt(
                recipient=recipient.label, phone=None,
                status=DeliveryStatus.SKIPPED,
                error_message="No phone number on file",
            ))
            continue

        if not is_valid_phone(recipient.phone):
            logger.error(
                "Invalid phone number format for %s: %s (alert %s)",
                recipient.label, recipient.phone, alert_id,
                extra={"alert_id": alert_id},
            )
            attempts.append(DeliveryAttempt(
                recipient=recipient.label, phone=recipient.phone,
                status=DeliveryStatus.SKIPPED,
                error_message="Invalid phone number format",
            ))
            continue

        try:
            gateway.send(recipient.phone, text)
        except Exception as exc:
            logger.error(
                "Failed to send SMS to %s %s (alert %s): %s",
                recipient.label, recipient.phone, alert_id, exc,
                extra={"alert_id": alert_id},
            )
            attempts.append(DeliveryAttempt(
                recipient=recipient.label, phone=recipient.phone,
                status=DeliveryStatus.FAILED,
                error_message=str(exc),
            ))
            continue

        attempts.append(DeliveryAttempt(
            recipient=recipient.label, phone=recipient.phone,
            status=DeliveryStatus.DELIVERED,
        ))

    return attempts
