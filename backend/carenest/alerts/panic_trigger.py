"""
panic_trigger.py — Emergency alert raised directly by a monitored subject.

═══════════════════════════════════════════════════════════════════════════
FLOW
═══════════════════════════════════════════════════════════════════════════

    1. Identity         missing caller               → AuthError (401)
    2. Coordinates      out of range                 → ValidationError (422)
    3. Rate limit       PANIC in the last window     → RateLimitError (429)
                        (read failure: log, carry on)
    4. Subject          unknown                      → NotFoundError (404)
                        not MONITORED                → PermissionDeniedError (403)
                        no guardian                  → NotFoundError("Guardian")
    5. Persist          PANIC Alert (store failure propagates)
    6. Notify           guardian phone + trusted contacts, each independent

Step 6 runs only when direct notification is enabled. Once the Alert
is stored nothing in step 6 can fail the call: invalid numbers are
skipped, send failures are logged per recipient, and a missing guardian
record just means nobody is texted.

═══════════════════════════════════════════════════════════════════════════
RATE LIMIT
═══════════════════════════════════════════════════════════════════════════

One PANIC per subject per ``rate_limit_seconds``. A panic exactly
``rate_limit_seconds`` after the previous one is allowed. The 429 carries
the number of whole seconds until the window frees (at least 1).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from backend.carenest.alerts.channels.sms_gateway import SmsGateway
from backend.carenest.alerts.models import Alert, AlertType, DeliveryStatus
from backend.carenest.alerts.notifications import (
    build_panic_text,
    fan_out,
    guardian_recipients,
)
from backend.carenest.core.config import Settings
from backend.carenest.core.errors import (
    AuthError,
    DependencyError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
)
from backend.carenest.core.logging_config import log_context
from backend.carenest.spatial.geo_math import validate_coordinates
from backend.carenest.storage.entity_store import (
    ALERTS_BY_SUBJECT,
    Collection,
    EntityStore,
    KeyCondition,
    SortOrder,
)
from backend.carenest.storage.models import (
    Role,
    Subject,
    epoch_millis,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PANIC_MESSAGE = "Emergency! Child needs help!"


class PanicTrigger:
    """Raises PANIC alerts on behalf of authenticated monitored subjects."""

    def __init__(
        self,
        store: EntityStore,
        gateway: SmsGateway,
        *,
        rate_limit_seconds: int = 60,
        default_message: str = DEFAULT_PANIC_MESSAGE,
        notify_directly: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self.rate_limit = timedelta(seconds=rate_limit_seconds)
        self.default_message = default_message
        self.notify_directly = notify_directly
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: EntityStore,
        gateway: SmsGateway,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> "PanicTrigger":
        return cls(
            store,
            gateway,
            rate_limit_seconds=settings.PANIC_RATE_LIMIT_SECONDS,
            default_message=settings.PANIC_DEFAULT_MESSAGE,
            notify_directly=settings.PANIC_DIRECT_NOTIFY,
            clock=clock,
        )

    def trigger(
        self,
        subject_id: Optional[str],
        latitude: float,
        longitude: float,
        message: Optional[str] = None,
    ) -> Alert:
        if not subject_id:
            raise AuthError()

        coord = validate_coordinates(latitude, longitude)
        now = self._clock()

        self._enforce_rate_limit(subject_id, now)
        subject = self._resolve_subject(subject_id)

        alert = Alert(
            alert_id=f"panic-{subject_id}-{epoch_millis(now)}",
            subject_id=subject_id,
            guardian_id=subject.guardian_id,
            alert_type=AlertType.PANIC,
            latitude=coord.latitude,
            longitude=coord.longitude,
            message=(message or "").strip() or self.default_message,
            timestamp=now,
        )
        self._store.put(Collection.ALERTS, alert.to_dict())
        logger.warning(
            "PANIC raised by %s at (%.4f, %.4f)",
            subject_id, alert.latitude, alert.longitude,
            extra={
                "alert_id": alert.alert_id,
                "subject_id": subject_id,
                "guardian_id": subject.guardian_id,
            },
        )

        if self.notify_directly:
            with log_context(subject_id=subject_id, alert_id=alert.alert_id):
                self._notify(subject, alert)
        return alert

    # ── steps ──

    def _enforce_rate_limit(self, subject_id: str, now: datetime) -> None:
        try:
            recent = self._store.query_by_index(
                ALERTS_BY_SUBJECT,
                KeyCondition(subject_id, sort_from=format_timestamp(now - self.rate_limit)),
                SortOrder.DESC,
            )
        except DependencyError as exc:
            logger.error(
                "Panic rate-limit check failed for %s; allowing: %s",
                subject_id, exc, extra={"subject_id": subject_id},
            )
            return

        for item in recent:
            if item.get("type") != AlertType.PANIC.value:
                continue
            elapsed = now - parse_timestamp(item["timestamp"])
            if elapsed < self.rate_limit:
                remaining = (self.rate_limit - elapsed).total_seconds()
                raise RateLimitError(
                    "Panic alert already sent recently. Please wait before sending another.",
                    retry_after=max(1, math.ceil(remaining)),
                )

    def _resolve_subject(self, subject_id: str) -> Subject:
        item = self._store.get(Collection.SUBJECTS, {"id": subject_id})
        if item is None:
            raise NotFoundError("Subject", id=subject_id)
        subject = Subject.from_dict(item)
        if subject.role != Role.MONITORED:
            raise PermissionDeniedError(
                "Only monitored subjects can trigger panic alerts",
                subject_id=subject_id,
            )
        if not subject.guardian_id:
            raise NotFoundError("Guardian", subject_id=subject_id)
        return subject

    def _notify(self, subject: Subject, alert: Alert) -> None:
        try:
            item = self._store.get(Collection.SUBJECTS, {"id": subject.guardian_id})
        except DependencyError as exc:
            logger.error(
                "Guardian lookup failed for panic %s: %s", alert.alert_id, exc,
                extra={"alert_id": alert.alert_id},
            )
            return
        if item is None:
            logger.error(
                "Guardian %s not found; panic %s stored without notification",
                subject.guardian_id, alert.alert_id,
                extra={"alert_id": alert.alert_id, "guardian_id": subject.guardian_id},
            )
            return

        text = build_panic_text(subject.name, alert.latitude, alert.longitude, alert.message)
        attempts = fan_out(
            self._gateway,
            guardian_recipients(Subject.from_dict(item)),
            text,
            alert_id=alert.alert_id,
        )
        sent = sum(1 for a in attempts if a.status == DeliveryStatus.DELIVERED)
        logger.info(
            "Panic %s: notified %d of %d recipient(s)",
            alert.alert_id, sent, len(attempts),
            extra={"alert_id": alert.alert_id},
        )
