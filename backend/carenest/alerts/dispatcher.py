"""
dispatcher.py — Alert Fan-out Dispatcher.

Subscribed to the ``alerts`` change stream. For each inserted alert it
resolves the owning guardian and sends one SMS:

    "CareNest Alert: {alert message}"

Records are isolated: a failed guardian lookup, a missing or malformed
phone, or a gateway error affects only that alert and is logged.

Types listed in ``skip_types`` are not sent. PANIC is skipped when the
panic trigger already texted the guardian and trusted contacts itself.
"""

from __future__ import annotations

import logging
from typing import Any, Collection as CollectionT, Iterable, Mapping, Union

from backend.carenest.alerts.channels.sms_gateway import SmsGateway
from backend.carenest.alerts.models import (
    Alert,
    AlertType,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
)
from backend.carenest.alerts.notifications import build_alert_text, is_valid_phone
from backend.carenest.core.logging_config import log_context
from backend.carenest.storage.entity_store import Collection, EntityStore
from backend.carenest.storage.models import Subject

logger = logging.getLogger(__name__)


class AlertDispatcher:

    def __init__(
        self,
        store: EntityStore,
        gateway: SmsGateway,
        *,
        message_prefix: str = "CareNest Alert",
        skip_types: CollectionT[AlertType] = (),
    ) -> None:
        self._store = store
        self._gateway = gateway
        self.message_prefix = message_prefix
        self.skip_types = frozenset(skip_types)

    def handle_inserted_alerts(
        self,
        batch: Iterable[Union[Alert, Mapping[str, Any]]],
    ) -> DispatchReport:
        report = DispatchReport()

        for raw in batch:
            report.total += 1
            try:
                alert = raw if isinstance(raw, Alert) else Alert.from_dict(raw)
                with log_context(alert_id=alert.alert_id, guardian_id=alert.guardian_id):
                    attempt = self._dispatch(alert)
            except Exception as exc:
                report.failed += 1
                logger.exception("Dispatch failed for alert %s", _alert_id(raw))
                report.attempts.append(DeliveryAttempt(
                    recipient="guardian", phone=None,
                    status=DeliveryStatus.FAILED, error_message=str(exc),
                ))
                continue

            report.attempts.append(attempt)
            if attempt.status == DeliveryStatus.DELIVERED:
                report.sent += 1
            elif attempt.status == DeliveryStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1

        logger.info(
            "Dispatched %d alert(s): %d sent, %d skipped, %d failed",
            report.total, report.sent, report.skipped, report.failed,
            extra={"batch_size": report.total},
        )
        return report

    def _dispatch(self, alert: Alert) -> DeliveryAttempt:
        log_extra = {"alert_id": alert.alert_id, "guardian_id": alert.guardian_id}

        if alert.alert_type in self.skip_types:
            logger.debug("Alert %s (%s) handled elsewhere", alert.alert_id, alert.alert_type.value)
            return DeliveryAttempt(
                recipient="guardian", phone=None,
                status=DeliveryStatus.SKIPPED,
                error_message=f"{alert.alert_type.value} notified directly",
            )

        item = self._store.get(Collection.SUBJECTS, {"id": alert.guardian_id})
        if item is None:
            logger.warning("Guardian %s not found for alert %s", alert.guardian_id, alert.alert_id, extra=log_extra)
            return DeliveryAttempt(
                recipient="guardian", phone=None,
                status=DeliveryStatus.SKIPPED,
                error_message="Guardian not found",
            )

        phone = Subject.from_dict(item).contact_phone
        if not is_valid_phone(phone):
            logger.warning(
                "No usable phone for guardian %s (alert %s): %r",
                alert.guardian_id, alert.alert_id, phone, extra=log_extra,
            )
            return DeliveryAttempt(
                recipient="guardian", phone=phone,
                status=DeliveryStatus.SKIPPED,
                error_message="No valid phone number",
            )

        try:
            self._gateway.send(phone, build_alert_text(alert, self.message_prefix))
        except Exception as exc:
            logger.error(
                "SMS send failed for alert %s to %s: %s",
                alert.alert_id, phone, exc, extra=log_extra,
            )
            return DeliveryAttempt(
                recipient="guardian", phone=phone,
                status=DeliveryStatus.FAILED, error_message=str(exc),
            )

        logger.info("Alert %s sent to guardian %s", alert.alert_id, alert.guardian_id, extra=log_extra)
        return DeliveryAttempt(
            recipient="guardian", phone=phone, status=DeliveryStatus.DELIVERED,
        )


def _alert_id(raw: Any) -> str:
    if isinstance(raw, Alert):
        return raw.alert_id
    if isinstance(raw, Mapping):
        return str(raw.get("id", "<no id>"))
    return repr(raw)
