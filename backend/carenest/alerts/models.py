"""
models.py — Alert records and notification delivery tracking.

Defines:
    • AlertType       — PANIC / GEOFENCE_ENTRY / GEOFENCE_EXIT
    • Alert           — the durable proof that something happened
    • DeliveryStatus  — per-recipient send outcome
    • DeliveryAttempt — one SMS send to one recipient
    • DispatchReport  — summary of one dispatcher batch

An Alert is written before any notification is attempted. Whether a
caregiver's phone actually received the SMS never changes the Alert.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from backend.carenest.storage.models import format_timestamp, parse_timestamp, utc_now


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    PANIC          = "PANIC"
    GEOFENCE_ENTRY = "GEOFENCE_ENTRY"
    GEOFENCE_EXIT  = "GEOFENCE_EXIT"


class DeliveryStatus(str, Enum):
    """Outcome of a single send."""
    DELIVERED = "delivered"   # gateway accepted the message
    FAILED    = "failed"      # gateway raised
    SKIPPED   = "skipped"     # no usable phone number


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """
    A safety alert for a guardian.

    Attributes
    ----------
    alert_id : str
        Deterministic for geofence transitions so redelivered events
        collapse into one record; time-based for panics.
    latitude, longitude : float
        Snapshot of where the subject was when the alert fired.
    geofence_id, geofence_name : str | None
        Set for GEOFENCE_ENTRY / GEOFENCE_EXIT only.
    """
    alert_id: str
    subject_id: str
    guardian_id: str
    alert_type: AlertType
    latitude: float
    longitude: float
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    geofence_id: Optional[str] = None
    geofence_name: Optional[str] = None
    is_read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.alert_id,
            "subject_id": self.subject_id,
            "guardian_id": self.guardian_id,
            "type": self.alert_type.value,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
            },
            "geofence_id": self.geofence_id,
            "geofence_name": self.geofence_name,
            "message": self.message,
            "is_read": self.is_read,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Alert":
        location = data.get("location") or {}
        return cls(
            alert_id=data["id"],
            subject_id=data["subject_id"],
            guardian_id=data["guardian_id"],
            alert_type=AlertType(data["type"]),
            latitude=float(location.get("latitude", 0.0)),
            longitude=float(location.get("longitude", 0.0)),
            message=data.get("message") or "",
            timestamp=parse_timestamp(data["timestamp"]),
            geofence_id=data.get("geofence_id"),
            geofence_name=data.get("geofence_name"),
            is_read=bool(data.get("is_read", False)),
        )


@dataclass
class DeliveryAttempt:
    """Record of one send to one recipient."""
    recipient: str                      # "guardian" or "trusted_contact:<name>"
    phone: Optional[str]
    status: DeliveryStatus
    attempted_at: datetime = field(default_factory=utc_now)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "phone": self.phone,
            "status": self.status.value,
            "attempted_at": self.attempted_at.isoformat(),
            "error_message": self.error_message,
        }


@dataclass
class DispatchReport:
    """Summary of one Alert Fan-out Dispatcher batch."""
    total: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    attempts: List[DeliveryAttempt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "sent": self.sent,
            "skipped": self.skipped,
            "failed": self.failed,
            "attempts": [a.to_dict() for a in self.attempts],
        }
