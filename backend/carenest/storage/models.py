"""
models.py — Family, location and geofence records shared across the core.

Defines:
    • Role            — GUARDIAN / MONITORED
    • TrustedContact  — extra emergency recipient on a guardian's record
    • Subject         — a family member (read-only to the core)
    • LocationPoint   — one immutable location sample
    • Geofence        — a guardian-owned circular region
    • MembershipState — last known inside/outside status per (subject, geofence)

Every record converts to and from the JSON-compatible dict the entity
store persists. Timestamps are always timezone-aware UTC and are
serialised with a fixed microsecond format, so string order is time
order inside the store's secondary indexes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from backend.carenest.core.errors import ValidationError
from backend.carenest.spatial.geo_math import Coordinate, validate_coordinates


# ═══════════════════════════════════════════════════════════════════════════
# Timestamp helpers
# ═══════════════════════════════════════════════════════════════════════════

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed); naive values are UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Union[str, datetime]) -> str:
    return parse_timestamp(value).isoformat(timespec="microseconds")


def epoch_millis(value: datetime) -> int:
    return int(round(parse_timestamp(value).timestamp() * 1000))


# ═══════════════════════════════════════════════════════════════════════════
# Subjects
# ═══════════════════════════════════════════════════════════════════════════

class Role(str, Enum):
    GUARDIAN = "GUARDIAN"
    MONITORED = "MONITORED"


@dataclass
class TrustedContact:
    name: str
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "phone": self.phone}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrustedContact":
        return cls(name=str(data.get("name") or ""), phone=data.get("phone"))


@dataclass
class Subject:
    """
    A family member.

    Attributes
    ----------
    subject_id : str
        Identity-provider id of the member.
    role : Role
        GUARDIAN owns geofences and receives alerts; MONITORED is tracked.
    guardian_id : str | None
        Owning guardian (MONITORED subjects only).
    contact_phone : str | None
        E.164 phone used for SMS notifications.
    trusted_contacts : list of TrustedContact
        Additional panic recipients (kept on the guardian's record).
    """
    subject_id: str
    name: str
    role: Role
    guardian_id: Optional[str] = None
    contact_phone: Optional[str] = None
    trusted_contacts: List[TrustedContact] = field(default_factory=list)
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.subject_id,
            "name": self.name,
            "role": self.role.value,
            "guardian_id": self.guardian_id,
            "contact_phone": self.contact_phone,
            "trusted_contacts": [c.to_dict() for c in self.trusted_contacts],
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Subject":
        contacts = data.get("trusted_contacts") or []
        if not isinstance(contacts, list):
            contacts = []
        return cls(
            subject_id=data["id"],
            name=data.get("name") or "",
            role=Role(data.get("role", Role.MONITORED.value)),
            guardian_id=data.get("guardian_id"),
            contact_phone=data.get("contact_phone"),
            trusted_contacts=[
                TrustedContact.from_dict(c) for c in contacts
                if isinstance(c, Mapping)
            ],
            active=bool(data.get("active", True)),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Location samples
# ═══════════════════════════════════════════════════════════════════════════

def make_location_id(subject_id: str, timestamp: datetime) -> str:
    return f"{subject_id}-{epoch_millis(timestamp)}"


@dataclass(frozen=True)
class LocationPoint:
    """One location sample. Never modified after it is stored."""
    subject_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    location_id: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", parse_timestamp(self.timestamp))
        if not self.location_id:
            object.__setattr__(
                self, "location_id",
                make_location_id(self.subject_id, self.timestamp),
            )

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.location_id,
            "subject_id": self.subject_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LocationPoint":
        accuracy = data.get("accuracy")
        return cls(
            subject_id=data["subject_id"],
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            timestamp=parse_timestamp(data["timestamp"]),
            accuracy=float(accuracy) if accuracy is not None else None,
            location_id=data.get("id") or "",
        )


# ═══════════════════════════════════════════════════════════════════════════
# Geofences
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Geofence:
    """
    A named circular region owned by a guardian.

    ``target_subject_id`` narrows the fence to one monitored subject;
    when absent it applies to every subject of the guardian.
    """
    geofence_id: str
    guardian_id: str
    name: str
    center_latitude: float
    center_longitude: float
    radius_m: float
    target_subject_id: Optional[str] = None
    active: bool = True
    notify_on_entry: bool = True
    notify_on_exit: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        validate_coordinates(self.center_latitude, self.center_longitude)
        if self.radius_m is None or self.radius_m <= 0:
            raise ValidationError(
                "Geofence radius must be greater than 0",
                field="radius_m",
                value=self.radius_m,
            )
        self.created_at = parse_timestamp(self.created_at)

    @property
    def center(self) -> Coordinate:
        return Coordinate(self.center_latitude, self.center_longitude)

    def applies_to(self, subject_id: str) -> bool:
        return self.target_subject_id is None or self.target_subject_id == subject_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.geofence_id,
            "guardian_id": self.guardian_id,
            "name": self.name,
            "center": {
                "latitude": self.center_latitude,
                "longitude": self.center_longitude,
            },
            "radius_m": self.radius_m,
            "target_subject_id": self.target_subject_id,
            "active": self.active,
            "notify_on_entry": self.notify_on_entry,
            "notify_on_exit": self.notify_on_exit,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Geofence":
        center = data.get("center") or {}
        return cls(
            geofence_id=data["id"],
            guardian_id=data["guardian_id"],
            name=data.get("name") or "",
            center_latitude=float(center["latitude"]),
            center_longitude=float(center["longitude"]),
            radius_m=float(data["radius_m"]),
            target_subject_id=data.get("target_subject_id"),
            active=bool(data.get("active", True)),
            notify_on_entry=bool(data.get("notify_on_entry", True)),
            notify_on_exit=bool(data.get("notify_on_exit", True)),
            created_at=parse_timestamp(data.get("created_at") or utc_now()),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Boundary membership
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class MembershipState:
    """
    Last evaluated boundary status for one (subject, geofence) pair.

    ``version`` is assigned by the store on every write and is the token
    conditional upserts compare against.
    """
    subject_id: str
    geofence_id: str
    is_inside: bool
    last_checked: datetime
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "geofence_id": self.geofence_id,
            "is_inside": self.is_inside,
            "last_checked": format_timestamp(self.last_checked),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MembershipState":
        return cls(
            subject_id=data["subject_id"],
            geofence_id=data["geofence_id"],
            is_inside=bool(data.get("is_inside", False)),
            last_checked=parse_timestamp(data["last_checked"]),
            version=int(data.get("version", 0)),
        )
