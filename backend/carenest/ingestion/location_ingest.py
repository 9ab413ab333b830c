"""
location_ingest.py — Validate and persist location samples from devices.

This is the only writer of the ``locations`` collection. Every accepted
sample becomes one immutable LocationPoint; the store's insert event
then wakes the geofence evaluator.

═══════════════════════════════════════════════════════════════════════════
VALIDATION ORDER
═══════════════════════════════════════════════════════════════════════════

    Check                     Rejects when                         error_code
    ─────────────────────     ─────────────────────────────────    ───────────────────
    1. Identity               no subject id                        UNAUTHORIZED (401)
    2. Coordinates            lat ∉ [-90, 90] or lon ∉ [-180, 180] INVALID_COORDINATES
    3. Freshness              older than max age, or further in    STALE_LOCATION
                              the future than the skew allowance
    4. Accuracy               negative, or > max accuracy          LOW_ACCURACY

The first failing check wins. A missing timestamp means "now".

═══════════════════════════════════════════════════════════════════════════
THROTTLING (optional)
═══════════════════════════════════════════════════════════════════════════

Mobile clients already drop most redundant fixes; the same thresholds
can be enforced here:

    Δt < min_interval                                  → drop
    Δt < displacement_window and moved < min_distance  → drop

A dropped sample is not stored and ``record`` returns the latest stored
point instead.

Sample ids are derived from (subject, timestamp in ms), so a client that
retries the same upload gets the already-stored point back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Union

from backend.carenest.core.config import Settings
from backend.carenest.core.errors import AuthError, DependencyError, ValidationError
from backend.carenest.core.logging_config import log_context
from backend.carenest.spatial.geo_math import distance_meters, validate_coordinates
from backend.carenest.storage.entity_store import (
    LOCATIONS_BY_SUBJECT,
    Collection,
    EntityStore,
    KeyCondition,
    SortOrder,
)
from backend.carenest.storage.models import (
    LocationPoint,
    Role,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Throttle Policy
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ThrottlePolicy:
    """Thresholds below which a new sample adds nothing over the last one."""
    min_interval_seconds: float = 5.0
    min_displacement_meters: float = 10.0
    displacement_window_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ThrottlePolicy":
        return cls(
            min_interval_seconds=settings.LOCATION_MIN_INTERVAL_SECONDS,
            min_displacement_meters=settings.LOCATION_MIN_DISPLACEMENT_METERS,
            displacement_window_seconds=settings.LOCATION_DISPLACEMENT_WINDOW_SECONDS,
        )

    def should_skip(self, previous: Optional[LocationPoint], candidate: LocationPoint) -> bool:
        if previous is None:
            return False
        elapsed = (candidate.timestamp - previous.timestamp).total_seconds()
        if elapsed < self.min_interval_seconds:
            return True
        if elapsed < self.displacement_window_seconds:
            moved = distance_meters(previous.coordinate, candidate.coordinate)
            return moved < self.min_displacement_meters
        return False


# ═══════════════════════════════════════════════════════════════════════════
# Location Ingest
# ═══════════════════════════════════════════════════════════════════════════

class LocationIngest:
    """
    Accepts location samples for authenticated subjects.

    Parameters
    ----------
    store : EntityStore
        Destination of the ``locations`` collection.
    max_age_seconds : int
        Samples older than this (relative to receipt) are rejected.
    max_future_skew_seconds : int
        Samples further in the future than this are rejected.
    max_accuracy_meters : float
        Samples with a worse reported accuracy are rejected.
    throttle : ThrottlePolicy | None
        Enables server-side throttling when given.
    clock : callable
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        max_age_seconds: int = 300,
        max_future_skew_seconds: int = 60,
        max_accuracy_meters: float = 100.0,
        throttle: Optional[ThrottlePolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self.max_age = timedelta(seconds=max_age_seconds)
        self.max_future_skew = timedelta(seconds=max_future_skew_seconds)
        self.max_accuracy_meters = max_accuracy_meters
        self.throttle = throttle
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: EntityStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> "LocationIngest":
        throttle = (
            ThrottlePolicy.from_settings(settings)
            if settings.LOCATION_THROTTLE_ENABLED else None
        )
        return cls(
            store,
            max_age_seconds=settings.LOCATION_MAX_AGE_SECONDS,
            max_future_skew_seconds=settings.LOCATION_MAX_FUTURE_SKEW_SECONDS,
            max_accuracy_meters=settings.LOCATION_MAX_ACCURACY_METERS,
            throttle=throttle,
            clock=clock,
        )

    # ── writes ──

    def record(
        self,
        subject_id: Optional[str],
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        timestamp: Optional[Union[str, datetime]] = None,
    ) -> LocationPoint:
        """
        Validate and store one sample.

        Returns
        -------
        LocationPoint
            The stored point, or the already-stored point for a replayed
            or throttled sample.

        Raises
        ------
        AuthError
            No caller identity.
        ValidationError
            ``INVALID_COORDINATES``, ``STALE_LOCATION`` or ``LOW_ACCURACY``.
        """
        if not subject_id:
            raise AuthError()

        coord = validate_coordinates(latitude, longitude)

        now = self._clock()
        sample_time = self._resolve_timestamp(timestamp, now)
        if sample_time < now - self.max_age:
            raise ValidationError(
                "Location timestamp is too old",
                field="timestamp",
                error_code="STALE_LOCATION",
                max_age_seconds=int(self.max_age.total_seconds()),
            )
        if sample_time > now + self.max_future_skew:
            raise ValidationError(
                "Location timestamp is in the future",
                field="timestamp",
                error_code="STALE_LOCATION",
                max_future_skew_seconds=int(self.max_future_skew.total_seconds()),
            )

        if accuracy is not None and (accuracy < 0 or accuracy > self.max_accuracy_meters):
            raise ValidationError(
                f"Location accuracy is too low (max {self.max_accuracy_meters:g}m)",
                field="accuracy",
                error_code="LOW_ACCURACY",
                value=accuracy,
            )

        point = LocationPoint(
            subject_id=subject_id,
            latitude=coord.latitude,
            longitude=coord.longitude,
            timestamp=sample_time,
            accuracy=float(accuracy) if accuracy is not None else None,
        )

        if self.throttle is not None:
            previous = self.latest(subject_id)
            if self.throttle.should_skip(previous, point):
                logger.debug(
                    "Throttled location for %s at %s",
                    subject_id, point.timestamp.isoformat(),
                    extra={"subject_id": subject_id},
                )
                return previous

        if not self._store.put_if_absent(Collection.LOCATIONS, point.to_dict()):
            logger.info(
                "Duplicate location %s ignored", point.location_id,
                extra={"subject_id": subject_id, "location_id": point.location_id},
            )
            existing = self._store.get(Collection.LOCATIONS, {"id": point.location_id})
            return LocationPoint.from_dict(existing) if existing else point

        logger.info(
            "Location stored for %s: (%.5f, %.5f) ±%s m",
            subject_id, point.latitude, point.longitude,
            "?" if point.accuracy is None else f"{point.accuracy:.0f}",
            extra={"subject_id": subject_id, "location_id": point.location_id},
        )
        return point

    # ── reads ──

    def latest(self, subject_id: str) -> Optional[LocationPoint]:
        items = self._store.query_by_index(
            LOCATIONS_BY_SUBJECT,
            KeyCondition(subject_id),
            SortOrder.DESC,
            limit=1,
        )
        return LocationPoint.from_dict(items[0]) if items else None

    def latest_for_guardian(
        self,
        guardian_id: Optional[str],
        subject_ids: Iterable[str],
    ) -> List[LocationPoint]:
        """
        Latest sample of each requested subject the guardian is responsible for.

        Ownership is checked per subject. Subjects that are unknown, are not
        monitored by ``guardian_id`` or have never reported are left out of
        the result, as is any subject whose lookup fails. Order follows
        ``subject_ids`` with duplicates removed.

        Raises
        ------
        AuthError
            No caller identity.
        """
        if not guardian_id:
            raise AuthError()

        points: List[LocationPoint] = []
        seen = set()
        for subject_id in subject_ids:
            if not subject_id or subject_id in seen:
                continue
            seen.add(subject_id)

            with log_context(subject_id=subject_id, guardian_id=guardian_id):
                try:
                    item = self._store.get(Collection.SUBJECTS, {"id": subject_id})
                    if (
                        item is None
                        or item.get("guardian_id") != guardian_id
                        or item.get("role") != Role.MONITORED.value
                    ):
                        logger.warning(
                            "Guardian %s requested location of %s without permission",
                            guardian_id, subject_id,
                        )
                        continue
                    point = self.latest(subject_id)
                except DependencyError as exc:
                    logger.error("Latest location lookup failed for %s: %s", subject_id, exc)
                    continue

            if point is not None:
                points.append(point)
        return points

    def history(
        self,
        subject_id: str,
        start: Optional[Union[str, datetime]] = None,
        end: Optional[Union[str, datetime]] = None,
        limit: Optional[int] = None,
    ) -> List[LocationPoint]:
        """Samples within [start, end], newest first."""
        start_dt = self._parse_bound(start, "start")
        end_dt = self._parse_bound(end, "end")
        if start_dt is not None and end_dt is not None and start_dt > end_dt:
            raise ValidationError("start must not be after end", field="start")
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive", field="limit", value=limit)

        items = self._store.query_by_index(
            LOCATIONS_BY_SUBJECT,
            KeyCondition(
                subject_id,
                sort_from=format_timestamp(start_dt) if start_dt else None,
                sort_to=format_timestamp(end_dt) if end_dt else None,
            ),
            SortOrder.DESC,
            limit=limit,
        )
        return [LocationPoint.from_dict(i) for i in items]

    # ── helpers ──

    @staticmethod
    def _resolve_timestamp(
        value: Optional[Union[str, datetime]], now: datetime,
    ) -> datetime:
        if value is None:
            return now
        try:
            return parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                "Invalid timestamp format", field="timestamp", value=str(value),
            ) from exc

    @staticmethod
    def _parse_bound(value, name: str) -> Optional[datetime]:
        if value is None:
            return None
        try:
            return parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid {name} timestamp", field=name, value=str(value),
            ) from exc
