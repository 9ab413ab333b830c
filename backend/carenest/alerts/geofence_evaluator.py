"""
geofence_evaluator.py — Turn inserted location samples into boundary alerts.

Subscribed to the ``locations`` change stream. For every new sample it
decides, per applicable geofence, whether the subject crossed the fence
boundary since the previous evaluation and writes an ENTRY/EXIT alert
when it did.

═══════════════════════════════════════════════════════════════════════════
PER-POINT FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │  LocationPoint       │
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 1. Resolve subject   │  subject → guardian_id
    │    and geofences     │  geofencesByGuardian, active, targeted at subject
    └─────────┬────────────┘     (lookup failure → skip point, no alert)
              │
              ▼
    ┌──────────────────────┐
    │ 2. Membership        │  is_inside = distance(point, centre) ≤ radius
    │    (per geofence)    │  was_inside = stored state (absent → outside)
    │                      │  write state conditional on the version read
    └─────────┬────────────┘     (conflict → re-read, re-decide, bounded)
              │
              ▼
    ┌──────────────────────┐
    │ 3. Transition        │  outside → inside  = ENTRY  (if notify_on_entry)
    │                      │  inside  → outside = EXIT   (if notify_on_exit)
    │                      │  unchanged         = nothing
    └─────────┬────────────┘
              │
              ▼
    ┌──────────────────────┐
    │ 4. Alert             │  id = subject:geofence:ENTRY|EXIT:location
    │                      │  insert-if-absent, so redelivery is harmless
    └──────────────────────┘

A cold start (no stored state) counts as "outside", so the first sample
seen inside a fence raises an ENTRY alert.

Every point is isolated: an exception while evaluating one point is
logged with its traceback and the rest of the batch continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from backend.carenest.alerts.models import Alert, AlertType
from backend.carenest.core.errors import ConditionalWriteError, DependencyError
from backend.carenest.core.logging_config import log_context
from backend.carenest.spatial.geo_math import is_inside
from backend.carenest.storage.entity_store import (
    GEOFENCES_BY_GUARDIAN,
    Collection,
    EntityStore,
    KeyCondition,
    SortOrder,
)
from backend.carenest.storage.membership import MembershipStore
from backend.carenest.storage.models import (
    Geofence,
    LocationPoint,
    MembershipState,
    Subject,
    utc_now,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════════════

class Transition(str, Enum):
    ENTRY = "ENTRY"
    EXIT  = "EXIT"
    NONE  = "NONE"


def detect_transition(was_inside: bool, now_inside: bool) -> Transition:
    """
    >>> detect_transition(False, True)
    <Transition.ENTRY: 'ENTRY'>
    >>> detect_transition(True, True)
    <Transition.NONE: 'NONE'>
    """
    if not was_inside and now_inside:
        return Transition.ENTRY
    if was_inside and not now_inside:
        return Transition.EXIT
    return Transition.NONE


def geofence_alert_id(subject_id: str, geofence_id: str, transition: Transition, location_id: str) -> str:
    return f"{subject_id}:{geofence_id}:{transition.value}:{location_id}"


@dataclass
class EvaluationReport:
    """Outcome counters for one evaluated batch."""
    total: int = 0
    evaluated: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates: int = 0
    alerts: List[Alert] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "evaluated": self.evaluated,
            "skipped": self.skipped,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "alert_ids": [a.alert_id for a in self.alerts],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Evaluator
# ═══════════════════════════════════════════════════════════════════════════

class GeofenceEvaluator:
    """Stateless handler for batches of inserted LocationPoints."""

    def __init__(
        self,
        store: EntityStore,
        *,
        membership: Optional[MembershipStore] = None,
        max_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._store = store
        self._membership = membership or MembershipStore(store)
        self.max_retries = max_retries
        self._clock = clock

    def handle_inserted_locations(
        self,
        batch: Iterable[Union[LocationPoint, Mapping[str, Any]]],
    ) -> EvaluationReport:
        report = EvaluationReport()

        for raw in batch:
            report.total += 1
            try:
                point = raw if isinstance(raw, LocationPoint) else LocationPoint.from_dict(raw)
                with log_context(subject_id=point.subject_id, location_id=point.location_id):
                    context = self._resolve_context(point)
                    if context is None:
                        report.skipped += 1
                        continue
                    subject, geofences = context
                    created, duplicates = self._evaluate_against(point, subject, geofences)
                report.alerts.extend(created)
                report.duplicates += duplicates
                report.evaluated += 1
            except Exception:
                report.failed += 1
                logger.exception(
                    "Geofence evaluation failed for location %s",
                    _describe(raw),
                )

        logger.info(
            "Evaluated %d location(s): %d alert(s), %d skipped, %d failed",
            report.evaluated, len(report.alerts), report.skipped, report.failed,
            extra={"batch_size": report.total},
        )
        return report

    def evaluate_point(self, point: LocationPoint) -> List[Alert]:
        """Evaluate a single point; returns the alerts it created."""
        context = self._resolve_context(point)
        if context is None:
            return []
        created, _ = self._evaluate_against(point, *context)
        return created

    # ── step 1: lookups ──

    def _resolve_context(
        self, point: LocationPoint,
    ) -> Optional[Tuple[Subject, List[Geofence]]]:
        log_extra = {"subject_id": point.subject_id, "location_id": point.location_id}

        try:
            item = self._store.get(Collection.SUBJECTS, {"id": point.subject_id})
        except DependencyError as exc:
            logger.error(
                "Subject lookup failed for %s; skipping point: %s",
                point.subject_id, exc, extra=log_extra,
            )
            return None
        if item is None:
            logger.warning("Unknown subject %s; skipping point", point.subject_id, extra=log_extra)
            return None

        subject = Subject.from_dict(item)
        if not subject.guardian_id:
            logger.warning("Subject %s has no guardian; skipping point", subject.subject_id, extra=log_extra)
            return None

        try:
            items = self._store.query_by_index(
                GEOFENCES_BY_GUARDIAN,
                KeyCondition(subject.guardian_id),
                SortOrder.ASC,
            )
        except DependencyError as exc:
            logger.error(
                "Geofence lookup failed for guardian %s; skipping point: %s",
                subject.guardian_id, exc, extra=log_extra,
            )
            return None

        geofences: List[Geofence] = []
        for gf_item in items:
            try:
                geofence = Geofence.from_dict(gf_item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Ignoring malformed geofence %s: %s", gf_item.get("id"), exc)
                continue
            if geofence.active and geofence.applies_to(subject.subject_id):
                geofences.append(geofence)

        return subject, geofences

    # ── steps 2-4 ──

    def _evaluate_against(
        self,
        point: LocationPoint,
        subject: Subject,
        geofences: List[Geofence],
    ) -> Tuple[List[Alert], int]:
        created: List[Alert] = []
        duplicates = 0

        for geofence in geofences:
            inside = is_inside(point.coordinate, geofence.center, geofence.radius_m)
            transition = self._update_membership(point, geofence, inside)

            if transition == Transition.ENTRY and not geofence.notify_on_entry:
                continue
            if transition == Transition.EXIT and not geofence.notify_on_exit:
                continue
            if transition == Transition.NONE:
                continue

            alert = self._build_alert(point, subject, geofence, transition)
            if self._store.put_if_absent(Collection.ALERTS, alert.to_dict()):
                logger.info(
                    "Geofence %s: %s",
                    transition.value.lower(), alert.message,
                    extra={
                        "alert_id": alert.alert_id,
                        "subject_id": subject.subject_id,
                        "geofence_id": geofence.geofence_id,
                    },
                )
                created.append(alert)
            else:
                duplicates += 1
                logger.info(
                    "Alert %s already exists; not written again", alert.alert_id,
                    extra={"alert_id": alert.alert_id},
                )

        return created, duplicates

    def _update_membership(
        self, point: LocationPoint, geofence: Geofence, inside: bool,
    ) -> Transition:
        """
        Record ``inside`` for (subject, geofence) and return the transition
        observed against the state this write replaced.

        Raises
        ------
        DependencyError
            Every attempt lost to a concurrent writer.
        """
        for attempt in range(1, self.max_retries + 1):
            current = self._membership.load(point.subject_id, geofence.geofence_id)
            was_inside = current.is_inside if current is not None else False
            expected = current.version if current is not None else None

            state = MembershipState(
                subject_id=point.subject_id,
                geofence_id=geofence.geofence_id,
                is_inside=inside,
                last_checked=self._clock(),
            )
            try:
                self._membership.save(state, expected)
            except ConditionalWriteError:
                logger.debug(
                    "Membership conflict on %s/%s (attempt %d/%d)",
                    point.subject_id, geofence.geofence_id, attempt, self.max_retries,
                )
                continue
            return detect_transition(was_inside, inside)

        raise DependencyError(
            "membership",
            f"{self.max_retries} conflicting writes",
            subject_id=point.subject_id,
            geofence_id=geofence.geofence_id,
        )

    def _build_alert(
        self,
        point: LocationPoint,
        subject: Subject,
        geofence: Geofence,
        transition: Transition,
    ) -> Alert:
        name = subject.name or "Child"
        if transition == Transition.ENTRY:
            alert_type = AlertType.GEOFENCE_ENTRY
            message = f"{name} entered {geofence.name}"
        else:
            alert_type = AlertType.GEOFENCE_EXIT
            message = f"{name} left {geofence.name}"

        return Alert(
            alert_id=geofence_alert_id(
                subject.subject_id, geofence.geofence_id, transition, point.location_id,
            ),
            subject_id=subject.subject_id,
            guardian_id=geofence.guardian_id,
            alert_type=alert_type,
            latitude=point.latitude,
            longitude=point.longitude,
            message=message,
            timestamp=self._clock(),
            geofence_id=geofence.geofence_id,
            geofence_name=geofence.name,
        )


def _describe(raw: Union[LocationPoint, Mapping[str, Any], Any]) -> str:
    if isinstance(raw, LocationPoint):
        return raw.location_id
    if isinstance(raw, Mapping):
        return str(raw.get("id", "<no id>"))
    return repr(raw)
