"""
test_geofence_evaluator.py — Boundary transitions, alert creation and
duplicate / race tolerance of the geofence evaluator.

Covers:
    • Transition detection (entry, exit, unchanged, cold start)
    • Geofence targeting (active flag, target subject, notify flags)
    • Deterministic alert ids under redelivery
    • Conditional membership writes under concurrent evaluation
    • Per-point isolation and lookup-failure skips

Run with:
    pytest tests/test_geofence_evaluator.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from backend.carenest.alerts.geofence_evaluator import (
    GeofenceEvaluator,
    Transition,
    detect_transition,
    geofence_alert_id,
)
from backend.carenest.alerts.models import AlertType
from backend.carenest.core.errors import ConditionalWriteError, DependencyError
from backend.carenest.spatial.geo_math import Coordinate, distance_meters
from backend.carenest.storage.entity_store import (
    ALERTS_BY_SUBJECT,
    Collection,
    InMemoryStore,
    KeyCondition,
)
from backend.carenest.storage.membership import MembershipStore
from backend.carenest.storage.models import (
    Geofence,
    LocationPoint,
    Role,
    Subject,
)

NOW = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_subject(
    subject_id: str = "child-1",
    name: str = "Maya",
    guardian_id: str = "parent-1",
) -> Subject:
    return Subject(subject_id=subject_id, name=name, role=Role.MONITORED, guardian_id=guardian_id)


def _make_geofence(
    geofence_id: str = "gf-home",
    name: str = "Home",
    lat: float = 0.0,
    lon: float = 0.0,
    radius_m: float = 500.0,
    **kwargs,
) -> Geofence:
    return Geofence(
        geofence_id=geofence_id,
        guardian_id=kwargs.pop("guardian_id", "parent-1"),
        name=name,
        center_latitude=lat,
        center_longitude=lon,
        radius_m=radius_m,
        created_at=NOW - timedelta(days=1),
        **kwargs,
    )


def _make_point(lat: float, lon: float, seconds: int = 0, subject_id: str = "child-1") -> LocationPoint:
    return LocationPoint(
        subject_id=subject_id,
        latitude=lat,
        longitude=lon,
        timestamp=NOW + timedelta(seconds=seconds),
    )


def _seed(store, *geofences, subject=None):
    store.put(Collection.SUBJECTS, (subject or _make_subject()).to_dict())
    for gf in geofences or (_make_geofence(),):
        store.put(Collection.GEOFENCES, gf.to_dict())


def _make_evaluator(store, **kwargs) -> GeofenceEvaluator:
    return GeofenceEvaluator(store, clock=lambda: NOW, **kwargs)


def _alerts(store, subject_id="child-1"):
    return store.query_by_index(ALERTS_BY_SUBJECT, KeyCondition(subject_id))


@pytest.fixture
def store():
    return InMemoryStore()


# ═══════════════════════════════════════════════════════════════════════════
# Transition detection
# ═══════════════════════════════════════════════════════════════════════════

class TestDetectTransition:

    @pytest.mark.parametrize("was,now,expected", [
        (False, True, Transition.ENTRY),
        (True, False, Transition.EXIT),
        (True, True, Transition.NONE),
        (False, False, Transition.NONE),
    ])
    def test_table(self, was, now, expected):
        assert detect_transition(was, now) == expected

    def test_alert_id_format(self):
        assert geofence_alert_id("c1", "g1", Transition.EXIT, "c1-1700") == "c1:g1:EXIT:c1-1700"


# ═══════════════════════════════════════════════════════════════════════════
# Entry / exit
# ═══════════════════════════════════════════════════════════════════════════

class TestEntryExit:

    def test_cold_start_inside_raises_entry(self, store):
        _seed(store)
        point = _make_point(0.0, 0.0)

        report = _make_evaluator(store).handle_inserted_locations([point])

        assert report.evaluated == 1
        assert len(report.alerts) == 1
        alert = report.alerts[0]
        assert alert.alert_type == AlertType.GEOFENCE_ENTRY
        assert alert.alert_id == f"child-1:gf-home:ENTRY:{point.location_id}"
        assert alert.message == "Maya entered Home"
        assert alert.guardian_id == "parent-1"
        assert alert.geofence_name == "Home"
        assert (alert.latitude, alert.longitude) == (0.0, 0.0)

        state = MembershipStore(store).load("child-1", "gf-home")
        assert state.is_inside is True
        assert state.last_checked == NOW

    def test_exit_after_entry(self, store):
        _seed(store)
        evaluator = _make_evaluator(store)
        evaluator.handle_inserted_locations([_make_point(0.0, 0.0)])

        report = evaluator.handle_inserted_locations([_make_point(10.0, 10.0, seconds=60)])

        assert [a.alert_type for a in report.alerts] == [AlertType.GEOFENCE_EXIT]
        assert report.alerts[0].message == "Maya left Home"
        assert MembershipStore(store).load("child-1", "gf-home").is_inside is False
        assert len(_alerts(store)) == 2

    def test_exit_suppressed_when_notify_on_exit_off(self, store):
        _seed(store, _make_geofence(notify_on_exit=False))
        evaluator = _make_evaluator(store)
        evaluator.handle_inserted_locations([_make_point(0.0, 0.0)])

        report = evaluator.handle_inserted_locations([_make_point(10.0, 10.0, seconds=60)])

        assert report.alerts == []
        assert MembershipStore(store).load("child-1", "gf-home").is_inside is False

    def test_entry_suppressed_but_state_recorded(self, store):
        _seed(store, _make_geofence(notify_on_entry=False))

        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])

        assert report.alerts == []
        assert MembershipStore(store).load("child-1", "gf-home").is_inside is True

    def test_no_alert_when_status_unchanged(self, store):
        _seed(store)
        evaluator = _make_evaluator(store)
        evaluator.handle_inserted_locations([_make_point(0.0, 0.0)])

        report = evaluator.handle_inserted_locations([
            _make_point(0.001, 0.0, seconds=30),
            _make_point(0.0, 0.001, seconds=60),
        ])

        assert report.alerts == []
        assert len(_alerts(store)) == 1

    def test_cold_start_outside_no_alert(self, store):
        _seed(store)
        report = _make_evaluator(store).handle_inserted_locations([_make_point(5.0, 5.0)])
        assert report.alerts == []
        assert MembershipStore(store).load("child-1", "gf-home").is_inside is False

    def test_boundary_point_counts_as_inside(self, store):
        radius = distance_meters(Coordinate(0.0, 1.0), Coordinate(0.0, 0.0))
        _seed(store, _make_geofence(radius_m=radius))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 1.0)])
        assert len(report.alerts) == 1

    def test_accepts_stream_dicts(self, store):
        _seed(store)
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0).to_dict()])
        assert len(report.alerts) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Geofence selection
# ═══════════════════════════════════════════════════════════════════════════

class TestGeofenceSelection:

    def test_inactive_geofence_ignored(self, store):
        _seed(store, _make_geofence(active=False))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.alerts == []
        assert MembershipStore(store).load("child-1", "gf-home") is None

    def test_targeted_at_other_subject_ignored(self, store):
        _seed(store, _make_geofence(target_subject_id="child-2"))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.alerts == []

    def test_targeted_at_this_subject(self, store):
        _seed(store, _make_geofence(target_subject_id="child-1"))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert len(report.alerts) == 1

    def test_other_guardians_geofences_ignored(self, store):
        _seed(store, _make_geofence(guardian_id="parent-9"))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.alerts == []

    def test_one_alert_per_geofence(self, store):
        _seed(
            store,
            _make_geofence("gf-home", "Home", radius_m=500),
            _make_geofence("gf-block", "Block", radius_m=2000),
        )
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert sorted(a.geofence_id for a in report.alerts) == ["gf-block", "gf-home"]


# ═══════════════════════════════════════════════════════════════════════════
# At-least-once delivery and concurrency
# ═══════════════════════════════════════════════════════════════════════════

class _RacingMembership(MembershipStore):
    """Runs a competing evaluation between this evaluator's read and write."""

    def __init__(self, store, competitor):
        super().__init__(store)
        self.competitor = competitor
        self.raced = False

    def save(self, state, expected_version):
        if not self.raced:
            self.raced = True
            self.competitor()
        return super().save(state, expected_version)


class TestIdempotence:

    def test_duplicate_delivery_creates_one_alert(self, store):
        _seed(store)
        evaluator = _make_evaluator(store)
        batch = [_make_point(0.0, 0.0).to_dict()]

        evaluator.handle_inserted_locations(batch)
        second = evaluator.handle_inserted_locations(batch)

        assert second.alerts == []
        assert len(_alerts(store)) == 1

    def test_existing_alert_id_not_rewritten(self, store):
        # Alert already written by an earlier attempt whose state write was lost
        _seed(store)
        point = _make_point(0.0, 0.0)
        first = _make_evaluator(store).handle_inserted_locations([point])
        store.put(
            Collection.MEMBERSHIP,
            {"subject_id": "child-1", "geofence_id": "gf-home",
             "is_inside": False, "last_checked": NOW.isoformat()},
        )

        retry = _make_evaluator(store).handle_inserted_locations([point])

        assert retry.alerts == []
        assert retry.duplicates == 1
        assert [a["id"] for a in _alerts(store)] == [first.alerts[0].alert_id]

    def test_racing_evaluations_produce_one_entry(self, store):
        _seed(store)
        competitor = _make_evaluator(store)
        racing = _make_evaluator(
            store,
            membership=_RacingMembership(
                store, lambda: competitor.evaluate_point(_make_point(0.0, 0.0, seconds=1)),
            ),
        )

        report = racing.handle_inserted_locations([_make_point(0.0, 0.0)])

        assert report.alerts == []
        alerts = _alerts(store)
        assert len(alerts) == 1
        assert alerts[0]["type"] == "GEOFENCE_ENTRY"
        assert MembershipStore(store).load("child-1", "gf-home").version == 2

    def test_retries_exhausted(self, store):
        _seed(store)
        membership = MagicMock(spec=MembershipStore)
        membership.load.return_value = None
        membership.save.side_effect = ConditionalWriteError("membership", "child-1#gf-home", None)
        evaluator = _make_evaluator(store, membership=membership, max_retries=3)

        with pytest.raises(DependencyError):
            evaluator.evaluate_point(_make_point(0.0, 0.0))
        assert membership.save.call_count == 3

        report = evaluator.handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.failed == 1
        assert _alerts(store) == []


# ═══════════════════════════════════════════════════════════════════════════
# Failure handling
# ═══════════════════════════════════════════════════════════════════════════

class _GeofenceLookupDown(InMemoryStore):
    def query_by_index(self, index_name, condition, sort_order="desc", limit=None):
        raise DependencyError("store", "timeout")


class TestFailureHandling:

    def test_unknown_subject_skipped(self, store):
        store.put(Collection.GEOFENCES, _make_geofence().to_dict())
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.skipped == 1
        assert report.alerts == []

    def test_subject_without_guardian_skipped(self, store):
        _seed(store, subject=Subject("child-1", "Maya", Role.MONITORED))
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.skipped == 1

    def test_geofence_lookup_failure_skips_point(self):
        store = _GeofenceLookupDown()
        _seed(store)
        report = _make_evaluator(store).handle_inserted_locations([_make_point(0.0, 0.0)])
        assert report.skipped == 1
        assert report.failed == 0
        assert store.count(Collection.ALERTS) == 0

    def test_bad_point_does_not_stop_batch(self, store):
        _seed(store)
        bad = {"id": "child-1-0", "subject_id": "child-1"}   # no coordinates
        report = _make_evaluator(store).handle_inserted_locations([bad, _make_point(0.0, 0.0)])

        assert report.total == 2
        assert report.failed == 1
        assert report.evaluated == 1
        assert len(report.alerts) == 1

    def test_max_retries_must_be_positive(self, store):
        with pytest.raises(ValueError):
            GeofenceEvaluator(store, max_retries=0)
