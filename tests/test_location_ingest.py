"""
test_location_ingest.py — Location validation, persistence, throttling
and history reads.

Run with:
    pytest tests/test_location_ingest.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from backend.carenest.core.config import Settings
from backend.carenest.core.errors import AuthError, DependencyError, ValidationError
from backend.carenest.ingestion.location_ingest import LocationIngest, ThrottlePolicy
from backend.carenest.storage.entity_store import Collection, InMemoryStore
from backend.carenest.storage.models import LocationPoint, Role, Subject

NOW = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)
LAT, LON = 12.9716, 77.5946


def _make_ingest(store=None, throttle=None, now=NOW) -> LocationIngest:
    return LocationIngest(
        store or InMemoryStore(),
        max_age_seconds=300,
        max_future_skew_seconds=60,
        max_accuracy_meters=100.0,
        throttle=throttle,
        clock=lambda: now,
    )


def _make_point(seconds_ago: float = 0.0, lat: float = LAT, lon: float = LON) -> LocationPoint:
    return LocationPoint(
        subject_id="child-1",
        latitude=lat,
        longitude=lon,
        timestamp=NOW - timedelta(seconds=seconds_ago),
    )


class TestRecordValidation:

    def test_missing_identity(self):
        with pytest.raises(AuthError):
            _make_ingest().record(None, LAT, LON)

    def test_identity_checked_before_coordinates(self):
        with pytest.raises(AuthError):
            _make_ingest().record("", 999, 999)

    def test_invalid_coordinates(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", 91, LON)
        assert exc_info.value.error_code == "INVALID_COORDINATES"

    def test_coordinates_checked_before_timestamp(self):
        old = NOW - timedelta(hours=1)
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, 181, timestamp=old)
        assert exc_info.value.error_code == "INVALID_COORDINATES"

    def test_stale_timestamp(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, LON, timestamp=NOW - timedelta(seconds=301))
        assert exc_info.value.error_code == "STALE_LOCATION"

    def test_exactly_max_age_is_accepted(self):
        point = _make_ingest().record("child-1", LAT, LON, timestamp=NOW - timedelta(seconds=300))
        assert point.timestamp == NOW - timedelta(seconds=300)

    def test_future_timestamp_beyond_skew(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, LON, timestamp=NOW + timedelta(seconds=61))
        assert exc_info.value.error_code == "STALE_LOCATION"

    def test_small_future_skew_is_accepted(self):
        point = _make_ingest().record("child-1", LAT, LON, timestamp=NOW + timedelta(seconds=30))
        assert point.timestamp == NOW + timedelta(seconds=30)

    def test_stale_checked_before_accuracy(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record(
                "child-1", LAT, LON, accuracy=500, timestamp=NOW - timedelta(hours=1),
            )
        assert exc_info.value.error_code == "STALE_LOCATION"

    def test_low_accuracy(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, LON, accuracy=150)
        assert exc_info.value.error_code == "LOW_ACCURACY"

    def test_negative_accuracy(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, LON, accuracy=-1)
        assert exc_info.value.error_code == "LOW_ACCURACY"

    def test_accuracy_at_limit_is_accepted(self):
        point = _make_ingest().record("child-1", LAT, LON, accuracy=100)
        assert point.accuracy == 100.0

    def test_unparseable_timestamp(self):
        with pytest.raises(ValidationError) as exc_info:
            _make_ingest().record("child-1", LAT, LON, timestamp="yesterday-ish")
        assert exc_info.value.details["field"] == "timestamp"

    def test_rejected_sample_is_not_stored(self):
        store = InMemoryStore()
        with pytest.raises(ValidationError):
            _make_ingest(store).record("child-1", LAT, LON, accuracy=150)
        assert store.count(Collection.LOCATIONS) == 0


class TestRecordPersistence:

    def test_missing_timestamp_defaults_to_receipt_time(self):
        point = _make_ingest().record("child-1", LAT, LON)
        assert point.timestamp == NOW

    def test_point_stored_with_derived_id(self):
        store = InMemoryStore()
        point = _make_ingest(store).record("child-1", LAT, LON, accuracy=8.5)

        assert point.location_id == f"child-1-{int(NOW.timestamp() * 1000)}"
        stored = store.get(Collection.LOCATIONS, {"id": point.location_id})
        assert stored["subject_id"] == "child-1"
        assert stored["accuracy"] == 8.5

    def test_iso_string_timestamp_with_z(self):
        point = _make_ingest().record("child-1", LAT, LON, timestamp="2026-03-01T09:29:00Z")
        assert point.timestamp == NOW - timedelta(minutes=1)

    def test_replayed_sample_returns_stored_point(self):
        store = InMemoryStore()
        ingest = _make_ingest(store)
        first = ingest.record("child-1", LAT, LON, timestamp=NOW)
        second = ingest.record("child-1", LAT + 0.001, LON, timestamp=NOW)

        assert second.location_id == first.location_id
        assert second.latitude == LAT
        assert store.count(Collection.LOCATIONS) == 1

    def test_from_settings(self):
        settings = Settings(LOCATION_MAX_ACCURACY_METERS=20.0, LOCATION_THROTTLE_ENABLED=True)
        ingest = LocationIngest.from_settings(InMemoryStore(), settings)
        assert ingest.max_accuracy_meters == 20.0
        assert ingest.throttle == ThrottlePolicy(5.0, 10.0, 15.0)


class TestThrottlePolicy:

    policy = ThrottlePolicy(min_interval_seconds=5, min_displacement_meters=10, displacement_window_seconds=15)

    def test_first_sample_never_skipped(self):
        assert self.policy.should_skip(None, _make_point()) is False

    def test_too_soon(self):
        assert self.policy.should_skip(_make_point(seconds_ago=3), _make_point()) is True

    def test_within_window_and_not_moved(self):
        assert self.policy.should_skip(_make_point(seconds_ago=10), _make_point()) is True

    def test_within_window_but_moved(self):
        moved = _make_point(lat=LAT + 0.001)   # ~111 m north
        assert self.policy.should_skip(_make_point(seconds_ago=10), moved) is False

    def test_after_window(self):
        assert self.policy.should_skip(_make_point(seconds_ago=20), _make_point()) is False

    def test_record_returns_previous_when_throttled(self):
        store = InMemoryStore()
        ingest = _make_ingest(store, throttle=self.policy)
        first = ingest.record("child-1", LAT, LON, timestamp=NOW - timedelta(seconds=2))
        second = ingest.record("child-1", LAT, LON, timestamp=NOW)

        assert second == first
        assert store.count(Collection.LOCATIONS) == 1


class TestReads:

    @pytest.fixture
    def ingest(self):
        ingest = _make_ingest()
        for seconds_ago in (240, 180, 120, 60):
            ingest.record("child-1", LAT, LON, timestamp=NOW - timedelta(seconds=seconds_ago))
        ingest.record("child-2", LAT, LON, timestamp=NOW)
        return ingest

    def test_latest(self, ingest):
        latest = ingest.latest("child-1")
        assert latest.timestamp == NOW - timedelta(seconds=60)

    def test_latest_unknown_subject(self, ingest):
        assert ingest.latest("nobody") is None

    def test_history_newest_first_within_range(self, ingest):
        points = ingest.history(
            "child-1",
            start=NOW - timedelta(seconds=180),
            end=NOW - timedelta(seconds=60),
        )
        assert [p.timestamp for p in points] == [
            NOW - timedelta(seconds=60),
            NOW - timedelta(seconds=120),
            NOW - timedelta(seconds=180),
        ]

    def test_history_limit(self, ingest):
        assert len(ingest.history("child-1", limit=2)) == 2

    def test_history_start_after_end(self, ingest):
        with pytest.raises(ValidationError):
            ingest.history("child-1", start=NOW, end=NOW - timedelta(minutes=1))

    def test_history_uses_subject_index(self):
        store = MagicMock()
        store.query_by_index.return_value = []
        _make_ingest(store).history("child-1")
        args, kwargs = store.query_by_index.call_args
        assert args[0] == "locationsBySubject"
        assert args[1].partition == "child-1"


class TestLatestForGuardian:

    @pytest.fixture
    def store(self):
        s = InMemoryStore()
        s.put(Collection.SUBJECTS, Subject("parent-1", "Asha", Role.GUARDIAN).to_dict())
        s.put(Collection.SUBJECTS, Subject("child-1", "Maya", Role.MONITORED, guardian_id="parent-1").to_dict())
        s.put(Collection.SUBJECTS, Subject("child-2", "Arjun", Role.MONITORED, guardian_id="parent-1").to_dict())
        s.put(Collection.SUBJECTS, Subject("child-9", "Other", Role.MONITORED, guardian_id="parent-2").to_dict())
        return s

    def _record(self, ingest, subject_id, seconds_ago, lat=LAT):
        return ingest.record(subject_id, lat, LON, timestamp=NOW - timedelta(seconds=seconds_ago))

    def test_latest_per_owned_subject(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "child-1", 60, lat=1.0)
        latest_1 = self._record(ingest, "child-1", 10, lat=2.0)
        latest_2 = self._record(ingest, "child-2", 30)

        points = ingest.latest_for_guardian("parent-1", ["child-2", "child-1"])

        assert points == [latest_2, latest_1]

    def test_foreign_and_unknown_subjects_omitted(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "child-1", 10)
        self._record(ingest, "child-9", 10)

        points = ingest.latest_for_guardian("parent-1", ["child-9", "ghost", "child-1"])

        assert [p.subject_id for p in points] == ["child-1"]

    def test_guardian_itself_is_not_a_monitored_subject(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "parent-1", 10)
        assert ingest.latest_for_guardian("parent-1", ["parent-1"]) == []

    def test_subject_without_locations_omitted(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "child-1", 10)
        points = ingest.latest_for_guardian("parent-1", ["child-1", "child-2"])
        assert [p.subject_id for p in points] == ["child-1"]

    def test_duplicate_ids_collapsed(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "child-1", 10)
        assert len(ingest.latest_for_guardian("parent-1", ["child-1", "child-1", ""])) == 1

    def test_lookup_failure_skips_only_that_subject(self, store):
        ingest = _make_ingest(store)
        self._record(ingest, "child-1", 10)
        self._record(ingest, "child-2", 10)

        real_get = store.get

        def flaky_get(collection, key):
            if key == {"id": "child-1"}:
                raise DependencyError("store", "timeout")
            return real_get(collection, key)

        store.get = MagicMock(side_effect=flaky_get)

        points = ingest.latest_for_guardian("parent-1", ["child-1", "child-2"])

        assert [p.subject_id for p in points] == ["child-2"]

    def test_requires_identity(self, store):
        with pytest.raises(AuthError):
            _make_ingest(store).latest_for_guardian(None, ["child-1"])
