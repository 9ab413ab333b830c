"""
entity_store.py — Durable per-entity store contract + in-memory backend.

The core never talks to a database directly. It needs five operations:

    get(collection, key)                         — point read
    put(collection, item)                        — unconditional upsert
    put_if_absent(collection, item)              — insert unless key exists
    put_if_version(collection, item, version)    — compare-and-swap upsert
    query_by_index(index, condition, order, n)   — secondary-index range read

═══════════════════════════════════════════════════════════════════════════
KEYS AND INDEXES
═══════════════════════════════════════════════════════════════════════════

    Collection    Key fields                  Secondary indexes
    ──────────    ────────────────────────    ─────────────────────────────────
    subjects      id                          —
    locations     id                          locationsBySubject (subject_id ↕ timestamp)
    geofences     id                          geofencesByGuardian (guardian_id ↕ created_at)
    membership    subject_id, geofence_id     —
    alerts        id                          alertsBySubject (subject_id ↕ timestamp)
                                              alertsByGuardian (guardian_id ↕ timestamp)

Sort values are the ISO-8601 strings written by storage.models, so a
plain string comparison gives chronological order.

═══════════════════════════════════════════════════════════════════════════
VERSIONS AND INSERT EVENTS
═══════════════════════════════════════════════════════════════════════════

Every write stamps the stored item with ``version`` (1 on insert,
previous + 1 on overwrite). ``put_if_version`` only succeeds when the
stored version still equals the caller's; ``expected_version=None``
means "must not exist yet".

Whenever a write creates a new key the store notifies its insert
listeners (the change stream) after the write has committed.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from backend.carenest.core.errors import ConditionalWriteError

logger = logging.getLogger(__name__)

VERSION_FIELD = "version"


# ═══════════════════════════════════════════════════════════════════════════
# Schema
# ═══════════════════════════════════════════════════════════════════════════

class Collection(str, Enum):
    SUBJECTS   = "subjects"
    LOCATIONS  = "locations"
    GEOFENCES  = "geofences"
    MEMBERSHIP = "membership"
    ALERTS     = "alerts"


KEY_FIELDS: Dict[Collection, Tuple[str, ...]] = {
    Collection.SUBJECTS:   ("id",),
    Collection.LOCATIONS:  ("id",),
    Collection.GEOFENCES:  ("id",),
    Collection.MEMBERSHIP: ("subject_id", "geofence_id"),
    Collection.ALERTS:     ("id",),
}


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index: partition on one field, sort on another."""
    name: str
    collection: Collection
    partition_field: str
    sort_field: str


LOCATIONS_BY_SUBJECT = "locationsBySubject"
GEOFENCES_BY_GUARDIAN = "geofencesByGuardian"
ALERTS_BY_SUBJECT = "alertsBySubject"
ALERTS_BY_GUARDIAN = "alertsByGuardian"

INDEXES: Dict[str, IndexSpec] = {
    spec.name: spec
    for spec in (
        IndexSpec(LOCATIONS_BY_SUBJECT, Collection.LOCATIONS, "subject_id", "timestamp"),
        IndexSpec(GEOFENCES_BY_GUARDIAN, Collection.GEOFENCES, "guardian_id", "created_at"),
        IndexSpec(ALERTS_BY_SUBJECT, Collection.ALERTS, "subject_id", "timestamp"),
        IndexSpec(ALERTS_BY_GUARDIAN, Collection.ALERTS, "guardian_id", "timestamp"),
    )
}


def indexes_for(collection: Collection) -> List[IndexSpec]:
    return [spec for spec in INDEXES.values() if spec.collection == collection]


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class KeyCondition:
    """
    Index key condition: exact partition value, optional inclusive sort range.

    Example: every alert of ``child-1`` since midnight UTC::

        KeyCondition("child-1", sort_from="2026-01-01T00:00:00.000000+00:00")
    """
    partition: str
    sort_from: Optional[str] = None
    sort_to: Optional[str] = None

    def matches_sort(self, value: Optional[str]) -> bool:
        if value is None:
            return self.sort_from is None and self.sort_to is None
        if self.sort_from is not None and value < self.sort_from:
            return False
        if self.sort_to is not None and value > self.sort_to:
            return False
        return True


def make_key(collection: Collection, item: Mapping[str, Any]) -> str:
    """Flatten the key fields of ``item`` into the store's string key."""
    try:
        return "#".join(str(item[f]) for f in KEY_FIELDS[collection])
    except KeyError as exc:
        raise ValueError(
            f"{collection.value} item is missing key field {exc.args[0]!r}"
        ) from exc


def get_index(index_name: str) -> IndexSpec:
    try:
        return INDEXES[index_name]
    except KeyError:
        raise ValueError(f"Unknown index: {index_name}") from None


InsertListener = Callable[[Collection, Dict[str, Any]], None]


# ═══════════════════════════════════════════════════════════════════════════
# Contract
# ═══════════════════════════════════════════════════════════════════════════

class EntityStore(ABC):
    """Abstract durable store. Implementations must be thread-safe."""

    backend_name = "abstract"

    def __init__(self) -> None:
        self._insert_listeners: List[InsertListener] = []

    def add_insert_listener(self, listener: InsertListener) -> None:
        self._insert_listeners.append(listener)

    def _emit_insert(self, collection: Collection, item: Dict[str, Any]) -> None:
        for listener in self._insert_listeners:
            listener(collection, copy.deepcopy(item))

    @abstractmethod
    def get(self, collection: Collection, key: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, collection: Collection, item: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def put_if_absent(self, collection: Collection, item: Mapping[str, Any]) -> bool:
        ...

    @abstractmethod
    def put_if_version(
        self,
        collection: Collection,
        item: Mapping[str, Any],
        expected_version: Optional[int],
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    def query_by_index(
        self,
        index_name: str,
        condition: KeyCondition,
        sort_order: SortOrder = SortOrder.DESC,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def ping(self) -> bool:
        return True


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend (development, tests)
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStore(EntityStore):
    """Dict-backed store guarded by a single lock."""

    backend_name = "memory"

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._records: Dict[Collection, Dict[str, Dict[str, Any]]] = {
            c: {} for c in Collection
        }

    def get(self, collection, key):
        k = make_key(collection, key)
        with self._lock:
            item = self._records[collection].get(k)
            return copy.deepcopy(item) if item is not None else None

    def put(self, collection, item):
        k = make_key(collection, item)
        with self._lock:
            previous = self._records[collection].get(k)
            stored = self._write(collection, k, item, previous)
        if previous is None:
            self._emit_insert(collection, stored)
        return copy.deepcopy(stored)

    def put_if_absent(self, collection, item):
        k = make_key(collection, item)
        with self._lock:
            if k in self._records[collection]:
                return False
            stored = self._write(collection, k, item, None)
        self._emit_insert(collection, stored)
        return True

    def put_if_version(self, collection, item, expected_version):
        k = make_key(collection, item)
        with self._lock:
            previous = self._records[collection].get(k)
            current = previous.get(VERSION_FIELD) if previous is not None else None
            if current != expected_version:
                raise ConditionalWriteError(collection.value, k, expected_version)
            stored = self._write(collection, k, item, previous)
        if previous is None:
            self._emit_insert(collection, stored)
        return copy.deepcopy(stored)

    def query_by_index(self, index_name, condition, sort_order=SortOrder.DESC, limit=None):
        spec = get_index(index_name)
        with self._lock:
            matches = [
                item for item in self._records[spec.collection].values()
                if item.get(spec.partition_field) == condition.partition
                and condition.matches_sort(item.get(spec.sort_field))
            ]
            matches.sort(
                key=lambda i: i.get(spec.sort_field) or "",
                reverse=(SortOrder(sort_order) == SortOrder.DESC),
            )
            if limit is not None:
                matches = matches[:limit]
            return copy.deepcopy(matches)

    def _write(self, collection, key, item, previous):
        stored = copy.deepcopy(dict(item))
        stored[VERSION_FIELD] = (previous or {}).get(VERSION_FIELD, 0) + 1
        self._records[collection][key] = stored
        return stored

    def count(self, collection: Collection) -> int:
        with self._lock:
            return len(self._records[collection])
