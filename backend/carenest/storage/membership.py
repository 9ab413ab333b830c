"""
membership.py — Durable boundary status per (subject, geofence).

Thin typed wrapper over the ``membership`` collection. ``save`` is a
compare-and-swap on the version read by ``load`` so two evaluations of
the same key cannot both observe the same transition.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.carenest.storage.entity_store import Collection, EntityStore
from backend.carenest.storage.models import MembershipState

logger = logging.getLogger(__name__)


class MembershipStore:

    def __init__(self, store: EntityStore) -> None:
        self._store = store

    def load(self, subject_id: str, geofence_id: str) -> Optional[MembershipState]:
        item = self._store.get(
            Collection.MEMBERSHIP,
            {"subject_id": subject_id, "geofence_id": geofence_id},
        )
        return MembershipState.from_dict(item) if item is not None else None

    def save(
        self,
        state: MembershipState,
        expected_version: Optional[int],
    ) -> MembershipState:
        """
        Upsert ``state`` if the stored version still equals ``expected_version``
        (``None`` = no record yet).

        Raises
        ------
        ConditionalWriteError
            Another writer got there first; reload and decide again.
        """
        stored = self._store.put_if_version(
            Collection.MEMBERSHIP, state.to_dict(), expected_version,
        )
        logger.debug(
            "Membership %s/%s → inside=%s (v%s)",
            state.subject_id, state.geofence_id, state.is_inside,
            stored.get("version"),
        )
        return MembershipState.from_dict(stored)
