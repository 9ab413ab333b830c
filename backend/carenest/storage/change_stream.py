"""
change_stream.py — In-process, at-least-once "record inserted" stream.

The store publishes every newly created record here; handlers subscribe
per collection and receive batches.

═══════════════════════════════════════════════════════════════════════════
DELIVERY CONTRACT
═══════════════════════════════════════════════════════════════════════════

    • Ordered per collection (insert order)
    • Batches of at most ``batch_size`` records
    • At-least-once: a batch whose handler raises goes back to the head
      of the queue and is delivered again, up to ``max_redeliveries``
      extra times; after that it is dropped and logged
    • No ordering or exclusivity across collections — the location and
      alert handlers may run interleaved

Handlers must therefore tolerate duplicates. ``pump()`` drains the
queues on the calling thread; a second concurrent ``pump()`` returns
immediately and leaves the work to the one already running.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from backend.carenest.storage.entity_store import Collection, EntityStore

logger = logging.getLogger(__name__)

BatchHandler = Callable[[List[Dict[str, Any]]], Any]


@dataclass
class _Envelope:
    item: Dict[str, Any]
    deliveries: int = 0


@dataclass
class _Subscription:
    handler: BatchHandler
    batch_size: int
    name: str


class ChangeStream:
    """Queues insert events and delivers them to subscribed handlers."""

    def __init__(self, *, batch_size: int = 10, max_redeliveries: int = 3) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.default_batch_size = batch_size
        self.max_redeliveries = max_redeliveries
        self._subscriptions: Dict[Collection, _Subscription] = {}
        self._queues: Dict[Collection, Deque[_Envelope]] = {}
        self._lock = threading.Lock()
        self._pump_lock = threading.Lock()

    def attach(self, store: EntityStore) -> None:
        """Receive insert events from ``store``."""
        store.add_insert_listener(self.publish)

    def subscribe(
        self,
        collection: Collection,
        handler: BatchHandler,
        *,
        batch_size: Optional[int] = None,
        name: Optional[str] = None,
    ) -> None:
        with self._lock:
            if collection in self._subscriptions:
                raise ValueError(f"{collection.value} already has a subscriber")
            self._subscriptions[collection] = _Subscription(
                handler=handler,
                batch_size=batch_size or self.default_batch_size,
                name=name or getattr(handler, "__name__", "handler"),
            )
            self._queues.setdefault(collection, deque())

    def publish(self, collection: Collection, item: Dict[str, Any]) -> None:
        with self._lock:
            if collection not in self._subscriptions:
                return
            self._queues[collection].append(_Envelope(item=item))

    def pending(self, collection: Optional[Collection] = None) -> int:
        with self._lock:
            if collection is not None:
                return len(self._queues.get(collection, ()))
            return sum(len(q) for q in self._queues.values())

    def pump(self) -> int:
        """
        Deliver queued events until every queue is empty.

        A publisher whose ``pump()`` lost the race for the pump lock relies
        on the running pump to pick its event up, so the lock holder checks
        the queues again after releasing and goes round once more if
        anything arrived in the meantime.

        Returns
        -------
        int
            Number of batches handed to handlers (redeliveries included).
        """
        delivered = 0
        while self._pump_lock.acquire(blocking=False):
            try:
                while True:
                    batches = self._take_batches()
                    if not batches:
                        break
                    for collection, subscription, batch in batches:
                        delivered += 1
                        self._deliver(collection, subscription, batch)
            finally:
                self._pump_lock.release()
            if not self.pending():
                break
        return delivered

    def _take_batches(self):
        taken = []
        with self._lock:
            for collection, queue in self._queues.items():
                if not queue:
                    continue
                subscription = self._subscriptions[collection]
                batch = [queue.popleft() for _ in range(min(subscription.batch_size, len(queue)))]
                taken.append((collection, subscription, batch))
        return taken

    def _deliver(
        self,
        collection: Collection,
        subscription: _Subscription,
        batch: List[_Envelope],
    ) -> None:
        for envelope in batch:
            envelope.deliveries += 1
        try:
            subscription.handler([e.item for e in batch])
        except Exception:
            retry = [e for e in batch if e.deliveries <= self.max_redeliveries]
            dropped = len(batch) - len(retry)
            logger.exception(
                "Handler %s failed on %d %s record(s); redelivering %d, dropping %d",
                subscription.name, len(batch), collection.value, len(retry), dropped,
                extra={"collection": collection.value, "batch_size": len(batch)},
            )
            with self._lock:
                self._queues[collection].extendleft(reversed(retry))
