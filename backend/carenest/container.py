"""
container.py — Builds the store, gateway and components and wires the
change stream between them.

    locations inserted ──▶ GeofenceEvaluator.handle_inserted_locations
    alerts inserted    ──▶ AlertDispatcher.handle_inserted_alerts

Nothing here is a module-level client: tests build their own container
around an InMemoryStore and a SimulatedSmsGateway, and the API resolves
the process-wide one through ``get_container()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy import Engine

from backend.carenest.alerts.channels.sms_gateway import SmsGateway, build_sms_gateway
from backend.carenest.alerts.dispatcher import AlertDispatcher
from backend.carenest.alerts.geofence_evaluator import GeofenceEvaluator
from backend.carenest.alerts.models import AlertType
from backend.carenest.alerts.panic_trigger import PanicTrigger
from backend.carenest.core.config import Settings, get_settings
from backend.carenest.core.database import build_engine, build_session_factory, close_db, init_db
from backend.carenest.ingestion.location_ingest import LocationIngest
from backend.carenest.storage.change_stream import ChangeStream
from backend.carenest.storage.entity_store import Collection, EntityStore, InMemoryStore
from backend.carenest.storage.membership import MembershipStore
from backend.carenest.storage.sql_store import SqlEntityStore
from backend.carenest.storage.models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    store: EntityStore
    gateway: SmsGateway
    stream: ChangeStream
    ingest: LocationIngest
    evaluator: GeofenceEvaluator
    panic: PanicTrigger
    dispatcher: AlertDispatcher
    engine: Optional[Engine] = None

    def pump(self) -> int:
        """Deliver every pending insert event; returns batches delivered."""
        return self.stream.pump()

    def close(self) -> None:
        self.gateway.close()
        if self.engine is not None:
            close_db(self.engine)


def build_store(settings: Settings):
    """Return ``(store, engine)`` for ``STORE_BACKEND``; engine is None for memory."""
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryStore(), None
    if backend == "sql":
        engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        init_db(engine)
        return SqlEntityStore(build_session_factory(engine)), engine
    raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND}")


def build_container(
    settings: Optional[Settings] = None,
    *,
    store: Optional[EntityStore] = None,
    gateway: Optional[SmsGateway] = None,
    clock: Callable[[], datetime] = utc_now,
) -> ServiceContainer:
    settings = settings or get_settings()

    engine = None
    if store is None:
        store, engine = build_store(settings)
    if gateway is None:
        gateway = build_sms_gateway(settings)

    stream = ChangeStream(
        batch_size=settings.EVALUATOR_BATCH_SIZE,
        max_redeliveries=settings.CHANGE_STREAM_MAX_REDELIVERIES,
    )
    stream.attach(store)

    evaluator = GeofenceEvaluator(
        store,
        membership=MembershipStore(store),
        max_retries=settings.MEMBERSHIP_MAX_RETRIES,
        clock=clock,
    )
    dispatcher = AlertDispatcher(
        store,
        gateway,
        message_prefix=settings.ALERT_SMS_PREFIX,
        skip_types=(AlertType.PANIC,) if settings.PANIC_DIRECT_NOTIFY else (),
    )
    stream.subscribe(Collection.LOCATIONS, evaluator.handle_inserted_locations, name="geofence_evaluator")
    stream.subscribe(Collection.ALERTS, dispatcher.handle_inserted_alerts, name="alert_dispatcher")

    container = ServiceContainer(
        settings=settings,
        store=store,
        gateway=gateway,
        stream=stream,
        ingest=LocationIngest.from_settings(store, settings, clock=clock),
        evaluator=evaluator,
        panic=PanicTrigger.from_settings(store, gateway, settings, clock=clock),
        dispatcher=dispatcher,
        engine=engine,
    )
    logger.info(
        "Services ready: store=%s sms=%s panic_direct_notify=%s",
        store.backend_name, gateway.provider, settings.PANIC_DIRECT_NOTIFY,
    )
    return container


@lru_cache()
def get_container() -> ServiceContainer:
    """Process-wide container (FastAPI dependency)."""
    return build_container()
