"""
sql_store.py — EntityStore backed by SQLAlchemy.

Layout (two tables, any SQLAlchemy dialect):

    records        (collection, key) → version, body JSON
    record_index   (index_name, key) → partition, sort_value

Secondary-index rows are rewritten in the same transaction as the
record they point at, so a query never sees a half-written entity.
Conditional writes map onto the database:

    put_if_absent   → INSERT, primary-key IntegrityError means "exists"
    put_if_version  → UPDATE … WHERE version = :expected, rowcount 0 means "lost"
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import JSON, Index, Integer, String, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from backend.carenest.core.database import Base
from backend.carenest.core.errors import ConditionalWriteError, DependencyError
from backend.carenest.storage.entity_store import (
    VERSION_FIELD,
    Collection,
    EntityStore,
    KeyCondition,
    SortOrder,
    get_index,
    indexes_for,
    make_key,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM models
# ═══════════════════════════════════════════════════════════════════════════

class RecordRow(Base):
    __tablename__ = "records"

    collection: Mapped[str] = mapped_column(String(32), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class IndexEntryRow(Base):
    __tablename__ = "record_index"

    index_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    partition: Mapped[str] = mapped_column(String(255), nullable=False)
    sort_value: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_record_index_lookup", "index_name", "partition", "sort_value"),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlEntityStore(EntityStore):
    """Relational EntityStore. Tables must exist (see core.database.init_db)."""

    backend_name = "sql"

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        super().__init__()
        self._session_factory = session_factory

    # ── reads ──

    def get(self, collection, key):
        k = make_key(collection, key)
        try:
            with self._session_factory() as session:
                row = session.get(RecordRow, (collection.value, k))
                return copy.deepcopy(row.body) if row is not None else None
        except SQLAlchemyError as exc:
            raise DependencyError("store", str(exc), collection=collection.value) from exc

    def query_by_index(self, index_name, condition: KeyCondition, sort_order=SortOrder.DESC, limit=None):
        spec = get_index(index_name)
        stmt = (
            select(RecordRow.body)
            .join(
                IndexEntryRow,
                (IndexEntryRow.key == RecordRow.key)
                & (RecordRow.collection == spec.collection.value),
            )
            .where(IndexEntryRow.index_name == spec.name)
            .where(IndexEntryRow.partition == condition.partition)
        )
        if condition.sort_from is not None:
            stmt = stmt.where(IndexEntryRow.sort_value >= condition.sort_from)
        if condition.sort_to is not None:
            stmt = stmt.where(IndexEntryRow.sort_value <= condition.sort_to)
        if SortOrder(sort_order) == SortOrder.DESC:
            stmt = stmt.order_by(IndexEntryRow.sort_value.desc())
        else:
            stmt = stmt.order_by(IndexEntryRow.sort_value.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            with self._session_factory() as session:
                return [copy.deepcopy(body) for body in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise DependencyError("store", str(exc), index=index_name) from exc

    # ── writes ──

    def put(self, collection, item):
        k = make_key(collection, item)
        try:
            with self._session_factory() as session:
                row = session.get(RecordRow, (collection.value, k))
                created = row is None
                body = self._stamp(item, 1 if created else row.version + 1)
                if created:
                    session.add(RecordRow(
                        collection=collection.value, key=k,
                        version=body[VERSION_FIELD], body=body,
                    ))
                else:
                    row.version = body[VERSION_FIELD]
                    row.body = body
                self._write_index_entries(session, collection, k, body)
                session.commit()
        except SQLAlchemyError as exc:
            raise DependencyError("store", str(exc), collection=collection.value) from exc

        if created:
            self._emit_insert(collection, body)
        return copy.deepcopy(body)

    def put_if_absent(self, collection, item):
        k = make_key(collection, item)
        body = self._stamp(item, 1)
        try:
            with self._session_factory() as session:
                try:
                    session.add(RecordRow(
                        collection=collection.value, key=k, version=1, body=body,
                    ))
                    # autoflush sends the INSERT here, so a duplicate key
                    # can surface before commit
                    self._write_index_entries(session, collection, k, body)
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.debug("put_if_absent: %s/%s already exists", collection.value, k)
                    return False
        except SQLAlchemyError as exc:
            raise DependencyError("store", str(exc), collection=collection.value) from exc

        self._emit_insert(collection, body)
        return True

    def put_if_version(self, collection, item, expected_version):
        k = make_key(collection, item)
        if expected_version is None:
            if not self.put_if_absent(collection, item):
                raise ConditionalWriteError(collection.value, k, expected_version)
            return self._stamp(item, 1)

        body = self._stamp(item, expected_version + 1)
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(RecordRow)
                    .where(RecordRow.collection == collection.value)
                    .where(RecordRow.key == k)
                    .where(RecordRow.version == expected_version)
                    .values(version=body[VERSION_FIELD], body=body)
                )
                if result.rowcount == 0:
                    session.rollback()
                    raise ConditionalWriteError(collection.value, k, expected_version)
                self._write_index_entries(session, collection, k, body)
                session.commit()
        except SQLAlchemyError as exc:
            raise DependencyError("store", str(exc), collection=collection.value) from exc

        return copy.deepcopy(body)

    def ping(self) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(select(1))
            return True
        except SQLAlchemyError as exc:
            logger.warning("Store ping failed: %s", exc)
            return False

    # ── helpers ──

    @staticmethod
    def _stamp(item: Mapping[str, Any], version: int) -> Dict[str, Any]:
        body = copy.deepcopy(dict(item))
        body[VERSION_FIELD] = version
        return body

    @staticmethod
    def _write_index_entries(
        session: Session, collection: Collection, key: str, body: Dict[str, Any],
    ) -> None:
        specs = indexes_for(collection)
        if not specs:
            return
        session.execute(
            delete(IndexEntryRow)
            .where(IndexEntryRow.key == key)
            .where(IndexEntryRow.index_name.in_([s.name for s in specs]))
        )
        for spec in specs:
            partition = body.get(spec.partition_field)
            if partition is None:
                continue
            session.add(IndexEntryRow(
                index_name=spec.name,
                key=key,
                partition=str(partition),
                sort_value=body.get(spec.sort_field),
            ))
