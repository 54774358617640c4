"""CRUD facade over the relational store.

The pipeline only talks to the store through this class: ``upsert`` for
canonical records, ``query`` to read records and derived aggregates back,
``call_procedure`` for derivation steps and ``append_log`` for the run log.
"""

from datetime import datetime
import logging

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dataflood.db_models import (
    AgencySpending,
    CanonicalRecordRow,
    Entity,
    HealthSnapshot,
    Insight,
    Relationship,
    SystemLog,
    utc_now,
)
from dataflood.procedures import PROCEDURES


logger = logging.getLogger(__name__)

AGGREGATE_TABLES = {
    "entity_stats": Entity,
    "relationship": Relationship,
    "insight": Insight,
    "health_snapshot": HealthSnapshot,
    "agency_spending": AgencySpending,
}


class StoreUnavailableError(RuntimeError):
    pass


class Store:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def ping(self) -> None:
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"store unreachable: {exc}") from exc

    def upsert(
        self,
        entity_kind: str,
        natural_key: str,
        record: dict[str, object],
        *,
        source: str,
        seen_at: datetime | None = None,
        source_updated_at: datetime | None = None,
    ) -> tuple[bool, bool]:
        """Insert or merge one record by ``(entity_kind, natural_key)``; returns ``(applied, was_new)``."""
        seen_at = seen_at or utc_now()
        with self.session_factory() as db:
            row = self._get_record(db, entity_kind, natural_key)
            if row is None:
                db.add(
                    CanonicalRecordRow(
                        entity_kind=entity_kind,
                        natural_key=natural_key,
                        source=source,
                        fields=dict(record),
                        source_updated_at=source_updated_at,
                        first_seen_at=seen_at,
                        last_seen_at=seen_at,
                    )
                )
                try:
                    db.commit()
                    return True, True
                except IntegrityError:
                    # Another unit inserted the same key first; merge into its row.
                    db.rollback()
                    row = self._get_record(db, entity_kind, natural_key)
                    if row is None:
                        raise

            applied = _merge(row, record, source=source, seen_at=seen_at, source_updated_at=source_updated_at)
            db.commit()
            return applied, False

    def query(
        self,
        entity_kind: str,
        filters: dict[str, object] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, object]]:
        filters = filters or {}
        with self.session_factory() as db:
            model = AGGREGATE_TABLES.get(entity_kind)
            if model is not None:
                stmt = select(model)
                for name, value in filters.items():
                    stmt = stmt.where(getattr(model, name) == value)
                if order_by:
                    column = getattr(model, order_by.lstrip("-"))
                    stmt = stmt.order_by(column.desc() if order_by.startswith("-") else column.asc())
                if limit is not None:
                    stmt = stmt.limit(limit)
                return [_model_to_dict(row) for row in db.execute(stmt).scalars()]

            stmt = (
                select(CanonicalRecordRow)
                .where(CanonicalRecordRow.entity_kind == entity_kind)
                .order_by(CanonicalRecordRow.id)
            )
            remaining = {}
            for name, value in filters.items():
                clause = _json_equals(name, value)
                if clause is None:
                    remaining[name] = value
                else:
                    stmt = stmt.where(clause)
            # Ordering on a JSON field and non-scalar filters stay in Python.
            if limit is not None and not order_by and not remaining:
                stmt = stmt.limit(limit)
            records = [
                _record_to_dict(row)
                for row in db.execute(stmt).scalars()
                if all(row.fields.get(name) == value for name, value in remaining.items())
            ]
            if order_by:
                name = order_by.lstrip("-")
                records.sort(key=lambda record: (record.get(name) is None, record.get(name)), reverse=order_by.startswith("-"))
            return records[:limit] if limit is not None else records

    def count(self, entity_kind: str | None = None) -> int:
        with self.session_factory() as db:
            stmt = select(func.count(CanonicalRecordRow.id))
            if entity_kind is not None:
                stmt = stmt.where(CanonicalRecordRow.entity_kind == entity_kind)
            return db.execute(stmt).scalar_one()

    def call_procedure(self, name: str, args: dict[str, object] | None = None) -> int:
        procedure = PROCEDURES.get(name)
        if procedure is None:
            raise ValueError(f"unknown procedure: {name}")
        with self.session_factory() as db:
            result = procedure(db, **(args or {}))
            db.commit()
            return result

    def latest_health_snapshot(self) -> dict[str, object] | None:
        snapshots = self.query("health_snapshot", order_by="-id", limit=1)
        return snapshots[0] if snapshots else None

    def append_log(self, component: str, message: str, details: dict[str, object], level: str = "INFO") -> None:
        """Write a run-log row; never raises."""
        try:
            with self.session_factory() as db:
                db.add(SystemLog(level=level, component=component, message=message, details=details))
                db.commit()
        except SQLAlchemyError:
            logger.warning("run log write failed", exc_info=True, extra={"component": component})

    @staticmethod
    def _get_record(db: Session, entity_kind: str, natural_key: str) -> CanonicalRecordRow | None:
        stmt = select(CanonicalRecordRow).where(
            CanonicalRecordRow.entity_kind == entity_kind,
            CanonicalRecordRow.natural_key == natural_key,
        )
        return db.execute(stmt).scalar_one_or_none()


def _merge(
    row: CanonicalRecordRow,
    record: dict[str, object],
    *,
    source: str,
    seen_at: datetime,
    source_updated_at: datetime | None,
) -> bool:
    if row.last_seen_at is None or seen_at > row.last_seen_at:
        row.last_seen_at = seen_at

    # An older upstream revision never clobbers a newer one.
    if source_updated_at is not None and row.source_updated_at is not None and source_updated_at < row.source_updated_at:
        return False

    row.fields = {**(row.fields or {}), **record}
    row.source = source
    if source_updated_at is not None:
        row.source_updated_at = source_updated_at
    return True


def _record_to_dict(row: CanonicalRecordRow) -> dict[str, object]:
    return {
        **row.fields,
        "entity_kind": row.entity_kind,
        "natural_key": row.natural_key,
        "source": row.source,
        "entity_id": row.entity_id,
        "last_seen_at": row.last_seen_at,
    }


def _model_to_dict(row) -> dict[str, object]:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


def _json_equals(name: str, value: object):
    """SQL equality on one scalar key of ``fields``; None for values SQL cannot compare."""
    element = CanonicalRecordRow.fields[name]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    if isinstance(value, str):
        return element.as_string() == value
    return None
