import logging

from sqlalchemy.exc import SQLAlchemyError

from dataflood.schemas import CanonicalRecord, UpsertOutcome
from dataflood.store import Store


logger = logging.getLogger(__name__)


class UpsertSink:
    """Applies canonical records to the store; safe to call any number of times per record."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def apply(self, record: CanonicalRecord) -> UpsertOutcome:
        if not record.natural_key or not all(part.strip() for part in record.natural_key):
            return UpsertOutcome(applied=False, is_new=False, error=f"{record.source}: refusing record without natural key")

        try:
            applied, was_new = self.store.upsert(
                record.entity_kind,
                record.key_string,
                record.fields,
                source=record.source,
                seen_at=record.last_seen_at,
                source_updated_at=record.source_updated_at,
            )
        except SQLAlchemyError as exc:
            logger.warning(
                "upsert rejected",
                extra={"source": record.source, "entity_kind": record.entity_kind, "natural_key": record.key_string},
            )
            return UpsertOutcome(applied=False, is_new=False, error=f"upsert {record.key_string}: {exc}")

        if not applied:
            logger.debug("stale record not applied", extra={"source": record.source, "natural_key": record.key_string})
        return UpsertOutcome(applied=applied, is_new=was_new)
