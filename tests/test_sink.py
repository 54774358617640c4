from datetime import datetime

from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from dataflood.schemas import CanonicalRecord
from dataflood.sink import UpsertSink


def _record(fields: dict, *, key: tuple[str, ...] = ("CONT_AWD_0001",), updated: datetime | None = None) -> CanonicalRecord:
    return CanonicalRecord(
        entity_kind="contract",
        natural_key=key,
        fields=fields,
        source="usaspending_contracts",
        source_updated_at=updated,
    )


def test_apply_is_idempotent(store) -> None:
    sink = UpsertSink(store)
    record = _record({"recipient_name": "Acme Corp", "award_amount": 1500.0})

    outcomes = [sink.apply(record) for _ in range(3)]

    assert [outcome.is_new for outcome in outcomes] == [True, False, False]
    assert all(outcome.applied and outcome.error is None for outcome in outcomes)
    assert store.count("contract") == 1

    (stored,) = store.query("contract")
    assert stored["recipient_name"] == "Acme Corp"
    assert stored["award_amount"] == 1500.0


def test_collision_overwrites_mutable_fields_and_refreshes_last_seen(store) -> None:
    sink = UpsertSink(store)
    first = _record({"recipient_name": "Acme Corp", "award_amount": 1500.0})
    sink.apply(first)

    later = CanonicalRecord(
        entity_kind="contract",
        natural_key=("CONT_AWD_0001",),
        fields={"award_amount": 2500.0},
        source="usaspending_historical",
        last_seen_at=datetime(2100, 1, 1),
    )
    outcome = sink.apply(later)

    assert outcome.applied is True
    assert outcome.is_new is False
    (stored,) = store.query("contract")
    assert stored["award_amount"] == 2500.0
    assert stored["recipient_name"] == "Acme Corp"
    assert stored["source"] == "usaspending_historical"
    assert stored["last_seen_at"] == datetime(2100, 1, 1)


def test_older_upstream_revision_does_not_overwrite(store) -> None:
    sink = UpsertSink(store)
    sink.apply(_record({"award_amount": 900.0}, updated=datetime(2024, 5, 1)))

    stale = _record({"award_amount": 100.0}, updated=datetime(2024, 1, 1))
    outcome = sink.apply(stale)

    assert outcome.applied is False
    assert outcome.is_new is False
    assert outcome.error is None
    (stored,) = store.query("contract")
    assert stored["award_amount"] == 900.0


def test_record_without_upstream_timestamp_always_overwrites(store) -> None:
    sink = UpsertSink(store)
    sink.apply(_record({"award_amount": 900.0}, updated=datetime(2024, 5, 1)))

    outcome = sink.apply(_record({"award_amount": 100.0}))

    assert outcome.applied is True
    assert store.query("contract")[0]["award_amount"] == 100.0


def test_same_key_in_different_kinds_are_distinct_rows(store) -> None:
    sink = UpsertSink(store)
    sink.apply(_record({"award_amount": 1.0}, key=("X-1",)))
    sink.apply(
        CanonicalRecord(entity_kind="grant", natural_key=("X-1",), fields={"award_amount": 2.0}, source="usaspending_grants")
    )

    assert store.count() == 2


def test_record_with_blank_key_is_refused(store) -> None:
    outcome = UpsertSink(store).apply(_record({"award_amount": 1.0}, key=("  ",)))

    assert outcome.applied is False
    assert "natural key" in outcome.error
    assert store.count() == 0


def test_store_error_is_reported_not_raised(store, monkeypatch) -> None:
    def broken_upsert(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "upsert", broken_upsert)

    outcome = UpsertSink(store).apply(_record({"award_amount": 1.0}))

    assert outcome.applied is False
    assert "database is locked" in outcome.error


def test_record_without_seen_time_is_stamped_by_store(store) -> None:
    record = _record({"award_amount": 10.0})
    assert record.last_seen_at is None

    UpsertSink(store).apply(record)

    (stored,) = store.query("contract")
    assert isinstance(stored["last_seen_at"], datetime)


def test_query_filters_scalar_fields_in_sql(store) -> None:
    store.upsert("contract", "a", {"awarding_agency": "DOD", "award_amount": 100.0, "small_business": True, "fiscal_year": 2023}, source="seed")
    store.upsert("contract", "b", {"awarding_agency": "DOD", "award_amount": 250.5, "small_business": False, "fiscal_year": 2024}, source="seed")
    store.upsert("contract", "c", {"awarding_agency": "NASA", "award_amount": 100.0, "small_business": True, "fiscal_year": 2024}, source="seed")
    store.upsert("grant", "d", {"awarding_agency": "DOD"}, source="seed")

    statements: list[str] = []
    engine = store.session_factory.kw["bind"]

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        by_agency = store.query("contract", {"awarding_agency": "DOD"})
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert [row["natural_key"] for row in by_agency] == ["a", "b"]
    assert any("json_extract" in statement.lower() for statement in statements)

    assert [row["natural_key"] for row in store.query("contract", {"small_business": True})] == ["a", "c"]
    assert [row["natural_key"] for row in store.query("contract", {"fiscal_year": 2024})] == ["b", "c"]
    assert [row["natural_key"] for row in store.query("contract", {"award_amount": 250.5})] == ["b"]
    assert [row["natural_key"] for row in store.query("contract", {"award_amount": 100.0}, limit=1)] == ["a"]


def test_query_keeps_non_scalar_filters_and_field_ordering(store) -> None:
    store.upsert("regulatory", "r1", {"agencies": ["EPA"], "title": "B"}, source="seed")
    store.upsert("regulatory", "r2", {"agencies": ["EPA", "DOE"], "title": "A"}, source="seed")
    store.upsert("regulatory", "r3", {"agencies": ["EPA"], "title": "C"}, source="seed")

    matched = store.query("regulatory", {"agencies": ["EPA"]}, order_by="-title", limit=1)

    assert [row["natural_key"] for row in matched] == ["r3"]
