import threading

import httpx
import pytest

from dataflood.orchestrator import IngestionOrchestrator
from dataflood.store import StoreUnavailableError
from helpers import ScriptedConnector, award_rows


def _three_sources() -> list[ScriptedConnector]:
    flaky_rows = award_rows("c", 10)
    flaky_rows[3]["id"] = None
    flaky_rows[7]["id"] = "  "
    return [
        ScriptedConnector("source_a", {"ALL": [award_rows("a", 50)]}),
        ScriptedConnector("source_b", {"ALL": [httpx.ReadTimeout("timed out")]}),
        ScriptedConnector("source_c", {"ALL": [flaky_rows]}),
    ]


def test_partial_failure_is_isolated_and_rerun_is_idempotent(store) -> None:
    orchestrator = IngestionOrchestrator(store, max_concurrency=4)

    first = orchestrator.run(_three_sources())

    assert first.total_loaded == 58
    assert first.total_new == 58
    assert first.total_dropped == 2
    assert len(first.errors) >= 1
    assert any(error.startswith("source_b: [ALL] ReadTimeout") for error in first.errors)
    assert first.sources["source_a"].loaded == 50
    assert first.sources["source_b"].loaded == 0
    assert first.sources["source_c"].loaded == 8
    assert store.count() == 58

    second = orchestrator.run(_three_sources())

    assert second.total_new == 0
    assert second.total_loaded == 58
    assert store.count() == 58


def test_malformed_record_is_dropped_without_abandoning_the_page(store) -> None:
    good_first, good_last = award_rows("m", 2)
    # A null entry mid-page; later rows of the same page must still load.
    connector = ScriptedConnector("source_m", {"ALL": [[good_first, None, good_last]]})

    result = IngestionOrchestrator(store, max_concurrency=2).run([connector])

    assert result.sources["source_m"].loaded == 2
    assert result.sources["source_m"].dropped == 1
    assert result.errors == []
    assert store.count() == 2


def test_units_run_concurrently(store) -> None:
    # Each fetch blocks until the other one has started.
    barrier = threading.Barrier(2, timeout=5)
    connectors = [
        ScriptedConnector("left", {"ALL": [award_rows("l", 3)]}, on_fetch=lambda partition, cursor: barrier.wait()),
        ScriptedConnector("right", {"ALL": [award_rows("r", 3)]}, on_fetch=lambda partition, cursor: barrier.wait()),
    ]

    result = IngestionOrchestrator(store, max_concurrency=2, run_maintenance=False).run(connectors)

    assert result.errors == []
    assert result.total_loaded == 6


def test_failure_on_later_page_keeps_earlier_pages(store) -> None:
    connector = ScriptedConnector("paged", {"ALL": [award_rows("p", 5), RuntimeError("upstream 502")]})

    result = IngestionOrchestrator(store, run_maintenance=False).run([connector])

    assert result.sources["paged"].loaded == 5
    assert result.sources["paged"].errors == ["[ALL] RuntimeError: upstream 502"]
    assert store.count() == 5


def test_paging_stops_at_max_pages(store) -> None:
    pages = [award_rows(f"page{index}", 2) for index in range(5)]
    connector = ScriptedConnector("deep", {"ALL": pages}, max_pages=3)

    result = IngestionOrchestrator(store, run_maintenance=False).run([connector])

    assert [cursor for _, cursor in connector.fetched] == [None, 1, 2]
    assert result.total_loaded == 6


def test_missing_credential_skips_source(store) -> None:
    keyed = ScriptedConnector("sam_like", {"ALL": [award_rows("s", 2)]}, credential="sam_api_key")
    open_source = ScriptedConnector("open", {"ALL": [award_rows("o", 2)]})

    result = IngestionOrchestrator(store, run_maintenance=False).run([keyed, open_source])

    assert keyed.fetched == []
    assert result.sources["sam_like"].skipped is True
    assert "missing credential sam_api_key" in result.sources["sam_like"].errors[0]
    assert result.sources["open"].loaded == 2


def test_units_are_submitted_in_priority_order(store) -> None:
    order: list[tuple[str, str]] = []

    def track(source_id):
        return lambda partition, cursor: order.append((source_id, partition.key))

    connectors = [
        ScriptedConnector("states", {"MD": [[]], "VA": [[]]}, on_fetch=track("states")),
        ScriptedConnector("federal", {"ALL": [[]]}, on_fetch=track("federal")),
    ]

    IngestionOrchestrator(store, max_concurrency=1, run_maintenance=False).run(connectors)

    assert order == [("states", "MD"), ("federal", "ALL"), ("states", "VA")]


def test_maintenance_runs_after_settle_and_failures_are_recorded(store, monkeypatch) -> None:
    calls: list[str] = []
    original = store.call_procedure

    def call_procedure(name, args=None):
        calls.append(name)
        if name == "discover_relationships":
            raise RuntimeError("lock timeout")
        return original(name, args)

    monkeypatch.setattr(store, "call_procedure", call_procedure)

    result = IngestionOrchestrator(store).run([ScriptedConnector("a", {"ALL": [award_rows("a", 4)]})])

    assert calls == ["sync_entity_stats", "discover_relationships", "generate_insights"]
    assert result.maintenance["sync_entity_stats"] == "ok"
    assert result.maintenance["discover_relationships"] == "failed: lock timeout"
    assert "maintenance discover_relationships: failed: lock timeout" in result.errors


def test_unreachable_store_fails_the_run(store, monkeypatch) -> None:
    def ping():
        raise StoreUnavailableError("store unreachable: connection refused")

    monkeypatch.setattr(store, "ping", ping)

    with pytest.raises(StoreUnavailableError):
        IngestionOrchestrator(store).run([ScriptedConnector("a", {"ALL": [award_rows("a", 1)]})])
