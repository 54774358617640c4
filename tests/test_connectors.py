from dataclasses import replace
from datetime import datetime
import json
import time

import httpx
import pytest
import respx

from dataflood.connectors.base import MappingError
from dataflood.connectors.federal_register import DOCUMENTS_URL
from dataflood.connectors.registry import build_connectors, source_descriptors
from dataflood.connectors.research import NSF_URL
from dataflood.connectors.sam import EXCLUSIONS_URL
from dataflood.connectors.state_portals import PORTALS
from dataflood.connectors.usaspending import SEARCH_URL
from dataflood.schemas import Partition, RunOptions


def _connector(settings, source_id: str, client: httpx.Client, **overrides):
    settings = replace(settings, **overrides)
    options = RunOptions(historical=True)
    (connector,) = [c for c in build_connectors(settings, client, options) if c.source_id == source_id]
    return connector


def _award(award_id: str | None, **fields) -> dict:
    return {"Award ID": award_id, "Recipient Name": "Acme Corp", "Award Amount": "1250.5", "Awarding Agency": "DOD", **fields}


def test_registry_builds_every_source(test_settings) -> None:
    descriptors = source_descriptors(test_settings)

    assert len(descriptors) == 11
    assert {d.source_id for d in descriptors if d.credential} == {"sam_opportunities", "sam_entities", "sam_exclusions"}


def test_build_connectors_filters_by_family_and_sets_credentials(test_settings) -> None:
    settings = replace(test_settings, sam_api_key="demo-key")
    with httpx.Client() as client:
        connectors = build_connectors(settings, client, RunOptions(contracts=False, grants=False, opportunities=False))

    assert {c.source_id for c in connectors} == {"sam_entities", "sam_exclusions", "state_open_data"}
    assert all(c.api_key == "demo-key" for c in connectors if c.descriptor.credential)


@respx.mock
def test_usaspending_contracts_page_and_map(test_settings) -> None:
    route = respx.post(SEARCH_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "results": [_award("CONT-1", **{"Last Modified Date": "2024-03-05T12:00:00Z"}), _award("CONT-2")],
                "page_metadata": {"hasNext": True},
            },
        )
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "usaspending_contracts", client, page_size=2)
        page = connector.fetch(Partition("usaspending_contracts", "MD"), None)

    body = json.loads(route.calls.last.request.content)
    assert body["page"] == 1
    assert body["limit"] == 2
    assert body["filters"]["place_of_performance_locations"] == [{"country": "USA", "state": "MD"}]
    assert page.next_cursor == 1

    record = connector.map(page.records[0])
    assert record.entity_kind == "contract"
    assert record.natural_key == ("CONT-1",)
    assert record.fields["award_amount"] == 1250.5
    assert record.source_updated_at == datetime(2024, 3, 5, 12, 0)


@respx.mock
def test_usaspending_stops_when_upstream_has_no_next_page(test_settings) -> None:
    respx.post(SEARCH_URL).mock(
        return_value=httpx.Response(200, json={"results": [_award("G-1"), _award("G-2")], "page_metadata": {"hasNext": False}})
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "usaspending_grants", client, page_size=2)
        page = connector.fetch(Partition("usaspending_grants", "VA"), None)

    assert page.next_cursor is None
    assert connector.map(page.records[1]).entity_kind == "grant"


def test_mapping_without_identity_raises(test_settings) -> None:
    with httpx.Client() as client:
        connector = _connector(test_settings, "usaspending_contracts", client)

    with pytest.raises(MappingError):
        connector.map(_award(None))
    with pytest.raises(MappingError):
        connector.map(_award("   "))


def test_natural_key_is_stable_across_fetches(test_settings) -> None:
    with httpx.Client() as client:
        connector = _connector(test_settings, "sam_exclusions", client)
    raw = {"name": "Shady Vendor llc", "activateDate": "2023-07-01", "excludingAgencyCode": "DOD", "ueiSAM": "ABC123"}

    first = connector.map(raw)
    second = connector.map(dict(raw, recordStatus="Active"))

    assert first.natural_key == second.natural_key == ("SHADY VENDOR LLC", "2023-07-01", "DOD")
    assert first.entity_kind == "exclusion"


@respx.mock
def test_sam_exclusions_sends_key_and_no_agency_filter_for_catch_all(test_settings) -> None:
    route = respx.get(EXCLUSIONS_URL).mock(return_value=httpx.Response(200, json={"results": []}))
    with httpx.Client() as client:
        connector = _connector(test_settings, "sam_exclusions", client, sam_api_key="demo-key")
        page = connector.fetch(Partition("sam_exclusions", "ALL"), None)

    params = route.calls.last.request.url.params
    assert params["api_key"] == "demo-key"
    assert "excludingAgencyCode" not in params
    assert page.records == []
    assert page.next_cursor is None


@respx.mock
def test_state_portal_tags_rows_and_drops_rows_without_id(test_settings) -> None:
    url = PORTALS["MD"][0]
    respx.get(url).mock(
        return_value=httpx.Response(200, json=[{"contract_id": "123", "vendor_name": "Acme"}, {"vendor_name": "No Id"}])
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "state_open_data", client)
        page = connector.fetch(Partition("state_open_data", "MD"), None)

    record = connector.map(page.records[0])
    assert record.natural_key == ("md-123",)
    assert record.fields["awarding_agency"] == "State of Maryland"
    with pytest.raises(MappingError):
        connector.map(page.records[1])


@respx.mock
def test_nsf_offsets_are_one_based(test_settings) -> None:
    route = respx.get(NSF_URL).mock(return_value=httpx.Response(200, json={"response": {"award": [{"id": "2201"}]}}))
    with httpx.Client() as client:
        connector = _connector(test_settings, "nsf_awards", client, page_size=25)
        connector.fetch(Partition("nsf_awards", "all"), 2)

    assert route.calls.last.request.url.params["offset"] == "51"


@respx.mock
def test_federal_register_last_page(test_settings) -> None:
    respx.get(DOCUMENTS_URL).mock(
        return_value=httpx.Response(200, json={"results": [{"document_number": "2024-01234", "title": "Rule"}], "next_page_url": None})
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "federal_register", client, page_size=1)
        page = connector.fetch(Partition("federal_register", "defense-department"), None)

    assert page.next_cursor is None
    assert connector.map(page.records[0]).natural_key == ("2024-01234",)


@respx.mock
def test_http_error_raises_and_releases_limiter_slot(test_settings) -> None:
    respx.get(NSF_URL).mock(
        side_effect=[httpx.Response(503), httpx.Response(200, json={"response": {"award": []}})]
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "nsf_awards", client)
        with pytest.raises(httpx.HTTPStatusError):
            connector.fetch(Partition("nsf_awards", "all"), None)
        page = connector.fetch(Partition("nsf_awards", "all"), None)

    assert page.records == []
    assert connector.limiter.calls == 2


@respx.mock
def test_trickling_body_is_cut_off_at_total_timeout(test_settings) -> None:
    def trickle():
        # Each chunk arrives well inside httpx's per-read timeout.
        for _ in range(3):
            time.sleep(0.8)
            yield b'{"response": '

    respx.get(NSF_URL).mock(side_effect=lambda request: httpx.Response(200, content=trickle()))
    with httpx.Client() as client:
        connector = _connector(test_settings, "nsf_awards", client, request_timeout_seconds=1.0)
        started = time.monotonic()
        with pytest.raises(httpx.TimeoutException):
            connector.fetch(Partition("nsf_awards", "all"), None)
        elapsed = time.monotonic() - started

    assert elapsed <= 1.5


@respx.mock
def test_federal_register_tolerates_null_agency_entries(test_settings) -> None:
    respx.get(DOCUMENTS_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "results": [
                    {"document_number": "2024-00001", "agencies": [None, {"name": "Environmental Protection Agency"}]},
                    {"document_number": "2024-00002", "agencies": [None]},
                ],
                "next_page_url": None,
            },
        )
    )
    with httpx.Client() as client:
        connector = _connector(test_settings, "federal_register", client)
        page = connector.fetch(Partition("federal_register", "environmental-protection-agency"), None)

    first, second = (connector.to_canonical(raw) for raw in page.records)
    assert first.fields["agencies"] == ["Environmental Protection Agency"]
    assert second.fields["agencies"] == []


def test_malformed_payload_becomes_mapping_error(test_settings) -> None:
    with httpx.Client() as client:
        connector = _connector(test_settings, "usaspending_contracts", client)

    with pytest.raises(MappingError, match="malformed record"):
        connector.to_canonical(None)
    with pytest.raises(MappingError, match="malformed record"):
        connector.to_canonical(["CONT-1"])


def test_mapping_is_deterministic(test_settings) -> None:
    with httpx.Client() as client:
        connector = _connector(test_settings, "usaspending_contracts", client)
    raw = _award("CONT-9", **{"Last Modified Date": "2024-03-05T12:00:00Z"})

    first = connector.to_canonical(raw)
    time.sleep(0.01)
    second = connector.to_canonical(raw)

    assert first == second
    assert first.last_seen_at is None
