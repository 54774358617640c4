from typing import Any

from dataflood.connectors.base import Connector, MappingError, require, to_amount, truncate
from dataflood.schemas import CanonicalRecord, Page, Partition


# Socrata endpoints, one per state partition.
PORTALS = {
    "MD": ("https://opendata.maryland.gov/resource/contracts.json", "State of Maryland", "maryland_open_data"),
    "VA": ("https://data.virginia.gov/resource/contracts.json", "Commonwealth of Virginia", "virginia_eva"),
    "DC": ("https://opendata.dc.gov/resource/contracts.json", "District of Columbia", "dc_open_data"),
}


class StateOpenData(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        url, _, _ = PORTALS[partition.key]
        page_number = cursor or 0
        params = {"$limit": self.descriptor.page_size, "$offset": page_number * self.descriptor.page_size}
        data = self._request("GET", url, params=params, headers={"Accept": "application/json"})
        # Portal rows do not name their state, so tag them for map().
        records = [dict(row, _state=partition.key) for row in data or []]
        return Page(records=records, next_cursor=self._next_cursor(page_number, len(records)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        state = raw.get("_state")
        if state not in PORTALS:
            raise MappingError(f"unknown state portal: {state!r}")
        contract_id = raw.get("contract_id") or raw.get("id")
        (contract_id,) = require({"contract_id": contract_id}, "contract_id")
        _, default_agency, portal = PORTALS[state]
        return self._record(
            "contract",
            (f"{state.lower()}-{contract_id}",),
            {
                "recipient_name": raw.get("vendor_name"),
                "award_amount": to_amount(raw.get("contract_value") or raw.get("amount")),
                "awarding_agency": raw.get("agency_name") or default_agency,
                "description": truncate(raw.get("description")),
                "start_date": raw.get("start_date"),
                "end_date": raw.get("end_date"),
                "pop_state": state,
                "portal": portal,
            },
        )
