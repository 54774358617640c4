from typing import Any

from dataflood.connectors.base import Connector, parse_timestamp, require, to_amount, truncate
from dataflood.schemas import CanonicalRecord, Page, Partition


SEARCH_URL = "https://api.usaspending.gov/api/v2/search/spending_by_award/"

CONTRACT_AWARD_TYPES = ["A", "B", "C", "D"]
GRANT_AWARD_TYPES = ["02", "03", "04", "05"]

CONTRACT_FIELDS = [
    "Award ID",
    "Recipient Name",
    "recipient_uei",
    "Award Amount",
    "Awarding Agency",
    "Awarding Sub Agency",
    "Award Type",
    "Description",
    "Start Date",
    "End Date",
    "Place of Performance State Code",
    "Place of Performance City Name",
    "NAICS Code",
    "PSC Code",
    "Last Modified Date",
]

GRANT_FIELDS = [
    "Award ID",
    "Recipient Name",
    "recipient_uei",
    "Award Amount",
    "Awarding Agency",
    "Description",
    "Start Date",
    "End Date",
    "CFDA Number",
    "Last Modified Date",
]


class _SpendingByAward(Connector):
    award_type_codes: list[str] = CONTRACT_AWARD_TYPES
    result_fields: list[str] = CONTRACT_FIELDS

    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        body = {
            "filters": self._filters(partition.key),
            "fields": self.result_fields,
            "limit": self.descriptor.page_size,
            "page": page_number + 1,
            "sort": "Award Amount",
            "order": "desc",
            "subawards": False,
        }
        data = self._request("POST", SEARCH_URL, json=body)
        results = data.get("results") or []
        has_next = bool((data.get("page_metadata") or {}).get("hasNext", True))
        next_cursor = self._next_cursor(page_number, len(results)) if has_next else None
        return Page(records=results, next_cursor=next_cursor)

    def _filters(self, partition_key: str) -> dict[str, Any]:
        return {
            "time_period": [{"start_date": "2020-01-01", "end_date": "2025-12-31"}],
            "award_type_codes": self.award_type_codes,
            "place_of_performance_locations": [{"country": "USA", "state": partition_key}],
        }


class UsaSpendingContracts(_SpendingByAward):
    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (award_id,) = require(raw, "Award ID")
        return self._record(
            "contract",
            (award_id,),
            {
                "recipient_name": raw.get("Recipient Name"),
                "recipient_uei": raw.get("recipient_uei"),
                "award_amount": to_amount(raw.get("Award Amount")),
                "awarding_agency": raw.get("Awarding Agency"),
                "awarding_sub_agency": raw.get("Awarding Sub Agency"),
                "award_type": raw.get("Award Type"),
                "description": truncate(raw.get("Description")),
                "start_date": raw.get("Start Date"),
                "end_date": raw.get("End Date"),
                "pop_state": raw.get("Place of Performance State Code"),
                "pop_city": raw.get("Place of Performance City Name"),
                "naics_code": raw.get("NAICS Code"),
                "psc_code": raw.get("PSC Code"),
            },
            source_updated_at=_modified(raw),
        )


class UsaSpendingGrants(_SpendingByAward):
    award_type_codes = GRANT_AWARD_TYPES
    result_fields = GRANT_FIELDS

    def _filters(self, partition_key: str) -> dict[str, Any]:
        return {
            "time_period": [{"start_date": "2020-01-01", "end_date": "2025-12-31"}],
            "award_type_codes": self.award_type_codes,
            "recipient_locations": [{"country": "USA", "state": partition_key}],
        }

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (award_id,) = require(raw, "Award ID")
        return self._record(
            "grant",
            (award_id,),
            {
                "recipient_name": raw.get("Recipient Name"),
                "recipient_uei": raw.get("recipient_uei"),
                "award_amount": to_amount(raw.get("Award Amount")),
                "awarding_agency": raw.get("Awarding Agency"),
                "description": truncate(raw.get("Description")),
                "cfda_number": raw.get("CFDA Number"),
                "start_date": raw.get("Start Date"),
                "end_date": raw.get("End Date"),
            },
            source_updated_at=_modified(raw),
        )


class UsaSpendingHistorical(UsaSpendingContracts):
    """Large (>$1M) contracts for one past calendar year per partition."""

    def _filters(self, partition_key: str) -> dict[str, Any]:
        return {
            "time_period": [{"start_date": f"{partition_key}-01-01", "end_date": f"{partition_key}-12-31"}],
            "award_type_codes": self.award_type_codes,
            "award_amounts": [{"lower_bound": 1000000}],
        }


def _modified(raw: dict[str, Any]):
    return parse_timestamp(raw.get("Last Modified Date"))
