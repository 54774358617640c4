from typing import Any

from dataflood.connectors.base import Connector, parse_timestamp, require, truncate
from dataflood.schemas import CanonicalRecord, Page, Partition


DOCUMENTS_URL = "https://www.federalregister.gov/api/v1/documents.json"


class FederalRegister(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        params = {
            "per_page": self.descriptor.page_size,
            "page": page_number + 1,
            "order": "newest",
            "conditions[agencies][]": partition.key,
        }
        data = self._request("GET", DOCUMENTS_URL, params=params)
        results = data.get("results") or []
        next_cursor = self._next_cursor(page_number, len(results)) if data.get("next_page_url") else None
        return Page(records=results, next_cursor=next_cursor)

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (document_number,) = require(raw, "document_number")
        agencies = [
            agency.get("name") for agency in raw.get("agencies") or [] if isinstance(agency, dict) and agency.get("name")
        ]
        return self._record(
            "regulatory",
            (document_number,),
            {
                "title": raw.get("title"),
                "document_type": raw.get("type"),
                "abstract": truncate(raw.get("abstract")),
                "agencies": agencies,
                "publication_date": raw.get("publication_date"),
                "html_url": raw.get("html_url"),
            },
            source_updated_at=parse_timestamp(raw.get("publication_date")),
        )
