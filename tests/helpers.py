from collections.abc import Callable
from typing import Any

from dataflood.connectors.base import Connector, require, to_amount
from dataflood.schemas import CanonicalRecord, Page, Partition, SourceDescriptor


class ScriptedConnector(Connector):
    """Serves canned pages per partition; a page given as an exception is raised instead."""

    def __init__(
        self,
        source_id: str,
        pages: dict[str, list[Any]],
        *,
        family: str = "contracts",
        credential: str | None = None,
        max_pages: int = 3,
        on_fetch: Callable[[Partition, int | None], None] | None = None,
    ) -> None:
        descriptor = SourceDescriptor(
            source_id=source_id,
            category="contract",
            family=family,
            partitions=tuple(pages),
            request_delay_seconds=0.0,
            timeout_seconds=1.0,
            max_pages=max_pages,
            credential=credential,
        )
        super().__init__(descriptor, client=None)
        self.pages = pages
        self.on_fetch = on_fetch
        self.fetched: list[tuple[str, int | None]] = []

    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        self.fetched.append((partition.key, cursor))
        if self.on_fetch is not None:
            self.on_fetch(partition, cursor)
        index = cursor or 0
        script = self.pages[partition.key]
        page = script[index]
        if isinstance(page, Exception):
            raise page
        return Page(records=list(page), next_cursor=index + 1 if index + 1 < len(script) else None)

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (award_id,) = require(raw, "id")
        return self._record(
            "contract",
            (award_id,),
            {
                "recipient_name": raw.get("recipient"),
                "award_amount": to_amount(raw.get("amount")),
                "awarding_agency": raw.get("agency"),
                "naics_code": raw.get("naics"),
            },
        )


def award_rows(prefix: str, count: int, *, recipients: int = 5, agencies: tuple[str, ...] = ("DOD", "NASA")) -> list[dict]:
    return [
        {
            "id": f"{prefix}-{index}",
            "recipient": f"Recipient {index % recipients} LLC",
            "amount": 1_000 * (index + 1),
            "agency": agencies[index % len(agencies)],
            "naics": str(541500 + index % 3),
        }
        for index in range(count)
    ]
