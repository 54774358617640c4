"""Grant and funding-opportunity sources: Grants.gov, NIH RePORTER, NSF."""

from typing import Any

from dataflood.connectors.base import Connector, parse_timestamp, require, to_amount, truncate
from dataflood.schemas import CanonicalRecord, Page, Partition


GRANTS_GOV_URL = "https://www.grants.gov/grantsws/rest/opportunities/search"
NIH_URL = "https://api.reporter.nih.gov/v2/projects/search"
NSF_URL = "https://api.nsf.gov/services/v1/awards.json"

NSF_PRINT_FIELDS = "id,title,awardeeName,awardeeCity,awardeeStateCode,fundsObligatedAmt,startDate,expDate,abstractText"


def _organization_type(name: str) -> str:
    return "university" if "university" in name.lower() else "research_organization"


class GrantsGov(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        body = {
            "keyword": "" if partition.key == "all" else partition.key,
            "oppStatuses": "forecasted|posted",
            "rows": self.descriptor.page_size,
            "startRecordNum": page_number * self.descriptor.page_size,
        }
        data = self._request("POST", GRANTS_GOV_URL, json=body)
        results = data.get("oppHits") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        identity = raw.get("id") or raw.get("oppNumber")
        (opportunity_id,) = require({"id": identity}, "id")
        return self._record(
            "opportunity",
            (f"grants-gov-{opportunity_id}",),
            {
                "title": raw.get("title"),
                "description": truncate(raw.get("synopsis")),
                "department": raw.get("agencyName") or raw.get("agency"),
                "posted_date": raw.get("openDate"),
                "response_deadline": raw.get("closeDate"),
                "award_ceiling": raw.get("awardCeiling"),
                "award_floor": raw.get("awardFloor"),
                "is_active": True,
            },
            source_updated_at=parse_timestamp(raw.get("openDate")),
        )


class NihReporter(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        body = {
            "criteria": {"fiscal_years": [int(partition.key)], "include_active_projects": True},
            "limit": self.descriptor.page_size,
            "offset": page_number * self.descriptor.page_size,
        }
        data = self._request("POST", NIH_URL, json=body)
        results = data.get("results") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (project_num,) = require(raw, "project_num")
        organization = raw.get("organization") or {}
        org_name = organization.get("org_name")
        return self._record(
            "grant",
            (f"nih-{project_num}",),
            {
                "fain": project_num,
                "recipient_name": org_name,
                "recipient_type": _organization_type(org_name) if org_name else None,
                "awarding_agency": "Department of Health and Human Services",
                "awarding_sub_agency": (raw.get("agency_ic_admin") or raw.get("ic") or {}).get("name"),
                "award_amount": to_amount(raw.get("award_amount")),
                "project_title": raw.get("project_title"),
                "description": truncate(raw.get("abstract_text")),
                "start_date": raw.get("project_start_date"),
                "end_date": raw.get("project_end_date"),
                "pop_state": organization.get("org_state"),
                "pop_city": organization.get("org_city"),
            },
        )


class NsfAwards(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        params = {
            "startDateStart": "01/01/2022",
            "printFields": NSF_PRINT_FIELDS,
            # NSF offsets are 1-based.
            "offset": page_number * self.descriptor.page_size + 1,
            "rpp": self.descriptor.page_size,
        }
        data = self._request("GET", NSF_URL, params=params)
        results = (data.get("response") or {}).get("award") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (award_id,) = require(raw, "id")
        awardee = raw.get("awardeeName")
        return self._record(
            "grant",
            (f"nsf-{award_id}",),
            {
                "recipient_name": awardee,
                "recipient_type": _organization_type(awardee) if awardee else None,
                "awarding_agency": "National Science Foundation",
                "award_amount": to_amount(raw.get("fundsObligatedAmt")),
                "project_title": raw.get("title"),
                "description": truncate(raw.get("abstractText")),
                "start_date": raw.get("startDate"),
                "end_date": raw.get("expDate"),
                "pop_state": raw.get("awardeeStateCode"),
                "pop_city": raw.get("awardeeCity"),
            },
        )
