"""SAM.gov connectors. All three need ``SAM_API_KEY`` (a data.gov key works)."""

from typing import Any

from dataflood.connectors.base import Connector, parse_timestamp, require, to_amount, truncate
from dataflood.schemas import CanonicalRecord, Page, Partition


OPPORTUNITIES_URL = "https://api.sam.gov/opportunities/v2/search"
ENTITIES_URL = "https://api.sam.gov/entity-information/v3/entities"
EXCLUSIONS_URL = "https://api.sam.gov/entity-information/v2/exclusions"


class SamOpportunities(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        params = {
            "api_key": self.api_key,
            "limit": self.descriptor.page_size,
            "offset": page_number * self.descriptor.page_size,
            "postedFrom": "01/01/2024",
            "postedTo": "12/31/2025",
        }
        data = self._request("GET", OPPORTUNITIES_URL, params=params, headers={"Accept": "application/json"})
        results = data.get("opportunitiesData") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        (notice_id,) = require(raw, "noticeId")
        award = raw.get("award") or {}
        place = raw.get("placeOfPerformance") or {}
        contacts = raw.get("pointOfContact") or [{}]
        return self._record(
            "opportunity",
            (notice_id,),
            {
                "solicitation_number": raw.get("solicitationNumber"),
                "title": raw.get("title"),
                "description": truncate(raw.get("description")),
                "notice_type": raw.get("type"),
                "department": raw.get("department"),
                "sub_tier": raw.get("subtier"),
                "office": raw.get("office"),
                "naics_code": raw.get("naicsCode"),
                "set_aside": raw.get("typeOfSetAside"),
                "posted_date": raw.get("postedDate"),
                "response_deadline": raw.get("responseDeadLine"),
                "award_floor": award.get("floor"),
                "award_ceiling": award.get("ceiling"),
                "pop_state": (place.get("state") or {}).get("code"),
                "pop_city": (place.get("city") or {}).get("name"),
                "primary_contact_email": (contacts[0] or {}).get("email"),
                "ui_link": raw.get("uiLink"),
                "is_active": raw.get("active") == "Yes",
            },
            source_updated_at=parse_timestamp(raw.get("postedDate")),
        )


class SamEntities(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        params = {
            "api_key": self.api_key,
            "registrationStatus": "A",
            "samRegistered": "Yes",
            "physicalAddressProvinceOrStateCode": partition.key,
            "includeSections": "entityRegistration,coreData",
            "page": page_number,
            "size": self.descriptor.page_size,
        }
        data = self._request("GET", ENTITIES_URL, params=params)
        results = data.get("entityData") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        registration = raw.get("entityRegistration") or {}
        core = raw.get("coreData") or {}
        address = core.get("physicalAddress") or {}
        (uei,) = require(registration, "ueiSAM")
        naics = (core.get("naics") or {}).get("naicsList") or []
        business_types = (core.get("businessTypes") or {}).get("businessTypeList") or []
        return self._record(
            "entity",
            (uei,),
            {
                "uei": uei,
                "cage_code": registration.get("cageCode"),
                "legal_business_name": registration.get("legalBusinessName"),
                "dba_name": registration.get("dbaName"),
                "registration_status": registration.get("registrationStatus"),
                "registration_date": registration.get("registrationDate"),
                "expiration_date": registration.get("registrationExpirationDate"),
                "physical_city": address.get("city"),
                "physical_state": address.get("stateOrProvinceCode"),
                "physical_zip": address.get("zipCode"),
                "entity_url": (core.get("entityInformation") or {}).get("entityURL"),
                "naics_codes": [item.get("naicsCode") for item in naics if item.get("naicsCode")],
                "business_types": [
                    item.get("businessType", item) if isinstance(item, dict) else item for item in business_types
                ],
            },
            source_updated_at=parse_timestamp(registration.get("lastUpdateDate")),
        )


class SamExclusions(Connector):
    def fetch(self, partition: Partition, cursor: int | None) -> Page:
        page_number = cursor or 0
        params = {
            "api_key": self.api_key,
            "isActive": "true",
            "page": page_number,
            "size": self.descriptor.page_size,
        }
        if partition.key != "ALL":
            params["excludingAgencyCode"] = partition.key
        data = self._request("GET", EXCLUSIONS_URL, params=params)
        results = data.get("results") or data.get("excludedEntity") or []
        return Page(records=results, next_cursor=self._next_cursor(page_number, len(results)))

    def map(self, raw: dict[str, Any]) -> CanonicalRecord:
        # Exclusions carry no single id upstream; name + activation + agency is unique.
        name, active_date, agency = require(raw, "name", "activateDate", "excludingAgencyCode")
        return self._record(
            "exclusion",
            (name.upper(), active_date, agency),
            {
                "exclusion_name": name,
                "classification": raw.get("classificationType"),
                "exclusion_type": raw.get("exclusionType"),
                "exclusion_program": raw.get("exclusionProgram"),
                "excluding_agency": agency,
                "uei": raw.get("ueiSAM"),
                "cage_code": raw.get("cageCode"),
                "active_date": active_date,
                "termination_date": raw.get("terminationDate"),
                "record_status": raw.get("recordStatus"),
                "city": raw.get("city"),
                "state": raw.get("stateProvince"),
                "country": raw.get("country"),
                "description": truncate(raw.get("description")),
                "fine_amount": to_amount(raw.get("fineAmount")) if raw.get("fineAmount") else None,
            },
        )
