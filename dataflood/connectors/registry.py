"""Compile-time list of source connectors and their descriptors."""

import httpx

from dataflood.config import Settings
from dataflood.connectors.base import Connector
from dataflood.connectors.federal_register import FederalRegister
from dataflood.connectors.research import GrantsGov, NihReporter, NsfAwards
from dataflood.connectors.sam import SamEntities, SamExclusions, SamOpportunities
from dataflood.connectors.state_portals import StateOpenData
from dataflood.connectors.usaspending import UsaSpendingContracts, UsaSpendingGrants, UsaSpendingHistorical
from dataflood.rate_limit import RateLimiter
from dataflood.schemas import RunOptions, SourceDescriptor


# Ordered by historical record density; earlier states are scheduled first.
PRIORITY_STATES = (
    "MD", "VA", "DC", "PA", "DE", "NJ", "NY", "NC", "FL",
    "TX", "CA", "OH", "GA", "IL", "AZ", "WA", "CO", "MA",
)
SAM_ENTITY_STATES = ("MD", "VA", "DC", "DE", "PA", "CA", "TX", "FL", "NY", "IL")
HISTORICAL_YEARS = tuple(str(year) for year in range(2015, 2023))
NIH_FISCAL_YEARS = ("2025", "2024", "2023", "2022")
REGULATORY_AGENCIES = ("defense-department", "health-and-human-services-department", "general-services-administration")

CONNECTOR_CLASSES: dict[str, type[Connector]] = {
    "usaspending_contracts": UsaSpendingContracts,
    "usaspending_grants": UsaSpendingGrants,
    "usaspending_historical": UsaSpendingHistorical,
    "sam_opportunities": SamOpportunities,
    "sam_entities": SamEntities,
    "sam_exclusions": SamExclusions,
    "grants_gov": GrantsGov,
    "nih_reporter": NihReporter,
    "nsf_awards": NsfAwards,
    "state_open_data": StateOpenData,
    "federal_register": FederalRegister,
}


def source_descriptors(settings: Settings) -> list[SourceDescriptor]:
    delay = settings.request_delay_seconds
    sam_delay = settings.sam_request_delay_seconds
    timeout = settings.request_timeout_seconds
    common = {"timeout_seconds": timeout, "max_pages": settings.max_pages, "page_size": settings.page_size}

    return [
        SourceDescriptor("usaspending_contracts", "contract", "contracts", PRIORITY_STATES, delay, **common),
        SourceDescriptor("usaspending_grants", "grant", "grants", PRIORITY_STATES, delay, **common),
        SourceDescriptor("usaspending_historical", "contract", "historical", HISTORICAL_YEARS, delay, **common),
        SourceDescriptor(
            "sam_opportunities", "opportunity", "opportunities", ("all",), sam_delay, credential="sam_api_key", **common
        ),
        SourceDescriptor("sam_entities", "entity", "states", SAM_ENTITY_STATES, sam_delay, credential="sam_api_key", **common),
        SourceDescriptor("sam_exclusions", "exclusion", "states", ("ALL",), sam_delay, credential="sam_api_key", **common),
        SourceDescriptor("grants_gov", "opportunity", "opportunities", ("all",), delay, **common),
        SourceDescriptor("nih_reporter", "grant", "grants", NIH_FISCAL_YEARS, delay, **common),
        SourceDescriptor("nsf_awards", "grant", "grants", ("all",), delay, **common),
        SourceDescriptor("state_open_data", "contract", "states", ("MD", "VA", "DC"), delay, **common),
        SourceDescriptor("federal_register", "regulatory", "opportunities", REGULATORY_AGENCIES, delay, **common),
    ]


def build_connectors(settings: Settings, client: httpx.Client, options: RunOptions | None = None) -> list[Connector]:
    options = options or RunOptions()
    families = options.enabled_families()

    connectors: list[Connector] = []
    for descriptor in source_descriptors(settings):
        if descriptor.family not in families:
            continue
        connector_cls = CONNECTOR_CLASSES[descriptor.source_id]
        limiter = RateLimiter(
            descriptor.source_id,
            delay_seconds=descriptor.request_delay_seconds,
            max_in_flight=2 if descriptor.credential is None else 1,
        )
        connector = connector_cls(descriptor, client, limiter)
        if descriptor.credential:
            connector.api_key = getattr(settings, descriptor.credential) or None
        connectors.append(connector)
    return connectors
