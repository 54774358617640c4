"""Store-side derivation procedures.

Each procedure takes an open session plus keyword arguments, mutates the store
and returns a count (or a snapshot id). They read only what earlier steps left
behind, so any of them is safe to run on stale or partial state.
"""

from collections import defaultdict
from collections.abc import Callable
from itertools import combinations
import re

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from dataflood.db_models import (
    AgencySpending,
    CanonicalRecordRow,
    Entity,
    HealthSnapshot,
    Insight,
    Relationship,
    utc_now,
)


AWARD_KINDS = ("contract", "grant")
REQUIRED_FIELDS = {
    "contract": ("recipient_name", "award_amount", "awarding_agency"),
    "grant": ("recipient_name", "award_amount", "awarding_agency"),
    "opportunity": ("title",),
    "entity": ("legal_business_name",),
    "exclusion": ("exclusion_name",),
    "regulatory": ("title",),
}
NAME_SUFFIXES = {"INC", "LLC", "CORP", "CORPORATION", "CO", "LTD", "LP", "THE", "COMPANY"}
CONCENTRATION_SHARE = 0.7


def name_key(name: str) -> str:
    tokens = re.sub(r"[^A-Z0-9]+", " ", name.upper()).split()
    while len(tokens) > 1 and tokens[-1] in NAME_SUFFIXES:
        tokens.pop()
    if tokens and tokens[0] == "THE" and len(tokens) > 1:
        tokens.pop(0)
    return " ".join(tokens)


def _entity_name(row: CanonicalRecordRow) -> str | None:
    if row.entity_kind in AWARD_KINDS:
        return row.fields.get("recipient_name")
    if row.entity_kind == "entity":
        return row.fields.get("legal_business_name")
    return None


def sync_entity_stats(db: Session) -> int:
    rows = db.execute(
        select(CanonicalRecordRow).where(CanonicalRecordRow.entity_kind.in_((*AWARD_KINDS, "entity", "exclusion")))
    ).scalars().all()

    excluded_names: set[str] = set()
    excluded_ueis: set[str] = set()
    stats: dict[str, dict] = {}
    linked: list[tuple[CanonicalRecordRow, str]] = []

    for row in rows:
        if row.entity_kind == "exclusion":
            if row.fields.get("exclusion_name"):
                excluded_names.add(name_key(row.fields["exclusion_name"]))
            if row.fields.get("uei"):
                excluded_ueis.add(row.fields["uei"])
            continue

        name = _entity_name(row)
        if not name or len(name.strip()) < 2:
            continue
        key = name_key(name)
        if not key:
            continue
        entry = stats.setdefault(
            key,
            {
                "name": name.strip(),
                "uei": None,
                "state": None,
                "contract_count": 0,
                "grant_count": 0,
                "total_contract_value": 0.0,
                "total_grant_value": 0.0,
                "agencies": set(),
                "naics_codes": set(),
            },
        )
        fields = row.fields
        entry["uei"] = entry["uei"] or fields.get("recipient_uei") or fields.get("uei")
        entry["state"] = entry["state"] or fields.get("pop_state") or fields.get("physical_state")
        if row.entity_kind == "contract":
            entry["contract_count"] += 1
            entry["total_contract_value"] += float(fields.get("award_amount") or 0)
        elif row.entity_kind == "grant":
            entry["grant_count"] += 1
            entry["total_grant_value"] += float(fields.get("award_amount") or 0)
        if fields.get("awarding_agency"):
            entry["agencies"].add(fields["awarding_agency"])
        if fields.get("naics_code"):
            entry["naics_codes"].add(str(fields["naics_code"]))
        entry["naics_codes"].update(str(code) for code in fields.get("naics_codes") or [])
        linked.append((row, key))

    existing = {entity.name_key: entity for entity in db.execute(select(Entity)).scalars()}
    for key, entry in stats.items():
        entity = existing.get(key)
        if entity is None:
            entity = Entity(name_key=key, name=entry["name"])
            db.add(entity)
            existing[key] = entity
        entity.uei = entry["uei"] or entity.uei
        entity.state = entry["state"] or entity.state
        entity.contract_count = entry["contract_count"]
        entity.grant_count = entry["grant_count"]
        entity.total_contract_value = round(entry["total_contract_value"], 2)
        entity.total_grant_value = round(entry["total_grant_value"], 2)
        entity.agencies = sorted(entry["agencies"])
        entity.naics_codes = sorted(entry["naics_codes"])
        entity.is_excluded = key in excluded_names or (entity.uei is not None and entity.uei in excluded_ueis)
        entity.updated_at = utc_now()
    db.flush()

    for row, key in linked:
        row.entity_id = existing[key].id
    return len(stats)


def _upsert_relationship(db: Session, a: Entity, b: Entity, kind: str, strength: float, evidence: dict) -> bool:
    first, second = (a, b) if a.id < b.id else (b, a)
    relationship = db.execute(
        select(Relationship).where(
            Relationship.entity_a_id == first.id,
            Relationship.entity_b_id == second.id,
            Relationship.kind == kind,
        )
    ).scalar_one_or_none()
    if relationship is None:
        db.add(
            Relationship(entity_a_id=first.id, entity_b_id=second.id, kind=kind, strength=strength, evidence=evidence)
        )
        return True
    relationship.strength = strength
    relationship.evidence = evidence
    return False


def _pair_strength(a: Entity, b: Entity) -> tuple[float, int, int]:
    shared_agencies = len(set(a.agencies or []) & set(b.agencies or []))
    shared_naics = len(set(a.naics_codes or []) & set(b.naics_codes or []))
    return min(shared_agencies * 0.15 + shared_naics * 0.1, 1.0), shared_agencies, shared_naics


def discover_relationships(db: Session, max_per_agency: int = 25) -> int:
    entities = db.execute(select(Entity).order_by(Entity.total_contract_value.desc())).scalars().all()
    by_agency: dict[str, list[Entity]] = defaultdict(list)
    for entity in entities:
        for agency in entity.agencies or []:
            if len(by_agency[agency]) < max_per_agency:
                by_agency[agency].append(entity)

    seen: set[tuple[int, int]] = set()
    created = 0
    for members in by_agency.values():
        for a, b in combinations(members, 2):
            pair = (min(a.id, b.id), max(a.id, b.id))
            if pair in seen:
                continue
            seen.add(pair)
            strength, shared_agencies, shared_naics = _pair_strength(a, b)
            evidence = {"shared_agencies": shared_agencies, "shared_naics": shared_naics}
            if _upsert_relationship(db, a, b, "shared_agency", strength, evidence):
                created += 1
    return created


def analyze_network(db: Session, top_n: int = 10) -> int:
    """Pairwise teaming analysis for the top entities by contract value."""
    top = db.execute(
        select(Entity).where(Entity.total_contract_value > 0).order_by(Entity.total_contract_value.desc()).limit(top_n)
    ).scalars().all()
    candidates = db.execute(select(Entity)).scalars().all()

    seen: set[tuple[int, int]] = set()
    created = 0
    for entity in top:
        for other in candidates:
            pair = (min(entity.id, other.id), max(entity.id, other.id))
            if other.id == entity.id or pair in seen:
                continue
            seen.add(pair)
            strength, shared_agencies, shared_naics = _pair_strength(entity, other)
            if shared_agencies >= 2 or (shared_agencies >= 1 and shared_naics >= 1):
                evidence = {"shared_agencies": shared_agencies, "shared_naics": shared_naics, "anchor": entity.id}
                if _upsert_relationship(db, entity, other, "teaming_partner", strength, evidence):
                    created += 1
    return created


def _relationship_counts(db: Session) -> dict[int, int]:
    counts: dict[int, int] = defaultdict(int)
    for a_id, b_id in db.execute(select(Relationship.entity_a_id, Relationship.entity_b_id)):
        counts[a_id] += 1
        counts[b_id] += 1
    return counts


def generate_insights(db: Session) -> int:
    entities = db.execute(select(Entity)).scalars().all()
    relationship_counts = _relationship_counts(db)

    agency_totals: dict[int, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    contract_rows = db.execute(
        select(CanonicalRecordRow).where(
            CanonicalRecordRow.entity_kind == "contract",
            CanonicalRecordRow.entity_id.is_not(None),
        )
    ).scalars()
    for row in contract_rows:
        agency = row.fields.get("awarding_agency") or "Unknown"
        agency_totals[row.entity_id][agency] += float(row.fields.get("award_amount") or 0)

    generated = 0
    for entity in entities:
        findings: dict[str, tuple[str, str, str]] = {}

        totals = agency_totals.get(entity.id) or {}
        total_value = sum(totals.values())
        if len(totals) >= 1 and total_value > 0 and entity.contract_count >= 2:
            top_agency, top_value = max(totals.items(), key=lambda item: item[1])
            share = top_value / total_value
            if share > CONCENTRATION_SHARE:
                findings["agency_concentration"] = (
                    "warning",
                    "High Agency Concentration",
                    f"{round(share * 100)}% of contract value from {top_agency}.",
                )
        if entity.is_excluded and (entity.contract_count or entity.grant_count):
            findings["excluded_recipient"] = (
                "threat",
                "Excluded Party Receiving Awards",
                f"{entity.name} appears on the SAM exclusion list and holds active awards.",
            )
        if entity.score is not None and entity.score >= 80:
            findings["strong_performance"] = (
                "success",
                "Strong Performance",
                f"Score {entity.score:.0f}/100.",
            )
        if entity.contract_count and relationship_counts.get(entity.id, 0) < 3:
            findings["network_growth"] = (
                "opportunity",
                "Network Growth Opportunity",
                f"Only {relationship_counts.get(entity.id, 0)} known relationships.",
            )
        if entity.contract_count and entity.grant_count:
            findings["diversified_funding"] = (
                "success",
                "Diversified Funding",
                f"{entity.contract_count} contracts and {entity.grant_count} grants on record.",
            )

        existing = {
            insight.kind: insight
            for insight in db.execute(select(Insight).where(Insight.entity_id == entity.id)).scalars()
        }
        for kind, insight in existing.items():
            if kind not in findings:
                db.delete(insight)
        for kind, (severity, title, description) in findings.items():
            insight = existing.get(kind)
            if insight is None:
                insight = Insight(entity_id=entity.id, kind=kind)
                db.add(insight)
            insight.severity = severity
            insight.title = title
            insight.description = description
            insight.generated_at = utc_now()
            generated += 1
    return generated


def _value_tier(value: float, tiers: tuple[tuple[float, int], ...]) -> int:
    for threshold, points in tiers:
        if value > threshold:
            return points
    return 0


def score_entities(db: Session) -> int:
    entities = db.execute(select(Entity)).scalars().all()
    relationship_counts = _relationship_counts(db)

    for entity in entities:
        contract_velocity = min(
            100,
            entity.contract_count * 5
            + _value_tier(entity.total_contract_value, ((100_000_000, 30), (10_000_000, 20), (1_000_000, 10))),
        )
        grant_success = min(
            100,
            entity.grant_count * 8
            + _value_tier(entity.total_grant_value, ((10_000_000, 30), (1_000_000, 20), (100_000, 10))),
        )
        relationship_density = min(100, relationship_counts.get(entity.id, 0) * 10)
        diversification = min(100, len(entity.naics_codes or []) * 15 + len(entity.agencies or []) * 10)

        score = (
            contract_velocity * 0.35 + grant_success * 0.20 + relationship_density * 0.25 + diversification * 0.20
        )
        if entity.is_excluded:
            score *= 0.5
        entity.score = round(score, 1)
    return len(entities)


def capture_health_snapshot(db: Session) -> int:
    rows = db.execute(select(CanonicalRecordRow)).scalars().all()
    entities = db.execute(select(Entity.score)).scalars().all()

    award_rows = [row for row in rows if row.entity_kind in AWARD_KINDS]
    linked = sum(1 for row in award_rows if row.entity_id is not None)
    complete = sum(
        1
        for row in rows
        if all(row.fields.get(name) not in (None, "") for name in REQUIRED_FIELDS.get(row.entity_kind, ()))
    )

    scoring_coverage = sum(1 for score in entities if score is not None) / len(entities) if entities else 1.0
    linkage_coverage = linked / len(award_rows) if award_rows else 1.0
    completeness = complete / len(rows) if rows else 1.0
    quality_score = round(scoring_coverage * 40 + linkage_coverage * 30 + completeness * 30, 1)

    snapshot = HealthSnapshot(
        quality_score=max(0.0, min(quality_score, 100.0)),
        record_count=len(rows),
        details={
            "scoring_coverage": round(scoring_coverage, 4),
            "linkage_coverage": round(linkage_coverage, 4),
            "completeness": round(completeness, 4),
            "entities": len(entities),
        },
    )
    db.add(snapshot)
    db.flush()
    return snapshot.id


def refresh_aggregate_views(db: Session) -> int:
    totals: dict[tuple[str, str], list[float]] = defaultdict(lambda: [0, 0.0])
    rows = db.execute(select(CanonicalRecordRow).where(CanonicalRecordRow.entity_kind.in_(AWARD_KINDS))).scalars()
    for row in rows:
        agency = row.fields.get("awarding_agency") or "Unknown"
        bucket = totals[(agency, row.entity_kind)]
        bucket[0] += 1
        bucket[1] += float(row.fields.get("award_amount") or 0)

    db.execute(delete(AgencySpending))
    refreshed_at = utc_now()
    for (agency, kind), (count, amount) in totals.items():
        db.add(
            AgencySpending(
                agency=agency,
                entity_kind=kind,
                record_count=int(count),
                total_amount=round(amount, 2),
                refreshed_at=refreshed_at,
            )
        )
    return len(totals)


def run_quality_audit(db: Session) -> int:
    """Remove dangling derived rows; returns how many rows were removed or unlinked."""
    removed = 0
    referenced = set(
        db.execute(select(CanonicalRecordRow.entity_id).where(CanonicalRecordRow.entity_id.is_not(None))).scalars()
    )
    for entity in db.execute(select(Entity)).scalars().all():
        if entity.id not in referenced:
            db.delete(entity)
            removed += 1
    db.flush()

    entity_ids = set(db.execute(select(Entity.id)).scalars())
    for relationship in db.execute(select(Relationship)).scalars().all():
        if relationship.entity_a_id not in entity_ids or relationship.entity_b_id not in entity_ids:
            db.delete(relationship)
            removed += 1
    for insight in db.execute(select(Insight)).scalars().all():
        if insight.entity_id not in entity_ids:
            db.delete(insight)
            removed += 1
    for row in db.execute(select(CanonicalRecordRow).where(CanonicalRecordRow.entity_id.is_not(None))).scalars():
        if row.entity_id not in entity_ids:
            row.entity_id = None
            removed += 1
    return removed


PROCEDURES: dict[str, Callable[..., int]] = {
    "sync_entity_stats": sync_entity_stats,
    "discover_relationships": discover_relationships,
    "analyze_network": analyze_network,
    "generate_insights": generate_insights,
    "score_entities": score_entities,
    "capture_health_snapshot": capture_health_snapshot,
    "refresh_aggregate_views": refresh_aggregate_views,
    "run_quality_audit": run_quality_audit,
}
