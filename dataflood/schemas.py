from dataclasses import dataclass, field
from datetime import datetime
import threading


CATEGORIES = ("contract", "grant", "opportunity", "entity", "exclusion", "regulatory")
FAMILIES = ("contracts", "grants", "opportunities", "states", "historical")
CADENCES = ("hourly", "daily", "weekly", "manual")


@dataclass(frozen=True)
class SourceDescriptor:
    source_id: str
    category: str
    family: str
    partitions: tuple[str, ...]
    request_delay_seconds: float
    timeout_seconds: float
    max_pages: int = 3
    page_size: int = 100
    credential: str | None = None

    def __post_init__(self) -> None:
        if self.category not in CATEGORIES:
            raise ValueError(f"unknown source category: {self.category}")
        if self.family not in FAMILIES:
            raise ValueError(f"unknown source family: {self.family}")
        if not self.partitions:
            raise ValueError(f"source {self.source_id} has no partitions")


@dataclass(frozen=True)
class Partition:
    source_id: str
    key: str
    priority: int = 100


@dataclass(frozen=True)
class Page:
    records: list[dict]
    next_cursor: int | None = None


@dataclass(frozen=True)
class CanonicalRecord:
    entity_kind: str
    natural_key: tuple[str, ...]
    fields: dict[str, object]
    source: str
    last_seen_at: datetime | None = None
    source_updated_at: datetime | None = None

    @property
    def key_string(self) -> str:
        return "|".join(self.natural_key)


@dataclass(frozen=True)
class UpsertOutcome:
    applied: bool
    is_new: bool
    error: str | None = None


@dataclass
class SourceOutcome:
    attempted: int = 0
    loaded: int = 0
    new: int = 0
    dropped: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "attempted": self.attempted,
            "loaded": self.loaded,
            "new": self.new,
            "dropped": self.dropped,
            "errors": list(self.errors),
            "skipped": self.skipped,
        }


@dataclass
class IngestionRunResult:
    sources: dict[str, SourceOutcome] = field(default_factory=dict)
    maintenance: dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def outcome(self, source_id: str) -> SourceOutcome:
        with self._lock:
            return self.sources.setdefault(source_id, SourceOutcome())

    def record_upsert(self, source_id: str, outcome: UpsertOutcome) -> None:
        with self._lock:
            entry = self.sources.setdefault(source_id, SourceOutcome())
            entry.attempted += 1
            if outcome.error:
                entry.errors.append(outcome.error)
            elif outcome.applied:
                entry.loaded += 1
                if outcome.is_new:
                    entry.new += 1

    def record_dropped(self, source_id: str) -> None:
        with self._lock:
            entry = self.sources.setdefault(source_id, SourceOutcome())
            entry.attempted += 1
            entry.dropped += 1

    def record_error(self, source_id: str, message: str) -> None:
        with self._lock:
            self.sources.setdefault(source_id, SourceOutcome()).errors.append(message)

    def mark_skipped(self, source_id: str, reason: str) -> None:
        with self._lock:
            entry = self.sources.setdefault(source_id, SourceOutcome())
            entry.skipped = True
            entry.errors.append(reason)

    @property
    def total_loaded(self) -> int:
        return sum(entry.loaded for entry in self.sources.values())

    @property
    def total_new(self) -> int:
        return sum(entry.new for entry in self.sources.values())

    @property
    def total_dropped(self) -> int:
        return sum(entry.dropped for entry in self.sources.values())

    @property
    def errors(self) -> list[str]:
        flattened = [f"{source_id}: {message}" for source_id, entry in self.sources.items() for message in entry.errors]
        flattened.extend(f"maintenance {name}: {status}" for name, status in self.maintenance.items() if status != "ok")
        return flattened

    def to_dict(self) -> dict[str, object]:
        return {
            "sources": {source_id: entry.to_dict() for source_id, entry in sorted(self.sources.items())},
            "total_loaded": self.total_loaded,
            "total_new": self.total_new,
            "total_dropped": self.total_dropped,
            "maintenance": dict(self.maintenance),
            "errors": self.errors,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class DerivationCycleResult:
    entities_synced: int = 0
    relationships_discovered: int = 0
    network_links: int = 0
    insights_generated: int = 0
    entities_scored: int = 0
    health_snapshot_id: int | None = None
    quality_score: float | None = None
    gated: bool = False
    steps: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "entities_synced": self.entities_synced,
            "relationships_discovered": self.relationships_discovered,
            "network_links": self.network_links,
            "insights_generated": self.insights_generated,
            "entities_scored": self.entities_scored,
            "health_snapshot_id": self.health_snapshot_id,
            "quality_score": self.quality_score,
            "gated": self.gated,
            "steps": dict(self.steps),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class RunOptions:
    contracts: bool = True
    grants: bool = True
    opportunities: bool = True
    states: bool = True
    historical: bool = False

    def enabled_families(self) -> set[str]:
        return {family for family in FAMILIES if getattr(self, family)}

    def to_dict(self) -> dict[str, bool]:
        return {family: getattr(self, family) for family in FAMILIES}


@dataclass(frozen=True)
class PipelineResult:
    run_id: int | None
    cadence: str
    status: str
    ingestion: IngestionRunResult | None = None
    derivation: DerivationCycleResult | None = None
    escalated: bool = False
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "run_id": self.run_id,
            "cadence": self.cadence,
            "status": self.status,
            "escalated": self.escalated,
            "error": self.error,
        }
        if self.ingestion is not None:
            payload.update(self.ingestion.to_dict())
        else:
            payload["errors"] = []
        if self.derivation is not None:
            payload["derivation"] = self.derivation.to_dict()
            payload["errors"] = list(payload["errors"]) + [f"derivation: {e}" for e in self.derivation.errors]
        return payload
