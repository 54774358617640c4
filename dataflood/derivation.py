from collections.abc import Callable
from dataclasses import dataclass
import logging

from dataflood.retry import RetryExhaustedError, run_with_retries
from dataflood.schemas import DerivationCycleResult
from dataflood.store import Store


logger = logging.getLogger(__name__)

# (step name, attempt, status, error); lets the caller persist each attempt.
StepObserver = Callable[[str, int, str, str | None], None]


@dataclass(frozen=True)
class DerivationStep:
    name: str
    procedure: str
    result_field: str
    deep_only: bool = False


STEPS: tuple[DerivationStep, ...] = (
    DerivationStep("entity-stat-resync", "sync_entity_stats", "entities_synced"),
    DerivationStep("relationship-discovery", "discover_relationships", "relationships_discovered"),
    DerivationStep("network-analysis", "analyze_network", "network_links", deep_only=True),
    DerivationStep("insight-generation", "generate_insights", "insights_generated"),
    DerivationStep("scoring", "score_entities", "entities_scored"),
    DerivationStep("health-snapshot", "capture_health_snapshot", "health_snapshot_id"),
)


class DerivationEngine:
    def __init__(
        self,
        store: Store,
        *,
        min_records: int,
        deep_top_n: int = 10,
        max_retries: int = 0,
        backoff_seconds: float = 0.0,
        observer: StepObserver | None = None,
    ) -> None:
        self.store = store
        self.min_records = min_records
        self.deep_top_n = deep_top_n
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.observer = observer

    def run(self, ingested: int, *, deep: bool = False) -> DerivationCycleResult:
        """Run the ordered steps; below ``min_records`` only the health snapshot is taken."""
        result = DerivationCycleResult(gated=ingested < self.min_records)

        for step in STEPS:
            if step.deep_only and not deep:
                continue
            if result.gated and step.procedure != "capture_health_snapshot":
                result.steps[step.name] = "skipped"
                continue
            self._run_step(step, result)

        if result.health_snapshot_id is not None:
            snapshot = self.store.query("health_snapshot", {"id": result.health_snapshot_id})
            if snapshot:
                result.quality_score = snapshot[0]["quality_score"]

        logger.info(
            "derivation finished",
            extra={"ingested": ingested, "gated": result.gated, "deep": deep, "steps": dict(result.steps)},
        )
        return result

    def _run_step(self, step: DerivationStep, result: DerivationCycleResult) -> None:
        args = {"top_n": self.deep_top_n} if step.procedure == "analyze_network" else None

        def attempt_once(attempt: int) -> int:
            self._notify(step.name, attempt, "started", None)
            try:
                value = self.store.call_procedure(step.procedure, args)
            except Exception as exc:
                self._notify(step.name, attempt, "failed", str(exc))
                raise
            self._notify(step.name, attempt, "succeeded", None)
            return value

        try:
            value = run_with_retries(attempt_once, max_retries=self.max_retries, backoff_seconds=self.backoff_seconds)
        except RetryExhaustedError as exc:
            # Later steps still run against whatever state is there.
            logger.error("derivation step failed", extra={"step": step.name, "attempts": exc.attempts, "error": str(exc)})
            result.steps[step.name] = "failed"
            result.errors.append(f"{step.name}: {exc}")
            return

        setattr(result, step.result_field, value)
        result.steps[step.name] = "ok"

    def _notify(self, step_name: str, attempt: int, status: str, error: str | None) -> None:
        if self.observer is None:
            return
        try:
            self.observer(step_name, attempt, status, error)
        except Exception:
            logger.warning("step observer failed", exc_info=True, extra={"step": step_name})
