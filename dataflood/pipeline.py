from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
import logging
from typing import TypeVar

import httpx
from sqlalchemy.orm import Session, sessionmaker

from dataflood.config import Settings
from dataflood.connectors.base import Connector
from dataflood.connectors.registry import build_connectors
from dataflood.db_models import PipelineRun, StepRun
from dataflood.derivation import DerivationEngine
from dataflood.orchestrator import IngestionOrchestrator
from dataflood.retry import RetryExhaustedError, run_with_retries
from dataflood.run_store import (
    RunAlreadyActiveError,
    acquire_run,
    create_step_attempt,
    finish_step,
    mark_run_complete,
    mark_run_failed,
    next_attempt,
)
from dataflood.schemas import CADENCES, DerivationCycleResult, IngestionRunResult, PipelineResult, RunOptions
from dataflood.store import Store


logger = logging.getLogger(__name__)
T = TypeVar("T")

ConnectorFactory = Callable[[Settings, httpx.Client, RunOptions], list[Connector]]


class PipelineRunner:
    """Executes one Run of a cadence, holding that cadence's exclusivity token throughout."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        connector_factory: ConnectorFactory = build_connectors,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.store = Store(session_factory)
        self.connector_factory = connector_factory
        self.http_client = http_client

    def run(self, cadence: str, options: RunOptions | None = None) -> PipelineResult:
        if cadence not in CADENCES:
            raise ValueError(f"unknown cadence: {cadence}")
        options = options or RunOptions()

        # Raises StoreUnavailableError before any run row is attempted.
        self.store.ping()

        with self.session_factory() as db:
            try:
                run = acquire_run(
                    db,
                    cadence=cadence,
                    options=options.to_dict(),
                    lock_ttl=timedelta(minutes=self.settings.run_lock_ttl_minutes),
                )
            except RunAlreadyActiveError as exc:
                logger.info("run skipped, cadence already active", extra={"cadence": cadence, "active_run_id": exc.active_run_id})
                self.store.append_log("scheduler", f"{cadence} run skipped", {"active_run_id": exc.active_run_id})
                return PipelineResult(run_id=None, cadence=cadence, status="skipped", error=str(exc))

            logger.info("run started", extra={"run_id": run.id, "cadence": cadence, "options": options.to_dict()})
            ingestion: IngestionRunResult | None = None
            derivation: DerivationCycleResult | None = None
            escalated = False

            try:
                if cadence == "hourly":
                    derivation, escalated = self._health_check(db, run)
                else:
                    ingestion = self._run_step(db, run, "ingestion", lambda: self._ingest(options), retries=0)
                    derivation = self._derivation_engine(db, run).run(ingestion.total_loaded, deep=cadence == "weekly")
                    if cadence == "weekly":
                        self._run_isolated_step(
                            db, run, derivation, "aggregate-refresh", lambda: self.store.call_procedure("refresh_aggregate_views")
                        )
            except Exception as exc:
                logger.exception("pipeline run failed", extra={"run_id": run.id, "cadence": cadence})
                mark_run_failed(
                    db,
                    run,
                    error=str(exc),
                    ingestion_result=ingestion.to_dict() if ingestion else None,
                    derivation_result=derivation.to_dict() if derivation else None,
                    total_loaded=ingestion.total_loaded if ingestion else 0,
                )
                self.store.append_log("scheduler", f"{cadence} run failed", {"run_id": run.id, "error": str(exc)}, level="ERROR")
                return PipelineResult(
                    run_id=run.id,
                    cadence=cadence,
                    status="failed",
                    ingestion=ingestion,
                    derivation=derivation,
                    escalated=escalated,
                    error=str(exc),
                )

            mark_run_complete(
                db,
                run,
                ingestion_result=ingestion.to_dict() if ingestion else None,
                derivation_result=derivation.to_dict() if derivation else None,
                total_loaded=ingestion.total_loaded if ingestion else 0,
                escalated=escalated,
            )
            result = PipelineResult(
                run_id=run.id,
                cadence=cadence,
                status=run.status,
                ingestion=ingestion,
                derivation=derivation,
                escalated=escalated,
            )
            self.store.append_log(
                "scheduler",
                f"{cadence} run complete",
                {
                    "run_id": run.id,
                    "total_loaded": run.total_loaded,
                    "errors": len(result.to_dict()["errors"]),
                    "escalated": escalated,
                },
            )
            logger.info("run finished", extra={"run_id": run.id, "cadence": cadence, "total_loaded": run.total_loaded})
            return result

    def _ingest(self, options: RunOptions) -> IngestionRunResult:
        orchestrator = IngestionOrchestrator(
            self.store,
            max_concurrency=self.settings.max_concurrency,
            run_maintenance=False,
        )
        with self._client() as client:
            connectors = self.connector_factory(self.settings, client, options)
            try:
                return orchestrator.run(connectors)
            finally:
                for connector in connectors:
                    connector.limiter.close()

    def _health_check(self, db: Session, run: PipelineRun) -> tuple[DerivationCycleResult, bool]:
        result = DerivationCycleResult(gated=True)
        snapshot_id = self._run_isolated_step(
            db, run, result, "health-snapshot", lambda: self.store.call_procedure("capture_health_snapshot")
        )
        if snapshot_id is None:
            return result, False
        result.health_snapshot_id = snapshot_id
        result.quality_score = self._snapshot_score(snapshot_id)

        if result.quality_score is None or result.quality_score >= self.settings.health_escalation_threshold:
            return result, False

        logger.warning(
            "quality below threshold, escalating",
            extra={"quality_score": result.quality_score, "threshold": self.settings.health_escalation_threshold},
        )
        # Escalation steps are independent; a failed audit still resyncs and re-measures.
        self._run_isolated_step(db, run, result, "quality-audit", lambda: self.store.call_procedure("run_quality_audit"))
        synced = self._run_isolated_step(
            db, run, result, "entity-stat-resync", lambda: self.store.call_procedure("sync_entity_stats")
        )
        if synced is not None:
            result.entities_synced = synced
        snapshot_id = self._run_isolated_step(
            db, run, result, "post-audit-snapshot", lambda: self.store.call_procedure("capture_health_snapshot")
        )
        if snapshot_id is not None:
            result.health_snapshot_id = snapshot_id
            result.quality_score = self._snapshot_score(snapshot_id)
        return result, True

    def _snapshot_score(self, snapshot_id: int) -> float | None:
        rows = self.store.query("health_snapshot", {"id": snapshot_id})
        return rows[0]["quality_score"] if rows else None

    def _derivation_engine(self, db: Session, run: PipelineRun) -> DerivationEngine:
        open_steps: dict[str, StepRun] = {}

        def observe(step_name: str, attempt: int, status: str, error: str | None) -> None:
            if status == "started":
                open_steps[step_name] = create_step_attempt(
                    db, run_id=run.id, step_name=step_name, attempt=next_attempt(db, run.id, step_name)
                )
                return
            step = open_steps.pop(step_name, None)
            if step is not None:
                finish_step(db, step, error=error)

        return DerivationEngine(
            self.store,
            min_records=self.settings.derivation_min_records,
            deep_top_n=self.settings.deep_analysis_top_n,
            max_retries=self.settings.max_step_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
            observer=observe,
        )

    def _run_step(self, db: Session, run: PipelineRun, step_name: str, fn: Callable[[], T], *, retries: int | None = None) -> T:
        def execute_once(attempt: int) -> T:
            # Persist each attempt so retries stay auditable.
            step = create_step_attempt(db, run_id=run.id, step_name=step_name, attempt=next_attempt(db, run.id, step_name))
            try:
                value = fn()
            except Exception as exc:
                finish_step(db, step, error=str(exc))
                raise
            finish_step(db, step)
            return value

        try:
            return run_with_retries(
                execute_once,
                max_retries=self.settings.max_step_retries if retries is None else retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
            )
        except RetryExhaustedError as exc:
            raise RuntimeError(f"step '{step_name}' failed after {exc.attempts} attempt(s): {exc}") from exc

    def _run_isolated_step(
        self, db: Session, run: PipelineRun, result: DerivationCycleResult, step_name: str, fn: Callable[[], T]
    ) -> T | None:
        """Run a step whose failure is recorded on ``result`` instead of failing the run."""
        try:
            value = self._run_step(db, run, step_name, fn)
        except RuntimeError as exc:
            logger.warning("step failed, continuing", extra={"run_id": run.id, "step": step_name, "error": str(exc)})
            result.steps[step_name] = "failed"
            result.errors.append(f"{step_name}: {exc}")
            return None
        result.steps[step_name] = "ok"
        return value

    @contextmanager
    def _client(self) -> Iterator[httpx.Client]:
        if self.http_client is not None:
            yield self.http_client
            return
        with httpx.Client(
            headers={"User-Agent": f"{self.settings.app_name}/0.1", "Accept": "application/json"},
            follow_redirects=True,
        ) as client:
            yield client
