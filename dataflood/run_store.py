from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dataflood.db_models import PipelineRun, StepRun, utc_now


class RunAlreadyActiveError(RuntimeError):
    def __init__(self, cadence: str, active_run_id: int | None) -> None:
        super().__init__(f"{cadence} run already active (run {active_run_id})")
        self.cadence = cadence
        self.active_run_id = active_run_id


def get_active_run(db: Session, cadence: str) -> PipelineRun | None:
    stmt = select(PipelineRun).where(PipelineRun.lock_key == cadence)
    return db.execute(stmt).scalar_one_or_none()


def acquire_run(db: Session, *, cadence: str, options: dict[str, bool], lock_ttl: timedelta) -> PipelineRun:
    """Create a running row holding the cadence lock.

    The unique ``lock_key`` makes acquisition atomic across processes. A lock
    held longer than ``lock_ttl`` belongs to a crashed run and is taken over.
    """
    for _ in range(2):
        run = PipelineRun(cadence=cadence, lock_key=cadence, status="running", started_at=utc_now(), options=options)
        db.add(run)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            active = get_active_run(db, cadence)
            if active is None:
                # Holder finished between our insert and lookup.
                continue
            if utc_now() - active.started_at < lock_ttl:
                raise RunAlreadyActiveError(cadence, active.id) from None
            mark_run_failed(db, active, error=f"lock expired after {lock_ttl}")
            continue

        db.refresh(run)
        return run

    raise RunAlreadyActiveError(cadence, None)


def mark_run_complete(
    db: Session,
    run: PipelineRun,
    *,
    ingestion_result: dict | None,
    derivation_result: dict | None,
    total_loaded: int,
    escalated: bool = False,
) -> None:
    run.status = "complete"
    run.lock_key = None
    run.finished_at = utc_now()
    run.ingestion_result = ingestion_result
    run.derivation_result = derivation_result
    run.total_loaded = total_loaded
    run.escalated = escalated
    run.error = None
    db.commit()


def mark_run_failed(
    db: Session,
    run: PipelineRun,
    *,
    error: str,
    ingestion_result: dict | None = None,
    derivation_result: dict | None = None,
    total_loaded: int = 0,
) -> None:
    run.status = "failed"
    run.lock_key = None
    run.finished_at = utc_now()
    run.error = error
    run.ingestion_result = ingestion_result
    run.derivation_result = derivation_result
    run.total_loaded = total_loaded
    db.commit()


def next_attempt(db: Session, run_id: int, step_name: str) -> int:
    stmt = (
        select(StepRun.attempt)
        .where(StepRun.run_id == run_id, StepRun.step_name == step_name)
        .order_by(StepRun.attempt.desc())
        .limit(1)
    )
    current = db.execute(stmt).scalar_one_or_none()
    return 1 if current is None else current + 1


def create_step_attempt(db: Session, *, run_id: int, step_name: str, attempt: int) -> StepRun:
    step = StepRun(run_id=run_id, step_name=step_name, attempt=attempt, status="started", started_at=utc_now())
    db.add(step)
    db.commit()
    db.refresh(step)
    return step


def finish_step(db: Session, step: StepRun, *, error: str | None = None) -> None:
    finished_at = utc_now()
    step.status = "failed" if error else "succeeded"
    step.completed_at = finished_at
    step.duration_ms = (finished_at - step.started_at).total_seconds() * 1000
    step.error = error
    db.commit()
