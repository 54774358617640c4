import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from dataflood.config import Settings
from dataflood.pipeline import PipelineRunner
from dataflood.store import StoreUnavailableError


logger = logging.getLogger(__name__)


def run_cadence(runner: PipelineRunner, cadence: str) -> None:
    try:
        result = runner.run(cadence)
    except StoreUnavailableError as exc:
        logger.error("scheduled run could not reach the store", extra={"cadence": cadence, "error": str(exc)})
        return

    context = {
        "cadence": cadence,
        "run_id": result.run_id,
        "status": result.status,
        "escalated": result.escalated,
    }
    if result.status == "failed":
        logger.error("scheduled pipeline run failed", extra={**context, "error": result.error})
        return
    logger.info("scheduled pipeline run finished", extra=context)


def build_scheduler(settings: Settings, runner: PipelineRunner) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    # Overlap inside one process is also refused here; the run lock covers other processes.
    job_defaults = {"max_instances": 1, "coalesce": True, "replace_existing": True}

    scheduler.add_job(run_cadence, "cron", args=[runner, "hourly"], minute=5, id="hourly_pipeline", **job_defaults)
    scheduler.add_job(
        run_cadence,
        "cron",
        args=[runner, "daily"],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_pipeline",
        **job_defaults,
    )
    scheduler.add_job(
        run_cadence,
        "cron",
        args=[runner, "weekly"],
        day_of_week=settings.weekly_day_of_week,
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="weekly_pipeline",
        **job_defaults,
    )
    return scheduler


def start_scheduler(settings: Settings, runner: PipelineRunner, *, run_now: bool = False) -> None:
    scheduler = build_scheduler(settings, runner)
    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
            "weekly_day_of_week": settings.weekly_day_of_week,
        },
    )

    if run_now:
        run_cadence(runner, "daily")

    scheduler.start()
