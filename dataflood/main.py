import argparse
import logging

from sqlalchemy.exc import SQLAlchemyError

from dataflood.api import create_app
from dataflood.config import get_settings
from dataflood.database import build_session_factory
from dataflood.pipeline import PipelineRunner
from dataflood.scheduler import start_scheduler
from dataflood.schemas import CADENCES, RunOptions
from dataflood.store import StoreUnavailableError


logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest public-sector funding data and derive entity analytics")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one pipeline execution")
    run_parser.add_argument("--cadence", default="manual", choices=CADENCES, help="which run type to execute")
    run_parser.add_argument("--no-contracts", dest="contracts", action="store_false", help="skip contract sources")
    run_parser.add_argument("--no-grants", dest="grants", action="store_false", help="skip grant sources")
    run_parser.add_argument("--no-opportunities", dest="opportunities", action="store_false", help="skip opportunity sources")
    run_parser.add_argument("--no-states", dest="states", action="store_false", help="skip state portals")
    run_parser.add_argument("--historical", action="store_true", help="include historical backfill partitions")

    schedule_parser = subparsers.add_parser("schedule", help="start the hourly/daily/weekly scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run the daily cadence immediately")

    serve_parser = subparsers.add_parser("serve", help="serve the HTTP trigger")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        session_factory = build_session_factory(settings.database_url)
    except SQLAlchemyError as exc:
        logger.error("could not open the store", extra={"error": str(exc)})
        print(f"status=unavailable error={exc}")
        raise SystemExit(1) from exc

    runner = PipelineRunner(settings, session_factory)

    if args.command == "schedule":
        start_scheduler(settings, runner, run_now=args.run_now)
        return

    if args.command == "serve":
        app = create_app(runner)
        app.run(host=args.host or settings.api_host, port=args.port or settings.api_port, debug=False)
        return

    options = RunOptions(
        contracts=args.contracts,
        grants=args.grants,
        opportunities=args.opportunities,
        states=args.states,
        historical=args.historical,
    )
    try:
        result = runner.run(args.cadence, options)
    except StoreUnavailableError as exc:
        print(f"cadence={args.cadence} status=unavailable error={exc}")
        raise SystemExit(1) from exc

    summary = result.to_dict()
    derivation = summary.get("derivation") or {}
    print(
        "run_id={run_id} cadence={cadence} status={status} loaded={loaded} new={new} dropped={dropped} errors={errors} escalated={escalated} quality_score={score}".format(
            run_id=result.run_id,
            cadence=result.cadence,
            status=result.status,
            loaded=summary.get("total_loaded", 0),
            new=summary.get("total_new", 0),
            dropped=summary.get("total_dropped", 0),
            errors=len(summary["errors"]),
            escalated=result.escalated,
            score=derivation.get("quality_score"),
        )
    )
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
