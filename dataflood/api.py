from datetime import UTC, datetime
import logging

from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from dataflood.pipeline import PipelineRunner
from dataflood.schemas import CADENCES, FAMILIES, RunOptions
from dataflood.store import StoreUnavailableError


logger = logging.getLogger(__name__)


def parse_run_options(payload: object) -> RunOptions:
    """Build run options from a request body; unknown keys are ignored, non-bool flags rejected."""
    if payload is None:
        return RunOptions()
    if not isinstance(payload, dict):
        raise ValueError("request body must be a JSON object")

    flags: dict[str, bool] = {}
    for family in FAMILIES:
        if family not in payload:
            continue
        value = payload[family]
        if not isinstance(value, bool):
            raise ValueError(f"'{family}' must be a boolean")
        flags[family] = value
    return RunOptions(**flags)


def create_app(runner: PipelineRunner) -> Flask:
    app = Flask(__name__)

    def execute(cadence: str, options: RunOptions):
        try:
            result = runner.run(cadence, options)
        except StoreUnavailableError as exc:
            logger.error("run rejected, store unavailable", extra={"cadence": cadence, "error": str(exc)})
            return jsonify({"status": "unavailable", "cadence": cadence, "error": str(exc)}), 503
        # Partial and failed runs still answer 200 with their errors inline.
        return jsonify(result.to_dict()), 200

    @app.route("/", methods=["GET"])
    def health_check():
        body = {
            "service": runner.settings.app_name,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            snapshot = runner.store.latest_health_snapshot()
        except SQLAlchemyError as exc:
            return jsonify({**body, "status": "unhealthy", "error": str(exc)}), 503
        body["status"] = "healthy"
        body["quality_score"] = snapshot["quality_score"] if snapshot else None
        return jsonify(body)

    @app.route("/ingest", methods=["POST"])
    def ingest():
        try:
            options = parse_run_options(request.get_json(silent=True))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return execute("manual", options)

    @app.route("/runs/<cadence>", methods=["POST"])
    def trigger_cadence(cadence: str):
        if cadence not in CADENCES:
            return jsonify({"error": f"unknown cadence: {cadence}"}), 404
        try:
            options = parse_run_options(request.get_json(silent=True))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return execute(cadence, options)

    return app
