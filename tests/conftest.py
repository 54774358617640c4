from collections.abc import Generator
from pathlib import Path

import pytest

from dataflood.config import Settings
from dataflood.connectors.base import Connector
from dataflood.database import build_session_factory
from dataflood.pipeline import PipelineRunner
from dataflood.store import Store


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="dataflood",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        sam_api_key="",
        max_concurrency=4,
        request_delay_seconds=0,
        sam_request_delay_seconds=0,
        request_timeout_seconds=1,
        max_pages=3,
        page_size=100,
        derivation_min_records=11,
        health_escalation_threshold=70,
        deep_analysis_top_n=10,
        max_step_retries=1,
        retry_backoff_seconds=0,
        run_lock_ttl_minutes=180,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
        weekly_day_of_week="sun",
        api_host="127.0.0.1",
        api_port=8080,
    )


@pytest.fixture()
def session_factory(test_settings: Settings):
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture()
def connectors() -> list[Connector]:
    """Connectors handed to the runner; tests append to this list before running."""
    return []


@pytest.fixture()
def runner(test_settings: Settings, session_factory, connectors: list[Connector]) -> Generator[PipelineRunner, None, None]:
    def connector_factory(settings, client, options):
        families = options.enabled_families()
        return [connector for connector in connectors if connector.descriptor.family in families]

    yield PipelineRunner(test_settings, session_factory, connector_factory=connector_factory)
