from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    sam_api_key: str
    max_concurrency: int
    request_delay_seconds: float
    sam_request_delay_seconds: float
    request_timeout_seconds: float
    max_pages: int
    page_size: int
    derivation_min_records: int
    health_escalation_threshold: float
    deep_analysis_top_n: int
    max_step_retries: int
    retry_backoff_seconds: float
    run_lock_ttl_minutes: int
    schedule_hour_utc: int
    schedule_minute_utc: int
    weekly_day_of_week: str
    api_host: str
    api_port: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "dataflood"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./dataflood.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        sam_api_key=os.getenv("SAM_API_KEY", "") or os.getenv("DATA_GOV_KEY", ""),
        max_concurrency=int(os.getenv("MAX_CONCURRENCY", "12")),
        request_delay_seconds=float(os.getenv("REQUEST_DELAY_SECONDS", "0.25")),
        sam_request_delay_seconds=float(os.getenv("SAM_REQUEST_DELAY_SECONDS", "1")),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15")),
        max_pages=int(os.getenv("MAX_PAGES", "3")),
        page_size=int(os.getenv("PAGE_SIZE", "100")),
        derivation_min_records=int(os.getenv("DERIVATION_MIN_RECORDS", "11")),
        health_escalation_threshold=float(os.getenv("HEALTH_ESCALATION_THRESHOLD", "70")),
        deep_analysis_top_n=int(os.getenv("DEEP_ANALYSIS_TOP_N", "10")),
        max_step_retries=int(os.getenv("MAX_STEP_RETRIES", "1")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        run_lock_ttl_minutes=int(os.getenv("RUN_LOCK_TTL_MINUTES", "180")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
        weekly_day_of_week=os.getenv("WEEKLY_DAY_OF_WEEK", "sun"),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=int(os.getenv("API_PORT", "8080")),
    )
