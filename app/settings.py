from dataclasses import dataclass
import os

DEFAULT_SEARCH_API_URL = "https://www.googleapis.com/customsearch/v1"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip() or default


@dataclass(frozen=True)
class Settings:
    app_name: str = os.getenv("APP_NAME", "dorkharvest")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://dorkharvest:dorkharvest@db:5432/dorkharvest",
    )
    database_pool_mode: str = _env_str("DATABASE_POOL_MODE", "auto")
    database_pool_size: int = _env_int("DATABASE_POOL_SIZE", 5)
    database_pool_max_overflow: int = _env_int("DATABASE_POOL_MAX_OVERFLOW", 10)
    database_pool_timeout_seconds: int = _env_int("DATABASE_POOL_TIMEOUT_SECONDS", 30)
    log_level: str = _env_str("LOG_LEVEL", "INFO")
    log_format: str = _env_str("LOG_FORMAT", "console")
    log_requests: bool = _env_bool("LOG_REQUESTS", True)
    log_uvicorn_access: bool = _env_bool("LOG_UVICORN_ACCESS", False)
    log_request_skip_paths: str = _env_str("LOG_REQUEST_SKIP_PATHS", "/healthz")
    log_redact_fields: str = os.getenv("LOG_REDACT_FIELDS", "")
    search_api_url: str = _env_str("SEARCH_API_URL", DEFAULT_SEARCH_API_URL)
    search_page_size: int = _env_int("SEARCH_PAGE_SIZE", 10)
    search_timeout_seconds: float = _env_float("SEARCH_TIMEOUT_SECONDS", 15.0)
    execution_network_retries: int = _env_int("EXECUTION_NETWORK_RETRIES", 3)
    execution_retry_backoff_seconds: float = _env_float(
        "EXECUTION_RETRY_BACKOFF_SECONDS",
        1.0,
    )
    orchestrator_page_delay_seconds: float = _env_float(
        "ORCHESTRATOR_PAGE_DELAY_SECONDS",
        1.0,
    )
    orchestrator_step_retries: int = _env_int("ORCHESTRATOR_STEP_RETRIES", 3)
    orchestrator_max_pages: int = _env_int("ORCHESTRATOR_MAX_PAGES", 100)
    scheduler_enabled: bool = _env_bool("SCHEDULER_ENABLED", True)
    scheduler_tick_seconds: int = _env_int("SCHEDULER_TICK_SECONDS", 60)
    scheduler_batch_size: int = _env_int("SCHEDULER_BATCH_SIZE", 10)
    default_max_allowed_results: int = _env_int("DEFAULT_MAX_ALLOWED_RESULTS", 100)


settings = Settings()
