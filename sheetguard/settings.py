import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Remote document service
    sheets_api_base_url: str = Field(
        default="https://sheets.googleapis.com", alias="SHEETS_API_BASE_URL"
    )
    sheets_api_token: str = Field(default="", alias="SHEETS_API_TOKEN")
    request_timeout: float = Field(default=30.0, alias="REQUEST_TIMEOUT")
    default_deadline_seconds: float = Field(default=60.0, alias="DEFAULT_DEADLINE_SECONDS")

    # Effect scope
    max_cells_affected: int = Field(default=50_000, gt=0, alias="MAX_CELLS_AFFECTED")
    max_cells_ceiling: int = Field(default=1_000_000, gt=0, alias="MAX_CELLS_CEILING")
    max_batch_requests: int = Field(default=100, gt=0, alias="MAX_BATCH_REQUESTS")

    # Rate limiting and concurrency
    rate_limit_calls: int = Field(default=60, gt=0, alias="RATE_LIMIT_CALLS")
    rate_limit_period: float = Field(default=60.0, gt=0, alias="RATE_LIMIT_PERIOD")
    max_concurrent_calls: int = Field(default=10, gt=0, alias="MAX_CONCURRENT_CALLS")
    max_queue_depth: int = Field(default=100, ge=0, alias="MAX_QUEUE_DEPTH")

    # Retry
    retry_max_attempts: int = Field(default=4, gt=0, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=0.5, ge=0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, ge=0, alias="RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.2, ge=0, le=1 / 3, alias="RETRY_JITTER")

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=5, gt=0, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_failure_window: float = Field(default=60.0, gt=0, alias="CIRCUIT_FAILURE_WINDOW")
    circuit_reset_timeout: float = Field(default=30.0, gt=0, alias="CIRCUIT_RESET_TIMEOUT")

    # Cache
    cache_ttl_seconds: float = Field(default=60.0, gt=0, alias="CACHE_TTL_SECONDS")
    cache_max_size: int = Field(default=500, gt=0, alias="CACHE_MAX_SIZE")

    # Snapshots and diffs
    snapshot_database_url: str = Field(
        default="sqlite+aiosqlite:///:memory:", alias="SNAPSHOT_DATABASE_URL"
    )
    snapshot_retention_seconds: float = Field(
        default=3600.0, gt=0, alias="SNAPSHOT_RETENTION_SECONDS"
    )
    diff_max_reported_changes: int = Field(
        default=100, ge=0, alias="DIFF_MAX_REPORTED_CHANGES"
    )

    debug: bool = Field(default=False, alias="SHEETGUARD_DEBUG")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env is loaded)."""
        aliases = {field.alias for field in cls.model_fields.values() if field.alias}
        return cls.model_validate(
            {key: value for key, value in os.environ.items() if key in aliases}
        )
