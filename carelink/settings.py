import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # API Configuration
    api_base_url: str = Field(default="http://localhost:5000/api", alias="API_BASE_URL")
    request_timeout: float = Field(default=15.0, alias="REQUEST_TIMEOUT")
    refresh_timeout: float = Field(default=10.0, alias="REFRESH_TIMEOUT")
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    retry_delay: float = Field(default=1.0, alias="RETRY_DELAY")
    coalesce_gets: bool = Field(default=True, alias="COALESCE_GETS")

    # Cache Configuration
    cache_max_size: int = Field(default=50 * 1024 * 1024, alias="CACHE_MAX_SIZE")
    cache_default_ttl: float = Field(default=300.0, alias="CACHE_DEFAULT_TTL")

    # Offline queue
    pending_queue_capacity: int = Field(default=100, alias="PENDING_QUEUE_CAPACITY")

    # Connectivity probe (optional)
    connectivity_probe_url: str | None = Field(
        default=None, alias="CONNECTIVITY_PROBE_URL"
    )
    connectivity_probe_interval: float = Field(
        default=15.0, alias="CONNECTIVITY_PROBE_INTERVAL"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./carelink.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="DEBUG")


def load_settings() -> Settings:
    """Build settings from the process environment (and .env)."""
    return Settings.model_validate(dict(os.environ))
