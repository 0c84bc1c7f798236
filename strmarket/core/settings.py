"""strmarket application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``RABBITMQ_API_URL`` → ``rabbitmq_api_url``).

Typical usage::

    from strmarket.core.settings import Settings

    settings = Settings()                    # loads from env + .env
    print(settings.rabbitmq_configured)      # True / False
    print(settings.job_timeout)              # timedelta(minutes=30)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    The RabbitMQ fields may be left empty when ``bus_backend`` is
    ``"memory"``; :attr:`rabbitmq_configured` then returns ``False``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/strmarket.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Message bus
    # ------------------------------------------------------------------
    bus_backend: str = Field(
        default="memory",
        description="Message transport: 'memory' or 'rabbitmq'.",
    )
    rabbitmq_api_url: str = Field(
        default="",
        description="Base URL of the RabbitMQ management API (e.g. http://localhost:15672).",
    )
    rabbitmq_user: str = Field(default="guest", description="Management API user.")
    rabbitmq_password: str = Field(default="guest", description="Management API password.")
    rabbitmq_vhost: str = Field(default="/", description="Virtual host holding the queues.")
    result_poll_interval_s: float = Field(
        default=2.0,
        gt=0.0,
        description="Seconds the result consumer waits when the result queue is empty.",
    )
    publish_timeout_s: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on a single work-request publish.",
    )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    job_timeout_minutes: int = Field(
        default=30,
        ge=1,
        description="IN_PROGRESS jobs older than this are failed as timed out.",
    )
    timeout_scan_interval_s: int = Field(
        default=600,
        ge=1,
        description="Seconds between timeout scans.",
    )

    # ------------------------------------------------------------------
    # Batch refresh
    # ------------------------------------------------------------------
    batch_auto_schedule_enabled: bool = Field(
        default=False,
        description="Run a STALE_ONLY batch refresh periodically while serving.",
    )
    batch_delay_minutes: int = Field(
        default=10,
        ge=0,
        description="Minutes to wait between locations during a batch.",
    )
    batch_stale_threshold_days: int = Field(
        default=30,
        ge=1,
        description="Locations not scraped within this many days are stale.",
    )
    batch_refresh_interval_hours: int = Field(
        default=720,
        ge=1,
        description="Hours between automatic batch refreshes.",
    )

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    analysis_cache_ttl_hours: int = Field(
        default=6,
        ge=1,
        description="Hours a cached market analysis is served before it is recomputed.",
    )

    # ------------------------------------------------------------------
    # Runtime flags
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("bus_backend")
    @classmethod
    def _validate_bus_backend(cls, v: str) -> str:
        allowed = {"memory", "rabbitmq"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"bus_backend must be one of {allowed}, got {v!r}")
        return v_lower

    @field_validator("rabbitmq_api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_scan_interval(self) -> Settings:
        """Scanning less often than the timeout would let stuck jobs linger."""
        if self.timeout_scan_interval_s > self.job_timeout_minutes * 60:
            raise ValueError(
                f"timeout_scan_interval_s ({self.timeout_scan_interval_s}) "
                f"> job_timeout_minutes * 60 ({self.job_timeout_minutes * 60})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def rabbitmq_configured(self) -> bool:
        """``True`` if the RabbitMQ management API URL is set."""
        return bool(self.rabbitmq_api_url)

    @property
    def job_timeout(self) -> timedelta:
        return timedelta(minutes=self.job_timeout_minutes)
