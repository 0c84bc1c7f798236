"""Core domain models, job lifecycle, settings, logging configuration, and errors."""

from strmarket.core.exceptions import (
    BatchAlreadyRunningError,
    ConfigError,
    InvalidStateError,
    JobCreationError,
    JobNotFoundError,
    LocationNotFoundError,
    MessagingError,
    NotFoundError,
    OrchestratorError,
    PublishError,
    StorageError,
    StrMarketError,
    ValidationError,
)
from strmarket.core.jobs import ScrapingJob
from strmarket.core.logging_config import JsonFormatter, configure_logging
from strmarket.core.models import (
    AvailabilitySnapshot,
    BoundingBox,
    DateWindow,
    JobStatus,
    JobType,
    Location,
    Platform,
    PriceSample,
    PropertyRecord,
)
from strmarket.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Platform",
    "JobType",
    "JobStatus",
    "BoundingBox",
    "Location",
    "DateWindow",
    "PriceSample",
    "AvailabilitySnapshot",
    "PropertyRecord",
    "ScrapingJob",
    # Settings
    "Settings",
    # Exceptions
    "StrMarketError",
    "ConfigError",
    "ValidationError",
    "NotFoundError",
    "JobNotFoundError",
    "LocationNotFoundError",
    "InvalidStateError",
    "StorageError",
    "MessagingError",
    "PublishError",
    "OrchestratorError",
    "JobCreationError",
    "BatchAlreadyRunningError",
]
