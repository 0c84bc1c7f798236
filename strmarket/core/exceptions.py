"""strmarket exception taxonomy.

Every custom exception inherits from :class:`StrMarketError`.  Exceptions are
organised by the kind of failure so callers (and the excluded API layer) can
catch at the right granularity:

    Hierarchy
    ---------
    StrMarketError
    ├── ConfigError
    ├── ValidationError
    ├── NotFoundError
    │   ├── JobNotFoundError
    │   └── LocationNotFoundError
    ├── InvalidStateError
    ├── StorageError
    ├── MessagingError
    │   └── PublishError
    └── OrchestratorError
        ├── JobCreationError
        └── BatchAlreadyRunningError

Job timeouts have no exception class: the timeout scanner converts an
``IN_PROGRESS`` job to ``FAILED`` asynchronously and nothing is raised to a
synchronous caller.

Usage:

    from strmarket.core.exceptions import PublishError

    raise PublishError(job_id, "broker unreachable") from exc
"""

from __future__ import annotations

import logging
from uuid import UUID

__all__ = [
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
    "http_status_for",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class StrMarketError(Exception):
    """Root exception for all strmarket errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching the specific subclasses wherever possible.
    """


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class ConfigError(StrMarketError):
    """Raised when the runtime configuration is invalid or incomplete.

    Examples:
        - ``BUS_BACKEND=rabbitmq`` without ``RABBITMQ_API_URL``.
    """


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


class ValidationError(StrMarketError):
    """Raised when a request is rejected before any state is created.

    Examples:
        - Unknown platform or job type value.
        - A batch refresh with no candidate locations.
    """


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(StrMarketError):
    """Base class for lookups of unknown identifiers.

    Args:
        kind: Entity label (``"ScrapingJob"``, ``"Location"``).
        entity_id: The identifier that could not be resolved.
    """

    def __init__(self, kind: str, entity_id: UUID | str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class JobNotFoundError(NotFoundError):
    """Raised when a job id does not resolve to a stored Job Record."""

    def __init__(self, job_id: UUID | str) -> None:
        super().__init__("ScrapingJob", job_id)


class LocationNotFoundError(NotFoundError):
    """Raised by the location collaborator for an unknown location id."""

    def __init__(self, location_id: UUID | str) -> None:
        super().__init__("Location", location_id)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class InvalidStateError(StrMarketError):
    """Raised for an illegal Job Record transition.

    This is a programming or ordering error rather than a recoverable
    condition: the record is left untouched and the call fails.

    Args:
        message: Description of the rejected transition.
        status: Status the record was in when the transition was attempted.
    """

    def __init__(self, message: str, status: str | None = None) -> None:
        self.status = status
        detail = f" (current status: {status})" if status is not None else ""
        super().__init__(f"{message}{detail}")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(StrMarketError):
    """Raised when a database or persistence operation fails."""


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------


class MessagingError(StrMarketError):
    """Base class for message-bus failures."""


class PublishError(MessagingError):
    """Raised when a work-request message could not be handed to the bus.

    Args:
        job_id: The job whose work request failed to publish, if known.
        message: Human-readable error description.
    """

    def __init__(self, job_id: UUID | None, message: str) -> None:
        self.job_id = job_id
        prefix = f"[job {job_id}] " if job_id is not None else ""
        super().__init__(f"{prefix}{message}")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class OrchestratorError(StrMarketError):
    """Raised for errors originating in the orchestration layer."""


class JobCreationError(OrchestratorError):
    """Raised when a job was persisted but its work request failed to publish.

    The stored record is already ``FAILED`` with the publish error as its
    message when this is raised; the original :class:`PublishError` is
    chained as ``__cause__``.

    Args:
        job_id: Identifier of the failed job.
        message: Human-readable error description.
    """

    def __init__(self, job_id: UUID, message: str) -> None:
        self.job_id = job_id
        super().__init__(f"Failed to create scraping job {job_id}: {message}")


class BatchAlreadyRunningError(OrchestratorError):
    """Raised when a batch refresh is requested while another is running.

    Args:
        batch_id: Identifier of the batch currently running.
    """

    def __init__(self, batch_id: UUID | None) -> None:
        self.batch_id = batch_id
        super().__init__(f"Batch scraping is already in progress. Batch ID: {batch_id}")


# ---------------------------------------------------------------------------
# User-visible mapping
# ---------------------------------------------------------------------------


def http_status_for(exc: BaseException) -> int:
    """Return the HTTP status class an API layer should use for *exc*.

    ``ValidationError`` → 400, ``NotFoundError`` → 404,
    ``InvalidStateError`` / ``BatchAlreadyRunningError`` → 409, anything
    else → 500.
    """
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidStateError, BatchAlreadyRunningError)):
        return 409
    return 500
