"""Structured log event names.

Key transitions emit a log record with an ``event`` field passed via
``extra={"event": events.X}``.  In ``LOG_FORMAT=json`` mode the value is the
top-level ``event`` field; in text mode the message is self-describing and
the event is not printed.

Usage::

    import logging
    from strmarket.core import events

    logger = logging.getLogger(__name__)
    logger.info("Job started", extra={"event": events.JOB_STARTED})
"""

from __future__ import annotations

__all__ = [
    "JOB_CREATED",
    "JOB_STARTED",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_PUBLISH_FAILED",
    "JOB_RETRIED",
    "JOB_TIMED_OUT",
    "FAN_OUT_PLATFORM_FAILED",
    "RESULT_DUPLICATE",
    "RESULT_LATE",
    "RESULT_UNKNOWN_JOB",
    "RESULT_MALFORMED",
    "BATCH_START",
    "BATCH_LOCATION_FAILED",
    "BATCH_COMPLETE",
    "BATCH_CRASHED",
    "CACHE_EVICTED",
    "CACHE_EVICT_ERROR",
]

# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

#: Job persisted in PENDING, before its work request is published.
JOB_CREATED: str = "JOB_CREATED"

#: Work request published; job moved to IN_PROGRESS.
JOB_STARTED: str = "JOB_STARTED"

#: Worker reported success; job moved to COMPLETED.
JOB_COMPLETED: str = "JOB_COMPLETED"

#: Worker reported failure; job moved to FAILED.
JOB_FAILED: str = "JOB_FAILED"

#: Work request could not be published; job failed immediately.
JOB_PUBLISH_FAILED: str = "JOB_PUBLISH_FAILED"

#: FAILED job reset to PENDING and republished.
JOB_RETRIED: str = "JOB_RETRIED"

#: IN_PROGRESS job exceeded the timeout and was failed by the scanner.
JOB_TIMED_OUT: str = "JOB_TIMED_OUT"

#: One platform of a fan-out failed; the others continue.
FAN_OUT_PLATFORM_FAILED: str = "FAN_OUT_PLATFORM_FAILED"

# ---------------------------------------------------------------------------
# Result consumption
# ---------------------------------------------------------------------------

#: Completion for an already COMPLETED job; ignored.
RESULT_DUPLICATE: str = "RESULT_DUPLICATE"

#: Completion for a FAILED job; data stored, status kept.
RESULT_LATE: str = "RESULT_LATE"

#: Notification referenced a job id that is not stored; dropped.
RESULT_UNKNOWN_JOB: str = "RESULT_UNKNOWN_JOB"

#: Payload could not be decoded; dropped.
RESULT_MALFORMED: str = "RESULT_MALFORMED"

# ---------------------------------------------------------------------------
# Batch refresh
# ---------------------------------------------------------------------------

BATCH_START: str = "BATCH_START"

#: One location of a batch failed; counted and skipped.
BATCH_LOCATION_FAILED: str = "BATCH_LOCATION_FAILED"

BATCH_COMPLETE: str = "BATCH_COMPLETE"

#: The batch driver itself raised; batch status is FAILED.
BATCH_CRASHED: str = "BATCH_CRASHED"

# ---------------------------------------------------------------------------
# Analysis cache
# ---------------------------------------------------------------------------

CACHE_EVICTED: str = "CACHE_EVICTED"

#: Eviction raised; logged and swallowed.
CACHE_EVICT_ERROR: str = "CACHE_EVICT_ERROR"
