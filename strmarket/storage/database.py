"""SQLite database initialisation for strmarket.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring PRAGMA settings (WAL journal mode, foreign keys).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS`` so it is safe
  to call on every startup.

Call :func:`open_db` once at process startup and share the returned
connection with the repositories in :mod:`strmarket.storage`.  The caller
closes it (the runtime does so through its exit stack).

Typical usage::

    from strmarket.storage.database import open_db

    conn = await open_db(Path("data/strmarket.db"))
    jobs = JobRepository(conn)
    ...
    await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "MEMORY_DB",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("strmarket.db")

#: Special path that opens a private in-memory database (tests, dry runs).
MEMORY_DB: str = ":memory:"

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: Local read model of the Location aggregate.  Bounding-box columns are all
#: NULL or all set.  ``last_scraped_at`` is refreshed when completion data
#: for the location arrives.
_DDL_LOCATIONS = """\
CREATE TABLE IF NOT EXISTS locations (
    id              TEXT  NOT NULL PRIMARY KEY,
    name            TEXT  NOT NULL,
    sw_lng          REAL,
    sw_lat          REAL,
    ne_lng          REAL,
    ne_lat          REAL,
    last_scraped_at TEXT,
    created_at      TEXT  NOT NULL
)"""

#: Job records.  ``location_id`` carries no foreign key because locations may
#: be owned by another service.
_DDL_SCRAPING_JOBS = """\
CREATE TABLE IF NOT EXISTS scraping_jobs (
    id               TEXT     NOT NULL PRIMARY KEY,
    location_id      TEXT     NOT NULL,
    platform         TEXT     NOT NULL,
    job_type         TEXT     NOT NULL,
    window_start     TEXT     NOT NULL,
    window_end       TEXT     NOT NULL,
    status           TEXT     NOT NULL,
    created_at       TEXT     NOT NULL,
    started_at       TEXT,
    completed_at     TEXT,
    properties_found INTEGER,
    error_message    TEXT
)"""

_DDL_SCRAPING_JOBS_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_scraping_jobs_status ON scraping_jobs (status)",
    "CREATE INDEX IF NOT EXISTS ix_scraping_jobs_location ON scraping_jobs (location_id)",
)

#: One row per property listing, unique per ``(platform, platform_id)``.
#: ``amenities`` is a JSON array.
_DDL_PROPERTIES = """\
CREATE TABLE IF NOT EXISTS properties (
    id                INTEGER  PRIMARY KEY AUTOINCREMENT,
    platform          TEXT     NOT NULL,
    platform_id       TEXT     NOT NULL,
    location_id       TEXT     NOT NULL,
    latitude          REAL,
    longitude         REAL,
    title             TEXT,
    property_type     TEXT,
    bedrooms          INTEGER,
    bathrooms         REAL,
    guests            INTEGER,
    rating            REAL,
    review_count      INTEGER,
    is_superhost      INTEGER,
    image_url         TEXT,
    property_url      TEXT,
    amenities         TEXT     NOT NULL DEFAULT '[]',
    data_completeness TEXT,
    pdp_last_scraped  TEXT,
    first_seen_at     TEXT     NOT NULL,
    updated_at        TEXT     NOT NULL,
    UNIQUE (platform, platform_id)
)"""

#: Append-only.  ``price`` is a decimal string to avoid float rounding.
_DDL_PRICE_SAMPLES = """\
CREATE TABLE IF NOT EXISTS price_samples (
    id                INTEGER  PRIMARY KEY AUTOINCREMENT,
    property_id       INTEGER  NOT NULL REFERENCES properties (id) ON DELETE CASCADE,
    price             TEXT     NOT NULL,
    currency          TEXT     NOT NULL,
    search_date_start TEXT     NOT NULL,
    search_date_end   TEXT     NOT NULL,
    number_of_nights  INTEGER  NOT NULL,
    sampled_at        TEXT     NOT NULL
)"""

#: Append-only monthly availability history.
_DDL_PROPERTY_AVAILABILITY = """\
CREATE TABLE IF NOT EXISTS property_availability (
    id             INTEGER  PRIMARY KEY AUTOINCREMENT,
    property_id    INTEGER  NOT NULL REFERENCES properties (id) ON DELETE CASCADE,
    month          TEXT     NOT NULL,
    total_days     INTEGER  NOT NULL,
    available_days INTEGER  NOT NULL,
    booked_days    INTEGER  NOT NULL,
    blocked_days   INTEGER  NOT NULL,
    recorded_at    TEXT     NOT NULL
)"""

_DDL_MARKET_DATA_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_properties_location ON properties (location_id)",
    "CREATE INDEX IF NOT EXISTS ix_price_samples_property ON price_samples (property_id)",
    "CREATE INDEX IF NOT EXISTS ix_availability_property ON property_availability (property_id)",
)

_TABLES = (
    _DDL_LOCATIONS,
    _DDL_SCRAPING_JOBS,
    _DDL_PROPERTIES,
    _DDL_PRICE_SAMPLES,
    _DDL_PROPERTY_AVAILABILITY,
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap its schema.

    Args:
        path: Filesystem path for the SQLite file, or :data:`MEMORY_DB`.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection` with ``row_factory`` set to
        :class:`aiosqlite.Row`.  The caller is responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the database cannot be opened.
    """
    target = path or DEFAULT_DB_PATH
    if str(target) != MEMORY_DB:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)

    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await create_schema(conn)

    logger.info("SQLite database ready at %s", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all tables and indexes if they do not already exist.

    Idempotent.  Existing data is never touched.
    """
    for ddl in _TABLES:
        await conn.execute(ddl)
    for ddl in (*_DDL_SCRAPING_JOBS_INDEXES, *_DDL_MARKET_DATA_INDEXES):
        await conn.execute(ddl)
    await conn.commit()
    logger.debug("Schema bootstrap complete (%d tables verified)", len(_TABLES))


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Enable WAL journaling and foreign-key enforcement."""
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        # In-memory databases report "memory".
        logger.debug("SQLite journal_mode is %r, not WAL", mode)

    await conn.execute("PRAGMA foreign_keys=ON")
