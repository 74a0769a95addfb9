"""Database schema definition, versioned migrations, and initialization."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ticketdesk.storage.errors import ErrorKind, classify_error
from ticketdesk.storage.executor import QueryExecutor

logger = logging.getLogger(__name__)

# Ordered so that referenced tables are created before referencing ones.
SCHEMA_STATEMENTS: tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS departments (
    id              TEXT PRIMARY KEY,
    name            TEXT UNIQUE NOT NULL,
    description     TEXT,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
)""",
    """CREATE TABLE IF NOT EXISTS blocks (
    id              TEXT PRIMARY KEY,
    name            TEXT UNIQUE NOT NULL,
    description     TEXT,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
)""",
    """CREATE TABLE IF NOT EXISTS locations (
    id              TEXT PRIMARY KEY,
    "blockId"       TEXT NOT NULL,
    name            TEXT NOT NULL,
    floor           INTEGER,
    "areaType"      TEXT,
    "departmentId"  TEXT,
    "isActive"      INTEGER NOT NULL DEFAULT 1,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY ("blockId") REFERENCES blocks(id) ON DELETE CASCADE,
    FOREIGN KEY ("departmentId") REFERENCES departments(id) ON DELETE SET NULL,
    UNIQUE ("blockId", name)
)""",
    # createdAt/updatedAt are written by callers as ISO-8601 strings
    """CREATE TABLE IF NOT EXISTS users (
    id              TEXT PRIMARY KEY,
    email           TEXT UNIQUE NOT NULL,
    password        TEXT NOT NULL,
    "firstName"     TEXT NOT NULL,
    "lastName"      TEXT NOT NULL,
    "phoneNumber"   TEXT,
    role            TEXT NOT NULL DEFAULT 'REQUESTER',
    department      TEXT,
    "locationId"    TEXT REFERENCES locations(id) ON DELETE SET NULL,
    "isActive"      INTEGER NOT NULL DEFAULT 1,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
)""",
    """CREATE TABLE IF NOT EXISTS services (
    id                          TEXT PRIMARY KEY,
    name                        TEXT UNIQUE NOT NULL,
    description                 TEXT,
    "areaType"                  TEXT,
    "departmentId"              TEXT,
    "locationId"                TEXT,
    "slaEnabled"                INTEGER NOT NULL DEFAULT 0,
    "slaHours"                  INTEGER NOT NULL DEFAULT 0,
    "slaMinutes"                INTEGER NOT NULL DEFAULT 0,
    "otpVerificationRequired"   INTEGER NOT NULL DEFAULT 0,
    "displayToCustomer"         INTEGER NOT NULL DEFAULT 1,
    "iconUrl"                   TEXT,
    "isActive"                  INTEGER NOT NULL DEFAULT 1,
    "createdAt"                 DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"                 DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY ("departmentId") REFERENCES departments(id) ON DELETE SET NULL,
    FOREIGN KEY ("locationId") REFERENCES locations(id) ON DELETE SET NULL
)""",
    """CREATE TABLE IF NOT EXISTS requests (
    id                  TEXT PRIMARY KEY,
    "requestId"         TEXT UNIQUE NOT NULL,
    "serviceType"       TEXT NOT NULL,
    "serviceId"         TEXT,
    title               TEXT NOT NULL,
    description         TEXT,
    priority            INTEGER NOT NULL DEFAULT 3,
    status              TEXT NOT NULL DEFAULT 'NEW',
    "locationId"        TEXT,
    "departmentId"      TEXT,
    "createdById"       TEXT NOT NULL,
    "assignedToId"      TEXT,
    "requestedBy"       TEXT,
    "estimatedTime"     INTEGER,
    "completedAt"       DATETIME,
    "scheduledDate"     DATETIME,
    "scheduledTime"     TEXT,
    recurring           INTEGER NOT NULL DEFAULT 0,
    "recurringPattern"  TEXT,
    "createdAt"         DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"         DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY ("locationId") REFERENCES locations(id) ON DELETE SET NULL,
    FOREIGN KEY ("departmentId") REFERENCES departments(id) ON DELETE SET NULL,
    FOREIGN KEY ("serviceId") REFERENCES services(id) ON DELETE SET NULL,
    FOREIGN KEY ("createdById") REFERENCES users(id) ON DELETE RESTRICT,
    FOREIGN KEY ("assignedToId") REFERENCES users(id) ON DELETE SET NULL
)""",
    """CREATE TABLE IF NOT EXISTS request_activities (
    id              TEXT PRIMARY KEY,
    "requestId"     TEXT NOT NULL,
    "userId"        TEXT NOT NULL,
    action          TEXT NOT NULL,
    description     TEXT,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY ("requestId") REFERENCES requests(id) ON DELETE CASCADE,
    FOREIGN KEY ("userId") REFERENCES users(id) ON DELETE CASCADE
)""",
    """CREATE TABLE IF NOT EXISTS request_links (
    id              TEXT PRIMARY KEY,
    "requestId"     TEXT UNIQUE NOT NULL,
    "linkType"      TEXT NOT NULL,
    "locationId"    TEXT,
    "phoneNumber"   TEXT,
    token           TEXT UNIQUE NOT NULL,
    "expiresAt"     DATETIME,
    "isUsed"        INTEGER NOT NULL DEFAULT 0,
    "createdAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY ("requestId") REFERENCES requests(id) ON DELETE CASCADE
)""",
    """CREATE TABLE IF NOT EXISTS system_settings (
    id              TEXT PRIMARY KEY,
    key             TEXT UNIQUE NOT NULL,
    value           TEXT NOT NULL,
    "updatedBy"     TEXT,
    "updatedAt"     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
)""",
    'CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status)',
    'CREATE INDEX IF NOT EXISTS idx_requests_created_by ON requests("createdById")',
    'CREATE INDEX IF NOT EXISTS idx_requests_assigned_to ON requests("assignedToId")',
    'CREATE INDEX IF NOT EXISTS idx_requests_created_at ON requests("createdAt")',
    'CREATE INDEX IF NOT EXISTS idx_request_activities_request_id ON request_activities("requestId")',
)

_MIGRATIONS_TABLE_SQL = """CREATE TABLE IF NOT EXISTS schema_migrations (
    version         INTEGER PRIMARY KEY,
    name            TEXT NOT NULL,
    applied_at      TEXT NOT NULL
)"""


@dataclass(frozen=True)
class AddColumn:
    """Add a column that older databases were created without."""

    version: int
    table: str
    column: str
    definition: str
    destructive = False

    @property
    def name(self) -> str:
        return f"add_{self.table}_{self.column}"

    def apply(self, executor: QueryExecutor) -> None:
        present = _column_exists(executor, self.table, self.column)
        if present is None:
            logger.debug("Table %s not created yet, skipping %s", self.table, self.name)
            return
        if present:
            return
        try:
            executor.execute_write(
                f'ALTER TABLE {self.table} ADD COLUMN "{self.column}" {self.definition}'
            )
        except Exception as exc:
            if classify_error(exc) is not ErrorKind.ALREADY_EXISTS:
                raise
            logger.info("Column %s.%s already exists", self.table, self.column)
            return
        logger.info("Added column %s.%s", self.table, self.column)


@dataclass(frozen=True)
class RecreateTable:
    """Drop a table so base creation rebuilds it with the current shape.

    Discards every row in the table, so it only runs when destructive
    migrations are enabled.
    """

    version: int
    table: str
    destructive = True

    @property
    def name(self) -> str:
        return f"recreate_{self.table}"

    def apply(self, executor: QueryExecutor) -> None:
        executor.execute_write(f"DROP TABLE IF EXISTS {self.table}")
        logger.warning("Dropped table %s; it will be recreated empty", self.table)


MIGRATIONS: tuple[AddColumn | RecreateTable, ...] = (
    AddColumn(1, "locations", "isActive", "INTEGER NOT NULL DEFAULT 1"),
    AddColumn(2, "users", "locationId", "TEXT REFERENCES locations(id) ON DELETE SET NULL"),
    AddColumn(3, "requests", "serviceId", "TEXT REFERENCES services(id) ON DELETE SET NULL"),
    AddColumn(4, "requests", "scheduledDate", "DATETIME"),
    AddColumn(5, "requests", "scheduledTime", "TEXT"),
    AddColumn(6, "requests", "recurring", "INTEGER NOT NULL DEFAULT 0"),
    AddColumn(7, "requests", "recurringPattern", "TEXT"),
    RecreateTable(8, "request_links"),
)


def _column_exists(executor: QueryExecutor, table: str, column: str) -> bool | None:
    """Probe for *column* with a narrow SELECT.

    Returns True if present, False if missing, None if the table itself
    does not exist. Any other failure is re-raised.
    """
    # backticks: SQLite reads an unknown "quoted" name as a string literal
    try:
        executor.query_rows(f"SELECT `{column}` FROM {table} LIMIT 1")
    except Exception as exc:
        kind = classify_error(exc)
        if kind is ErrorKind.MISSING_COLUMN:
            return False
        if kind is ErrorKind.MISSING_TABLE:
            return None
        raise
    return True


def _applied_versions(executor: QueryExecutor) -> set[int]:
    rows = executor.query_rows("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def _record_migration(executor: QueryExecutor, migration: AddColumn | RecreateTable) -> None:
    executor.execute_write(
        "INSERT OR IGNORE INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
        (migration.version, migration.name, datetime.now(timezone.utc).isoformat()),
    )


def run_migrations(executor: QueryExecutor, *, allow_destructive: bool = False) -> list[str]:
    """Apply every pending migration in version order.

    Destructive migrations stay pending unless *allow_destructive* is set.
    Returns the names of the migrations applied.
    """
    executor.execute_write(_MIGRATIONS_TABLE_SQL)
    applied = _applied_versions(executor)
    ran: list[str] = []
    held: list[str] = []
    for migration in sorted(MIGRATIONS, key=lambda m: m.version):
        if migration.version in applied:
            continue
        if migration.destructive and not allow_destructive:
            held.append(migration.name)
            continue
        migration.apply(executor)
        _record_migration(executor, migration)
        ran.append(migration.name)
    if held:
        logger.info(
            "Destructive migrations pending: %s (set ALLOW_DESTRUCTIVE_MIGRATIONS=true to apply)",
            ", ".join(held),
        )
    return ran


def create_tables(executor: QueryExecutor) -> None:
    """Run every base statement. Any failure is fatal."""
    for statement in SCHEMA_STATEMENTS:
        try:
            executor.execute_write(statement)
        except Exception:
            logger.exception("Schema statement failed: %s", statement.splitlines()[0])
            raise


def initialize_schema(executor: QueryExecutor, *, allow_destructive: bool = False) -> list[str]:
    """Bring the database up to the current schema. Safe on every boot."""
    ran = run_migrations(executor, allow_destructive=allow_destructive)
    create_tables(executor)
    if ran:
        logger.info("Applied migrations: %s", ", ".join(ran))
    logger.info("Database schema initialized")
    return ran


def list_tables(executor: QueryExecutor) -> set[str]:
    """Return the names of all user tables."""
    rows = executor.query_rows(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    )
    return {row["name"] for row in rows}
