"""
Database infrastructure with SQLite and async support.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite


logger = logging.getLogger(__name__)


# Each entry is applied once, in order, and recorded in the migrations table.
MIGRATIONS: List[Tuple[int, List[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS blueprints (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            name TEXT NOT NULL,
            schema_type TEXT NOT NULL,
            extraction_rules TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS watches (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            blueprint_id TEXT NOT NULL REFERENCES blueprints(id),
            schedule TEXT NOT NULL,
            identity_fields TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            next_run_at TEXT,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            deleted_at TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_watches_next_run
        ON watches(next_run_at) WHERE status = 'active' AND deleted_at IS NULL
        """,
        """
        CREATE TABLE IF NOT EXISTS watch_runs (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            watch_id TEXT NOT NULL REFERENCES watches(id),
            trigger TEXT NOT NULL DEFAULT 'schedule',
            status TEXT NOT NULL DEFAULT 'running',
            started_at TEXT NOT NULL,
            completed_at TEXT,
            entities_found INTEGER,
            entities_new INTEGER,
            entities_changed INTEGER,
            entities_removed INTEGER,
            records_dropped INTEGER,
            events_emitted INTEGER,
            error_message TEXT
        )
        """,
        # At most one running run per watch, across processes and restarts.
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_watch_runs_running
        ON watch_runs(watch_id) WHERE status = 'running'
        """,
        "CREATE INDEX IF NOT EXISTS idx_watch_runs_watch ON watch_runs(watch_id, started_at)",
        """
        CREATE TABLE IF NOT EXISTS entities (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            watch_id TEXT NOT NULL REFERENCES watches(id),
            schema_type TEXT NOT NULL,
            external_id TEXT NOT NULL,
            content TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            first_seen_at TEXT NOT NULL,
            last_seen_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (tenant, watch_id, schema_type, external_id)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_entities_watch ON entities(watch_id)",
        """
        CREATE TABLE IF NOT EXISTS events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            tenant TEXT NOT NULL,
            event_type TEXT NOT NULL,
            watch_id TEXT NOT NULL REFERENCES watches(id),
            run_id TEXT REFERENCES watch_runs(id),
            entity_id TEXT REFERENCES entities(id),
            payload TEXT NOT NULL,
            occurred_at TEXT NOT NULL,
            matched_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_events_watch ON events(watch_id, occurred_at)",
        "CREATE INDEX IF NOT EXISTS idx_events_unmatched ON events(seq) WHERE matched_at IS NULL",
        # Events are append-only.
        """
        CREATE TRIGGER IF NOT EXISTS trg_events_no_delete
        BEFORE DELETE ON events
        BEGIN
            SELECT RAISE(ABORT, 'events are append-only');
        END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS trg_events_immutable
        BEFORE UPDATE OF id, tenant, event_type, watch_id, run_id, entity_id, payload, occurred_at
        ON events
        BEGIN
            SELECT RAISE(ABORT, 'events are immutable');
        END
        """,
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            name TEXT NOT NULL,
            event_types TEXT NOT NULL,
            watch_id TEXT REFERENCES watches(id),
            filters TEXT NOT NULL DEFAULT '{}',
            channel_type TEXT NOT NULL DEFAULT 'email',
            channel_config TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            deleted_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant ON subscriptions(tenant, status)",
        """
        CREATE TABLE IF NOT EXISTS deliveries (
            id TEXT PRIMARY KEY,
            tenant TEXT NOT NULL,
            event_id TEXT NOT NULL REFERENCES events(id),
            subscription_id TEXT NOT NULL REFERENCES subscriptions(id),
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 5,
            next_retry_at TEXT NOT NULL,
            last_error TEXT,
            delivered_at TEXT,
            claim_token TEXT,
            claim_expires_at TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (event_id, subscription_id)
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_deliveries_pending
        ON deliveries(next_retry_at) WHERE status = 'pending'
        """,
    ]),
]


class Transaction:
    """Handle passed to the body of ``Database.transaction``.

    Statements issued through it run on the locked connection without trying
    to take the lock again.
    """

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        cursor = await self._connection.execute(sql, params)
        return cursor.rowcount

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        cursor = await self._connection.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        cursor = await self._connection.execute(sql, params)
        return await cursor.fetchall()


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: str = "changewatch.db"):
        # Handle SQLite URL format if provided
        if db_path.startswith("sqlite"):
            # Handle sqlite+aiosqlite:///path format
            if "///" in db_path:
                actual_path = db_path.split("///")[-1]
            else:
                actual_path = db_path.split("//")[-1]
            self.db_path = Path(actual_path)
        else:
            self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        if self._connection:
            return

        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly with BEGIN
        self._connection = await aiosqlite.connect(self.db_path, timeout=30, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        # Improve concurrency: use WAL journal mode and set busy timeout (ms)
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def transaction(self, immediate: bool = True) -> AsyncIterator[Transaction]:
        """Context manager for database transactions.

        ``immediate`` takes the SQLite write lock up front so that a
        select-then-update inside the body cannot interleave with another
        process doing the same.
        """
        if not self._connection:
            await self.connect()

        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield Transaction(self._connection)
            except BaseException:
                await self._connection.rollback()
                raise
            else:
                await self._connection.commit()

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> int:
        """Execute a single statement and return the affected row count."""
        if not self._connection:
            await self.connect()
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            return cursor.rowcount

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        if not self._connection:
            await self.connect()
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        if not self._connection:
            await self.connect()
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchall()

    async def _run_migrations(self) -> None:
        """Run database migrations."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor = await self._connection.execute("SELECT version FROM migrations")
        applied = {row["version"] for row in await cursor.fetchall()}

        for version, statements in MIGRATIONS:
            if version in applied:
                continue
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                for statement in statements:
                    await self._connection.execute(statement)
                await self._connection.execute(
                    "INSERT INTO migrations (version) VALUES (?)", (version,)
                )
            except Exception:
                await self._connection.rollback()
                raise
            await self._connection.commit()
            logger.info(f"Applied database migration {version}")
