"""Async SQLite database manager for bot state persistence.

Uses aiosqlite for non-blocking database operations with WAL mode
so the control API can read while the poll loop writes.
"""

import os
from typing import Self

import aiosqlite

from carrybot.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS seen_versions (
    version TEXT PRIMARY KEY,
    classification TEXT NOT NULL,
    seen_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS strategy_run (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    run_id TEXT NOT NULL,
    direction TEXT,
    phase TEXT NOT NULL,
    tracked_deposit_total TEXT NOT NULL,
    active_batch TEXT,
    active_amount TEXT NOT NULL,
    spot_holdings TEXT NOT NULL,
    depositor_address TEXT,
    last_error TEXT,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS saga_steps (
    run_id TEXT NOT NULL,
    batch TEXT NOT NULL,
    step TEXT NOT NULL,
    detail TEXT NOT NULL,
    completed_at REAL NOT NULL,
    PRIMARY KEY (run_id, batch, step)
);

CREATE TABLE IF NOT EXISTS deposits (
    version TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    from_address TEXT NOT NULL,
    amount TEXT NOT NULL,
    recorded_at REAL NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_deposits_recorded_at
    ON deposits(recorded_at);
"""


class StateDatabase:
    """Async SQLite connection manager for bot state.

    Manages database lifecycle including schema creation, WAL mode
    configuration, and clean resource cleanup.

    Usage:
        async with StateDatabase("/path/to/db") as db:
            await db.db.execute("SELECT ...")
    """

    def __init__(self, db_path: str = "data/carrybot.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create schema.

        Creates the parent directory if it does not exist.
        """
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._create_tables()
        await self._ensure_schema_version()

        logger.info("state_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("state_db_closed", db_path=self._db_path)

    async def _create_tables(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.executescript(_CREATE_INDEXES_SQL)
        await self._connection.commit()

    async def _ensure_schema_version(self) -> None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT version FROM schema_version LIMIT 1"
        )
        row = await cursor.fetchone()
        if row is None:
            await self._connection.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self._connection.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
