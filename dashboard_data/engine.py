"""Analytics engine handle and physical schema SSOT for the wave tables.

All CREATE TABLE statements for engine-managed tables live here.
Loaded source tables are created by the loader from their data.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar

import duckdb

from dashboard_data.errors import EngineInitError, QueryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ================================================================
# ENGINE-MANAGED TABLES
# ================================================================
WAVE_TABLES = {
    "WAVES": """
        CREATE TABLE IF NOT EXISTS WAVES (
            WAVE_ID INTEGER PRIMARY KEY,
            WAVE_NAME VARCHAR NOT NULL,
            YEAR INTEGER NOT NULL,
            MONTH INTEGER NOT NULL,
            CUSTOMERS_COUNT INTEGER NOT NULL DEFAULT 0,
            CONSIGNMENTS_COUNT BIGINT NOT NULL DEFAULT 0,
            CONSIGNMENTS_PCT DOUBLE NOT NULL DEFAULT 0.0,
            REVENUE_TOTAL DOUBLE NOT NULL DEFAULT 0.0,
            REVENUE_PCT DOUBLE NOT NULL DEFAULT 0.0,
            CHECK (MONTH BETWEEN 1 AND 12)
        )
    """,
    "WAVE_ASSIGNMENTS": """
        CREATE TABLE IF NOT EXISTS WAVE_ASSIGNMENTS (
            COU_ID_ACC VARCHAR NOT NULL,
            ACC_ID VARCHAR NOT NULL,
            WAVE_ID INTEGER NOT NULL,
            PRIMARY KEY (COU_ID_ACC, ACC_ID)
        )
    """,
}

# Placeholder until the wave_customers source loads; the loader replaces it.
REFERENCE_TABLES = {
    "wave_customers": """
        CREATE TABLE IF NOT EXISTS wave_customers (
            COU_ID_ACC VARCHAR,
            ACC_ID VARCHAR,
            CustomerName VARCHAR,
            CON_COUNT BIGINT,
            TOTAL_REV_EUR DOUBLE,
            REV_PCT DOUBLE,
            CONS_PCT DOUBLE,
            RN BIGINT
        )
    """,
}


def quote_identifier(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def get_connection(database: str) -> duckdb.DuckDBPyConnection:
    """Get a DuckDB connection, creating parent directories for file databases."""
    if database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(database)


def init_db(con: duckdb.DuckDBPyConnection) -> None:
    """Create engine-managed tables idempotently."""
    for ddl in WAVE_TABLES.values():
        con.execute(ddl)
    for ddl in REFERENCE_TABLES.values():
        con.execute(ddl)


def table_exists(con: duckdb.DuckDBPyConnection, table: str) -> bool:
    """Check if a table exists in the main schema."""
    result = con.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'main' AND table_name = ?",
        [table]
    ).fetchone()
    return result[0] > 0


def get_row_counts(con: duckdb.DuckDBPyConnection) -> dict[str, int]:
    """Get row counts for all tables in the main schema."""
    counts = {}
    tables = con.execute(
        "SELECT table_name FROM information_schema.tables WHERE table_schema = 'main' ORDER BY table_name"
    ).fetchall()
    for (tbl,) in tables:
        counts[tbl] = con.execute(f"SELECT COUNT(*) FROM {quote_identifier(tbl)}").fetchone()[0]
    return counts


class AnalyticsEngine:
    """Explicit handle around one DuckDB connection.

    Lifecycle: open() -> is_ready() -> run(...) ... -> close().
    Concurrent open() calls share one in-flight bootstrap. Statements run
    one at a time in a worker thread, so the event loop stays free while
    the engine serializes its own work.
    """

    def __init__(self, database: str = ":memory:"):
        self.database = database
        self._con: duckdb.DuckDBPyConnection | None = None
        self._lock: asyncio.Lock | None = None
        self._open_task: asyncio.Task | None = None
        self.generation = 0

    def is_ready(self) -> bool:
        return self._con is not None

    async def open(self, force_reload: bool = False) -> None:
        """Open the engine once; force_reload tears down and reopens."""
        if self._open_task is not None:
            logger.info("Engine initialization already in progress, waiting...")
            await asyncio.shield(self._open_task)
            if not force_reload:
                return

        if self.is_ready() and not force_reload:
            return

        if force_reload and self.is_ready():
            logger.info("Force reload: closing existing engine...")
            await self.close()

        self._open_task = asyncio.ensure_future(self._bootstrap())
        try:
            await asyncio.shield(self._open_task)
        finally:
            self._open_task = None

    async def _bootstrap(self) -> None:
        logger.info(f"Initializing analytics engine ({self.database})...")
        try:
            con = await asyncio.to_thread(get_connection, self.database)
            await asyncio.to_thread(init_db, con)
        except Exception as e:
            logger.error(f"Failed to initialize analytics engine: {e}")
            raise EngineInitError(f"Could not open analytics engine '{self.database}': {e}") from e

        self._lock = asyncio.Lock()
        self._con = con
        self.generation += 1
        logger.info(f"Analytics engine ready (generation {self.generation})")

    async def close(self) -> None:
        if self._con is None:
            return
        con, self._con = self._con, None
        async with self._lock:
            await asyncio.to_thread(con.close)
        logger.info("Analytics engine closed")

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run fn(con, *args) against the engine, one statement batch at a time.

        duckdb errors surface as QueryError.
        """
        if self._con is None:
            raise EngineInitError("Analytics engine is not open")
        async with self._lock:
            con = self._con
            if con is None:
                raise EngineInitError("Analytics engine was closed")
            try:
                return await asyncio.to_thread(fn, con, *args)
            except duckdb.Error as e:
                raise QueryError(str(e)) from e
