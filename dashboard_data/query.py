"""Read-only query surface over the loaded tables.

Every row leaves the engine through to_plain(), the single place where
engine-native values become standard Python numbers.
"""
import logging
from decimal import Decimal
from typing import Any, Sequence

import duckdb
import polars as pl

from dashboard_data.engine import AnalyticsEngine, quote_identifier
from dashboard_data.errors import QueryError

logger = logging.getLogger(__name__)


def to_plain(value: Any) -> Any:
    """Convert an engine-native scalar to a standard Python value."""
    if isinstance(value, Decimal):
        return float(value)
    # numpy scalars (from registered frames) expose .item()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        try:
            return value.item()
        except (TypeError, ValueError):
            return value
    return value


def fetch_records(con: duckdb.DuckDBPyConnection, sql: str, params: Sequence | None = None) -> list[dict]:
    """Execute sql and return rows as plain dicts in result order."""
    cur = con.execute(sql, params) if params is not None else con.execute(sql)
    if cur.description is None:
        return []
    columns = [d[0] for d in cur.description]
    return [
        {col: to_plain(val) for col, val in zip(columns, row)}
        for row in cur.fetchall()
    ]


async def query(engine: AnalyticsEngine, sql: str, params: Sequence | None = None) -> list[dict]:
    """Run a query in DuckDB's SQL dialect and return plain records."""
    if not engine.is_ready():
        await engine.open()
    try:
        return await engine.run(fetch_records, sql, params)
    except QueryError as e:
        logger.error(f"Query failed: {e} SQL: {sql}")
        raise QueryError(str(e), sql=sql) from e


async def get_table_names(engine: AnalyticsEngine) -> list[str]:
    rows = await query(
        engine,
        "SELECT table_name FROM information_schema.tables WHERE table_schema = 'main' ORDER BY table_name",
    )
    return [r["table_name"] for r in rows]


async def get_table_schema(engine: AnalyticsEngine, table_name: str) -> list[dict]:
    """Column names and types for a table, in ordinal order."""
    return await query(
        engine,
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = 'main' AND table_name = ? ORDER BY ordinal_position",
        [table_name],
    )


async def get_table_data(engine: AnalyticsEngine, table_name: str, limit: int = 5) -> list[dict]:
    return await query(engine, f"SELECT * FROM {quote_identifier(table_name)} LIMIT {int(limit)}")


async def get_table_count(engine: AnalyticsEngine, table_name: str) -> int:
    rows = await query(engine, f"SELECT COUNT(*) AS count FROM {quote_identifier(table_name)}")
    return rows[0]["count"] if rows else 0


async def get_table_as_records(engine: AnalyticsEngine, table_name: str) -> list[dict]:
    return await query(engine, f"SELECT * FROM {quote_identifier(table_name)}")


def _table_frame(con: duckdb.DuckDBPyConnection, table_name: str) -> pl.DataFrame:
    return con.execute(f"SELECT * FROM {quote_identifier(table_name)}").pl()


async def export_csv(engine: AnalyticsEngine, table_name: str) -> str:
    """Render a whole table as CSV text with a header row."""
    if not engine.is_ready():
        await engine.open()
    try:
        df = await engine.run(_table_frame, table_name)
    except QueryError as e:
        logger.error(f"Export of {table_name} failed: {e}")
        raise
    return df.write_csv()
