"""Table loading: resolve source, parse, normalize, publish into the engine.

One table at a time. Failures come back as TableLoadResult.error so a
caller loading many unrelated tables is never interrupted by one of them.
"""
import io
import json
import logging
import time
from dataclasses import dataclass

import duckdb
import polars as pl

from dashboard_data.config import AppConfig, TableSpec
from dashboard_data.engine import AnalyticsEngine, quote_identifier
from dashboard_data.errors import EmptySource, LoadError, SourceUnavailable
from dashboard_data.normalizer import ColumnInfo, ensure_tabular, normalize
from dashboard_data.overrides import OverrideStore, table_key
from dashboard_data.query import fetch_records
from dashboard_data.sources import Source, build_source

logger = logging.getLogger(__name__)

ORIGIN_OVERRIDE = "override"
ORIGIN_BUNDLED = "bundled"

_PARSE_ERRORS = (pl.exceptions.PolarsError, ValueError, TypeError, UnicodeDecodeError)


@dataclass
class TableLoadResult:
    table_name: str
    rows: int = 0
    origin: str | None = None
    error: LoadError | None = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def frame_from_records(table_name: str, data) -> pl.DataFrame:
    """Build a staging frame from parsed JSON, inferring column types over all rows."""
    rows = ensure_tabular(table_name, data)
    try:
        return pl.DataFrame(rows, infer_schema_length=None)
    except _PARSE_ERRORS as e:
        raise SourceUnavailable(table_name, f"cannot infer a table from records: {e}") from e


def parse_payload(table_name: str, payload: bytes | str, fmt: str) -> pl.DataFrame:
    """Parse a CSV (header row) or JSON (array of objects) payload."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    if not payload.strip():
        raise EmptySource(table_name, "source is empty")

    if fmt == "json":
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise SourceUnavailable(table_name, f"invalid JSON: {e}") from e
        return frame_from_records(table_name, data)

    if fmt == "csv":
        try:
            df = pl.read_csv(io.BytesIO(payload), infer_schema_length=10000, encoding="utf8-lossy")
        except _PARSE_ERRORS as e:
            raise SourceUnavailable(table_name, f"invalid CSV: {e}") from e
        if df.height == 0:
            raise EmptySource(table_name, "CSV has a header but no rows")
        return df

    raise SourceUnavailable(table_name, f"unsupported format: '{fmt}'")


def describe_relation(con: duckdb.DuckDBPyConnection, relation: str) -> list[ColumnInfo]:
    """Column names and inferred engine types of a relation."""
    rows = con.execute(f"DESCRIBE SELECT * FROM {quote_identifier(relation)}").fetchall()
    return [ColumnInfo(name=r[0], data_type=str(r[1])) for r in rows]


def materialize_table(
    con: duckdb.DuckDBPyConnection,
    table_name: str,
    df: pl.DataFrame,
    config: AppConfig,
) -> int:
    """Stage df, project it through the normalizer, swap it in as table_name.

    CREATE OR REPLACE makes the swap a single statement: readers see the
    old table or the new one, never a dropped one.
    """
    staging = f"_staging_{table_name}"
    con.register(staging, df.to_arrow())

    try:
        columns = describe_relation(con, staging)
        exprs = normalize(table_name, columns, config)
        con.execute(
            f"CREATE OR REPLACE TABLE {quote_identifier(table_name)} AS "
            f"SELECT {', '.join(exprs)} FROM {quote_identifier(staging)}"
        )
        row_count = con.execute(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}").fetchone()[0]
    finally:
        con.unregister(staging)

    return row_count


class TableLoader:
    """Loads configured tables into one engine, override first."""

    def __init__(
        self,
        engine: AnalyticsEngine,
        config: AppConfig,
        source: Source | None = None,
        store: OverrideStore | None = None,
    ):
        self.engine = engine
        self.config = config
        self.source = source or build_source(config)
        self.store = store or OverrideStore(config.override_dir)

    async def _read(self, spec: TableSpec) -> tuple[pl.DataFrame, str]:
        override = self.store.get(table_key(spec.name))
        if override is not None:
            logger.info(f"  - Loading {spec.name} from override store (uploaded data)...")
            return frame_from_records(spec.name, override), ORIGIN_OVERRIDE

        payload = await self.source.fetch(spec)
        return parse_payload(spec.name, payload, spec.format), ORIGIN_BUNDLED

    async def load_table(self, table_name: str) -> TableLoadResult:
        """Load one table. Never raises for per-table problems."""
        result = TableLoadResult(table_name=table_name)
        start = time.perf_counter()

        try:
            spec = self.config.get_table(table_name)
            df, result.origin = await self._read(spec)
            logger.info(f"  - Creating table {table_name} ({df.height} rows, {result.origin})...")
            result.rows = await self.engine.run(materialize_table, table_name, df, self.config)
        except LoadError as e:
            logger.warning(f"  Skipping {table_name}: {e.message}")
            result.error = e
        except Exception as e:
            logger.error(f"  Failed to load {table_name}: {e}")
            result.error = LoadError(table_name, str(e))

        result.elapsed_ms = (time.perf_counter() - start) * 1000
        if result.ok:
            logger.info(f"  Loaded table: {table_name} ({result.rows} rows in {result.elapsed_ms:.2f}ms)")
        return result

    async def upload(self, table_name: str, payload: bytes | str, fmt: str = "csv") -> int:
        """Replace a table with uploaded data and keep it as the table's override.

        Raises LoadError / QueryError; the caller asked for this one table.
        """
        df = parse_payload(table_name, payload, fmt)
        row_count = await self.engine.run(materialize_table, table_name, df, self.config)

        records = await self.engine.run(fetch_records, f"SELECT * FROM {quote_identifier(table_name)}")
        self.store.set(table_key(table_name), records)
        logger.info(f"Uploaded {fmt.upper()} to table: {table_name} ({row_count} rows)")
        return row_count

    def clear_override(self, table_name: str) -> bool:
        """Forget an uploaded override; the next load uses the bundled source."""
        removed = self.store.delete(table_key(table_name))
        if removed:
            logger.info(f"Cleared override for {table_name}")
        return removed
