"""Wave planning: customer-to-wave assignment with denormalized wave metrics.

Invariant: every wave's five metric columns equal the aggregation over the
customers currently assigned to it. Every mutation recomputes the affected
waves from WAVE_ASSIGNMENTS joined to wave_customers, never by delta, so the
cost is O(customers in the affected waves).

Each mutation runs as one engine call inside a transaction, then the wave
tables are written back to the override store.
"""
import logging
import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple

import duckdb

from dashboard_data.engine import AnalyticsEngine, WAVE_TABLES
from dashboard_data.overrides import OverrideStore, table_key
from dashboard_data.query import fetch_records

logger = logging.getLogger(__name__)

WAVES_KEY = table_key("WAVES")
ASSIGNMENTS_KEY = table_key("WAVE_ASSIGNMENTS")

AGGREGATE_SQL = """
    WITH members AS (
        SELECT COU_ID_ACC, ACC_ID FROM WAVE_ASSIGNMENTS WHERE WAVE_ID = ?
    ),
    customers AS (
        SELECT
            TRIM(CAST(COU_ID_ACC AS VARCHAR)) AS COU_ID_ACC,
            TRIM(CAST(ACC_ID AS VARCHAR)) AS ACC_ID,
            SUM(COALESCE(TRY_CAST(CON_COUNT AS BIGINT), 0)) AS CON_COUNT,
            SUM(COALESCE(TRY_CAST(CONS_PCT AS DOUBLE), 0.0)) AS CONS_PCT,
            SUM(COALESCE(TRY_CAST(TOTAL_REV_EUR AS DOUBLE), 0.0)) AS TOTAL_REV_EUR,
            SUM(COALESCE(TRY_CAST(REV_PCT AS DOUBLE), 0.0)) AS REV_PCT
        FROM wave_customers
        GROUP BY 1, 2
    )
    SELECT
        COUNT(*) AS CUSTOMERS_COUNT,
        COALESCE(SUM(c.CON_COUNT), 0) AS CONSIGNMENTS_COUNT,
        COALESCE(SUM(c.CONS_PCT), 0.0) AS CONSIGNMENTS_PCT,
        COALESCE(SUM(c.TOTAL_REV_EUR), 0.0) AS REVENUE_TOTAL,
        COALESCE(SUM(c.REV_PCT), 0.0) AS REVENUE_PCT
    FROM members m
    LEFT JOIN customers c ON m.COU_ID_ACC = c.COU_ID_ACC AND m.ACC_ID = c.ACC_ID
"""


class CustomerKey(NamedTuple):
    country_id: str
    account_id: str

    @classmethod
    def of(cls, country_id, account_id) -> "CustomerKey":
        return cls(str(country_id).strip(), str(account_id).strip())


@dataclass(frozen=True)
class WaveMetrics:
    customers_count: int = 0
    consignments_count: int = 0
    consignments_pct: float = 0.0
    revenue_total: float = 0.0
    revenue_pct: float = 0.0


@dataclass(frozen=True)
class Wave:
    wave_id: int
    name: str
    year: int
    month: int
    metrics: WaveMetrics


@dataclass(frozen=True)
class WaveAssignment:
    key: CustomerKey
    wave_id: int


@dataclass(frozen=True)
class WaveCustomer:
    key: CustomerKey
    customer_name: str | None
    consignment_count: int
    total_revenue: float
    revenue_pct: float
    consignment_pct: float
    rank: int | None
    wave_id: int | None


def _validate_wave_fields(name: str, year: int, month: int) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Wave name must not be blank")
    if not 1 <= int(month) <= 12:
        raise ValueError(f"Wave month must be 1..12, got {month}")
    if int(year) < 1:
        raise ValueError(f"Wave year must be positive, got {year}")
    return name


def compute_wave_metrics(con: duckdb.DuckDBPyConnection, wave_id: int) -> WaveMetrics:
    """Aggregate the customers currently assigned to wave_id. Zeros when empty."""
    row = con.execute(AGGREGATE_SQL, [wave_id]).fetchone()
    if row is None:
        return WaveMetrics()
    return WaveMetrics(
        customers_count=int(row[0] or 0),
        consignments_count=int(row[1] or 0),
        consignments_pct=float(row[2] or 0.0),
        revenue_total=float(row[3] or 0.0),
        revenue_pct=float(row[4] or 0.0),
    )


def store_wave_metrics(con: duckdb.DuckDBPyConnection, wave_id: int, metrics: WaveMetrics) -> None:
    con.execute(
        "UPDATE WAVES SET CUSTOMERS_COUNT = ?, CONSIGNMENTS_COUNT = ?, CONSIGNMENTS_PCT = ?, "
        "REVENUE_TOTAL = ?, REVENUE_PCT = ? WHERE WAVE_ID = ?",
        [metrics.customers_count, metrics.consignments_count, metrics.consignments_pct,
         metrics.revenue_total, metrics.revenue_pct, wave_id]
    )


def recompute_wave(con: duckdb.DuckDBPyConnection, wave_id: int) -> WaveMetrics:
    metrics = compute_wave_metrics(con, wave_id)
    store_wave_metrics(con, wave_id, metrics)
    return metrics


def wave_exists(con: duckdb.DuckDBPyConnection, wave_id: int) -> bool:
    return con.execute("SELECT COUNT(*) FROM WAVES WHERE WAVE_ID = ?", [wave_id]).fetchone()[0] > 0


def current_wave(con: duckdb.DuckDBPyConnection, key: CustomerKey) -> int | None:
    row = con.execute(
        "SELECT WAVE_ID FROM WAVE_ASSIGNMENTS WHERE COU_ID_ACC = ? AND ACC_ID = ?",
        [key.country_id, key.account_id]
    ).fetchone()
    return row[0] if row else None


def _in_transaction(con: duckdb.DuckDBPyConnection, fn, *args):
    con.begin()
    try:
        result = fn(con, *args)
    except Exception:
        con.rollback()
        raise
    con.commit()
    return result


def _assign(con: duckdb.DuckDBPyConnection, keys: list[CustomerKey], wave_id: int | None) -> set[int]:
    """Move keys to wave_id (None = unassign). Returns the waves recomputed."""
    if wave_id is not None and not wave_exists(con, wave_id):
        raise KeyError(f"Unknown wave: {wave_id}")

    touched: set[int] = set()
    for key in keys:
        old_wave_id = current_wave(con, key)
        # Upsert without delete+insert of the same key in one transaction
        if old_wave_id is not None and wave_id is None:
            con.execute(
                "DELETE FROM WAVE_ASSIGNMENTS WHERE COU_ID_ACC = ? AND ACC_ID = ?",
                [key.country_id, key.account_id]
            )
        elif old_wave_id is not None:
            con.execute(
                "UPDATE WAVE_ASSIGNMENTS SET WAVE_ID = ? WHERE COU_ID_ACC = ? AND ACC_ID = ?",
                [wave_id, key.country_id, key.account_id]
            )
        elif wave_id is not None:
            con.execute(
                "INSERT INTO WAVE_ASSIGNMENTS (COU_ID_ACC, ACC_ID, WAVE_ID) VALUES (?, ?, ?)",
                [key.country_id, key.account_id, wave_id]
            )
        if old_wave_id is not None and old_wave_id != wave_id:
            touched.add(old_wave_id)
    if wave_id is not None:
        touched.add(wave_id)

    for wid in sorted(touched):
        recompute_wave(con, wid)
    return touched


def _create_wave(con: duckdb.DuckDBPyConnection, wave_id: int, name: str, year: int, month: int) -> None:
    if wave_exists(con, wave_id):
        raise ValueError(f"Wave {wave_id} already exists")
    con.execute(
        "INSERT INTO WAVES (WAVE_ID, WAVE_NAME, YEAR, MONTH) VALUES (?, ?, ?, ?)",
        [wave_id, name, year, month]
    )
    recompute_wave(con, wave_id)


def _update_wave(con: duckdb.DuckDBPyConnection, wave_id: int, name: str, year: int, month: int) -> None:
    if not wave_exists(con, wave_id):
        raise KeyError(f"Unknown wave: {wave_id}")
    con.execute(
        "UPDATE WAVES SET WAVE_NAME = ?, YEAR = ?, MONTH = ? WHERE WAVE_ID = ?",
        [name, year, month, wave_id]
    )
    recompute_wave(con, wave_id)


def _recompute_all(con: duckdb.DuckDBPyConnection) -> list[int]:
    wave_ids = [r[0] for r in con.execute("SELECT WAVE_ID FROM WAVES ORDER BY WAVE_ID").fetchall()]
    for wid in wave_ids:
        recompute_wave(con, wid)
    return wave_ids


def _delete_wave(con: duckdb.DuckDBPyConnection, wave_id: int) -> int:
    if not wave_exists(con, wave_id):
        raise KeyError(f"Unknown wave: {wave_id}")
    removed = con.execute(
        "SELECT COUNT(*) FROM WAVE_ASSIGNMENTS WHERE WAVE_ID = ?", [wave_id]
    ).fetchone()[0]
    con.execute("DELETE FROM WAVE_ASSIGNMENTS WHERE WAVE_ID = ?", [wave_id])
    con.execute("DELETE FROM WAVES WHERE WAVE_ID = ?", [wave_id])
    return removed


def _snapshot(con: duckdb.DuckDBPyConnection) -> tuple[list[dict], list[dict]]:
    waves = fetch_records(con, "SELECT * FROM WAVES ORDER BY WAVE_ID")
    assignments = fetch_records(
        con, "SELECT * FROM WAVE_ASSIGNMENTS ORDER BY WAVE_ID, COU_ID_ACC, ACC_ID"
    )
    return waves, assignments


def _restore(con: duckdb.DuckDBPyConnection, waves: list[dict], assignments: list[dict]) -> None:
    """Rebuild the wave tables from persisted documents."""
    for table, ddl in WAVE_TABLES.items():
        con.execute(f"DROP TABLE IF EXISTS {table}")
        con.execute(ddl)

    for w in waves:
        con.execute(
            "INSERT INTO WAVES (WAVE_ID, WAVE_NAME, YEAR, MONTH, CUSTOMERS_COUNT, CONSIGNMENTS_COUNT, "
            "CONSIGNMENTS_PCT, REVENUE_TOTAL, REVENUE_PCT) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [int(w["WAVE_ID"]), str(w["WAVE_NAME"]).strip(), int(w["YEAR"]), int(w["MONTH"]),
             _coerce(w.get("CUSTOMERS_COUNT"), int), _coerce(w.get("CONSIGNMENTS_COUNT"), int),
             _coerce(w.get("CONSIGNMENTS_PCT"), float), _coerce(w.get("REVENUE_TOTAL"), float),
             _coerce(w.get("REVENUE_PCT"), float)]
        )
    latest: dict[CustomerKey, int] = {}
    for a in assignments:
        latest[CustomerKey.of(a["COU_ID_ACC"], a["ACC_ID"])] = int(a["WAVE_ID"])
    for key, wid in latest.items():
        con.execute(
            "INSERT INTO WAVE_ASSIGNMENTS (COU_ID_ACC, ACC_ID, WAVE_ID) VALUES (?, ?, ?)",
            [key.country_id, key.account_id, wid]
        )


def _coerce(value, kind):
    """Stored metric -> number; missing, unparseable or non-finite becomes zero."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return kind(0)
    if not math.isfinite(number):
        return kind(0)
    return kind(number)


def _wave_from_record(r: dict) -> Wave:
    return Wave(
        wave_id=r["WAVE_ID"],
        name=r["WAVE_NAME"],
        year=r["YEAR"],
        month=r["MONTH"],
        metrics=WaveMetrics(
            customers_count=r["CUSTOMERS_COUNT"],
            consignments_count=r["CONSIGNMENTS_COUNT"],
            consignments_pct=r["CONSIGNMENTS_PCT"],
            revenue_total=r["REVENUE_TOTAL"],
            revenue_pct=r["REVENUE_PCT"],
        ),
    )


class WaveMetricsEngine:
    """Wave CRUD and customer assignment over the WAVES / WAVE_ASSIGNMENTS tables."""

    def __init__(self, engine: AnalyticsEngine, store: OverrideStore):
        self.engine = engine
        self.store = store

    async def restore(self) -> None:
        """Recreate the wave tables from the store (empty when nothing is stored)."""
        waves = self.store.get(WAVES_KEY) or []
        assignments = self.store.get(ASSIGNMENTS_KEY) or []
        await self.engine.run(_in_transaction, _restore, waves, assignments)
        logger.info(f"Restored WAVES ({len(waves)} waves) and WAVE_ASSIGNMENTS ({len(assignments)} assignments)")

    async def _persist(self) -> None:
        waves, assignments = await self.engine.run(_snapshot)
        self.store.set(WAVES_KEY, waves)
        self.store.set(ASSIGNMENTS_KEY, assignments)

    async def recompute_all(self) -> None:
        """Refresh every wave's metrics, e.g. after wave_customers was reloaded."""
        wave_ids = await self.engine.run(_in_transaction, _recompute_all)
        await self._persist()
        logger.info(f"Recomputed metrics for {len(wave_ids)} wave(s)")

    async def aggregate(self, wave_id: int) -> WaveMetrics:
        return await self.engine.run(compute_wave_metrics, wave_id)

    async def assign(self, key: CustomerKey, wave_id: int | None) -> None:
        """Assign a customer to wave_id, or unassign with None."""
        await self.assign_many([key], wave_id)

    async def assign_many(self, keys: Iterable[CustomerKey], wave_id: int | None) -> None:
        keys = [CustomerKey.of(*k) for k in keys]
        touched = await self.engine.run(_in_transaction, _assign, keys, wave_id)
        await self._persist()
        action = "Removed" if wave_id is None else f"Assigned to wave {wave_id}"
        logger.info(f"{action}: {len(keys)} customer(s); recomputed waves {sorted(touched)}")

    async def create_wave(self, wave_id: int, name: str, year: int, month: int) -> Wave:
        name = _validate_wave_fields(name, year, month)
        await self.engine.run(_in_transaction, _create_wave, int(wave_id), name, int(year), int(month))
        await self._persist()
        logger.info(f"Created wave {wave_id}: {name} ({year}-{int(month):02d})")
        return await self.get_wave(wave_id)

    async def update_wave(self, wave_id: int, name: str, year: int, month: int) -> Wave:
        name = _validate_wave_fields(name, year, month)
        await self.engine.run(_in_transaction, _update_wave, int(wave_id), name, int(year), int(month))
        await self._persist()
        logger.info(f"Updated wave {wave_id}: {name} ({year}-{int(month):02d})")
        return await self.get_wave(wave_id)

    async def delete_wave(self, wave_id: int) -> int:
        """Delete a wave and its assignments. Returns the number of customers unassigned."""
        removed = await self.engine.run(_in_transaction, _delete_wave, int(wave_id))
        await self._persist()
        logger.info(f"Deleted wave {wave_id} ({removed} assignment(s) removed)")
        return removed

    async def get_wave(self, wave_id: int) -> Wave:
        rows = await self.engine.run(fetch_records, "SELECT * FROM WAVES WHERE WAVE_ID = ?", [int(wave_id)])
        if not rows:
            raise KeyError(f"Unknown wave: {wave_id}")
        return _wave_from_record(rows[0])

    async def list_waves(self) -> list[Wave]:
        rows = await self.engine.run(fetch_records, "SELECT * FROM WAVES ORDER BY YEAR, MONTH, WAVE_ID")
        return [_wave_from_record(r) for r in rows]

    async def list_assignments(self) -> list[WaveAssignment]:
        rows = await self.engine.run(
            fetch_records, "SELECT * FROM WAVE_ASSIGNMENTS ORDER BY WAVE_ID, COU_ID_ACC, ACC_ID"
        )
        return [WaveAssignment(CustomerKey(r["COU_ID_ACC"], r["ACC_ID"]), r["WAVE_ID"]) for r in rows]

    async def wave_of(self, key: CustomerKey) -> int | None:
        return await self.engine.run(current_wave, CustomerKey.of(*key))

    async def next_wave_id(self) -> int:
        rows = await self.engine.run(fetch_records, "SELECT COALESCE(MAX(WAVE_ID), 0) + 1 AS next_id FROM WAVES")
        return rows[0]["next_id"]

    async def list_customers(self) -> list[WaveCustomer]:
        """wave_customers with each customer's current wave, in rank order."""
        rows = await self.engine.run(fetch_records, """
            SELECT
                TRIM(CAST(wc.COU_ID_ACC AS VARCHAR)) AS COU_ID_ACC,
                TRIM(CAST(wc.ACC_ID AS VARCHAR)) AS ACC_ID,
                wc.CustomerName,
                COALESCE(TRY_CAST(wc.CON_COUNT AS BIGINT), 0) AS CON_COUNT,
                COALESCE(TRY_CAST(wc.TOTAL_REV_EUR AS DOUBLE), 0.0) AS TOTAL_REV_EUR,
                COALESCE(TRY_CAST(wc.REV_PCT AS DOUBLE), 0.0) AS REV_PCT,
                COALESCE(TRY_CAST(wc.CONS_PCT AS DOUBLE), 0.0) AS CONS_PCT,
                TRY_CAST(wc.RN AS BIGINT) AS RN,
                wa.WAVE_ID
            FROM wave_customers wc
            LEFT JOIN WAVE_ASSIGNMENTS wa
                ON TRIM(CAST(wc.COU_ID_ACC AS VARCHAR)) = wa.COU_ID_ACC
                AND TRIM(CAST(wc.ACC_ID AS VARCHAR)) = wa.ACC_ID
            ORDER BY 8 NULLS LAST, 1, 2
        """)
        return [
            WaveCustomer(
                key=CustomerKey(r["COU_ID_ACC"], r["ACC_ID"]),
                customer_name=r["CustomerName"],
                consignment_count=r["CON_COUNT"],
                total_revenue=r["TOTAL_REV_EUR"],
                revenue_pct=r["REV_PCT"],
                consignment_pct=r["CONS_PCT"],
                rank=r["RN"],
                wave_id=r["WAVE_ID"],
            )
            for r in rows
        ]
