"""Maintenance console for the dashboard's analytical data layer.

Every action first runs a staged load so the console sees what the
dashboard sees. Supports: --load, --reload, --status, --query SQL,
--upload TABLE FILE, --clear-override TABLE, --export TABLE, --waves,
--create-wave, --update-wave, --assign, --unassign, --delete-wave.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is on sys.path
sys.path.insert(0, str(Path(__file__).parent))

from dashboard_data.config import AppConfig
from dashboard_data.engine import AnalyticsEngine, get_row_counts
from dashboard_data.errors import DataLayerError
from dashboard_data.loader import TableLoader
from dashboard_data.orchestrator import LoadPhase, LoadingState, StagedLoadOrchestrator
from dashboard_data.overrides import OverrideStore
from dashboard_data.query import export_csv, query
from dashboard_data.waves import CustomerKey, WaveMetricsEngine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def print_state(state: LoadingState) -> None:
    print("\n" + "=" * 60)
    print("Dashboard Data Layer Status")
    print("=" * 60)
    print(f"\nPhase: {state.phase.value} ({state.progress}%)")
    if state.error:
        print(f"Error: {state.error}")

    print("\nLoaded Tables:")
    for tbl in state.loaded_tables:
        print(f"  {tbl}: {state.row_counts.get(tbl, 0):,}")
    if state.failed_tables:
        print("\nFailed Tables:")
        for tbl in state.failed_tables:
            retries = state.retry_attempts.get(tbl, 0)
            print(f"  {tbl} (retried {retries}x)")
    print("\n" + "=" * 60)


def print_records(rows: list[dict]) -> None:
    if not rows:
        print("(no rows)")
        return
    columns = list(rows[0].keys())
    print(" | ".join(columns))
    for row in rows:
        print(" | ".join("" if row[c] is None else str(row[c]) for c in columns))
    print(f"({len(rows)} rows)")


async def print_waves(waves: WaveMetricsEngine) -> None:
    print("\nWaves:")
    all_waves = await waves.list_waves()
    if not all_waves:
        print("  No waves defined.")
    for w in all_waves:
        m = w.metrics
        print(
            f"  [{w.wave_id}] {w.name} {w.year}-{w.month:02d}: "
            f"{m.customers_count} customers, {m.consignments_count:,} consignments ({m.consignments_pct:.2%}), "
            f"revenue {m.revenue_total:,.2f} ({m.revenue_pct:.2%})"
        )


async def run(args: argparse.Namespace, config: AppConfig) -> int:
    engine = AnalyticsEngine(config.database)
    store = OverrideStore(config.override_dir)
    loader = TableLoader(engine, config, store=store)
    waves = WaveMetricsEngine(engine, store)
    orchestrator = StagedLoadOrchestrator(engine, loader, config, waves=waves)

    try:
        if args.clear_override:
            removed = loader.clear_override(args.clear_override)
            logger.info(f"Override for {args.clear_override}: {'removed' if removed else 'none stored'}")
            return 0

        state = await orchestrator.load(force_reload=args.reload)
        if state.phase != LoadPhase.COMPLETE:
            print_state(state)
            return 1

        if args.load or args.reload:
            print_state(state)

        elif args.status:
            print_state(state)
            counts = await engine.run(get_row_counts)
            print("\nEngine Tables:")
            for tbl, cnt in sorted(counts.items()):
                print(f"  {tbl}: {cnt:,}")
            print("\nStored Overrides:")
            for key in store.keys() or ["(none)"]:
                print(f"  {key}")
            await print_waves(waves)

        elif args.query:
            print_records(await query(engine, args.query))

        elif args.upload:
            table_name, file_path = args.upload
            path = Path(file_path)
            fmt = "json" if path.suffix.lower() == ".json" else "csv"
            rows = await loader.upload(table_name, path.read_bytes(), fmt=fmt)
            logger.info(f"{table_name} replaced with {rows} rows from {path.name}")

        elif args.export:
            sys.stdout.write(await export_csv(engine, args.export))

        elif args.waves:
            await print_waves(waves)

        elif args.create_wave:
            wave_id, name, year, month = args.create_wave
            if wave_id == "next":
                wave_id = await waves.next_wave_id()
            await waves.create_wave(int(wave_id), name, int(year), int(month))
            await print_waves(waves)

        elif args.update_wave:
            wave_id, name, year, month = args.update_wave
            await waves.update_wave(int(wave_id), name, int(year), int(month))
            await print_waves(waves)

        elif args.assign:
            country_id, account_id, wave_id = args.assign
            await waves.assign(CustomerKey.of(country_id, account_id), int(wave_id))
            await print_waves(waves)

        elif args.unassign:
            await waves.assign(CustomerKey.of(*args.unassign), None)
            await print_waves(waves)

        elif args.delete_wave is not None:
            await waves.delete_wave(args.delete_wave)
            await print_waves(waves)

    except (DataLayerError, KeyError, ValueError) as e:
        logger.error(f"Command failed: {e}")
        return 1
    finally:
        await engine.close()

    return 0


def main():
    parser = argparse.ArgumentParser(description="Dashboard Data Layer Console")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--load", action="store_true", help="Run one staged load and report")
    group.add_argument("--reload", action="store_true", help="Force a fresh engine and reload all tables")
    group.add_argument("--status", action="store_true", help="Show loaded tables, row counts and waves")
    group.add_argument("--query", metavar="SQL", help="Run a read query against the loaded tables")
    group.add_argument("--upload", nargs=2, metavar=("TABLE", "FILE"), help="Replace a table with a CSV/JSON file")
    group.add_argument("--clear-override", metavar="TABLE", help="Forget an uploaded table override")
    group.add_argument("--export", metavar="TABLE", help="Write a table as CSV to stdout")
    group.add_argument("--waves", action="store_true", help="List waves with their metrics")
    group.add_argument("--create-wave", nargs=4, metavar=("ID", "NAME", "YEAR", "MONTH"),
                       help="Create a wave (ID may be 'next')")
    group.add_argument("--update-wave", nargs=4, metavar=("ID", "NAME", "YEAR", "MONTH"), help="Rename/reschedule a wave")
    group.add_argument("--assign", nargs=3, metavar=("COUNTRY", "ACCOUNT", "WAVE"), help="Assign a customer to a wave")
    group.add_argument("--unassign", nargs=2, metavar=("COUNTRY", "ACCOUNT"), help="Remove a customer from its wave")
    group.add_argument("--delete-wave", type=int, metavar="ID", help="Delete a wave and its assignments")

    args = parser.parse_args()
    config = AppConfig()
    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
