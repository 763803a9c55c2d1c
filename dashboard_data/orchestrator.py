"""Staged loading of all configured tables.

Phases: initialize engine -> priority table (blocking) -> remaining tables
concurrently -> one delayed retry pass -> complete.

Only the engine and the priority table are fatal. Every other table may
fail; the cycle still completes and reports what is missing.
"""
import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from dashboard_data.config import AppConfig
from dashboard_data.engine import AnalyticsEngine
from dashboard_data.errors import EngineInitError, QueryError
from dashboard_data.loader import TableLoadResult, TableLoader
from dashboard_data.retry import Sleep, retry_pass
from dashboard_data.waves import WaveMetricsEngine

logger = logging.getLogger(__name__)

# Progress allocation (percent)
PROGRESS_INITIALIZING = 10
PROGRESS_ENGINE_READY = 20
PROGRESS_PRIORITY_DONE = 40
PROGRESS_BACKGROUND_SPAN = 59
PROGRESS_COMPLETE = 100


class LoadPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING_ENGINE = "initializing_db"
    LOADING_PRIORITY = "loading_priority"
    LOADING_BACKGROUND = "loading_background"
    COMPLETE = "complete"


@dataclass
class LoadingState:
    phase: LoadPhase = LoadPhase.IDLE
    progress: int = 0
    currently_loading: str | None = None
    loaded_tables: list[str] = field(default_factory=list)
    failed_tables: list[str] = field(default_factory=list)
    retry_attempts: dict[str, int] = field(default_factory=dict)
    row_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    def snapshot(self) -> "LoadingState":
        return dataclasses.replace(
            self,
            loaded_tables=list(self.loaded_tables),
            failed_tables=list(self.failed_tables),
            retry_attempts=dict(self.retry_attempts),
            row_counts=dict(self.row_counts),
        )


Listener = Callable[[LoadingState], None]


class StagedLoadOrchestrator:
    """Runs load cycles and publishes LoadingState after every change.

    load() while a cycle is in flight returns that cycle's result instead
    of starting a second one, unless force_reload is set.
    """

    def __init__(
        self,
        engine: AnalyticsEngine,
        loader: TableLoader,
        config: AppConfig,
        waves: WaveMetricsEngine | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.engine = engine
        self.loader = loader
        self.config = config
        self.waves = waves
        self.sleep = sleep
        self._state = LoadingState()
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> LoadingState:
        return self._state.snapshot()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, **changes) -> None:
        progress = changes.pop("progress", None)
        for name, value in changes.items():
            setattr(self._state, name, value)
        if progress is not None:
            self._state.progress = max(self._state.progress, progress)
        snapshot = self._state.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"LoadingState listener {listener!r} failed")

    async def load(self, force_reload: bool = False) -> LoadingState:
        if self._task is not None and not self._task.done():
            if not force_reload:
                logger.info("Load already in progress, waiting...")
                return await asyncio.shield(self._task)
            # Let the running cycle settle before tearing the engine down
            await asyncio.wait([self._task])

        self._task = asyncio.ensure_future(self._run(force_reload))
        return await asyncio.shield(self._task)

    async def _run(self, force_reload: bool) -> LoadingState:
        cycle_start = time.perf_counter()
        self._state = LoadingState()
        priority = self.config.priority_table.name
        background = [t.name for t in self.config.background_tables]

        # ===== PHASE 1: Initialize engine =====
        self._publish(phase=LoadPhase.INITIALIZING_ENGINE, progress=PROGRESS_INITIALIZING)
        init_start = time.perf_counter()
        wave_errors: list[str] = []
        try:
            await self.engine.open(force_reload=force_reload)
        except EngineInitError as e:
            logger.error(f"Failed to initialize analytics engine: {e}")
            self._publish(
                phase=LoadPhase.IDLE,
                error=f"Failed to initialize the analytics engine: {e}",
            )
            return self.state
        if self.waves is not None:
            # Wave state is best-effort; a bad store never blocks table loading
            try:
                await self.waves.restore()
            except (QueryError, KeyError, ValueError, TypeError, OSError) as e:
                logger.error(f"Could not restore wave state: {e}")
                wave_errors.append(f"Could not restore wave state: {e}")
        init_ms = (time.perf_counter() - init_start) * 1000
        logger.info(f"[Timing] Engine init completed in {init_ms:.2f}ms")
        self._publish(progress=PROGRESS_ENGINE_READY)

        # ===== PHASE 2: Priority table =====
        self._publish(phase=LoadPhase.LOADING_PRIORITY, currently_loading=priority)
        result = await self.loader.load_table(priority)
        if not result.ok:
            logger.error(f"Failed to load priority table {priority}: {result.error}")
            label = self.config.priority_table.label
            self._publish(
                phase=LoadPhase.IDLE,
                currently_loading=None,
                failed_tables=[priority],
                error=f"Failed to load primary dataset ({label}): {result.error.message}",
            )
            return self.state
        logger.info(f"[Timing] Priority table {priority} loaded in {result.elapsed_ms:.2f}ms ({result.rows} rows)")
        self._publish(
            currently_loading=None,
            loaded_tables=[priority],
            row_counts={priority: result.rows},
            progress=PROGRESS_PRIORITY_DONE,
        )

        # ===== PHASE 3: Remaining tables, concurrently =====
        await self.sleep(self.config.background_delay)
        self._publish(phase=LoadPhase.LOADING_BACKGROUND)

        bg_start = time.perf_counter()
        settled = 0
        failed: list[str] = []

        async def load_one(table_name: str) -> TableLoadResult:
            nonlocal settled
            res = await self.loader.load_table(table_name)
            settled += 1
            if res.ok:
                self._state.loaded_tables.append(table_name)
                self._state.row_counts[table_name] = res.rows
            else:
                failed.append(table_name)
            self._publish(
                progress=PROGRESS_PRIORITY_DONE + (PROGRESS_BACKGROUND_SPAN * settled) // len(background),
            )
            return res

        outcomes = await asyncio.gather(*(load_one(t) for t in background), return_exceptions=True)
        for table_name, outcome in zip(background, outcomes):
            # load_table reports errors in its result; anything raised is unexpected
            if isinstance(outcome, BaseException) and table_name not in failed:
                logger.error(f"  {table_name} raised during background load: {outcome}")
                failed.append(table_name)

        # Keep configured order for reporting
        failed = [t for t in background if t in failed]
        bg_ms = (time.perf_counter() - bg_start) * 1000
        logger.info(f"[Timing] Background: {len(background)} table(s) settled in {bg_ms:.2f}ms")
        self._publish(failed_tables=list(failed))

        # ===== Retry failed tables once, after a delay =====
        if failed:
            logger.info(f"[Retry] Retrying {len(failed)} failed table(s): {', '.join(failed)}")
            recovered, failed = await retry_pass(failed, self._retry_one, self.config.retry_policy, self.sleep)
            if recovered:
                logger.info(f"[Retry] Recovered: {', '.join(recovered)}")
            self._publish(failed_tables=list(failed))

        if self.waves is not None and "wave_customers" in self._state.loaded_tables:
            try:
                await self.waves.recompute_all()
            except (QueryError, OSError) as e:
                logger.error(f"Could not refresh wave metrics: {e}")
                wave_errors.append(f"Could not refresh wave metrics: {e}")

        # ===== COMPLETE =====
        total_ms = (time.perf_counter() - cycle_start) * 1000
        loaded = self._state.loaded_tables
        logger.info(f"[SUMMARY] Loaded {len(loaded)}/{len(self.config.tables)} tables in {total_ms:.2f}ms")
        errors = []
        if failed:
            logger.warning(f"[SUMMARY] Failed: {len(failed)} table(s) - {', '.join(failed)}")
            errors.append(f"Could not load {len(failed)} dataset(s): {', '.join(failed)}")
        errors.extend(wave_errors)
        error = "; ".join(errors) or None
        self._publish(phase=LoadPhase.COMPLETE, progress=PROGRESS_COMPLETE, error=error)
        return self.state

    async def _retry_one(self, table_name: str) -> bool:
        attempts = self._state.retry_attempts
        attempts[table_name] = attempts.get(table_name, 0) + 1
        res = await self.loader.load_table(table_name)
        if res.ok:
            self._state.loaded_tables.append(table_name)
            self._state.row_counts[table_name] = res.rows
            self._state.failed_tables = [t for t in self._state.failed_tables if t != table_name]
            logger.info(f"[Retry] {table_name} succeeded in {res.elapsed_ms:.2f}ms ({res.rows} rows)")
        else:
            logger.error(f"[Retry] {table_name} failed again: {res.error}")
        self._publish()
        return res.ok
