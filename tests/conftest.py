"""Shared test fixtures for the dashboard data layer tests."""
import asyncio
import json
import sys
from pathlib import Path

import pytest
import yaml

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dashboard_data.config import AppConfig
from dashboard_data.errors import SourceUnavailable
from dashboard_data.overrides import OverrideStore

PROJECT_ROOT = Path(__file__).parent.parent

BOOKINGS_CSV = (
    'QueryName,YearVal,MonthVal,Country,BookingType,RecordCount\n'
    'bookings,2024,1,"  DE  ","  EXPRESS  ",10\n'
    'bookings,2024,2,FR,ECONOMY,20\n'
    'bookings,2024,3,NL,EXPRESS,30\n'
).encode("utf-8")

COUNTRY_LIST = [
    {"code": "DE", "name": "Germany"},
    {"code": "FR", "name": "France"},
]

WAVE_CUSTOMERS = [
    {"COU_ID_ACC": "DE", "ACC_ID": "100", "CustomerName": "Acme GmbH", "CON_COUNT": 50,
     "TOTAL_REV_EUR": 1000.0, "REV_PCT": 0.02, "CONS_PCT": 0.01, "RN": 1},
    {"COU_ID_ACC": "FR", "ACC_ID": "200", "CustomerName": "Bleu SA", "CON_COUNT": 30,
     "TOTAL_REV_EUR": 500.0, "REV_PCT": 0.01, "CONS_PCT": 0.006, "RN": 2},
    {"COU_ID_ACC": "NL", "ACC_ID": "300", "CustomerName": "Oranje BV", "CON_COUNT": 20,
     "TOTAL_REV_EUR": 250.0, "REV_PCT": 0.005, "CONS_PCT": 0.004, "RN": 3},
]


def rows_payload(count: int) -> bytes:
    """JSON array of `count` simple records."""
    return json.dumps([{"id": i, "label": f"row {i}"} for i in range(count)]).encode("utf-8")


class FakeSource:
    """Scripted bundled source.

    Each table maps to a list of steps (payload bytes or an exception to
    raise). Steps are consumed in order; the last one repeats. Tables with
    no script are unavailable.
    """

    def __init__(self, script: dict):
        self.script = {name: list(steps) for name, steps in script.items()}
        self.calls: list[str] = []

    async def fetch(self, table):
        self.calls.append(table.name)
        steps = self.script.get(table.name)
        await asyncio.sleep(0)
        if not steps:
            raise SourceUnavailable(table.name, "404 Not Found")
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def data_dir(tmp_path):
    """Bundled data directory with a few real source files."""
    path = tmp_path / "data"
    path.mkdir()
    (path / "01_Bookings_JK.csv").write_bytes(BOOKINGS_CSV)
    (path / "country_list.json").write_text(json.dumps(COUNTRY_LIST), encoding="utf-8")
    (path / "wave_customers.json").write_text(json.dumps(WAVE_CUSTOMERS), encoding="utf-8")
    return path


@pytest.fixture
def config(tmp_path, data_dir):
    """Project config with data and override directories redirected to tmp."""
    return AppConfig(
        config_dir=PROJECT_ROOT / "config",
        data_dir=data_dir,
        override_dir=tmp_path / "overrides",
    )


@pytest.fixture
def store(config):
    return OverrideStore(config.override_dir)


@pytest.fixture
def make_config(tmp_path):
    """Write a throwaway config directory and load it."""

    def _make(tables, renames=None, loader=None):
        cfg_dir = tmp_path / "cfg"
        cfg_dir.mkdir(exist_ok=True)
        with open(cfg_dir / "tables.yaml", "w", encoding="utf-8") as f:
            yaml.safe_dump({"tables": tables}, f)
        with open(cfg_dir / "column_renames.yaml", "w", encoding="utf-8") as f:
            yaml.safe_dump({"renames": renames or {}}, f)
        with open(cfg_dir / "loader.yaml", "w", encoding="utf-8") as f:
            yaml.safe_dump(loader or {}, f)
        return AppConfig(
            config_dir=cfg_dir,
            data_dir=tmp_path / "data",
            override_dir=tmp_path / "overrides",
        )

    return _make


@pytest.fixture
def staged_config(make_config):
    """Priority table plus two background tables."""
    return make_config([
        {"name": "bookings_jk", "label": "Bookings (JK)", "source": "01_Bookings_JK.csv", "format": "csv"},
        {"name": "table_a", "label": "Table A"},
        {"name": "table_b", "label": "Table B"},
    ])


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
