"""Load and validate all YAML configuration files.

This is the config SSOT bridge: YAML files -> validated Python objects.
"""
import yaml
from pathlib import Path
from dataclasses import dataclass

from dashboard_data.retry import RetryPolicy

CONFIG_DIR = Path("config")

SUPPORTED_FORMATS = frozenset({"csv", "json"})
SUPPORTED_SOURCE_KINDS = frozenset({"directory", "http"})


@dataclass(frozen=True)
class TableSpec:
    name: str
    label: str
    source: str
    format: str


@dataclass(frozen=True)
class SourceSettings:
    kind: str
    data_dir: Path
    base_url: str
    timeout_seconds: float


class AppConfig:
    """Config holder, validated on construction."""

    def __init__(
        self,
        config_dir: Path | None = None,
        data_dir: Path | None = None,
        override_dir: Path | None = None,
        database: str | None = None,
    ):
        config_dir = Path(config_dir or CONFIG_DIR)
        root = config_dir.resolve().parent

        self.tables: list[TableSpec] = self._load_tables(config_dir / "tables.yaml")
        self.renames: dict[str, dict[str, str]] = self._load_renames(config_dir / "column_renames.yaml")

        loader = self._load_yaml(config_dir / "loader.yaml")
        engine = loader.get("engine", {})
        sources = loader.get("sources", {})
        overrides = loader.get("overrides", {})
        loading = loader.get("loading", {})
        retry = loading.get("retry", {})

        self.database: str = database or str(engine.get("database", ":memory:"))
        self.sources = SourceSettings(
            kind=sources.get("kind", "directory"),
            data_dir=Path(data_dir) if data_dir else root / sources.get("data_dir", "public/data"),
            base_url=sources.get("base_url", ""),
            timeout_seconds=float(sources.get("timeout_seconds", 30)),
        )
        self.override_dir: Path = (
            Path(override_dir) if override_dir else root / overrides.get("store_dir", "data/overrides")
        )
        self.background_delay: float = float(loading.get("background_delay_seconds", 0.1))
        self.retry_policy = RetryPolicy(
            max_attempts=int(retry.get("max_attempts", 1)),
            delay=float(retry.get("delay_seconds", 5.0)),
        )
        self._cross_validate()

    @staticmethod
    def _load_yaml(path: Path) -> dict:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _load_tables(self, path: Path) -> list[TableSpec]:
        raw = self._load_yaml(path)
        result = []
        for tdef in raw.get("tables", []):
            name = tdef["name"]
            fmt = tdef.get("format", "json")
            result.append(TableSpec(
                name=name,
                label=tdef.get("label", name),
                source=tdef.get("source", f"{name}.{fmt}"),
                format=fmt,
            ))
        return result

    def _load_renames(self, path: Path) -> dict[str, dict[str, str]]:
        raw = self._load_yaml(path)
        return {table: dict(mapping or {}) for table, mapping in raw.get("renames", {}).items()}

    def _cross_validate(self):
        """Cross-validate all configs for consistency."""
        if not self.tables:
            raise ValueError("tables.yaml defines no tables")

        seen = set()
        for spec in self.tables:
            if spec.name in seen:
                raise ValueError(f"Duplicate table in tables.yaml: '{spec.name}'")
            seen.add(spec.name)
            if spec.format not in SUPPORTED_FORMATS:
                raise ValueError(
                    f"Table '{spec.name}' has unsupported format: '{spec.format}'. "
                    f"Supported: {sorted(SUPPORTED_FORMATS)}"
                )

        # Rename rules may only reference configured tables (or "common")
        for table in self.renames:
            if table != "common" and table not in seen:
                raise ValueError(f"column_renames.yaml references unknown table: '{table}'")

        # Two source columns must not collapse onto one target
        for table in seen:
            targets = list(self.get_rename_map(table).values())
            dupes = sorted({t for t in targets if targets.count(t) > 1})
            if dupes:
                raise ValueError(f"Rename rules for '{table}' map several columns onto: {dupes}")

        if self.sources.kind not in SUPPORTED_SOURCE_KINDS:
            raise ValueError(
                f"Unsupported source kind: '{self.sources.kind}'. "
                f"Supported: {sorted(SUPPORTED_SOURCE_KINDS)}"
            )
        if self.sources.kind == "http" and not self.sources.base_url:
            raise ValueError("sources.base_url is required when sources.kind is 'http'")
        if self.background_delay < 0:
            raise ValueError(f"background_delay_seconds must be >= 0, got {self.background_delay}")

    @property
    def priority_table(self) -> TableSpec:
        return self.tables[0]

    @property
    def background_tables(self) -> list[TableSpec]:
        return self.tables[1:]

    def get_table(self, table_name: str) -> TableSpec:
        """Get the TableSpec for a configured table."""
        for spec in self.tables:
            if spec.name == table_name:
                return spec
        raise KeyError(f"Unknown table: '{table_name}'")

    def get_rename_map(self, table_name: str) -> dict[str, str]:
        """Build {lowercased_source_column -> target_name} for a table.

        Applies common renames first, then table-specific ones (override on conflict).
        """
        result: dict[str, str] = {}
        for source, target in self.renames.get("common", {}).items():
            result[source.lower().strip()] = target
        for source, target in self.renames.get(table_name, {}).items():
            result[source.lower().strip()] = target
        return result
