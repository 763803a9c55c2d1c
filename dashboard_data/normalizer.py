"""Schema normalization -- rename rules ONLY from config, no hardcoded variants.

Builds the projection that turns a staged source into its canonical row
shape: known source columns are renamed, string columns are trimmed
(fixed-width sources pad their text fields). One output column per input
column, always.
"""
from dataclasses import dataclass
from typing import Any

from dashboard_data.config import AppConfig
from dashboard_data.engine import quote_identifier
from dashboard_data.errors import EmptySource

STRING_TYPES = frozenset({"VARCHAR", "TEXT", "STRING", "CHAR", "BPCHAR"})


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str


def is_string_type(data_type: str) -> bool:
    """VARCHAR, VARCHAR(n), TEXT, ... but not VARCHAR[] lists."""
    base = data_type.upper().split("(")[0].strip()
    return base in STRING_TYPES


def ensure_tabular(table_name: str, data: Any) -> list[dict]:
    """Reject sources that are not a non-empty list of records."""
    if not isinstance(data, list):
        raise EmptySource(table_name, f"expected a list of records, got {type(data).__name__}")
    if len(data) == 0:
        raise EmptySource(table_name, "source has zero rows")
    if not all(isinstance(row, dict) for row in data):
        raise EmptySource(table_name, "source rows are not all objects")
    return data


def normalize(table_name: str, columns: list[ColumnInfo], config: AppConfig) -> list[str]:
    """Build one SELECT expression per staged column.

    Renamed columns become `source AS target`; string columns are wrapped
    in TRIM(). Unknown columns pass through under their own name.
    """
    if not columns:
        raise EmptySource(table_name, "source has no columns")

    rename_map = config.get_rename_map(table_name)
    exprs = []
    for col in columns:
        target = rename_map.get(col.name.lower().strip(), col.name)
        expr = quote_identifier(col.name)
        if is_string_type(col.data_type):
            expr = f"TRIM({expr})"
        exprs.append(f"{expr} AS {quote_identifier(target)}")
    return exprs
