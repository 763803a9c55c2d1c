"""Local key-value store for uploaded table overrides and wave state.

One JSON document per key. A present `table_<name>` key means "prefer these
rows over the bundled source".
"""
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TABLE_KEY_PREFIX = "table_"

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.\-]+$")


def table_key(table_name: str) -> str:
    return f"{TABLE_KEY_PREFIX}{table_name}"


class OverrideStore:
    def __init__(self, store_dir: Path):
        self.store_dir = Path(store_dir)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Invalid store key: '{key}'")
        return self.store_dir / f"{key}.json"

    def get(self, key: str) -> Any | None:
        """Return the stored document, or None when the key is absent."""
        path = self._path(key)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def set(self, key: str, value: Any) -> None:
        """Write the document atomically (temp file + replace)."""
        path = self._path(key)
        self.store_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False, default=str)
        os.replace(tmp, path)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def keys(self) -> list[str]:
        if not self.store_dir.exists():
            return []
        return sorted(p.stem for p in self.store_dir.glob("*.json"))

    def __contains__(self, key: str) -> bool:
        return self._path(key).exists()
