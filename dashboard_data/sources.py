"""Bundled source fetchers: a local data directory or an HTTP base URL."""
import asyncio
import logging
from pathlib import Path
from typing import Protocol

import httpx

from dashboard_data.config import AppConfig, TableSpec
from dashboard_data.errors import SourceUnavailable

logger = logging.getLogger(__name__)


class Source(Protocol):
    async def fetch(self, table: TableSpec) -> bytes:
        ...


class DirectorySource:
    """Reads <data_dir>/<table.source>."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    async def fetch(self, table: TableSpec) -> bytes:
        path = self.data_dir / table.source
        logger.info(f"  - Reading {path}...")
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise SourceUnavailable(table.name, f"bundled file not found: {path}")
        except OSError as e:
            raise SourceUnavailable(table.name, f"cannot read {path}: {e}") from e


class HttpSource:
    """GETs <base_url>/<table.source>; any non-2xx status is unavailable."""

    def __init__(self, base_url: str, timeout_seconds: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self.transport = transport

    async def fetch(self, table: TableSpec) -> bytes:
        url = f"{self.base_url}/{table.source}"
        logger.info(f"  - Fetching {url}...")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise SourceUnavailable(table.name, f"request to {url} failed: {e}") from e

        if not response.is_success:
            raise SourceUnavailable(table.name, f"{response.status_code} {response.reason_phrase}")
        return response.content


def build_source(config: AppConfig) -> Source:
    """Pick the fetcher configured in loader.yaml."""
    if config.sources.kind == "http":
        return HttpSource(config.sources.base_url, config.sources.timeout_seconds)
    return DirectorySource(config.sources.data_dir)
