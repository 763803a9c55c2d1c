"""Tests for table loading: source resolution, normalization, failure results."""
import asyncio
import json

import httpx
import polars as pl
import pytest

from dashboard_data.engine import AnalyticsEngine
from dashboard_data.errors import EmptySource, SourceUnavailable
from dashboard_data.loader import ORIGIN_BUNDLED, ORIGIN_OVERRIDE, TableLoader, parse_payload
from dashboard_data.overrides import table_key
from dashboard_data.query import export_csv, get_table_schema, query
from dashboard_data.sources import DirectorySource, HttpSource


def _run(config, store, steps, source=None):
    """Open an engine, hand steps(loader, engine) a loader, close the engine."""
    async def scenario():
        engine = AnalyticsEngine()
        await engine.open()
        loader = TableLoader(engine, config, source=source, store=store)
        try:
            return await steps(loader, engine)
        finally:
            await engine.close()

    return asyncio.run(scenario())


class TestLoadTable:
    """loadTable returns a result; it never raises for a bad table."""

    def test_priority_csv_renamed_and_trimmed(self, config, store):
        async def steps(loader, engine):
            result = await loader.load_table("bookings_jk")
            schema = await get_table_schema(engine, "bookings_jk")
            rows = await query(engine, 'SELECT * FROM bookings_jk ORDER BY "month"')
            return result, schema, rows

        result, schema, rows = _run(config, store, steps)
        assert result.ok
        assert result.rows == 3
        assert result.origin == ORIGIN_BUNDLED
        assert [c["column_name"] for c in schema] == [
            "queryName", "year", "month", "Country", "value01", "recordCount",
        ]
        assert rows[0]["Country"] == "DE"
        assert rows[0]["value01"] == "EXPRESS"
        assert rows[0]["year"] == 2024

    def test_json_table(self, config, store):
        async def steps(loader, engine):
            result = await loader.load_table("country_list")
            rows = await query(engine, "SELECT code, name FROM country_list ORDER BY code")
            return result, rows

        result, rows = _run(config, store, steps)
        assert result.rows == 2
        assert rows == [{"code": "DE", "name": "Germany"}, {"code": "FR", "name": "France"}]

    def test_reload_is_idempotent(self, config, store):
        """Loading twice yields the same row count as loading once."""
        async def steps(loader, engine):
            first = await loader.load_table("country_list")
            second = await loader.load_table("country_list")
            count = await query(engine, "SELECT COUNT(*) AS n FROM country_list")
            return first.rows, second.rows, count[0]["n"]

        assert _run(config, store, steps) == (2, 2, 2)

    def test_missing_source(self, config, store):
        """A missing bundled file is SourceUnavailable, returned not raised."""
        async def steps(loader, engine):
            return await loader.load_table("exceptions_yh")

        result = _run(config, store, steps)
        assert not result.ok
        assert isinstance(result.error, SourceUnavailable)
        assert result.error.table_name == "exceptions_yh"

    def test_empty_json(self, config, store, data_dir):
        (data_dir / "total_revenue.json").write_text("[]", encoding="utf-8")

        async def steps(loader, engine):
            return await loader.load_table("total_revenue")

        result = _run(config, store, steps)
        assert isinstance(result.error, EmptySource)

    def test_single_object_json(self, config, store, data_dir):
        (data_dir / "total_revenue.json").write_text('{"total": 5}', encoding="utf-8")

        async def steps(loader, engine):
            return await loader.load_table("total_revenue")

        assert isinstance(_run(config, store, steps).error, EmptySource)

    def test_malformed_json(self, config, store, data_dir):
        (data_dir / "total_revenue.json").write_text("[{", encoding="utf-8")

        async def steps(loader, engine):
            return await loader.load_table("total_revenue")

        assert isinstance(_run(config, store, steps).error, SourceUnavailable)

    def test_unknown_table(self, config, store):
        async def steps(loader, engine):
            return await loader.load_table("no_such_table")

        result = _run(config, store, steps)
        assert not result.ok
        assert result.error.table_name == "no_such_table"

    def test_failed_reload_keeps_previous_table(self, config, store, data_dir):
        """A failed reload leaves the last good table in place."""
        async def steps(loader, engine):
            await loader.load_table("country_list")
            (data_dir / "country_list.json").write_text("[]", encoding="utf-8")
            result = await loader.load_table("country_list")
            count = await query(engine, "SELECT COUNT(*) AS n FROM country_list")
            return result, count[0]["n"]

        result, count = _run(config, store, steps)
        assert not result.ok
        assert count == 2


class TestOverrides:
    """An uploaded override takes precedence over the bundled source."""

    def test_override_wins(self, config, store):
        store.set(table_key("country_list"), [{"code": " NL ", "name": "Netherlands"}])

        async def steps(loader, engine):
            result = await loader.load_table("country_list")
            rows = await query(engine, "SELECT code FROM country_list")
            return result, rows

        result, rows = _run(config, store, steps)
        assert result.origin == ORIGIN_OVERRIDE
        assert result.rows == 1
        assert rows == [{"code": "NL"}]

    def test_override_for_missing_bundled_file(self, config, store):
        store.set(table_key("exceptions_yh"), [{"id": 1}, {"id": 2}])

        async def steps(loader, engine):
            return await loader.load_table("exceptions_yh")

        result = _run(config, store, steps)
        assert result.ok and result.rows == 2

    def test_upload_persists_override(self, config, store):
        """Uploaded rows replace the table now and on every later load."""
        payload = "code,name\nBE,Belgium\nLU,Luxembourg\nAT,Austria\n"

        async def steps(loader, engine):
            uploaded = await loader.upload("country_list", payload, fmt="csv")
            reloaded = await loader.load_table("country_list")
            return uploaded, reloaded

        uploaded, reloaded = _run(config, store, steps)
        assert uploaded == 3
        assert reloaded.origin == ORIGIN_OVERRIDE
        assert reloaded.rows == 3
        assert len(store.get(table_key("country_list"))) == 3

    def test_upload_rejects_empty(self, config, store):
        async def steps(loader, engine):
            await loader.upload("country_list", "code,name\n", fmt="csv")

        with pytest.raises(EmptySource):
            _run(config, store, steps)
        assert table_key("country_list") not in store

    def test_clear_override(self, config, store):
        store.set(table_key("country_list"), [{"code": "NL"}])

        async def steps(loader, engine):
            removed = loader.clear_override("country_list")
            result = await loader.load_table("country_list")
            return removed, result

        removed, result = _run(config, store, steps)
        assert removed is True
        assert result.origin == ORIGIN_BUNDLED
        assert result.rows == 2

    def test_export_csv(self, config, store):
        async def steps(loader, engine):
            await loader.load_table("country_list")
            return await export_csv(engine, "country_list")

        lines = _run(config, store, steps).splitlines()
        assert lines[0] == "code,name"
        assert len(lines) == 3


class TestParsePayload:
    def test_csv_header_only(self):
        with pytest.raises(EmptySource):
            parse_payload("t", b"a,b\n", "csv")

    def test_blank(self):
        with pytest.raises(EmptySource):
            parse_payload("t", b"   \n", "json")

    def test_unknown_format(self):
        with pytest.raises(SourceUnavailable, match="unsupported format"):
            parse_payload("t", b"x", "xml")

    def test_type_inference(self):
        df = parse_payload("t", json.dumps([{"n": 1, "flag": True, "s": "x"}]), "json")
        assert df.schema["n"].is_integer()
        assert df.schema["flag"] == pl.Boolean
        assert df.schema["s"] == pl.Utf8


class TestSources:
    """Bundled fetchers map every failure to SourceUnavailable."""

    def test_directory_source(self, config, data_dir):
        async def fetch():
            return await DirectorySource(data_dir).fetch(config.get_table("country_list"))

        assert json.loads(asyncio.run(fetch())) == json.loads((data_dir / "country_list.json").read_text())

    def test_http_success(self, config):
        def handler(request):
            assert request.url.path == "/data/country_list.json"
            return httpx.Response(200, content=b'[{"code": "DE"}]')

        async def fetch():
            source = HttpSource("http://dash.test/data/", transport=httpx.MockTransport(handler))
            return await source.fetch(config.get_table("country_list"))

        assert asyncio.run(fetch()) == b'[{"code": "DE"}]'

    def test_http_not_found(self, config):
        def handler(request):
            return httpx.Response(404)

        async def fetch():
            source = HttpSource("http://dash.test/data", transport=httpx.MockTransport(handler))
            await source.fetch(config.get_table("country_list"))

        with pytest.raises(SourceUnavailable, match="404 Not Found"):
            asyncio.run(fetch())

    def test_http_connection_error(self, config):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async def fetch():
            source = HttpSource("http://dash.test/data", transport=httpx.MockTransport(handler))
            await source.fetch(config.get_table("country_list"))

        with pytest.raises(SourceUnavailable, match="failed"):
            asyncio.run(fetch())


class TestOverrideStore:
    """One JSON document per key, listed by key."""

    def test_keys_lists_stored_documents(self, store):
        assert store.keys() == []
        store.set(table_key("country_list"), [{"code": "DE"}])
        store.set(table_key("WAVES"), [])
        assert store.keys() == ["table_WAVES", "table_country_list"]
        store.delete(table_key("WAVES"))
        assert store.keys() == ["table_country_list"]

    def test_missing_key(self, store):
        assert store.get(table_key("country_list")) is None
        assert store.delete(table_key("country_list")) is False

    def test_unsafe_key_rejected(self, store):
        with pytest.raises(ValueError, match="Invalid store key"):
            store.set("../escape", [])

    def test_write_replaces_document(self, store):
        store.set("table_t", [{"a": 1}])
        store.set("table_t", [{"a": 2}])
        assert store.get("table_t") == [{"a": 2}]
        assert not list(store.store_dir.glob("*.tmp"))
