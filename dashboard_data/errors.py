"""Error taxonomy for the data layer.

Per-table load errors are collected by batch callers, never raised past them.
Engine and query errors surface directly to the immediate caller.
"""


class DataLayerError(Exception):
    """Root of every error raised by the data layer."""


class LoadError(DataLayerError):
    """A single logical table could not be loaded."""

    def __init__(self, table_name: str, message: str):
        super().__init__(f"{table_name}: {message}")
        self.table_name = table_name
        self.message = message


class SourceUnavailable(LoadError):
    """The table's override or bundled source could not be fetched or parsed."""


class EmptySource(LoadError):
    """The source parsed but held zero rows or was not a list of records."""


class EngineInitError(DataLayerError):
    """The analytics engine failed to bootstrap or is not open."""


class QueryError(DataLayerError):
    """A read or write statement against the engine failed."""

    def __init__(self, message: str, sql: str | None = None):
        super().__init__(message)
        self.sql = sql
