"""SQL persistence helpers.

``exitengine.storage`` exposes the engine factory, schema setup and the
SQL-backed stores used when the engine runs against a database
(``settings.db_url``).
"""

from .exit_sql import (  # noqa: F401
    get_engine,
    init_schema,
    insert_exit_signal,
    SqlControlStore,
    SqlHoldingsFeed,
    SqlIntentStore,
    SqlPriceFeed,
    SqlProfileStore,
    SqlStateBackend,
)

__all__ = [
    "get_engine",
    "init_schema",
    "insert_exit_signal",
    "SqlControlStore",
    "SqlHoldingsFeed",
    "SqlIntentStore",
    "SqlPriceFeed",
    "SqlProfileStore",
    "SqlStateBackend",
]
