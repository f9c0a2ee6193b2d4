"""Database package."""

from ledgersync.db.session import (
    AsyncSessionLocal,
    engine,
    get_db,
    get_db_context,
    get_session_factory,
)

__all__ = [
    "AsyncSessionLocal",
    "engine",
    "get_db",
    "get_db_context",
    "get_session_factory",
]
