"""
Storage factory for creating and managing the default store instance.

The default store is used whenever a `PersistentObject` operation is called without
an explicit store. It is chosen by the PERSISTENT_OBJECTS_DATABASE environment variable:

    PERSISTENT_OBJECTS_DATABASE=:memory:                    in-memory SQLite (default)
    PERSISTENT_OBJECTS_DATABASE=objects.db                  SQLite file
    PERSISTENT_OBJECTS_DATABASE=postgresql://.../objects    SQLAlchemy engine
"""

import os
import threading
from typing import Optional

import structlog

from persistent_objects.storage.backends.engine import EngineStore
from persistent_objects.storage.backends.sqlite import SQLiteStore
from persistent_objects.storage.interfaces import StoreInterface

logger = structlog.get_logger()

DATABASE_ENV = "PERSISTENT_OBJECTS_DATABASE"
DEFAULT_DATABASE = ":memory:"

# Singleton store
_store: Optional[StoreInterface] = None
_store_lock = threading.Lock()


def create_store(database: Optional[str] = None) -> StoreInterface:
    """
    Open a store for a database location.

    Args:
        database: SQLite path, ":memory:", or a SQLAlchemy URL (anything containing "://").
            Defaults to the PERSISTENT_OBJECTS_DATABASE environment variable.
    """
    database = database or os.getenv(DATABASE_ENV, DEFAULT_DATABASE)
    if not database:
        raise ValueError(f"{DATABASE_ENV} environment variable is empty.")
    if "://" in database:
        return EngineStore(database)
    return SQLiteStore(database)


def get_store() -> StoreInterface:
    """
    Returns the singleton default store, creating it on first use.
    """
    global _store
    with _store_lock:
        if _store is None:
            _store = create_store()
            logger.info("default_store_created", backend=type(_store).__name__)
        return _store


def set_store(store: Optional[StoreInterface]) -> Optional[StoreInterface]:
    """
    Replace the default store. Returns the previous one, which is not closed.
    """
    global _store
    with _store_lock:
        previous, _store = _store, store
    return previous


def close_store():
    """
    Closes the default store connection.
    """
    global _store
    with _store_lock:
        if _store:
            _store.close()
            _store = None
