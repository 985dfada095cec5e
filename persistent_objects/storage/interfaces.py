"""
Storage interface for persistent object rows and relation links.

This ABC lets the persistence engine work with different store backends:
- SQLite through the standard library driver (storage/backends/sqlite.py)
- Any SQLAlchemy engine URL (storage/backends/engine.py)

Rows are exchanged as mappings of column name to EncodedValue. The primary key
column (`pk`) is managed by the store and never appears in those mappings.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, Optional

# Use string annotations for forward references to avoid import issues
if TYPE_CHECKING:
    from persistent_objects.base import EncodedValue
    from persistent_objects.storage.models.link import RelationLink


class StoreInterface(ABC):
    """
    Abstract interface for the embedded row store.

    Every public call runs inside `transaction()`, so single calls are atomic and
    calls made inside an open transaction join it. A re-entrant lock is held for
    the whole outermost transaction: other threads sharing the store wait until
    it commits or rolls back.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0

    # ========== TABLES ==========

    @abstractmethod
    def create_table(self, table: str, columns: dict[str, str]) -> None:
        """Create a row table if missing, adding any columns it lacks.

        Args:
            table: Table name
            columns: Column name to SQLite affinity (INTEGER, REAL, NUMERIC, TEXT, BLOB)
        """
        pass

    # ========== ROWS ==========

    @abstractmethod
    def insert_row(self, table: str, row: dict[str, "EncodedValue"]) -> int:
        """Insert a row and return its newly allocated primary key."""
        pass

    @abstractmethod
    def update_row(self, table: str, pk: int, row: dict[str, "EncodedValue"]) -> bool:
        """Overwrite the row with the given key. Returns False if no such row exists."""
        pass

    @abstractmethod
    def delete_row(self, table: str, pk: int) -> bool:
        """Delete the row with the given key. Returns False if no such row exists."""
        pass

    @abstractmethod
    def select_row(self, table: str, pk: int) -> Optional[dict[str, "EncodedValue"]]:
        """Get a row by primary key, or None."""
        pass

    @abstractmethod
    def select_rows(self, table: str, limit: Optional[int] = None, offset: int = 0) -> list[tuple[int, dict[str, "EncodedValue"]]]:
        """List (pk, row) pairs in key order, optionally with pagination."""
        pass

    @abstractmethod
    def count_rows(self, table: str) -> int:
        """Total number of rows in a table."""
        pass

    # ========== LINKS ==========

    @abstractmethod
    def select_links(self, owner_table: str, owner_id: int, field: str) -> list["RelationLink"]:
        """Link records of one relation field, ordered by ordinal."""
        pass

    @abstractmethod
    def insert_link(self, link: "RelationLink") -> None:
        """Add one link record."""
        pass

    @abstractmethod
    def delete_links(self, owner_table: str, owner_id: int, field: Optional[str] = None) -> int:
        """Delete the link records of one owner, or of one of its fields. Returns the count removed."""
        pass

    # ========== TRANSACTIONS ==========

    @abstractmethod
    def begin(self) -> None:
        """Start a transaction."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the current transaction."""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the current transaction."""
        pass

    @contextmanager
    def transaction(self) -> Iterator["StoreInterface"]:
        """Transactional scope. Nested scopes join the outermost one."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self.begin()
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._depth = 0
                self.rollback()
                raise
            self._depth = 0
            self.commit()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @abstractmethod
    def close(self) -> None:
        """Close connections and clean up resources."""
        pass

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager and close connection."""
        self.close()
        return False
