"""
SQLite implementation of the store interface.

This implementation uses the standard library sqlite3 driver in manual
transaction mode. Each persistent type gets its own table keyed by an
`INTEGER PRIMARY KEY AUTOINCREMENT` column named `pk`; encoded values are bound
as their native SQLite storage classes. Relation links live in a single
`relation_links` table.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import structlog

from persistent_objects.base import EncodedValue
from persistent_objects.errors import StoreIOError
from persistent_objects.schema import PK_COLUMN
from persistent_objects.storage.interfaces import StoreInterface
from persistent_objects.storage.models.link import LINK_TABLE, RelationLink

logger = structlog.get_logger()

_LINK_COLUMNS = ("id", "owner_table", "owner_id", "field", "related_table", "related_id", "ordinal")


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


@contextmanager
def _store_errors(action: str, **context) -> Iterator[None]:
    """Wrap sqlite3 failures in StoreIOError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error("store_failed", backend="sqlite", action=action, error=str(e), **context)
        raise StoreIOError(f"SQLite {action} failed: {e}") from e


class SQLiteStore(StoreInterface):
    """SQLite store. Suitable for embedded use and for testing.

    Example:

        >>> store = SQLiteStore(":memory:")
        >>> store.create_table("points", {"x": "INTEGER", "y": "INTEGER"})
        >>> pk = store.insert_row("points", {"x": EncodedValue.integer(1), "y": EncodedValue.integer(2)})
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory database
        """
        super().__init__()
        self.db_path = db_path if isinstance(db_path, Path) else Path(db_path) if db_path != ":memory:" else None
        with _store_errors("connect", path=str(db_path)):
            self.conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
        self._known_columns: dict[str, set[str]] = {}
        self._create_link_table()
        logger.debug("store_opened", backend="sqlite", path=str(db_path))

    def _create_link_table(self) -> None:
        """Create relation_links table if it doesn't exist."""
        with self.transaction(), _store_errors("create_table", table=LINK_TABLE):
            self.conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {LINK_TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_table TEXT NOT NULL,
                    owner_id INTEGER NOT NULL,
                    field TEXT NOT NULL,
                    related_table TEXT NOT NULL,
                    related_id INTEGER NOT NULL,
                    ordinal INTEGER NOT NULL
                )
            """
            )
            self.conn.execute(f"CREATE INDEX IF NOT EXISTS idx_relation_links_owner ON {LINK_TABLE}(owner_table, owner_id, field)")
            self.conn.execute(f"CREATE INDEX IF NOT EXISTS idx_relation_links_related ON {LINK_TABLE}(related_table, related_id)")

    # ========== TABLES ==========

    def create_table(self, table: str, columns: dict[str, str]) -> None:
        """Create a row table if missing, adding any columns it lacks."""
        known = self._known_columns.get(table)
        if known is not None and known.issuperset(columns):
            return

        with self.transaction(), _store_errors("create_table", table=table):
            existing = {row[1] for row in self.conn.execute(f"PRAGMA table_info({_quote(table)})")}
            if not existing:
                definitions = [f"{_quote(PK_COLUMN)} INTEGER PRIMARY KEY AUTOINCREMENT"]
                definitions += [f"{_quote(name)} {affinity}" for name, affinity in columns.items()]
                self.conn.execute(f"CREATE TABLE {_quote(table)} ({', '.join(definitions)})")
                logger.info("table_created", table=table, columns=list(columns))
                existing = {PK_COLUMN, *columns}
            else:
                for name, affinity in columns.items():
                    if name not in existing:
                        self.conn.execute(f"ALTER TABLE {_quote(table)} ADD COLUMN {_quote(name)} {affinity}")
                        logger.info("column_added", table=table, column=name, affinity=affinity)
                        existing.add(name)
            self._known_columns[table] = existing

    # ========== ROWS ==========

    def insert_row(self, table: str, row: dict[str, EncodedValue]) -> int:
        """Insert a row and return its newly allocated primary key."""
        with self.transaction(), _store_errors("insert_row", table=table):
            if row:
                names = ", ".join(_quote(name) for name in row)
                marks = ", ".join("?" for _ in row)
                cursor = self.conn.execute(f"INSERT INTO {_quote(table)} ({names}) VALUES ({marks})", [value.to_sql() for value in row.values()])
            else:
                cursor = self.conn.execute(f"INSERT INTO {_quote(table)} DEFAULT VALUES")
            pk = cursor.lastrowid
        logger.debug("row_inserted", table=table, pk=pk)
        return pk

    def update_row(self, table: str, pk: int, row: dict[str, EncodedValue]) -> bool:
        """Overwrite the row with the given key."""
        with self.transaction(), _store_errors("update_row", table=table, pk=pk):
            if not row:
                return self.conn.execute(f"SELECT 1 FROM {_quote(table)} WHERE {PK_COLUMN} = ?", (pk,)).fetchone() is not None
            assignments = ", ".join(f"{_quote(name)} = ?" for name in row)
            cursor = self.conn.execute(
                f"UPDATE {_quote(table)} SET {assignments} WHERE {PK_COLUMN} = ?",
                [*(value.to_sql() for value in row.values()), pk],
            )
            updated = cursor.rowcount > 0
        logger.debug("row_updated", table=table, pk=pk, found=updated)
        return updated

    def delete_row(self, table: str, pk: int) -> bool:
        """Delete the row with the given key."""
        with self.transaction(), _store_errors("delete_row", table=table, pk=pk):
            deleted = self.conn.execute(f"DELETE FROM {_quote(table)} WHERE {PK_COLUMN} = ?", (pk,)).rowcount > 0
        logger.debug("row_deleted", table=table, pk=pk, found=deleted)
        return deleted

    def select_row(self, table: str, pk: int) -> Optional[dict[str, EncodedValue]]:
        """Get a row by primary key."""
        with self.transaction(), _store_errors("select_row", table=table, pk=pk):
            cursor = self.conn.execute(f"SELECT * FROM {_quote(table)} WHERE {PK_COLUMN} = ?", (pk,))
            record = cursor.fetchone()
            if record is None:
                return None
            return self._row(cursor.description, record)[1]

    def select_rows(self, table: str, limit: Optional[int] = None, offset: int = 0) -> list[tuple[int, dict[str, EncodedValue]]]:
        """List rows in key order, optionally with pagination."""
        with self.transaction(), _store_errors("select_rows", table=table):
            cursor = self.conn.execute(
                f"SELECT * FROM {_quote(table)} ORDER BY {PK_COLUMN} LIMIT ? OFFSET ?",
                (-1 if limit is None else limit, offset),
            )
            return [self._row(cursor.description, record) for record in cursor.fetchall()]

    def count_rows(self, table: str) -> int:
        """Total number of rows in a table."""
        with self.transaction(), _store_errors("count_rows", table=table):
            return self.conn.execute(f"SELECT COUNT(*) FROM {_quote(table)}").fetchone()[0]

    @staticmethod
    def _row(description, record) -> tuple[int, dict[str, EncodedValue]]:
        names = [column[0] for column in description]
        values = dict(zip(names, record))
        pk = values.pop(PK_COLUMN)
        return pk, {name: EncodedValue.from_sql(value) for name, value in values.items()}

    # ========== LINKS ==========

    def select_links(self, owner_table: str, owner_id: int, field: str) -> list[RelationLink]:
        """Link records of one relation field, ordered by ordinal."""
        with self.transaction(), _store_errors("select_links", owner_table=owner_table, owner_id=owner_id):
            cursor = self.conn.execute(
                f"""
                SELECT {', '.join(_LINK_COLUMNS)} FROM {LINK_TABLE}
                WHERE owner_table = ? AND owner_id = ? AND field = ?
                ORDER BY ordinal, id
            """,
                (owner_table, owner_id, field),
            )
            return [RelationLink(**dict(zip(_LINK_COLUMNS, record))) for record in cursor.fetchall()]

    def insert_link(self, link: RelationLink) -> None:
        """Add one link record."""
        with self.transaction(), _store_errors("insert_link", owner_table=link.owner_table, owner_id=link.owner_id):
            cursor = self.conn.execute(
                f"""
                INSERT INTO {LINK_TABLE} (owner_table, owner_id, field, related_table, related_id, ordinal)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (link.owner_table, link.owner_id, link.field, link.related_table, link.related_id, link.ordinal),
            )
            link.id = cursor.lastrowid

    def delete_links(self, owner_table: str, owner_id: int, field: Optional[str] = None) -> int:
        """Delete the link records of one owner, or of one of its fields."""
        query = f"DELETE FROM {LINK_TABLE} WHERE owner_table = ? AND owner_id = ?"
        params: list = [owner_table, owner_id]
        if field is not None:
            query += " AND field = ?"
            params.append(field)
        with self.transaction(), _store_errors("delete_links", owner_table=owner_table, owner_id=owner_id):
            return self.conn.execute(query, params).rowcount

    # ========== TRANSACTIONS ==========

    def begin(self) -> None:
        with _store_errors("begin"):
            self.conn.execute("BEGIN")

    def commit(self) -> None:
        try:
            with _store_errors("commit"):
                self.conn.execute("COMMIT")
        except StoreIOError:
            self.rollback()
            raise

    def rollback(self) -> None:
        # DDL rolls back too, so table metadata must be re-read
        self._known_columns.clear()
        with _store_errors("rollback"):
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")

    def close(self) -> None:
        """Close connections and clean up resources."""
        with self._lock:
            self.conn.close()
        logger.debug("store_closed", backend="sqlite", path=str(self.db_path or ":memory:"))
