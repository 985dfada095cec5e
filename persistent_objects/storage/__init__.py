"""
Storage layer for persistent objects.

This package keeps the SQL store behind a narrow row/link contract, separating
infrastructure concerns from the object mapping.

Key Components:

- **interfaces**: Abstract base class defining the store contract
- **backends**: Concrete implementations (SQLite, SQLAlchemy engine)
- **models**: SQLModel schema for relation link records

Example:

    >>> from persistent_objects.storage.backends.sqlite import SQLiteStore
    >>>
    >>> # Create an in-memory SQLite store
    >>> store = SQLiteStore(":memory:")
    >>> store.create_table("points", {"x": "INTEGER"})
"""

__all__ = [
    "interfaces",
    "backends",
    "models",
]
