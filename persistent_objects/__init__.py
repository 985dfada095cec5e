"""
Object persistence for an embedded SQL store.

Persistable types subclass `PersistentObject` and declare typed pydantic fields;
instances are saved to and loaded from rows of a SQLite (or any SQLAlchemy) store,
with embedded object references and one-to-many relations kept as link records.

Example:

    >>> from persistent_objects import PersistentObject, SQLiteStore
    >>> class Point(PersistentObject):
    ...     x: int
    ...     y: int
    >>> store = SQLiteStore(":memory:")
    >>> point = Point(x=1, y=2).save(store)
    >>> Point.load(point.pk, store).x
    1
"""

from persistent_objects.base import TRANSIENT, Column, EncodedValue, FixedArray, Kind, ObjectState, Relation, StorageClass, Transient, TypeKind
from persistent_objects.entity import PersistentObject
from persistent_objects.errors import (
    AmbiguousFieldError,
    CorruptEncodingError,
    DanglingReferenceError,
    MissingColumnError,
    NotFoundError,
    PersistenceError,
    SizeMismatchError,
    StoreIOError,
    UnsupportedTypeError,
    UseAfterDeleteError,
)
from persistent_objects.schema import FieldDescriptor, Schema, reflect
from persistent_objects.session import PersistenceSession
from persistent_objects.storage.backends.engine import EngineStore
from persistent_objects.storage.backends.sqlite import SQLiteStore
from persistent_objects.storage.interfaces import StoreInterface
from persistent_objects.storage_factory import close_store, get_store, set_store

__all__ = [
    "PersistentObject",
    "PersistenceSession",
    "ObjectState",
    "TypeKind",
    "Kind",
    "StorageClass",
    "EncodedValue",
    "Transient",
    "TRANSIENT",
    "FixedArray",
    "Relation",
    "Column",
    "Schema",
    "FieldDescriptor",
    "reflect",
    "StoreInterface",
    "SQLiteStore",
    "EngineStore",
    "get_store",
    "set_store",
    "close_store",
    "PersistenceError",
    "UnsupportedTypeError",
    "CorruptEncodingError",
    "SizeMismatchError",
    "AmbiguousFieldError",
    "MissingColumnError",
    "DanglingReferenceError",
    "NotFoundError",
    "UseAfterDeleteError",
    "StoreIOError",
]
