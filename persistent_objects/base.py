"""
Core types shared by every layer of the persistence engine.

This module defines:
- `TypeKind`: the closed set of property kinds the engine can persist
- `Kind`: a TypeKind together with its parameters (array length, Python type, ...)
- `StorageClass` / `EncodedValue`: the tagged-union wire representation exchanged
  between the row mapper and the store (SQLite's five storage classes)
- Field markers used inside `typing.Annotated` declarations
- `ObjectState`: the lifecycle of a persistent object

Example:

    >>> from typing import Annotated
    >>> from array import array
    >>> class Sample(PersistentObject):
    ...     samples: Annotated[array, FixedArray(100, "I")]
    ...     scratch: Annotated[Optional[int], TRANSIENT] = None
"""

import math
from array import array
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, model_validator


# ============================================================================
# Enums
# ============================================================================


class TypeKind(str, Enum):
    """Closed set of persistable property kinds."""

    NUMBER = "number"
    DATE = "date"
    TEXT = "text"
    FIXED_BYTE_ARRAY = "fixed_byte_array"
    OPAQUE_BLOB = "opaque_blob"
    STRUCT_VALUE = "struct_value"
    ORDERED_COLLECTION = "ordered_collection"
    KEYED_COLLECTION = "keyed_collection"
    UNORDERED_COLLECTION = "unordered_collection"
    EMBEDDED_OBJECT_REF = "embedded_object_ref"
    RELATION_COLLECTION = "relation_collection"


class StorageClass(str, Enum):
    """Tag of an EncodedValue. Mirrors SQLite's storage classes."""

    NULL = "null"
    INTEGER = "integer"
    REAL = "real"
    TEXT = "text"
    BLOB = "blob"


class ObjectState(str, Enum):
    """Lifecycle of a persistent object."""

    TRANSIENT = "transient"
    PERSISTED = "persisted"
    DELETED = "deleted"


# Column affinities handed to the store when tables are created
AFFINITY_INTEGER = "INTEGER"
AFFINITY_REAL = "REAL"
AFFINITY_NUMERIC = "NUMERIC"
AFFINITY_TEXT = "TEXT"
AFFINITY_BLOB = "BLOB"

_BLOB_KINDS = {
    TypeKind.FIXED_BYTE_ARRAY,
    TypeKind.OPAQUE_BLOB,
    TypeKind.STRUCT_VALUE,
    TypeKind.ORDERED_COLLECTION,
    TypeKind.KEYED_COLLECTION,
    TypeKind.UNORDERED_COLLECTION,
}


# ============================================================================
# Kinds
# ============================================================================


class Kind(BaseModel):
    """
    A TypeKind plus the parameters needed to encode and decode it.

    Attributes:
        type_kind: The closed-set kind
        length: Element count for FIXED_BYTE_ARRAY
        typecode: `array` typecode of FIXED_BYTE_ARRAY elements
        python_type: Declared Python type. The number type for NUMBER, the ctypes
            structure for STRUCT_VALUE, the container type for collections and the
            related class for EMBEDDED_OBJECT_REF / RELATION_COLLECTION.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type_kind: TypeKind
    length: Optional[int] = None
    typecode: Optional[str] = None
    python_type: Optional[Any] = None

    @property
    def item_size(self) -> int:
        """Size in bytes of one FIXED_BYTE_ARRAY element."""
        return array(self.typecode).itemsize

    @property
    def affinity(self) -> str:
        """SQLite column affinity used for columns of this kind."""
        if self.type_kind == TypeKind.NUMBER:
            if self.python_type in (int, bool):
                return AFFINITY_INTEGER
            if self.python_type is float:
                return AFFINITY_REAL
            return AFFINITY_NUMERIC
        if self.type_kind in (TypeKind.DATE, TypeKind.EMBEDDED_OBJECT_REF):
            return AFFINITY_INTEGER
        if self.type_kind == TypeKind.TEXT:
            return AFFINITY_TEXT
        if self.type_kind in _BLOB_KINDS:
            return AFFINITY_BLOB
        raise ValueError(f"{self.type_kind.value} has no column affinity")

    def __str__(self) -> str:
        if self.type_kind == TypeKind.FIXED_BYTE_ARRAY:
            return f"{self.type_kind.value}({self.length})"
        return self.type_kind.value


# ============================================================================
# Encoded values
# ============================================================================


class EncodedValue(BaseModel):
    """
    Storage-neutral encoded form of a single property value.

    Exactly one storage class is carried. The Python value matches the tag:
    None for NULL, int for INTEGER, float for REAL, str for TEXT, bytes for BLOB.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    tag: StorageClass
    value: Union[None, int, float, str, bytes] = None

    @model_validator(mode="after")
    def check_tag_matches_value(self) -> "EncodedValue":
        expected = _PYTHON_TYPES[self.tag]
        if self.tag == StorageClass.NULL:
            if self.value is not None:
                raise ValueError("NULL encoded value cannot carry a payload")
        elif not isinstance(self.value, expected) or isinstance(self.value, bool):
            raise ValueError(f"{self.tag.value} encoded value requires {expected.__name__}, got {type(self.value).__name__}")
        if self.tag == StorageClass.REAL and not math.isfinite(self.value):
            raise ValueError("REAL encoded value must be finite")
        return self

    @classmethod
    def null(cls) -> "EncodedValue":
        return cls(tag=StorageClass.NULL)

    @classmethod
    def integer(cls, value: int) -> "EncodedValue":
        return cls(tag=StorageClass.INTEGER, value=value)

    @classmethod
    def real(cls, value: float) -> "EncodedValue":
        return cls(tag=StorageClass.REAL, value=value)

    @classmethod
    def text(cls, value: str) -> "EncodedValue":
        return cls(tag=StorageClass.TEXT, value=value)

    @classmethod
    def blob(cls, value: bytes) -> "EncodedValue":
        return cls(tag=StorageClass.BLOB, value=value)

    @classmethod
    def from_sql(cls, raw: Any) -> "EncodedValue":
        """Wrap a value as returned by a database driver."""
        if raw is None:
            return cls.null()
        if isinstance(raw, bool):
            return cls.integer(int(raw))
        if isinstance(raw, int):
            return cls.integer(raw)
        if isinstance(raw, float):
            return cls.real(raw)
        if isinstance(raw, str):
            return cls.text(raw)
        if isinstance(raw, (bytes, bytearray, memoryview)):
            return cls.blob(bytes(raw))
        raise TypeError(f"Driver returned a value with no storage class: {type(raw).__name__}")

    def to_sql(self) -> Union[None, int, float, str, bytes]:
        """Value to bind as a statement parameter."""
        return self.value

    @property
    def is_null(self) -> bool:
        return self.tag == StorageClass.NULL


_PYTHON_TYPES = {
    StorageClass.NULL: type(None),
    StorageClass.INTEGER: int,
    StorageClass.REAL: float,
    StorageClass.TEXT: str,
    StorageClass.BLOB: bytes,
}


# ============================================================================
# Field markers (used inside typing.Annotated)
# ============================================================================


@dataclass(frozen=True)
class Transient:
    """Marks a field that is reflected but never written to or read from storage."""


TRANSIENT = Transient()


@dataclass(frozen=True)
class FixedArray:
    """Declares an `array.array` field holding exactly `length` elements of `typecode`."""

    length: int
    typecode: str


@dataclass(frozen=True)
class Relation:
    """
    Options for a collection of related persistent objects.

    ordered: reload in saved order (otherwise in related-id order)
    owned: saving the owner re-saves already persisted elements; non-owned
        relations only link them (transient elements are still saved so they
        have an identity to link to)
    """

    ordered: bool = True
    owned: bool = True


@dataclass(frozen=True)
class Column:
    """Overrides the storage name of a field."""

    name: str
