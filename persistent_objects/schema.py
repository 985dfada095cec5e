"""
Schema reflection for persistent object types.

`reflect(Model)` inspects the pydantic fields of a `PersistentObject` subclass
and produces a `Schema`: the table name plus one `FieldDescriptor` per declared
field, in declaration order. Schemas are computed once per type and cached for
the life of the process.

Kinds are derived from annotations:

    int / float / bool                      NUMBER
    str                                     TEXT
    datetime                                DATE
    bytes / bytearray                       OPAQUE_BLOB
    Annotated[array, FixedArray(n, code)]   FIXED_BYTE_ARRAY
    ctypes.Structure subclass               STRUCT_VALUE
    list / tuple of values                  ORDERED_COLLECTION
    dict of values                          KEYED_COLLECTION
    set / frozenset of values               UNORDERED_COLLECTION
    PersistentObject subclass               EMBEDDED_OBJECT_REF
    list[PersistentObject subclass]         RELATION_COLLECTION

`Optional[...]` is accepted everywhere. `Annotated` markers from
`persistent_objects.base` add the transient flag, relation options and
explicit column names.
"""

import ctypes
import re
import threading
import types
from array import array
from datetime import datetime
from typing import Annotated, Any, Optional, Union, get_args, get_origin

import structlog
from pydantic import BaseModel, ConfigDict

from persistent_objects.base import Column, FixedArray, Kind, Relation, Transient, TypeKind
from persistent_objects.errors import AmbiguousFieldError, UnsupportedTypeError

logger = structlog.get_logger()

PK_COLUMN = "pk"

_NUMBER_TYPES = (bool, int, float)
_ELEMENT_TYPES = (type(None), bool, int, float, str, bytes, bytearray, Any)


class FieldDescriptor(BaseModel):
    """
    One reflected field.

    Attributes:
        name: Python attribute name
        column: Normalized storage name
        kind: Parameterized kind, or None for a transient field whose type is not persistable
        transient: Reflected but never stored
        is_relation: Holds a collection of related persistent objects
        nullable: Accepts None
        ordered: Relation reloads in saved order
        owned: Relation re-saves persisted elements when the owner is saved
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    column: str
    kind: Optional[Kind] = None
    transient: bool = False
    is_relation: bool = False
    nullable: bool = False
    ordered: bool = True
    owned: bool = True

    @property
    def is_column(self) -> bool:
        """Written to the owner's primary row."""
        return not self.transient and not self.is_relation

    @property
    def is_reference(self) -> bool:
        return self.is_column and self.kind.type_kind == TypeKind.EMBEDDED_OBJECT_REF

    @property
    def related_type(self) -> Optional[type]:
        if self.kind is None or self.kind.type_kind not in (TypeKind.EMBEDDED_OBJECT_REF, TypeKind.RELATION_COLLECTION):
            return None
        return self.kind.python_type


class Schema(BaseModel):
    """Ordered field descriptors for one persistent type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    model: Any
    table: str
    fields: tuple[FieldDescriptor, ...]

    @property
    def columns(self) -> tuple[FieldDescriptor, ...]:
        """Fields stored in the primary row, in order."""
        return tuple(f for f in self.fields if f.is_column)

    @property
    def references(self) -> tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.is_reference)

    @property
    def relations(self) -> tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.is_relation and not f.transient)

    @property
    def transients(self) -> tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.transient)

    def field(self, name: str) -> FieldDescriptor:
        for descriptor in self.fields:
            if descriptor.name == name:
                return descriptor
        raise KeyError(f"{self.model.__name__} has no field '{name}'")

    def column_affinities(self) -> dict[str, str]:
        """Column name to SQLite affinity, for table creation."""
        return {f.column: f.kind.affinity for f in self.columns}


# ============================================================================
# Type registry
# ============================================================================

_registry: dict[str, type] = {}
_registered: set[type] = set()
_registry_lock = threading.Lock()


def table_name(model: type) -> str:
    """`__tablename__` if declared, otherwise the snake_case class name."""
    explicit = getattr(model, "__tablename__", None)
    if explicit:
        return explicit
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", model.__name__)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name).lower()


def register(model: type) -> None:
    """Record a persistent type so its table name resolves back to the class."""
    table = table_name(model)
    with _registry_lock:
        previous = _registry.get(table)
        if previous is not None and previous is not model:
            logger.warning("table_reassigned", table=table, previous=previous.__qualname__, model=model.__qualname__)
            _registered.discard(previous)
        _registry[table] = model
        _registered.add(model)


def model_for_table(table: str, default: Optional[type] = None) -> Optional[type]:
    return _registry.get(table, default)


def is_persistent_type(candidate: Any) -> bool:
    return isinstance(candidate, type) and candidate in _registered


# ============================================================================
# Reflection
# ============================================================================


class SchemaCache:
    """
    Process-wide schema cache keyed by type identity.

    Populated on first reflection of a type; there is no invalidation other
    than process exit (`clear()` exists for tests). Lookups are lock-free;
    population happens under a lock with a second lookup, so concurrent first
    access reflects a type at most once.
    """

    def __init__(self):
        self._schemas: dict[type, Schema] = {}
        self._lock = threading.Lock()

    def reflect(self, model: type) -> Schema:
        schema = self._schemas.get(model)
        if schema is not None:
            return schema
        with self._lock:
            schema = self._schemas.get(model)
            if schema is None:
                schema = _build_schema(model)
                self._schemas[model] = schema
                logger.debug("schema_reflected", model=model.__qualname__, table=schema.table, fields=[f.name for f in schema.fields])
        return schema

    def clear(self) -> None:
        with self._lock:
            self._schemas.clear()

    def __contains__(self, model: type) -> bool:
        return model in self._schemas


_schemas = SchemaCache()


def reflect(model: type) -> Schema:
    """Return the cached Schema for a persistent type, reflecting it on first use."""
    return _schemas.reflect(model)


def clear_cache() -> None:
    _schemas.clear()


def _build_schema(model: type) -> Schema:
    if not (isinstance(model, type) and issubclass(model, BaseModel)):
        raise UnsupportedTypeError(f"{model!r} is not a persistent object type")
    if not model.__pydantic_complete__:
        model.model_rebuild()

    descriptors = []
    for name, info in model.model_fields.items():
        annotation, nullable, markers = _unwrap(info.annotation)
        markers = [*info.metadata, *markers]
        nullable = nullable or (not info.is_required() and info.default is None)
        descriptors.append(_describe(model, name, annotation, nullable, markers))

    _check_columns(model, descriptors)
    return Schema(model=model, table=table_name(model), fields=tuple(descriptors))


def _describe(model: type, name: str, annotation: Any, nullable: bool, markers: list[Any]) -> FieldDescriptor:
    transient = any(isinstance(m, Transient) for m in markers)
    relation = next((m for m in markers if isinstance(m, Relation)), None)
    column = next((m.name for m in markers if isinstance(m, Column)), name).lower()

    try:
        kind = _kind_for(annotation, markers)
    except UnsupportedTypeError as e:
        if not transient:
            raise UnsupportedTypeError(f"{model.__name__}.{name}: {e}") from e
        kind = None

    is_relation = kind is not None and kind.type_kind == TypeKind.RELATION_COLLECTION
    if relation is not None and not is_relation:
        raise UnsupportedTypeError(f"{model.__name__}.{name}: relation options on a field that is not a list of persistent objects")
    relation = relation or Relation()

    return FieldDescriptor(
        name=name,
        column=column,
        kind=kind,
        transient=transient,
        is_relation=is_relation,
        nullable=nullable,
        ordered=relation.ordered,
        owned=relation.owned,
    )


def _check_columns(model: type, descriptors: list[FieldDescriptor]) -> None:
    by_column: dict[str, list[str]] = {}
    for descriptor in descriptors:
        by_column.setdefault(descriptor.column, []).append(descriptor.name)
    for column, names in by_column.items():
        if len(names) > 1:
            raise AmbiguousFieldError(model, column, tuple(names))
        if column == PK_COLUMN:
            raise AmbiguousFieldError(model, column, (names[0], "<primary key>"))


def _unwrap(annotation: Any) -> tuple[Any, bool, list[Any]]:
    """Strip Annotated and Optional layers, returning (type, nullable, markers)."""
    nullable = False
    markers: list[Any] = []
    while True:
        origin = get_origin(annotation)
        if origin is Annotated:
            markers.extend(annotation.__metadata__)
            annotation = annotation.__origin__
            continue
        if origin is Union or origin is types.UnionType:
            args = get_args(annotation)
            remaining = tuple(a for a in args if a is not type(None))
            nullable = nullable or len(remaining) != len(args)
            if len(remaining) == 1:
                annotation = remaining[0]
                continue
            annotation = Union[remaining]
        return annotation, nullable, markers


def _kind_for(annotation: Any, markers: list[Any]) -> Kind:
    fixed = next((m for m in markers if isinstance(m, FixedArray)), None)
    if fixed is not None:
        if annotation is not array:
            raise UnsupportedTypeError("FixedArray applies to array.array fields only")
        try:
            array(fixed.typecode)
        except (TypeError, ValueError) as e:
            raise UnsupportedTypeError(f"Bad array typecode {fixed.typecode!r}") from e
        return Kind(type_kind=TypeKind.FIXED_BYTE_ARRAY, length=fixed.length, typecode=fixed.typecode, python_type=array)

    if annotation in _NUMBER_TYPES:
        return Kind(type_kind=TypeKind.NUMBER, python_type=annotation)
    if get_origin(annotation) is Union and all(a in _NUMBER_TYPES for a in get_args(annotation)):
        return Kind(type_kind=TypeKind.NUMBER)
    if annotation is str:
        return Kind(type_kind=TypeKind.TEXT, python_type=str)
    if annotation is datetime:
        return Kind(type_kind=TypeKind.DATE, python_type=datetime)
    if annotation in (bytes, bytearray):
        return Kind(type_kind=TypeKind.OPAQUE_BLOB, python_type=annotation)
    if isinstance(annotation, type) and issubclass(annotation, (ctypes.Structure, ctypes.Union)):
        return Kind(type_kind=TypeKind.STRUCT_VALUE, python_type=annotation)
    if is_persistent_type(annotation):
        return Kind(type_kind=TypeKind.EMBEDDED_OBJECT_REF, python_type=annotation)

    origin = get_origin(annotation) or annotation
    args = get_args(annotation)
    if origin is list and len(args) == 1 and is_persistent_type(_unwrap(args[0])[0]):
        return Kind(type_kind=TypeKind.RELATION_COLLECTION, python_type=_unwrap(args[0])[0])
    if origin in (list, tuple):
        _check_elements(args)
        return Kind(type_kind=TypeKind.ORDERED_COLLECTION, python_type=origin)
    if origin is dict:
        _check_elements(args)
        return Kind(type_kind=TypeKind.KEYED_COLLECTION, python_type=dict)
    if origin in (set, frozenset):
        _check_elements(args)
        return Kind(type_kind=TypeKind.UNORDERED_COLLECTION, python_type=origin)

    raise UnsupportedTypeError(f"{annotation!r} is not a persistable type")


def _check_elements(args: tuple[Any, ...]) -> None:
    for arg in args:
        if arg is Ellipsis:
            continue
        element, _, _ = _unwrap(arg)
        candidates = get_args(element) if get_origin(element) is Union else (element,)
        for candidate in candidates:
            if candidate not in _ELEMENT_TYPES:
                raise UnsupportedTypeError(f"{candidate!r} is not an encodable collection element")
