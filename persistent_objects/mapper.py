"""
Mapper functions to convert between persistent objects and store rows.

This module bridges the gap between:
- Persistent objects (entity.py) - pydantic instances used by application code
- Rows - flat mappings of column name to EncodedValue exchanged with the store

Transient and relation fields never produce a column. Embedded object references
are stored as the referenced object's primary key; resolving that key back into
an object is the relation resolver's job, not the mapper's.
"""

from typing import Any, Iterable, Mapping, Optional

from persistent_objects import codec
from persistent_objects.base import EncodedValue
from persistent_objects.errors import MissingColumnError, UnsupportedTypeError
from persistent_objects.schema import Schema

Row = dict[str, EncodedValue]


def to_row(schema: Schema, instance: Any, references: Optional[Mapping[str, Optional[int]]] = None) -> Row:
    """
    Encode an instance into a row.

    Args:
        schema: Schema of the instance's type
        instance: Object to encode
        references: Primary keys to use for embedded references, keyed by field name.
            Fields not listed use the referenced object's own key (NULL while unsaved).

    Returns:
        Mapping of column name to EncodedValue, in schema order

    Example:
        >>> row = to_row(reflect(Sample), Sample(number=3))
        >>> row["number"]
        EncodedValue(tag=<StorageClass.INTEGER: 'integer'>, value=3)
    """
    references = references or {}
    row: Row = {}
    for field in schema.columns:
        value = getattr(instance, field.name)
        if field.is_reference:
            value = references[field.name] if field.name in references else _reference_key(schema, field.name, field.related_type, value)
        row[field.column] = codec.encode(value, field.kind)
    return row


def from_row(schema: Schema, row: Mapping[str, EncodedValue]) -> Any:
    """
    Decode a row into a new instance of the schema's type.

    Columns missing from the row raise MissingColumnError; unknown columns are ignored.
    Transient fields take their defaults and relation fields their defaults (or an
    empty list). Embedded references are left as None for the caller to resolve.
    """
    values: dict[str, Any] = {}
    for field in schema.columns:
        if field.column not in row:
            raise MissingColumnError(schema.table, field.column)
        if field.is_reference:
            values[field.name] = None
            continue
        values[field.name] = codec.decode(row[field.column], field.kind)

    for field in schema.fields:
        if field.name in values:
            continue
        info = schema.model.model_fields[field.name]
        if info.is_required():
            values[field.name] = [] if field.is_relation else None
        else:
            values[field.name] = info.get_default(call_default_factory=True)

    return schema.model.model_construct(**values)


def reference_ids(schema: Schema, row: Mapping[str, EncodedValue]) -> dict[str, Optional[int]]:
    """Primary keys stored for each embedded reference field, keyed by field name."""
    ids = {}
    for field in schema.references:
        if field.column not in row:
            raise MissingColumnError(schema.table, field.column)
        ids[field.name] = codec.decode(row[field.column], field.kind)
    return ids


def _reference_key(schema: Schema, name: str, related_type: type, value: Any) -> Optional[int]:
    if value is None:
        return None
    if type(value) is not related_type:
        raise UnsupportedTypeError(f"{schema.model.__name__}.{name} holds {type(value).__name__}, expected {related_type.__name__}")
    return value.pk


# Convenience functions for batch operations
def to_rows(schema: Schema, instances: Iterable[Any]) -> list[Row]:
    """Encode multiple instances of one type."""
    return [to_row(schema, instance) for instance in instances]


def from_rows(schema: Schema, rows: Iterable[Mapping[str, EncodedValue]]) -> list[Any]:
    """Decode multiple rows of one type."""
    return [from_row(schema, row) for row in rows]
