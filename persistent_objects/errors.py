"""
Error taxonomy for the persistence engine.

Every failure surfaced by the codec, reflector, mapper, relation resolver,
session or store boundary is one of these. Each error also derives from the
closest builtin so callers catching `ValueError` / `LookupError` keep working.
"""

from typing import Any, Optional


class PersistenceError(Exception):
    """Base class for all persistence engine errors."""


class UnsupportedTypeError(PersistenceError, TypeError):
    """A kind or value the engine has no storage representation for."""


class CorruptEncodingError(PersistenceError, ValueError):
    """An encoded value whose tag or payload does not fit the expected kind."""


class SizeMismatchError(PersistenceError, ValueError):
    """A fixed-size buffer whose length differs from the declared size."""

    def __init__(self, expected: int, actual: int, what: str = "buffer"):
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what} must be {expected} bytes, got {actual}")


class AmbiguousFieldError(PersistenceError, ValueError):
    """Two declared fields normalize to the same storage name."""

    def __init__(self, model: type, column: str, fields: tuple[str, ...]):
        self.model = model
        self.column = column
        self.fields = fields
        super().__init__(f"{model.__name__}: fields {', '.join(fields)} all map to column '{column}'")


class MissingColumnError(PersistenceError, LookupError):
    """A persisted field's column is absent from a row."""

    def __init__(self, table: str, column: str):
        self.table = table
        self.column = column
        super().__init__(f"Row from '{table}' has no column '{column}'")


class DanglingReferenceError(PersistenceError, LookupError):
    """A link record or embedded reference points at a row that no longer exists."""

    def __init__(self, owner_table: str, owner_id: int, field: str, related_table: str, related_id: int):
        self.owner_table = owner_table
        self.owner_id = owner_id
        self.field = field
        self.related_table = related_table
        self.related_id = related_id
        super().__init__(f"{owner_table}#{owner_id}.{field} references missing row {related_table}#{related_id}")


class NotFoundError(PersistenceError, LookupError):
    """No row exists for the requested identity."""

    def __init__(self, table: str, pk: Optional[Any]):
        self.table = table
        self.pk = pk
        super().__init__(f"No row in '{table}' with pk={pk}")


class UseAfterDeleteError(PersistenceError, RuntimeError):
    """An operation on an object that has already been deleted."""


class StoreIOError(PersistenceError):
    """A failure raised by the underlying store. The driver error is chained as __cause__."""
