"""
## Overview

`PersistentObject` is the base class of every persistable type. Subclasses are
ordinary pydantic models; their field annotations decide how each value is stored
(see `persistent_objects.schema` for the mapping).

Each instance carries a nullable integer primary key and a lifecycle state:

- **transient**: constructed in memory, no key, nothing written yet
- **persisted**: has a key and a row in the store
- **deleted**: row removed, key cleared (terminal)

Writes happen only on an explicit `save()`. Field values may change in any state
except deleted.

Date fields should hold timezone-aware datetimes. Dates are stored as UTC
milliseconds and always load as aware UTC values, so a naive datetime is saved as
if it were UTC and loads back aware (equal wall-clock time, but not `==`).

Example:

    >>> class Reading(PersistentObject):
    ...     value: float
    ...     taken_at: datetime
    ...     note: Annotated[Optional[str], TRANSIENT] = None
    >>>
    >>> reading = Reading(value=3.5, taken_at=datetime.now(timezone.utc)).save()
    >>> Reading.load(reading.pk).value
    3.5
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, PrivateAttr

from persistent_objects import mapper, schema
from persistent_objects.base import ObjectState
from persistent_objects.errors import UseAfterDeleteError
from persistent_objects.session import PersistenceSession
from persistent_objects.storage.interfaces import StoreInterface
from persistent_objects.storage_factory import get_store


def _session(store: Optional[StoreInterface]) -> PersistenceSession:
    return PersistenceSession(store if store is not None else get_store())


class PersistentObject(BaseModel):
    """
    Base class for objects stored as rows of an embedded SQL store.

    Every subclass is registered under its table name (`__tablename__`, or the
    snake_case class name) when the class is created.

    Every store argument is optional; the default store from
    `persistent_objects.storage_factory` is used when it is omitted.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    _pk: Optional[int] = PrivateAttr(default=None)
    _state: ObjectState = PrivateAttr(default=ObjectState.TRANSIENT)
    _snapshot: Optional[dict] = PrivateAttr(default=None)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        schema.register(cls)

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and self._state == ObjectState.DELETED:
            raise UseAfterDeleteError(f"Cannot assign {type(self).__name__}.{name} after delete")
        super().__setattr__(name, value)

    @property
    def pk(self) -> Optional[int]:
        """Primary key, or None while transient or after delete."""
        return self._pk

    @property
    def state(self) -> ObjectState:
        return self._state

    @property
    def is_dirty(self) -> bool:
        """
        True if saving would change the stored row.

        Only columns of the primary row are compared; relation collections are not.
        Transient objects are always dirty, deleted ones never.
        """
        if self._state == ObjectState.TRANSIENT:
            return True
        if self._state == ObjectState.DELETED:
            return False
        return mapper.to_row(self.persistent_schema(), self) != self._snapshot

    @classmethod
    def persistent_schema(cls) -> "schema.Schema":
        return schema.reflect(cls)

    def save(self, store: Optional[StoreInterface] = None) -> "PersistentObject":
        """Insert or update this object, its references and its relations. Returns self."""
        return _session(store).save(self)

    def delete(self, store: Optional[StoreInterface] = None) -> None:
        """Remove this object's row and the relation links it owns."""
        _session(store).delete(self)

    @classmethod
    def load(cls, pk: int, store: Optional[StoreInterface] = None) -> "PersistentObject":
        """Load one object by primary key. Raises NotFoundError if there is no such row."""
        return _session(store).load(cls, pk)

    @classmethod
    def all(cls, limit: Optional[int] = None, offset: int = 0, store: Optional[StoreInterface] = None) -> list["PersistentObject"]:
        return _session(store).all(cls, limit=limit, offset=offset)

    @classmethod
    def count(cls, store: Optional[StoreInterface] = None) -> int:
        return _session(store).count(cls)
