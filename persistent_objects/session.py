"""
Persistence session: transactional save, load and delete of object graphs.

A session binds the schema reflector, row mapper and relation resolver to one
store. Each public call runs in a single store transaction, so an object's row
and its relation links are always written together.

Save order for one object:

1. A transient object's row is inserted first, allocating its primary key
2. Embedded references are saved and their keys collected
3. Relation elements are saved and the relation's links replaced
4. The object's row is rewritten with the final reference keys

Inserting before recursing means a cycle back to a new ancestor already finds
the ancestor's key.

Example:

    >>> session = PersistenceSession(SQLiteStore(":memory:"))
    >>> session.save(container)
    >>> session.load(DataContainer, container.pk)
"""

from functools import partial
from typing import Any, Optional

import structlog

from persistent_objects import mapper
from persistent_objects.base import ObjectState
from persistent_objects.errors import NotFoundError, UseAfterDeleteError
from persistent_objects.relations import LoadContext, RelationResolver, SaveContext
from persistent_objects.schema import Schema, reflect
from persistent_objects.storage.interfaces import StoreInterface

logger = structlog.get_logger()


class PersistenceSession:
    """Saves, loads and deletes persistent objects against one store."""

    def __init__(self, store: StoreInterface):
        self.store = store
        self.relations = RelationResolver(store)

    def ensure_table(self, schema: Schema) -> None:
        """Create the row table of a type, or add the columns it is missing."""
        self.store.create_table(schema.table, schema.column_affinities())

    # ========== SAVE ==========

    def save(self, obj: Any) -> Any:
        """
        Save an object and everything it references.

        Transient objects are inserted, persisted ones updated in place. If anything
        fails the transaction is rolled back and every object touched by the save
        keeps the identity and lifecycle state it had before.

        Raises:
            UseAfterDeleteError: The object (or a related one) was deleted
            NotFoundError: A persisted object's row no longer exists
        """
        if obj.state == ObjectState.DELETED:
            raise UseAfterDeleteError(f"Cannot save deleted {type(obj).__name__}")

        context = SaveContext()
        try:
            with self.store.transaction():
                self._save(obj, context)
        except BaseException:
            context.restore()
            raise
        context.finish()
        logger.info("object_saved", model=type(obj).__name__, pk=obj.pk, objects=len(context.rows))
        return obj

    def _save(self, obj: Any, context: SaveContext) -> int:
        if obj.state == ObjectState.DELETED:
            raise UseAfterDeleteError(f"Cannot save deleted {type(obj).__name__}")

        schema = reflect(type(obj))
        self.ensure_table(schema)
        context.touch(obj)

        if obj.pk is None:
            empty = {field.name: None for field in schema.references}
            obj._pk = self.store.insert_row(schema.table, mapper.to_row(schema, obj, empty))
        context.visited.add((schema.table, obj.pk))

        save_element = partial(self._save_element, context=context)
        references = self.relations.save_references(schema, obj, save_element)
        for field in schema.relations:
            self.relations.save_relation(schema, obj.pk, field, getattr(obj, field.name), save_element)

        row = mapper.to_row(schema, obj, references)
        if not self.store.update_row(schema.table, obj.pk, row):
            raise NotFoundError(schema.table, obj.pk)
        context.rows[id(obj)] = row
        return obj.pk

    def _save_element(self, element: Any, resave: bool, context: SaveContext) -> int:
        if context.is_visited(element):
            return element.pk
        if not resave and element.state == ObjectState.PERSISTED:
            return element.pk
        return self._save(element, context)

    # ========== LOAD ==========

    def load(self, model: type, pk: int) -> Any:
        """
        Load one object by primary key, with its references and relations.

        Raises:
            NotFoundError: No row exists for the key
            DanglingReferenceError: A reference or link points at a missing row
        """
        schema = reflect(model)
        self.ensure_table(schema)
        context = LoadContext()
        with self.store.transaction():
            obj = self._load(schema, pk, context)
        if obj is None:
            raise NotFoundError(schema.table, pk)
        logger.debug("object_loaded", model=model.__name__, pk=pk, objects=len(context))
        return obj

    def all(self, model: type, limit: Optional[int] = None, offset: int = 0) -> list[Any]:
        """Load every object of a type in key order, optionally paginated."""
        schema = reflect(model)
        self.ensure_table(schema)
        context = LoadContext()
        with self.store.transaction():
            return [context.get(schema.table, pk) or self._materialize(schema, pk, row, context) for pk, row in self.store.select_rows(schema.table, limit, offset)]

    def count(self, model: type) -> int:
        """Number of stored objects of a type."""
        schema = reflect(model)
        self.ensure_table(schema)
        return self.store.count_rows(schema.table)

    def _load(self, schema: Schema, pk: int, context: LoadContext) -> Optional[Any]:
        cached = context.get(schema.table, pk)
        if cached is not None:
            return cached
        self.ensure_table(schema)
        row = self.store.select_row(schema.table, pk)
        if row is None:
            return None
        return self._materialize(schema, pk, row, context)

    def _load_element(self, model: type, pk: int, context: LoadContext) -> Optional[Any]:
        return self._load(reflect(model), pk, context)

    def _materialize(self, schema: Schema, pk: int, row: dict, context: LoadContext) -> Any:
        obj = mapper.from_row(schema, row)
        obj._pk = pk
        obj._state = ObjectState.PERSISTED
        obj._snapshot = {field.column: row[field.column] for field in schema.columns}
        context.add(schema.table, pk, obj)

        load_element = partial(self._load_element, context=context)
        for name, related_id in mapper.reference_ids(schema, row).items():
            setattr(obj, name, self.relations.load_reference(schema, pk, schema.field(name), related_id, load_element))
        for field in schema.relations:
            setattr(obj, field.name, self.relations.load_relation(schema, pk, field, load_element))
        return obj

    # ========== DELETE ==========

    def delete(self, obj: Any) -> None:
        """
        Delete an object's row and the relation links it owns.

        Related objects are left in place. A transient object is only marked deleted.

        Raises:
            UseAfterDeleteError: The object was already deleted
            NotFoundError: The object's row no longer exists
        """
        if obj.state == ObjectState.DELETED:
            raise UseAfterDeleteError(f"{type(obj).__name__} is already deleted")

        if obj.pk is not None:
            schema = reflect(type(obj))
            self.ensure_table(schema)
            with self.store.transaction():
                self.relations.delete_links(schema, obj.pk)
                if not self.store.delete_row(schema.table, obj.pk):
                    raise NotFoundError(schema.table, obj.pk)
            logger.info("object_deleted", model=type(obj).__name__, pk=obj.pk)

        obj._pk = None
        obj._state = ObjectState.DELETED
        obj._snapshot = None
