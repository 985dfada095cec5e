"""
Relation resolution: embedded object references and relation collections.

Related objects are never stored inline. An embedded reference is a column
holding the related row's primary key; a relation collection is a set of link
records in the `relation_links` table, one per element:

    (owner_table, owner_id, field, related_table, related_id, ordinal)

Saving a relation replaces every link of (owner, field). Loading reads the links
back in ordinal order (related-id order for unordered relations) and loads each
element through its own type's load path.

The resolver does not save or load objects itself; the session hands it callbacks
so that the cycle policy lives in one place (see `SaveContext` / `LoadContext`).
"""

from typing import Any, Callable, Iterable, Optional

import structlog

from persistent_objects.base import ObjectState
from persistent_objects.errors import DanglingReferenceError, UnsupportedTypeError
from persistent_objects.schema import FieldDescriptor, Schema, model_for_table, table_name
from persistent_objects.storage.interfaces import StoreInterface
from persistent_objects.storage.models.link import RelationLink

logger = structlog.get_logger()

# save_element(element, resave) -> primary key of the saved element
SaveElement = Callable[[Any, bool], int]
# load_element(model, pk) -> loaded object, or None if the row is missing
LoadElement = Callable[[type, int], Optional[Any]]


# ============================================================================
# Call-chain contexts
# ============================================================================


class SaveContext:
    """
    State of one save call chain.

    Tracks the (table, pk) identities already saved in this chain so that a cycle
    back to an ancestor only writes the link. Records the identity and lifecycle
    state of every object the chain touches, so a failed save can put them back.
    """

    def __init__(self):
        self.visited: set[tuple[str, int]] = set()
        self.rows: dict[int, dict] = {}
        self._touched: list[tuple[Any, Optional[int], ObjectState, Optional[dict]]] = []
        self._seen: set[int] = set()

    def touch(self, obj: Any) -> None:
        if id(obj) in self._seen:
            return
        self._seen.add(id(obj))
        self._touched.append((obj, obj._pk, obj._state, obj._snapshot))

    def is_visited(self, obj: Any) -> bool:
        return obj.pk is not None and (table_name(type(obj)), obj.pk) in self.visited

    def restore(self) -> None:
        """Undo identity and state changes after a rolled-back save."""
        for obj, pk, state, snapshot in self._touched:
            obj._pk = pk
            obj._state = state
            obj._snapshot = snapshot
        logger.debug("save_restored", objects=len(self._touched))

    def finish(self) -> None:
        """Mark every saved object persisted, remembering the row it was saved with."""
        for obj, _, _, _ in self._touched:
            obj._state = ObjectState.PERSISTED
            obj._snapshot = self.rows.get(id(obj))


class LoadContext:
    """Identity map for one load call: each (table, pk) is materialized once."""

    def __init__(self):
        self._objects: dict[tuple[str, int], Any] = {}

    def get(self, table: str, pk: int) -> Optional[Any]:
        return self._objects.get((table, pk))

    def add(self, table: str, pk: int, obj: Any) -> None:
        self._objects[(table, pk)] = obj

    def __len__(self) -> int:
        return len(self._objects)


# ============================================================================
# Resolver
# ============================================================================


class RelationResolver:
    """Reads and writes embedded references and relation link records."""

    def __init__(self, store: StoreInterface):
        self.store = store

    def save_references(self, schema: Schema, obj: Any, save_element: SaveElement) -> dict[str, Optional[int]]:
        """
        Save every embedded reference of an object.

        Returns:
            Primary key of each referenced object keyed by field name (None for empty references)
        """
        keys: dict[str, Optional[int]] = {}
        for field in schema.references:
            related = getattr(obj, field.name)
            if related is None:
                keys[field.name] = None
                continue
            if type(related) is not field.related_type:
                raise UnsupportedTypeError(f"{schema.model.__name__}.{field.name} holds {type(related).__name__}, expected {field.related_type.__name__}")
            keys[field.name] = save_element(related, True)
        return keys

    def save_relation(self, schema: Schema, owner_id: int, field: FieldDescriptor, elements: Optional[Iterable[Any]], save_element: SaveElement) -> int:
        """
        Save the elements of a relation collection and replace its link records.

        Args:
            schema: Owner schema
            owner_id: Owner primary key
            field: Relation field descriptor
            elements: Related objects in collection order (None means empty)
            save_element: Saves one element and returns its key. The second argument
                asks for a re-save of elements that are already persisted.

        Returns:
            Number of links written
        """
        elements = list(elements or [])
        links = []
        for ordinal, element in enumerate(elements):
            if not isinstance(element, field.related_type):
                raise UnsupportedTypeError(f"{schema.model.__name__}.{field.name}[{ordinal}] holds {type(element).__name__}, expected {field.related_type.__name__}")
            related_id = save_element(element, field.owned)
            links.append(
                RelationLink(
                    owner_table=schema.table,
                    owner_id=owner_id,
                    field=field.column,
                    related_table=table_name(type(element)),
                    related_id=related_id,
                    ordinal=ordinal,
                )
            )

        removed = self.store.delete_links(schema.table, owner_id, field.column)
        for link in links:
            self.store.insert_link(link)
        logger.debug("relation_saved", table=schema.table, owner_id=owner_id, field=field.name, links=len(links), replaced=removed)
        return len(links)

    def load_reference(self, schema: Schema, owner_id: int, field: FieldDescriptor, related_id: Optional[int], load_element: LoadElement) -> Optional[Any]:
        """Resolve one embedded reference, or None if the column is NULL."""
        if related_id is None:
            return None
        related = load_element(field.related_type, related_id)
        if related is None:
            raise DanglingReferenceError(schema.table, owner_id, field.name, table_name(field.related_type), related_id)
        return related

    def load_relation(self, schema: Schema, owner_id: int, field: FieldDescriptor, load_element: LoadElement) -> list[Any]:
        """
        Load the related objects of one relation field.

        Elements come back in ordinal order, or ordered by related id when the
        relation is unordered. A link to a missing row raises DanglingReferenceError.
        """
        links = self.store.select_links(schema.table, owner_id, field.column)
        if not field.ordered:
            links = sorted(links, key=lambda link: (link.related_id, link.related_table))

        elements = []
        for link in links:
            model = model_for_table(link.related_table)
            if model is None:
                raise UnsupportedTypeError(f"No persistent type is registered for table '{link.related_table}'")
            element = load_element(model, link.related_id)
            if element is None:
                raise DanglingReferenceError(schema.table, owner_id, field.name, link.related_table, link.related_id)
            elements.append(element)
        return elements

    def delete_links(self, schema: Schema, owner_id: int) -> int:
        """Remove every link record owned by a row."""
        removed = self.store.delete_links(schema.table, owner_id)
        logger.debug("links_deleted", table=schema.table, owner_id=owner_id, links=removed)
        return removed
