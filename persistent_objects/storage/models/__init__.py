"""SQLModel persistence models used by the store backends."""

from persistent_objects.storage.models.link import LINK_TABLE, RelationLink

__all__ = [
    "LINK_TABLE",
    "RelationLink",
]
