"""
SQLModel persistence model for relation link records.

A link record establishes one element of a relation collection: the owner row,
the field it belongs to, the related row and the element's position.
"""

from typing import Optional

from sqlalchemy import BigInteger, Index, Integer
from sqlmodel import Field, SQLModel

LINK_TABLE = "relation_links"

# 64-bit keys; SQLite only autoincrements an INTEGER PRIMARY KEY
KEY_TYPE = BigInteger().with_variant(Integer, "sqlite")


class RelationLink(SQLModel, table=True):
    """
    One element of a relation collection.

    Attributes:
        id: Surrogate key of the link itself
        owner_table: Table of the owning object
        owner_id: Primary key of the owning object
        field: Storage name of the relation field on the owner
        related_table: Table of the related object (may be a subclass of the declared type)
        related_id: Primary key of the related object
        ordinal: Position of the element in the collection
    """

    __tablename__ = LINK_TABLE
    __table_args__ = (
        Index("idx_relation_links_owner", "owner_table", "owner_id", "field"),
        Index("idx_relation_links_related", "related_table", "related_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True, sa_type=KEY_TYPE)
    owner_table: str
    owner_id: int = Field(sa_type=BigInteger)
    field: str
    related_table: str
    related_id: int = Field(sa_type=BigInteger)
    ordinal: int
