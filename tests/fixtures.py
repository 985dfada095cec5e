"""
Fixture persistent types shared by the test suite.

- `BasicData`: a small flat object used as a relation element
- `SpecialData`: subclass of BasicData, stored in its own table
- `DataContainer`: one field of every scalar kind, an embedded reference and a relation
- `Collections`: arrays, dicts and sets of strings and of bytes
- `Node`: self-referencing type for cycle tests
- `Catalog`: relation options (non-owned, unordered)
"""

import ctypes
from array import array
from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import Field

from persistent_objects import TRANSIENT, FixedArray, PersistentObject, Relation


class Rect(ctypes.Structure):
    _fields_ = [
        ("x", ctypes.c_double),
        ("y", ctypes.c_double),
        ("width", ctypes.c_double),
        ("height", ctypes.c_double),
    ]


class BasicData(PersistentObject):
    name: str = ""
    value: int = 0


class SpecialData(BasicData):
    flag: bool = False


class DataContainer(PersistentObject):
    unsigned_array: Annotated[array, FixedArray(100, "I")]
    rect: Rect
    number: float
    transient_number: Annotated[Optional[int], TRANSIENT] = None
    date: datetime
    basic: Optional[BasicData] = None
    basic_objects: list[BasicData] = Field(default_factory=list)


class Collections(PersistentObject):
    strings_array: list[str] = Field(default_factory=list)
    strings_dict: dict[str, str] = Field(default_factory=dict)
    strings_set: set[str] = Field(default_factory=set)

    data_array: list[bytes] = Field(default_factory=list)
    data_dict: dict[str, bytes] = Field(default_factory=dict)
    data_set: set[bytes] = Field(default_factory=set)


class Node(PersistentObject):
    label: str
    parent: Optional["Node"] = None
    children: list["Node"] = Field(default_factory=list)


class Catalog(PersistentObject):
    title: str
    featured: Annotated[list[BasicData], Relation(owned=False)] = Field(default_factory=list)
    tags: Annotated[list[BasicData], Relation(ordered=False)] = Field(default_factory=list)


FIXTURE_DATE = datetime(2009, 1, 16, 12, 30, 15, 250000, tzinfo=timezone.utc)


def make_container(related: int = 3) -> DataContainer:
    """DataContainer filled with fixture data and `related` BasicData elements."""
    return DataContainer(
        unsigned_array=array("I", range(100)),
        rect=Rect(1.5, 2.5, 100.0, 50.0),
        number=42.5,
        transient_number=7,
        date=FIXTURE_DATE,
        basic=BasicData(name="embedded", value=99),
        basic_objects=[BasicData(name=f"basic-{i}", value=i) for i in range(related)],
    )


def make_collections() -> Collections:
    return Collections(
        strings_array=["one", "two", "three", "two"],
        strings_dict={"a": "alpha", "b": "beta"},
        strings_set={"red", "green", "blue"},
        data_array=[b"\x00\x01", b"", b"\xff" * 16],
        data_dict={"zero": b"\x00", "ones": b"\x01\x01"},
        data_set={b"x", b"yy", b"\x00zzz"},
    )
