"""
Global fixtures for the test suite.

This `conftest.py` file provides fixtures that are available to all tests
in the `tests/` directory and its subdirectories.

Fixtures:
- `store`: A fresh in-memory SQLiteStore, also installed as the default store
  so `obj.save()` / `Cls.load(pk)` work without a store argument.
- `any_store`: The same, parametrized over both backends (SQLiteStore and
  EngineStore on an in-memory SQLAlchemy SQLite URL).

Fixture persistent types live in `tests/fixtures.py`.

Run all tests with:
    pytest -v
"""

import pytest

from persistent_objects.storage.backends.engine import EngineStore
from persistent_objects.storage.backends.sqlite import SQLiteStore
from persistent_objects.storage_factory import set_store


@pytest.fixture
def store():
    """In-memory SQLite store installed as the default store."""
    store = SQLiteStore(":memory:")
    previous = set_store(store)
    yield store
    set_store(previous)
    store.close()


@pytest.fixture(params=["sqlite", "engine"])
def any_store(request):
    """Each backend in turn, installed as the default store."""
    store = SQLiteStore(":memory:") if request.param == "sqlite" else EngineStore("sqlite://")
    previous = set_store(store)
    yield store
    set_store(previous)
    store.close()
