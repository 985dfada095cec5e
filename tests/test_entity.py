"""
Tests for the PersistentObject lifecycle: save, load, delete and their failures.

Run with: pytest tests/test_entity.py -v
"""

from array import array
from datetime import datetime, timezone

import pytest

from persistent_objects.base import ObjectState
from persistent_objects.errors import NotFoundError, SizeMismatchError, StoreIOError, UnsupportedTypeError, UseAfterDeleteError
from persistent_objects.storage.backends.sqlite import SQLiteStore
from tests.fixtures import FIXTURE_DATE, BasicData, DataContainer, make_container


class TestConcreteScenario:
    """Every declared kind on one object, with three related objects."""

    def test_save_and_load(self, any_store):
        container = make_container(related=3)
        container.save()
        assert container.state == ObjectState.PERSISTED
        assert container.pk is not None

        loaded = DataContainer.load(container.pk)
        assert loaded is not container
        assert loaded.unsigned_array == array("I", range(100))
        assert loaded.unsigned_array.tobytes() == container.unsigned_array.tobytes()
        assert bytes(loaded.rect) == bytes(container.rect)
        assert loaded.number == 42.5
        assert loaded.date == FIXTURE_DATE
        assert loaded.transient_number is None
        assert loaded.basic.name == "embedded"
        assert loaded.basic.value == 99
        assert [b.name for b in loaded.basic_objects] == ["basic-0", "basic-1", "basic-2"]
        assert [b.pk for b in loaded.basic_objects] == [b.pk for b in container.basic_objects]

    def test_related_objects_are_saved(self, any_store):
        container = make_container(related=3)
        container.save()
        assert all(b.state == ObjectState.PERSISTED for b in container.basic_objects)
        assert container.basic.state == ObjectState.PERSISTED
        assert BasicData.count() == 4

    def test_loaded_objects_are_persisted_and_clean(self, any_store):
        container = make_container()
        container.save()
        loaded = DataContainer.load(container.pk)
        assert loaded.state == ObjectState.PERSISTED
        assert not loaded.is_dirty
        assert all(b.state == ObjectState.PERSISTED for b in loaded.basic_objects)


class TestLifecycle:
    """TRANSIENT → PERSISTED → DELETED transitions."""

    def test_new_object_is_transient(self):
        basic = BasicData(name="new")
        assert basic.state == ObjectState.TRANSIENT
        assert basic.pk is None
        assert basic.is_dirty

    def test_save_inserts_then_updates(self, store):
        basic = BasicData(name="first", value=1).save()
        pk = basic.pk

        basic.value = 2
        basic.save()

        assert basic.pk == pk
        assert BasicData.count() == 1
        assert BasicData.load(pk).value == 2

    def test_save_returns_self(self, store):
        basic = BasicData(name="chained")
        assert basic.save() is basic

    def test_explicit_store_argument(self, store):
        other = SQLiteStore(":memory:")
        try:
            basic = BasicData(name="elsewhere").save(other)
            assert BasicData.count(store=other) == 1
            assert BasicData.count() == 0
            assert BasicData.load(basic.pk, store=other).name == "elsewhere"
        finally:
            other.close()

    def test_delete(self, store):
        basic = BasicData(name="doomed").save()
        pk = basic.pk

        basic.delete()

        assert basic.state == ObjectState.DELETED
        assert basic.pk is None
        assert BasicData.count() == 0
        with pytest.raises(NotFoundError):
            BasicData.load(pk)

    def test_delete_transient(self, store):
        basic = BasicData(name="never saved")
        basic.delete()
        assert basic.state == ObjectState.DELETED

    def test_save_after_delete(self, store):
        basic = BasicData(name="gone").save()
        basic.delete()
        with pytest.raises(UseAfterDeleteError):
            basic.save()

    def test_delete_twice(self, store):
        basic = BasicData(name="gone").save()
        basic.delete()
        with pytest.raises(UseAfterDeleteError):
            basic.delete()

    def test_assign_after_delete(self, store):
        basic = BasicData(name="gone").save()
        basic.delete()
        with pytest.raises(UseAfterDeleteError):
            basic.name = "back"
        assert basic.name == "gone"

    def test_delete_keeps_related_objects(self, store):
        container = make_container(related=2)
        container.save()
        container.delete()
        assert BasicData.count() == 3
        assert DataContainer.count() == 0


class TestLoad:
    def test_load_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            BasicData.load(12345)
        assert exc_info.value.table == "basic_data"
        assert exc_info.value.pk == 12345

    def test_all_and_count(self, store):
        for i in range(5):
            BasicData(name=f"item-{i}", value=i).save()

        assert BasicData.count() == 5
        assert [b.value for b in BasicData.all()] == [0, 1, 2, 3, 4]
        assert [b.value for b in BasicData.all(limit=2, offset=1)] == [1, 2]
        assert [b.value for b in BasicData.all(offset=3)] == [3, 4]

    def test_all_on_empty_table(self, store):
        assert BasicData.all() == []
        assert BasicData.count() == 0

    def test_naive_date_loads_as_utc(self, store):
        container = make_container(related=0)
        container.date = datetime(2021, 3, 4, 5, 6, 7)
        container.save()
        assert DataContainer.load(container.pk).date == datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        assert DataContainer.load(container.pk).date != container.date


class TestDirtyTracking:
    def test_clean_after_save(self, store):
        basic = BasicData(name="tracked").save()
        assert not basic.is_dirty

    def test_dirty_after_change(self, store):
        basic = BasicData(name="tracked").save()
        basic.value = 10
        assert basic.is_dirty
        basic.save()
        assert not basic.is_dirty

    def test_deleted_is_never_dirty(self, store):
        basic = BasicData(name="tracked").save()
        basic.delete()
        assert not basic.is_dirty


class TestFailedSaves:
    """A failed save leaves the store and every touched object as they were."""

    def test_invalid_value_stays_transient(self, store):
        container = make_container(related=0)
        container.unsigned_array = array("I", range(99))

        with pytest.raises(SizeMismatchError):
            container.save()

        assert container.state == ObjectState.TRANSIENT
        assert container.pk is None
        assert DataContainer.count() == 0

    def test_fractional_value_for_int_field_is_rejected(self, store):
        basic = BasicData(name="counter", value=1).save()
        pk = basic.pk

        basic.value = 3.5
        with pytest.raises(UnsupportedTypeError):
            basic.save()

        assert basic.state == ObjectState.PERSISTED
        assert basic.pk == pk
        assert basic.value == 3.5
        assert BasicData.load(pk).value == 1

    def test_integral_float_for_int_field_loads_as_int(self, store):
        basic = BasicData(name="counter", value=1).save()
        basic.value = 4.0
        basic.save()

        loaded = BasicData.load(basic.pk)
        assert loaded.value == 4
        assert isinstance(loaded.value, int)

    def test_failure_in_related_object_rolls_back_graph(self, store):
        container = make_container(related=2)
        # does not fit in a 64-bit column
        container.basic_objects.append(BasicData(name="huge", value=2**64))

        with pytest.raises(UnsupportedTypeError):
            container.save()

        assert container.state == ObjectState.TRANSIENT
        assert container.pk is None
        assert container.basic.state == ObjectState.TRANSIENT
        assert container.basic.pk is None
        assert all(b.pk is None for b in container.basic_objects)
        assert BasicData.count() == 0
        assert DataContainer.count() == 0

    def test_failed_update_keeps_persisted_state(self, store):
        container = make_container(related=1)
        container.save()
        pk = container.pk
        element = container.basic_objects[0]

        container.basic_objects.append(BasicData(name="late"))
        container.unsigned_array = array("I", range(50))
        with pytest.raises(SizeMismatchError):
            container.save()

        assert container.state == ObjectState.PERSISTED
        assert container.pk == pk
        assert container.basic_objects[-1].state == ObjectState.TRANSIENT
        assert container.basic_objects[-1].pk is None
        assert element.state == ObjectState.PERSISTED
        assert len(DataContainer.load(pk).basic_objects) == 1

    def test_vanished_row(self, store):
        basic = BasicData(name="orphan").save()
        store.delete_row("basic_data", basic.pk)

        with pytest.raises(NotFoundError):
            basic.save()
        assert basic.state == ObjectState.PERSISTED

    def test_delete_of_vanished_row(self, store):
        basic = BasicData(name="orphan").save()
        store.delete_row("basic_data", basic.pk)

        with pytest.raises(NotFoundError):
            basic.delete()
        assert basic.state == ObjectState.PERSISTED

    def test_store_failure_is_store_io(self, store):
        basic = BasicData(name="closed store")
        store.close()
        with pytest.raises(StoreIOError):
            basic.save()
        assert basic.state == ObjectState.TRANSIENT
