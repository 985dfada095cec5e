"""
Tests for the type codec (value <-> EncodedValue).

Run with: pytest tests/test_codec.py -v
"""

import ctypes
import math
from array import array
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from persistent_objects import codec
from persistent_objects.base import EncodedValue, Kind, StorageClass, TypeKind
from persistent_objects.errors import CorruptEncodingError, SizeMismatchError, UnsupportedTypeError
from tests.fixtures import Rect

INT = Kind(type_kind=TypeKind.NUMBER, python_type=int)
FLOAT = Kind(type_kind=TypeKind.NUMBER, python_type=float)
BOOL = Kind(type_kind=TypeKind.NUMBER, python_type=bool)
ARRAY_4 = Kind(type_kind=TypeKind.FIXED_BYTE_ARRAY, length=4, typecode="I", python_type=array)
RECT = Kind(type_kind=TypeKind.STRUCT_VALUE, python_type=Rect)
LIST = Kind(type_kind=TypeKind.ORDERED_COLLECTION, python_type=list)
TUPLE = Kind(type_kind=TypeKind.ORDERED_COLLECTION, python_type=tuple)
DICT = Kind(type_kind=TypeKind.KEYED_COLLECTION, python_type=dict)
SET = Kind(type_kind=TypeKind.UNORDERED_COLLECTION, python_type=set)


def roundtrip(value, kind):
    return codec.decode(codec.encode(value, kind), kind)


class TestNumbers:
    """NUMBER kind."""

    def test_int_roundtrip(self):
        encoded = codec.encode(42, INT)
        assert encoded == EncodedValue.integer(42)
        assert codec.decode(encoded, INT) == 42

    def test_float_roundtrip(self):
        assert codec.encode(2.5, FLOAT).tag == StorageClass.REAL
        assert roundtrip(-0.125, FLOAT) == -0.125

    def test_bool_roundtrip(self):
        assert codec.encode(True, BOOL) == EncodedValue.integer(1)
        assert roundtrip(False, BOOL) is False

    def test_int64_limits(self):
        assert roundtrip(2**63 - 1, INT) == 2**63 - 1
        assert roundtrip(-(2**63), INT) == -(2**63)
        with pytest.raises(UnsupportedTypeError):
            codec.encode(2**63, INT)

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_rejected(self, value):
        with pytest.raises(UnsupportedTypeError):
            codec.encode(value, FLOAT)

    def test_integral_real_decodes_as_int(self):
        assert codec.decode(EncodedValue.real(3.0), INT) == 3

    def test_fractional_real_for_int_is_corrupt(self):
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.real(3.5), INT)

    def test_text_tag_for_number_is_corrupt(self):
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.text("3"), INT)

    def test_string_is_not_a_number(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode("3", INT)

    def test_integral_float_for_int_field_stored_as_integer(self):
        assert codec.encode(3.0, INT) == EncodedValue.integer(3)
        assert codec.encode(1.0, BOOL) == EncodedValue.integer(1)

    @pytest.mark.parametrize("value", [3.5, math.nan, math.inf])
    def test_non_integral_float_for_int_field_rejected(self, value):
        with pytest.raises(UnsupportedTypeError):
            codec.encode(value, INT)

    def test_fractional_float_for_bool_field_rejected(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode(0.5, BOOL)


class TestDates:
    """DATE kind: integer milliseconds since the epoch, UTC."""

    def test_epoch_is_zero(self):
        assert codec.encode(codec.EPOCH, TypeKind.DATE) == EncodedValue.integer(0)

    def test_aware_roundtrip(self):
        value = datetime(2009, 1, 16, 12, 30, 15, 250000, tzinfo=timezone.utc)
        assert roundtrip(value, TypeKind.DATE) == value

    def test_other_timezone_normalized_to_utc(self):
        value = datetime(2020, 6, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        decoded = roundtrip(value, TypeKind.DATE)
        assert decoded == value
        assert decoded.utcoffset() == timedelta(0)

    def test_naive_is_read_as_utc(self):
        decoded = roundtrip(datetime(2020, 6, 1, 12, 0), TypeKind.DATE)
        assert decoded == datetime(2020, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert decoded != datetime(2020, 6, 1, 12, 0)

    def test_sub_millisecond_truncated(self):
        value = datetime(2020, 6, 1, 12, 0, 0, 123999, tzinfo=timezone.utc)
        assert roundtrip(value, TypeKind.DATE) == value.replace(microsecond=123000)

    def test_before_epoch_floors(self):
        value = datetime(1969, 12, 31, 23, 59, 59, 999500, tzinfo=timezone.utc)
        assert codec.encode(value, TypeKind.DATE) == EncodedValue.integer(-1)
        assert roundtrip(value, TypeKind.DATE) == value.replace(microsecond=999000)

    def test_not_a_datetime(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode("2020-06-01", TypeKind.DATE)


class TestFixedArrays:
    """FIXED_BYTE_ARRAY kind."""

    def test_roundtrip(self):
        values = array("I", [1, 2, 3, 0xFFFFFFFF])
        assert roundtrip(values, ARRAY_4) == values

    def test_little_endian_layout(self):
        encoded = codec.encode(array("I", [1, 2, 3, 4]), ARRAY_4)
        assert encoded.value[:4] == (1).to_bytes(ARRAY_4.item_size, "little")

    def test_wrong_element_count(self):
        with pytest.raises(SizeMismatchError):
            codec.encode(array("I", [1, 2, 3]), ARRAY_4)

    def test_wrong_buffer_size(self):
        with pytest.raises(SizeMismatchError) as exc_info:
            codec.decode(EncodedValue.blob(b"\x00" * 3), ARRAY_4)
        assert exc_info.value.expected == 4 * ARRAY_4.item_size
        assert exc_info.value.actual == 3

    def test_wrong_typecode(self):
        with pytest.raises(SizeMismatchError):
            codec.encode(array("d", [1.0, 2.0, 3.0, 4.0]), ARRAY_4)

    def test_not_an_array(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode([1, 2, 3, 4], ARRAY_4)


class TestBlobsAndStructs:
    """OPAQUE_BLOB and STRUCT_VALUE kinds."""

    def test_blob_verbatim(self):
        data = bytes(range(256))
        assert codec.encode(data, TypeKind.OPAQUE_BLOB) == EncodedValue.blob(data)
        assert roundtrip(data, TypeKind.OPAQUE_BLOB) == data

    def test_bytearray_kind(self):
        kind = Kind(type_kind=TypeKind.OPAQUE_BLOB, python_type=bytearray)
        decoded = roundtrip(bytearray(b"abc"), kind)
        assert isinstance(decoded, bytearray)
        assert decoded == bytearray(b"abc")

    def test_struct_roundtrip_byte_for_byte(self):
        rect = Rect(1.5, 2.5, 100.0, 50.0)
        decoded = roundtrip(rect, RECT)
        assert isinstance(decoded, Rect)
        assert bytes(decoded) == bytes(rect)
        assert decoded.width == 100.0

    def test_struct_size_mismatch(self):
        with pytest.raises(SizeMismatchError):
            codec.decode(EncodedValue.blob(b"\x00" * (ctypes.sizeof(Rect) - 1)), RECT)

    def test_struct_of_other_type(self):
        class Point(ctypes.Structure):
            _fields_ = [("x", ctypes.c_int), ("y", ctypes.c_int)]

        with pytest.raises(UnsupportedTypeError):
            codec.encode(Point(1, 2), RECT)

    def test_integer_tag_for_blob_is_corrupt(self):
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.integer(1), TypeKind.OPAQUE_BLOB)


class TestCollections:
    """Ordered, keyed and unordered collections."""

    def test_wire_format(self):
        encoded = codec.encode(["a", 1, None], LIST)
        assert encoded.value == (
            b"\x00\x00\x00\x03"
            + b"\x03\x00\x00\x00\x01a"
            + b"\x01" + (1).to_bytes(8, "big", signed=True)
            + b"\x00"
        )

    def test_mixed_list_roundtrip(self):
        values = ["text", b"\x00\xff", 7, -2.5, None]
        assert roundtrip(values, LIST) == values

    def test_tuple_roundtrip(self):
        assert roundtrip((1, 2, 3), TUPLE) == (1, 2, 3)

    def test_bool_elements_come_back_as_ints(self):
        decoded = roundtrip([True, False], LIST)
        assert decoded == [1, 0]
        assert [type(value) for value in decoded] == [int, int]

    def test_empty_collections(self):
        assert roundtrip([], LIST) == []
        assert roundtrip({}, DICT) == {}
        assert roundtrip(set(), SET) == set()

    def test_dict_roundtrip(self):
        values = {"a": b"\x01", "b": None, 3: "three"}
        assert roundtrip(values, DICT) == values

    def test_set_encoding_is_canonical(self):
        first = {"pear", "apple", "fig", "banana"}
        second = set()
        for item in ["banana", "fig", "apple", "pear"]:
            second.add(item)
        assert codec.encode(first, SET) == codec.encode(second, SET)

    def test_dict_encoding_is_canonical(self):
        first = {"z": 1, "a": 2, "m": 3}
        second = {"m": 3, "a": 2, "z": 1}
        assert codec.encode(first, DICT) == codec.encode(second, DICT)

    def test_frozenset_kind(self):
        kind = Kind(type_kind=TypeKind.UNORDERED_COLLECTION, python_type=frozenset)
        decoded = roundtrip(frozenset({b"x", b"y"}), kind)
        assert decoded == frozenset({b"x", b"y"})
        assert isinstance(decoded, frozenset)

    def test_unencodable_element(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode([object()], LIST)

    def test_truncated_buffer(self):
        encoded = codec.encode(["abc"], LIST)
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.blob(encoded.value[:-1]), LIST)

    def test_trailing_bytes(self):
        encoded = codec.encode([1], LIST)
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.blob(encoded.value + b"\x00"), LIST)

    def test_unknown_element_code(self):
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.blob(b"\x00\x00\x00\x01\x09"), LIST)

    def test_invalid_utf8_text(self):
        with pytest.raises(CorruptEncodingError):
            codec.decode(EncodedValue.blob(b"\x00\x00\x00\x01\x03\x00\x00\x00\x01\xff"), LIST)


class TestClosedSet:
    """Behavior shared by every kind."""

    @pytest.mark.parametrize("type_kind", [k for k in TypeKind if k != TypeKind.RELATION_COLLECTION])
    def test_none_encodes_to_null(self, type_kind):
        assert codec.encode(None, type_kind).is_null
        assert codec.decode(EncodedValue.null(), type_kind) is None

    def test_relation_is_not_column_encodable(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode([], TypeKind.RELATION_COLLECTION)
        with pytest.raises(UnsupportedTypeError):
            codec.decode(EncodedValue.null(), TypeKind.RELATION_COLLECTION)

    def test_unknown_kind(self):
        with pytest.raises(UnsupportedTypeError):
            codec.encode(1, "number")

    def test_reference_encodes_primary_key(self):
        assert roundtrip(12, TypeKind.EMBEDDED_OBJECT_REF) == 12
        with pytest.raises(UnsupportedTypeError):
            codec.encode("12", TypeKind.EMBEDDED_OBJECT_REF)


class TestEncodedValue:
    """The tagged union itself."""

    def test_tag_must_match_value(self):
        with pytest.raises(ValidationError):
            EncodedValue(tag=StorageClass.INTEGER, value="1")
        with pytest.raises(ValidationError):
            EncodedValue(tag=StorageClass.NULL, value=1)

    def test_real_must_be_finite(self):
        with pytest.raises(ValidationError):
            EncodedValue.real(math.inf)

    def test_from_sql(self):
        assert EncodedValue.from_sql(None).is_null
        assert EncodedValue.from_sql(5) == EncodedValue.integer(5)
        assert EncodedValue.from_sql(memoryview(b"ab")) == EncodedValue.blob(b"ab")
        with pytest.raises(TypeError):
            EncodedValue.from_sql(object())
