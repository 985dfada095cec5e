"""
Type codec: converts a single property value into an EncodedValue and back.

The codec is a leaf component. It knows nothing about schemas, rows or stores;
it only maps (value, kind) pairs onto SQLite's five storage classes.

Encoding rules:

- NUMBER: ints and bools as INTEGER (64-bit signed), floats as REAL.
  NaN and infinities have no storage representation and are rejected. A float
  for an `int` or `bool` field must be integral and is stored as INTEGER.
- DATE: INTEGER milliseconds since 1970-01-01T00:00:00Z. Naive datetimes are
  read as UTC, sub-millisecond precision is truncated, and decoding always
  yields an aware UTC datetime.
- TEXT: TEXT.
- FIXED_BYTE_ARRAY(N): BLOB of exactly N * itemsize bytes, little-endian. An
  array with the wrong element count or typecode is a size mismatch.
- OPAQUE_BLOB / STRUCT_VALUE: BLOB, bytes verbatim. Struct values are ctypes
  structures copied byte-for-byte; their layout belongs to the caller.
- Collections: BLOB holding a 4-byte big-endian count followed by each element
  as a 1-byte storage-class code and its payload:

      INTEGER  8-byte signed big-endian
      REAL     8-byte IEEE 754 double, big-endian
      TEXT     4-byte length + UTF-8 bytes
      BLOB     4-byte length + bytes
      NULL     no payload

  Elements carry no declared type, so bools are written as INTEGER and come
  back as ints.
  Keyed collections count entries and write key, value, key, value, ...
  Sets and dicts are written in canonical order (sorted by encoded bytes) so
  encoding is deterministic.
- EMBEDDED_OBJECT_REF: INTEGER primary key of the referenced object.

RELATION_COLLECTION is not column-encodable; relations live in link records.
"""

import ctypes
import math
import struct
import sys
from array import array
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from persistent_objects.base import EncodedValue, Kind, StorageClass, TypeKind
from persistent_objects.errors import CorruptEncodingError, SizeMismatchError, UnsupportedTypeError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_COUNT = struct.Struct(">I")
_CODE = struct.Struct(">B")
_INT = struct.Struct(">q")
_REAL = struct.Struct(">d")

_ELEMENT_CODES = {
    StorageClass.NULL: 0,
    StorageClass.INTEGER: 1,
    StorageClass.REAL: 2,
    StorageClass.TEXT: 3,
    StorageClass.BLOB: 4,
}
_CODE_CLASSES = {code: storage_class for storage_class, code in _ELEMENT_CODES.items()}

KindLike = Union[Kind, TypeKind]


def encode(value: Any, kind: KindLike) -> EncodedValue:
    """Encode one property value. `None` always encodes to NULL."""
    kind = _as_kind(kind)
    encoder = _ENCODERS.get(kind.type_kind)
    if encoder is None:
        raise UnsupportedTypeError(f"{kind} values cannot be encoded into a column")
    if value is None:
        return EncodedValue.null()
    return encoder(value, kind)


def decode(encoded: EncodedValue, kind: KindLike) -> Any:
    """Decode one EncodedValue back into a value of the given kind. NULL decodes to `None`."""
    kind = _as_kind(kind)
    decoder = _DECODERS.get(kind.type_kind)
    if decoder is None:
        raise UnsupportedTypeError(f"{kind} values cannot be decoded from a column")
    if not isinstance(encoded, EncodedValue):
        raise CorruptEncodingError(f"Expected an EncodedValue, got {type(encoded).__name__}")
    if encoded.is_null:
        return None
    return decoder(encoded, kind)


def _as_kind(kind: Any) -> Kind:
    if isinstance(kind, Kind):
        return kind
    if isinstance(kind, TypeKind):
        return Kind(type_kind=kind)
    raise UnsupportedTypeError(f"Not a persistable kind: {kind!r}")


def _expect(encoded: EncodedValue, kind: Kind, *tags: StorageClass) -> None:
    if encoded.tag not in tags:
        raise CorruptEncodingError(f"{encoded.tag.value} value cannot decode as {kind}")


def _check_integer(value: int) -> int:
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise UnsupportedTypeError(f"{value} does not fit in a 64-bit integer")
    return int(value)


def _check_real(value: float) -> float:
    if not math.isfinite(value):
        raise UnsupportedTypeError(f"{value} has no storage representation")
    return float(value)


# ============================================================================
# Scalars
# ============================================================================


def _encode_number(value: Any, kind: Kind) -> EncodedValue:
    if isinstance(value, int):
        return EncodedValue.integer(_check_integer(value))
    if isinstance(value, float):
        if kind.python_type in (int, bool):
            # integer fields only hold integral values
            if not math.isfinite(value) or not value.is_integer():
                raise UnsupportedTypeError(f"{value} is not an integer, but the field is declared {kind.python_type.__name__}")
            return EncodedValue.integer(_check_integer(int(value)))
        return EncodedValue.real(_check_real(value))
    raise UnsupportedTypeError(f"{type(value).__name__} is not a number")


def _decode_number(encoded: EncodedValue, kind: Kind) -> Union[int, float, bool]:
    _expect(encoded, kind, StorageClass.INTEGER, StorageClass.REAL)
    value = encoded.value
    if kind.python_type is bool:
        return bool(value)
    if kind.python_type is float:
        return float(value)
    if kind.python_type is int and isinstance(value, float):
        if not value.is_integer():
            raise CorruptEncodingError(f"{value} is not an integer")
        return int(value)
    return value


def _encode_date(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, datetime):
        raise UnsupportedTypeError(f"{type(value).__name__} is not a datetime")
    if value.utcoffset() is None:
        value = value.replace(tzinfo=timezone.utc)
    return EncodedValue.integer(_check_integer((value - EPOCH) // _MILLISECOND))


def _decode_date(encoded: EncodedValue, kind: Kind) -> datetime:
    _expect(encoded, kind, StorageClass.INTEGER)
    try:
        return EPOCH + timedelta(milliseconds=encoded.value)
    except OverflowError as e:
        raise CorruptEncodingError(f"{encoded.value} ms is outside the datetime range") from e


def _encode_text(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, str):
        raise UnsupportedTypeError(f"{type(value).__name__} is not text")
    return EncodedValue.text(value)


def _decode_text(encoded: EncodedValue, kind: Kind) -> str:
    _expect(encoded, kind, StorageClass.TEXT)
    return encoded.value


def _encode_reference(value: Any, kind: Kind) -> EncodedValue:
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnsupportedTypeError(f"Object references are encoded from primary keys, got {type(value).__name__}")
    return EncodedValue.integer(_check_integer(value))


def _decode_reference(encoded: EncodedValue, kind: Kind) -> int:
    _expect(encoded, kind, StorageClass.INTEGER)
    return encoded.value


# ============================================================================
# Raw bytes
# ============================================================================


def _little_endian(values: array) -> array:
    if sys.byteorder == "big":
        values = array(values.typecode, values)
        values.byteswap()
    return values


def _encode_fixed_array(value: Any, kind: Kind) -> EncodedValue:
    if kind.length is None or kind.typecode is None:
        raise UnsupportedTypeError("Fixed arrays need a length and an element typecode")
    if not isinstance(value, array):
        raise UnsupportedTypeError(f"Expected array('{kind.typecode}'), got {type(value).__name__}")
    if value.typecode != kind.typecode:
        raise SizeMismatchError(kind.length * kind.item_size, len(value) * value.itemsize, f"array('{value.typecode}') for array('{kind.typecode}')")
    if len(value) != kind.length:
        raise SizeMismatchError(kind.length * kind.item_size, len(value) * value.itemsize, "fixed array")
    return EncodedValue.blob(_little_endian(value).tobytes())


def _decode_fixed_array(encoded: EncodedValue, kind: Kind) -> array:
    _expect(encoded, kind, StorageClass.BLOB)
    if kind.length is None or kind.typecode is None:
        raise UnsupportedTypeError("Fixed arrays need a length and an element typecode")
    expected = kind.length * kind.item_size
    if len(encoded.value) != expected:
        raise SizeMismatchError(expected, len(encoded.value), "fixed array")
    values = array(kind.typecode)
    values.frombytes(encoded.value)
    return _little_endian(values)


def _encode_blob(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise UnsupportedTypeError(f"{type(value).__name__} is not a bytes-like blob")
    return EncodedValue.blob(bytes(value))


def _decode_blob(encoded: EncodedValue, kind: Kind) -> Union[bytes, bytearray]:
    _expect(encoded, kind, StorageClass.BLOB)
    if kind.python_type is bytearray:
        return bytearray(encoded.value)
    return encoded.value


def _encode_struct(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, (ctypes.Structure, ctypes.Union)):
        raise UnsupportedTypeError(f"{type(value).__name__} is not a ctypes structure")
    if kind.python_type is not None and not isinstance(value, kind.python_type):
        raise UnsupportedTypeError(f"Expected {kind.python_type.__name__}, got {type(value).__name__}")
    return EncodedValue.blob(bytes(value))


def _decode_struct(encoded: EncodedValue, kind: Kind) -> Any:
    _expect(encoded, kind, StorageClass.BLOB)
    struct_type = kind.python_type
    if struct_type is None:
        raise UnsupportedTypeError("Struct values need their ctypes type to decode")
    size = ctypes.sizeof(struct_type)
    if len(encoded.value) != size:
        raise SizeMismatchError(size, len(encoded.value), struct_type.__name__)
    return struct_type.from_buffer_copy(encoded.value)


# ============================================================================
# Collections
# ============================================================================


def _element(value: Any) -> EncodedValue:
    """Encode one collection element. Elements are limited to the storage classes themselves."""
    if value is None:
        return EncodedValue.null()
    if isinstance(value, int):
        return EncodedValue.integer(_check_integer(value))
    if isinstance(value, float):
        return EncodedValue.real(_check_real(value))
    if isinstance(value, str):
        return EncodedValue.text(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return EncodedValue.blob(bytes(value))
    raise UnsupportedTypeError(f"{type(value).__name__} is not an encodable collection element")


def _pack(element: EncodedValue) -> bytes:
    head = _CODE.pack(_ELEMENT_CODES[element.tag])
    if element.tag == StorageClass.INTEGER:
        return head + _INT.pack(element.value)
    if element.tag == StorageClass.REAL:
        return head + _REAL.pack(element.value)
    if element.tag == StorageClass.TEXT:
        data = element.value.encode("utf-8")
        return head + _COUNT.pack(len(data)) + data
    if element.tag == StorageClass.BLOB:
        return head + _COUNT.pack(len(element.value)) + element.value
    return head


def _unpack(raw: bytes, offset: int) -> tuple[EncodedValue, int]:
    (code,) = _CODE.unpack_from(raw, offset)
    offset += _CODE.size
    storage_class = _CODE_CLASSES.get(code)
    if storage_class is None:
        raise CorruptEncodingError(f"Unknown element code {code}")
    if storage_class == StorageClass.NULL:
        return EncodedValue.null(), offset
    if storage_class == StorageClass.INTEGER:
        (value,) = _INT.unpack_from(raw, offset)
        return EncodedValue.integer(value), offset + _INT.size
    if storage_class == StorageClass.REAL:
        (value,) = _REAL.unpack_from(raw, offset)
        if not math.isfinite(value):
            raise CorruptEncodingError(f"Non-finite real element {value}")
        return EncodedValue.real(value), offset + _REAL.size
    (length,) = _COUNT.unpack_from(raw, offset)
    start = offset + _COUNT.size
    end = start + length
    if end > len(raw):
        raise CorruptEncodingError("Collection element runs past the end of the buffer")
    data = raw[start:end]
    if storage_class == StorageClass.TEXT:
        try:
            return EncodedValue.text(data.decode("utf-8")), end
        except UnicodeDecodeError as e:
            raise CorruptEncodingError("Collection text element is not valid UTF-8") from e
    return EncodedValue.blob(bytes(data)), end


def _unpack_all(raw: bytes, per_entry: int = 1) -> list[Any]:
    try:
        (count,) = _COUNT.unpack_from(raw, 0)
        offset = _COUNT.size
        values = []
        for _ in range(count * per_entry):
            element, offset = _unpack(raw, offset)
            values.append(element.value)
    except struct.error as e:
        raise CorruptEncodingError("Truncated collection buffer") from e
    if offset != len(raw):
        raise CorruptEncodingError(f"{len(raw) - offset} trailing bytes after collection")
    return values


def _encode_ordered(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, (list, tuple)):
        raise UnsupportedTypeError(f"{type(value).__name__} is not an ordered collection")
    packed = [_pack(_element(item)) for item in value]
    return EncodedValue.blob(_COUNT.pack(len(packed)) + b"".join(packed))


def _decode_ordered(encoded: EncodedValue, kind: Kind) -> Union[list, tuple]:
    _expect(encoded, kind, StorageClass.BLOB)
    values = _unpack_all(encoded.value)
    if kind.python_type is tuple:
        return tuple(values)
    return values


def _encode_keyed(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, dict):
        raise UnsupportedTypeError(f"{type(value).__name__} is not a keyed collection")
    entries = sorted((_pack(_element(key)), _pack(_element(item))) for key, item in value.items())
    return EncodedValue.blob(_COUNT.pack(len(entries)) + b"".join(key + item for key, item in entries))


def _decode_keyed(encoded: EncodedValue, kind: Kind) -> dict:
    _expect(encoded, kind, StorageClass.BLOB)
    values = _unpack_all(encoded.value, per_entry=2)
    return dict(zip(values[0::2], values[1::2]))


def _encode_unordered(value: Any, kind: Kind) -> EncodedValue:
    if not isinstance(value, (set, frozenset)):
        raise UnsupportedTypeError(f"{type(value).__name__} is not an unordered collection")
    packed = sorted(_pack(_element(item)) for item in value)
    return EncodedValue.blob(_COUNT.pack(len(packed)) + b"".join(packed))


def _decode_unordered(encoded: EncodedValue, kind: Kind) -> Union[set, frozenset]:
    _expect(encoded, kind, StorageClass.BLOB)
    values = _unpack_all(encoded.value)
    if kind.python_type is frozenset:
        return frozenset(values)
    return set(values)


_ENCODERS = {
    TypeKind.NUMBER: _encode_number,
    TypeKind.DATE: _encode_date,
    TypeKind.TEXT: _encode_text,
    TypeKind.FIXED_BYTE_ARRAY: _encode_fixed_array,
    TypeKind.OPAQUE_BLOB: _encode_blob,
    TypeKind.STRUCT_VALUE: _encode_struct,
    TypeKind.ORDERED_COLLECTION: _encode_ordered,
    TypeKind.KEYED_COLLECTION: _encode_keyed,
    TypeKind.UNORDERED_COLLECTION: _encode_unordered,
    TypeKind.EMBEDDED_OBJECT_REF: _encode_reference,
}

_DECODERS = {
    TypeKind.NUMBER: _decode_number,
    TypeKind.DATE: _decode_date,
    TypeKind.TEXT: _decode_text,
    TypeKind.FIXED_BYTE_ARRAY: _decode_fixed_array,
    TypeKind.OPAQUE_BLOB: _decode_blob,
    TypeKind.STRUCT_VALUE: _decode_struct,
    TypeKind.ORDERED_COLLECTION: _decode_ordered,
    TypeKind.KEYED_COLLECTION: _decode_keyed,
    TypeKind.UNORDERED_COLLECTION: _decode_unordered,
    TypeKind.EMBEDDED_OBJECT_REF: _decode_reference,
}
