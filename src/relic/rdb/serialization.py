"""Low level readers for the RDB serialization format.

`RdbStream` understands the primitives every record is built from (length
prefixes, encoded strings and the two double encodings) and can walk a value
body without decoding it. The module level `iter_*` helpers unpack the compact
containers redis stores inside a single string: ziplists, listpacks, intsets
and zipmaps.
"""

from __future__ import annotations

import math
import struct
import sys
from contextlib import contextmanager
from typing import BinaryIO, Iterator, List, Optional, Tuple, Type, TypeVar

from relic.rdb.definitions import QuicklistContainer, ValueType
from relic.rdb.errors import DecodeError, RdbError
from relic.rdb.lzf import lzf_decompress

_T = TypeVar("_T")

# Length prefix kinds; the top two bits of the first byte
_LEN_6BIT = 0
_LEN_14BIT = 1
_LEN_WIDE = 2
_LEN_ENCVAL = 3
_LEN_32BIT = 0x80
_LEN_64BIT = 0x81

# String encodings; only valid when the length kind is _LEN_ENCVAL
_ENC_INT8 = 0
_ENC_INT16 = 1
_ENC_INT32 = 2
_ENC_LZF = 3
_ENC_INT_SIZES = {_ENC_INT8: 1, _ENC_INT16: 2, _ENC_INT32: 4}

# Special lengths of a 'double string' (RDB_TYPE_ZSET scores)
_DOUBLE_NAN = 253
_DOUBLE_POS_INF = 254
_DOUBLE_NEG_INF = 255

_BINARY_DOUBLE = struct.Struct("<d")

_READ_CHUNK_SIZE = 1 << 20

_COUNT_UNKNOWN = 0xFFFF
_CONTAINER_END = 0xFF


class RdbStream:
    """Forward-only reader of RDB primitives.

    Args:
        stream: The source; only `read` is used.
        error_cls: Raised on truncation or malformed data. The loader frames
            records and raises FramingError, the decoder raises DecodeError.
    """

    def __init__(self, stream: BinaryIO, error_cls: Type[RdbError] = DecodeError):
        self._stream = stream
        self._error = error_cls
        self._capture: Optional[bytearray] = None

    def error(self, msg: str) -> RdbError:
        return self._error(msg)

    @contextmanager
    def capture(self) -> Iterator[bytearray]:
        """Collect every byte read inside the block."""
        buffer = bytearray()
        self._capture = buffer
        try:
            yield buffer
        finally:
            self._capture = None

    def read(self, size: int) -> bytes:
        if not 0 <= size <= sys.maxsize:
            raise self._error(f"Invalid length {size}")
        # sizes come from untrusted length prefixes; never request more than a chunk
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self._stream.read(min(remaining, _READ_CHUNK_SIZE))
            if not chunk:
                raise self._error(
                    f"Unexpected end of stream; needed {size} bytes, got {size - remaining}"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        buffer = b"".join(chunks)
        if self._capture is not None:
            self._capture += buffer
        return buffer

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_uint(self, size: int, byteorder: str = "little") -> int:
        return int.from_bytes(self.read(size), byteorder, signed=False)  # type: ignore[arg-type]

    def read_int(self, size: int) -> int:
        return int.from_bytes(self.read(size), "little", signed=True)

    def read_length_with_encoding(self) -> Tuple[int, bool]:
        first = self.read_byte()
        kind = (first & 0xC0) >> 6
        if kind == _LEN_ENCVAL:
            return first & 0x3F, True
        if kind == _LEN_6BIT:
            return first & 0x3F, False
        if kind == _LEN_14BIT:
            return ((first & 0x3F) << 8) | self.read_byte(), False
        if first == _LEN_32BIT:
            return self.read_uint(4, "big"), False
        if first == _LEN_64BIT:
            return self.read_uint(8, "big"), False
        raise self._error(f"Unknown length encoding 0x{first:02x}")

    def read_length(self) -> int:
        length, encoded = self.read_length_with_encoding()
        if encoded:
            raise self._error(f"Expected a length, got string encoding {length}")
        return length

    def read_string(self) -> bytes:
        length, encoded = self.read_length_with_encoding()
        if not encoded:
            return self.read(length)
        if length in _ENC_INT_SIZES:
            return str(self.read_int(_ENC_INT_SIZES[length])).encode("ascii")
        if length == _ENC_LZF:
            compressed_size = self.read_length()
            size = self.read_length()
            return lzf_decompress(self.read(compressed_size), size)
        raise self._error(f"Unknown string encoding {length}")

    def skip_string(self) -> None:
        length, encoded = self.read_length_with_encoding()
        if not encoded:
            self.read(length)
        elif length in _ENC_INT_SIZES:
            self.read(_ENC_INT_SIZES[length])
        elif length == _ENC_LZF:
            compressed_size = self.read_length()
            self.read_length()
            self.read(compressed_size)
        else:
            raise self._error(f"Unknown string encoding {length}")

    def read_double_string(self) -> float:
        length = self.read_byte()
        if length == _DOUBLE_NAN:
            return math.nan
        if length == _DOUBLE_POS_INF:
            return math.inf
        if length == _DOUBLE_NEG_INF:
            return -math.inf
        text = self.read(length)
        try:
            return float(text.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as e:
            raise self._error(f"Invalid double string {text!r}") from e

    def skip_double_string(self) -> None:
        length = self.read_byte()
        if length not in (_DOUBLE_NAN, _DOUBLE_POS_INF, _DOUBLE_NEG_INF):
            self.read(length)

    def read_binary_double(self) -> float:
        (value,) = _BINARY_DOUBLE.unpack(self.read(_BINARY_DOUBLE.size))
        return value  # type: ignore[no-any-return]

    def skip_value(self, value_type: int) -> None:
        """Walk a value body without decoding it."""
        if value_type in _SINGLE_STRING_TYPES:
            self.skip_string()
        elif value_type in (ValueType.LIST, ValueType.SET, ValueType.LIST_QUICKLIST):
            for _ in range(self.read_length()):
                self.skip_string()
        elif value_type == ValueType.HASH:
            for _ in range(self.read_length()):
                self.skip_string()
                self.skip_string()
        elif value_type == ValueType.ZSET:
            for _ in range(self.read_length()):
                self.skip_string()
                self.skip_double_string()
        elif value_type == ValueType.ZSET_2:
            for _ in range(self.read_length()):
                self.skip_string()
                self.read(_BINARY_DOUBLE.size)
        elif value_type == ValueType.LIST_QUICKLIST_2:
            for _ in range(self.read_length()):
                container = self.read_length()
                if container not in (QuicklistContainer.PLAIN, QuicklistContainer.PACKED):
                    raise self._error(f"Unknown quicklist container {container}")
                self.skip_string()
        else:
            raise self._error(f"Unsupported value type {_type_name(value_type)}")


_SINGLE_STRING_TYPES = frozenset(
    [
        ValueType.STRING,
        ValueType.HASH_ZIPMAP,
        ValueType.LIST_ZIPLIST,
        ValueType.SET_INTSET,
        ValueType.ZSET_ZIPLIST,
        ValueType.HASH_ZIPLIST,
        ValueType.HASH_LISTPACK,
        ValueType.ZSET_LISTPACK,
        ValueType.SET_LISTPACK,
    ]
)


def _type_name(value_type: int) -> str:
    try:
        return f"{ValueType(value_type).name} ({value_type})"
    except ValueError:
        return str(value_type)


def _slice(buffer: bytes, pos: int, size: int, container: str) -> bytes:
    if size < 0 or pos + size > len(buffer):
        raise DecodeError(
            f"{container} entry at {pos} overflows buffer ({pos + size} > {len(buffer)})"
        )
    return buffer[pos : pos + size]


def _int_bytes(value: int) -> bytes:
    return str(value).encode("ascii")


def iter_ziplist(buffer: bytes) -> Iterator[bytes]:
    """Yield every entry of a ziplist; integers are rendered as ascii digits."""
    header = _slice(buffer, 0, 10, "Ziplist")
    total = int.from_bytes(header[0:4], "little")
    if total != len(buffer):
        raise DecodeError(f"Ziplist size mismatch; header says {total}, got {len(buffer)}")
    expected = int.from_bytes(header[8:10], "little")

    pos = 10
    count = 0
    while True:
        marker = _slice(buffer, pos, 1, "Ziplist")[0]
        if marker == _CONTAINER_END:
            break
        # previous entry length; 1 byte or 0xFE + uint32
        pos += 5 if marker == 0xFE else 1
        enc = _slice(buffer, pos, 1, "Ziplist")[0]
        pos += 1
        kind = enc >> 6
        if kind == 0:
            length = enc & 0x3F
        elif kind == 1:
            length = ((enc & 0x3F) << 8) | _slice(buffer, pos, 1, "Ziplist")[0]
            pos += 1
        elif enc == 0x80:
            length = int.from_bytes(_slice(buffer, pos, 4, "Ziplist"), "big")
            pos += 4
        elif kind == 2:
            raise DecodeError(f"Invalid ziplist string encoding 0x{enc:02x}")
        else:
            if 0xF1 <= enc <= 0xFD:
                # 4 bit immediate; 0001 encodes 0
                yield _int_bytes((enc & 0x0F) - 1)
                count += 1
                continue
            size = _ZIPLIST_INT_SIZES.get(enc)
            if size is None:
                raise DecodeError(f"Invalid ziplist integer encoding 0x{enc:02x}")
            raw = _slice(buffer, pos, size, "Ziplist")
            pos += size
            yield _int_bytes(int.from_bytes(raw, "little", signed=True))
            count += 1
            continue
        yield _slice(buffer, pos, length, "Ziplist")
        pos += length
        count += 1

    if expected != _COUNT_UNKNOWN and expected != count:
        raise DecodeError(f"Ziplist count mismatch; header says {expected}, got {count}")


_ZIPLIST_INT_SIZES = {0xC0: 2, 0xD0: 4, 0xE0: 8, 0xF0: 3, 0xFE: 1}


def _listpack_backlen_size(entry_size: int) -> int:
    if entry_size <= 127:
        return 1
    if entry_size < 16383:
        return 2
    if entry_size < 2097151:
        return 3
    if entry_size < 268435455:
        return 4
    return 5


_LISTPACK_INT_SIZES = {0xF1: 2, 0xF2: 3, 0xF3: 4, 0xF4: 8}


def iter_listpack(buffer: bytes) -> Iterator[bytes]:
    """Yield every entry of a listpack; integers are rendered as ascii digits."""
    header = _slice(buffer, 0, 6, "Listpack")
    total = int.from_bytes(header[0:4], "little")
    if total != len(buffer):
        raise DecodeError(f"Listpack size mismatch; header says {total}, got {len(buffer)}")
    expected = int.from_bytes(header[4:6], "little")

    pos = 6
    count = 0
    while True:
        enc = _slice(buffer, pos, 1, "Listpack")[0]
        if enc == _CONTAINER_END:
            break
        start = pos
        if enc & 0x80 == 0:
            value: Optional[int] = enc & 0x7F
            pos += 1
        elif enc & 0xC0 == 0x80:
            length = enc & 0x3F
            value = None
            pos += 1
        elif enc & 0xE0 == 0xC0:
            value = ((enc & 0x1F) << 8) | _slice(buffer, pos + 1, 1, "Listpack")[0]
            if value >= 1 << 12:
                value -= 1 << 13
            pos += 2
        elif enc & 0xF0 == 0xE0:
            length = ((enc & 0x0F) << 8) | _slice(buffer, pos + 1, 1, "Listpack")[0]
            value = None
            pos += 2
        elif enc == 0xF0:
            length = int.from_bytes(_slice(buffer, pos + 1, 4, "Listpack"), "little")
            value = None
            pos += 5
        elif enc in _LISTPACK_INT_SIZES:
            size = _LISTPACK_INT_SIZES[enc]
            raw = _slice(buffer, pos + 1, size, "Listpack")
            value = int.from_bytes(raw, "little", signed=True)
            pos += 1 + size
        else:
            raise DecodeError(f"Invalid listpack encoding 0x{enc:02x}")

        if value is None:
            yield _slice(buffer, pos, length, "Listpack")
            pos += length
        else:
            yield _int_bytes(value)
        pos += _listpack_backlen_size(pos - start)
        count += 1

    if expected != _COUNT_UNKNOWN and expected != count:
        raise DecodeError(f"Listpack count mismatch; header says {expected}, got {count}")


def iter_intset(buffer: bytes) -> Iterator[bytes]:
    header = _slice(buffer, 0, 8, "Intset")
    width = int.from_bytes(header[0:4], "little")
    length = int.from_bytes(header[4:8], "little")
    if width not in (2, 4, 8):
        raise DecodeError(f"Invalid intset encoding {width}")
    if 8 + width * length != len(buffer):
        raise DecodeError(
            f"Intset size mismatch; {length} x {width} bytes does not fit {len(buffer) - 8}"
        )
    for pos in range(8, len(buffer), width):
        yield _int_bytes(int.from_bytes(buffer[pos : pos + width], "little", signed=True))


def _zipmap_length(buffer: bytes, pos: int) -> Tuple[int, int]:
    first = _slice(buffer, pos, 1, "Zipmap")[0]
    if first < 254:
        return first, pos + 1
    if first == 254:
        return int.from_bytes(_slice(buffer, pos + 1, 4, "Zipmap"), "little"), pos + 5
    raise DecodeError(f"Unexpected zipmap end at {pos}")


def iter_zipmap(buffer: bytes) -> Iterator[Tuple[bytes, bytes]]:
    pos = 1  # zmlen is only a hint
    while True:
        if _slice(buffer, pos, 1, "Zipmap")[0] == _CONTAINER_END:
            break
        length, pos = _zipmap_length(buffer, pos)
        field = _slice(buffer, pos, length, "Zipmap")
        pos += length
        length, pos = _zipmap_length(buffer, pos)
        free = _slice(buffer, pos, 1, "Zipmap")[0]
        pos += 1
        value = _slice(buffer, pos, length, "Zipmap")
        pos += length + free
        yield field, value


def pairs(items: Iterator[_T], container: str) -> List[Tuple[_T, _T]]:
    """Group a flat field/value sequence into pairs."""
    flat = list(items)
    if len(flat) % 2 != 0:
        raise DecodeError(f"{container} holds an odd number of entries ({len(flat)})")
    return list(zip(flat[0::2], flat[1::2]))


__all__ = [
    "RdbStream",
    "iter_ziplist",
    "iter_listpack",
    "iter_intset",
    "iter_zipmap",
    "pairs",
]
