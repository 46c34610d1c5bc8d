"""Decodes DUMP payloads into `DecodedValue`s."""

from __future__ import annotations

from io import BytesIO
from typing import Callable, Dict, List, Tuple

from relic.rdb.definitions import (
    DUMP_FOOTER_SIZE,
    MAX_RDB_VERSION,
    DecodedValue,
    HashValue,
    ListValue,
    QuicklistContainer,
    ScalarValue,
    SetValue,
    SortedSetValue,
    ValueType,
)
from relic.rdb.errors import DecodeError
from relic.rdb.hashtools import crc64
from relic.rdb.serialization import (
    RdbStream,
    iter_intset,
    iter_listpack,
    iter_ziplist,
    iter_zipmap,
    pairs,
)

_DUMP_CRC = crc64()


def _score(raw: bytes) -> float:
    try:
        return float(raw.decode("ascii"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Invalid sorted set score {raw!r}") from e


def _scored(items: List[Tuple[bytes, bytes]]) -> SortedSetValue:
    return SortedSetValue([(member, _score(score)) for member, score in items])


def _read_string(stream: RdbStream) -> DecodedValue:
    return ScalarValue(stream.read_string())


def _read_list(stream: RdbStream) -> DecodedValue:
    return ListValue([stream.read_string() for _ in range(stream.read_length())])


def _read_set(stream: RdbStream) -> DecodedValue:
    return SetValue([stream.read_string() for _ in range(stream.read_length())])


def _read_zset(stream: RdbStream) -> DecodedValue:
    items = []
    for _ in range(stream.read_length()):
        member = stream.read_string()
        items.append((member, stream.read_double_string()))
    return SortedSetValue(items)


def _read_zset2(stream: RdbStream) -> DecodedValue:
    items = []
    for _ in range(stream.read_length()):
        member = stream.read_string()
        items.append((member, stream.read_binary_double()))
    return SortedSetValue(items)


def _read_hash(stream: RdbStream) -> DecodedValue:
    items = []
    for _ in range(stream.read_length()):
        field = stream.read_string()
        items.append((field, stream.read_string()))
    return HashValue(items)


def _read_hash_zipmap(stream: RdbStream) -> DecodedValue:
    return HashValue(list(iter_zipmap(stream.read_string())))


def _read_list_ziplist(stream: RdbStream) -> DecodedValue:
    return ListValue(list(iter_ziplist(stream.read_string())))


def _read_set_intset(stream: RdbStream) -> DecodedValue:
    return SetValue(list(iter_intset(stream.read_string())))


def _read_zset_ziplist(stream: RdbStream) -> DecodedValue:
    return _scored(pairs(iter_ziplist(stream.read_string()), "Sorted set ziplist"))


def _read_hash_ziplist(stream: RdbStream) -> DecodedValue:
    return HashValue(pairs(iter_ziplist(stream.read_string()), "Hash ziplist"))


def _read_list_quicklist(stream: RdbStream) -> DecodedValue:
    items: List[bytes] = []
    for _ in range(stream.read_length()):
        items.extend(iter_ziplist(stream.read_string()))
    return ListValue(items)


def _read_hash_listpack(stream: RdbStream) -> DecodedValue:
    return HashValue(pairs(iter_listpack(stream.read_string()), "Hash listpack"))


def _read_zset_listpack(stream: RdbStream) -> DecodedValue:
    return _scored(pairs(iter_listpack(stream.read_string()), "Sorted set listpack"))


def _read_list_quicklist2(stream: RdbStream) -> DecodedValue:
    items: List[bytes] = []
    for _ in range(stream.read_length()):
        container = stream.read_length()
        node = stream.read_string()
        if container == QuicklistContainer.PLAIN:
            items.append(node)
        elif container == QuicklistContainer.PACKED:
            items.extend(iter_listpack(node))
        else:
            raise DecodeError(f"Unknown quicklist container {container}")
    return ListValue(items)


def _read_set_listpack(stream: RdbStream) -> DecodedValue:
    return SetValue(list(iter_listpack(stream.read_string())))


_READERS: Dict[int, Callable[[RdbStream], DecodedValue]] = {
    ValueType.STRING: _read_string,
    ValueType.LIST: _read_list,
    ValueType.SET: _read_set,
    ValueType.ZSET: _read_zset,
    ValueType.HASH: _read_hash,
    ValueType.ZSET_2: _read_zset2,
    ValueType.HASH_ZIPMAP: _read_hash_zipmap,
    ValueType.LIST_ZIPLIST: _read_list_ziplist,
    ValueType.SET_INTSET: _read_set_intset,
    ValueType.ZSET_ZIPLIST: _read_zset_ziplist,
    ValueType.HASH_ZIPLIST: _read_hash_ziplist,
    ValueType.LIST_QUICKLIST: _read_list_quicklist,
    ValueType.HASH_LISTPACK: _read_hash_listpack,
    ValueType.ZSET_LISTPACK: _read_zset_listpack,
    ValueType.LIST_QUICKLIST_2: _read_list_quicklist2,
    ValueType.SET_LISTPACK: _read_set_listpack,
}


def validate_footer(payload: bytes) -> int:
    """Check the version and checksum trailing a DUMP payload.

    Returns:
        The RDB version the payload was serialized with.
    """
    if len(payload) < DUMP_FOOTER_SIZE + 1:
        raise DecodeError(f"DUMP payload too short ({len(payload)} bytes)")
    version = int.from_bytes(payload[-10:-8], "little")
    if version > MAX_RDB_VERSION:
        raise DecodeError(
            f"DUMP payload version {version} is newer than supported ({MAX_RDB_VERSION})"
        )
    expected = int.from_bytes(payload[-8:], "little")
    if expected != 0:  # checksum disabled
        _DUMP_CRC.validate(payload[:-8], expected)
    return version


def decode_dump(payload: bytes) -> DecodedValue:
    """Decode a DUMP payload.

    Raises:
        DecodeError: The footer is invalid, the type is unknown, or the body
            does not match the encoding of its type.
    """
    validate_footer(payload)
    value_type = payload[0]
    reader = _READERS.get(value_type)
    if reader is None:
        raise DecodeError(f"Unsupported value type {value_type}")

    body_size = len(payload) - 1 - DUMP_FOOTER_SIZE
    body = BytesIO(payload[1:-DUMP_FOOTER_SIZE])
    stream = RdbStream(body, error_cls=DecodeError)
    value = reader(stream)
    remaining = body_size - body.tell()
    if remaining != 0:
        raise DecodeError(f"{remaining} trailing bytes after {ValueType(value_type).name} body")
    return value


__all__ = ["decode_dump", "validate_footer"]
