"""Definitions expressed concretely in the rdb plugin."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import ClassVar, List, Tuple, Union

MAGIC_WORD = b"REDIS"
# 'REDIS' + 4 ascii digits
HEADER_SIZE = 9

# Newest format we know how to walk; RDB 11 is Redis 7.2
MAX_RDB_VERSION = 11
# Trailing checksum was introduced in RDB 5
CHECKSUM_RDB_VERSION = 5

# DUMP payload footer: 2 byte version + 8 byte crc64
DUMP_FOOTER_SIZE = 10


class Opcode(IntEnum):
    """Special bytes that may appear where a value type is expected."""

    FUNCTION2 = 0xF5
    FUNCTION = 0xF6
    MODULE_AUX = 0xF7
    IDLE = 0xF8
    FREQ = 0xF9
    AUX = 0xFA
    RESIZEDB = 0xFB
    EXPIRETIME_MS = 0xFC
    EXPIRETIME = 0xFD
    SELECTDB = 0xFE
    EOF = 0xFF


class ValueType(IntEnum):
    """The object type byte preceding every key/value pair."""

    STRING = 0
    LIST = 1
    SET = 2
    ZSET = 3
    HASH = 4
    ZSET_2 = 5
    MODULE = 6
    MODULE_2 = 7
    HASH_ZIPMAP = 9
    LIST_ZIPLIST = 10
    SET_INTSET = 11
    ZSET_ZIPLIST = 12
    HASH_ZIPLIST = 13
    LIST_QUICKLIST = 14
    STREAM_LISTPACKS = 15
    HASH_LISTPACK = 16
    ZSET_LISTPACK = 17
    LIST_QUICKLIST_2 = 18
    STREAM_LISTPACKS_2 = 19
    SET_LISTPACK = 20
    STREAM_LISTPACKS_3 = 21


class QuicklistContainer(IntEnum):
    PLAIN = 1
    PACKED = 2


@dataclass(frozen=True, slots=True)
class InputRecord:
    """A single key read from the dump; the value is still a raw DUMP payload.

    Args:
        db (int): The logical database the key was selected into.
        key (bytes): The raw key.
        expire_at (int): Absolute expiry in milliseconds since epoch; 0 means never.
        raw_value (bytes): The value serialized as a DUMP payload.
    """

    db: int
    key: bytes
    expire_at: int
    raw_value: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class ScalarValue:
    TYPE_NAME: ClassVar[str] = "string"

    value: bytes


@dataclass(frozen=True, slots=True)
class ListValue:
    TYPE_NAME: ClassVar[str] = "list"

    items: List[bytes]

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class HashValue:
    TYPE_NAME: ClassVar[str] = "hash"

    items: List[Tuple[bytes, bytes]]

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class SetValue:
    TYPE_NAME: ClassVar[str] = "set"

    members: List[bytes]

    def __len__(self) -> int:
        return len(self.members)


@dataclass(frozen=True, slots=True)
class SortedSetValue:
    TYPE_NAME: ClassVar[str] = "zset"

    items: List[Tuple[bytes, float]]

    def __len__(self) -> int:
        return len(self.items)


DecodedValue = Union[ScalarValue, ListValue, HashValue, SetValue, SortedSetValue]

__all__ = [
    "MAGIC_WORD",
    "HEADER_SIZE",
    "MAX_RDB_VERSION",
    "CHECKSUM_RDB_VERSION",
    "DUMP_FOOTER_SIZE",
    "Opcode",
    "ValueType",
    "QuicklistContainer",
    "InputRecord",
    "ScalarValue",
    "ListValue",
    "HashValue",
    "SetValue",
    "SortedSetValue",
    "DecodedValue",
]
