from __future__ import annotations

import math
from io import BytesIO
from typing import List, Type

import pytest

from relic.rdb.definitions import ValueType
from relic.rdb.errors import DecodeError, FramingError, RdbError
from relic.rdb.serialization import (
    RdbStream,
    iter_intset,
    iter_listpack,
    iter_ziplist,
    iter_zipmap,
    pairs,
)
from tests.rdb_writer import (
    encode_double_string,
    encode_int_string,
    encode_length,
    encode_lzf_string,
    encode_string,
    intset,
    list_body,
    listpack,
    quicklist2_body,
    zipmap,
    ziplist,
    zset_body,
)


def _stream(data: bytes, error_cls: Type[RdbError] = DecodeError) -> RdbStream:
    return RdbStream(BytesIO(data), error_cls=error_cls)


@pytest.mark.parametrize("length", [0, 1, 63, 64, 300, 16383, 16384, 70000, 1 << 33])
def test_read_length(length: int):
    stream = _stream(encode_length(length))
    assert stream.read_length() == length


@pytest.mark.parametrize(
    ["data", "expected"],
    [
        (encode_string(b"hello"), b"hello"),
        (encode_string(b""), b""),
        (encode_int_string(-5), b"-5"),
        (encode_int_string(1000), b"1000"),
        (encode_int_string(-70000), b"-70000"),
        (encode_lzf_string(b"compressed " * 10), b"compressed " * 10),
    ],
)
def test_read_string(data: bytes, expected: bytes):
    stream = _stream(data + b"!")
    assert stream.read_string() == expected
    assert stream.read(1) == b"!"


@pytest.mark.parametrize(
    "data",
    [
        encode_string(b"hello"),
        encode_int_string(1000),
        encode_lzf_string(b"compressed " * 10),
    ],
)
def test_skip_string_consumes_whole_string(data: bytes):
    stream = _stream(data + b"!")
    stream.skip_string()
    assert stream.read(1) == b"!"


def test_read_length_rejects_encoded_string():
    with pytest.raises(DecodeError):
        _stream(encode_int_string(1)).read_length()


def test_unknown_string_encoding():
    with pytest.raises(DecodeError):
        _stream(b"\xc4").read_string()


@pytest.mark.parametrize("value", [0.0, 1.5, -2.25, 1e100, math.inf, -math.inf])
def test_read_double_string(value: float):
    assert _stream(encode_double_string(value)).read_double_string() == value


def test_read_double_string_nan():
    assert math.isnan(_stream(encode_double_string(math.nan)).read_double_string())


def test_read_double_string_invalid():
    with pytest.raises(DecodeError):
        _stream(b"\x03abc").read_double_string()


@pytest.mark.parametrize("error_cls", [DecodeError, FramingError])
def test_truncation_raises_configured_error(error_cls: Type[RdbError]):
    stream = _stream(encode_length(10) + b"short", error_cls)
    with pytest.raises(error_cls):
        stream.read_string()


class _Trickle(BytesIO):
    def read(self, size: int = -1) -> bytes:
        return super().read(min(size, 1) if size > 0 else size)


def test_short_reads_are_joined():
    stream = RdbStream(_Trickle(encode_string(b"trickled")))
    assert stream.read_string() == b"trickled"


def test_capture_records_exact_bytes():
    body = zset_body([(b"a", 1.0), (b"b", math.inf)])
    stream = _stream(body + b"tail")
    with stream.capture() as captured:
        stream.skip_value(ValueType.ZSET)
    assert bytes(captured) == body
    assert stream.read(4) == b"tail"


@pytest.mark.parametrize(
    ["value_type", "body"],
    [
        (ValueType.LIST, list_body([b"a", b"b", b"c"])),
        (ValueType.LIST_ZIPLIST, encode_string(ziplist([b"a", 1]))),
        (
            ValueType.LIST_QUICKLIST_2,
            quicklist2_body([(2, listpack([b"x", b"y"])), (1, b"plain")]),
        ),
    ],
)
def test_skip_value(value_type: int, body: bytes):
    stream = _stream(body + b"!")
    stream.skip_value(value_type)
    assert stream.read(1) == b"!"


@pytest.mark.parametrize(
    "value_type", [ValueType.MODULE_2, ValueType.STREAM_LISTPACKS, 42]
)
def test_skip_value_unsupported(value_type: int):
    with pytest.raises(FramingError):
        _stream(b"\x00" * 16, FramingError).skip_value(value_type)


_ENTRIES = [
    b"",
    b"short",
    b"x" * 300,
    0,
    12,
    13,
    -1,
    127,
    -129,
    30000,
    -(1 << 20),
    1 << 30,
    -(1 << 40),
]


def _as_bytes(entries) -> List[bytes]:
    return [e if isinstance(e, bytes) else str(e).encode() for e in entries]


def test_iter_ziplist():
    assert list(iter_ziplist(ziplist(_ENTRIES))) == _as_bytes(_ENTRIES)


def test_iter_ziplist_empty():
    assert list(iter_ziplist(ziplist([]))) == []


def test_iter_listpack():
    entries = _ENTRIES + [-5, 4095, -4096, 1 << 20, b"y" * 5000]
    assert list(iter_listpack(listpack(entries))) == _as_bytes(entries)


@pytest.mark.parametrize(
    "buffer",
    [
        ziplist([b"a"])[:-1],  # missing end marker
        ziplist([b"a"]) + b"\x00",  # size mismatch
        b"\x0b\x00\x00\x00",  # short header
    ],
)
def test_iter_ziplist_corrupt(buffer: bytes):
    with pytest.raises(DecodeError):
        list(iter_ziplist(buffer))


def test_iter_listpack_count_mismatch():
    buffer = bytearray(listpack([b"a", b"b"]))
    buffer[4] = 3
    with pytest.raises(DecodeError):
        list(iter_listpack(bytes(buffer)))


@pytest.mark.parametrize("width", [2, 4, 8])
def test_iter_intset(width: int):
    values = [-3, 0, 7, 1000]
    assert list(iter_intset(intset(values, width))) == _as_bytes(values)


def test_iter_intset_bad_width():
    with pytest.raises(DecodeError):
        list(iter_intset(intset([1], 3)))


@pytest.mark.parametrize("free", [0, 3])
def test_iter_zipmap(free: int):
    items = [(b"f1", b"v1"), (b"long", b"z" * 300), (b"", b"")]
    assert list(iter_zipmap(zipmap(items, free))) == items


def test_pairs():
    assert pairs(iter([b"a", b"1", b"b", b"2"]), "Hash") == [(b"a", b"1"), (b"b", b"2")]


def test_pairs_odd():
    with pytest.raises(DecodeError):
        pairs(iter([b"a", b"1", b"b"]), "Hash")


def test_zipmap_truncated():
    buffer = zipmap([(b"k", b"v")])[:-1]
    with pytest.raises(DecodeError):
        list(iter_zipmap(buffer))
