import logging
from io import BytesIO, StringIO

import pytest

from relic.rdb.decoder import decode_dump
from relic.rdb.definitions import ListValue, Opcode, ScalarValue, ValueType
from relic.rdb.errors import (
    FramingError,
    MagicMismatchError,
    VersionNotSupportedError,
)
from relic.rdb.loader import RdbLoader, create_dump_payload, read_header
from tests.rdb_writer import RdbBuilder, dump_payload, encode_string, string_body


def _records(data: bytes):
    return list(RdbLoader(BytesIO(data)))


@pytest.mark.parametrize("version", [1, 6, 9, 11])
def test_read_header(version: int):
    data = RdbBuilder(version).build()
    assert read_header(BytesIO(data)) == version


@pytest.mark.parametrize(
    ["header", "error"],
    [
        (b"", MagicMismatchError),
        (b"RUDIS0009", MagicMismatchError),
        (b"REDIS00x9", FramingError),
        (b"REDIS00", FramingError),
        (b"REDIS0000", VersionNotSupportedError),
        (b"REDIS0012", VersionNotSupportedError),
    ],
)
def test_read_header_rejects(header: bytes, error):
    with pytest.raises(error) as info:
        read_header(BytesIO(header))
    assert isinstance(info.value, FramingError)


def test_create_dump_payload_matches_dump_format():
    body = string_body(b"bar")
    payload = create_dump_payload(ValueType.STRING, body, 9)
    # same layout as DUMP, with the checksum disabled
    assert payload == dump_payload(ValueType.STRING, body, 9)[:-8] + bytes(8)
    assert decode_dump(payload) == ScalarValue(b"bar")


def test_records_carry_db_key_and_payload():
    data = (
        RdbBuilder()
        .aux(b"redis-ver", b"7.0.0")
        .select_db(0)
        .resize_db(2, 0)
        .string(b"foo", b"bar")
        .select_db(3)
        .list(b"mylist", [b"a", b"b"])
        .build()
    )
    records = _records(data)
    assert [(r.db, r.key, r.expire_at) for r in records] == [
        (0, b"foo", 0),
        (3, b"mylist", 0),
    ]
    assert decode_dump(records[0].raw_value) == ScalarValue(b"bar")
    assert decode_dump(records[1].raw_value) == ListValue([b"a", b"b"])


def test_expiry_applies_to_next_key_only():
    data = (
        RdbBuilder()
        .expire_ms(1_700_000_000_123)
        .string(b"a", b"1")
        .string(b"b", b"2")
        .expire_s(1_700_000_000)
        .string(b"c", b"3")
        .build()
    )
    assert [r.expire_at for r in _records(data)] == [1_700_000_000_123, 0, 1_700_000_000_000]


def test_idle_and_freq_are_skipped():
    data = (
        RdbBuilder()
        .raw(bytes([Opcode.IDLE, 0x05]))
        .string(b"a", b"1")
        .raw(bytes([Opcode.FREQ, 0x07]))
        .string(b"b", b"2")
        .build()
    )
    assert [r.key for r in _records(data)] == [b"a", b"b"]


def test_old_version_has_no_trailing_checksum():
    data = RdbBuilder(version=4).string(b"k", b"v").build()
    records = _records(data)
    assert len(records) == 1
    assert decode_dump(records[0].raw_value) == ScalarValue(b"v")


def test_empty_rdb():
    assert _records(RdbBuilder().build()) == []


def test_aux_is_logged():
    stream = StringIO()
    logging.basicConfig(stream=stream, level=logging.DEBUG, format="%(message)s", force=True)
    logger = logging.getLogger("test_aux_is_logged")
    data = RdbBuilder().aux(b"redis-bits", b"64").build()
    list(RdbLoader(BytesIO(data), logger=logger))
    assert "redis-bits" in stream.getvalue()


@pytest.mark.parametrize(
    "data",
    [
        RdbBuilder().string(b"k", b"v").build()[:-12],  # truncated mid record
        RdbBuilder().raw(b"\x00" + encode_string(b"k")).raw(b"\x0a").build(),  # short body
        RdbBuilder().entry(ValueType.STREAM_LISTPACKS, b"s", b"\x00").build(),
        RdbBuilder().entry(ValueType.MODULE_2, b"m", b"\x00").build(),
        RdbBuilder().raw(bytes([Opcode.FUNCTION2])).build(),
        RdbBuilder().raw(b"\x42").build(),  # unknown opcode
    ],
)
def test_framing_errors(data: bytes):
    with pytest.raises(FramingError):
        _records(data)


def test_records_before_a_framing_error_are_yielded():
    data = RdbBuilder().string(b"ok", b"1").raw(b"\x42").build()
    iterator = iter(RdbLoader(BytesIO(data)))
    assert next(iterator).key == b"ok"
    with pytest.raises(FramingError):
        next(iterator)


def test_loader_is_single_use():
    loader = RdbLoader(BytesIO(RdbBuilder().string(b"k", b"v").build()))
    assert loader.version == 9
    list(loader)
    with pytest.raises(FramingError):
        list(loader)


@pytest.mark.parametrize(
    "length",
    [
        b"\x81" + b"\xff" * 8,  # 64 bit length past any index
        b"\x81\x7f" + b"\xff" * 7,
        b"\x80\xff\xff\xff\xff",  # 4 GiB string in a tiny file
    ],
)
def test_absurd_length_prefix(length: bytes):
    data = RdbBuilder().raw(b"\x00" + length).build()
    with pytest.raises(FramingError):
        _records(data)
