"""
Decodes Redis RDB dumps into line-delimited JSON.
"""
from relic.rdb.decoder import decode_dump
from relic.rdb.definitions import (
    MAGIC_WORD,
    MAX_RDB_VERSION,
    InputRecord,
    DecodedValue,
    ScalarValue,
    ListValue,
    HashValue,
    SetValue,
    SortedSetValue,
)
from relic.rdb.loader import RdbLoader
from relic.rdb.pipeline import DecodePipeline, DecoderConfig

__version__ = "1.0.0"

__all__ = [
    "MAGIC_WORD",
    "MAX_RDB_VERSION",
    "InputRecord",
    "DecodedValue",
    "ScalarValue",
    "ListValue",
    "HashValue",
    "SetValue",
    "SortedSetValue",
    "RdbLoader",
    "decode_dump",
    "DecodePipeline",
    "DecoderConfig",
]
