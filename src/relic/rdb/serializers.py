"""Flattens decoded values into JSON lines.

Every line carries the record header (`db`, `type`, `expireat`, `key`, `key64`)
followed by the fields of a single element. Byte strings meant for display
appear twice: a sanitized, fixed width `text` form and an exact base64 form.
"""

from __future__ import annotations

import base64
import json
import math
from typing import Any, Dict, Iterator, Union

from relic.rdb.definitions import (
    DecodedValue,
    HashValue,
    InputRecord,
    ListValue,
    ScalarValue,
    SetValue,
    SortedSetValue,
)
from relic.rdb.errors import DecodeError

_JSON_MINIFY_KWARGS: Dict[str, Any] = {"separators": (",", ":"), "indent": None}
_VARIANTS = (ScalarValue, ListValue, HashValue, SetValue, SortedSetValue)

_PRINTABLE_FIRST = ord("#")
_PRINTABLE_LAST = ord("~")
# Bytes outside '#'..'~' become '.'
_TEXT_TABLE = "".join(
    chr(c) if _PRINTABLE_FIRST <= c <= _PRINTABLE_LAST else "." for c in range(256)
)


def to_text(buffer: bytes) -> str:
    return "".join(_TEXT_TABLE[c] for c in buffer)


def to_base64(buffer: bytes) -> str:
    return base64.b64encode(buffer).decode("ascii")


def _score(score: float) -> Union[float, str]:
    # JSON has no literal for these; use redis' own spelling
    if math.isnan(score):
        return "nan"
    if math.isinf(score):
        return "inf" if score > 0 else "-inf"
    return score


def _header(record: InputRecord, value: DecodedValue) -> Dict[str, Any]:
    return {
        "db": record.db,
        "type": value.TYPE_NAME,
        "expireat": record.expire_at,
        "key": to_text(record.key),
        "key64": to_base64(record.key),
    }


def _line(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, **_JSON_MINIFY_KWARGS) + "\n"


def flatten(record: InputRecord, value: DecodedValue) -> Iterator[str]:
    """Yield one JSON line per element of `value`, in element order.

    A scalar yields exactly one line; containers yield one line per element
    and nothing when empty.
    """
    if not isinstance(value, _VARIANTS):
        raise DecodeError(f"Unknown object {value!r}")
    header = _header(record, value)
    if isinstance(value, ScalarValue):
        yield _line({**header, "value64": to_base64(value.value)})
    elif isinstance(value, ListValue):
        for index, item in enumerate(value.items):
            yield _line({**header, "index": index, "value64": to_base64(item)})
    elif isinstance(value, HashValue):
        for field, item in value.items:
            yield _line(
                {
                    **header,
                    "field": to_text(field),
                    "field64": to_base64(field),
                    "value64": to_base64(item),
                }
            )
    elif isinstance(value, SetValue):
        for member in value.members:
            yield _line({**header, "member": to_text(member), "member64": to_base64(member)})
    elif isinstance(value, SortedSetValue):
        for member, score in value.items:
            yield _line(
                {
                    **header,
                    "member": to_text(member),
                    "member64": to_base64(member),
                    "score": _score(score),
                }
            )


__all__ = ["to_text", "to_base64", "flatten"]
