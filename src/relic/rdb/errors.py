"""Errors raised while framing, decoding or writing an RDB dump."""

from __future__ import annotations

from typing import Optional, Sequence

from relic.core.errors import MismatchError, RelicToolError


class RdbError(RelicToolError):
    """Base class for all errors raised by the rdb plugin."""


class FramingError(RdbError):
    """The byte source does not contain a well-formed record boundary."""


class MagicMismatchError(FramingError):
    def __init__(self, received: Optional[bytes], expected: Optional[bytes]):
        super().__init__(f"Expected magic word {expected!r}, got {received!r}")
        self.received = received
        self.expected = expected


class VersionNotSupportedError(FramingError):
    def __init__(self, received: int, allowed: Sequence[int]):
        super().__init__()
        self.received = received
        self.allowed = allowed

    def __str__(self) -> str:
        def str_ver(v: int) -> str:
            return f"RDB Version {v}"

        allowed_str = [str_ver(_) for _ in self.allowed]
        if len(allowed_str) == 0:
            allowed_str = ["none"]
        return f"Version `{str_ver(self.received)}` is not supported. Versions supported: `{', '.join(allowed_str)}`"


class DecodeError(RdbError):
    """A DUMP payload does not match the encoding declared for its kind."""


class LzfError(DecodeError):
    """A compressed string could not be inflated."""


class Crc64MismatchError(DecodeError, MismatchError):
    def __init__(self, received: Optional[int] = None, expected: Optional[int] = None):
        MismatchError.__init__(self, "CRC 64", received, expected)


class WriteError(RdbError):
    """The destination rejected a write."""


__all__ = [
    "RdbError",
    "FramingError",
    "MagicMismatchError",
    "VersionNotSupportedError",
    "DecodeError",
    "LzfError",
    "Crc64MismatchError",
    "WriteError",
]
