"""Frames an RDB byte stream into `InputRecord`s.

The loader never interprets values. It walks each value body just far enough
to find where it ends and re-wraps the captured bytes as a DUMP payload, the
same self-describing form `redis-cli --no-raw DUMP key` returns, so decoding
can happen elsewhere (and in parallel).
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Iterator, Optional

from relic.core.logmsg import BraceMessage

from relic.rdb.definitions import (
    CHECKSUM_RDB_VERSION,
    HEADER_SIZE,
    MAGIC_WORD,
    MAX_RDB_VERSION,
    InputRecord,
    Opcode,
)
from relic.rdb.errors import FramingError, MagicMismatchError, VersionNotSupportedError
from relic.rdb.serialization import RdbStream


def read_header(stream: BinaryIO) -> int:
    """Validate the magic word and return the RDB version."""
    header = stream.read(HEADER_SIZE)
    magic = header[: len(MAGIC_WORD)]
    if magic != MAGIC_WORD:
        raise MagicMismatchError(magic, MAGIC_WORD)
    digits = header[len(MAGIC_WORD) :]
    if len(digits) != HEADER_SIZE - len(MAGIC_WORD) or not digits.isdigit():
        raise FramingError(f"Invalid RDB version field {digits!r}")
    version = int(digits)
    if not 1 <= version <= MAX_RDB_VERSION:
        raise VersionNotSupportedError(version, list(range(1, MAX_RDB_VERSION + 1)))
    return version


def create_dump_payload(value_type: int, body: bytes, version: int) -> bytes:
    """Wrap a raw value body as `type | body | version (LE16) | crc64 (LE64)`.

    The body was just framed from the source, so the checksum is left zero
    (disabled); the decoder then skips recomputing it.
    """
    payload = bytearray()
    payload.append(value_type)
    payload += body
    payload += version.to_bytes(2, "little")
    payload += bytes(8)
    return bytes(payload)


class RdbLoader:
    """Lazily yields the records of an RDB stream.

    The header is read on construction; iteration may only happen once.

    Args:
        stream: The RDB source, positioned at its first byte.
        logger: Receives debug output for ignored metadata (AUX fields).
    """

    def __init__(self, stream: BinaryIO, logger: Optional[logging.Logger] = None):
        self._stream = RdbStream(stream, error_cls=FramingError)
        self.logger = logger or logging.getLogger(__name__)
        self._version = read_header(stream)
        self._consumed = False

    @property
    def version(self) -> int:
        return self._version

    def __iter__(self) -> Iterator[InputRecord]:
        return self.records()

    def records(self) -> Iterator[InputRecord]:
        if self._consumed:
            raise FramingError("RDB stream has already been consumed")
        self._consumed = True

        stream = self._stream
        db = 0
        expire_at = 0
        while True:
            opcode = stream.read_byte()
            if opcode == Opcode.EOF:
                if self._version >= CHECKSUM_RDB_VERSION:
                    stream.read(8)
                return
            if opcode == Opcode.SELECTDB:
                db = stream.read_length()
            elif opcode == Opcode.EXPIRETIME:
                expire_at = stream.read_uint(4) * 1000
            elif opcode == Opcode.EXPIRETIME_MS:
                expire_at = stream.read_uint(8)
            elif opcode == Opcode.RESIZEDB:
                stream.read_length()
                stream.read_length()
            elif opcode == Opcode.AUX:
                name = stream.read_string()
                value = stream.read_string()
                self.logger.debug(BraceMessage("AUX {0!r} = {1!r}", name, value))
            elif opcode == Opcode.IDLE:
                stream.read_length()
            elif opcode == Opcode.FREQ:
                stream.read_byte()
            elif opcode in (Opcode.MODULE_AUX, Opcode.FUNCTION, Opcode.FUNCTION2):
                raise FramingError(f"Unsupported opcode {Opcode(opcode).name}")
            else:
                key = stream.read_string()
                with stream.capture() as body:
                    stream.skip_value(opcode)
                yield InputRecord(
                    db=db,
                    key=key,
                    expire_at=expire_at,
                    raw_value=create_dump_payload(opcode, bytes(body), self._version),
                )
                expire_at = 0


__all__ = ["RdbLoader", "read_header", "create_dump_payload"]
