from __future__ import annotations

from typing import BinaryIO, Callable


class CountingReader:
    """Read-only proxy that reports the size of every read to `on_read`.

    The loader only ever moves forward, so the running total doubles as the
    stream position; sources like stdin cannot `tell()`.
    """

    def __init__(self, parent: BinaryIO, on_read: Callable[[int], None]):
        self._parent = parent
        self._on_read = on_read

    def read(self, __n: int = -1) -> bytes:
        buffer = self._parent.read(__n)
        if buffer:
            self._on_read(len(buffer))
        return buffer


__all__ = ["CountingReader"]
