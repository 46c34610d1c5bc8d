from typing import BinaryIO, Callable, Generic, List, Optional, Type, TypeVar, Union

from relic.core.lazyio import read_chunks

from relic.rdb.errors import Crc64MismatchError

_T = TypeVar("_T")

Hashable = Union[BinaryIO, bytes]

# Jones polynomial (reflected), as used by redis for DUMP payloads and RDB trailers
_CRC64_POLY = 0x95AC9329AC4BC9B5


def _build_crc64_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ _CRC64_POLY
            else:
                crc >>= 1
        table.append(crc)
    return table


_CRC64_TABLE = _build_crc64_table()


def crc64_update(crc: int, buffer: Union[bytes, bytearray, memoryview]) -> int:
    table = _CRC64_TABLE
    for b in buffer:
        crc = table[(crc ^ b) & 0xFF] ^ (crc >> 8)
    return crc


class _Hasher(Generic[_T]):
    HASHER_NAME = "Hash"

    def __init__(
        self,
        hash_func: Callable[[Hashable], _T],
        error_cls: Type[Crc64MismatchError] = Crc64MismatchError,
    ):
        self._hasher = hash_func
        self._error = error_cls

    def __call__(self, stream: Hashable) -> _T:
        return self.hash(stream=stream)

    def hash(self, stream: Hashable) -> _T:
        return self._hasher(stream)

    def check(self, stream: Hashable, expected: _T) -> bool:
        result = self.hash(stream=stream)
        return result == expected

    def validate(self, stream: Hashable, expected: _T) -> None:
        result = self.hash(stream=stream)
        if result != expected:
            raise self._error(result, expected)


class crc64(_Hasher[int]):
    HASHER_NAME = "CRC 64"

    def __init__(self, eigen: Optional[int] = None):
        func = self.__factory(eigen=eigen)
        super().__init__(func, error_cls=Crc64MismatchError)

    @staticmethod
    def __factory(eigen: Optional[int] = None) -> Callable[[Hashable], int]:
        def _crc64(stream: Hashable) -> int:
            crc = eigen if eigen is not None else 0
            for chunk in read_chunks(stream):
                crc = crc64_update(crc, chunk)
            return crc

        return _crc64


__all__ = ["Hashable", "crc64", "crc64_update"]
