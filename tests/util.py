import os
import tempfile


class TempFileHandle:
    def __init__(self, suffix: str = ".rdb"):
        with tempfile.NamedTemporaryFile("x", suffix=suffix, delete=False) as h:
            self._filename = h.name

    @property
    def path(self):
        return self._filename

    def open(self, mode: str):
        return open(self._filename, mode)

    def write_bytes(self, data: bytes) -> None:
        with self.open("wb") as h:
            h.write(data)

    def read_bytes(self) -> bytes:
        with self.open("rb") as h:
            return h.read()

    def read_lines(self):
        with self.open("r") as h:
            return h.read().splitlines()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            os.unlink(self._filename)
        except FileNotFoundError:
            pass
