"""LZF decompression for strings redis stores with `rdbcompression yes`."""

from __future__ import annotations

from relic.rdb.errors import LzfError


def lzf_decompress(buffer: bytes, expected_size: int) -> bytes:
    """Inflate an LZF block.

    Args:
        buffer: The compressed bytes.
        expected_size: The uncompressed length recorded beside the block.

    Returns:
        The uncompressed bytes; exactly `expected_size` long.

    Raises:
        LzfError: The block references data outside of what was produced or
            does not inflate to `expected_size` bytes.
    """
    out = bytearray()
    i = 0
    size = len(buffer)
    while i < size:
        ctrl = buffer[i]
        i += 1
        if ctrl < 32:
            # literal run
            run = ctrl + 1
            if i + run > size:
                raise LzfError(f"Literal run of {run} bytes overflows input at {i}")
            out += buffer[i : i + run]
            i += run
            continue

        # back reference
        run = ctrl >> 5
        if run == 7:
            if i >= size:
                raise LzfError("Truncated back reference length")
            run += buffer[i]
            i += 1
        if i >= size:
            raise LzfError("Truncated back reference offset")
        ref = len(out) - ((ctrl & 0x1F) << 8) - buffer[i] - 1
        i += 1
        run += 2
        if ref < 0:
            raise LzfError(f"Back reference points {-ref} bytes before output start")
        # references may overlap the bytes they produce
        for _ in range(run):
            out.append(out[ref])
            ref += 1

    if len(out) != expected_size:
        raise LzfError(
            f"Decompressed size mismatch; expected {expected_size} bytes, got {len(out)}"
        )
    return bytes(out)


__all__ = ["lzf_decompress"]
