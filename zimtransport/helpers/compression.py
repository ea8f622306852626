"""Streaming gzip compression for transfer payloads"""

import io
import zlib
from typing import BinaryIO

from ..config import DEFAULT_BUFFER_SIZE
from ..errors import CorruptPayloadError

GZIP_MAGIC = b"\x1f\x8b"
_GZIP_WBITS = 16 + zlib.MAX_WBITS
# Favour throughput over ratio, payloads are often already compressed
COMPRESSION_LEVEL = 1


class Compressor:
    """Incremental gzip compressor"""

    def __init__(self, level: int = COMPRESSION_LEVEL):
        self._zlib = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)

    def update(self, data: bytes) -> bytes:
        return self._zlib.compress(data)

    def finalize(self) -> bytes:
        return self._zlib.flush(zlib.Z_FINISH)


class Decompressor:
    """Incremental gzip decompressor"""

    def __init__(self):
        self._zlib = zlib.decompressobj(_GZIP_WBITS)

    def update(self, data: bytes) -> bytes:
        if self._zlib.eof:
            if data:
                raise CorruptPayloadError("Trailing data after end of compressed stream")
            return b""
        try:
            out = self._zlib.decompress(data)
        except zlib.error as e:
            raise CorruptPayloadError(f"Corrupt compressed data: {e}") from e
        if self._zlib.unused_data:
            raise CorruptPayloadError("Trailing data after end of compressed stream")
        return out

    def finalize(self) -> bytes:
        try:
            out = self._zlib.flush()
        except zlib.error as e:
            raise CorruptPayloadError(f"Corrupt compressed data: {e}") from e
        if not self._zlib.eof:
            raise CorruptPayloadError("Compressed stream is truncated")
        return out


def is_compressed(prefix: bytes) -> bool:
    """Whether data starts with the gzip magic"""
    return prefix[:2] == GZIP_MAGIC


def compress_stream(source: BinaryIO, destination: BinaryIO,
                    buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
    """Compress source into destination without buffering the whole input"""
    compressor = Compressor()
    while chunk := source.read(buffer_size):
        destination.write(compressor.update(chunk))
    destination.write(compressor.finalize())


def decompress_stream(source: BinaryIO, destination: BinaryIO,
                      buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
    """Decompress a gzip source into destination"""
    decompressor = Decompressor()
    while chunk := source.read(buffer_size):
        destination.write(decompressor.update(chunk))
    destination.write(decompressor.finalize())


def compress_bytes(data: bytes) -> bytes:
    output = io.BytesIO()
    compress_stream(io.BytesIO(data), output)
    return output.getvalue()


def decompress_bytes(data: bytes) -> bytes:
    output = io.BytesIO()
    decompress_stream(io.BytesIO(data), output)
    return output.getvalue()
