"""
Fixed-size chunk split/reassembly with the shared `.partNNNN` naming.

Used for filesystem size ceilings (FAT32) and to bound the unit of retry
over unreliable links.
"""

import io
import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union
import logging

import psutil

from ..config import (
    CHUNK_SUFFIX_FORMAT, DEFAULT_BUFFER_SIZE, FAT32_MAX_FILE_SIZE, IMAGE_CHUNK_SIZE
)
from ..errors import TransferNotFoundError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def chunk_count(size: int, chunk_size: int) -> int:
    """Number of chunks for a payload; at least 1"""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if size <= 0:
        return 1
    return (size + chunk_size - 1) // chunk_size


def chunk_name(base: str, index: int) -> str:
    """Name of chunk `index` of `base`, e.g. disk.img.part0003"""
    return base + CHUNK_SUFFIX_FORMAT.format(index=index)


def chunk_paths(base: str, count: int) -> List[str]:
    return [chunk_name(base, i) for i in range(count)]


def needs_splitting(size: int, max_size: int = FAT32_MAX_FILE_SIZE) -> bool:
    return size > max_size


def find_chunk_set(base: str, exists: Callable[[str], bool]) -> int:
    """Count consecutive chunks starting at .part0000; 0 when not chunked"""
    count = 0
    while exists(chunk_name(base, count)):
        count += 1
    return count


def first_missing_chunk(base: str, count: int,
                        exists: Callable[[str], bool]) -> Optional[int]:
    for i in range(count):
        if not exists(chunk_name(base, i)):
            return i
    return None


def split(source_path: PathLike, chunk_size: int = IMAGE_CHUNK_SIZE,
          destination_dir: Optional[PathLike] = None,
          buffer_size: int = DEFAULT_BUFFER_SIZE) -> List[str]:
    """Split a file into chunk files; returns chunk paths in index order"""
    source_path = Path(source_path)
    if not source_path.is_file():
        raise TransferNotFoundError(f"Source file not found: {source_path}", str(source_path))

    total_size = source_path.stat().st_size
    count = chunk_count(total_size, chunk_size)
    base_dir = Path(destination_dir) if destination_dir else source_path.parent
    base_dir.mkdir(parents=True, exist_ok=True)
    base = str(base_dir / source_path.name)

    paths = []
    with open(source_path, 'rb') as source:
        for i in range(count):
            path = chunk_name(base, i)
            remaining = min(chunk_size, total_size - i * chunk_size)
            with open(path, 'wb') as chunk:
                while remaining > 0:
                    data = source.read(min(buffer_size, remaining))
                    if not data:
                        break
                    chunk.write(data)
                    remaining -= len(data)
            paths.append(path)

    logger.debug(f"Split {source_path} into {count} chunk(s) of {chunk_size} bytes")
    return paths


class ChunkSetReader(io.RawIOBase):
    """Read-only stream concatenating chunk files in index order"""

    def __init__(self, paths: Sequence[PathLike], delete_after_read: bool = False):
        super().__init__()
        self._paths = [Path(p) for p in paths]
        self._delete_after_read = delete_after_read
        self._index = 0
        self._current = None
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while self._index < len(self._paths):
            if self._current is None:
                self._current = open(self._paths[self._index], 'rb')
            count = self._current.readinto(buffer)
            if count:
                return count
            self._current.close()
            self._current = None
            self._index += 1
        self._exhausted = True
        return 0

    def close(self):
        if self.closed:
            return
        if self._current is not None:
            self._current.close()
            self._current = None
        if self._delete_after_read and self._exhausted:
            for path in self._paths:
                path.unlink(missing_ok=True)
            logger.debug(f"Deleted {len(self._paths)} consumed chunk(s)")
        super().close()


def reassemble(paths: Sequence[PathLike], delete_after_read: bool = False) -> io.BufferedReader:
    """
    Validate a complete chunk set and return a stream over it.
    Every chunk is checked before any output so a gap fails fast,
    naming the first missing index.
    """
    if not paths:
        raise TransferNotFoundError("Empty chunk set")
    for index, path in enumerate(paths):
        if not os.path.isfile(path):
            raise TransferNotFoundError(
                f"Chunk file not found: {path} (index {index})",
                str(path), missing_index=index
            )
    return io.BufferedReader(ChunkSetReader(paths, delete_after_read), DEFAULT_BUFFER_SIZE)


def reassemble_to_file(output_path: PathLike, base: str, count: int,
                       delete_chunks: bool = False,
                       buffer_size: int = DEFAULT_BUFFER_SIZE) -> int:
    """Reassemble `count` chunks of `base` into output_path; returns bytes written"""
    written = 0
    reader = reassemble(chunk_paths(base, count), delete_after_read=delete_chunks)
    with reader, open(output_path, 'wb') as output:
        while data := reader.read(buffer_size):
            output.write(data)
            written += len(data)
    return written


def is_fat32(path: PathLike) -> bool:
    """Whether `path` lives on a FAT32 volume"""
    try:
        target = os.path.realpath(path)
        best = None
        for part in psutil.disk_partitions(all=False):
            mount = part.mountpoint
            if target == mount or target.startswith(mount.rstrip(os.sep) + os.sep):
                if best is None or len(mount) > len(best.mountpoint):
                    best = part
        return best is not None and best.fstype.lower() in ('vfat', 'fat32')
    except OSError as e:
        logger.debug(f"Cannot determine filesystem for {path}: {e}")
        return False
