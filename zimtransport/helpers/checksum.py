"""SHA-256 checksum utilities for transfer integrity verification"""

import hashlib
from pathlib import Path
from typing import BinaryIO, Union

import aiofiles

from ..config import DEFAULT_BUFFER_SIZE


def compute(data: bytes) -> str:
    """Compute SHA-256 of a byte string"""
    return hashlib.sha256(data).hexdigest()


def compute_stream(stream: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE) -> str:
    """Compute SHA-256 of a stream, restoring the position of seekable streams"""
    seekable = stream.seekable() if hasattr(stream, 'seekable') else False
    position = stream.tell() if seekable else 0

    hasher = hashlib.sha256()
    while chunk := stream.read(buffer_size):
        hasher.update(chunk)

    if seekable:
        stream.seek(position)
    return hasher.hexdigest()


def compute_file(path: Union[str, Path], buffer_size: int = DEFAULT_BUFFER_SIZE) -> str:
    """Compute SHA-256 of a file"""
    with open(path, 'rb') as f:
        return compute_stream(f, buffer_size)


async def compute_file_async(path: Union[str, Path],
                             buffer_size: int = DEFAULT_BUFFER_SIZE) -> str:
    """Compute SHA-256 of a file without blocking the event loop"""
    hasher = hashlib.sha256()
    async with aiofiles.open(path, 'rb') as f:
        while chunk := await f.read(buffer_size):
            hasher.update(chunk)
    return hasher.hexdigest()


def matches(actual: str, expected: str) -> bool:
    """Case-insensitive checksum comparison"""
    return actual.lower() == expected.lower()


def verify_file(path: Union[str, Path], expected: str) -> bool:
    """Verify that a file matches the expected checksum"""
    return matches(compute_file(path), expected)
