"""Pytest configuration and fixtures"""

import asyncio
import io
import os
import pytest
import tempfile
import shutil
from pathlib import Path

from zimtransport.helpers import checksum
from zimtransport.models import TransferMetadata


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def staging_dir():
    """Create temporary directory acting as the transport medium"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def payload():
    """Incompressible test payload spanning several copy buffers"""
    return os.urandom(300_000)


@pytest.fixture
def text_payload():
    """Highly compressible test payload"""
    return b"user profile settings line\n" * 20_000


def make_metadata(relative_path: str, data: bytes, with_checksum: bool = True) -> TransferMetadata:
    return TransferMetadata(
        relative_path=relative_path,
        size_bytes=len(data),
        checksum=checksum.compute(data) if with_checksum else None
    )


class SlowReader:
    """Async source yielding to the event loop between small reads"""

    def __init__(self, data: bytes, delay: float = 0.001, max_read: int = 4096):
        self._stream = io.BytesIO(data)
        self.delay = delay
        self.max_read = max_read

    async def read(self, size: int = -1) -> bytes:
        await asyncio.sleep(self.delay)
        if size < 0 or size > self.max_read:
            size = self.max_read
        return self._stream.read(size)
