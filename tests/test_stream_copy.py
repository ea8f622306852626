"""Test buffered copy with progress, throttling and cancellation"""

import asyncio
import io
import time
import pytest

from zimtransport.errors import TransferCancelledError
from zimtransport.helpers.stream_copy import (
    Throttle, copy_with_progress, iter_source, queue_progress
)


class AsyncReader:
    """Minimal async reader, as returned by aiofiles"""

    def __init__(self, data: bytes):
        self._stream = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        await asyncio.sleep(0)
        return self._stream.read(size)


class TestCopyWithProgress:
    """Test the copy loop"""

    @pytest.mark.asyncio
    async def test_copies_all_bytes(self, payload):
        destination = io.BytesIO()

        copied = await copy_with_progress(io.BytesIO(payload), destination, len(payload), "item")

        assert copied == len(payload)
        assert destination.getvalue() == payload

    @pytest.mark.asyncio
    async def test_async_source(self, payload):
        destination = io.BytesIO()

        await copy_with_progress(AsyncReader(payload), destination, len(payload), "item",
                                 buffer_size=4096)

        assert destination.getvalue() == payload

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, payload):
        reports = []

        await copy_with_progress(io.BytesIO(payload), io.BytesIO(), len(payload), "item",
                                 item_index=2, total_items=5,
                                 progress=reports.append, buffer_size=10_000)

        transferred = [r.item_bytes_transferred for r in reports]
        assert transferred == sorted(transferred)
        assert transferred[-1] == len(payload)
        assert all(r.item_index == 2 and r.total_items == 5 for r in reports)
        assert reports[-1].percent == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_overall_progress(self):
        reports = []

        await copy_with_progress(io.BytesIO(b"x" * 100), io.BytesIO(), 100, "item",
                                 overall_already_transferred=900,
                                 overall_total_bytes=2000,
                                 progress=reports.append)

        assert reports[-1].overall_bytes_transferred == 1000
        assert reports[-1].overall_total_bytes == 2000

    @pytest.mark.asyncio
    async def test_cancellation(self, payload):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(TransferCancelledError):
            await copy_with_progress(io.BytesIO(payload), io.BytesIO(), len(payload), "item",
                                     cancel=cancel)

    @pytest.mark.asyncio
    async def test_cancellation_mid_copy(self, payload):
        """Test that cancellation is honoured between buffers"""
        cancel = asyncio.Event()
        destination = io.BytesIO()

        def cancel_after_first(progress):
            cancel.set()

        with pytest.raises(TransferCancelledError):
            await copy_with_progress(io.BytesIO(payload), destination, len(payload), "item",
                                     progress=cancel_after_first, cancel=cancel,
                                     buffer_size=1000)

        assert len(destination.getvalue()) == 1000


class TestProgressQueue:
    """Test the bounded queue adapter"""

    @pytest.mark.asyncio
    async def test_drops_when_full(self, payload):
        queue = asyncio.Queue(maxsize=2)

        await copy_with_progress(io.BytesIO(payload), io.BytesIO(), len(payload), "item",
                                 progress=queue_progress(queue), buffer_size=1000)

        assert queue.qsize() == 2
        first = queue.get_nowait()
        assert first.item_bytes_transferred == 1000


class TestThrottle:
    """Test bandwidth limiting"""

    @pytest.mark.asyncio
    async def test_unlimited_does_not_sleep(self):
        throttle = Throttle(None)
        start = time.monotonic()
        for _ in range(100):
            await throttle.consume(1_000_000)
        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_limit_slows_copy(self):
        start = time.monotonic()

        await copy_with_progress(io.BytesIO(b"x" * 2000), io.BytesIO(), 2000, "item",
                                 max_bytes_per_second=1000, buffer_size=500)

        assert time.monotonic() - start >= 0.9

    @pytest.mark.asyncio
    async def test_iter_source_yields_buffers(self):
        blocks = [b async for b in iter_source(io.BytesIO(b"abcdefgh"), buffer_size=3)]
        assert blocks == [b"abc", b"def", b"gh"]
