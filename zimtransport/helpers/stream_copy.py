"""
Buffered stream copy with progress reporting, cancellation and throttling.

Progress callbacks are invoked synchronously from the copy loop with
monotonically increasing cumulative byte counts. They run on the event loop
and must return quickly; use queue_progress() to hand snapshots to another
task through a bounded queue.
"""

import asyncio
import inspect
import time
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Optional
import logging

from ..config import DEFAULT_BUFFER_SIZE
from ..errors import TransferCancelledError
from ..models import TransferProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]


async def read_async(source: Any, size: int) -> bytes:
    """Read from a sync or async binary reader"""
    data = source.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data


async def write_async(destination: Any, data: bytes) -> None:
    """Write to a sync or async binary writer"""
    result = destination.write(data)
    if inspect.isawaitable(result):
        await result


def check_cancelled(cancel: Optional[asyncio.Event]):
    if cancel is not None and cancel.is_set():
        raise TransferCancelledError("Transfer cancelled")


def queue_progress(queue: asyncio.Queue) -> ProgressCallback:
    """Adapt a bounded queue into a non-blocking progress callback (drops when full)"""
    def report(progress: TransferProgress):
        try:
            queue.put_nowait(progress)
        except asyncio.QueueFull:
            pass
    return report


class ProgressTracker:
    """Accumulates byte counts and reports TransferProgress snapshots"""

    def __init__(self, item_name: str, total_bytes: int,
                 progress: Optional[ProgressCallback] = None,
                 item_index: int = 1, total_items: int = 1,
                 overall_already_transferred: int = 0,
                 overall_total_bytes: Optional[int] = None):
        self.item_name = item_name
        self.total_bytes = total_bytes
        self.progress = progress
        self.item_index = item_index
        self.total_items = total_items
        self.overall_already_transferred = overall_already_transferred
        self.overall_total_bytes = (
            overall_total_bytes if overall_total_bytes is not None else total_bytes
        )
        self.transferred = 0
        self._started = time.monotonic()

    def advance(self, count: int):
        self.transferred += count
        if self.progress is None:
            return

        elapsed = time.monotonic() - self._started
        bytes_per_second = int(self.transferred / elapsed) if elapsed > 0 else 0
        overall = self.overall_already_transferred + self.transferred
        remaining = None
        if bytes_per_second > 0 and self.overall_total_bytes > overall:
            remaining = timedelta(seconds=(self.overall_total_bytes - overall) / bytes_per_second)

        self.progress(TransferProgress(
            item_name=self.item_name,
            item_index=self.item_index,
            total_items=self.total_items,
            item_bytes_transferred=self.transferred,
            item_total_bytes=self.total_bytes,
            overall_bytes_transferred=overall,
            overall_total_bytes=self.overall_total_bytes,
            bytes_per_second=bytes_per_second,
            estimated_time_remaining=remaining
        ))


class Throttle:
    """Per-second bandwidth limiter"""

    def __init__(self, max_bytes_per_second: Optional[int]):
        self.max_bytes_per_second = max_bytes_per_second
        self._window_start = time.monotonic()
        self._window_bytes = 0

    async def consume(self, count: int):
        if not self.max_bytes_per_second or self.max_bytes_per_second <= 0:
            return
        self._window_bytes += count
        if self._window_bytes >= self.max_bytes_per_second:
            delay = 1.0 - (time.monotonic() - self._window_start)
            if delay > 0:
                await asyncio.sleep(delay)
            self._window_bytes = 0
            self._window_start = time.monotonic()


async def iter_source(source: Any, buffer_size: int = DEFAULT_BUFFER_SIZE,
                      tracker: Optional[ProgressTracker] = None,
                      cancel: Optional[asyncio.Event] = None,
                      throttle: Optional[Throttle] = None) -> AsyncIterator[bytes]:
    """Yield buffers from source, checking cancellation on every read"""
    while True:
        check_cancelled(cancel)
        chunk = await read_async(source, buffer_size)
        if not chunk:
            break
        yield chunk
        if tracker is not None:
            tracker.advance(len(chunk))
        if throttle is not None:
            await throttle.consume(len(chunk))


async def copy_with_progress(source: Any, destination: Any, total_bytes: int,
                             item_name: str,
                             item_index: int = 1,
                             total_items: int = 1,
                             overall_already_transferred: int = 0,
                             overall_total_bytes: Optional[int] = None,
                             progress: Optional[ProgressCallback] = None,
                             max_bytes_per_second: Optional[int] = None,
                             cancel: Optional[asyncio.Event] = None,
                             buffer_size: int = DEFAULT_BUFFER_SIZE) -> int:
    """Copy source to destination with progress, throttling and cancellation"""
    tracker = ProgressTracker(
        item_name, total_bytes, progress,
        item_index=item_index,
        total_items=total_items,
        overall_already_transferred=overall_already_transferred,
        overall_total_bytes=overall_total_bytes
    )
    throttle = Throttle(max_bytes_per_second)

    async for chunk in iter_source(source, buffer_size, tracker, cancel, throttle):
        await write_async(destination, chunk)

    logger.debug(f"Copied {tracker.transferred} bytes for {item_name}")
    return tracker.transferred
