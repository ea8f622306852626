"""Peer-to-peer transport over a Bluetooth stream channel (fallback medium)"""

import asyncio
from datetime import timedelta
from typing import Any, BinaryIO, List, Optional, Set, Union
import logging

from .. import config
from ..errors import NotConnectedError
from ..helpers.stream_copy import ProgressCallback, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .base import Transport
from .bluetooth_adapter import (
    BluetoothAdapter, DiscoveredBluetoothDevice, format_address, parse_address
)
from .framing import FramedSession, close_writer
from .pipeline import PipelinePolicy

logger = logging.getLogger(__name__)


class BluetoothTransport(Transport):
    """
    Same framed session as DirectWiFi, carried over a channel opened by a
    BluetoothAdapter. Slow; intended for small payloads when no network
    is available.
    """

    def __init__(self, adapter: BluetoothAdapter,
                 remote_address: Union[int, str, None] = None,
                 is_server: bool = False,
                 passphrase: Optional[str] = None,
                 compress: bool = False,
                 transport_config: Optional[config.TransportConfig] = None):
        if adapter is None:
            raise ValueError("adapter is required")
        if not is_server and remote_address is None:
            raise ValueError("remote_address is required when connecting to a peer")
        self.adapter = adapter
        if isinstance(remote_address, str):
            remote_address = parse_address(remote_address)
        self.remote_address = (
            format_address(remote_address) if remote_address is not None else None
        )
        self.is_server = is_server
        self.config = transport_config or config.TransportConfig()
        self.policy = PipelinePolicy(compress=compress, passphrase=passphrase)
        self._lock = asyncio.Lock()
        self._writer: Optional[asyncio.StreamWriter] = None
        self._session: Optional[FramedSession] = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    @staticmethod
    async def discover_devices(adapter: BluetoothAdapter,
                               timeout: float = 10.0) -> List[DiscoveredBluetoothDevice]:
        """Scan for nearby devices"""
        if not adapter.is_available:
            logger.warning("Bluetooth is not available on this machine")
            return []
        devices = await adapter.discover_devices(timeout)
        logger.info(f"Discovered {len(devices)} Bluetooth device(s)")
        return devices

    @staticmethod
    def estimate_transfer_time(total_bytes: int) -> timedelta:
        """Rough duration at practical RFCOMM throughput"""
        return timedelta(seconds=max(total_bytes, 0) / config.BLUETOOTH_BYTES_PER_SECOND)

    async def _connect(self, cancel: Optional[asyncio.Event] = None) -> FramedSession:
        if self._session is not None:
            return self._session
        check_cancelled(cancel)
        if not self.adapter.is_available:
            raise NotConnectedError("Bluetooth is not available on this machine")

        if self.is_server:
            reader, writer = await asyncio.wait_for(
                self.adapter.accept(config.BLUETOOTH_SERVICE_ID), self.config.accept_timeout
            )
        else:
            logger.info(f"Connecting to Bluetooth device {self.remote_address}")
            reader, writer = await asyncio.wait_for(
                self.adapter.connect(self.remote_address, config.BLUETOOTH_SERVICE_ID),
                self.config.connect_timeout
            )
        self._writer = writer
        session = FramedSession(
            reader, writer, self.policy,
            buffer_size=self.config.buffer_size,
            max_frame_size=self.config.max_frame_size,
            max_bytes_per_second=self.config.max_bytes_per_second
        )
        try:
            await session.hello()
        except BaseException:
            await self._disconnect()
            raise
        self._session = session
        logger.info(f"Bluetooth session established as {self.adapter.local_device_name}")
        return session

    async def _disconnect(self):
        self._session = None
        writer, self._writer = self._writer, None
        await close_writer(writer)

    async def test_connection(self, cancel: Optional[asyncio.Event] = None) -> bool:
        try:
            async with self._lock:
                await self._connect(cancel)
            return True
        except Exception as e:
            logger.warning(f"Bluetooth connection failed: {e}")
            return False

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            session = await self._connect(cancel)
            encoder = await session.send_item(source, metadata, progress, cancel)
        encoder.record_on(metadata)
        logger.info(f"Sent {metadata.relative_path} over Bluetooth ({encoder.plain_bytes} bytes)")

    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        async with self._lock:
            session = await self._connect(cancel)
            return await session.receive_item(metadata, cancel)

    async def send_manifest(self, manifest: TransferManifest,
                            cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            session = await self._connect(cancel)
            await session.send_manifest(manifest)
        logger.info("Manifest sent over Bluetooth")

    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        async with self._lock:
            session = await self._connect(cancel)
            return await session.receive_manifest()

    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        return set()

    async def close(self) -> None:
        await self._disconnect()
        await self.adapter.close()
