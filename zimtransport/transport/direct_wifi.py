"""Peer-to-peer transport over a TCP connection on the local network"""

import asyncio
from typing import Any, BinaryIO, Optional, Set, Tuple
import logging

from .. import config
from ..helpers.stream_copy import ProgressCallback, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .base import Transport
from .framing import FramedSession, close_writer
from .pipeline import PipelinePolicy

logger = logging.getLogger(__name__)

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


class DirectWiFiTransport(Transport):
    """
    One framed TCP connection between a listening destination and a
    connecting source. Items flow sequentially; there is no persistent
    resume state on this medium.
    """

    def __init__(self, host: str, port: Optional[int] = None,
                 is_server: bool = False,
                 passphrase: Optional[str] = None,
                 compress: bool = False,
                 max_bytes_per_second: Optional[int] = None,
                 transport_config: Optional[config.TransportConfig] = None):
        self.host = host
        self.config = transport_config or config.TransportConfig()
        self.port = self.config.direct_wifi_port if port is None else port
        self.is_server = is_server
        self.policy = PipelinePolicy(compress=compress, passphrase=passphrase)
        self.max_bytes_per_second = (
            max_bytes_per_second if max_bytes_per_second is not None
            else self.config.max_bytes_per_second
        )
        self._lock = asyncio.Lock()
        self._server: Optional[asyncio.AbstractServer] = None
        self._pending: Optional[asyncio.Future] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._session: Optional[FramedSession] = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def listen(self) -> int:
        """Start listening (server side) and return the bound port"""
        if not self.is_server:
            raise ValueError("listen() is only valid for the receiving side")
        if self._server is None:
            self._pending = asyncio.get_running_loop().create_future()
            self._server = await asyncio.start_server(self._on_client, self.host, self.port)
            self.port = self._server.sockets[0].getsockname()[1]
            logger.info(f"Listening for a peer on {self.host}:{self.port}")
        return self.port

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info('peername')
        if self._pending is None or self._pending.done():
            logger.warning(f"Rejecting extra connection from {peer}")
            await close_writer(writer)
            return
        logger.info(f"Peer connected from {peer}")
        self._pending.set_result((reader, writer))

    async def _open(self) -> Streams:
        if self.is_server:
            await self.listen()
            return await asyncio.wait_for(asyncio.shield(self._pending),
                                          self.config.accept_timeout)
        logger.info(f"Connecting to {self.host}:{self.port}")
        return await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port),
            self.config.connect_timeout
        )

    async def _connect(self, cancel: Optional[asyncio.Event] = None) -> FramedSession:
        if self._session is not None:
            return self._session
        check_cancelled(cancel)
        reader, writer = await self._open()
        self._writer = writer
        session = FramedSession(
            reader, writer, self.policy,
            buffer_size=self.config.buffer_size,
            max_frame_size=self.config.max_frame_size,
            max_bytes_per_second=self.max_bytes_per_second
        )
        try:
            await session.hello()
        except BaseException:
            await self._disconnect()
            if self.is_server and self._server is not None:
                # Let the next attempt accept a fresh peer
                self._pending = asyncio.get_running_loop().create_future()
            raise
        self._session = session
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
            logger.warning(f"Direct WiFi connection to {self.host}:{self.port} failed: {e}")
            return False

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            session = await self._connect(cancel)
            encoder = await session.send_item(source, metadata, progress, cancel)
        encoder.record_on(metadata)
        logger.info(f"Sent {metadata.relative_path} ({encoder.plain_bytes} bytes)")

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
        logger.info(f"Manifest sent for session {manifest.manifest_id}")

    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        async with self._lock:
            session = await self._connect(cancel)
            manifest = await session.receive_manifest()
        logger.info(f"Manifest received for session {manifest.manifest_id} "
                    f"({len(manifest.items)} items)")
        return manifest

    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        return set()

    async def close(self) -> None:
        await self._disconnect()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        if self._server is not None:
            server, self._server = self._server, None
            server.close()
            await server.wait_closed()
            logger.debug(f"Stopped listening on {self.host}:{self.port}")
