"""Bluetooth connection seam and an RFCOMM socket implementation"""

import asyncio
import socket
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
import logging

from ..config import BLUETOOTH_RFCOMM_CHANNEL, TransportConfig
from ..errors import NotConnectedError, ProtocolError

logger = logging.getLogger(__name__)

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


def format_address(address: int) -> str:
    """48-bit device address as AA:BB:CC:DD:EE:FF"""
    return ':'.join(f"{(address >> shift) & 0xFF:02X}" for shift in range(40, -8, -8))


def parse_address(text: str) -> int:
    parts = text.replace('-', ':').split(':')
    if len(parts) != 6:
        raise ValueError(f"Invalid Bluetooth address: {text}")
    value = 0
    for part in parts:
        value = (value << 8) | int(part, 16)
    return value


@dataclass
class DiscoveredBluetoothDevice:
    """A device found during a Bluetooth scan"""
    address: int
    name: str = ""
    is_paired: bool = False
    is_connected: bool = False

    @property
    def address_string(self) -> str:
        return format_address(self.address)

    def __str__(self):
        return f"{self.name or 'Unknown'} ({self.address_string})"


class BluetoothAdapter(ABC):
    """Radio operations needed by BluetoothTransport"""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        ...

    @property
    @abstractmethod
    def local_device_name(self) -> str:
        ...

    @abstractmethod
    async def discover_devices(self, timeout: float) -> List[DiscoveredBluetoothDevice]:
        ...

    @abstractmethod
    async def pair(self, address: Union[int, str]) -> bool:
        ...

    @abstractmethod
    async def connect(self, address: Union[int, str], service_id: uuid.UUID) -> Streams:
        ...

    @abstractmethod
    async def accept(self, service_id: uuid.UUID) -> Streams:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


SERVICE_ACCEPTED = b"\x01"


async def request_service(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                          service_id: uuid.UUID):
    """Client half of the service check: announce the id and wait for acceptance"""
    writer.write(service_id.bytes)
    await writer.drain()
    try:
        reply = await reader.readexactly(1)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(f"Peer does not offer service {service_id}") from e
    if reply != SERVICE_ACCEPTED:
        raise ProtocolError(f"Peer rejected service {service_id}")


async def accept_service(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                         service_id: uuid.UUID) -> bool:
    """Server half of the service check; False when the peer asked for another service"""
    try:
        requested = uuid.UUID(bytes=await reader.readexactly(16))
    except asyncio.IncompleteReadError:
        return False
    if requested != service_id:
        logger.warning(f"Rejected peer asking for service {requested}")
        return False
    writer.write(SERVICE_ACCEPTED)
    await writer.drain()
    return True


class RfcommSocketAdapter(BluetoothAdapter):
    """
    RFCOMM over the platform's AF_BLUETOOTH sockets (Linux/BlueZ, Windows).

    Plain sockets cannot publish or query SDP records, so peers meet on a
    configured RFCOMM channel and the service id is checked in-band right
    after the connection opens. Discovery and pairing belong to the
    operating system and raise NotConnectedError here.
    """

    def __init__(self, channel: int = BLUETOOTH_RFCOMM_CHANNEL):
        if not 1 <= channel <= 30:
            raise ValueError(f"Invalid RFCOMM channel: {channel}")
        self.channel = channel
        self._listener: Optional[socket.socket] = None

    @classmethod
    def from_config(cls, transport_config: TransportConfig) -> 'RfcommSocketAdapter':
        return cls(channel=transport_config.bluetooth_channel)

    @property
    def is_available(self) -> bool:
        if not hasattr(socket, 'AF_BLUETOOTH') or not hasattr(socket, 'BTPROTO_RFCOMM'):
            return False
        try:
            probe = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        except OSError:
            return False
        probe.close()
        return True

    @property
    def local_device_name(self) -> str:
        return socket.gethostname()

    def _socket(self) -> socket.socket:
        if not self.is_available:
            raise NotConnectedError("Bluetooth RFCOMM sockets are not available on this system")
        sock = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        sock.setblocking(False)
        return sock

    async def discover_devices(self, timeout: float) -> List[DiscoveredBluetoothDevice]:
        raise NotConnectedError(
            "Device discovery is not available over RFCOMM sockets; "
            "scan and pair through the operating system, then connect by address"
        )

    async def pair(self, address: Union[int, str]) -> bool:
        raise NotConnectedError(
            "Pairing is not available over RFCOMM sockets; "
            "pair the devices through the operating system"
        )

    async def connect(self, address: Union[int, str], service_id: uuid.UUID) -> Streams:
        if isinstance(address, int):
            address = format_address(address)
        sock = self._socket()
        loop = asyncio.get_running_loop()
        try:
            await loop.sock_connect(sock, (address, self.channel))
        except BaseException:
            sock.close()
            raise
        reader, writer = await asyncio.open_connection(sock=sock)
        try:
            await request_service(reader, writer, service_id)
        except BaseException:
            writer.close()
            raise
        logger.info(f"RFCOMM connected to {address} channel {self.channel} (service {service_id})")
        return reader, writer

    async def accept(self, service_id: uuid.UUID) -> Streams:
        loop = asyncio.get_running_loop()
        if self._listener is None:
            listener = self._socket()
            listener.bind((socket.BDADDR_ANY, self.channel))
            listener.listen(1)
            self._listener = listener
            logger.info(f"Waiting for RFCOMM peer on channel {self.channel} (service {service_id})")
        while True:
            conn, peer = await loop.sock_accept(self._listener)
            conn.setblocking(False)
            reader, writer = await asyncio.open_connection(sock=conn)
            if await accept_service(reader, writer, service_id):
                logger.info(f"RFCOMM peer connected from {peer[0]}")
                return reader, writer
            writer.close()

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.close()
            self._listener = None
