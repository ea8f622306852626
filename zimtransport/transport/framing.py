"""
Length-prefixed frame codec and item session for stream-socket media.

Frame: 1-byte type, 4-byte big-endian body length, body.
An item is METADATA, DATA*, END; a sender that fails mid-item sends ABORT
instead of END and the session continues with the next item.
"""

import asyncio
import json
import struct
from dataclasses import replace
from enum import Enum
from typing import Any, AsyncIterator, BinaryIO, Optional, Tuple
import logging

from ..config import DEFAULT_BUFFER_SIZE, MAX_FRAME_SIZE
from ..errors import (
    AuthenticationError, ChecksumMismatchError, ConnectionClosedError, CorruptPayloadError,
    InvalidFormatError, ProtocolError, TransferAbortedError, TransferCancelledError
)
from ..helpers.stream_copy import ProgressCallback, ProgressTracker, Throttle, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .pipeline import (
    PayloadDecoder, PayloadEncoder, PipelinePolicy, decode_sniffed, decode_to_spool,
    encode_bytes, encode_source, verify_checksum
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
HEADER = struct.Struct('!BI')


class FrameType(Enum):
    HELLO = 1
    MANIFEST = 2
    METADATA = 3
    DATA = 4
    END = 5
    ABORT = 6


async def write_frame(writer: asyncio.StreamWriter, frame_type: FrameType, body: bytes = b"",
                      max_size: int = MAX_FRAME_SIZE):
    if len(body) > max_size:
        raise ProtocolError(f"Frame of {len(body)} bytes exceeds limit of {max_size}")
    writer.write(HEADER.pack(frame_type.value, len(body)) + body)
    await writer.drain()


async def read_frame(reader: asyncio.StreamReader,
                     max_size: int = MAX_FRAME_SIZE) -> Tuple[FrameType, bytes]:
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as e:
        raise ConnectionClosedError("Connection closed by peer") from e

    type_value, length = HEADER.unpack(header)
    try:
        frame_type = FrameType(type_value)
    except ValueError:
        raise ProtocolError(f"Unknown frame type {type_value}") from None
    if length > max_size:
        raise ProtocolError(f"Frame of {length} bytes exceeds limit of {max_size}")

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ConnectionClosedError(
            f"Connection closed mid-frame ({len(e.partial)}/{length} bytes)"
        ) from e
    return frame_type, body


def _json_body(body: bytes, frame_type: FrameType) -> dict:
    try:
        data = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Malformed {frame_type.name} frame: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Malformed {frame_type.name} frame")
    return data


class FramedSession:
    """Item protocol over one established stream connection"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 policy: PipelinePolicy,
                 buffer_size: int = DEFAULT_BUFFER_SIZE,
                 max_frame_size: int = MAX_FRAME_SIZE,
                 max_bytes_per_second: Optional[int] = None):
        self.reader = reader
        self.writer = writer
        self.policy = policy
        self.buffer_size = buffer_size
        self.max_frame_size = max_frame_size
        self.max_bytes_per_second = max_bytes_per_second
        self.peer_version: Optional[int] = None

    async def _write(self, frame_type: FrameType, body: bytes = b""):
        await write_frame(self.writer, frame_type, body, self.max_frame_size)

    async def _read(self) -> Tuple[FrameType, bytes]:
        return await read_frame(self.reader, self.max_frame_size)

    async def _expect(self, expected: FrameType) -> bytes:
        frame_type, body = await self._read()
        if frame_type is FrameType.ABORT:
            raise TransferAbortedError(f"Peer aborted: {body.decode('utf-8', 'replace')}")
        if frame_type is not expected:
            raise ProtocolError(f"Expected {expected.name} frame, got {frame_type.name}")
        return body

    async def hello(self):
        """Exchange HELLO frames; both sides send first"""
        hello = json.dumps({'Version': PROTOCOL_VERSION}).encode('utf-8')
        await self._write(FrameType.HELLO, hello)
        data = _json_body(await self._expect(FrameType.HELLO), FrameType.HELLO)
        self.peer_version = data.get('Version')
        if self.peer_version != PROTOCOL_VERSION:
            raise ProtocolError(f"Unsupported protocol version {self.peer_version}")
        logger.debug(f"Session established, protocol version {self.peer_version}")

    async def send_manifest(self, manifest: TransferManifest):
        await self._write(FrameType.MANIFEST, encode_bytes(manifest.to_json(), self.policy))

    async def receive_manifest(self) -> TransferManifest:
        body = await self._expect(FrameType.MANIFEST)
        return TransferManifest.from_json(decode_sniffed(body, self.policy.passphrase))

    async def _abort(self, reason: str):
        try:
            await self._write(FrameType.ABORT, reason.encode('utf-8')[:1024])
        except (ConnectionError, OSError) as e:
            logger.debug(f"Could not send ABORT: {e}")

    async def send_item(self, source: Any, metadata: TransferMetadata,
                        progress: Optional[ProgressCallback] = None,
                        cancel: Optional[asyncio.Event] = None) -> PayloadEncoder:
        check_cancelled(cancel)
        encoder = PayloadEncoder(self.policy)
        announced = replace(metadata, is_compressed=encoder.compressed,
                            is_encrypted=encoder.encrypted)
        await self._write(FrameType.METADATA, json.dumps(announced.to_dict()).encode('utf-8'))

        tracker = ProgressTracker(metadata.relative_path, metadata.size_bytes, progress,
                                  item_index=metadata.chunk_index + 1,
                                  total_items=metadata.total_chunks)
        blocks = encode_source(source, encoder, self.buffer_size, tracker, cancel,
                               Throttle(self.max_bytes_per_second))
        try:
            async for block in blocks:
                for offset in range(0, len(block), self.buffer_size):
                    await self._write(FrameType.DATA, block[offset:offset + self.buffer_size])
            verify_checksum(metadata.relative_path, metadata.checksum, encoder.checksum)
        except (ConnectionError, asyncio.CancelledError):
            raise
        except Exception as e:
            await self._abort(str(e) or type(e).__name__)
            raise

        end = {'Checksum': encoder.checksum, 'Bytes': encoder.plain_bytes}
        await self._write(FrameType.END, json.dumps(end).encode('utf-8'))
        return encoder

    async def _drain_item(self):
        """Skip the rest of a partially consumed item"""
        while True:
            frame_type, _ = await self._read()
            if frame_type in (FrameType.END, FrameType.ABORT):
                return

    async def receive_item(self, metadata: TransferMetadata,
                           cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        check_cancelled(cancel)
        body = _json_body(await self._expect(FrameType.METADATA), FrameType.METADATA)
        try:
            announced = TransferMetadata.from_dict(body)
        except (KeyError, ValueError, TypeError) as e:
            await self._drain_item()
            raise ProtocolError(f"Malformed METADATA frame: {e}") from e
        if announced.relative_path != metadata.relative_path:
            await self._drain_item()
            raise ProtocolError(
                f"Expected {metadata.relative_path}, peer sent {announced.relative_path}"
            )

        end = {}
        finished = False

        async def data_blocks() -> AsyncIterator[bytes]:
            nonlocal finished
            while True:
                frame_type, body = await self._read()
                if frame_type is FrameType.DATA:
                    yield body
                elif frame_type is FrameType.END:
                    finished = True
                    end.update(_json_body(body, frame_type))
                    return
                elif frame_type is FrameType.ABORT:
                    finished = True
                    raise TransferAbortedError(
                        f"Sender aborted {metadata.relative_path}: "
                        f"{body.decode('utf-8', 'replace')}"
                    )
                else:
                    raise ProtocolError(f"Unexpected {frame_type.name} frame inside an item")

        expected = metadata.checksum or announced.checksum
        try:
            decoder = PayloadDecoder(announced.is_compressed, announced.is_encrypted,
                                     self.policy.passphrase)
            stream = await decode_to_spool(data_blocks(), decoder, metadata.relative_path,
                                           expected, cancel)
        except (AuthenticationError, InvalidFormatError, CorruptPayloadError,
                ChecksumMismatchError, TransferCancelledError):
            if not finished:
                await self._drain_item()
            raise

        sent_checksum = end.get('Checksum')
        if sent_checksum and sent_checksum.lower() != decoder.checksum:
            stream.close()
            raise ChecksumMismatchError(metadata.relative_path, sent_checksum, decoder.checksum)

        metadata.is_compressed = announced.is_compressed
        metadata.is_encrypted = announced.is_encrypted
        logger.debug(f"Received {metadata.relative_path} ({decoder.plain_bytes} bytes)")
        return stream


async def close_writer(writer: Optional[asyncio.StreamWriter]):
    """Close a stream writer, tolerating a peer that already went away"""
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Connection closed with error: {e}")
