"""Test the socket frame codec and item session"""

import asyncio
import io
import json
import pytest

from zimtransport.errors import (
    AuthenticationError, ChecksumMismatchError, ConnectionClosedError, ProtocolError,
    TransferAbortedError, TransferCancelledError
)
from zimtransport.models import TransferManifest, TransportMethod
from zimtransport.transport.framing import (
    FrameType, FramedSession, PROTOCOL_VERSION, read_frame, write_frame
)
from zimtransport.transport.pipeline import PipelinePolicy

from .conftest import make_metadata


class BufferWriter:
    """StreamWriter stand-in collecting written bytes"""

    def __init__(self):
        self.buffer = bytearray()

    def write(self, data: bytes):
        self.buffer += data

    async def drain(self):
        pass


def reader_for(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(bytes(data))
    reader.feed_eof()
    return reader


async def encode_frames(*frames) -> bytes:
    writer = BufferWriter()
    for frame_type, body in frames:
        await write_frame(writer, frame_type, body)
    return bytes(writer.buffer)


def sender(policy=None, buffer_size=4096) -> FramedSession:
    return FramedSession(reader_for(b""), BufferWriter(), policy or PipelinePolicy(),
                         buffer_size=buffer_size)


def receiver(wire: bytes, policy=None) -> FramedSession:
    return FramedSession(reader_for(wire), BufferWriter(), policy or PipelinePolicy())


class CancelAfter:
    """Cancellation flag that trips after a number of checks"""

    def __init__(self, checks: int):
        self.remaining = checks

    def is_set(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0


class TestFrameCodec:
    """Test frame encoding and decoding"""

    @pytest.mark.asyncio
    async def test_header_layout(self):
        wire = await encode_frames((FrameType.DATA, b"abc"))
        assert wire == b"\x04\x00\x00\x00\x03abc"

    @pytest.mark.asyncio
    async def test_round_trip(self):
        wire = await encode_frames((FrameType.HELLO, b"{}"), (FrameType.END, b""))
        reader = reader_for(wire)

        assert await read_frame(reader) == (FrameType.HELLO, b"{}")
        assert await read_frame(reader) == (FrameType.END, b"")

    @pytest.mark.asyncio
    async def test_eof_between_frames(self):
        with pytest.raises(ConnectionClosedError):
            await read_frame(reader_for(b""))

    @pytest.mark.asyncio
    async def test_eof_mid_frame(self):
        wire = await encode_frames((FrameType.DATA, b"abcdef"))

        with pytest.raises(ConnectionClosedError):
            await read_frame(reader_for(wire[:-2]))

    @pytest.mark.asyncio
    async def test_oversized_frame(self):
        wire = await encode_frames((FrameType.DATA, b"x" * 100))

        with pytest.raises(ProtocolError):
            await read_frame(reader_for(wire), max_size=10)
        with pytest.raises(ProtocolError):
            await write_frame(BufferWriter(), FrameType.DATA, b"x" * 100, max_size=10)

    @pytest.mark.asyncio
    async def test_unknown_frame_type(self):
        with pytest.raises(ProtocolError):
            await read_frame(reader_for(b"\x63\x00\x00\x00\x00"))


class TestFramedSession:
    """Test the item protocol"""

    @pytest.mark.asyncio
    async def test_hello(self):
        wire = await encode_frames(
            (FrameType.HELLO, json.dumps({'Version': PROTOCOL_VERSION}).encode('utf-8'))
        )
        session = receiver(wire)

        await session.hello()

        assert session.peer_version == PROTOCOL_VERSION
        frame_type, _ = await read_frame(reader_for(session.writer.buffer))
        assert frame_type is FrameType.HELLO

    @pytest.mark.asyncio
    async def test_hello_version_mismatch(self):
        wire = await encode_frames((FrameType.HELLO, b'{"Version": 99}'))

        with pytest.raises(ProtocolError):
            await receiver(wire).hello()

    @pytest.mark.asyncio
    async def test_manifest(self):
        manifest = TransferManifest("OLD-PC", "Windows 10", TransportMethod.DIRECT_WIFI)
        policy = PipelinePolicy(compress=True, passphrase="p")
        out = sender(policy)

        await out.send_manifest(manifest)

        assert await receiver(out.writer.buffer, policy).receive_manifest() == manifest

    @pytest.mark.asyncio
    async def test_item_round_trip(self, payload):
        policy = PipelinePolicy(compress=True, passphrase="wifi")
        out = sender(policy)
        metadata = make_metadata("photos/cat.jpg", payload)

        await out.send_item(io.BytesIO(payload), metadata)

        incoming = make_metadata("photos/cat.jpg", payload)
        with await receiver(out.writer.buffer, policy).receive_item(incoming) as stream:
            assert stream.read() == payload
        assert incoming.is_compressed and incoming.is_encrypted

    @pytest.mark.asyncio
    async def test_data_frames_bounded_by_buffer(self, payload):
        out = sender(buffer_size=1000)
        await out.send_item(io.BytesIO(payload), make_metadata("a", payload))

        reader = reader_for(out.writer.buffer)
        sizes = []
        while True:
            frame_type, body = await read_frame(reader)
            if frame_type is FrameType.DATA:
                sizes.append(len(body))
            if frame_type is FrameType.END:
                break
        assert max(sizes) <= 1000
        assert sum(sizes) == len(payload)

    @pytest.mark.asyncio
    async def test_unexpected_path(self):
        out = sender()
        await out.send_item(io.BytesIO(b"x"), make_metadata("a.txt", b"x"))

        with pytest.raises(ProtocolError):
            await receiver(out.writer.buffer).receive_item(make_metadata("b.txt", b"x"))

    @pytest.mark.asyncio
    async def test_unexpected_frame(self):
        wire = await encode_frames((FrameType.MANIFEST, b"{}"))

        with pytest.raises(ProtocolError):
            await receiver(wire).receive_item(make_metadata("a", b""))

    @pytest.mark.asyncio
    async def test_abort_then_next_item(self):
        """Test that an aborted item does not poison the session"""
        out = sender()
        with pytest.raises(ChecksumMismatchError):
            await out.send_item(io.BytesIO(b"bad"), make_metadata("first", b"expected"))
        await out.send_item(io.BytesIO(b"good"), make_metadata("second", b"good"))

        session = receiver(out.writer.buffer)
        with pytest.raises(TransferAbortedError):
            await session.receive_item(make_metadata("first", b"", with_checksum=False))
        with await session.receive_item(make_metadata("second", b"good")) as stream:
            assert stream.read() == b"good"

    @pytest.mark.asyncio
    async def test_end_checksum_mismatch(self):
        wire = await encode_frames(
            (FrameType.METADATA, json.dumps(make_metadata("a", b"", False).to_dict()).encode()),
            (FrameType.DATA, b"abc"),
            (FrameType.END, json.dumps({'Checksum': "0" * 64, 'Bytes': 3}).encode()),
        )

        with pytest.raises(ChecksumMismatchError):
            await receiver(wire).receive_item(make_metadata("a", b"", with_checksum=False))

    @pytest.mark.asyncio
    async def test_wrong_passphrase_keeps_session_aligned(self):
        out = sender(PipelinePolicy(passphrase="A"))
        await out.send_item(io.BytesIO(b"one"), make_metadata("one", b"one"))
        await out.send_item(io.BytesIO(b"two"), make_metadata("two", b"two"))

        session = receiver(out.writer.buffer, PipelinePolicy(passphrase="B"))
        with pytest.raises(AuthenticationError):
            await session.receive_item(make_metadata("one", b"one"))
        # The second item is still framed correctly even though it cannot be decrypted
        with pytest.raises(AuthenticationError):
            await session.receive_item(make_metadata("two", b"two"))

    @pytest.mark.asyncio
    async def test_connection_lost_mid_item(self, payload):
        out = sender()
        await out.send_item(io.BytesIO(payload), make_metadata("a", payload))

        with pytest.raises(ConnectionClosedError):
            await receiver(out.writer.buffer[:5000]).receive_item(make_metadata("a", payload))

    @pytest.mark.asyncio
    async def test_cancelled_receive_keeps_session_aligned(self, payload):
        out = sender(buffer_size=10_000)
        await out.send_item(io.BytesIO(payload), make_metadata("big", payload))
        await out.send_item(io.BytesIO(b"next"), make_metadata("next", b"next"))

        session = receiver(out.writer.buffer)
        # Trips after the METADATA check and two DATA frames
        with pytest.raises(TransferCancelledError):
            await session.receive_item(make_metadata("big", payload), cancel=CancelAfter(3))
        with await session.receive_item(make_metadata("next", b"next")) as stream:
            assert stream.read() == b"next"
