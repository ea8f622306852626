"""Test the DirectWiFi transport over loopback"""

import asyncio
import io
import pytest

from zimtransport.config import TransportConfig
from zimtransport.errors import TransferAbortedError
from zimtransport.models import (
    MigrationItemSummary, MigrationItemType, TransferManifest, TransportMethod
)
from zimtransport.transport import DirectWiFiTransport

from .conftest import make_metadata

LOOPBACK = "127.0.0.1"


async def connected_pair(**options):
    server = DirectWiFiTransport(LOOPBACK, port=0, is_server=True, **options)
    port = await server.listen()
    client = DirectWiFiTransport(LOOPBACK, port=port, **options)
    ok = await asyncio.gather(server.test_connection(), client.test_connection())
    assert ok == [True, True]
    return server, client


class TestDirectWiFi:
    """Test peer-to-peer sessions"""

    @pytest.mark.asyncio
    async def test_manifest_then_data(self, payload):
        """Test a manifest and a payload recovered byte for byte"""
        server, client = await connected_pair()
        manifest = TransferManifest(
            source_hostname="OLD-PC",
            source_os_version="Windows 10",
            transport_method=TransportMethod.DIRECT_WIFI,
            items=[MigrationItemSummary("Pictures", MigrationItemType.FILE_GROUP,
                                        estimated_size_bytes=len(payload))]
        )
        try:
            _, received_manifest = await asyncio.gather(
                client.send_manifest(manifest), server.receive_manifest()
            )
            assert received_manifest == manifest

            metadata = make_metadata("Pictures/cat.jpg", payload)
            _, stream = await asyncio.gather(
                client.send(io.BytesIO(payload), metadata),
                server.receive(make_metadata("Pictures/cat.jpg", payload))
            )
            with stream:
                assert stream.read() == payload
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_encrypted_sequential_items(self, text_payload):
        server, client = await connected_pair(passphrase="lan", compress=True)
        try:
            for index in range(3):
                data = text_payload + bytes([index])
                name = f"docs/{index}.txt"
                metadata = make_metadata(name, data)
                _, stream = await asyncio.gather(
                    client.send(io.BytesIO(data), metadata),
                    server.receive(make_metadata(name, data))
                )
                with stream:
                    assert stream.read() == data
                assert metadata.is_compressed and metadata.is_encrypted
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_server_receives_from_client(self):
        """Test that either side may send once connected"""
        server, client = await connected_pair()
        try:
            _, stream = await asyncio.gather(
                server.send(io.BytesIO(b"pong"), make_metadata("r.txt", b"pong")),
                client.receive(make_metadata("r.txt", b"pong"))
            )
            with stream:
                assert stream.read() == b"pong"
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_failed_item_aborts_cleanly(self):
        server, client = await connected_pair()
        try:
            results = await asyncio.gather(
                client.send(io.BytesIO(b"bad"), make_metadata("x", b"expected")),
                server.receive(make_metadata("x", b"", with_checksum=False)),
                return_exceptions=True
            )
            assert isinstance(results[1], TransferAbortedError)

            _, stream = await asyncio.gather(
                client.send(io.BytesIO(b"ok"), make_metadata("y", b"ok")),
                server.receive(make_metadata("y", b"ok"))
            )
            with stream:
                assert stream.read() == b"ok"
        finally:
            await client.close()
            await server.close()

    @pytest.mark.asyncio
    async def test_no_peer(self):
        server = DirectWiFiTransport(LOOPBACK, port=0, is_server=True)
        port = await server.listen()
        await server.close()

        client = DirectWiFiTransport(LOOPBACK, port=port,
                                     transport_config=TransportConfig(connect_timeout=2.0))
        assert not await client.test_connection()
        await client.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        transport = DirectWiFiTransport(LOOPBACK, port=0, is_server=True)
        await transport.close()
        await transport.listen()
        await transport.close()
        await transport.close()

    @pytest.mark.asyncio
    async def test_no_resume_state(self):
        transport = DirectWiFiTransport(LOOPBACK)
        assert await transport.get_completed_transfers() == set()

    @pytest.mark.asyncio
    async def test_listen_requires_server(self):
        with pytest.raises(ValueError):
            await DirectWiFiTransport(LOOPBACK).listen()
