"""
Transport to a NAS or server over SFTP.

Payloads are compressed by default and committed by uploading to a temp
name and renaming. Encoded payloads larger than the chunk size are stored
as a `.partNNNN` set; each chunk is committed and recorded on its own so a
broken upload resumes at chunk granularity.
"""

import asyncio
import functools
import io
import posixpath
import tempfile
from typing import Any, AsyncIterator, BinaryIO, Callable, List, Optional, Set
import logging

from .. import config
from ..errors import TransferNotFoundError
from ..helpers import checksum, chunks
from ..helpers.stream_copy import ProgressCallback, ProgressTracker, Throttle, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .base import Transport
from .ledger import ResumeLedger, unique_temp_name, update_lock
from .pipeline import (
    SPOOL_MEMORY_LIMIT, PayloadDecoder, PayloadEncoder, PipelinePolicy, decode_sniffed,
    decode_to_spool, encode_bytes, encode_source, resolve_layout, verify_checksum
)
from .sftp_client import SftpClient, SftpFileInfo

logger = logging.getLogger(__name__)


class SftpTransport(Transport):
    """Transfers data to a remote directory through an SftpClient"""

    def __init__(self, client: SftpClient,
                 remote_base_path: str = config.SFTP_DEFAULT_BASE_PATH,
                 passphrase: Optional[str] = None,
                 compress: bool = True,
                 chunk_size: Optional[int] = None,
                 transport_config: Optional[config.TransportConfig] = None):
        if client is None:
            raise ValueError("client is required")
        self.client = client
        self.remote_base_path = remote_base_path.rstrip('/') or '/'
        self.config = transport_config or config.TransportConfig()
        self.policy = PipelinePolicy(compress=compress, passphrase=passphrase)
        self.chunk_size = chunk_size or self.config.sftp_chunk_size
        self._lock = asyncio.Lock()

    @property
    def data_directory(self) -> str:
        return posixpath.join(self.remote_base_path, config.DATA_DIRECTORY_NAME)

    @property
    def manifest_path(self) -> str:
        return posixpath.join(self.remote_base_path, config.MANIFEST_FILE_NAME)

    @property
    def resume_ledger_path(self) -> str:
        return posixpath.join(self.remote_base_path, config.RESUME_LEDGER_FILE_NAME)

    def target_path(self, relative_path: str) -> str:
        return posixpath.join(self.data_directory, relative_path)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _ensure_connected(self):
        if not self.client.is_connected:
            await self._run(self.client.connect)
            logger.info(f"SFTP connected, base path {self.remote_base_path}")

    async def _ensure_directory(self, path: str):
        """Create `path` and any missing parents"""
        current = '/' if path.startswith('/') else ''
        for part in path.strip('/').split('/'):
            if not part:
                continue
            current = posixpath.join(current, part) if current else part
            if not await self._run(self.client.exists, current):
                try:
                    await self._run(self.client.create_directory, current)
                except IOError:
                    # Another session may have created it in the meantime
                    if not await self._run(self.client.exists, current):
                        raise
                logger.debug(f"Created remote directory {current}")

    async def _upload_atomic(self, source: BinaryIO, path: str):
        """Upload to `<path>.tmp` and rename into place"""
        temp = path + config.TEMP_SUFFIX
        source.seek(0)
        try:
            await self._run(self.client.upload_file, source, temp)
            await self._run(self.client.rename_file, temp, path)
        except BaseException:
            await self._delete_if_exists(temp)
            raise

    async def _delete_if_exists(self, path: str):
        try:
            if await self._run(self.client.exists, path):
                await self._run(self.client.delete_file, path)
        except Exception as e:
            logger.warning(f"Could not remove remote file {path}: {e}")

    async def _download(self, path: str) -> BinaryIO:
        spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT)
        try:
            await self._run(self.client.download_file, path, spool)
        except BaseException:
            spool.close()
            raise
        spool.seek(0)
        return spool

    # Ledger

    async def _load_ledger(self) -> ResumeLedger:
        if not await self._run(self.client.exists, self.resume_ledger_path):
            return ResumeLedger()
        buffer = io.BytesIO()
        await self._run(self.client.download_file, self.resume_ledger_path, buffer)
        return ResumeLedger.from_json(buffer.getvalue())

    async def _update_ledger(self, update: Callable[[ResumeLedger], None]):
        """Re-read the remote ledger, apply `update` and upload it in one locked step"""
        await self._run(self._update_ledger_sync, update)

    def _update_ledger_sync(self, update: Callable[[ResumeLedger], None]):
        path = self.resume_ledger_path
        key = (getattr(self.client, 'host', None), getattr(self.client, 'port', None), path)
        with update_lock(key):
            ledger = ResumeLedger()
            if self.client.exists(path):
                buffer = io.BytesIO()
                self.client.download_file(path, buffer)
                ledger = ResumeLedger.from_json(buffer.getvalue())
            update(ledger)
            temp = unique_temp_name(path)
            try:
                self.client.upload_file(io.BytesIO(ledger.to_json()), temp)
                self.client.rename_file(temp, path)
            except BaseException:
                if self.client.exists(temp):
                    self.client.delete_file(temp)
                raise

    # Transport contract

    async def test_connection(self, cancel: Optional[asyncio.Event] = None) -> bool:
        try:
            check_cancelled(cancel)
            async with self._lock:
                await self._ensure_connected()
                await self._ensure_directory(self.remote_base_path)
                probe = posixpath.join(self.remote_base_path, config.PROBE_FILE_NAME)
                await self._run(self.client.upload_file, io.BytesIO(b"test"), probe)
                await self._run(self.client.delete_file, probe)
            logger.debug(f"SFTP path {self.remote_base_path} is accessible and writable")
            return True
        except Exception as e:
            logger.warning(f"SFTP connection test failed: {e}")
            return False

    async def _is_present(self, relative_path: str, ledger: ResumeLedger) -> bool:
        base = self.target_path(relative_path)
        layout = ledger.layout_for(relative_path)
        if layout is not None and layout.chunks:
            missing = await self._run(
                chunks.first_missing_chunk, base, layout.chunks, self.client.exists
            )
            return missing is None
        return await self._run(self.client.exists, base)

    async def _commit_chunk(self, spool: BinaryIO, relative_path: str, index: int,
                            ledger: ResumeLedger, cancel: Optional[asyncio.Event]):
        check_cancelled(cancel)
        remote = chunks.chunk_name(self.target_path(relative_path), index)
        key = chunks.chunk_name(relative_path, index)
        spool.seek(0)
        digest = checksum.compute_stream(spool)

        if ledger.chunk_matches(key, digest) and await self._run(self.client.exists, remote):
            logger.debug(f"Skipping chunk {index} of {relative_path} - already uploaded")
            return

        await self._upload_atomic(spool, remote)
        await self._update_ledger(lambda current: current.record_chunk(key, digest))
        logger.debug(f"Committed chunk {index} of {relative_path}")

    async def _remove_stale(self, base: str, keep_chunks: int, keep_single: bool):
        stale = await self._run(chunks.find_chunk_set, base, self.client.exists)
        for i in range(keep_chunks, stale):
            await self._delete_if_exists(chunks.chunk_name(base, i))
        if not keep_single:
            await self._delete_if_exists(base)

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            check_cancelled(cancel)
            await self._ensure_connected()
            relative_path = metadata.relative_path
            ledger = await self._load_ledger()

            if ledger.is_completed(relative_path, metadata.checksum) and \
                    await self._is_present(relative_path, ledger):
                logger.debug(f"Skipping {relative_path} - already uploaded with matching checksum")
                return

            base = self.target_path(relative_path)
            await self._ensure_directory(posixpath.dirname(base))

            encoder = PayloadEncoder(self.policy)
            tracker = ProgressTracker(relative_path, metadata.size_bytes, progress,
                                      item_index=metadata.chunk_index + 1,
                                      total_items=metadata.total_chunks)
            blocks = encode_source(source, encoder, self.config.buffer_size, tracker, cancel,
                                   Throttle(self.config.max_bytes_per_second))

            spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT)
            filled = 0
            index = 0
            try:
                async for block in blocks:
                    view = memoryview(block)
                    while view:
                        if filled == self.chunk_size:
                            # More data past a full buffer: this payload is chunked
                            await self._commit_chunk(spool, relative_path, index, ledger, cancel)
                            spool.close()
                            spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT)
                            filled = 0
                            index += 1
                        part = view[:self.chunk_size - filled]
                        spool.write(part)
                        filled += len(part)
                        view = view[len(part):]

                verify_checksum(relative_path, metadata.checksum, encoder.checksum)

                if index == 0:
                    await self._upload_atomic(spool, base)
                    await self._remove_stale(base, keep_chunks=0, keep_single=True)
                    chunk_total = 0
                else:
                    await self._commit_chunk(spool, relative_path, index, ledger, cancel)
                    chunk_total = index + 1
                    await self._remove_stale(base, keep_chunks=chunk_total, keep_single=False)
            finally:
                spool.close()

            layout = encoder.layout
            layout.chunks = chunk_total
            await self._update_ledger(
                lambda current: current.record(relative_path, encoder.checksum, layout)
            )
            encoder.record_on(metadata)

        logger.info(
            f"Uploaded {relative_path} ({encoder.plain_bytes} bytes, "
            f"{encoder.encoded_bytes} on the wire"
            f"{f', {chunk_total} chunks' if chunk_total else ''})"
        )

    async def _locate(self, relative_path: str, ledger: ResumeLedger) -> List[str]:
        base = self.target_path(relative_path)
        layout = ledger.layout_for(relative_path)
        if layout is not None and layout.chunks:
            count = layout.chunks
        elif await self._run(self.client.exists, base):
            return [base]
        else:
            count = await self._run(chunks.find_chunk_set, base, self.client.exists)
            if count == 0:
                raise TransferNotFoundError(f"Remote file not found: {base}", base)

        missing = await self._run(chunks.first_missing_chunk, base, count, self.client.exists)
        if missing is not None:
            path = chunks.chunk_name(base, missing)
            raise TransferNotFoundError(
                f"Incomplete chunk set for {relative_path}: missing index {missing}",
                path, missing_index=missing
            )
        return chunks.chunk_paths(base, count)

    async def _download_blocks(self, paths: List[str]) -> AsyncIterator[bytes]:
        for path in paths:
            part = await self._download(path)
            try:
                while block := part.read(self.config.buffer_size):
                    yield block
            finally:
                part.close()

    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        async with self._lock:
            check_cancelled(cancel)
            await self._ensure_connected()
            relative_path = metadata.relative_path
            ledger = await self._load_ledger()
            paths = await self._locate(relative_path, ledger)

            compressed, encrypted = resolve_layout(
                ledger.layout_for(relative_path), metadata, self.policy
            )
            decoder = PayloadDecoder(compressed, encrypted, self.policy.passphrase)
            expected = ledger.checksums.get(relative_path) or metadata.checksum
            stream = await decode_to_spool(self._download_blocks(paths), decoder,
                                           relative_path, expected, cancel)
        logger.debug(f"Downloaded {relative_path} from {len(paths)} remote file(s)")
        return stream

    async def send_manifest(self, manifest: TransferManifest,
                            cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            check_cancelled(cancel)
            await self._ensure_connected()
            await self._ensure_directory(self.remote_base_path)
            payload = encode_bytes(manifest.to_json(), self.policy)
            await self._upload_atomic(io.BytesIO(payload), self.manifest_path)
        logger.info(f"Transfer manifest uploaded to {self.manifest_path}")

    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        async with self._lock:
            check_cancelled(cancel)
            await self._ensure_connected()
            if not await self._run(self.client.exists, self.manifest_path):
                raise TransferNotFoundError("Transfer manifest not found on server",
                                            self.manifest_path)
            buffer = io.BytesIO()
            await self._run(self.client.download_file, self.manifest_path, buffer)
        manifest = TransferManifest.from_json(
            decode_sniffed(buffer.getvalue(), self.policy.passphrase)
        )
        logger.info(f"Transfer manifest downloaded from {self.manifest_path}")
        return manifest

    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        async with self._lock:
            check_cancelled(cancel)
            await self._ensure_connected()
            ledger = await self._load_ledger()
        return set(ledger.completed_files)

    async def list_remote_directory(self, path: str) -> List[SftpFileInfo]:
        async with self._lock:
            await self._ensure_connected()
            return await self._run(self.client.list_directory, path)

    async def create_remote_directory(self, path: str):
        async with self._lock:
            await self._ensure_connected()
            await self._ensure_directory(path)

    async def close(self) -> None:
        await self._run(self.client.close)
