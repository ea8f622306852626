"""
Filesystem staging layout shared by the external-storage and network-share media.

<root>/zim-manifest.json
<root>/zim-resume.json
<root>/zim-data/<relative path>[.partNNNN]
"""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO, Callable, List, Optional, Set
import logging

import aiofiles
import aiofiles.os

from .. import config
from ..errors import TransferNotFoundError
from ..helpers import chunks
from ..helpers.stream_copy import ProgressCallback, ProgressTracker, Throttle, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .ledger import PayloadLayout, ResumeLedger, unique_temp_name, update_lock
from .pipeline import (
    PayloadDecoder, PayloadEncoder, PipelinePolicy, decode_sniffed, decode_to_spool,
    encode_bytes, encode_source, resolve_layout, verify_checksum
)

logger = logging.getLogger(__name__)


async def _close_durable(handle):
    await handle.flush()
    os.fsync(handle.fileno())
    await handle.close()


async def _remove_quietly(path: str):
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


class FileSystemStore:
    """Transfer layout rooted at a local or mounted directory"""

    def __init__(self, root: Path, policy: PipelinePolicy,
                 chunk_size: Optional[int] = None,
                 buffer_size: int = config.DEFAULT_BUFFER_SIZE,
                 max_bytes_per_second: Optional[int] = None):
        self.root = Path(root)
        self.policy = policy
        self.chunk_size = chunk_size
        self.buffer_size = buffer_size
        self.max_bytes_per_second = max_bytes_per_second

    @property
    def data_dir(self) -> Path:
        return self.root / config.DATA_DIRECTORY_NAME

    @property
    def manifest_path(self) -> Path:
        return self.root / config.MANIFEST_FILE_NAME

    @property
    def ledger_path(self) -> Path:
        return self.root / config.RESUME_LEDGER_FILE_NAME

    def target_path(self, relative_path: str) -> Path:
        return self.data_dir.joinpath(*relative_path.split('/'))

    async def probe(self, create_root: bool):
        """Write and delete a marker file; raises on failure"""
        if create_root:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
        elif not await aiofiles.os.path.isdir(self.root):
            raise TransferNotFoundError(f"Path does not exist: {self.root}", str(self.root))

        probe = self.root / config.PROBE_FILE_NAME
        async with aiofiles.open(probe, 'w') as f:
            await f.write("test")
        await aiofiles.os.remove(probe)

    # Ledger

    async def load_ledger(self) -> ResumeLedger:
        if not await aiofiles.os.path.isfile(self.ledger_path):
            return ResumeLedger()
        async with aiofiles.open(self.ledger_path, 'rb') as f:
            return ResumeLedger.from_json(await f.read())

    async def update_ledger(self, update: Callable[[ResumeLedger], None]):
        """Re-read the ledger, apply `update` and rewrite it in one locked step"""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._update_ledger_sync, update)

    def _update_ledger_sync(self, update: Callable[[ResumeLedger], None]):
        path = self.ledger_path
        with update_lock(os.path.realpath(path)):
            ledger = ResumeLedger()
            if path.is_file():
                ledger = ResumeLedger.from_json(path.read_bytes())
            update(ledger)
            temp = unique_temp_name(str(path))
            try:
                with open(temp, 'wb') as f:
                    f.write(ledger.to_json())
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp, path)
            except BaseException:
                if os.path.exists(temp):
                    os.remove(temp)
                raise

    async def completed(self) -> Set[str]:
        ledger = await self.load_ledger()
        return set(ledger.completed_files)

    async def _write_atomic(self, path: Path, data: bytes):
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        temp = unique_temp_name(str(path))
        try:
            handle = await aiofiles.open(temp, 'wb')
            try:
                await handle.write(data)
            finally:
                await _close_durable(handle)
            await aiofiles.os.replace(temp, path)
        except BaseException:
            await _remove_quietly(temp)
            raise

    # Payloads

    async def _is_present(self, relative_path: str, layout: Optional[PayloadLayout]) -> bool:
        base = str(self.target_path(relative_path))
        if layout is not None and layout.chunks:
            return chunks.first_missing_chunk(base, layout.chunks, os.path.isfile) is None
        return await aiofiles.os.path.isfile(base)

    async def _write_parts(self, blocks: AsyncIterator[bytes], base: str) -> List[str]:
        """Write encoded blocks into temp files, rolling over at chunk_size"""
        temps: List[str] = []
        handle = None
        written = 0
        limit = self.chunk_size

        def next_temp() -> str:
            if limit is None:
                return base + config.TEMP_SUFFIX
            return chunks.chunk_name(base, len(temps)) + config.TEMP_SUFFIX

        try:
            async for block in blocks:
                view = memoryview(block)
                while view:
                    if handle is None:
                        temps.append(next_temp())
                        handle = await aiofiles.open(temps[-1], 'wb')
                        written = 0
                    room = limit - written if limit else len(view)
                    part = view[:room]
                    await handle.write(bytes(part))
                    written += len(part)
                    view = view[len(part):]
                    if limit and written >= limit:
                        await _close_durable(handle)
                        handle = None

            if not temps:
                # Zero-length payload still commits one (empty) file
                temps.append(next_temp())
                handle = await aiofiles.open(temps[-1], 'wb')
            if handle is not None:
                await _close_durable(handle)
                handle = None
            return temps
        except BaseException:
            if handle is not None:
                await handle.close()
            for temp in temps:
                await _remove_quietly(temp)
            raise

    async def _commit(self, base: str, temps: List[str]) -> int:
        """Rename temp files to their final names; returns the chunk count (0 = single file)"""
        stale_chunks = chunks.find_chunk_set(base, os.path.isfile)

        if len(temps) == 1:
            for i in range(stale_chunks):
                await _remove_quietly(chunks.chunk_name(base, i))
            await aiofiles.os.replace(temps[0], base)
            return 0

        await _remove_quietly(base)
        for i in range(len(temps), stale_chunks):
            await _remove_quietly(chunks.chunk_name(base, i))
        # .part0000 is what readers probe for, so it appears last
        for index in reversed(range(len(temps))):
            await aiofiles.os.replace(temps[index], chunks.chunk_name(base, index))
        return len(temps)

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> bool:
        """Stream, verify and commit one payload; returns False when skipped"""
        check_cancelled(cancel)
        relative_path = metadata.relative_path
        ledger = await self.load_ledger()

        if ledger.is_completed(relative_path, metadata.checksum) and \
                await self._is_present(relative_path, ledger.layout_for(relative_path)):
            logger.debug(f"Skipping {relative_path} - already transferred with matching checksum")
            return False

        target = self.target_path(relative_path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        base = str(target)

        encoder = PayloadEncoder(self.policy)
        tracker = ProgressTracker(relative_path, metadata.size_bytes, progress,
                                  item_index=metadata.chunk_index + 1,
                                  total_items=metadata.total_chunks)
        blocks = encode_source(source, encoder, self.buffer_size, tracker, cancel,
                               Throttle(self.max_bytes_per_second))

        temps = await self._write_parts(blocks, base)
        try:
            verify_checksum(relative_path, metadata.checksum, encoder.checksum)
            check_cancelled(cancel)
        except BaseException:
            for temp in temps:
                await _remove_quietly(temp)
            raise

        chunk_total = await self._commit(base, temps)

        layout = encoder.layout
        layout.chunks = chunk_total
        await self.update_ledger(
            lambda current: current.record(relative_path, encoder.checksum, layout)
        )
        encoder.record_on(metadata)
        return True

    def _locate(self, relative_path: str, layout: Optional[PayloadLayout]) -> List[str]:
        base = str(self.target_path(relative_path))
        if layout is not None and layout.chunks:
            count = layout.chunks
        elif os.path.isfile(base):
            return [base]
        else:
            count = chunks.find_chunk_set(base, os.path.isfile)
            if count == 0:
                raise TransferNotFoundError(f"Transfer file not found: {relative_path}", base)

        missing = chunks.first_missing_chunk(base, count, os.path.isfile)
        if missing is not None:
            path = chunks.chunk_name(base, missing)
            raise TransferNotFoundError(
                f"Incomplete chunk set for {relative_path}: missing index {missing}",
                path, missing_index=missing
            )
        return chunks.chunk_paths(base, count)

    async def _read_blocks(self, paths: List[str]) -> AsyncIterator[bytes]:
        for path in paths:
            async with aiofiles.open(path, 'rb') as f:
                while block := await f.read(self.buffer_size):
                    yield block

    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        relative_path = metadata.relative_path
        ledger = await self.load_ledger()
        recorded = ledger.layout_for(relative_path)
        paths = self._locate(relative_path, recorded)

        compressed, encrypted = resolve_layout(recorded, metadata, self.policy)
        if not compressed and not encrypted:
            if len(paths) == 1 and not (recorded and recorded.chunks):
                return open(paths[0], 'rb')
            return chunks.reassemble(paths)

        decoder = PayloadDecoder(compressed, encrypted, self.policy.passphrase)
        expected = ledger.checksums.get(relative_path) or metadata.checksum
        return await decode_to_spool(self._read_blocks(paths), decoder, relative_path,
                                     expected, cancel)

    # Manifest

    async def write_manifest(self, manifest: TransferManifest):
        await aiofiles.os.makedirs(self.root, exist_ok=True)
        await self._write_atomic(self.manifest_path, encode_bytes(manifest.to_json(), self.policy))

    async def read_manifest(self) -> TransferManifest:
        if not await aiofiles.os.path.isfile(self.manifest_path):
            raise TransferNotFoundError("Transfer manifest not found", str(self.manifest_path))
        async with aiofiles.open(self.manifest_path, 'rb') as f:
            raw = await f.read()
        return TransferManifest.from_json(decode_sniffed(raw, self.policy.passphrase))

    async def cleanup(self):
        if await aiofiles.os.path.isdir(self.root):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, shutil.rmtree, self.root)
