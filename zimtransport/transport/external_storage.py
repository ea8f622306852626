"""Transport over a USB drive or external disk mounted as a local path"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, List, Optional, Set, Union
import logging

import psutil

from .. import config
from ..helpers import chunks
from ..helpers.stream_copy import ProgressCallback, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .base import Transport
from .filesystem import FileSystemStore
from .pipeline import PipelinePolicy

logger = logging.getLogger(__name__)

_SKIPPED_FSTYPES = {'', 'squashfs', 'tmpfs', 'devtmpfs', 'overlay', 'proc', 'sysfs'}


@dataclass
class DriveInformation:
    """An available drive for external storage transport"""
    mountpoint: str
    device: str
    fstype: str
    total_size_bytes: int
    free_space_bytes: int


class ExternalStorageTransport(Transport):
    """
    Transfers data through a local staging path (e.g. "E:\\ZeroInstall").
    Resumable through the on-medium ledger.
    """

    def __init__(self, base_path: Union[str, Path],
                 passphrase: Optional[str] = None,
                 compress: bool = False,
                 chunk_size: Optional[int] = None,
                 transport_config: Optional[config.TransportConfig] = None):
        if base_path is None:
            raise ValueError("base_path is required")
        self.base_path = Path(base_path)
        self.config = transport_config or config.TransportConfig()
        self._explicit_chunk_size = chunk_size
        self._store = FileSystemStore(
            self.base_path,
            PipelinePolicy(compress=compress, passphrase=passphrase),
            chunk_size=chunk_size,
            buffer_size=self.config.buffer_size,
            max_bytes_per_second=self.config.max_bytes_per_second
        )
        self._lock = asyncio.Lock()
        self._fat32_checked = False

    @property
    def data_directory(self) -> Path:
        return self._store.data_dir

    @property
    def manifest_path(self) -> Path:
        return self._store.manifest_path

    @property
    def resume_ledger_path(self) -> Path:
        return self._store.ledger_path

    def _apply_fat32_limit(self):
        """Cap payload files below the FAT32 ceiling unless a chunk size was given"""
        if self._fat32_checked or self._explicit_chunk_size is not None:
            return
        self._fat32_checked = True
        if chunks.is_fat32(self.base_path):
            self._store.chunk_size = config.FAT32_MAX_FILE_SIZE
            logger.info(f"{self.base_path} is FAT32; splitting payloads at 4 GB")

    async def test_connection(self, cancel: Optional[asyncio.Event] = None) -> bool:
        try:
            check_cancelled(cancel)
            await self._store.probe(create_root=True)
            logger.debug(f"External storage path {self.base_path} is accessible and writable")
            return True
        except Exception as e:
            logger.warning(f"External storage path {self.base_path} is not accessible: {e}")
            return False

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            self._apply_fat32_limit()
            if await self._store.send(source, metadata, progress, cancel):
                logger.info(f"Sent {metadata.relative_path} ({metadata.size_bytes} bytes)")

    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        async with self._lock:
            stream = await self._store.receive(metadata, cancel)
        logger.debug(f"Receiving {metadata.relative_path} from external storage")
        return stream

    async def send_manifest(self, manifest: TransferManifest,
                            cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            check_cancelled(cancel)
            await self._store.write_manifest(manifest)
        logger.info(f"Transfer manifest written to {self.manifest_path}")

    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        async with self._lock:
            check_cancelled(cancel)
            manifest = await self._store.read_manifest()
        logger.info(f"Transfer manifest loaded from {self.manifest_path}")
        return manifest

    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        async with self._lock:
            return await self._store.completed()

    async def close(self) -> None:
        # Nothing is held open between calls
        return None

    def has_sufficient_space(self, required_bytes: int) -> bool:
        """Whether the target drive has room for the transfer"""
        try:
            probe = self.base_path
            while not probe.exists() and probe != probe.parent:
                probe = probe.parent
            return psutil.disk_usage(str(probe)).free >= required_bytes
        except OSError as e:
            logger.warning(f"Cannot determine free space for {self.base_path}: {e}")
            return False

    @staticmethod
    def get_available_drives() -> List[DriveInformation]:
        """Mounted drives usable as a staging area"""
        drives = []
        for part in psutil.disk_partitions(all=False):
            if part.fstype.lower() in _SKIPPED_FSTYPES:
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as e:
                logger.debug(f"Skipping {part.mountpoint}: {e}")
                continue
            drives.append(DriveInformation(
                mountpoint=part.mountpoint,
                device=part.device,
                fstype=part.fstype,
                total_size_bytes=usage.total,
                free_space_bytes=usage.free
            ))
        return drives

    async def cleanup(self):
        """Remove all transfer data from the staging path"""
        async with self._lock:
            await self._store.cleanup()
        logger.info(f"Cleaned up transfer data at {self.base_path}")
