"""Transport over an SMB/UNC network share such as a NAS"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Optional, Set, Union
import logging

from .. import config
from ..helpers.stream_copy import ProgressCallback, check_cancelled
from ..models import TransferManifest, TransferMetadata
from .base import Transport
from .filesystem import FileSystemStore
from .pipeline import PipelinePolicy

logger = logging.getLogger(__name__)


@dataclass
class ShareCredential:
    username: str
    password: str = field(default="", repr=False)


class NetworkShareTransport(Transport):
    """
    Transfers data through a mounted network share (e.g. "\\\\NAS\\Migrations").
    The share itself must already exist; only subdirectories are created.
    """

    def __init__(self, share_path: Union[str, Path],
                 credential: Optional[ShareCredential] = None,
                 passphrase: Optional[str] = None,
                 compress: bool = False,
                 chunk_size: Optional[int] = None,
                 transport_config: Optional[config.TransportConfig] = None):
        if share_path is None:
            raise ValueError("share_path is required")
        self.share_path = Path(share_path)
        self.credential = credential
        self.config = transport_config or config.TransportConfig()
        self._store = FileSystemStore(
            self.share_path,
            PipelinePolicy(compress=compress, passphrase=passphrase),
            chunk_size=chunk_size,
            buffer_size=self.config.buffer_size,
            max_bytes_per_second=self.config.max_bytes_per_second
        )
        self._lock = asyncio.Lock()

    @property
    def manifest_path(self) -> Path:
        return self._store.manifest_path

    async def test_connection(self, cancel: Optional[asyncio.Event] = None) -> bool:
        try:
            check_cancelled(cancel)
            if self.credential is not None:
                logger.debug(
                    f"Connecting to {self.share_path} with credentials for user "
                    f"{self.credential.username}"
                )
            await self._store.probe(create_root=False)
            logger.debug(f"Network share {self.share_path} is accessible and writable")
            return True
        except Exception as e:
            logger.warning(f"Network share {self.share_path} is not accessible: {e}")
            return False

    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            if await self._store.send(source, metadata, progress, cancel):
                logger.info(
                    f"Sent {metadata.relative_path} ({metadata.size_bytes} bytes) to network share"
                )

    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        async with self._lock:
            stream = await self._store.receive(metadata, cancel)
        logger.debug(f"Receiving {metadata.relative_path} from network share")
        return stream

    async def send_manifest(self, manifest: TransferManifest,
                            cancel: Optional[asyncio.Event] = None) -> None:
        async with self._lock:
            check_cancelled(cancel)
            await self._store.write_manifest(manifest)
        logger.info(f"Transfer manifest written to network share at {self.manifest_path}")

    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        async with self._lock:
            check_cancelled(cancel)
            manifest = await self._store.read_manifest()
        logger.info(f"Transfer manifest loaded from network share at {self.manifest_path}")
        return manifest

    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        async with self._lock:
            return await self._store.completed()

    async def close(self) -> None:
        return None
