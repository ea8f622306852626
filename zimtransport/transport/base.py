"""Transport contract shared by every medium"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Optional, Set

from ..helpers.stream_copy import ProgressCallback
from ..models import TransferManifest, TransferMetadata


class Transport(ABC):
    """
    Moves migration payloads across one medium.

    Implementations own exactly one connection and serialize calls on it.
    The interface carries no state; each medium keeps its own.
    """

    @abstractmethod
    async def test_connection(self, cancel: Optional[asyncio.Event] = None) -> bool:
        """Probe the medium; never raises, returns False on any failure"""

    @abstractmethod
    async def send(self, source: Any, metadata: TransferMetadata,
                   progress: Optional[ProgressCallback] = None,
                   cancel: Optional[asyncio.Event] = None) -> None:
        """Send a plaintext stream, committing atomically"""

    @abstractmethod
    async def receive(self, metadata: TransferMetadata,
                      cancel: Optional[asyncio.Event] = None) -> BinaryIO:
        """Return a plaintext stream for a committed payload"""

    @abstractmethod
    async def send_manifest(self, manifest: TransferManifest,
                            cancel: Optional[asyncio.Event] = None) -> None:
        """Send the session manifest"""

    @abstractmethod
    async def receive_manifest(self, cancel: Optional[asyncio.Event] = None) -> TransferManifest:
        """Receive the session manifest"""

    @abstractmethod
    async def get_completed_transfers(self, cancel: Optional[asyncio.Event] = None) -> Set[str]:
        """Relative paths already committed at the destination"""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection; idempotent"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
