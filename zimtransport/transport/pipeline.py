"""
Send/receive payload pipeline.

Send: plaintext -> SHA-256 -> gzip (optional) -> ZIME envelope (optional).
Receive: envelope -> gunzip -> plaintext, in that order.
Chunking is applied outermost by each medium.
"""

import asyncio
import hashlib
import tempfile
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, BinaryIO, Iterable, Optional, Tuple, Union
import logging

from ..config import DEFAULT_BUFFER_SIZE
from ..errors import ChecksumMismatchError, PassphraseRequiredError
from ..helpers import compression, encryption
from ..helpers.stream_copy import ProgressTracker, Throttle, check_cancelled, iter_source
from ..models import TransferMetadata
from .ledger import PayloadLayout

logger = logging.getLogger(__name__)

# Decoded payloads larger than this spill from memory to a temp file
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024


@dataclass
class PipelinePolicy:
    """Per-transport compression/encryption policy"""
    compress: bool = False
    passphrase: Optional[str] = field(default=None, repr=False)

    @property
    def encrypt(self) -> bool:
        return bool(self.passphrase)


class PayloadEncoder:
    """Incremental plaintext -> wire encoder that also hashes the plaintext"""

    def __init__(self, policy: PipelinePolicy):
        self.compressed = policy.compress
        self.encrypted = policy.encrypt
        self._hasher = hashlib.sha256()
        self._compressor = compression.Compressor() if self.compressed else None
        self._encryptor = encryption.Encryptor(policy.passphrase) if self.encrypted else None
        self.plain_bytes = 0
        self.encoded_bytes = 0

    def update(self, data: bytes) -> bytes:
        self._hasher.update(data)
        self.plain_bytes += len(data)
        if self._compressor:
            data = self._compressor.update(data)
        if self._encryptor:
            data = self._encryptor.update(data)
        self.encoded_bytes += len(data)
        return data

    def finalize(self) -> bytes:
        tail = b""
        if self._compressor:
            tail = self._compressor.finalize()
        if self._encryptor:
            tail = self._encryptor.update(tail) + self._encryptor.finalize()
        self.encoded_bytes += len(tail)
        return tail

    @property
    def checksum(self) -> str:
        return self._hasher.hexdigest()

    @property
    def layout(self) -> PayloadLayout:
        return PayloadLayout(compressed=self.compressed, encrypted=self.encrypted)

    def record_on(self, metadata: TransferMetadata):
        """Record the transforms actually applied onto the caller's metadata"""
        metadata.is_compressed = self.compressed
        metadata.is_encrypted = self.encrypted


class PayloadDecoder:
    """Incremental wire -> plaintext decoder that hashes the plaintext"""

    def __init__(self, compressed: bool, encrypted: bool, passphrase: Optional[str]):
        if encrypted and not passphrase:
            raise PassphraseRequiredError("Payload is encrypted but no passphrase is configured")
        self._decryptor = encryption.Decryptor(passphrase) if encrypted else None
        self._decompressor = compression.Decompressor() if compressed else None
        self._hasher = hashlib.sha256()
        self.plain_bytes = 0

    def _emit(self, data: bytes) -> bytes:
        self._hasher.update(data)
        self.plain_bytes += len(data)
        return data

    def update(self, data: bytes) -> bytes:
        if self._decryptor:
            data = self._decryptor.update(data)
        if self._decompressor:
            data = self._decompressor.update(data)
        return self._emit(data)

    def finalize(self) -> bytes:
        tail = b""
        if self._decryptor:
            tail = self._decryptor.finalize()
        if self._decompressor:
            tail = self._decompressor.update(tail) + self._decompressor.finalize()
        return self._emit(tail)

    @property
    def checksum(self) -> str:
        return self._hasher.hexdigest()


def resolve_layout(recorded: Optional[PayloadLayout], metadata: TransferMetadata,
                   policy: PipelinePolicy) -> Tuple[bool, bool]:
    """
    Decide which transforms to reverse: the ledger record wins, then
    flags on the caller's metadata, then this transport's own policy.
    """
    if recorded is not None:
        return recorded.compressed, recorded.encrypted
    if metadata.is_compressed or metadata.is_encrypted:
        return metadata.is_compressed, metadata.is_encrypted
    return policy.compress, policy.encrypt


def verify_checksum(name: str, expected: Optional[str], actual: str):
    if expected and expected.lower() != actual.lower():
        raise ChecksumMismatchError(name, expected, actual)


async def encode_source(source: Any, encoder: PayloadEncoder,
                        buffer_size: int = DEFAULT_BUFFER_SIZE,
                        tracker: Optional[ProgressTracker] = None,
                        cancel: Optional[asyncio.Event] = None,
                        throttle: Optional[Throttle] = None) -> AsyncIterator[bytes]:
    """Yield encoded blocks for a plaintext source"""
    async for chunk in iter_source(source, buffer_size, tracker, cancel, throttle):
        out = encoder.update(chunk)
        if out:
            yield out
    tail = encoder.finalize()
    if tail:
        yield tail


def encode_bytes(data: bytes, policy: PipelinePolicy) -> bytes:
    encoder = PayloadEncoder(policy)
    return encoder.update(data) + encoder.finalize()


def decode_bytes(data: bytes, compressed: bool, encrypted: bool,
                 passphrase: Optional[str]) -> bytes:
    decoder = PayloadDecoder(compressed, encrypted, passphrase)
    return decoder.update(data) + decoder.finalize()


def decode_sniffed(data: bytes, passphrase: Optional[str]) -> bytes:
    """Decode a small self-describing payload (the manifest) by its magic bytes"""
    encrypted = encryption.is_encrypted(data)
    if encrypted:
        data = decode_bytes(data, False, True, passphrase)
    if compression.is_compressed(data):
        data = compression.decompress_bytes(data)
    return data


async def decode_to_spool(blocks: Union[AsyncIterator[bytes], Iterable[bytes]],
                          decoder: PayloadDecoder, name: str,
                          expected_checksum: Optional[str] = None,
                          cancel: Optional[asyncio.Event] = None) -> BinaryIO:
    """
    Decode encoded blocks into a rewound spooled temp file.
    Authentication and checksum are verified before the stream is returned.
    """
    spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT)
    try:
        if hasattr(blocks, '__aiter__'):
            async for block in blocks:
                check_cancelled(cancel)
                spool.write(decoder.update(block))
        else:
            for block in blocks:
                check_cancelled(cancel)
                spool.write(decoder.update(block))
                await asyncio.sleep(0)
        spool.write(decoder.finalize())
        verify_checksum(name, expected_checksum, decoder.checksum)
    except BaseException:
        spool.close()
        raise
    spool.seek(0)
    return spool
