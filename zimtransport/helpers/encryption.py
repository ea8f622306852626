"""
AES-256-GCM streaming encryption with PBKDF2 key derivation.

Envelope: "ZIME" magic (4 bytes) + salt (16 bytes) + nonce (12 bytes)
+ ciphertext + GCM tag (16 bytes).
"""

import io
import secrets
from typing import BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import logging

from ..config import (
    DEFAULT_BUFFER_SIZE, ENCRYPTION_MAGIC, KDF_ITERATIONS, KEY_SIZE,
    NONCE_SIZE, SALT_SIZE, TAG_SIZE
)
from ..errors import AuthenticationError, InvalidFormatError

logger = logging.getLogger(__name__)

HEADER_SIZE = len(ENCRYPTION_MAGIC) + SALT_SIZE + NONCE_SIZE


def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a 32-byte AES-256 key from a passphrase using PBKDF2-SHA256"""
    if not passphrase:
        raise ValueError("passphrase must not be empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
        backend=default_backend()
    )
    return kdf.derive(passphrase.encode('utf-8'))


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_SIZE)


def is_encrypted(prefix: bytes) -> bool:
    """Whether data starts with the ZIME envelope magic"""
    return prefix[:len(ENCRYPTION_MAGIC)] == ENCRYPTION_MAGIC


class Encryptor:
    """Incremental envelope encryptor; the header is emitted with the first output"""

    def __init__(self, passphrase: str, iterations: int = KDF_ITERATIONS):
        salt = generate_salt()
        nonce = secrets.token_bytes(NONCE_SIZE)
        key = derive_key(passphrase, salt, iterations)

        cipher = Cipher(algorithms.AES(key), modes.GCM(nonce), backend=default_backend())
        self._ctx = cipher.encryptor()
        self._header = ENCRYPTION_MAGIC + salt + nonce

    def _take_header(self) -> bytes:
        header, self._header = self._header, b""
        return header

    def update(self, data: bytes) -> bytes:
        return self._take_header() + self._ctx.update(data)

    def finalize(self) -> bytes:
        out = self._take_header() + self._ctx.finalize()
        return out + self._ctx.tag


class Decryptor:
    """
    Incremental envelope decryptor.
    The magic is checked before any key derivation; the trailing tag is
    held back and verified in finalize().
    """

    def __init__(self, passphrase: str, iterations: int = KDF_ITERATIONS):
        if not passphrase:
            raise ValueError("passphrase must not be empty")
        self._passphrase = passphrase
        self._iterations = iterations
        self._buffer = bytearray()
        self._ctx = None

    def _check_magic(self):
        seen = bytes(self._buffer[:len(ENCRYPTION_MAGIC)])
        if seen != ENCRYPTION_MAGIC[:len(seen)]:
            raise InvalidFormatError("Invalid encrypted data: missing ZIME header")

    def _start(self):
        salt_end = len(ENCRYPTION_MAGIC) + SALT_SIZE
        salt = bytes(self._buffer[len(ENCRYPTION_MAGIC):salt_end])
        nonce = bytes(self._buffer[salt_end:HEADER_SIZE])
        del self._buffer[:HEADER_SIZE]

        key = derive_key(self._passphrase, salt, self._iterations)
        cipher = Cipher(algorithms.AES(key), modes.GCM(nonce), backend=default_backend())
        self._ctx = cipher.decryptor()

    def update(self, data: bytes) -> bytes:
        self._buffer += data
        if self._ctx is None:
            self._check_magic()
            if len(self._buffer) < HEADER_SIZE:
                return b""
            self._start()

        if len(self._buffer) <= TAG_SIZE:
            return b""
        body = bytes(self._buffer[:-TAG_SIZE])
        del self._buffer[:-TAG_SIZE]
        return self._ctx.update(body)

    def finalize(self) -> bytes:
        if self._ctx is None:
            self._check_magic()
            raise InvalidFormatError("Invalid encrypted data: truncated header")
        if len(self._buffer) != TAG_SIZE:
            raise InvalidFormatError("Invalid encrypted data: truncated tag")
        try:
            return self._ctx.finalize_with_tag(bytes(self._buffer))
        except InvalidTag:
            raise AuthenticationError(
                "Decryption failed: wrong passphrase or tampered data"
            ) from None


def encrypt_stream(source: BinaryIO, destination: BinaryIO, passphrase: str,
                   buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
    """Encrypt source into destination, writing the ZIME header first"""
    encryptor = Encryptor(passphrase)
    destination.write(encryptor.update(b""))
    while chunk := source.read(buffer_size):
        destination.write(encryptor.update(chunk))
    destination.write(encryptor.finalize())


def decrypt_stream(source: BinaryIO, destination: BinaryIO, passphrase: str,
                   buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
    """
    Decrypt source into destination.
    Plaintext is written before the tag is verified; callers that must not
    observe unauthenticated data should decrypt into a scratch stream.
    """
    decryptor = Decryptor(passphrase)
    while chunk := source.read(buffer_size):
        destination.write(decryptor.update(chunk))
    destination.write(decryptor.finalize())


def encrypt_bytes(data: bytes, passphrase: str) -> bytes:
    output = io.BytesIO()
    encrypt_stream(io.BytesIO(data), output, passphrase)
    return output.getvalue()


def decrypt_bytes(data: bytes, passphrase: str) -> bytes:
    """Decrypt an envelope held in memory; nothing is returned unless authenticated"""
    output = io.BytesIO()
    decrypt_stream(io.BytesIO(data), output, passphrase)
    return output.getvalue()
