"""Transport error hierarchy"""

from typing import Optional


class TransportError(Exception):
    """Base class for all transport errors"""


class TransferNotFoundError(TransportError, FileNotFoundError):
    """Committed payload, chunk or manifest is missing"""

    def __init__(self, message: str, path: Optional[str] = None,
                 missing_index: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.missing_index = missing_index

    def __str__(self):
        return self.args[0] if self.args else ""


class InvalidFormatError(TransportError, ValueError):
    """Data is not in the expected envelope/format"""


class AuthenticationError(TransportError):
    """Encrypted payload failed authentication (wrong passphrase or tampering)"""


class PassphraseRequiredError(AuthenticationError):
    """Payload is encrypted but no passphrase was configured"""


class CorruptPayloadError(TransportError):
    """Compressed payload is truncated or damaged"""


class ChecksumMismatchError(TransportError):
    """Plaintext checksum does not match the expected value"""

    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(f"Checksum mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class TransferCancelledError(TransportError):
    """Transfer was cancelled by the caller"""


class ProtocolError(TransportError):
    """Peer sent an unexpected or malformed frame"""


class ConnectionClosedError(TransportError, ConnectionError):
    """Peer closed the connection mid-frame"""


class TransferAbortedError(TransportError):
    """Sender aborted the current item"""


class NotConnectedError(TransportError):
    """No connection to the peer could be established"""


class ConfigError(TransportError):
    """Invalid configuration"""
