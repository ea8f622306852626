"""Transport constants and configuration"""

import uuid
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Union
import logging

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Well-known names under the transport root
MANIFEST_FILE_NAME = "zim-manifest.json"
RESUME_LEDGER_FILE_NAME = "zim-resume.json"
DATA_DIRECTORY_NAME = "zim-data"
PROBE_FILE_NAME = ".zim-test"
TEMP_SUFFIX = ".tmp"
CHUNK_SUFFIX_FORMAT = ".part{index:04d}"

# Envelope / KDF
ENCRYPTION_MAGIC = b"ZIME"
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32  # AES-256
KDF_ITERATIONS = 100_000  # PBKDF2-HMAC-SHA256 work factor

# Stream / chunk sizes
DEFAULT_BUFFER_SIZE = 81920  # 80 KB
SFTP_CHUNK_SIZE = 256 * 1024 * 1024  # 256 MB
FAT32_MAX_FILE_SIZE = 4 * 1024 ** 3 - 1
IMAGE_CHUNK_SIZE = 4 * 1024 ** 3 - 4096

# Socket media
DIRECT_WIFI_PORT = 19850
MAX_FRAME_SIZE = 500 * 1024 * 1024
BLUETOOTH_SERVICE_ID = uuid.UUID("A1B2C3D4-E5F6-7890-ABCD-EF1234567890")
BLUETOOTH_RFCOMM_CHANNEL = 4
BLUETOOTH_BYTES_PER_SECOND = 250 * 1024  # RFCOMM practical ceiling, for ETA only

# SFTP defaults
SFTP_DEFAULT_PORT = 22
SFTP_DEFAULT_BASE_PATH = "/backups/zim"


@dataclass
class TransportConfig:
    """Tunable transport configuration"""
    buffer_size: int = DEFAULT_BUFFER_SIZE
    direct_wifi_port: int = DIRECT_WIFI_PORT
    connect_timeout: float = 30.0
    accept_timeout: Optional[float] = None
    max_frame_size: int = MAX_FRAME_SIZE
    sftp_chunk_size: int = SFTP_CHUNK_SIZE
    bluetooth_channel: int = BLUETOOTH_RFCOMM_CHANNEL
    max_bytes_per_second: Optional[int] = None

    def __post_init__(self):
        if self.buffer_size <= 0:
            raise ConfigError("buffer_size must be positive")
        if self.sftp_chunk_size <= 0:
            raise ConfigError("sftp_chunk_size must be positive")
        if not 0 <= self.direct_wifi_port <= 65535:
            raise ConfigError(f"Invalid port: {self.direct_wifi_port}")
        if not 1 <= self.bluetooth_channel <= 30:
            raise ConfigError(f"Invalid RFCOMM channel: {self.bluetooth_channel}")


@dataclass
class SftpSettings:
    """Connection settings for SFTP transport to a NAS or server"""
    host: str = ""
    port: int = SFTP_DEFAULT_PORT
    username: str = ""
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    remote_base_path: str = SFTP_DEFAULT_BASE_PATH
    encryption_passphrase: Optional[str] = field(default=None, repr=False)
    compress_before_upload: bool = True


def load_config(path: Union[str, Path]) -> TransportConfig:
    """Load transport configuration from a YAML file"""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")

    if 'transport' in data:
        section = data['transport'] or {}
    else:
        section = {k: v for k, v in data.items() if k != 'sftp'}
    known = {f.name for f in fields(TransportConfig)}
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    config = TransportConfig(**section)
    logger.debug(f"Loaded transport config from {path}")
    return config


def load_sftp_settings(path: Union[str, Path]) -> SftpSettings:
    """Load the `sftp` section of a YAML config file"""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    section = data.get('sftp') or {}
    known = {f.name for f in fields(SftpSettings)}
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"Unknown sftp keys: {', '.join(sorted(unknown))}")
    return SftpSettings(**section)
