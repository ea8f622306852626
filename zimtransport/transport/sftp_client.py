"""Minimal SFTP primitive set used by SftpTransport, with a paramiko implementation"""

import stat
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import BinaryIO, Callable, List, Optional
import logging

import paramiko

from ..config import SFTP_DEFAULT_PORT, SftpSettings

logger = logging.getLogger(__name__)


@dataclass
class SftpFileInfo:
    """A remote file or directory"""
    name: str
    full_name: str
    is_directory: bool
    length: int
    last_write_time_utc: datetime


class SftpClient(ABC):
    """Blocking SFTP primitives; SftpTransport runs them off the event loop"""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def connect(self):
        ...

    @abstractmethod
    def disconnect(self):
        ...

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    def create_directory(self, path: str):
        ...

    @abstractmethod
    def delete_file(self, path: str):
        ...

    @abstractmethod
    def list_directory(self, path: str) -> List[SftpFileInfo]:
        ...

    @abstractmethod
    def upload_file(self, source: BinaryIO, path: str,
                    callback: Optional[Callable[[int], None]] = None):
        ...

    @abstractmethod
    def download_file(self, path: str, destination: BinaryIO,
                      callback: Optional[Callable[[int], None]] = None):
        ...

    @abstractmethod
    def rename_file(self, old_path: str, new_path: str):
        ...

    @abstractmethod
    def get_file_size(self, path: str) -> int:
        ...

    def close(self):
        """Disconnect if connected; safe to call repeatedly"""
        if self.is_connected:
            self.disconnect()


class ParamikoSftpClient(SftpClient):
    """SftpClient over paramiko with password and/or private key authentication"""

    def __init__(self, host: str, port: int = SFTP_DEFAULT_PORT, username: str = "",
                 password: Optional[str] = None,
                 private_key_path: Optional[str] = None,
                 private_key_passphrase: Optional[str] = None,
                 timeout: float = 30.0):
        if not password and not private_key_path:
            raise ValueError(
                "At least one authentication method (password or private key) must be provided"
            )
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self._key_path = private_key_path
        self._key_passphrase = private_key_passphrase
        self.timeout = timeout
        self._ssh: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    @classmethod
    def from_settings(cls, settings: SftpSettings) -> 'ParamikoSftpClient':
        return cls(
            host=settings.host,
            port=settings.port,
            username=settings.username,
            password=settings.password,
            private_key_path=settings.private_key_path,
            private_key_passphrase=settings.private_key_passphrase
        )

    @property
    def is_connected(self) -> bool:
        if self._ssh is None or self._sftp is None:
            return False
        transport = self._ssh.get_transport()
        return transport is not None and transport.is_active()

    def connect(self):
        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self._password,
            key_filename=self._key_path,
            passphrase=self._key_passphrase,
            timeout=self.timeout,
            look_for_keys=False,
            allow_agent=False
        )
        self._ssh = ssh
        self._sftp = ssh.open_sftp()
        logger.info(f"Connected to {self.username}@{self.host}:{self.port}")

    def disconnect(self):
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None
        logger.debug(f"Disconnected from {self.host}")

    def exists(self, path: str) -> bool:
        try:
            self._sftp.stat(path)
            return True
        except FileNotFoundError:
            return False

    def create_directory(self, path: str):
        self._sftp.mkdir(path)

    def delete_file(self, path: str):
        self._sftp.remove(path)

    def list_directory(self, path: str) -> List[SftpFileInfo]:
        items = []
        for attr in self._sftp.listdir_attr(path):
            if attr.filename in ('.', '..'):
                continue
            items.append(SftpFileInfo(
                name=attr.filename,
                full_name=path.rstrip('/') + '/' + attr.filename,
                is_directory=stat.S_ISDIR(attr.st_mode or 0),
                length=attr.st_size or 0,
                last_write_time_utc=datetime.fromtimestamp(attr.st_mtime or 0, timezone.utc)
            ))
        return items

    def upload_file(self, source: BinaryIO, path: str,
                    callback: Optional[Callable[[int], None]] = None):
        wrapped = (lambda sent, total: callback(sent)) if callback else None
        self._sftp.putfo(source, path, callback=wrapped, confirm=True)

    def download_file(self, path: str, destination: BinaryIO,
                      callback: Optional[Callable[[int], None]] = None):
        wrapped = (lambda received, total: callback(received)) if callback else None
        self._sftp.getfo(path, destination, callback=wrapped)

    def rename_file(self, old_path: str, new_path: str):
        # Plain SFTP rename refuses to overwrite; posix-rename@openssh.com replaces
        try:
            self._sftp.posix_rename(old_path, new_path)
        except IOError:
            if self.exists(new_path):
                self._sftp.remove(new_path)
            self._sftp.rename(old_path, new_path)

    def get_file_size(self, path: str) -> int:
        return self._sftp.stat(path).st_size
