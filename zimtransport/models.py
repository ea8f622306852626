"""Transfer data model: manifest, per-payload metadata, progress"""

import json
import posixpath
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidFormatError


class TransportMethod(Enum):
    """How data is moved between the source and destination machines"""
    EXTERNAL_STORAGE = "ExternalStorage"
    NETWORK_SHARE = "NetworkShare"
    SFTP = "Sftp"
    DIRECT_WIFI = "DirectWiFi"
    BLUETOOTH = "Bluetooth"


class MigrationItemType(Enum):
    """Kind of item in the migration checklist"""
    APPLICATION = "Application"
    USER_PROFILE = "UserProfile"
    SYSTEM_SETTING = "SystemSetting"
    FILE_GROUP = "FileGroup"
    BROWSER_DATA = "BrowserData"
    EMAIL_DATA = "EmailData"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class MigrationItemSummary:
    """Summary of a single item selected for migration"""
    display_name: str
    item_type: MigrationItemType
    is_selected: bool = True
    estimated_size_bytes: int = 0
    item_id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'Id': self.item_id,
            'DisplayName': self.display_name,
            'ItemType': self.item_type.value,
            'IsSelected': self.is_selected,
            'EstimatedSizeBytes': self.estimated_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MigrationItemSummary':
        return cls(
            display_name=data.get('DisplayName', ''),
            item_type=MigrationItemType(data['ItemType']),
            is_selected=bool(data.get('IsSelected', True)),
            estimated_size_bytes=int(data.get('EstimatedSizeBytes', 0)),
            item_id=data.get('Id') or _new_id(),
        )


@dataclass(frozen=True)
class TransferManifest:
    """
    Describes what is being transferred and how.
    Produced once by the source, consumed once by the destination.
    """
    source_hostname: str
    source_os_version: str
    transport_method: TransportMethod
    items: Tuple[MigrationItemSummary, ...] = ()
    manifest_id: str = field(default_factory=_new_id)
    created_utc: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        # Accept any iterable of items but store an immutable tuple
        object.__setattr__(self, 'items', tuple(self.items))

    @property
    def total_estimated_size_bytes(self) -> int:
        """Total estimated size of all selected items"""
        return sum(i.estimated_size_bytes for i in self.items if i.is_selected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ManifestId': self.manifest_id,
            'CreatedUtc': self.created_utc.isoformat(),
            'SourceHostname': self.source_hostname,
            'SourceOsVersion': self.source_os_version,
            'TransportMethod': self.transport_method.value,
            'Items': [i.to_dict() for i in self.items],
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferManifest':
        created = data.get('CreatedUtc')
        return cls(
            source_hostname=data.get('SourceHostname', ''),
            source_os_version=data.get('SourceOsVersion', ''),
            transport_method=TransportMethod(data['TransportMethod']),
            items=tuple(MigrationItemSummary.from_dict(i) for i in data.get('Items', [])),
            manifest_id=data.get('ManifestId') or _new_id(),
            created_utc=datetime.fromisoformat(created) if created else _utcnow(),
        )

    @classmethod
    def from_json(cls, raw: bytes) -> 'TransferManifest':
        try:
            data = json.loads(raw.decode('utf-8'))
            return cls.from_dict(data)
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise InvalidFormatError(f"Failed to deserialize transfer manifest: {e}") from e


def normalize_relative_path(relative_path: str) -> str:
    """Normalize a logical path to '/' separators and reject escapes"""
    if not relative_path:
        raise ValueError("relative_path must not be empty")

    path = relative_path.replace('\\', '/')
    if path.startswith('/') or (len(path) > 1 and path[1] == ':'):
        raise ValueError(f"relative_path must be relative: {relative_path}")

    parts = [p for p in path.split('/') if p not in ('', '.')]
    if not parts or '..' in parts:
        raise ValueError(f"Invalid relative_path: {relative_path}")
    return posixpath.join(*parts)


@dataclass
class TransferMetadata:
    """Metadata about a file or data chunk being transferred"""
    relative_path: str
    size_bytes: int = 0
    checksum: Optional[str] = None
    chunk_index: int = 0
    total_chunks: int = 1
    # Written by the transport to record what it actually applied
    is_compressed: bool = False
    is_encrypted: bool = False

    def __post_init__(self):
        self.relative_path = normalize_relative_path(self.relative_path)
        if self.checksum:
            self.checksum = self.checksum.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'RelativePath': self.relative_path,
            'SizeBytes': self.size_bytes,
            'Checksum': self.checksum,
            'ChunkIndex': self.chunk_index,
            'TotalChunks': self.total_chunks,
            'IsCompressed': self.is_compressed,
            'IsEncrypted': self.is_encrypted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferMetadata':
        return cls(
            relative_path=data['RelativePath'],
            size_bytes=int(data.get('SizeBytes', 0)),
            checksum=data.get('Checksum'),
            chunk_index=int(data.get('ChunkIndex', 0)),
            total_chunks=int(data.get('TotalChunks', 1)),
            is_compressed=bool(data.get('IsCompressed', False)),
            is_encrypted=bool(data.get('IsEncrypted', False)),
        )


@dataclass
class TransferProgress:
    """Progress snapshot reported from a copy loop"""
    item_name: str
    item_index: int = 1
    total_items: int = 1
    item_bytes_transferred: int = 0
    item_total_bytes: int = 0
    overall_bytes_transferred: int = 0
    overall_total_bytes: int = 0
    bytes_per_second: int = 0
    estimated_time_remaining: Optional[timedelta] = None

    @property
    def percent(self) -> float:
        if self.overall_total_bytes <= 0:
            return 0.0
        return min(100.0, self.overall_bytes_transferred * 100.0 / self.overall_total_bytes)
