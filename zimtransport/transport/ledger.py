"""Resume ledger: persisted record of committed transfers"""

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Hashable, Optional, Set
import logging

from .. import config
from ..errors import InvalidFormatError

logger = logging.getLogger(__name__)

_update_locks: Dict[Hashable, threading.Lock] = {}
_update_locks_guard = threading.Lock()


def update_lock(key: Hashable) -> threading.Lock:
    """
    Process-wide lock serializing read-merge-write cycles on one ledger.
    Ledger updates run in executor threads, so this is a thread lock
    shared by every transport instance pointing at the same ledger.
    """
    with _update_locks_guard:
        lock = _update_locks.get(key)
        if lock is None:
            lock = _update_locks[key] = threading.Lock()
        return lock


def unique_temp_name(path: str) -> str:
    """Temp name for rewriting a shared document (`<path>.<hex>.tmp`)"""
    return f"{path}.{uuid.uuid4().hex}{config.TEMP_SUFFIX}"


@dataclass
class PayloadLayout:
    """How a committed payload is stored on the medium"""
    compressed: bool = False
    encrypted: bool = False
    chunks: int = 0  # 0 = single file

    def to_dict(self) -> dict:
        return {'Compressed': self.compressed, 'Encrypted': self.encrypted, 'Chunks': self.chunks}

    @classmethod
    def from_dict(cls, data: dict) -> 'PayloadLayout':
        return cls(
            compressed=bool(data.get('Compressed', False)),
            encrypted=bool(data.get('Encrypted', False)),
            chunks=int(data.get('Chunks', 0))
        )


@dataclass
class ResumeLedger:
    """
    Tracks payloads durably committed at the destination.
    Entries are added only after commit; the whole document is rewritten
    after every new entry.
    """
    completed_files: Set[str] = field(default_factory=set)
    checksums: Dict[str, str] = field(default_factory=dict)
    layouts: Dict[str, PayloadLayout] = field(default_factory=dict)
    last_updated_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_completed(self, name: str, checksum: Optional[str]) -> bool:
        """Whether `name` was committed with the same checksum"""
        if not checksum or name not in self.completed_files:
            return False
        recorded = self.checksums.get(name)
        return recorded is not None and recorded.lower() == checksum.lower()

    def record(self, name: str, checksum: str, layout: Optional[PayloadLayout] = None):
        self.completed_files.add(name)
        self.checksums[name] = checksum
        if layout is not None:
            self.layouts[name] = layout
        self.last_updated_utc = datetime.now(timezone.utc)

    def record_chunk(self, chunk: str, checksum: str):
        """Record one committed chunk; it does not count as a completed file"""
        self.checksums[chunk] = checksum
        self.last_updated_utc = datetime.now(timezone.utc)

    def chunk_matches(self, chunk: str, checksum: str) -> bool:
        recorded = self.checksums.get(chunk)
        return recorded is not None and recorded.lower() == checksum.lower()

    def layout_for(self, name: str) -> Optional[PayloadLayout]:
        return self.layouts.get(name)

    def to_json(self) -> bytes:
        data = {
            'CompletedFiles': sorted(self.completed_files),
            'Checksums': self.checksums,
            'Layouts': {k: v.to_dict() for k, v in self.layouts.items()},
            'LastUpdatedUtc': self.last_updated_utc.isoformat()
        }
        return json.dumps(data, indent=2).encode('utf-8')

    @classmethod
    def from_json(cls, raw: bytes) -> 'ResumeLedger':
        try:
            data = json.loads(raw.decode('utf-8'))
            if not isinstance(data, dict):
                raise ValueError("ledger must be a JSON object")
            ledger = cls(
                completed_files=set(data.get('CompletedFiles') or []),
                checksums=dict(data.get('Checksums') or {}),
                layouts={
                    k: PayloadLayout.from_dict(v)
                    for k, v in (data.get('Layouts') or {}).items()
                }
            )
            updated = data.get('LastUpdatedUtc')
            if updated:
                ledger.last_updated_utc = datetime.fromisoformat(updated)
            return ledger
        except (UnicodeDecodeError, ValueError, TypeError, AttributeError) as e:
            raise InvalidFormatError(f"Corrupt resume ledger: {e}") from e
