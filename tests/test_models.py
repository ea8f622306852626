"""Test the transfer data model"""

import json
import pytest
from datetime import timedelta

from zimtransport.errors import InvalidFormatError
from zimtransport.models import (
    MigrationItemSummary, MigrationItemType, TransferManifest, TransferMetadata,
    TransferProgress, TransportMethod, normalize_relative_path
)


@pytest.fixture
def manifest():
    return TransferManifest(
        source_hostname="OLD-PC",
        source_os_version="Windows 10 22H2",
        transport_method=TransportMethod.EXTERNAL_STORAGE,
        items=[
            MigrationItemSummary("Chrome", MigrationItemType.BROWSER_DATA,
                                 estimated_size_bytes=1000),
            MigrationItemSummary("Documents", MigrationItemType.FILE_GROUP,
                                 estimated_size_bytes=5000),
            MigrationItemSummary("Games", MigrationItemType.FILE_GROUP,
                                 is_selected=False, estimated_size_bytes=90000),
        ]
    )


class TestTransferManifest:
    """Test manifest serialization"""

    def test_total_counts_selected_items_only(self, manifest):
        assert manifest.total_estimated_size_bytes == 6000

    def test_items_are_immutable(self, manifest):
        assert isinstance(manifest.items, tuple)

    def test_json_round_trip(self, manifest):
        restored = TransferManifest.from_json(manifest.to_json())

        assert restored == manifest

    def test_json_uses_pascal_case_keys(self, manifest):
        data = json.loads(manifest.to_json())

        assert data['SourceHostname'] == "OLD-PC"
        assert data['TransportMethod'] == "ExternalStorage"
        assert data['Items'][0]['ItemType'] == "BrowserData"

    def test_invalid_json(self):
        with pytest.raises(InvalidFormatError):
            TransferManifest.from_json(b"not json")

    def test_unknown_transport_method(self, manifest):
        data = manifest.to_dict()
        data['TransportMethod'] = "Carrier Pigeon"

        with pytest.raises(InvalidFormatError):
            TransferManifest.from_json(json.dumps(data).encode('utf-8'))


class TestTransferMetadata:
    """Test per-payload metadata"""

    def test_defaults(self):
        metadata = TransferMetadata("docs/a.txt")

        assert metadata.chunk_index == 0
        assert metadata.total_chunks == 1
        assert not metadata.is_compressed
        assert not metadata.is_encrypted

    def test_checksum_lowercased(self):
        assert TransferMetadata("a", checksum="ABCDEF").checksum == "abcdef"

    def test_dict_round_trip(self):
        metadata = TransferMetadata("docs/a.txt", size_bytes=10, checksum="ab",
                                    is_compressed=True)
        assert TransferMetadata.from_dict(metadata.to_dict()) == metadata

    @pytest.mark.parametrize("raw, expected", [
        ("docs/a.txt", "docs/a.txt"),
        ("docs\\sub\\a.txt", "docs/sub/a.txt"),
        ("./docs//a.txt", "docs/a.txt"),
    ])
    def test_path_normalization(self, raw, expected):
        assert normalize_relative_path(raw) == expected

    @pytest.mark.parametrize("raw", ["", "/etc/passwd", "C:\\Windows", "../escape", "a/../../b"])
    def test_path_rejected(self, raw):
        with pytest.raises(ValueError):
            TransferMetadata(raw)


class TestTransferProgress:
    """Test progress snapshots"""

    def test_percent(self):
        progress = TransferProgress("a", overall_bytes_transferred=25, overall_total_bytes=100,
                                    estimated_time_remaining=timedelta(seconds=3))
        assert progress.percent == 25.0

    def test_percent_without_total(self):
        assert TransferProgress("a").percent == 0.0
