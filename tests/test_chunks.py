"""Test chunk split and reassembly"""

import os
import pytest
from types import SimpleNamespace

from zimtransport.errors import TransferNotFoundError
from zimtransport.helpers import chunks


class TestChunkMath:
    """Test chunk counting and naming"""

    @pytest.mark.parametrize("size, chunk_size, expected", [
        (0, 100, 1),
        (-5, 100, 1),
        (1, 100, 1),
        (100, 100, 1),
        (101, 100, 2),
        (250, 100, 3),
    ])
    def test_chunk_count(self, size, chunk_size, expected):
        assert chunks.chunk_count(size, chunk_size) == expected

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            chunks.chunk_count(10, 0)

    def test_chunk_name(self):
        assert chunks.chunk_name("disk.img", 3) == "disk.img.part0003"
        assert chunks.chunk_paths("a", 2) == ["a.part0000", "a.part0001"]

    def test_needs_splitting(self):
        assert not chunks.needs_splitting(4 * 1024 ** 3 - 1)
        assert chunks.needs_splitting(4 * 1024 ** 3)

    def test_find_chunk_set(self):
        present = {"f.part0000", "f.part0001", "f.part0003"}

        assert chunks.find_chunk_set("f", present.__contains__) == 2
        assert chunks.find_chunk_set("g", present.__contains__) == 0
        assert chunks.first_missing_chunk("f", 4, present.__contains__) == 2


class TestSplitAndReassemble:
    """Test chunking files on disk"""

    def test_split_250_bytes(self, temp_dir):
        """Test that 250 bytes at chunk size 100 give chunks of 100, 100 and 50"""
        data = os.urandom(250)
        source = temp_dir / "payload.bin"
        source.write_bytes(data)

        paths = chunks.split(source, chunk_size=100, destination_dir=temp_dir / "out")

        assert [os.path.getsize(p) for p in paths] == [100, 100, 50]
        with chunks.reassemble(paths) as reader:
            assert reader.read() == data

    def test_split_empty_file(self, temp_dir):
        source = temp_dir / "empty.bin"
        source.write_bytes(b"")

        paths = chunks.split(source, chunk_size=100)

        assert len(paths) == 1
        assert os.path.getsize(paths[0]) == 0
        with chunks.reassemble(paths) as reader:
            assert reader.read() == b""

    def test_split_exact_multiple(self, temp_dir):
        """Test that 300 bytes at chunk size 100 give three full chunks and no empty tail"""
        data = os.urandom(300)
        source = temp_dir / "payload.bin"
        source.write_bytes(data)

        paths = chunks.split(source, chunk_size=100, destination_dir=temp_dir / "out")

        assert [os.path.getsize(p) for p in paths] == [100, 100, 100]
        with chunks.reassemble(paths) as reader:
            assert reader.read() == data

    def test_split_missing_source(self, temp_dir):
        with pytest.raises(TransferNotFoundError):
            chunks.split(temp_dir / "nope.bin", chunk_size=100)

    def test_missing_chunk_named_before_output(self, temp_dir):
        data = os.urandom(250)
        source = temp_dir / "payload.bin"
        source.write_bytes(data)
        paths = chunks.split(source, chunk_size=100)
        os.remove(paths[1])

        with pytest.raises(TransferNotFoundError) as exc_info:
            chunks.reassemble(paths)

        assert exc_info.value.missing_index == 1
        assert exc_info.value.path == paths[1]

    def test_delete_after_read(self, temp_dir):
        source = temp_dir / "payload.bin"
        source.write_bytes(os.urandom(250))
        paths = chunks.split(source, chunk_size=100)

        with chunks.reassemble(paths, delete_after_read=True) as reader:
            reader.read()

        assert not any(os.path.exists(p) for p in paths)

    def test_partial_read_keeps_chunks(self, temp_dir):
        source = temp_dir / "payload.bin"
        source.write_bytes(os.urandom(250))
        paths = chunks.split(source, chunk_size=100)

        with chunks.reassemble(paths, delete_after_read=True) as reader:
            reader.read(10)

        assert all(os.path.exists(p) for p in paths)

    def test_reassemble_to_file(self, temp_dir):
        data = os.urandom(1000)
        source = temp_dir / "payload.bin"
        source.write_bytes(data)
        chunks.split(source, chunk_size=300)

        output = temp_dir / "restored.bin"
        written = chunks.reassemble_to_file(output, str(source), 4)

        assert written == 1000
        assert output.read_bytes() == data


class TestFat32Detection:
    """Test volume type lookup through psutil"""

    def test_longest_mount_wins(self, monkeypatch, temp_dir):
        partitions = [
            SimpleNamespace(mountpoint="/", fstype="ext4"),
            SimpleNamespace(mountpoint=os.path.realpath(temp_dir), fstype="vfat"),
        ]
        monkeypatch.setattr(chunks.psutil, "disk_partitions", lambda all=False: partitions)

        assert chunks.is_fat32(temp_dir / "zim-data")
        assert not chunks.is_fat32("/")

    def test_lookup_failure(self, monkeypatch, temp_dir):
        def fail(all=False):
            raise OSError("no mounts")
        monkeypatch.setattr(chunks.psutil, "disk_partitions", fail)

        assert not chunks.is_fat32(temp_dir)
