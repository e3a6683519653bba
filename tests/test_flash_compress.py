"""Tests for transfer compression helpers."""

import gzip
import os

import pytest

from armbian_imagegen.errors import IntegrityFailure
from armbian_imagegen.flash.compress import (
    compress_file,
    compressed_path_for,
    decompress_file,
    decompressed_copy,
    find_fresh_compressed,
    temporary_path_for,
)


class TestCompressFile:
    """Tests for compress_file and decompress_file."""

    @pytest.mark.parametrize("payload", [b"", b"x", os.urandom(3000)])
    def test_round_trip(self, tmp_path, payload):
        """Compression is lossless, including empty and one-byte files."""
        src = tmp_path / "a.img"
        src.write_bytes(payload)

        compressed = compress_file(src)
        restored = decompress_file(compressed, tmp_path / "b.img")

        assert compressed == tmp_path / "a.img.gz"
        assert restored.read_bytes() == payload

    def test_progress(self, tmp_path):
        """Progress reports bytes read against the file size."""
        src = tmp_path / "a.img"
        src.write_bytes(b"z" * 1000)
        progress = []

        compress_file(src, on_progress=lambda done, total: progress.append((done, total)))

        assert progress[-1] == (1000, 1000)

    def test_output_is_gzip(self, tmp_path):
        src = tmp_path / "a.img"
        src.write_bytes(b"data")
        dest = compress_file(src, tmp_path / "custom.gz")

        assert gzip.decompress(dest.read_bytes()) == b"data"

    def test_interrupted_leaves_no_partial_file(self, tmp_path):
        """An interrupted compression leaves neither the target nor a partial file."""
        src = tmp_path / "a.img"
        src.write_bytes(b"z" * 1000)

        def interrupt(done, total):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            compress_file(src, on_progress=interrupt)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.img"]
        assert find_fresh_compressed(src) is None


class TestFreshCompressed:
    """Tests for find_fresh_compressed."""

    def test_newer_copy_reused(self, tmp_path):
        """A .gz newer than the image is reused."""
        image = tmp_path / "a.img"
        image.write_bytes(b"data")
        os.utime(image, (1000, 1000))
        compress_file(image)

        assert find_fresh_compressed(image) == compressed_path_for(image)

    def test_older_copy_ignored(self, tmp_path):
        """A .gz older than the image is stale."""
        image = tmp_path / "a.img"
        image.write_bytes(b"data")
        gz = compress_file(image)
        os.utime(gz, (1000, 1000))

        assert find_fresh_compressed(image) is None

    def test_missing(self, tmp_path):
        image = tmp_path / "a.img"
        image.write_bytes(b"data")
        assert find_fresh_compressed(image) is None


class TestDecompressedCopy:
    """Tests for decompressed_copy."""

    def test_temporary_path(self, tmp_path):
        assert temporary_path_for(tmp_path / "a.img.gz") == tmp_path / "a.img.tmp"

    def test_removed_on_error(self, tmp_path):
        """The temporary file is deleted when the block raises."""
        image = tmp_path / "a.img"
        image.write_bytes(b"data")
        gz = compress_file(image)

        with pytest.raises(RuntimeError):
            with decompressed_copy(gz) as tmp:
                assert tmp.read_bytes() == b"data"
                raise RuntimeError("write failed")

        assert not (tmp_path / "a.img.tmp").exists()

    def test_empty_payload_rejected(self, tmp_path):
        """An empty decompressed file is never handed out."""
        image = tmp_path / "a.img"
        image.write_bytes(b"")
        gz = compress_file(image)

        with pytest.raises(IntegrityFailure):
            with decompressed_copy(gz):
                pytest.fail("block must not run for an empty payload")

        assert not (tmp_path / "a.img.tmp").exists()

    def test_truncated_archive(self, tmp_path):
        """A truncated archive raises and leaves no temporary file."""
        image = tmp_path / "a.img"
        image.write_bytes(os.urandom(4096))
        gz = compress_file(image)
        gz.write_bytes(gz.read_bytes()[: gz.stat().st_size // 2])

        with pytest.raises(EOFError):
            with decompressed_copy(gz):
                pytest.fail("block must not run for a truncated archive")

        assert not (tmp_path / "a.img.tmp").exists()
