"""Tests for base image fetch module.

These tests use mocked HTTP responses and a fake tool runner to test
downloading, decompression strategies, integrity checks and cache pruning.
"""

import hashlib
import lzma
import os
import time

import httpx
import pytest
import respx

from armbian_imagegen.errors import (
    DecompressionUnavailable,
    IntegrityFailure,
    NetworkFailure,
    OperationCancelled,
)
from armbian_imagegen.images.fetch import (
    LzmaStrategy,
    SevenZipStrategy,
    XzToolStrategy,
    compute_file_sha256,
    decompress_archive,
    download_file,
    ensure_nonempty,
    get_cache_size,
    prune_cache,
)
from armbian_imagegen.tools import Deadline

URL = "https://dl.example.com/rock-5b/archive/Armbian_rock-5b_bookworm_minimal.img.xz"


class TestEnsureNonempty:
    """Tests for ensure_nonempty."""

    def test_returns_size(self, tmp_path):
        """Non-empty files pass and report their size."""
        path = tmp_path / "a.img"
        path.write_bytes(b"abc")
        assert ensure_nonempty(path, "test") == 3

    def test_zero_bytes(self, tmp_path):
        """Zero-byte files raise IntegrityFailure naming the stage."""
        path = tmp_path / "empty.img"
        path.touch()

        with pytest.raises(IntegrityFailure) as exc_info:
            ensure_nonempty(path, "download")
        assert exc_info.value.stage == "download"
        assert exc_info.value.code == "integrity_failure"

    def test_missing(self, tmp_path):
        """Missing files are integrity failures too."""
        with pytest.raises(IntegrityFailure):
            ensure_nonempty(tmp_path / "nope.img", "cache")


class TestComputeFileSha256:
    """Tests for compute_file_sha256."""

    def test_compute_checksum(self, tmp_path):
        """Should compute correct SHA256 checksum."""
        path = tmp_path / "test.bin"
        path.write_bytes(b"Hello, World!")

        assert compute_file_sha256(path) == hashlib.sha256(b"Hello, World!").hexdigest()


class TestDownloadFile:
    """Tests for download_file."""

    @respx.mock
    def test_download_success(self, tmp_path):
        """Should download file and compute checksum."""
        content = b"x" * 1000
        respx.get(URL).mock(
            return_value=httpx.Response(
                200, content=content, headers={"content-length": str(len(content))}
            )
        )
        progress = []

        with httpx.Client() as client:
            result = download_file(
                client, URL, tmp_path / "a.img.xz", on_progress=lambda d, t: progress.append((d, t))
            )

        assert result.archive_path.read_bytes() == content
        assert result.size_bytes == 1000
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert progress[-1] == (1000, 1000)

    @respx.mock
    def test_http_error(self, tmp_path):
        """HTTP errors map to NetworkFailure with code http_error."""
        respx.get(URL).mock(return_value=httpx.Response(404))

        with httpx.Client() as client:
            with pytest.raises(NetworkFailure) as exc_info:
                download_file(client, URL, tmp_path / "a.img.xz")
        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout(self, tmp_path):
        """Timeouts map to code timeout."""
        respx.get(URL).mock(side_effect=httpx.ReadTimeout("slow"))

        with httpx.Client() as client:
            with pytest.raises(NetworkFailure) as exc_info:
                download_file(client, URL, tmp_path / "a.img.xz")
        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_empty_body(self, tmp_path):
        """A zero-byte download is an integrity failure."""
        respx.get(URL).mock(return_value=httpx.Response(200, content=b""))

        with httpx.Client() as client:
            with pytest.raises(IntegrityFailure):
                download_file(client, URL, tmp_path / "a.img.xz")

    @respx.mock
    def test_cancelled_deadline(self, tmp_path):
        """A cancelled job stops the download before any request."""
        deadline = Deadline(60)
        deadline.cancel()

        with httpx.Client() as client:
            with pytest.raises(OperationCancelled):
                download_file(client, URL, tmp_path / "a.img.xz", deadline=deadline)


class TestDecompressionStrategies:
    """Tests for the individual decompression strategies."""

    def test_xz_tool_success(self, tmp_path, fake_runner):
        """xz output is moved to the destination."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(b"compressed")
        fake_runner.on(
            "xz", "-d", effect=lambda args: (tmp_path / "image.img").write_bytes(b"raw")
        )
        dest = tmp_path / "out" / "final.img"
        dest.parent.mkdir()

        assert XzToolStrategy(fake_runner).attempt(archive, dest) == dest
        assert dest.read_bytes() == b"raw"

    def test_xz_tool_missing(self, tmp_path, fake_runner):
        """A failing xz is not applicable."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(b"compressed")
        fake_runner.on("xz", exit_code=127, stderr="xz: not found")

        assert XzToolStrategy(fake_runner).attempt(archive, tmp_path / "x.img") is None

    def test_xz_tool_skips_other_suffix(self, tmp_path, fake_runner):
        """Only .xz archives are handled."""
        archive = tmp_path / "image.img.7z"
        archive.write_bytes(b"compressed")

        assert XzToolStrategy(fake_runner).attempt(archive, tmp_path / "x.img") is None
        assert fake_runner.calls == []

    def test_seven_zip_without_output(self, tmp_path, fake_runner):
        """7z succeeding without producing a file is not applicable."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(b"compressed")

        assert SevenZipStrategy(fake_runner).attempt(archive, tmp_path / "x.img") is None

    def test_lzma_in_process(self, tmp_path):
        """In-process lzma decompresses real .xz data."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(lzma.compress(b"raw image bytes"))
        dest = tmp_path / "image.img"

        assert LzmaStrategy().attempt(archive, dest) == dest
        assert dest.read_bytes() == b"raw image bytes"

    def test_lzma_corrupt(self, tmp_path):
        """Corrupt data leaves no partial output."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(b"not xz at all")
        dest = tmp_path / "image.img"

        assert LzmaStrategy().attempt(archive, dest) is None
        assert not dest.exists()


class TestDecompressArchive:
    """Tests for decompress_archive."""

    def test_falls_through_to_lzma(self, tmp_path, failing_runner):
        """External tools failing falls back to in-process lzma."""
        runner = failing_runner
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(lzma.compress(b"payload"))
        dest = tmp_path / "out.img"

        assert decompress_archive(archive, dest, runner) == dest
        assert dest.read_bytes() == b"payload"
        assert [c.name for c in runner.calls] == ["xz", "7z"]

    def test_all_strategies_fail(self, tmp_path, fake_runner):
        """Exhausting the chain raises DecompressionUnavailable."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(b"garbage")

        with pytest.raises(DecompressionUnavailable) as exc_info:
            decompress_archive(archive, tmp_path / "out.img", fake_runner, strategies=[LzmaStrategy()])
        assert exc_info.value.attempted == ["lzma"]

    def test_empty_archive(self, tmp_path, fake_runner):
        """An empty archive is rejected before any strategy runs."""
        archive = tmp_path / "image.img.xz"
        archive.touch()

        with pytest.raises(IntegrityFailure):
            decompress_archive(archive, tmp_path / "out.img", fake_runner)
        assert fake_runner.calls == []

    def test_empty_output(self, tmp_path):
        """A strategy producing zero bytes is an integrity failure."""
        archive = tmp_path / "image.img.xz"
        archive.write_bytes(lzma.compress(b""))

        with pytest.raises(IntegrityFailure):
            decompress_archive(archive, tmp_path / "out.img", None, strategies=[LzmaStrategy()])


class TestCacheHelpers:
    """Tests for prune_cache and get_cache_size."""

    def test_prune_old_images(self, tmp_path):
        """Images older than the limit are removed."""
        old = tmp_path / "old.img"
        new = tmp_path / "new.img"
        old.write_bytes(b"o")
        new.write_bytes(b"n")
        past = time.time() - 10 * 86400
        os.utime(old, (past, past))

        removed = prune_cache(tmp_path, max_age_days=5)

        assert removed == [old]
        assert new.exists()

    def test_prune_disabled(self, tmp_path):
        """A zero age limit removes nothing."""
        (tmp_path / "a.img").write_bytes(b"a")
        assert prune_cache(tmp_path, 0) == []

    def test_cache_size(self, tmp_path):
        """Cache size sums every file."""
        (tmp_path / "a.img").write_bytes(b"12345")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"123")

        assert get_cache_size(tmp_path) == 8
        assert get_cache_size(tmp_path / "missing") == 0
