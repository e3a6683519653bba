"""Base image fetch module.

This module handles:
- Streaming download of image archives with progress and cancellation
- Decompression through an ordered chain of strategies
- Non-empty integrity checks for every produced file
- Pruning and sizing helpers for cache management
"""

from __future__ import annotations

import hashlib
import logging
import lzma
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from armbian_imagegen.errors import (
    DecompressionUnavailable,
    IntegrityFailure,
    NetworkFailure,
    ToolError,
)
from armbian_imagegen.tools import Deadline, ToolRunner
from armbian_imagegen.types import ByteProgressCallback

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Timeout for external decompression tools (seconds)
DECOMPRESS_TIMEOUT = 1800

# Chunk size for downloads and copies (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Progress is reported at most every 5 % or every 10 MB, whichever comes first
PROGRESS_PERCENT_STEP = 5
PROGRESS_BYTES_STEP = 10 * 1024 * 1024


@dataclass
class DownloadResult:
    """Result of a base image download."""

    archive_path: Path
    checksum: str
    size_bytes: int


def ensure_nonempty(path: Path, stage: str) -> int:
    """Check that a produced file exists and is not empty.

    Args:
        path: File to check.
        stage: Pipeline stage name, used in the error.

    Returns:
        The file size in bytes.

    Raises:
        IntegrityFailure: If the file is missing or has zero bytes.
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError as e:
        raise IntegrityFailure(str(path), stage) from e
    if size == 0:
        raise IntegrityFailure(str(path), stage)
    return size


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


class _ProgressThrottle:
    """Emits byte progress at coarse granularity."""

    def __init__(self, callback: ByteProgressCallback | None, total: int | None) -> None:
        self._callback = callback
        self._total = total
        self._last_bytes = 0
        self._last_percent = 0

    def update(self, done: int) -> None:
        if self._callback is None:
            return
        emit = done - self._last_bytes >= PROGRESS_BYTES_STEP
        if self._total:
            percent = done * 100 // self._total
            if percent - self._last_percent >= PROGRESS_PERCENT_STEP:
                emit = True
                self._last_percent = percent
        if emit:
            self._last_bytes = done
            self._callback(done, self._total)

    def finish(self, done: int) -> None:
        if self._callback is not None and done != self._last_bytes:
            self._callback(done, self._total)


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    on_progress: ByteProgressCallback | None = None,
    deadline: Deadline | None = None,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with progress reporting.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        on_progress: Optional callback receiving (bytes_done, bytes_total).
        deadline: Optional job deadline, checked between chunks.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        NetworkFailure: If download fails.
        IntegrityFailure: If the server sent zero bytes.
        OperationCancelled: If the deadline expires mid-download.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    if deadline is not None:
        timeout = deadline.timeout(timeout)

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            length = response.headers.get("content-length")
            total = int(length) if length and length.isdigit() else None
            throttle = _ProgressThrottle(on_progress, total)

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if deadline is not None:
                        deadline.check()
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)
                    throttle.update(total_bytes)

            throttle.finish(total_bytes)

    except httpx.HTTPStatusError as e:
        raise NetworkFailure(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise NetworkFailure(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise NetworkFailure(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    ensure_nonempty(dest_path, "download")
    computed_checksum = sha256.hexdigest()

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        archive_path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


class DecompressionStrategy(Protocol):
    """One way of turning an .xz archive into a raw image."""

    name: str

    def attempt(
        self, archive: Path, dest: Path, deadline: Deadline | None = None
    ) -> Path | None:
        """Decompress archive to dest.

        Returns:
            dest on success, or None if this strategy is not applicable or
            failed.
        """
        ...


def _timeout(deadline: Deadline | None, requested: float) -> float:
    return deadline.timeout(requested) if deadline is not None else requested


class XzToolStrategy:
    """Decompress with the system xz binary."""

    name = "xz"

    def __init__(self, runner: ToolRunner) -> None:
        self.runner = runner

    def attempt(
        self, archive: Path, dest: Path, deadline: Deadline | None = None
    ) -> Path | None:
        if archive.suffix != ".xz":
            return None
        # xz writes next to the archive with the suffix stripped
        produced = archive.with_suffix("")
        try:
            self.runner.run(
                "xz",
                ["-d", "-k", "-f", str(archive)],
                timeout=_timeout(deadline, DECOMPRESS_TIMEOUT),
            ).raise_for_status()
        except ToolError as e:
            logger.info("xz decompression unavailable: %s", e.message)
            produced.unlink(missing_ok=True)
            return None
        if not produced.exists():
            logger.info("xz did not produce %s", produced)
            return None
        if produced != dest:
            shutil.move(str(produced), str(dest))
        return dest


class SevenZipStrategy:
    """Decompress with the 7z binary."""

    name = "7z"

    def __init__(self, runner: ToolRunner) -> None:
        self.runner = runner

    def attempt(
        self, archive: Path, dest: Path, deadline: Deadline | None = None
    ) -> Path | None:
        out_dir = dest.parent
        produced = out_dir / archive.with_suffix("").name
        try:
            self.runner.run(
                "7z",
                ["x", "-y", f"-o{out_dir}", str(archive)],
                timeout=_timeout(deadline, DECOMPRESS_TIMEOUT),
            ).raise_for_status()
        except ToolError as e:
            logger.info("7z decompression unavailable: %s", e.message)
            produced.unlink(missing_ok=True)
            return None
        if not produced.exists():
            logger.info("7z did not produce %s", produced)
            return None
        if produced != dest:
            shutil.move(str(produced), str(dest))
        return dest


class LzmaStrategy:
    """Decompress in-process with the lzma module."""

    name = "lzma"

    def attempt(
        self, archive: Path, dest: Path, deadline: Deadline | None = None
    ) -> Path | None:
        try:
            with lzma.open(archive, "rb") as src, dest.open("wb") as out:
                while chunk := src.read(DOWNLOAD_CHUNK_SIZE):
                    if deadline is not None:
                        deadline.check()
                    out.write(chunk)
        except (lzma.LZMAError, EOFError) as e:
            logger.info("lzma decompression failed for %s: %s", archive, e)
            dest.unlink(missing_ok=True)
            return None
        return dest


def default_strategies(runner: ToolRunner) -> list[DecompressionStrategy]:
    """Return the decompression chain: xz tool, 7z tool, in-process lzma."""
    return [XzToolStrategy(runner), SevenZipStrategy(runner), LzmaStrategy()]


def decompress_archive(
    archive: Path,
    dest: Path,
    runner: ToolRunner,
    deadline: Deadline | None = None,
    strategies: list[DecompressionStrategy] | None = None,
) -> Path:
    """Decompress an image archive with the first strategy that works.

    Args:
        archive: Compressed archive (.img.xz).
        dest: Destination path for the raw image.
        runner: Tool runner for the external-tool strategies.
        deadline: Optional job deadline.
        strategies: Strategy chain; defaults to default_strategies(runner).

    Returns:
        dest.

    Raises:
        DecompressionUnavailable: If every strategy was inapplicable or failed.
        IntegrityFailure: If the archive or the output is empty.
    """
    ensure_nonempty(archive, "archive")
    dest.parent.mkdir(parents=True, exist_ok=True)
    chain = strategies if strategies is not None else default_strategies(runner)

    attempted: list[str] = []
    for strategy in chain:
        attempted.append(strategy.name)
        start = time.monotonic()
        if strategy.attempt(archive, dest, deadline) is not None:
            logger.info(
                "Decompressed %s with %s in %.1fs",
                archive.name,
                strategy.name,
                time.monotonic() - start,
            )
            ensure_nonempty(dest, "decompress")
            return dest

    raise DecompressionUnavailable(str(archive), attempted)


def prune_cache(cache_dir: Path, max_age_days: int) -> list[Path]:
    """Remove cached images older than max_age_days.

    Args:
        cache_dir: Image cache directory.
        max_age_days: Age limit in days; 0 removes nothing.

    Returns:
        Paths that were removed.
    """
    removed: list[Path] = []
    if max_age_days <= 0 or not cache_dir.exists():
        return removed

    cutoff = time.time() - max_age_days * 86400
    for path in sorted(cache_dir.glob("*.img")):
        if path.stat().st_mtime < cutoff:
            logger.info("Pruning cached image %s", path)
            path.unlink()
            removed.append(path)
    return removed


def get_cache_size(cache_dir: Path) -> int:
    """Calculate total size of the image cache.

    Args:
        cache_dir: Root cache directory.

    Returns:
        Total size in bytes.
    """
    total = 0
    if cache_dir.exists():
        for path in cache_dir.rglob("*"):
            if path.is_file():
                total += path.stat().st_size
    return total


__all__ = [
    "DecompressionStrategy",
    "DownloadResult",
    "LzmaStrategy",
    "SevenZipStrategy",
    "XzToolStrategy",
    "compute_file_sha256",
    "decompress_archive",
    "default_strategies",
    "download_file",
    "ensure_nonempty",
    "get_cache_size",
    "prune_cache",
]
