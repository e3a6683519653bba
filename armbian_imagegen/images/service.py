"""Base image acquisition service.

This module provides the high-level API for obtaining a base OS image:
- acquire_base_image(): cache fast path, download, decompress, fall back
- find_cached_image(): look up a fresh cache entry
- image_lock(): serialise acquisitions of the same cache key

Acquisition never fails because the network or the archive is unhealthy:
it degrades to a stale cache entry or a clearly labelled placeholder.
Cancellation is the exception and always propagates.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from armbian_imagegen.config import get_settings
from armbian_imagegen.errors import ImagegenError, OperationCancelled
from armbian_imagegen.images.fetch import (
    decompress_archive,
    download_file,
    ensure_nonempty,
)
from armbian_imagegen.images.resolver import resolve_image_url
from armbian_imagegen.tools import Deadline, SubprocessToolRunner, ToolRunner
from armbian_imagegen.types import AcquisitionSource, ByteProgressCallback, utcnow

if TYPE_CHECKING:
    from armbian_imagegen.config import Settings
    from armbian_imagegen.configuration.schema import BuildConfiguration

logger = logging.getLogger(__name__)

PLACEHOLDER_HEADER = "ARMBIAN-IMAGEGEN PLACEHOLDER - NOT A BOOTABLE IMAGE"

# Placeholders must stay well below any real image size
PLACEHOLDER_MAX_BYTES = 4096


@dataclass
class AcquisitionResult:
    """Outcome of base image acquisition.

    Attributes:
        image_path: Working copy of the base image inside the work directory.
        source: Where the image came from.
        url: Resolved archive URL, when a download was attempted.
        reason: Why a degraded source was used, if any.
    """

    image_path: Path
    source: AcquisitionSource
    url: str | None = None
    reason: str | None = None

    @property
    def is_placeholder(self) -> bool:
        return self.source == AcquisitionSource.PLACEHOLDER


def normalize_board_name(board_name: str) -> str:
    """Normalise a board name for use in cache file names."""
    return re.sub(r"[^a-z0-9]", "-", board_name.lower())


def cache_filename(board_name: str, release: str) -> str:
    """Return the canonical cache file name for a board and release."""
    return f"Armbian_{release}_{normalize_board_name(board_name)}.img"


@contextmanager
def image_lock(
    cache_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for one cache key.

    Uses a file-based lock to prevent concurrent downloads of the same image.
    The lock file is stored under the cache directory.

    Args:
        cache_dir: Image cache directory.
        key: Cache key (the cache file name).
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir = cache_dir / ".locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"{key.replace('/', '_')}.lock"

    logger.debug("Acquiring lock for %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as e:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(f"Timeout waiting for lock on {key}") from e
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)

        logger.debug("Lock acquired for %s", key)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Lock released for %s", key)


def is_fresh(path: Path, max_age_days: int) -> bool:
    """Whether a cache entry is younger than max_age_days (0 = never stale)."""
    if max_age_days <= 0:
        return True
    age = time.time() - path.stat().st_mtime
    return age <= max_age_days * 86400


def _usable(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


def find_cached_image(
    cache_dir: Path,
    board_name: str,
    release: str,
    max_age_days: int = 0,
) -> Path | None:
    """Return a fresh, non-empty cache entry, or None.

    Args:
        cache_dir: Image cache directory.
        board_name: Board name.
        release: Release codename.
        max_age_days: Freshness limit (0 disables expiry).

    Returns:
        Cache path on hit, None on miss or stale entry.
    """
    path = cache_dir / cache_filename(board_name, release)
    if _usable(path) and is_fresh(path, max_age_days):
        return path
    return None


def _copy_to_work(src: Path, work_dir: Path) -> Path:
    work_dir.mkdir(parents=True, exist_ok=True)
    dest = work_dir / src.name
    shutil.copyfile(src, dest)
    ensure_nonempty(dest, "working-copy")
    return dest


def write_placeholder(
    dest: Path,
    config: BuildConfiguration,
    reason: str,
) -> Path:
    """Write a small text placeholder that identifies itself as non-bootable.

    Args:
        dest: Destination path.
        config: Build configuration the placeholder stands in for.
        reason: Why no real image was available.

    Returns:
        dest.
    """
    lines = [
        PLACEHOLDER_HEADER,
        f"Board: {config.board.name}",
        f"Release: {config.distribution.release}",
        f"Type: {config.distribution.type}",
        f"Generated: {utcnow().isoformat()}",
        f"Reason: {reason[:512]}",
        "",
        "No base image could be obtained. Configuration scripts were still",
        "generated and can be applied to a stock Armbian image by hand.",
        "",
    ]
    content = "\n".join(lines).encode("utf-8")[:PLACEHOLDER_MAX_BYTES - 1]
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(content)
    logger.warning("Wrote placeholder image %s: %s", dest, reason)
    return dest


def _download_into_cache(
    client: httpx.Client,
    config: BuildConfiguration,
    cache_path: Path,
    settings: Settings,
    runner: ToolRunner,
    on_progress: ByteProgressCallback | None,
    deadline: Deadline | None,
) -> str:
    url = resolve_image_url(
        client,
        config.board.name,
        config.distribution.release,
        config.distribution.type,
        desktop=config.distribution.desktop,
        base_url=settings.archive_base_url,
    )

    with tempfile.TemporaryDirectory(dir=cache_path.parent, prefix=".partial-") as tmp:
        tmp_dir = Path(tmp)
        archive = tmp_dir / url.rsplit("/", 1)[-1]
        download_file(
            client,
            url,
            archive,
            timeout=settings.download_timeout,
            on_progress=on_progress,
            deadline=deadline,
        )
        raw = decompress_archive(archive, tmp_dir / cache_path.name, runner, deadline)
        os.replace(raw, cache_path)

    ensure_nonempty(cache_path, "cache")
    logger.info("Cached base image %s", cache_path)
    return url


def acquire_base_image(
    config: BuildConfiguration,
    build_id: str,
    work_dir: Path,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
    runner: ToolRunner | None = None,
    on_progress: ByteProgressCallback | None = None,
    deadline: Deadline | None = None,
) -> AcquisitionResult:
    """Obtain the base image for a build as a working copy in work_dir.

    Order of preference:
    1. A fresh cache entry (checked before any network activity)
    2. A download, decompressed and written into the cache first
    3. A stale cache entry
    4. A placeholder, never written into the cache

    Args:
        config: Build configuration.
        build_id: Build identifier, used in log messages.
        work_dir: Per-build working directory.
        settings: Application settings (uses defaults if not provided).
        client: HTTPX client (creates one if not provided).
        runner: Tool runner for decompression tools.
        on_progress: Optional byte-progress callback for the download.
        deadline: Optional job deadline.

    Returns:
        AcquisitionResult.

    Raises:
        OperationCancelled: If the deadline expires or the job is cancelled.
    """
    if settings is None:
        settings = get_settings()
    if runner is None:
        runner = SubprocessToolRunner()

    board = config.board.name
    release = config.distribution.release
    cache_dir = settings.cache_dir
    cache_dir.mkdir(parents=True, exist_ok=True)
    cache_name = cache_filename(board, release)
    cache_path = cache_dir / cache_name

    with image_lock(cache_dir, cache_name):
        cached = find_cached_image(cache_dir, board, release, settings.cache_max_age_days)
        if cached is not None:
            logger.info("[%s] Using cached image: %s", build_id, cached.name)
            return AcquisitionResult(
                image_path=_copy_to_work(cached, work_dir),
                source=AcquisitionSource.CACHE,
            )

        url: str | None = None
        if settings.offline:
            reason = "offline mode"
            logger.info("[%s] Offline mode, skipping download", build_id)
        else:
            manage_client = client is None
            http_client = httpx.Client() if manage_client else client
            try:
                url = _download_into_cache(
                    http_client,
                    config,
                    cache_path,
                    settings,
                    runner,
                    on_progress,
                    deadline,
                )
                return AcquisitionResult(
                    image_path=_copy_to_work(cache_path, work_dir),
                    source=AcquisitionSource.DOWNLOAD,
                    url=url,
                )
            except OperationCancelled:
                raise
            except (ImagegenError, OSError) as e:
                reason = e.message if isinstance(e, ImagegenError) else str(e)
                logger.warning("[%s] Download failed: %s", build_id, reason)
            finally:
                if manage_client:
                    http_client.close()

        if _usable(cache_path):
            logger.warning("[%s] Using stale cached image %s", build_id, cache_path.name)
            return AcquisitionResult(
                image_path=_copy_to_work(cache_path, work_dir),
                source=AcquisitionSource.CACHE,
                url=url,
                reason=reason,
            )

    placeholder = write_placeholder(work_dir / cache_name, config, reason)
    return AcquisitionResult(
        image_path=placeholder,
        source=AcquisitionSource.PLACEHOLDER,
        url=url,
        reason=reason,
    )


__all__ = [
    "AcquisitionResult",
    "PLACEHOLDER_HEADER",
    "acquire_base_image",
    "cache_filename",
    "find_cached_image",
    "image_lock",
    "is_fresh",
    "normalize_board_name",
    "write_placeholder",
]
