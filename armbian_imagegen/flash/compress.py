"""Transfer compression helpers.

This module handles:
- gzip compression of large images before transfer, with byte progress
- Reuse of an existing compressed copy newer than its source
- Scoped decompression to a temporary file that is always removed
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from armbian_imagegen.images.fetch import ensure_nonempty
from armbian_imagegen.types import ByteProgressCallback

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 6

CHUNK_SIZE = 1024 * 1024  # 1 MB


def compressed_path_for(image: Path) -> Path:
    """Return the conventional compressed path for an image."""
    return image.with_name(image.name + ".gz")


def find_fresh_compressed(image: Path) -> Path | None:
    """Return an existing compressed copy whose mtime is newer than the image."""
    candidate = compressed_path_for(image)
    try:
        if candidate.stat().st_mtime > image.stat().st_mtime:
            return candidate
    except FileNotFoundError:
        return None
    return None


def compress_file(
    src: Path,
    dest: Path | None = None,
    on_progress: ByteProgressCallback | None = None,
    level: int = COMPRESSION_LEVEL,
) -> Path:
    """gzip-compress a file.

    Output goes to `<dest>.part` and is renamed into place once complete,
    so an interrupted run never leaves a partial file at dest.

    Args:
        src: Source file.
        dest: Destination; defaults to `<src>.gz`.
        on_progress: Optional callback receiving (bytes_read, total_bytes).
        level: gzip compression level.

    Returns:
        The compressed file path.
    """
    if dest is None:
        dest = compressed_path_for(src)
    total = src.stat().st_size
    done = 0
    part = dest.with_name(dest.name + ".part")

    try:
        with src.open("rb") as f_in, gzip.open(part, "wb", compresslevel=level) as f_out:
            while chunk := f_in.read(CHUNK_SIZE):
                f_out.write(chunk)
                done += len(chunk)
                if on_progress is not None:
                    on_progress(done, total)
        os.replace(part, dest)
    except BaseException:
        part.unlink(missing_ok=True)
        raise

    logger.info(
        "Compressed %s (%d -> %d bytes)", src.name, total, dest.stat().st_size
    )
    return dest


def decompress_file(src: Path, dest: Path) -> Path:
    """Decompress a gzip file.

    Args:
        src: gzip file.
        dest: Destination file.

    Returns:
        dest.
    """
    try:
        with gzip.open(src, "rb") as f_in, dest.open("wb") as f_out:
            shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return dest


def temporary_path_for(compressed: Path) -> Path:
    """Return the temporary decompression path for a compressed image."""
    name = compressed.name[: -len(".gz")] if compressed.name.endswith(".gz") else compressed.name
    return compressed.with_name(name + ".tmp")


@contextmanager
def decompressed_copy(compressed: Path) -> Iterator[Path]:
    """Decompress to a temporary file for the duration of the block.

    The temporary file is deleted on every exit path.

    Yields:
        Path of the decompressed file.

    Raises:
        IntegrityFailure: If decompression produced an empty file.
    """
    tmp = temporary_path_for(compressed)
    try:
        decompress_file(compressed, tmp)
        ensure_nonempty(tmp, "decompress-transfer")
        yield tmp
    finally:
        tmp.unlink(missing_ok=True)
        logger.debug("Removed temporary file %s", tmp)


__all__ = [
    "compress_file",
    "compressed_path_for",
    "decompress_file",
    "decompressed_copy",
    "find_fresh_compressed",
    "temporary_path_for",
]
