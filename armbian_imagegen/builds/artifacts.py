"""Artifact packaging and manifest generation.

This module handles:
- Collecting the configured image and generated files as build artifacts
- Classifying artifacts and mapping them to content types
- Writing the SHA-256 checksum file, build log and manifest
- Streaming artifacts, optionally gzip-compressed on the fly
"""

from __future__ import annotations

import json
import logging
import uuid
import zlib
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path
from typing import Any

from armbian_imagegen.builds.injector import PACKAGE_DIR_NAME
from armbian_imagegen.builds.scripts import (
    ARMBIAN_CONFIG_SCRIPT,
    META_DATA,
    PACKAGES_LIST,
    USER_DATA,
)
from armbian_imagegen.images.fetch import compute_file_sha256, ensure_nonempty
from armbian_imagegen.types import ArtifactKind, BuildArtifact, utcnow

logger = logging.getLogger(__name__)

CONFIG_JSON = "config.json"
BUILD_LOG = "build.log"
MANIFEST = "manifest.json"

# Generated files picked up from the work directory, in order
WORK_DIR_FILES = [CONFIG_JSON, ARMBIAN_CONFIG_SCRIPT, USER_DATA, META_DATA, PACKAGES_LIST]

# Config artifacts that are plain text rather than JSON
TEXT_CONFIG_SUFFIXES = (".sh", ".md", ".service", ".txt")
TEXT_CONFIG_NAMES = {USER_DATA, META_DATA}

STREAM_CHUNK_SIZE = 64 * 1024  # 64KB

GZIP_CONTENT_TYPE = "application/gzip"


def artifact_url(build_id: str, name: str) -> str:
    """Return the retrieval locator for an artifact."""
    return f"/api/builds/{build_id}/artifacts/{name}"


def classify_artifact(filename: str) -> ArtifactKind:
    """Classify an artifact by its file name.

    Args:
        filename: Artifact name.

    Returns:
        ArtifactKind.
    """
    base = filename.rsplit("/", 1)[-1].lower()
    if base.endswith(".img"):
        return ArtifactKind.IMAGE
    if base.endswith((".sha256", ".sha")):
        return ArtifactKind.CHECKSUM
    if base.endswith(".log"):
        return ArtifactKind.LOG
    if base == PACKAGES_LIST:
        return ArtifactKind.PACKAGES
    return ArtifactKind.CONFIG


def content_type_for(kind: ArtifactKind, name: str | None = None) -> str:
    """Return the HTTP content type for an artifact.

    Args:
        kind: Artifact kind.
        name: Optional artifact name, used to tell text configs from JSON.

    Returns:
        MIME type string.
    """
    if kind == ArtifactKind.IMAGE:
        return "application/octet-stream"
    if kind in (ArtifactKind.LOG, ArtifactKind.CHECKSUM, ArtifactKind.PACKAGES):
        return "text/plain"
    if name is not None:
        base = name.rsplit("/", 1)[-1]
        if base in TEXT_CONFIG_NAMES or base.endswith(TEXT_CONFIG_SUFFIXES):
            return "text/plain"
    return "application/json"


def make_artifact(path: Path, build_id: str, name: str | None = None) -> BuildArtifact:
    """Create a BuildArtifact for a file.

    Args:
        path: File path.
        build_id: Build identifier.
        name: Artifact name; defaults to the file name.

    Returns:
        BuildArtifact.

    Raises:
        IntegrityFailure: If the file is empty.
    """
    name = name or path.name
    size = ensure_nonempty(path, "package")
    return BuildArtifact(
        id=uuid.uuid4().hex,
        name=name,
        kind=classify_artifact(name),
        size_bytes=size,
        path=str(path.resolve()),
        url=artifact_url(build_id, name),
        sha256=compute_file_sha256(path),
    )


def write_checksum_file(image_path: Path, output_dir: Path, digest: str) -> Path:
    """Write a sha256sum-compatible checksum file for the image."""
    checksum_path = output_dir / f"{image_path.name}.sha256"
    checksum_path.write_text(f"{digest}  {image_path.name}\n", encoding="utf-8")
    return checksum_path


def write_build_log(output_dir: Path, build_id: str, log_lines: list[str] | None) -> Path:
    """Write the build log, never empty."""
    log_path = output_dir / BUILD_LOG
    lines = list(log_lines) if log_lines else [f"Build {build_id} completed"]
    log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return log_path


def generate_manifest(
    artifacts: list[BuildArtifact],
    build_id: str,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    Args:
        artifacts: Artifacts to list.
        build_id: Build identifier.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "build_id": build_id,
        "generated_at": utcnow().isoformat(),
        "artifacts": [{**asdict(a), "kind": a.kind.value} for a in artifacts],
        "summary": {
            "total_artifacts": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
            "kinds": sorted({a.kind.value for a in artifacts}),
        },
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def package_artifacts(
    image_path: Path,
    work_dir: Path,
    output_dir: Path,
    build_id: str,
    log_lines: list[str] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> list[BuildArtifact]:
    """Collect every output of a build as artifacts.

    Args:
        image_path: Configured image.
        work_dir: Build work directory holding the generated files.
        output_dir: Build output directory.
        build_id: Build identifier.
        log_lines: Lines for build.log.
        extra_metadata: Extra manifest metadata (e.g. acquisition source).

    Returns:
        Artifacts, image first and manifest last.

    Raises:
        IntegrityFailure: If any artifact is empty.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    image = make_artifact(image_path, build_id)
    artifacts = [image]

    for name in WORK_DIR_FILES:
        path = work_dir / name
        if path.is_file():
            artifacts.append(make_artifact(path, build_id))

    package_dir = output_dir / PACKAGE_DIR_NAME
    if package_dir.is_dir():
        for path in sorted(p for p in package_dir.iterdir() if p.is_file()):
            artifacts.append(make_artifact(path, build_id, f"{PACKAGE_DIR_NAME}/{path.name}"))

    checksum_path = write_checksum_file(image_path, output_dir, image.sha256)
    artifacts.append(make_artifact(checksum_path, build_id))

    log_path = write_build_log(output_dir, build_id, log_lines)
    artifacts.append(make_artifact(log_path, build_id))

    manifest_path = output_dir / MANIFEST
    with manifest_path.open("w", encoding="utf-8") as f:
        json.dump(generate_manifest(artifacts, build_id, extra_metadata), f, indent=2, sort_keys=True)
    artifacts.append(make_artifact(manifest_path, build_id))

    logger.info("[%s] Packaged %d artifacts", build_id, len(artifacts))
    return artifacts


def find_artifact(artifacts: list[BuildArtifact], name: str) -> BuildArtifact | None:
    """Look up an artifact by name."""
    for artifact in artifacts:
        if artifact.name == name:
            return artifact
    return None


def iter_artifact_bytes(
    artifact: BuildArtifact,
    compressed: bool = False,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> Iterator[bytes]:
    """Stream an artifact's bytes.

    Args:
        artifact: Artifact to stream.
        compressed: Gzip-compress on the fly (content type application/gzip).
        chunk_size: Read size.

    Yields:
        Byte chunks.
    """
    # wbits=31 selects the gzip container
    compressor = zlib.compressobj(6, zlib.DEFLATED, 31) if compressed else None
    with open(artifact.path, "rb") as f:
        while chunk := f.read(chunk_size):
            if compressor is None:
                yield chunk
                continue
            data = compressor.compress(chunk)
            if data:
                yield data
    if compressor is not None:
        yield compressor.flush()


__all__ = [
    "BUILD_LOG",
    "CONFIG_JSON",
    "GZIP_CONTENT_TYPE",
    "MANIFEST",
    "artifact_url",
    "classify_artifact",
    "content_type_for",
    "find_artifact",
    "generate_manifest",
    "iter_artifact_bytes",
    "make_artifact",
    "package_artifacts",
]
