"""Shared type definitions for armbian_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ArtifactKind(str, Enum):
    """Kind of a build artifact."""

    IMAGE = "image"
    LOG = "log"
    CONFIG = "config"
    CHECKSUM = "checksum"
    PACKAGES = "packages"


class FlashStatus(str, Enum):
    """Status of a flash job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FlashPhase(str, Enum):
    """Phase of a running flash job."""

    DETECTING = "detecting"
    PREPARING = "preparing"
    DOWNLOADING_BOOT = "downloading_boot"
    COMPRESSING = "compressing"
    ERASING = "erasing"
    WRITING = "writing"
    VERIFYING = "verifying"
    RESETTING = "resetting"
    COMPLETED = "completed"
    FAILED = "failed"


class DeviceMode(str, Enum):
    """USB recovery mode reported by the inventory tool."""

    MASKROM = "maskrom"
    LOADER = "loader"
    FASTBOOT = "fastboot"


class StorageKind(str, Enum):
    """Storage target on the board."""

    EMMC = "emmc"
    SD = "sd"
    SPINOR = "spinor"


class AcquisitionSource(str, Enum):
    """Where a base image came from."""

    CACHE = "cache"
    DOWNLOAD = "download"
    PLACEHOLDER = "placeholder"


class InjectionStrategyName(str, Enum):
    """Outcome of the image injection step."""

    IN_IMAGE = "in-image"
    PLAIN_COPY = "plain-copy"
    EXTERNAL_PACKAGE = "external-package"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BuildArtifact:
    """A named, typed, sized build output.

    Attributes:
        id: Unique artifact identifier.
        name: File name, stable within a build.
        kind: Artifact kind.
        size_bytes: File size in bytes.
        path: Absolute storage path.
        url: Retrieval locator for callers.
        sha256: SHA-256 digest of the file.
    """

    id: str
    name: str
    kind: ArtifactKind
    size_bytes: int
    path: str
    url: str
    sha256: str


@dataclass
class BuildProgress:
    """Progress update emitted by the build pipeline."""

    phase: str
    progress: int
    message: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class RockchipDevice:
    """A Rockchip device attached in a USB recovery mode.

    The id is the tool's device slot number and is not stable across
    reconnects.
    """

    id: str
    mode: DeviceMode
    chip_family: str = "Unknown"
    status: str = ""


@dataclass
class StorageDevice:
    """A storage target probed on a device in loader mode."""

    kind: StorageKind
    name: str
    code: int
    available: bool = False
    capacity: str | None = None
    flash_info: str | None = None
    recommended: bool = False
    description: str = ""


@dataclass
class FlashProgress:
    """Append-only progress entry of a flash job."""

    phase: FlashPhase
    progress: int
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    device_id: str | None = None
    transfer_speed: str | None = None
    eta: str | None = None


@dataclass
class FlashJob:
    """In-memory record of a flash operation."""

    id: str
    build_id: str
    device_id: str
    image_path: str
    storage_target: StorageKind = StorageKind.EMMC
    status: FlashStatus = FlashStatus.QUEUED
    progress: list[FlashProgress] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def phases(self) -> list[FlashPhase]:
        """Return the recorded phases in order."""
        return [p.phase for p in self.progress]

    @property
    def latest(self) -> FlashProgress | None:
        """Return the most recent progress entry, if any."""
        return self.progress[-1] if self.progress else None


BuildProgressCallback = Callable[[BuildProgress], None]
FlashProgressCallback = Callable[[FlashProgress], None]
# (bytes_done, bytes_total) - total is None when unknown
ByteProgressCallback = Callable[[int, int | None], None]


__all__ = [
    "AcquisitionSource",
    "ArtifactKind",
    "BuildArtifact",
    "BuildProgress",
    "BuildProgressCallback",
    "ByteProgressCallback",
    "DeviceMode",
    "FlashJob",
    "FlashPhase",
    "FlashProgress",
    "FlashProgressCallback",
    "FlashStatus",
    "InjectionStrategyName",
    "RockchipDevice",
    "StorageDevice",
    "StorageKind",
    "utcnow",
]
