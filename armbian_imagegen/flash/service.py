"""Flash engine for Rockchip boards.

This module provides high-level flash operations:
- flash_image: write an image to a device's eMMC, SD card or SPI NOR
- Device and storage detection through the shared DetectionGate
- In-memory flash job records with append-only progress

A flash job runs through detecting, downloading_boot (maskrom only),
writing (with a compressing sub-phase for large images), resetting and
completed. Failures are recorded on the job, never retried, and never
raised to the caller.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from armbian_imagegen.config import Settings, get_settings
from armbian_imagegen.errors import (
    DeviceNotFound,
    FlashBusy,
    FlashError,
    ImagegenError,
    ResetFailed,
    StorageUnavailable,
    ToolError,
    ToolTimeout,
    WriteTimeout,
)
from armbian_imagegen.flash.compress import (
    compress_file,
    decompressed_copy,
    find_fresh_compressed,
)
from armbian_imagegen.flash.inventory import DetectionGate, DeviceInventory
from armbian_imagegen.flash.storage import detect_storage_devices
from armbian_imagegen.images.fetch import ensure_nonempty
from armbian_imagegen.tools import SubprocessToolRunner, ToolRunner
from armbian_imagegen.types import (
    DeviceMode,
    FlashJob,
    FlashPhase,
    FlashProgress,
    FlashProgressCallback,
    FlashStatus,
    RockchipDevice,
    StorageDevice,
    StorageKind,
    utcnow,
)

logger = logging.getLogger(__name__)

SUPPORTED_CHIPS = ["RK3588", "RK3566", "RK3568", "RK3399"]

# Compression progress is mapped into this window of the job
COMPRESS_PROGRESS_START = 5
COMPRESS_PROGRESS_END = 25


def format_bytes(size: int) -> str:
    """Format a byte count for humans (e.g. '1.5 GB')."""
    if size == 0:
        return "0 Bytes"
    value = float(size)
    for unit in ("Bytes", "KB", "MB", "GB"):
        if value < 1024:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{round(value, 2):g} TB"


@dataclass
class FlashCapabilities:
    """What this host can flash.

    Attributes:
        available: Whether rkdeveloptool and the loader are both present.
        tool_path: rkdeveloptool binary path.
        supported_chips: Chip families the bundled loader supports.
        connected_devices: Devices seen by a non-forced detection.
    """

    available: bool
    tool_path: str
    supported_chips: list[str] = field(default_factory=lambda: list(SUPPORTED_CHIPS))
    connected_devices: list[RockchipDevice] = field(default_factory=list)


class FlashEngine:
    """Writes images to Rockchip devices through rkdeveloptool.

    Only one flash runs at a time per engine. Device detection is suspended
    for the whole job and restored afterwards.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        runner: ToolRunner | None = None,
        inventory: DeviceInventory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.runner = runner or SubprocessToolRunner()
        self.tool_path = self.settings.rkdeveloptool_path
        self.loader_path = self.settings.loader_path
        self.inventory = inventory or DeviceInventory(
            self.runner,
            self.tool_path,
            DetectionGate(cooldown=self.settings.device_check_cooldown),
        )
        self._sleep = sleep
        self._jobs: dict[str, FlashJob] = {}
        self._jobs_lock = threading.Lock()
        self._flash_lock = threading.Lock()
        self._active_job_id: str | None = None

    @property
    def gate(self) -> DetectionGate:
        return self.inventory.gate

    # Queries

    def is_available(self) -> bool:
        """Whether rkdeveloptool and the loader blob are both present."""
        return self.tool_path.exists() and self.loader_path.exists()

    def get_capabilities(self) -> FlashCapabilities:
        return FlashCapabilities(
            available=self.is_available(),
            tool_path=str(self.tool_path),
            connected_devices=self.detect_devices(),
        )

    def detect_devices(self, force: bool = False) -> list[RockchipDevice]:
        return self.inventory.detect(force=force)

    def detect_storage_devices(self, device_id: str) -> list[StorageDevice]:
        """Probe storage targets on a device in loader mode.

        rkdeveloptool talks to the first attached device; the id is only
        used for logging.
        """
        logger.info("Detecting storage devices on device %s", device_id)
        return detect_storage_devices(
            self.runner, self.tool_path, timeout=self.settings.query_timeout
        )

    def get_flash_job(self, job_id: str) -> FlashJob | None:
        with self._jobs_lock:
            return self._jobs.get(job_id)

    def list_flash_jobs(self) -> list[FlashJob]:
        with self._jobs_lock:
            return list(self._jobs.values())

    # Flashing

    def flash_image(
        self,
        build_id: str,
        image_path: str | Path,
        device_id: str,
        on_progress: FlashProgressCallback | None = None,
        storage_target: str | StorageKind = StorageKind.EMMC,
    ) -> str:
        """Flash an image to a device.

        Runs synchronously. The outcome is recorded on the job, which the
        caller reads back with get_flash_job().

        Args:
            build_id: Build the image belongs to.
            image_path: Image file to write.
            device_id: Device slot number from detect_devices().
            on_progress: Optional callback invoked for every progress entry.
            storage_target: emmc, sd or spinor.

        Returns:
            The flash job id.

        Raises:
            ValueError: If storage_target is not a known storage kind.
        """
        storage = StorageKind(storage_target)
        job = FlashJob(
            id=f"flash_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            build_id=build_id,
            device_id=device_id,
            image_path=str(image_path),
            storage_target=storage,
        )
        with self._jobs_lock:
            self._jobs[job.id] = job

        if not self._flash_lock.acquire(blocking=False):
            self._fail(job, FlashBusy(self._active_job_id or "unknown"), on_progress)
            return job.id

        try:
            self._active_job_id = job.id
            job.status = FlashStatus.RUNNING
            job.started_at = utcnow()
            logger.info(
                "[%s] Flashing %s to device %s (%s)",
                job.id,
                job.image_path,
                device_id,
                storage.value,
            )
            with self.gate.suspended():
                try:
                    self._run(job, Path(image_path), storage, on_progress)
                except Exception as e:
                    self._fail(job, e, on_progress)
        finally:
            self._active_job_id = None
            self._flash_lock.release()

        return job.id

    def _record(
        self,
        job: FlashJob,
        on_progress: FlashProgressCallback | None,
        phase: FlashPhase,
        progress: int,
        message: str,
        transfer_speed: str | None = None,
    ) -> None:
        entry = FlashProgress(
            phase=phase,
            progress=progress,
            message=message,
            device_id=job.device_id,
            transfer_speed=transfer_speed,
        )
        job.progress.append(entry)
        logger.info("[%s] %s (%d%%): %s", job.id, phase.value, progress, message)
        if on_progress is not None:
            on_progress(entry)

    def _fail(
        self,
        job: FlashJob,
        error: Exception,
        on_progress: FlashProgressCallback | None,
    ) -> None:
        if isinstance(error, ImagegenError):
            message, code = error.message, error.code
        else:
            message, code = str(error) or type(error).__name__, "flash_error"
        job.status = FlashStatus.FAILED
        job.error = message
        job.error_code = code
        job.finished_at = utcnow()
        logger.error("[%s] Flash failed: %s", job.id, message)
        try:
            self._record(job, on_progress, FlashPhase.FAILED, 0, f"Flash failed: {message}")
        except Exception:
            # The entry is already on the job; only the callback failed
            logger.exception("[%s] Progress callback failed", job.id)

    def _tool(self, args: list[str], timeout: float) -> None:
        self.runner.run(self.tool_path, args, timeout=timeout).raise_for_status()

    def _run(
        self,
        job: FlashJob,
        image: Path,
        storage: StorageKind,
        on_progress: FlashProgressCallback | None,
    ) -> None:
        def record(
            phase: FlashPhase,
            progress: int,
            message: str,
            transfer_speed: str | None = None,
        ) -> None:
            self._record(job, on_progress, phase, progress, message, transfer_speed)

        if not image.is_file():
            raise FlashError(
                f"Image file not found: {image}",
                code="image_not_found",
                phase=FlashPhase.PREPARING.value,
                device_id=job.device_id,
            )
        image_size = ensure_nonempty(image, "flash")

        record(FlashPhase.DETECTING, 5, f"Detecting device {job.device_id}...")
        device = self._find_device(job.device_id)

        if device.mode == DeviceMode.MASKROM:
            record(FlashPhase.DOWNLOADING_BOOT, 15, "Loading bootloader to device...")
            self._tool(["db", str(self.loader_path)], self.settings.loader_timeout)
            # Device re-enumerates in loader mode
            self._sleep(self.settings.loader_settle_seconds)

        record(FlashPhase.WRITING, 20, "Detecting available storage...")
        target = self._select_storage(job.device_id, storage)

        record(FlashPhase.WRITING, 22, f"Switching to {target.name}...")
        self._tool(["cs", str(target.code)], self.settings.query_timeout)

        compressed: Path | None = None
        created: Path | None = None
        if image_size > self.settings.compression_threshold_bytes:
            compressed = find_fresh_compressed(image)
            if compressed is not None:
                logger.info("[%s] Reusing compressed image %s", job.id, compressed)
            else:
                record(
                    FlashPhase.COMPRESSING,
                    COMPRESS_PROGRESS_START,
                    f"Compressing {format_bytes(image_size)} image for faster transfer...",
                )
                compressed = created = compress_file(
                    image, on_progress=self._compress_callback(record)
                )

        record(
            FlashPhase.WRITING,
            25,
            f"Writing {'compressed ' if compressed else ''}image to {target.name}...",
            transfer_speed="0 MB/s",
        )
        started = time.monotonic()
        try:
            if compressed is not None:
                with decompressed_copy(compressed) as transfer_path:
                    self._write(transfer_path, job.device_id)
            else:
                self._write(image, job.device_id)
        finally:
            if created is not None:
                created.unlink(missing_ok=True)
        elapsed = max(time.monotonic() - started, 0.001)
        speed = image_size / (1024 * 1024) / elapsed
        record(
            FlashPhase.WRITING,
            80,
            f"Image successfully written to {target.name}",
            transfer_speed=f"{speed:.1f} MB/s avg",
        )

        record(FlashPhase.RESETTING, 95, "Resetting device...")
        try:
            self._tool(["rd"], self.settings.query_timeout)
        except ToolError as e:
            warning = ResetFailed(e.message, job.device_id)
            logger.warning("[%s] %s", job.id, warning.message)

        job.status = FlashStatus.COMPLETED
        job.finished_at = utcnow()
        record(FlashPhase.COMPLETED, 100, "Flash completed successfully!")

    def _find_device(self, device_id: str) -> RockchipDevice:
        for device in self.inventory.detect(force=True):
            if device.id == device_id:
                return device
        raise DeviceNotFound(device_id)

    def _select_storage(self, device_id: str, storage: StorageKind) -> StorageDevice:
        devices = self.detect_storage_devices(device_id)
        if not any(d.available for d in devices):
            raise StorageUnavailable(None, device_id)
        for device in devices:
            if device.kind == storage and device.available:
                return device
        raise StorageUnavailable(storage.value, device_id)

    def _write(self, path: Path, device_id: str) -> None:
        timeout = self.settings.write_timeout
        try:
            self._tool(["wl", "0", str(path)], timeout)
        except ToolTimeout as e:
            raise WriteTimeout(timeout, device_id) from e

    @staticmethod
    def _compress_callback(
        record: Callable[..., None],
    ) -> Callable[[int, int | None], None]:
        last = COMPRESS_PROGRESS_START
        span = COMPRESS_PROGRESS_END - COMPRESS_PROGRESS_START

        def on_bytes(done: int, total: int | None) -> None:
            nonlocal last
            if not total:
                return
            percent = COMPRESS_PROGRESS_START + min(span, done * span // total)
            if percent > last:
                last = percent
                record(
                    FlashPhase.COMPRESSING,
                    percent,
                    f"Compressing... {format_bytes(done)} / {format_bytes(total)}",
                )

        return on_bytes


__all__ = [
    "FlashCapabilities",
    "FlashEngine",
    "format_bytes",
]
