"""Error taxonomy for armbian_imagegen.

Every error carries a human-readable message and a stable ``code`` for
structured handling by callers (CLI, job tracker). Flash errors also carry
the phase and device they occurred on so callers can decide on retries.
"""

from __future__ import annotations


class ImagegenError(Exception):
    """Base exception for all armbian_imagegen errors."""

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


# Image acquisition


class NetworkFailure(ImagegenError):
    """Raised when a download or listing request fails at the network level."""

    def __init__(self, message: str, code: str = "network_error") -> None:
        super().__init__(message, code=code)


class ImageNotFound(ImagegenError):
    """Raised when no archive matches the requested board and distribution."""

    def __init__(self, board: str, release: str, image_type: str) -> None:
        super().__init__(
            f"No Armbian image found for board={board} release={release} "
            f"type={image_type}",
            code="image_not_found",
        )
        self.board = board
        self.release = release
        self.image_type = image_type


class IntegrityFailure(ImagegenError):
    """Raised when a stage produces a zero-byte file."""

    def __init__(self, path: str, stage: str) -> None:
        super().__init__(
            f"Integrity check failed at stage '{stage}': {path} is empty",
            code="integrity_failure",
        )
        self.path = path
        self.stage = stage


class DecompressionUnavailable(ImagegenError):
    """Raised when every decompression strategy was inapplicable or failed."""

    def __init__(self, archive: str, attempted: list[str]) -> None:
        tried = ", ".join(attempted) if attempted else "none"
        super().__init__(
            f"Could not decompress {archive} (tried: {tried})",
            code="decompression_unavailable",
        )
        self.archive = archive
        self.attempted = attempted


# Image injection


class PrivilegeDenied(ImagegenError):
    """Raised when privileged mounting is not permitted."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="privilege_denied")


# External tools


class ToolError(ImagegenError):
    """Raised when an external tool exits non-zero or cannot be run."""

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "tool_error",
    ) -> None:
        super().__init__(message, code=code)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ToolTimeout(ToolError):
    """Raised when an external tool exceeds its timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(
            f"Command timed out after {timeout:g}s: {command}",
            command=command,
            code="tool_timeout",
        )
        self.timeout = timeout


class ToolNotFound(ToolError):
    """Raised when an external tool binary is missing."""

    def __init__(self, command: str) -> None:
        super().__init__(
            f"Command not found: {command}",
            command=command,
            code="tool_not_found",
        )


class OperationCancelled(ImagegenError):
    """Raised when a deadline expires or a job is cancelled."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message, code="cancelled")


# Flashing


class FlashError(ImagegenError):
    """Base exception for flash engine failures."""

    def __init__(
        self,
        message: str,
        code: str = "flash_error",
        phase: str | None = None,
        device_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.phase = phase
        self.device_id = device_id


class DeviceNotFound(FlashError):
    """Requested device is not attached in a recovery mode."""

    def __init__(self, device_id: str) -> None:
        super().__init__(
            f"Device {device_id} not found. Ensure board is in maskrom mode.",
            code="device_not_found",
            phase="detecting",
            device_id=device_id,
        )


class StorageUnavailable(FlashError):
    """Requested storage target was not detected as available."""

    def __init__(self, storage: str | None, device_id: str | None = None) -> None:
        if storage is None:
            message = (
                "No storage devices detected! Please insert an SD card "
                "or ensure eMMC is available."
            )
        else:
            message = (
                f"Storage '{storage}' not available. Please select a "
                "different storage option."
            )
        super().__init__(
            message,
            code="storage_unavailable",
            phase="writing",
            device_id=device_id,
        )
        self.storage = storage


class WriteTimeout(FlashError):
    """Raw write to the device did not finish in time."""

    def __init__(self, timeout: float, device_id: str | None = None) -> None:
        super().__init__(
            f"Image write timed out after {timeout:g}s",
            code="write_timeout",
            phase="writing",
            device_id=device_id,
        )
        self.timeout = timeout


class ResetFailed(FlashError):
    """Reset command failed; logged as a warning, never fails a job."""

    def __init__(self, reason: str, device_id: str | None = None) -> None:
        super().__init__(
            f"Reset command failed (device may have disconnected): {reason}",
            code="reset_failed",
            phase="resetting",
            device_id=device_id,
        )


class FlashBusy(FlashError):
    """Another flash is already running on this engine."""

    def __init__(self, active_job_id: str) -> None:
        super().__init__(
            f"Another flash is in progress ({active_job_id})",
            code="flash_busy",
            phase="detecting",
        )
        self.active_job_id = active_job_id


__all__ = [
    "DecompressionUnavailable",
    "DeviceNotFound",
    "FlashBusy",
    "FlashError",
    "ImageNotFound",
    "ImagegenError",
    "IntegrityFailure",
    "NetworkFailure",
    "OperationCancelled",
    "PrivilegeDenied",
    "ResetFailed",
    "StorageUnavailable",
    "ToolError",
    "ToolNotFound",
    "ToolTimeout",
    "WriteTimeout",
]
