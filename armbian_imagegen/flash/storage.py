"""Storage target detection on a device in loader mode."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from armbian_imagegen.errors import ToolError
from armbian_imagegen.tools import ToolRunner
from armbian_imagegen.types import StorageDevice, StorageKind

logger = logging.getLogger(__name__)

# Timeout for `cs` and `rfi` (seconds)
STORAGE_QUERY_TIMEOUT = 5.0

# kind, display name, rkdeveloptool storage code, recommended, description
STORAGE_TARGETS: list[tuple[StorageKind, str, int, bool, str]] = [
    (StorageKind.EMMC, "eMMC", 1, True, "High-speed onboard flash storage (recommended for OS)"),
    (StorageKind.SD, "SD Card", 2, False, "Removable microSD card storage"),
    (
        StorageKind.SPINOR,
        "SPI NOR Flash",
        9,
        False,
        "Small SPI flash for bootloader only (typically 16-32MB)",
    ),
]

_CAPACITY_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(MB|GB|KB)", re.IGNORECASE)


def storage_catalog() -> list[StorageDevice]:
    """Return fresh, not-yet-probed entries for every storage target."""
    return [
        StorageDevice(
            kind=kind,
            name=name,
            code=code,
            available=False,
            recommended=recommended,
            description=description,
        )
        for kind, name, code, recommended, description in STORAGE_TARGETS
    ]


def storage_code(kind: StorageKind) -> int:
    """Return the rkdeveloptool code for a storage kind."""
    for target_kind, _name, code, _recommended, _description in STORAGE_TARGETS:
        if target_kind == kind:
            return code
    raise ValueError(f"Unknown storage kind: {kind}")


def parse_capacity(flash_info: str) -> str | None:
    """Extract a capacity like '7456 MB' from `rfi` output.

    Only the first line mentioning capacity or size is considered.
    """
    for line in flash_info.splitlines():
        lowered = line.lower()
        if "capacity" in lowered or "size" in lowered:
            match = _CAPACITY_PATTERN.search(line)
            if match:
                return f"{match.group(1)} {match.group(2).upper()}"
            return None
    return None


def detect_storage_devices(
    runner: ToolRunner,
    tool_path: Path,
    timeout: float = STORAGE_QUERY_TIMEOUT,
) -> list[StorageDevice]:
    """Probe each storage target with `cs <code>` followed by `rfi`.

    A target is available when both commands succeed.

    Args:
        runner: Tool runner.
        tool_path: rkdeveloptool binary.
        timeout: Per-command timeout.

    Returns:
        All storage targets with availability filled in.
    """
    devices = storage_catalog()
    for device in devices:
        try:
            runner.run(tool_path, ["cs", str(device.code)], timeout=timeout).raise_for_status()
            result = runner.run(tool_path, ["rfi"], timeout=timeout).raise_for_status()
        except ToolError as e:
            logger.info("%s not available: %s", device.name, e.message)
            device.available = False
            continue

        device.available = True
        device.flash_info = result.stdout.strip()
        device.capacity = parse_capacity(result.stdout)
        logger.info("%s detected: %s", device.name, device.capacity or "unknown size")

    available = sum(1 for d in devices if d.available)
    logger.info("Storage detection complete: %d device(s) available", available)
    return devices


__all__ = [
    "STORAGE_TARGETS",
    "detect_storage_devices",
    "parse_capacity",
    "storage_catalog",
    "storage_code",
]
