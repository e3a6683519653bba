"""Rockchip device inventory.

This module handles:
- Listing devices attached in a USB recovery mode via `rkdeveloptool ld`
- Mapping USB product ids to chip families
- Rate limiting and suspending detection through a DetectionGate

Probing the USB bus while a flash is in progress can steal the device from
the writer, so the Flash Engine suspends the gate for the whole job.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from armbian_imagegen.errors import ToolError
from armbian_imagegen.tools import SubprocessToolRunner, ToolRunner
from armbian_imagegen.types import DeviceMode, RockchipDevice

if TYPE_CHECKING:
    from armbian_imagegen.config import Settings

logger = logging.getLogger(__name__)

# Timeout for `rkdeveloptool ld` (seconds)
LIST_TIMEOUT = 3.0

DEFAULT_COOLDOWN = 5.0

NO_DEVICES_MARKER = "not found any devices"

# USB product id -> chip family
CHIP_TABLE = {
    "350a": "RK3588",
    "350b": "RK3588",
    "350c": "RK3568",
    "350d": "RK3566",
    "330a": "RK3399",
    "330c": "RK3328",
    "290a": "RK3288",
    "281a": "RK3188",
}

_DEVICE_PATTERN = re.compile(r"DevNo=(\d+).*?(Maskrom|Loader|Fastboot)", re.IGNORECASE)
_PID_PATTERN = re.compile(r"Pid=0x([0-9a-f]+)", re.IGNORECASE)


class DetectionGate:
    """Enable flag and cooldown guarding device detection.

    Attributes:
        cooldown: Minimum seconds between non-forced detections.
        enabled: Whether non-forced detection is allowed.
        last_check: Clock value of the last probe, or None.
    """

    def __init__(
        self,
        cooldown: float = DEFAULT_COOLDOWN,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown = cooldown
        self.enabled = enabled
        self.last_check: float | None = None
        self._clock = clock
        self._lock = threading.Lock()

    def try_acquire(self, force: bool = False) -> bool:
        """Decide whether a probe may run now, recording it if so.

        Forced probes always run, even while detection is disabled.

        Args:
            force: Bypass the enable flag and the cooldown.

        Returns:
            True if the caller may probe the hardware.
        """
        with self._lock:
            now = self._clock()
            if not force:
                if not self.enabled:
                    logger.debug("Device detection disabled")
                    return False
                if self.last_check is not None and now - self.last_check < self.cooldown:
                    logger.debug(
                        "Device check rate limited (last check %.1fs ago)",
                        now - self.last_check,
                    )
                    return False
            self.last_check = now
            return True

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self.enabled = enabled
        logger.info("Device detection %s", "enabled" if enabled else "disabled")

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Disable non-forced detection, restoring the prior state on exit."""
        with self._lock:
            previous = self.enabled
            self.enabled = False
        try:
            yield
        finally:
            with self._lock:
                self.enabled = previous
            logger.debug("Device detection restored to %s", previous)


def chip_family(pid: str | None) -> str:
    """Map a USB product id (hex, no prefix) to a chip family."""
    if pid is None:
        return "Unknown"
    return CHIP_TABLE.get(pid.lower(), "Unknown")


def parse_device_list(output: str) -> list[RockchipDevice]:
    """Parse `rkdeveloptool ld` output.

    Example line::

        DevNo=1	Vid=0x2207,Pid=0x350a,LocationID=14100000	Maskrom

    Args:
        output: Tool stdout.

    Returns:
        Devices in listing order.
    """
    if NO_DEVICES_MARKER in output.lower():
        return []

    devices: list[RockchipDevice] = []
    for line in output.splitlines():
        if "DevNo=" not in line:
            continue
        match = _DEVICE_PATTERN.search(line)
        if match is None:
            continue
        pid_match = _PID_PATTERN.search(line)
        mode = DeviceMode(match.group(2).lower())
        chip = chip_family(pid_match.group(1) if pid_match else None)
        devices.append(
            RockchipDevice(
                id=match.group(1),
                mode=mode,
                chip_family=chip,
                status=f"{chip} ({mode.value})",
            )
        )
    return devices


class DeviceInventory:
    """Detects Rockchip devices through rkdeveloptool."""

    def __init__(
        self,
        runner: ToolRunner,
        tool_path: Path,
        gate: DetectionGate | None = None,
        list_timeout: float = LIST_TIMEOUT,
    ) -> None:
        self.runner = runner
        self.tool_path = tool_path
        self.gate = gate or DetectionGate()
        self.list_timeout = list_timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, runner: ToolRunner | None = None
    ) -> DeviceInventory:
        return cls(
            runner or SubprocessToolRunner(),
            settings.rkdeveloptool_path,
            DetectionGate(cooldown=settings.device_check_cooldown),
        )

    def detect(self, force: bool = False) -> list[RockchipDevice]:
        """List attached devices.

        Returns an empty list without touching the hardware when detection
        is disabled or within the cooldown, unless forced. Tool failures
        and timeouts also yield an empty list.

        Args:
            force: Probe regardless of the gate.

        Returns:
            Detected devices.
        """
        if not self.gate.try_acquire(force):
            return []

        try:
            result = self.runner.run(self.tool_path, ["ld"], timeout=self.list_timeout)
        except ToolError as e:
            logger.info("Device detection failed: %s", e.message)
            return []

        output = result.stdout + result.stderr
        if not result.ok and NO_DEVICES_MARKER not in output.lower():
            logger.info("Device detection failed with exit code %d", result.exit_code)
            return []

        devices = parse_device_list(output)
        logger.info("Detected %d Rockchip device(s)", len(devices))
        return devices


__all__ = [
    "CHIP_TABLE",
    "DetectionGate",
    "DeviceInventory",
    "chip_family",
    "parse_device_list",
]
