"""Hardware flash module.

This module handles:
- Detecting Rockchip boards in maskrom/loader mode
- Probing eMMC, SD card and SPI NOR storage targets
- Flashing images with rkdeveloptool and tracking flash jobs
"""

from armbian_imagegen.flash.compress import compress_file, decompress_file
from armbian_imagegen.flash.inventory import (
    DetectionGate,
    DeviceInventory,
    parse_device_list,
)
from armbian_imagegen.flash.service import FlashCapabilities, FlashEngine
from armbian_imagegen.flash.storage import detect_storage_devices, parse_capacity

__all__ = [
    "DetectionGate",
    "DeviceInventory",
    "FlashCapabilities",
    "FlashEngine",
    "compress_file",
    "decompress_file",
    "detect_storage_devices",
    "parse_capacity",
    "parse_device_list",
]
