"""Armbian Image Generator - build customized Armbian images and flash Rockchip boards.

This package provides orchestration around official Armbian base images
for acquiring and customizing images, packaging build artifacts, and
writing images to eMMC/SD/SPI-NOR over the Rockchip USB recovery protocol.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
