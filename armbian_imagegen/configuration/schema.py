"""Pydantic models for build configuration validation.

This module defines the BuildConfiguration model describing a board, an
Armbian distribution, and the optional host customization (network, users,
SSH, packages, first-boot commands) applied to the image.
"""

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

HOSTNAME_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?$")
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_\-]{0,31}$")
PACKAGE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9+.\-]*(:[a-z0-9]+)?$")


class BoardSchema(BaseModel):
    """Target board.

    Attributes:
        family: Armbian board family (e.g., 'rockchip-rk3588').
        name: Board name as used by Armbian (e.g., 'rock-5b').
        architecture: CPU architecture (e.g., 'arm64').
        variant: Optional board variant.
    """

    model_config = ConfigDict(extra="forbid")

    family: Annotated[str, Field(min_length=1, max_length=100)]
    name: Annotated[str, Field(min_length=1, max_length=100)]
    architecture: Annotated[str, Field(min_length=1, max_length=20)]
    variant: str | None = None


class DistributionSchema(BaseModel):
    """Armbian distribution selection.

    Attributes:
        release: Debian/Ubuntu release codename (e.g., 'bookworm').
        type: Image flavour.
        desktop: Desktop environment for desktop images (e.g., 'gnome').
    """

    model_config = ConfigDict(extra="forbid")

    release: Annotated[str, Field(min_length=1, max_length=50)]
    type: Literal["minimal", "server", "desktop"] = "server"
    desktop: str | None = None


class WifiSchema(BaseModel):
    """Wi-Fi client configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    ssid: str | None = None
    psk: str | None = None
    country: str | None = Field(default=None, min_length=2, max_length=2)


class NetworkSchema(BaseModel):
    """Network configuration."""

    model_config = ConfigDict(extra="forbid")

    hostname: str | None = None
    wifi: WifiSchema | None = None

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str | None) -> str | None:
        """Validate hostname is a single RFC 1123 label."""
        if v is not None and not HOSTNAME_PATTERN.match(v):
            raise ValueError(f"invalid hostname '{v}'")
        return v


class UserSchema(BaseModel):
    """User account created on first boot."""

    model_config = ConfigDict(extra="forbid")

    username: str
    password: str | None = None
    sudo: bool = False
    shell: str = "/bin/bash"

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Validate username follows useradd conventions."""
        if not USERNAME_PATTERN.match(v):
            raise ValueError(f"invalid username '{v}'")
        return v


class SSHSchema(BaseModel):
    """SSH server configuration."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    port: int = Field(default=22, ge=1, le=65535)
    password_auth: bool | None = None
    root_login: bool | None = None


class PackagesSchema(BaseModel):
    """Packages to install and remove."""

    model_config = ConfigDict(extra="forbid")

    install: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)

    @field_validator("install", "remove")
    @classmethod
    def validate_package_names(cls, v: list[str]) -> list[str]:
        """Validate package names are plain Debian package names."""
        for pkg in v:
            if not PACKAGE_PATTERN.match(pkg):
                raise ValueError(f"invalid package name '{pkg}'")
        return v


class ScriptsSchema(BaseModel):
    """Extra shell commands run at the end of first boot."""

    model_config = ConfigDict(extra="forbid")

    first_boot: list[str] = Field(default_factory=list)


class BuildConfiguration(BaseModel):
    """Complete build configuration.

    Attributes:
        name: Human-readable configuration name.
        description: Optional longer description.
        board: Target board.
        distribution: Armbian distribution.
        network: Optional hostname and Wi-Fi settings.
        users: Optional user accounts.
        ssh: Optional SSH server settings.
        packages: Optional package install/remove lists.
        scripts: Optional extra first-boot commands.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = None
    board: BoardSchema
    distribution: DistributionSchema
    network: NetworkSchema | None = None
    users: list[UserSchema] | None = None
    ssh: SSHSchema | None = None
    packages: PackagesSchema | None = None
    scripts: ScriptsSchema | None = None

    def snapshot(self) -> "BuildConfiguration":
        """Return a deep, independent copy taken at build start."""
        return self.model_copy(deep=True)

    @property
    def has_customization(self) -> bool:
        """Whether any host customization section is present."""
        return any(
            section is not None
            for section in (self.network, self.users, self.ssh, self.packages, self.scripts)
        )


__all__ = [
    "BoardSchema",
    "BuildConfiguration",
    "DistributionSchema",
    "NetworkSchema",
    "PackagesSchema",
    "SSHSchema",
    "ScriptsSchema",
    "UserSchema",
    "WifiSchema",
]
