"""Image injection for builds.

This module handles:
- Detecting whether privileged partition mounting is possible
- Injecting generated scripts and a first-boot unit into the image
- Falling back to a plain copy when mounting fails partway
- Emitting an external deployment package when mounting is unavailable

Partition mappings and mounts are scoped resources released on every exit
path.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from armbian_imagegen.builds.scripts import (
    FIRSTBOOT_SCRIPT,
    FIRSTBOOT_UNIT_NAME,
    INSTALL_DIR,
    CustomizationScripts,
)
from armbian_imagegen.errors import (
    ImagegenError,
    OperationCancelled,
    PrivilegeDenied,
    ToolError,
)
from armbian_imagegen.images.fetch import ensure_nonempty
from armbian_imagegen.tools import Deadline, ToolResult, ToolRunner
from armbian_imagegen.types import InjectionStrategyName

logger = logging.getLogger(__name__)

# Timeouts for mapping and mounting tools (seconds)
PRIVILEGE_PROBE_TIMEOUT = 5
MAP_TIMEOUT = 60
MOUNT_TIMEOUT = 60
COPY_TIMEOUT = 120

PACKAGE_DIR_NAME = "bbos-config"
DEPLOYMENT_GUIDE = "DEPLOYMENT.md"

CONTAINER_MARKERS = ("docker", "kubepods", "containerd", "lxc", "podman")

_KPARTX_MAP_PATTERN = re.compile(r"add map (\S+)")

_PERMISSION_HINTS = (
    "permission denied",
    "operation not permitted",
    "must be root",
    "a password is required",
)


def configured_image_name(build_id: str) -> str:
    """Return the file name of the configured image for a build."""
    return f"BBOS_Armbian_{build_id}.img"


@dataclass
class InjectionResult:
    """Outcome of the injection step.

    Attributes:
        image_path: The configured (or copied) image.
        strategy: Which strategy produced it.
        package_dir: External deployment package directory, if written.
        reason: Why a fallback strategy was used, if any.
    """

    image_path: Path
    strategy: InjectionStrategyName
    package_dir: Path | None = None
    reason: str | None = None


@dataclass
class Capabilities:
    """Host capabilities relevant to in-image injection."""

    in_container: bool
    can_elevate: bool
    use_sudo: bool = False
    reason: str | None = None

    @property
    def can_mount(self) -> bool:
        return not self.in_container and self.can_elevate


@dataclass
class InjectionRequest:
    """Inputs shared by all injection strategies."""

    base_image: Path
    scripts: CustomizationScripts
    build_id: str
    output_dir: Path
    runner: ToolRunner
    deadline: Deadline | None = None

    @property
    def image_path(self) -> Path:
        return self.output_dir / configured_image_name(self.build_id)


def _timeout(deadline: Deadline | None, requested: float) -> float:
    return deadline.timeout(requested) if deadline is not None else requested


def detect_container(root: Path = Path("/")) -> bool:
    """Whether the process runs inside a container sandbox.

    Args:
        root: Filesystem root to inspect.

    Returns:
        True if a container marker file or cgroup entry is present.
    """
    if (root / ".dockerenv").exists() or (root / "run" / ".containerenv").exists():
        return True
    cgroup = root / "proc" / "1" / "cgroup"
    try:
        content = cgroup.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return any(marker in content for marker in CONTAINER_MARKERS)


def detect_capabilities(
    runner: ToolRunner,
    root: Path = Path("/"),
    deadline: Deadline | None = None,
) -> Capabilities:
    """Probe whether partitions can be mapped and mounted.

    Args:
        runner: Tool runner.
        root: Filesystem root used for container detection.
        deadline: Optional job deadline.

    Returns:
        Capabilities with a reason when mounting is unavailable.
    """
    if detect_container(root):
        return Capabilities(
            in_container=True,
            can_elevate=False,
            reason="running inside a container sandbox",
        )

    try:
        runner.run("kpartx", ["-h"], timeout=_timeout(deadline, PRIVILEGE_PROBE_TIMEOUT))
    except OperationCancelled:
        raise
    except ToolError as e:
        if e.code == "tool_not_found":
            return Capabilities(
                in_container=False, can_elevate=False, reason="kpartx is not installed"
            )
        # kpartx -h exits non-zero on some versions; being runnable is enough

    if os.geteuid() == 0:
        return Capabilities(in_container=False, can_elevate=True)

    try:
        result = runner.run(
            "sudo", ["-n", "true"], timeout=_timeout(deadline, PRIVILEGE_PROBE_TIMEOUT)
        )
    except OperationCancelled:
        raise
    except ToolError as e:
        return Capabilities(
            in_container=False,
            can_elevate=False,
            reason=f"no passwordless sudo: {e.message}",
        )
    if not result.ok:
        return Capabilities(
            in_container=False, can_elevate=False, reason="no passwordless sudo"
        )
    return Capabilities(in_container=False, can_elevate=True, use_sudo=True)


def _privileged(
    runner: ToolRunner,
    use_sudo: bool,
    command: str,
    args: list[str],
    timeout: float,
) -> ToolResult:
    if use_sudo:
        result = runner.run("sudo", ["-n", command, *args], timeout=timeout)
    else:
        result = runner.run(command, args, timeout=timeout)
    if not result.ok:
        detail = (result.stderr or result.stdout).lower()
        if any(hint in detail for hint in _PERMISSION_HINTS):
            raise PrivilegeDenied(f"{command} not permitted: {result.stderr.strip()}")
    return result.raise_for_status()


def parse_kpartx_output(output: str) -> list[Path]:
    """Parse `kpartx -av` output into mapper device paths, in order."""
    return [Path("/dev/mapper") / name for name in _KPARTX_MAP_PATTERN.findall(output)]


@contextmanager
def mapped_partitions(
    image: Path,
    runner: ToolRunner,
    use_sudo: bool,
    deadline: Deadline | None = None,
) -> Iterator[list[Path]]:
    """Map an image's partitions to block devices for the duration of the block.

    Yields:
        Mapper device paths in partition order.

    Raises:
        PrivilegeDenied: If mapping is not permitted.
        ToolError: If mapping fails or yields no partitions.
    """
    try:
        result = _privileged(
            runner, use_sudo, "kpartx", ["-av", str(image)], _timeout(deadline, MAP_TIMEOUT)
        )
        partitions = parse_kpartx_output(result.stdout)
        if not partitions:
            raise ToolError(f"kpartx mapped no partitions for {image}", command="kpartx")
        logger.debug("Mapped %d partitions of %s", len(partitions), image)
        yield partitions
    finally:
        try:
            _privileged(runner, use_sudo, "kpartx", ["-dv", str(image)], MAP_TIMEOUT)
        except (ToolError, PrivilegeDenied) as e:
            logger.warning("Failed to release partition mapping of %s: %s", image, e.message)


@contextmanager
def mounted(
    device: Path,
    runner: ToolRunner,
    use_sudo: bool,
    deadline: Deadline | None = None,
) -> Iterator[Path]:
    """Mount a block device on a temporary mount point for the block.

    Yields:
        The mount point.
    """
    mount_point = Path(tempfile.mkdtemp(prefix="bbos-mnt-"))
    try:
        _privileged(
            runner,
            use_sudo,
            "mount",
            [str(device), str(mount_point)],
            _timeout(deadline, MOUNT_TIMEOUT),
        )
        try:
            yield mount_point
        finally:
            try:
                _privileged(runner, use_sudo, "umount", [str(mount_point)], MOUNT_TIMEOUT)
            except (ToolError, PrivilegeDenied) as e:
                logger.warning("umount %s failed, detaching lazily: %s", mount_point, e.message)
                _privileged(runner, use_sudo, "umount", ["-l", str(mount_point)], MOUNT_TIMEOUT)
    finally:
        shutil.rmtree(mount_point, ignore_errors=True)


def write_files(dest_dir: Path, scripts: CustomizationScripts) -> list[Path]:
    """Write the generated files into a directory with their modes.

    Returns:
        Paths written.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for name, (content, mode) in scripts.files().items():
        path = dest_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(mode)
        written.append(path)
    return written


def install_into_root(
    root: Path,
    scripts: CustomizationScripts,
    runner: ToolRunner,
    use_sudo: bool,
    deadline: Deadline | None = None,
) -> None:
    """Install scripts and the first-boot unit into a mounted root filesystem.

    Files are staged in a temporary directory and installed with
    `install -D` so ownership and modes are set by the privileged side.
    """
    install_dir = INSTALL_DIR.lstrip("/")
    unit_dir = root / "etc" / "systemd" / "system"

    with tempfile.TemporaryDirectory(prefix="bbos-stage-") as tmp:
        staged = Path(tmp)
        write_files(staged, scripts)
        for name, (_content, mode) in scripts.files().items():
            if name == FIRSTBOOT_UNIT_NAME:
                target = unit_dir / name
            else:
                target = root / install_dir / name
            _privileged(
                runner,
                use_sudo,
                "install",
                ["-D", "-m", f"{mode:o}", str(staged / name), str(target)],
                _timeout(deadline, COPY_TIMEOUT),
            )

    wants_dir = unit_dir / "multi-user.target.wants"
    _privileged(
        runner, use_sudo, "mkdir", ["-p", str(wants_dir)], _timeout(deadline, COPY_TIMEOUT)
    )
    _privileged(
        runner,
        use_sudo,
        "ln",
        [
            "-sf",
            f"/etc/systemd/system/{FIRSTBOOT_UNIT_NAME}",
            str(wants_dir / FIRSTBOOT_UNIT_NAME),
        ],
        _timeout(deadline, COPY_TIMEOUT),
    )


def render_deployment_guide(build_id: str, scripts: CustomizationScripts) -> str:
    """Render the human-readable guide shipped with the external package."""
    files = "\n".join(f"- `{name}`" for name in sorted(scripts.files()))
    return f"""# BBOS deployment package

Build: `{build_id}`

The image for this build was produced without modification because the
build host could not mount image partitions. Apply the configuration by
copying these files onto the board after flashing.

## Files

{files}

## Install

1. Flash `{configured_image_name(build_id)}` and boot the board once.
2. Copy this directory to the board:

   ```
   scp -r {PACKAGE_DIR_NAME} root@<board>:/tmp/
   ```

3. On the board, install the scripts and the first-boot unit:

   ```
   mkdir -p {INSTALL_DIR}
   cp /tmp/{PACKAGE_DIR_NAME}/* {INSTALL_DIR}/
   chmod +x {INSTALL_DIR}/*.sh
   cp {INSTALL_DIR}/{FIRSTBOOT_UNIT_NAME} /etc/systemd/system/
   systemctl daemon-reload
   systemctl enable {FIRSTBOOT_UNIT_NAME}
   reboot
   ```

   Or run the configuration immediately with `{INSTALL_DIR}/{FIRSTBOOT_SCRIPT}`.

## cloud-init

If the image ships cloud-init, `user-data` and `meta-data` can be used as a
NoCloud seed instead.
"""


class InjectionStrategy(Protocol):
    """One way of producing the configured image."""

    def attempt(self, request: InjectionRequest) -> InjectionResult | None:
        """Return a result, or None if this strategy does not apply."""
        ...


class InImageStrategy:
    """Mount the image and install the scripts inside it."""

    def __init__(self, capabilities: Capabilities) -> None:
        self.capabilities = capabilities

    def attempt(self, request: InjectionRequest) -> InjectionResult | None:
        if not self.capabilities.can_mount:
            logger.info(
                "[%s] In-image injection unavailable: %s",
                request.build_id,
                self.capabilities.reason,
            )
            return None

        dest = request.image_path
        request.output_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(request.base_image, dest)
        use_sudo = self.capabilities.use_sudo

        try:
            with mapped_partitions(dest, request.runner, use_sudo, request.deadline) as parts:
                # The root filesystem is the last partition on Armbian images
                with mounted(parts[-1], request.runner, use_sudo, request.deadline) as root:
                    install_into_root(
                        root, request.scripts, request.runner, use_sudo, request.deadline
                    )
        except OperationCancelled:
            raise
        except (ImagegenError, OSError) as e:
            reason = e.message if isinstance(e, ImagegenError) else str(e)
            logger.warning(
                "[%s] In-image injection failed, using plain copy: %s", request.build_id, reason
            )
            shutil.copyfile(request.base_image, dest)
            ensure_nonempty(dest, "inject")
            return InjectionResult(
                image_path=dest,
                strategy=InjectionStrategyName.PLAIN_COPY,
                reason=reason,
            )

        ensure_nonempty(dest, "inject")
        logger.info("[%s] Injected configuration into %s", request.build_id, dest.name)
        return InjectionResult(image_path=dest, strategy=InjectionStrategyName.IN_IMAGE)


class ExternalPackageStrategy:
    """Write the scripts beside the image and copy the image unmodified."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason

    def attempt(self, request: InjectionRequest) -> InjectionResult | None:
        package_dir = request.output_dir / PACKAGE_DIR_NAME
        write_files(package_dir, request.scripts)
        (package_dir / DEPLOYMENT_GUIDE).write_text(
            render_deployment_guide(request.build_id, request.scripts), encoding="utf-8"
        )

        dest = request.image_path
        shutil.copyfile(request.base_image, dest)
        ensure_nonempty(dest, "inject")
        logger.info(
            "[%s] Wrote external deployment package to %s", request.build_id, package_dir
        )
        return InjectionResult(
            image_path=dest,
            strategy=InjectionStrategyName.EXTERNAL_PACKAGE,
            package_dir=package_dir,
            reason=self.reason,
        )


def inject(
    base_image: Path,
    scripts: CustomizationScripts,
    build_id: str,
    output_dir: Path,
    runner: ToolRunner,
    deadline: Deadline | None = None,
    capabilities: Capabilities | None = None,
) -> InjectionResult:
    """Produce the configured image for a build.

    Args:
        base_image: Working copy of the base image.
        scripts: Generated customization.
        build_id: Build identifier.
        output_dir: Build output directory.
        runner: Tool runner.
        deadline: Optional job deadline.
        capabilities: Pre-computed capabilities; probed when not provided.

    Returns:
        InjectionResult.

    Raises:
        IntegrityFailure: If the produced image is empty.
        OperationCancelled: If the deadline expires or the job is cancelled.
    """
    ensure_nonempty(base_image, "base-image")
    output_dir.mkdir(parents=True, exist_ok=True)

    if capabilities is None:
        capabilities = detect_capabilities(runner, deadline=deadline)

    request = InjectionRequest(
        base_image=base_image,
        scripts=scripts,
        build_id=build_id,
        output_dir=output_dir,
        runner=runner,
        deadline=deadline,
    )
    strategies: list[InjectionStrategy] = [
        InImageStrategy(capabilities),
        ExternalPackageStrategy(reason=capabilities.reason),
    ]
    for strategy in strategies:
        result = strategy.attempt(request)
        if result is not None:
            return result

    raise ImagegenError(
        f"No injection strategy applied to build {build_id}",
        code="injection_unavailable",
    )


__all__ = [
    "Capabilities",
    "ExternalPackageStrategy",
    "InImageStrategy",
    "InjectionRequest",
    "InjectionResult",
    "configured_image_name",
    "detect_capabilities",
    "detect_container",
    "inject",
    "mapped_partitions",
    "mounted",
    "parse_kpartx_output",
    "render_deployment_guide",
    "write_files",
]
