"""Customization script generation.

This module turns a BuildConfiguration into the set of scripts and
cloud-init documents that customise an Armbian image. Generation is pure:
no I/O, and the same configuration always yields the same output.

Every user-provided value that reaches a shell command is quoted with
shlex.quote.
"""

from __future__ import annotations

import hashlib
import shlex
from dataclasses import dataclass

import yaml

from armbian_imagegen.configuration.schema import (
    BuildConfiguration,
    NetworkSchema,
    PackagesSchema,
    SSHSchema,
    UserSchema,
)

# Where scripts are installed inside the image
INSTALL_DIR = "/opt/bbos"

FIRSTBOOT_UNIT_NAME = "bbos-firstboot.service"

DEFAULT_HOSTNAME = "armbian-bbos"

# Kernel branch per board family; families not listed use "current"
BRANCH_MAP = {
    "rockchip64": "current",
    "rk35xx": "edge",
    "sunxi": "current",
    "meson64": "current",
    "bcm2711": "current",
    "odroidxu4": "current",
    "allwinner": "current",
    "mediatek": "current",
    "amlogic": "current",
}

SSHD_CONFIG = "/etc/ssh/sshd_config"

# File names used in the work directory, in /opt/bbos and in the
# external deployment package
BUILD_SCRIPT = "build.sh"
CUSTOMIZE_SCRIPT = "customize.sh"
ARMBIAN_CONFIG_SCRIPT = "armbian-config-auto.sh"
USER_DATA = "user-data"
META_DATA = "meta-data"
PACKAGES_LIST = "packages.txt"
FIRSTBOOT_SCRIPT = "firstboot.sh"


@dataclass(frozen=True)
class CustomizationScripts:
    """Generated customization for one build.

    Empty strings mean the corresponding configuration section was absent.
    """

    build_script: str
    package_commands: str
    user_commands: str
    ssh_commands: str
    network_commands: str
    customize_script: str
    armbian_config_script: str
    user_data: str
    meta_data: str
    firstboot_script: str
    firstboot_unit: str
    packages_list: str

    def files(self) -> dict[str, tuple[str, int]]:
        """Return non-empty installable files as name -> (content, mode)."""
        candidates = {
            BUILD_SCRIPT: (self.build_script, 0o755),
            CUSTOMIZE_SCRIPT: (self.customize_script, 0o755),
            ARMBIAN_CONFIG_SCRIPT: (self.armbian_config_script, 0o755),
            USER_DATA: (self.user_data, 0o644),
            META_DATA: (self.meta_data, 0o644),
            PACKAGES_LIST: (self.packages_list, 0o644),
            FIRSTBOOT_SCRIPT: (self.firstboot_script, 0o755),
            FIRSTBOOT_UNIT_NAME: (self.firstboot_unit, 0o644),
        }
        return {name: entry for name, entry in candidates.items() if entry[0]}


def branch_for_family(family: str) -> str:
    """Return the kernel branch for a board family."""
    return BRANCH_MAP.get(family, "current")


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def generate_build_script(config: BuildConfiguration) -> str:
    """Generate the Armbian compile.sh options script."""
    board = config.board
    dist = config.distribution
    q = shlex.quote

    exports = [
        f"export BOARD={q(board.name)}",
        f"export BRANCH={q(branch_for_family(board.family))}",
        f"export RELEASE={q(dist.release)}",
        f"export BUILD_MINIMAL={_yes_no(dist.type == 'minimal')}",
        f"export BUILD_DESKTOP={_yes_no(dist.type == 'desktop')}",
        "export KERNEL_ONLY=no",
        "export KERNEL_CONFIGURE=no",
        "export COMPRESS_OUTPUTIMAGE=sha,img",
    ]
    compile_args = [
        'BOARD="$BOARD"',
        'BRANCH="$BRANCH"',
        'RELEASE="$RELEASE"',
        'BUILD_MINIMAL="$BUILD_MINIMAL"',
        'BUILD_DESKTOP="$BUILD_DESKTOP"',
        'KERNEL_ONLY="$KERNEL_ONLY"',
        'KERNEL_CONFIGURE="$KERNEL_CONFIGURE"',
        'COMPRESS_OUTPUTIMAGE="$COMPRESS_OUTPUTIMAGE"',
        'EXPERT="$EXPERT"',
    ]
    if dist.desktop:
        exports.append(f"export DESKTOP_ENVIRONMENT={q(dist.desktop)}")
        compile_args.append('DESKTOP_ENVIRONMENT="$DESKTOP_ENVIRONMENT"')
    if dist.type == "desktop":
        exports.append("export DESKTOP_ENVIRONMENT_CONFIG_NAME=config_desktop")
    exports += [
        "export EXPERT=yes",
        "export SHOW_WARNING=no",
        "export SHOW_LOG=yes",
    ]
    compile_args += ['SHOW_WARNING="$SHOW_WARNING"', 'SHOW_LOG="$SHOW_LOG"']

    lines = [
        "#!/bin/bash",
        "set -e",
        "",
        "# Armbian build options",
        f"echo {q(f'Starting Armbian build for {config.name}')}",
        f"echo {q(f'Board: {board.name} ({board.family})')}",
        f"echo {q(f'Distribution: {dist.release} {dist.type}')}",
        "",
        *exports,
        "",
        'cd "${ARMBIAN_BUILD_DIR:-/armbian}"',
        "./compile.sh \\",
        *[f"  {arg} \\" for arg in compile_args[:-1]],
        f"  {compile_args[-1]}",
        "",
    ]
    return "\n".join(lines)


def generate_package_commands(packages: PackagesSchema | None) -> str:
    """Generate apt commands for package removal and installation."""
    if packages is None or not (packages.install or packages.remove):
        return ""

    lines = ["# Package management"]
    if packages.remove:
        lines.append(f"apt-get remove -y {shlex.join(packages.remove)}")
        lines.append("apt-get autoremove -y")
    if packages.install:
        lines.append(
            f"DEBIAN_FRONTEND=noninteractive apt-get install -y {shlex.join(packages.install)}"
        )
    return "\n".join(lines) + "\n"


def generate_user_commands(users: list[UserSchema] | None) -> str:
    """Generate account creation commands."""
    if not users:
        return ""

    q = shlex.quote
    lines = ["# User accounts"]
    for user in users:
        name = user.username
        lines.append(f"id -u {q(name)} >/dev/null 2>&1 || useradd -m -s {q(user.shell)} {q(name)}")
        if user.password:
            lines.append(f"echo {q(f'{name}:{user.password}')} | chpasswd")
        if user.sudo:
            sudoers = f"/etc/sudoers.d/{name}"
            lines.append(f"usermod -aG sudo {q(name)}")
            lines.append(f"echo {q(f'{name} ALL=(ALL) NOPASSWD:ALL')} > {q(sudoers)}")
            lines.append(f"chmod 0440 {q(sudoers)}")
    return "\n".join(lines) + "\n"


def generate_ssh_commands(ssh: SSHSchema | None) -> str:
    """Generate sshd configuration commands."""
    if ssh is None:
        return ""

    lines = ["# SSH"]
    if not ssh.enabled:
        lines.append("systemctl disable ssh")
        return "\n".join(lines) + "\n"

    lines.append(f"cp {SSHD_CONFIG} {SSHD_CONFIG}.backup")
    if ssh.port != 22:
        lines.append(f"sed -i -E 's/^#?Port .*/Port {ssh.port}/' {SSHD_CONFIG}")
    if ssh.password_auth is not None:
        value = _yes_no(ssh.password_auth)
        lines.append(
            f"sed -i -E 's/^#?PasswordAuthentication .*/PasswordAuthentication {value}/' "
            f"{SSHD_CONFIG}"
        )
    if ssh.root_login is not None:
        value = _yes_no(ssh.root_login)
        lines.append(f"sed -i -E 's/^#?PermitRootLogin .*/PermitRootLogin {value}/' {SSHD_CONFIG}")
    lines.append("systemctl enable ssh")
    return "\n".join(lines) + "\n"


def _wpa_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def generate_network_commands(network: NetworkSchema | None) -> str:
    """Generate hostname and Wi-Fi configuration commands."""
    if network is None:
        return ""

    lines: list[str] = []
    if network.hostname:
        # hostname is validated to [A-Za-z0-9-], safe inside the sed expression
        host = network.hostname
        lines.append(f"echo {shlex.quote(host)} > /etc/hostname")
        lines.append(f"sed -i 's/^127\\.0\\.1\\.1.*/127.0.1.1\\t{host}/' /etc/hosts")

    wifi = network.wifi
    if wifi is not None and wifi.enabled and wifi.ssid:
        lines.append("mkdir -p /etc/wpa_supplicant")
        lines.append("cat > /etc/wpa_supplicant/wpa_supplicant.conf << 'BBOS_WPA_EOF'")
        lines.append("ctrl_interface=DIR=/var/run/wpa_supplicant GROUP=netdev")
        lines.append("update_config=1")
        if wifi.country:
            lines.append(f"country={wifi.country.upper()}")
        lines.append("")
        lines.append("network={")
        lines.append(f'    ssid="{_wpa_escape(wifi.ssid)}"')
        if wifi.psk:
            lines.append(f'    psk="{_wpa_escape(wifi.psk)}"')
        else:
            lines.append("    key_mgmt=NONE")
        lines.append("}")
        lines.append("BBOS_WPA_EOF")
        lines.append("chmod 0600 /etc/wpa_supplicant/wpa_supplicant.conf")

    if not lines:
        return ""
    return "# Network\n" + "\n".join(lines) + "\n"


def compose_customize_script(
    config: BuildConfiguration,
    package_commands: str,
    user_commands: str,
    ssh_commands: str,
    network_commands: str,
) -> str:
    """Compose the section commands into one customization script."""
    if not config.has_customization:
        return ""

    sections = [
        s for s in (package_commands, user_commands, ssh_commands, network_commands) if s
    ]
    parts = [
        "#!/bin/bash",
        "# Armbian image customization",
        "set -e",
        "",
        'echo "Running BBOS customization..."',
        "apt-get update",
        "",
        *sections,
        "# Clean up",
        "apt-get clean",
        "rm -rf /var/lib/apt/lists/*",
        "",
        'echo "BBOS customization completed"',
        "",
    ]
    return "\n".join(parts)


def generate_armbian_config_script(config: BuildConfiguration) -> str:
    """Generate the armbian-config automation script."""
    q = shlex.quote
    lines = [
        "#!/bin/bash",
        "# armbian-config automation",
        "set -e",
        "",
        'echo "Starting BBOS Armbian configuration..."',
        "",
    ]

    network = config.network
    if network is not None and network.hostname:
        lines.append(f"armbian-config --cmd NET000 --hostname {q(network.hostname)}")
    if network is not None and network.wifi is not None and network.wifi.ssid:
        wifi = network.wifi
        cmd = f"armbian-config --cmd NET001 --ssid {q(wifi.ssid)}"
        if wifi.psk:
            cmd += f" --psk {q(wifi.psk)}"
        lines.append(cmd)

    ssh = config.ssh
    if ssh is not None:
        if ssh.enabled:
            lines.append("armbian-config --cmd SYS001 --enable-ssh")
            if ssh.port != 22:
                lines.append(f"armbian-config --cmd SYS002 --ssh-port {ssh.port}")
        else:
            lines.append("armbian-config --cmd SYS001 --disable-ssh")

    packages = config.packages
    if packages is not None and packages.install:
        lines.append("apt-get update")
        lines.append(f"apt-get install -y {shlex.join(packages.install)}")
    if packages is not None and packages.remove:
        lines.append(f"apt-get remove -y {shlex.join(packages.remove)}")

    lines += ["", 'echo "BBOS Armbian configuration completed"', ""]
    return "\n".join(lines)


def generate_user_data(config: BuildConfiguration) -> str:
    """Generate the cloud-init user-data document.

    Passwords are not placed here; they are set by the customization script
    through chpasswd.
    """
    hostname = (config.network.hostname if config.network else None) or DEFAULT_HOSTNAME
    doc: dict[str, object] = {
        "hostname": hostname,
        "manage_etc_hosts": True,
    }

    if config.users:
        doc["users"] = [
            {
                "name": user.username,
                "sudo": "ALL=(ALL) NOPASSWD:ALL" if user.sudo else False,
                "shell": user.shell,
                "lock_passwd": not user.password,
            }
            for user in config.users
        ]

    if config.ssh is not None and config.ssh.enabled:
        if config.ssh.password_auth is not None:
            doc["ssh_pwauth"] = config.ssh.password_auth
        if config.ssh.root_login is not None:
            doc["disable_root"] = not config.ssh.root_login

    if config.packages is not None:
        if config.packages.install:
            doc["packages"] = list(config.packages.install)
        if config.packages.remove:
            doc["package_removal"] = list(config.packages.remove)

    doc["runcmd"] = [
        'echo "BBOS: Starting first boot configuration..."',
        f"{INSTALL_DIR}/{ARMBIAN_CONFIG_SCRIPT}",
        'echo "BBOS: First boot configuration completed"',
    ]

    return "#cloud-config\n" + yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def config_digest(config: BuildConfiguration) -> str:
    """Return a stable SHA-256 digest of a configuration."""
    payload = config.model_dump_json(exclude_none=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def generate_meta_data(config: BuildConfiguration) -> str:
    """Generate cloud-init meta-data with a content-derived instance id."""
    hostname = (config.network.hostname if config.network else None) or DEFAULT_HOSTNAME
    return f"instance-id: bbos-armbian-{config_digest(config)[:16]}\nlocal-hostname: {hostname}\n"


def generate_firstboot_script(config: BuildConfiguration) -> str:
    """Generate the one-shot first boot script.

    The script runs the customization, then armbian-config automation when
    cloud-init is not installed to do it, then any extra commands. Its unit
    is disabled and removed from an EXIT trap, so a failing step does not
    make it run again on the next boot.
    """
    lines = [
        "#!/bin/bash",
        "# One-shot first boot configuration",
        "set -e",
        "exec >>/var/log/bbos-firstboot.log 2>&1",
        "",
        "remove_unit() {",
        f"  systemctl disable {FIRSTBOOT_UNIT_NAME} || true",
        f"  rm -f /etc/systemd/system/{FIRSTBOOT_UNIT_NAME}",
        f"  rm -f /etc/systemd/system/multi-user.target.wants/{FIRSTBOOT_UNIT_NAME}",
        '  rm -f "$0"',
        "}",
        "trap remove_unit EXIT",
        "",
        f"if [ -x {INSTALL_DIR}/{CUSTOMIZE_SCRIPT} ]; then",
        f"  {INSTALL_DIR}/{CUSTOMIZE_SCRIPT}",
        "fi",
        "",
        "if ! command -v cloud-init >/dev/null 2>&1; then",
        f"  if [ -x {INSTALL_DIR}/{ARMBIAN_CONFIG_SCRIPT} ]; then",
        f"    {INSTALL_DIR}/{ARMBIAN_CONFIG_SCRIPT}",
        "  fi",
        "fi",
        "",
    ]
    if config.scripts is not None and config.scripts.first_boot:
        lines.append("# Extra first boot commands")
        lines.extend(config.scripts.first_boot)
        lines.append("")
    return "\n".join(lines)


def generate_firstboot_unit() -> str:
    """Generate the systemd unit that runs the first boot script once."""
    return "\n".join(
        [
            "[Unit]",
            "Description=BBOS first boot configuration",
            "After=network-online.target",
            "Wants=network-online.target",
            f"ConditionPathExists={INSTALL_DIR}/{FIRSTBOOT_SCRIPT}",
            "",
            "[Service]",
            "Type=oneshot",
            f"ExecStart={INSTALL_DIR}/{FIRSTBOOT_SCRIPT}",
            "StandardOutput=journal+console",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
    )


def generate_packages_list(packages: PackagesSchema | None) -> str:
    """Generate a newline list of packages to install and remove."""
    if packages is None or not (packages.install or packages.remove):
        return ""
    lines: list[str] = []
    if packages.install:
        lines.append("# install")
        lines.extend(packages.install)
    if packages.remove:
        lines.append("# remove")
        lines.extend(packages.remove)
    return "\n".join(lines) + "\n"


def generate_scripts(config: BuildConfiguration) -> CustomizationScripts:
    """Generate all customization scripts for a configuration.

    Args:
        config: Validated build configuration.

    Returns:
        CustomizationScripts with every generated document.
    """
    package_commands = generate_package_commands(config.packages)
    user_commands = generate_user_commands(config.users)
    ssh_commands = generate_ssh_commands(config.ssh)
    network_commands = generate_network_commands(config.network)

    return CustomizationScripts(
        build_script=generate_build_script(config),
        package_commands=package_commands,
        user_commands=user_commands,
        ssh_commands=ssh_commands,
        network_commands=network_commands,
        customize_script=compose_customize_script(
            config, package_commands, user_commands, ssh_commands, network_commands
        ),
        armbian_config_script=generate_armbian_config_script(config),
        user_data=generate_user_data(config),
        meta_data=generate_meta_data(config),
        firstboot_script=generate_firstboot_script(config),
        firstboot_unit=generate_firstboot_unit(),
        packages_list=generate_packages_list(config.packages),
    )


__all__ = [
    "ARMBIAN_CONFIG_SCRIPT",
    "BRANCH_MAP",
    "BUILD_SCRIPT",
    "CUSTOMIZE_SCRIPT",
    "CustomizationScripts",
    "FIRSTBOOT_SCRIPT",
    "FIRSTBOOT_UNIT_NAME",
    "INSTALL_DIR",
    "META_DATA",
    "PACKAGES_LIST",
    "USER_DATA",
    "branch_for_family",
    "config_digest",
    "generate_scripts",
]
