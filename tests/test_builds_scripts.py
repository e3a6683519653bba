"""Tests for customization script generation."""

import shlex

import yaml

from armbian_imagegen.builds.scripts import (
    ARMBIAN_CONFIG_SCRIPT,
    BUILD_SCRIPT,
    CUSTOMIZE_SCRIPT,
    FIRSTBOOT_UNIT_NAME,
    META_DATA,
    USER_DATA,
    branch_for_family,
    config_digest,
    generate_scripts,
)
from armbian_imagegen.configuration.schema import BuildConfiguration


class TestBuildScript:
    """Tests for the compile.sh options script."""

    def test_exports_board_branch_release(self, minimal_config):
        """Board, branch and release are exported before compile.sh runs."""
        script = generate_scripts(minimal_config).build_script

        assert script.startswith("#!/bin/bash\n")
        assert "export BOARD=rock-5b" in script
        assert "export BRANCH=current" in script
        assert "export RELEASE=bookworm" in script
        assert "export BUILD_MINIMAL=yes" in script
        assert "export BUILD_DESKTOP=no" in script
        assert script.index("export BOARD") < script.index("./compile.sh")

    def test_branch_map(self):
        """Known families map to their branch, unknown ones to current."""
        assert branch_for_family("rk35xx") == "edge"
        assert branch_for_family("sunxi") == "current"
        assert branch_for_family("something-new") == "current"

    def test_desktop_environment(self, minimal_config):
        """Desktop images export the desktop environment."""
        config = minimal_config.model_copy(
            update={
                "distribution": minimal_config.distribution.model_copy(
                    update={"type": "desktop", "desktop": "xfce"}
                )
            }
        )
        script = generate_scripts(config).build_script

        assert "export BUILD_DESKTOP=yes" in script
        assert "export DESKTOP_ENVIRONMENT=xfce" in script
        assert 'DESKTOP_ENVIRONMENT="$DESKTOP_ENVIRONMENT"' in script


class TestCustomizeScript:
    """Tests for the composed customization script."""

    def test_empty_without_customization(self, minimal_config):
        """No customization sections means no customization script."""
        scripts = generate_scripts(minimal_config)

        assert scripts.customize_script == ""
        assert scripts.package_commands == ""
        assert scripts.user_commands == ""
        assert CUSTOMIZE_SCRIPT not in scripts.files()

    def test_sections_present(self, full_config):
        """Every configured section contributes commands."""
        script = generate_scripts(full_config).customize_script

        assert script.startswith("#!/bin/bash\n")
        assert "set -e" in script
        assert "apt-get remove -y nano" in script
        assert "apt-get install -y htop vim" in script
        assert "useradd -m -s /bin/bash admin" in script
        assert "usermod -aG sudo admin" in script
        assert "Port 2222" in script
        assert "PasswordAuthentication no" in script
        assert "PermitRootLogin no" in script
        assert "echo lab-node-1 > /etc/hostname" in script

    def test_password_is_quoted(self, full_config):
        """Passwords with shell metacharacters are passed as one quoted word."""
        script = generate_scripts(full_config).customize_script

        quoted = shlex.quote("admin:pa'ss")
        assert f"echo {quoted} | chpasswd" in script

    def test_wifi_configuration(self, full_config):
        """Wi-Fi settings land in wpa_supplicant.conf."""
        script = generate_scripts(full_config).customize_script

        assert 'ssid="Lab Net"' in script
        assert 'psk="s3cret pass"' in script
        assert "country=DE" in script

    def test_ssh_disabled(self, minimal_config):
        """A disabled SSH section disables the service."""
        data = minimal_config.model_dump()
        data["ssh"] = {"enabled": False}
        config = BuildConfiguration.model_validate(data)
        scripts = generate_scripts(config)

        assert "systemctl disable ssh" in scripts.ssh_commands
        assert "sshd_config" not in scripts.ssh_commands


class TestArmbianConfigScript:
    """Tests for the armbian-config automation script."""

    def test_values_are_quoted(self, full_config):
        """User values containing spaces are shell-quoted."""
        script = generate_scripts(full_config).armbian_config_script

        assert "--hostname lab-node-1" in script
        assert "--ssid 'Lab Net'" in script
        assert "--psk 's3cret pass'" in script
        assert "--ssh-port 2222" in script

    def test_always_generated(self, minimal_config):
        """The automation script exists even without customization."""
        files = generate_scripts(minimal_config).files()

        assert ARMBIAN_CONFIG_SCRIPT in files
        assert files[ARMBIAN_CONFIG_SCRIPT][1] == 0o755


class TestCloudInit:
    """Tests for cloud-init documents."""

    def test_user_data_is_cloud_config(self, full_config):
        """user-data is a #cloud-config YAML document."""
        user_data = generate_scripts(full_config).user_data

        assert user_data.startswith("#cloud-config\n")
        doc = yaml.safe_load(user_data)
        assert doc["hostname"] == "lab-node-1"
        assert doc["users"][0]["name"] == "admin"
        assert doc["ssh_pwauth"] is False
        assert doc["packages"] == ["htop", "vim"]
        assert "pa'ss" not in user_data

    def test_default_hostname(self, minimal_config):
        """Configurations without a hostname get the default."""
        doc = yaml.safe_load(generate_scripts(minimal_config).user_data)
        assert doc["hostname"] == "armbian-bbos"

    def test_meta_data_instance_id(self, full_config, minimal_config):
        """meta-data carries an instance id derived from the configuration."""
        meta = generate_scripts(full_config).meta_data

        assert f"instance-id: bbos-armbian-{config_digest(full_config)[:16]}" in meta
        assert "local-hostname: lab-node-1" in meta
        assert meta != generate_scripts(minimal_config).meta_data


class TestFirstboot:
    """Tests for the first boot script and unit."""

    def test_extra_commands(self, full_config):
        """Extra commands follow the customization steps."""
        script = generate_scripts(full_config).firstboot_script

        assert "echo hello > /root/hello" in script
        assert script.index(f"/opt/bbos/{CUSTOMIZE_SCRIPT}") < script.index("echo hello")

    def test_self_removal_runs_on_any_exit(self, full_config):
        """The unit removes itself from an EXIT trap set before any step runs."""
        script = generate_scripts(full_config).firstboot_script

        assert f"  systemctl disable {FIRSTBOOT_UNIT_NAME} || true" in script
        assert '  rm -f "$0"' in script
        trap = script.index("trap remove_unit EXIT")
        assert script.index("set -e") < trap
        assert trap < script.index(f"/opt/bbos/{CUSTOMIZE_SCRIPT}")
        assert trap < script.index("echo hello")

    def test_unit(self, minimal_config):
        """The unit is a oneshot service."""
        unit = generate_scripts(minimal_config).firstboot_unit

        assert "Type=oneshot" in unit
        assert "ExecStart=/opt/bbos/firstboot.sh" in unit


class TestGenerateScripts:
    """Tests for generate_scripts as a whole."""

    def test_deterministic(self, full_config):
        """The same configuration always yields the same scripts."""
        assert generate_scripts(full_config) == generate_scripts(full_config.snapshot())

    def test_files_modes(self, full_config):
        """Scripts are executable, documents are not."""
        files = generate_scripts(full_config).files()

        assert files[BUILD_SCRIPT][1] == 0o755
        assert files[CUSTOMIZE_SCRIPT][1] == 0o755
        assert files[USER_DATA][1] == 0o644
        assert files[META_DATA][1] == 0o644
