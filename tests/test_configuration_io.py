"""Tests for build configuration loading and saving."""

import json

import pytest
from pydantic import ValidationError

from armbian_imagegen.configuration.io import (
    load_configuration,
    load_json,
    load_yaml,
    save_configuration,
)

YAML_CONFIG = """\
name: Rock 5B server
board:
  family: rockchip-rk3588
  name: rock-5b
  architecture: arm64
distribution:
  release: bookworm
  type: server
network:
  hostname: node-1
packages:
  install: [htop]
"""


class TestLoad:
    """Tests for loading configuration files."""

    def test_load_yaml_configuration(self, tmp_path):
        """YAML files are parsed and validated."""
        path = tmp_path / "config.yaml"
        path.write_text(YAML_CONFIG)

        config = load_configuration(path)

        assert config.name == "Rock 5B server"
        assert config.network.hostname == "node-1"
        assert config.packages.install == ["htop"]

    def test_load_json_configuration(self, tmp_path, full_config):
        """.json files are parsed as JSON."""
        path = tmp_path / "config.json"
        path.write_text(full_config.model_dump_json())

        assert load_configuration(path) == full_config

    def test_load_yaml_empty_file(self, tmp_path):
        """An empty YAML file is an empty mapping."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_load_yaml_rejects_list(self, tmp_path):
        """Top-level YAML must be a mapping."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_yaml(path)

    def test_load_json_rejects_list(self, tmp_path):
        """Top-level JSON must be an object."""
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_json(path)

    def test_invalid_configuration(self, tmp_path):
        """Schema violations raise ValidationError."""
        path = tmp_path / "bad.yaml"
        path.write_text("name: x\n")
        with pytest.raises(ValidationError):
            load_configuration(path)


class TestSave:
    """Tests for save_configuration."""

    def test_save_round_trip(self, tmp_path, full_config):
        """Saved configurations load back unchanged."""
        path = save_configuration(full_config, tmp_path / "nested" / "config.json")

        assert load_configuration(path) == full_config

    def test_save_omits_none(self, tmp_path, minimal_config):
        """Unset optional sections are not written."""
        path = save_configuration(minimal_config, tmp_path / "config.json")
        data = json.loads(path.read_text())

        assert "network" not in data
        assert data["distribution"]["type"] == "minimal"
