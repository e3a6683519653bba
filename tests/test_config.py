"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from armbian_imagegen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.build_dir == Path("/tmp") / "bbos-builds"
        assert settings.cache_dir == Path.home() / ".cache" / "armbian-imagegen" / "images"
        assert settings.offline is False
        assert settings.log_level == "INFO"
        assert settings.device_check_cooldown == 5.0
        assert settings.compression_threshold_bytes == 100 * 1024 * 1024
        assert settings.loader_settle_seconds == 2.0
        assert settings.write_timeout == 600.0

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "ARMBIAN_IMG_OFFLINE": "true",
                "ARMBIAN_IMG_LOG_LEVEL": "DEBUG",
                "ARMBIAN_IMG_DEVICE_CHECK_COOLDOWN": "1.5",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.device_check_cooldown == 1.5

    def test_settings_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"ARMBIAN_IMG_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_write_timeout_minimum(self) -> None:
        """Write timeouts shorter than a minute are rejected."""
        with pytest.raises(ValidationError):
            Settings(write_timeout=10)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "cache_dir" in parsed
        assert "rkdeveloptool_path" in parsed
        assert "compression_threshold_bytes" in parsed
