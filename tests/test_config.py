"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from emcomm_isogen.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.cache_dir == Path.home() / ".cache" / "emcomm-isogen"
        assert "sqlite" in settings.db_url
        assert settings.offline is False
        assert settings.keep_work is False
        assert settings.log_level == "INFO"
        assert settings.fetch_retries == 3
        assert settings.squashfs_compression == "xz"
        assert settings.installer_marker == "opt/emcomm-tools"
        assert settings.base_image_url.endswith("ubuntu-22.10-desktop-amd64.iso")

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "EMCOMM_ISO_OFFLINE": "true",
                "EMCOMM_ISO_LOG_LEVEL": "DEBUG",
                "EMCOMM_ISO_FETCH_RETRIES": "5",
                "EMCOMM_ISO_KEEP_WORK": "1",
            },
        ):
            settings = Settings()
            assert settings.offline is True
            assert settings.log_level == "DEBUG"
            assert settings.fetch_retries == 5
            assert settings.keep_work is True

    def test_paths_from_env(self) -> None:
        """Directories should be configurable via env."""
        with patch.dict(
            os.environ,
            {
                "EMCOMM_ISO_CACHE_DIR": "/tmp/test-cache",
                "EMCOMM_ISO_WORK_DIR": "/tmp/test-work",
                "EMCOMM_ISO_PREVIOUS_STATE_ROOT": "/home/old",
            },
        ):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")
            assert settings.work_dir == Path("/tmp/test-work")
            assert settings.previous_state_root == Path("/home/old")

    def test_rejects_out_of_range_retries(self) -> None:
        with pytest.raises(ValidationError):
            Settings(fetch_retries=0)

    def test_rejects_unknown_compression(self) -> None:
        with pytest.raises(ValidationError):
            Settings(squashfs_compression="bzip2")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "cache_dir" in parsed
        assert "work_dir" in parsed
        assert "github_repo" in parsed
        assert parsed["offline"] is False
