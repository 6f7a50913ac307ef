"""Tests for process-wide settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from release_spine.core.settings import ReleaseSettings, get_settings, reset_settings


class TestReleaseSettings:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RELEASE_SPINE_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("RELEASE_SPINE_LOCK_TIMEOUT_SECONDS", "12.5")
        settings = ReleaseSettings()

        assert settings.log_level == "WARNING"
        assert settings.lock_timeout_seconds == 12.5
        assert settings.state_dir == tmp_path / "state"

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RELEASE_SPINE_REPORT_DIR")
        settings = ReleaseSettings(_env_file=None)
        assert settings.report_dir == Path("release-results")
        assert settings.lock_timeout_seconds == 600.0
        assert settings.log_json is None

    def test_negative_lock_timeout_rejected(self):
        with pytest.raises(ValidationError):
            ReleaseSettings(lock_timeout_seconds=-1)


class TestGetSettings:
    def test_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("RELEASE_SPINE_LOG_LEVEL", "ERROR")
        reset_settings()
        assert get_settings() is not first
        assert get_settings().log_level == "ERROR"
