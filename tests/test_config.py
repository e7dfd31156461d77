"""Tests for StackRunSettings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from stackrun.config import GATEWAY_PORT, MAX_PORT, MIN_PORT, StackRunSettings


class TestDefaults:
    def test_port_range(self, tmp_path):
        settings = StackRunSettings(_env_file=None, home=tmp_path)
        assert (settings.min_port, settings.max_port) == (MIN_PORT, MAX_PORT) == (49152, 65535)
        assert settings.gateway_port == GATEWAY_PORT == 9001

    def test_derived_paths(self, tmp_path):
        settings = StackRunSettings(_env_file=None, home=tmp_path)
        assert settings.staging_dir == tmp_path / "staging"
        assert settings.log_dir == tmp_path / "logs"
        assert settings.template_dir == tmp_path / "templates"

    def test_explicit_paths_kept(self, tmp_path):
        settings = StackRunSettings(_env_file=None, home=tmp_path, log_dir=tmp_path / "elsewhere")
        assert settings.log_dir == tmp_path / "elsewhere"

    def test_misc_defaults(self, tmp_path):
        settings = StackRunSettings(_env_file=None, home=tmp_path)
        assert settings.provider == "local"
        assert settings.container_start_timeout == 2.0
        assert settings.volume_mount == "/stackrun/volume"

    def test_function_log_path(self, tmp_path):
        settings = StackRunSettings(_env_file=None, home=tmp_path)
        assert settings.function_log_path("api") == tmp_path / "logs" / "api.txt"


class TestValidation:
    def test_max_must_exceed_min(self, tmp_path):
        with pytest.raises(ValidationError, match="max_port"):
            StackRunSettings(_env_file=None, home=tmp_path, min_port=50000, max_port=50000)

    def test_timeout_must_be_positive(self, tmp_path):
        with pytest.raises(ValidationError):
            StackRunSettings(_env_file=None, home=tmp_path, container_start_timeout=0)


class TestEnvironment:
    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STACKRUN_PROVIDER", "aws")
        monkeypatch.setenv("STACKRUN_HOME", str(tmp_path))
        monkeypatch.setenv("STACKRUN_MIN_PORT", "50000")
        settings = StackRunSettings(_env_file=None)
        assert settings.provider == "aws"
        assert settings.home == Path(tmp_path)
        assert settings.min_port == 50000

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("STACKRUN_CONTAINER_START_TIMEOUT=5\n")
        settings = StackRunSettings(_env_file=env_file, home=tmp_path)
        assert settings.container_start_timeout == 5.0
