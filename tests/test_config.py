"""Tests for configuration, paths and logging setup."""
from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

import config.config as config_module
from config.config import AppConfig
from utils.logging_setup import configure_logging
from utils.project_paths import PROJECT_ROOT, resolve_path


@pytest.mark.unit
class TestAppConfig:
    """Tests for settings loading and validation."""

    def test_defaults(self):
        """Test defaults without any environment."""
        config = AppConfig(_env_file=None)
        assert config.device == "cpu"
        assert config.process_timeout_seconds == 600
        assert config.kill_grace_seconds == 5
        assert config.flux_schnell_steps == 4
        assert config.policy.runtime_factor == 1.5

    def test_env_aliases(self, monkeypatch):
        """Test SDCPP_* environment variables are read."""
        monkeypatch.setenv("SDCPP_DEVICE", "CUDA")
        monkeypatch.setenv("SDCPP_CUDA_VERSION", "11.8")
        monkeypatch.setenv("SDCPP_PROCESS_TIMEOUT", "120")
        config = AppConfig(_env_file=None)
        assert config.device == "cuda"
        assert config.device_key == "cuda11"
        assert config.process_timeout_seconds == 120

    def test_policy_from_env(self, monkeypatch):
        """Test policy tuning can be given as JSON."""
        monkeypatch.setenv("SDCPP_POLICY", '{"runtime_factor": 1.8, "tiling_max": 0.9}')
        config = AppConfig(_env_file=None)
        assert config.policy.runtime_factor == 1.8
        assert config.policy.tiling_max == 0.9

    def test_invalid_values(self):
        """Test unsupported devices, weight types and log levels are rejected."""
        with pytest.raises(ValidationError):
            AppConfig(_env_file=None, device="tpu")
        with pytest.raises(ValidationError):
            AppConfig(_env_file=None, weight_type="q9_9")
        with pytest.raises(ValidationError):
            AppConfig(_env_file=None, log_level="chatty")
        with pytest.raises(ValidationError):
            AppConfig(_env_file=None, process_timeout_seconds=0)

    def test_unknown_cuda_version(self):
        """Test an unknown CUDA version maps to the current major."""
        assert AppConfig(_env_file=None, device="cuda", cuda_version="13.0").device_key == "cuda12"
        assert AppConfig(_env_file=None, device="vulkan").device_key == "vulkan"

    def test_component_overrides(self):
        """Test only configured component paths are returned."""
        config = AppConfig(_env_file=None, vae_path="/m/ae.safetensors", t5xxl_path="/m/t5.safetensors")
        assert config.component_overrides() == {"vae": "/m/ae.safetensors", "t5xxl": "/m/t5.safetensors"}

    def test_config_issues(self, tmp_path):
        """Test non-fatal configuration problems are reported."""
        config = AppConfig(_env_file=None, executable_path=str(tmp_path / "sd-cli"), vae_on_cpu=True)
        issues = config.config_issues()
        assert len(issues) == 2
        assert AppConfig(_env_file=None).config_issues() == []

    def test_global_config(self, monkeypatch):
        """Test the global config is cached until reloaded."""
        monkeypatch.setattr(config_module, "_config", None)
        first = config_module.get_config()
        assert config_module.get_config() is first
        assert config_module.reload_config() is not first


@pytest.mark.unit
class TestPathsAndLogging:
    """Tests for path helpers and logging setup."""

    def test_resolve_path(self, tmp_path):
        """Test relative paths resolve against the project root."""
        assert resolve_path("Models") == PROJECT_ROOT / "Models"
        assert resolve_path(tmp_path) == tmp_path
        assert resolve_path("x", base_dir=tmp_path) == tmp_path / "x"

    def test_configure_logging_idempotent(self, tmp_path):
        """Test repeated setup does not stack handlers."""
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            configure_logging("DEBUG", str(tmp_path / "logs" / "sdcpp.log"))
            configure_logging("INFO")
            ours = [h for h in root.handlers if getattr(h, "_sdcpp_handler", False)]
            assert len(ours) == 1
            assert root.level == logging.INFO
            assert (tmp_path / "logs" / "sdcpp.log").exists()
        finally:
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
