"""
Tests for configuration loading and environment overrides.
"""

import json
import logging

import config
from config import CONFIG, load_config


class TestLoadConfig:
    def test_env_override(self, monkeypatch):
        monkeypatch.setitem(CONFIG, "LOG_LEVEL", "INFO")
        monkeypatch.setenv("MINIPC_LOG_LEVEL", "DEBUG")
        assert load_config()["LOG_LEVEL"] == "DEBUG"

    def test_file_values(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"DEFAULT_DISK_GB": 64}))
        monkeypatch.setattr(config, "CONFIG_FILE", str(path))
        monkeypatch.setitem(CONFIG, "DEFAULT_DISK_GB", 32)
        assert load_config()["DEFAULT_DISK_GB"] == 64

    def test_broken_file_keeps_defaults(self, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")
        monkeypatch.setattr(config, "CONFIG_FILE", str(path))
        monkeypatch.setitem(CONFIG, "DEFAULT_DISK_GB", 32)
        assert load_config()["DEFAULT_DISK_GB"] == 32


class TestSetupLogging:
    def test_level_applied_to_package_logger(self, monkeypatch, tmp_path):
        monkeypatch.setitem(CONFIG, "LOG_DIR", str(tmp_path))
        logger = config.setup_logging("debug")
        assert logger.name == "minipc"
        assert logger.level == logging.DEBUG
