"""Tests for settings loading and validation."""

import os

import pytest
from pathlib import Path

from patchgate.config import GateSettings, load_settings, read_config_file
from patchgate.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep PATCHGATE_* variables from the host out of these tests."""
    for key in list(os.environ):
        if key.startswith("PATCHGATE_"):
            monkeypatch.delenv(key)


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        settings = load_settings()
        assert settings.poll_interval == 300
        assert settings.lead_time == 0
        assert settings.max_wait is None
        assert settings.max_attempts == 3
        assert settings.retry_delay == 60
        assert settings.force is False
        assert settings.log_level == "INFO"
        assert settings.rule_patterns == []

    def test_settings_are_frozen(self):
        settings = load_settings()
        with pytest.raises(Exception):
            settings.poll_interval = 10

    def test_effective_winrm_port(self):
        assert load_settings().effective_winrm_port == 5985
        assert load_settings(overrides={"winrm_use_ssl": True}).effective_winrm_port == 5986
        assert load_settings(overrides={"winrm_port": 15985}).effective_winrm_port == 15985


class TestPrecedence:
    """defaults < environment < config file < command line."""

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("PATCHGATE_POLL_INTERVAL", "60")
        assert load_settings().poll_interval == 60

    def test_file_over_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PATCHGATE_POLL_INTERVAL", "60")
        config = tmp_path / "patchgate.yaml"
        config.write_text("poll_interval: 120\n")
        assert load_settings(config).poll_interval == 120

    def test_overrides_over_file(self, tmp_path):
        config = tmp_path / "patchgate.yaml"
        config.write_text("poll_interval: 120\nlead_time: 600\n")
        settings = load_settings(config, {"poll_interval": 30, "lead_time": None})
        assert settings.poll_interval == 30
        # None means "flag not given"
        assert settings.lead_time == 600

    def test_rule_patterns_from_environment(self, monkeypatch):
        monkeypatch.setenv("PATCHGATE_RULE_PATTERNS", "Workstations*, Servers*")
        assert load_settings().rule_patterns == ["Workstations*", "Servers*"]

    def test_password_is_secret(self, monkeypatch):
        monkeypatch.setenv("PATCHGATE_WINRM_PASSWORD", "hunter2")
        settings = load_settings()
        assert settings.winrm_password.get_secret_value() == "hunter2"
        assert "hunter2" not in repr(settings)


class TestConfigFiles:
    """YAML and INI files."""

    def test_ini_section(self, tmp_path):
        config = tmp_path / "patchgate.ini"
        config.write_text(
            "[patchgate]\n"
            "wsus-server = wsus01\n"
            "rule_patterns = Pilot*,Production*\n"
            "max_attempts = 5\n"
            "task_name = \\Patching\\100%% Export\n"
        )
        settings = load_settings(config)
        assert settings.wsus_server == "wsus01"
        assert settings.rule_patterns == ["Pilot*", "Production*"]
        assert settings.max_attempts == 5
        # No interpolation: %% stays as written
        assert settings.task_name == "\\Patching\\100%% Export"

    def test_ini_without_section(self, tmp_path):
        config = tmp_path / "patchgate.ini"
        config.write_text("[other]\nkey = value\n")
        with pytest.raises(ConfigError):
            read_config_file(config)

    def test_yaml_list_patterns(self, tmp_path):
        config = tmp_path / "patchgate.yml"
        config.write_text("rule_patterns:\n  - Pilot*\n  - Production*\n")
        assert load_settings(config).rule_patterns == ["Pilot*", "Production*"]

    def test_empty_yaml(self, tmp_path):
        config = tmp_path / "patchgate.yaml"
        config.write_text("")
        assert read_config_file(config) == {}

    def test_yaml_not_a_mapping(self, tmp_path):
        config = tmp_path / "patchgate.yaml"
        config.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            read_config_file(config)

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / "patchgate.yaml"
        config.write_text("poll_interval: [unclosed\n")
        with pytest.raises(ConfigError):
            read_config_file(config)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_settings(tmp_path / "absent.yaml")


class TestValidation:
    """Invalid values become ConfigError."""

    def test_unknown_key(self, tmp_path):
        config = tmp_path / "patchgate.yaml"
        config.write_text("poll_intervall: 10\n")
        with pytest.raises(ConfigError) as exc_info:
            load_settings(config)
        assert "poll_intervall" in str(exc_info.value)

    def test_zero_poll_interval(self):
        with pytest.raises(ConfigError):
            load_settings(overrides={"poll_interval": 0})

    def test_zero_max_attempts(self):
        with pytest.raises(ConfigError):
            load_settings(overrides={"max_attempts": 0})

    def test_bad_log_level(self):
        with pytest.raises(ConfigError):
            load_settings(overrides={"log_level": "chatty"})

    def test_log_level_uppercased(self):
        assert load_settings(overrides={"log_level": "debug"}).log_level == "DEBUG"

    def test_bad_transport(self):
        with pytest.raises(ConfigError):
            load_settings(overrides={"winrm_transport": "telnet"})

    def test_every_problem_listed(self):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(overrides={"poll_interval": 0, "max_attempts": 0})
        message = str(exc_info.value)
        assert "poll_interval" in message
        assert "max_attempts" in message

    def test_direct_construction(self, tmp_path):
        settings = GateSettings(state_dir=tmp_path)
        assert settings.state_dir == Path(tmp_path)
