"""
Unit Tests: Settings

Test cases:
- defaults match the monitor's documented timings
- DOCREPO_ environment variables override defaults (nested with __)
- YAML overlay merges the monitor section and top-level keys
- invalid URLs and timings are rejected
"""

import pytest
from pydantic import ValidationError

from docrepo.config import MonitorConfig, Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "DOCREPO_MONGODB_URL",
        "DOCREPO_MONITOR__INTERVAL_SECONDS",
        "DOCREPO_MONITOR__ENABLED",
        "DOCREPO_CONFIG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings()

    assert settings.mongodb_url == "mongodb://localhost:27017"
    assert settings.monitor.enabled is True
    assert settings.monitor.ping_timeout_seconds == 5.0
    assert settings.monitor.interval_seconds == 10.0
    assert settings.client_options() == {"serverSelectionTimeoutMS": 5000}


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DOCREPO_MONGODB_URL", "mongodb+srv://cluster.example")
    monkeypatch.setenv("DOCREPO_MONITOR__INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("DOCREPO_MONITOR__ENABLED", "false")

    settings = Settings()

    assert settings.mongodb_url == "mongodb+srv://cluster.example"
    assert settings.monitor.interval_seconds == 2.5
    assert settings.monitor.enabled is False


def test_yaml_overlay(tmp_path):
    config_file = tmp_path / "docrepo.yaml"
    config_file.write_text(
        "mongodb_url: mongodb://db.internal:27017\n"
        "server_selection_timeout_ms: 1500\n"
        "monitor:\n"
        "  interval_seconds: 30\n"
    )
    settings = Settings(config_file=config_file)

    settings.load_yaml_config()

    assert settings.mongodb_url == "mongodb://db.internal:27017"
    assert settings.client_options() == {"serverSelectionTimeoutMS": 1500}
    assert settings.monitor.interval_seconds == 30
    assert settings.monitor.ping_timeout_seconds == 5.0


def test_missing_or_empty_yaml_keeps_defaults(tmp_path):
    settings = Settings(config_file=tmp_path / "absent.yaml")
    settings.load_yaml_config()
    assert settings.monitor == MonitorConfig()

    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    settings = Settings(config_file=empty)
    settings.load_yaml_config()
    assert settings.mongodb_url == "mongodb://localhost:27017"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings(mongodb_url="http://localhost:27017")
    with pytest.raises(ValidationError):
        MonitorConfig(interval_seconds=0)
    with pytest.raises(ValidationError):
        MonitorConfig(ping_timeout_seconds=-1)
