"""Tests for settings loading and validation."""

import json

import pytest

from kiosk_sync.config import KioskSettings, load_settings, parse_duration
from kiosk_sync.services.errors import ConfigError


@pytest.mark.parametrize("value,expected", [
    ("30s", 30000),
    ("5m", 300000),
    ("1h", 3600000),
    ("1d", 86400000),
    (2000, 2000),
    (" 10s ", 10000),
])
def test_parse_duration(value, expected) -> None:
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["10", "5 minutes", "1w", True, ""])
def test_parse_duration_rejects(value) -> None:
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_defaults_are_valid() -> None:
    settings = KioskSettings()
    assert settings.validate() == []
    assert settings.sync_url == "http://localhost:8000/api/submit-survey"
    assert settings.max_retries == 3
    assert settings.retry_delay_ms == 2000
    assert settings.store_capacity_bytes == 5 * 1024 * 1024


def test_from_dict_parses_durations_and_ignores_unknown_keys() -> None:
    settings = KioskSettings.from_dict({
        "sync_interval_ms": "12h",
        "throttle_ms": "5m",
        "hardware_port": "/dev/ttyUSB0",
    })
    assert settings.sync_interval_ms == 43200000
    assert settings.throttle_ms == 300000
    assert not hasattr(settings, "hardware_port")


def test_absolute_endpoints_are_kept() -> None:
    settings = KioskSettings(server_url="http://a.test/", analytics_endpoint="https://b.test/analytics")
    assert settings.analytics_url == "https://b.test/analytics"
    assert settings.sync_url == "http://a.test/api/submit-survey"


def test_validate_errors() -> None:
    with pytest.raises(ConfigError, match="kiosk_id is required"):
        KioskSettings(kiosk_id="").validate()
    with pytest.raises(ConfigError, match="max_retries"):
        KioskSettings(max_retries=0).validate()


def test_validate_rejects_zero_intervals() -> None:
    with pytest.raises(ConfigError, match="sync_interval_ms must be positive"):
        KioskSettings.from_dict({"sync_interval_ms": "0s"}).validate()
    with pytest.raises(ConfigError, match="connectivity_check_interval_ms must be positive"):
        KioskSettings(connectivity_check_interval_ms=-1).validate()


def test_validate_warnings() -> None:
    warnings = KioskSettings(sync_interval_ms=1000, queue_warning_threshold=2000).validate()
    assert len(warnings) == 2


def test_load_settings_with_env_overrides(tmp_path, monkeypatch) -> None:
    settings_file = tmp_path / "settings.json"
    settings_file.write_text(json.dumps({"kiosk_id": "FROM-FILE", "kiosk_port": 9000, "throttle_ms": "1m"}))
    env_file = tmp_path / "secrets.env"
    env_file.write_text("# local overrides\nKIOSK_ID=FROM-ENV-FILE\nKIOSK_BRIDGE_PORT='9100'\n")
    # Registered so monkeypatch restores them after the env file writes them.
    monkeypatch.setenv("KIOSK_ID", "placeholder")
    monkeypatch.setenv("KIOSK_BRIDGE_PORT", "0")
    monkeypatch.delenv("KIOSK_SERVER_URL", raising=False)
    monkeypatch.delenv("KIOSK_DATA_DIR", raising=False)
    monkeypatch.delenv("KIOSK_LOG_LEVEL", raising=False)
    monkeypatch.delenv("KIOSK_PORT", raising=False)

    settings = load_settings(settings_file, env_file)

    assert settings.kiosk_id == "FROM-ENV-FILE"
    assert settings.kiosk_port == 9000
    assert settings.bridge_port == 9100
    assert settings.throttle_ms == 60000


def test_load_settings_missing_file_uses_defaults(tmp_path, monkeypatch) -> None:
    for key in ("KIOSK_ID", "KIOSK_SERVER_URL", "KIOSK_DATA_DIR", "KIOSK_LOG_LEVEL", "KIOSK_PORT", "KIOSK_BRIDGE_PORT"):
        monkeypatch.delenv(key, raising=False)

    settings = load_settings(tmp_path / "missing.json", tmp_path / "missing.env")

    assert settings.kiosk_id == "KIOSK-001"


def test_load_settings_bad_json(tmp_path) -> None:
    bad = tmp_path / "settings.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        load_settings(bad, tmp_path / "missing.env")
