from __future__ import annotations

from pathlib import Path

import pytest

from thermoctl.core.config import Settings, config_path, default_ledger_path, load_settings
from thermoctl.core.errors import ConfigError


def _write_config(content: str) -> Path:
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults_without_config_file() -> None:
    settings = load_settings()
    assert settings == Settings()
    assert settings.operating_timezone == "Europe/Skopje"
    assert settings.default_timezone == "Asia/Jerusalem"
    assert settings.resend_wait_s == 5.0


def test_config_file_is_read(tmp_path: Path) -> None:
    _write_config(
        f"""
gateway:
  host: gw.local
  port: 9000
timezones:
  default: UTC
dispatch:
  command_stagger_s: 0.5
ledger_path: {tmp_path / "ledger.db"}
"""
    )

    settings = load_settings()

    assert settings.gateway_host == "gw.local"
    assert settings.gateway_port == 9000
    assert settings.default_timezone == "UTC"
    assert settings.operating_timezone == "Europe/Skopje"
    assert settings.command_stagger_s == 0.5
    assert settings.ledger_path == tmp_path / "ledger.db"


def test_empty_config_file_uses_defaults() -> None:
    _write_config("")
    assert load_settings() == Settings()


def test_environment_overrides_file(monkeypatch: pytest.MonkeyPatch) -> None:
    _write_config("gateway:\n  host: gw.local\n")
    monkeypatch.setenv("THERMOCTL_GATEWAY_HOST", "10.9.9.9")
    monkeypatch.setenv("THERMOCTL_GATEWAY_PORT", "7000")
    monkeypatch.setenv("THERMOCTL_DEFAULT_TIMEZONE", "Europe/Berlin")

    settings = load_settings()

    assert settings.gateway_host == "10.9.9.9"
    assert settings.gateway_port == 7000
    assert settings.default_timezone == "Europe/Berlin"


def test_bad_port_in_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("THERMOCTL_GATEWAY_PORT", "eighty")
    with pytest.raises(ConfigError, match="THERMOCTL_GATEWAY_PORT"):
        load_settings()


def test_unknown_key_rejected() -> None:
    _write_config("gateway:\n  hots: gw.local\n")
    with pytest.raises(ConfigError, match="gateway"):
        load_settings()


def test_duplicate_key_rejected() -> None:
    _write_config("generation: generation1\ngeneration: generation2\n")
    with pytest.raises(ConfigError, match="Duplicate key"):
        load_settings()


def test_non_mapping_rejected(tmp_path: Path) -> None:
    path = tmp_path / "other.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_settings(path)


def test_ledger_defaults_to_xdg_data_home(tmp_path: Path) -> None:
    expected = tmp_path / "data" / "thermoctl" / "ledger.sqlite3"

    assert default_ledger_path() == expected
    assert load_settings().ledger_path == expected

    _write_config("gateway:\n  port: 7001\n")
    assert load_settings().ledger_path == expected
