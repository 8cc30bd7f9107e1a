"""Runtime configuration: packaged defaults, optional YAML file, environment overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from thermoctl.core.catalog import DEFAULT_GENERATION, UniqueKeyLoader
from thermoctl.core.errors import CatalogValidationError, ConfigError

LOGGER = logging.getLogger(__name__)

ENV_GATEWAY_HOST = "THERMOCTL_GATEWAY_HOST"
ENV_GATEWAY_PORT = "THERMOCTL_GATEWAY_PORT"
ENV_DEFAULT_TIMEZONE = "THERMOCTL_DEFAULT_TIMEZONE"
ENV_LEDGER = "THERMOCTL_LEDGER"


def default_ledger_path() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "thermoctl/ledger.sqlite3"


@dataclass(frozen=True)
class Settings:
    generation: str = DEFAULT_GENERATION
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8000
    connect_timeout_s: float = 3.0
    operating_timezone: str = "Europe/Skopje"
    default_timezone: str = "Asia/Jerusalem"
    command_stagger_s: float = 1.0
    resend_wait_s: float = 5.0
    ledger_path: Path | None = field(default_factory=default_ledger_path)


def config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "thermoctl/config.yaml"


def _load_schema_validator() -> Any:
    schema_text = resources.files("thermoctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _from_document(doc: dict[str, Any], source: Path) -> Settings:
    try:
        _load_schema_validator().validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigError(f"Invalid configuration in {source}{where}: {exc.message}") from exc

    gateway = doc.get("gateway", {})
    timezones = doc.get("timezones", {})
    dispatch = doc.get("dispatch", {})
    defaults = Settings()
    return Settings(
        generation=doc.get("generation", defaults.generation),
        gateway_host=gateway.get("host", defaults.gateway_host),
        gateway_port=int(gateway.get("port", defaults.gateway_port)),
        connect_timeout_s=float(gateway.get("connect_timeout_s", defaults.connect_timeout_s)),
        operating_timezone=timezones.get("operating", defaults.operating_timezone),
        default_timezone=timezones.get("default", defaults.default_timezone),
        command_stagger_s=float(dispatch.get("command_stagger_s", defaults.command_stagger_s)),
        resend_wait_s=float(dispatch.get("resend_wait_s", defaults.resend_wait_s)),
        ledger_path=Path(doc["ledger_path"]).expanduser() if "ledger_path" in doc else defaults.ledger_path,
    )


def _apply_env(settings: Settings) -> Settings:
    overrides: dict[str, Any] = {}
    if host := os.environ.get(ENV_GATEWAY_HOST):
        overrides["gateway_host"] = host
    if port := os.environ.get(ENV_GATEWAY_PORT):
        try:
            overrides["gateway_port"] = int(port)
        except ValueError as exc:
            raise ConfigError(f"{ENV_GATEWAY_PORT} must be an integer, got '{port}'") from exc
    if default_tz := os.environ.get(ENV_DEFAULT_TIMEZONE):
        overrides["default_timezone"] = default_tz
    if ledger := os.environ.get(ENV_LEDGER):
        overrides["ledger_path"] = Path(ledger).expanduser()
    return replace(settings, **overrides) if overrides else settings


def load_settings(path: Path | None = None) -> Settings:
    source = path or config_path()
    settings = Settings()
    if source.exists():
        doc = _read_config(source)
        settings = _from_document(doc, source)
        LOGGER.debug("Loaded configuration from %s", source)
    return _apply_env(settings)


def _read_config(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except (yaml.YAMLError, CatalogValidationError) as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded
