from __future__ import annotations

import io
import math
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from dotenv import dotenv_values, set_key

from ups_watchdog.paths import default_flag_file

DEFAULT_UPS_NAME = "ups@localhost"
DEFAULT_DELAY_MINUTES = 15
DEFAULT_LOG_TAG = "UPS_Shutdown_Script"

STATUS_SOURCES = ("auto", "hub", "upsc")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# Keys the hub may advertise; anything else in its response is ignored.
REMOTE_KEYS = ("UPS_NAME", "SHUTDOWN_DELAY_MINUTES", "IGNORE_SIMULATION")

_PLAIN_FIELDS = {"UPS_NAME": "ups_name", "LOG_TAG": "log_tag", "API_TOKEN": "api_token"}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class WatchdogConfig:
    ups_name: str = DEFAULT_UPS_NAME
    shutdown_delay_minutes: int = DEFAULT_DELAY_MINUTES
    flag_file: Path = default_flag_file()
    log_tag: str = DEFAULT_LOG_TAG
    api_server_uri: str = ""
    api_token: str = ""
    ignore_simulation: bool = False
    status_source: str = "auto"
    shutdown_command: tuple[str, ...] = ()

    @property
    def hub_enabled(self) -> bool:
        return bool(self.api_server_uri and self.api_token)

    @property
    def shutdown_delay_seconds(self) -> int:
        return self.shutdown_delay_minutes * 60


def parse_delay(raw: Any) -> int:
    """Parse a delay in minutes; accepts ints, integral floats and numeric strings."""

    if isinstance(raw, bool):
        raise ConfigError(f"SHUTDOWN_DELAY_MINUTES must be a number, got {raw!r}")
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ConfigError(f"SHUTDOWN_DELAY_MINUTES must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value < 0 or not value.is_integer():
        raise ConfigError(f"SHUTDOWN_DELAY_MINUTES must be a whole number >= 0, got {raw!r}")
    return int(value)


def parse_bool(key: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{key} must be true or false, got {raw!r}")


def _get(values: dict[str, str | None], key: str) -> str | None:
    raw = values.get(key)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def from_values(values: dict[str, str | None]) -> WatchdogConfig:
    """Build a validated config from parsed KEY=VALUE pairs.

    Unknown keys are ignored and empty values fall back to the defaults.
    """

    updates: dict[str, Any] = {}

    for key, field in _PLAIN_FIELDS.items():
        v = _get(values, key)
        if v is not None:
            updates[field] = v

    v = _get(values, "SHUTDOWN_DELAY_MINUTES")
    if v is not None:
        updates["shutdown_delay_minutes"] = parse_delay(v)

    v = _get(values, "FLAG_FILE")
    if v is not None:
        updates["flag_file"] = Path(v)

    v = _get(values, "API_SERVER_URI")
    if v is not None:
        updates["api_server_uri"] = v.rstrip("/")

    v = _get(values, "IGNORE_SIMULATION")
    if v is not None:
        updates["ignore_simulation"] = parse_bool("IGNORE_SIMULATION", v)

    v = _get(values, "STATUS_SOURCE")
    if v is not None:
        if v.lower() not in STATUS_SOURCES:
            raise ConfigError(f"STATUS_SOURCE must be one of {', '.join(STATUS_SOURCES)}")
        updates["status_source"] = v.lower()

    v = _get(values, "SHUTDOWN_COMMAND")
    if v is not None:
        try:
            command = shlex.split(v)
        except ValueError as e:
            raise ConfigError(f"SHUTDOWN_COMMAND is not a valid command line: {e}") from e
        if not command:
            raise ConfigError("SHUTDOWN_COMMAND must not be empty")
        updates["shutdown_command"] = tuple(command)

    return replace(WatchdogConfig(), **updates)


def load(path: str | Path) -> WatchdogConfig:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read local config file {p}: {e.strerror or e}") from e
    return from_values(dotenv_values(stream=io.StringIO(text)))


def apply_remote(cfg: WatchdogConfig, payload: Any) -> tuple[WatchdogConfig, dict[str, str]]:
    """Validate a hub config response and merge it into ``cfg``.

    Returns the merged config and the KEY=VALUE strings to cache locally.
    """

    if not isinstance(payload, dict):
        raise ConfigError("Hub config response must be a JSON object")
    if payload.get("SHUTDOWN_DELAY_MINUTES") is None:
        raise ConfigError("Hub config response is missing SHUTDOWN_DELAY_MINUTES")

    delay = parse_delay(payload["SHUTDOWN_DELAY_MINUTES"])
    updates: dict[str, Any] = {"shutdown_delay_minutes": delay}
    cached = {"SHUTDOWN_DELAY_MINUTES": str(delay)}

    ups_name = payload.get("UPS_NAME")
    if ups_name is not None:
        ups_name = str(ups_name).strip()
        if not ups_name:
            raise ConfigError("Hub config response has an empty UPS_NAME")
        updates["ups_name"] = ups_name
        cached["UPS_NAME"] = ups_name

    ignore = payload.get("IGNORE_SIMULATION")
    if ignore is not None:
        flag = parse_bool("IGNORE_SIMULATION", ignore)
        updates["ignore_simulation"] = flag
        cached["IGNORE_SIMULATION"] = "true" if flag else "false"

    return replace(cfg, **updates), cached


def persist(path: str | Path, updates: dict[str, str]) -> None:
    """Rewrite only ``updates`` in the local file; every other line is kept as is."""

    for key in REMOTE_KEYS:
        if key not in updates:
            continue
        # Numbers and booleans are written unquoted.
        quote_mode = "always" if key == "UPS_NAME" else "never"
        set_key(str(path), key, updates[key], quote_mode=quote_mode)
