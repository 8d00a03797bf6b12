"""
Managed device configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/managed-device/device.env (system install)
2) ~/.config/managed-device/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

QUICKSTART_ORG_ID = "quickstart"
SUPPORTED_AUTH_METHODS = ("token",)


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("managed-device-client")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    yield Path("/etc/managed-device/device.env")

    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "managed-device" / ".env"

    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class DeviceConfig:
    org: str
    device_type: str
    device_id: str
    auth_method: Optional[str]
    auth_token: Optional[str]
    mqtt_host: str
    mqtt_port: int
    mqtt_keepalive: int
    log_level: Optional[str]

    @property
    def is_quickstart(self) -> bool:
        return self.org == QUICKSTART_ORG_ID


def load_config(*, dotenv_enabled: bool = True) -> DeviceConfig:
    """
    Load config by reading env files (if enabled) and then validating
    required environment variables.

    Returns an immutable DeviceConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        from dotenv import load_dotenv

        for p in _env_paths():
            if p.is_file():
                # later files only fill keys that are still missing
                load_dotenv(p, override=False)

    org = _require_env("DEVICE_ORG")
    device_type = _require_env("DEVICE_TYPE")
    device_id = _require_env("DEVICE_ID")

    auth_method: Optional[str] = None
    auth_token: Optional[str] = None
    if org != QUICKSTART_ORG_ID:
        auth_method = _require_env("DEVICE_AUTH_METHOD")
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise ConfigError(f"Unsupported authentication method: {auth_method}")
        auth_token = _require_env("DEVICE_AUTH_TOKEN")

    mqtt_host = os.getenv("MQTT_HOST") or f"{org}.messaging.internetofthings.ibmcloud.com"

    mqtt_port = _parse_int("MQTT_PORT", os.getenv("MQTT_PORT", "1883"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    keepalive = _parse_int("MQTT_KEEPALIVE", os.getenv("MQTT_KEEPALIVE", "60"))
    if keepalive <= 0:
        raise ConfigError("MQTT_KEEPALIVE must be > 0")

    return DeviceConfig(
        org=org,
        device_type=device_type,
        device_id=device_id,
        auth_method=auth_method,
        auth_token=auth_token,
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        mqtt_keepalive=keepalive,
        log_level=os.getenv("DEVICE_LOG_LEVEL") or None,
    )
