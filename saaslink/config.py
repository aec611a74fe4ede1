import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

"""
config.py — agent configuration and the per-user credential file.

Sources, lowest precedence first:
  1. defaults (enabled, empty secret key, development environment)
  2. an optional JSON file laid out like the host config:
       {"name": ..., "environment": ..., "appPath": ...,
        "saas": {"enabled": ..., "url": ..., "secretKey": ..., "appId": ..., "channel": ...}}
  3. SAASLINK_* environment variables
  4. explicit overrides (CLI flags)

The credential file (~/.saaslinkrc) holds {"token": "..."}; a missing or
unreadable file just means "no session token".
"""

logger = logging.getLogger("saaslink.config")

CREDENTIALS_FILENAME = ".saaslinkrc"
DEVELOPMENT = "development"

ENV_VARS = {
    "url": "SAASLINK_URL",
    "secret_key": "SAASLINK_SECRET_KEY",
    "app_id": "SAASLINK_APP_ID",
    "name": "SAASLINK_APP_NAME",
    "environment": "SAASLINK_ENV",
    "app_root": "SAASLINK_APP_ROOT",
    "enabled": "SAASLINK_ENABLED",
    "channel": "SAASLINK_CHANNEL",
}


@dataclass(frozen=True)
class AgentConfig:
    """Everything the agent reads from the host configuration."""
    url: str = ""
    secret_key: str = ""
    app_id: str = ""
    name: str = ""
    environment: str = DEVELOPMENT
    app_root: Path = field(default_factory=Path.cwd)
    enabled: bool = True
    channel: Optional[str] = None  # "host:port"; defaults to the url's authority

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def is_active(self) -> bool:
        """The agent only runs when enabled and pointed at a control plane."""
        return self.enabled and bool(self.url)

    @property
    def download_url(self) -> str:
        return self.url.rstrip("/") + "/socket/download"

    @property
    def scratch_dir(self) -> Path:
        return Path(self.app_root) / ".tmp"

    def channel_address(self) -> Tuple[str, int]:
        """Host/port of the event channel."""
        if self.channel:
            host, _, port = self.channel.rpartition(":")
            if not host or not port.isdigit():
                raise ValueError(f"Invalid channel address: {self.channel!r}")
            return host, int(port)
        parsed = urlparse(self.url)
        if not parsed.hostname:
            raise ValueError(f"Invalid control plane url: {self.url!r}")
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return parsed.hostname, port

    def to_public_dict(self) -> Dict[str, Any]:
        """Config as exposed by pullServer (the channel is trusted with it)."""
        return {
            "name": self.name,
            "environment": self.environment,
            "appPath": str(self.app_root),
            "saas": {
                "enabled": self.enabled,
                "url": self.url,
                "secretKey": self.secret_key,
                "appId": self.app_id,
            },
        }


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


def _from_file(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")

    saas = raw.get("saas") or {}
    values: Dict[str, Any] = {}
    for key, src in (("name", raw), ("environment", raw)):
        if key in src:
            values[key] = src[key]
    if "appPath" in raw:
        values["app_root"] = Path(raw["appPath"])
    for key, wire in (("url", "url"), ("secret_key", "secretKey"), ("app_id", "appId"),
                      ("enabled", "enabled"), ("channel", "channel")):
        if wire in saas:
            values[key] = saas[wire]
    return values


def _from_env(environ) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, var in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None:
            continue
        if key == "enabled":
            values[key] = _parse_bool(raw)
        elif key == "app_root":
            values[key] = Path(raw)
        else:
            values[key] = raw
    return values


def load_config(path: Optional[Path] = None, environ=None, **overrides: Any) -> AgentConfig:
    """
    Merge defaults, config file, environment and overrides into one AgentConfig.

    Overrides set to None are ignored so argparse namespaces can be passed through.
    """
    environ = os.environ if environ is None else environ
    config = AgentConfig()
    if path is not None:
        config = replace(config, **_from_file(Path(path)))
    config = replace(config, **_from_env(environ))
    explicit = {k: v for k, v in overrides.items() if v is not None}
    if "app_root" in explicit:
        explicit["app_root"] = Path(explicit["app_root"])
    return replace(config, **explicit)


def credentials_path(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / CREDENTIALS_FILENAME


def load_credentials(home: Optional[Path] = None) -> Optional[str]:
    """
    Return the session token from the credential file, or None.

    Absence is not fatal: the agent keeps going without a token.
    """
    path = credentials_path(home)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning("Continuing without credentials.")
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Continuing without credentials (%s unreadable: %s).", path, exc)
        return None

    token = data.get("token") if isinstance(data, dict) else None
    if not isinstance(token, str) or not token:
        logger.warning("Continuing without credentials.")
        return None
    return token
