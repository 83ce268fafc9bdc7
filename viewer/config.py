"""
Viewer configuration and profile loading.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

import yaml

from .errors import ConfigError

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

ENV_SERVER_URL = "VIEWER_SERVER_URL"
ENV_MOUNTPOINT_ID = "VIEWER_MOUNTPOINT_ID"

DEFAULT_SERVER_URL = "http://127.0.0.1:8088/janus"
SUPPORTED_SCHEMES = ("http", "https", "ws", "wss")

LOG = logging.getLogger(__name__)


@dataclass
class ViewerConfig:
    """
    Settings for one viewer session.

    ``server_url`` picks the signaling transport by scheme (``http(s)`` uses
    REST with long polling, ``ws(s)`` uses a WebSocket).  ``mountpoint_id``
    names the broadcast to watch and never changes once a session starts.
    """

    server_url: str = DEFAULT_SERVER_URL
    mountpoint_id: int = 1
    profile: str = "default"
    keepalive_interval: float = 30.0
    request_timeout: float = 10.0
    long_poll_max_events: int = 10
    ice_servers: List[str] = field(default_factory=list)
    drain_tracks: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.server_url, str) or not self.server_url.strip():
            raise ConfigError("server_url must be a non-empty string")
        self.server_url = self.server_url.strip().rstrip("/")
        scheme = urlsplit(self.server_url).scheme.lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise ConfigError(
                f"server_url scheme must be one of {', '.join(SUPPORTED_SCHEMES)}, got {self.server_url!r}"
            )
        if isinstance(self.mountpoint_id, bool):
            raise ConfigError("mountpoint_id must be an integer")
        try:
            self.mountpoint_id = int(self.mountpoint_id)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"mountpoint_id must be an integer, got {self.mountpoint_id!r}") from exc
        if self.mountpoint_id < 0:
            raise ConfigError("mountpoint_id must be >= 0")
        if float(self.keepalive_interval) <= 0:
            raise ConfigError("keepalive_interval must be positive")
        if float(self.request_timeout) <= 0:
            raise ConfigError("request_timeout must be positive")
        if int(self.long_poll_max_events) < 1:
            raise ConfigError("long_poll_max_events must be >= 1")
        self.ice_servers = [str(url) for url in (self.ice_servers or [])]

    def with_overrides(self, **overrides: Any) -> "ViewerConfig":
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)

    def to_dict(self) -> dict:
        return {
            "serverUrl": self.server_url,
            "mountpointId": self.mountpoint_id,
            "profile": self.profile,
            "keepaliveInterval": float(self.keepalive_interval),
            "requestTimeout": float(self.request_timeout),
            "iceServers": list(self.ice_servers),
        }


def read_profiles(path: Path = PROFILES_PATH) -> Dict[str, dict]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    profiles = document.get("profiles", {}) if isinstance(document, dict) else {}
    if not isinstance(profiles, dict):
        raise ConfigError(f"'profiles' in {path} must be a mapping")
    return {str(name): dict(values or {}) for name, values in profiles.items()}


def _known_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {item.name for item in fields(ViewerConfig)}
    unknown = sorted(set(values) - names)
    if unknown:
        LOG.warning("Ignoring unknown profile keys: %s", ", ".join(unknown))
    return {key: value for key, value in values.items() if key in names}


def load_profile(
    name: str = "default",
    *,
    path: Path = PROFILES_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> ViewerConfig:
    """
    Build a :class:`ViewerConfig` from a YAML profile plus environment overrides.
    """

    profiles = read_profiles(path)
    if name not in profiles and name != "default":
        raise ConfigError(f"Unknown profile '{name}'")
    values = _known_fields(profiles.get(name, {}))
    values["profile"] = name

    env = os.environ if environ is None else environ
    if env.get(ENV_SERVER_URL):
        values["server_url"] = env[ENV_SERVER_URL]
    if env.get(ENV_MOUNTPOINT_ID):
        values["mountpoint_id"] = env[ENV_MOUNTPOINT_ID]

    return ViewerConfig(**values)


__all__ = ["PROFILES_PATH", "ViewerConfig", "load_profile", "read_profiles"]
