"""Configuration loading.

The configuration file is YAML with a top-level ``spac`` section::

    spac:
      enable: true
      default: Auto
      proxy_port: 48100
      gfwlist: https://example.org/gfwlist.txt
      cloud_rule: https://example.org/cloud_spac.json
      iprange_repo: https://example.org/iprange.txt
      pac_proxy: 127.0.0.1:48100
      google_enable: false
      upstreams:
        GAE: 127.0.0.1:8001
      listeners:
        48101: GAE

Environment overrides: ``SPAC_CONFIG`` (file path) and ``SPAC_HOME`` (data
directory holding rule files, lists and the generated PAC).
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .rules.types import ListenerType

logger = logging.getLogger(__name__)

CONFIG_FILE = os.environ.get("SPAC_CONFIG", "spac.yaml")
HOME = os.environ.get("SPAC_HOME", str(Path.home() / ".spac"))

DEFAULT_PROXY_PORT = 48100


class ConfigError(ValueError):
    """Invalid configuration value."""


@dataclass
class SpacConfig:
    """Routing configuration, with defaults for every key."""

    enable: bool = False
    default: str = ""
    proxy_port: int = DEFAULT_PROXY_PORT
    gfwlist: str | None = None
    cloud_rule: str | None = None
    iprange_repo: str | None = None
    pac_proxy: str = f"127.0.0.1:{DEFAULT_PROXY_PORT}"
    google_enable: bool = False
    home: Path = field(default_factory=lambda: Path(HOME))
    upstreams: dict[str, str] = field(default_factory=dict)
    listeners: dict[int, ListenerType] = field(default_factory=dict)

    # -- Data file layout under home/spac/ --

    @property
    def spac_dir(self) -> Path:
        return self.home / "spac"

    @property
    def user_rules_path(self) -> Path:
        return self.spac_dir / "user_spac.json"

    @property
    def cloud_rules_path(self) -> Path:
        return self.spac_dir / "cloud_spac.json"

    @property
    def rule_paths(self) -> list[Path]:
        """Rule files in priority order (user rules first)."""
        return [self.user_rules_path, self.cloud_rules_path]

    @property
    def gfwlist_path(self) -> Path:
        return self.spac_dir / "snova-gfwlist.txt"

    @property
    def user_gfwlist_path(self) -> Path:
        return self.spac_dir / "user-gfwlist.txt"

    @property
    def pac_path(self) -> Path:
        return self.spac_dir / "snova-gfwlist.pac"

    @property
    def iprange_path(self) -> Path:
        return self.spac_dir / "iprange.txt"

    @classmethod
    def from_dict(cls, data: dict | None) -> "SpacConfig":
        """Build a config from the ``spac`` section of a parsed document."""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("spac section must be a mapping")
        config = cls()
        if "enable" in data:
            config.enable = _to_bool(data["enable"])
        if data.get("default"):
            config.default = str(data["default"]).strip()
        if "proxy_port" in data:
            config.proxy_port = _to_port(data["proxy_port"], "proxy_port")
            config.pac_proxy = f"127.0.0.1:{config.proxy_port}"
        for key in ("gfwlist", "cloud_rule", "iprange_repo"):
            value = data.get(key)
            if value:
                setattr(config, key, str(value).strip())
        if data.get("pac_proxy"):
            config.pac_proxy = str(data["pac_proxy"]).strip()
        if "google_enable" in data:
            config.google_enable = _to_bool(data["google_enable"])
        if data.get("home"):
            config.home = Path(str(data["home"])).expanduser()

        upstreams = data.get("upstreams") or {}
        if not isinstance(upstreams, dict):
            raise ConfigError("upstreams must be a mapping of name to address")
        config.upstreams = {str(k): str(v).strip() for k, v in upstreams.items()}

        listeners = data.get("listeners") or {}
        if not isinstance(listeners, dict):
            raise ConfigError("listeners must be a mapping of port to tunnel type")
        for port, kind in listeners.items():
            try:
                listener = ListenerType(str(kind).strip().lower())
            except ValueError:
                raise ConfigError(f"unknown listener type {kind!r} for port {port}") from None
            config.listeners[_to_port(port, "listeners")] = listener
        return config

    @classmethod
    def load(cls, path: str | Path | None = None) -> "SpacConfig":
        """Load configuration from a YAML file. A missing file gives defaults."""
        path = Path(path or CONFIG_FILE)
        try:
            with open(path) as f:
                document = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info(f"No config file at {path}, using defaults")
            return cls()
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: invalid YAML: {e}") from e
        if not isinstance(document, dict):
            raise ConfigError(f"{path}: expected a mapping at top level")
        return cls.from_dict(document.get("spac"))


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _to_port(value, key: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: invalid port {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"{key}: port out of range: {port}")
    return port
