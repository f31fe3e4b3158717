"""Configuration file for sidechat.

Stored at $XDG_CONFIG_HOME/sidechat/config.yaml (default ~/.config/sidechat/):

    relay_url: http://localhost:8765
    signaling_url: http://localhost:8765
    db_path: ~/.local/share/sidechat/sidechat.db
    retention_days: 30
    display_name: null
    mesh:
      host: 127.0.0.1
      advertise_host: null
      max_retries: 3
      backoff_base: 0.2
      backoff_max: 2.0
      connect_timeout: 5.0
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_RELAY_URL = "http://localhost:8765"
DEFAULT_RETENTION_DAYS = 30


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "sidechat"


def get_global_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.yaml"


def get_default_db_path() -> Path:
    """Default Local Store location under $XDG_DATA_HOME."""
    data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(data_home) / "sidechat" / "sidechat.db"


def ensure_config_dir() -> Path:
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@dataclass
class MeshConfig:
    """Mesh transport settings as stored in the config file."""

    host: str = "127.0.0.1"
    advertise_host: str | None = None
    max_retries: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 2.0
    connect_timeout: float = 5.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MeshConfig":
        defaults = cls()
        return cls(
            host=data.get("host", defaults.host),
            advertise_host=data.get("advertise_host"),
            max_retries=int(data.get("max_retries", defaults.max_retries)),
            backoff_base=float(data.get("backoff_base", defaults.backoff_base)),
            backoff_max=float(data.get("backoff_max", defaults.backoff_max)),
            connect_timeout=float(data.get("connect_timeout", defaults.connect_timeout)),
        )


@dataclass
class GlobalConfig:
    """Global sidechat configuration."""

    relay_url: str = DEFAULT_RELAY_URL
    signaling_url: str | None = None
    """Discovery endpoint for the mesh; defaults to relay_url."""
    db_path: str | None = None
    retention_days: int = DEFAULT_RETENTION_DAYS
    display_name: str | None = None
    mesh: MeshConfig = field(default_factory=MeshConfig)

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        data: dict[str, Any] = {
            "relay_url": self.relay_url,
            "retention_days": self.retention_days,
        }
        if self.signaling_url:
            data["signaling_url"] = self.signaling_url
        if self.db_path:
            data["db_path"] = self.db_path
        if self.display_name:
            data["display_name"] = self.display_name
        data["mesh"] = asdict(self.mesh)

        with open(get_global_config_path(), "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults."""
        path = get_global_config_path()
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            relay_url=data.get("relay_url", DEFAULT_RELAY_URL),
            signaling_url=data.get("signaling_url"),
            db_path=data.get("db_path"),
            retention_days=int(data.get("retention_days", DEFAULT_RETENTION_DAYS)),
            display_name=data.get("display_name"),
            mesh=MeshConfig.from_dict(data.get("mesh") or {}),
        )

    @classmethod
    def exists(cls) -> bool:
        return get_global_config_path().exists()

    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_default_db_path()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["signaling_url"] = self.signaling_url or self.relay_url
        data["db_path"] = str(self.resolved_db_path())
        return data
