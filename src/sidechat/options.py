"""Configuration options for the Sidechat client.

Provides SidechatOptions for choosing the store location, the relay and
signaling endpoints, and which transports to use. Values are resolved in
order: explicit arguments, environment variables, the config file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import GlobalConfig
from .mesh import MeshSettings
from .relay import RelaySettings

_TRUE_VALUES = ("1", "true", "yes")


class SidechatConfigError(Exception):
    """Raised when SidechatOptions configuration is invalid."""

    pass


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in _TRUE_VALUES


@dataclass
class SidechatOptions:
    """Configuration options for the Sidechat client.

    Environment Variables:
        SIDECHAT_DB: Local Store path (":memory:" for an ephemeral store)
        SIDECHAT_RELAY_URL: Relay service URL
        SIDECHAT_SIGNAL_URL: Signaling service URL (defaults to the relay URL)
        SIDECHAT_NO_MESH: Disable the mesh transport
        SIDECHAT_NO_RELAY: Disable the relay fallback

    Examples:
        # Everything from env / config file
        options = SidechatOptions()

        # Relay only, throwaway store
        options = SidechatOptions(in_memory=True, mesh=False, relay_url="http://127.0.0.1:8765")
    """

    db_path: str | Path | None = None
    """Local Store file. Defaults to the config file's db_path."""

    in_memory: bool = False
    """Use an ephemeral in-memory store. Perfect for testing."""

    relay_url: str | None = None
    signaling_url: str | None = None

    mesh: bool = True
    """Try the mesh transport first."""

    relay: bool = True
    """Fall back to (or only use) the relay transport."""

    retention_days: int | None = None

    mesh_settings: MeshSettings | None = None
    relay_settings: RelaySettings | None = None

    use_config_file: bool = True
    """Read unset values from the config file."""

    _resolved_db: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        """Apply environment overrides and config defaults, then validate."""
        self._apply_env_overrides()
        self._apply_config()
        self._validate()
        self._resolve()

    def _apply_env_overrides(self) -> None:
        """Environment variables fill values that were not given explicitly."""
        if self.db_path is None and not self.in_memory:
            env_db = os.environ.get("SIDECHAT_DB")
            if env_db == ":memory:":
                self.in_memory = True
            elif env_db:
                self.db_path = env_db

        if self.relay_url is None:
            self.relay_url = os.environ.get("SIDECHAT_RELAY_URL") or None
        if self.signaling_url is None:
            self.signaling_url = os.environ.get("SIDECHAT_SIGNAL_URL") or None
        if _env_flag("SIDECHAT_NO_MESH"):
            self.mesh = False
        if _env_flag("SIDECHAT_NO_RELAY"):
            self.relay = False

    def _apply_config(self) -> None:
        config = GlobalConfig.load() if self.use_config_file else GlobalConfig()

        if self.relay_url is None:
            self.relay_url = config.relay_url
        if self.signaling_url is None:
            self.signaling_url = config.signaling_url or self.relay_url
        if self.db_path is None and not self.in_memory:
            self.db_path = config.resolved_db_path()
        if self.retention_days is None:
            self.retention_days = config.retention_days
        if self.mesh_settings is None:
            mesh = config.mesh
            self.mesh_settings = MeshSettings(
                host=mesh.host,
                advertise_host=mesh.advertise_host,
                max_retries=mesh.max_retries,
                backoff_base=mesh.backoff_base,
                backoff_max=mesh.backoff_max,
                connect_timeout=mesh.connect_timeout,
            )
        if self.relay_settings is None:
            self.relay_settings = RelaySettings()

    def _validate(self) -> None:
        if self.in_memory and self.db_path is not None:
            raise SidechatConfigError("in_memory cannot be combined with db_path.")
        if not self.mesh and not self.relay:
            raise SidechatConfigError("At least one of mesh or relay must be enabled.")
        for name in ("relay_url", "signaling_url"):
            value = getattr(self, name)
            if value and not value.startswith(("http://", "https://")):
                raise SidechatConfigError(f"{name} must be an http(s) URL, got {value!r}")
        if self.retention_days is not None and self.retention_days <= 0:
            raise SidechatConfigError("retention_days must be positive.")

    def _resolve(self) -> None:
        self.relay_url = self.relay_url.rstrip("/") if self.relay_url else self.relay_url
        self.signaling_url = self.signaling_url.rstrip("/") if self.signaling_url else self.signaling_url
        if self.in_memory:
            self._resolved_db = ":memory:"
        else:
            self._resolved_db = str(Path(self.db_path).expanduser())

    @property
    def resolved_db(self) -> str:
        """Store location: a file path or ':memory:'."""
        return self._resolved_db

    def is_in_memory(self) -> bool:
        return self.in_memory

    @classmethod
    def for_in_memory(cls, **kwargs: Any) -> "SidechatOptions":
        """Options for an ephemeral store (testing). The config file is ignored."""
        kwargs.setdefault("use_config_file", False)
        return cls(in_memory=True, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "db": self._resolved_db,
            "relay_url": self.relay_url,
            "signaling_url": self.signaling_url,
            "mesh": self.mesh,
            "relay": self.relay,
            "retention_days": self.retention_days,
        }
