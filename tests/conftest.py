"""Shared pytest configuration and fixtures."""

import pytest

from sidechat import api
from sidechat.metrics import metrics

pytest_plugins = ["sidechat.testing"]

_SIDECHAT_ENV = (
    "SIDECHAT_DB",
    "SIDECHAT_RELAY_URL",
    "SIDECHAT_SIGNAL_URL",
    "SIDECHAT_NO_MESH",
    "SIDECHAT_NO_RELAY",
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from the user's config file, data dir and env."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for name in _SIDECHAT_ENV:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset relay state and metrics between tests."""
    api.reset_state()
    metrics.reset()
    yield
    api.reset_state()
