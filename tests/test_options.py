"""Tests for SidechatOptions."""

import pytest

from sidechat.config import GlobalConfig, MeshConfig, get_default_db_path
from sidechat.options import SidechatConfigError, SidechatOptions


class TestDefaults:
    def test_defaults(self):
        options = SidechatOptions()
        assert options.mesh and options.relay
        assert options.relay_url == "http://localhost:8765"
        assert options.signaling_url == options.relay_url
        assert options.retention_days == 30
        assert options.resolved_db == str(get_default_db_path())
        assert not options.is_in_memory()

    def test_for_in_memory(self):
        options = SidechatOptions.for_in_memory(mesh=False)
        assert options.is_in_memory()
        assert options.resolved_db == ":memory:"
        assert not options.mesh

    def test_trailing_slash_removed(self):
        options = SidechatOptions(in_memory=True, relay_url="http://relay:8765/")
        assert options.relay_url == "http://relay:8765"


class TestEnvironment:
    def test_db_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SIDECHAT_DB", str(tmp_path / "env.db"))
        assert SidechatOptions().resolved_db == str(tmp_path / "env.db")

    def test_memory_db_from_env(self, monkeypatch):
        monkeypatch.setenv("SIDECHAT_DB", ":memory:")
        assert SidechatOptions().is_in_memory()

    def test_urls_from_env(self, monkeypatch):
        monkeypatch.setenv("SIDECHAT_RELAY_URL", "https://relay.example.com")
        monkeypatch.setenv("SIDECHAT_SIGNAL_URL", "https://signal.example.com")
        options = SidechatOptions(in_memory=True)
        assert options.relay_url == "https://relay.example.com"
        assert options.signaling_url == "https://signal.example.com"

    def test_explicit_beats_env(self, monkeypatch):
        monkeypatch.setenv("SIDECHAT_RELAY_URL", "https://relay.example.com")
        options = SidechatOptions(in_memory=True, relay_url="http://mine:1")
        assert options.relay_url == "http://mine:1"

    def test_transport_flags(self, monkeypatch):
        monkeypatch.setenv("SIDECHAT_NO_MESH", "1")
        options = SidechatOptions(in_memory=True)
        assert not options.mesh
        assert options.relay


class TestConfigFile:
    def test_values_from_config_file(self):
        GlobalConfig(
            relay_url="https://relay.example.com",
            retention_days=3,
            mesh=MeshConfig(max_retries=7, advertise_host="203.0.113.5"),
        ).save()
        options = SidechatOptions(in_memory=True)
        assert options.relay_url == "https://relay.example.com"
        assert options.retention_days == 3
        assert options.mesh_settings.max_retries == 7
        assert options.mesh_settings.advertise_host == "203.0.113.5"

    def test_config_file_ignored_when_disabled(self):
        GlobalConfig(relay_url="https://relay.example.com").save()
        options = SidechatOptions.for_in_memory()
        assert options.relay_url == "http://localhost:8765"


class TestValidation:
    def test_in_memory_with_db_path(self, tmp_path):
        with pytest.raises(SidechatConfigError):
            SidechatOptions(in_memory=True, db_path=tmp_path / "x.db")

    def test_no_transport(self):
        with pytest.raises(SidechatConfigError):
            SidechatOptions(in_memory=True, mesh=False, relay=False)

    def test_bad_url(self):
        with pytest.raises(SidechatConfigError):
            SidechatOptions(in_memory=True, relay_url="ftp://relay")

    def test_bad_retention(self):
        with pytest.raises(SidechatConfigError):
            SidechatOptions(in_memory=True, retention_days=0)


def test_to_dict():
    data = SidechatOptions.for_in_memory(relay=False).to_dict()
    assert data["db"] == ":memory:"
    assert data["relay"] is False
