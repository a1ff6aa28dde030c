"""Tests for YAML settings, environment overrides and validation."""

from __future__ import annotations

import pytest

from canopy.config.provider_timeouts import ProviderTimeouts
from canopy.config.settings import (
    DEFAULT_LOCATIONS,
    ConfigError,
    HetznerSettings,
    Settings,
    expand_env,
    find_config_path,
    load_settings,
    parse_duration,
)
from canopy.registry.factory import create_registry
from canopy.registry.local import LocalRegistry
from canopy.registry.remote import RemoteRegistry

FULL_CONFIG = """
machine:
  provider: hetzner
  hetzner:
    server_type: cpx21
    server_type_fallback: [cx32, cpx31]
    image: debian-12
    location: nbg1
  ssh:
    key_name: deploy
  ipv4:
    enabled: true
storage:
  provider: storagebox
  storagebox:
    host: u123.your-storagebox.de
    username: u123
    password: ${BOX_PW}
dns:
  provider: hetzner
  domain: example.net
  ttl: 60
provisioning:
  readiness_timeout: 2m
  readiness_interval: 500ms
  conflict_retries: 5
secrets:
  hetzner_api_token: file-token
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the caller's environment and config files."""
    for var in ("HETZNER_API_TOKEN", "STORAGEBOX_PASSWORD", "CANOPY_CONFIG", "BOX_PW"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "canopy.yaml"
    path.write_text(FULL_CONFIG)
    return path


class TestParsing:
    """Tests for value helpers."""

    @pytest.mark.parametrize(
        "value,expected",
        [(None, 7.0), (30, 30.0), ("45", 45.0), ("30s", 30.0), ("5m", 300.0), ("1h", 3600.0), ("250ms", 0.25)],
    )
    def test_parse_duration(self, value, expected):
        assert parse_duration(value, 7.0) == expected

    def test_parse_duration_invalid(self):
        with pytest.raises(ConfigError):
            parse_duration("soon", 1.0)

    def test_expand_env(self, monkeypatch):
        monkeypatch.setenv("SOME_SECRET", "s3cret\n")
        assert expand_env("${SOME_SECRET}") == "s3cret"
        assert expand_env("${MISSING_VAR}") == ""
        assert expand_env("plain") == "plain"

    def test_ordered_preferences_puts_location_first(self):
        hetzner = HetznerSettings(location="fsn1")
        assert hetzner.ordered_preferences() == ["fsn1", "hel1", "nbg1", "ash", "hil"]


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults_without_file(self):
        settings = load_settings()
        assert settings.source_path is None
        assert settings.machine.provider == "hetzner"
        assert settings.machine.hetzner.server_type == "cx22"
        assert settings.machine.hetzner.preferred_locations == DEFAULT_LOCATIONS
        assert settings.storage.provider == "local"
        assert settings.machine.enable_ipv4 is False

    def test_full_file(self, config_file, monkeypatch):
        monkeypatch.setenv("BOX_PW", "box-pass")

        settings = load_settings(config_file)

        assert settings.source_path == config_file
        assert settings.machine.hetzner.server_type == "cpx21"
        assert settings.machine.hetzner.server_type_fallback == ["cx32", "cpx31"]
        assert settings.machine.ssh_key_name == "deploy"
        assert settings.machine.enable_ipv4 is True
        assert settings.storage.storagebox.password == "box-pass"
        assert settings.dns.domain == "example.net"
        assert settings.dns.ttl == 60
        assert settings.provisioning.readiness_timeout == 120.0
        assert settings.provisioning.readiness_interval == 0.5
        assert settings.provisioning.conflict_retries == 5
        assert settings.secrets.hetzner_api_token == "file-token"

    def test_environment_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("HETZNER_API_TOKEN", "  env-token\n")
        monkeypatch.setenv("STORAGEBOX_PASSWORD", "env-pass")

        settings = load_settings(config_file)

        assert settings.secrets.hetzner_api_token == "env-token"
        assert settings.storage.storagebox.password == "env-pass"

    def test_canopy_config_env_var(self, config_file, monkeypatch):
        monkeypatch.setenv("CANOPY_CONFIG", str(config_file))
        assert find_config_path() == config_file
        assert load_settings().machine.hetzner.image == "debian-12"

    def test_cwd_config(self, tmp_path):
        (tmp_path / "config.yaml").write_text("machine:\n  provider: local\n")
        assert load_settings().machine.provider == "local"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("machine: [unclosed\n")
        with pytest.raises(ConfigError, match="failed to parse"):
            load_settings(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path)

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="failed to read"):
            load_settings(tmp_path / "nope.yaml")


class TestValidate:
    """Tests for Settings.validate."""

    def test_hetzner_requires_token(self):
        with pytest.raises(ConfigError, match="HETZNER_API_TOKEN"):
            Settings().validate()

    def test_local_provider_needs_no_token(self):
        settings = Settings.from_dict({"machine": {"provider": "local"}})
        settings.validate()

    def test_unknown_provider(self):
        settings = Settings.from_dict({"machine": {"provider": "aws"}})
        with pytest.raises(ConfigError, match="unknown machine provider"):
            settings.validate()

    def test_storagebox_requires_password(self):
        settings = Settings.from_dict({
            "machine": {"provider": "local"},
            "storage": {"provider": "storagebox", "storagebox": {"host": "h", "username": "u"}},
        })
        with pytest.raises(ConfigError, match="STORAGEBOX_PASSWORD"):
            settings.validate()

    def test_negative_conflict_retries(self):
        settings = Settings.from_dict({
            "machine": {"provider": "local"},
            "provisioning": {"conflict_retries": -1},
        })
        with pytest.raises(ConfigError, match="conflict_retries"):
            settings.validate()


class TestRegistryFactory:
    """Tests for create_registry."""

    def test_local(self, tmp_path):
        settings = Settings.from_dict({"storage": {"local": {"path": str(tmp_path / "r.json")}}})
        registry = create_registry(settings)
        assert isinstance(registry, LocalRegistry)
        assert registry.path == tmp_path / "r.json"

    def test_storagebox(self, config_file, monkeypatch):
        monkeypatch.setenv("BOX_PW", "pw")
        registry = create_registry(load_settings(config_file))
        assert isinstance(registry, RemoteRegistry)
        assert registry.url == "https://u123.your-storagebox.de/canopy/registry.json"
        assert registry.config.password == "pw"

    def test_explicit_url(self):
        settings = Settings.from_dict({
            "storage": {"provider": "storagebox", "url": "https://dav.example.net/reg.json"}
        })
        assert create_registry(settings).url == "https://dav.example.net/reg.json"

    def test_unknown(self):
        settings = Settings.from_dict({"storage": {"provider": "s3"}})
        with pytest.raises(ConfigError):
            create_registry(settings)


class TestProviderTimeouts:
    """Tests for per-provider timing lookups."""

    def test_known_providers(self):
        assert ProviderTimeouts.get_server_timeout("hetzner") == 600.0
        assert ProviderTimeouts.get_server_timeout("LOCAL") == 120.0
        assert ProviderTimeouts.get_poll_interval("local") == 1.0

    def test_unknown_provider_defaults(self):
        assert ProviderTimeouts.get_server_timeout("fake") == ProviderTimeouts.DEFAULT_SERVER_TIMEOUT
        assert ProviderTimeouts.get_poll_interval("fake") == ProviderTimeouts.DEFAULT_POLL_INTERVAL
