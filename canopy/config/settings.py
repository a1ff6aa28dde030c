"""Canopy configuration loaded from YAML with environment overrides.

Lookup order for the config file:
    1. $CANOPY_CONFIG
    2. ./config.yaml
    3. ~/.canopy/config.yaml
    4. /etc/canopy/config.yaml

Example config.yaml:

    machine:
      provider: hetzner
      hetzner:
        server_type: cx22
        server_type_fallback: [cpx11, cx32]
        image: ubuntu-24.04
        location: fsn1
      ssh:
        key_name: canopy
      ipv4:
        enabled: false
    storage:
      provider: storagebox
      storagebox:
        host: u12345.your-storagebox.de
        username: u12345
        password: ${STORAGEBOX_PASSWORD}
    provisioning:
      readiness_timeout: 5m
      readiness_interval: 5s

Secrets come from the environment when set: HETZNER_API_TOKEN overrides
``secrets.hetzner_api_token`` and STORAGEBOX_PASSWORD overrides the storage
box password. Any string value of the form ``${VAR}`` is expanded.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from canopy.utils.exceptions import FS_ERRORS, CanopyError

logger = logging.getLogger(__name__)

DEFAULT_LOCATIONS = ["hel1", "nbg1", "fsn1", "ash", "hil"]

LOCATION_DESCRIPTIONS = {
    "fsn1": "Falkenstein, Germany",
    "nbg1": "Nuremberg, Germany",
    "hel1": "Helsinki, Finland",
    "ash": "Ashburn, Virginia, USA",
    "hil": "Hillsboro, Oregon, USA",
    "sin": "Singapore",
}

MACHINE_PROVIDERS = ("hetzner", "local")
STORAGE_PROVIDERS = ("local", "storagebox")
DNS_PROVIDERS = ("none", "hetzner")

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {None: 1.0, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigError(CanopyError):
    """Invalid or unreadable configuration."""


def parse_duration(value: Any, default: float) -> float:
    """Seconds from ``30``, ``"30s"``, ``"5m"``, ``"1h"``; None -> default."""
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION.match(str(value))
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def expand_env(value: str) -> str:
    """Expand a whole-value ``${VAR}`` reference; other strings pass through."""
    match = _ENV_REF.match(value.strip()) if value else None
    if match:
        return os.environ.get(match.group(1), "").strip()
    return value


@dataclass
class HetznerSettings:
    server_type: str = "cx22"
    server_type_fallback: list[str] = field(default_factory=list)
    image: str = "ubuntu-24.04"
    location: str = "fsn1"
    preferred_locations: list[str] = field(default_factory=lambda: list(DEFAULT_LOCATIONS))

    def ordered_preferences(self) -> list[str]:
        """Configured location first, then the remaining preferred ones."""
        ordered = [self.location] if self.location else []
        ordered.extend(loc for loc in self.preferred_locations if loc not in ordered)
        return ordered


@dataclass
class MachineConfig:
    provider: str = "hetzner"
    hetzner: HetznerSettings = field(default_factory=HetznerSettings)
    ssh_key_name: str = "canopy"
    enable_ipv4: bool = False


@dataclass
class DNSConfig:
    provider: str = "none"
    domain: str = ""
    ttl: int = 300


@dataclass
class StorageBoxSettings:
    host: str = ""
    username: str = ""
    password: str = ""


@dataclass
class StorageConfig:
    provider: str = "local"
    storagebox: StorageBoxSettings = field(default_factory=StorageBoxSettings)
    local_path: str = "~/.canopy/registry.json"
    url: str = ""


@dataclass
class ProvisioningConfig:
    readiness_timeout: float = 300.0
    readiness_interval: float = 5.0
    ssh_port: int = 22
    check_ssh: bool = True
    conflict_retries: int = 3


@dataclass
class SecretsConfig:
    hetzner_api_token: str = ""


@dataclass
class Settings:
    """Top-level canopy configuration."""

    machine: MachineConfig = field(default_factory=MachineConfig)
    dns: DNSConfig = field(default_factory=DNSConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    source_path: Path | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        machine_raw = raw.get("machine") or {}
        hetzner_raw = machine_raw.get("hetzner") or {}
        dns_raw = raw.get("dns") or {}
        storage_raw = raw.get("storage") or {}
        box_raw = storage_raw.get("storagebox") or {}
        prov_raw = raw.get("provisioning") or {}
        secrets_raw = raw.get("secrets") or {}

        hetzner = HetznerSettings(
            server_type=hetzner_raw.get("server_type") or "cx22",
            server_type_fallback=list(hetzner_raw.get("server_type_fallback") or []),
            image=hetzner_raw.get("image") or "ubuntu-24.04",
            location=hetzner_raw.get("location") or "fsn1",
            preferred_locations=list(
                hetzner_raw.get("preferred_locations") or DEFAULT_LOCATIONS
            ),
        )
        machine = MachineConfig(
            provider=machine_raw.get("provider") or "hetzner",
            hetzner=hetzner,
            ssh_key_name=(machine_raw.get("ssh") or {}).get("key_name") or "canopy",
            enable_ipv4=bool((machine_raw.get("ipv4") or {}).get("enabled", False)),
        )
        storage = StorageConfig(
            provider=storage_raw.get("provider") or "local",
            storagebox=StorageBoxSettings(
                host=box_raw.get("host", ""),
                username=box_raw.get("username", ""),
                password=expand_env(str(box_raw.get("password") or "")),
            ),
            local_path=(storage_raw.get("local") or {}).get("path")
            or "~/.canopy/registry.json",
            url=storage_raw.get("url", ""),
        )
        provisioning = ProvisioningConfig(
            readiness_timeout=parse_duration(prov_raw.get("readiness_timeout"), 300.0),
            readiness_interval=parse_duration(prov_raw.get("readiness_interval"), 5.0),
            ssh_port=int(prov_raw.get("ssh_port") or 22),
            check_ssh=bool(prov_raw.get("check_ssh", True)),
            conflict_retries=int(prov_raw.get("conflict_retries", 3)),
        )
        return cls(
            machine=machine,
            dns=DNSConfig(
                provider=dns_raw.get("provider") or "none",
                domain=dns_raw.get("domain", ""),
                ttl=int(dns_raw.get("ttl") or 300),
            ),
            storage=storage,
            provisioning=provisioning,
            secrets=SecretsConfig(
                hetzner_api_token=expand_env(
                    str(secrets_raw.get("hetzner_api_token") or "")
                ).strip(),
            ),
        )

    def apply_env(self) -> None:
        """Environment variables win over file values."""
        token = os.environ.get("HETZNER_API_TOKEN", "").strip()
        if token:
            self.secrets.hetzner_api_token = token
        password = os.environ.get("STORAGEBOX_PASSWORD", "").strip()
        if password:
            self.storage.storagebox.password = password

    def validate(self) -> None:
        if self.machine.provider not in MACHINE_PROVIDERS:
            raise ConfigError(
                f"unknown machine provider {self.machine.provider!r} "
                f"(expected one of {', '.join(MACHINE_PROVIDERS)})"
            )
        if self.machine.provider == "hetzner" and not self.secrets.hetzner_api_token:
            raise ConfigError(
                "Hetzner API token not set: export HETZNER_API_TOKEN or set "
                "secrets.hetzner_api_token"
            )
        if not self.machine.hetzner.server_type:
            raise ConfigError("machine.hetzner.server_type is required")
        if self.storage.provider not in STORAGE_PROVIDERS:
            raise ConfigError(f"unknown storage provider {self.storage.provider!r}")
        if self.storage.provider == "storagebox":
            box = self.storage.storagebox
            if not (box.host or self.storage.url):
                raise ConfigError("storage.storagebox.host is required for storagebox storage")
            if not box.username:
                raise ConfigError("storage.storagebox.username is required")
            if not box.password:
                raise ConfigError(
                    "storage box password not set: export STORAGEBOX_PASSWORD"
                )
        if self.dns.provider not in DNS_PROVIDERS:
            raise ConfigError(f"unknown DNS provider {self.dns.provider!r}")
        if self.provisioning.readiness_timeout <= 0:
            raise ConfigError("provisioning.readiness_timeout must be positive")
        if self.provisioning.conflict_retries < 0:
            raise ConfigError("provisioning.conflict_retries must not be negative")


def find_config_path() -> Path | None:
    """First existing config file in lookup order, or None."""
    candidates = []
    env_path = os.environ.get("CANOPY_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.extend([
        Path("config.yaml"),
        Path.home() / ".canopy" / "config.yaml",
        Path("/etc/canopy/config.yaml"),
    ])
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from ``path`` (or the lookup order) and apply env overrides.

    With no file anywhere, defaults plus environment are returned.
    """
    config_path = Path(path).expanduser() if path else find_config_path()
    raw: dict[str, Any] = {}
    if config_path is not None:
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except FS_ERRORS as e:
            raise ConfigError(f"failed to read config file {config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"failed to parse config {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config {config_path} must be a mapping")
        logger.debug(f"Loaded config from {config_path}")
    else:
        logger.debug("No config file found, using defaults")

    settings = Settings.from_dict(raw)
    settings.source_path = config_path
    settings.apply_env()
    return settings
