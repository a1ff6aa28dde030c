"""Configuration loading for canopy."""

from canopy.config.provider_timeouts import ProviderTimeouts
from canopy.config.settings import (
    DEFAULT_LOCATIONS,
    LOCATION_DESCRIPTIONS,
    ConfigError,
    DNSConfig,
    HetznerSettings,
    MachineConfig,
    ProvisioningConfig,
    SecretsConfig,
    Settings,
    StorageBoxSettings,
    StorageConfig,
    find_config_path,
    load_settings,
    parse_duration,
)

__all__ = [
    "DEFAULT_LOCATIONS",
    "LOCATION_DESCRIPTIONS",
    "ConfigError",
    "DNSConfig",
    "HetznerSettings",
    "MachineConfig",
    "ProviderTimeouts",
    "ProvisioningConfig",
    "SecretsConfig",
    "Settings",
    "StorageBoxSettings",
    "StorageConfig",
    "find_config_path",
    "load_settings",
    "parse_duration",
]
