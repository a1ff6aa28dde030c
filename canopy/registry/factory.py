"""Build the configured registry backend."""

from __future__ import annotations

import logging

from canopy.config.settings import ConfigError, Settings
from canopy.registry.base import Registry
from canopy.registry.local import LocalRegistry
from canopy.registry.remote import RemoteRegistry, RemoteRegistryConfig

logger = logging.getLogger(__name__)


def create_registry(settings: Settings) -> Registry:
    """Return a ``LocalRegistry`` or ``RemoteRegistry`` per ``storage.provider``.

    The registry is constructed once here and passed explicitly to whoever
    needs it; there is no module-level singleton.
    """
    storage = settings.storage
    if storage.provider == "local":
        logger.debug(f"Using local registry at {storage.local_path}")
        return LocalRegistry(storage.local_path)

    if storage.provider == "storagebox":
        box = storage.storagebox
        if storage.url:
            config = RemoteRegistryConfig(
                url=storage.url, username=box.username, password=box.password
            )
        else:
            config = RemoteRegistryConfig.for_storagebox(box.host, box.username, box.password)
        logger.debug(f"Using remote registry at {config.url}")
        return RemoteRegistry(config)

    raise ConfigError(f"unknown storage provider {storage.provider!r}")
