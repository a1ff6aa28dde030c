"""Machine providers: the capability contract plus Hetzner and local Docker."""

from canopy.coordination.providers.base import (
    CreateServerRequest,
    MachineProvider,
    ProviderAuthError,
    ProviderError,
    Server,
    ServerNotFoundError,
    ServerState,
    ServerTimeoutError,
)
from canopy.coordination.providers.docker_provider import DockerProvider
from canopy.coordination.providers.hetzner_provider import (
    HETZNER_PROFILES,
    HetznerConfig,
    HetznerProvider,
)

__all__ = [
    "HETZNER_PROFILES",
    "CreateServerRequest",
    "DockerProvider",
    "HetznerConfig",
    "HetznerProvider",
    "MachineProvider",
    "ProviderAuthError",
    "ProviderError",
    "Server",
    "ServerNotFoundError",
    "ServerState",
    "ServerTimeoutError",
]
