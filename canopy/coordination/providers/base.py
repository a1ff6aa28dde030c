"""Machine provider capability consumed by the orchestrator.

The orchestrator depends only on ``MachineProvider``; concrete providers
(Hetzner Cloud, local Docker) live next to this module. Providers signal
failures with ``ProviderError`` carrying the upstream error ``code`` when
there is one, so capacity problems can be told apart from fatal ones (see
``canopy.coordination.selection.is_capacity_error``).
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from canopy.utils.exceptions import CanopyError

logger = logging.getLogger(__name__)


class ServerState(Enum):
    """Normalized server lifecycle state."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    DELETING = "deleting"
    UNKNOWN = "unknown"


@dataclass
class Server:
    """A provider server as seen by canopy."""

    id: str
    name: str
    state: ServerState = ServerState.UNKNOWN
    server_type: str = ""
    location: str = ""
    ipv4: str = ""
    ipv6: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.state == ServerState.RUNNING


@dataclass
class CreateServerRequest:
    """Everything needed to create one server."""

    name: str
    server_type: str
    image: str
    location: str
    ssh_keys: list[str] = field(default_factory=list)
    user_data: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    enable_ipv4: bool = False


class ProviderError(CanopyError):
    """Provider call failed.

    Attributes:
        code: Upstream error code (e.g. ``resource_unavailable``), empty if none
        status: HTTP status or exit code, when known
    """

    def __init__(self, message: str, code: str = "", status: int | None = None):
        super().__init__(message)
        self.code = code
        self.status = status


class ProviderAuthError(ProviderError):
    """Credentials missing, invalid or lacking permissions."""


class ServerNotFoundError(ProviderError):
    def __init__(self, server_id: str):
        super().__init__(f"server not found: {server_id}", code="not_found", status=404)
        self.server_id = server_id


class ServerTimeoutError(ProviderError):
    def __init__(self, server_id: str, target: ServerState, timeout: float):
        super().__init__(
            f"timeout waiting for server {server_id} to reach {target.value} "
            f"after {timeout:.0f}s",
            code="timeout",
        )
        self.server_id = server_id


class MachineProvider(ABC):
    """Server create/get/delete/wait/list and availability queries.

    All methods are coroutines and honour task cancellation.
    """

    name: str = ""
    poll_interval: float = 5.0

    @abstractmethod
    async def create_server(self, request: CreateServerRequest) -> Server:
        ...

    @abstractmethod
    async def get_server(self, server_id: str) -> Server:
        """Raises ``ServerNotFoundError`` if the server is gone."""

    @abstractmethod
    async def delete_server(self, server_id: str) -> None:
        """Raises ``ServerNotFoundError`` if the server is already gone."""

    @abstractmethod
    async def list_servers(self, labels: dict[str, str] | None = None) -> list[Server]:
        ...

    @abstractmethod
    async def get_available_locations(self, server_type: str) -> list[str]:
        """Locations where ``server_type`` can currently be ordered."""

    @abstractmethod
    async def validate_server_type(self, server_type: str) -> bool:
        ...

    async def wait_for_server(
        self,
        server_id: str,
        target: ServerState = ServerState.RUNNING,
        timeout: float = 600.0,
    ) -> Server:
        """Poll until the server reaches ``target``.

        Raises:
            ServerTimeoutError: ``target`` not reached within ``timeout``.
        """
        deadline = time.monotonic() + timeout
        while True:
            server = await self.get_server(server_id)
            if server.state == target:
                return server
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ServerTimeoutError(server_id, target, timeout)
            logger.debug(f"Server {server_id} is {server.state.value}, waiting")
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def close(self) -> None:
        """Release provider resources."""
