"""Shared pytest fixtures for canopy tests.

Provides an in-memory ``MachineProvider`` that records every call and can
be told to fail specific creates, plus a temporary local registry.
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from canopy.coordination.orchestrator import ForestOrchestrator
from canopy.coordination.providers.base import (
    CreateServerRequest,
    MachineProvider,
    ProviderError,
    Server,
    ServerNotFoundError,
    ServerState,
    ServerTimeoutError,
)
from canopy.coordination.retry_strategies import NoRetryStrategy
from canopy.coordination.selection import PlacementSelector
from canopy.registry.local import LocalRegistry


class FakeMachineProvider(MachineProvider):
    """In-memory provider.

    Attributes:
        locations: server type -> offered locations
        unavailable: (server_type, location) pairs that fail with a capacity error
        fail_on_create: 1-based create call number -> exception to raise
        never_ready: server names that time out in wait_for_server
        fail_delete: server IDs whose delete raises
    """

    name = "fake"

    def __init__(self, locations: dict[str, list[str]] | None = None):
        self.poll_interval = 0.0
        self.locations = locations if locations is not None else {
            "cx22": ["fsn1", "nbg1", "hel1"],
        }
        self.servers: dict[str, Server] = {}
        self.create_requests: list[CreateServerRequest] = []
        self.deleted: list[str] = []
        self.unavailable: set[tuple[str, str]] = set()
        self.fail_on_create: dict[int, BaseException] = {}
        self.never_ready: set[str] = set()
        self.fail_delete: set[str] = set()
        self.create_calls = 0
        self._next_id = 1000

    @property
    def running(self) -> list[Server]:
        return list(self.servers.values())

    def add_server(self, name: str, labels: dict[str, str]) -> Server:
        """Insert a server directly (simulates one created out of band)."""
        server_id = str(self._next_id)
        self._next_id += 1
        server = Server(
            id=server_id,
            name=name,
            state=ServerState.RUNNING,
            ipv6=f"2a01:4f8::{server_id}",
            labels=dict(labels),
        )
        self.servers[server_id] = server
        return server

    async def create_server(self, request: CreateServerRequest) -> Server:
        self.create_calls += 1
        self.create_requests.append(request)
        if (request.server_type, request.location) in self.unavailable:
            raise ProviderError(
                f"server type {request.server_type} unavailable in {request.location}",
                code="resource_unavailable",
                status=412,
            )
        error = self.fail_on_create.get(self.create_calls)
        if error is not None:
            raise error

        server_id = str(self._next_id)
        self._next_id += 1
        server = Server(
            id=server_id,
            name=request.name,
            state=ServerState.STARTING,
            server_type=request.server_type,
            location=request.location,
            ipv4="10.0.0.%d" % (self._next_id % 250) if request.enable_ipv4 else "",
            ipv6=f"2a01:4f8::{server_id}",
            labels=dict(request.labels),
        )
        self.servers[server_id] = server
        return replace(server)

    async def get_server(self, server_id: str) -> Server:
        if server_id not in self.servers:
            raise ServerNotFoundError(server_id)
        return replace(self.servers[server_id])

    async def wait_for_server(self, server_id, target=ServerState.RUNNING, timeout=600.0):
        server = self.servers.get(server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        if server.name in self.never_ready:
            raise ServerTimeoutError(server_id, target, timeout)
        server.state = target
        return replace(server)

    async def delete_server(self, server_id: str) -> None:
        if server_id in self.fail_delete:
            raise ProviderError(f"delete of {server_id} failed: api unavailable", code="unavailable")
        if server_id not in self.servers:
            raise ServerNotFoundError(server_id)
        del self.servers[server_id]
        self.deleted.append(server_id)

    async def list_servers(self, labels=None) -> list[Server]:
        labels = labels or {}
        return [
            replace(s)
            for s in self.servers.values()
            if all(s.labels.get(k) == v for k, v in labels.items())
        ]

    async def get_available_locations(self, server_type: str) -> list[str]:
        if server_type not in self.locations:
            raise ProviderError(f"server type not found: {server_type}", code="not_found")
        return list(self.locations[server_type])

    async def validate_server_type(self, server_type: str) -> bool:
        return server_type in self.locations


@pytest.fixture
def registry_path(tmp_path):
    """Path for a registry file inside the per-test temp directory."""
    return tmp_path / "registry.json"


@pytest.fixture
def local_registry(registry_path):
    return LocalRegistry(registry_path)


@pytest.fixture
def fake_provider():
    return FakeMachineProvider()


@pytest.fixture
def orchestrator(local_registry, fake_provider):
    """Orchestrator over the fake provider and a temp local registry."""
    return ForestOrchestrator(
        local_registry,
        fake_provider,
        selector=PlacementSelector(fake_provider, ["hel1", "nbg1", "fsn1"]),
        conflict_strategy=NoRetryStrategy(),
        server_timeout=5.0,
    )


@pytest.fixture
def provider_factory():
    """The fake provider class, for tests needing custom locations."""
    return FakeMachineProvider
