"""Tests for DockerProvider with the docker CLI patched out."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from canopy.coordination.orchestrator import ForestOrchestrator, PlantRequest, ProvisioningError
from canopy.coordination.providers.base import (
    CreateServerRequest,
    ProviderError,
    ServerNotFoundError,
    ServerState,
)
from canopy.coordination.providers.docker_provider import DockerProvider, docker_image
from canopy.coordination.retry_strategies import NoRetryStrategy
from canopy.registry.types import FOREST_FAILED
from canopy.utils.async_utils import SubprocessError, SubprocessResult

RUN_PATH = "canopy.coordination.providers.docker_provider.async_subprocess_run"
DAEMON_DOWN = "Cannot connect to the Docker daemon at unix:///var/run/docker.sock"


def inspect_output(container_id="abcdef1234567890", name="forest-1-node-1", status="running"):
    return json.dumps([
        {
            "Id": container_id,
            "Name": f"/{name}",
            "State": {"Status": status},
            "Config": {
                "Labels": {
                    "canopy.managed": "true",
                    "canopy.server-type": "cx22",
                    "forest-id": "forest-1",
                }
            },
            "NetworkSettings": {
                "Networks": {
                    "canopy-local": {
                        "IPAddress": "172.20.0.2",
                        "GlobalIPv6Address": "fd00::2",
                    }
                }
            },
        }
    ])


def ok(stdout=""):
    return SubprocessResult(returncode=0, stdout=stdout, stderr="")


def failed(stderr):
    return SubprocessError(f"docker failed: {stderr}", returncode=1, stderr=stderr)


class FakeDocker:
    """Routes docker CLI invocations to canned results."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.network_exists = True
        self.containers: dict[str, str] = {"abcdef123456": inspect_output()}
        self.daemon_down = False
        self.fail_run_after: int | None = None
        self.runs = 0

    async def __call__(self, cmd, *, timeout=60.0, check=False, env=None):
        args = list(cmd[1:])
        self.calls.append(args)
        if self.daemon_down:
            raise failed(DAEMON_DOWN)
        if args[:2] == ["network", "inspect"]:
            if not self.network_exists:
                raise failed("Error: No such network: canopy-local")
            return ok("[]")
        if args[:2] == ["network", "create"]:
            self.network_exists = True
            return ok("netid")
        if args[:2] == ["run", "-d"]:
            self.runs += 1
            if self.fail_run_after is not None and self.runs > self.fail_run_after:
                self.daemon_down = True
                raise failed(DAEMON_DOWN)
            return ok("abcdef1234567890fedcba\n")
        if args[0] == "inspect":
            if args[1] not in self.containers:
                raise failed(f"Error: No such object: {args[1]}")
            return ok(self.containers[args[1]])
        if args[:2] == ["rm", "-f"]:
            self.containers.pop(args[2], None)
            return ok(args[2])
        if args[0] == "ps":
            return ok("\n".join(self.containers))
        raise AssertionError(f"unexpected docker call: {args}")


@pytest.fixture
def docker():
    fake = FakeDocker()
    with patch(RUN_PATH, new=fake):
        yield fake


def create_request(**kwargs):
    kwargs.setdefault("labels", {"forest-id": "forest-1"})
    return CreateServerRequest(
        name="forest-1-node-1", server_type="cx22", image="ubuntu-24.04", location="local", **kwargs
    )


class TestDockerProvider:
    """Tests for the docker-backed provider."""

    @pytest.mark.asyncio
    async def test_create_server(self, docker):
        provider = DockerProvider()

        server = await provider.create_server(create_request(user_data="#cloud-config"))

        run = next(c for c in docker.calls if c[:2] == ["run", "-d"])
        assert run[-3:] == ["ubuntu:24.04", "sleep", "infinity"]
        assert "forest-id=forest-1" in run
        assert "canopy.managed=true" in run
        assert "CANOPY_USER_DATA=#cloud-config" in run
        assert server.id == "abcdef123456"
        assert server.name == "forest-1-node-1"
        assert server.state == ServerState.RUNNING
        assert server.ipv6 == "fd00::2"
        assert server.ipv4 == "172.20.0.2"
        assert server.location == "local"

    @pytest.mark.asyncio
    async def test_explicit_image_tag_kept(self, docker):
        await DockerProvider().create_server(
            CreateServerRequest(name="n", server_type="x", image="debian:12", location="local")
        )
        run = next(c for c in docker.calls if c[:2] == ["run", "-d"])
        assert "debian:12" in run

    @pytest.mark.asyncio
    async def test_network_created_once(self, docker):
        docker.network_exists = False
        provider = DockerProvider()

        await provider.create_server(create_request())
        await provider.create_server(create_request())

        creates = [c for c in docker.calls if c[:2] == ["network", "create"]]
        assert creates == [["network", "create", "--ipv6", "canopy-local"]]
        assert sum(1 for c in docker.calls if c[:2] == ["network", "inspect"]) == 1

    @pytest.mark.asyncio
    async def test_get_missing_container(self, docker):
        with pytest.raises(ServerNotFoundError):
            await DockerProvider().get_server("nope")

    @pytest.mark.asyncio
    async def test_delete_server(self, docker):
        provider = DockerProvider()
        await provider.delete_server("abcdef123456")
        assert docker.containers == {}
        assert ["rm", "-f", "abcdef123456"] in docker.calls

    @pytest.mark.asyncio
    async def test_delete_missing_container(self, docker):
        with pytest.raises(ServerNotFoundError):
            await DockerProvider().delete_server("nope")
        assert not any(c[0] == "rm" for c in docker.calls)

    @pytest.mark.asyncio
    async def test_list_servers_filters_by_label(self, docker):
        servers = await DockerProvider().list_servers({"forest-id": "forest-1"})

        ps = next(c for c in docker.calls if c[0] == "ps")
        assert "label=canopy.managed=true" in ps
        assert "label=forest-id=forest-1" in ps
        assert [s.id for s in servers] == ["abcdef123456"]

    @pytest.mark.asyncio
    async def test_single_local_location(self):
        provider = DockerProvider()
        assert await provider.get_available_locations("anything") == ["local"]
        assert await provider.validate_server_type("anything")

    @pytest.mark.asyncio
    async def test_docker_missing(self):
        with patch(RUN_PATH, new=AsyncMock(side_effect=FileNotFoundError("docker"))):
            with pytest.raises(ProviderError, match="docker is not available") as exc_info:
                await DockerProvider().list_servers()
        assert exc_info.value.code == "docker"

    @pytest.mark.asyncio
    async def test_command_failure_carries_stderr(self):
        error = failed("Cannot connect to the Docker daemon")
        with patch(RUN_PATH, new=AsyncMock(side_effect=error)):
            with pytest.raises(ProviderError, match="Cannot connect to the Docker daemon"):
                await DockerProvider().list_servers()

    def test_parse_tolerates_null_labels(self):
        raw = json.loads(inspect_output(status="exited"))[0]
        raw["Config"]["Labels"] = None
        server = DockerProvider()._parse_container(raw)
        assert server.labels == {}
        assert server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_daemon_outage_is_not_missing_container(self, docker):
        docker.daemon_down = True
        provider = DockerProvider()

        with pytest.raises(ProviderError, match="Cannot connect") as get_info:
            await provider.get_server("abcdef123456")
        with pytest.raises(ProviderError, match="Cannot connect") as delete_info:
            await provider.delete_server("abcdef123456")

        assert not isinstance(get_info.value, ServerNotFoundError)
        assert not isinstance(delete_info.value, ServerNotFoundError)
        assert "abcdef123456" in docker.containers


class TestDockerImages:
    """Tests for mapping image names to docker references."""

    @pytest.mark.parametrize(
        "image,expected",
        [
            ("ubuntu-24.04", "ubuntu:24.04"),
            ("debian-12", "debian:12"),
            ("alpine", "alpine"),
            ("alpine:3.20", "alpine:3.20"),
            ("ghcr.io/acme/edge@sha256:abc", "ghcr.io/acme/edge@sha256:abc"),
            ("", "ubuntu:24.04"),
        ],
    )
    def test_docker_image(self, image, expected):
        assert docker_image(image) == expected

    @pytest.mark.asyncio
    async def test_plain_image_name_kept(self, docker):
        await DockerProvider().create_server(
            CreateServerRequest(name="n", server_type="x", image="alpine", location="local")
        )
        run = next(c for c in docker.calls if c[:2] == ["run", "-d"])
        assert run[-3:] == ["alpine", "sleep", "infinity"]


class TestDockerRollback:
    """Tests for rollback over docker when the daemon goes away."""

    @pytest.mark.asyncio
    async def test_daemon_outage_keeps_node_record(self, docker, local_registry):
        docker.fail_run_after = 1
        orchestrator = ForestOrchestrator(
            local_registry, DockerProvider(), conflict_strategy=NoRetryStrategy()
        )

        with pytest.raises(ProvisioningError):
            await orchestrator.plant(
                PlantRequest(
                    node_count=2, server_type="cx22", image="ubuntu-24.04", forest_id="forest-1"
                )
            )

        nodes = await local_registry.get_nodes("forest-1")
        assert [n.id for n in nodes] == ["abcdef123456"]
        forest = await local_registry.get_forest("forest-1")
        assert forest.status == FOREST_FAILED
        assert forest.node_count == 1
        assert not any(c[0] == "rm" for c in docker.calls)
