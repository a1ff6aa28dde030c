"""Local Docker machine provider.

Runs each node as a long-lived container on a dedicated bridge network so a
forest can be planted on a laptop without cloud credentials. Everything goes
through the ``docker`` CLI via ``async_subprocess_run``.

There is a single location (``local``) and any server type is accepted.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from canopy.coordination.providers.base import (
    CreateServerRequest,
    MachineProvider,
    ProviderError,
    Server,
    ServerNotFoundError,
    ServerState,
)
from canopy.utils.async_utils import SubprocessError, async_subprocess_run
from canopy.utils.exceptions import PARSE_ERRORS, PROCESS_ERRORS

logger = logging.getLogger(__name__)

LOCAL_LOCATION = "local"
DEFAULT_NETWORK = "canopy-local"
DEFAULT_IMAGE = "ubuntu:24.04"
MANAGED_LABEL = "canopy.managed"
MISSING_MARKERS = ("No such object", "No such container")
_HETZNER_IMAGE = re.compile(r"^([a-z][a-z0-9]*)-(\d[\w.]*)$")

DOCKER_STATUS_MAP = {
    "created": ServerState.STARTING,
    "restarting": ServerState.STARTING,
    "running": ServerState.RUNNING,
    "paused": ServerState.STOPPED,
    "exited": ServerState.STOPPED,
    "dead": ServerState.STOPPED,
    "removing": ServerState.DELETING,
}


def _is_missing(error: ProviderError) -> bool:
    message = str(error)
    return any(marker in message for marker in MISSING_MARKERS)


def docker_image(image: str) -> str:
    """Map a Hetzner image name (``ubuntu-24.04``) to a docker reference.

    References that already carry a tag or digest, and plain names such as
    ``alpine``, are passed through unchanged.
    """
    if not image:
        return DEFAULT_IMAGE
    if ":" in image or "@" in image:
        return image
    match = _HETZNER_IMAGE.match(image)
    if match:
        return f"{match.group(1)}:{match.group(2)}"
    return image


class DockerProvider(MachineProvider):
    """Docker container implementation of ``MachineProvider``."""

    name = "local"

    def __init__(
        self,
        network: str = DEFAULT_NETWORK,
        docker_binary: str = "docker",
        command_timeout: float = 120.0,
        poll_interval: float = 1.0,
    ):
        self.network = network
        self.docker_binary = docker_binary
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self._network_ready = False

    async def _docker(self, *args: str, check: bool = True) -> str:
        cmd = [self.docker_binary, *args]
        try:
            result = await async_subprocess_run(cmd, timeout=self.command_timeout, check=check)
        except SubprocessError as e:
            raise ProviderError(
                f"docker {args[0]} failed: {e.stderr.strip() or e}",
                code="docker",
                status=e.returncode,
            ) from e
        except PROCESS_ERRORS as e:
            raise ProviderError(f"docker is not available: {e}", code="docker") from e
        return result.stdout.strip()

    async def _ensure_network(self) -> None:
        if self._network_ready:
            return
        try:
            await self._docker("network", "inspect", self.network)
        except ProviderError:
            logger.info(f"Creating docker network {self.network}")
            await self._docker("network", "create", "--ipv6", self.network)
        self._network_ready = True

    def _parse_container(self, raw: dict[str, Any]) -> Server:
        settings = raw.get("NetworkSettings") or {}
        networks = settings.get("Networks") or {}
        net = networks.get(self.network) or {}
        config = raw.get("Config") or {}
        state = (raw.get("State") or {}).get("Status", "")
        labels = config.get("Labels") or {}
        return Server(
            id=raw.get("Id", "")[:12],
            name=raw.get("Name", "").lstrip("/"),
            state=DOCKER_STATUS_MAP.get(state, ServerState.UNKNOWN),
            server_type=labels.get("canopy.server-type", ""),
            location=LOCAL_LOCATION,
            ipv4=net.get("IPAddress") or settings.get("IPAddress") or "",
            ipv6=net.get("GlobalIPv6Address") or "",
            labels=dict(labels),
        )

    async def create_server(self, request: CreateServerRequest) -> Server:
        await self._ensure_network()
        args = [
            "run", "-d",
            "--name", request.name,
            "--hostname", request.name,
            "--network", self.network,
            "--label", f"{MANAGED_LABEL}=true",
            "--label", f"canopy.server-type={request.server_type}",
        ]
        for key, value in request.labels.items():
            args.extend(["--label", f"{key}={value}"])
        if request.user_data:
            args.extend(["--env", f"CANOPY_USER_DATA={request.user_data}"])
        image = docker_image(request.image)
        args.extend([image, "sleep", "infinity"])

        container_id = await self._docker(*args)
        if not container_id:
            raise ProviderError("docker returned an empty container ID", code="docker")
        logger.info(f"Created container {request.name} ({container_id[:12]})")
        return await self.get_server(container_id[:12])

    async def get_server(self, server_id: str) -> Server:
        try:
            output = await self._docker("inspect", server_id)
        except ProviderError as e:
            if _is_missing(e):
                raise ServerNotFoundError(server_id) from e
            raise
        try:
            containers = json.loads(output)
            return self._parse_container(containers[0])
        except (*PARSE_ERRORS, IndexError) as e:
            raise ProviderError(f"unexpected docker inspect output for {server_id}: {e}") from e

    async def delete_server(self, server_id: str) -> None:
        # rm -f exits 0 for unknown containers on current docker releases
        await self.get_server(server_id)
        try:
            await self._docker("rm", "-f", server_id)
        except ProviderError as e:
            if _is_missing(e):
                raise ServerNotFoundError(server_id) from e
            raise
        logger.info(f"Removed container {server_id}")

    async def list_servers(self, labels: dict[str, str] | None = None) -> list[Server]:
        args = ["ps", "-a", "--format", "{{.ID}}", "--filter", f"label={MANAGED_LABEL}=true"]
        for key, value in (labels or {}).items():
            args.extend(["--filter", f"label={key}={value}"])
        output = await self._docker(*args)
        servers = []
        for container_id in output.splitlines():
            try:
                servers.append(await self.get_server(container_id.strip()))
            except ServerNotFoundError:
                continue
        return servers

    async def get_available_locations(self, server_type: str) -> list[str]:
        return [LOCAL_LOCATION]

    async def validate_server_type(self, server_type: str) -> bool:
        return True
