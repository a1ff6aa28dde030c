"""Hetzner Cloud machine provider.

Talks to the Hetzner Cloud REST API directly over aiohttp.

API Documentation: https://docs.hetzner.cloud/

Errors come back as ``{"error": {"code": "...", "message": "..."}}``; the code
is preserved on ``ProviderError.code`` so capacity failures
(``resource_unavailable``, ``location_disabled``...) can be classified
without parsing the message text.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import aiohttp

from canopy.coordination.providers.base import (
    CreateServerRequest,
    MachineProvider,
    ProviderAuthError,
    ProviderError,
    Server,
    ServerNotFoundError,
    ServerState,
)
from canopy.utils.exceptions import NETWORK_ERRORS

logger = logging.getLogger(__name__)


@dataclass
class HetznerConfig:
    """Configuration for the Hetzner Cloud provider."""

    api_token: str | None = None
    api_base: str = "https://api.hetzner.cloud/v1"
    timeout_seconds: float = 30.0
    poll_interval: float = 5.0

    @classmethod
    def from_env(cls) -> HetznerConfig:
        """Load configuration from environment variables."""
        return cls(api_token=os.environ.get("HETZNER_API_TOKEN"))


@dataclass(frozen=True)
class ServerTypeProfile:
    primary: str
    fallbacks: tuple[str, ...]


# Machine profiles (x86 only; ubuntu images are not offered on the ARM cax line)
HETZNER_PROFILES: dict[str, ServerTypeProfile] = {
    "small": ServerTypeProfile("cx22", ("cpx11", "cx21")),
    "medium": ServerTypeProfile("cpx21", ("cx32", "cpx31")),
    "large": ServerTypeProfile("cpx41", ("cpx51", "cx52")),
}

HETZNER_STATUS_MAP = {
    "initializing": ServerState.STARTING,
    "starting": ServerState.STARTING,
    "running": ServerState.RUNNING,
    "stopping": ServerState.STOPPED,
    "off": ServerState.STOPPED,
    "deleting": ServerState.DELETING,
}


def sanitize_api_token(token: str | None) -> str:
    """Keep printable ASCII only (drops whitespace, CR/LF, BOM, control chars)."""
    if not token:
        return ""
    return "".join(ch for ch in token.strip() if 0x21 <= ord(ch) <= 0x7E)


def format_label_selector(labels: dict[str, str] | None) -> str:
    """``{"a": "1", "b": "2"}`` -> ``"a=1,b=2"``."""
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in labels.items())


class HetznerProvider(MachineProvider):
    """Hetzner Cloud implementation of ``MachineProvider``.

    Example:
        provider = HetznerProvider(HetznerConfig(api_token=token))
        locations = await provider.get_available_locations("cx22")
    """

    name = "hetzner"

    def __init__(self, config: HetznerConfig | None = None):
        self.config = config or HetznerConfig.from_env()
        self._token = sanitize_api_token(self.config.api_token)
        if not self._token:
            raise ProviderAuthError(
                "Hetzner API token is empty; export HETZNER_API_TOKEN", code="unauthorized"
            )
        self.poll_interval = self.config.poll_interval
        self._session: aiohttp.ClientSession | None = None
        self._server_types: dict[str, dict[str, Any] | None] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request."""
        url = f"{self.config.api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        session = await self._get_session()

        try:
            async with session.request(
                method, url, headers=headers, json=json, params=params
            ) as resp:
                if resp.status == 204:
                    return {}
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {}
                data = data or {}

                if resp.status >= 400:
                    error = data.get("error") or {}
                    code = error.get("code", "")
                    message = error.get("message") or str(data) or resp.reason
                    if resp.status == 401 or code == "unauthorized":
                        raise ProviderAuthError(
                            "Hetzner API authentication failed: the token is invalid or "
                            "revoked. Create a Read & Write token in the Hetzner Cloud "
                            "console and export HETZNER_API_TOKEN",
                            code=code or "unauthorized",
                            status=resp.status,
                        )
                    if resp.status == 403 and code == "forbidden":
                        raise ProviderAuthError(
                            f"Hetzner API permission denied ({message}); the token "
                            "needs Read & Write access",
                            code=code,
                            status=resp.status,
                        )
                    raise ProviderError(
                        f"Hetzner API error ({resp.status} {code}): {message}",
                        code=code,
                        status=resp.status,
                    )
                return data

        except NETWORK_ERRORS as e:
            raise ProviderError(f"Hetzner API request failed: {e}", code="network") from e

    def _parse_server_state(self, status: str) -> ServerState:
        return HETZNER_STATUS_MAP.get(status, ServerState.UNKNOWN)

    def _parse_server(self, raw: dict[str, Any]) -> Server:
        public_net = raw.get("public_net") or {}
        ipv4 = (public_net.get("ipv4") or {}).get("ip") or ""
        ipv6 = (public_net.get("ipv6") or {}).get("ip") or ""
        # Hetzner reports the /64 network; the host address is ::1 in it
        if ipv6.endswith("::/64"):
            ipv6 = ipv6[: -len("::/64")] + "::1"
        elif "/" in ipv6:
            ipv6 = ipv6.split("/", 1)[0]
        datacenter = raw.get("datacenter") or {}
        return Server(
            id=str(raw["id"]),
            name=raw.get("name", ""),
            state=self._parse_server_state(raw.get("status", "")),
            server_type=(raw.get("server_type") or {}).get("name", ""),
            location=(datacenter.get("location") or {}).get("name", ""),
            ipv4=ipv4,
            ipv6=ipv6,
            labels=dict(raw.get("labels") or {}),
        )

    async def create_server(self, request: CreateServerRequest) -> Server:
        payload: dict[str, Any] = {
            "name": request.name,
            "server_type": request.server_type,
            "image": request.image,
            "location": request.location,
            "labels": request.labels,
            "start_after_create": True,
            "public_net": {"enable_ipv4": request.enable_ipv4, "enable_ipv6": True},
        }
        if request.ssh_keys:
            payload["ssh_keys"] = request.ssh_keys
        if request.user_data:
            payload["user_data"] = request.user_data

        data = await self._api_request("POST", "/servers", json=payload)
        server = self._parse_server(data["server"])
        logger.info(
            f"Created Hetzner server {server.name} ({server.id}) "
            f"{request.server_type}@{request.location}"
        )
        return server

    async def get_server(self, server_id: str) -> Server:
        try:
            data = await self._api_request("GET", f"/servers/{server_id}")
        except ProviderError as e:
            if e.status == 404:
                raise ServerNotFoundError(server_id) from e
            raise
        return self._parse_server(data["server"])

    async def delete_server(self, server_id: str) -> None:
        try:
            await self._api_request("DELETE", f"/servers/{server_id}")
        except ProviderError as e:
            if e.status == 404:
                raise ServerNotFoundError(server_id) from e
            raise
        logger.info(f"Deleted Hetzner server {server_id}")

    async def list_servers(self, labels: dict[str, str] | None = None) -> list[Server]:
        servers: list[Server] = []
        page: int | None = 1
        while page:
            params: dict[str, Any] = {"page": page, "per_page": 50}
            selector = format_label_selector(labels)
            if selector:
                params["label_selector"] = selector
            data = await self._api_request("GET", "/servers", params=params)
            servers.extend(self._parse_server(raw) for raw in data.get("servers", []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return servers

    async def _get_server_type(self, server_type: str) -> dict[str, Any] | None:
        if server_type not in self._server_types:
            data = await self._api_request(
                "GET", "/server_types", params={"name": server_type}
            )
            matches = data.get("server_types") or []
            self._server_types[server_type] = matches[0] if matches else None
        return self._server_types[server_type]

    async def validate_server_type(self, server_type: str) -> bool:
        return await self._get_server_type(server_type) is not None

    async def get_available_locations(self, server_type: str) -> list[str]:
        info = await self._get_server_type(server_type)
        if info is None:
            raise ProviderError(f"server type not found: {server_type}", code="not_found")
        return [p["location"] for p in info.get("prices", []) if p.get("location")]
