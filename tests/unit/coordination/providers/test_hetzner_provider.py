"""Tests for HetznerProvider.

Tests cover:
- Token sanitization and config
- Server payload parsing (IPv6 /64 handling, status mapping)
- Error mapping from the Cloud API error envelope
- Server lifecycle against a fake API served by aiohttp
"""

from __future__ import annotations

import itertools

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from canopy.coordination.providers.base import (
    CreateServerRequest,
    ProviderAuthError,
    ProviderError,
    ServerNotFoundError,
    ServerState,
)
from canopy.coordination.providers.hetzner_provider import (
    HETZNER_PROFILES,
    HetznerConfig,
    HetznerProvider,
    format_label_selector,
    sanitize_api_token,
)
from canopy.coordination.selection import is_capacity_error

TOKEN = "test-token-abc123"


def raw_server(server_id, name, status="running", labels=None, location="fsn1"):
    return {
        "id": server_id,
        "name": name,
        "status": status,
        "server_type": {"name": "cx22"},
        "datacenter": {"name": f"{location}-dc14", "location": {"name": location}},
        "public_net": {
            "ipv4": None,
            "ipv6": {"ip": "2a01:4f8:c17:1234::/64"},
        },
        "labels": labels or {},
    }


class TestHelpers:
    """Tests for module-level helpers and config."""

    def test_sanitize_strips_whitespace_and_control_chars(self):
        assert sanitize_api_token("  \ufeffabc\r\n") == "abc"
        assert sanitize_api_token("ab c\td") == "abcd"

    def test_sanitize_empty(self):
        assert sanitize_api_token(None) == ""
        assert sanitize_api_token("   ") == ""

    def test_label_selector(self):
        assert format_label_selector({"forest-id": "f1", "role": "edge"}) == "forest-id=f1,role=edge"
        assert format_label_selector(None) == ""

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("HETZNER_API_TOKEN", "from-env")
        assert HetznerConfig.from_env().api_token == "from-env"

    def test_empty_token_rejected(self):
        with pytest.raises(ProviderAuthError, match="HETZNER_API_TOKEN"):
            HetznerProvider(HetznerConfig(api_token="\r\n"))

    def test_profiles(self):
        assert HETZNER_PROFILES["small"].primary == "cx22"
        assert HETZNER_PROFILES["medium"].fallbacks == ("cx32", "cpx31")
        assert set(HETZNER_PROFILES) == {"small", "medium", "large"}


class TestParseServer:
    """Tests for converting API server objects."""

    def setup_method(self):
        self.provider = HetznerProvider(HetznerConfig(api_token=TOKEN))

    def test_ipv6_network_becomes_host_address(self):
        server = self.provider._parse_server(raw_server(7, "n1"))
        assert server.ipv6 == "2a01:4f8:c17:1234::1"
        assert server.ipv4 == ""
        assert server.id == "7"
        assert server.location == "fsn1"
        assert server.server_type == "cx22"

    def test_ipv4_when_present(self):
        raw = raw_server(7, "n1")
        raw["public_net"]["ipv4"] = {"ip": "203.0.113.7"}
        assert self.provider._parse_server(raw).ipv4 == "203.0.113.7"

    @pytest.mark.parametrize(
        "status,state",
        [
            ("initializing", ServerState.STARTING),
            ("starting", ServerState.STARTING),
            ("running", ServerState.RUNNING),
            ("off", ServerState.STOPPED),
            ("deleting", ServerState.DELETING),
            ("migrating", ServerState.UNKNOWN),
        ],
    )
    def test_status_mapping(self, status, state):
        assert self.provider._parse_server(raw_server(1, "n", status=status)).state == state


class FakeHetznerAPI:
    """Just enough of the Cloud API for the provider's calls."""

    def __init__(self):
        self.ids = itertools.count(100)
        self.servers: dict[int, dict] = {}
        self.server_types = {"cx22": ["fsn1", "nbg1", "hel1"], "cpx11": ["ash"]}
        self.unavailable: set[tuple[str, str]] = set()
        self.create_payloads: list[dict] = []
        self.list_params: list[dict] = []
        self.type_lookups = 0
        self.boot_polls = 1

    def _authorized(self, request):
        return request.headers.get("Authorization") == f"Bearer {TOKEN}"

    @staticmethod
    def _error(status, code, message):
        return web.json_response({"error": {"code": code, "message": message}}, status=status)

    @web.middleware
    async def auth(self, request, handler):
        if not self._authorized(request):
            return self._error(401, "unauthorized", "unable to authenticate")
        return await handler(request)

    async def create(self, request):
        payload = await request.json()
        self.create_payloads.append(payload)
        if payload["server_type"] == "forbidden":
            return self._error(403, "forbidden", "insufficient permissions")
        if (payload["server_type"], payload["location"]) in self.unavailable:
            return self._error(412, "resource_unavailable", "server type unavailable")
        if payload["server_type"] not in self.server_types:
            return self._error(422, "invalid_input", "unknown server type")
        server_id = next(self.ids)
        server = raw_server(
            server_id,
            payload["name"],
            status="initializing",
            labels=payload.get("labels"),
            location=payload["location"],
        )
        self.servers[server_id] = server
        return web.json_response({"server": server, "action": {"id": 1}}, status=201)

    async def get(self, request):
        server = self.servers.get(int(request.match_info["id"]))
        if server is None:
            return self._error(404, "not_found", "server not found")
        if server["status"] == "initializing":
            if self.boot_polls <= 0:
                server["status"] = "running"
            self.boot_polls -= 1
        return web.json_response({"server": server})

    async def delete(self, request):
        if self.servers.pop(int(request.match_info["id"]), None) is None:
            return self._error(404, "not_found", "server not found")
        return web.json_response({"action": {"id": 2, "command": "delete_server"}})

    async def list_servers_handler(self, request):
        self.list_params.append(dict(request.query))
        selector = request.query.get("label_selector", "")
        wanted = dict(pair.split("=", 1) for pair in selector.split(",") if pair)
        matching = [
            s for s in self.servers.values()
            if all(s["labels"].get(k) == v for k, v in wanted.items())
        ]
        page = int(request.query.get("page", 1))
        per_page = 2
        chunk = matching[(page - 1) * per_page: page * per_page]
        next_page = page + 1 if page * per_page < len(matching) else None
        return web.json_response(
            {"servers": chunk, "meta": {"pagination": {"page": page, "next_page": next_page}}}
        )

    async def server_types_handler(self, request):
        self.type_lookups += 1
        name = request.query.get("name")
        if name not in self.server_types:
            return web.json_response({"server_types": []})
        prices = [{"location": loc, "price_hourly": {"net": "0.0050"}} for loc in self.server_types[name]]
        return web.json_response({"server_types": [{"name": name, "prices": prices}]})


class TestHetznerProviderAPI(AioHTTPTestCase):
    """Tests for HetznerProvider against FakeHetznerAPI."""

    async def get_application(self) -> web.Application:
        self.api = FakeHetznerAPI()
        app = web.Application(middlewares=[self.api.auth])
        app.router.add_post("/v1/servers", self.api.create)
        app.router.add_get("/v1/servers", self.api.list_servers_handler)
        app.router.add_get("/v1/servers/{id}", self.api.get)
        app.router.add_delete("/v1/servers/{id}", self.api.delete)
        app.router.add_get("/v1/server_types", self.api.server_types_handler)
        return app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.provider = self.make_provider(TOKEN)

    async def asyncTearDown(self):
        await self.provider.close()
        await super().asyncTearDown()

    def make_provider(self, token: str) -> HetznerProvider:
        return HetznerProvider(
            HetznerConfig(
                api_token=token,
                api_base=str(self.server.make_url("/v1")),
                poll_interval=0.01,
            )
        )

    def request(self, name="forest-1-node-1", server_type="cx22", location="fsn1", **kwargs):
        return CreateServerRequest(
            name=name,
            server_type=server_type,
            image="ubuntu-24.04",
            location=location,
            **kwargs,
        )

    async def test_create_server_payload(self):
        server = await self.provider.create_server(
            self.request(
                ssh_keys=["canopy"],
                user_data="#cloud-config\n",
                labels={"forest-id": "forest-1"},
            )
        )

        payload = self.api.create_payloads[0]
        assert payload["public_net"] == {"enable_ipv4": False, "enable_ipv6": True}
        assert payload["ssh_keys"] == ["canopy"]
        assert payload["user_data"] == "#cloud-config\n"
        assert payload["labels"] == {"forest-id": "forest-1"}
        assert server.state == ServerState.STARTING
        assert server.labels == {"forest-id": "forest-1"}

    async def test_wait_for_server_polls_until_running(self):
        self.api.boot_polls = 2
        created = await self.provider.create_server(self.request())

        server = await self.provider.wait_for_server(created.id, timeout=5)

        assert server.is_running
        assert server.ipv6.endswith("::1")

    async def test_wait_for_server_times_out(self):
        self.api.boot_polls = 10_000
        created = await self.provider.create_server(self.request())

        with self.assertRaises(ProviderError) as ctx:
            await self.provider.wait_for_server(created.id, timeout=0.05)

        assert ctx.exception.code == "timeout"

    async def test_capacity_error_keeps_code(self):
        self.api.unavailable.add(("cx22", "fsn1"))

        with self.assertRaises(ProviderError) as ctx:
            await self.provider.create_server(self.request())

        assert ctx.exception.code == "resource_unavailable"
        assert ctx.exception.status == 412
        assert is_capacity_error(ctx.exception)

    async def test_invalid_input_is_not_capacity(self):
        with self.assertRaises(ProviderError) as ctx:
            await self.provider.create_server(self.request(server_type="nope"))

        assert ctx.exception.code == "invalid_input"
        assert not is_capacity_error(ctx.exception)

    async def test_unauthorized(self):
        provider = self.make_provider("wrong-token")
        try:
            with self.assertRaises(ProviderAuthError) as ctx:
                await provider.list_servers()
        finally:
            await provider.close()

        assert "Read & Write" in str(ctx.exception)

    async def test_forbidden(self):
        with self.assertRaises(ProviderAuthError) as ctx:
            await self.provider.create_server(self.request(server_type="forbidden"))
        assert ctx.exception.status == 403

    async def test_get_and_delete_missing_server(self):
        with self.assertRaises(ServerNotFoundError):
            await self.provider.get_server("999")
        with self.assertRaises(ServerNotFoundError):
            await self.provider.delete_server("999")

    async def test_delete_server(self):
        created = await self.provider.create_server(self.request())

        await self.provider.delete_server(created.id)

        assert self.api.servers == {}

    async def test_list_servers_paginates_with_label_selector(self):
        for i in range(3):
            await self.provider.create_server(
                self.request(name=f"f1-node-{i}", labels={"forest-id": "f1"})
            )
        await self.provider.create_server(self.request(name="other", labels={"forest-id": "f2"}))

        servers = await self.provider.list_servers({"forest-id": "f1"})

        assert sorted(s.name for s in servers) == ["f1-node-0", "f1-node-1", "f1-node-2"]
        assert len(self.api.list_params) == 2
        assert self.api.list_params[0]["label_selector"] == "forest-id=f1"

    async def test_available_locations_from_prices(self):
        assert await self.provider.get_available_locations("cx22") == ["fsn1", "nbg1", "hel1"]

    async def test_server_type_lookups_are_cached(self):
        assert await self.provider.validate_server_type("cx22")
        await self.provider.get_available_locations("cx22")
        assert self.api.type_lookups == 1

    async def test_unknown_server_type(self):
        assert not await self.provider.validate_server_type("cx999")
        with self.assertRaises(ProviderError) as ctx:
            await self.provider.get_available_locations("cx999")
        assert ctx.exception.code == "not_found"

    async def test_network_error(self):
        provider = HetznerProvider(
            HetznerConfig(api_token=TOKEN, api_base="http://127.0.0.1:9/v1", timeout_seconds=2)
        )
        try:
            with self.assertRaises(ProviderError) as ctx:
                await provider.list_servers()
        finally:
            await provider.close()

        assert ctx.exception.code == "network"
