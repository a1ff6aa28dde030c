"""Forest provisioning orchestrator.

Drives a ``MachineProvider`` and a ``Registry`` through the forest
lifecycle:

    plant     register forest -> placement fallback loop -> nodes -> active
    provision register forest -> nodes at one placement -> active
    grow      bump node_count -> nodes numbered after the existing ones
    teardown  DNS -> servers (best-effort) -> orphan sweep -> delete forest

Nodes are created strictly one after another. For each node the server is
created, awaited until running, registered as ``provisioning``, probed for
reachability, then promoted to ``active``. If anything fails (including
task cancellation or a readiness timeout) every server created in that
attempt is deleted, its node record removed, and the original error is
re-raised. The forest record stays behind, not ``active``, holding exactly
the nodes that still exist.

All registry writes go through one conflict policy (``conflict_strategy``):
the registry reports ``ConcurrentModificationError`` and this class decides
whether to retry.

Usage:
    orchestrator = ForestOrchestrator(registry, provider, readiness=ReadinessChecker())
    forest = await orchestrator.plant(PlantRequest(node_count=3, server_type="cx22",
                                                   image="ubuntu-24.04"))
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from canopy.config.provider_timeouts import ProviderTimeouts
from canopy.coordination.collaborators import (
    DefaultUserDataRenderer,
    DNSProvider,
    UserDataRenderer,
)
from canopy.coordination.providers.base import (
    CreateServerRequest,
    MachineProvider,
    ProviderError,
    Server,
    ServerNotFoundError,
    ServerState,
)
from canopy.coordination.readiness import NodeNotReadyError, ReadinessChecker
from canopy.coordination.retry_strategies import RetryContext, RetryStrategy, conflict_retry
from canopy.coordination.selection import Placement, PlacementSelector
from canopy.registry.base import Registry
from canopy.registry.errors import ConcurrentModificationError
from canopy.registry.types import (
    DEFAULT_NODE_ROLE,
    FOREST_ACTIVE,
    FOREST_FAILED,
    FOREST_PROVISIONING,
    NODE_ACTIVE,
    NODE_PROVISIONING,
    Forest,
    Node,
    generate_forest_id,
    node_name,
    utcnow,
)
from canopy.utils.exceptions import NETWORK_ERRORS, CanopyError, log_and_continue

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "canopy"
FOREST_LABEL = "forest-id"
ROLE_LABEL = "role"

_NODE_SEQUENCE = re.compile(r"-node-(\d+)$")

# Errors a best-effort cleanup step logs and moves past
CLEANUP_ERRORS: tuple[type[BaseException], ...] = (CanopyError, *NETWORK_ERRORS)


class ProvisioningError(CanopyError):
    """A node could not be created at a placement.

    Keeps the provider's error ``code`` so capacity classification still
    works on the wrapped error.
    """

    def __init__(
        self,
        message: str,
        *,
        forest_id: str,
        node: str = "",
        placement: Placement | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.forest_id = forest_id
        self.node = node
        self.placement = placement
        self.code = getattr(cause, "code", "") or ""


@dataclass
class NodeSpec:
    """Per-run settings applied to every node created."""

    image: str
    role: str = DEFAULT_NODE_ROLE
    ssh_keys: list[str] = field(default_factory=list)
    enable_ipv4: bool = False


@dataclass
class ProvisionRequest:
    """Provision a new forest at one fixed placement."""

    forest_id: str
    node_count: int
    location: str
    server_type: str
    image: str
    role: str = DEFAULT_NODE_ROLE
    ssh_keys: list[str] = field(default_factory=list)
    enable_ipv4: bool = False

    def node_spec(self) -> NodeSpec:
        return NodeSpec(self.image, self.role, list(self.ssh_keys), self.enable_ipv4)


@dataclass
class PlantRequest:
    """Plant a new forest, falling back across server types and locations."""

    node_count: int
    server_type: str
    image: str
    fallback_server_types: list[str] = field(default_factory=list)
    role: str = DEFAULT_NODE_ROLE
    ssh_keys: list[str] = field(default_factory=list)
    enable_ipv4: bool = False
    forest_id: str | None = None

    def node_spec(self) -> NodeSpec:
        return NodeSpec(self.image, self.role, list(self.ssh_keys), self.enable_ipv4)


@dataclass
class GrowRequest:
    """Add nodes to an existing forest, in the forest's location."""

    forest_id: str
    node_count: int
    server_type: str
    image: str
    fallback_server_types: list[str] = field(default_factory=list)
    role: str = DEFAULT_NODE_ROLE
    ssh_keys: list[str] = field(default_factory=list)
    enable_ipv4: bool = False

    def node_spec(self) -> NodeSpec:
        return NodeSpec(self.image, self.role, list(self.ssh_keys), self.enable_ipv4)


@dataclass
class TeardownResult:
    forest_id: str
    deleted: list[str] = field(default_factory=list)
    already_gone: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    orphans_deleted: list[str] = field(default_factory=list)
    dns_failures: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed and not self.dns_failures


@dataclass
class _Attempt:
    """Resources created during one placement attempt."""

    names: list[str] = field(default_factory=list)
    servers: list[Server] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)


def next_node_sequence(nodes: Sequence[Node]) -> int:
    """First free 1-based sequence after the existing nodes."""
    highest = len(nodes)
    for node in nodes:
        match = _NODE_SEQUENCE.search(node.name)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


class ForestOrchestrator:
    """Top-level forest state machine.

    The registry, provider and collaborators are injected; nothing here is
    global.
    """

    def __init__(
        self,
        registry: Registry,
        provider: MachineProvider,
        *,
        selector: PlacementSelector | None = None,
        readiness: ReadinessChecker | None = None,
        user_data: UserDataRenderer | None = None,
        dns: DNSProvider | None = None,
        dns_domain: str = "",
        dns_ttl: int = 300,
        conflict_strategy: RetryStrategy | None = None,
        server_timeout: float | None = None,
        registry_url: str | None = None,
    ):
        self.registry = registry
        self.provider = provider
        self.selector = selector or PlacementSelector(provider)
        self.readiness = readiness
        self.user_data = user_data or DefaultUserDataRenderer(registry_url or "")
        self.dns = dns
        self.dns_domain = dns_domain
        self.dns_ttl = dns_ttl
        self.conflict_strategy = conflict_strategy or conflict_retry()
        self.server_timeout = (
            server_timeout
            if server_timeout is not None
            else ProviderTimeouts.get_server_timeout(provider.name)
        )
        self.registry_url = registry_url

    # ------------------------------------------------------------------
    # Registry access
    # ------------------------------------------------------------------

    async def _registry_call(
        self,
        operation: str,
        forest_id: str,
        write: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a registry write, retrying conflicts per ``conflict_strategy``.

        ``write`` is called afresh on every attempt, so anything it derives
        from registry state is recomputed from the snapshot that won.
        """
        ctx = RetryContext(target=forest_id, operation=operation)
        while True:
            try:
                return await write()
            except ConcurrentModificationError as e:
                ctx.record_failure(e)
                if not self.conflict_strategy.should_retry(ctx):
                    logger.error(
                        f"Registry conflict on {operation} for {forest_id} "
                        f"after {ctx.attempt} attempt(s)"
                    )
                    raise
                delay = self.conflict_strategy.get_delay(ctx)
                self.conflict_strategy.on_retry(ctx, delay)
                await asyncio.sleep(delay)

    async def _modify_forest(
        self,
        operation: str,
        forest_id: str,
        fn: Callable[[Forest, list[Node]], None],
    ) -> Forest:
        return await self._registry_call(
            operation, forest_id, lambda: self.registry.modify_forest(forest_id, fn)
        )

    async def _settle_forest(
        self,
        forest_id: str,
        status: str,
        location: str | None = None,
    ) -> Forest:
        """Write status, location and the real node count in one update."""

        def settle(forest: Forest, nodes: list[Node]) -> None:
            forest.status = status
            forest.node_count = len(nodes)
            if location:
                forest.location = location

        return await self._modify_forest("settle_forest", forest_id, settle)

    async def _settle_after_failure(self, forest_id: str, status: str) -> None:
        try:
            await self._settle_forest(forest_id, status)
        except CLEANUP_ERRORS as e:
            logger.error(f"Could not record {status} state for forest {forest_id}: {e}")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def plant(self, request: PlantRequest) -> Forest:
        """Create a forest, trying placements until one has capacity.

        Raises:
            ForestExistsError: the generated (or given) ID is taken.
            NoCapacityError: every placement failed on capacity.
            NoValidServerTypeError: no configured server type exists.
        """
        forest_id = request.forest_id or generate_forest_id()
        forest = Forest(
            id=forest_id,
            provider=self.provider.name,
            node_count=request.node_count,
            status=FOREST_PROVISIONING,
            created_at=utcnow(),
            registry_url=self.registry_url,
        )
        await self._registry_call(
            "register_forest", forest_id, lambda: self.registry.register_forest(forest)
        )
        logger.info(f"Planting forest {forest_id} with {request.node_count} node(s)")

        spec = request.node_spec()

        async def attempt(placement: Placement) -> tuple[Placement, list[Node]]:
            logger.info(f"Provisioning {forest_id} with {placement}")
            nodes = await self._create_nodes(forest_id, 1, request.node_count, placement, spec)
            return placement, nodes

        try:
            placement, _nodes = await self.selector.run(
                request.server_type, request.fallback_server_types, attempt
            )
        except BaseException:
            await self._settle_after_failure(forest_id, FOREST_FAILED)
            raise

        forest = await self._settle_forest(forest_id, FOREST_ACTIVE, placement.location)
        logger.info(f"Forest {forest_id} is active ({forest.node_count} nodes at {placement})")
        return forest

    async def provision(self, request: ProvisionRequest) -> Forest:
        """Create a forest at exactly one placement; no fallback."""
        forest = Forest(
            id=request.forest_id,
            provider=self.provider.name,
            location=request.location,
            node_count=request.node_count,
            status=FOREST_PROVISIONING,
            created_at=utcnow(),
            registry_url=self.registry_url,
        )
        await self._registry_call(
            "register_forest", request.forest_id, lambda: self.registry.register_forest(forest)
        )

        placement = Placement(request.server_type, request.location)
        try:
            await self._create_nodes(
                request.forest_id, 1, request.node_count, placement, request.node_spec()
            )
        except BaseException:
            await self._settle_after_failure(request.forest_id, FOREST_FAILED)
            raise

        return await self._settle_forest(request.forest_id, FOREST_ACTIVE, request.location)

    async def grow(self, request: GrowRequest) -> list[Node]:
        """Add nodes to an existing forest, numbered after the current ones.

        The node count is reserved up front as a relative bump on the stored
        forest, so concurrent growths add up instead of overwriting each
        other; numbering starts after both the recorded nodes and any count
        already reserved by a growth still in flight.
        """
        reserved: dict[str, Any] = {}

        def reserve(forest: Forest, nodes: list[Node]) -> None:
            reserved["start"] = max(next_node_sequence(nodes), forest.node_count + 1)
            reserved["status"] = forest.status
            reserved["location"] = forest.location
            forest.node_count = max(forest.node_count, len(nodes)) + request.node_count
            forest.last_expansion = utcnow()

        forest_id = request.forest_id
        await self._modify_forest("reserve_nodes", forest_id, reserve)
        start = reserved["start"]
        names = {node_name(forest_id, n) for n in range(start, start + request.node_count)}
        logger.info(
            f"Growing forest {forest_id} by {request.node_count} node(s) "
            f"starting at {node_name(forest_id, start)}"
        )

        spec = request.node_spec()
        allowed = [reserved["location"]] if reserved["location"] else None

        async def attempt(placement: Placement) -> list[Node]:
            return await self._create_nodes(
                forest_id, start, request.node_count, placement, spec
            )

        def release(forest: Forest, nodes: list[Node]) -> None:
            kept = sum(1 for node in nodes if node.name in names)
            forest.node_count = max(forest.node_count - (request.node_count - kept), len(nodes))
            forest.status = reserved["status"]

        def activate(forest: Forest, nodes: list[Node]) -> None:
            forest.status = FOREST_ACTIVE

        try:
            nodes = await self.selector.run(
                request.server_type,
                request.fallback_server_types,
                attempt,
                allowed_locations=allowed,
            )
        except BaseException:
            try:
                await self._modify_forest("release_nodes", forest_id, release)
            except CLEANUP_ERRORS as e:
                logger.error(f"Could not release reserved nodes for forest {forest_id}: {e}")
            raise

        await self._modify_forest("activate_forest", forest_id, activate)
        return nodes

    async def teardown(self, forest_id: str) -> TeardownResult:
        """Delete every server of a forest, then the forest record.

        Individual DNS or server failures are logged and collected on the
        result; only a missing forest or a failed final registry delete
        raises.
        """
        await self.registry.get_forest(forest_id)
        nodes = await self.registry.get_nodes(forest_id)
        result = TeardownResult(forest_id=forest_id)
        logger.info(f"Tearing down forest {forest_id} ({len(nodes)} node(s))")

        for node in nodes:
            result.dns_failures.extend(await self._delete_dns(node))

        for node in nodes:
            outcome = await self._delete_server(node.id)
            if outcome == "deleted":
                result.deleted.append(node.id)
            elif outcome == "gone":
                result.already_gone.append(node.id)
            else:
                result.failed.append(node.id)

        known = {node.id for node in nodes}
        try:
            labelled = await self.provider.list_servers({FOREST_LABEL: forest_id})
        except CLEANUP_ERRORS as e:
            log_and_continue(e, f"orphan_sweep {forest_id}", logger)
            labelled = []
        for server in labelled:
            if server.id in known:
                continue
            logger.warning(f"Deleting unregistered server {server.name} ({server.id})")
            outcome = await self._delete_server(server.id)
            if outcome == "deleted":
                result.orphans_deleted.append(server.id)
            elif outcome == "failed":
                result.failed.append(server.id)

        await self._registry_call(
            "delete_forest", forest_id, lambda: self.registry.delete_forest(forest_id)
        )
        if result.failed:
            logger.warning(
                f"Forest {forest_id} removed from registry; servers still to clean up "
                f"manually: {', '.join(result.failed)}"
            )
        else:
            logger.info(f"Forest {forest_id} torn down")
        return result

    # ------------------------------------------------------------------
    # Node creation and rollback
    # ------------------------------------------------------------------

    async def _create_nodes(
        self,
        forest_id: str,
        start: int,
        count: int,
        placement: Placement,
        spec: NodeSpec,
    ) -> list[Node]:
        attempt = _Attempt()
        try:
            for sequence in range(start, start + count):
                await self._create_node(forest_id, sequence, placement, spec, attempt)
        except BaseException as e:
            logger.warning(
                f"Provisioning {forest_id} at {placement} stopped after "
                f"{len(attempt.nodes)} node(s): {e!r}; rolling back"
            )
            await self._rollback(forest_id, attempt)
            if isinstance(e, (ProviderError, NodeNotReadyError)):
                name = attempt.names[-1] if attempt.names else ""
                raise ProvisioningError(
                    f"failed to provision {name or forest_id} at {placement}: {e}",
                    forest_id=forest_id,
                    node=name,
                    placement=placement,
                    cause=e,
                ) from e
            raise
        return attempt.nodes

    async def _create_node(
        self,
        forest_id: str,
        sequence: int,
        placement: Placement,
        spec: NodeSpec,
        attempt: _Attempt,
    ) -> Node:
        name = node_name(forest_id, sequence)
        attempt.names.append(name)

        request = CreateServerRequest(
            name=name,
            server_type=placement.server_type,
            image=spec.image,
            location=placement.location,
            ssh_keys=list(spec.ssh_keys),
            user_data=self.user_data.render(spec.role, forest_id, name),
            labels={
                MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                FOREST_LABEL: forest_id,
                ROLE_LABEL: spec.role,
            },
            enable_ipv4=spec.enable_ipv4,
        )
        server = await self.provider.create_server(request)
        attempt.servers.append(server)

        server = await self.provider.wait_for_server(
            server.id, ServerState.RUNNING, self.server_timeout
        )
        if not (server.ipv4 or server.ipv6):
            server = await self.provider.get_server(server.id)

        node = Node(
            id=server.id,
            forest_id=forest_id,
            name=name,
            role=spec.role,
            location=placement.location,
            status=NODE_PROVISIONING,
            ipv4=server.ipv4,
            ipv6=server.ipv6,
            metadata={"server_type": placement.server_type, "image": spec.image},
            created_at=utcnow(),
        )
        await self._registry_call(
            "register_node", forest_id, lambda: self.registry.register_node(node)
        )
        attempt.nodes.append(node)

        if self.readiness is not None:
            await self.readiness.wait_ready(name, ipv6=node.ipv6, ipv4=node.ipv4)

        await self._registry_call(
            "update_node_status",
            forest_id,
            lambda: self.registry.update_node_status(forest_id, node.id, NODE_ACTIVE),
        )
        node.status = NODE_ACTIVE
        logger.info(f"Node {name} ({node.id}) active at {node.preferred_ip}")

        await self._create_dns(node)
        return node

    async def _rollback(self, forest_id: str, attempt: _Attempt) -> None:
        """Delete this attempt's servers and drop their node records."""
        tracked = {server.id for server in attempt.servers}
        pending_names = set(attempt.names)
        try:
            labelled = await self.provider.list_servers({FOREST_LABEL: forest_id})
        except CLEANUP_ERRORS as e:
            log_and_continue(e, f"rollback_sweep {forest_id}", logger)
            labelled = []
        for server in labelled:
            if server.name in pending_names and server.id not in tracked:
                attempt.servers.append(server)
                tracked.add(server.id)

        registered = {node.id for node in attempt.nodes}
        for server in attempt.servers:
            outcome = await self._delete_server(server.id)
            if outcome == "failed":
                logger.error(
                    f"Rollback could not delete server {server.name} ({server.id}); "
                    "it is left running and stays registered"
                )
                continue
            if server.id in registered:
                await self._delete_dns(
                    next(n for n in attempt.nodes if n.id == server.id)
                )
                try:
                    await self._registry_call(
                        "remove_node",
                        forest_id,
                        lambda: self.registry.remove_node(forest_id, server.id),
                    )
                except CLEANUP_ERRORS as e:
                    logger.error(
                        f"Rollback deleted server {server.id} but could not remove its "
                        f"registry record: {e}"
                    )

    async def _delete_server(self, server_id: str) -> str:
        """Best-effort delete: ``deleted``, ``gone`` or ``failed``."""
        try:
            await self.provider.delete_server(server_id)
        except ServerNotFoundError:
            logger.debug(f"Server {server_id} already gone")
            return "gone"
        except CLEANUP_ERRORS as e:
            log_and_continue(e, f"delete_server {server_id}", logger)
            return "failed"
        return "deleted"

    # ------------------------------------------------------------------
    # DNS (best-effort)
    # ------------------------------------------------------------------

    def _dns_records(self, node: Node) -> list[tuple[str, str]]:
        return [(rtype, value) for rtype, value in (("AAAA", node.ipv6), ("A", node.ipv4)) if value]

    async def _create_dns(self, node: Node) -> None:
        if self.dns is None or not self.dns_domain:
            return
        for record_type, value in self._dns_records(node):
            try:
                await self.dns.create_record(
                    self.dns_domain, node.name, record_type, value, self.dns_ttl
                )
            except CLEANUP_ERRORS as e:
                log_and_continue(e, f"dns_create {node.name} {record_type}", logger)

    async def _delete_dns(self, node: Node) -> list[str]:
        failures: list[str] = []
        if self.dns is None or not self.dns_domain:
            return failures
        for record_type, _value in self._dns_records(node):
            try:
                await self.dns.delete_record(self.dns_domain, node.name, record_type)
            except CLEANUP_ERRORS as e:
                log_and_continue(e, f"dns_delete {node.name} {record_type}", logger)
                failures.append(f"{node.name}/{record_type}")
        return failures
