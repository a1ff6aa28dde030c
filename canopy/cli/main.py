"""``canopy`` command line entry point.

Examples:
  # Plant a 3-node forest with the configured server type and fallbacks
  canopy plant --nodes 3

  # Show which server type/locations would be used, without creating anything
  canopy plant --profile medium --dry-run

  # Add two nodes to an existing forest
  canopy grow forest-1700000000 --nodes 2

  # Delete all servers and the registry record
  canopy teardown forest-1700000000 --yes

  canopy list
  canopy status forest-1700000000
  canopy ping
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from canopy import __version__
from canopy.config.provider_timeouts import ProviderTimeouts
from canopy.config.settings import LOCATION_DESCRIPTIONS, Settings, load_settings
from canopy.coordination.orchestrator import (
    ForestOrchestrator,
    GrowRequest,
    PlantRequest,
)
from canopy.coordination.providers.base import MachineProvider
from canopy.coordination.providers.docker_provider import DockerProvider
from canopy.coordination.providers.hetzner_provider import (
    HETZNER_PROFILES,
    HetznerConfig,
    HetznerProvider,
)
from canopy.coordination.readiness import ReadinessChecker
from canopy.coordination.retry_strategies import conflict_retry
from canopy.coordination.selection import PlacementSelector
from canopy.registry.base import Registry
from canopy.registry.errors import ForestNotFoundError
from canopy.registry.factory import create_registry
from canopy.utils.exceptions import CanopyError

logger = logging.getLogger("canopy")


def build_provider(settings: Settings) -> MachineProvider:
    if settings.machine.provider == "local":
        return DockerProvider(poll_interval=ProviderTimeouts.get_poll_interval("local"))
    return HetznerProvider(
        HetznerConfig(
            api_token=settings.secrets.hetzner_api_token,
            poll_interval=ProviderTimeouts.get_poll_interval("hetzner"),
        )
    )


def build_orchestrator(
    settings: Settings, registry: Registry, provider: MachineProvider
) -> ForestOrchestrator:
    prov = settings.provisioning
    readiness = None
    if prov.check_ssh and settings.machine.provider != "local":
        readiness = ReadinessChecker(
            port=prov.ssh_port,
            timeout=prov.readiness_timeout,
            interval=prov.readiness_interval,
        )
    return ForestOrchestrator(
        registry,
        provider,
        selector=PlacementSelector(provider, settings.machine.hetzner.ordered_preferences()),
        readiness=readiness,
        conflict_strategy=conflict_retry(prov.conflict_retries),
        dns_domain=settings.dns.domain,
        dns_ttl=settings.dns.ttl,
        registry_url=getattr(registry, "url", None),
    )


def _server_types(settings: Settings, args: argparse.Namespace) -> tuple[str, list[str]]:
    hetzner = settings.machine.hetzner
    if getattr(args, "profile", None):
        profile = HETZNER_PROFILES[args.profile]
        return profile.primary, list(profile.fallbacks)
    if getattr(args, "server_type", None):
        return args.server_type, []
    return hetzner.server_type, list(hetzner.server_type_fallback)


async def cmd_plant(args, settings, registry, provider) -> int:
    primary, fallbacks = _server_types(settings, args)

    if args.dry_run:
        selector = PlacementSelector(provider, settings.machine.hetzner.ordered_preferences())
        server_type, locations = await selector.select_best_server_type(primary, fallbacks)
        print(f"Server type: {server_type}")
        for location in locations:
            print(f"  {location:6} {LOCATION_DESCRIPTIONS.get(location, '')}")
        return 0

    orchestrator = build_orchestrator(settings, registry, provider)
    forest = await orchestrator.plant(
        PlantRequest(
            node_count=args.nodes,
            server_type=primary,
            fallback_server_types=fallbacks,
            image=settings.machine.hetzner.image,
            role=args.role,
            ssh_keys=[settings.machine.ssh_key_name] if settings.machine.ssh_key_name else [],
            enable_ipv4=settings.machine.enable_ipv4,
        )
    )
    print(f"Forest {forest.id} is {forest.status}: {forest.node_count} node(s) in {forest.location}")
    for node in await registry.get_nodes(forest.id):
        print(f"  {node.name:32} {node.id:12} {node.preferred_ip}")
    return 0


async def cmd_grow(args, settings, registry, provider) -> int:
    primary, fallbacks = _server_types(settings, args)
    orchestrator = build_orchestrator(settings, registry, provider)
    nodes = await orchestrator.grow(
        GrowRequest(
            forest_id=args.forest_id,
            node_count=args.nodes,
            server_type=primary,
            fallback_server_types=fallbacks,
            image=settings.machine.hetzner.image,
            role=args.role,
            ssh_keys=[settings.machine.ssh_key_name] if settings.machine.ssh_key_name else [],
            enable_ipv4=settings.machine.enable_ipv4,
        )
    )
    print(f"Added {len(nodes)} node(s) to {args.forest_id}")
    for node in nodes:
        print(f"  {node.name:32} {node.id:12} {node.preferred_ip}")
    return 0


async def cmd_teardown(args, settings, registry, provider) -> int:
    forest = await registry.get_forest(args.forest_id)
    if not args.yes:
        prompt = f"Delete forest {forest.id} and all of its servers? Type the forest ID: "
        answer = await asyncio.to_thread(input, prompt)
        if answer.strip() != forest.id:
            print("Aborted")
            return 1
    orchestrator = build_orchestrator(settings, registry, provider)
    result = await orchestrator.teardown(args.forest_id)
    print(
        f"Forest {result.forest_id} removed: {len(result.deleted)} deleted, "
        f"{len(result.already_gone)} already gone, {len(result.orphans_deleted)} orphans"
    )
    if result.failed:
        print(f"Could not delete: {', '.join(result.failed)} (remove them manually)")
    return 0


async def cmd_list(args, settings, registry, provider) -> int:
    forests = sorted(
        await registry.list_forests(), key=lambda f: f.created_at.timestamp() if f.created_at else 0
    )
    if not forests:
        print("No forests")
        return 0
    print(f"{'ID':24} {'STATUS':13} {'NODES':>5}  {'LOCATION':8} CREATED")
    for forest in forests:
        created = forest.created_at.strftime("%Y-%m-%d %H:%M") if forest.created_at else "-"
        print(
            f"{forest.id:24} {forest.status:13} {forest.node_count:>5}  "
            f"{forest.location or '-':8} {created}"
        )
    return 0


async def cmd_status(args, settings, registry, provider) -> int:
    forest = await registry.get_forest(args.forest_id)
    nodes = await registry.get_nodes(args.forest_id)
    print(f"Forest:   {forest.id}")
    print(f"Status:   {forest.status}")
    print(f"Provider: {forest.provider}")
    print(f"Location: {forest.location or '-'}")
    print(f"Nodes:    {len(nodes)} (recorded {forest.node_count})")
    for node in nodes:
        print(f"  {node.name:32} {node.status:13} {node.id:12} {node.preferred_ip}")
    return 0


async def cmd_ping(args, settings, registry, provider) -> int:
    await registry.ping()
    print(f"Registry ({registry.backend}) reachable")
    return 0


COMMANDS = {
    "plant": cmd_plant,
    "grow": cmd_grow,
    "teardown": cmd_teardown,
    "list": cmd_list,
    "status": cmd_status,
    "ping": cmd_ping,
}

# Commands that never touch the machine provider
REGISTRY_ONLY = {"list", "status", "ping"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canopy",
        description="Provision and tear down forests of cloud machines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:", 1)[1] if __doc__ else None,
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"canopy {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    plant = sub.add_parser("plant", help="Create a new forest")
    plant.add_argument("--nodes", type=int, default=1, help="Number of nodes (default=1)")
    plant.add_argument("--profile", choices=sorted(HETZNER_PROFILES), help="Machine size profile")
    plant.add_argument("--server-type", help="Override the configured server type")
    plant.add_argument("--role", default="edge", help="Node role tag (default=edge)")
    plant.add_argument("--dry-run", action="store_true", help="Show the placement choice only")

    grow = sub.add_parser("grow", help="Add nodes to a forest")
    grow.add_argument("forest_id")
    grow.add_argument("--nodes", type=int, default=1, help="Nodes to add (default=1)")
    grow.add_argument("--profile", choices=sorted(HETZNER_PROFILES), help="Machine size profile")
    grow.add_argument("--server-type", help="Override the configured server type")
    grow.add_argument("--role", default="edge", help="Node role tag (default=edge)")

    teardown = sub.add_parser("teardown", help="Delete a forest and its servers")
    teardown.add_argument("forest_id")
    teardown.add_argument("--yes", action="store_true", help="Skip confirmation")

    sub.add_parser("list", help="List forests")

    status = sub.add_parser("status", help="Show one forest")
    status.add_argument("forest_id")

    sub.add_parser("ping", help="Check registry connectivity")
    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    registry = create_registry(settings)
    provider: MachineProvider | None = None
    try:
        if args.command not in REGISTRY_ONLY:
            provider = build_provider(settings)
        return await COMMANDS[args.command](args, settings, registry, provider)
    finally:
        if provider is not None:
            await provider.close()
        await registry.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    if getattr(args, "nodes", 1) < 1:
        print("error: --nodes must be at least 1", file=sys.stderr)
        return 2

    try:
        settings = load_settings(args.config)
        if args.command not in REGISTRY_ONLY:
            settings.validate()
        return asyncio.run(run(args, settings))
    except ForestNotFoundError as e:
        print(f"error: {e} (see 'canopy list')", file=sys.stderr)
        return 1
    except CanopyError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
