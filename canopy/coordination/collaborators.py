"""Interfaces the orchestrator consumes but does not implement.

- ``UserDataRenderer``: opaque cloud-init text for a node, embedded verbatim
  in the server create request.
- ``DNSProvider``: record create/delete, called best-effort after a node is
  registered and during teardown.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class UserDataRenderer(Protocol):
    def render(self, role: str, forest_id: str, node_name: str) -> str:
        ...


@runtime_checkable
class DNSProvider(Protocol):
    async def create_record(
        self, domain: str, name: str, record_type: str, value: str, ttl: int
    ) -> None:
        ...

    async def delete_record(self, domain: str, name: str, record_type: str) -> None:
        ...


class DefaultUserDataRenderer:
    """Minimal cloud-config: hostname plus forest identity on disk."""

    def __init__(self, registry_url: str = ""):
        self.registry_url = registry_url

    def render(self, role: str, forest_id: str, node_name: str) -> str:
        lines = [
            "#cloud-config",
            f"hostname: {node_name}",
            "write_files:",
            "  - path: /etc/canopy/node.env",
            "    permissions: '0644'",
            "    content: |",
            f"      CANOPY_FOREST_ID={forest_id}",
            f"      CANOPY_NODE_NAME={node_name}",
            f"      CANOPY_NODE_ROLE={role}",
        ]
        if self.registry_url:
            lines.append(f"      CANOPY_REGISTRY_URL={self.registry_url}")
        return "\n".join(lines) + "\n"
