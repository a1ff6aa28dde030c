"""Forest, Node and RegistryData records.

``RegistryData`` is the whole persisted snapshot. Its mutation methods are
pure in-memory operations shared by both backends: the local backend applies
them under its lock, the remote backend applies them between a conditional
read and a conditional write. Neither the orchestrator nor the selection code
touches the maps directly.

Serialized form::

    {"version": 3, "updated_at": "...",
     "forests": {"forest-1700000000": {...}},
     "nodes": {"forest-1700000000": [{...}, ...]}}
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from canopy.registry.errors import (
    ForestExistsError,
    ForestNotFoundError,
    InvalidNodeError,
    NodeNotFoundError,
)

FOREST_PROVISIONING = "provisioning"
FOREST_ACTIVE = "active"
FOREST_FAILED = "failed"

NODE_PROVISIONING = "provisioning"
NODE_ACTIVE = "active"

DEFAULT_NODE_ROLE = "edge"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_forest_id(now: float | None = None) -> str:
    """Return a time-based forest ID (``forest-<unix-seconds>``).

    Two calls in the same second collide; ``register_forest`` rejects the
    second one with ``ForestExistsError``.
    """
    seconds = int(now if now is not None else time.time())
    return f"forest-{seconds}"


def node_name(forest_id: str, sequence: int) -> str:
    """Deterministic node name from the forest ID and a 1-based sequence."""
    return f"{forest_id}-node-{sequence}"


def _format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Forest:
    """A named cluster deployment."""

    id: str
    provider: str = ""
    location: str = ""
    node_count: int = 0
    status: str = FOREST_PROVISIONING
    created_at: datetime | None = None
    registry_url: str | None = None
    last_expansion: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "location": self.location,
            "node_count": self.node_count,
            "status": self.status,
            "created_at": _format_ts(self.created_at),
            "registry_url": self.registry_url,
            "last_expansion": _format_ts(self.last_expansion),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Forest:
        return cls(
            id=data["id"],
            provider=data.get("provider", ""),
            location=data.get("location", ""),
            node_count=int(data.get("node_count", 0)),
            status=data.get("status", FOREST_PROVISIONING),
            created_at=_parse_ts(data.get("created_at")),
            registry_url=data.get("registry_url") or None,
            last_expansion=_parse_ts(data.get("last_expansion")),
        )


@dataclass
class Node:
    """One provisioned machine, owned by exactly one forest.

    ``id`` is the provider's server ID; ``name`` is the deterministic
    ``<forest>-node-<n>`` label used for numbering.
    """

    id: str
    forest_id: str
    name: str = ""
    role: str = DEFAULT_NODE_ROLE
    location: str = ""
    status: str = NODE_PROVISIONING
    ipv4: str = ""
    ipv6: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def preferred_ip(self) -> str:
        """IPv6 when present, else IPv4."""
        return self.ipv6 or self.ipv4

    def validate(self) -> None:
        if not self.id:
            raise InvalidNodeError("node id is required")
        if not self.forest_id:
            raise InvalidNodeError(f"node {self.id} has no forest id")
        if not self.ipv4 and not self.ipv6:
            raise InvalidNodeError(
                f"node {self.id} has no address (at least one of IPv4/IPv6 is required)"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "forest_id": self.forest_id,
            "name": self.name,
            "role": self.role,
            "location": self.location,
            "status": self.status,
            "ipv4": self.ipv4,
            "ipv6": self.ipv6,
            "metadata": dict(self.metadata),
            "created_at": _format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        return cls(
            id=str(data["id"]),
            forest_id=data["forest_id"],
            name=data.get("name", ""),
            role=data.get("role", DEFAULT_NODE_ROLE),
            location=data.get("location", ""),
            status=data.get("status", NODE_PROVISIONING),
            ipv4=data.get("ipv4", ""),
            ipv6=data.get("ipv6", ""),
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_ts(data.get("created_at")),
        )


@dataclass
class RegistryData:
    """The complete persisted registry snapshot."""

    version: int = 1
    updated_at: datetime | None = None
    forests: dict[str, Forest] = field(default_factory=dict)
    nodes: dict[str, list[Node]] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_forest(self, forest_id: str) -> Forest:
        forest = self.forests.get(forest_id)
        if forest is None:
            raise ForestNotFoundError(forest_id)
        return replace(forest)

    def get_nodes(self, forest_id: str) -> list[Node]:
        if forest_id not in self.forests:
            raise ForestNotFoundError(forest_id)
        return [replace(n, metadata=dict(n.metadata)) for n in self.nodes.get(forest_id, [])]

    def list_forests(self) -> list[Forest]:
        return [replace(f) for f in self.forests.values()]

    # ------------------------------------------------------------------
    # Mutations (callers persist afterwards)
    # ------------------------------------------------------------------

    def register_forest(self, forest: Forest) -> None:
        if forest.id in self.forests:
            raise ForestExistsError(forest.id)
        stored = replace(forest, status=FOREST_PROVISIONING)
        if stored.created_at is None:
            stored.created_at = utcnow()
        self.forests[forest.id] = stored
        self.nodes[forest.id] = []

    def register_node(self, node: Node) -> None:
        node.validate()
        if node.forest_id not in self.forests:
            raise ForestNotFoundError(node.forest_id)
        stored = replace(node, metadata=dict(node.metadata))
        if stored.created_at is None:
            stored.created_at = utcnow()
        self.nodes.setdefault(node.forest_id, []).append(stored)

    def update_forest(self, updated: Forest) -> None:
        current = self.forests.get(updated.id)
        if current is None:
            raise ForestNotFoundError(updated.id)
        self.forests[updated.id] = replace(updated, created_at=current.created_at)

    def modify_forest(
        self, forest_id: str, fn: Callable[[Forest, list[Node]], None]
    ) -> Forest:
        """Apply ``fn`` to this snapshot's forest and its nodes, in place.

        ``fn`` edits a copy of the forest given the current node list; the
        result is stored with its original ``id`` and ``created_at``.
        """
        current = self.forests.get(forest_id)
        if current is None:
            raise ForestNotFoundError(forest_id)
        forest = replace(current)
        fn(forest, self.get_nodes(forest_id))
        self.forests[forest_id] = replace(forest, id=forest_id, created_at=current.created_at)
        return replace(self.forests[forest_id])

    def update_forest_status(self, forest_id: str, status: str) -> None:
        forest = self.forests.get(forest_id)
        if forest is None:
            raise ForestNotFoundError(forest_id)
        forest.status = status

    def update_node_status(self, forest_id: str, node_id: str, status: str) -> None:
        self._find_node(forest_id, node_id).status = status

    def remove_node(self, forest_id: str, node_id: str) -> None:
        node = self._find_node(forest_id, node_id)
        self.nodes[forest_id].remove(node)

    def delete_forest(self, forest_id: str) -> None:
        if forest_id not in self.forests:
            raise ForestNotFoundError(forest_id)
        del self.forests[forest_id]
        self.nodes.pop(forest_id, None)

    def _find_node(self, forest_id: str, node_id: str) -> Node:
        if forest_id not in self.forests:
            raise ForestNotFoundError(forest_id)
        for node in self.nodes.get(forest_id, []):
            if node.id == node_id:
                return node
        raise NodeNotFoundError(forest_id, node_id)

    def touch(self) -> None:
        """Bump the version and timestamp ahead of a write."""
        self.version += 1
        self.updated_at = utcnow()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": _format_ts(self.updated_at),
            "forests": {fid: f.to_dict() for fid, f in self.forests.items()},
            "nodes": {
                fid: [n.to_dict() for n in nodes] for fid, nodes in self.nodes.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryData:
        forests = {
            fid: Forest.from_dict(raw) for fid, raw in (data.get("forests") or {}).items()
        }
        nodes = {
            fid: [Node.from_dict(raw) for raw in (raw_nodes or [])]
            for fid, raw_nodes in (data.get("nodes") or {}).items()
        }
        for fid in forests:
            nodes.setdefault(fid, [])
        return cls(
            version=int(data.get("version", 1)),
            updated_at=_parse_ts(data.get("updated_at")),
            forests=forests,
            nodes=nodes,
        )
