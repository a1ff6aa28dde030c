"""Forest/node registry: shared contract plus local and remote backends.

Usage:
    from canopy.registry import LocalRegistry, Forest

    registry = LocalRegistry("/tmp/registry.json")
    await registry.register_forest(Forest(id="forest-1", provider="hetzner"))
"""

from canopy.registry.base import Registry
from canopy.registry.errors import (
    ConcurrentModificationError,
    ForestExistsError,
    ForestNotFoundError,
    InvalidNodeError,
    NodeNotFoundError,
    RegistryAuthError,
    RegistryCorruptError,
    RegistryError,
    RegistryUnreachableError,
)
from canopy.registry.factory import create_registry
from canopy.registry.local import LocalRegistry
from canopy.registry.remote import RemoteRegistry, RemoteRegistryConfig, Snapshot
from canopy.registry.types import (
    FOREST_ACTIVE,
    FOREST_FAILED,
    FOREST_PROVISIONING,
    NODE_ACTIVE,
    NODE_PROVISIONING,
    Forest,
    Node,
    RegistryData,
    generate_forest_id,
    node_name,
)

__all__ = [
    "FOREST_ACTIVE",
    "FOREST_FAILED",
    "FOREST_PROVISIONING",
    "NODE_ACTIVE",
    "NODE_PROVISIONING",
    "ConcurrentModificationError",
    "Forest",
    "ForestExistsError",
    "ForestNotFoundError",
    "InvalidNodeError",
    "LocalRegistry",
    "Node",
    "NodeNotFoundError",
    "Registry",
    "RegistryAuthError",
    "RegistryCorruptError",
    "RegistryData",
    "RegistryError",
    "RegistryUnreachableError",
    "RemoteRegistry",
    "RemoteRegistryConfig",
    "Snapshot",
    "create_registry",
    "generate_forest_id",
    "node_name",
]
