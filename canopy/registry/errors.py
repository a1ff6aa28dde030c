"""Registry error taxonomy.

Not-found and already-exists errors are caller-recoverable and never retried.
``ConcurrentModificationError`` is the single sentinel for a lost
compare-and-swap race; the registry reports it and leaves retrying to the
caller.
"""

from __future__ import annotations

from canopy.utils.exceptions import CanopyError


class RegistryError(CanopyError):
    """Base class for registry failures."""


class ForestNotFoundError(RegistryError):
    def __init__(self, forest_id: str):
        super().__init__(f"forest not found: {forest_id}")
        self.forest_id = forest_id


class NodeNotFoundError(RegistryError):
    def __init__(self, forest_id: str, node_id: str):
        super().__init__(f"node not found: {node_id} (forest {forest_id})")
        self.forest_id = forest_id
        self.node_id = node_id


class ForestExistsError(RegistryError):
    def __init__(self, forest_id: str):
        super().__init__(f"forest already exists: {forest_id}")
        self.forest_id = forest_id


class InvalidNodeError(RegistryError):
    """Node record rejected before touching state (e.g. no address)."""


class ConcurrentModificationError(RegistryError):
    """The stored snapshot changed since it was read."""

    def __init__(self, message: str = "registry was modified concurrently"):
        super().__init__(message)


class RegistryUnreachableError(RegistryError):
    """The registry backend cannot be reached."""


class RegistryAuthError(RegistryError):
    """The registry rejected our credentials."""


class RegistryCorruptError(RegistryError):
    """The stored document could not be decoded."""
