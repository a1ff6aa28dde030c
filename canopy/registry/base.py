"""Registry contract shared by the local and remote backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from canopy.registry.types import Forest, Node


class Registry(ABC):
    """Durable store of forest and node facts.

    Every mutating call is atomic: it either persists fully or leaves the
    stored state untouched. Not-found conditions raise
    ``ForestNotFoundError``/``NodeNotFoundError``; the remote backend may also
    raise ``ConcurrentModificationError``, which it never retries itself.
    """

    backend: str = ""

    @abstractmethod
    async def register_forest(self, forest: Forest) -> None:
        """Insert a new forest in ``provisioning`` with no nodes."""

    @abstractmethod
    async def register_node(self, node: Node) -> None:
        """Append a node to an existing forest."""

    @abstractmethod
    async def get_forest(self, forest_id: str) -> Forest:
        ...

    @abstractmethod
    async def get_nodes(self, forest_id: str) -> list[Node]:
        """Nodes of a forest in registration order (empty list if none)."""

    @abstractmethod
    async def update_forest(self, forest: Forest) -> None:
        """Replace mutable fields, keeping the stored ``created_at``."""

    @abstractmethod
    async def modify_forest(
        self, forest_id: str, fn: Callable[[Forest, list[Node]], None]
    ) -> Forest:
        """Read-modify-write one forest against a single consistent snapshot.

        ``fn`` receives the stored forest and its current nodes and edits the
        forest in place. Returns the stored result.
        """

    @abstractmethod
    async def update_forest_status(self, forest_id: str, status: str) -> None:
        ...

    @abstractmethod
    async def update_node_status(self, forest_id: str, node_id: str, status: str) -> None:
        ...

    @abstractmethod
    async def remove_node(self, forest_id: str, node_id: str) -> None:
        """Drop one node record (used when its server was rolled back)."""

    @abstractmethod
    async def delete_forest(self, forest_id: str) -> None:
        """Remove the forest and all of its nodes in one write."""

    @abstractmethod
    async def list_forests(self) -> list[Forest]:
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the backend is unreachable or rejects our credentials."""

    async def close(self) -> None:
        """Release backend resources."""

    async def __aenter__(self) -> Registry:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
