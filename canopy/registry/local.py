"""Local single-process registry backed by one JSON file.

All state lives in memory behind a single lock. Each mutation runs on a
deep copy of the snapshot, the copy is written to a temp file and renamed
over the registry file, and only then does the copy become the live
snapshot. A failed write therefore leaves memory and disk unchanged, and
since nothing awaits while the lock is held, task cancellation cannot land
between the two.

Safe for concurrent callers in one process; no cross-process safety.

Usage:
    registry = LocalRegistry("~/.canopy/registry.json")
    await registry.register_forest(Forest(id="forest-1700000000", provider="hetzner"))
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from canopy.registry.base import Registry
from canopy.registry.errors import RegistryCorruptError, RegistryError
from canopy.registry.types import Forest, Node, RegistryData
from canopy.utils.exceptions import FS_ERRORS, PARSE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LocalRegistry(Registry):
    """File-backed registry with copy-on-write persistence."""

    backend = "local"

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()
        self._data = self._load()

    def _load(self) -> RegistryData:
        if not self.path.exists():
            logger.debug(f"No registry at {self.path}, starting empty")
            return RegistryData()
        try:
            raw = self.path.read_text()
        except FS_ERRORS as e:
            raise RegistryError(f"failed to read registry {self.path}: {e}") from e
        if not raw.strip():
            return RegistryData()
        try:
            return RegistryData.from_dict(json.loads(raw))
        except PARSE_ERRORS as e:
            raise RegistryCorruptError(f"failed to parse registry {self.path}: {e}") from e

    def _persist(self, data: RegistryData) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            suffix=".json",
            prefix=".registry_",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

    def _mutate(self, fn: Callable[[RegistryData], T]) -> T:
        with self._lock:
            working = copy.deepcopy(self._data)
            result = fn(working)
            working.touch()
            try:
                self._persist(working)
            except FS_ERRORS as e:
                raise RegistryError(f"failed to save registry {self.path}: {e}") from e
            self._data = working
            return result

    def _read(self, fn: Callable[[RegistryData], T]) -> T:
        with self._lock:
            return fn(self._data)

    @property
    def version(self) -> int:
        with self._lock:
            return self._data.version

    async def register_forest(self, forest: Forest) -> None:
        self._mutate(lambda d: d.register_forest(forest))

    async def register_node(self, node: Node) -> None:
        self._mutate(lambda d: d.register_node(node))

    async def get_forest(self, forest_id: str) -> Forest:
        return self._read(lambda d: d.get_forest(forest_id))

    async def get_nodes(self, forest_id: str) -> list[Node]:
        return self._read(lambda d: d.get_nodes(forest_id))

    async def update_forest(self, forest: Forest) -> None:
        self._mutate(lambda d: d.update_forest(forest))

    async def modify_forest(
        self, forest_id: str, fn: Callable[[Forest, list[Node]], None]
    ) -> Forest:
        return self._mutate(lambda d: d.modify_forest(forest_id, fn))

    async def update_forest_status(self, forest_id: str, status: str) -> None:
        self._mutate(lambda d: d.update_forest_status(forest_id, status))

    async def update_node_status(self, forest_id: str, node_id: str, status: str) -> None:
        self._mutate(lambda d: d.update_node_status(forest_id, node_id, status))

    async def remove_node(self, forest_id: str, node_id: str) -> None:
        self._mutate(lambda d: d.remove_node(forest_id, node_id))

    async def delete_forest(self, forest_id: str) -> None:
        self._mutate(lambda d: d.delete_forest(forest_id))

    async def list_forests(self) -> list[Forest]:
        return self._read(lambda d: d.list_forests())

    async def ping(self) -> None:
        directory = self.path.parent
        if directory.exists() and not os.access(directory, os.W_OK):
            raise RegistryError(f"registry directory is not writable: {directory}")
