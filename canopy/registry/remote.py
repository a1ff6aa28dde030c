"""Remote registry stored as one JSON document behind HTTP.

The document is fetched with ``GET`` (the response's ETag is kept with the
decoded snapshot) and written back with ``PUT``:

- document existed at read time: ``If-Match: <etag>``
- document was absent at read time: ``If-None-Match: *``
- document present but blank and untagged: plain ``PUT``

A ``412 Precondition Failed`` means someone else wrote in between and is
raised as ``ConcurrentModificationError``. ``update()`` is a single
read-mutate-write attempt; it never retries. Callers that want resilience
under contention wrap it in their own retry policy.

Works against any store that honours conditional requests (Hetzner Storage
Box WebDAV, nginx/Apache WebDAV, S3-compatible gateways with ETags).

Usage:
    async with RemoteRegistry(RemoteRegistryConfig(url=..., username=..., password=...)) as reg:
        await reg.ping()
        forests = await reg.list_forests()
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import aiohttp

from canopy.registry.base import Registry
from canopy.registry.errors import (
    ConcurrentModificationError,
    RegistryAuthError,
    RegistryCorruptError,
    RegistryError,
    RegistryUnreachableError,
)
from canopy.registry.types import Forest, Node, RegistryData
from canopy.utils.exceptions import NETWORK_ERRORS, PARSE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RemoteRegistryConfig:
    """Connection settings for the remote registry document."""

    url: str
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0

    @classmethod
    def for_storagebox(cls, host: str, username: str, password: str) -> RemoteRegistryConfig:
        """Registry document on a Hetzner Storage Box (WebDAV over HTTPS)."""
        return cls(
            url=f"https://{host}/canopy/registry.json",
            username=username,
            password=password,
        )


@dataclass
class Snapshot:
    """A decoded registry document plus the tag it was read at."""

    data: RegistryData = field(default_factory=RegistryData)
    etag: str | None = None
    exists: bool = False
    blank: bool = False  # document present but empty


class RemoteRegistry(Registry):
    """Registry backed by a single HTTP document with ETag compare-and-swap."""

    backend = "remote"

    def __init__(self, config: RemoteRegistryConfig):
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def url(self) -> str:
        return self.config.url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            auth = None
            if self.config.username:
                auth = aiohttp.BasicAuth(self.config.username, self.config.password)
            self._session = aiohttp.ClientSession(timeout=timeout, auth=auth)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Wire primitives
    # ------------------------------------------------------------------

    async def load(self) -> Snapshot:
        """Fetch the document. Absent or empty means a fresh registry."""
        session = await self._get_session()
        try:
            async with session.get(self.url) as resp:
                if resp.status == 404:
                    return Snapshot()
                if resp.status in (401, 403):
                    raise RegistryAuthError(
                        f"registry rejected credentials ({resp.status}) at {self.url}"
                    )
                if resp.status != 200:
                    text = await resp.text()
                    raise RegistryError(
                        f"registry read failed ({resp.status}): {text[:200]}"
                    )
                etag = resp.headers.get("ETag")
                body = await resp.read()
        except NETWORK_ERRORS as e:
            raise RegistryUnreachableError(f"cannot reach registry at {self.url}: {e}") from e

        if not body.strip():
            return Snapshot(etag=etag, exists=True, blank=True)
        try:
            data = RegistryData.from_dict(json.loads(body))
        except PARSE_ERRORS as e:
            raise RegistryCorruptError(f"failed to parse registry at {self.url}: {e}") from e
        return Snapshot(data=data, etag=etag, exists=True)

    async def save(self, snapshot: Snapshot) -> str | None:
        """Conditionally write ``snapshot.data``; returns the new ETag."""
        headers = {"Content-Type": "application/json"}
        if snapshot.etag:
            headers["If-Match"] = snapshot.etag
        elif not snapshot.exists:
            headers["If-None-Match"] = "*"
        elif snapshot.blank:
            # blank and untagged: nothing stored to overwrite
            logger.debug(f"Registry at {self.url} is blank and untagged, writing unconditionally")
        else:
            raise RegistryError(
                f"registry at {self.url} returned no ETag; refusing an unconditional write"
            )

        body = json.dumps(snapshot.data.to_dict(), indent=2)
        session = await self._get_session()
        try:
            async with session.put(self.url, data=body, headers=headers) as resp:
                if resp.status == 412:
                    raise ConcurrentModificationError()
                if resp.status in (401, 403):
                    raise RegistryAuthError(
                        f"registry rejected credentials ({resp.status}) at {self.url}"
                    )
                if not 200 <= resp.status < 300:
                    text = await resp.text()
                    raise RegistryError(
                        f"registry write failed ({resp.status}): {text[:200]}"
                    )
                new_etag = resp.headers.get("ETag")
        except NETWORK_ERRORS as e:
            raise RegistryUnreachableError(f"cannot reach registry at {self.url}: {e}") from e

        snapshot.etag = new_etag
        snapshot.exists = True
        snapshot.blank = False
        return new_etag

    async def update(self, fn: Callable[[RegistryData], T]) -> T:
        """One read-mutate-write attempt.

        ``fn`` mutates the freshly read snapshot in place. A concurrent write
        between the read and the write raises ``ConcurrentModificationError``
        and nothing is stored.
        """
        snapshot = await self.load()
        result = fn(snapshot.data)
        snapshot.data.touch()
        await self.save(snapshot)
        return result

    # ------------------------------------------------------------------
    # Registry contract
    # ------------------------------------------------------------------

    async def register_forest(self, forest: Forest) -> None:
        await self.update(lambda d: d.register_forest(forest))

    async def register_node(self, node: Node) -> None:
        await self.update(lambda d: d.register_node(node))

    async def get_forest(self, forest_id: str) -> Forest:
        return (await self.load()).data.get_forest(forest_id)

    async def get_nodes(self, forest_id: str) -> list[Node]:
        return (await self.load()).data.get_nodes(forest_id)

    async def update_forest(self, forest: Forest) -> None:
        await self.update(lambda d: d.update_forest(forest))

    async def modify_forest(
        self, forest_id: str, fn: Callable[[Forest, list[Node]], None]
    ) -> Forest:
        return await self.update(lambda d: d.modify_forest(forest_id, fn))

    async def update_forest_status(self, forest_id: str, status: str) -> None:
        await self.update(lambda d: d.update_forest_status(forest_id, status))

    async def update_node_status(self, forest_id: str, node_id: str, status: str) -> None:
        await self.update(lambda d: d.update_node_status(forest_id, node_id, status))

    async def remove_node(self, forest_id: str, node_id: str) -> None:
        await self.update(lambda d: d.remove_node(forest_id, node_id))

    async def delete_forest(self, forest_id: str) -> None:
        await self.update(lambda d: d.delete_forest(forest_id))

    async def list_forests(self) -> list[Forest]:
        """All forests; an unreadable registry lists as empty."""
        try:
            snapshot = await self.load()
        except RegistryError as e:
            logger.warning(f"Failed to read registry for listing: {e}")
            return []
        return snapshot.data.list_forests()

    async def ping(self) -> None:
        """``OPTIONS`` probe separating unreachable from unauthorized."""
        session = await self._get_session()
        try:
            async with session.options(self.url) as resp:
                status = resp.status
        except NETWORK_ERRORS as e:
            raise RegistryUnreachableError(f"cannot reach registry at {self.url}: {e}") from e

        if status in (401, 403):
            raise RegistryAuthError(
                f"registry authentication failed ({status}); check username and password"
            )
        if 200 <= status < 300 or status == 405:
            return
        raise RegistryError(f"unexpected registry response to OPTIONS: {status}")
