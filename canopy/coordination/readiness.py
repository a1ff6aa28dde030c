"""TCP reachability probe for freshly created nodes.

A node counts as reachable once its SSH port accepts a TCP connection. IPv6
is tried first (nodes are IPv6-first), then IPv4 when the node has one.
Each failed probe is classified so the log says *why* a node is not ready
yet (port closed, no route, timeout...).

Usage:
    checker = ReadinessChecker(port=22, timeout=300, interval=5)
    address = await checker.wait_ready("forest-1-node-1", ipv6="2a01:4f8::1")
"""

from __future__ import annotations

import asyncio
import errno
import logging
import time
from dataclasses import dataclass

from canopy.config.provider_timeouts import ProviderTimeouts
from canopy.utils.exceptions import CanopyError

logger = logging.getLogger(__name__)

STATUS_READY = "ready"
STATUS_PORT_CLOSED = "port closed"
STATUS_NO_ROUTE = "no route to host"
STATUS_NET_UNREACHABLE = "network unreachable"
STATUS_TIMEOUT = "timeout"
STATUS_RESET = "connection reset"
STATUS_HOST_DOWN = "host down"
STATUS_CONNECTING = "connecting"

_ERRNO_STATUS = {
    errno.ECONNREFUSED: STATUS_PORT_CLOSED,
    errno.EHOSTUNREACH: STATUS_NO_ROUTE,
    errno.ENETUNREACH: STATUS_NET_UNREACHABLE,
    errno.ETIMEDOUT: STATUS_TIMEOUT,
    errno.ECONNRESET: STATUS_RESET,
    errno.EHOSTDOWN: STATUS_HOST_DOWN,
}


class NodeNotReadyError(CanopyError):
    """Node did not accept connections before the deadline."""

    def __init__(self, name: str, timeout: float, last_status: str):
        super().__init__(
            f"node {name} not reachable after {timeout:.0f}s (last status: {last_status})"
        )
        self.name = name
        self.last_status = last_status


def classify_connect_error(error: BaseException) -> str:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return STATUS_TIMEOUT
    if isinstance(error, ConnectionRefusedError):
        return STATUS_PORT_CLOSED
    if isinstance(error, ConnectionResetError):
        return STATUS_RESET
    if isinstance(error, OSError) and error.errno in _ERRNO_STATUS:
        return _ERRNO_STATUS[error.errno]
    return STATUS_CONNECTING


@dataclass
class ProbeResult:
    address: str
    status: str

    @property
    def ready(self) -> bool:
        return self.status == STATUS_READY


class ReadinessChecker:
    """Polls a node's SSH port until it accepts connections."""

    def __init__(
        self,
        port: int = 22,
        timeout: float = 300.0,
        interval: float = 5.0,
        probe_timeout: float = ProviderTimeouts.PROBE_TIMEOUT,
    ):
        self.port = port
        self.timeout = timeout
        self.interval = interval
        self.probe_timeout = probe_timeout

    async def probe(self, address: str) -> ProbeResult:
        """One TCP connect attempt."""
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(address, self.port),
                timeout=self.probe_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            return ProbeResult(address, classify_connect_error(e))
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(address, STATUS_READY)

    async def wait_ready(self, name: str, ipv6: str = "", ipv4: str = "") -> str:
        """Return the first address that accepted a connection.

        Raises:
            NodeNotReadyError: nothing answered before ``timeout``.
        """
        addresses = [a for a in (ipv6, ipv4) if a]
        if not addresses:
            raise NodeNotReadyError(name, 0, "no address")

        deadline = time.monotonic() + self.timeout
        last_status = STATUS_CONNECTING
        while True:
            for address in addresses:
                result = await self.probe(address)
                if result.ready:
                    logger.info(f"Node {name} reachable at {address}:{self.port}")
                    return address
                last_status = result.status
                logger.debug(f"Node {name} at {address}: {result.status}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise NodeNotReadyError(name, self.timeout, last_status)
            await asyncio.sleep(min(self.interval, remaining))
