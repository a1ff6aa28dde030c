"""Per-provider server-readiness timing.

Usage:
    from canopy.config.provider_timeouts import ProviderTimeouts

    timeout = ProviderTimeouts.get_server_timeout("hetzner")    # 600.0
    interval = ProviderTimeouts.get_poll_interval("local")      # 1.0
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class ProviderTimeouts:
    """How long to wait for a server to reach ``running`` and how often to poll.

    - hetzner: cloud VMs boot in 30-90s, allow 10 minutes under load
    - local: containers are up almost immediately
    """

    SERVER_TIMEOUTS: ClassVar[dict[str, float]] = {
        "hetzner": 600.0,
        "local": 120.0,
    }
    DEFAULT_SERVER_TIMEOUT: ClassVar[float] = 600.0

    POLL_INTERVALS: ClassVar[dict[str, float]] = {
        "hetzner": 5.0,
        "local": 1.0,
    }
    DEFAULT_POLL_INTERVAL: ClassVar[float] = 5.0

    # Per-attempt TCP connect timeout for the SSH reachability probe
    PROBE_TIMEOUT: ClassVar[float] = 5.0

    @classmethod
    def get_server_timeout(cls, provider: str) -> float:
        return cls.SERVER_TIMEOUTS.get(provider.lower(), cls.DEFAULT_SERVER_TIMEOUT)

    @classmethod
    def get_poll_interval(cls, provider: str) -> float:
        return cls.POLL_INTERVALS.get(provider.lower(), cls.DEFAULT_POLL_INTERVAL)
