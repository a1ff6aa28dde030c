"""Server type / location selection with capacity fallback.

Given a primary server type, ordered fallback types and an ordered list of
preferred locations, ``PlacementSelector.run`` walks (type, location)
placements in a deterministic order until one provisions:

1. Server types that do not exist in the provider catalog are skipped with a
   warning.
2. For each remaining type (primary first), the locations where it is
   currently offered are queried and reordered by
   ``order_locations_by_preference``.
3. Each placement is attempted. A capacity error (``is_capacity_error``)
   moves on to the next placement; anything else is fatal and propagates.
4. If every placement fails on capacity, one ``NoCapacityError`` names how
   many placements were tried and which types and locations were involved.

Usage:
    selector = PlacementSelector(provider, preferred_locations=["hel1", "nbg1"])
    forest = await selector.run("cx22", ["cpx11"], attempt_fn)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from canopy.config.settings import DEFAULT_LOCATIONS
from canopy.coordination.providers.base import MachineProvider, ProviderAuthError
from canopy.utils.exceptions import CanopyError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Structured provider error codes meaning "this type/location has no capacity"
CAPACITY_ERROR_CODES = frozenset({
    "resource_unavailable",
    "location_disabled",
    "server_location_disabled",
    "unsupported_location",
    "placement_error",
})

# Message fragments for providers (or wrappers) that only give text
CAPACITY_ERROR_PHRASES = (
    "server location disabled",
    "resource_unavailable",
    "resource unavailable",
    "location not available",
    "location disabled",
    "datacenter not available",
    "unsupported location",
)


def is_capacity_error(error: BaseException | str) -> bool:
    """True if ``error`` means "try another type/location", False if fatal.

    Structured ``code`` attributes are checked first; the message text is
    the fallback.
    """
    if isinstance(error, BaseException):
        code = getattr(error, "code", "") or ""
        if code in CAPACITY_ERROR_CODES:
            return True
        text = str(error)
    else:
        text = error
    lowered = text.lower()
    return any(phrase in lowered for phrase in CAPACITY_ERROR_PHRASES)


def order_locations_by_preference(
    available: Iterable[str], preferred: Sequence[str]
) -> list[str]:
    """Stable partition: preferred members in preferred order, then the rest.

    >>> order_locations_by_preference(["ash", "nbg1", "sin"],
    ...     ["hel1", "nbg1", "fsn1", "ash", "hil"])
    ['nbg1', 'ash', 'sin']
    """
    available = list(dict.fromkeys(available))
    available_set = set(available)
    ordered = [loc for loc in dict.fromkeys(preferred) if loc in available_set]
    chosen = set(ordered)
    ordered.extend(loc for loc in available if loc not in chosen)
    return ordered


@dataclass(frozen=True)
class Placement:
    """One (server type, location) candidate."""

    server_type: str
    location: str

    def __str__(self) -> str:
        return f"{self.server_type}@{self.location}"


class NoValidServerTypeError(CanopyError):
    """None of the configured server types exist at the provider."""

    def __init__(self, server_types: Sequence[str]):
        super().__init__(
            f"none of the configured server types exist: {', '.join(server_types)}"
        )
        self.server_types = list(server_types)


class NoCapacityError(CanopyError):
    """Every placement failed on capacity."""

    def __init__(
        self,
        attempts: Sequence[Placement],
        server_types: Sequence[str],
        errors: Sequence[BaseException] = (),
    ):
        self.attempts = list(attempts)
        self.server_types = list(server_types)
        self.errors = list(errors)
        locations = list(dict.fromkeys(p.location for p in self.attempts))
        if self.attempts:
            message = (
                "no server type/location combination available. "
                f"Tried {len(self.attempts)} combinations across server types: "
                f"{', '.join(self.server_types)} (locations: {', '.join(locations)}). "
                "The provider is likely short on capacity; try again in a few minutes."
            )
        else:
            message = (
                "no locations currently offer any of the server types: "
                f"{', '.join(self.server_types)}"
            )
        super().__init__(message)

    @property
    def attempted(self) -> list[str]:
        return [str(p) for p in self.attempts]


@dataclass
class SelectionReport:
    """What ``run`` tried, for logging and error messages."""

    valid_types: list[str] = field(default_factory=list)
    skipped_types: list[str] = field(default_factory=list)
    attempts: list[Placement] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)


class PlacementSelector:
    """Finds and iterates viable placements for a provider."""

    def __init__(
        self,
        provider: MachineProvider,
        preferred_locations: Sequence[str] | None = None,
    ):
        self.provider = provider
        self.preferred_locations = list(
            preferred_locations if preferred_locations is not None else DEFAULT_LOCATIONS
        )
        self.last_report = SelectionReport()

    async def validate_server_types(self, candidates: Sequence[str]) -> list[str]:
        """Drop unknown types with a warning; auth failures propagate."""
        valid = []
        for server_type in dict.fromkeys(candidates):
            try:
                exists = await self.provider.validate_server_type(server_type)
            except ProviderAuthError:
                raise
            except CanopyError as e:
                logger.warning(f"Could not validate server type {server_type}: {e}")
                continue
            if not exists:
                logger.warning(f"Server type {server_type} does not exist, skipping")
                continue
            valid.append(server_type)
        return valid

    async def ordered_locations(
        self,
        server_type: str,
        allowed_locations: Sequence[str] | None = None,
    ) -> list[str]:
        """Locations offering ``server_type``, preferred ones first."""
        try:
            available = await self.provider.get_available_locations(server_type)
        except ProviderAuthError:
            raise
        except CanopyError as e:
            logger.warning(f"Could not check availability for {server_type}: {e}")
            return []
        if allowed_locations is not None:
            allowed = set(allowed_locations)
            available = [loc for loc in available if loc in allowed]
        return order_locations_by_preference(available, self.preferred_locations)

    async def run(
        self,
        primary: str,
        fallbacks: Sequence[str],
        attempt: Callable[[Placement], Awaitable[T]],
        allowed_locations: Sequence[str] | None = None,
    ) -> T:
        """Call ``attempt`` per placement until one succeeds.

        Args:
            primary: Preferred server type
            fallbacks: Alternative server types, in priority order
            attempt: Provisions at one placement; raises on failure
            allowed_locations: Restrict placements to these locations

        Raises:
            NoValidServerTypeError: No candidate type exists.
            NoCapacityError: Every placement failed on capacity.
            Exception: The first non-capacity error, unchanged.
        """
        candidates = [primary, *fallbacks]
        report = SelectionReport()
        self.last_report = report

        report.valid_types = await self.validate_server_types(candidates)
        report.skipped_types = [t for t in candidates if t not in report.valid_types]
        if not report.valid_types:
            raise NoValidServerTypeError(candidates)

        for index, server_type in enumerate(report.valid_types):
            locations = await self.ordered_locations(server_type, allowed_locations)
            if not locations:
                logger.warning(f"Server type {server_type} has no available locations")
                continue
            if index > 0 and report.attempts:
                logger.info(f"Trying alternative server type: {server_type}")

            for location in locations:
                placement = Placement(server_type, location)
                report.attempts.append(placement)
                try:
                    return await attempt(placement)
                except CanopyError as e:
                    if not is_capacity_error(e):
                        raise
                    report.errors.append(e)
                    logger.warning(f"{placement} not available ({e}), trying next option")

        raise NoCapacityError(report.attempts, report.valid_types, report.errors)

    async def select_best_server_type(
        self,
        primary: str,
        fallbacks: Sequence[str],
        preferred_locations: Sequence[str] | None = None,
    ) -> tuple[str, list[str]]:
        """Pick a server type up front, returning it with its usable locations.

        Passes, first match wins:
            1. first type (primary, then fallbacks) offered in a preferred
               location; returns the matching locations in preferred order
            2. primary offered anywhere
            3. first fallback offered anywhere
        """
        preferred = list(
            preferred_locations if preferred_locations is not None else self.preferred_locations
        )
        options = list(dict.fromkeys([primary, *fallbacks]))
        availability: dict[str, list[str]] = {}

        for server_type in options:
            try:
                availability[server_type] = await self.provider.get_available_locations(
                    server_type
                )
            except ProviderAuthError:
                raise
            except CanopyError as e:
                logger.debug(f"Skipping {server_type}: {e}")
                availability[server_type] = []

        for server_type in options:
            available = availability[server_type]
            if not available:
                continue
            if not preferred:
                return server_type, list(available)
            matching = [loc for loc in preferred if loc in available]
            if matching:
                return server_type, matching

        if availability.get(primary):
            return primary, list(availability[primary])

        for server_type in fallbacks:
            if availability.get(server_type):
                return server_type, list(availability[server_type])

        raise NoCapacityError([], options)
