"""Forest coordination: placement selection, provisioning and teardown.

Usage:
    from canopy.coordination import ForestOrchestrator, PlantRequest

    orchestrator = ForestOrchestrator(registry, provider)
    forest = await orchestrator.plant(PlantRequest(node_count=2, server_type="cx22",
                                                   image="ubuntu-24.04"))
"""

from canopy.coordination.collaborators import (
    DefaultUserDataRenderer,
    DNSProvider,
    UserDataRenderer,
)
from canopy.coordination.orchestrator import (
    FOREST_LABEL,
    MANAGED_BY_LABEL,
    ForestOrchestrator,
    GrowRequest,
    PlantRequest,
    ProvisioningError,
    ProvisionRequest,
    TeardownResult,
)
from canopy.coordination.readiness import NodeNotReadyError, ReadinessChecker
from canopy.coordination.retry_strategies import (
    ExponentialBackoffStrategy,
    NoRetryStrategy,
    RetryContext,
    RetryStrategy,
    conflict_retry,
)
from canopy.coordination.selection import (
    NoCapacityError,
    NoValidServerTypeError,
    Placement,
    PlacementSelector,
    is_capacity_error,
    order_locations_by_preference,
)

__all__ = [
    "FOREST_LABEL",
    "MANAGED_BY_LABEL",
    "DNSProvider",
    "DefaultUserDataRenderer",
    "ExponentialBackoffStrategy",
    "ForestOrchestrator",
    "GrowRequest",
    "NoCapacityError",
    "NoRetryStrategy",
    "NoValidServerTypeError",
    "NodeNotReadyError",
    "Placement",
    "PlacementSelector",
    "PlantRequest",
    "ProvisionRequest",
    "ProvisioningError",
    "ReadinessChecker",
    "RetryContext",
    "RetryStrategy",
    "TeardownResult",
    "UserDataRenderer",
    "conflict_retry",
    "is_capacity_error",
    "order_locations_by_preference",
]
