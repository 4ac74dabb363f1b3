"""
provisioner/control_plane — the decision engine.

Public API:

    Policy:
        InstanceCatalog         — shapes by architecture, cost order
        NodePoolRegistry        — pools + live nodes, per-pool accounting
        admit_pool() / admit_pools()
                                — semantic validation before register()

    One cycle:
        DemandAggregator        — demands → per-(pools, arch) groups
        PlacementPlanner        — groups → ProvisioningPlans (pool, shape, count)
        DisruptionController    — consolidation, budgets, spot interruptions
        CostEngine              — hourly / monthly cost for the cycle report
        ProvisioningService     — runs the cycle, owns pending launches
        build_service()         — startup from a ProvisionerConfig

    Errors:
        UnknownArchitectureError, DuplicateShapeError, DuplicateNameError,
        PoolInUseError, UnknownPoolError, PolicyRejectedError,
        NoEligibleShapeError, CycleInProgressError, UnknownLaunchError
"""

from provisioner.control_plane.catalog import (
    DEFAULT_SHAPES,
    DuplicateShapeError,
    InstanceCatalog,
    UnknownArchitectureError,
    default_catalog,
)
from provisioner.control_plane.registry import (
    DuplicateNameError,
    NodePoolRegistry,
    PoolInUseError,
    UnknownPoolError,
)
from provisioner.control_plane.admission_controller import (
    PolicyRejectedError,
    admit_pool,
    admit_pools,
)
from provisioner.control_plane.aggregator import AggregationResult, DemandAggregator
from provisioner.control_plane.planner import (
    NoEligibleShapeError,
    PlacementPlanner,
    PlanningResult,
)
from provisioner.control_plane.disruption import DisruptionController, DisruptionResult
from provisioner.control_plane.cost_engine import CostEngine
from provisioner.control_plane.provisioning_service import (
    CycleInProgressError,
    ProvisioningService,
    UnknownLaunchError,
    build_service,
)

__all__ = [
    "DEFAULT_SHAPES",
    "DuplicateShapeError",
    "InstanceCatalog",
    "UnknownArchitectureError",
    "default_catalog",
    "DuplicateNameError",
    "NodePoolRegistry",
    "PoolInUseError",
    "UnknownPoolError",
    "PolicyRejectedError",
    "admit_pool",
    "admit_pools",
    "AggregationResult",
    "DemandAggregator",
    "NoEligibleShapeError",
    "PlacementPlanner",
    "PlanningResult",
    "DisruptionController",
    "DisruptionResult",
    "CostEngine",
    "CycleInProgressError",
    "ProvisioningService",
    "UnknownLaunchError",
    "build_service",
]
