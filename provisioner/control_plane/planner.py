"""
provisioner/control_plane/planner.py
─────────────────────────────────────
The placement layer: decides WHICH pool, WHICH shape, and HOW MANY machines.

How plan() works
─────────────────
For each AggregatedDemand group, in the order the DemandAggregator produced
(largest aggregate cpu first):

1. Walk the group's candidate pools in rank order (most specific first).
   Skip a pool whose committed usage + the group's demand would exceed its
   resource limits. Committed usage =
       live nodes  (registry.committed)
     + pending launches not yet confirmed  (`reserved`)
     + plans already made earlier in this same call.

2. Ask the InstanceCatalog for shapes of the group's architecture (or the
   pool's, or every architecture merged in cost order for an agnostic group
   in a mixed pool), restricted to the pool's allowed families and, for a
   spot plan, to spot-capable shapes.

3. Pick a shape:
     chunk  = min(remaining demand, max node size)   per dimension
     shape  = the smallest shape that holds a whole chunk,
              else the largest eligible shape
   Bounding the chunk caps how much demand any single node carries, so one
   node failure never takes out the whole group.

   Capacity type: the pool's constraint. For ANY, spot, unless the pool's
   on-demand floor (min_on_demand_fraction of its vCPU) would be breached,
   or no eligible shape supports spot.

4. count = max(ceil(cpu / shape.vcpu), ceil(memory / shape.memory_gib)).
   If count × shape pushes the pool over its limits (rounding up can),
   fall through to the next candidate pool.

If no candidate produces a plan, the group is Deferred. Deferred is never
fatal: the service re-queues the demands for the next cycle.

Determinism
────────────
No randomness and no dict-order dependence: candidate order comes from the
registry's ranking, shape order from catalog.cost_key, group order from the
aggregator. Identical inputs → identical plans.

Error handling contract
────────────────────────
  NoEligibleShapeError: internal to plan(). Raised by _plan_for_pool() when
                        step 2 yields nothing; caught here and turned into a
                        per-group Deferred outcome (kind NoEligibleShape).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from provisioner.config import EngineSettings
from provisioner.control_plane.catalog import InstanceCatalog, cost_key
from provisioner.control_plane.registry import NodePoolRegistry
from provisioner.shared.models import (
    AggregatedDemand,
    CapacityType,
    CapacityTypeConstraint,
    InstanceShape,
    NodePool,
    ProvisioningPlan,
    ReportKind,
)

logger = logging.getLogger(__name__)


class NoEligibleShapeError(Exception):
    """
    Raised when a pool matches a group but no instance shape fits it.

    When is this raised?
        • The pool's family allow-list excludes every shape of the group's
          architecture.
        • require_single_demand_fit is on and no allowed shape is as large
          as the biggest single demand.
        • A spot-only pool and no spot-capable shape.

    Caller contract: never escapes plan(). Recorded as a Deferred group.
    """

    def __init__(self, pool: str, reason: str) -> None:
        self.pool = pool
        self.reason = reason
        super().__init__(f"Pool {pool!r}: {reason}")


@dataclass
class PoolUsage:
    """Running (cpu, memory, on-demand cpu) of one pool within a plan() call."""
    cpu: float = 0.0
    memory_gib: float = 0.0
    on_demand_cpu: float = 0.0

    def fits(self, pool: NodePool, cpu: float, memory_gib: float) -> bool:
        return (
            self.cpu + cpu <= pool.limits.cpu
            and self.memory_gib + memory_gib <= pool.limits.memory_gib
        )

    def add(self, plan: ProvisioningPlan) -> None:
        self.cpu += plan.cpu
        self.memory_gib += plan.memory_gib
        if plan.capacity_type == CapacityType.ON_DEMAND:
            self.on_demand_cpu += plan.cpu


@dataclass
class DeferredGroup:
    """A group that could not be planned this cycle, and why."""
    group: AggregatedDemand
    kind: ReportKind
    reason: str


@dataclass
class PlanningResult:
    plans: List[ProvisioningPlan] = field(default_factory=list)
    deferred: List[DeferredGroup] = field(default_factory=list)

    @property
    def matched_ids(self) -> List[str]:
        return [demand_id for plan in self.plans for demand_id in plan.demand_ids]

    @property
    def deferred_ids(self) -> List[str]:
        return [demand_id for d in self.deferred for demand_id in d.group.demand_ids]


class PlacementPlanner:
    """
    Turns aggregated demand into ProvisioningPlans.

    Holds no cycle state between calls; the catalog and settings are
    read-only. One planner instance serves every cycle.

    Usage:
        planner = PlacementPlanner(catalog, settings)
        result = planner.plan(groups, registry, reserved=pending_by_pool)
    """

    def __init__(
        self,
        catalog: InstanceCatalog,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._catalog = catalog
        self._settings = settings or EngineSettings()

    # ── Primary entrypoint ─────────────────────────────────────────────────────

    def plan(
        self,
        groups: Sequence[AggregatedDemand],
        registry: NodePoolRegistry,
        reserved: Optional[Dict[str, PoolUsage]] = None,
    ) -> PlanningResult:
        """
        Plan every group against a consistent snapshot of the registry.

        Args:
            groups:   Output of DemandAggregator.aggregate(), in order.
            registry: Pools and live nodes. Read only.
            reserved: Capacity already promised to pending launches, per pool.

        Returns:
            PlanningResult with one plan per placed group and one
            DeferredGroup per unplaced group. Every group lands in exactly one.
        """
        reserved = reserved or {}
        usage: Dict[str, PoolUsage] = {}
        result = PlanningResult()

        for group in groups:
            plan, reasons = self._place_group(group, registry, reserved, usage)
            if plan is not None:
                result.plans.append(plan)
                logger.info(
                    "Plan: pool=%s shape=%s capacity=%s count=%d for %d demand(s) "
                    "(%.1f vCPU, %.1f GiB)",
                    plan.pool, plan.shape.name, plan.capacity_type.value, plan.count,
                    group.demand_count, group.cpu, group.memory_gib,
                )
                continue

            kind = (
                ReportKind.NO_ELIGIBLE_SHAPE
                if reasons and all(k == ReportKind.NO_ELIGIBLE_SHAPE for k, _ in reasons)
                else ReportKind.DEFERRED
            )
            message = "; ".join(msg for _, msg in reasons) or "no candidate pools"
            result.deferred.append(DeferredGroup(group=group, kind=kind, reason=message))
            logger.warning(
                "Deferred %d demand(s) over pools %s: %s",
                group.demand_count, list(group.candidate_pools), message,
            )

        return result

    # ── Per-group placement ────────────────────────────────────────────────────

    def _place_group(
        self,
        group: AggregatedDemand,
        registry: NodePoolRegistry,
        reserved: Dict[str, PoolUsage],
        usage: Dict[str, PoolUsage],
    ):
        reasons: List[tuple] = []

        for pool_name in group.candidate_pools:
            pool = registry.get(pool_name)

            # Serialize "read committed → commit plan" for this pool.
            with registry.accounting(pool_name):
                current = usage.get(pool_name)
                if current is None:
                    current = self._initial_usage(pool_name, registry, reserved)
                    usage[pool_name] = current

                if not current.fits(pool, group.cpu, group.memory_gib):
                    reasons.append((
                        ReportKind.DEFERRED,
                        f"{pool_name} saturated ({current.cpu:.0f}/{pool.limits.cpu:.0f} vCPU, "
                        f"{current.memory_gib:.0f}/{pool.limits.memory_gib:.0f} GiB)",
                    ))
                    continue

                try:
                    plan = self._plan_for_pool(group, pool, current)
                except NoEligibleShapeError as e:
                    reasons.append((ReportKind.NO_ELIGIBLE_SHAPE, str(e)))
                    continue

                if not current.fits(pool, plan.cpu, plan.memory_gib):
                    reasons.append((
                        ReportKind.DEFERRED,
                        f"{pool_name}: {plan.count} x {plan.shape.name} would exceed limits",
                    ))
                    continue

                current.add(plan)
                return plan, reasons

        return None, reasons

    def _initial_usage(
        self,
        pool_name: str,
        registry: NodePoolRegistry,
        reserved: Dict[str, PoolUsage],
    ) -> PoolUsage:
        cpu, memory = registry.committed(pool_name)
        on_demand = registry.on_demand_cpu(pool_name)
        pending = reserved.get(pool_name)
        if pending is not None:
            cpu += pending.cpu
            memory += pending.memory_gib
            on_demand += pending.on_demand_cpu
        return PoolUsage(cpu=cpu, memory_gib=memory, on_demand_cpu=on_demand)

    def _plan_for_pool(
        self,
        group: AggregatedDemand,
        pool: NodePool,
        usage: PoolUsage,
    ) -> ProvisioningPlan:
        capacity_type = self._capacity_type(group, pool, usage)
        shapes = self._eligible_shapes(group, pool, capacity_type)

        if not shapes and capacity_type == CapacityType.SPOT \
                and pool.capacity_type == CapacityTypeConstraint.ANY:
            capacity_type = CapacityType.ON_DEMAND
            shapes = self._eligible_shapes(group, pool, capacity_type)

        if not shapes:
            arch = group.architecture or pool.architecture
            raise NoEligibleShapeError(
                pool.name,
                f"no {capacity_type.value} shape for arch={arch.value if arch else 'any'} "
                f"within families {sorted(pool.allowed_families) or 'any'}",
            )

        shape = self._pick_shape(shapes, group)
        count = max(
            math.ceil(group.cpu / shape.vcpu),
            math.ceil(group.memory_gib / shape.memory_gib),
            1,
        )
        return ProvisioningPlan(
            pool=pool.name,
            shape=shape,
            capacity_type=capacity_type,
            count=count,
            demand_ids=tuple(group.demand_ids),
        )

    # ── Selection rules ────────────────────────────────────────────────────────

    def _capacity_type(
        self,
        group: AggregatedDemand,
        pool: NodePool,
        usage: PoolUsage,
    ) -> CapacityType:
        if pool.capacity_type == CapacityTypeConstraint.ON_DEMAND:
            return CapacityType.ON_DEMAND
        if pool.capacity_type == CapacityTypeConstraint.SPOT:
            return CapacityType.SPOT

        # ANY: spot, unless taking this group as spot drops the pool's
        # on-demand share below its floor.
        if pool.min_on_demand_fraction > 0.0:
            total_after = usage.cpu + group.cpu
            if usage.on_demand_cpu / total_after < pool.min_on_demand_fraction:
                return CapacityType.ON_DEMAND
        return CapacityType.SPOT

    def _eligible_shapes(
        self,
        group: AggregatedDemand,
        pool: NodePool,
        capacity_type: CapacityType,
    ) -> List[InstanceShape]:
        if group.architecture is not None:
            architectures = [group.architecture]
        elif pool.architecture is not None:
            architectures = [pool.architecture]
        else:
            architectures = self._catalog.architectures

        if self._settings.require_single_demand_fit:
            min_cpu, min_memory = group.largest_cpu, group.largest_memory_gib
        else:
            min_cpu, min_memory = 0.0, 0.0

        shapes: List[InstanceShape] = []
        for arch in architectures:
            for shape in self._catalog.shapes_for(arch, min_cpu, min_memory):
                if not pool.allows_family(shape.family):
                    continue
                if capacity_type == CapacityType.SPOT and not shape.supports_spot:
                    continue
                shapes.append(shape)

        shapes.sort(key=cost_key)
        return shapes

    def _pick_shape(
        self,
        shapes: List[InstanceShape],
        group: AggregatedDemand,
    ) -> InstanceShape:
        """
        Smallest shape holding one chunk; the largest shape if none does.

        `shapes` is in cost order, so the first hit is the smallest.
        """
        chunk_cpu = min(group.cpu, self._settings.max_node_vcpu)
        chunk_memory = min(group.memory_gib, self._settings.max_node_memory_gib)

        for shape in shapes:
            if shape.vcpu >= chunk_cpu and shape.memory_gib >= chunk_memory:
                return shape

        return max(shapes, key=lambda s: (s.vcpu, s.memory_gib, s.generation))

    def __repr__(self) -> str:
        return (
            f"PlacementPlanner(shapes={len(self._catalog)}, "
            f"max_node_vcpu={self._settings.max_node_vcpu}, "
            f"max_node_memory_gib={self._settings.max_node_memory_gib})"
        )
