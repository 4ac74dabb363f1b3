"""
provisioner/control_plane/cost_engine.py
──────────────────────────────────────────
CostEngine: hourly cost estimates for nodes, plans and pools.

What this is
─────────────
The planner's cost proxy is vCPU count; it never needs a price. Operators
do. This engine turns the reference prices carried on InstanceShape into
the numbers the per-cycle report exposes:

  • hourly cost of one node         (shape price for its capacity type)
  • hourly cost of a plan            (price × count)
  • pool cost breakdown              (hourly / daily / monthly / yearly,
                                      spot vs on-demand split, and the
                                      savings against an all-on-demand pool)
  • spot savings of one shape        ((on-demand − spot) / on-demand × 100)

Missing prices
───────────────
Custom catalogs may omit prices. A shape without a price is billed at
DEFAULT_ON_DEMAND_PRICE / DEFAULT_SPOT_PRICE, the same fallback the
cluster's cost-report script applies to instance types it does not know.

Period multipliers
───────────────────
  daily   = hourly × 24
  monthly = hourly × 730   (AWS billing month)
  yearly  = hourly × 8760

Standalone use:
    engine = CostEngine()
    engine.pool_breakdown(registry.nodes_in("x86"))["monthly"]
"""

from __future__ import annotations

from typing import Dict, Iterable, List

import numpy as np

from provisioner.shared.models import CapacityType, InstanceShape, Node, ProvisioningPlan

# ── Cost engine constants ──────────────────────────────────────────────────────

DEFAULT_ON_DEMAND_PRICE: float = 0.10
"""USD/hour used for a shape with no on_demand_price."""

DEFAULT_SPOT_PRICE: float = 0.03
"""USD/hour used for a shape with no spot_price."""

HOURS_PER_DAY: float = 24.0
HOURS_PER_MONTH: float = 730.0
HOURS_PER_YEAR: float = 8760.0


class CostEngine:
    """
    Stateless price arithmetic. One instance can be shared.

    Usage:
        engine = CostEngine()
        engine.plan_hourly_cost(plan)           # float, USD/hr
        engine.pool_breakdown(nodes)            # dict of floats
    """

    # ── Unit prices ───────────────────────────────────────────────────────────

    @staticmethod
    def unit_price(shape: InstanceShape, capacity_type: CapacityType) -> float:
        price = shape.price_for(capacity_type)
        if price is not None:
            return price
        if capacity_type == CapacityType.SPOT:
            return DEFAULT_SPOT_PRICE
        return DEFAULT_ON_DEMAND_PRICE

    def node_hourly_cost(self, node: Node) -> float:
        return self.unit_price(node.shape, node.capacity_type)

    def plan_hourly_cost(self, plan: ProvisioningPlan) -> float:
        return self.unit_price(plan.shape, plan.capacity_type) * plan.count

    def spot_savings_pct(self, shape: InstanceShape) -> float:
        """
        Percentage saved by running `shape` as spot instead of on-demand.

        0.0 when the on-demand price is zero (nothing to save against).
        """
        on_demand = self.unit_price(shape, CapacityType.ON_DEMAND)
        spot = self.unit_price(shape, CapacityType.SPOT)
        if on_demand <= 0.0:
            return 0.0
        return (on_demand - spot) / on_demand * 100.0

    # ── Aggregates ─────────────────────────────────────────────────────────────

    def pool_breakdown(self, nodes: Iterable[Node]) -> Dict[str, float]:
        """
        Cost summary for a set of nodes (normally one pool).

        Returns:
            {
                "hourly":             float,  current USD/hr
                "daily":              float,
                "monthly":            float,
                "yearly":             float,
                "spot_hourly":        float,  share billed as spot
                "on_demand_hourly":   float,  share billed as on-demand
                "on_demand_equivalent_hourly": float,  same nodes, all on-demand
                "savings_pct":        float,  vs the all-on-demand equivalent
            }
        """
        node_list: List[Node] = list(nodes)
        if not node_list:
            return {
                "hourly": 0.0,
                "daily": 0.0,
                "monthly": 0.0,
                "yearly": 0.0,
                "spot_hourly": 0.0,
                "on_demand_hourly": 0.0,
                "on_demand_equivalent_hourly": 0.0,
                "savings_pct": 0.0,
            }

        current = np.array([self.node_hourly_cost(n) for n in node_list], dtype=np.float64)
        baseline = np.array(
            [self.unit_price(n.shape, CapacityType.ON_DEMAND) for n in node_list],
            dtype=np.float64,
        )
        is_spot = np.array(
            [n.capacity_type == CapacityType.SPOT for n in node_list], dtype=bool
        )

        hourly = float(current.sum())
        equivalent = float(baseline.sum())
        savings = (equivalent - hourly) / equivalent * 100.0 if equivalent > 0 else 0.0

        return {
            "hourly": hourly,
            "daily": hourly * HOURS_PER_DAY,
            "monthly": hourly * HOURS_PER_MONTH,
            "yearly": hourly * HOURS_PER_YEAR,
            "spot_hourly": float(current[is_spot].sum()),
            "on_demand_hourly": float(current[~is_spot].sum()),
            "on_demand_equivalent_hourly": equivalent,
            "savings_pct": savings,
        }

    def __repr__(self) -> str:
        return (
            f"CostEngine(default_on_demand={DEFAULT_ON_DEMAND_PRICE}, "
            f"default_spot={DEFAULT_SPOT_PRICE})"
        )
