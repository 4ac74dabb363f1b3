"""
tests/test_cost_engine.py
──────────────────────────
Test suite for provisioner/control_plane/cost_engine.py

Test groups
────────────
Group 1: unit prices       — catalog prices and the fallback for unpriced shapes
Group 2: plan / node cost  — price × count
Group 3: pool breakdown    — period multipliers, spot split, savings
"""

from __future__ import annotations

from typing import Optional

import pytest

from provisioner.control_plane.cost_engine import (
    DEFAULT_ON_DEMAND_PRICE,
    DEFAULT_SPOT_PRICE,
    HOURS_PER_MONTH,
    CostEngine,
)
from provisioner.shared.models import (
    Architecture,
    CapacityType,
    InstanceShape,
    Node,
    ProvisioningPlan,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_shape(
    on_demand: Optional[float] = 0.096,
    spot: Optional[float] = 0.029,
) -> InstanceShape:
    return InstanceShape(
        name="m6i.large",
        family="m6i",
        architecture=Architecture.AMD64,
        vcpu=2,
        memory_gib=8,
        on_demand_price=on_demand,
        spot_price=spot,
    )


def _make_node(node_id: str, capacity_type: CapacityType, shape: Optional[InstanceShape] = None) -> Node:
    return Node(id=node_id, pool="x86", shape=shape or _make_shape(), capacity_type=capacity_type)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: unit prices
# ─────────────────────────────────────────────────────────────────────────────

class TestUnitPrice:

    engine = CostEngine()

    def test_catalog_price_used(self) -> None:
        shape = _make_shape()
        assert self.engine.unit_price(shape, CapacityType.ON_DEMAND) == pytest.approx(0.096)
        assert self.engine.unit_price(shape, CapacityType.SPOT) == pytest.approx(0.029)

    def test_unpriced_shape_falls_back(self) -> None:
        shape = _make_shape(on_demand=None, spot=None)
        assert self.engine.unit_price(shape, CapacityType.ON_DEMAND) == DEFAULT_ON_DEMAND_PRICE
        assert self.engine.unit_price(shape, CapacityType.SPOT) == DEFAULT_SPOT_PRICE

    def test_spot_savings_pct(self) -> None:
        expected = (0.096 - 0.029) / 0.096 * 100.0
        assert self.engine.spot_savings_pct(_make_shape()) == pytest.approx(expected)

    def test_spot_savings_zero_price(self) -> None:
        assert self.engine.spot_savings_pct(_make_shape(on_demand=0.0, spot=0.0)) == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: plan / node cost
# ─────────────────────────────────────────────────────────────────────────────

class TestPlanCost:

    engine = CostEngine()

    def test_plan_cost_is_price_times_count(self) -> None:
        plan = ProvisioningPlan(
            pool="x86", shape=_make_shape(), capacity_type=CapacityType.SPOT, count=20,
        )
        assert self.engine.plan_hourly_cost(plan) == pytest.approx(0.029 * 20)

    def test_node_cost_follows_capacity_type(self) -> None:
        od = _make_node("a", CapacityType.ON_DEMAND)
        spot = _make_node("b", CapacityType.SPOT)
        assert self.engine.node_hourly_cost(od) > self.engine.node_hourly_cost(spot)


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: pool breakdown
# ─────────────────────────────────────────────────────────────────────────────

class TestPoolBreakdown:

    engine = CostEngine()

    def test_empty_pool_is_all_zero(self) -> None:
        breakdown = self.engine.pool_breakdown([])
        assert set(breakdown.values()) == {0.0}
        assert "monthly" in breakdown

    def test_mixed_pool(self) -> None:
        nodes = [
            _make_node("a", CapacityType.ON_DEMAND),
            _make_node("b", CapacityType.SPOT),
            _make_node("c", CapacityType.SPOT),
        ]
        breakdown = self.engine.pool_breakdown(nodes)

        hourly = 0.096 + 2 * 0.029
        assert breakdown["hourly"] == pytest.approx(hourly)
        assert breakdown["monthly"] == pytest.approx(hourly * HOURS_PER_MONTH)
        assert breakdown["daily"] == pytest.approx(hourly * 24)
        assert breakdown["yearly"] == pytest.approx(hourly * 8760)
        assert breakdown["spot_hourly"] == pytest.approx(2 * 0.029)
        assert breakdown["on_demand_hourly"] == pytest.approx(0.096)
        assert breakdown["on_demand_equivalent_hourly"] == pytest.approx(3 * 0.096)
        assert breakdown["savings_pct"] == pytest.approx((3 * 0.096 - hourly) / (3 * 0.096) * 100)

    def test_all_on_demand_saves_nothing(self) -> None:
        nodes = [_make_node(f"n-{i}", CapacityType.ON_DEMAND) for i in range(4)]
        assert self.engine.pool_breakdown(nodes)["savings_pct"] == pytest.approx(0.0)

    def test_accepts_generator(self) -> None:
        nodes = (_make_node(f"n-{i}", CapacityType.SPOT) for i in range(3))
        assert self.engine.pool_breakdown(nodes)["hourly"] == pytest.approx(3 * 0.029)
