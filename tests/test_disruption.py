"""
tests/test_disruption.py
─────────────────────────
Test suite for provisioner/control_plane/disruption.py

Test groups
────────────
Group 1: underutilisation     — policy semantics, consolidate_after clock, recovery
Group 2: budgeted drains      — ceiling, least-utilised first, idempotence
Group 3: forced drains        — spot interruptions bypass the budget
Group 4: drain completion     — termination, voluntary and forced timeouts
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import pytest

from provisioner.config import EngineSettings
from provisioner.control_plane.disruption import DisruptionController
from provisioner.control_plane.registry import NodePoolRegistry
from provisioner.shared.models import (
    Architecture,
    CapacityType,
    ConsolidationPolicy,
    DisruptionSpec,
    InstanceShape,
    Node,
    NodeLifecycle,
    NodePool,
    ReportKind,
    ResourceLimits,
    UtilizationSample,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

M6I_LARGE = InstanceShape(
    name="m6i.large", family="m6i", architecture=Architecture.AMD64, vcpu=2, memory_gib=8,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_pool(
    name: str = "default",
    policy: ConsolidationPolicy = ConsolidationPolicy.WHEN_EMPTY_OR_UNDERUTILIZED,
    consolidate_after: str = "1m",
    budget: str = "10%",
) -> NodePool:
    return NodePool(
        name=name,
        limits=ResourceLimits(cpu=1000, memory_gib=4000),
        disruption=DisruptionSpec(
            policy=policy, consolidate_after=consolidate_after, budget_percent=budget,
        ),
    )


def _make_node(
    node_id: str,
    pool: str = "default",
    workloads: Iterable[str] = ("w-1",),
    capacity_type: CapacityType = CapacityType.ON_DEMAND,
) -> Node:
    return Node(
        id=node_id,
        pool=pool,
        shape=M6I_LARGE,
        capacity_type=capacity_type,
        launched_at=T0,
        bound_workloads=set(workloads),
    )


def _sample(node_id: str, cpu: float, mem: float, at: datetime) -> UtilizationSample:
    return UtilizationSample(node_id=node_id, cpu_fraction=cpu, mem_fraction=mem, observed_at=at)


def _setup(pool: NodePool, *nodes: Node) -> NodePoolRegistry:
    registry = NodePoolRegistry()
    registry.register(pool)
    for node in nodes:
        registry.add_node(node)
    return registry


def _record(
    controller: DisruptionController,
    registry: NodePoolRegistry,
    node_id: str,
    cpu: float,
    mem: float,
    at: datetime,
) -> None:
    node = registry.get_node(node_id)
    controller.record_utilization(node, registry.get(node.pool), _sample(node_id, cpu, mem, at))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: underutilisation
# ─────────────────────────────────────────────────────────────────────────────

class TestUnderutilisation:

    def test_candidate_at_exactly_consolidate_after(self) -> None:
        """20% utilisation, consolidate_after=1m: candidate at 60s, not at 59s."""
        controller = DisruptionController()
        registry = _setup(_make_pool(budget="0%"), _make_node("node-1"))
        _record(controller, registry, "node-1", 0.2, 0.2, T0)

        controller.evaluate(registry, T0 + timedelta(seconds=59))
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.ACTIVE

        controller.evaluate(registry, T0 + timedelta(seconds=60))
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL

    def test_one_dimension_above_threshold_is_not_underutilised(self) -> None:
        controller = DisruptionController()
        pool = _make_pool()
        node = _make_node("node-1")
        node.last_utilization.cpu_fraction = 0.1
        node.last_utilization.mem_fraction = 0.8
        assert not controller.is_underutilized(node, pool)

    def test_when_empty_ignores_low_utilisation(self) -> None:
        controller = DisruptionController()
        pool = _make_pool(policy=ConsolidationPolicy.WHEN_EMPTY)
        busy = _make_node("node-1")
        empty = _make_node("node-2", workloads=())

        assert not controller.is_underutilized(busy, pool)
        assert controller.is_underutilized(empty, pool)

    def test_threshold_is_configurable(self) -> None:
        controller = DisruptionController(EngineSettings(underutilization_threshold=0.1))
        node = _make_node("node-1")
        node.last_utilization.cpu_fraction = 0.2
        node.last_utilization.mem_fraction = 0.2
        assert not controller.is_underutilized(node, _make_pool())

    def test_recovery_resets_to_active(self) -> None:
        controller = DisruptionController()
        registry = _setup(_make_pool(budget="0%"), _make_node("node-1"))
        _record(controller, registry, "node-1", 0.2, 0.2, T0)
        controller.evaluate(registry, T0 + timedelta(minutes=2))
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL

        _record(controller, registry, "node-1", 0.9, 0.7, T0 + timedelta(minutes=3))
        node = registry.get_node("node-1")
        assert node.lifecycle == NodeLifecycle.ACTIVE
        assert node.underutilized_since is None

    def test_blip_above_threshold_restarts_clock(self) -> None:
        controller = DisruptionController()
        registry = _setup(_make_pool(budget="0%"), _make_node("node-1"))
        _record(controller, registry, "node-1", 0.2, 0.2, T0)
        _record(controller, registry, "node-1", 0.9, 0.9, T0 + timedelta(seconds=30))
        _record(controller, registry, "node-1", 0.2, 0.2, T0 + timedelta(seconds=40))

        controller.evaluate(registry, T0 + timedelta(seconds=90))
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.ACTIVE

        controller.evaluate(registry, T0 + timedelta(seconds=100))
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: budgeted drains
# ─────────────────────────────────────────────────────────────────────────────

class TestBudget:

    def test_budget_ceiling_rounds_up(self) -> None:
        controller = DisruptionController()
        assert controller.budget_ceiling(_make_pool(budget="10%"), 1) == 1
        assert controller.budget_ceiling(_make_pool(budget="10%"), 25) == 3
        assert controller.budget_ceiling(_make_pool(budget="0%"), 25) == 0

    def test_least_utilised_drained_first(self) -> None:
        controller = DisruptionController()
        nodes = [_make_node(f"node-{i}") for i in range(10)]
        registry = _setup(_make_pool(budget="20%"), *nodes)
        for i in range(10):
            _record(controller, registry, f"node-{i}", 0.05 * i, 0.05 * i, T0)

        result = controller.evaluate(registry, T0 + timedelta(minutes=1))

        assert [d.node_id for d in result.drains] == ["node-0", "node-1"]
        assert all(not d.forced for d in result.drains)
        assert registry.get_node("node-2").lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL

    def test_drain_deadline_uses_grace_period(self) -> None:
        controller = DisruptionController(EngineSettings(drain_grace_period="90s"))
        registry = _setup(_make_pool(), _make_node("node-1"))
        _record(controller, registry, "node-1", 0.0, 0.0, T0)

        now = T0 + timedelta(minutes=1)
        result = controller.evaluate(registry, now)
        assert result.drains[0].deadline == now + timedelta(seconds=90)

    def test_repeated_evaluation_is_idempotent(self) -> None:
        controller = DisruptionController()
        nodes = [_make_node(f"node-{i}") for i in range(10)]
        registry = _setup(_make_pool(budget="20%"), *nodes)
        for i in range(10):
            _record(controller, registry, f"node-{i}", 0.1, 0.1, T0)

        now = T0 + timedelta(minutes=1)
        first = controller.evaluate(registry, now)
        states = {n.id: n.lifecycle for n in registry.nodes}
        second = controller.evaluate(registry, now)

        assert len(first.drains) == 2
        assert second.drains == []
        assert {n.id: n.lifecycle for n in registry.nodes} == states

    @pytest.mark.parametrize("seed", [2, 17, 2026])
    def test_voluntary_drains_never_exceed_budget(self, seed: int) -> None:
        rng = random.Random(seed)
        controller = DisruptionController()
        pool = _make_pool(budget="20%", consolidate_after="30s")
        registry = _setup(pool, *[_make_node(f"node-{i:02d}") for i in range(15)])

        now = T0
        for _ in range(40):
            now += timedelta(seconds=15)
            for node in list(registry.nodes):
                level = rng.choice([0.05, 0.2, 0.4, 0.8])
                _record(controller, registry, node.id, level, level, now)
                if node.lifecycle == NodeLifecycle.DRAINING and rng.random() < 0.3:
                    node.bound_workloads.clear()
            controller.evaluate(registry, now)

            live = [n for n in registry.nodes if n.is_live]
            draining = [
                n for n in live
                if n.lifecycle == NodeLifecycle.DRAINING and not n.forced_drain
            ]
            assert len(draining) <= controller.budget_ceiling(pool, len(live))


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: forced drains
# ─────────────────────────────────────────────────────────────────────────────

class TestInterruption:

    def test_interruption_bypasses_exhausted_budget(self) -> None:
        controller = DisruptionController()
        registry = _setup(
            _make_pool(budget="0%"),
            _make_node("node-1", capacity_type=CapacityType.SPOT),
        )
        node = registry.get_node("node-1")
        assert node.lifecycle == NodeLifecycle.ACTIVE

        command = controller.interrupt(node, T0 + timedelta(minutes=2), T0)

        assert command is not None and command.forced
        assert node.lifecycle == NodeLifecycle.DRAINING
        assert node.forced_drain

    def test_deadline_capped_by_grace_period(self) -> None:
        controller = DisruptionController(EngineSettings(interruption_grace_period="60s"))
        node = _make_node("node-1", capacity_type=CapacityType.SPOT)

        command = controller.interrupt(node, T0 + timedelta(minutes=10), T0)
        assert command.deadline == T0 + timedelta(seconds=60)

        earlier = controller.interrupt(node, T0 + timedelta(seconds=20), T0)
        assert earlier.deadline == T0 + timedelta(seconds=20)

    def test_forced_drain_does_not_use_budget_slot(self) -> None:
        controller = DisruptionController()
        nodes = [_make_node(f"node-{i}") for i in range(10)]
        registry = _setup(_make_pool(budget="10%"), *nodes)
        controller.interrupt(registry.get_node("node-9"), T0 + timedelta(minutes=2), T0)
        for i in range(9):
            _record(controller, registry, f"node-{i}", 0.1, 0.1, T0)

        result = controller.evaluate(registry, T0 + timedelta(minutes=1))
        assert [d.node_id for d in result.drains] == ["node-0"]

    def test_utilisation_does_not_reset_forced_drain(self) -> None:
        controller = DisruptionController()
        registry = _setup(_make_pool(), _make_node("node-1"))
        controller.interrupt(registry.get_node("node-1"), T0 + timedelta(minutes=2), T0)
        _record(controller, registry, "node-1", 0.9, 0.9, T0 + timedelta(seconds=10))

        assert registry.get_node("node-1").lifecycle == NodeLifecycle.DRAINING

    def test_terminated_node_ignored(self) -> None:
        controller = DisruptionController()
        node = _make_node("node-1")
        node.lifecycle = NodeLifecycle.TERMINATED
        assert controller.interrupt(node, T0, T0) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: drain completion
# ─────────────────────────────────────────────────────────────────────────────

class TestDrainCompletion:

    def _draining(self, settings: Optional[EngineSettings] = None):
        controller = DisruptionController(settings)
        registry = _setup(_make_pool(), _make_node("node-1"))
        _record(controller, registry, "node-1", 0.1, 0.1, T0)
        result = controller.evaluate(registry, T0 + timedelta(minutes=1))
        assert [d.node_id for d in result.drains] == ["node-1"]
        return controller, registry

    def test_empty_draining_node_terminated(self) -> None:
        controller, registry = self._draining()
        registry.get_node("node-1").bound_workloads.clear()

        result = controller.evaluate(registry, T0 + timedelta(minutes=2))

        assert [t.node_id for t in result.terminations] == ["node-1"]
        assert not registry.has_node("node-1")

    def test_voluntary_timeout_returns_to_active(self) -> None:
        controller, registry = self._draining(EngineSettings(drain_grace_period="5m"))

        late = T0 + timedelta(minutes=6)
        result = controller.evaluate(registry, late)

        node = registry.get_node("node-1")
        assert node.lifecycle == NodeLifecycle.ACTIVE
        assert node.underutilized_since == late
        assert result.drain_timeouts == ["node-1"]
        assert [e.kind for e in result.entries] == [ReportKind.DRAIN_TIMEOUT]
        assert result.terminations == []

    def test_before_deadline_nothing_happens(self) -> None:
        controller, registry = self._draining(EngineSettings(drain_grace_period="5m"))
        result = controller.evaluate(registry, T0 + timedelta(minutes=3))

        assert registry.get_node("node-1").lifecycle == NodeLifecycle.DRAINING
        assert result.entries == []

    def test_forced_timeout_reclaims_node(self) -> None:
        controller = DisruptionController()
        node = _make_node("node-1", capacity_type=CapacityType.SPOT)
        registry = _setup(_make_pool(), node)
        controller.interrupt(node, T0 + timedelta(minutes=2), T0)

        result = controller.evaluate(registry, T0 + timedelta(minutes=3))

        assert [e.kind for e in result.entries] == [ReportKind.DRAIN_TIMEOUT]
        assert [t.node_id for t in result.terminations] == ["node-1"]
        assert result.drain_timeouts == []
        assert node.lifecycle == NodeLifecycle.TERMINATED
        assert not registry.has_node("node-1")

    def test_reclaimed_node_releases_committed_capacity(self) -> None:
        controller = DisruptionController()
        node = _make_node("node-1", capacity_type=CapacityType.SPOT)
        registry = _setup(_make_pool(), node)
        controller.interrupt(node, T0 + timedelta(minutes=2), T0)
        assert registry.committed("default") == (2.0, 8.0)

        controller.evaluate(registry, T0 + timedelta(hours=1))
        second = controller.evaluate(registry, T0 + timedelta(hours=1, minutes=1))

        assert registry.committed("default") == (0.0, 0.0)
        assert second.entries == [] and second.terminations == []

    def test_reclaim_expired_only_settles_forced_drains(self) -> None:
        controller = DisruptionController(EngineSettings(drain_grace_period="5m"))
        spot = _make_node("spot-1", capacity_type=CapacityType.SPOT)
        registry = _setup(_make_pool(budget="100%"), spot, _make_node("node-1"))
        _record(controller, registry, "node-1", 0.1, 0.1, T0)
        controller.evaluate(registry, T0 + timedelta(minutes=1))
        controller.interrupt(spot, T0 + timedelta(minutes=2), T0 + timedelta(minutes=1))

        result = controller.reclaim_expired(registry, T0 + timedelta(minutes=10))

        assert [t.node_id for t in result.terminations] == ["spot-1"]
        assert registry.get_node("node-1").lifecycle == NodeLifecycle.DRAINING
        assert [n.id for n in registry.nodes] == ["node-1"]
