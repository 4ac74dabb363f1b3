"""
provisioner/control_plane/disruption.py
────────────────────────────────────────
DisruptionController: decides which live nodes to drain and terminate.

State machine (per node)
─────────────────────────

    ACTIVE ──(underutilised ≥ consolidate_after)──▶ CANDIDATE_FOR_REMOVAL
      ▲                                                   │
      └──────────(utilisation recovers)───────────────────┤
                                                          │ budget slot free
                                                          ▼
    ACTIVE ◀──(voluntary deadline missed: DrainTimeout)── DRAINING ──(no bound
                                                          ▲     workloads)──▶ TERMINATED
    any state ──(spot interruption notice, no budget)─────┘

"Underutilised" depends on the pool's policy:
  WhenEmpty                  → zero bound workloads.
  WhenEmptyOrUnderutilized   → zero bound workloads, OR both cpu_fraction and
                               mem_fraction below the threshold (default 0.5).

The clock for consolidate_after starts at the first observation below
threshold (the sample's observed_at, or the evaluation time when no sample
drove it) and is cleared by any observation above threshold.

Disruption budget
──────────────────
Per pool and per evaluate() call:

    ceiling = ceil(budget_percent / 100 × live nodes in pool)
    slots   = ceiling − nodes already DRAINING voluntarily

Candidates take the free slots least-utilised first (mean of cpu and mem
fraction, then fewer bound workloads, then node id). Forced drains (spot
interruptions) never consume or check slots: the cloud reclaims the node
whether or not we agree.

Drain timeouts
───────────────
A voluntary drain that passes its deadline with workloads still bound is
reported as DrainTimeout and the node goes back to ACTIVE; nothing is evicted
by force. A forced drain that passes its notice deadline means the cloud has
reclaimed the instance: it is reported as DrainTimeout, marked TERMINATED,
removed from the registry and handed to the terminator, so its capacity stops
counting against the pool limits.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from provisioner.config import EngineSettings
from provisioner.control_plane.registry import NodePoolRegistry
from provisioner.shared.models import (
    ConsolidationPolicy,
    DrainCommand,
    Node,
    NodeLifecycle,
    NodePool,
    ReportEntry,
    ReportKind,
    TerminateCommand,
    UtilizationSample,
)

logger = logging.getLogger(__name__)


@dataclass
class DisruptionResult:
    """Everything one evaluate() call decided."""
    drains: List[DrainCommand] = field(default_factory=list)
    terminations: List[TerminateCommand] = field(default_factory=list)
    entries: List[ReportEntry] = field(default_factory=list)
    drain_timeouts: List[str] = field(default_factory=list)


class DisruptionController:
    """
    Consolidation and interruption handling over the registry's live nodes.

    Public API:
        record_utilization(node, pool, sample)   → None
        interrupt(node, deadline, now)           → Optional[DrainCommand]
        reclaim_expired(registry, now)           → DisruptionResult
        evaluate(registry, now)                  → DisruptionResult
        is_underutilized(node, pool)             → bool
        budget_ceiling(pool, live_nodes)         → int
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self._settings = settings or EngineSettings()

    # ── Observations ──────────────────────────────────────────────────────────

    def is_underutilized(self, node: Node, pool: NodePool) -> bool:
        if node.is_empty:
            return True
        if pool.disruption.policy == ConsolidationPolicy.WHEN_EMPTY:
            return False
        threshold = self._settings.underutilization_threshold
        return (
            node.last_utilization.cpu_fraction < threshold
            and node.last_utilization.mem_fraction < threshold
        )

    def record_utilization(self, node: Node, pool: NodePool, sample: UtilizationSample) -> None:
        """Store a sample on the node and start or clear its underutilisation clock."""
        node.last_utilization.cpu_fraction = sample.cpu_fraction
        node.last_utilization.mem_fraction = sample.mem_fraction
        self._observe(node, pool, sample.observed_at)

    def _observe(self, node: Node, pool: NodePool, at: datetime) -> None:
        if node.lifecycle in (NodeLifecycle.DRAINING, NodeLifecycle.TERMINATED):
            return
        if self.is_underutilized(node, pool):
            if node.underutilized_since is None:
                node.underutilized_since = at
            return

        if node.lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL:
            logger.info("Node %s back to Active: utilisation recovered", node.id)
        node.underutilized_since = None
        node.lifecycle = NodeLifecycle.ACTIVE

    # ── Forced path ───────────────────────────────────────────────────────────

    def interrupt(self, node: Node, deadline: datetime, now: datetime) -> Optional[DrainCommand]:
        """
        Spot interruption: move `node` straight to DRAINING, ignoring the budget.

        The grace period is the notice deadline, capped at
        interruption_grace_period from now. Returns None for a node that is
        already terminated.
        """
        if node.lifecycle == NodeLifecycle.TERMINATED:
            return None

        capped = min(deadline, now + self._settings.interruption_grace_period)
        if node.lifecycle != NodeLifecycle.DRAINING:
            node.drain_started_at = now
        node.lifecycle = NodeLifecycle.DRAINING
        node.forced_drain = True
        node.drain_deadline = capped

        logger.warning(
            "Spot interruption: node %s (pool %s) draining until %s",
            node.id, node.pool, capped.isoformat(),
        )
        return DrainCommand(node_id=node.id, pool=node.pool, deadline=capped, forced=True)

    def reclaim_expired(self, registry: NodePoolRegistry, now: datetime) -> DisruptionResult:
        """
        Settle every forced drain whose notice deadline has passed.

        The ProvisioningService runs this before planning, so a reclaimed spot
        node stops counting against its pool's limits in the same cycle.
        evaluate() settles the same nodes when it meets them first.
        """
        result = DisruptionResult()
        for pool in registry.pools:
            with registry.accounting(pool.name):
                for node in registry.nodes_in(pool.name):
                    if not node.forced_drain or node.lifecycle != NodeLifecycle.DRAINING:
                        continue
                    if node.drain_deadline is None or now < node.drain_deadline:
                        continue
                    if node.is_empty:
                        self._terminate(node, pool, registry, result)
                    else:
                        self._drain_timed_out(node, pool, registry, now, result)
        return result

    # ── Periodic pass ─────────────────────────────────────────────────────────

    def budget_ceiling(self, pool: NodePool, live_nodes: int) -> int:
        return math.ceil(pool.disruption.budget_percent * live_nodes / 100.0)

    def evaluate(self, registry: NodePoolRegistry, now: datetime) -> DisruptionResult:
        """
        One pass over every pool, in registration order.

        Per pool:
          1. Finish or time out existing drains.
          2. Advance ACTIVE / CANDIDATE_FOR_REMOVAL nodes on utilisation.
          3. Hand free budget slots to candidates, least utilised first.
        """
        result = DisruptionResult()
        for pool in registry.pools:
            self._evaluate_pool(pool, registry, now, result)
        return result

    def _evaluate_pool(
        self,
        pool: NodePool,
        registry: NodePoolRegistry,
        now: datetime,
        result: DisruptionResult,
    ) -> None:
        with registry.accounting(pool.name):
            nodes = registry.nodes_in(pool.name)

            # Step 1: existing drains
            for node in nodes:
                if node.lifecycle != NodeLifecycle.DRAINING:
                    continue
                if node.is_empty:
                    self._terminate(node, pool, registry, result)
                elif node.drain_deadline is not None and now >= node.drain_deadline:
                    self._drain_timed_out(node, pool, registry, now, result)

            live = [n for n in nodes if n.is_live]

            # Step 2: utilisation-driven transitions
            for node in live:
                if node.lifecycle == NodeLifecycle.DRAINING:
                    continue
                self._observe(node, pool, now)
                if node.underutilized_since is None:
                    continue
                if now - node.underutilized_since >= pool.disruption.consolidate_after:
                    if node.lifecycle != NodeLifecycle.CANDIDATE_FOR_REMOVAL:
                        logger.info(
                            "Node %s is a removal candidate (underutilised since %s)",
                            node.id, node.underutilized_since.isoformat(),
                        )
                    node.lifecycle = NodeLifecycle.CANDIDATE_FOR_REMOVAL

            # Step 3: budgeted drains
            ceiling = self.budget_ceiling(pool, len(live))
            voluntary = sum(
                1 for n in live
                if n.lifecycle == NodeLifecycle.DRAINING and not n.forced_drain
            )
            slots = max(0, ceiling - voluntary)
            candidates = sorted(
                (n for n in live if n.lifecycle == NodeLifecycle.CANDIDATE_FOR_REMOVAL),
                key=lambda n: (n.last_utilization.mean, len(n.bound_workloads), n.id),
            )
            if candidates and slots < len(candidates):
                logger.debug(
                    "Pool %s: %d candidate(s), %d budget slot(s) (ceiling %d, %d draining)",
                    pool.name, len(candidates), slots, ceiling, voluntary,
                )

            for node in candidates[:slots]:
                deadline = now + self._settings.drain_grace_period
                node.lifecycle = NodeLifecycle.DRAINING
                node.drain_started_at = now
                node.drain_deadline = deadline
                node.forced_drain = False
                result.drains.append(DrainCommand(node_id=node.id, pool=pool.name, deadline=deadline))
                logger.info(
                    "Draining node %s (pool %s, cpu=%.2f mem=%.2f, %d workload(s))",
                    node.id, pool.name,
                    node.last_utilization.cpu_fraction, node.last_utilization.mem_fraction,
                    len(node.bound_workloads),
                )

    def _terminate(
        self,
        node: Node,
        pool: NodePool,
        registry: NodePoolRegistry,
        result: DisruptionResult,
    ) -> None:
        node.lifecycle = NodeLifecycle.TERMINATED
        registry.remove_node(node.id)
        result.terminations.append(TerminateCommand(node_id=node.id, pool=pool.name))
        logger.info("Node %s drained, terminating (pool %s)", node.id, pool.name)

    def _drain_timed_out(
        self,
        node: Node,
        pool: NodePool,
        registry: NodePoolRegistry,
        now: datetime,
        result: DisruptionResult,
    ) -> None:
        message = (
            f"{len(node.bound_workloads)} workload(s) still bound after drain deadline "
            f"{node.drain_deadline.isoformat() if node.drain_deadline else '?'}"
        )
        if node.forced_drain:
            # past the notice deadline the cloud has reclaimed the instance
            node.lifecycle = NodeLifecycle.TERMINATED
            registry.remove_node(node.id)
            result.terminations.append(TerminateCommand(node_id=node.id, pool=pool.name))
            result.entries.append(ReportEntry(
                kind=ReportKind.DRAIN_TIMEOUT, subject=node.id, message=message,
            ))
            logger.warning("Forced drain of %s timed out, node reclaimed: %s", node.id, message)
            return

        node.lifecycle = NodeLifecycle.ACTIVE
        node.drain_started_at = None
        node.drain_deadline = None
        node.underutilized_since = now
        result.drain_timeouts.append(node.id)
        result.entries.append(ReportEntry(
            kind=ReportKind.DRAIN_TIMEOUT, subject=node.id, message=message,
        ))
        logger.warning("Drain of %s timed out, node returned to Active: %s", node.id, message)

    def __repr__(self) -> str:
        return (
            f"DisruptionController(threshold={self._settings.underutilization_threshold}, "
            f"drain_grace={self._settings.drain_grace_period})"
        )
