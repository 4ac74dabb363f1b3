"""
provisioner/control_plane/provisioning_service.py
───────────────────────────────────────────────────
ProvisioningService: the decision cycle that ties every component together.

One cycle
──────────
run_cycle(now) executes, in this order, against one consistent snapshot:

  1. Drain the EventCollector and apply the batch:
       reconfigurations → launch confirmations → workload bindings
       → utilisation samples → spot interruption notices
     then settle forced drains past their notice deadline: the cloud has
     reclaimed those nodes, so they leave the registry before planning.
  2. Snapshot the demand queue. A demand whose id is already covered by an
     unconfirmed launch is skipped: the scheduler repeats its unschedulable
     signal while a pod waits, and that pod already has capacity on the way.
     Then expire launches past their deadline (LaunchTimeout); their demands
     are reported Deferred and queued for the next cycle.
  3. Aggregate the snapshot (DemandAggregator).
  4. Plan (PlacementPlanner), counting pending launches as committed capacity.
  5. Hand each plan to the launcher and record it as a PendingLaunch.
  6. Run the DisruptionController; hand drains and terminations to the
     evictor / terminator callables.
  7. Build the CycleReport: per-demand outcome, report entries, alerts,
     per-pool utilisation and cost.

Nothing outside run_cycle() mutates the registry's node set except
cancel_launch() (which only touches pending launches) and remove_pool().
Events that arrive mid-cycle land in the collector and wait for the next one.

Re-entrancy
────────────
The cycle is cooperative and not re-entrant. A second run_cycle() while one
is in flight raises CycleInProgressError instead of blocking; the caller's
loop simply tries again on its next tick.

Demand lifecycle
─────────────────
  submitted ──▶ queued ──▶ Matched ──▶ pending launch ──▶ confirmed (node)
                  ▲  │                      │
                  │  ├──▶ Deferred ─────────┤ (re-queued next cycle)
                  │  │                      │
                  │  └──▶ Unplaceable       └──▶ LaunchTimeout / cancelled
                  └──────────────────────────────────┘     (re-queued next cycle)

A timed-out launch frees its reserved capacity in the same cycle, but its
demands are only planned again on the following one.

Confirmations are checked against the launch: node ids that already exist
and ids beyond the plan's count are refused with an InvalidConfirmation
entry, so a confirmation can never overwrite a live node or push a pool past
its limits.

Unplaceable demands are reported once and dropped: the scheduler re-submits
them if they are still pending when the pool set changes.

Retry escalation
─────────────────
Deferred, LaunchTimeout and DrainTimeout each bump a per-unit counter
(demand id, or "drain:<node id>"). A launch confirmation or a completed
drain clears it. Every time the counter reaches a multiple of
max_consecutive_retries, an alert is logged at ERROR and added to the report.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

import numpy as np

from provisioner.config import EngineSettings, ProvisionerConfig
from provisioner.control_plane.admission_controller import (
    PolicyRejectedError,
    admit_pool,
    admit_pools,
)
from provisioner.control_plane.aggregator import DemandAggregator
from provisioner.control_plane.catalog import (
    DEFAULT_SHAPES,
    InstanceCatalog,
    UnknownArchitectureError,
)
from provisioner.control_plane.cost_engine import CostEngine
from provisioner.control_plane.disruption import DisruptionController, DisruptionResult
from provisioner.control_plane.planner import PlacementPlanner, PoolUsage
from provisioner.control_plane.registry import NodePoolRegistry, PoolInUseError
from provisioner.shared.models import (
    CycleReport,
    DemandOutcome,
    DrainCommand,
    Node,
    PendingLaunch,
    PoolUtilization,
    ProvisioningPlan,
    ReportEntry,
    ReportKind,
    TerminateCommand,
    WorkloadDemand,
    utcnow,
)
from provisioner.telemetry.collector import EventBatch, EventCollector

logger = logging.getLogger(__name__)

Launcher = Callable[[str, ProvisioningPlan], None]
Evictor = Callable[[DrainCommand], None]
Terminator = Callable[[TerminateCommand], None]


class CycleInProgressError(Exception):
    """Raised when run_cycle() is entered while another cycle is running."""

    def __init__(self, cycle: int) -> None:
        self.cycle = cycle
        super().__init__(f"Cycle {cycle} is still running")


class UnknownLaunchError(KeyError):
    """Raised by cancel_launch() for a launch id that is not pending."""

    def __init__(self, launch_id: str) -> None:
        self.launch_id = launch_id
        super().__init__(launch_id)


def _noop(*_args) -> None:
    return None


class ProvisioningService:
    """
    Owns the pending demand queue, pending launches and the cycle loop.

    Public API:
        run_cycle(now)                 → CycleReport   (CycleInProgressError)
        cancel_launch(launch_id)       → List[str]     re-queued demand ids
        remove_pool(name)              → None          (PoolInUseError)
        pending_launches / pending_demands / last_report / history
        get_metrics()                  → Dict          cumulative counters

    Side effects go through three injected callables, so the service never
    talks to a cloud API itself:
        launcher(launch_id, plan)      fire-and-forget machine launch
        evictor(drain_command)         start evicting workloads from a node
        terminator(terminate_command)  release the machine

    Attributes:
        collector : EventCollector       — inbox for external events
        registry  : NodePoolRegistry     — pools and live nodes
        history   : deque(maxlen=100)    — recent CycleReports
    """

    def __init__(
        self,
        catalog: InstanceCatalog,
        registry: NodePoolRegistry,
        settings: Optional[EngineSettings] = None,
        launcher: Optional[Launcher] = None,
        evictor: Optional[Evictor] = None,
        terminator: Optional[Terminator] = None,
        collector: Optional[EventCollector] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.catalog = catalog
        self.registry = registry
        self.collector = collector or EventCollector()

        self._launcher: Launcher = launcher or _noop
        self._evictor: Evictor = evictor or _noop
        self._terminator: Terminator = terminator or _noop

        self._aggregator = DemandAggregator()
        self._planner = PlacementPlanner(catalog, self.settings)
        self._disruption = DisruptionController(self.settings)
        self._cost = CostEngine()

        # ── Cycle state ───────────────────────────────────────────────────────
        self._cycle_lock = threading.Lock()
        self._launch_lock = threading.Lock()
        self._cycle: int = 0
        self._pending_demands: Dict[str, WorkloadDemand] = {}
        self._pending_launches: Dict[str, PendingLaunch] = {}
        self._launch_demands: Dict[str, List[WorkloadDemand]] = {}
        self._retries: Dict[str, int] = {}
        self.history: deque = deque(maxlen=100)

        # ── Cumulative counters (get_metrics) ─────────────────────────────────
        self._launched_nodes: int = 0
        self._terminated_nodes: int = 0
        self._launch_timeouts: int = 0
        self._drain_timeouts: int = 0
        self._alerts: int = 0

        logger.info(
            "ProvisioningService initialised: %d shape(s), %d pool(s)",
            len(catalog), len(registry.pools),
        )

    # ── Cycle ──────────────────────────────────────────────────────────────────

    def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """
        Run one complete decision cycle.

        Args:
            now: Cycle clock. Defaults to utcnow(); tests pass explicit times.

        Returns:
            CycleReport for this cycle (also appended to history).

        Raises:
            CycleInProgressError: another cycle has not finished yet.
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError(self._cycle)
        try:
            return self._run_cycle(now or utcnow())
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, now: datetime) -> CycleReport:
        self._cycle += 1
        report = CycleReport(cycle=self._cycle, started_at=now)

        # Step 1: apply queued events
        batch = self.collector.drain()
        self._apply_reconfigurations(batch, report)
        self._apply_confirmations(batch, report)
        self._apply_bindings(batch, report)
        self._apply_samples(batch, report)
        self._apply_interruptions(batch, now, report)
        self._apply_disruption(self._disruption.reclaim_expired(self.registry, now), report)

        for demand in batch.demands:
            self._pending_demands[demand.id] = demand

        # Step 2: snapshot the queue, minus demands an unconfirmed launch already covers
        held = self._held_demand_ids()
        demands = sorted(
            (d for d in self._pending_demands.values() if d.id not in held),
            key=lambda d: (d.created_at, d.id),
        )
        skipped = len(self._pending_demands) - len(demands)
        if skipped:
            logger.debug("Skipped %d demand(s) already covered by a pending launch", skipped)
        self._pending_demands = {}

        # Timed-out demands land in the emptied queue and wait for the next cycle
        self._expire_launches(now, report)

        # Step 3 + 4: aggregate and plan the snapshot
        aggregation = self._aggregator.aggregate(demands, self.registry)
        by_id = {d.id: d for d in demands}

        for demand_id in aggregation.unplaceable:
            report.outcomes[demand_id] = DemandOutcome.UNPLACEABLE
            report.entries.append(ReportEntry(
                kind=ReportKind.UNPLACEABLE,
                subject=demand_id,
                message="no registered pool matches this demand",
            ))
            self._retries.pop(demand_id, None)

        planning = self._planner.plan(
            aggregation.groups, self.registry, reserved=self._reserved_by_pool(),
        )

        # Step 5: launch
        for plan in planning.plans:
            launch_id = f"launch-{uuid.uuid4().hex[:8]}"
            plan_demands = [by_id[i] for i in plan.demand_ids]
            try:
                self._launcher(launch_id, plan)
            except Exception:
                logger.exception("Launcher failed for %s (pool %s)", launch_id, plan.pool)
                report.entries.append(ReportEntry(
                    kind=ReportKind.DEFERRED,
                    subject=launch_id,
                    message=f"launcher failed for {plan.count} x {plan.shape.name} in {plan.pool}",
                ))
                self._defer(plan_demands, report)
                continue

            with self._launch_lock:
                self._pending_launches[launch_id] = PendingLaunch(
                    launch_id=launch_id,
                    plan=plan,
                    requested_at=now,
                    deadline=now + self.settings.launch_timeout,
                )
                self._launch_demands[launch_id] = plan_demands
            report.plans.append(plan)
            for demand_id in plan.demand_ids:
                report.outcomes[demand_id] = DemandOutcome.MATCHED

        for deferred in planning.deferred:
            report.entries.append(ReportEntry(
                kind=deferred.kind,
                subject=",".join(deferred.group.demand_ids),
                message=deferred.reason,
            ))
            self._defer([by_id[i] for i in deferred.group.demand_ids], report)

        # Step 6: consolidation and interruptions
        self._run_disruption(now, report)

        # Step 7: report
        report.pools = self._pool_utilization()
        self.history.append(report)
        logger.info(
            "Cycle %d: %d matched, %d unplaceable, %d deferred; %d plan(s), "
            "%d drain(s), %d termination(s), %d alert(s)",
            report.cycle, report.matched, report.unplaceable, report.deferred,
            len(report.plans), len(report.drains), len(report.terminations),
            len(report.alerts),
        )
        return report

    # ── Event application ─────────────────────────────────────────────────────

    def _apply_reconfigurations(self, batch: EventBatch, report: CycleReport) -> None:
        for pool in batch.reconfigurations:
            try:
                admit_pool(pool, self.catalog)
            except (PolicyRejectedError, UnknownArchitectureError) as e:
                report.entries.append(ReportEntry(
                    kind=ReportKind.RECONFIGURATION_REJECTED, subject=pool.name, message=str(e),
                ))
                logger.warning("Reconfiguration of pool %s rejected: %s", pool.name, e)
                continue
            if pool.name in self.registry:
                self.registry.replace(pool)
            else:
                self.registry.register(pool)

    def _apply_confirmations(self, batch: EventBatch, report: CycleReport) -> None:
        for confirmation in batch.confirmations:
            with self._launch_lock:
                launch = self._pending_launches.pop(confirmation.launch_id, None)
                demands = self._launch_demands.pop(confirmation.launch_id, [])
            if launch is None:
                report.entries.append(ReportEntry(
                    kind=ReportKind.UNKNOWN_LAUNCH,
                    subject=confirmation.launch_id,
                    message="confirmation for a launch that is not pending "
                            "(cancelled, timed out or never issued)",
                ))
                logger.warning("Confirmation for unknown launch %s", confirmation.launch_id)
                continue

            plan = launch.plan
            accepted: List[str] = []
            for node_id in confirmation.node_ids:
                if self.registry.has_node(node_id):
                    self._invalid_confirmation(
                        launch.launch_id, f"node {node_id} already exists, not replaced", report,
                    )
                    continue
                if len(accepted) == plan.count:
                    self._invalid_confirmation(
                        launch.launch_id,
                        f"node {node_id} exceeds the planned count of {plan.count}, not added",
                        report,
                    )
                    continue
                self.registry.add_node(Node(
                    id=node_id,
                    pool=plan.pool,
                    shape=plan.shape,
                    capacity_type=plan.capacity_type,
                    launched_at=confirmation.confirmed_at,
                ))
                accepted.append(node_id)

            self._launched_nodes += len(accepted)
            for demand in demands:
                self._retries.pop(demand.id, None)
            if len(accepted) < plan.count:
                logger.warning(
                    "Launch %s confirmed %d of %d node(s)",
                    launch.launch_id, len(accepted), plan.count,
                )
            logger.info(
                "Launch %s confirmed: %d x %s in pool %s",
                launch.launch_id, len(accepted), plan.shape.name, plan.pool,
            )

    def _invalid_confirmation(self, launch_id: str, message: str, report: CycleReport) -> None:
        report.entries.append(ReportEntry(
            kind=ReportKind.INVALID_CONFIRMATION, subject=launch_id, message=message,
        ))
        logger.warning("Launch %s: %s", launch_id, message)

    def _apply_bindings(self, batch: EventBatch, report: CycleReport) -> None:
        for binding in batch.bindings:
            if not self.registry.has_node(binding.node_id):
                self._unknown_node(binding.node_id, "workload binding", report)
                continue
            node = self.registry.get_node(binding.node_id)
            if binding.bound:
                node.bound_workloads.add(binding.workload_id)
            else:
                node.bound_workloads.discard(binding.workload_id)

    def _apply_samples(self, batch: EventBatch, report: CycleReport) -> None:
        for sample in batch.samples:
            if not self.registry.has_node(sample.node_id):
                self._unknown_node(sample.node_id, "utilisation sample", report)
                continue
            node = self.registry.get_node(sample.node_id)
            self._disruption.record_utilization(node, self.registry.get(node.pool), sample)

    def _apply_interruptions(self, batch: EventBatch, now: datetime, report: CycleReport) -> None:
        for notice in batch.interruptions:
            if not self.registry.has_node(notice.node_id):
                self._unknown_node(notice.node_id, "interruption notice", report)
                continue
            node = self.registry.get_node(notice.node_id)
            command = self._disruption.interrupt(node, notice.deadline, now)
            if command is not None:
                report.drains.append(command)
                self._evictor(command)

    def _unknown_node(self, node_id: str, what: str, report: CycleReport) -> None:
        report.entries.append(ReportEntry(
            kind=ReportKind.UNKNOWN_NODE, subject=node_id, message=f"{what} for unknown node",
        ))
        logger.warning("Ignoring %s for unknown node %s", what, node_id)

    # ── Pending launches ──────────────────────────────────────────────────────

    def _expire_launches(self, now: datetime, report: CycleReport) -> None:
        with self._launch_lock:
            expired = [launch for launch in self._pending_launches.values() if now >= launch.deadline]
            for launch in expired:
                del self._pending_launches[launch.launch_id]
            expired_demands = [
                (launch, self._launch_demands.pop(launch.launch_id, []))
                for launch in expired
            ]

        for launch, demands in expired_demands:
            self._launch_timeouts += 1
            report.entries.append(ReportEntry(
                kind=ReportKind.LAUNCH_TIMEOUT,
                subject=launch.launch_id,
                message=(
                    f"{launch.plan.count} x {launch.plan.shape.name} in {launch.plan.pool} "
                    f"unconfirmed since {launch.requested_at.isoformat()}"
                ),
            ))
            logger.warning(
                "Launch %s timed out, re-queuing %d demand(s)", launch.launch_id, len(demands),
            )
            for demand in demands:
                report.outcomes[demand.id] = DemandOutcome.DEFERRED
                self._pending_demands[demand.id] = demand
                self._bump_retry(demand.id, report)

    def _held_demand_ids(self) -> Set[str]:
        with self._launch_lock:
            return {d.id for demands in self._launch_demands.values() for d in demands}

    def _reserved_by_pool(self) -> Dict[str, PoolUsage]:
        reserved: Dict[str, PoolUsage] = {}
        with self._launch_lock:
            for launch in self._pending_launches.values():
                reserved.setdefault(launch.plan.pool, PoolUsage()).add(launch.plan)
        return reserved

    def cancel_launch(self, launch_id: str) -> List[str]:
        """
        Cancel a launch that has not been confirmed yet.

        The plan's demands go back to the queue for the next cycle. A late
        confirmation for a cancelled launch is reported as UnknownLaunch and
        creates no nodes.

        Raises:
            UnknownLaunchError: launch_id is not pending (never issued,
                                already confirmed, timed out or cancelled).
        """
        with self._launch_lock:
            if launch_id not in self._pending_launches:
                raise UnknownLaunchError(launch_id)
            launch = self._pending_launches.pop(launch_id)
            demands = self._launch_demands.pop(launch_id, [])

        for demand in demands:
            self.collector.submit_demand(demand)
        logger.info(
            "Cancelled launch %s (%d x %s in %s), %d demand(s) re-queued",
            launch_id, launch.plan.count, launch.plan.shape.name, launch.plan.pool, len(demands),
        )
        return [d.id for d in demands]

    # ── Disruption ─────────────────────────────────────────────────────────────

    def _run_disruption(self, now: datetime, report: CycleReport) -> None:
        self._apply_disruption(self._disruption.evaluate(self.registry, now), report)

    def _apply_disruption(self, result: DisruptionResult, report: CycleReport) -> None:
        for command in result.drains:
            report.drains.append(command)
            self._evictor(command)
        for command in result.terminations:
            report.terminations.append(command)
            self._retries.pop(f"drain:{command.node_id}", None)
            self._terminator(command)

        report.entries.extend(result.entries)
        self._terminated_nodes += len(result.terminations)
        self._drain_timeouts += len(result.drain_timeouts)
        for node_id in result.drain_timeouts:
            self._bump_retry(f"drain:{node_id}", report)

    # ── Retry bookkeeping ─────────────────────────────────────────────────────

    def _defer(self, demands: Iterable[WorkloadDemand], report: CycleReport) -> None:
        for demand in demands:
            report.outcomes[demand.id] = DemandOutcome.DEFERRED
            self._pending_demands[demand.id] = demand
            self._bump_retry(demand.id, report)

    def _bump_retry(self, unit: str, report: CycleReport) -> None:
        count = self._retries.get(unit, 0) + 1
        self._retries[unit] = count
        if count % self.settings.max_consecutive_retries == 0:
            alert = f"{unit}: {count} consecutive retries without success"
            report.alerts.append(alert)
            self._alerts += 1
            logger.error("ALERT %s", alert)

    # ── Pools ──────────────────────────────────────────────────────────────────

    def remove_pool(self, name: str) -> None:
        """
        Remove a pool between cycles.

        Raises:
            PoolInUseError: live nodes or pending launches still reference it.
            UnknownPoolError: no such pool.
        """
        with self._cycle_lock:
            with self._launch_lock:
                launches = [
                    launch.launch_id for launch in self._pending_launches.values()
                    if launch.plan.pool == name
                ]
            if launches:
                raise PoolInUseError(name, launches, what="pending launch")
            self.registry.remove(name)

    # ── Reporting ─────────────────────────────────────────────────────────────

    def _pool_utilization(self) -> List[PoolUtilization]:
        rows: List[PoolUtilization] = []
        for pool in self.registry.pools:
            nodes = [n for n in self.registry.nodes_in(pool.name) if n.is_live]
            cpu, memory = self.registry.committed(pool.name)
            if nodes:
                mean_cpu = float(np.mean([n.last_utilization.cpu_fraction for n in nodes]))
                mean_mem = float(np.mean([n.last_utilization.mem_fraction for n in nodes]))
            else:
                mean_cpu = mean_mem = 0.0
            costs = self._cost.pool_breakdown(nodes)
            rows.append(PoolUtilization(
                pool=pool.name,
                node_count=len(nodes),
                committed_cpu=cpu,
                committed_memory_gib=memory,
                cpu_limit_fraction=round(cpu / pool.limits.cpu, 4),
                memory_limit_fraction=round(memory / pool.limits.memory_gib, 4),
                mean_cpu_utilization=round(mean_cpu, 4),
                mean_memory_utilization=round(mean_mem, 4),
                hourly_cost_usd=costs["hourly"],
            ))
        return rows

    @property
    def pending_launches(self) -> List[PendingLaunch]:
        with self._launch_lock:
            return sorted(self._pending_launches.values(), key=lambda launch: launch.requested_at)

    @property
    def pending_demands(self) -> List[WorkloadDemand]:
        """Demands queued for the next cycle (Deferred or timed out)."""
        return list(self._pending_demands.values())

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self.history[-1] if self.history else None

    def get_metrics(self) -> Dict:
        """Cumulative counters since start, plus the latest cycle summary."""
        last = self.last_report
        return {
            "cycles": self._cycle,
            "pools": len(self.registry.pools),
            "live_nodes": sum(1 for n in self.registry.nodes if n.is_live),
            "pending_launches": len(self._pending_launches),
            "pending_demands": len(self._pending_demands),
            "launched_nodes": self._launched_nodes,
            "terminated_nodes": self._terminated_nodes,
            "launch_timeouts": self._launch_timeouts,
            "drain_timeouts": self._drain_timeouts,
            "alerts": self._alerts,
            "last_cycle": {
                "matched": last.matched,
                "unplaceable": last.unplaceable,
                "deferred": last.deferred,
            } if last else None,
            "hourly_cost_usd": round(
                sum(row.hourly_cost_usd for row in last.pools), 4
            ) if last else 0.0,
        }

    def __repr__(self) -> str:
        return (
            f"ProvisioningService(cycle={self._cycle}, pools={len(self.registry.pools)}, "
            f"pending_launches={len(self._pending_launches)})"
        )


def build_service(
    config: ProvisionerConfig,
    launcher: Optional[Launcher] = None,
    evictor: Optional[Evictor] = None,
    terminator: Optional[Terminator] = None,
    collector: Optional[EventCollector] = None,
) -> ProvisioningService:
    """
    Startup: build the catalog and registry from a validated policy set.

    Every pool is admitted before any is registered, so an invalid policy
    set registers nothing.

    Raises:
        PolicyRejectedError / UnknownArchitectureError: a pool is invalid.
        DuplicateNameError: two pools share a name.
        DuplicateShapeError: two catalog rows share a name.
    """
    catalog = InstanceCatalog(config.catalog if config.catalog is not None else DEFAULT_SHAPES)
    admit_pools(config.pools, catalog)

    registry = NodePoolRegistry()
    for pool in config.pools:
        registry.register(pool)

    return ProvisioningService(
        catalog,
        registry,
        settings=config.engine,
        launcher=launcher,
        evictor=evictor,
        terminator=terminator,
        collector=collector,
    )
