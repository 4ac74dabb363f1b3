"""
provisioner/shared/models.py
────────────────────────────
The single source of truth for every data structure in the provisioner.

Design philosophy
-----------------
Every model answers one question: "What does the engine *need to know*
about this thing in order to decide which machines to launch, and which
machines to take away?"

Static policy (InstanceShape, NodePool) is frozen once loaded. Live state
(Node) is mutable, but only the ProvisioningService mutates it, and only at
the start of a cycle or through the Disruption Controller.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    """Timezone-aware UTC now. Every timestamp in the engine uses this."""
    return datetime.now(timezone.utc)


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: object) -> object:
    """
    Accept Karpenter-style duration strings ("30s", "1m", "2h") and bare
    numbers (seconds). Anything else is handed back to pydantic unchanged.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2) or "s"]
            return timedelta(seconds=seconds)
    return value


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class Architecture(str, Enum):
    """
    CPU architecture of an instance shape (kubernetes.io/arch values).

    AMD64 → Intel / AMD x86 families (m6i, c6i, t3).
    ARM64 → AWS Graviton families (m7g, c7g). Cheaper per core, but only
            usable by workloads that ship arm64 images.
    """
    AMD64 = "amd64"
    ARM64 = "arm64"


class CapacityType(str, Enum):
    """
    Billing model of a launched node (karpenter.sh/capacity-type values).

    ON_DEMAND → Guaranteed capacity.
    SPOT      → Spare capacity, 60-90% cheaper, reclaimable with a short notice.
    """
    ON_DEMAND = "on-demand"
    SPOT = "spot"


class CapacityTypeConstraint(str, Enum):
    """What a NodePool allows. ANY lets the planner pick per plan."""
    ON_DEMAND = "on-demand"
    SPOT = "spot"
    ANY = "any"


class ConsolidationPolicy(str, Enum):
    """
    When a pool's nodes may be voluntarily removed.

    WHEN_EMPTY                   → only nodes with zero bound workloads.
    WHEN_EMPTY_OR_UNDERUTILIZED  → also nodes whose cpu AND memory utilisation
                                   sit below the configured threshold.
    """
    WHEN_EMPTY = "WhenEmpty"
    WHEN_EMPTY_OR_UNDERUTILIZED = "WhenEmptyOrUnderutilized"


class NodeLifecycle(str, Enum):
    """
    Disruption state machine of a live node.

        ACTIVE → CANDIDATE_FOR_REMOVAL → DRAINING → TERMINATED

    Any state before DRAINING falls back to ACTIVE when utilisation recovers.
    A spot interruption jumps straight to DRAINING from any state.
    """
    ACTIVE = "Active"
    CANDIDATE_FOR_REMOVAL = "CandidateForRemoval"
    DRAINING = "Draining"
    TERMINATED = "Terminated"


class DemandOutcome(str, Enum):
    """Exactly one of these is recorded per demand per cycle."""
    MATCHED = "Matched"
    UNPLACEABLE = "Unplaceable"
    DEFERRED = "Deferred"


class ReportKind(str, Enum):
    """Error / event categories surfaced in a CycleReport."""
    UNPLACEABLE = "Unplaceable"
    NO_ELIGIBLE_SHAPE = "NoEligibleShape"
    DEFERRED = "Deferred"
    LAUNCH_TIMEOUT = "LaunchTimeout"
    DRAIN_TIMEOUT = "DrainTimeout"
    UNKNOWN_NODE = "UnknownNode"
    UNKNOWN_LAUNCH = "UnknownLaunch"
    INVALID_CONFIRMATION = "InvalidConfirmation"
    RECONFIGURATION_REJECTED = "ReconfigurationRejected"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: INSTANCE CATALOG
# ─────────────────────────────────────────────────────────────────────────────

_GENERATION_RE = re.compile(r"^[a-z]+(\d+)")


class InstanceShape(BaseModel):
    """
    One instance hardware profile, e.g. m6i.large.

    Fields:
        name            → EC2 instance type, "m6i.large".
        family          → Instance family, "m6i". Pools filter on this.
        architecture    → amd64 or arm64.
        vcpu            → vCPU count. The planner's cost proxy.
        memory_gib      → Memory in GiB.
        supports_spot   → Whether the shape may be requested as spot.
        on_demand_price → Reference USD/hour, on-demand. Cost reporting only.
        spot_price      → Reference USD/hour, spot. Cost reporting only.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    family: str = Field(..., min_length=1)
    architecture: Architecture
    vcpu: int = Field(..., gt=0)
    memory_gib: float = Field(..., gt=0)
    supports_spot: bool = True
    on_demand_price: Optional[float] = Field(None, ge=0)
    spot_price: Optional[float] = Field(None, ge=0)

    @property
    def generation(self) -> int:
        """
        Family generation parsed from the family name: m6i → 6, m7g → 7.
        Families without a digit sort as generation 0 (oldest).
        """
        match = _GENERATION_RE.match(self.family)
        return int(match.group(1)) if match else 0

    def price_for(self, capacity_type: CapacityType) -> Optional[float]:
        if capacity_type == CapacityType.SPOT:
            return self.spot_price
        return self.on_demand_price


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: NODE POOL POLICY
# ─────────────────────────────────────────────────────────────────────────────

class ResourceLimits(BaseModel):
    """Aggregate cap on the capacity of all nodes owned by one pool."""
    model_config = ConfigDict(frozen=True)

    cpu: float = Field(..., gt=0, description="Total vCPU across the pool's nodes")
    memory_gib: float = Field(..., gt=0, description="Total GiB across the pool's nodes")


class DisruptionSpec(BaseModel):
    """
    Voluntary-disruption policy of a pool.

    Fields:
        policy            → WhenEmpty / WhenEmptyOrUnderutilized.
        consolidate_after → How long a node must stay underutilised (or empty)
                            before it becomes a removal candidate.
        budget_percent    → Max share of the pool's nodes that may be draining
                            voluntarily at the same time (0-100).
    """
    model_config = ConfigDict(frozen=True)

    policy: ConsolidationPolicy = ConsolidationPolicy.WHEN_EMPTY_OR_UNDERUTILIZED
    consolidate_after: timedelta = Field(default=timedelta(minutes=1))
    budget_percent: float = Field(10.0, ge=0.0, le=100.0)

    @field_validator("consolidate_after", mode="before")
    @classmethod
    def parse_consolidate_after(cls, value: object) -> object:
        return parse_duration(value)

    @field_validator("budget_percent", mode="before")
    @classmethod
    def parse_budget(cls, value: object) -> object:
        # Karpenter writes budgets as "10%"
        if isinstance(value, str) and value.strip().endswith("%"):
            return value.strip()[:-1]
        return value


class NodePool(BaseModel):
    """
    A named category of nodes sharing placement and disruption policy.

    Why architecture is Optional:
        A mixed-architecture pool (None) accepts amd64 and arm64 demand.
        Narrower pools (an explicit architecture) rank before it in
        NodePoolRegistry.pools_matching().

    Why min_on_demand_fraction:
        A pool with capacity_type=ANY prefers spot. The floor keeps a
        guaranteed share of the pool's vCPU on on-demand capacity.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    architecture: Optional[Architecture] = None
    capacity_type: CapacityTypeConstraint = CapacityTypeConstraint.ANY
    allowed_families: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Instance families this pool may launch. Empty = every family.",
    )
    taint: Optional[str] = Field(
        None,
        description="Taint carried by the pool's nodes, e.g. 'spot=true:NoSchedule'.",
    )
    limits: ResourceLimits
    disruption: DisruptionSpec = Field(default_factory=DisruptionSpec)
    min_on_demand_fraction: float = Field(0.0, ge=0.0, le=1.0)

    @property
    def specificity(self) -> Tuple[int, int]:
        """
        How narrowly this pool is constrained, compared as a tuple. Higher ranks first.

        (fixed architecture, count of other constraints): any
        architecture-specific pool outranks every mixed-architecture pool; a
        fixed capacity type and a family allow-list only break ties within
        those two tiers.
        """
        others = 0
        if self.capacity_type != CapacityTypeConstraint.ANY:
            others += 1
        if self.allowed_families:
            others += 1
        return (1 if self.architecture is not None else 0, others)

    def allows_family(self, family: str) -> bool:
        return not self.allowed_families or family in self.allowed_families


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: WORKLOAD DEMAND
# ─────────────────────────────────────────────────────────────────────────────

class WorkloadDemand(BaseModel):
    """
    One unschedulable unit of work (a pending pod's resource request).

    Ephemeral: lives for one cycle. If it is deferred it is re-queued by the
    ProvisioningService with the same id and created_at.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    cpu: float = Field(..., gt=0, description="Requested vCPU")
    memory_gib: float = Field(..., ge=0, description="Requested GiB")
    architecture: Optional[Architecture] = Field(
        None, description="Required architecture. None = architecture-agnostic."
    )
    tolerations: FrozenSet[str] = Field(default_factory=frozenset)
    created_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: LIVE NODES
# ─────────────────────────────────────────────────────────────────────────────

class Utilization(BaseModel):
    """Observed utilisation of a node, as fractions in [0, 1]."""
    cpu_fraction: float = Field(0.0, ge=0.0, le=1.0)
    mem_fraction: float = Field(0.0, ge=0.0, le=1.0)

    @property
    def mean(self) -> float:
        return (self.cpu_fraction + self.mem_fraction) / 2.0


class Node(BaseModel):
    """
    A launched machine owned by a pool.

    `pool` is a lookup-only name. The NodePoolRegistry owns both pools and
    nodes; a node never holds a reference to the NodePool object itself.

    Controller bookkeeping (not part of the observed state):
        lifecycle           → disruption state machine position.
        underutilized_since → first time the node was seen below threshold
                              (or empty); None while it is busy.
        drain_started_at    → when DRAINING began.
        drain_deadline      → grace-period end for the current drain.
        forced_drain        → True for spot-interruption drains.
    """
    id: str = Field(..., min_length=1)
    pool: str
    shape: InstanceShape
    capacity_type: CapacityType
    launched_at: datetime = Field(default_factory=utcnow)
    bound_workloads: Set[str] = Field(default_factory=set)
    last_utilization: Utilization = Field(default_factory=Utilization)

    lifecycle: NodeLifecycle = NodeLifecycle.ACTIVE
    underutilized_since: Optional[datetime] = None
    drain_started_at: Optional[datetime] = None
    drain_deadline: Optional[datetime] = None
    forced_drain: bool = False

    @property
    def is_live(self) -> bool:
        return self.lifecycle != NodeLifecycle.TERMINATED

    @property
    def is_empty(self) -> bool:
        return not self.bound_workloads


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: PLANNER OUTPUT
# ─────────────────────────────────────────────────────────────────────────────

class AggregatedDemand(BaseModel):
    """
    Demands that share the same candidate pools and architecture requirement,
    summed. Produced by the DemandAggregator, consumed by the PlacementPlanner.
    """
    candidate_pools: Tuple[str, ...]
    architecture: Optional[Architecture] = None
    cpu: float = 0.0
    memory_gib: float = 0.0
    demand_ids: List[str] = Field(default_factory=list)
    largest_cpu: float = 0.0
    largest_memory_gib: float = 0.0

    @computed_field  # type: ignore[misc]
    @property
    def demand_count(self) -> int:
        return len(self.demand_ids)


class ProvisioningPlan(BaseModel):
    """
    "Launch `count` × `shape` as `capacity_type` in `pool`."

    Transient: handed to the launcher, tracked as a PendingLaunch until it is
    confirmed, cancelled, or times out.
    """
    model_config = ConfigDict(frozen=True)

    pool: str
    shape: InstanceShape
    capacity_type: CapacityType
    count: int = Field(..., gt=0)
    demand_ids: Tuple[str, ...] = ()

    @property
    def cpu(self) -> float:
        return float(self.shape.vcpu * self.count)

    @property
    def memory_gib(self) -> float:
        return self.shape.memory_gib * self.count


class PendingLaunch(BaseModel):
    """A plan handed to the launcher that has not been confirmed yet."""
    launch_id: str
    plan: ProvisioningPlan
    requested_at: datetime
    deadline: datetime


class DrainCommand(BaseModel):
    """Instruction for the external evictor."""
    node_id: str
    pool: str
    deadline: datetime
    forced: bool = False


class TerminateCommand(BaseModel):
    """Instruction for the external launcher to release a drained node."""
    node_id: str
    pool: str


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 7: EXTERNAL EVENTS
# ─────────────────────────────────────────────────────────────────────────────

class UtilizationSample(BaseModel):
    """A utilisation reading for one node from the metrics source."""
    node_id: str
    cpu_fraction: float = Field(..., ge=0.0, le=1.0)
    mem_fraction: float = Field(..., ge=0.0, le=1.0)
    observed_at: datetime = Field(default_factory=utcnow)


class InterruptionNotice(BaseModel):
    """A spot reclaim warning: the node goes away at `deadline`."""
    node_id: str
    deadline: datetime


class WorkloadBinding(BaseModel):
    """The scheduler bound (bound=True) or released a workload on a node."""
    node_id: str
    workload_id: str
    bound: bool = True


class LaunchConfirmation(BaseModel):
    """The launcher's report that a pending launch produced these nodes."""
    launch_id: str
    node_ids: List[str]
    confirmed_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 8: CYCLE REPORT
# ─────────────────────────────────────────────────────────────────────────────

class ReportEntry(BaseModel):
    """One failure or notable event. Nothing fails without producing one."""
    kind: ReportKind
    subject: str
    message: str


class PoolUtilization(BaseModel):
    """Per-pool accounting snapshot taken at the end of a cycle."""
    pool: str
    node_count: int
    committed_cpu: float
    committed_memory_gib: float
    cpu_limit_fraction: float
    memory_limit_fraction: float
    mean_cpu_utilization: float
    mean_memory_utilization: float
    hourly_cost_usd: float


class CycleReport(BaseModel):
    """
    Observability output of one ProvisioningService.run_cycle() call.

    matched / unplaceable / deferred always add up to the number of demands
    that entered the cycle.
    """
    cycle: int
    started_at: datetime
    outcomes: Dict[str, DemandOutcome] = Field(default_factory=dict)
    plans: List[ProvisioningPlan] = Field(default_factory=list)
    drains: List[DrainCommand] = Field(default_factory=list)
    terminations: List[TerminateCommand] = Field(default_factory=list)
    entries: List[ReportEntry] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)
    pools: List[PoolUtilization] = Field(default_factory=list)

    def _count(self, outcome: DemandOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @computed_field  # type: ignore[misc]
    @property
    def matched(self) -> int:
        return self._count(DemandOutcome.MATCHED)

    @computed_field  # type: ignore[misc]
    @property
    def unplaceable(self) -> int:
        return self._count(DemandOutcome.UNPLACEABLE)

    @computed_field  # type: ignore[misc]
    @property
    def deferred(self) -> int:
        return self._count(DemandOutcome.DEFERRED)
