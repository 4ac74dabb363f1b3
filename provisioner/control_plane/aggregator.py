"""
provisioner/control_plane/aggregator.py
────────────────────────────────────────
DemandAggregator: reduce individual unschedulable demands to per-group totals.

Why group at all?
──────────────────
Ten pending pods of 4 vCPU each are one 40-vCPU provisioning question, not
ten 4-vCPU questions. Summing first lets the planner pick one shape and one
count for the lot, and stops it from counting the same need twice against
two overlapping pools.

Group key
──────────
  (candidate pools, architecture requirement)

  candidate pools — the names from NodePoolRegistry.pools_matching(demand),
                    already in rank order. Two demands with the same set of
                    matching pools always get the same tuple.
  architecture    — the demand's own requirement (None = agnostic). Keeping
                    it in the key makes every group architecture-homogeneous,
                    so a mixed-architecture pool can serve the group with one
                    shape.

Ordering
─────────
Groups are returned by aggregate cpu descending, so the largest unmet need
is serviced first while pool limits still have room. Ties: earliest
created_at first, then the group key (total order → deterministic plans).

Unplaceable
────────────
A demand that matches no pool at all is listed in
AggregationResult.unplaceable and never enters a group.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from provisioner.control_plane.registry import NodePoolRegistry
from provisioner.shared.models import AggregatedDemand, Architecture, WorkloadDemand

logger = logging.getLogger(__name__)

GroupKey = Tuple[Tuple[str, ...], Optional[Architecture]]


@dataclass
class AggregationResult:
    """Output of one aggregate() call."""
    groups: List[AggregatedDemand] = field(default_factory=list)
    unplaceable: List[str] = field(default_factory=list)

    @property
    def demand_count(self) -> int:
        return sum(g.demand_count for g in self.groups) + len(self.unplaceable)


class DemandAggregator:
    """
    Stateless. One instance can be shared across cycles.

    Usage:
        result = DemandAggregator().aggregate(pending, registry)
        for group in result.groups: ...
    """

    def aggregate(
        self,
        demands: Iterable[WorkloadDemand],
        registry: NodePoolRegistry,
    ) -> AggregationResult:
        """
        Consume `demands` once and group them.

        `demands` may be a generator; it is iterated exactly once. The caller
        builds a fresh iterable each cycle.
        """
        groups: Dict[GroupKey, AggregatedDemand] = {}
        first_seen: Dict[GroupKey, datetime] = {}
        unplaceable: List[str] = []

        for demand in demands:
            pools = registry.pools_matching(demand)
            if not pools:
                logger.warning(
                    "Demand %s is unplaceable: no pool matches arch=%s tolerations=%s",
                    demand.id,
                    demand.architecture.value if demand.architecture else "any",
                    sorted(demand.tolerations),
                )
                unplaceable.append(demand.id)
                continue

            key: GroupKey = (tuple(p.name for p in pools), demand.architecture)
            group = groups.get(key)
            if group is None:
                group = AggregatedDemand(candidate_pools=key[0], architecture=key[1])
                groups[key] = group
                first_seen[key] = demand.created_at

            group.cpu += demand.cpu
            group.memory_gib += demand.memory_gib
            group.demand_ids.append(demand.id)
            group.largest_cpu = max(group.largest_cpu, demand.cpu)
            group.largest_memory_gib = max(group.largest_memory_gib, demand.memory_gib)
            first_seen[key] = min(first_seen[key], demand.created_at)

        ordered = sorted(
            groups.items(),
            key=lambda item: (
                -item[1].cpu,
                first_seen[item[0]],
                item[0][0],
                item[0][1].value if item[0][1] else "",
            ),
        )

        result = AggregationResult(
            groups=[group for _, group in ordered],
            unplaceable=unplaceable,
        )
        logger.debug(
            "Aggregated %d demand(s) into %d group(s), %d unplaceable",
            result.demand_count, len(result.groups), len(unplaceable),
        )
        return result
