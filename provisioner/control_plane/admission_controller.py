"""
provisioner/control_plane/admission_controller.py
────────────────────────────────────────────────────
Policy admission: semantic validation of NodePool definitions at startup.

The admission controller is the gate between configuration and the
registry. It runs AFTER Pydantic validation (which handles schema
correctness: positive limits, budget in 0-100) and BEFORE register().

What it checks
───────────────
  1. Family allow-list: every allowed family must exist in the catalog.
     A typo ("m6l") would otherwise make the pool silently unplaceable.

  2. Architecture coverage: a pool pinned to an architecture must have at
     least one shape of that architecture (UnknownArchitectureError from the
     catalog is re-raised as-is, it is already a configuration error).

  3. Reachable shapes: after the family filter at least one shape remains
     for the pool's architecture(s).

  4. Spot coherence: a spot-only pool needs a spot-capable shape, and an
     on-demand floor on a spot-only pool can never be honoured.

What it does NOT check
───────────────────────
  • Whether limits are large enough for real demand — that's the planner's
    Deferred path.
  • Cross-pool overlap — overlapping pools are legal; pools_matching()
    ranks them.
"""

from __future__ import annotations

from typing import Iterable, List

from provisioner.control_plane.catalog import InstanceCatalog
from provisioner.shared.models import CapacityTypeConstraint, InstanceShape, NodePool


class PolicyRejectedError(Exception):
    """
    Raised when a pool definition fails admission.

    Attributes:
        pool:   Name of the rejected pool.
        reason: Human-readable explanation.
    """

    def __init__(self, pool: str, reason: str) -> None:
        self.pool = pool
        self.reason = reason
        super().__init__(f"Node pool {pool!r} rejected: {reason}")


def admit_pool(pool: NodePool, catalog: InstanceCatalog) -> None:
    """
    Run all admission checks on one NodePool.

    Raises:
        PolicyRejectedError: with a descriptive reason.
        UnknownArchitectureError: the pool's architecture has no shapes.
    """
    _check_families(pool, catalog)
    shapes = _reachable_shapes(pool, catalog)
    if not shapes:
        raise PolicyRejectedError(
            pool.name,
            "no instance shape satisfies both the architecture constraint "
            "and the family allow-list",
        )
    _check_spot(pool, shapes)


def admit_pools(pools: Iterable[NodePool], catalog: InstanceCatalog) -> None:
    """Admit every pool; the first failure aborts startup."""
    for pool in pools:
        admit_pool(pool, catalog)


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_families(pool: NodePool, catalog: InstanceCatalog) -> None:
    unknown = sorted(pool.allowed_families - catalog.families)
    if unknown:
        raise PolicyRejectedError(
            pool.name,
            f"allowed families not in the instance catalog: {', '.join(unknown)}",
        )


def _reachable_shapes(pool: NodePool, catalog: InstanceCatalog) -> List[InstanceShape]:
    architectures = (
        [pool.architecture] if pool.architecture is not None else catalog.architectures
    )
    shapes: List[InstanceShape] = []
    for arch in architectures:
        shapes.extend(
            s for s in catalog.shapes_for(arch) if pool.allows_family(s.family)
        )
    return shapes


def _check_spot(pool: NodePool, shapes: List[InstanceShape]) -> None:
    if pool.capacity_type != CapacityTypeConstraint.SPOT:
        return
    if pool.min_on_demand_fraction > 0.0:
        raise PolicyRejectedError(
            pool.name,
            f"min_on_demand_fraction={pool.min_on_demand_fraction} on a spot-only pool",
        )
    if not any(s.supports_spot for s in shapes):
        raise PolicyRejectedError(pool.name, "spot-only pool has no spot-capable shape")
