"""
provisioner/control_plane/registry.py
──────────────────────────────────────
NodePoolRegistry: the one owner of pools and live nodes.

Arena layout
─────────────
Pools and nodes are stored in two flat dicts keyed by stable string ids:

  _pools : Dict[str, NodePool]  — insertion-ordered = registration order
  _nodes : Dict[str, Node]      — every live node, any pool

A Node refers to its pool by name only. Nothing here holds object references
in both directions, so removing a pool or a node is a single dict delete
guarded by the invariants below.

Invariants
───────────
  • Every node's pool is registered. add_node() rejects unknown pools and
    remove() refuses to drop a pool that still owns nodes (PoolInUseError).
  • Pool names are unique (DuplicateNameError).
  • Pools are immutable models. replace() swaps the whole object and keeps
    the pool's position in registration order.

Accounting lock
────────────────
Each pool has its own RLock. add_node(), remove_node() and committed() take
it, and the planner holds it across its "read committed usage → commit a
plan" step via accounting(pool). Launch confirmations and disruption
removals therefore serialize per pool, and independent pools never contend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple

from provisioner.shared.models import CapacityType, Node, NodePool, WorkloadDemand

logger = logging.getLogger(__name__)


class DuplicateNameError(Exception):
    """Raised by register() when a pool with the same name already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Node pool {name!r} is already registered")


class PoolInUseError(Exception):
    """
    Raised by remove() while live nodes still reference the pool.

    Attributes:
        name:   The pool that could not be removed.
        owners: Ids of the nodes (or pending launches) that still belong to it.
    """

    def __init__(self, name: str, owners: List[str], what: str = "node") -> None:
        self.name = name
        self.owners = owners
        super().__init__(
            f"Node pool {name!r} still owns {len(owners)} {what}(s): "
            f"{', '.join(sorted(owners)[:5])}"
        )


class UnknownPoolError(KeyError):
    """Raised when an operation names a pool that is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(name)


class NodePoolRegistry:
    """
    Holds pool definitions and the live Node set.

    Public API:
        register(pool)              → None     (DuplicateNameError)
        replace(pool)               → NodePool (the previous definition)
        remove(name)                → None     (PoolInUseError)
        get(name) / pools           → lookups
        pools_matching(demand)      → List[NodePool], most specific first

        add_node(node) / remove_node(node_id) / get_node(node_id)
        nodes_in(pool) / nodes      → live node views
        committed(pool)             → (cpu, memory_gib) of the pool's nodes
        on_demand_cpu(pool)         → vCPU of the pool's on-demand nodes
        accounting(pool)            → context manager holding the pool lock
    """

    def __init__(self) -> None:
        self._pools: Dict[str, NodePool] = {}
        self._order: Dict[str, int] = {}
        self._next_index: int = 0
        self._nodes: Dict[str, Node] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ── Pools ──────────────────────────────────────────────────────────────────

    def register(self, pool: NodePool) -> None:
        with self._registry_lock:
            if pool.name in self._pools:
                raise DuplicateNameError(pool.name)
            self._pools[pool.name] = pool
            self._order[pool.name] = self._next_index
            self._next_index += 1
            self._locks[pool.name] = threading.RLock()
        logger.info(
            "Registered pool %s (arch=%s capacity=%s limits=%s cpu / %s GiB)",
            pool.name,
            pool.architecture.value if pool.architecture else "any",
            pool.capacity_type.value,
            pool.limits.cpu,
            pool.limits.memory_gib,
        )

    def replace(self, pool: NodePool) -> NodePool:
        """
        Explicit reconfiguration: swap in a new definition for an existing pool.

        Registration order (the tie-break of pools_matching) is preserved.
        Live nodes keep running; the new limits and disruption policy apply
        from the next evaluation on.
        """
        with self.accounting(pool.name):
            previous = self._pools[pool.name]
            self._pools[pool.name] = pool
        logger.info("Reconfigured pool %s", pool.name)
        return previous

    def remove(self, name: str) -> None:
        with self.accounting(name):
            owned = [n.id for n in self._nodes.values() if n.pool == name]
            if owned:
                raise PoolInUseError(name, owned)
            with self._registry_lock:
                del self._pools[name]
                del self._order[name]
        with self._registry_lock:
            self._locks.pop(name, None)
        logger.info("Removed pool %s", name)

    def get(self, name: str) -> NodePool:
        try:
            return self._pools[name]
        except KeyError:
            raise UnknownPoolError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._pools

    @property
    def pools(self) -> List[NodePool]:
        """All pools in registration order."""
        return list(self._pools.values())

    def pools_matching(self, demand: WorkloadDemand) -> List[NodePool]:
        """
        Every pool that can host `demand`, most specific first.

        A pool matches when:
          1. its architecture is unset, or the demand's architecture is unset,
             or the two are equal; and
          2. it carries no taint, or the demand tolerates that taint.

        Ordering: architecture-specific pools before mixed-architecture pools,
        then more other constraints first (NodePool.specificity), ties broken
        by registration order.
        """
        matching = [pool for pool in self._pools.values() if _compatible(pool, demand)]
        matching.sort(key=lambda p: (
            -p.specificity[0], -p.specificity[1], self._order[p.name],
        ))
        return matching

    # ── Nodes ──────────────────────────────────────────────────────────────────

    def add_node(self, node: Node) -> None:
        if node.pool not in self._pools:
            raise UnknownPoolError(node.pool)
        with self.accounting(node.pool):
            self._nodes[node.id] = node
        logger.debug(
            "Node %s added to pool %s (%s, %s)",
            node.id, node.pool, node.shape.name, node.capacity_type.value,
        )

    def remove_node(self, node_id: str) -> Node:
        node = self._nodes[node_id]
        with self.accounting(node.pool):
            del self._nodes[node_id]
        logger.debug("Node %s removed from pool %s", node_id, node.pool)
        return node

    def get_node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def nodes_in(self, pool: str) -> List[Node]:
        """Live nodes of one pool, ordered by node id."""
        return sorted(
            (n for n in self._nodes.values() if n.pool == pool),
            key=lambda n: n.id,
        )

    # ── Accounting ─────────────────────────────────────────────────────────────

    @contextmanager
    def accounting(self, pool: str) -> Iterator[None]:
        """Hold the pool's accounting lock for the duration of the block."""
        try:
            lock = self._locks[pool]
        except KeyError:
            raise UnknownPoolError(pool) from None
        with lock:
            yield

    def committed(self, pool: str) -> Tuple[float, float]:
        """Total (vCPU, GiB) of every live node in `pool`."""
        with self.accounting(pool):
            cpu = 0.0
            memory = 0.0
            for node in self._nodes.values():
                if node.pool == pool and node.is_live:
                    cpu += node.shape.vcpu
                    memory += node.shape.memory_gib
            return cpu, memory

    def on_demand_cpu(self, pool: str) -> float:
        with self.accounting(pool):
            return float(sum(
                n.shape.vcpu for n in self._nodes.values()
                if n.pool == pool and n.is_live and n.capacity_type == CapacityType.ON_DEMAND
            ))

    def __repr__(self) -> str:
        return f"NodePoolRegistry(pools={len(self._pools)}, nodes={len(self._nodes)})"


def _compatible(pool: NodePool, demand: WorkloadDemand) -> bool:
    if (
        pool.architecture is not None
        and demand.architecture is not None
        and pool.architecture != demand.architecture
    ):
        return False
    if pool.taint is not None and pool.taint not in demand.tolerations:
        return False
    return True
