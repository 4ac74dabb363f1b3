"""
provisioner/control_plane/catalog.py
─────────────────────────────────────
InstanceCatalog: the read-only table of instance shapes the planner may request.

What this is
─────────────
A static lookup loaded once at startup. It answers one question for the
PlacementPlanner:

    "Which shapes of architecture A have at least C vCPU and M GiB,
     cheapest first?"

Ordering (the cost proxy)
──────────────────────────
  1. vCPU ascending         — fewer vCPU ≈ cheaper instance
  2. generation descending  — m7g before m6g at equal size (newer = better
                              price/performance)
  3. memory ascending       — c6i.large (4 GiB) before m6i.large (8 GiB)
  4. name ascending         — total order, so results never depend on
                              insertion order

The ordering is computed once per architecture in __init__; shapes_for()
is a filter over a pre-sorted list.

Error handling contract
────────────────────────
  UnknownArchitectureError: the requested architecture has no row in the
                            table. Raised by shapes_for(). At startup this is
                            a fatal configuration error (a pool pinned to an
                            architecture nobody can serve).
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from provisioner.shared.models import Architecture, InstanceShape


class UnknownArchitectureError(Exception):
    """
    Raised when a lookup names an architecture absent from the catalog.

    Attributes:
        architecture: The architecture that was requested.
    """

    def __init__(self, architecture: object) -> None:
        self.architecture = architecture
        super().__init__(f"No instance shapes registered for architecture {architecture!r}")


class DuplicateShapeError(Exception):
    """Raised when two catalog rows share an instance type name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Instance shape {name!r} listed more than once")


def cost_key(shape: InstanceShape) -> tuple:
    """Sort key of the cost proxy: vCPU, newest generation, memory, name."""
    return (shape.vcpu, -shape.generation, shape.memory_gib, shape.name)


class InstanceCatalog:
    """
    Immutable, ordered table of InstanceShape rows.

    Usage:
        catalog = InstanceCatalog(DEFAULT_SHAPES)
        catalog.shapes_for(Architecture.ARM64, min_cpu=4, min_memory=8)
        # → [c7g.xlarge, m7g.xlarge, m7g.2xlarge]
    """

    def __init__(self, shapes: Iterable[InstanceShape]) -> None:
        self._by_name: Dict[str, InstanceShape] = {}
        by_arch: Dict[Architecture, List[InstanceShape]] = {}

        for shape in shapes:
            if shape.name in self._by_name:
                raise DuplicateShapeError(shape.name)
            self._by_name[shape.name] = shape
            by_arch.setdefault(shape.architecture, []).append(shape)

        self._by_arch: Dict[Architecture, List[InstanceShape]] = {
            arch: sorted(rows, key=cost_key) for arch, rows in by_arch.items()
        }

    # ── Lookups ────────────────────────────────────────────────────────────────

    def shapes_for(
        self,
        architecture: Architecture,
        min_cpu: float = 0.0,
        min_memory: float = 0.0,
    ) -> List[InstanceShape]:
        """
        Return every shape of `architecture` with vcpu ≥ min_cpu and
        memory_gib ≥ min_memory, in ascending cost-proxy order.

        No side effects. An empty list is a valid answer (nothing big enough);
        an architecture with no rows at all is an error.

        Raises:
            UnknownArchitectureError: architecture not in the table.
        """
        try:
            arch = Architecture(architecture)
        except ValueError:
            raise UnknownArchitectureError(architecture) from None

        rows = self._by_arch.get(arch)
        if rows is None:
            raise UnknownArchitectureError(architecture)

        return [
            shape for shape in rows
            if shape.vcpu >= min_cpu and shape.memory_gib >= min_memory
        ]

    def get(self, name: str) -> InstanceShape:
        """Shape by instance type name. KeyError if unknown."""
        return self._by_name[name]

    @property
    def architectures(self) -> List[Architecture]:
        """Architectures with at least one shape, in enum declaration order."""
        return [arch for arch in Architecture if arch in self._by_arch]

    @property
    def families(self) -> frozenset:
        return frozenset(shape.family for shape in self._by_name.values())

    def __iter__(self) -> Iterator[InstanceShape]:
        for arch in self.architectures:
            yield from self._by_arch[arch]

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return (
            f"InstanceCatalog(shapes={len(self)}, "
            f"architectures={[a.value for a in self.architectures]})"
        )


# ── Default catalog ───────────────────────────────────────────────────────────
# The families the EKS/Karpenter deployment allows, with the reference
# hourly prices used by its cost report (us-west-2, USD).

def _shape(
    name: str,
    arch: Architecture,
    vcpu: int,
    memory_gib: float,
    on_demand: float,
    spot: float,
) -> InstanceShape:
    return InstanceShape(
        name=name,
        family=name.split(".", 1)[0],
        architecture=arch,
        vcpu=vcpu,
        memory_gib=memory_gib,
        supports_spot=True,
        on_demand_price=on_demand,
        spot_price=spot,
    )


DEFAULT_SHAPES: List[InstanceShape] = [
    _shape("t3.medium", Architecture.AMD64, 2, 4.0, 0.0416, 0.0125),
    _shape("m6i.large", Architecture.AMD64, 2, 8.0, 0.096, 0.029),
    _shape("m6i.xlarge", Architecture.AMD64, 4, 16.0, 0.192, 0.058),
    _shape("m6i.2xlarge", Architecture.AMD64, 8, 32.0, 0.384, 0.115),
    _shape("c6i.large", Architecture.AMD64, 2, 4.0, 0.085, 0.026),
    _shape("c6i.xlarge", Architecture.AMD64, 4, 8.0, 0.17, 0.051),
    _shape("m7g.large", Architecture.ARM64, 2, 8.0, 0.0816, 0.025),
    _shape("m7g.xlarge", Architecture.ARM64, 4, 16.0, 0.1632, 0.049),
    _shape("m7g.2xlarge", Architecture.ARM64, 8, 32.0, 0.3264, 0.098),
    _shape("c7g.large", Architecture.ARM64, 2, 4.0, 0.0725, 0.022),
    _shape("c7g.xlarge", Architecture.ARM64, 4, 8.0, 0.145, 0.044),
]


def default_catalog() -> InstanceCatalog:
    return InstanceCatalog(DEFAULT_SHAPES)
