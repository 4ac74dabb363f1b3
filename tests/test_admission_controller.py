"""
tests/test_admission_controller.py
───────────────────────────────────
Test suite for provisioner/control_plane/admission_controller.py

Every rejection is a startup error: a policy set that fails here never
reaches the registry.
"""

from __future__ import annotations

from typing import FrozenSet, Optional

import pytest

from provisioner.control_plane.admission_controller import (
    PolicyRejectedError,
    admit_pool,
    admit_pools,
)
from provisioner.control_plane.catalog import (
    InstanceCatalog,
    UnknownArchitectureError,
    default_catalog,
)
from provisioner.shared.models import (
    Architecture,
    CapacityTypeConstraint,
    InstanceShape,
    NodePool,
    ResourceLimits,
)


def _make_pool(
    name: str = "pool",
    arch: Optional[Architecture] = None,
    capacity_type: CapacityTypeConstraint = CapacityTypeConstraint.ANY,
    families: FrozenSet[str] = frozenset(),
    min_on_demand_fraction: float = 0.0,
) -> NodePool:
    return NodePool(
        name=name,
        architecture=arch,
        capacity_type=capacity_type,
        allowed_families=families,
        limits=ResourceLimits(cpu=100, memory_gib=400),
        min_on_demand_fraction=min_on_demand_fraction,
    )


class TestAdmitPool:

    catalog = default_catalog()

    def test_valid_pools_pass(self) -> None:
        admit_pools(
            [
                _make_pool("x86", Architecture.AMD64, families=frozenset({"m6i", "c6i"})),
                _make_pool("graviton", Architecture.ARM64, CapacityTypeConstraint.SPOT),
                _make_pool("mixed", min_on_demand_fraction=0.25),
            ],
            self.catalog,
        )

    def test_unknown_family_rejected(self) -> None:
        with pytest.raises(PolicyRejectedError) as exc:
            admit_pool(_make_pool(families=frozenset({"m6l"})), self.catalog)
        assert exc.value.pool == "pool"
        assert "m6l" in exc.value.reason

    def test_family_of_other_architecture_rejected(self) -> None:
        with pytest.raises(PolicyRejectedError):
            admit_pool(_make_pool(arch=Architecture.ARM64, families=frozenset({"m6i"})), self.catalog)

    def test_architecture_missing_from_catalog(self) -> None:
        amd_only = InstanceCatalog([
            InstanceShape(name="m6i.large", family="m6i", architecture=Architecture.AMD64,
                          vcpu=2, memory_gib=8),
        ])
        with pytest.raises(UnknownArchitectureError):
            admit_pool(_make_pool(arch=Architecture.ARM64), amd_only)

    def test_spot_pool_without_spot_shapes(self) -> None:
        catalog = InstanceCatalog([
            InstanceShape(name="m6i.large", family="m6i", architecture=Architecture.AMD64,
                          vcpu=2, memory_gib=8, supports_spot=False),
        ])
        with pytest.raises(PolicyRejectedError):
            admit_pool(_make_pool(capacity_type=CapacityTypeConstraint.SPOT), catalog)

    def test_on_demand_floor_on_spot_pool(self) -> None:
        pool = _make_pool(capacity_type=CapacityTypeConstraint.SPOT, min_on_demand_fraction=0.5)
        with pytest.raises(PolicyRejectedError):
            admit_pool(pool, self.catalog)

    def test_first_failure_aborts(self) -> None:
        with pytest.raises(PolicyRejectedError) as exc:
            admit_pools(
                [_make_pool("ok"), _make_pool("bad", families=frozenset({"zz9"}))],
                self.catalog,
            )
        assert exc.value.pool == "bad"
