"""
tests/test_collector.py
────────────────────────
Test suite for provisioner/telemetry/collector.py
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from provisioner.shared.models import (
    InterruptionNotice,
    LaunchConfirmation,
    NodePool,
    ResourceLimits,
    UtilizationSample,
    WorkloadBinding,
    WorkloadDemand,
)
from provisioner.telemetry.collector import EventCollector

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _demand(i: int) -> WorkloadDemand:
    return WorkloadDemand(id=f"pod-{i}", cpu=1.0, memory_gib=1.0)


class TestEventCollector:

    def test_drain_returns_everything_by_kind(self) -> None:
        collector = EventCollector()
        collector.submit_demand(_demand(1))
        collector.record_utilization(UtilizationSample(node_id="n", cpu_fraction=0.1, mem_fraction=0.2))
        collector.record_binding(WorkloadBinding(node_id="n", workload_id="w"))
        collector.notify_interruption(InterruptionNotice(node_id="n", deadline=T0))
        collector.confirm_launch(LaunchConfirmation(launch_id="launch-1", node_ids=["n"]))
        collector.request_reconfiguration(
            NodePool(name="p", limits=ResourceLimits(cpu=1, memory_gib=1)),
        )

        assert collector.pending == 6
        batch = collector.drain()

        assert len(batch) == 6
        assert [d.id for d in batch.demands] == ["pod-1"]
        assert batch.samples[0].mem_fraction == 0.2
        assert batch.bindings[0].bound
        assert batch.interruptions[0].deadline == T0
        assert batch.confirmations[0].launch_id == "launch-1"
        assert batch.reconfigurations[0].name == "p"

    def test_drain_clears(self) -> None:
        collector = EventCollector()
        collector.submit_demand(_demand(1))
        collector.drain()

        assert collector.pending == 0
        assert len(collector.drain()) == 0
        assert collector.received == 1

    def test_arrival_order_preserved(self) -> None:
        collector = EventCollector()
        for i in range(5):
            collector.submit_demand(_demand(i))
        assert [d.id for d in collector.drain().demands] == [f"pod-{i}" for i in range(5)]

    def test_concurrent_producers_lose_nothing(self) -> None:
        collector = EventCollector()

        def produce(offset: int) -> None:
            for i in range(250):
                collector.submit_demand(_demand(offset + i))

        threads = [threading.Thread(target=produce, args=(k * 1000,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        batch = collector.drain()
        assert len(batch.demands) == 1000
        assert len({d.id for d in batch.demands}) == 1000
        assert collector.received == 1000
