"""
provisioner/telemetry/collector.py
────────────────────────────────────
EventCollector: the queue between the outside world and the decision cycle.

What this is
─────────────
Every external signal the engine consumes arrives here first:

  submit_demand(demand)            ← scheduler "pod unschedulable" feed
  record_utilization(sample)       ← metrics source
  record_binding(binding)          ← scheduler bind / eviction events
  notify_interruption(notice)      ← spot interruption warnings
  confirm_launch(confirmation)     ← launcher callback
  request_reconfiguration(pool)    ← explicit pool reconfiguration

Producers may call these from any thread at any time. Nothing is applied
immediately: ProvisioningService.run_cycle() calls drain() once at the
start of each cycle and applies the whole batch before planning, so a
cycle always works on one consistent snapshot.

Design
───────
- One lock, one list per event kind. Producers only append; drain() swaps
  the lists out under the lock and returns them. O(1) per event.
- Order within a kind is arrival order. Samples for the same node are
  applied oldest-first, so the last one wins.
- No validation here: models are validated on construction by pydantic,
  and semantic checks (unknown node, unknown launch) happen when the
  service applies the batch and are reported there.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List

from provisioner.shared.models import (
    InterruptionNotice,
    LaunchConfirmation,
    NodePool,
    UtilizationSample,
    WorkloadBinding,
    WorkloadDemand,
)

logger = logging.getLogger(__name__)


@dataclass
class EventBatch:
    """Everything that arrived since the previous drain()."""
    demands: List[WorkloadDemand] = field(default_factory=list)
    samples: List[UtilizationSample] = field(default_factory=list)
    bindings: List[WorkloadBinding] = field(default_factory=list)
    interruptions: List[InterruptionNotice] = field(default_factory=list)
    confirmations: List[LaunchConfirmation] = field(default_factory=list)
    reconfigurations: List[NodePool] = field(default_factory=list)

    def __len__(self) -> int:
        return (
            len(self.demands) + len(self.samples) + len(self.bindings)
            + len(self.interruptions) + len(self.confirmations)
            + len(self.reconfigurations)
        )


class EventCollector:
    """
    Thread-safe inbox of external events, drained once per cycle.

    Usage:
        collector = EventCollector()
        collector.submit_demand(WorkloadDemand(id="pod-1", cpu=1, memory_gib=2))
        batch = collector.drain()     # called by the service at cycle start
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._batch = EventBatch()
        self._received: int = 0

    # ── Producers ──────────────────────────────────────────────────────────────

    def submit_demand(self, demand: WorkloadDemand) -> None:
        with self._lock:
            self._batch.demands.append(demand)
            self._received += 1

    def record_utilization(self, sample: UtilizationSample) -> None:
        with self._lock:
            self._batch.samples.append(sample)
            self._received += 1

    def record_binding(self, binding: WorkloadBinding) -> None:
        with self._lock:
            self._batch.bindings.append(binding)
            self._received += 1

    def notify_interruption(self, notice: InterruptionNotice) -> None:
        with self._lock:
            self._batch.interruptions.append(notice)
            self._received += 1
        logger.info(
            "Interruption notice queued for node %s (deadline %s)",
            notice.node_id, notice.deadline.isoformat(),
        )

    def confirm_launch(self, confirmation: LaunchConfirmation) -> None:
        with self._lock:
            self._batch.confirmations.append(confirmation)
            self._received += 1

    def request_reconfiguration(self, pool: NodePool) -> None:
        with self._lock:
            self._batch.reconfigurations.append(pool)
            self._received += 1

    # ── Consumer ───────────────────────────────────────────────────────────────

    def drain(self) -> EventBatch:
        """Return and clear everything queued so far."""
        with self._lock:
            batch, self._batch = self._batch, EventBatch()
        if len(batch):
            logger.debug(
                "Drained %d event(s): %d demand(s), %d sample(s), %d binding(s), "
                "%d interruption(s), %d confirmation(s), %d reconfiguration(s)",
                len(batch), len(batch.demands), len(batch.samples), len(batch.bindings),
                len(batch.interruptions), len(batch.confirmations),
                len(batch.reconfigurations),
            )
        return batch

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._batch)

    @property
    def received(self) -> int:
        """Total events accepted since this collector was created."""
        return self._received

    def __repr__(self) -> str:
        return f"EventCollector(pending={self.pending}, received={self._received})"
