"""
provisioner/telemetry — inbound event queue.

Public API:
    EventCollector  — thread-safe inbox drained once per decision cycle
    EventBatch      — one drained batch
"""

from provisioner.telemetry.collector import EventBatch, EventCollector

__all__ = ["EventBatch", "EventCollector"]
