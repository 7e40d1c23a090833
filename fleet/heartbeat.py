"""
Status Publisher - Writes this node's NodeStatusRecord to the store.

Used two ways:
    publish(phase)  - durable write for a phase transition (errors propagate)
    beat()          - periodic heartbeat refresh (errors are logged)

The publisher remembers the last phase it wrote, and heartbeats always carry
that phase. Writes are serialized, so a heartbeat can never overwrite a newer
transition with an older phase.

Usage:
    publisher = StatusPublisher(registry, identity)
    publisher.update(binary_version="v1.2.0", endpoint="10.0.0.4:9651")
    publisher.publish(Phase.STARTING)
    publisher.beat()
"""

import logging
import threading
from dataclasses import replace
from typing import Optional

from core.errors import CoordinationStoreError
from fleet.registry import FleetRegistry
from fleet.types import NodeIdentity, NodeStatusRecord, Phase, utcnow_iso

logger = logging.getLogger("fleet.heartbeat")

_MUTABLE_FIELDS = {
    "binary_version", "spec_version", "node_id", "endpoint", "height",
    "last_snapshot_id", "last_event_seq", "updates_halted", "detail",
}


class StatusPublisher:
    def __init__(self, registry: FleetRegistry, identity: NodeIdentity):
        self.registry = registry
        self.identity = identity
        self._lock = threading.Lock()
        self._published = False
        self._record = NodeStatusRecord(
            machine_id=identity.machine_id,
            role=identity.role,
            ordinal=identity.ordinal,
            phase=Phase.UNINITIALIZED,
            heartbeat_at="",
        )

    @property
    def record(self) -> NodeStatusRecord:
        """Copy of the last written (or pending) record."""
        with self._lock:
            return replace(self._record)

    def resume_from_store(self) -> Optional[NodeStatusRecord]:
        """
        Carry durable progress over from a previous run on this machine.

        Only the processed-event watermark, the halt flag and the last
        snapshot id survive. The phase always restarts at Uninitialized.
        """
        previous = self.registry.get_status(self.identity.machine_id)
        if previous is None:
            return None
        with self._lock:
            self._record.last_event_seq = previous.last_event_seq
            self._record.updates_halted = previous.updates_halted
            self._record.last_snapshot_id = previous.last_snapshot_id
            self._record.binary_version = previous.binary_version
        logger.info(
            f"Resuming {self.identity.slot}: last event #{previous.last_event_seq}, "
            f"previous phase {previous.phase.value}, halted={previous.updates_halted}"
        )
        return previous

    @staticmethod
    def _check_fields(fields):
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown status fields: {sorted(unknown)}")

    def update(self, **fields):
        """Change record fields without writing."""
        self._check_fields(fields)
        with self._lock:
            for name, value in fields.items():
                setattr(self._record, name, value)

    def publish(self, phase: Optional[Phase] = None, **fields):
        """
        Write the record now. Raises CoordinationStoreError after retries.

        The in-memory record only changes once the write succeeded.

        Args:
            phase: New phase (default: keep the last written phase)
            fields: Field updates written together with the phase
        """
        self._check_fields(fields)
        with self._lock:
            record = replace(self._record, heartbeat_at=utcnow_iso(), **fields)
            if phase is not None:
                record.phase = phase
            self.registry.put_status(record)
            self._record = record
            self._published = True

    def beat(self) -> bool:
        """
        Refresh the heartbeat timestamp.

        Returns:
            True if written, False if nothing was published yet or the
            store write failed
        """
        with self._lock:
            if not self._published:
                return False
        try:
            self.publish()
            return True
        except CoordinationStoreError as e:
            logger.error(f"Failed to write heartbeat: {e}")
            return False
