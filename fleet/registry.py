"""
Fleet Registry - Typed view of one fleet's objects in the coordination store.

Key layout (all under the fleet id):

    {fleet}/spec/current.yaml               latest applied Specification
    {fleet}/spec/v000007.yaml               every historical version
    {fleet}/status/{machine_id}.json        one NodeStatusRecord per machine
    {fleet}/events/000000000001             append-only event log
    {fleet}/genesis/genesis.json            written once by anchor ordinal 0
    {fleet}/snapshots/{slot}/{id}.json      snapshot metadata
    {fleet}/backups/{slot}/{id}.tar.gz      snapshot archives
    {fleet}/artifacts/{version}/node        node binaries

Writers:
    spec, events, artifacts     control plane
    status, snapshots, backups  the agent the record describes
    genesis                     anchor ordinal 0
"""

import json
import logging
from typing import Any, Dict, List, Optional

from core import spec as specmod
from core.errors import ParseError, StoreKeyNotFound
from core.spec import Specification
from core.store import CoordinationStore
from fleet.types import EventRecord, NodeStatusRecord

logger = logging.getLogger("fleet.registry")


class FleetRegistry:
    """Typed accessors for one fleet. Holds no state besides the store handle."""

    def __init__(self, store: CoordinationStore, fleet_id: str):
        self.store = store
        self.fleet_id = fleet_id

    def _key(self, *parts: str) -> str:
        return "/".join((self.fleet_id,) + parts)

    @property
    def event_log(self) -> str:
        return self._key("events")

    # =========================================================================
    # SPECIFICATION
    # =========================================================================

    def put_spec(self, spec: Specification):
        data = specmod.to_yaml(spec)
        # Historical copy first so current never points at a missing version
        self.store.put(self._key("spec", f"v{spec.version:06d}.yaml"), data)
        self.store.put(self._key("spec", "current.yaml"), data)

    def get_spec(self) -> Specification:
        """Current Specification. Raises StoreKeyNotFound, ParseError."""
        return specmod.parse(self.store.get(self._key("spec", "current.yaml")))

    def get_spec_or_none(self) -> Optional[Specification]:
        try:
            return self.get_spec()
        except StoreKeyNotFound:
            return None

    def get_spec_version(self, version: int) -> Specification:
        return specmod.parse(self.store.get(self._key("spec", f"v{version:06d}.yaml")))

    def list_spec_versions(self) -> List[int]:
        versions = []
        for key in self.store.list(self._key("spec", "v")):
            name = key.rsplit("/", 1)[-1]
            try:
                versions.append(int(name[1:].split(".", 1)[0]))
            except ValueError:
                continue
        return sorted(versions)

    # =========================================================================
    # STATUS RECORDS
    # =========================================================================

    def put_status(self, record: NodeStatusRecord):
        data = json.dumps(record.to_dict(), sort_keys=True).encode()
        self.store.put(self._key("status", f"{record.machine_id}.json"), data)

    def get_status(self, machine_id: str) -> Optional[NodeStatusRecord]:
        data = self.store.get_or_none(self._key("status", f"{machine_id}.json"))
        if data is None:
            return None
        return NodeStatusRecord.from_dict(json.loads(data))

    def list_statuses(self) -> List[NodeStatusRecord]:
        """All readable status records, ordered by ordinal then machine id."""
        records = []
        for key in self.store.list(self._key("status") + "/"):
            try:
                records.append(NodeStatusRecord.from_dict(json.loads(self.store.get(key))))
            except StoreKeyNotFound:
                continue
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable status record {key}: {e}")
        records.sort(key=lambda r: (r.ordinal, r.machine_id))
        return records

    def delete_status(self, machine_id: str):
        self.store.delete(self._key("status", f"{machine_id}.json"))

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    def append_event(self, event: EventRecord) -> EventRecord:
        """Append and return the record with its assigned sequence number."""
        sequence = self.store.append_event(event.body_bytes(), log=self.event_log)
        return EventRecord(
            sequence=sequence,
            kind=event.kind,
            payload=event.payload,
            issued_at=event.issued_at,
        )

    def read_events_from(self, sequence: int) -> List[EventRecord]:
        events = []
        for seq, data in self.store.read_events_from(sequence, log=self.event_log):
            try:
                events.append(EventRecord.from_bytes(seq, data))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed event #{seq}: {e}")
        return events

    # =========================================================================
    # GENESIS
    # =========================================================================

    def put_genesis(self, genesis: Dict[str, Any]):
        self.store.put(self._key("genesis", "genesis.json"), json.dumps(genesis, indent=2).encode())

    def get_genesis(self) -> Optional[Dict[str, Any]]:
        data = self.store.get_or_none(self._key("genesis", "genesis.json"))
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            raise ParseError(f"genesis document is not JSON: {e}")

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def backup_key(self, slot: str, snapshot_id: str) -> str:
        return self._key("backups", slot, f"{snapshot_id}.tar.gz")

    def put_snapshot(self, slot: str, snapshot_id: str, record: Dict[str, Any], archive: bytes):
        # Archive before metadata, a record never points at a missing object
        self.store.put(self.backup_key(slot, snapshot_id), archive)
        self.store.put(
            self._key("snapshots", slot, f"{snapshot_id}.json"),
            json.dumps(record, sort_keys=True).encode(),
        )

    def list_snapshot_records(self, slot: str) -> List[Dict[str, Any]]:
        records = []
        for key in self.store.list(self._key("snapshots", slot) + "/"):
            try:
                records.append(json.loads(self.store.get(key)))
            except StoreKeyNotFound:
                continue
            except ValueError as e:
                logger.warning(f"Skipping unreadable snapshot record {key}: {e}")
        return records

    def get_object(self, key: str) -> bytes:
        return self.store.get(key)

    def delete_snapshot(self, slot: str, snapshot_id: str):
        self.store.delete(self._key("snapshots", slot, f"{snapshot_id}.json"))
        self.store.delete(self.backup_key(slot, snapshot_id))

    # =========================================================================
    # ARTIFACTS
    # =========================================================================

    def artifact_key(self, version: str) -> str:
        return self._key("artifacts", version, "node")

    def put_artifact(self, version: str, data: bytes) -> str:
        key = self.artifact_key(version)
        self.store.put(key, data)
        return key

    # =========================================================================
    # TEARDOWN
    # =========================================================================

    def delete_all(self) -> int:
        """Delete every object of this fleet. Returns the number deleted."""
        return self.store.delete_prefix(self.fleet_id + "/")
