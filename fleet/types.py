"""
Fleet Types - Shared data structures for fleet coordination.

These types are written to the coordination store by agents and the
controller, and read back for discovery, rollout gating and health reporting.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from core.atomic_ops import write_json_atomic
from core.spec import NodeRole


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def age_of(timestamp: str, now: Optional[datetime] = None) -> float:
    """Seconds since an ISO timestamp (inf when unparseable)."""
    try:
        then = datetime.fromisoformat(timestamp)
    except (TypeError, ValueError):
        return float("inf")
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - then).total_seconds()


class Phase(str, Enum):
    """Lifecycle phase of one node agent."""
    UNINITIALIZED = "uninitialized"
    PROVISIONING_LOCAL = "provisioning-local"
    RESTORING = "restoring"
    STARTING = "starting"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    UPDATING = "updating"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class NodeIdentity:
    """
    Machine-scoped identity assigned at provisioning time.

    Stable across agent restarts on the same machine, never reused by a
    replacement machine (which gets a new machine_id for the same slot).
    """
    machine_id: str
    fleet_id: str
    role: NodeRole
    ordinal: int

    @property
    def slot(self) -> str:
        return f"{self.role.value}-{self.ordinal}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machine_id": self.machine_id,
            "fleet_id": self.fleet_id,
            "role": self.role.value,
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeIdentity":
        return cls(
            machine_id=data["machine_id"],
            fleet_id=data["fleet_id"],
            role=NodeRole(data["role"]),
            ordinal=int(data["ordinal"]),
        )

    @classmethod
    def load(cls, path: Path) -> "NodeIdentity":
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def save(self, path: Path):
        write_json_atomic(self.to_dict(), Path(path), mode=0o600)


@dataclass
class NodeStatusRecord:
    """Status of one node, written only by that node's agent."""
    machine_id: str
    role: NodeRole
    ordinal: int
    phase: Phase
    heartbeat_at: str                       # ISO timestamp
    binary_version: Optional[str] = None
    spec_version: int = 0
    node_id: Optional[str] = None           # NodeID-...
    endpoint: Optional[str] = None          # host:staking_port
    height: Optional[int] = None            # last probed P-chain height
    last_snapshot_id: Optional[str] = None
    last_event_seq: int = 0
    updates_halted: bool = False
    detail: str = ""

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since last heartbeat."""
        return age_of(self.heartbeat_at, now)

    def is_stale(self, threshold_s: float, now: Optional[datetime] = None) -> bool:
        return self.age_seconds(now) > threshold_s

    def is_ready_at(self, version: str) -> bool:
        return self.phase == Phase.READY and self.binary_version == version

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeStatusRecord":
        return cls(
            machine_id=data["machine_id"],
            role=NodeRole(data["role"]),
            ordinal=int(data["ordinal"]),
            phase=Phase(data["phase"]),
            heartbeat_at=data.get("heartbeat_at", ""),
            binary_version=data.get("binary_version"),
            spec_version=int(data.get("spec_version", 0)),
            node_id=data.get("node_id"),
            endpoint=data.get("endpoint"),
            height=data.get("height"),
            last_snapshot_id=data.get("last_snapshot_id"),
            last_event_seq=int(data.get("last_event_seq", 0)),
            updates_halted=bool(data.get("updates_halted", False)),
            detail=data.get("detail", ""),
        )


# =============================================================================
# EVENTS
# =============================================================================

class EventKind(str, Enum):
    UPDATE_ARTIFACTS = "update-artifacts"
    BALANCE_CHECK_REQUEST = "balance-check-request"


@dataclass(frozen=True)
class UpdateArtifactsPayload:
    """Payload of an update-artifacts event."""
    version: str
    targets: Tuple[int, ...]                # ordinals
    excluded: Tuple[int, ...] = ()
    binary_key: Optional[str] = None
    binary_sha256: Optional[str] = None

    def includes(self, ordinal: int) -> bool:
        return ordinal in self.targets and ordinal not in self.excluded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "targets": list(self.targets),
            "excluded": list(self.excluded),
            "binary_key": self.binary_key,
            "binary_sha256": self.binary_sha256,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateArtifactsPayload":
        return cls(
            version=data["version"],
            targets=tuple(sorted(int(o) for o in data.get("targets", []))),
            excluded=tuple(sorted(int(o) for o in data.get("excluded", []))),
            binary_key=data.get("binary_key"),
            binary_sha256=data.get("binary_sha256"),
        )


@dataclass(frozen=True)
class EventRecord:
    """One entry of the append-only event log."""
    sequence: int
    kind: EventKind
    payload: Dict[str, Any]
    issued_at: str

    def update_payload(self) -> UpdateArtifactsPayload:
        if self.kind != EventKind.UPDATE_ARTIFACTS:
            raise ValueError(f"event #{self.sequence} is {self.kind.value}, not update-artifacts")
        return UpdateArtifactsPayload.from_dict(self.payload)

    def body_bytes(self) -> bytes:
        """Serialized form stored in the log (sequence is assigned by the store)."""
        return json.dumps({
            "kind": self.kind.value,
            "payload": self.payload,
            "issued_at": self.issued_at,
        }, sort_keys=True).encode()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "kind": self.kind.value,
            "payload": self.payload,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_bytes(cls, sequence: int, data: bytes) -> "EventRecord":
        body = json.loads(data)
        return cls(
            sequence=sequence,
            kind=EventKind(body["kind"]),
            payload=body.get("payload", {}),
            issued_at=body.get("issued_at", ""),
        )


# =============================================================================
# CONTROL PLANE
# =============================================================================

class ActionKind(str, Enum):
    PROVISION = "provision"
    DECOMMISSION = "decommission"


@dataclass(frozen=True, order=True)
class Action:
    """One provisioning step computed by reconcile."""
    kind: ActionKind
    role: NodeRole
    ordinal: int
    machine_id: Optional[str] = None        # set for DECOMMISSION

    def describe(self) -> str:
        target = f"{self.role.value}-{self.ordinal}"
        if self.machine_id:
            target += f" ({self.machine_id})"
        return f"{self.kind.value} {target}"


@dataclass
class RolloutProgress:
    """Progress of one update-artifacts event across its targets."""
    sequence: int
    version: str
    targets: List[int]
    done: List[int] = field(default_factory=list)
    updating: List[int] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)
    halted: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return sorted(self.done) == sorted(self.targets)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FleetHealthSummary:
    """Aggregate view over all status records of one fleet."""
    fleet_id: str
    timestamp: str
    spec_version: int
    expected_nodes: int
    phase_counts: Dict[str, int] = field(default_factory=dict)
    version_counts: Dict[str, int] = field(default_factory=dict)
    unresponsive: List[str] = field(default_factory=list)      # machine ids
    halted: List[str] = field(default_factory=list)
    missing_ordinals: List[int] = field(default_factory=list)
    nodes: List[NodeStatusRecord] = field(default_factory=list)
    rollout: Optional[RolloutProgress] = None

    @property
    def healthy(self) -> bool:
        ready = self.phase_counts.get(Phase.READY.value, 0)
        return (
            ready == self.expected_nodes
            and not self.unresponsive
            and not self.halted
            and not self.missing_ordinals
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fleet_id": self.fleet_id,
            "timestamp": self.timestamp,
            "spec_version": self.spec_version,
            "expected_nodes": self.expected_nodes,
            "healthy": self.healthy,
            "phase_counts": self.phase_counts,
            "version_counts": self.version_counts,
            "unresponsive": self.unresponsive,
            "halted": self.halted,
            "missing_ordinals": self.missing_ordinals,
            "nodes": [n.to_dict() for n in self.nodes],
            "rollout": self.rollout.to_dict() if self.rollout else None,
        }


@dataclass
class BalanceEntry:
    address: str
    balance: Optional[int]                  # None when the query failed
    below_minimum: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BalanceReport:
    minimum: int
    timestamp: str
    entries: List[BalanceEntry] = field(default_factory=list)

    @property
    def flagged(self) -> List[str]:
        return [e.address for e in self.entries if e.below_minimum]

    @property
    def errors(self) -> List[str]:
        return [e.address for e in self.entries if e.error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minimum": self.minimum,
            "timestamp": self.timestamp,
            "flagged": self.flagged,
            "entries": [e.to_dict() for e in self.entries],
        }
