"""
Specification Model - Versioned description of desired fleet state.

A Specification is pure data: node-role composition, network parameters,
target binary artifact, coordination store location and operator policy.
It is never mutated in place; updating the fleet means producing a new
Specification with a higher version and letting agents react to the delta.

Format: YAML (JSON is accepted as it is valid YAML).

    version: 1
    id: fleet-prod
    network:
      network_id: 1337
      consensus_profile: local
    machine:
      anchor_nodes: 1
      non_anchor_nodes: 2
    artifacts:
      version: v1.10.3
    store:
      url: s3://my-bucket/fleets
    policy:
      wave_width: 1
      staleness_missed_heartbeats: 3

Usage:
    from core.spec import parse, validate, to_yaml, default_spec

    spec = parse(Path("fleet.yaml").read_bytes())
    validate(spec)                 # raises ValidationError(field, reason)
    newer = spec.next_version(artifacts=replace(spec.artifacts, version="v1.11.0"))
"""

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import yaml

from core.errors import ParseError, ValidationError

# Minimum node count per consensus profile
CONSENSUS_PROFILES = {
    "dev": 1,
    "local": 3,
    "production": 5,
}

STORE_SCHEMES = ("file", "memory", "s3")

_FLEET_ID_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_VERSION_RE = re.compile(
    r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z][0-9A-Za-z.-]*))?(?:\+[0-9A-Za-z.-]+)?$"
)


class NodeRole(str, Enum):
    """Role of a node in the fleet."""
    ANCHOR = "anchor"      # Seeds genesis, others bootstrap from it
    JOINING = "joining"    # Discovers anchors and syncs from them


# =============================================================================
# VERSION STRINGS
# =============================================================================

def is_valid_version(version: str) -> bool:
    return isinstance(version, str) and _VERSION_RE.match(version) is not None


def parse_version(version: str) -> Tuple[int, int, int, int, str]:
    """
    Parse a version string into a sortable key.

    "v1" -> (1, 0, 0, 1, ""), "1.2.0-rc.1" -> (1, 2, 0, 0, "rc.1").
    Releases sort after pre-releases of the same number.
    """
    match = _VERSION_RE.match(version or "")
    if not match:
        raise ValueError(f"malformed version string: {version!r}")
    major, minor, patch, pre = match.groups()
    return (
        int(major),
        int(minor or 0),
        int(patch or 0),
        0 if pre else 1,
        pre or "",
    )


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1."""
    ka, kb = parse_version(a), parse_version(b)
    return (ka > kb) - (ka < kb)


def is_newer(candidate: str, current: Optional[str]) -> bool:
    """True if `candidate` is strictly newer than `current` (None counts as oldest)."""
    if current is None:
        return True
    return compare_versions(candidate, current) > 0


# =============================================================================
# SPEC SECTIONS
# =============================================================================

@dataclass(frozen=True)
class Assignment:
    """Explicit pin of a fleet-wide ordinal to a role."""
    ordinal: int
    role: NodeRole

    def to_dict(self) -> Dict[str, Any]:
        return {"ordinal": self.ordinal, "role": self.role.value}


@dataclass(frozen=True)
class NetworkSpec:
    network_id: int = 1337
    network_name: str = "custom"
    consensus_profile: str = "local"
    http_port: int = 9650
    staking_port: int = 9651


@dataclass(frozen=True)
class MachineSpec:
    anchor_nodes: int = 1
    non_anchor_nodes: int = 2
    instance_types: Tuple[str, ...] = ("c6a.xlarge",)
    region: str = "us-west-2"
    assignments: Tuple[Assignment, ...] = ()

    @property
    def total_nodes(self) -> int:
        return self.anchor_nodes + self.non_anchor_nodes


@dataclass(frozen=True)
class ArtifactSpec:
    version: str = "v1.0.0"
    binary_key: Optional[str] = None       # Store key of the node binary
    binary_sha256: Optional[str] = None
    local_path: Optional[str] = None       # Uploaded by `apply` when set


@dataclass(frozen=True)
class StoreSpec:
    url: str = "file:///var/lib/fleet/store"

    @property
    def scheme(self) -> str:
        return self.url.split("://", 1)[0] if "://" in self.url else ""


@dataclass(frozen=True)
class PolicySpec:
    """Operator-tunable timing and rollout policy."""
    heartbeat_interval_s: float = 30.0
    staleness_missed_heartbeats: int = 3
    wave_width: int = 1
    snapshot_interval_s: float = 3600.0
    snapshot_retention: int = 3
    snapshot_max_pause_s: float = 30.0
    snapshot_max_age_s: float = 0.0         # 0 disables the age check
    discovery_timeout_s: float = 900.0
    bootstrap_timeout_s: float = 3600.0
    update_timeout_s: float = 1800.0
    rollout_gate_timeout_s: float = 7200.0
    sync_lag_tolerance: int = 10
    max_restarts: int = 5
    restart_window_s: float = 600.0
    event_poll_interval_s: float = 15.0
    probe_interval_s: float = 5.0
    spec_fetch_attempts: int = 10
    backoff_initial_s: float = 1.0
    backoff_max_s: float = 30.0

    @property
    def staleness_threshold_s(self) -> float:
        return self.heartbeat_interval_s * self.staleness_missed_heartbeats


@dataclass(frozen=True)
class BalanceCheckSpec:
    minimum: int = 0
    addresses: Tuple[str, ...] = ()
    rpc_endpoint: Optional[str] = None


@dataclass(frozen=True)
class Specification:
    """Desired state of one fleet."""
    version: int
    id: str
    network: NetworkSpec = field(default_factory=NetworkSpec)
    machine: MachineSpec = field(default_factory=MachineSpec)
    artifacts: ArtifactSpec = field(default_factory=ArtifactSpec)
    store: StoreSpec = field(default_factory=StoreSpec)
    policy: PolicySpec = field(default_factory=PolicySpec)
    balance_check: BalanceCheckSpec = field(default_factory=BalanceCheckSpec)
    created_at: str = ""

    def slots(self) -> List[Tuple[int, NodeRole]]:
        """
        Deterministic (ordinal, role) table.

        Ordinals are fleet-wide: anchors take 0..A-1, joining nodes follow,
        unless explicit assignments pin them.
        """
        if self.machine.assignments:
            return sorted((a.ordinal, a.role) for a in self.machine.assignments)
        slots = [(i, NodeRole.ANCHOR) for i in range(self.machine.anchor_nodes)]
        base = self.machine.anchor_nodes
        slots += [(base + i, NodeRole.JOINING) for i in range(self.machine.non_anchor_nodes)]
        return slots

    def role_of(self, ordinal: int) -> Optional[NodeRole]:
        for slot_ordinal, role in self.slots():
            if slot_ordinal == ordinal:
                return role
        return None

    def anchor_ordinals(self) -> List[int]:
        return [o for o, role in self.slots() if role == NodeRole.ANCHOR]

    def next_version(self, **changes) -> "Specification":
        """New Specification with version + 1 and the given section replacements."""
        return replace(self, version=self.version + 1, created_at=_now_iso(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "id": self.id,
            "created_at": self.created_at,
            "network": _section_to_dict(self.network),
            "machine": {
                "anchor_nodes": self.machine.anchor_nodes,
                "non_anchor_nodes": self.machine.non_anchor_nodes,
                "instance_types": list(self.machine.instance_types),
                "region": self.machine.region,
                "assignments": [a.to_dict() for a in self.machine.assignments],
            },
            "artifacts": _section_to_dict(self.artifacts),
            "store": _section_to_dict(self.store),
            "policy": _section_to_dict(self.policy),
            "balance_check": {
                "minimum": self.balance_check.minimum,
                "addresses": list(self.balance_check.addresses),
                "rpc_endpoint": self.balance_check.rpc_endpoint,
            },
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _section_to_dict(section) -> Dict[str, Any]:
    return {f.name: getattr(section, f.name) for f in fields(section)}


# =============================================================================
# PARSE
# =============================================================================

def _expect_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"'{where}' must be a mapping, got {type(value).__name__}")
    return value


def _build_section(cls, data: Any, where: str):
    """Build a flat section dataclass, coercing scalar types from its defaults."""
    data = _expect_mapping(data, where)
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ParseError(f"unknown keys in '{where}': {sorted(unknown)}")

    defaults = cls()
    kwargs = {}
    for name, value in data.items():
        default = getattr(defaults, name)
        kwargs[name] = _coerce(value, default, f"{where}.{name}")
    return cls(**kwargs)


def _coerce(value: Any, default: Any, where: str) -> Any:
    if value is None:
        return None if default is None else default
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ParseError(f"'{where}' must be a boolean")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ParseError(f"'{where}' must be an integer")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ParseError(f"'{where}' must be a number")
        return float(value)
    if isinstance(default, tuple):
        if not isinstance(value, list):
            raise ParseError(f"'{where}' must be a list")
        return tuple(str(v) for v in value)
    if not isinstance(value, (str, int, float)):
        raise ParseError(f"'{where}' must be a string")
    return str(value)


def _build_machine(data: Any) -> MachineSpec:
    data = dict(_expect_mapping(data, "machine"))
    raw_assignments = data.pop("assignments", None) or []
    if not isinstance(raw_assignments, list):
        raise ParseError("'machine.assignments' must be a list")

    assignments = []
    for i, item in enumerate(raw_assignments):
        item = _expect_mapping(item, f"machine.assignments[{i}]")
        try:
            ordinal = item["ordinal"]
            role = NodeRole(item["role"])
        except KeyError as e:
            raise ParseError(f"'machine.assignments[{i}]' missing {e}")
        except ValueError:
            raise ParseError(f"'machine.assignments[{i}].role' must be one of "
                             f"{[r.value for r in NodeRole]}")
        if isinstance(ordinal, bool) or not isinstance(ordinal, int):
            raise ParseError(f"'machine.assignments[{i}].ordinal' must be an integer")
        assignments.append(Assignment(ordinal=ordinal, role=role))

    machine = _build_section(MachineSpec, data, "machine")
    return replace(machine, assignments=tuple(assignments))


def from_dict(data: Dict[str, Any]) -> Specification:
    """Build a Specification from a decoded mapping."""
    data = _expect_mapping(data, "<root>")
    known = {f.name for f in fields(Specification)}
    unknown = set(data) - known
    if unknown:
        raise ParseError(f"unknown top-level keys: {sorted(unknown)}")

    for required in ("version", "id"):
        if required not in data:
            raise ParseError(f"missing required key '{required}'")

    version = data["version"]
    if isinstance(version, bool) or not isinstance(version, int):
        raise ParseError("'version' must be an integer")

    return Specification(
        version=version,
        id=str(data["id"]),
        network=_build_section(NetworkSpec, data.get("network"), "network"),
        machine=_build_machine(data.get("machine")),
        artifacts=_build_section(ArtifactSpec, data.get("artifacts"), "artifacts"),
        store=_build_section(StoreSpec, data.get("store"), "store"),
        policy=_build_section(PolicySpec, data.get("policy"), "policy"),
        balance_check=_build_section(BalanceCheckSpec, data.get("balance_check"), "balance_check"),
        created_at=str(data.get("created_at") or ""),
    )


def parse(data: bytes) -> Specification:
    """Decode YAML/JSON bytes into a Specification. Raises ParseError."""
    try:
        decoded = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ParseError(f"specification is not valid YAML: {e}")
    if not isinstance(decoded, dict):
        raise ParseError("specification must be a mapping")
    return from_dict(decoded)


def to_yaml(spec: Specification) -> bytes:
    return yaml.safe_dump(spec.to_dict(), sort_keys=False).encode()


# =============================================================================
# VALIDATE
# =============================================================================

def validate(spec: Specification) -> None:
    """Raise ValidationError(field, reason) for the first problem found."""
    if spec.version < 1:
        raise ValidationError("version", "must be >= 1")

    if not _FLEET_ID_RE.match(spec.id or ""):
        raise ValidationError("id", "must be a lowercase DNS label (a-z, 0-9, '-')")

    # Network
    net = spec.network
    if net.consensus_profile not in CONSENSUS_PROFILES:
        raise ValidationError(
            "network.consensus_profile",
            f"unknown profile '{net.consensus_profile}' (known: {sorted(CONSENSUS_PROFILES)})",
        )
    if net.network_id < 1:
        raise ValidationError("network.network_id", "must be >= 1")
    for name in ("http_port", "staking_port"):
        port = getattr(net, name)
        if not 1 <= port <= 65535:
            raise ValidationError(f"network.{name}", "must be in 1..65535")
    if net.http_port == net.staking_port:
        raise ValidationError("network.staking_port", "must differ from http_port")

    # Machine composition
    machine = spec.machine
    if machine.anchor_nodes < 1:
        raise ValidationError("machine.anchor_nodes", "at least one anchor node is required")
    if machine.non_anchor_nodes < 0:
        raise ValidationError("machine.non_anchor_nodes", "must be >= 0")
    quorum = CONSENSUS_PROFILES[net.consensus_profile]
    if machine.total_nodes < quorum:
        raise ValidationError(
            "machine",
            f"profile '{net.consensus_profile}' needs at least {quorum} nodes, "
            f"got {machine.total_nodes}",
        )
    if not machine.instance_types:
        raise ValidationError("machine.instance_types", "at least one instance type is required")
    _validate_assignments(machine)

    # Artifacts
    if not is_valid_version(spec.artifacts.version):
        raise ValidationError("artifacts.version", f"malformed version string '{spec.artifacts.version}'")
    sha = spec.artifacts.binary_sha256
    if sha is not None and not re.fullmatch(r"[0-9a-f]{64}", sha):
        raise ValidationError("artifacts.binary_sha256", "must be 64 lowercase hex characters")

    # Store
    if spec.store.scheme not in STORE_SCHEMES:
        raise ValidationError("store.url", f"scheme must be one of {list(STORE_SCHEMES)}")

    _validate_policy(spec.policy)

    if spec.balance_check.minimum < 0:
        raise ValidationError("balance_check.minimum", "must be >= 0")


def _validate_assignments(machine: MachineSpec) -> None:
    if not machine.assignments:
        return

    seen = set()
    for a in machine.assignments:
        if a.ordinal in seen:
            raise ValidationError("machine.assignments", f"ordinal {a.ordinal} assigned more than once")
        seen.add(a.ordinal)

    total = machine.total_nodes
    out_of_range = sorted(o for o in seen if not 0 <= o < total)
    if out_of_range or len(seen) != total:
        raise ValidationError(
            "machine.assignments",
            f"must assign each ordinal 0..{total - 1} exactly once",
        )

    anchors = sum(1 for a in machine.assignments if a.role == NodeRole.ANCHOR)
    if anchors != machine.anchor_nodes:
        raise ValidationError(
            "machine.assignments",
            f"assigns {anchors} anchor nodes but anchor_nodes is {machine.anchor_nodes}",
        )


def _validate_policy(policy: PolicySpec) -> None:
    for f in fields(policy):
        value = getattr(policy, f.name)
        if f.name in ("snapshot_max_age_s", "sync_lag_tolerance"):
            if value < 0:
                raise ValidationError(f"policy.{f.name}", "must be >= 0")
            continue
        if value <= 0:
            raise ValidationError(f"policy.{f.name}", "must be > 0")


# =============================================================================
# DEFAULTS
# =============================================================================

def default_spec(
    fleet_id: str = "fleet-dev",
    anchor_nodes: int = 1,
    non_anchor_nodes: int = 2,
    version: str = "v1.0.0",
    store_url: str = "file:///var/lib/fleet/store",
    consensus_profile: str = "local",
    network_id: int = 1337,
) -> Specification:
    """Default Specification for `default-spec` subcommands."""
    return Specification(
        version=1,
        id=fleet_id,
        network=NetworkSpec(network_id=network_id, consensus_profile=consensus_profile),
        machine=MachineSpec(anchor_nodes=anchor_nodes, non_anchor_nodes=non_anchor_nodes),
        artifacts=ArtifactSpec(version=version),
        store=StoreSpec(url=store_url),
        created_at=_now_iso(),
    )
