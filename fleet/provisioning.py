"""
Provisioning - Interface to the infrastructure provider.

The control plane only needs a handful of idempotent operations:
    ensure_infrastructure   networks, buckets, key resources for the fleet
    create_instance         one machine bound to a NodeIdentity
    destroy_instance        tear a machine down
    list_instances          machines that currently exist
    teardown_infrastructure remove the fleet-level resources

LocalProvisioner keeps the instance registry in a JSON file and writes each
machine's identity file to disk, which is enough to run agents by hand or in
tests. Cloud providers implement the same interface.
"""

import json
import logging
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List

from core.atomic_ops import write_json_atomic
from core.errors import ProvisioningError
from core.spec import NodeRole, Specification
from fleet.types import NodeIdentity, utcnow_iso

logger = logging.getLogger("fleet.provisioning")


def new_machine_id(fleet_id: str, role: NodeRole, ordinal: int) -> str:
    return f"{fleet_id}-{role.value}-{ordinal}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class Instance:
    machine_id: str
    fleet_id: str
    role: NodeRole
    ordinal: int
    instance_type: str
    created_at: str

    def identity(self) -> NodeIdentity:
        return NodeIdentity(machine_id=self.machine_id, fleet_id=self.fleet_id,
                            role=self.role, ordinal=self.ordinal)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Instance":
        return cls(
            machine_id=data["machine_id"],
            fleet_id=data["fleet_id"],
            role=NodeRole(data["role"]),
            ordinal=int(data["ordinal"]),
            instance_type=data.get("instance_type", ""),
            created_at=data.get("created_at", ""),
        )


class Provisioner(ABC):
    """Provider-specific machine management. All operations must be idempotent."""

    @abstractmethod
    def ensure_infrastructure(self, spec: Specification) -> None:
        pass

    @abstractmethod
    def teardown_infrastructure(self, spec: Specification) -> None:
        pass

    @abstractmethod
    def list_instances(self, fleet_id: str) -> List[Instance]:
        pass

    @abstractmethod
    def create_instance(self, spec: Specification, identity: NodeIdentity) -> Instance:
        pass

    @abstractmethod
    def destroy_instance(self, fleet_id: str, machine_id: str) -> None:
        pass


class LocalProvisioner(Provisioner):
    """
    File-backed provisioner.

    Layout:
        {root}/{fleet}/instances.json
        {root}/{fleet}/machines/{machine_id}/identity.json
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _fleet_dir(self, fleet_id: str) -> Path:
        return self.root / fleet_id

    def _registry_path(self, fleet_id: str) -> Path:
        return self._fleet_dir(fleet_id) / "instances.json"

    def identity_path(self, fleet_id: str, machine_id: str) -> Path:
        return self._fleet_dir(fleet_id) / "machines" / machine_id / "identity.json"

    def _load(self, fleet_id: str) -> Dict[str, Dict[str, Any]]:
        path = self._registry_path(fleet_id)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise ProvisioningError("list", f"cannot read {path}: {e}", transient=False)

    def _save(self, fleet_id: str, instances: Dict[str, Dict[str, Any]]):
        try:
            write_json_atomic(instances, self._registry_path(fleet_id))
        except OSError as e:
            raise ProvisioningError("save", str(e))

    def ensure_infrastructure(self, spec: Specification) -> None:
        self._fleet_dir(spec.id).mkdir(parents=True, exist_ok=True)

    def teardown_infrastructure(self, spec: Specification) -> None:
        shutil.rmtree(self._fleet_dir(spec.id), ignore_errors=True)

    def list_instances(self, fleet_id: str) -> List[Instance]:
        with self._lock:
            instances = [Instance.from_dict(d) for d in self._load(fleet_id).values()]
        return sorted(instances, key=lambda i: (i.ordinal, i.machine_id))

    def create_instance(self, spec: Specification, identity: NodeIdentity) -> Instance:
        instance = Instance(
            machine_id=identity.machine_id,
            fleet_id=identity.fleet_id,
            role=identity.role,
            ordinal=identity.ordinal,
            instance_type=spec.machine.instance_types[identity.ordinal % len(spec.machine.instance_types)],
            created_at=utcnow_iso(),
        )
        with self._lock:
            instances = self._load(identity.fleet_id)
            if identity.machine_id in instances:
                return Instance.from_dict(instances[identity.machine_id])
            identity.save(self.identity_path(identity.fleet_id, identity.machine_id))
            instances[identity.machine_id] = instance.to_dict()
            self._save(identity.fleet_id, instances)
        logger.info(f"Created instance {identity.machine_id} ({identity.slot}, {instance.instance_type})")
        return instance

    def destroy_instance(self, fleet_id: str, machine_id: str) -> None:
        with self._lock:
            instances = self._load(fleet_id)
            if instances.pop(machine_id, None) is None:
                return
            self._save(fleet_id, instances)
            shutil.rmtree(self.identity_path(fleet_id, machine_id).parent, ignore_errors=True)
        logger.info(f"Destroyed instance {machine_id}")
