"""
Dev Machine - Single-machine variant for local development.

Runs one node from the same Specification format, without a coordination
store, status records or events. Everything lives under one state directory:

    {root}/spec.yaml           last applied specification
    {root}/state.json          pid and versions of the running node
    {root}/bin/{version}/node  installed binary
    {root}/keys/staking.key
    {root}/genesis.json
    {root}/node-config.json
    {root}/data/               node database
    {root}/logs/node.log

Usage:
    dev = DevMachine(Path("~/.fleet-dev").expanduser())
    dev.apply(spec)
    dev.delete()
"""

import hashlib
import json
import logging
import os
import shutil
import signal
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from core import spec as specmod
from core.atomic_ops import write_bytes_atomic, write_json_atomic
from core.errors import ArtifactError, ValidationError
from core.spec import NodeRole, Specification
from fleet import keys
from fleet.genesis import build_genesis
from fleet.managed_node import ManagedNode, SubprocessNode
from fleet.node_config import build_node_config, write_node_config
from fleet.types import NodeStatusRecord, Phase, utcnow_iso

logger = logging.getLogger("fleet.devmachine")


def default_dev_spec(fleet_id: str = "dev", version: str = "v1.0.0", network_id: int = 1337) -> Specification:
    """One anchor, no joining nodes, `dev` consensus profile."""
    return specmod.default_spec(
        fleet_id=fleet_id,
        anchor_nodes=1,
        non_anchor_nodes=0,
        version=version,
        store_url="memory://dev",
        consensus_profile="dev",
        network_id=network_id,
    )


@dataclass
class DevState:
    spec_version: int
    binary_version: str
    pid: Optional[int]
    node_id: str
    started_at: str


def _pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class DevMachine:
    def __init__(self, root: Path, node: Optional[ManagedNode] = None, http_host: str = "127.0.0.1"):
        self.root = Path(root)
        self.http_host = http_host
        self._node = node

    @property
    def spec_path(self) -> Path:
        return self.root / "spec.yaml"

    @property
    def state_path(self) -> Path:
        return self.root / "state.json"

    def _node_for(self, spec: Specification) -> ManagedNode:
        if self._node is None:
            self._node = SubprocessNode(
                data_dir=self.root / "data",
                http_url=f"http://{self.http_host}:{spec.network.http_port}",
                log_path=self.root / "logs" / "node.log",
            )
        return self._node

    def read_state(self) -> Optional[DevState]:
        if not self.state_path.exists():
            return None
        with open(self.state_path) as f:
            return DevState(**json.load(f))

    def read_spec(self) -> Optional[Specification]:
        if not self.spec_path.exists():
            return None
        return specmod.parse(self.spec_path.read_bytes())

    def _install(self, spec: Specification) -> Path:
        artifacts = spec.artifacts
        target = self.root / "bin" / artifacts.version / "node"
        if target.exists():
            return target
        if not artifacts.local_path:
            raise ArtifactError(artifacts.version, "artifacts.local_path is required on a dev machine")
        try:
            data = Path(artifacts.local_path).read_bytes()
        except OSError as e:
            raise ArtifactError(artifacts.version, str(e))
        if artifacts.binary_sha256 and hashlib.sha256(data).hexdigest() != artifacts.binary_sha256:
            raise ArtifactError(artifacts.version, f"checksum mismatch for {artifacts.local_path}")
        write_bytes_atomic(data, target, mode=0o755)
        return target

    def apply(self, spec: Specification) -> DevState:
        """
        Start (or restart) the local node so it runs `spec`.

        Applying the same version again while the node runs is a no-op.

        Raises:
            ValidationError: Invalid spec, more than one node, or older version
            ArtifactError: Binary missing or checksum mismatch
        """
        specmod.validate(spec)
        if spec.machine.total_nodes != 1:
            raise ValidationError("machine", "a dev machine runs exactly one node")

        previous = self.read_spec()
        if previous is not None and spec.version < previous.version:
            raise ValidationError("version", f"{spec.version} is older than the applied version {previous.version}")

        state = self.read_state()
        if (
            state is not None
            and state.spec_version == spec.version
            and state.binary_version == spec.artifacts.version
            and _pid_alive(state.pid)
        ):
            logger.info(f"Dev node already running {state.binary_version} (pid {state.pid})")
            return state

        self.stop()
        self.root.mkdir(parents=True, exist_ok=True)
        write_bytes_atomic(specmod.to_yaml(spec), self.spec_path)

        binary = self._install(spec)
        staking = keys.load_or_create(self.root / "keys")

        genesis_path = self.root / "genesis.json"
        if not genesis_path.exists():
            anchor = NodeStatusRecord(
                machine_id="dev", role=NodeRole.ANCHOR, ordinal=0,
                phase=Phase.PROVISIONING_LOCAL, heartbeat_at=utcnow_iso(), node_id=staking.node_id,
            )
            write_json_atomic(build_genesis(spec, [anchor]), genesis_path)

        config_path = self.root / "node-config.json"
        write_node_config(
            build_node_config(
                spec,
                data_dir=self.root / "data",
                log_dir=self.root / "logs",
                genesis_path=genesis_path,
                staking_key_path=staking.key_path,
                public_host=self.http_host,
                http_host=self.http_host,
            ),
            config_path,
        )

        node = self._node_for(spec)
        node.start(config_path, binary)

        state = DevState(
            spec_version=spec.version,
            binary_version=spec.artifacts.version,
            pid=node.pid,
            node_id=staking.node_id,
            started_at=utcnow_iso(),
        )
        write_json_atomic(asdict(state), self.state_path)
        logger.info(f"Dev node {staking.node_id} running {spec.artifacts.version} (pid {state.pid})")
        return state

    def stop(self):
        """Stop the node started by this or an earlier invocation."""
        if self._node is not None and self._node.is_running():
            self._node.stop()
            return
        state = self.read_state()
        if state is not None and _pid_alive(state.pid):
            logger.info(f"Stopping dev node (pid {state.pid})")
            try:
                os.kill(state.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass

    def delete(self, keep_data: bool = False):
        """Stop the node and remove the state directory."""
        self.stop()
        if not self.root.exists():
            return
        if keep_data:
            for name in ("state.json", "node-config.json"):
                (self.root / name).unlink(missing_ok=True)
        else:
            shutil.rmtree(self.root)
        logger.info(f"Deleted dev machine at {self.root}")
