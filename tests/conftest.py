"""
Shared pytest fixtures for CI-safe testing.

All fixtures use temporary directories and in-memory stores - no hardcoded
paths, no network, no real node binary.
"""

import sys
from pathlib import Path

# Add project root to sys.path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import shutil
import tempfile
import threading
from dataclasses import replace
from typing import Generator, Optional

import pytest

from core.config import AgentSettings
from core.spec import PolicySpec, Specification, default_spec
from core.store import MemoryStore, clear_memory_stores
from fleet.managed_node import ManagedNode, SyncStatus
from fleet.registry import FleetRegistry
from fleet.types import NodeStatusRecord, Phase, utcnow_iso

# Intervals small enough for threaded tests to finish in seconds
FAST_POLICY = PolicySpec(
    heartbeat_interval_s=0.05,
    staleness_missed_heartbeats=3,
    wave_width=1,
    snapshot_interval_s=3600.0,
    snapshot_retention=3,
    snapshot_max_pause_s=5.0,
    discovery_timeout_s=5.0,
    bootstrap_timeout_s=5.0,
    update_timeout_s=5.0,
    rollout_gate_timeout_s=5.0,
    sync_lag_tolerance=10,
    max_restarts=3,
    restart_window_s=60.0,
    event_poll_interval_s=0.02,
    probe_interval_s=0.01,
    spec_fetch_attempts=3,
    backoff_initial_s=0.01,
    backoff_max_s=0.05,
)


class FakeNode(ManagedNode):
    """
    In-process stand-in for the node process.

    Reports healthy and bootstrapped as soon as it is started, unless told
    otherwise through the attributes below.
    """

    def __init__(self, data_dir: Path, node_id: str = "NodeID-6ZmBHXTqjknJoZtXbnJ6x7af863rXDTwx",
                 height: int = 100):
        super().__init__(data_dir)
        self.reported_node_id = node_id
        self.height = height
        self.bootstrapped = True
        self.healthy = True
        self.fail_start = False
        self.running = False
        self.last_exit_code: Optional[int] = None
        self.start_count = 0
        self.stop_count = 0
        self.started_with = []
        self.paused = False
        self._lock = threading.Lock()

    def start(self, config_path: Path, binary_path: Path) -> None:
        with self._lock:
            if self.fail_start:
                raise OSError("exec format error")
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.running = True
            self.last_exit_code = None
            self.start_count += 1
            self.started_with.append(Path(binary_path))

    def stop(self, timeout_s: float = 30.0) -> Optional[int]:
        with self._lock:
            if not self.running:
                return None
            self.running = False
            self.stop_count += 1
            self.last_exit_code = 0
            return 0

    def crash(self, exit_code: int = 1):
        with self._lock:
            self.running = False
            self.last_exit_code = exit_code

    def is_running(self) -> bool:
        return self.running

    def exit_code(self) -> Optional[int]:
        return self.last_exit_code

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def probe(self) -> SyncStatus:
        if not self.running:
            return SyncStatus(alive=False, detail="not running")
        return SyncStatus(
            alive=True,
            healthy=self.healthy,
            bootstrapped=self.bootstrapped,
            height=self.height,
            node_id=self.reported_node_id,
            version="node/1.0.0",
        )


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Provides a temporary directory for tests.

    Automatically cleaned up after test completes.
    """
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(autouse=True)
def _reset_memory_stores():
    yield
    clear_memory_stores()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


def make_spec(fleet_id: str = "testnet", anchors: int = 1, joining: int = 2,
              profile: str = "local", **policy_changes) -> Specification:
    spec = default_spec(
        fleet_id=fleet_id,
        anchor_nodes=anchors,
        non_anchor_nodes=joining,
        version="v1.0.0",
        store_url=f"memory://{fleet_id}",
        consensus_profile=profile,
    )
    return replace(spec, policy=replace(FAST_POLICY, **policy_changes))


@pytest.fixture
def spec() -> Specification:
    """One anchor and two joining nodes with fast timings."""
    return make_spec()


@pytest.fixture
def registry(store, spec) -> FleetRegistry:
    registry = FleetRegistry(store, spec.id)
    registry.put_spec(spec)
    return registry


def make_settings(root: Path, machine_id: str, store_url: str = "memory://testnet") -> AgentSettings:
    base = Path(root) / machine_id
    return AgentSettings(
        fleet_id="testnet",
        store_url=store_url,
        identity_file=str(base / "identity.json"),
        data_dir=str(base / "data"),
        work_dir=str(base / "work"),
        node_binary=str(base / "bin" / "node"),
        public_host="10.0.0.1",
    )


def status_record(ordinal: int, phase: Phase = Phase.READY, version: Optional[str] = "v1.0.0",
                  role=None, **fields) -> NodeStatusRecord:
    """Status record as a healthy agent would have written it just now."""
    from core.spec import NodeRole

    role = role or (NodeRole.ANCHOR if ordinal == 0 else NodeRole.JOINING)
    defaults = dict(
        machine_id=f"m-{ordinal}",
        role=role,
        ordinal=ordinal,
        phase=phase,
        heartbeat_at=utcnow_iso(),
        binary_version=version,
        node_id="NodeID-6ZmBHXTqjknJoZtXbnJ6x7af863rXDTwx",
        endpoint=f"10.0.0.{ordinal + 10}:9651",
        height=100,
    )
    defaults.update(fields)
    return NodeStatusRecord(**defaults)


# Skip markers for conditional test execution
def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
