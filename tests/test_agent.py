"""
Tests for fleet/agent.py - the per-machine node agent.

The agent is driven one handler at a time with step() so every test is
deterministic. The threaded run() loop is covered by test_e2e_rollout.py.

Tests cover:
- Single anchor reaching Ready
- Rolling update applied from the event log
- Older or non-targeted events marked processed without action
- Failed update halts further updates
- Corrupt snapshot on a replacement machine degrades without starting
- Rollout gate timeout leaves the node Ready
- Restart resumes the processed-event watermark
- Store outage leaves the phase unchanged, also while recording Degraded
- Events are consumed in sequence, never past one that is not readable yet
"""

import hashlib
from pathlib import Path

import pytest

from core.errors import CoordinationStoreError, StoreKeyNotFound
from core.polling import Backoff
from core.spec import NodeRole
from core.store import MemoryStore
from fleet.agent import FatalAgentError, NodeAgent
from fleet.controller import FleetController
from fleet.genesis import build_genesis
from fleet.provisioning import LocalProvisioner
from fleet.registry import FleetRegistry
from fleet.types import EventKind, EventRecord, NodeIdentity, Phase, UpdateArtifactsPayload, utcnow_iso
from vault.snapshots import SnapshotManager

from conftest import FakeNode, make_settings, make_spec, status_record


class OutageStore(MemoryStore):
    """
    MemoryStore with injectable faults.

    down          every call fails
    failing_puts  writes to keys containing this substring fail
    hidden        keys that are listed but not readable yet
    """

    def __init__(self):
        super().__init__()
        self.down = False
        self.failing_puts = None
        self.hidden = set()

    def _check(self, operation, key):
        if self.down:
            raise CoordinationStoreError(operation, key)

    def get(self, key):
        self._check("get", key)
        if key in self.hidden:
            raise StoreKeyNotFound(key)
        return super().get(key)

    def put(self, key, data):
        self._check("put", key)
        if self.failing_puts and self.failing_puts in key:
            raise CoordinationStoreError("put", key)
        super().put(key, data)

    def list(self, prefix=""):
        self._check("list", prefix)
        return super().list(prefix)


def make_agent(root, registry, spec, ordinal=0, machine_id=None, node=None, **kwargs) -> NodeAgent:
    machine_id = machine_id or f"m-{ordinal}"
    identity = NodeIdentity(machine_id=machine_id, fleet_id=spec.id,
                            role=spec.role_of(ordinal) or NodeRole.JOINING, ordinal=ordinal)
    settings = make_settings(root, machine_id)
    node = node or FakeNode(Path(settings.data_dir))
    return NodeAgent(
        registry, identity, settings, node,
        spec_fetch_attempts=2,
        spec_fetch_backoff=Backoff(initial_s=0.001, max_s=0.002),
        **kwargs,
    )


def drive(agent: NodeAgent, until: Phase, max_steps: int = 20):
    for _ in range(max_steps):
        if agent.phase == until:
            return
        agent.step()
    raise AssertionError(f"agent stuck in {agent.phase.value}, expected {until.value}")


def append_update(registry, version, targets=(0,), data=None, **payload_fields):
    """Upload `data` as the binary for `version` (when given) and append the event."""
    if data is not None:
        payload_fields["binary_key"] = registry.put_artifact(version, data)
        payload_fields["binary_sha256"] = hashlib.sha256(data).hexdigest()
    payload = UpdateArtifactsPayload(version=version, targets=tuple(targets), **payload_fields)
    return registry.append_event(EventRecord(
        sequence=0, kind=EventKind.UPDATE_ARTIFACTS, payload=payload.to_dict(), issued_at=utcnow_iso(),
    ))


@pytest.fixture
def single_spec():
    return make_spec(anchors=1, joining=0, profile="dev")


@pytest.fixture
def single_registry(store, single_spec):
    registry = FleetRegistry(store, single_spec.id)
    registry.put_spec(single_spec)
    return registry


@pytest.fixture
def ready_agent(temp_dir, single_registry, single_spec):
    agent = make_agent(temp_dir, single_registry, single_spec)
    drive(agent, Phase.READY)
    return agent


class TestBootstrap:
    def test_single_anchor_reaches_ready(self, temp_dir, single_registry, single_spec):
        agent = make_agent(temp_dir, single_registry, single_spec)
        phases = []
        agent.state.add_listener(lambda src, dst, reason: phases.append(dst))

        drive(agent, Phase.READY)

        assert phases == [Phase.PROVISIONING_LOCAL, Phase.RESTORING, Phase.STARTING,
                          Phase.BOOTSTRAPPING, Phase.READY]
        record = single_registry.get_status("m-0")
        assert record.phase == Phase.READY
        assert record.binary_version == "v1.0.0"
        assert record.endpoint == "10.0.0.1:9651"
        assert agent.node.start_count == 1

    def test_anchor_writes_genesis_and_config(self, temp_dir, single_registry, single_spec):
        agent = make_agent(temp_dir, single_registry, single_spec)
        drive(agent, Phase.READY)

        genesis = single_registry.get_genesis()
        assert genesis["fleet_id"] == "testnet"
        assert [s["ordinal"] for s in genesis["initial_stakers"]] == [0]
        assert agent.genesis_path.exists()
        assert agent.config_path.exists()

    def test_joining_node_discovers_ready_anchor(self, temp_dir, store, spec, registry):
        anchor = status_record(0, Phase.READY, height=250)
        registry.put_status(anchor)
        registry.put_genesis(build_genesis(spec, [anchor]))

        node = FakeNode(Path(temp_dir) / "m-1" / "data", height=250)
        agent = make_agent(temp_dir, registry, spec, ordinal=1, node=node)
        drive(agent, Phase.READY)

        config = agent.config_path.read_text()
        assert anchor.endpoint in config

    def test_joining_node_waits_for_anchor_height(self, temp_dir, store, spec, registry):
        anchor = status_record(0, Phase.READY, height=500)
        registry.put_status(anchor)
        registry.put_genesis(build_genesis(spec, [anchor]))

        registry.put_spec(make_spec(bootstrap_timeout_s=0.1).next_version())
        node = FakeNode(Path(temp_dir) / "m-1" / "data", height=100)
        agent = make_agent(temp_dir, registry, spec, ordinal=1, node=node)
        drive(agent, Phase.BOOTSTRAPPING)
        agent.step()

        assert agent.phase == Phase.DEGRADED
        assert "sync" in registry.get_status("m-1").detail

    def test_discovery_timeout_degrades(self, temp_dir, store):
        spec = make_spec(discovery_timeout_s=0.1)
        registry = FleetRegistry(store, spec.id)
        registry.put_spec(spec)
        agent = make_agent(temp_dir, registry, spec, ordinal=2)

        drive(agent, Phase.PROVISIONING_LOCAL)
        agent.step()

        assert agent.phase == Phase.DEGRADED
        assert "genesis" in registry.get_status("m-2").detail

    def test_missing_spec_is_fatal(self, temp_dir, store, spec):
        agent = make_agent(temp_dir, FleetRegistry(store, spec.id), spec)
        with pytest.raises(FatalAgentError):
            agent.step()

    def test_unknown_slot_is_fatal(self, temp_dir, single_registry, single_spec):
        agent = make_agent(temp_dir, single_registry, single_spec, ordinal=5)
        with pytest.raises(FatalAgentError, match="does not exist"):
            agent.step()

    def test_store_outage_keeps_phase(self, temp_dir, single_spec):
        store = OutageStore()
        registry = FleetRegistry(store, single_spec.id)
        registry.put_spec(single_spec)
        agent = make_agent(temp_dir, registry, single_spec)
        drive(agent, Phase.PROVISIONING_LOCAL)

        store.down = True
        agent.step()
        assert agent.phase == Phase.PROVISIONING_LOCAL

        store.down = False
        drive(agent, Phase.READY)


class TestRestore:
    def _seed_snapshot(self, temp_dir, registry, spec, corrupt=False):
        old_identity = NodeIdentity("m-0-old", spec.id, NodeRole.ANCHOR, 0)
        old_data = Path(temp_dir) / "old-data"
        old_data.mkdir()
        (old_data / "chain.db").write_bytes(b"blocks")
        manager = SnapshotManager(registry, old_identity, spec.network.network_id, old_data,
                                  Path(temp_dir) / "old-staging", spec.policy)
        record = manager.snapshot(reason="test")
        if corrupt:
            registry.store.put(record.object_key, b"not an archive")
        return record

    def test_replacement_restores_latest_snapshot(self, temp_dir, single_registry, single_spec):
        self._seed_snapshot(temp_dir, single_registry, single_spec)
        agent = make_agent(temp_dir, single_registry, single_spec, machine_id="m-0-new")

        drive(agent, Phase.READY)

        assert (agent.data_dir / "chain.db").read_bytes() == b"blocks"

    def test_corrupt_snapshot_degrades_without_starting(self, temp_dir, single_registry, single_spec):
        self._seed_snapshot(temp_dir, single_registry, single_spec, corrupt=True)
        agent = make_agent(temp_dir, single_registry, single_spec, machine_id="m-0-new")

        drive(agent, Phase.DEGRADED)

        assert agent.node.start_count == 0
        assert "corrupt" in single_registry.get_status("m-0-new").detail
        agent.step()
        assert agent.phase == Phase.DEGRADED


class TestUpdates:
    def test_update_applied(self, temp_dir, ready_agent, single_registry):
        binary = Path(temp_dir) / "node-v1.1.0"
        binary.write_bytes(b"new node binary")
        controller = FleetController(single_registry, LocalProvisioner(Path(temp_dir) / "instances"))
        event = controller.emit_update_event("v1.1.0", binary_path=binary)

        ready_agent.step()
        assert ready_agent.phase == Phase.UPDATING
        drive(ready_agent, Phase.READY)

        record = single_registry.get_status("m-0")
        assert record.binary_version == "v1.1.0"
        assert record.last_event_seq == event.sequence
        assert record.last_snapshot_id is not None
        node = ready_agent.node
        assert node.stop_count == 1
        assert node.started_with[-1].read_bytes() == b"new node binary"

    def test_older_event_marked_processed(self, temp_dir, ready_agent, single_registry):
        event = append_update(single_registry, "v0.9.0", data=b"old")

        ready_agent.step()

        assert ready_agent.phase == Phase.READY
        record = single_registry.get_status("m-0")
        assert record.last_event_seq == event.sequence
        assert record.binary_version == "v1.0.0"
        assert ready_agent.node.start_count == 1

    def test_untargeted_event_marked_processed(self, temp_dir, ready_agent, single_registry):
        event = append_update(single_registry, "v1.1.0", targets=(0,), excluded=(0,), data=b"new")

        ready_agent.step()

        assert ready_agent.phase == Phase.READY
        assert single_registry.get_status("m-0").last_event_seq == event.sequence

    def test_balance_check_event_is_skipped(self, ready_agent, single_registry):
        event = single_registry.append_event(EventRecord(
            sequence=0, kind=EventKind.BALANCE_CHECK_REQUEST, payload={}, issued_at=utcnow_iso(),
        ))
        ready_agent.step()
        assert single_registry.get_status("m-0").last_event_seq == event.sequence

    def test_missing_artifact_halts_updates(self, temp_dir, ready_agent, single_registry):
        event = append_update(single_registry, "v1.2.0", binary_key="testnet/artifacts/v1.2.0/node")

        drive(ready_agent, Phase.DEGRADED)

        record = single_registry.get_status("m-0")
        assert record.updates_halted
        assert record.last_event_seq == event.sequence
        assert "v1.2.0" in record.detail
        # The old binary was never stopped
        assert ready_agent.node.stop_count == 0
        assert ready_agent.node.running

    def test_halted_node_recovers_but_takes_no_updates(self, temp_dir, ready_agent, single_registry):
        append_update(single_registry, "v1.2.0", binary_key="testnet/artifacts/v1.2.0/node")
        drive(ready_agent, Phase.DEGRADED)

        drive(ready_agent, Phase.READY)
        later = append_update(single_registry, "v1.3.0", data=b"v1.3.0")
        ready_agent.step()

        record = single_registry.get_status("m-0")
        assert ready_agent.phase == Phase.READY
        assert record.updates_halted
        assert record.binary_version == "v1.0.0"
        assert record.last_event_seq < later.sequence

    def test_checksum_mismatch_halts(self, ready_agent, single_registry):
        key = single_registry.put_artifact("v1.1.0", b"tampered")
        append_update(single_registry, "v1.1.0", binary_key=key, binary_sha256="0" * 64)

        drive(ready_agent, Phase.DEGRADED)

        assert single_registry.get_status("m-0").updates_halted

    def test_gate_timeout_stays_ready(self, temp_dir, store):
        spec = make_spec(rollout_gate_timeout_s=0.1)
        registry = FleetRegistry(store, spec.id)
        registry.put_spec(spec)
        anchor = status_record(0, Phase.READY)
        registry.put_status(anchor)
        registry.put_status(status_record(1, Phase.READY))
        registry.put_genesis(build_genesis(spec, [anchor]))

        agent = make_agent(temp_dir, registry, spec, ordinal=2)
        drive(agent, Phase.READY)

        binary = Path(temp_dir) / "node-v1.1.0"
        binary.write_bytes(b"v1.1.0")
        event = FleetController(registry, LocalProvisioner(Path(temp_dir) / "instances")).emit_update_event(
            "v1.1.0", binary_path=binary,
        )
        agent.step()

        record = registry.get_status("m-2")
        assert agent.phase == Phase.READY
        assert record.last_event_seq == event.sequence
        assert "waiting on ordinals [0, 1]" in record.detail
        assert not record.updates_halted
        assert agent.node.start_count == 1

    def test_crash_budget_exhausted_degrades(self, ready_agent):
        supervisor = ready_agent.supervisor
        for _ in range(supervisor.max_restarts + 1):
            ready_agent.node.crash(exit_code=2)
            supervisor.check()

        assert supervisor.failure is not None
        ready_agent.step()
        assert ready_agent.phase == Phase.DEGRADED


class TestRestart:
    def test_resume_keeps_event_watermark(self, temp_dir, ready_agent, single_registry, single_spec):
        event = append_update(single_registry, "v1.1.0", data=b"v1.1.0 binary")
        ready_agent.step()
        drive(ready_agent, Phase.READY)
        ready_agent.shutdown()

        restarted = make_agent(temp_dir, single_registry, single_spec)
        drive(restarted, Phase.READY)
        restarted.step()

        assert restarted.version == "v1.1.0"
        assert restarted.node.start_count == 1
        assert restarted.node.started_with[-1].read_bytes() == b"v1.1.0 binary"
        assert single_registry.get_status("m-0").last_event_seq == event.sequence

    def test_shutdown_snapshots_and_stops(self, ready_agent):
        ready_agent.shutdown()

        assert ready_agent.node.stop_count == 1
        assert [r.reason for r in ready_agent.snapshots.list_records()] == ["shutdown"]

    def test_clear_halt(self, temp_dir, single_registry, single_spec):
        single_registry.put_status(status_record(0, Phase.DEGRADED, updates_halted=True, last_event_seq=4))

        agent = make_agent(temp_dir, single_registry, single_spec, clear_halt=True)
        agent.step()

        record = single_registry.get_status("m-0")
        assert not record.updates_halted
        assert record.last_event_seq == 4

    def test_halt_survives_restart_without_clear(self, temp_dir, single_registry, single_spec):
        single_registry.put_status(status_record(0, Phase.DEGRADED, updates_halted=True, last_event_seq=4))

        agent = make_agent(temp_dir, single_registry, single_spec)
        agent.step()

        assert single_registry.get_status("m-0").updates_halted


class TestStoreFaults:
    @pytest.fixture
    def outage_store(self):
        return OutageStore()

    @pytest.fixture
    def outage_registry(self, outage_store, single_spec):
        registry = FleetRegistry(outage_store, single_spec.id)
        registry.put_spec(single_spec)
        return registry

    @pytest.fixture
    def agent(self, temp_dir, outage_registry, single_spec):
        agent = make_agent(temp_dir, outage_registry, single_spec)
        drive(agent, Phase.READY)
        return agent

    def test_unreadable_event_is_not_skipped(self, agent, outage_store, outage_registry):
        first = append_update(outage_registry, "v1.1.0", data=b"v1.1.0 binary")
        second = append_update(outage_registry, "v0.9.0", data=b"old")
        outage_store.hidden.add(outage_store.list(f"{outage_registry.event_log}/")[0])

        agent.step()

        assert agent.phase == Phase.READY
        assert outage_registry.get_status("m-0").last_event_seq == 0

        outage_store.hidden.clear()
        agent.step()
        assert agent.phase == Phase.UPDATING
        drive(agent, Phase.READY)
        assert outage_registry.get_status("m-0").last_event_seq == first.sequence

        agent.step()
        record = outage_registry.get_status("m-0")
        assert record.binary_version == "v1.1.0"
        assert record.last_event_seq == second.sequence

    def test_store_outage_while_degrading_keeps_agent_running(self, agent, outage_store, outage_registry):
        supervisor = agent.supervisor
        for _ in range(supervisor.max_restarts + 1):
            agent.node.crash(exit_code=2)
            supervisor.check()

        outage_store.down = True
        agent.step()

        assert agent.phase == Phase.READY
        outage_store.down = False
        assert outage_registry.get_status("m-0").phase == Phase.READY

        agent.step()
        assert agent.phase == Phase.DEGRADED
        assert outage_registry.get_status("m-0").phase == Phase.DEGRADED

    def test_unrecorded_update_failure_still_halts(self, agent, outage_store, outage_registry):
        event = append_update(outage_registry, "v1.2.0", binary_key="testnet/artifacts/v1.2.0/node")
        agent.step()
        assert agent.phase == Phase.UPDATING

        outage_store.failing_puts = "/status/"
        agent.step()

        assert agent.phase == Phase.UPDATING
        assert not agent.publisher.record.updates_halted
        assert outage_registry.get_status("m-0").phase == Phase.UPDATING

        outage_store.failing_puts = None
        agent.step()

        record = outage_registry.get_status("m-0")
        assert agent.phase == Phase.DEGRADED
        assert record.updates_halted
        assert record.last_event_seq == event.sequence
