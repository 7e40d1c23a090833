"""
Tests for fleet/controller.py - reconcile, apply, update events and health.

Tests cover:
- reconcile() is pure and idempotent
- apply() provisions missing slots and converges on a second call
- Specification version monotonicity
- Update-event rejection rules
- Health aggregation (staleness, missing ordinals, rollout progress)
- Balance checks against a mocked RPC client
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from core.errors import ProvisioningError, UpdateRejectedError, ValidationError
from core.polling import Backoff
from core.spec import ArtifactSpec, MachineSpec, NodeRole
from fleet.controller import FleetController, reconcile
from fleet.provisioning import LocalProvisioner
from fleet.registry import FleetRegistry
from fleet.types import ActionKind, EventKind, Phase

from conftest import make_spec, status_record


@pytest.fixture
def provisioner(temp_dir):
    return LocalProvisioner(temp_dir / "instances")


@pytest.fixture
def controller(store, provisioner):
    return FleetController(
        FleetRegistry(store, "testnet"),
        provisioner,
        provisioning_backoff=Backoff(initial_s=0.001, max_s=0.002),
    )


def report_versions(registry, versions):
    """Status records as agents at the given versions would write them."""
    for ordinal, version in enumerate(versions):
        registry.put_status(status_record(ordinal, Phase.READY, version))


class TestReconcile:
    def test_empty_fleet_provisions_every_slot(self):
        actions = reconcile(make_spec(), [])
        assert [(a.kind, a.role, a.ordinal) for a in actions] == [
            (ActionKind.PROVISION, NodeRole.ANCHOR, 0),
            (ActionKind.PROVISION, NodeRole.JOINING, 1),
            (ActionKind.PROVISION, NodeRole.JOINING, 2),
        ]

    def test_converged_fleet_needs_nothing(self):
        observed = [status_record(o) for o in range(3)]
        assert reconcile(make_spec(), observed) == []

    def test_scale_down_decommissions_extra_slots(self):
        observed = [status_record(o) for o in range(3)]
        actions = reconcile(make_spec(joining=1), observed)
        assert [(a.kind, a.ordinal, a.machine_id) for a in actions] == [
            (ActionKind.DECOMMISSION, 2, "m-2"),
        ]

    def test_role_change_replaces_machine(self):
        observed = [status_record(0), status_record(1, role=NodeRole.JOINING)]
        spec = make_spec(anchors=2, joining=0, profile="dev")
        kinds = [(a.kind, a.ordinal) for a in reconcile(spec, observed)]
        assert kinds == [(ActionKind.PROVISION, 1), (ActionKind.DECOMMISSION, 1)]

    def test_duplicate_slot_keeps_ready_machine(self):
        observed = [
            status_record(0),
            status_record(1, Phase.DEGRADED, machine_id="m-1-a"),
            status_record(1, Phase.READY, machine_id="m-1-b"),
            status_record(2),
        ]
        actions = reconcile(make_spec(), observed)
        assert [(a.kind, a.machine_id) for a in actions] == [(ActionKind.DECOMMISSION, "m-1-a")]

    def test_idempotent(self):
        spec = make_spec()
        observed = [status_record(0)]
        assert reconcile(spec, observed) == reconcile(spec, observed)


class TestApply:
    def test_apply_provisions_and_converges(self, controller, provisioner):
        first = controller.apply(make_spec())
        assert first.stored
        assert len(first.actions) == 3
        assert len(provisioner.list_instances("testnet")) == 3

        second = controller.apply(make_spec())
        assert not second.stored
        assert second.actions == []
        assert len(provisioner.list_instances("testnet")) == 3

    def test_identity_files_written(self, controller, provisioner):
        controller.apply(make_spec())
        for instance in provisioner.list_instances("testnet"):
            path = provisioner.identity_path("testnet", instance.machine_id)
            assert path.exists()

    def test_scale_down_removes_status(self, controller, provisioner):
        controller.apply(make_spec())
        doomed = provisioner.list_instances("testnet")[-1]
        controller.registry.put_status(status_record(2, machine_id=doomed.machine_id))

        result = controller.apply(make_spec(joining=1, profile="dev").next_version())

        assert [a.kind for a in result.actions] == [ActionKind.DECOMMISSION]
        assert controller.registry.get_status(doomed.machine_id) is None
        assert len(provisioner.list_instances("testnet")) == 2

    def test_older_version_rejected(self, controller):
        controller.apply(make_spec().next_version())
        with pytest.raises(ValidationError) as exc:
            controller.apply(make_spec())
        assert exc.value.field == "version"

    def test_changed_content_needs_new_version(self, controller):
        controller.apply(make_spec())
        changed = replace(make_spec(), machine=MachineSpec(anchor_nodes=1, non_anchor_nodes=3))
        with pytest.raises(ValidationError):
            controller.apply(changed)

    def test_invalid_spec_rejected(self, controller, provisioner):
        with pytest.raises(ValidationError):
            controller.apply(make_spec(joining=0))
        assert provisioner.list_instances("testnet") == []

    def test_wrong_fleet_rejected(self, controller):
        with pytest.raises(ValidationError):
            controller.apply(make_spec(fleet_id="other"))

    def test_local_binary_uploaded(self, controller, temp_dir):
        binary = temp_dir / "node"
        binary.write_bytes(b"node v1")
        spec = replace(make_spec(), artifacts=ArtifactSpec(version="v1.0.0", local_path=str(binary)))

        result = controller.apply(spec)

        assert result.spec.artifacts.binary_key == "testnet/artifacts/v1.0.0/node"
        assert controller.registry.get_spec().artifacts.binary_sha256 is not None
        assert not controller.apply(spec).stored

    def test_transient_provisioning_errors_retried(self, controller, provisioner):
        calls = []
        original = provisioner.create_instance

        def flaky(spec, identity):
            calls.append(identity.slot)
            if len(calls) == 1:
                raise ProvisioningError("create", "throttled")
            return original(spec, identity)

        provisioner.create_instance = flaky
        controller.apply(make_spec())
        assert len(provisioner.list_instances("testnet")) == 3

    def test_permanent_provisioning_error_not_retried(self, controller, provisioner):
        calls = []

        def broken(spec, identity):
            calls.append(identity.slot)
            raise ProvisioningError("create", "quota exceeded", transient=False)

        provisioner.create_instance = broken
        with pytest.raises(ProvisioningError, match="quota"):
            controller.apply(make_spec())
        assert calls == ["anchor-0"]

    def test_delete(self, controller, provisioner, store):
        controller.apply(make_spec())
        actions = controller.delete(delete_store_objects=True)

        assert len(actions) == 3
        assert provisioner.list_instances("testnet") == []
        assert store.list("testnet/") == []


class TestUpdateEvents:
    @pytest.fixture
    def running(self, controller, temp_dir):
        controller.apply(make_spec())
        report_versions(controller.registry, ["v1.0.0"] * 3)
        binary = temp_dir / "node-v1.1.0"
        binary.write_bytes(b"v1.1.0")
        return controller, binary

    def test_emit(self, running):
        controller, binary = running
        event = controller.emit_update_event("v1.1.0", excluded=[2], binary_path=binary)

        payload = event.update_payload()
        assert event.sequence == 1
        assert payload.targets == (0, 1, 2)
        assert payload.excluded == (2,)
        assert payload.binary_sha256 is not None
        assert controller.list_events()[0].kind == EventKind.UPDATE_ARTIFACTS

    def test_previously_uploaded_artifact(self, running):
        controller, _ = running
        controller.registry.put_artifact("v1.1.0", b"v1.1.0")
        event = controller.emit_update_event("v1.1.0", targets=[1])
        assert event.update_payload().binary_key == "testnet/artifacts/v1.1.0/node"

    @pytest.mark.parametrize("version", ["v1.0.0", "v0.9.9", "banana"])
    def test_not_newer_or_malformed(self, running, version):
        controller, binary = running
        with pytest.raises(UpdateRejectedError):
            controller.emit_update_event(version, binary_path=binary)
        assert controller.list_events() == []

    def test_downgrade_of_one_target_rejected(self, running):
        controller, binary = running
        controller.registry.put_status(status_record(1, Phase.READY, "v1.2.0"))
        with pytest.raises(UpdateRejectedError, match="ordinal 1"):
            controller.emit_update_event("v1.1.0", binary_path=binary)

    def test_unknown_target(self, running):
        controller, binary = running
        with pytest.raises(UpdateRejectedError, match="unknown ordinals"):
            controller.emit_update_event("v1.1.0", targets=[7], binary_path=binary)

    def test_everything_excluded(self, running):
        controller, binary = running
        with pytest.raises(UpdateRejectedError):
            controller.emit_update_event("v1.1.0", excluded=[0, 1, 2], binary_path=binary)

    def test_unreported_target(self, running):
        controller, binary = running
        controller.registry.delete_status("m-2")
        with pytest.raises(UpdateRejectedError, match="not reported"):
            controller.emit_update_event("v1.1.0", binary_path=binary)

    def test_no_artifact(self, running):
        controller, _ = running
        with pytest.raises(UpdateRejectedError, match="no artifact"):
            controller.emit_update_event("v1.1.0")

    def test_repeat_of_pending_event_rejected(self, running):
        controller, binary = running
        controller.emit_update_event("v1.1.0", binary_path=binary)
        with pytest.raises(UpdateRejectedError, match="event #1"):
            controller.emit_update_event("v1.1.0", binary_path=binary)

    def test_stalled_rollout_resumed_at_same_version(self, running):
        controller, binary = running
        first = controller.emit_update_event("v1.1.0", binary_path=binary)
        registry = controller.registry
        registry.put_status(status_record(0, Phase.READY, "v1.1.0", last_event_seq=first.sequence))
        # Gate timed out on 1 and 2: event processed, nodes still on v1.0.0
        for ordinal in (1, 2):
            registry.put_status(status_record(ordinal, Phase.READY, "v1.0.0", last_event_seq=first.sequence))

        event = controller.emit_update_event("v1.1.0", targets=[1, 2])

        assert event.sequence == 2
        assert event.update_payload().targets == (1, 2)

    def test_partially_pending_event_still_blocks(self, running):
        controller, binary = running
        first = controller.emit_update_event("v1.1.0", binary_path=binary)
        controller.registry.put_status(status_record(1, Phase.READY, "v1.0.0", last_event_seq=first.sequence))

        with pytest.raises(UpdateRejectedError, match=r"pending on \[2\]"):
            controller.emit_update_event("v1.1.0", targets=[1, 2])


class TestHealth:
    def test_healthy_fleet(self, controller):
        controller.apply(make_spec())
        report_versions(controller.registry, ["v1.0.0"] * 3)

        summary = controller.report_health()

        assert summary.healthy
        assert summary.phase_counts == {"ready": 3}
        assert summary.version_counts == {"v1.0.0": 3}

    def test_stale_heartbeat_is_unresponsive(self, controller):
        controller.apply(make_spec(heartbeat_interval_s=10.0))
        report_versions(controller.registry, ["v1.0.0"] * 3)

        # threshold is 3 x 10s
        later = datetime.now(timezone.utc) + timedelta(seconds=31)
        summary = controller.report_health(now=later)

        assert not summary.healthy
        assert sorted(summary.unresponsive) == ["m-0", "m-1", "m-2"]
        assert controller.report_health(now=datetime.now(timezone.utc) + timedelta(seconds=25)).unresponsive == []

    def test_missing_and_halted(self, controller):
        controller.apply(make_spec())
        controller.registry.put_status(status_record(0))
        controller.registry.put_status(status_record(1, Phase.DEGRADED, updates_halted=True))

        summary = controller.report_health()

        assert summary.missing_ordinals == [2]
        assert summary.halted == ["m-1"]
        assert not summary.healthy

    def test_rollout_progress_of_latest_event(self, controller, temp_dir):
        controller.apply(make_spec())
        report_versions(controller.registry, ["v1.0.0"] * 3)
        binary = temp_dir / "node"
        binary.write_bytes(b"v1.1.0")
        controller.emit_update_event("v1.1.0", binary_path=binary)
        controller.registry.put_status(status_record(0, Phase.READY, "v1.1.0"))
        controller.registry.put_status(status_record(1, Phase.UPDATING, "v1.0.0"))

        rollout = controller.report_health().rollout

        assert rollout.done == [0]
        assert rollout.updating == [1]
        assert rollout.pending == [2]
        assert controller.report_health().to_dict()["rollout"]["sequence"] == 1


class TestBalances:
    def test_defaults_from_spec(self, store, provisioner):
        client = MagicMock()
        client.call_rpc.side_effect = [{"balance": "5"}, "0x10"]
        controller = FleetController(FleetRegistry(store, "testnet"), provisioner,
                                     rpc_client_factory=lambda url: client)
        spec = make_spec()
        spec = replace(spec, balance_check=replace(
            spec.balance_check, minimum=10, addresses=("P-custom1abc", "0xabc"),
            rpc_endpoint="http://127.0.0.1:9650",
        ))
        controller.registry.put_spec(spec)

        report = controller.check_balances(record=True)

        assert report.flagged == ["P-custom1abc"]
        events = controller.list_events()
        assert events[-1].kind == EventKind.BALANCE_CHECK_REQUEST
        assert events[-1].payload["flagged"] == ["P-custom1abc"]

    def test_no_endpoint(self, controller):
        controller.registry.put_spec(make_spec())
        with pytest.raises(ValidationError):
            controller.check_balances(addresses=["0xabc"])
