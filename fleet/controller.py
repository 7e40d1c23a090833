#!/usr/bin/env python3
"""
Fleet Controller - Control-plane operations for one fleet.

The controller is invoked on demand by the operator (it is not a daemon):
1. Validates and stores Specification versions
2. Reconciles desired slots against existing machines and provisions or
   decommissions the difference
3. Appends rolling-update events to the event log
4. Aggregates status records into a fleet health summary
5. Checks validator address balances

Each invocation reads the fleet once and decides from that snapshot. It never
writes a status record owned by an agent, except removing the record of a
machine it has just decommissioned.

Usage:
    from fleet.controller import FleetController

    controller = FleetController(registry, provisioner)
    result = controller.apply(spec)
    event = controller.emit_update_event("v1.11.0")
    print(controller.report_health().to_dict())
"""

import hashlib
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core import spec as specmod
from core.errors import ProvisioningError, UpdateRejectedError, ValidationError
from core.polling import Backoff, retry_call
from core.services import ServiceClient, get_service_client
from core.spec import Specification, is_newer, is_valid_version
from fleet.balances import BalanceChecker
from fleet.provisioning import Instance, Provisioner, new_machine_id
from fleet.registry import FleetRegistry
from fleet.rollout import freshest_by_ordinal, resolve_targets, rollout_progress
from fleet.types import (
    Action,
    ActionKind,
    BalanceReport,
    EventKind,
    EventRecord,
    FleetHealthSummary,
    NodeIdentity,
    NodeStatusRecord,
    Phase,
    UpdateArtifactsPayload,
    utcnow_iso,
)

logger = logging.getLogger("fleet.controller")

PROVISIONING_ATTEMPTS = 5


class _PermanentFailure(Exception):
    def __init__(self, error: ProvisioningError):
        super().__init__(str(error))
        self.error = error


# =============================================================================
# RECONCILIATION
# =============================================================================

def reconcile(desired: Specification, observed: Iterable[NodeStatusRecord]) -> List[Action]:
    """
    Actions that move the observed fleet to the desired slot table.

    Pure and idempotent: against a converged fleet it returns no actions.

    - A desired slot with no machine gets PROVISION.
    - A machine whose (ordinal, role) is not a desired slot gets DECOMMISSION.
    - Extra machines on one slot are decommissioned, keeping a Ready one
      (or else the lowest machine id).
    """
    slots = dict(desired.slots())
    by_slot: Dict[int, List[NodeStatusRecord]] = {}
    actions: List[Action] = []

    for record in observed:
        if slots.get(record.ordinal) != record.role:
            actions.append(Action(ActionKind.DECOMMISSION, record.role, record.ordinal, record.machine_id))
            continue
        by_slot.setdefault(record.ordinal, []).append(record)

    for ordinal, role in sorted(slots.items()):
        machines = by_slot.get(ordinal, [])
        if not machines:
            actions.append(Action(ActionKind.PROVISION, role, ordinal))
            continue
        machines.sort(key=lambda r: (r.phase != Phase.READY, r.machine_id))
        for extra in machines[1:]:
            actions.append(Action(ActionKind.DECOMMISSION, extra.role, extra.ordinal, extra.machine_id))

    provisions = sorted(a for a in actions if a.kind == ActionKind.PROVISION)
    decommissions = sorted(a for a in actions if a.kind == ActionKind.DECOMMISSION)
    return provisions + decommissions


def _content(spec: Specification) -> dict:
    data = spec.to_dict()
    data.pop("created_at", None)
    data.pop("version", None)
    if data["artifacts"].get("local_path"):
        # filled in by the upload of local_path
        data["artifacts"].pop("binary_key", None)
        data["artifacts"].pop("binary_sha256", None)
    return data


@dataclass
class ApplyResult:
    spec: Specification
    stored: bool                            # False when the same version was already stored
    actions: List[Action] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fleet_id": self.spec.id,
            "spec_version": self.spec.version,
            "stored": self.stored,
            "actions": [a.describe() for a in self.actions],
        }


# =============================================================================
# CONTROLLER
# =============================================================================

class FleetController:
    """
    Control plane for one fleet.

    Constructed per CLI invocation with explicit collaborators, so tests can
    run several independent controllers in one process.
    """

    def __init__(
        self,
        registry: FleetRegistry,
        provisioner: Provisioner,
        rpc_client_factory: Callable[[str], ServiceClient] = lambda url: get_service_client("rpc", url),
        provisioning_backoff: Backoff = Backoff(initial_s=1.0, max_s=30.0),
    ):
        self.registry = registry
        self.provisioner = provisioner
        self.rpc_client_factory = rpc_client_factory
        self.provisioning_backoff = provisioning_backoff

    @property
    def fleet_id(self) -> str:
        return self.registry.fleet_id

    def _provision_call(self, description: str, fn):
        """Retry transient provisioning failures, surface permanent ones at once."""
        def attempt():
            try:
                return fn()
            except ProvisioningError as e:
                if not e.transient:
                    raise _PermanentFailure(e)
                raise

        try:
            return retry_call(
                attempt,
                attempts=PROVISIONING_ATTEMPTS,
                backoff=self.provisioning_backoff,
                retry_on=(ProvisioningError,),
                description=description,
            )
        except _PermanentFailure as e:
            raise e.error

    # =========================================================================
    # SPECIFICATION
    # =========================================================================

    def read_spec(self, version: Optional[int] = None) -> Specification:
        """Current (or a historical) Specification. Raises StoreKeyNotFound."""
        if version is None:
            return self.registry.get_spec()
        return self.registry.get_spec_version(version)

    def _store_spec(self, spec: Specification) -> tuple:
        """Store `spec` unless the same version is already there. Returns (spec, stored)."""
        current = self.registry.get_spec_or_none()
        if current is not None:
            if spec.version < current.version:
                raise ValidationError(
                    "version", f"{spec.version} is older than the applied version {current.version}"
                )
            if spec.version == current.version:
                if _content(spec) != _content(current):
                    raise ValidationError(
                        "version", f"specification changed but version is still {spec.version}"
                    )
                return current, False

        spec = self._upload_initial_artifact(spec)
        self.registry.put_spec(spec)
        logger.info(f"Stored specification v{spec.version} for {spec.id}")
        return spec, True

    def _upload_initial_artifact(self, spec: Specification) -> Specification:
        artifacts = spec.artifacts
        if not artifacts.local_path or artifacts.binary_key:
            return spec
        data = Path(artifacts.local_path).read_bytes()
        digest = hashlib.sha256(data).hexdigest()
        if artifacts.binary_sha256 and artifacts.binary_sha256 != digest:
            raise ValidationError("artifacts.binary_sha256", f"does not match {artifacts.local_path}")
        key = self.registry.put_artifact(artifacts.version, data)
        logger.info(f"Uploaded node binary {artifacts.version} ({len(data)} bytes)")
        return replace(spec, artifacts=replace(artifacts, binary_key=key, binary_sha256=digest))

    # =========================================================================
    # APPLY / DELETE
    # =========================================================================

    def observe(self) -> List[NodeStatusRecord]:
        """
        Status records of the machines that currently exist.

        Machines without a status record yet appear as Uninitialized, so a
        second apply before agents report does not provision them again.
        Records of machines that no longer exist are left out.
        """
        instances = self._provision_call(
            "list instances", lambda: self.provisioner.list_instances(self.fleet_id)
        )
        statuses = {r.machine_id: r for r in self.registry.list_statuses()}
        observed = []
        for instance in instances:
            record = statuses.get(instance.machine_id)
            if record is None:
                record = NodeStatusRecord(
                    machine_id=instance.machine_id,
                    role=instance.role,
                    ordinal=instance.ordinal,
                    phase=Phase.UNINITIALIZED,
                    heartbeat_at=instance.created_at,
                )
            observed.append(record)
        return observed

    def apply(self, spec: Specification) -> ApplyResult:
        """
        Validate, store and converge the fleet to `spec`.

        Raises:
            ValidationError: Invalid spec, or non-monotonic version
            ProvisioningError: Provider failure after retries
        """
        specmod.validate(spec)
        if spec.id != self.fleet_id:
            raise ValidationError("id", f"controller is bound to fleet {self.fleet_id}")

        self._provision_call("ensure infrastructure", lambda: self.provisioner.ensure_infrastructure(spec))
        spec, stored = self._store_spec(spec)

        actions = reconcile(spec, self.observe())
        for action in actions:
            self._execute(spec, action)

        if actions:
            logger.info(f"Applied {len(actions)} action(s): {[a.describe() for a in actions]}")
        else:
            logger.info(f"Fleet {spec.id} already converged at specification v{spec.version}")
        return ApplyResult(spec=spec, stored=stored, actions=actions)

    def _execute(self, spec: Specification, action: Action):
        if action.kind == ActionKind.PROVISION:
            identity = NodeIdentity(
                machine_id=new_machine_id(spec.id, action.role, action.ordinal),
                fleet_id=spec.id,
                role=action.role,
                ordinal=action.ordinal,
            )
            self._provision_call(
                f"create {identity.slot}", lambda: self.provisioner.create_instance(spec, identity)
            )
        else:
            self._provision_call(
                f"destroy {action.machine_id}",
                lambda: self.provisioner.destroy_instance(spec.id, action.machine_id),
            )
            self.registry.delete_status(action.machine_id)

    def delete(self, delete_store_objects: bool = False) -> List[Action]:
        """Destroy every machine of the fleet, optionally wiping its store objects."""
        spec = self.registry.get_spec_or_none()
        instances: List[Instance] = self._provision_call(
            "list instances", lambda: self.provisioner.list_instances(self.fleet_id)
        )
        actions = []
        for instance in instances:
            action = Action(ActionKind.DECOMMISSION, instance.role, instance.ordinal, instance.machine_id)
            self._provision_call(
                f"destroy {instance.machine_id}",
                lambda: self.provisioner.destroy_instance(self.fleet_id, instance.machine_id),
            )
            actions.append(action)

        if spec is not None:
            self._provision_call("teardown", lambda: self.provisioner.teardown_infrastructure(spec))
        if delete_store_objects:
            deleted = self.registry.delete_all()
            logger.info(f"Deleted {deleted} store object(s) of {self.fleet_id}")
        logger.info(f"Deleted fleet {self.fleet_id} ({len(actions)} machine(s))")
        return actions

    # =========================================================================
    # EVENTS
    # =========================================================================

    def list_events(self, since: int = 1) -> List[EventRecord]:
        return self.registry.read_events_from(since)

    def emit_update_event(
        self,
        version: str,
        targets: Optional[Sequence[int]] = None,
        excluded: Sequence[int] = (),
        binary_path: Optional[Path] = None,
    ) -> EventRecord:
        """
        Append an update-artifacts event.

        Args:
            version: Target binary version
            targets: Ordinals to update (default: every slot)
            excluded: Ordinals that neither update nor gate the others
            binary_path: Local binary to upload for `version`

        Raises:
            UpdateRejectedError: Malformed or non-newer version, unknown or
                unreported targets, or no artifact for the version
        """
        if not is_valid_version(version):
            raise UpdateRejectedError(version, "malformed version string")

        spec = self.read_spec()
        try:
            resolved = resolve_targets(targets, [o for o, _ in spec.slots()])
        except ValueError as e:
            raise UpdateRejectedError(version, str(e))
        active = [o for o in resolved if o not in set(excluded)]
        if not active:
            raise UpdateRejectedError(version, "no targets left after exclusions")

        latest = freshest_by_ordinal(self.registry.list_statuses())
        for ordinal in active:
            record = latest.get(ordinal)
            if record is None or not record.binary_version:
                raise UpdateRejectedError(version, f"ordinal {ordinal} has not reported a version")
            if not is_newer(version, record.binary_version):
                raise UpdateRejectedError(
                    version, f"not newer than ordinal {ordinal}'s current {record.binary_version}"
                )

        for event in self.list_events():
            if event.kind != EventKind.UPDATE_ARTIFACTS:
                continue
            earlier = event.update_payload()
            # Events every overlapping node has processed (applied, timed out
            # at the gate, or halted) no longer block a new one
            pending = [o for o in active
                       if earlier.includes(o) and latest[o].last_event_seq < event.sequence]
            if pending and not is_newer(version, earlier.version):
                raise UpdateRejectedError(
                    version, f"event #{event.sequence} to {earlier.version} is still pending on {pending}"
                )

        binary_key, binary_sha256 = None, None
        if binary_path is not None:
            data = Path(binary_path).read_bytes()
            binary_key = self.registry.put_artifact(version, data)
            binary_sha256 = hashlib.sha256(data).hexdigest()
            logger.info(f"Uploaded node binary {version} ({len(data)} bytes)")
        elif self.registry.store.exists(self.registry.artifact_key(version)):
            binary_key = self.registry.artifact_key(version)
        else:
            raise UpdateRejectedError(version, "no artifact uploaded for this version")

        payload = UpdateArtifactsPayload(
            version=version,
            targets=tuple(resolved),
            excluded=tuple(sorted(set(excluded) & set(resolved))),
            binary_key=binary_key,
            binary_sha256=binary_sha256,
        )
        event = self.registry.append_event(EventRecord(
            sequence=0,
            kind=EventKind.UPDATE_ARTIFACTS,
            payload=payload.to_dict(),
            issued_at=utcnow_iso(),
        ))
        logger.info(f"Appended event #{event.sequence}: update-artifacts {version} for ordinals {active}")
        return event

    # =========================================================================
    # HEALTH
    # =========================================================================

    def report_health(self, now=None) -> FleetHealthSummary:
        """
        Aggregate status records.

        A node is unresponsive when its heartbeat is older than
        policy.heartbeat_interval_s * policy.staleness_missed_heartbeats.
        """
        spec = self.read_spec()
        threshold = spec.policy.staleness_threshold_s
        latest = freshest_by_ordinal(self.registry.list_statuses())

        summary = FleetHealthSummary(
            fleet_id=spec.id,
            timestamp=utcnow_iso(),
            spec_version=spec.version,
            expected_nodes=spec.machine.total_nodes,
        )
        for ordinal in sorted(latest):
            record = latest[ordinal]
            summary.nodes.append(record)
            summary.phase_counts[record.phase.value] = summary.phase_counts.get(record.phase.value, 0) + 1
            version = record.binary_version or "unknown"
            summary.version_counts[version] = summary.version_counts.get(version, 0) + 1
            if record.is_stale(threshold, now):
                summary.unresponsive.append(record.machine_id)
            if record.updates_halted:
                summary.halted.append(record.machine_id)

        summary.missing_ordinals = [o for o, _ in spec.slots() if o not in latest]

        updates = [e for e in self.list_events() if e.kind == EventKind.UPDATE_ARTIFACTS]
        if updates:
            summary.rollout = rollout_progress(updates[-1], latest.values())

        if summary.unresponsive:
            logger.warning(f"Unresponsive nodes (>{threshold:.0f}s): {summary.unresponsive}")
        return summary

    # =========================================================================
    # BALANCES
    # =========================================================================

    def check_balances(
        self,
        addresses: Optional[Sequence[str]] = None,
        minimum: Optional[int] = None,
        rpc_endpoint: Optional[str] = None,
        record: bool = False,
    ) -> BalanceReport:
        """
        Query balances and flag addresses below the minimum.

        Defaults come from the Specification's balance_check section. With
        `record`, a balance-check-request event carrying the result is
        appended to the event log for audit.
        """
        spec = self.registry.get_spec_or_none()
        section = spec.balance_check if spec else None
        addresses = list(addresses or (section.addresses if section else ()))
        minimum = minimum if minimum is not None else (section.minimum if section else 0)
        endpoint = rpc_endpoint or (section.rpc_endpoint if section else None)
        if not endpoint:
            raise ValidationError("balance_check.rpc_endpoint", "no RPC endpoint configured")

        checker = BalanceChecker(self.rpc_client_factory(endpoint))
        report = checker.check(addresses, minimum)

        if record:
            self.registry.append_event(EventRecord(
                sequence=0,
                kind=EventKind.BALANCE_CHECK_REQUEST,
                payload={"addresses": addresses, "minimum": minimum, "flagged": report.flagged},
                issued_at=utcnow_iso(),
            ))
        return report
