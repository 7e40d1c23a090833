#!/usr/bin/env python3
"""
Fleet Node Agent - Bootstraps and operates one validator machine.

The agent runs once per machine as a long-lived process and:
1. Fetches the Specification and its own Node Identity
2. Prepares keys, genesis and node config (anchors own genesis, joining
   nodes discover Ready anchors first)
3. Restores the slot's latest snapshot when replacing a machine
4. Starts and supervises the managed node process
5. Waits for the node to sync, then reports Ready
6. Heartbeats, snapshots on a schedule, and applies rolling updates from
   the event log in ordinal order

Lifecycle:
    uninitialized -> provisioning-local -> restoring -> starting
        -> bootstrapping -> ready <-> updating
    any phase -> degraded (bootstrap retry is the only way back)

Threads:
    transition loop   owns the phase (the only writer)
    heartbeat         refreshes the status record, probes chain height
    snapshots         scheduled snapshots while Ready
    supervision       restarts the node after unexpected exits

All cross-node waits poll the store with bounded backoff and abort as soon
as stop() is called; the agent is then left in its last recorded phase.

Usage:
    agent = NodeAgent(registry, identity, settings, node)
    agent.run()             # blocks until stop()
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.atomic_ops import write_json_atomic
from core.config import AgentSettings
from core.errors import (
    BootstrapTimeoutError,
    CoordinationStoreError,
    FleetError,
    RolloutGateTimeoutError,
    ShutdownRequested,
    SnapshotError,
    SnapshotInProgress,
    StoreKeyNotFound,
)
from core.polling import Backoff, PollTimeout, poll_until, retry_call
from core.spec import NodeRole, PolicySpec, Specification, is_newer
from fleet import genesis as genesismod
from fleet import keys as keysmod
from fleet.artifacts import install_artifact
from fleet.heartbeat import StatusPublisher
from fleet.managed_node import ManagedNode
from fleet.node_config import build_node_config, peer_list, write_node_config
from fleet.phases import PhaseState
from fleet.registry import FleetRegistry
from fleet.rollout import freshest_by_ordinal, gate_decision
from fleet.supervisor import ProcessSupervisor
from fleet.types import EventKind, EventRecord, NodeIdentity, Phase
from vault.snapshots import SnapshotManager

logger = logging.getLogger("fleet.agent")

# Bound on "process is alive" after spawning it
PROCESS_START_TIMEOUT_S = 30.0


class FatalAgentError(FleetError):
    """The agent cannot run at all (no specification, wrong fleet or slot)."""
    pass


class NodeAgent:
    """
    State machine for one node.

    Every phase has exactly one handler. A handler does the work of its
    phase and ends by advancing to the next one (or returns to be called
    again). Handler failures that mean "cannot make progress" move the agent
    to Degraded; exhausted store retries leave the phase unchanged and the
    handler runs again on the next step.
    """

    def __init__(
        self,
        registry: FleetRegistry,
        identity: NodeIdentity,
        settings: AgentSettings,
        node: ManagedNode,
        spec_fetch_attempts: int = PolicySpec.spec_fetch_attempts,
        spec_fetch_backoff: Backoff = Backoff(),
        clear_halt: bool = False,
    ):
        """
        Args:
            clear_halt: Resume automatic updates on a machine whose previous
                run halted them after a failed update
        """
        self.registry = registry
        self.identity = identity
        self.settings = settings
        self.node = node
        self.spec_fetch_attempts = spec_fetch_attempts
        self.spec_fetch_backoff = spec_fetch_backoff
        self.clear_halt = clear_halt

        self.stop_event = threading.Event()
        self.state = PhaseState()
        self.publisher = StatusPublisher(registry, identity)

        # Filled in as the phases progress
        self.spec: Optional[Specification] = None
        self.supervisor: Optional[ProcessSupervisor] = None
        self.snapshots: Optional[SnapshotManager] = None
        self.version: Optional[str] = None
        self.binary_path: Optional[Path] = None
        self._bootstrap_timeout_s = 0.0
        self._pending_update: Optional[EventRecord] = None
        self._active_update: Optional[EventRecord] = None
        # Degraded not yet durably recorded (store outage)
        self._unrecorded_failure: Optional[str] = None
        self._threads: List[threading.Thread] = []

        self._handlers: Dict[Phase, Callable[[], None]] = {
            Phase.UNINITIALIZED: self._handle_uninitialized,
            Phase.PROVISIONING_LOCAL: self._handle_provisioning_local,
            Phase.RESTORING: self._handle_restoring,
            Phase.STARTING: self._handle_starting,
            Phase.BOOTSTRAPPING: self._handle_bootstrapping,
            Phase.READY: self._handle_ready,
            Phase.UPDATING: self._handle_updating,
            Phase.DEGRADED: self._handle_degraded,
        }
        missing = set(Phase) - set(self._handlers)
        if missing:
            raise TypeError(f"no handler for phases: {sorted(p.value for p in missing)}")

    # =========================================================================
    # PATHS AND POLICY
    # =========================================================================

    @property
    def phase(self) -> Phase:
        return self.state.current

    @property
    def policy(self) -> PolicySpec:
        return self.spec.policy if self.spec else PolicySpec()

    @property
    def work_dir(self) -> Path:
        return Path(self.settings.work_dir)

    @property
    def data_dir(self) -> Path:
        return Path(self.settings.data_dir)

    @property
    def config_path(self) -> Path:
        return self.work_dir / "node-config.json"

    @property
    def genesis_path(self) -> Path:
        return self.work_dir / "genesis.json"

    def _backoff(self, max_s: Optional[float] = None) -> Backoff:
        policy = self.policy
        return Backoff(initial_s=policy.backoff_initial_s, max_s=max_s or policy.backoff_max_s)

    def _wait_for(self, check, timeout_s: float, description: str, backoff: Optional[Backoff] = None,
                  tolerate=(CoordinationStoreError,)):
        """poll_until with the agent's stop signal, timeouts become BootstrapTimeoutError."""
        try:
            return poll_until(
                check,
                timeout_s=timeout_s,
                backoff=backoff or self._backoff(),
                stop_event=self.stop_event,
                description=description,
                tolerate=tolerate,
            )
        except PollTimeout:
            raise BootstrapTimeoutError(description, timeout_s)

    # =========================================================================
    # TRANSITION LOOP
    # =========================================================================

    def _transition(self, target: Phase, reason: str = "", **fields):
        self.state.advance(
            target,
            persist=lambda phase: self.publisher.publish(phase, **fields),
            reason=reason,
        )

    def _degrade(self, reason: str):
        """
        Record Degraded with the reason. A failed update also halts further updates.

        If the store is unavailable the failure is kept and recorded on a
        later step; the agent stays in its last durable phase meanwhile.
        """
        fields = {"detail": reason}
        event = self._active_update or self._pending_update
        if event is not None:
            fields["updates_halted"] = True
            fields["last_event_seq"] = max(event.sequence, self.publisher.record.last_event_seq)
        if self._unrecorded_failure is None:
            logger.error(f"Node {self.identity.slot} degraded: {reason}")
        self._unrecorded_failure = reason
        try:
            self._transition(Phase.DEGRADED, reason=reason, **fields)
        except CoordinationStoreError as e:
            logger.warning(f"Store unavailable while recording Degraded, will retry: {e}")
            self._sleep(self.policy.backoff_max_s)
            return
        self._unrecorded_failure = None
        self._active_update = None
        self._pending_update = None

    def step(self):
        """Run the handler of the current phase once."""
        phase = self.state.current
        if self._unrecorded_failure is not None and phase != Phase.DEGRADED:
            self._degrade(self._unrecorded_failure)
            return
        try:
            self._handlers[phase]()
        except (ShutdownRequested, FatalAgentError):
            raise
        except CoordinationStoreError as e:
            logger.warning(f"Store unavailable during {phase.value}, will retry: {e}")
            self._sleep(self.policy.backoff_max_s)
        except FleetError as e:
            if phase == Phase.DEGRADED:
                logger.warning(f"Bootstrap retry failed: {e}")
                return
            self._degrade(str(e))
        except (OSError, ValueError) as e:
            if phase == Phase.DEGRADED:
                logger.warning(f"Bootstrap retry failed: {e}")
                return
            self._degrade(f"{type(e).__name__}: {e}")

    def run(self):
        """Bind this thread as the phase owner and loop until stop()."""
        self.state.bind_owner()
        logger.info(
            f"Agent starting for {self.identity.slot} (machine {self.identity.machine_id}, "
            f"fleet {self.identity.fleet_id})"
        )
        try:
            while not self.stop_event.is_set():
                self.step()
                if self.spec is not None and not self._threads:
                    self._start_duties()
        except ShutdownRequested as e:
            logger.info(f"Shutdown requested ({e.waiting_for or self.phase.value})")
        finally:
            self.shutdown()

    def stop(self):
        """Signal the agent to stop (safe from any thread or signal handler)."""
        self.stop_event.set()

    def _sleep(self, seconds: float):
        if self.stop_event.wait(seconds):
            raise ShutdownRequested(f"{self.phase.value} sleep")

    # =========================================================================
    # PHASE HANDLERS
    # =========================================================================

    def _handle_uninitialized(self):
        try:
            spec = retry_call(
                self.registry.get_spec,
                attempts=self.spec_fetch_attempts,
                backoff=self.spec_fetch_backoff,
                retry_on=(CoordinationStoreError, StoreKeyNotFound),
                stop_event=self.stop_event,
                description=f"fetch specification of {self.identity.fleet_id}",
            )
        except (CoordinationStoreError, StoreKeyNotFound) as e:
            # Fatal: the host environment restarts the agent
            raise FatalAgentError(f"cannot fetch specification: {e}")

        if spec.id != self.identity.fleet_id:
            raise FatalAgentError(f"identity belongs to fleet {self.identity.fleet_id}, store holds {spec.id}")
        if spec.role_of(self.identity.ordinal) != self.identity.role:
            raise FatalAgentError(
                f"slot {self.identity.slot} does not exist in specification v{spec.version}"
            )

        self._apply_spec(spec)
        previous = self.publisher.resume_from_store()
        if self.clear_halt and self.publisher.record.updates_halted:
            logger.info("Clearing update halt at operator request")
            self.publisher.update(updates_halted=False)
        self.version = (previous.binary_version if previous and previous.binary_version
                        else spec.artifacts.version)
        self._transition(Phase.PROVISIONING_LOCAL, reason=f"specification v{spec.version} loaded",
                         spec_version=spec.version, detail="")

    def _apply_spec(self, spec: Specification):
        self.spec = spec
        policy = spec.policy
        if self.supervisor is None:
            self.supervisor = ProcessSupervisor(self.node, policy.max_restarts, policy.restart_window_s)
        else:
            self.supervisor.max_restarts = policy.max_restarts
            self.supervisor.window_s = policy.restart_window_s
        self.snapshots = SnapshotManager(
            registry=self.registry,
            identity=self.identity,
            network_id=spec.network.network_id,
            data_dir=self.data_dir,
            staging_dir=self.settings.staging_dir,
            policy=policy,
            node=self.node,
        )

    def _handle_provisioning_local(self):
        spec = self.spec
        policy = self.policy

        staking = keysmod.load_or_create(self.settings.keys_dir)
        endpoint = f"{self.settings.public_host}:{spec.network.staking_port}"
        self.publisher.publish(node_id=staking.node_id, endpoint=endpoint)

        genesis = self._ensure_genesis()
        self.genesis_path.parent.mkdir(parents=True, exist_ok=True)
        write_json_atomic(genesis, self.genesis_path)

        if self.identity.role == NodeRole.ANCHOR:
            others = [r for r in self.registry.list_statuses()
                      if r.role == NodeRole.ANCHOR and r.ordinal != self.identity.ordinal]
            peers = peer_list(freshest_by_ordinal(others).values())
        else:
            peers = self._wait_for(
                self._ready_anchor_peers,
                timeout_s=policy.discovery_timeout_s,
                description="a Ready anchor node",
            )
            logger.info(f"Discovered {len(peers)} Ready anchor(s): {[p[1] for p in peers]}")

        config = build_node_config(
            spec,
            data_dir=self.data_dir,
            log_dir=self.work_dir / "logs",
            genesis_path=self.genesis_path,
            staking_key_path=staking.key_path,
            public_host=self.settings.public_host,
            http_host=self.settings.http_host,
            http_port=self.settings.http_port or 0,
            bootstrap_peers=peers,
        )
        write_node_config(config, self.config_path)

        self.binary_path = self._binary_for(self.version)
        self._transition(Phase.RESTORING, reason="local configuration written")

    def _ensure_genesis(self) -> dict:
        spec = self.spec
        timeout = self.policy.discovery_timeout_s
        is_owner = (self.identity.role == NodeRole.ANCHOR
                    and self.identity.ordinal == min(spec.anchor_ordinals()))

        if is_owner and self.registry.get_genesis() is None:
            anchors = self._wait_for(
                lambda: genesismod.published_anchors(spec, self.registry.list_statuses()),
                timeout_s=timeout,
                description="all anchor node IDs",
            )
            self.registry.put_genesis(genesismod.build_genesis(spec, anchors))
            logger.info(f"Wrote genesis with {len(anchors)} initial staker(s)")

        genesis = self._wait_for(self.registry.get_genesis, timeout_s=timeout, description="genesis document")
        if not genesismod.matches_network(genesis, spec):
            raise FleetError(
                f"genesis is for network {genesis.get('network_id')} fleet {genesis.get('fleet_id')}"
            )
        return genesis

    def _ready_anchor_peers(self):
        anchors = [r for r in self.registry.list_statuses()
                   if r.role == NodeRole.ANCHOR and r.phase == Phase.READY]
        return peer_list(freshest_by_ordinal(anchors).values()) or None

    def _binary_for(self, version: str, binary_key: Optional[str] = None,
                    sha256: Optional[str] = None) -> Path:
        """Binary for `version`: from the store when uploaded there, else the local one."""
        spec = self.spec
        if version == spec.artifacts.version:
            binary_key = binary_key or spec.artifacts.binary_key
            sha256 = sha256 or spec.artifacts.binary_sha256
        if binary_key is None and not self.registry.store.exists(self.registry.artifact_key(version)):
            return Path(self.settings.node_binary)
        return install_artifact(self.registry, version, self.work_dir / "bin", binary_key, sha256)

    def _handle_restoring(self):
        if self.data_dir.is_dir() and any(self.data_dir.iterdir()):
            logger.info(f"Local data present in {self.data_dir}, skipping restore")
        elif self.snapshots.latest_record() is not None:
            # Replacement machine: must not start on unverified state
            self.snapshots.restore(self.data_dir)
        else:
            logger.info(f"No snapshot for {self.identity.slot}, starting with empty data directory")
            self.data_dir.mkdir(parents=True, exist_ok=True)
        self._transition(Phase.STARTING, reason="data directory ready")

    def _handle_starting(self):
        self.supervisor.start(self.config_path, self.binary_path)
        self._wait_for(
            lambda: self.node.is_running(),
            timeout_s=PROCESS_START_TIMEOUT_S,
            description="node process to come up",
            backoff=Backoff(initial_s=min(0.5, self.policy.probe_interval_s), max_s=self.policy.probe_interval_s),
        )
        self._bootstrap_timeout_s = self.policy.bootstrap_timeout_s
        self._transition(Phase.BOOTSTRAPPING, reason="node process alive", binary_version=self.version)

    def _reference_height(self) -> Optional[int]:
        if self.identity.role == NodeRole.ANCHOR:
            return None
        heights = [r.height for r in self.registry.list_statuses()
                   if r.role == NodeRole.ANCHOR and r.phase == Phase.READY and r.height is not None]
        return max(heights) if heights else None

    def _synced(self) -> bool:
        failure = self.supervisor.failure
        if failure is not None:
            raise failure
        status = self.node.probe()
        fields = {}
        if status.node_id:
            fields["node_id"] = status.node_id
        if status.height is not None:
            fields["height"] = status.height
        if fields:
            self.publisher.update(**fields)
        return status.is_synced(self.identity.role, self._reference_height(), self.policy.sync_lag_tolerance)

    def _handle_bootstrapping(self):
        self._wait_for(
            self._synced,
            timeout_s=self._bootstrap_timeout_s,
            description=f"node to sync at {self.version}",
            backoff=Backoff(initial_s=self.policy.probe_interval_s, factor=1.0,
                            max_s=self.policy.probe_interval_s),
        )
        fields = {"binary_version": self.version, "detail": ""}
        if self._active_update is not None:
            fields["last_event_seq"] = self._active_update.sequence
            logger.info(f"Update to {self.version} complete (event #{self._active_update.sequence})")
            self._active_update = None
        self._transition(Phase.READY, reason=f"synced at {self.version}", **fields)

    def _handle_ready(self):
        failure = self.supervisor.failure
        if failure is not None:
            raise failure

        self._refresh_spec()

        record = self.publisher.record
        if not record.updates_halted:
            for event in self.registry.read_events_from(record.last_event_seq + 1):
                if self._consider_event(event):
                    self._transition(Phase.UPDATING, reason=f"event #{event.sequence} to {self.version_of(event)}")
                    return
        self._sleep(self.policy.event_poll_interval_s)

    @staticmethod
    def version_of(event: EventRecord) -> str:
        return event.payload.get("version", "?")

    def _refresh_spec(self):
        """Pick up policy changes from newer Specification versions."""
        try:
            latest = self.registry.get_spec()
        except StoreKeyNotFound:
            return
        if latest.version > self.spec.version:
            logger.info(f"Specification updated to v{latest.version}")
            self._apply_spec(latest)
            self.publisher.update(spec_version=latest.version)

    def _mark_processed(self, event: EventRecord, detail: str = ""):
        self.publisher.publish(last_event_seq=event.sequence, detail=detail)

    def _consider_event(self, event: EventRecord) -> bool:
        """
        Decide what to do with one event.

        Returns:
            True if the node should update now (event kept as pending)
        """
        if event.kind != EventKind.UPDATE_ARTIFACTS:
            # Balance checks are served by the control plane
            self._mark_processed(event)
            return False

        payload = event.update_payload()
        if not payload.includes(self.identity.ordinal):
            self._mark_processed(event)
            return False

        if not is_newer(payload.version, self.version):
            logger.info(f"Event #{event.sequence}: already at {self.version}, nothing to do for {payload.version}")
            self._mark_processed(event)
            return False

        policy = self.policy
        logger.info(f"Event #{event.sequence}: waiting for rollout gate to {payload.version}")
        try:
            poll_until(
                lambda: self._gate_open(event),
                timeout_s=policy.rollout_gate_timeout_s,
                backoff=self._backoff(max_s=policy.event_poll_interval_s),
                stop_event=self.stop_event,
                description=f"rollout gate for event #{event.sequence}",
                tolerate=(CoordinationStoreError,),
            )
        except PollTimeout:
            decision = gate_decision(self.identity.ordinal, payload, self.registry.list_statuses(),
                                     policy.wave_width)
            error = RolloutGateTimeoutError(event.sequence, payload.version, decision.waiting_on,
                                            policy.rollout_gate_timeout_s)
            logger.error(f"{error}; not updating, operator action required")
            self._mark_processed(event, detail=str(error))
            return False

        self._pending_update = event
        return True

    def _gate_open(self, event: EventRecord) -> bool:
        failure = self.supervisor.failure
        if failure is not None:
            raise failure
        decision = gate_decision(
            self.identity.ordinal,
            event.update_payload(),
            self.registry.list_statuses(),
            self.policy.wave_width,
        )
        if not decision.proceed:
            logger.debug(f"Gate closed: {decision.reason}")
        return decision.proceed

    def _handle_updating(self):
        event = self._pending_update or self._active_update
        if event is None:
            raise FleetError("updating without a pending event")
        payload = event.update_payload()
        self._active_update = event
        self._pending_update = None

        record = self._snapshot_blocking(reason=f"pre-update to {payload.version}")
        self.publisher.update(last_snapshot_id=record.snapshot_id)

        binary = self._binary_for(payload.version, payload.binary_key, payload.binary_sha256)

        logger.info(f"Updating {self.identity.slot} from {self.version} to {payload.version}")
        self.supervisor.stop_node()
        self.binary_path = binary
        self.version = payload.version
        self.supervisor.start(self.config_path, self.binary_path)

        self._bootstrap_timeout_s = self.policy.update_timeout_s
        self._transition(Phase.BOOTSTRAPPING, reason=f"restarted at {payload.version}")

    def _snapshot_blocking(self, reason: str):
        """Synchronous snapshot, waiting out a scheduled one already running."""
        return poll_until(
            lambda: self.snapshots.snapshot(reason=reason, binary_version=self.version),
            timeout_s=self.policy.update_timeout_s,
            backoff=Backoff(initial_s=0.1, max_s=1.0),
            stop_event=self.stop_event,
            description="snapshot mutex",
            tolerate=(SnapshotInProgress,),
        )

    def _handle_degraded(self):
        if self.node.is_running() and self.supervisor is not None and self.supervisor.failure is None:
            status = self.node.probe()
            if status.is_synced(self.identity.role, self._reference_height(), self.policy.sync_lag_tolerance):
                self._bootstrap_timeout_s = self.policy.bootstrap_timeout_s
                self._transition(Phase.BOOTSTRAPPING, reason="bootstrap retry: node reports synced")
                return
        self._sleep(max(self.policy.probe_interval_s, self.policy.heartbeat_interval_s))

    # =========================================================================
    # DUTY THREADS
    # =========================================================================

    def _start_duties(self):
        policy = self.policy
        duties = [
            ("heartbeat", lambda: self.policy.heartbeat_interval_s, self._heartbeat_once),
            ("snapshots", lambda: self.policy.snapshot_interval_s, self._scheduled_snapshot),
            ("supervision", lambda: self.policy.probe_interval_s, self._supervise_once),
        ]
        for name, interval, fn in duties:
            thread = threading.Thread(
                target=self._duty_loop,
                args=(name, interval, fn),
                name=f"agent-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.debug(f"Started duty threads (heartbeat every {policy.heartbeat_interval_s:.0f}s)")

    def _duty_loop(self, name: str, interval: Callable[[], float], fn: Callable[[], None]):
        while not self.stop_event.wait(interval()):
            try:
                fn()
            except (FleetError, OSError) as e:
                logger.warning(f"{name} duty failed: {e}")

    def _heartbeat_once(self):
        if self.node.is_running():
            status = self.node.probe()
            if status.height is not None:
                self.publisher.update(height=status.height)
        self.publisher.beat()

    def _scheduled_snapshot(self):
        if self.state.current != Phase.READY:
            return
        try:
            record = self.snapshots.snapshot(reason="scheduled", binary_version=self.version)
            self.publisher.update(last_snapshot_id=record.snapshot_id)
        except SnapshotInProgress:
            logger.debug("Scheduled snapshot skipped, another is running")
        except SnapshotError as e:
            logger.warning(f"Scheduled snapshot failed, will retry next interval: {e}")

    def _supervise_once(self):
        if self.supervisor is not None:
            self.supervisor.check()

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def shutdown(self):
        """Snapshot if Ready, stop the node, write a final heartbeat."""
        self.stop_event.set()
        if self.state.current == Phase.READY and self.snapshots is not None:
            try:
                record = self.snapshots.snapshot(reason="shutdown", binary_version=self.version)
                self.publisher.update(last_snapshot_id=record.snapshot_id)
            except (SnapshotError, CoordinationStoreError) as e:
                logger.warning(f"Shutdown snapshot failed: {e}")

        if self.supervisor is not None:
            self.supervisor.stop_node()

        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []

        self.publisher.beat()
        logger.info(f"Agent for {self.identity.slot} stopped in phase {self.state.current.value}")
