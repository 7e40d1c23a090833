"""
Snapshots - Backup and restore of a node's local data directory.

A snapshot is a tar.gz archive of the data directory plus a metadata record,
both stored in the coordination store under the node's slot (role-ordinal),
so a replacement machine for the same slot can find and restore it.

Guarantees:
    - At most one snapshot per node at a time (in-process mutex)
    - The managed process is paused only while the data directory is copied,
      and never longer than policy.snapshot_max_pause_s
    - Restore verifies size and sha256 before anything is moved into place
    - Restore never silently falls back to an empty directory

Usage:
    manager = SnapshotManager(registry, identity, network_id, data_dir, staging_dir, policy, node)
    record = manager.snapshot(reason="scheduled")
    manager.restore(dest=data_dir)
"""

import hashlib
import io
import logging
import os
import shutil
import tarfile
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.atomic_ops import replace_directory_atomic
from core.errors import RestoreError, SnapshotError, SnapshotInProgress, StoreKeyNotFound
from core.spec import PolicySpec
from fleet.managed_node import ManagedNode
from fleet.registry import FleetRegistry
from fleet.types import NodeIdentity, age_of

logger = logging.getLogger("vault.snapshots")


@dataclass(frozen=True)
class SnapshotRecord:
    """Metadata of one durable backup, written only by the owning agent."""
    snapshot_id: str
    fleet_id: str
    network_id: int
    role: str
    ordinal: int
    machine_id: str
    object_key: str
    size_bytes: int
    sha256: str
    created_at: str
    binary_version: Optional[str] = None
    reason: str = ""
    pause_s: float = 0.0

    @property
    def slot(self) -> str:
        return f"{self.role}-{self.ordinal}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapshotRecord":
        return cls(
            snapshot_id=data["snapshot_id"],
            fleet_id=data["fleet_id"],
            network_id=int(data["network_id"]),
            role=data["role"],
            ordinal=int(data["ordinal"]),
            machine_id=data["machine_id"],
            object_key=data["object_key"],
            size_bytes=int(data["size_bytes"]),
            sha256=data["sha256"],
            created_at=data["created_at"],
            binary_version=data.get("binary_version"),
            reason=data.get("reason", ""),
            pause_s=float(data.get("pause_s", 0.0)),
        )


def _new_snapshot_id() -> str:
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S%fZ}-{uuid.uuid4().hex[:8]}"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _bounded_copytree(src: Path, dst: Path, deadline: float):
    """copytree that aborts once the monotonic deadline passes."""

    def copy_file(s, d):
        if time.monotonic() > deadline:
            raise SnapshotError("pause bound exceeded while copying data directory")
        return shutil.copy2(s, d)

    shutil.copytree(src, dst, copy_function=copy_file, symlinks=True)


def _archive(directory: Path) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for entry in sorted(directory.iterdir()):
            tar.add(entry, arcname=entry.name)
    return buffer.getvalue()


def _safe_members(tar: tarfile.TarFile) -> List[tarfile.TarInfo]:
    members = tar.getmembers()
    for member in members:
        name = member.name
        if name.startswith("/") or ".." in Path(name).parts:
            raise RestoreError(RestoreError.CORRUPT, f"archive member escapes target: {name}")
        if member.issym() or member.islnk():
            target = member.linkname
            if target.startswith("/") or ".." in Path(target).parts:
                raise RestoreError(RestoreError.CORRUPT, f"archive link escapes target: {name}")
    return members


class SnapshotManager:
    """Snapshot, restore and retention for one node's slot."""

    def __init__(
        self,
        registry: FleetRegistry,
        identity: NodeIdentity,
        network_id: int,
        data_dir: Path,
        staging_dir: Path,
        policy: PolicySpec,
        node: Optional[ManagedNode] = None,
    ):
        self.registry = registry
        self.identity = identity
        self.network_id = network_id
        self.data_dir = Path(data_dir)
        self.staging_dir = Path(staging_dir)
        self.policy = policy
        self.node = node
        self._mutex = threading.Lock()

    # =========================================================================
    # SNAPSHOT
    # =========================================================================

    def snapshot(self, reason: str = "scheduled", binary_version: Optional[str] = None) -> SnapshotRecord:
        """
        Take a snapshot of the data directory.

        Raises:
            SnapshotInProgress: Another snapshot of this node is running
            SnapshotError: Data directory missing or pause bound exceeded
            CoordinationStoreError: Upload failed after retries
        """
        if not self._mutex.acquire(blocking=False):
            raise SnapshotInProgress(f"snapshot of {self.identity.slot} already running")
        try:
            return self._snapshot_locked(reason, binary_version)
        finally:
            self._mutex.release()

    def _snapshot_locked(self, reason: str, binary_version: Optional[str]) -> SnapshotRecord:
        if not self.data_dir.is_dir():
            raise SnapshotError(f"data directory {self.data_dir} does not exist")

        snapshot_id = _new_snapshot_id()
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        copy_dir = self.staging_dir / f"snapshot-{snapshot_id}"

        try:
            started = time.monotonic()
            deadline = started + self.policy.snapshot_max_pause_s
            if self.node is not None:
                with self.node.quiesced():
                    _bounded_copytree(self.data_dir, copy_dir, deadline)
            else:
                _bounded_copytree(self.data_dir, copy_dir, deadline)
            pause_s = time.monotonic() - started
            logger.debug(f"Data directory copied in {pause_s:.2f}s")

            archive = _archive(copy_dir)
        except OSError as e:
            raise SnapshotError(f"could not copy data directory: {e}")
        finally:
            shutil.rmtree(copy_dir, ignore_errors=True)

        record = SnapshotRecord(
            snapshot_id=snapshot_id,
            fleet_id=self.identity.fleet_id,
            network_id=self.network_id,
            role=self.identity.role.value,
            ordinal=self.identity.ordinal,
            machine_id=self.identity.machine_id,
            object_key=self.registry.backup_key(self.identity.slot, snapshot_id),
            size_bytes=len(archive),
            sha256=_sha256(archive),
            created_at=datetime.now(timezone.utc).isoformat(),
            binary_version=binary_version,
            reason=reason,
            pause_s=round(pause_s, 3),
        )
        self.registry.put_snapshot(self.identity.slot, snapshot_id, record.to_dict(), archive)
        logger.info(
            f"Snapshot {snapshot_id} uploaded ({record.size_bytes} bytes, "
            f"paused {record.pause_s:.2f}s, reason: {reason})"
        )

        self.apply_retention()
        return record

    # =========================================================================
    # RECORDS
    # =========================================================================

    def list_records(self, slot: Optional[str] = None) -> List[SnapshotRecord]:
        """Snapshot records for a slot, newest first."""
        slot = slot or self.identity.slot
        records = []
        for data in self.registry.list_snapshot_records(slot):
            try:
                records.append(SnapshotRecord.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Ignoring malformed snapshot record in {slot}: {e}")
        records.sort(key=lambda r: (r.created_at, r.snapshot_id), reverse=True)
        return records

    def latest_record(self, slot: Optional[str] = None) -> Optional[SnapshotRecord]:
        records = self.list_records(slot)
        return records[0] if records else None

    def apply_retention(self, slot: Optional[str] = None) -> List[str]:
        """Delete all but the newest `snapshot_retention` snapshots. Returns deleted ids."""
        slot = slot or self.identity.slot
        keep = self.policy.snapshot_retention
        deleted = []
        for record in self.list_records(slot)[keep:]:
            self.registry.delete_snapshot(slot, record.snapshot_id)
            deleted.append(record.snapshot_id)
        if deleted:
            logger.info(f"Retention removed {len(deleted)} old snapshot(s) of {slot}")
        return deleted

    # =========================================================================
    # RESTORE
    # =========================================================================

    def restore(self, dest: Optional[Path] = None, slot: Optional[str] = None,
                snapshot_id: Optional[str] = None) -> Path:
        """
        Restore the most recent snapshot of a slot into `dest`.

        Args:
            dest: Target data directory (default: this node's data_dir)
            slot: Slot to restore (default: this node's slot)
            snapshot_id: Restore a specific snapshot instead of the newest

        Returns:
            The restored directory

        Raises:
            RestoreError: missing, corrupt or stale snapshot
        """
        dest = Path(dest or self.data_dir)
        slot = slot or self.identity.slot
        record = self._select(slot, snapshot_id)

        try:
            archive = self.registry.get_object(record.object_key)
        except StoreKeyNotFound:
            raise RestoreError(RestoreError.MISSING, f"archive {record.object_key} not found")

        if len(archive) != record.size_bytes:
            raise RestoreError(
                RestoreError.CORRUPT,
                f"size mismatch for {record.snapshot_id}: expected {record.size_bytes}, got {len(archive)}",
            )
        actual = _sha256(archive)
        if actual != record.sha256:
            raise RestoreError(
                RestoreError.CORRUPT,
                f"checksum mismatch for {record.snapshot_id}: expected {record.sha256}, got {actual}",
            )

        dest.parent.mkdir(parents=True, exist_ok=True)
        staged = dest.parent / f".{dest.name}.restore.{os.getpid()}"
        shutil.rmtree(staged, ignore_errors=True)
        staged.mkdir(parents=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
                tar.extractall(staged, members=_safe_members(tar), filter="data")
            replace_directory_atomic(staged, dest)
        except tarfile.TarError as e:
            raise RestoreError(RestoreError.CORRUPT, f"archive unreadable: {e}")
        finally:
            shutil.rmtree(staged, ignore_errors=True)

        logger.info(f"Restored snapshot {record.snapshot_id} of {slot} into {dest}")
        return dest

    def _select(self, slot: str, snapshot_id: Optional[str]) -> SnapshotRecord:
        records = self.list_records(slot)
        if snapshot_id is not None:
            records = [r for r in records if r.snapshot_id == snapshot_id]
        if not records:
            raise RestoreError(RestoreError.MISSING, f"no snapshot record for {slot}")

        matching = [
            r for r in records
            if r.fleet_id == self.identity.fleet_id and r.network_id == self.network_id
        ]
        if not matching:
            newest = records[0]
            raise RestoreError(
                RestoreError.STALE,
                f"snapshot {newest.snapshot_id} belongs to fleet {newest.fleet_id} "
                f"network {newest.network_id}",
            )

        record = matching[0]
        max_age = self.policy.snapshot_max_age_s
        if max_age > 0:
            age = age_of(record.created_at)
            if age > max_age:
                raise RestoreError(
                    RestoreError.STALE,
                    f"snapshot {record.snapshot_id} is {age:.0f}s old (limit {max_age:.0f}s)",
                )
        return record
