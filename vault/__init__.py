"""
Vault - Durable backups of node data directories.

    SnapshotManager - snapshot / restore / retention for one node slot
    SnapshotRecord  - metadata stored next to each archive

Usage:
    from vault import SnapshotManager

    manager = SnapshotManager(registry, identity, network_id, data_dir, staging_dir, policy)
    record = manager.snapshot(reason="pre-update")
    manager.restore()
"""

from vault.snapshots import SnapshotManager, SnapshotRecord

__all__ = ["SnapshotManager", "SnapshotRecord"]
