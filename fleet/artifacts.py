"""
Artifacts - Fetching and installing node binaries.

Binaries are uploaded to the store by the control plane under
{fleet}/artifacts/{version}/node. Agents download, verify the sha256 (when
one was recorded) and install to {install_dir}/{version}/node.
"""

import hashlib
import logging
from pathlib import Path
from typing import Optional

from core.atomic_ops import write_bytes_atomic
from core.errors import ArtifactError, StoreKeyNotFound
from fleet.registry import FleetRegistry

logger = logging.getLogger("fleet.artifacts")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def install_artifact(
    registry: FleetRegistry,
    version: str,
    install_dir: Path,
    binary_key: Optional[str] = None,
    expected_sha256: Optional[str] = None,
) -> Path:
    """
    Download and install the binary for `version`.

    An already-installed binary whose checksum matches is reused.

    Raises:
        ArtifactError: Object missing or checksum mismatch
    """
    key = binary_key or registry.artifact_key(version)
    target = Path(install_dir) / version / "node"

    if target.exists() and expected_sha256 and sha256_file(target) == expected_sha256:
        logger.debug(f"Artifact {version} already installed at {target}")
        return target

    try:
        data = registry.get_object(key)
    except StoreKeyNotFound:
        raise ArtifactError(version, f"object {key} not found")

    actual = hashlib.sha256(data).hexdigest()
    if expected_sha256 and actual != expected_sha256:
        raise ArtifactError(version, f"checksum mismatch (expected {expected_sha256}, got {actual})")

    write_bytes_atomic(data, target, mode=0o755)
    logger.info(f"Installed node binary {version} ({len(data)} bytes) at {target}")
    return target
