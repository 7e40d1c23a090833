"""
Staking Keys - Local key material for one node.

The key is generated once per machine and kept under the agent's work
directory. The node ID published for genesis and discovery is derived from it
before the node process ever runs; once the process is up, the ID it reports
through its info API takes precedence.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from core.atomic_ops import write_bytes_atomic
from core.ids import SHORT_ID_LEN, NodeId

logger = logging.getLogger("fleet.keys")

KEY_FILE = "staking.key"
KEY_BYTES = 32


@dataclass(frozen=True)
class StakingKeys:
    key_path: Path
    node_id: str


def derive_node_id(secret: bytes) -> str:
    public = hashlib.sha256(secret).digest()
    return str(NodeId(hashlib.sha256(public).digest()[:SHORT_ID_LEN]))


def load_or_create(keys_dir: Path) -> StakingKeys:
    """Load the node's staking key, generating it on first use."""
    keys_dir = Path(keys_dir)
    key_path = keys_dir / KEY_FILE

    if key_path.exists():
        try:
            secret = bytes.fromhex(key_path.read_text().strip())
        except ValueError:
            raise ValueError(f"staking key {key_path} is not valid hex")
        if len(secret) != KEY_BYTES:
            raise ValueError(f"staking key {key_path} has {len(secret)} bytes, expected {KEY_BYTES}")
    else:
        secret = secrets.token_bytes(KEY_BYTES)
        write_bytes_atomic(secret.hex().encode(), key_path, mode=0o600)
        logger.info(f"Generated staking key at {key_path}")

    return StakingKeys(key_path=key_path, node_id=derive_node_id(secret))
