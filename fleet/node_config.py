"""
Node Config - Config file handed to the managed node process.

Flag names follow the node's --config-file JSON format.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

from core.atomic_ops import write_bytes_atomic
from core.spec import Specification


def build_node_config(
    spec: Specification,
    data_dir: Path,
    log_dir: Path,
    genesis_path: Path,
    staking_key_path: Path,
    public_host: str,
    http_host: str = "127.0.0.1",
    http_port: int = 0,
    bootstrap_peers: List[Tuple[str, str]] = (),
) -> Dict[str, Any]:
    """
    Args:
        bootstrap_peers: (node_id, "host:port") of anchors to bootstrap from
    """
    config: Dict[str, Any] = {
        "network-id": spec.network.network_id,
        "db-dir": str(data_dir),
        "log-dir": str(log_dir),
        "genesis-file": str(genesis_path),
        "staking-tls-key-file": str(staking_key_path),
        "public-ip": public_host,
        "http-host": http_host,
        "http-port": http_port or spec.network.http_port,
        "staking-port": spec.network.staking_port,
        "bootstrap-ids": ",".join(node_id for node_id, _ in bootstrap_peers),
        "bootstrap-ips": ",".join(endpoint for _, endpoint in bootstrap_peers),
    }
    if spec.network.consensus_profile == "dev":
        config["sybil-protection-enabled"] = False
    return config


def write_node_config(config: Dict[str, Any], path: Path):
    write_bytes_atomic(json.dumps(config, indent=2, sort_keys=True).encode(), Path(path))


def peer_list(records) -> List[Tuple[str, str]]:
    """(node_id, endpoint) pairs for status records that carry both."""
    peers = []
    for record in records:
        if record.node_id and record.endpoint:
            peers.append((record.node_id, record.endpoint))
    return peers

