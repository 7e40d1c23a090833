"""
Genesis - Network genesis document owned by the anchor nodes.

Anchor ordinal 0 writes the document once every anchor has published its
node ID; all other nodes wait for it. The document is never rewritten, so a
restarted or replaced ordinal-0 anchor reuses the existing one.
"""

from typing import Any, Dict, Iterable, List, Optional

from core.spec import NodeRole, Specification
from fleet.rollout import freshest_by_ordinal
from fleet.types import NodeStatusRecord, utcnow_iso

GENESIS_OWNER_ORDINAL = 0


def published_anchors(spec: Specification, statuses: Iterable[NodeStatusRecord]) -> Optional[List[NodeStatusRecord]]:
    """Status records of every anchor slot, or None while any anchor has no node ID yet."""
    latest = freshest_by_ordinal(statuses)
    anchors = []
    for ordinal in spec.anchor_ordinals():
        record = latest.get(ordinal)
        if record is None or record.role != NodeRole.ANCHOR or not record.node_id:
            return None
        anchors.append(record)
    return anchors


def build_genesis(spec: Specification, anchors: List[NodeStatusRecord]) -> Dict[str, Any]:
    return {
        "network_id": spec.network.network_id,
        "network_name": spec.network.network_name,
        "consensus_profile": spec.network.consensus_profile,
        "fleet_id": spec.id,
        "spec_version": spec.version,
        "created_at": utcnow_iso(),
        "initial_stakers": [
            {"ordinal": a.ordinal, "node_id": a.node_id} for a in sorted(anchors, key=lambda a: a.ordinal)
        ],
    }


def matches_network(genesis: Dict[str, Any], spec: Specification) -> bool:
    return genesis.get("network_id") == spec.network.network_id and genesis.get("fleet_id") == spec.id
