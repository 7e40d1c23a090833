"""
Rollout Gating - Ordinal-ordered, health-gated rolling updates.

Nodes are totally ordered by ordinal. Targeted ordinals (minus exclusions)
are cut into waves of `wave_width` consecutive entries. A node may begin
updating only when every targeted node in an earlier wave reports Ready at
the event's target version. With the default width of 1 this is strictly
sequential: ordinal n waits for every targeted ordinal below n.

Everything here is pure so the ordering rules can be tested without agents.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from fleet.types import EventRecord, NodeStatusRecord, Phase, RolloutProgress, UpdateArtifactsPayload


@dataclass(frozen=True)
class GateDecision:
    proceed: bool
    waiting_on: Tuple[int, ...] = ()
    reason: str = ""


def freshest_by_ordinal(statuses: Iterable[NodeStatusRecord]) -> Dict[int, NodeStatusRecord]:
    """
    Latest status record per ordinal.

    A replaced machine leaves its old record behind until the control plane
    removes it, so the record with the newest heartbeat wins.
    """
    latest: Dict[int, NodeStatusRecord] = {}
    for record in statuses:
        current = latest.get(record.ordinal)
        if current is None or record.age_seconds() < current.age_seconds():
            latest[record.ordinal] = record
    return latest


def active_targets(payload: UpdateArtifactsPayload) -> List[int]:
    return sorted(o for o in payload.targets if o not in payload.excluded)


def waves(payload: UpdateArtifactsPayload, wave_width: int = 1) -> List[List[int]]:
    if wave_width < 1:
        raise ValueError("wave_width must be >= 1")
    ordered = active_targets(payload)
    return [ordered[i:i + wave_width] for i in range(0, len(ordered), wave_width)]


def predecessors(ordinal: int, payload: UpdateArtifactsPayload, wave_width: int = 1) -> List[int]:
    """Targeted ordinals in waves before the one containing `ordinal`."""
    before: List[int] = []
    for wave in waves(payload, wave_width):
        if ordinal in wave:
            return before
        before.extend(wave)
    raise ValueError(f"ordinal {ordinal} is not targeted")


def gate_decision(
    ordinal: int,
    payload: UpdateArtifactsPayload,
    statuses: Iterable[NodeStatusRecord],
    wave_width: int = 1,
) -> GateDecision:
    """
    Decide whether the node at `ordinal` may enter Updating now.

    Args:
        ordinal: The deciding node
        payload: The update-artifacts event payload
        statuses: Status records as currently visible in the store
        wave_width: Nodes per wave
    """
    if not payload.includes(ordinal):
        return GateDecision(False, reason="not targeted")

    latest = freshest_by_ordinal(statuses)
    waiting = []
    for pred in predecessors(ordinal, payload, wave_width):
        record = latest.get(pred)
        if record is None or not record.is_ready_at(payload.version):
            waiting.append(pred)

    if waiting:
        return GateDecision(False, tuple(waiting), f"waiting on ordinals {waiting}")
    return GateDecision(True, reason="all predecessors ready")


def resolve_targets(requested: Optional[Sequence[int]], slots: Iterable[int]) -> Tuple[int, ...]:
    """Ordinals targeted by an event; None or empty means every slot."""
    known = sorted(slots)
    if not requested:
        return tuple(known)
    unknown = sorted(set(requested) - set(known))
    if unknown:
        raise ValueError(f"unknown ordinals: {unknown}")
    return tuple(sorted(set(requested)))


def rollout_progress(event: EventRecord, statuses: Iterable[NodeStatusRecord]) -> RolloutProgress:
    payload = event.update_payload()
    latest = freshest_by_ordinal(statuses)
    progress = RolloutProgress(sequence=event.sequence, version=payload.version,
                               targets=active_targets(payload))
    for ordinal in progress.targets:
        record = latest.get(ordinal)
        if record is not None and record.updates_halted:
            progress.halted.append(ordinal)
        elif record is not None and record.is_ready_at(payload.version):
            progress.done.append(ordinal)
        elif record is not None and record.phase == Phase.UPDATING:
            progress.updating.append(ordinal)
        else:
            progress.pending.append(ordinal)
    return progress
