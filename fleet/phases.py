"""
Phase Machine - Legal lifecycle transitions and the authoritative phase holder.

Exactly one thread (the agent's transition loop) may advance the phase.
Other threads (heartbeat, snapshot scheduler, supervisor) only read it.

A transition is durable-first: the caller-supplied `persist` callback must
succeed before the in-memory phase moves, so an interrupted transition leaves
the agent in its last recorded phase.
"""

import logging
import threading
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from core.errors import FleetError
from fleet.types import Phase

logger = logging.getLogger("fleet.phases")


TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.UNINITIALIZED: frozenset({Phase.PROVISIONING_LOCAL, Phase.DEGRADED}),
    Phase.PROVISIONING_LOCAL: frozenset({Phase.RESTORING, Phase.DEGRADED}),
    Phase.RESTORING: frozenset({Phase.STARTING, Phase.DEGRADED}),
    Phase.STARTING: frozenset({Phase.BOOTSTRAPPING, Phase.DEGRADED}),
    Phase.BOOTSTRAPPING: frozenset({Phase.READY, Phase.DEGRADED}),
    Phase.READY: frozenset({Phase.UPDATING, Phase.DEGRADED}),
    Phase.UPDATING: frozenset({Phase.BOOTSTRAPPING, Phase.DEGRADED}),
    # Bootstrap retry is the only automatic way out
    Phase.DEGRADED: frozenset({Phase.BOOTSTRAPPING}),
}

_missing = set(Phase) - set(TRANSITIONS)
if _missing:
    raise TypeError(f"no transition entry for phases: {sorted(p.value for p in _missing)}")


class IllegalTransition(FleetError):
    """Transition not allowed by TRANSITIONS, or attempted from the wrong thread."""
    pass


def is_legal(current: Phase, target: Phase) -> bool:
    return target in TRANSITIONS[current]


class PhaseState:
    """
    Single authoritative phase value shared by the agent's threads.

    Usage:
        state = PhaseState()
        state.bind_owner()                          # from the loop thread
        state.advance(Phase.PROVISIONING_LOCAL, persist=publish, reason="spec loaded")
        state.current                               # any thread
    """

    def __init__(self, initial: Phase = Phase.UNINITIALIZED):
        self._phase = initial
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._listeners: List[Callable[[Phase, Phase, str], None]] = []
        self.history: List[Tuple[Phase, Phase, str]] = []

    @property
    def current(self) -> Phase:
        with self._lock:
            return self._phase

    def bind_owner(self, thread: Optional[threading.Thread] = None):
        """Bind the transition-loop thread (defaults to the calling thread)."""
        thread = thread or threading.current_thread()
        with self._lock:
            self._owner = thread.ident

    def add_listener(self, listener: Callable[[Phase, Phase, str], None]):
        """Called with (from, to, reason) after every committed transition."""
        self._listeners.append(listener)

    def advance(self, target: Phase, persist: Callable[[Phase], None], reason: str = "") -> Phase:
        """
        Move to `target` after `persist(target)` succeeds.

        Raises:
            IllegalTransition: target not reachable, or caller is not the owner
            Whatever `persist` raises (phase is left unchanged)
        """
        with self._lock:
            if self._owner is not None and threading.get_ident() != self._owner:
                raise IllegalTransition(
                    f"phase may only be advanced by the transition loop "
                    f"(attempted {self._phase.value} -> {target.value})"
                )
            source = self._phase
            if not is_legal(source, target):
                raise IllegalTransition(f"{source.value} -> {target.value} is not a legal transition")

            persist(target)
            self._phase = target
            self.history.append((source, target, reason))

        logger.info(f"Phase {source.value} -> {target.value}" + (f" ({reason})" if reason else ""))
        for listener in self._listeners:
            listener(source, target, reason)
        return source
