"""
Process Supervisor - Restarts the managed node after unexpected exits.

The budget is a sliding window: at most `max_restarts` restarts within
`window_s` seconds. Exceeding it records a ProcessSupervisionError that the
agent's transition loop turns into the Degraded phase. The supervisor never
touches the phase itself.

Intentional stops (updates, shutdown) call `suspend()` first so they are not
mistaken for crashes.
"""

import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Optional

from core.errors import ProcessSupervisionError
from fleet.managed_node import ManagedNode

logger = logging.getLogger("fleet.supervisor")


class ProcessSupervisor:
    def __init__(
        self,
        node: ManagedNode,
        max_restarts: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.node = node
        self.max_restarts = max_restarts
        self.window_s = window_s
        self._clock = clock
        self._restarts: Deque[float] = deque()
        self._lock = threading.Lock()
        self._active = False
        self._config_path: Optional[Path] = None
        self._binary_path: Optional[Path] = None
        self._failure: Optional[ProcessSupervisionError] = None

    @property
    def failure(self) -> Optional[ProcessSupervisionError]:
        with self._lock:
            return self._failure

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def start(self, config_path: Path, binary_path: Path):
        """Start the node and begin supervising it. Clears any previous failure."""
        with self._lock:
            self._config_path = config_path
            self._binary_path = binary_path
            self._failure = None
            self._restarts.clear()
            self.node.start(config_path, binary_path)
            self._active = True

    def suspend(self):
        """Stop supervising (the node is about to be stopped on purpose)."""
        with self._lock:
            self._active = False

    def stop_node(self, timeout_s: float = 30.0) -> Optional[int]:
        self.suspend()
        return self.node.stop(timeout_s)

    def check(self) -> bool:
        """
        Restart the node if it died while supervised.

        Returns:
            True if the node is running (or supervision is inactive)
        """
        with self._lock:
            if not self._active or self._failure is not None:
                return self._failure is None
            if self.node.is_running():
                return True

            exit_code = self.node.exit_code()
            now = self._clock()
            while self._restarts and now - self._restarts[0] > self.window_s:
                self._restarts.popleft()

            if len(self._restarts) >= self.max_restarts:
                self._failure = ProcessSupervisionError(len(self._restarts), self.window_s, exit_code)
                self._active = False
                logger.error(f"Giving up on node process: {self._failure}")
                return False

            self._restarts.append(now)
            logger.warning(
                f"Node process exited unexpectedly (code {exit_code}), restart "
                f"{len(self._restarts)}/{self.max_restarts} within {self.window_s:.0f}s"
            )
            try:
                self.node.start(self._config_path, self._binary_path)
            except OSError as e:
                logger.error(f"Restart failed: {e}")
                return False
            return True
