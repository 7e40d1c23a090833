"""
Managed Node - Control and probing of the validator node process.

The node is a black box with:
- start/stop control and a generated config file
- a local HTTP health / JSON-RPC status surface
- a local data directory

SubprocessNode drives a real binary. Tests supply their own ManagedNode.
"""

import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional

from core.ids import is_valid_node_id
from core.services import (
    ServiceClient,
    ServiceError,
    ServiceHttpError,
    ServiceUnavailable,
    get_service_client,
)
from core.spec import NodeRole

logger = logging.getLogger("fleet.managed_node")


@dataclass(frozen=True)
class SyncStatus:
    """Result of one probe of the managed node."""
    alive: bool
    healthy: bool = False
    bootstrapped: bool = False
    height: Optional[int] = None
    node_id: Optional[str] = None
    version: Optional[str] = None
    detail: str = ""

    def is_synced(self, role: NodeRole, reference_height: Optional[int] = None, lag_tolerance: int = 0) -> bool:
        """
        Anchors are synced once bootstrapped (genesis accepted). Joining nodes
        must also be within `lag_tolerance` blocks of the reference height
        when one is known.
        """
        if not (self.alive and self.healthy and self.bootstrapped):
            return False
        if role == NodeRole.ANCHOR or reference_height is None:
            return True
        if self.height is None:
            return False
        return reference_height - self.height <= lag_tolerance


class ManagedNode(ABC):
    """Interface the agent uses to control one node process."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    @abstractmethod
    def start(self, config_path: Path, binary_path: Path) -> None:
        """Launch the process. Returns once it is spawned, not once it is healthy."""

    @abstractmethod
    def stop(self, timeout_s: float = 30.0) -> Optional[int]:
        """Stop the process and return its exit code (None if it was not running)."""

    @abstractmethod
    def is_running(self) -> bool:
        pass

    @abstractmethod
    def exit_code(self) -> Optional[int]:
        pass

    @abstractmethod
    def probe(self) -> SyncStatus:
        pass

    @property
    def pid(self) -> Optional[int]:
        return None

    def node_id(self) -> Optional[str]:
        """Node ID reported by the running process, if any."""
        return self.probe().node_id

    def pause(self) -> None:
        """Suspend the process so its data directory stops changing."""

    def resume(self) -> None:
        """Undo pause()."""

    @contextmanager
    def quiesced(self) -> Iterator[None]:
        """Hold the process paused for the duration of the block."""
        paused = self.is_running()
        if paused:
            self.pause()
        try:
            yield
        finally:
            if paused:
                self.resume()


class SubprocessNode(ManagedNode):
    """
    Node process launched with subprocess.Popen.

    Probes (JSON-RPC over HTTP):
        GET  /ext/health                health
        POST /ext/info                  info.isBootstrapped, info.getNodeID, info.getNodeVersion
        POST /ext/bc/P                  platform.getHeight
    """

    def __init__(self, data_dir: Path, http_url: str, log_path: Optional[Path] = None,
                 client: Optional[ServiceClient] = None):
        super().__init__(data_dir)
        self.http_url = http_url
        self.log_path = Path(log_path) if log_path else None
        self._client = client or get_service_client("node", http_url)
        self._proc: Optional[subprocess.Popen] = None
        self._log_file: Optional[IO[bytes]] = None
        self._lock = threading.Lock()

    def start(self, config_path: Path, binary_path: Path) -> None:
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                logger.debug("Node process already running")
                return

            self.data_dir.mkdir(parents=True, exist_ok=True)
            cmd = [str(binary_path), f"--config-file={config_path}"]

            stdout = subprocess.DEVNULL
            if self.log_path:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                self._log_file = open(self.log_path, "ab")
                stdout = self._log_file

            logger.info(f"Starting node: {' '.join(cmd)}")
            self._proc = subprocess.Popen(
                cmd,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
            logger.info(f"Node process started (pid {self._proc.pid})")

    def stop(self, timeout_s: float = 30.0) -> Optional[int]:
        with self._lock:
            proc = self._proc
            if proc is None:
                return None
            if proc.poll() is None:
                logger.info(f"Stopping node process (pid {proc.pid})")
                # A paused process ignores SIGTERM until continued
                self._signal(proc, signal.SIGCONT)
                proc.terminate()
                try:
                    proc.wait(timeout=timeout_s)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Node did not exit within {timeout_s:.0f}s, killing")
                    proc.kill()
                    proc.wait()
            self._close_log()
            return proc.returncode

    def is_running(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None

    def exit_code(self) -> Optional[int]:
        proc = self._proc
        return None if proc is None else proc.poll()

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    def pause(self) -> None:
        if self._proc is not None:
            self._signal(self._proc, signal.SIGSTOP)

    def resume(self) -> None:
        if self._proc is not None:
            self._signal(self._proc, signal.SIGCONT)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int):
        try:
            os.kill(proc.pid, sig)
        except ProcessLookupError:
            pass

    def _close_log(self):
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    def probe(self) -> SyncStatus:
        alive = self.is_running()
        if not alive:
            return SyncStatus(alive=False, detail="process not running")

        try:
            health = self._client.get_json("/ext/health")
            healthy = bool(health.get("healthy", False))
        except ServiceHttpError as e:
            # 503 carries the failing checks
            return SyncStatus(alive=True, healthy=False, detail=f"unhealthy (HTTP {e.status})")
        except ServiceUnavailable as e:
            return SyncStatus(alive=True, detail=f"health endpoint unreachable: {e}")
        except ServiceError as e:
            return SyncStatus(alive=True, detail=str(e))

        try:
            bootstrapped = bool(
                self._client.call_rpc("/ext/info", "info.isBootstrapped", {"chain": "P"}).get("isBootstrapped")
            )
            node_id = self._client.call_rpc("/ext/info", "info.getNodeID").get("nodeID")
            version = self._client.call_rpc("/ext/info", "info.getNodeVersion").get("version")
            height = None
            if bootstrapped:
                height = int(self._client.call_rpc("/ext/bc/P", "platform.getHeight").get("height", 0))
        except (ServiceError, AttributeError, ValueError) as e:
            return SyncStatus(alive=True, healthy=healthy, detail=f"status query failed: {e}")

        detail = ""
        if node_id is not None and not is_valid_node_id(node_id):
            logger.warning(f"Node reported malformed node id {node_id!r}")
            detail = f"malformed node id {node_id!r}"
            node_id = None

        return SyncStatus(
            alive=True,
            healthy=healthy,
            bootstrapped=bootstrapped,
            height=height,
            node_id=node_id,
            version=version,
            detail=detail,
        )
