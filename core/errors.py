"""
Fleet Errors - Exception taxonomy shared by every component.

Hierarchy:
    FleetError
    ├── ParseError                 - specification bytes are not usable
    ├── ValidationError            - specification is semantically invalid
    ├── CoordinationStoreError     - transient store failure (retryable)
    ├── StoreKeyNotFound           - key absent (never retried)
    ├── BootstrapTimeoutError      - discovery / genesis / sync not reached in time
    ├── RestoreError               - snapshot missing, corrupt or stale
    ├── RolloutGateTimeoutError    - predecessors never reached the target version
    ├── ProcessSupervisionError    - managed process exceeded its restart budget
    ├── UpdateRejectedError        - update event would downgrade a node
    ├── ProvisioningError          - provisioning API failure
    ├── SnapshotError              - snapshot could not be taken
    ├── ArtifactError              - node binary missing or checksum mismatch
    └── ShutdownRequested          - a bounded wait was aborted by the stop signal

Usage:
    from core.errors import ValidationError, RestoreError

    try:
        validate(spec)
    except ValidationError as e:
        print(f"{e.field}: {e.reason}")
"""

from typing import Iterable, Optional


class FleetError(Exception):
    """Base error for everything raised by the fleet tooling."""
    pass


class ParseError(FleetError):
    """Specification bytes could not be decoded into a Specification."""
    pass


class ValidationError(FleetError):
    """A Specification field failed validation."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"invalid specification field '{field}': {reason}")


class CoordinationStoreError(FleetError):
    """Transient coordination store failure (I/O, network, throttling)."""

    def __init__(self, operation: str, key: str = "", cause: Optional[Exception] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        message = f"store {operation} failed"
        if key:
            message += f" for '{key}'"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class StoreKeyNotFound(FleetError, KeyError):
    """Requested key does not exist in the coordination store."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(key)

    def __str__(self) -> str:
        return f"key not found: {self.key}"


class BootstrapTimeoutError(FleetError):
    """A bootstrap wait (anchor discovery, genesis, sync) exceeded its bound."""

    def __init__(self, waiting_for: str, timeout_s: float):
        self.waiting_for = waiting_for
        self.timeout_s = timeout_s
        super().__init__(f"timed out after {timeout_s:.1f}s waiting for {waiting_for}")


class RestoreError(FleetError):
    """Snapshot restore failed. reason is one of missing, corrupt, stale."""

    MISSING = "missing"
    CORRUPT = "corrupt"
    STALE = "stale"

    def __init__(self, reason: str, detail: str = ""):
        if reason not in (self.MISSING, self.CORRUPT, self.STALE):
            raise ValueError(f"unknown restore failure reason: {reason}")
        self.reason = reason
        self.detail = detail
        message = f"restore failed ({reason})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RolloutGateTimeoutError(FleetError):
    """Predecessor nodes did not reach the target version in time."""

    def __init__(self, sequence: int, version: str, waiting_on: Iterable[int], timeout_s: float):
        self.sequence = sequence
        self.version = version
        self.waiting_on = sorted(waiting_on)
        self.timeout_s = timeout_s
        super().__init__(
            f"rollout gate for event #{sequence} ({version}) timed out after "
            f"{timeout_s:.1f}s waiting on ordinals {self.waiting_on}"
        )


class ProcessSupervisionError(FleetError):
    """The managed node process crashed more often than the restart budget allows."""

    def __init__(self, restarts: int, window_s: float, last_exit_code: Optional[int] = None):
        self.restarts = restarts
        self.window_s = window_s
        self.last_exit_code = last_exit_code
        super().__init__(
            f"managed process exited {restarts} times within {window_s:.0f}s "
            f"(last exit code {last_exit_code})"
        )


class UpdateRejectedError(FleetError):
    """An update-artifacts event was refused before being appended."""

    def __init__(self, version: str, reason: str):
        self.version = version
        self.reason = reason
        super().__init__(f"update to {version} rejected: {reason}")


class ProvisioningError(FleetError):
    """Provisioning API call failed."""

    def __init__(self, operation: str, message: str, transient: bool = True):
        self.operation = operation
        self.transient = transient
        super().__init__(f"provisioning {operation} failed: {message}")


class SnapshotError(FleetError):
    """A snapshot could not be taken."""
    pass


class SnapshotInProgress(SnapshotError):
    """Another snapshot of the same node is already running."""
    pass


class ShutdownRequested(FleetError):
    """A blocking wait was interrupted by the process stop signal."""

    def __init__(self, waiting_for: str = ""):
        self.waiting_for = waiting_for
        super().__init__(f"shutdown requested while waiting for {waiting_for or 'condition'}")


class ArtifactError(FleetError):
    """A node binary could not be fetched or failed checksum verification."""

    def __init__(self, version: str, reason: str):
        self.version = version
        self.reason = reason
        super().__init__(f"artifact {version}: {reason}")
