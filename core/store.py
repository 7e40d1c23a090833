"""
Coordination Store - Durable key/object store shared by the whole fleet.

No component runs a long-lived server: the specification, per-node status
records, the append-only event log and snapshot objects all live here. The
store is treated as eventually consistent and offers no multi-key
transactions.

Backends:
    MemoryStore     - in-process dict (tests, dev machine)
    DirectoryStore  - local or network filesystem, atomic writes
    S3Store         - S3 bucket + prefix (requires boto3)

Usage:
    from core.store import open_store

    store = open_store("file:///var/lib/fleet/store")
    store.put("fleet-a/spec/current.yaml", data)
    seq = store.append_event(b'{"kind": "update-artifacts"}', log="fleet-a/events")
    for seq, payload in store.read_events_from(1, log="fleet-a/events"):
        ...

Errors:
    StoreKeyNotFound        - key is absent (never retried)
    CoordinationStoreError  - transient failure, retried by RetryingStore
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from core.atomic_ops import write_bytes_atomic
from core.errors import CoordinationStoreError, StoreKeyNotFound
from core.polling import Backoff, retry_call

logger = logging.getLogger("core.store")

DEFAULT_EVENT_LOG = "events"
_SEQ_WIDTH = 12


def _event_key(log: str, sequence: int) -> str:
    return f"{log}/{sequence:0{_SEQ_WIDTH}d}"


def _sequence_of(key: str) -> Optional[int]:
    tail = key.rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise ValueError(f"invalid store key: {key!r}")
    return key


class CoordinationStore(ABC):
    """Abstract key/object store with an append-only event log."""

    def __init__(self):
        self._append_lock = threading.Lock()

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object bytes. Raises StoreKeyNotFound."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Create or overwrite an object (last write wins)."""

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Keys starting with `prefix`, sorted."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""

    def exists(self, key: str) -> bool:
        try:
            self.get(key)
            return True
        except StoreKeyNotFound:
            return False

    def get_or_none(self, key: str) -> Optional[bytes]:
        try:
            return self.get(key)
        except StoreKeyNotFound:
            return None

    # -------------------------------------------------------------------------
    # Event log
    # -------------------------------------------------------------------------

    def last_sequence(self, log: str = DEFAULT_EVENT_LOG) -> int:
        sequences = [s for s in (_sequence_of(k) for k in self.list(f"{log}/")) if s is not None]
        return max(sequences, default=0)

    def append_event(self, payload: bytes, log: str = DEFAULT_EVENT_LOG) -> int:
        """
        Append a payload to the event log and return its sequence number.

        Sequence numbers start at 1 and increase monotonically. The log has a
        single writer (the control plane), so the in-process lock is enough.
        """
        with self._append_lock:
            sequence = self.last_sequence(log) + 1
            self.put(_event_key(log, sequence), payload)
            return sequence

    def read_events_from(self, sequence: int, log: str = DEFAULT_EVENT_LOG) -> List[Tuple[int, bytes]]:
        """
        Contiguous (sequence, payload) pairs starting at `sequence`, in order.

        Stops at the first sequence that is not listed or not readable yet,
        even when later events are visible. Callers read again from there.
        """
        listed = {s for s in (_sequence_of(k) for k in self.list(f"{log}/")) if s is not None}
        events = []
        expected = max(sequence, 1)
        while expected in listed:
            try:
                events.append((expected, self.get(_event_key(log, expected))))
            except StoreKeyNotFound:
                logger.debug(f"Event #{expected} listed but not readable yet")
                break
            expected += 1
        if any(s > expected for s in listed):
            logger.info(f"Event log has a gap at #{expected}, waiting for it to appear")
        return events

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list(prefix)
        for key in keys:
            self.delete(key)
        return len(keys)


# =============================================================================
# BACKENDS
# =============================================================================

class MemoryStore(CoordinationStore):
    """Thread-safe in-process store."""

    def __init__(self):
        super().__init__()
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise StoreKeyNotFound(key)
            return self._objects[key]

    def put(self, key: str, data: bytes) -> None:
        _check_key(key)
        with self._lock:
            self._objects[key] = bytes(data)

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)


class DirectoryStore(CoordinationStore):
    """Store backed by a directory tree (one file per key)."""

    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / _check_key(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise StoreKeyNotFound(key)
        except IsADirectoryError:
            raise StoreKeyNotFound(key)
        except OSError as e:
            raise CoordinationStoreError("get", key, e)

    def put(self, key: str, data: bytes) -> None:
        try:
            write_bytes_atomic(data, self._path(key))
        except OSError as e:
            raise CoordinationStoreError("put", key, e)

    def list(self, prefix: str = "") -> List[str]:
        keys = []
        try:
            for dirpath, _dirnames, filenames in os.walk(self.root):
                for name in filenames:
                    if name.startswith("."):
                        continue
                    rel = Path(dirpath, name).relative_to(self.root).as_posix()
                    if rel.startswith(prefix):
                        keys.append(rel)
        except OSError as e:
            raise CoordinationStoreError("list", prefix, e)
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CoordinationStoreError("delete", key, e)

    def append_event(self, payload: bytes, log: str = DEFAULT_EVENT_LOG) -> int:
        # Exclusive create so two writers on a shared filesystem never clobber
        with self._append_lock:
            sequence = self.last_sequence(log) + 1
            while True:
                path = self._path(_event_key(log, sequence))
                path.parent.mkdir(parents=True, exist_ok=True)
                try:
                    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
                except FileExistsError:
                    sequence += 1
                    continue
                except OSError as e:
                    raise CoordinationStoreError("append", str(path), e)
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                return sequence


class S3Store(CoordinationStore):
    """Store backed by an S3 bucket under a key prefix."""

    def __init__(self, bucket: str, prefix: str = "", region: Optional[str] = None, client=None):
        super().__init__()
        import boto3
        from botocore.exceptions import BotoCoreError, ClientError

        self._client_errors = (BotoCoreError, ClientError)
        self._client_error_cls = ClientError
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._s3 = client or boto3.client("s3", region_name=region)

    def _full(self, key: str) -> str:
        _check_key(key)
        return f"{self.prefix}/{key}" if self.prefix else key

    def _strip(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix + "/"):
            return full_key[len(self.prefix) + 1:]
        return full_key

    def get(self, key: str) -> bytes:
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=self._full(key))
            return response["Body"].read()
        except self._client_error_cls as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise StoreKeyNotFound(key)
            raise CoordinationStoreError("get", key, e)
        except self._client_errors as e:
            raise CoordinationStoreError("get", key, e)

    def put(self, key: str, data: bytes) -> None:
        try:
            self._s3.put_object(Bucket=self.bucket, Key=self._full(key), Body=data)
        except self._client_errors as e:
            raise CoordinationStoreError("put", key, e)

    def list(self, prefix: str = "") -> List[str]:
        full_prefix = self._full(prefix) if prefix else (self.prefix + "/" if self.prefix else "")
        keys = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full_prefix):
                for obj in page.get("Contents", []):
                    keys.append(self._strip(obj["Key"]))
        except self._client_errors as e:
            raise CoordinationStoreError("list", prefix, e)
        return sorted(keys)

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=self._full(key))
        except self._client_errors as e:
            raise CoordinationStoreError("delete", key, e)


# =============================================================================
# RETRY WRAPPER
# =============================================================================

class RetryingStore(CoordinationStore):
    """Retries transient CoordinationStoreError with bounded exponential backoff."""

    def __init__(
        self,
        inner: CoordinationStore,
        attempts: int = 5,
        backoff: Backoff = Backoff(initial_s=0.5, max_s=10.0),
        stop_event: Optional[threading.Event] = None,
    ):
        super().__init__()
        self.inner = inner
        self.attempts = attempts
        self.backoff = backoff
        self.stop_event = stop_event

    def _retry(self, description: str, fn):
        return retry_call(
            fn,
            attempts=self.attempts,
            backoff=self.backoff,
            retry_on=(CoordinationStoreError,),
            stop_event=self.stop_event,
            description=description,
        )

    def get(self, key: str) -> bytes:
        return self._retry(f"store get {key}", lambda: self.inner.get(key))

    def put(self, key: str, data: bytes) -> None:
        self._retry(f"store put {key}", lambda: self.inner.put(key, data))

    def list(self, prefix: str = "") -> List[str]:
        return self._retry(f"store list {prefix}", lambda: self.inner.list(prefix))

    def delete(self, key: str) -> None:
        self._retry(f"store delete {key}", lambda: self.inner.delete(key))

    def append_event(self, payload: bytes, log: str = DEFAULT_EVENT_LOG) -> int:
        return self._retry(f"append to {log}", lambda: self.inner.append_event(payload, log))

    def read_events_from(self, sequence: int, log: str = DEFAULT_EVENT_LOG) -> List[Tuple[int, bytes]]:
        return self._retry(f"read {log} from {sequence}", lambda: self.inner.read_events_from(sequence, log))


# =============================================================================
# FACTORY
# =============================================================================

_memory_stores: Dict[str, MemoryStore] = {}
_memory_lock = threading.Lock()


def open_store(
    url: str,
    attempts: int = 5,
    backoff: Backoff = Backoff(initial_s=0.5, max_s=10.0),
    stop_event: Optional[threading.Event] = None,
) -> CoordinationStore:
    """
    Open a store from its URL.

    Supported:
        file:///path/to/dir
        memory://name         (shared by name within the process)
        s3://bucket/prefix
    """
    parsed = urlparse(url)
    scheme = parsed.scheme

    if scheme == "file":
        inner: CoordinationStore = DirectoryStore(Path(parsed.netloc + parsed.path))
    elif scheme == "memory":
        name = parsed.netloc or "default"
        with _memory_lock:
            inner = _memory_stores.setdefault(name, MemoryStore())
    elif scheme == "s3":
        inner = S3Store(bucket=parsed.netloc, prefix=parsed.path.lstrip("/"))
    else:
        raise ValueError(f"unsupported store URL: {url}")

    logger.debug(f"Opened {type(inner).__name__} for {url}")
    if attempts <= 1:
        return inner
    return RetryingStore(inner, attempts=attempts, backoff=backoff, stop_event=stop_event)


def clear_memory_stores():
    """Forget named in-process stores (useful for testing)."""
    with _memory_lock:
        _memory_stores.clear()
