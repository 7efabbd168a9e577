"""
CryWatch - Key-Value Storage Port

The history store persists everything through this small port: string keys,
byte payloads, and key enumeration. Adapters:

    - InMemoryStorage: process-local dict with an optional byte quota
    - DirectoryStorage: one file per key, written with an atomic replace

Both raise StorageError subclasses; callers decide which failures are fatal.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Protocol, runtime_checkable

from crywatch.config import Settings
from crywatch.core.exceptions import (
    ConfigurationError,
    StorageError,
    StorageQuotaExceededError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class KeyValueStorage(Protocol):
    """
    Protocol for the persisted key-value medium.

    Implementations must be safe to call from multiple threads.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the payload for key, or None if absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store payload under key, replacing any previous value."""
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete key. Missing keys are ignored."""
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        """List all stored keys."""
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryStorage:
    """
    Dict-backed storage. Thread-safe.

    A positive quota_bytes caps the total payload size; writes that would
    exceed it raise StorageQuotaExceededError, mirroring a full browser
    storage area or a full disk.
    """

    def __init__(self, quota_bytes: int = 0):
        self._quota = quota_bytes
        self._lock = Lock()
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            if self._quota > 0:
                used = sum(len(v) for k, v in self._data.items() if k != key)
                if used + len(value) > self._quota:
                    raise StorageQuotaExceededError(
                        f"Writing {len(value)} bytes to {key!r} exceeds quota",
                        details={"quota_bytes": self._quota, "used_bytes": used},
                    )
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    @property
    def used_bytes(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._data.values())


# =============================================================================
# Directory Implementation
# =============================================================================

class DirectoryStorage:
    """
    File-per-key storage under a root directory.

    Keys are hex-encoded into file names so arbitrary key strings are safe.
    Writes go to a temporary file first and are moved into place, so readers
    never observe a partially written payload.
    """

    SUFFIX = ".kv"

    def __init__(self, root: str | os.PathLike, quota_bytes: int = 0):
        self._root = Path(root)
        self._quota = quota_bytes
        self._lock = Lock()
        self._root.mkdir(parents=True, exist_ok=True)
        logger.info("DirectoryStorage initialized at %s", self._root)

    def _path(self, key: str) -> Path:
        return self._root / (key.encode("utf-8").hex() + self.SUFFIX)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {key!r}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            if self._quota > 0:
                target = self._path(key)
                used = sum(
                    p.stat().st_size for p in self._root.glob(f"*{self.SUFFIX}") if p != target
                )
                if used + len(value) > self._quota:
                    raise StorageQuotaExceededError(
                        f"Writing {len(value)} bytes to {key!r} exceeds quota",
                        details={"quota_bytes": self._quota, "used_bytes": used},
                    )
            fd, tmp_name = tempfile.mkstemp(dir=self._root, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(value)
                os.replace(tmp_name, self._path(key))
            except OSError as e:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise StorageError(f"Failed to write {key!r}: {e}") from e

    def remove(self, key: str) -> None:
        with self._lock:
            try:
                self._path(key).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageError(f"Failed to remove {key!r}: {e}") from e

    def keys(self) -> List[str]:
        result = []
        for path in self._root.glob(f"*{self.SUFFIX}"):
            try:
                result.append(bytes.fromhex(path.stem).decode("utf-8"))
            except ValueError:
                logger.debug("Ignoring foreign file in storage dir: %s", path.name)
        return result


# =============================================================================
# Factory Function
# =============================================================================

def create_storage(settings: Settings) -> KeyValueStorage:
    """
    Create the storage backend named in settings.

    Args:
        settings: Application settings

    Returns:
        Configured KeyValueStorage instance
    """
    backend = settings.storage_backend.lower()
    if backend == "memory":
        logger.info("Using InMemoryStorage (quota=%d bytes)", settings.storage_quota_bytes)
        return InMemoryStorage(quota_bytes=settings.storage_quota_bytes)
    if backend == "directory":
        return DirectoryStorage(settings.storage_dir, quota_bytes=settings.storage_quota_bytes)
    raise ConfigurationError(
        f"Unknown storage backend: {settings.storage_backend}",
        details={"supported": ["memory", "directory"]},
    )
