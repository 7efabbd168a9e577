"""
CryWatch - Cry History Store

Append-only log of diagnosed cries with out-of-band audio attachments.

Layout in the key-value storage:
    - <history_key>: JSON array of cry records, oldest first, capped
    - <audio_key_prefix><cry id>: {"data": base64, "type": mime, "size": n}

Notes:
    - The capped list is a ring buffer over a persisted array: once the cap is
      exceeded the oldest records are evicted first
    - Audio payloads never enter the metadata log
    - Audio writes run on a worker thread so the capture path is not delayed;
      their failure is reported through the returned future and the log.
      The record is kept and only loses its audio reference
    - Corrupt history loads as empty; corrupt audio reads as absent
"""

from __future__ import annotations

import base64
import json
import logging
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from crywatch.config import Settings
from crywatch.core import serialization
from crywatch.core.exceptions import AudioDecodeError, HistoryCorruptedError, StorageError
from crywatch.core.logging import LogContext
from crywatch.core.storage import KeyValueStorage, create_storage
from crywatch.core.types import (
    AudioEntry,
    AudioWriteOutcome,
    CryAnalytics,
    CryInstance,
    RiskLevel,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_HISTORY_KEY = "dababy_cry_history"
DEFAULT_AUDIO_KEY_PREFIX = "dababy_audio_"


class CryHistoryStore:
    """
    Persistent, bounded history of CryInstance records.

    Thread-safe: a single lock serializes every read-modify-write of the
    persisted list, so concurrent producers cannot interleave appends.

    Usage:
        store = CryHistoryStore(InMemoryStorage())
        store.append(cry)
        outcome = store.append_with_audio(cry, pcm_bytes, "audio/l16").result()
        store.get_all()
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        history_key: str = DEFAULT_HISTORY_KEY,
        audio_key_prefix: str = DEFAULT_AUDIO_KEY_PREFIX,
        executor: Optional[ThreadPoolExecutor] = None,
        audio_workers: int = 1,
    ):
        """
        Initialize the store.

        Args:
            storage: Key-value medium holding the log and audio blobs
            max_entries: Maximum number of records kept (oldest evicted first)
            history_key: Key of the metadata log
            audio_key_prefix: Prefix of per-cry audio keys
            executor: Executor for audio writes (owned by the caller)
            audio_workers: Worker threads of the store's own executor when
                no executor is passed
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")

        self._storage = storage
        self._max_entries = max_entries
        self._history_key = history_key
        self._audio_prefix = audio_key_prefix

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, audio_workers), thread_name_prefix="crywatch-audio"
        )

        self._lock = Lock()
        # Bumped by clear(); audio writes queued before a clear are discarded
        self._generation = 0
        self._closed = False

        logger.info(
            "CryHistoryStore initialized: max_entries=%d, history_key=%s",
            max_entries, history_key,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def append(self, instance: CryInstance) -> None:
        """
        Append a record to the log, evicting the oldest beyond the cap.

        Raises:
            StorageError: if the metadata log itself cannot be written
        """
        with self._lock:
            self._append_locked(instance)

    def append_with_audio(
        self,
        instance: CryInstance,
        raw_audio: bytes,
        mime_type: str,
    ) -> "Future[AudioWriteOutcome]":
        """
        Append the record, then persist its audio in the background.

        The metadata append completes before this method returns. The audio
        write is dispatched to the store's executor; the returned future
        resolves to an AudioWriteOutcome whose `stored` flag is False when the
        storage refused the payload (e.g. quota exceeded).
        """
        if self._closed:
            raise StorageError("History store is closed")

        audio_key = self._audio_key(instance.id)
        with self._lock:
            self._append_locked(replace(instance, audio_reference=audio_key))
            generation = self._generation

        payload = bytes(raw_audio)
        return self._executor.submit(
            self._write_audio, instance.id, payload, mime_type, generation
        )

    def clear(self) -> None:
        """Remove every record and every audio attachment."""
        with self._lock:
            self._generation += 1
            self._storage.remove(self._history_key)
            removed = 0
            for key in self._storage.keys():
                if key.startswith(self._audio_prefix):
                    self._storage.remove(key)
                    removed += 1
        logger.info("Cry history cleared (%d audio attachments removed)", removed)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_all(self) -> List[CryInstance]:
        """All stored records in insertion order (newest last)."""
        with self._lock:
            entries = self._load_entries()
        return self._parse_entries(entries)

    def get_recent(self, limit: int = 100) -> List[CryInstance]:
        """The most recent records, newest first."""
        records = self.get_all()
        return list(reversed(records[-limit:])) if limit > 0 else []

    def get_audio(self, cry_id: str) -> Optional[bytes]:
        """Decoded audio for a cry, or None if never stored or unreadable."""
        entry = self.get_audio_entry(cry_id)
        return entry.data if entry is not None else None

    def get_audio_entry(self, cry_id: str) -> Optional[AudioEntry]:
        """Decoded audio plus its MIME type and recorded size."""
        key = self._audio_key(cry_id)
        try:
            raw = self._storage.get(key)
        except StorageError as e:
            logger.warning("Failed to read audio for cry: %s", e.message)
            return None

        if raw is None:
            return None

        try:
            return _decode_audio(raw)
        except AudioDecodeError as e:
            with LogContext(cry_id=cry_id):
                logger.error("Failed to parse audio data: %s", e.message)
            return None

    def get_analytics(
        self,
        timeframe_hours: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> CryAnalytics:
        """
        Aggregate statistics over stored cries.

        Args:
            timeframe_hours: Only include cries younger than this (None = all)
            now: Reference time (defaults to the current UTC time)
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        cries = self.get_all()
        if timeframe_hours is not None:
            cutoff = now - timedelta(hours=timeframe_hours)
            cries = [c for c in cries if c.timestamp >= cutoff]

        if not cries:
            return CryAnalytics()

        total = len(cries)
        diagnosis_counts = Counter(c.diagnosis.primary for c in cries)
        risk_counts = Counter(c.risk_level.value for c in cries)
        alert_counts = Counter(a.type.value for c in cries for a in c.alerts)

        if timeframe_hours is None:
            earliest = min(c.timestamp for c in cries)
            span_hours = max(1.0, (now - earliest).total_seconds() / 3600.0)
        else:
            span_hours = timeframe_hours if timeframe_hours > 0 else 1.0

        return CryAnalytics(
            total_cries=total,
            avg_duration=sum(c.duration for c in cries) / total,
            most_common_diagnosis=diagnosis_counts.most_common(1)[0][0],
            critical_alerts=risk_counts.get(RiskLevel.CRITICAL.value, 0),
            cries_per_hour=total / span_hours,
            diagnosis_breakdown=dict(diagnosis_counts),
            risk_level_counts=dict(risk_counts),
            alert_type_counts=dict(alert_counts),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Wait for pending audio writes and release the worker thread."""
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "CryHistoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _audio_key(self, cry_id: str) -> str:
        return self._audio_prefix + cry_id

    def _append_locked(self, instance: CryInstance) -> None:
        entries = self._load_entries()
        entries.append(instance.to_dict())

        evicted: List[Any] = []
        if len(entries) > self._max_entries:
            excess = len(entries) - self._max_entries
            evicted = entries[:excess]
            entries = entries[excess:]

        self._write_entries(entries)

        for entry in evicted:
            cry_id = entry.get("id") if isinstance(entry, dict) else None
            if cry_id:
                self._remove_quietly(self._audio_key(str(cry_id)))
        if evicted:
            logger.debug("Evicted %d old cries from history", len(evicted))

    def _load_entries(self) -> List[Dict[str, Any]]:
        """Read the raw log. Caller holds the lock."""
        try:
            raw = self._storage.get(self._history_key)
        except StorageError as e:
            logger.error("Failed to read cry history: %s", e.message)
            return []

        if raw is None:
            return []

        try:
            entries = serialization.loads(raw)
            if not isinstance(entries, list):
                raise HistoryCorruptedError(
                    "Cry history is not a JSON array",
                    details={"type": type(entries).__name__},
                )
        except (ValueError, HistoryCorruptedError) as e:
            logger.error("Failed to parse stored cries, starting empty: %s", e)
            return []

        return entries

    def _write_entries(self, entries: List[Dict[str, Any]]) -> None:
        """Persist the raw log. Caller holds the lock."""
        self._storage.set(self._history_key, serialization.dumps(entries).encode("utf-8"))

    def _parse_entries(self, entries: List[Any]) -> List[CryInstance]:
        records = []
        for entry in entries:
            try:
                records.append(CryInstance.from_dict(entry))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning("Skipping unreadable cry record: %s", e)
        return records

    def _write_audio(
        self,
        cry_id: str,
        payload: bytes,
        mime_type: str,
        generation: int,
    ) -> AudioWriteOutcome:
        """
        Encode and store one audio attachment (runs on the worker thread).

        The blob is written without holding the store lock so a slow backend
        never delays appends from the capture path. A clear() that lands
        while the write is in flight is detected afterwards and the blob is
        removed again.
        """
        encoded = json.dumps({
            "data": base64.b64encode(payload).decode("ascii"),
            "type": mime_type,
            "size": len(payload),
        }).encode("utf-8")
        key = self._audio_key(cry_id)

        def outcome(error: Optional[str] = None) -> AudioWriteOutcome:
            return AudioWriteOutcome(
                cry_id=cry_id,
                stored=error is None,
                size=len(payload),
                mime_type=mime_type,
                error=error,
            )

        with LogContext(cry_id=cry_id):
            if generation != self._generation:
                logger.info("History cleared before audio was written, discarding")
                return outcome("history cleared")

            try:
                self._storage.set(key, encoded)
            except StorageError as e:
                logger.warning(
                    "Failed to store audio data, storage quota may be exceeded: %s",
                    e.message,
                )
                with self._lock:
                    if generation == self._generation:
                        self._drop_audio_reference(cry_id)
                return outcome(e.message)

            with self._lock:
                if generation != self._generation:
                    logger.info("History cleared while audio was written, discarding")
                    self._remove_quietly(key)
                    return outcome("history cleared")

            logger.debug("Stored %d bytes of %s audio", len(payload), mime_type)
            return outcome()

    def _drop_audio_reference(self, cry_id: str) -> None:
        """Unlink a record from an attachment that was never stored. Caller holds the lock."""
        entries = self._load_entries()
        for entry in entries:
            if isinstance(entry, dict) and entry.get("id") == cry_id:
                entry.pop("audioReference", None)
                break
        else:
            return
        try:
            self._write_entries(entries)
        except StorageError as e:
            logger.warning("Failed to unlink missing audio from cry record: %s", e.message)

    def _remove_quietly(self, key: str) -> None:
        try:
            self._storage.remove(key)
        except StorageError as e:
            logger.warning("Failed to remove evicted audio %s: %s", key, e.message)


def _decode_audio(raw: bytes) -> AudioEntry:
    """Parse a stored {"data", "type", "size"} blob."""
    try:
        payload = json.loads(raw)
        data = base64.b64decode(payload["data"], validate=True)
        mime_type = str(payload.get("type", ""))
        size = int(payload.get("size", len(data)))
    except (ValueError, KeyError, TypeError) as e:
        raise AudioDecodeError(f"Malformed audio blob: {e}") from e
    return AudioEntry(data=data, mime_type=mime_type, size=size)


# =============================================================================
# Factory Function
# =============================================================================

def create_history_store(
    settings: Settings,
    storage: Optional[KeyValueStorage] = None,
) -> CryHistoryStore:
    """
    Create a cry history store based on settings.

    Args:
        settings: Application settings
        storage: Storage override (defaults to the backend named in settings)

    Returns:
        Configured CryHistoryStore instance
    """
    storage = storage if storage is not None else create_storage(settings)
    return CryHistoryStore(
        storage=storage,
        max_entries=settings.history_max_entries,
        history_key=settings.history_key,
        audio_key_prefix=settings.audio_key_prefix,
        audio_workers=settings.audio_write_workers,
    )
