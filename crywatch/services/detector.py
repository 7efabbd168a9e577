"""
CryWatch - Streaming Cry Detector

Decides, block by block, whether live microphone audio contains an infant cry.

State machine:
    IDLE --(block RMS > threshold)--> ACCUMULATING
        start buffering, remember the start time
    ACCUMULATING --(block RMS > threshold)--> ACCUMULATING
        buffer the block; once enough time and blocks have accumulated,
        validate and confirm on success
    ACCUMULATING --(block RMS <= threshold)--> IDLE
        activity ended; validate what was buffered if it is long enough,
        then clear the buffer

Validation concatenates the buffered blocks and accepts them as a cry iff
the autocorrelation F0 lies in [300, 1200] Hz, the spectral centroid is above
500 Hz and at least 0.3 s of audio was buffered. Loud noise rarely passes all
three.

Elapsed time is measured on the wall clock between the detection start and
the arrival of the current block, not derived from the sample count. Irregular
block delivery or clock stalls therefore shift the timing checks.

The detector has no timers and no threads: it is driven synchronously by the
caller's block cadence and must not be fed from two threads at once. To
abandon an in-flight detection, call reset() or construct a new detector.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Callable, Deque, List, Optional

import numpy as np

from crywatch.config import Settings
from crywatch.core.types import AudioFeatures, CryConfirmation, DetectorState
from crywatch.services.features import (
    as_signal,
    check_sample_rate,
    compute_rms,
    estimate_f0,
    spectral_centroid,
)

logger = logging.getLogger(__name__)

CryCallback = Callable[[AudioFeatures], None]
"""Single-argument handler invoked with the features of a confirmed cry."""

CRY_F0_MIN_HZ = 300.0
CRY_F0_MAX_HZ = 1200.0
CRY_CENTROID_MIN_HZ = 500.0
CRY_MIN_SECONDS = 0.3


class CryDetector:
    """
    Streaming infant-cry detector.

    Confirmed cries are delivered three ways: the boolean returned by
    process_audio_block(), the optional callback, and a bounded queue of
    CryConfirmation events drained with drain_events().

    Usage:
        detector = CryDetector(on_cry_detected=handle_features)

        for block in microphone_blocks:
            if detector.process_audio_block(block, 44100):
                for event in detector.drain_events():
                    analyze(event.samples, event.sample_rate)
    """

    def __init__(
        self,
        on_cry_detected: Optional[CryCallback] = None,
        cry_threshold: float = 0.1,
        sustained_min_seconds: float = 0.5,
        sustained_min_blocks: int = 20,
        release_min_seconds: float = 0.3,
        release_min_blocks: int = 10,
        max_pending_events: int = 32,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the detector.

        Args:
            on_cry_detected: Callback receiving AudioFeatures of each confirmed cry
            cry_threshold: Block RMS (0-1 scale) above which a block is cry activity
            sustained_min_seconds: Elapsed time before validating ongoing activity
            sustained_min_blocks: Buffered blocks must exceed this before validating
                ongoing activity
            release_min_seconds: Elapsed time required to validate when activity ends
            release_min_blocks: Buffered blocks must exceed this to validate when
                activity ends
            max_pending_events: Capacity of the confirmation queue
            clock: Wall-clock source in seconds
        """
        self._callback = on_cry_detected
        self._threshold = cry_threshold
        self._sustained_min_seconds = sustained_min_seconds
        self._sustained_min_blocks = sustained_min_blocks
        self._release_min_seconds = release_min_seconds
        self._release_min_blocks = release_min_blocks
        self._clock = clock

        self._state = DetectorState.IDLE
        self._detection_start: Optional[float] = None
        self._buffer: List[np.ndarray] = []
        self._events: Deque[CryConfirmation] = deque(maxlen=max(1, max_pending_events))

        # Stats
        self._blocks_processed = 0
        self._cries_confirmed = 0
        self._validations_rejected = 0
        self._callback_failures = 0
        self._events_dropped = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def process_audio_block(self, samples: Any, sample_rate: int) -> bool:
        """
        Feed one block of mono samples.

        Args:
            samples: 1-D float samples in [-1, 1]
            sample_rate: Sample rate in Hz

        Returns:
            True iff a cry was confirmed on this call
        """
        sample_rate = check_sample_rate(sample_rate)
        block = as_signal(samples)
        self._blocks_processed += 1

        is_cry_level = compute_rms(block) > self._threshold

        if is_cry_level and self._state is DetectorState.IDLE:
            self._state = DetectorState.ACCUMULATING
            self._detection_start = self._clock()
            self._buffer = [block]
            return False

        if is_cry_level:
            self._buffer.append(block)
            if (
                self._elapsed() >= self._sustained_min_seconds
                and len(self._buffer) > self._sustained_min_blocks
            ):
                return self._try_confirm(sample_rate, trigger="sustained", reset_on_reject=False)
            return False

        if self._state is DetectorState.ACCUMULATING:
            if (
                self._elapsed() >= self._release_min_seconds
                and len(self._buffer) > self._release_min_blocks
            ):
                return self._try_confirm(sample_rate, trigger="release", reset_on_reject=True)
            self.reset()

        return False

    def drain_events(self) -> List[CryConfirmation]:
        """Return and clear the pending confirmation events, oldest first."""
        events = list(self._events)
        self._events.clear()
        return events

    def reset(self) -> None:
        """Discard any in-flight detection and return to IDLE."""
        self._state = DetectorState.IDLE
        self._detection_start = None
        self._buffer = []

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def buffered_blocks(self) -> int:
        return len(self._buffer)

    @property
    def cry_threshold(self) -> float:
        return self._threshold

    @property
    def stats(self) -> dict:
        """Get processing statistics."""
        return {
            "blocks_processed": self._blocks_processed,
            "cries_confirmed": self._cries_confirmed,
            "validations_rejected": self._validations_rejected,
            "callback_failures": self._callback_failures,
            "events_dropped": self._events_dropped,
            "pending_events": len(self._events),
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _elapsed(self) -> float:
        if self._detection_start is None:
            return 0.0
        return self._clock() - self._detection_start

    def _combined(self) -> np.ndarray:
        if not self._buffer:
            return np.zeros(0)
        return np.concatenate(self._buffer)

    def _validate(self, combined: np.ndarray, sample_rate: int) -> bool:
        f0 = estimate_f0(combined, sample_rate)
        centroid = spectral_centroid(combined, sample_rate)
        duration = combined.size / sample_rate

        valid = (
            CRY_F0_MIN_HZ <= f0 <= CRY_F0_MAX_HZ
            and centroid > CRY_CENTROID_MIN_HZ
            and duration >= CRY_MIN_SECONDS
        )
        logger.debug(
            "Cry validation: f0=%.0fHz centroid=%.0fHz duration=%.2fs -> %s",
            f0, centroid, duration, "accept" if valid else "reject",
        )
        return valid

    def _try_confirm(self, sample_rate: int, trigger: str, reset_on_reject: bool) -> bool:
        combined = self._combined()
        if not self._validate(combined, sample_rate):
            self._validations_rejected += 1
            if reset_on_reject:
                self.reset()
            return False

        block_count = len(self._buffer)
        features = self._fast_features(combined, sample_rate)
        self._emit(CryConfirmation(
            features=features,
            samples=combined,
            sample_rate=sample_rate,
            block_count=block_count,
            trigger=trigger,
        ))
        return True

    def _fast_features(self, combined: np.ndarray, sample_rate: int) -> AudioFeatures:
        """Minimal feature record computed on the confirmation path."""
        f0 = estimate_f0(combined, sample_rate)
        return AudioFeatures(
            f0=(f0,) if f0 > 0 else (),
            rms=compute_rms(combined),
            spectral_centroid=spectral_centroid(combined, sample_rate),
            duration=combined.size / sample_rate,
            sample_rate=sample_rate,
        )

    def _emit(self, event: CryConfirmation) -> None:
        self._cries_confirmed += 1
        try:
            if len(self._events) == self._events.maxlen:
                self._events_dropped += 1
                logger.warning(
                    "Confirmation queue full, dropped oldest event (total dropped: %d)",
                    self._events_dropped,
                )
            self._events.append(event)

            logger.info(
                "Cry confirmed (%s): %.2fs, %d blocks, f0=%.0fHz",
                event.trigger, event.features.duration, event.block_count,
                event.features.f0_mean,
            )

            if self._callback is not None:
                try:
                    self._callback(event.features)
                except Exception as e:
                    self._callback_failures += 1
                    logger.error("Cry callback failed: %s", e, exc_info=True)
        finally:
            self.reset()


def create_detector(
    settings: Settings,
    on_cry_detected: Optional[CryCallback] = None,
) -> CryDetector:
    """Create a detector configured from settings."""
    return CryDetector(
        on_cry_detected=on_cry_detected,
        cry_threshold=settings.cry_threshold,
        sustained_min_seconds=settings.sustained_min_seconds,
        sustained_min_blocks=settings.sustained_min_blocks,
        release_min_seconds=settings.release_min_seconds,
        release_min_blocks=settings.release_min_blocks,
        max_pending_events=settings.max_pending_events,
    )
