"""
CryWatch - Streaming Detector Tests

Tests for the CryDetector state machine.
These tests verify:
- Quiet input never triggers a detection
- Sustained and release confirmation paths
- Validation rejects non-cry sounds
- Event delivery (return value, callback, queue) and callback isolation

Blocks are 512 samples at 16 kHz (32 ms); the fake clock advances by one
block duration per block.

Run with: pytest tests/test_detector.py -v
"""

import logging

import numpy as np
import pytest

from conftest import SAMPLE_RATE, FakeClock, feed, silence, sine
from crywatch.config import Settings
from crywatch.core.exceptions import InvalidAudioError
from crywatch.core.types import AudioFeatures, DetectorState
from crywatch.services.detector import CryDetector, create_detector


class TestQuietInput:
    """Blocks at or below the threshold."""

    def test_low_rms_never_fires(self, detector: CryDetector, clock: FakeClock):
        """RMS 0.05 < 0.1 for a long time: no detection, detector stays idle."""
        quiet = sine(600, 5.0, amplitude=0.05 * np.sqrt(2))
        results = feed(detector, clock, quiet)

        assert not any(results)
        assert detector.state is DetectorState.IDLE
        assert detector.drain_events() == []

    def test_silence_never_fires(self, detector: CryDetector, clock: FakeClock):
        assert not any(feed(detector, clock, silence(2.0)))
        assert detector.stats["blocks_processed"] == int(2.0 * SAMPLE_RATE) // 512

    def test_empty_block_is_quiet(self, detector: CryDetector):
        assert detector.process_audio_block([], SAMPLE_RATE) is False
        assert detector.state is DetectorState.IDLE


class TestSustainedConfirmation:
    """Continuous cry-level activity."""

    def test_single_confirmation(self, detector: CryDetector, clock: FakeClock):
        """A 600 Hz tone held for ~0.8 s confirms exactly once, then detector is idle."""
        results = feed(detector, clock, sine(600, 25 * 512 / SAMPLE_RATE))
        results += feed(detector, clock, silence(0.2))

        assert results.count(True) == 1
        # More than 20 buffered blocks are needed: the 21st block confirms
        assert results.index(True) == 20
        assert detector.state is DetectorState.IDLE

    def test_confirmation_event(self, detector: CryDetector, clock: FakeClock):
        feed(detector, clock, sine(600, 21 * 512 / SAMPLE_RATE))

        events = detector.drain_events()
        assert len(events) == 1
        event = events[0]
        assert event.trigger == "sustained"
        assert event.block_count == 21
        assert event.sample_rate == SAMPLE_RATE
        assert event.samples.size == 21 * 512
        assert event.features.f0_mean == pytest.approx(600, rel=0.05)
        assert event.features.f0 == (event.features.f0_mean,)
        assert event.features.spectral_centroid > 500
        assert event.features.duration == pytest.approx(21 * 512 / SAMPLE_RATE)

    def test_resets_after_confirmation(self, detector: CryDetector, clock: FakeClock):
        """Confirmation clears the buffer; later blocks start a fresh detection."""
        feed(detector, clock, sine(600, 21 * 512 / SAMPLE_RATE))
        assert detector.buffered_blocks == 0

        feed(detector, clock, sine(600, 3 * 512 / SAMPLE_RATE))
        assert detector.state is DetectorState.ACCUMULATING
        assert detector.buffered_blocks == 3

    def test_long_cry_confirms_repeatedly(self, detector: CryDetector, clock: FakeClock):
        """Every 21 blocks of continuous crying is a new detection."""
        results = feed(detector, clock, sine(600, 63 * 512 / SAMPLE_RATE))
        assert results.count(True) == 3

    def test_block_count_alone_is_not_enough(self, clock: FakeClock):
        """Many blocks arriving within 0.5 s of wall time do not confirm."""
        detector = CryDetector(clock=clock)
        tone = sine(600, 30 * 512 / SAMPLE_RATE)
        results = [detector.process_audio_block(block, SAMPLE_RATE) for block in np.split(tone, 30)]

        assert not any(results)
        assert detector.buffered_blocks == 30


class TestReleaseConfirmation:
    """Activity that ends before the sustained check fires."""

    def test_release_confirms(self, detector: CryDetector, clock: FakeClock):
        """15 cry blocks followed by a quiet block validate on the falling edge."""
        results = feed(detector, clock, sine(600, 15 * 512 / SAMPLE_RATE))
        assert not any(results)

        results = feed(detector, clock, silence(512 / SAMPLE_RATE))
        assert results == [True]

        event = detector.drain_events()[0]
        assert event.trigger == "release"
        assert event.block_count == 15
        assert detector.state is DetectorState.IDLE

    def test_short_burst_discarded(self, detector: CryDetector, clock: FakeClock):
        """Ten blocks are not more than ten: discarded without validation."""
        feed(detector, clock, sine(600, 10 * 512 / SAMPLE_RATE))
        results = feed(detector, clock, silence(512 / SAMPLE_RATE))

        assert results == [False]
        assert detector.state is DetectorState.IDLE
        assert detector.stats["validations_rejected"] == 0


class TestValidation:
    """Loud sounds that are not cries."""

    def test_low_hum_rejected(self, detector: CryDetector, clock: FakeClock):
        """A loud 100 Hz hum has no pitch in the cry range."""
        results = feed(detector, clock, sine(100, 1.5, amplitude=0.8))
        results += feed(detector, clock, silence(0.1))

        assert not any(results)
        assert detector.stats["validations_rejected"] > 0
        assert detector.state is DetectorState.IDLE

    def test_rejected_sustained_keeps_accumulating(self, detector: CryDetector, clock: FakeClock):
        """A failed sustained validation keeps buffering instead of resetting."""
        feed(detector, clock, sine(100, 25 * 512 / SAMPLE_RATE, amplitude=0.8))

        assert detector.state is DetectorState.ACCUMULATING
        assert detector.buffered_blocks == 25


class TestEventDelivery:
    """Callback and queue behavior."""

    def test_callback_receives_features(self, clock: FakeClock):
        received = []
        detector = CryDetector(on_cry_detected=received.append, clock=clock)

        feed(detector, clock, sine(600, 21 * 512 / SAMPLE_RATE))

        assert len(received) == 1
        assert isinstance(received[0], AudioFeatures)

    def test_callback_exception_is_contained(self, clock: FakeClock, caplog):
        """A failing callback is logged; detection still succeeds and resets."""
        def broken(features):
            raise RuntimeError("consumer exploded")

        detector = CryDetector(on_cry_detected=broken, clock=clock)

        with caplog.at_level(logging.ERROR, logger="crywatch.services.detector"):
            results = feed(detector, clock, sine(600, 21 * 512 / SAMPLE_RATE))

        assert results[-1] is True
        assert detector.state is DetectorState.IDLE
        assert detector.stats["callback_failures"] == 1
        assert "consumer exploded" in caplog.text
        assert len(detector.drain_events()) == 1

    def test_queue_drops_oldest_when_full(self, clock: FakeClock, caplog):
        detector = CryDetector(max_pending_events=2, clock=clock)

        with caplog.at_level(logging.WARNING, logger="crywatch.services.detector"):
            feed(detector, clock, sine(600, 63 * 512 / SAMPLE_RATE))

        events = detector.drain_events()
        assert len(events) == 2
        assert detector.stats["events_dropped"] == 1
        assert "dropped oldest" in caplog.text

    def test_drain_empties_queue(self, detector: CryDetector, clock: FakeClock):
        feed(detector, clock, sine(600, 21 * 512 / SAMPLE_RATE))
        assert len(detector.drain_events()) == 1
        assert detector.drain_events() == []


class TestLifecycle:
    """Reset, factory and input validation."""

    def test_reset_abandons_detection(self, detector: CryDetector, clock: FakeClock):
        feed(detector, clock, sine(600, 15 * 512 / SAMPLE_RATE))
        detector.reset()

        assert detector.state is DetectorState.IDLE
        assert detector.buffered_blocks == 0
        assert feed(detector, clock, silence(512 / SAMPLE_RATE)) == [False]

    def test_create_detector_from_settings(self):
        settings = Settings(cry_threshold=0.2)
        assert create_detector(settings).cry_threshold == 0.2

    def test_invalid_sample_rate(self, detector: CryDetector):
        with pytest.raises(InvalidAudioError):
            detector.process_audio_block(np.zeros(512), 0)
