"""
CryWatch - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, List

import numpy as np
import pytest

# Ensure the package is importable without installation
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from crywatch.config import Settings
from crywatch.core.history_store import CryHistoryStore
from crywatch.core.pipeline import CryAnalysisPipeline
from crywatch.core.storage import InMemoryStorage
from crywatch.core.types import (
    Alert,
    AlertType,
    AudioFeatures,
    CryInstance,
    DetectionResult,
    Severity,
)
from crywatch.services.alerts import HeuristicAlertAnalyzer
from crywatch.services.detector import CryDetector
from crywatch.services.diagnosis import DiagnosisEngine, diagnose
from crywatch.services.features import FeatureExtractor

SAMPLE_RATE = 16000
BLOCK_SIZE = 512  # 32 ms at 16 kHz


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


# =============================================================================
# Signal Helpers
# =============================================================================

def sine(freq: float, seconds: float, amplitude: float = 0.5, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Pure tone."""
    t = np.arange(int(round(seconds * sample_rate))) / sample_rate
    return amplitude * np.sin(2 * np.pi * freq * t)


def harmonic_tone(
    freq: float,
    seconds: float,
    amplitude: float = 0.5,
    sample_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    """Cry-like tone: fundamental plus three decaying harmonics."""
    t = np.arange(int(round(seconds * sample_rate))) / sample_rate
    weights = (1.0, 0.8, 0.8, 0.6)
    wave = sum(w * np.sin(2 * np.pi * freq * (k + 1) * t) for k, w in enumerate(weights))
    return amplitude * wave / sum(weights)


def silence(seconds: float, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    return np.zeros(int(round(seconds * sample_rate)))


def blocks(signal: np.ndarray, block_size: int = BLOCK_SIZE) -> List[np.ndarray]:
    """Split a signal into consecutive blocks, dropping a short tail."""
    count = signal.size // block_size
    return [signal[i * block_size:(i + 1) * block_size] for i in range(count)]


class FakeClock:
    """Manually advanced wall clock for the detector."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def feed(detector: CryDetector, clock: FakeClock, signal: np.ndarray) -> List[bool]:
    """Feed a signal block by block, advancing the clock by each block's duration."""
    results = []
    for block in blocks(signal):
        clock.advance(block.size / SAMPLE_RATE)
        results.append(detector.process_audio_block(block, SAMPLE_RATE))
    return results


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Test settings with in-memory storage and quiet logging."""
    return Settings(
        app_log_level="WARNING",
        storage_backend="memory",
        store_audio=True,
        store_normal_cries=False,
    )


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def storage() -> InMemoryStorage:
    """Fresh unlimited in-memory storage."""
    return InMemoryStorage()


@pytest.fixture
def history_store(storage: InMemoryStorage) -> Generator[CryHistoryStore, None, None]:
    """History store over the shared in-memory storage."""
    store = CryHistoryStore(storage)
    yield store
    store.close()


# =============================================================================
# Detector / Pipeline Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def detector(clock: FakeClock) -> CryDetector:
    """Detector with default thresholds driven by the fake clock."""
    return CryDetector(clock=clock)


@pytest.fixture
def pipeline(
    test_settings: Settings,
    clock: FakeClock,
    history_store: CryHistoryStore,
) -> CryAnalysisPipeline:
    """Fully wired pipeline over in-memory storage."""
    return CryAnalysisPipeline(
        detector=CryDetector(clock=clock),
        extractor=FeatureExtractor(),
        analyzer=HeuristicAlertAnalyzer(),
        diagnosis_engine=DiagnosisEngine(),
        history_store=history_store,
        settings=test_settings,
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def make_alert() -> Callable[..., Alert]:
    """Factory for alerts with sensible defaults."""
    def _make(
        alert_type: AlertType = AlertType.HOARSENESS,
        severity: Severity = Severity.MEDIUM,
        confidence: float = 0.7,
    ) -> Alert:
        return Alert(
            type=alert_type,
            severity=severity,
            confidence=confidence,
            message=f"{alert_type.value} detected",
            description=f"Test {alert_type.value} description",
            recommendation=f"Handle {alert_type.value}",
        )
    return _make


@pytest.fixture
def sample_features() -> AudioFeatures:
    return AudioFeatures(
        f0=(450.0, 455.0, 445.0),
        hnr=15.0,
        rms=0.2,
        spectral_centroid=1200.0,
        voiced_segment_lengths=(0.8,),
        duration=0.8,
        sample_rate=SAMPLE_RATE,
    )


@pytest.fixture
def make_cry(sample_features: AudioFeatures) -> Callable[..., CryInstance]:
    """Factory for diagnosed cries; alerts default to none."""
    def _make(
        alerts: tuple = (),
        timestamp: datetime = None,
        duration: float = 1.5,
    ) -> CryInstance:
        result = DetectionResult.from_alerts(
            sample_features, alerts, timestamp=timestamp or datetime.now(timezone.utc)
        )
        return CryInstance.from_detection(result, diagnose(result), duration=duration)
    return _make


@pytest.fixture
def hours_ago() -> Callable[[float], datetime]:
    def _at(hours: float) -> datetime:
        return datetime.now(timezone.utc) - timedelta(hours=hours)
    return _at
