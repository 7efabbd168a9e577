"""
CryWatch - Core Domain Types

Internal type definitions for the cry analysis pipeline. These are domain
objects passed between the detector, feature extractor, alert analyzer,
diagnosis engine and history store.

Design Notes:
- These types are the "lingua franca" between pipeline components.
- Records are frozen dataclasses; updated copies go through dataclasses.replace.
- to_dict()/from_dict() use the camelCase keys of the persisted history
  format so existing stored data stays readable.
- Enums are str-valued so they serialize as their plain value.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np


# =============================================================================
# Enums
# =============================================================================

class Severity(str, Enum):
    """Severity attached to a single alert."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    """Overall risk of a detection, derived from its most severe alert."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    """Acoustic condition an alert reports."""
    HYPERPHONATION = "hyperphonation"
    HOARSENESS = "hoarseness"
    CRI_DU_CHAT = "cri_du_chat"
    WEAK_CRY = "weak_cry"
    GRUNTING = "grunting"
    SERIOUS_ILLNESS = "serious_illness"
    HEARING_IMPAIRMENT = "hearing_impairment"
    HYPERNASALITY = "hypernasality"


class MedicalAttention(str, Enum):
    """How urgently a caregiver should seek medical attention."""
    NONE = "none"
    MONITOR = "monitor"
    CONSULT = "consult"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class DetectorState(str, Enum):
    """States of the streaming cry detector."""
    IDLE = "idle"
    ACCUMULATING = "accumulating"


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


# =============================================================================
# Helpers
# =============================================================================

def _finite(value: Any) -> float:
    """Coerce to float, mapping NaN/inf/None to 0."""
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


def _finite_tuple(values: Optional[Iterable[Any]]) -> Tuple[float, ...]:
    if values is None:
        return ()
    return tuple(_finite(v) for v in values)


def truncate_to_millis(value: datetime) -> datetime:
    """Return an aware UTC datetime with sub-millisecond precision dropped."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now_ms() -> datetime:
    """Current UTC time at millisecond precision."""
    return truncate_to_millis(datetime.now(timezone.utc))


def parse_timestamp(value: Any) -> datetime:
    """Accept a datetime or an ISO-8601 string (with optional trailing Z)."""
    if isinstance(value, datetime):
        return truncate_to_millis(value)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        return truncate_to_millis(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


# =============================================================================
# Audio Features
# =============================================================================

@dataclass(frozen=True)
class AudioFeatures:
    """
    Acoustic features extracted from a cry segment.

    Attributes:
        f0: Per-frame fundamental frequency estimates (Hz), voiced frames only
        f0_mean: Mean of f0 (0 when f0 is empty)
        f0_std: Population standard deviation of f0 (0 when f0 is empty)
        hnr: Harmonics-to-noise ratio in dB
        jitter: Cycle-to-cycle period perturbation (%)
        shimmer: Cycle-to-cycle amplitude perturbation (%)
        rms: Root-mean-square amplitude of the whole segment
        spectral_centroid: Spectral "brightness" in Hz
        spectral_flatness: 0 = tonal, 1 = noise-like
        voiced_segment_lengths: Durations (s) of voiced runs, chronological
        pause_lengths: Durations (s) of silent runs, chronological
        burst_lengths: Durations (s) of short high-energy runs between pauses
        repetition_rate: Repetition frequency of sound onsets (Hz)
        nasal_energy_ratio: Share of energy in the nasal band (0-1)
        low_mid_harmonics: Share of energy in the low-mid harmonic band (0-1)
        duration: Segment duration in seconds
        sample_rate: Sample rate in Hz

    f0_mean and f0_std are always derived from f0.
    """
    f0: Tuple[float, ...] = ()
    f0_mean: float = field(init=False, default=0.0)
    f0_std: float = field(init=False, default=0.0)
    hnr: float = 0.0
    jitter: float = 0.0
    shimmer: float = 0.0
    rms: float = 0.0
    spectral_centroid: float = 0.0
    spectral_flatness: float = 0.0
    voiced_segment_lengths: Tuple[float, ...] = ()
    pause_lengths: Tuple[float, ...] = ()
    burst_lengths: Tuple[float, ...] = ()
    repetition_rate: float = 0.0
    nasal_energy_ratio: float = 0.0
    low_mid_harmonics: float = 0.0
    duration: float = 0.0
    sample_rate: int = 0

    def __post_init__(self) -> None:
        for name in ("f0", "voiced_segment_lengths", "pause_lengths", "burst_lengths"):
            object.__setattr__(self, name, _finite_tuple(getattr(self, name)))
        for name in (
            "hnr", "jitter", "shimmer", "rms", "spectral_centroid",
            "spectral_flatness", "repetition_rate", "nasal_energy_ratio",
            "low_mid_harmonics", "duration",
        ):
            object.__setattr__(self, name, _finite(getattr(self, name)))
        object.__setattr__(self, "sample_rate", int(self.sample_rate or 0))

        if self.f0:
            values = np.asarray(self.f0, dtype=np.float64)
            object.__setattr__(self, "f0_mean", _finite(values.mean()))
            object.__setattr__(self, "f0_std", _finite(values.std()))
        else:
            object.__setattr__(self, "f0_mean", 0.0)
            object.__setattr__(self, "f0_std", 0.0)

    @classmethod
    def empty(cls, sample_rate: int = 0, duration: float = 0.0) -> "AudioFeatures":
        """Features for a segment with nothing measurable in it."""
        return cls(sample_rate=sample_rate, duration=duration)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase dictionary used in persisted history."""
        return {
            "f0": list(self.f0),
            "f0Mean": self.f0_mean,
            "f0Std": self.f0_std,
            "hnr": self.hnr,
            "jitter": self.jitter,
            "shimmer": self.shimmer,
            "rms": self.rms,
            "spectralCentroid": self.spectral_centroid,
            "spectralFlatness": self.spectral_flatness,
            "voicedSegmentLengths": list(self.voiced_segment_lengths),
            "pauseLengths": list(self.pause_lengths),
            "burstLengths": list(self.burst_lengths),
            "repetitionRate": self.repetition_rate,
            "nasalEnergyRatio": self.nasal_energy_ratio,
            "lowMidHarmonics": self.low_mid_harmonics,
            "duration": self.duration,
            "sampleRate": self.sample_rate,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AudioFeatures":
        return cls(
            f0=data.get("f0") or (),
            hnr=data.get("hnr", 0.0),
            jitter=data.get("jitter", 0.0),
            shimmer=data.get("shimmer", 0.0),
            rms=data.get("rms", 0.0),
            spectral_centroid=data.get("spectralCentroid", 0.0),
            spectral_flatness=data.get("spectralFlatness", 0.0),
            voiced_segment_lengths=data.get("voicedSegmentLengths") or (),
            pause_lengths=data.get("pauseLengths") or (),
            burst_lengths=data.get("burstLengths") or (),
            repetition_rate=data.get("repetitionRate", 0.0),
            nasal_energy_ratio=data.get("nasalEnergyRatio", 0.0),
            low_mid_harmonics=data.get("lowMidHarmonics", 0.0),
            duration=data.get("duration", 0.0),
            sample_rate=data.get("sampleRate", 0),
        )


# =============================================================================
# Alerts and Detection Results
# =============================================================================

@dataclass(frozen=True)
class Alert:
    """A single clinically-styled finding raised from acoustic features."""
    type: AlertType
    severity: Severity
    confidence: float
    message: str
    description: str = ""
    recommendation: str = ""

    def __post_init__(self):
        """Validate constraints."""
        object.__setattr__(self, "type", AlertType(self.type))
        object.__setattr__(self, "severity", Severity(self.severity))
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be 0-1, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "message": self.message,
            "description": self.description,
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Alert":
        return cls(
            type=AlertType(data["type"]),
            severity=Severity(data["severity"]),
            confidence=float(data.get("confidence", 0.0)),
            message=data.get("message", ""),
            description=data.get("description", ""),
            recommendation=data.get("recommendation", ""),
        )


def risk_level_for(alerts: Sequence[Alert]) -> RiskLevel:
    """Risk level implied by the most severe alert (LOW when there are none)."""
    if not alerts:
        return RiskLevel.LOW
    worst = max(alerts, key=lambda a: SEVERITY_RANK[a.severity])
    return RiskLevel(worst.severity.value)


@dataclass(frozen=True)
class DetectionResult:
    """Features, alerts and derived risk for one detection event."""
    timestamp: datetime
    features: AudioFeatures
    alerts: Tuple[Alert, ...]
    risk_level: RiskLevel

    def __post_init__(self):
        """Validate constraints."""
        object.__setattr__(self, "alerts", tuple(self.alerts))
        object.__setattr__(self, "risk_level", RiskLevel(self.risk_level))
        expected = risk_level_for(self.alerts)
        if self.risk_level != expected:
            raise ValueError(
                f"risk_level {self.risk_level.value} disagrees with alerts "
                f"(expected {expected.value})"
            )

    @classmethod
    def from_alerts(
        cls,
        features: AudioFeatures,
        alerts: Sequence[Alert],
        timestamp: Optional[datetime] = None,
    ) -> "DetectionResult":
        """Build a result whose risk level is derived from the alerts."""
        return cls(
            timestamp=truncate_to_millis(timestamp) if timestamp else utc_now_ms(),
            features=features,
            alerts=tuple(alerts),
            risk_level=risk_level_for(alerts),
        )


# =============================================================================
# Diagnosis
# =============================================================================

@dataclass(frozen=True)
class Diagnosis:
    """Caregiver-facing interpretation of a detection result."""
    primary: str
    description: str
    recommendations: Tuple[str, ...]
    medical_attention: MedicalAttention
    confidence: float
    tags: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "recommendations", tuple(self.recommendations))
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "medical_attention", MedicalAttention(self.medical_attention))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "description": self.description,
            "recommendations": list(self.recommendations),
            "medicalAttention": self.medical_attention.value,
            "confidence": self.confidence,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Diagnosis":
        return cls(
            primary=data.get("primary", ""),
            description=data.get("description", ""),
            recommendations=data.get("recommendations") or (),
            medical_attention=MedicalAttention(data.get("medicalAttention", "none")),
            confidence=float(data.get("confidence", 0.0)),
            tags=data.get("tags") or (),
        )


# =============================================================================
# Cry Instance (persisted record)
# =============================================================================

@dataclass(frozen=True)
class CryInstance:
    """
    A confirmed, diagnosed cry as stored in the history log.

    Once appended to the history store the instance is owned by it; callers
    derive modified copies with dataclasses.replace instead of mutating.
    """
    id: str
    timestamp: datetime
    duration: float
    features: AudioFeatures
    alerts: Tuple[Alert, ...]
    diagnosis: Diagnosis
    risk_level: RiskLevel
    confidence: float
    audio_reference: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", truncate_to_millis(self.timestamp))
        object.__setattr__(self, "alerts", tuple(self.alerts))
        object.__setattr__(self, "risk_level", RiskLevel(self.risk_level))
        object.__setattr__(self, "duration", _finite(self.duration))

    @classmethod
    def from_detection(
        cls,
        result: DetectionResult,
        diagnosis: Diagnosis,
        duration: Optional[float] = None,
        cry_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "CryInstance":
        """Fold a detection result and its diagnosis into a storable record."""
        return cls(
            id=cry_id or f"cry-{uuid.uuid4().hex}",
            timestamp=timestamp or result.timestamp,
            duration=result.features.duration if duration is None else duration,
            features=result.features,
            alerts=result.alerts,
            diagnosis=diagnosis,
            risk_level=result.risk_level,
            confidence=diagnosis.confidence,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted layout. The timestamp stays a datetime."""
        data: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "duration": self.duration,
            "features": self.features.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "diagnosis": self.diagnosis.to_dict(),
            "riskLevel": self.risk_level.value,
            "confidence": self.confidence,
        }
        if self.audio_reference is not None:
            data["audioReference"] = self.audio_reference
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CryInstance":
        return cls(
            id=str(data["id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            duration=float(data.get("duration", 0.0)),
            features=AudioFeatures.from_dict(data.get("features") or {}),
            alerts=tuple(Alert.from_dict(a) for a in data.get("alerts") or ()),
            diagnosis=Diagnosis.from_dict(data.get("diagnosis") or {}),
            risk_level=RiskLevel(data.get("riskLevel", "low")),
            confidence=float(data.get("confidence", 0.0)),
            audio_reference=data.get("audioReference"),
        )


# =============================================================================
# Detector Events
# =============================================================================

@dataclass(frozen=True, eq=False)
class CryConfirmation:
    """
    Event emitted by the detector when buffered activity validates as a cry.

    Carries the minimal fast-path features plus the concatenated samples so
    downstream stages can run full feature extraction.
    """
    features: AudioFeatures
    samples: np.ndarray
    sample_rate: int
    block_count: int
    trigger: str  # "sustained" | "release"
    confirmed_at: datetime = field(default_factory=utc_now_ms)


# =============================================================================
# Storage Results
# =============================================================================

@dataclass(frozen=True)
class AudioWriteOutcome:
    """Result of persisting an audio attachment for a cry."""
    cry_id: str
    stored: bool
    size: int
    mime_type: str
    error: Optional[str] = None


@dataclass(frozen=True)
class AudioEntry:
    """A decoded audio attachment."""
    data: bytes
    mime_type: str
    size: int


# =============================================================================
# Analytics Types
# =============================================================================

@dataclass
class CryAnalytics:
    """
    Aggregated statistics over stored cries.

    Provides summary numbers for dashboards and trend views.
    """
    total_cries: int = 0
    avg_duration: float = 0.0
    most_common_diagnosis: str = "None"
    critical_alerts: int = 0
    cries_per_hour: float = 0.0
    diagnosis_breakdown: Dict[str, int] = field(default_factory=dict)
    risk_level_counts: Dict[str, int] = field(default_factory=dict)
    alert_type_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_cries": self.total_cries,
            "avg_duration": self.avg_duration,
            "most_common_diagnosis": self.most_common_diagnosis,
            "critical_alerts": self.critical_alerts,
            "cries_per_hour": self.cries_per_hour,
            "diagnosis_breakdown": dict(self.diagnosis_breakdown),
            "risk_level_counts": dict(self.risk_level_counts),
            "alert_type_counts": dict(self.alert_type_counts),
        }
