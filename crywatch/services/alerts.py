"""
CryWatch - Heuristic Alert Analyzer

Turns AudioFeatures into clinically-styled alerts and a DetectionResult.

The rules are fixed thresholds on the extracted features, in the spirit of
the cry-acoustics literature (very high or unstable pitch, monotonous
high-pitched "mewing", noisy phonation, weak or grunting cries). They exist
to exercise the alert/diagnosis path end to end and have NO clinical
validity.

Rules are evaluated in a fixed order, so the alert list order is
deterministic; the diagnosis engine relies on that order as a tie-break.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from crywatch.core.types import (
    Alert,
    AlertType,
    AudioFeatures,
    DetectionResult,
    Severity,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class HeuristicAlertAnalyzer:
    """
    Threshold-based alert generation.

    Keeps an exponential moving average of cry loudness so that a cry much
    quieter than this infant's usual cries can be flagged as weak.

    Not thread-safe: the loudness baseline is per-analyzer mutable state.
    """

    HYPERPHONATION_F0_HZ = 1000.0
    SERIOUS_ILLNESS_F0_STD_HZ = 150.0
    CRI_DU_CHAT_F0_HZ = 800.0
    CRI_DU_CHAT_MAX_F0_STD_HZ = 30.0
    HOARSE_MAX_HNR_DB = 5.0
    HOARSE_MIN_JITTER_PCT = 2.0
    HOARSE_MIN_SHIMMER_PCT = 10.0
    WEAK_ABS_RMS = 0.03
    WEAK_BASELINE_RATIO = 0.4
    GRUNT_MAX_F0_HZ = 350.0
    GRUNT_MIN_BURSTS = 3
    GRUNT_MIN_RATE_HZ = 1.5
    HEARING_MIN_SEGMENT_S = 3.0
    HEARING_MAX_F0_STD_HZ = 20.0
    HYPERNASAL_MIN_RATIO = 0.6
    MIN_PITCH_FRAMES = 3

    def __init__(self, baseline_alpha: float = 0.1):
        """
        Args:
            baseline_alpha: Weight of the newest cry in the loudness baseline
        """
        self._baseline_alpha = baseline_alpha
        self._baseline_rms: Optional[float] = None
        self._call_count = 0

    @property
    def analyzer_id(self) -> str:
        return "heuristic-alerts-v1"

    @property
    def baseline_rms(self) -> Optional[float]:
        return self._baseline_rms

    def update_baseline(self, rms: float) -> None:
        """Fold a cry's RMS into the loudness baseline."""
        if rms <= 0:
            return
        if self._baseline_rms is None:
            self._baseline_rms = rms
        else:
            a = self._baseline_alpha
            self._baseline_rms = (1 - a) * self._baseline_rms + a * rms

    def analyze(
        self,
        features: AudioFeatures,
        timestamp: Optional[datetime] = None,
    ) -> DetectionResult:
        """Evaluate every rule and wrap the alerts in a DetectionResult."""
        self._call_count += 1
        alerts = self.evaluate(features)
        result = DetectionResult.from_alerts(features, alerts, timestamp=timestamp)

        logger.debug(
            "Alert analysis #%d: %d alerts, risk=%s",
            self._call_count, len(alerts), result.risk_level.value,
        )
        return result

    def evaluate(self, features: AudioFeatures) -> List[Alert]:
        alerts: List[Alert] = []
        pitched = len(features.f0) >= self.MIN_PITCH_FRAMES

        # --- Pitch ---
        if pitched and features.f0_mean > self.HYPERPHONATION_F0_HZ:
            if features.f0_std > self.SERIOUS_ILLNESS_F0_STD_HZ:
                alerts.append(Alert(
                    type=AlertType.SERIOUS_ILLNESS,
                    severity=Severity.CRITICAL,
                    confidence=_clamp(0.6 + features.f0_std / 1000.0),
                    message="Possible serious illness",
                    description=(
                        f"Very high ({features.f0_mean:.0f} Hz) and unstable "
                        f"(±{features.f0_std:.0f} Hz) cry pitch."
                    ),
                    recommendation="Check temperature, breathing and responsiveness now",
                ))
            alerts.append(Alert(
                type=AlertType.HYPERPHONATION,
                severity=Severity.HIGH,
                confidence=_clamp(0.6 + (features.f0_mean - self.HYPERPHONATION_F0_HZ) / 500.0),
                message="High-pitched cry (hyperphonation)",
                description=f"Mean cry pitch of {features.f0_mean:.0f} Hz is above the usual range.",
                recommendation="Watch for fever, irritability or feeding problems",
            ))
        elif (
            pitched
            and features.f0_mean > self.CRI_DU_CHAT_F0_HZ
            and features.f0_std < self.CRI_DU_CHAT_MAX_F0_STD_HZ
        ):
            alerts.append(Alert(
                type=AlertType.CRI_DU_CHAT,
                severity=Severity.HIGH,
                confidence=_clamp(0.5 + (self.CRI_DU_CHAT_MAX_F0_STD_HZ - features.f0_std) / 60.0),
                message="Monotonous high-pitched cry",
                description="High, flat 'mewing' pitch pattern.",
                recommendation="Mention the cry pattern at the next pediatric visit",
            ))

        # --- Voice quality ---
        if pitched and features.hnr < self.HOARSE_MAX_HNR_DB and (
            features.jitter > self.HOARSE_MIN_JITTER_PCT
            or features.shimmer > self.HOARSE_MIN_SHIMMER_PCT
        ):
            alerts.append(Alert(
                type=AlertType.HOARSENESS,
                severity=Severity.MEDIUM,
                confidence=_clamp(0.5 + (self.HOARSE_MAX_HNR_DB - features.hnr) / 20.0),
                message="Hoarse cry",
                description=(
                    f"Low harmonics-to-noise ratio ({features.hnr:.1f} dB) with "
                    f"jitter {features.jitter:.1f}% / shimmer {features.shimmer:.1f}%."
                ),
                recommendation="Watch for cough, congestion or voice changes",
            ))

        # --- Loudness ---
        if features.f0:
            weak_absolute = features.rms < self.WEAK_ABS_RMS
            weak_relative = (
                self._baseline_rms is not None
                and features.rms < self.WEAK_BASELINE_RATIO * self._baseline_rms
            )
            if weak_absolute or weak_relative:
                reference = self._baseline_rms or self.WEAK_ABS_RMS
                alerts.append(Alert(
                    type=AlertType.WEAK_CRY,
                    severity=Severity.MEDIUM,
                    confidence=_clamp(1.0 - features.rms / reference if reference > 0 else 0.5),
                    message="Weak cry",
                    description=f"Cry loudness (RMS {features.rms:.3f}) is well below usual.",
                    recommendation="Check feeding, alertness and muscle tone",
                ))

        # --- Rhythm ---
        if (
            0 < features.f0_mean < self.GRUNT_MAX_F0_HZ
            and len(features.burst_lengths) >= self.GRUNT_MIN_BURSTS
            and features.repetition_rate >= self.GRUNT_MIN_RATE_HZ
        ):
            alerts.append(Alert(
                type=AlertType.GRUNTING,
                severity=Severity.HIGH,
                confidence=_clamp(0.5 + len(features.burst_lengths) / 20.0),
                message="Grunting pattern",
                description=(
                    f"{len(features.burst_lengths)} short low-pitched bursts at "
                    f"{features.repetition_rate:.1f} Hz."
                ),
                recommendation="Check for fast breathing or chest retractions",
            ))

        if (
            pitched
            and features.voiced_segment_lengths
            and max(features.voiced_segment_lengths) > self.HEARING_MIN_SEGMENT_S
            and features.f0_std < self.HEARING_MAX_F0_STD_HZ
        ):
            alerts.append(Alert(
                type=AlertType.HEARING_IMPAIRMENT,
                severity=Severity.LOW,
                confidence=0.4,
                message="Long, flat cry segments",
                description="Unusually long voiced segments with little pitch variation.",
                recommendation="Confirm newborn hearing screening was completed",
            ))

        # --- Spectrum ---
        if features.f0 and features.nasal_energy_ratio > self.HYPERNASAL_MIN_RATIO:
            alerts.append(Alert(
                type=AlertType.HYPERNASALITY,
                severity=Severity.LOW,
                confidence=_clamp(features.nasal_energy_ratio),
                message="Nasal-sounding cry",
                description=(
                    f"{features.nasal_energy_ratio:.0%} of the energy sits in the nasal band."
                ),
                recommendation="Check for nasal congestion",
            ))

        return alerts
