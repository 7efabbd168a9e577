"""
CryWatch - Diagnosis Engine

Maps a DetectionResult to a caregiver-facing Diagnosis.

Selection rule:
    1. No alerts: "Normal Cry".
    2. Otherwise pick the highest severity band present, in the order
       critical > high > (medium | low), and take the FIRST alert of that
       band in alert list order as the primary alert.
    3. The band fixes the medical attention level, the boilerplate
       recommendation appended after the alert's own, and the tags.

Medium and low form a single band, so among them list order alone decides.
The engine is a pure function of its input: no state, safe on any thread.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

from crywatch.core.types import (
    Alert,
    DetectionResult,
    Diagnosis,
    MedicalAttention,
    Severity,
)

logger = logging.getLogger(__name__)

NORMAL_DIAGNOSIS = Diagnosis(
    primary="Normal Cry",
    description="Cry patterns appear within normal ranges.",
    recommendations=("Continue regular monitoring", "Maintain feeding and sleep schedules"),
    medical_attention=MedicalAttention.NONE,
    confidence=0.8,
    tags=("normal", "healthy"),
)

# Highest band first; medium and low share the last band
SEVERITY_BANDS: Tuple[Tuple[Severity, ...], ...] = (
    (Severity.CRITICAL,),
    (Severity.HIGH,),
    (Severity.MEDIUM, Severity.LOW),
)

BAND_ATTENTION: Dict[Severity, MedicalAttention] = {
    Severity.CRITICAL: MedicalAttention.EMERGENCY,
    Severity.HIGH: MedicalAttention.CONSULT,
    Severity.MEDIUM: MedicalAttention.MONITOR,
    Severity.LOW: MedicalAttention.MONITOR,
}

BAND_RECOMMENDATION: Dict[Severity, str] = {
    Severity.CRITICAL: "Seek immediate medical evaluation",
    Severity.HIGH: "Consider consulting pediatrician",
    Severity.MEDIUM: "Monitor for patterns",
    Severity.LOW: "Monitor for patterns",
}


def select_primary_alert(alerts: Sequence[Alert]) -> Optional[Alert]:
    """First alert, in list order, of the highest severity band present."""
    for band in SEVERITY_BANDS:
        for alert in alerts:
            if alert.severity in band:
                return alert
    return None


def _tags_for(alert: Alert) -> Tuple[str, ...]:
    if alert.severity is Severity.CRITICAL:
        return ("critical", alert.type.value, "urgent")
    if alert.severity is Severity.HIGH:
        return ("high-priority", alert.type.value)
    return (alert.severity.value, alert.type.value)


class DiagnosisEngine:
    """Deterministic alert-to-diagnosis mapping."""

    @staticmethod
    def diagnose(result: DetectionResult) -> Diagnosis:
        primary = select_primary_alert(result.alerts)
        if primary is None:
            return NORMAL_DIAGNOSIS

        diagnosis = Diagnosis(
            primary=primary.message,
            description=primary.description,
            recommendations=(primary.recommendation, BAND_RECOMMENDATION[primary.severity]),
            medical_attention=BAND_ATTENTION[primary.severity],
            confidence=primary.confidence,
            tags=_tags_for(primary),
        )
        logger.debug(
            "Diagnosis: %s (%s, attention=%s)",
            diagnosis.primary, primary.type.value, diagnosis.medical_attention.value,
        )
        return diagnosis


def diagnose(result: DetectionResult) -> Diagnosis:
    """Map a detection result to a diagnosis."""
    return DiagnosisEngine.diagnose(result)
