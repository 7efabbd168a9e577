"""
CryWatch - Cry Analysis Pipeline

Central orchestration layer between the microphone stream and the history.

Architecture:
    The pipeline follows a staged processing model:

    1. DETECTION STAGE: feed blocks to the streaming CryDetector
    2. FEATURE STAGE: full feature extraction over the confirmed cry buffer
    3. ALERT STAGE: heuristic alerts and the derived risk level
    4. DIAGNOSIS STAGE: map alerts to a caregiver-facing Diagnosis
    5. OUTPUT STAGE: build the CryInstance and persist it if significant

    Each stage is a pluggable service so tests can swap in fakes.

Usage:
    from crywatch.config import get_settings
    from crywatch.core.pipeline import create_pipeline

    pipeline = create_pipeline(get_settings())

    for block in microphone_blocks:
        cry = pipeline.process_audio_block(block, 44100)
        if cry is not None:
            notify(cry)

Fail-safe: storage failures are logged and never propagate to the capture
loop. Structurally invalid input (bad sample rate, multi-channel arrays)
raises InvalidAudioError.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from crywatch.config import Settings
from crywatch.core.exceptions import StorageError
from crywatch.core.history_store import CryHistoryStore
from crywatch.core.logging import LogContext, mask_cry_id
from crywatch.core.types import (
    CryConfirmation,
    CryInstance,
    DetectionResult,
    Diagnosis,
    RiskLevel,
)
from crywatch.services.alerts import HeuristicAlertAnalyzer
from crywatch.services.detector import CryDetector
from crywatch.services.diagnosis import DiagnosisEngine
from crywatch.services.features import FeatureExtractor, as_signal

logger = logging.getLogger(__name__)

PCM16_MIME_TYPE = "audio/l16"


def encode_pcm16(samples: Any) -> bytes:
    """
    Convert float samples in [-1, 1] to little-endian 16-bit PCM bytes.

    Out-of-range samples are clipped.
    """
    signal = np.clip(as_signal(samples), -1.0, 1.0)
    return (signal * 32767.0).astype("<i2").tobytes()


# =============================================================================
# Pipeline Metrics (for observability)
# =============================================================================

@dataclass
class PipelineMetrics:
    """Timing for the analysis of a single confirmed cry."""
    request_id: str
    trigger: str
    extraction_ms: Optional[float] = None
    analysis_ms: Optional[float] = None
    total_ms: Optional[float] = None
    persisted: bool = False
    audio_attached: bool = False

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "trigger": self.trigger,
            "extraction_ms": round(self.extraction_ms, 2) if self.extraction_ms else None,
            "analysis_ms": round(self.analysis_ms, 2) if self.analysis_ms else None,
            "total_ms": round(self.total_ms, 2) if self.total_ms else None,
            "persisted": self.persisted,
            "audio_attached": self.audio_attached,
        }


CryHook = Callable[[CryInstance], None]
"""Hook called with every diagnosed cry, persisted or not."""


# =============================================================================
# Cry Analysis Pipeline
# =============================================================================

class CryAnalysisPipeline:
    """
    Orchestrates detection, feature extraction, alerts, diagnosis and history.

    Driven synchronously by the caller's block cadence, like the detector it
    wraps. Audio attachments are written on the history store's worker thread.
    """

    def __init__(
        self,
        detector: CryDetector,
        extractor: FeatureExtractor,
        analyzer: HeuristicAlertAnalyzer,
        diagnosis_engine: DiagnosisEngine,
        history_store: Optional[CryHistoryStore],
        settings: Settings,
    ):
        """
        Initialize the pipeline.

        Args:
            detector: Streaming cry detector
            extractor: Full feature extractor
            analyzer: Alert analyzer (owns the loudness baseline)
            diagnosis_engine: Alert-to-diagnosis mapping
            history_store: Store for significant cries (None disables persistence)
            settings: Application settings
        """
        self._detector = detector
        self._extractor = extractor
        self._analyzer = analyzer
        self._diagnosis = diagnosis_engine
        self._history_store = history_store
        self._settings = settings
        self._session_id = f"mon_{uuid.uuid4().hex[:12]}"

        self._post_hooks: List[CryHook] = []
        self._metrics_callback: Optional[Callable[[PipelineMetrics], None]] = None

        logger.info(
            "CryAnalysisPipeline initialized: extractor=%s, analyzer=%s, history=%s",
            extractor.extractor_id,
            analyzer.analyzer_id,
            "enabled" if history_store else "disabled",
        )

    @property
    def detector(self) -> CryDetector:
        return self._detector

    @property
    def analyzer(self) -> HeuristicAlertAnalyzer:
        return self._analyzer

    @property
    def session_id(self) -> str:
        return self._session_id

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def process_audio_block(self, samples: Any, sample_rate: int) -> Optional[CryInstance]:
        """
        Feed one microphone block through the full pipeline.

        Returns:
            The diagnosed CryInstance when this block confirmed a cry, else None
        """
        with LogContext(session_id=self._session_id):
            if not self._detector.process_audio_block(samples, sample_rate):
                return None

            instance = None
            for event in self._detector.drain_events():
                instance = self._handle_confirmation(event)
            return instance

    def analyze_clip(self, samples: Any, sample_rate: int) -> Tuple[DetectionResult, Diagnosis]:
        """
        Analyze a fully captured clip without detection or persistence.

        Returns:
            (DetectionResult, Diagnosis) for the clip
        """
        features = self._extractor.extract(samples, sample_rate)
        result = self._analyzer.analyze(features)
        return result, self._diagnosis.diagnose(result)

    async def analyze_clip_async(
        self,
        samples: Any,
        sample_rate: int,
    ) -> Tuple[DetectionResult, Diagnosis]:
        """Async wrapper that runs analyze_clip in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.analyze_clip, samples, sample_rate)

    # -------------------------------------------------------------------------
    # Stages (Internal)
    # -------------------------------------------------------------------------

    def _handle_confirmation(self, event: CryConfirmation) -> CryInstance:
        start_time = time.time()
        metrics = PipelineMetrics(
            request_id=f"req_{uuid.uuid4().hex[:12]}",
            trigger=event.trigger,
        )

        features = self._extractor.extract(event.samples, event.sample_rate)
        metrics.extraction_ms = (time.time() - start_time) * 1000

        analysis_start = time.time()
        result = self._analyzer.analyze(features, timestamp=event.confirmed_at)
        diagnosis = self._diagnosis.diagnose(result)
        metrics.analysis_ms = (time.time() - analysis_start) * 1000

        instance = CryInstance.from_detection(result, diagnosis)

        # Baseline is updated after analysis so a cry is judged against earlier cries only
        self._analyzer.update_baseline(features.rms)

        with LogContext(cry_id=instance.id):
            self._persist(instance, event, metrics)
            metrics.total_ms = (time.time() - start_time) * 1000
            self._log_output(instance, metrics)
            self._execute_hooks(instance)
            self._emit_metrics(metrics)

        return instance

    def _is_significant(self, instance: CryInstance) -> bool:
        return instance.risk_level is not RiskLevel.LOW or bool(instance.alerts)

    def _persist(
        self,
        instance: CryInstance,
        event: CryConfirmation,
        metrics: PipelineMetrics,
    ) -> None:
        if self._history_store is None:
            return
        if not (self._is_significant(instance) or self._settings.store_normal_cries):
            logger.debug("Normal cry not persisted: %s", mask_cry_id(instance.id))
            return

        try:
            if self._settings.store_audio:
                self._history_store.append_with_audio(
                    instance, encode_pcm16(event.samples), PCM16_MIME_TYPE
                )
                metrics.audio_attached = True
            else:
                self._history_store.append(instance)
            metrics.persisted = True
        except StorageError as e:
            logger.error("Failed to persist cry %s: %s", mask_cry_id(instance.id), e.message)

    # -------------------------------------------------------------------------
    # Hooks and Observability
    # -------------------------------------------------------------------------

    def register_hook(self, hook: CryHook) -> None:
        """
        Register a post-processing hook.

        Hooks run after every diagnosed cry, e.g. to push a notification.
        Hook failures are logged and do not affect the pipeline.
        """
        self._post_hooks.append(hook)
        logger.info("Registered pipeline hook: %s", getattr(hook, "__name__", repr(hook)))

    def set_metrics_callback(self, callback: Callable[[PipelineMetrics], None]) -> None:
        """Set callback receiving PipelineMetrics after every confirmed cry."""
        self._metrics_callback = callback

    def _execute_hooks(self, instance: CryInstance) -> None:
        for hook in self._post_hooks:
            try:
                hook(instance)
            except Exception as e:
                logger.error(
                    "Hook execution failed [%s]: %s",
                    getattr(hook, "__name__", "unknown"),
                    e,
                )

    def _emit_metrics(self, metrics: PipelineMetrics) -> None:
        if self._metrics_callback:
            try:
                self._metrics_callback(metrics)
            except Exception as e:
                logger.warning("Metrics emission failed: %s", e)

    def _log_output(self, instance: CryInstance, metrics: PipelineMetrics) -> None:
        logger.info(
            "[%s] Cry diagnosed: %s, risk=%s, alerts=%d, persisted=%s, total_ms=%.1f",
            metrics.request_id,
            instance.diagnosis.primary,
            instance.risk_level.value,
            len(instance.alerts),
            metrics.persisted,
            metrics.total_ms or 0,
        )

        if instance.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.warning(
                "[%s] HIGH RISK cry: risk=%s, attention=%s",
                metrics.request_id,
                instance.risk_level.value,
                instance.diagnosis.medical_attention.value,
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Reset the detector and release the history store's worker thread."""
        self._detector.reset()
        if self._history_store is not None:
            self._history_store.close()
        logger.info("Pipeline closed")


# =============================================================================
# Factory Function
# =============================================================================

def create_pipeline(
    settings: Settings,
    history_store: Optional[CryHistoryStore] = None,
) -> CryAnalysisPipeline:
    """
    Create a fully wired pipeline from settings.

    NOT A MEDICAL DEVICE: the alert heuristics have no clinical validity.

    Args:
        settings: Application settings
        history_store: Store override (default: create from settings)

    Returns:
        Configured CryAnalysisPipeline instance
    """
    from crywatch.core.history_store import create_history_store
    from crywatch.services.detector import create_detector

    if history_store is None:
        history_store = create_history_store(settings)

    return CryAnalysisPipeline(
        detector=create_detector(settings),
        extractor=FeatureExtractor(),
        analyzer=HeuristicAlertAnalyzer(),
        diagnosis_engine=DiagnosisEngine(),
        history_store=history_store,
        settings=settings,
    )
