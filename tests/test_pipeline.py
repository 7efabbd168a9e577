"""
CryWatch - Pipeline Tests

Tests the orchestration of detection, features, alerts, diagnosis and history.
These tests verify:
- Confirmed cries come back as diagnosed CryInstances
- Only significant cries are persisted (unless configured otherwise)
- Audio attachments are stored as PCM16
- Storage and hook failures never reach the capture loop

Run with: pytest tests/test_pipeline.py -v
"""

import logging
from typing import List, Optional

import numpy as np
import pytest

from conftest import SAMPLE_RATE, FakeClock, blocks, harmonic_tone, silence, sine
from crywatch.config import Settings
from crywatch.core.history_store import CryHistoryStore
from crywatch.core.pipeline import (
    PCM16_MIME_TYPE,
    CryAnalysisPipeline,
    PipelineMetrics,
    create_pipeline,
    encode_pcm16,
)
from crywatch.core.storage import InMemoryStorage
from crywatch.core.types import AlertType, CryInstance, MedicalAttention, RiskLevel
from crywatch.services.alerts import HeuristicAlertAnalyzer
from crywatch.services.detector import CryDetector
from crywatch.services.diagnosis import DiagnosisEngine
from crywatch.services.features import FeatureExtractor

CRY_BLOCKS = 21  # the sustained check confirms on the 21st block


def run(pipeline: CryAnalysisPipeline, clock: FakeClock, signal: np.ndarray) -> List[CryInstance]:
    """Feed a signal block by block; collect every returned cry."""
    cries = []
    for block in blocks(signal):
        clock.advance(block.size / SAMPLE_RATE)
        cry = pipeline.process_audio_block(block, SAMPLE_RATE)
        if cry is not None:
            cries.append(cry)
    return cries


def cry_seconds(count: int = CRY_BLOCKS) -> float:
    return count * 512 / SAMPLE_RATE


def build_pipeline(
    clock: FakeClock,
    store: Optional[CryHistoryStore],
    **settings_overrides,
) -> CryAnalysisPipeline:
    return CryAnalysisPipeline(
        detector=CryDetector(clock=clock),
        extractor=FeatureExtractor(),
        analyzer=HeuristicAlertAnalyzer(),
        diagnosis_engine=DiagnosisEngine(),
        history_store=store,
        settings=Settings(**settings_overrides),
    )


class TestStreaming:
    """process_audio_block()."""

    def test_quiet_input_returns_nothing(self, pipeline, clock):
        assert run(pipeline, clock, silence(2.0)) == []

    def test_normal_cry(self, pipeline, clock, history_store):
        """A healthy-looking cry is diagnosed as normal and not persisted."""
        cries = run(pipeline, clock, harmonic_tone(450, cry_seconds()))

        assert len(cries) == 1
        cry = cries[0]
        assert cry.alerts == ()
        assert cry.risk_level is RiskLevel.LOW
        assert cry.diagnosis.primary == "Normal Cry"
        assert cry.features.f0_mean == pytest.approx(450, rel=0.05)
        assert len(cry.features.f0) > 3
        assert history_store.get_all() == []

    def test_significant_cry_persisted_with_audio(self, pipeline, clock, history_store):
        """A high, flat 900 Hz cry raises an alert and is stored with PCM16 audio."""
        signal = sine(900, cry_seconds())
        cries = run(pipeline, clock, signal)

        assert len(cries) == 1
        cry = cries[0]
        assert [a.type for a in cry.alerts] == [AlertType.CRI_DU_CHAT]
        assert cry.risk_level is RiskLevel.HIGH
        assert cry.diagnosis.medical_attention is MedicalAttention.CONSULT

        history_store.close()  # waits for the audio write
        stored = history_store.get_all()
        assert [c.id for c in stored] == [cry.id]
        assert stored[0].audio_reference is not None

        entry = history_store.get_audio_entry(cry.id)
        assert entry.mime_type == PCM16_MIME_TYPE
        assert entry.data == encode_pcm16(signal)

    def test_store_normal_cries(self, clock, storage):
        store = CryHistoryStore(storage)
        pipeline = build_pipeline(clock, store, store_normal_cries=True, store_audio=False)

        cries = run(pipeline, clock, harmonic_tone(450, cry_seconds()))

        stored = store.get_all()
        assert [c.id for c in stored] == [cries[0].id]
        assert stored[0].audio_reference is None
        pipeline.close()

    def test_without_history_store(self, clock):
        pipeline = build_pipeline(clock, None)
        assert len(run(pipeline, clock, sine(900, cry_seconds()))) == 1

    def test_baseline_tracks_cries(self, pipeline, clock):
        run(pipeline, clock, harmonic_tone(450, cry_seconds()))
        assert pipeline.analyzer.baseline_rms == pytest.approx(0.18, abs=0.02)


class TestFailureIsolation:
    def test_storage_failure_is_contained(self, clock, caplog):
        """A full store is logged; the diagnosed cry is still returned."""
        store = CryHistoryStore(InMemoryStorage(quota_bytes=100))
        pipeline = build_pipeline(clock, store)

        with caplog.at_level(logging.ERROR, logger="crywatch.core.pipeline"):
            cries = run(pipeline, clock, sine(900, cry_seconds()))

        assert len(cries) == 1
        assert store.get_all() == []
        assert "Failed to persist cry" in caplog.text
        pipeline.close()

    def test_failing_hook_is_contained(self, pipeline, clock):
        received = []

        def broken(cry):
            raise RuntimeError("hook down")

        pipeline.register_hook(broken)
        pipeline.register_hook(received.append)

        cries = run(pipeline, clock, sine(900, cry_seconds()))

        assert received == cries

    def test_metrics_callback(self, pipeline, clock):
        metrics: List[PipelineMetrics] = []
        pipeline.set_metrics_callback(metrics.append)

        run(pipeline, clock, sine(900, cry_seconds()))

        assert len(metrics) == 1
        assert metrics[0].trigger == "sustained"
        assert metrics[0].persisted is True
        assert metrics[0].audio_attached is True
        assert metrics[0].to_dict()["request_id"].startswith("req_")


class TestClipAnalysis:
    def test_analyze_clip(self, pipeline):
        result, diagnosis = pipeline.analyze_clip(sine(900, 1.0), SAMPLE_RATE)

        assert result.risk_level is RiskLevel.HIGH
        assert diagnosis.tags == ("high-priority", "cri_du_chat")

    def test_analyze_clip_silence(self, pipeline):
        result, diagnosis = pipeline.analyze_clip(silence(1.0), SAMPLE_RATE)

        assert result.alerts == ()
        assert diagnosis.primary == "Normal Cry"

    @pytest.mark.asyncio
    async def test_analyze_clip_async(self, pipeline):
        result, diagnosis = await pipeline.analyze_clip_async(harmonic_tone(450, 1.0), SAMPLE_RATE)

        assert result.risk_level is RiskLevel.LOW
        assert diagnosis.primary == "Normal Cry"

    def test_clip_analysis_does_not_persist(self, pipeline, history_store):
        pipeline.analyze_clip(sine(900, 1.0), SAMPLE_RATE)
        assert history_store.get_all() == []


class TestHelpers:
    def test_encode_pcm16(self):
        data = encode_pcm16([0.0, 1.0, -1.0, 2.0, -0.5])
        values = np.frombuffer(data, dtype="<i2")

        assert values.tolist() == [0, 32767, -32767, 32767, -16383]

    def test_create_pipeline(self, test_settings):
        pipeline = create_pipeline(test_settings)

        assert isinstance(pipeline, CryAnalysisPipeline)
        assert pipeline.detector.cry_threshold == test_settings.cry_threshold
        assert pipeline.session_id.startswith("mon_")
        pipeline.close()
