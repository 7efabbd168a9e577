"""
CryWatch - Acoustic Feature Extraction Service

Extracts the acoustic features used to characterise infant cries.

Feature Categories:
    1. Pitch (F0): per-frame autocorrelation estimates, mean, std
    2. Energy: whole-segment RMS, RMS envelope segmentation
    3. Spectrum: centroid, flatness, band energy ratios
    4. Voice quality: HNR, jitter, shimmer (perturbation measures)
    5. Temporal: voiced/pause/burst run lengths, repetition rate

The algorithms are deliberately simple heuristics:
    - F0 uses a brute-force autocorrelation scan over the infant cry range
      (300-1200 Hz). Every admissible lag is evaluated and the global maximum
      wins, which avoids locking onto a local peak at a harmonic.
    - The spectral centroid uses the first 2048 samples and the lower half
      of the spectrum.
    - Perturbation measures fall back to 0 when fewer than three voiced
      frames are available.

Framing, the segmentation envelope and spectral flatness come from librosa;
the autocorrelation scan and the centroid are computed directly in numpy.

Every division is guarded: no field of the returned AudioFeatures is ever
NaN or infinite. The extractor holds no state between calls, so a single
instance can be shared across threads.
"""

from __future__ import annotations

import logging
from typing import Any, List, Tuple

import librosa
import numpy as np

from crywatch.core.exceptions import InvalidAudioError
from crywatch.core.types import AudioFeatures

logger = logging.getLogger(__name__)

F0_MIN_HZ = 300.0
F0_MAX_HZ = 1200.0
CENTROID_WINDOW = 2048

NASAL_BAND_HZ = (250.0, 800.0)
LOW_MID_BAND_HZ = (500.0, 2000.0)


# =============================================================================
# Primitives (shared with the streaming detector)
# =============================================================================

def as_signal(samples: Any) -> np.ndarray:
    """
    Convert a mono buffer to a float64 numpy array.

    Non-finite samples are replaced with 0.

    Raises:
        InvalidAudioError: if the buffer is not one-dimensional
    """
    signal = np.asarray(samples, dtype=np.float64)
    if signal.ndim != 1:
        raise InvalidAudioError(
            "Audio buffer must be one-dimensional (mono)",
            details={"shape": list(signal.shape)},
        )
    if not np.all(np.isfinite(signal)):
        signal = np.nan_to_num(signal, nan=0.0, posinf=0.0, neginf=0.0)
    return signal


def check_sample_rate(sample_rate: int) -> int:
    if sample_rate is None or sample_rate <= 0:
        raise InvalidAudioError(
            f"Sample rate must be positive, got {sample_rate}",
            details={"sample_rate": sample_rate},
        )
    return int(sample_rate)


def compute_rms(signal: np.ndarray) -> float:
    """Root-mean-square amplitude; 0 for an empty buffer."""
    if signal.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(signal * signal)))


def autocorrelation_peak(signal: np.ndarray, sample_rate: int) -> Tuple[int, float]:
    """
    Find the lag with the strongest autocorrelation in the F0 search range.

    Correlations are normalized by the zero-lag energy. Lags cover
    [sample_rate/1200, sample_rate/300] and stay below half the buffer
    length.

    Returns:
        (lag, correlation); lag is 0 when no lag correlates positively
    """
    n = signal.size
    energy = float(np.dot(signal, signal))
    if n == 0 or energy <= 0.0:
        return 0, 0.0

    min_lag = max(1, int(sample_rate // F0_MAX_HZ))
    max_lag = int(sample_rate // F0_MIN_HZ)

    best_lag = 0
    best_corr = 0.0
    for lag in range(min_lag, max_lag + 1):
        if lag >= n / 2:
            break
        corr = float(np.dot(signal[:-lag], signal[lag:])) / energy
        if corr > best_corr:
            best_corr = corr
            best_lag = lag

    return best_lag, best_corr


def estimate_f0(signal: np.ndarray, sample_rate: int) -> float:
    """Autocorrelation F0 estimate in Hz, or 0 for silence/unvoiced input."""
    lag, _ = autocorrelation_peak(signal, sample_rate)
    return sample_rate / lag if lag > 0 else 0.0


def spectral_centroid(signal: np.ndarray, sample_rate: int) -> float:
    """
    Magnitude-weighted mean frequency of the first analysis window.

    centroid = sum(f * |X(f)|) / sum(|X(f)|) over the bins below Nyquist,
    or 0 when the spectrum carries no energy.
    """
    size = min(CENTROID_WINDOW, signal.size)
    if size == 0:
        return 0.0

    half = size // 2
    magnitudes = np.abs(np.fft.rfft(signal[:size]))[:half]
    total = float(magnitudes.sum())
    if total <= 0.0:
        return 0.0

    frequencies = np.arange(half) * sample_rate / size
    return float(np.dot(frequencies, magnitudes) / total)


def _mean_spectral_flatness(frames: List[np.ndarray]) -> float:
    """Mean flatness over frames; 0 = tonal, 1 = noise-like."""
    if not frames:
        return 0.0
    magnitudes = np.abs(np.fft.rfft(np.stack(frames), axis=1)).T
    flatness = librosa.feature.spectral_flatness(S=magnitudes)
    return float(np.mean(flatness))


def _band_ratio(power: np.ndarray, frequencies: np.ndarray, band: Tuple[float, float]) -> float:
    total = float(power.sum())
    if total <= 0.0:
        return 0.0
    low, high = band
    mask = (frequencies >= low) & (frequencies < high)
    return float(power[mask].sum()) / total


def _frames(signal: np.ndarray, frame_length: int, hop: int) -> np.ndarray:
    """Overlapping frames, one per row; a short signal becomes one frame."""
    if signal.size < frame_length:
        return signal.reshape(1, -1) if signal.size else np.empty((0, 0))
    return librosa.util.frame(signal, frame_length=frame_length, hop_length=hop, axis=0)


# =============================================================================
# Feature Extractor
# =============================================================================

class FeatureExtractor:
    """
    Deterministic acoustic feature extractor.

    Same input always yields the same AudioFeatures. Usable on a fully
    captured clip as well as on the buffer of a confirmed streaming cry.
    """

    def __init__(
        self,
        frame_seconds: float = 0.04,
        envelope_frame_seconds: float = 0.01,
        voicing_rms_floor: float = 0.01,
        voicing_correlation: float = 0.3,
        envelope_threshold_ratio: float = 0.1,
        envelope_abs_floor: float = 0.02,
        burst_max_seconds: float = 0.2,
        min_voiced_frames: int = 3,
    ):
        """
        Initialize the extractor.

        Args:
            frame_seconds: Analysis frame length for F0/HNR (50 % overlap)
            envelope_frame_seconds: Frame length of the RMS envelope
            voicing_rms_floor: Frames quieter than this are not pitch-tracked
            voicing_correlation: Minimum normalized correlation for a voiced frame
            envelope_threshold_ratio: Sound threshold relative to envelope peak
            envelope_abs_floor: Absolute lower bound of the sound threshold
            burst_max_seconds: Sound runs shorter than this between pauses are bursts
            min_voiced_frames: Voiced frames needed for HNR/jitter/shimmer
        """
        self._frame_seconds = frame_seconds
        self._envelope_frame_seconds = envelope_frame_seconds
        self._voicing_rms_floor = voicing_rms_floor
        self._voicing_correlation = voicing_correlation
        self._envelope_threshold_ratio = envelope_threshold_ratio
        self._envelope_abs_floor = envelope_abs_floor
        self._burst_max_seconds = burst_max_seconds
        self._min_voiced_frames = min_voiced_frames

    @property
    def extractor_id(self) -> str:
        return "autocorr-features-v1"

    def extract(self, samples: Any, sample_rate: int) -> AudioFeatures:
        """
        Extract features from a mono PCM buffer.

        Args:
            samples: 1-D float samples, nominally in [-1, 1]
            sample_rate: Sample rate in Hz

        Returns:
            Fully populated AudioFeatures
        """
        sample_rate = check_sample_rate(sample_rate)
        signal = as_signal(samples)

        if signal.size == 0:
            return AudioFeatures.empty(sample_rate=sample_rate, duration=0.0)

        duration = signal.size / sample_rate

        f0, hnr, jitter, shimmer, flatness = self._frame_analysis(signal, sample_rate)
        voiced, pauses, bursts, repetition_rate = self._segment(signal, sample_rate)

        power = np.abs(np.fft.rfft(signal)) ** 2
        frequencies = np.fft.rfftfreq(signal.size, d=1.0 / sample_rate)

        features = AudioFeatures(
            f0=f0,
            hnr=hnr,
            jitter=jitter,
            shimmer=shimmer,
            rms=compute_rms(signal),
            spectral_centroid=spectral_centroid(signal, sample_rate),
            spectral_flatness=flatness,
            voiced_segment_lengths=voiced,
            pause_lengths=pauses,
            burst_lengths=bursts,
            repetition_rate=repetition_rate,
            nasal_energy_ratio=_band_ratio(power, frequencies, NASAL_BAND_HZ),
            low_mid_harmonics=_band_ratio(power, frequencies, LOW_MID_BAND_HZ),
            duration=duration,
            sample_rate=sample_rate,
        )

        logger.debug(
            "Features: %.2fs audio, f0=%.0fHz (%d voiced frames), rms=%.3f, centroid=%.0fHz",
            duration, features.f0_mean, len(f0), features.rms, features.spectral_centroid,
        )
        return features

    async def extract_async(self, samples: Any, sample_rate: int) -> AudioFeatures:
        """Async wrapper that runs extraction in the default thread pool."""
        import asyncio

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.extract, samples, sample_rate)

    # -------------------------------------------------------------------------
    # Frame-level pitch and voice quality
    # -------------------------------------------------------------------------

    def _frame_analysis(
        self, signal: np.ndarray, sample_rate: int
    ) -> Tuple[List[float], float, float, float, float]:
        frame_length = max(1, int(round(self._frame_seconds * sample_rate)))
        hop = max(1, frame_length // 2)

        f0: List[float] = []
        hnr_values: List[float] = []
        peak_amplitudes: List[float] = []
        sounding: List[np.ndarray] = []

        for frame in _frames(signal, frame_length, hop):
            if compute_rms(frame) < self._voicing_rms_floor:
                continue
            sounding.append(frame)

            lag, corr = autocorrelation_peak(frame, sample_rate)
            if lag == 0 or corr < self._voicing_correlation:
                continue

            f0.append(sample_rate / lag)
            clipped = min(max(corr, 1e-6), 1.0 - 1e-6)
            hnr_values.append(10.0 * np.log10(clipped / (1.0 - clipped)))
            peak_amplitudes.append(float(np.max(np.abs(frame))))

        flatness = _mean_spectral_flatness(sounding)

        if len(f0) < self._min_voiced_frames:
            return f0, 0.0, 0.0, 0.0, flatness

        return (
            f0,
            float(np.mean(hnr_values)),
            _perturbation_percent(1.0 / np.asarray(f0)),
            _perturbation_percent(np.asarray(peak_amplitudes)),
            flatness,
        )

    # -------------------------------------------------------------------------
    # Envelope segmentation
    # -------------------------------------------------------------------------

    def _segment(
        self, signal: np.ndarray, sample_rate: int
    ) -> Tuple[List[float], List[float], List[float], float]:
        """
        Split the RMS envelope into voiced, pause and burst runs.

        A run of frames above the threshold is voiced; below, a pause. An
        above-threshold run shorter than burst_max_seconds with a pause on
        both sides is a burst instead of a voiced segment.
        """
        n = signal.size
        frame_length = max(1, int(round(self._envelope_frame_seconds * sample_rate)))
        # Zero-pad so the tail forms a last, partial envelope frame
        padded = np.pad(signal, (0, -n % frame_length))
        envelope = librosa.feature.rms(
            y=padded, frame_length=frame_length, hop_length=frame_length, center=False
        )[0]
        starts = np.arange(envelope.size) * frame_length

        threshold = max(self._envelope_abs_floor, self._envelope_threshold_ratio * float(envelope.max()))
        active = envelope > threshold

        # (is_active, start_sample, end_sample)
        runs: List[Tuple[bool, int, int]] = []
        run_start = 0
        for i in range(1, len(active) + 1):
            if i == len(active) or active[i] != active[run_start]:
                start_sample = int(starts[run_start])
                end_sample = min(int(starts[i - 1]) + frame_length, n)
                runs.append((bool(active[run_start]), start_sample, end_sample))
                run_start = i

        voiced: List[float] = []
        pauses: List[float] = []
        bursts: List[float] = []
        onsets: List[float] = []

        for index, (is_active, start, end) in enumerate(runs):
            seconds = (end - start) / sample_rate
            if not is_active:
                pauses.append(seconds)
                continue
            onsets.append(start / sample_rate)
            between_pauses = 0 < index < len(runs) - 1
            if between_pauses and seconds < self._burst_max_seconds:
                bursts.append(seconds)
            else:
                voiced.append(seconds)

        repetition_rate = 0.0
        if len(onsets) >= 2:
            mean_interval = float(np.mean(np.diff(onsets)))
            if mean_interval > 0:
                repetition_rate = 1.0 / mean_interval

        return voiced, pauses, bursts, repetition_rate


def _perturbation_percent(values: np.ndarray) -> float:
    """Mean absolute consecutive difference relative to the mean, in percent."""
    if values.size < 2:
        return 0.0
    mean = float(np.mean(values))
    if mean <= 0:
        return 0.0
    return float(np.mean(np.abs(np.diff(values))) / mean * 100.0)


_default_extractor = FeatureExtractor()


def extract_features(samples: Any, sample_rate: int) -> AudioFeatures:
    """Extract features with the default extractor settings."""
    return _default_extractor.extract(samples, sample_rate)
