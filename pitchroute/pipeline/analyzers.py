# pitchroute/pipeline/analyzers.py
"""
Specialised downstream analyzers selected by the router.

VoiceAnalyzer tracks a smoothed pitch and describes formants, vowel and
voice quality. InstrumentAnalyzer runs the fused multi-algorithm detector
and describes techniques, family traits and timbre for one family.
Both keep per-stream state and are not thread-safe.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import numpy as np
import scipy.signal

from .config import ClassifierConfig, EstimatorConfig, FusionConfig
from .detectors import RealTimeYinEstimator, hz_to_midi
from .features import amplitude_envelope, attack_time, decay_time, sustain_level, zero_crossing_rate
from .fusion import MultiAlgorithmPitchDetector, algorithms_used
from .models import AnalysisResult, AudioLabel, InstrumentFamily, PitchCandidate
from .spectral import SpectrumCache, bin_width, fit_frame, magnitude_spectrum, parabolic_interpolation

logger = logging.getLogger(__name__)

_SILENCE_RMS = 0.001


def _high_pass(y: np.ndarray, sr: int, cutoff_hz: float, order: int = 2) -> np.ndarray:
    if y.size == 0:
        return y
    nyq = 0.5 * sr
    norm = min(max(float(cutoff_hz) / nyq, 1e-5), 0.999)
    sos = scipy.signal.butter(int(order), norm, btype="highpass", output="sos")
    # sosfiltfilt pads 3 * (2 * sections + 1) samples on each side
    if y.size <= 3 * (2 * len(sos) + 1):
        return scipy.signal.sosfilt(sos, y)
    return scipy.signal.sosfiltfilt(sos, y)


def _normalize_peak(y: np.ndarray) -> np.ndarray:
    peak = float(np.max(np.abs(y))) if y.size else 0.0
    if peak <= 0.0:
        return y
    return y / peak


def _onset_slope(env: np.ndarray) -> float:
    """Peak level over its index, scaled to [0, 1]; an immediate peak is 1."""
    if env.size < 5:
        return 0.0
    p = int(np.argmax(env))
    if p == 0:
        return 1.0
    return min(1.0, float(env[p]) / p / 10.0)


class BaseAnalyzer:
    """
    Base for downstream analyzers.
    Must implement: _analyze(x) -> AnalysisResult
    """

    name = "base"
    plausible_range: Tuple[float, float] = (20.0, 8000.0)

    def __init__(
        self,
        sr: int = 44100,
        frame_size: int = 2048,
        estimator_config: Optional[EstimatorConfig] = None,
        **kwargs: Any,
    ):
        self.sr = int(sr)
        self.frame_size = int(frame_size)
        self.estimator_config = estimator_config or EstimatorConfig()
        self.params: Dict[str, float] = {}
        self.kwargs = kwargs

    def analyze(self, frame: np.ndarray) -> AnalysisResult:
        y = np.asarray(frame, dtype=np.float64).reshape(-1)
        if y.size == 0:
            return AnalysisResult(self.name)
        if not np.all(np.isfinite(y)):
            y = np.nan_to_num(y, nan=0.0, posinf=0.0, neginf=0.0)
        if float(np.sqrt(np.mean(y * y))) < _SILENCE_RMS:
            return AnalysisResult(self.name)
        return self._analyze(y)

    def _analyze(self, y: np.ndarray) -> AnalysisResult:
        raise NotImplementedError

    def update_parameters(self, params: Dict[str, float]) -> None:
        self.params.update({k: float(v) for k, v in (params or {}).items()})

    def reset(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Voice
# ---------------------------------------------------------------------------

VOWEL_TABLE: List[Tuple[str, Tuple[float, float], Tuple[float, float]]] = [
    ("i", (200.0, 400.0), (2000.0, 3200.0)),
    ("e", (300.0, 600.0), (1800.0, 2600.0)),
    ("a", (600.0, 1000.0), (1000.0, 1800.0)),
    ("o", (400.0, 800.0), (600.0, 1200.0)),
    ("u", (200.0, 400.0), (600.0, 1200.0)),
]


def classify_vowel(formants: List[Dict[str, float]]) -> Dict[str, Any]:
    if len(formants) < 2:
        return {"vowel": "unknown", "confidence": 0.0, "formant_ratios": []}
    f1 = formants[0]["frequency"]
    f2 = formants[1]["frequency"]
    f3 = formants[2]["frequency"] if len(formants) > 2 else 0.0

    best, best_conf = "unknown", 0.0
    for vowel, (lo1, hi1), (lo2, hi2) in VOWEL_TABLE:
        if lo1 <= f1 <= hi1 and lo2 <= f2 <= hi2:
            c1, c2 = 0.5 * (lo1 + hi1), 0.5 * (lo2 + hi2)
            conf = max(0.0, 1.0 - (abs(f1 - c1) / c1 + abs(f2 - c2) / c2) / 2.0)
            if conf > best_conf:
                best, best_conf = vowel, conf
    ratios = [r for r in (f2 / f1 if f1 > 0 else 0.0, f3 / f1 if f1 > 0 else 0.0) if r > 0]
    return {"vowel": best, "confidence": best_conf, "formant_ratios": ratios}


class VoiceAnalyzer(BaseAnalyzer):
    """
    Real-time YIN with a Hamming spectral fallback (80-800 Hz), formants on a
    smoothed pre-emphasized spectrum, vowel class, voice quality, and vibrato
    and glissando from a bounded pitch history (about two seconds of hops).
    """

    name = "voice"
    plausible_range = (80.0, 1000.0)

    def __init__(
        self,
        sr: int = 44100,
        frame_size: int = 2048,
        estimator_config: Optional[EstimatorConfig] = None,
        classifier_config: Optional[ClassifierConfig] = None,
        pitch_smoothing_factor: float = 0.8,
        formant_bandwidth: float = 100.0,
        **kwargs: Any,
    ):
        super().__init__(sr, frame_size, estimator_config, **kwargs)
        self.classifier_config = classifier_config or ClassifierConfig()
        self.params = {
            "pitch_smoothing_factor": float(pitch_smoothing_factor),
            "formant_bandwidth": float(formant_bandwidth),
        }
        self.tracker = RealTimeYinEstimator(
            self.sr,
            self.frame_size,
            config=self.estimator_config,
            smoothing_factor=self.params["pitch_smoothing_factor"],
        )
        self.hop = max(1, self.frame_size // 4)
        self.pitch_history: Deque[float] = deque(maxlen=max(1, int(2 * self.sr / self.hop)))
        self.cache = SpectrumCache()

    def update_parameters(self, params: Dict[str, float]) -> None:
        super().update_parameters(params)
        smoothing = self.params.get("pitch_smoothing_factor")
        if smoothing is not None:
            self.tracker.smoothing_factor = min(max(float(smoothing), 0.0), 0.99)

    def reset(self) -> None:
        self.tracker.reset()
        self.pitch_history.clear()
        self.cache.clear()

    # ---- pitch ----
    def fallback_pitch(self, x: np.ndarray) -> PitchCandidate:
        mag = magnitude_spectrum(x, "hamming")
        bw = bin_width(self.sr, len(x))
        lo = max(1, int(80.0 / bw))
        hi = min(len(mag) - 1, int(800.0 / bw))
        if hi <= lo:
            return PitchCandidate.silent()
        band = mag[lo:hi]
        k = lo + int(np.argmax(band))
        mean = float(np.mean(band))
        # prominence over the band average, 10x counts as certain
        confidence = min(1.0, float(mag[k]) / (mean + 1e-10) / 10.0)
        freq = parabolic_interpolation(mag, k) * bw
        if confidence < 0.3 or not 50.0 <= freq <= 1000.0:
            return PitchCandidate.silent()
        return PitchCandidate(freq, confidence, amplitude=float(np.max(np.abs(x))), harmonic_index=1)

    # ---- spectrum ----
    def formants(self, x: np.ndarray) -> List[Dict[str, float]]:
        mag = self.cache.magnitude(x, "hann")
        bw = bin_width(self.sr, len(x))
        freqs = np.arange(len(mag)) * bw
        emphasized = mag * np.where(freqs > 300.0, np.sqrt(np.maximum(freqs, 300.0) / 300.0), 1.0)

        width = max(1, int(round(self.params.get("formant_bandwidth", 100.0) / bw)))
        if width > 1:
            emphasized = np.convolve(emphasized, np.ones(width) / width, mode="same")

        out: List[Dict[str, float]] = []
        for lo, hi in self.classifier_config.formant_ranges:
            lo_bin = int(np.floor(lo / bw))
            hi_bin = min(int(np.floor(hi / bw)), len(emphasized) - 1)
            if lo_bin >= hi_bin:
                continue
            k = lo_bin + int(np.argmax(emphasized[lo_bin: hi_bin + 1]))
            peak = float(emphasized[k])
            if peak <= self.classifier_config.formant_min_magnitude:
                continue
            out.append({
                "frequency": parabolic_interpolation(emphasized, k) * bw,
                "bandwidth": self._half_power_width(emphasized, k) * bw,
                "amplitude": peak,
                "confidence": self._formant_confidence(emphasized, k),
            })
        return out

    @staticmethod
    def _half_power_width(spec: np.ndarray, k: int) -> int:
        half = spec[k] * 0.707
        left = k
        while left > 0 and spec[left] > half:
            left -= 1
        right = k
        while right < len(spec) - 1 and spec[right] > half:
            right += 1
        return right - left

    @staticmethod
    def _formant_confidence(spec: np.ndarray, k: int, window: int = 10) -> float:
        lo, hi = max(0, k - 2 * window), min(len(spec), k + 2 * window)
        idx = np.arange(lo, hi)
        ring = spec[idx[np.abs(idx - k) > window]]
        noise = float(np.mean(ring)) if ring.size else 0.001
        return min(1.0, float(spec[k]) / (noise + 0.001) / 10.0)

    def voice_quality(self, x: np.ndarray) -> Dict[str, float]:
        mag = self.cache.magnitude(x, "hann")
        power = mag * mag
        total = float(np.sum(power))
        if total <= 0.0:
            return {"breathiness": 0.0, "roughness": 0.0, "brightness": 0.0, "strain": 0.0}
        bw = bin_width(self.sr, len(x))
        freqs = np.arange(len(mag)) * bw

        high = float(np.sum(power[int(len(power) * 0.7):]))
        breathiness = min(1.0, high / total * 3.0)
        roughness = min(1.0, zero_crossing_rate(x) / 0.5)
        centroid = float(np.sum(freqs * power) / total)
        brightness = min(1.0, centroid / 2000.0)

        ratio = power[1:] / (power[:-1] + 1e-10)
        jagged = (freqs[1:] > 400.0) & ((ratio > 2.0) | (ratio < 0.5))
        distortion = min(1.0, float(np.sum(np.abs(np.log(ratio[jagged] + 1e-20)))) / len(mag))
        above_2k = float(np.sum(power[freqs > 2000.0])) / total
        strain = min(1.0, 0.7 * above_2k + 0.3 * distortion)
        return {
            "breathiness": breathiness,
            "roughness": roughness,
            "brightness": brightness,
            "strain": strain,
        }

    # ---- history ----
    def vibrato(self) -> Dict[str, Any]:
        voiced = np.array([p for p in self.pitch_history if p > 0.0])
        empty = {"present": False, "rate": 0.0, "extent_cents": 0.0}
        if voiced.size < 50:
            return empty
        mean = float(np.mean(voiced))
        dev = voiced - mean
        var = float(np.dot(dev, dev)) / dev.size
        if var <= 0.0:
            return empty

        best_period, best_corr = 0, 0.0
        for period in range(5, 26):
            corr = float(np.dot(dev[:-period], dev[period:])) / (dev.size - period) / var
            if corr > best_corr:
                best_period, best_corr = period, corr
        if best_corr <= 0.3 or best_period == 0:
            return empty
        rate = (self.sr / self.hop) / best_period
        return {
            "present": 3.0 <= rate <= 12.0,
            "rate": rate,
            "extent_cents": float(np.max(np.abs(dev))) / mean * 1200.0,
        }

    def glissando(self) -> Dict[str, Any]:
        voiced = [p for p in self.pitch_history if p > 0.0]
        if len(voiced) < 20:
            return {"present": False, "start_frequency": 0.0, "end_frequency": 0.0, "direction": "none"}
        start, end = voiced[0], voiced[-1]
        cents = abs(1200.0 * np.log2(end / start))
        return {
            "present": bool(cents >= 100.0),
            "start_frequency": start,
            "end_frequency": end,
            "direction": "up" if end > start else "down",
        }

    def _analyze(self, y: np.ndarray) -> AnalysisResult:
        x = fit_frame(y, self.frame_size).astype(np.float64)
        x = _normalize_peak(_high_pass(x, self.sr, 80.0))

        cand = self.tracker.track(x)
        source = "yin"
        if not cand.is_voiced:
            cand = self.fallback_pitch(x)
            source = "spectral_fallback"
        self.pitch_history.append(cand.frequency)

        formants = self.formants(x)
        return AnalysisResult(
            analyzer=self.name,
            fundamental_frequency=cand.frequency,
            confidence=cand.confidence,
            details={
                "pitch_source": source if cand.is_voiced else "none",
                "formants": formants,
                "vowel": classify_vowel(formants),
                "voice_quality": self.voice_quality(x),
                "vibrato": self.vibrato(),
                "glissando": self.glissando(),
            },
        )


# ---------------------------------------------------------------------------
# Instruments
# ---------------------------------------------------------------------------

POLYPHONIC_FAMILIES = (InstrumentFamily.KEYBOARD, InstrumentFamily.STRING)


class InstrumentAnalyzer(BaseAnalyzer):
    """
    Fused pitch for one instrument family plus coarse descriptors.

    ``harmonic_threshold`` is the ensemble's skip threshold;
    ``polyphonic_sensitivity`` sets the note floor for keyboard and string.
    """

    plausible_range = (20.0, 8000.0)
    envelope_window_s = 0.01

    def __init__(
        self,
        family: InstrumentFamily = InstrumentFamily.STRING,
        sr: int = 44100,
        frame_size: int = 2048,
        estimator_config: Optional[EstimatorConfig] = None,
        fusion_config: Optional[FusionConfig] = None,
        harmonic_threshold: float = 0.7,
        polyphonic_sensitivity: float = 0.8,
        max_notes: int = 6,
        **kwargs: Any,
    ):
        super().__init__(sr, frame_size, estimator_config, **kwargs)
        self.family = InstrumentFamily(family)
        self.name = self.family.value
        self.max_notes = int(max_notes)
        self.params = {
            "harmonic_threshold": float(harmonic_threshold),
            "polyphonic_sensitivity": float(polyphonic_sensitivity),
        }
        self.detector = MultiAlgorithmPitchDetector(
            self.sr,
            self.frame_size,
            estimator_config=self.estimator_config,
            fusion_config=fusion_config,
            enable_polyphony=self.family in POLYPHONIC_FAMILIES,
            skip_threshold=self.params["harmonic_threshold"],
        )

    @property
    def polyphonic(self) -> bool:
        return self.detector.enable_polyphony

    def update_parameters(self, params: Dict[str, float]) -> None:
        super().update_parameters(params)
        threshold = self.params.get("harmonic_threshold")
        if threshold is not None:
            self.detector.skip_threshold = float(threshold)

    def reset(self) -> None:
        self.detector.cache.clear()

    # ---- descriptors ----
    def _envelope(self, y: np.ndarray) -> np.ndarray:
        return amplitude_envelope(y, self.sr, self.envelope_window_s)

    def techniques(self, y: np.ndarray, mag: np.ndarray) -> Dict[str, bool]:
        env = self._envelope(y)
        win = self.envelope_window_s
        sharpness = _onset_slope(env)
        attack = attack_time(env, win)
        sustain = sustain_level(env)

        if self.family is InstrumentFamily.STRING:
            plucking = sharpness > 0.8 or attack < 0.002
            bowing = (attack > 0.01 and sharpness < 0.5) or sustain > 0.5
            if plucking and bowing:
                plucking, bowing = sharpness > 0.6, sharpness <= 0.6
            return {"plucking": bool(plucking), "bowing": bool(bowing)}

        if self.family is InstrumentFamily.WIND:
            breath = self._breath_noise(mag)
            noise = self._noise_level(y)
            high = self._high_band_ratio(mag, 2000.0)
            return {"breathing": bool(breath > 0.05 or noise > 0.1 or high > 0.3)}

        if self.family is InstrumentFamily.KEYBOARD:
            decay = decay_time(env, win)
            pedaling = sustain > 0.2 or decay > 0.1 or self._resonance(env, mag) > 0.3
            return {"pedaling": bool(pedaling), "staccato": bool(sharpness > 0.8 and sustain < 0.3)}

        striking = sharpness > 0.5 or self._transient_energy(y) > 0.2
        return {"striking": bool(striking)}

    def family_specific(self, y: np.ndarray, mag: np.ndarray, notes: List[PitchCandidate]) -> Dict[str, Any]:
        env = self._envelope(y)
        win = self.envelope_window_s
        if self.family is InstrumentFamily.STRING:
            return {"string_resonance": self._string_resonance(mag)}
        if self.family is InstrumentFamily.KEYBOARD:
            return {
                "polyphony_count": len(notes),
                "attack_time": attack_time(env, win),
                "sustain_level": sustain_level(env),
                "percussiveness": _onset_slope(env),
            }
        if self.family is InstrumentFamily.WIND:
            return {"breath_pressure": self._breath_noise(mag)}
        return {
            "strike_velocity": _onset_slope(env),
            "decay_time": decay_time(env, win),
            "metallic_content": self._metallic_content(mag),
            "resonance": self._resonance(env, mag),
        }

    def timbre(self, mag: np.ndarray, fundamental_bin: float) -> Dict[str, float]:
        power = mag * mag
        total = float(np.sum(power))
        if total <= 0.0:
            return {"brightness": 0.0, "warmth": 0.0, "richness": 0.0, "roughness": 0.0}
        idx = np.arange(len(mag))
        centroid = float(np.sum(idx * power) / total)
        brightness = min(1.0, centroid / (len(mag) / 2.0))

        low_end = int(len(mag) * 0.25)
        low = float(np.sum(power[:low_end]))
        warmth = min(1.0, low / total)

        richness = 0.0
        if fundamental_bin > 0.0:
            ref = 0.1 * float(np.max(mag))
            count = 0
            for h in range(2, 11):
                b = int(fundamental_bin * h)
                if b < len(mag) and mag[b] > ref:
                    count += 1
            richness = min(1.0, count / 8.0)

        level = float(np.mean(mag))
        roughness = min(1.0, float(np.mean(np.abs(np.diff(mag)))) / level) if level > 0.0 else 0.0
        return {"brightness": brightness, "warmth": warmth, "richness": richness, "roughness": roughness}

    # ---- helpers ----
    def _high_band_ratio(self, mag: np.ndarray, cutoff_hz: float) -> float:
        power = mag * mag
        total = float(np.sum(power))
        if total <= 0.0:
            return 0.0
        start = int(cutoff_hz / bin_width(self.sr, 2 * len(mag)))
        return float(np.sum(power[start:])) / total

    @staticmethod
    def _breath_noise(mag: np.ndarray) -> float:
        power = mag * mag
        total = float(np.sum(power))
        if total <= 0.0:
            return 0.0
        return min(1.0, float(np.sum(power[int(len(power) * 0.7):])) / total * 2.0)

    @staticmethod
    def _noise_level(y: np.ndarray) -> float:
        if y.size < 3:
            return 0.0
        return float(np.mean(np.abs(y[1:-1] - 0.5 * (y[:-2] + y[2:]))))

    @staticmethod
    def _transient_energy(y: np.ndarray) -> float:
        n = int(len(y) * 0.1)
        total = float(np.dot(y, y))
        if n <= 0 or total <= 0.0:
            return 0.0
        return float(np.dot(y[:n], y[:n])) / total

    def _resonance(self, env: np.ndarray, mag: np.ndarray) -> float:
        decay = decay_time(env, self.envelope_window_s)
        power = mag * mag
        total = float(np.sum(power))
        cutoff = int(200.0 / bin_width(self.sr, 2 * len(mag))) + 1
        low_ratio = float(np.sum(power[:cutoff])) / total if total > 0.0 else 0.0
        return min(1.0, max(decay / 2.0, low_ratio * 2.0))

    @staticmethod
    def _string_resonance(mag: np.ndarray) -> float:
        half = len(mag) // 2
        if half <= 1:
            return 0.0
        k0 = int(np.argmax(mag[1:half])) + 1
        peak = float(mag[k0])
        if peak <= 0.0:
            return 0.0
        strength = sum(float(mag[k0 * h]) for h in range(2, 7) if k0 * h < len(mag))
        return min(1.0, strength / peak / 5.0)

    @staticmethod
    def _metallic_content(mag: np.ndarray) -> float:
        total = float(np.sum(mag))
        if total <= 0.0:
            return 0.0
        inner = mag[1:-1]
        peaks = int(np.count_nonzero((inner > mag[:-2]) & (inner > mag[2:]) & (inner > total * 0.01)))
        high = float(np.sum(mag[len(mag) // 2:])) / total
        return min(1.0, (peaks / 10.0) * 0.6 + high * 0.4)

    @staticmethod
    def intonation(frequency: float) -> float:
        """1.0 on an equal-tempered pitch, 0 at a quarter tone away."""
        if frequency <= 0.0:
            return 0.0
        midi = hz_to_midi(frequency)
        cents = abs(midi - round(midi)) * 100.0
        return max(0.0, 1.0 - cents / 50.0)

    def _analyze(self, y: np.ndarray) -> AnalysisResult:
        y = _normalize_peak(y)
        x = fit_frame(y, self.frame_size).astype(np.float64)

        fused = self.detector.detect(x)
        notes: List[PitchCandidate] = []
        if self.polyphonic:
            notes = self.detector.detect_multiple(
                x,
                max_peaks=self.max_notes,
                sensitivity=self.params.get("polyphonic_sensitivity", 0.8),
            )

        mag = self.detector.cache.magnitude(x, "hann")
        bw = bin_width(self.sr, len(x))
        f0_bin = fused.frequency / bw if fused.frequency > 0.0 else 0.0
        return AnalysisResult(
            analyzer=self.name,
            fundamental_frequency=fused.frequency,
            confidence=fused.confidence,
            details={
                "family": self.family.value,
                "algorithms": algorithms_used(fused),
                "selected_algorithm": fused.selected_algorithm.value if fused.selected_algorithm else None,
                "snapped": fused.snapped,
                "polyphonic": len(notes) > 1,
                "notes": [n.frequency for n in notes],
                "techniques": self.techniques(y, mag),
                "family_specific": self.family_specific(y, mag, notes),
                "timbre": self.timbre(mag, f0_bin),
                "intonation": self.intonation(fused.frequency),
            },
        )


# ---------------------------------------------------------------------------
# Label -> analyzer
# ---------------------------------------------------------------------------

LABEL_TO_FAMILY: Dict[AudioLabel, InstrumentFamily] = {
    AudioLabel.STRING: InstrumentFamily.STRING,
    AudioLabel.KEYBOARD: InstrumentFamily.KEYBOARD,
    AudioLabel.WIND: InstrumentFamily.WIND,
    AudioLabel.PERCUSSION: InstrumentFamily.PERCUSSION,
    AudioLabel.UNKNOWN: InstrumentFamily.STRING,
}
