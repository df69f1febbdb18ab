# pitchroute/pipeline/features.py
"""Coarse per-segment descriptors used by the audio-type classifier.

The returned FeatureSet is a flat ``Dict[str, float]``; the voter passes it
through untouched, the classifier and the analyzers read what they need.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.signal

from .config import ClassifierConfig
from .models import FeatureSet
from .spectral import SpectrumCache, bin_width, fit_frame

_VIBRATO_FRAME_S = 0.1


# --------------------------------------------------------------------------------------
# Envelope helpers (shared with analyzers)
# --------------------------------------------------------------------------------------
def amplitude_envelope(y: np.ndarray, sr: int, window_s: float = 0.002) -> np.ndarray:
    """Mean absolute amplitude over consecutive ``window_s`` windows."""
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    win = max(1, int(sr * window_s))
    n = len(y) // win
    if n <= 0:
        return np.zeros((0,), dtype=np.float64)
    return np.mean(np.abs(y[: n * win]).reshape(n, win), axis=1)


def attack_time(env: np.ndarray, window_s: float) -> float:
    """Seconds until the envelope first reaches 90% of its peak."""
    if env.size == 0:
        return 0.0
    peak = float(np.max(env))
    if peak <= 0.0:
        return 0.0
    idx = np.flatnonzero(env >= 0.9 * peak)
    return float(idx[0]) * window_s if idx.size else env.size * window_s


def decay_time(env: np.ndarray, window_s: float) -> float:
    """Seconds from the envelope peak until it falls to 10% of it."""
    if env.size == 0:
        return 0.0
    peak = float(np.max(env))
    if peak <= 0.0:
        return 0.0
    p = int(np.argmax(env))
    idx = np.flatnonzero(env[p:] <= 0.1 * peak)
    return float(idx[0]) * window_s if idx.size else (env.size - p) * window_s


def sustain_level(env: np.ndarray) -> float:
    start, end = int(env.size * 0.3), int(env.size * 0.8)
    if end <= start:
        return 0.0
    return float(np.mean(env[start:end]))


def attack_sharpness(env: np.ndarray) -> float:
    """1.0 for an instantaneous rise to peak, falling toward 0 for slow swells."""
    if env.size < 5:
        return 0.0
    peak = float(np.max(env))
    if peak <= 0.0:
        return 0.0
    p = int(np.argmax(env))
    return float(1.0 - p / env.size)


def zero_crossing_rate(y: np.ndarray) -> float:
    y = np.asarray(y).reshape(-1)
    if y.size < 2:
        return 0.0
    signs = y >= 0
    return float(np.count_nonzero(signs[1:] != signs[:-1])) / float(y.size)


def rms(y: np.ndarray) -> float:
    y = np.asarray(y, dtype=np.float64).reshape(-1)
    if y.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(y * y)))


# --------------------------------------------------------------------------------------
# Spectral helpers
# --------------------------------------------------------------------------------------
def spectral_shape(power: np.ndarray, bw: float) -> Tuple[float, float, float, float]:
    """(centroid, bandwidth, rolloff95, flux) of a power spectrum."""
    total = float(np.sum(power))
    if power.size == 0 or total <= 0.0:
        return 0.0, 0.0, 0.0, 0.0
    freqs = np.arange(power.size) * bw
    centroid = float(np.sum(freqs * power) / total)
    bandwidth = float(np.sqrt(np.sum(((freqs - centroid) ** 2) * power) / total))
    cumulative = np.cumsum(power)
    rolloff_bin = int(np.searchsorted(cumulative, 0.95 * total))
    rolloff = float(min(rolloff_bin, power.size - 1)) * bw
    diff = np.diff(power)
    flux = float(np.sum(diff[diff > 0])) / float(power.size)
    return centroid, bandwidth, rolloff, flux


def find_formants(
    mag: np.ndarray,
    bw: float,
    ranges: Sequence[Tuple[float, float]],
    min_magnitude: float,
) -> List[float]:
    """Strongest peak per formant range, kept when above ``min_magnitude``."""
    formants: List[float] = []
    for lo, hi in ranges:
        lo_bin = int(np.floor(lo / bw))
        hi_bin = min(int(np.floor(hi / bw)), mag.size - 1)
        if lo_bin > hi_bin or lo_bin >= mag.size:
            continue
        seg = mag[lo_bin: hi_bin + 1]
        k = int(np.argmax(seg))
        if seg[k] > min_magnitude:
            formants.append((lo_bin + k) * bw)
    return formants


def _harmonic_profile(mag: np.ndarray, bw: float, n_harmonics: int = 8):
    """Fundamental from the strongest bin below a quarter of the rate, then
    the actual peak near each integer multiple (+-2 bins)."""
    half = mag.size // 2
    if half <= 1:
        return 0.0, []
    k0 = int(np.argmax(mag[1:half])) + 1
    f0 = k0 * bw
    harmonics = []
    for h in range(1, n_harmonics + 1):
        target = int(round(f0 * h / bw))
        if target >= mag.size:
            break
        lo, hi = max(0, target - 2), min(mag.size, target + 3)
        k = lo + int(np.argmax(mag[lo:hi]))
        harmonics.append((k * bw, float(mag[k])))
    return f0, harmonics


# --------------------------------------------------------------------------------------
# Extractor
# --------------------------------------------------------------------------------------
class FeatureExtractor:
    """Computes the FeatureSet for one segment.

    The spectrum comes from the segment fitted to ``frame_size``; temporal
    descriptors use the full segment.
    """

    def __init__(self, sr: int, frame_size: int, config: Optional[ClassifierConfig] = None):
        self.sr = int(sr)
        self.frame_size = int(frame_size)
        self.config = config or ClassifierConfig()
        self.cache = SpectrumCache()

    def extract(self, segment: np.ndarray) -> FeatureSet:
        y = np.asarray(segment, dtype=np.float64).reshape(-1)
        frame = fit_frame(y, self.frame_size)
        mag = self.cache.magnitude(frame, "hann")
        power = mag * mag
        bw = bin_width(self.sr, self.frame_size)
        win_s = self.config.envelope_window_s

        feats: FeatureSet = {"rms": rms(y)}

        centroid, bandwidth, rolloff, flux = spectral_shape(power, bw)
        feats.update(
            spectral_centroid=centroid,
            spectral_bandwidth=bandwidth,
            spectral_rolloff=rolloff,
            spectral_flux=flux,
        )
        feats.update(self._harmonic_features(mag, power, bw))

        env = amplitude_envelope(y, self.sr, win_s)
        feats.update(
            attack_time=attack_time(env, win_s),
            decay_time=decay_time(env, win_s),
            sustain_level=sustain_level(env),
            attack_sharpness=attack_sharpness(env),
            zero_crossing_rate=zero_crossing_rate(y),
        )

        formants = find_formants(mag, bw, self.config.formant_ranges, self.config.formant_min_magnitude)
        feats["formant_count"] = float(len(formants))
        for i in range(len(self.config.formant_ranges)):
            feats[f"formant_{i + 1}"] = formants[i] if i < len(formants) else 0.0

        rate, extent = self._vibrato(y)
        feats["vibrato_rate"] = rate
        feats["vibrato_extent"] = extent

        breath = self._breathiness(power)
        feats["breathiness"] = breath
        feats["wind_breathiness"] = min(1.0, breath * 1.2)
        feats["pluckiness"] = self._pluckiness(env)
        feats["bowingness"] = self._bowingness(env)
        feats["percussiveness"] = self._percussiveness(env)
        feats["transient_ratio"] = self._transient_ratio(y)
        return feats

    # ---- harmonic ----
    def _harmonic_features(self, mag: np.ndarray, power: np.ndarray, bw: float) -> FeatureSet:
        total = float(np.sum(power))
        f0, harmonics = _harmonic_profile(mag, bw)
        if total <= 0.0 or not harmonics:
            return {
                "fundamental_frequency": 0.0,
                "harmonic_ratio": 0.0,
                "fundamental_strength": 0.0,
                "harmonic_complexity": 0.0,
                "inharmonicity": 1.0,
                "harmonicity": 0.0,
            }
        energies = np.array([m * m for _, m in harmonics])
        harmonic_ratio = min(1.0, float(np.sum(energies)) / total)
        fundamental_strength = float(energies[0]) / total

        complexity = 0.0
        inharmonicity = 0.0
        if len(harmonics) >= 2:
            base = harmonics[0][1]
            if base > 0.0:
                complexity = sum(m / base * (i + 1) for i, (_, m) in enumerate(harmonics[1:], start=1))
                complexity /= len(harmonics)
            devs = [abs(f - f0 * (i + 1)) / (f0 * (i + 1)) for i, (f, _) in enumerate(harmonics[1:], start=1)]
            inharmonicity = float(np.mean(devs))
        return {
            "fundamental_frequency": f0,
            "harmonic_ratio": harmonic_ratio,
            "fundamental_strength": fundamental_strength,
            "harmonic_complexity": float(complexity),
            "inharmonicity": inharmonicity,
            "harmonicity": 1.0 - min(1.0, inharmonicity),
        }

    # ---- voice-ish ----
    def _breathiness(self, power: np.ndarray) -> float:
        total = float(np.sum(power))
        if total <= 0.0:
            return 0.0
        lo, hi = int(power.size * 0.3), int(power.size * 0.9)
        return min(1.0, float(np.sum(power[lo:hi])) / total * 15.0)

    def _vibrato(self, y: np.ndarray) -> Tuple[float, float]:
        """Rate (Hz) and extent (% of mean pitch) from 100 ms sub-frame pitch tracks."""
        hop = int(self.sr * _VIBRATO_FRAME_S)
        n = len(y) // hop if hop > 0 else 0
        if n < 3:
            return 0.0, 0.0
        lag_min = max(1, int(self.sr / 1000.0))
        pitches = []
        for i in range(n):
            seg = y[i * hop: (i + 1) * hop]
            seg = seg - np.mean(seg)
            lag_max = min(int(self.sr / 50.0), len(seg) // 2)
            if lag_max <= lag_min or not np.any(seg):
                continue
            ac = scipy.signal.correlate(seg, seg, mode="full", method="fft")[len(seg) - 1:]
            k = lag_min + int(np.argmax(ac[lag_min: lag_max + 1]))
            if ac[k] > 0.0:
                pitches.append(self.sr / k)
        if len(pitches) < 6:
            return 0.0, 0.0
        p = np.asarray(pitches)
        mean = float(np.mean(p))
        dev = p - mean
        signs = dev >= 0
        crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))
        duration = len(p) * _VIBRATO_FRAME_S
        rate = crossings / duration / 2.0
        extent = float(np.max(np.abs(dev))) / mean * 100.0 if mean > 0 else 0.0
        return float(rate), extent

    # ---- instrument-ish ----
    @staticmethod
    def _pluckiness(env: np.ndarray) -> float:
        if env.size < 5:
            return 0.0
        p = int(np.argmax(env))
        slope = float(env[p]) / p if p > 0 else 0.0
        return min(1.0, slope / 10.0)

    @staticmethod
    def _bowingness(env: np.ndarray) -> float:
        if env.size < 10:
            return 0.0
        variation = float(np.mean(np.abs(np.diff(env[1:]))))
        return max(0.0, 1.0 - variation * 10.0)

    @staticmethod
    def _percussiveness(env: np.ndarray) -> float:
        if env.size < 5:
            return 0.0
        peak = float(np.max(env))
        p = int(np.argmax(env))
        attack = 1.0 if p < env.size * 0.1 else 0.0
        after = np.flatnonzero(env[p + 1:] < peak * 0.1)
        decay = 1.0 if after.size and (after[0] + 1) < env.size * 0.3 else 0.0
        return (attack + decay) / 2.0

    @staticmethod
    def _transient_ratio(y: np.ndarray) -> float:
        n = int(len(y) * 0.1)
        if n <= 0 or len(y) - n <= 0:
            return 0.0
        head = float(np.mean(y[:n] ** 2))
        tail = float(np.mean(y[n:] ** 2))
        total = head + tail
        return head / total if total > 0.0 else 0.0
