# pitchroute/pipeline/detectors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

import logging
import warnings
import numpy as np
import scipy.fft
import scipy.signal

from .config import EstimatorConfig
from .models import PitchAlgorithm, PitchCandidate, clamp01
from .spectral import SpectrumCache, bin_width, fit_frame, parabolic_interpolation

logger = logging.getLogger(__name__)

_FFT_LIB = scipy.fft


# --------------------------------------------------------------------------------------
# Utility
# --------------------------------------------------------------------------------------
def hz_to_midi(hz: float) -> float:
    if hz <= 0.0:
        return 0.0
    return 69.0 + 12.0 * float(np.log2(hz / 440.0))


def midi_to_hz(m: float) -> float:
    """Convert MIDI pitch to frequency in Hz."""
    return 440.0 * 2 ** ((float(m) - 69.0) / 12.0)


def _peak_amplitude(x: np.ndarray) -> float:
    if x.size == 0:
        return 0.0
    return clamp01(float(np.max(np.abs(x))))


def _yin_difference(x: np.ndarray, window: int) -> np.ndarray:
    """d(tau) = sum_{j<W} (x[j] - x[j + tau])^2 for tau in [0, W).

    Expanded as e(head) + e(shifted) - 2 * cross, with the cross term from one
    FFT convolution instead of W dot products.
    """
    head = x[:window]
    energy_head = float(np.dot(head, head))
    cs = np.concatenate(([0.0], np.cumsum(x * x)))
    taus = np.arange(window)
    energy_shift = cs[taus + window] - cs[taus]
    cross = scipy.signal.fftconvolve(x[: 2 * window], head[::-1], mode="valid")[:window]
    d = energy_head + energy_shift - 2.0 * cross
    d[0] = 0.0
    return np.maximum(d, 0.0)


def _cumulative_mean_normalized(d: np.ndarray) -> np.ndarray:
    cmnd = np.ones_like(d)
    if len(d) < 2:
        return cmnd
    running = np.cumsum(d[1:])
    taus = np.arange(1, len(d), dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        vals = d[1:] * taus / running
    cmnd[1:] = np.where(running > 1e-12, vals, 1.0)
    return cmnd


# --------------------------------------------------------------------------------------
# Estimators
# --------------------------------------------------------------------------------------
class BasePitchEstimator:
    """
    Base class for single-frame pitch estimators.
    Must implement: _estimate(frame) -> PitchCandidate
    """

    algorithm: PitchAlgorithm = PitchAlgorithm.YIN

    def __init__(
        self,
        sr: int = 44100,
        frame_size: int = 2048,
        fmin: Optional[float] = None,
        fmax: Optional[float] = None,
        config: Optional[EstimatorConfig] = None,
        **kwargs: Any,  # per-estimator overrides (threshold, smoothing_factor, ...)
    ):
        self.config = config or EstimatorConfig()
        self.sr = int(sr)
        self.frame_size = int(frame_size)
        self.fmin = float(fmin if fmin is not None else self.config.fmin)
        self.fmax = float(fmax if fmax is not None else self.config.fmax)
        self._warned: Dict[str, bool] = {}
        self.kwargs = kwargs

        nyquist = 0.5 * self.sr
        if self.fmax >= nyquist:
            self._warn_once(
                "fmax_nyquist",
                f"{type(self).__name__}: fmax={self.fmax} is not below Nyquist ({nyquist}); clamping",
            )
            self.fmax = nyquist * 0.99

    def _warn_once(self, key: str, msg: str) -> None:
        if not self._warned.get(key, False):
            warnings.warn(msg)
            self._warned[key] = True

    def prepare(self, frame: np.ndarray) -> np.ndarray:
        x = fit_frame(frame, self.frame_size).astype(np.float64)
        if not np.all(np.isfinite(x)):
            x = np.nan_to_num(x, nan=0.0, posinf=0.0, neginf=0.0)
        return x

    def estimate(self, frame: np.ndarray) -> PitchCandidate:
        x = self.prepare(frame)
        if x.size == 0 or not np.any(x):
            return PitchCandidate.silent(self.algorithm)
        return self._estimate(x)

    def _estimate(self, x: np.ndarray) -> PitchCandidate:
        raise NotImplementedError

    def _in_range(self, freq: float) -> bool:
        return self.fmin <= freq <= self.fmax


class YinEstimator(BasePitchEstimator):
    """
    YIN (de Cheveigne & Kawahara): difference function, cumulative mean
    normalization, absolute threshold with dip anchoring, parabolic refinement.
    """

    algorithm = PitchAlgorithm.YIN

    @property
    def threshold(self) -> float:
        return float(self.kwargs.get("threshold", self.config.yin_threshold))

    @property
    def probability_threshold(self) -> float:
        return float(self.kwargs.get("probability_threshold", self.config.yin_probability_threshold))

    def difference(self, x: np.ndarray) -> np.ndarray:
        return _yin_difference(x, len(x) // 2)

    def normalized_difference(self, x: np.ndarray) -> np.ndarray:
        return _cumulative_mean_normalized(self.difference(x))

    def _absolute_threshold(self, cmnd: np.ndarray) -> int:
        if len(cmnd) <= 2:
            return -1
        below = np.flatnonzero(cmnd[2:] < self.threshold)
        if below.size:
            tau = int(below[0]) + 2
            # Walk to the bottom of the dip
            while tau + 1 < len(cmnd) and cmnd[tau + 1] < cmnd[tau]:
                tau += 1
            return tau
        tau = int(np.argmin(cmnd[2:])) + 2
        if cmnd[tau] < self.probability_threshold:
            return tau
        return -1

    def _estimate(self, x: np.ndarray) -> PitchCandidate:
        cmnd = self.normalized_difference(x)
        tau = self._absolute_threshold(cmnd)
        if tau <= 0:
            return PitchCandidate.silent(self.algorithm)

        refined = parabolic_interpolation(cmnd, tau)
        if refined <= 0.0:
            return PitchCandidate.silent(self.algorithm)

        freq = self.sr / refined
        if not self._in_range(freq):
            return PitchCandidate.silent(self.algorithm)
        return PitchCandidate(
            frequency=freq,
            confidence=1.0 - float(cmnd[tau]),
            amplitude=_peak_amplitude(x),
            harmonic_index=1,
            source_algorithm=self.algorithm,
        )


class RealTimeYinEstimator(YinEstimator):
    """
    Stateful YIN for streams: exponentially smooths consecutive estimates.

    A frame whose raw estimate jumps more than ``outlier_jump_ratio`` from
    the previous smoothed value is reported raw and restarts smoothing.
    Not safe for concurrent use; give each stream its own instance.
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.smoothing_factor = float(self.kwargs.get("smoothing_factor", self.config.smoothing_factor))
        self.outlier_jump_ratio = float(self.kwargs.get("outlier_jump_ratio", self.config.outlier_jump_ratio))
        self._previous_estimate = 0.0

    @property
    def previous_estimate(self) -> float:
        return self._previous_estimate

    def reset(self) -> None:
        self._previous_estimate = 0.0

    def track(self, frame: np.ndarray) -> PitchCandidate:
        raw = self.estimate(frame)
        prev = self._previous_estimate

        if not raw.is_voiced:
            self._previous_estimate = 0.0
            return raw

        smoothed = raw.frequency
        if prev > 0.0:
            jump = abs(raw.frequency - prev) / prev
            if jump <= self.outlier_jump_ratio:
                a = self.smoothing_factor
                smoothed = a * prev + (1.0 - a) * raw.frequency
            else:
                logger.debug("realtime yin: %.1f Hz -> %.1f Hz treated as outlier", prev, raw.frequency)

        self._previous_estimate = smoothed
        return PitchCandidate(
            frequency=smoothed,
            confidence=raw.confidence,
            amplitude=raw.amplitude,
            harmonic_index=raw.harmonic_index,
            source_algorithm=raw.source_algorithm,
        )


class AutocorrelationEstimator(BasePitchEstimator):
    """
    Time-domain autocorrelation: strongest strict local peak of the
    energy-normalized ACF within the lag range implied by [fmin, fmax].
    """

    algorithm = PitchAlgorithm.AUTOCORRELATION

    def _estimate(self, x: np.ndarray) -> PitchCandidate:
        n = len(x)
        x = x - float(np.mean(x))
        c0 = float(np.dot(x, x))
        if c0 <= 1e-12:
            return PitchCandidate.silent(self.algorithm)

        fft_len = _FFT_LIB.next_fast_len(2 * n - 1)
        X = _FFT_LIB.rfft(x, n=fft_len)
        ac = _FFT_LIB.irfft(X * np.conj(X), n=fft_len)[:n]
        norm = ac / c0

        lag_min = max(1, int(self.sr / max(self.fmax, 1e-6)))
        lag_max = min(int(np.ceil(self.sr / max(self.fmin, 1e-6))), n // 2, n - 2)
        if lag_min >= lag_max:
            return PitchCandidate.silent(self.algorithm)

        threshold = float(self.kwargs.get("threshold", self.config.autocorrelation_threshold))
        center = norm[lag_min: lag_max + 1]
        left = norm[lag_min - 1: lag_max]
        right = norm[lag_min + 1: lag_max + 2]
        is_peak = (center > threshold) & (center > left) & (center > right)
        if not np.any(is_peak):
            return PitchCandidate.silent(self.algorithm)

        best = int(np.argmax(np.where(is_peak, center, -np.inf)))
        lag = best + lag_min
        refined = parabolic_interpolation(norm, lag)
        if refined <= 0.0:
            return PitchCandidate.silent(self.algorithm)

        return PitchCandidate(
            frequency=self.sr / refined,
            confidence=float(norm[lag]),
            amplitude=_peak_amplitude(x),
            harmonic_index=1,
            source_algorithm=self.algorithm,
        )


class HPSEstimator(BasePitchEstimator):
    """
    Harmonic Product Spectrum over a Blackman-Harris magnitude spectrum.

    Downsampled copies (harmonics 2..H) are multiplied into the base
    spectrum so that only a bin backed by its overtones survives.
    """

    algorithm = PitchAlgorithm.HPS

    def __init__(self, *args: Any, cache: Optional[SpectrumCache] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.cache = cache or SpectrumCache()
        self.harmonics = int(self.kwargs.get("harmonics", self.config.hps_harmonics))

    def product_spectrum(self, mag: np.ndarray) -> np.ndarray:
        n_bins = len(mag)
        hps = mag.copy()
        usable = n_bins // self.harmonics
        for h in range(2, self.harmonics + 1):
            dec = mag[::h][:usable]
            hps[:usable] *= dec
        hps[usable:] = 0.0
        return hps

    def _estimate(self, x: np.ndarray) -> PitchCandidate:
        mag = self.cache.magnitude(x, "blackmanharris")
        n_bins = len(mag)
        peak_mag = float(np.max(mag)) if n_bins else 0.0
        if peak_mag <= 0.0:
            return PitchCandidate.silent(self.algorithm)

        bw = bin_width(self.sr, len(x))
        hps = self.product_spectrum(mag)

        min_bin = max(1, int(np.ceil(self.fmin / bw)))
        max_bin = min(int(np.floor(self.fmax / bw)), n_bins // self.harmonics - 1)
        if min_bin >= max_bin:
            return PitchCandidate.silent(self.algorithm)

        mask = np.zeros(n_bins, dtype=bool)
        mask[min_bin: max_bin + 1] = True
        # A fundamental must carry energy of its own
        mask &= mag >= self.config.hps_fundamental_floor * peak_mag
        masked = np.where(mask, hps, 0.0)

        inner = masked[1:-1]
        is_peak = (inner > 0.0) & (inner > masked[:-2]) & (inner >= masked[2:])
        peaks = np.flatnonzero(is_peak) + 1
        if peaks.size == 0:
            return PitchCandidate.silent(self.algorithm)

        order = peaks[np.argsort(masked[peaks])[::-1]]
        best = int(order[0])
        top = float(masked[best])
        runner_up = float(masked[order[1]]) if order.size > 1 else 0.0
        confidence = 1.0 - runner_up / top if top > 0.0 else 0.0

        # Refine on the magnitude spectrum: the masked main lobe spans about +-2 bins
        lo, hi = max(0, best - 2), min(n_bins, best + 3)
        local = lo + int(np.argmax(mag[lo:hi]))
        refined = parabolic_interpolation(mag, local)
        return PitchCandidate(
            frequency=refined * bw,
            confidence=confidence,
            amplitude=float(mag[local]) / peak_mag,
            harmonic_index=1,
            source_algorithm=self.algorithm,
        )

    def estimate_multiple(
        self,
        frame: np.ndarray,
        max_peaks: int = 6,
        sensitivity: float = 0.8,
    ) -> List[PitchCandidate]:
        """Best-effort polyphony: strongest non-harmonic spectral peaks.

        A peak counts when it reaches ``(1 - sensitivity)`` of the strongest
        one. Confidences are scaled down since peaks are not validated
        against each other's overtones beyond a simple ratio check.
        """
        x = self.prepare(frame)
        if x.size == 0 or not np.any(x):
            return []
        mag = self.cache.magnitude(x, "blackmanharris")
        peak_mag = float(np.max(mag)) if len(mag) else 0.0
        if peak_mag <= 0.0:
            return []

        bw = bin_width(self.sr, len(x))
        min_bin = max(1, int(np.ceil(self.fmin / bw)))
        max_bin = min(int(np.floor(self.fmax / bw)), len(mag) - 2)
        floor = (1.0 - clamp01(sensitivity)) * peak_mag

        candidates = []
        for i in range(min_bin, max_bin + 1):
            if mag[i] >= floor and mag[i] > mag[i - 1] and mag[i] >= mag[i + 1]:
                candidates.append(i)
        candidates.sort(key=lambda i: mag[i], reverse=True)

        kept: List[PitchCandidate] = []
        for i in candidates:
            freq = parabolic_interpolation(mag, i) * bw
            if any(_is_overtone(freq, k.frequency) for k in kept):
                continue
            kept.append(
                PitchCandidate(
                    frequency=freq,
                    confidence=0.8 * float(mag[i]) / peak_mag,
                    amplitude=float(mag[i]) / peak_mag,
                    harmonic_index=1,
                    source_algorithm=self.algorithm,
                )
            )
            if len(kept) >= max_peaks:
                break
        kept.sort(key=lambda c: c.frequency)
        return kept


def _is_overtone(freq: float, base: float, tolerance: float = 0.03, max_harmonic: int = 8) -> bool:
    if base <= 0.0 or freq <= base:
        return False
    ratio = freq / base
    k = round(ratio)
    return 2 <= k <= max_harmonic and abs(ratio - k) / k < tolerance


class SpectralPeakEstimator(BasePitchEstimator):
    """
    Highest Hann-windowed magnitude bin (never the DC bin), refined by
    parabolic interpolation. Cheap; used first to decide whether the
    expensive estimators are needed at all.
    """

    algorithm = PitchAlgorithm.SPECTRAL_PEAK

    def __init__(self, *args: Any, cache: Optional[SpectrumCache] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.cache = cache or SpectrumCache()
        self.window = str(self.kwargs.get("window", "hann"))

    @staticmethod
    def roughness(x: np.ndarray) -> float:
        """Mean deviation from the local midpoint, relative to mean amplitude."""
        if len(x) < 3:
            return 0.0
        variation = np.abs(x[1:-1] - 0.5 * (x[:-2] + x[2:]))
        level = float(np.mean(np.abs(x)))
        if level <= 1e-12:
            return 0.0
        return float(np.mean(variation)) / level

    def _estimate(self, x: np.ndarray) -> PitchCandidate:
        mag = self.cache.magnitude(x, self.window)
        n_bins = len(mag)
        bw = bin_width(self.sr, len(x))
        min_bin = max(1, int(np.floor(self.fmin / bw)))
        max_bin = min(n_bins - 1, int(np.ceil(self.fmax / bw)))
        if min_bin > max_bin:
            return PitchCandidate.silent(self.algorithm)

        band = mag[min_bin: max_bin + 1]
        if band.size == 0 or float(np.max(band)) <= 0.0:
            return PitchCandidate.silent(self.algorithm)

        idx = int(np.argmax(band)) + min_bin
        refined = parabolic_interpolation(mag, idx)
        confidence = max(0.1, 0.8 - 2.0 * self.roughness(x))
        return PitchCandidate(
            frequency=refined * bw,
            confidence=confidence,
            amplitude=_peak_amplitude(x),
            harmonic_index=1,
            source_algorithm=self.algorithm,
        )


ESTIMATORS = {
    PitchAlgorithm.YIN: YinEstimator,
    PitchAlgorithm.AUTOCORRELATION: AutocorrelationEstimator,
    PitchAlgorithm.HPS: HPSEstimator,
    PitchAlgorithm.SPECTRAL_PEAK: SpectralPeakEstimator,
}


def build_estimator(
    algorithm: PitchAlgorithm,
    sr: int,
    frame_size: int,
    config: Optional[EstimatorConfig] = None,
    **kwargs: Any,
) -> BasePitchEstimator:
    cls = ESTIMATORS[PitchAlgorithm(algorithm)]
    return cls(sr, frame_size, config=config, **kwargs)
