# pitchroute/pipeline/spectral.py
"""Spectral primitive shared by every frequency-domain stage.

``magnitude_spectrum`` is the single forward transform used by the
estimators, the feature extractor and the analyzers. ``SpectrumCache``
wraps it with a per-instance, content-keyed memo so that repeated
analysis of the same frame (multi-pass voting, low-confidence routing)
does not recompute the FFT.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional, Tuple

import numpy as np
import scipy.fft
import scipy.signal

from .config import is_power_of_two

_FFT_LIB = scipy.fft

_FINGERPRINT_POINTS = 16


# --------------------------------------------------------------------------------------
# Frame helpers
# --------------------------------------------------------------------------------------
def fit_frame(samples: np.ndarray, size: int) -> np.ndarray:
    """Zero-pad or truncate ``samples`` to exactly ``size`` samples."""
    y = np.asarray(samples, dtype=np.float32).reshape(-1)
    if size <= 0:
        return np.zeros((0,), dtype=np.float32)
    if len(y) < size:
        return np.pad(y, (0, size - len(y)), mode="constant")
    if len(y) > size:
        return y[:size].copy()
    return y


@lru_cache(maxsize=32)
def _window(name: str, n: int) -> np.ndarray:
    if name == "hann":
        w = np.hanning(n)
    elif name in ("blackmanharris", "hamming"):
        w = scipy.signal.get_window(name, n, fftbins=False)
    elif name in ("rect", "boxcar", "none"):
        w = np.ones(n)
    else:
        raise ValueError(f"Unsupported window: {name}")
    w = np.asarray(w, dtype=np.float64)
    w.setflags(write=False)
    return w


def get_window(name: str, n: int) -> np.ndarray:
    return _window(str(name), int(n))


def magnitude_spectrum(frame: np.ndarray, window: str = "hann") -> np.ndarray:
    """Return |FFT| of the windowed frame, first N/2 bins (bin width = sr / N)."""
    x = np.asarray(frame, dtype=np.float64).reshape(-1)
    n = len(x)
    if n < 2:
        return np.zeros((0,), dtype=np.float64)
    spec = _FFT_LIB.rfft(x * get_window(window, n))
    return np.abs(spec[: n // 2])


def bin_width(sample_rate: float, frame_size: int) -> float:
    return float(sample_rate) / float(frame_size)


def parabolic_interpolation(values: np.ndarray, index: int) -> float:
    """Refine ``index`` to the vertex of the parabola through its neighbours.

    Boundary indices and flat triples return the integer index unchanged.
    """
    v = np.asarray(values, dtype=np.float64)
    i = int(index)
    if i <= 0 or i >= len(v) - 1:
        return float(i)
    y0, y1, y2 = v[i - 1], v[i], v[i + 1]
    a = (y0 - 2.0 * y1 + y2) / 2.0
    b = (y2 - y0) / 2.0
    if a == 0.0 or not np.isfinite(a) or not np.isfinite(b):
        return float(i)
    offset = -b / (2.0 * a)
    # Offsets beyond one sample mean the index was not a local extremum
    if abs(offset) > 1.0:
        return float(i)
    return float(i + offset)


# --------------------------------------------------------------------------------------
# Cache
# --------------------------------------------------------------------------------------
def frame_fingerprint(frame: np.ndarray) -> Tuple[int, float]:
    """Cheap content key: length plus a checksum over evenly spaced samples."""
    x = np.asarray(frame).reshape(-1)
    n = len(x)
    if n == 0:
        return (0, 0.0)
    step = max(1, n // _FINGERPRINT_POINTS)
    probe = x[::step].astype(np.float64)
    weights = np.arange(1, len(probe) + 1, dtype=np.float64)
    return (n, float(np.sum(probe * weights)))


class SpectrumCache:
    """Per-instance memo of the last magnitude spectrum for each window type.

    A fingerprint match is confirmed by an exact comparison with the stored
    frame, so a checksum collision can never return another frame's spectrum.
    A frame of a different length drops every stored entry.
    """

    def __init__(self) -> None:
        self._size: Optional[int] = None
        self._entries: Dict[str, Tuple[Tuple[int, float], np.ndarray, np.ndarray]] = {}
        self.hits = 0
        self.misses = 0

    def magnitude(self, frame: np.ndarray, window: str = "hann") -> np.ndarray:
        x = np.asarray(frame, dtype=np.float64).reshape(-1)
        if self._size is not None and len(x) != self._size:
            self._entries.clear()
        self._size = len(x)

        key = frame_fingerprint(x)
        cached = self._entries.get(window)
        if cached is not None and cached[0] == key and np.array_equal(cached[1], x):
            self.hits += 1
            return cached[2]

        self.misses += 1
        mag = magnitude_spectrum(x, window)
        mag.setflags(write=False)
        stored = x.copy()
        stored.setflags(write=False)
        self._entries[window] = (key, stored, mag)
        return mag

    def clear(self) -> None:
        self._entries.clear()
        self._size = None

    def cache_info(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "entries": len(self._entries)}


__all__ = [
    "SpectrumCache",
    "bin_width",
    "fit_frame",
    "frame_fingerprint",
    "get_window",
    "is_power_of_two",
    "magnitude_spectrum",
    "parabolic_interpolation",
]
