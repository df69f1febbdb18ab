# pitchroute/pipeline/fusion.py
"""Reconcile candidate pitches from several estimators into one answer."""
from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence

import numpy as np

from .config import EstimatorConfig, FusionConfig
from .detectors import (
    AutocorrelationEstimator,
    BasePitchEstimator,
    HPSEstimator,
    SpectralPeakEstimator,
    YinEstimator,
)
from .models import FusionResult, PitchAlgorithm, PitchCandidate, clamp01
from .spectral import SpectrumCache

logger = logging.getLogger(__name__)


def snap_to_reference(
    frequency: float,
    references: Sequence[float],
    tolerance_hz: float,
) -> float:
    """Move ``frequency`` onto the nearest reference pitch when strictly within tolerance.

    Idempotent: a snapped value is itself a reference at distance 0.
    """
    if frequency <= 0.0 or not references:
        return frequency
    refs = np.asarray(references, dtype=np.float64)
    dist = np.abs(refs - frequency)
    i = int(np.argmin(dist))
    if dist[i] < tolerance_hz:
        return float(refs[i])
    return frequency


def _usable(c: PitchCandidate) -> bool:
    return c is not None and c.frequency > 0.0 and math.isfinite(c.frequency) and math.isfinite(c.confidence)


def adjusted_score(candidate: PitchCandidate, config: FusionConfig) -> float:
    algo = candidate.source_algorithm.value if candidate.source_algorithm is not None else ""
    priority = float(config.algorithm_priority.get(algo, 1.0))
    return candidate.confidence + (priority - 1.0) * config.priority_boost


def fuse_candidates(
    candidates: Iterable[PitchCandidate],
    config: Optional[FusionConfig] = None,
) -> FusionResult:
    """Select one frequency/confidence pair from the candidates of a frame.

    1. Score = confidence + (priority - 1) * boost; best score wins (first on ties).
    2. If two or more candidates exceed the agreement confidence, use the mean of
       their frequencies and the highest of their confidences.
    3. Snap to the reference table, clamp.
    """
    cfg = config or FusionConfig()
    usable = [c for c in candidates if _usable(c)]
    if not usable:
        return FusionResult(candidates=[])

    best = usable[0]
    best_score = adjusted_score(best, cfg)
    for c in usable[1:]:
        s = adjusted_score(c, cfg)
        if s > best_score:
            best, best_score = c, s

    frequency = best.frequency
    confidence = best.confidence
    agreeing = [c for c in usable if c.confidence > cfg.agreement_confidence]
    if len(agreeing) >= 2:
        frequency = float(np.mean([c.frequency for c in agreeing]))
        confidence = max(c.confidence for c in agreeing)

    snapped = False
    if cfg.enable_snapping:
        target = snap_to_reference(frequency, cfg.reference_frequencies, cfg.snap_tolerance_hz)
        snapped = target != frequency
        frequency = target

    return FusionResult(
        frequency=frequency,
        confidence=clamp01(confidence),
        selected_algorithm=best.source_algorithm,
        agreement_count=len(agreeing) if len(agreeing) >= 2 else 1,
        snapped=snapped,
        candidates=usable,
    )


class MultiAlgorithmPitchDetector:
    """
    Runs the estimator ensemble for one frame with adaptive skipping.

    The spectral peak goes first. When it is confident enough, YIN and
    autocorrelation are skipped. Otherwise they run in priority order until
    two candidates survive. HPS joins when polyphony is enabled and fewer
    than two candidates survived. Estimator failures never escape.
    """

    def __init__(
        self,
        sr: int,
        frame_size: int,
        estimator_config: Optional[EstimatorConfig] = None,
        fusion_config: Optional[FusionConfig] = None,
        enable_polyphony: bool = False,
        skip_threshold: Optional[float] = None,
    ):
        self.sr = int(sr)
        self.frame_size = int(frame_size)
        self.estimator_config = estimator_config or EstimatorConfig()
        self.fusion_config = fusion_config or FusionConfig()
        self.enable_polyphony = bool(enable_polyphony)
        self.skip_threshold = float(
            skip_threshold if skip_threshold is not None else self.fusion_config.skip_threshold
        )

        self.cache = SpectrumCache()
        cfg = self.estimator_config
        self.spectral_peak = SpectralPeakEstimator(self.sr, self.frame_size, config=cfg, cache=self.cache)
        self.yin = YinEstimator(self.sr, self.frame_size, config=cfg)
        self.autocorrelation = AutocorrelationEstimator(self.sr, self.frame_size, config=cfg)
        self.hps = HPSEstimator(self.sr, self.frame_size, config=cfg, cache=self.cache)

    def _run(self, estimator: BasePitchEstimator, frame: np.ndarray) -> PitchCandidate:
        try:
            cand = estimator.estimate(frame)
        except Exception as exc:
            logger.warning("%s failed, treating as no candidate: %s", type(estimator).__name__, exc)
            return PitchCandidate.silent(estimator.algorithm)
        if not isinstance(cand, PitchCandidate) or not _usable(cand):
            return PitchCandidate.silent(estimator.algorithm)
        return cand

    def candidates(self, frame: np.ndarray) -> List[PitchCandidate]:
        cfg = self.fusion_config
        results: List[PitchCandidate] = []

        lo, hi = cfg.spectral_peak_range
        peak = self._run(self.spectral_peak, frame)
        if peak.is_voiced and lo <= peak.frequency <= hi:
            results.append(peak)

        run_expensive = (
            not cfg.adaptive_skipping
            or not results
            or results[0].confidence < self.skip_threshold
        )
        if run_expensive:
            cand = self._run(self.yin, frame)
            if cand.confidence > cfg.min_candidate_confidence:
                results.append(cand)
            if len(results) < 2:
                cand = self._run(self.autocorrelation, frame)
                if cand.confidence > cfg.min_candidate_confidence:
                    results.append(cand)

        if self.enable_polyphony and len(results) < 2:
            cand = self._run(self.hps, frame)
            if cand.confidence > cfg.min_candidate_confidence:
                results.append(cand)

        return results

    def detect(self, frame: np.ndarray) -> FusionResult:
        return fuse_candidates(self.candidates(frame), self.fusion_config)

    def detect_multiple(self, frame: np.ndarray, max_peaks: int = 6, sensitivity: float = 0.8) -> List[PitchCandidate]:
        try:
            return self.hps.estimate_multiple(frame, max_peaks=max_peaks, sensitivity=sensitivity)
        except Exception as exc:
            logger.warning("multi-pitch analysis failed: %s", exc)
            return []


def algorithms_used(result: FusionResult) -> List[str]:
    return [c.source_algorithm.value for c in result.candidates if c.source_algorithm is not None]


__all__ = [
    "MultiAlgorithmPitchDetector",
    "adjusted_score",
    "algorithms_used",
    "fuse_candidates",
    "snap_to_reference",
    "PitchAlgorithm",
]
