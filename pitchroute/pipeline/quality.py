# pitchroute/pipeline/quality.py
"""Scores how much a routed result can be trusted."""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .config import QualityConfig
from .models import AnalysisResult, QualityRecord, clamp01

logger = logging.getLogger(__name__)

_EPS = 1e-10


class QualityAssessor:
    """
    overall = w_det * detection + w_snr * min(snr / 20, 1) + w_proc * plausibility

    Plausibility only looks at the analyzer's fundamental: no pitch, a pitch
    inside the plausible range, or a pitch outside it.
    """

    def __init__(self, config: Optional[QualityConfig] = None, reliability_threshold: float = 0.7):
        self.config = config or QualityConfig()
        self.reliability_threshold = float(reliability_threshold)

    def estimate_snr(self, frame: np.ndarray) -> float:
        """Frame rms against the quietest full window, in dB, clamped to [0, max].

        Each window is compared by its own deviation, so slow DC drift does
        not raise the noise floor.
        """
        cfg = self.config
        y = np.asarray(frame, dtype=np.float64).reshape(-1)
        win = int(cfg.snr_window)
        if y.size < win or win <= 0:
            return 0.0
        level = float(np.std(y))
        if level <= 0.0:
            return 0.0

        n = y.size // win
        windows = y[: n * win].reshape(n, win)
        window_rms = np.std(windows, axis=1)
        noise = float(np.min(window_rms))
        snr = 20.0 * np.log10(level / (noise + _EPS))
        return float(np.clip(snr, 0.0, cfg.max_snr_db))

    def processing_plausibility(
        self,
        frequency: float,
        plausible_range: Optional[Tuple[float, float]] = None,
    ) -> float:
        cfg = self.config
        lo, hi = plausible_range or cfg.plausible_range
        if frequency is None or not np.isfinite(frequency) or frequency <= 0.0:
            return cfg.no_pitch_score
        if lo <= frequency <= hi:
            return cfg.plausible_score
        return cfg.implausible_score

    def component_estimate(
        self,
        analysis: AnalysisResult,
        plausible_range: Optional[Tuple[float, float]] = None,
    ) -> float:
        """Score one analyzer's answer when two compete on a low-confidence frame.

        Base 0.5, +0.2 for a pitch strictly inside the analyzer's range, plus
        bonuses for what the analyzer managed to describe: formants and a
        confident vowel for voice, technique flags and family descriptors for
        instruments.
        """
        lo, hi = plausible_range or self.config.plausible_range
        f0 = analysis.fundamental_frequency
        score = 0.5
        if lo < f0 < hi:
            score += 0.2

        details = analysis.details or {}
        if len(details.get("formants") or []) >= 2:
            score += 0.2
        vowel = details.get("vowel") or {}
        if float(vowel.get("confidence", 0.0)) > 0.6:
            score += 0.1
        techniques = details.get("techniques") or {}
        if any(bool(v) for v in techniques.values()):
            score += 0.15
        if details.get("family_specific"):
            score += 0.15
        return min(score, 1.0)

    def assess(
        self,
        frame: np.ndarray,
        detection_confidence: float,
        analysis: AnalysisResult,
    ) -> QualityRecord:
        cfg = self.config
        det = clamp01(detection_confidence)
        snr = self.estimate_snr(frame)
        snr_score = min(snr / cfg.snr_normalizer_db, 1.0) if cfg.snr_normalizer_db > 0 else 0.0
        plausibility = self.processing_plausibility(analysis.fundamental_frequency)

        overall = (
            cfg.detection_weight * det
            + cfg.snr_weight * snr_score
            + cfg.processing_weight * plausibility
        )
        return QualityRecord(
            overall_quality=overall,
            snr_estimate_db=snr,
            detection_confidence=det,
            processing_accuracy=plausibility,
            component_breakdown={
                "detection": det,
                "snr": snr_score,
                "processing": plausibility,
            },
            reliability_threshold=self.reliability_threshold,
            quality_floor=cfg.quality_floor,
        )

    def default_record(self, detection_confidence: float = 0.0) -> QualityRecord:
        """Fixed record used when assessment is switched off.

        Only the detection confidence is carried through, so reliability still
        follows the vote.
        """
        det = float(np.clip(detection_confidence, 0.0, 1.0))
        return QualityRecord(
            overall_quality=0.8,
            snr_estimate_db=15.0,
            detection_confidence=det,
            processing_accuracy=0.8,
            component_breakdown={"detection": det, "snr": 0.8, "processing": 0.8},
            reliability_threshold=self.reliability_threshold,
            quality_floor=self.config.quality_floor,
        )

    def empty_record(self) -> QualityRecord:
        return QualityRecord(
            reliability_threshold=self.reliability_threshold,
            quality_floor=self.config.quality_floor,
        )
