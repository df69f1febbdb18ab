# pitchroute/pipeline/classifier.py
from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np

from .config import ClassifierConfig, SourceProfile
from .features import FeatureExtractor
from .models import AudioLabel, AudioTypeVote, FeatureSet

logger = logging.getLogger(__name__)


def feature_match(value: float, expected: float, tolerance: float) -> float:
    """1.0 at the expected value, falling linearly to 0 at +-tolerance."""
    if tolerance <= 0.0:
        return 1.0 if value == expected else 0.0
    return max(0.0, 1.0 - abs(value - expected) / tolerance)


# ---- type-specific scores ----

def _voice_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("formant_count", 0.0) >= 2:
        score += 0.4
    if 3.0 < f.get("vibrato_rate", 0.0) < 12.0:
        score += 0.3
    if 0.6 < f.get("harmonic_ratio", 0.0) < 0.9:
        score += 0.3
    return min(score, 1.0)


def _keyboard_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("attack_time", 1.0) < 0.05:
        score += 0.4
    if f.get("harmonic_ratio", 0.0) > 0.7:
        score += 0.3
    if f.get("percussiveness", 0.0) > 0.6:
        score += 0.3
    return min(score, 1.0)


def _plucked_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("pluckiness", 0.0) > 0.5:
        score += 0.4
    if 0.3 < f.get("harmonic_complexity", 0.0) < 0.7:
        score += 0.3
    if 0.5 < f.get("decay_time", 0.0) < 3.0:
        score += 0.3
    return min(score, 1.0)


def _bowed_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("bowingness", 0.0) > 0.5:
        score += 0.4
    if f.get("sustain_level", 0.0) > 0.6:
        score += 0.3
    if 4.0 < f.get("vibrato_rate", 0.0) < 8.0:
        score += 0.3
    return min(score, 1.0)


def _string_score(f: FeatureSet) -> float:
    return max(_plucked_score(f), _bowed_score(f))


def _wind_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("wind_breathiness", 0.0) > 0.3:
        score += 0.4
    if f.get("harmonic_ratio", 1.0) < 0.7 and f.get("fundamental_strength", 0.0) > 0.7:
        score += 0.3
    if 0.1 < f.get("attack_time", 0.0) < 0.3:
        score += 0.3
    return min(score, 1.0)


def _percussion_score(f: FeatureSet) -> float:
    score = 0.0
    if f.get("percussiveness", 0.0) > 0.8:
        score += 0.5
    if f.get("harmonic_ratio", 1.0) < 0.3:
        score += 0.3
    if f.get("attack_time", 1.0) < 0.02:
        score += 0.2
    return min(score, 1.0)


TYPE_SCORERS = {
    "voice": _voice_score,
    "keyboard": _keyboard_score,
    "string": _string_score,
    "wind": _wind_score,
    "percussion": _percussion_score,
}


class AudioTypeClassifier:
    """
    Stateless profile matcher: segment -> (label, confidence, features).

    Each profile is scored from the weighted terms whose feature is present
    (centroid, harmonic ratio, attack) plus a type-specific term. The best
    profile wins; a score below that profile's threshold reports 'unknown'.
    """

    def __init__(self, sr: int = 44100, frame_size: int = 2048, config: Optional[ClassifierConfig] = None):
        self.sr = int(sr)
        self.frame_size = int(frame_size)
        self.config = config or ClassifierConfig()
        self.extractor = FeatureExtractor(self.sr, self.frame_size, self.config)

    def profile_score(self, features: FeatureSet, profile: SourceProfile) -> float:
        cfg = self.config
        score = 0.0
        total = 0.0

        centroid = features.get("spectral_centroid", 0.0)
        if centroid > 0.0:
            score += feature_match(centroid, profile.expected_centroid, cfg.centroid_tolerance_hz) * cfg.centroid_weight
            total += cfg.centroid_weight

        harmonic = features.get("harmonic_ratio", 0.0)
        if harmonic > 0.0:
            score += min(harmonic, 1.0) * cfg.harmonic_weight
            total += cfg.harmonic_weight

        attack = features.get("attack_time", 0.0)
        if attack > 0.0:
            score += feature_match(attack, profile.expected_attack, cfg.attack_tolerance_s) * cfg.attack_weight
            total += cfg.attack_weight

        scorer = TYPE_SCORERS.get(profile.label)
        typed = scorer(features) if scorer is not None else 0.5
        score += typed * cfg.type_specific_weight
        total += cfg.type_specific_weight

        return score / total if total > 0.0 else 0.0

    def scores(self, features: FeatureSet) -> Dict[str, float]:
        return {p.label: self.profile_score(features, p) for p in self.config.profiles}

    def classify(self, segment: np.ndarray) -> AudioTypeVote:
        y = np.asarray(segment, dtype=np.float64).reshape(-1)
        if y.size == 0 or not np.all(np.isfinite(y)):
            return AudioTypeVote(AudioLabel.UNKNOWN, 0.0, {})
        level = float(np.sqrt(np.mean(y * y)))
        if level < self.config.silence_rms:
            return AudioTypeVote(AudioLabel.UNKNOWN, 0.0, {"rms": level})

        features = self.extractor.extract(y)
        best_profile: Optional[SourceProfile] = None
        best_score = 0.0
        for profile in self.config.profiles:
            s = self.profile_score(features, profile)
            if s > best_score:
                best_profile, best_score = profile, s

        if best_profile is None:
            return AudioTypeVote(AudioLabel.UNKNOWN, 0.0, features)
        if best_score < best_profile.confidence_threshold:
            logger.debug(
                "best profile %s scored %.3f below its threshold %.2f",
                best_profile.label, best_score, best_profile.confidence_threshold,
            )
            return AudioTypeVote(AudioLabel.UNKNOWN, best_score, features)
        return AudioTypeVote(AudioLabel(best_profile.label), best_score, features)
