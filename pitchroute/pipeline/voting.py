# pitchroute/pipeline/voting.py
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .classifier import AudioTypeClassifier
from .config import ClassifierConfig
from .models import AudioLabel, AudioTypeVote, DetectionResult, LabelScore

logger = logging.getLogger(__name__)


def segment_bounds(length: int, count: int, overlap: float = 0.5) -> List[Tuple[int, int]]:
    """Overlapping [start, end) windows: width = length // count, each
    extended by ``overlap`` of a width and clipped to the buffer."""
    if length <= 0 or count <= 0:
        return []
    w = length // count
    if w <= 0:
        return []
    span = int(w * (1.0 + overlap))
    return [(i * w, min(i * w + span, length)) for i in range(count)]


class MultiPassVoter:
    """
    Classifies overlapping segments of a buffer and aggregates the votes.

    Per label the weighted score is mean confidence x vote count / segment
    count, so a label needs both agreement and confidence to win.
    """

    def __init__(
        self,
        classifier: AudioTypeClassifier,
        frame_size: int = 2048,
        multi_pass_count: int = 3,
        config: Optional[ClassifierConfig] = None,
        enabled: bool = True,
    ):
        self.classifier = classifier
        self.frame_size = int(frame_size)
        self.multi_pass_count = int(multi_pass_count)
        self.config = config or classifier.config
        self.enabled = bool(enabled)

    def segments(self, buffer: np.ndarray) -> List[np.ndarray]:
        y = np.asarray(buffer).reshape(-1)
        bounds = segment_bounds(len(y), self.multi_pass_count, self.config.segment_overlap)
        return [y[s:e] for s, e in bounds if e - s >= self.frame_size]

    def vote(self, buffer: np.ndarray) -> DetectionResult:
        y = np.asarray(buffer, dtype=np.float32).reshape(-1)
        max_alts = self.config.max_alternatives

        if not self.enabled:
            single = self.classifier.classify(y)
            return DetectionResult(
                label=single.label,
                confidence=single.confidence,
                frame_confidence=single.confidence,
                passes_used=1,
                features=single.features,
                max_alternatives=max_alts,
            )

        segs = self.segments(y)
        if not segs:
            logger.debug("no segment of %d samples fits %d passes", len(y), self.multi_pass_count)
            return DetectionResult(max_alternatives=max_alts)

        votes: List[AudioTypeVote] = [self.classifier.classify(s) for s in segs]
        totals: Dict[AudioLabel, float] = {}
        counts: Dict[AudioLabel, int] = {}
        for v in votes:
            # dicts keep first-seen order, which breaks ties
            totals[v.label] = totals.get(v.label, 0.0) + v.confidence
            counts[v.label] = counts.get(v.label, 0) + 1

        n = len(votes)
        weighted = {label: (totals[label] / counts[label]) * counts[label] / n for label in totals}

        winner = None
        best = -1.0
        for label, score in weighted.items():
            if score > best:
                winner, best = label, score

        alternatives = [
            LabelScore(label, score)
            for label, score in weighted.items()
            if label != winner and score > self.config.alternative_min_score
        ]
        features = next((v.features for v in votes if v.label == winner), votes[0].features)
        return DetectionResult(
            label=winner,
            confidence=best,
            alternatives=alternatives,
            frame_confidence=float(np.mean([v.confidence for v in votes])),
            passes_used=n,
            features=features,
            max_alternatives=max_alts,
        )
