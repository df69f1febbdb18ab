# pitchroute/pipeline/models.py
"""Dataclasses and enums shared by the pipeline stages.

Every result type clamps its confidences when it is built, so downstream
code can rely on values in [0, 1] without clamping again.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class AudioLabel(str, Enum):
    VOICE = "voice"
    STRING = "string"
    KEYBOARD = "keyboard"
    WIND = "wind"
    PERCUSSION = "percussion"
    UNKNOWN = "unknown"


class InstrumentFamily(str, Enum):
    STRING = "string"
    KEYBOARD = "keyboard"
    WIND = "wind"
    PERCUSSION = "percussion"


class PitchAlgorithm(str, Enum):
    YIN = "yin"
    AUTOCORRELATION = "autocorrelation"
    HPS = "hps"
    SPECTRAL_PEAK = "spectral_peak"


FeatureSet = Dict[str, float]


def clamp01(x: Any) -> float:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(v):
        return 0.0
    return min(1.0, max(0.0, v))


def _plain(value: Any) -> Any:
    """Convert enums / tuples / numpy scalars into JSON-friendly values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(_plain(k)): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "item") and callable(value.item):
        try:
            return value.item()
        except (TypeError, ValueError):
            return value
    return value


# ------------------------------------------------------------
# Pitch
# ------------------------------------------------------------

@dataclass
class PitchCandidate:
    frequency: float = 0.0
    confidence: float = 0.0
    amplitude: float = 0.0
    harmonic_index: int = 0
    source_algorithm: Optional[PitchAlgorithm] = None

    def __post_init__(self) -> None:
        f = float(self.frequency) if self.frequency is not None else 0.0
        if not math.isfinite(f) or f <= 0.0:
            f = 0.0
        self.frequency = f
        self.confidence = clamp01(self.confidence) if f > 0.0 else 0.0
        self.amplitude = clamp01(self.amplitude)
        self.harmonic_index = max(0, int(self.harmonic_index))

    @classmethod
    def silent(cls, algorithm: Optional[PitchAlgorithm] = None) -> "PitchCandidate":
        return cls(0.0, 0.0, 0.0, 0, algorithm)

    @property
    def is_voiced(self) -> bool:
        return self.frequency > 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


@dataclass
class FusionResult:
    frequency: float = 0.0
    confidence: float = 0.0
    selected_algorithm: Optional[PitchAlgorithm] = None
    agreement_count: int = 0
    snapped: bool = False
    candidates: List[PitchCandidate] = field(default_factory=list)

    def __post_init__(self) -> None:
        f = float(self.frequency)
        if not math.isfinite(f) or f <= 0.0:
            f = 0.0
        self.frequency = f
        self.confidence = clamp01(self.confidence) if f > 0.0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


# ------------------------------------------------------------
# Classification + voting
# ------------------------------------------------------------

@dataclass
class AudioTypeVote:
    label: AudioLabel = AudioLabel.UNKNOWN
    confidence: float = 0.0
    features: FeatureSet = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.label = AudioLabel(self.label)
        self.confidence = clamp01(self.confidence)


@dataclass
class LabelScore:
    label: AudioLabel
    confidence: float

    def __post_init__(self) -> None:
        self.label = AudioLabel(self.label)
        self.confidence = clamp01(self.confidence)


@dataclass
class DetectionResult:
    label: AudioLabel = AudioLabel.UNKNOWN
    confidence: float = 0.0
    alternatives: List[LabelScore] = field(default_factory=list)
    frame_confidence: float = 0.0
    passes_used: int = 0
    features: FeatureSet = field(default_factory=dict)
    max_alternatives: int = 3

    def __post_init__(self) -> None:
        self.label = AudioLabel(self.label)
        self.confidence = clamp01(self.confidence)
        self.frame_confidence = clamp01(self.frame_confidence)
        alts = [a for a in self.alternatives if a.label != self.label]
        alts.sort(key=lambda a: a.confidence, reverse=True)
        self.alternatives = alts[: max(0, int(self.max_alternatives))]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "confidence": self.confidence,
            "alternatives": [{"label": a.label.value, "confidence": a.confidence} for a in self.alternatives],
            "frame_confidence": self.frame_confidence,
            "passes_used": self.passes_used,
        }


# ------------------------------------------------------------
# Analyzer output
# ------------------------------------------------------------

@dataclass
class AnalysisResult:
    analyzer: str = "none"
    fundamental_frequency: float = 0.0
    confidence: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        f = float(self.fundamental_frequency)
        if not math.isfinite(f) or f <= 0.0:
            f = 0.0
        self.fundamental_frequency = f
        self.confidence = clamp01(self.confidence) if f > 0.0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


# ------------------------------------------------------------
# Quality + adaptation
# ------------------------------------------------------------

@dataclass
class QualityRecord:
    overall_quality: float = 0.0
    snr_estimate_db: float = 0.0
    detection_confidence: float = 0.0
    processing_accuracy: float = 0.0
    component_breakdown: Dict[str, float] = field(default_factory=dict)
    reliability_threshold: float = 0.7
    quality_floor: float = 0.7

    def __post_init__(self) -> None:
        self.overall_quality = clamp01(self.overall_quality)
        self.detection_confidence = clamp01(self.detection_confidence)
        self.processing_accuracy = clamp01(self.processing_accuracy)
        snr = float(self.snr_estimate_db)
        self.snr_estimate_db = snr if math.isfinite(snr) else 0.0

    @property
    def is_reliable(self) -> bool:
        return (
            self.overall_quality > self.quality_floor
            and self.detection_confidence > self.reliability_threshold
        )

    def to_dict(self) -> Dict[str, Any]:
        d = _plain(asdict(self))
        d["is_reliable"] = self.is_reliable
        return d


@dataclass
class HistoryEntry:
    timestamp: float
    label: AudioLabel
    confidence: float
    quality: float

    def __post_init__(self) -> None:
        self.label = AudioLabel(self.label)
        self.confidence = clamp01(self.confidence)
        self.quality = clamp01(self.quality)


@dataclass
class AdaptedParameterSet:
    label: AudioLabel
    vocal: Dict[str, float] = field(default_factory=dict)
    instrument: Dict[str, float] = field(default_factory=dict)
    support: int = 0           # high-quality entries the set was derived from
    mean_quality: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.vocal and not self.instrument

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


@dataclass
class ProcessingStatistics:
    total_processed: int = 0
    type_distribution: Dict[str, int] = field(default_factory=dict)
    average_quality: float = 0.0
    average_confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ------------------------------------------------------------
# Router output
# ------------------------------------------------------------

@dataclass
class ProcessingMetadata:
    processing_time_s: float = 0.0
    frame_size: int = 2048
    sample_rate: int = 44100
    passes_used: int = 0
    adaptation_applied: bool = False
    analyzer: str = "none"
    low_confidence_route: bool = False
    sanitized_samples: int = 0


@dataclass
class AdaptiveAnalysisResult:
    label: AudioLabel = AudioLabel.UNKNOWN
    detection_confidence: float = 0.0
    fundamental_frequency: float = 0.0
    quality: QualityRecord = field(default_factory=QualityRecord)
    analysis: AnalysisResult = field(default_factory=AnalysisResult)
    alternatives: List[LabelScore] = field(default_factory=list)
    metadata: ProcessingMetadata = field(default_factory=ProcessingMetadata)

    def __post_init__(self) -> None:
        self.label = AudioLabel(self.label)
        self.detection_confidence = clamp01(self.detection_confidence)
        f = float(self.fundamental_frequency)
        self.fundamental_frequency = f if math.isfinite(f) and f > 0.0 else 0.0

    @property
    def is_reliable(self) -> bool:
        return self.quality.is_reliable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label.value,
            "detection_confidence": self.detection_confidence,
            "fundamental_frequency": self.fundamental_frequency,
            "is_reliable": self.is_reliable,
            "quality": self.quality.to_dict(),
            "analysis": self.analysis.to_dict(),
            "alternatives": [{"label": a.label.value, "confidence": a.confidence} for a in self.alternatives],
            "metadata": _plain(asdict(self.metadata)),
        }
