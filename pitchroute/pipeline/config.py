from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple


class ConfigurationError(ValueError):
    """Raised when a pipeline configuration cannot be used."""


# ------------------------------------------------------------
# Named calibration constants
# ------------------------------------------------------------

# Fusion priorities (higher = more trusted for monophonic pitch)
ALGORITHM_PRIORITY: Dict[str, float] = {
    "yin": 3.0,
    "autocorrelation": 2.0,
    "hps": 2.0,
    "spectral_peak": 1.0,
}
PRIORITY_BOOST = 0.15
AGREEMENT_CONFIDENCE = 0.7

# Common reference pitches (A3/A4/A5/A2 and the C4..B4 naturals)
REFERENCE_FREQUENCIES: List[float] = [
    220.0, 440.0, 880.0, 110.0, 261.63, 293.66, 329.63, 349.23, 392.00, 493.88,
]
SNAP_TOLERANCE_HZ = 10.0

# Classifier silence gate
SILENCE_RMS = 0.001


def is_power_of_two(n: int) -> bool:
    return isinstance(n, int) and n > 0 and (n & (n - 1)) == 0


# ------------------------------------------------------------
# Pitch estimators
# ------------------------------------------------------------

@dataclass
class EstimatorConfig:
    fmin: float = 50.0
    fmax: float = 4000.0

    # YIN
    yin_threshold: float = 0.15
    yin_probability_threshold: float = 0.1

    # Real-time variant
    smoothing_factor: float = 0.9
    outlier_jump_ratio: float = 0.10

    # Autocorrelation
    autocorrelation_threshold: float = 0.1

    # HPS
    hps_harmonics: int = 5
    hps_fundamental_floor: float = 0.01  # fraction of spectrum max a fundamental bin must reach


# ------------------------------------------------------------
# Fusion + ensemble
# ------------------------------------------------------------

@dataclass
class FusionConfig:
    algorithm_priority: Dict[str, float] = field(
        default_factory=lambda: dict(ALGORITHM_PRIORITY)
    )
    priority_boost: float = PRIORITY_BOOST
    agreement_confidence: float = AGREEMENT_CONFIDENCE
    reference_frequencies: List[float] = field(
        default_factory=lambda: list(REFERENCE_FREQUENCIES)
    )
    snap_tolerance_hz: float = SNAP_TOLERANCE_HZ
    enable_snapping: bool = True

    # Adaptive skipping: a confident spectral peak skips YIN/autocorrelation
    adaptive_skipping: bool = True
    skip_threshold: float = 0.7
    min_candidate_confidence: float = 0.3
    spectral_peak_range: Tuple[float, float] = (50.0, 4000.0)


# ------------------------------------------------------------
# Classifier profiles
# ------------------------------------------------------------

@dataclass
class SourceProfile:
    label: str
    confidence_threshold: float
    expected_centroid: float
    expected_attack: float


def _default_profiles() -> List[SourceProfile]:
    return [
        SourceProfile("voice", 0.7, 500.0, 0.1),
        SourceProfile("keyboard", 0.6, 800.0, 0.02),
        SourceProfile("string", 0.6, 800.0, 0.1),
        SourceProfile("wind", 0.7, 800.0, 0.2),
        SourceProfile("percussion", 0.8, 400.0, 0.01),
    ]


@dataclass
class ClassifierConfig:
    silence_rms: float = SILENCE_RMS
    envelope_window_s: float = 0.002
    centroid_weight: float = 0.2
    centroid_tolerance_hz: float = 500.0
    harmonic_weight: float = 0.3
    attack_weight: float = 0.2
    attack_tolerance_s: float = 0.05
    type_specific_weight: float = 0.3
    formant_ranges: List[Tuple[float, float]] = field(
        default_factory=lambda: [(200.0, 1000.0), (800.0, 3000.0), (1500.0, 4000.0), (2500.0, 5000.0)]
    )
    formant_min_magnitude: float = 0.1
    profiles: List[SourceProfile] = field(default_factory=_default_profiles)

    # Multi-pass voting
    alternative_min_score: float = 0.3
    max_alternatives: int = 3
    segment_overlap: float = 0.5


# ------------------------------------------------------------
# Quality assessment
# ------------------------------------------------------------

@dataclass
class QualityConfig:
    detection_weight: float = 0.3
    snr_weight: float = 0.3
    processing_weight: float = 0.4
    snr_normalizer_db: float = 20.0
    snr_window: int = 1024
    max_snr_db: float = 60.0
    quality_floor: float = 0.7  # overall quality needed for a reliable result
    plausible_range: Tuple[float, float] = (20.0, 8000.0)
    no_pitch_score: float = 0.3
    plausible_score: float = 0.8
    implausible_score: float = 0.6


# ------------------------------------------------------------
# Adaptation
# ------------------------------------------------------------

@dataclass
class AdaptationConfig:
    min_entries: int = 5
    recent_window: int = 20
    quality_threshold: float = 0.8
    vocal_defaults: Dict[str, float] = field(
        default_factory=lambda: {"pitch_smoothing_factor": 0.8, "formant_bandwidth": 100.0}
    )
    instrument_defaults: Dict[str, float] = field(
        default_factory=lambda: {"harmonic_threshold": 0.7, "polyphonic_sensitivity": 0.8}
    )


# ------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------

@dataclass
class PipelineConfig:
    sample_rate: int = 44100
    frame_size: int = 2048
    multi_pass_count: int = 3
    confidence_threshold: float = 0.7
    enable_multi_pass: bool = True
    enable_quality_assessment: bool = True
    enable_adaptation: bool = True
    adaptation_history_length: int = 100

    # Run validate_result on every output and log violations
    validate_outputs: bool = False

    estimators: EstimatorConfig = field(default_factory=EstimatorConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Reject unusable values instead of coercing them."""
        if isinstance(self.sample_rate, bool) or not isinstance(self.sample_rate, (int, float)) or self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate!r}")
        if not is_power_of_two(self.frame_size):
            raise ConfigurationError(f"frame_size must be a power of two, got {self.frame_size!r}")
        if not isinstance(self.multi_pass_count, int) or self.multi_pass_count < 1:
            raise ConfigurationError(f"multi_pass_count must be >= 1, got {self.multi_pass_count!r}")
        if not 0.0 <= float(self.confidence_threshold) <= 1.0:
            raise ConfigurationError(
                f"confidence_threshold must lie in [0, 1], got {self.confidence_threshold!r}"
            )
        if not isinstance(self.adaptation_history_length, int) or self.adaptation_history_length < 1:
            raise ConfigurationError(
                f"adaptation_history_length must be >= 1, got {self.adaptation_history_length!r}"
            )
        est = self.estimators
        if not 0.0 < est.fmin < est.fmax:
            raise ConfigurationError(f"estimator range invalid: fmin={est.fmin}, fmax={est.fmax}")
        if not 0.0 <= est.smoothing_factor < 1.0:
            raise ConfigurationError(f"smoothing_factor must lie in [0, 1), got {est.smoothing_factor}")
        if est.hps_harmonics < 2:
            raise ConfigurationError(f"hps_harmonics must be >= 2, got {est.hps_harmonics}")
        if self.quality.snr_window < 1:
            raise ConfigurationError(f"quality.snr_window must be >= 1, got {self.quality.snr_window}")

    @property
    def nyquist(self) -> float:
        return 0.5 * float(self.sample_rate)
