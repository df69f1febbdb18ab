"""Pipeline package initializer.

Re-exports the public entry points so callers can write
``from pitchroute.pipeline import AdaptiveProcessor, PipelineConfig``.
"""

from __future__ import annotations

from .config import ConfigurationError, PipelineConfig
from .detectors import (
    AutocorrelationEstimator,
    HPSEstimator,
    RealTimeYinEstimator,
    SpectralPeakEstimator,
    YinEstimator,
)
from .fusion import MultiAlgorithmPitchDetector, fuse_candidates, snap_to_reference
from .classifier import AudioTypeClassifier
from .voting import MultiPassVoter
from .quality import QualityAssessor
from .router import AdaptiveProcessor
from .validation import InvalidAudioError

__all__ = [
    "AdaptiveProcessor",
    "AudioTypeClassifier",
    "AutocorrelationEstimator",
    "ConfigurationError",
    "HPSEstimator",
    "InvalidAudioError",
    "MultiAlgorithmPitchDetector",
    "MultiPassVoter",
    "PipelineConfig",
    "QualityAssessor",
    "RealTimeYinEstimator",
    "SpectralPeakEstimator",
    "YinEstimator",
    "fuse_candidates",
    "snap_to_reference",
]
