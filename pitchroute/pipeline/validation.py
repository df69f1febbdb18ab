"""Input sanitizing and invariant checks for pipeline outputs."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
import logging
import math

import numpy as np

from .models import AdaptiveAnalysisResult, DetectionResult, FusionResult, PitchCandidate, QualityRecord

logger = logging.getLogger(__name__)


class InvalidAudioError(ValueError):
    """Raised for buffers the pipeline cannot interpret (e.g. multi-channel)."""


def sanitize_buffer(buffer: Any) -> Tuple[np.ndarray, int]:
    """Return a 1-D float32 copy of ``buffer`` and the number of samples replaced.

    Column/row vectors of shape (n, 1) / (1, n) are flattened; anything with
    more than one channel is rejected. Non-finite samples become 0.
    """
    y = np.asarray(buffer, dtype=np.float32)
    if y.ndim > 1:
        channels = [d for d in y.shape if d != 1]
        if len(channels) > 1:
            raise InvalidAudioError(f"expected mono audio, got array of shape {y.shape}")
    y = y.reshape(-1).copy()
    bad = ~np.isfinite(y)
    replaced = int(np.count_nonzero(bad))
    if replaced:
        logger.warning("replaced %d non-finite samples with 0", replaced)
        y[bad] = 0.0
    return y, replaced


def _check_confidence(name: str, value: float, violations: List[str]) -> None:
    if not (isinstance(value, (int, float)) and math.isfinite(value) and 0.0 <= value <= 1.0):
        violations.append(f"{name} {value!r} outside [0, 1]")


def _validate_candidate(c: PitchCandidate, violations: List[str], name: str = "candidate") -> None:
    _check_confidence(f"{name}.confidence", c.confidence, violations)
    if c.frequency < 0.0 or not math.isfinite(c.frequency):
        violations.append(f"{name}.frequency {c.frequency!r} is negative or non-finite")
    if c.frequency == 0.0 and c.confidence != 0.0:
        violations.append(f"{name} has no pitch but confidence {c.confidence}")


def _validate_fusion(r: FusionResult, violations: List[str]) -> None:
    _check_confidence("fusion.confidence", r.confidence, violations)
    if r.frequency < 0.0 or not math.isfinite(r.frequency):
        violations.append(f"fusion.frequency {r.frequency!r} is negative or non-finite")
    if r.frequency == 0.0 and r.confidence != 0.0:
        violations.append("fusion result has no pitch but nonzero confidence")
    for i, c in enumerate(r.candidates):
        _validate_candidate(c, violations, f"fusion.candidates[{i}]")


def _validate_detection(r: DetectionResult, violations: List[str]) -> None:
    _check_confidence("detection.confidence", r.confidence, violations)
    labels = [a.label for a in r.alternatives]
    if r.label in labels:
        violations.append(f"winner {r.label.value} also listed as an alternative")
    if len(labels) > 3:
        violations.append(f"{len(labels)} alternatives, expected at most 3")
    confs = [a.confidence for a in r.alternatives]
    if confs != sorted(confs, reverse=True):
        violations.append("alternatives not sorted by confidence")
    for a in r.alternatives:
        _check_confidence(f"alternative[{a.label.value}]", a.confidence, violations)


def _validate_quality(q: QualityRecord, violations: List[str]) -> None:
    _check_confidence("quality.overall_quality", q.overall_quality, violations)
    _check_confidence("quality.detection_confidence", q.detection_confidence, violations)
    if not 0.0 <= q.snr_estimate_db <= 60.0:
        violations.append(f"snr {q.snr_estimate_db} dB outside [0, 60]")


def _validate_adaptive(r: AdaptiveAnalysisResult, violations: List[str]) -> None:
    _check_confidence("detection_confidence", r.detection_confidence, violations)
    if r.fundamental_frequency < 0.0:
        violations.append("negative fundamental frequency")
    if r.fundamental_frequency == 0.0 and r.analysis.confidence != 0.0:
        violations.append("analysis has no pitch but nonzero confidence")
    if any(a.label == r.label for a in r.alternatives):
        violations.append(f"winner {r.label.value} also listed as an alternative")
    _validate_quality(r.quality, violations)


def validate_result(result: Any, strict: bool = False, pipeline_logger: Optional[Any] = None) -> Dict[str, Any]:
    """Check the invariants of any pipeline result.

    Returns {"status": "pass"} or {"status": "fail", "violations": [...]}.
    With ``strict`` a failure raises AssertionError.
    """
    violations: List[str] = []

    if isinstance(result, AdaptiveAnalysisResult):
        _validate_adaptive(result, violations)
    elif isinstance(result, DetectionResult):
        _validate_detection(result, violations)
    elif isinstance(result, FusionResult):
        _validate_fusion(result, violations)
    elif isinstance(result, PitchCandidate):
        _validate_candidate(result, violations)
    elif isinstance(result, QualityRecord):
        _validate_quality(result, violations)
    else:
        violations.append(f"no invariants known for {type(result).__name__}")

    out: Dict[str, Any] = {"status": "fail" if violations else "pass"}
    if violations:
        out["violations"] = violations
        if pipeline_logger is not None:
            pipeline_logger.log_event("contract", "violation", {"violations": violations})
        else:
            logger.warning("Contract violations: %s", violations)
        if strict:
            raise AssertionError(f"Pipeline Contract Violation: {'; '.join(violations)}")
    return out
