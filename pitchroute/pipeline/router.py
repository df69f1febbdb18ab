# pitchroute/pipeline/router.py
"""
Adaptive router: the per-buffer entry point of the pipeline.

    sanitize -> vote -> adapted parameters -> analyzer(s) -> quality -> history
"""
from __future__ import annotations

import contextlib
import copy
import logging
import time
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .adaptation import AdaptationLearner
from .analyzers import BaseAnalyzer, InstrumentAnalyzer, LABEL_TO_FAMILY, VoiceAnalyzer
from .classifier import AudioTypeClassifier
from .config import PipelineConfig
from .instrumentation import PipelineLogger
from .models import (
    AdaptedParameterSet,
    AdaptiveAnalysisResult,
    AnalysisResult,
    AudioLabel,
    DetectionResult,
    InstrumentFamily,
    ProcessingMetadata,
    ProcessingStatistics,
)
from .quality import QualityAssessor
from .utils_config import apply_dotted_overrides
from .validation import sanitize_buffer, validate_result
from .voting import MultiPassVoter

logger = logging.getLogger(__name__)


class AdaptiveProcessor:
    """
    Votes on the source type of a buffer and routes it to a specialised analyzer.

    A confident vote dispatches straight to that label's analyzer. Below the
    confidence threshold both the voice analyzer and the string analyzer run
    and the one with the better component estimate is kept.

    Holds per-stream state (analyzer pitch history, adaptation history), so
    one instance should serve one stream from one thread.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        classifier: Optional[AudioTypeClassifier] = None,
        pipeline_logger: Optional[PipelineLogger] = None,
    ):
        self.config = config or PipelineConfig()
        self.config.validate()
        self.pipeline_logger = pipeline_logger
        self._custom_classifier = classifier
        self.learner = AdaptationLearner(
            self.config.adaptation, history_length=self.config.adaptation_history_length
        )
        self._build()
        if self.pipeline_logger is not None:
            self.pipeline_logger.emit_config("router", self.config)

    def _build(self) -> None:
        cfg = self.config
        sr, fs = int(cfg.sample_rate), cfg.frame_size
        self.classifier = self._custom_classifier or AudioTypeClassifier(sr, fs, cfg.classifier)
        self.voter = MultiPassVoter(
            self.classifier,
            frame_size=fs,
            multi_pass_count=cfg.multi_pass_count,
            config=cfg.classifier,
            enabled=cfg.enable_multi_pass,
        )
        self.voice = VoiceAnalyzer(
            sr, fs,
            estimator_config=cfg.estimators,
            classifier_config=cfg.classifier,
            **cfg.adaptation.vocal_defaults,
        )
        self.instruments: Dict[InstrumentFamily, InstrumentAnalyzer] = {
            family: InstrumentAnalyzer(
                family, sr, fs,
                estimator_config=cfg.estimators,
                fusion_config=cfg.fusion,
                **cfg.adaptation.instrument_defaults,
            )
            for family in InstrumentFamily
        }
        self.quality = QualityAssessor(cfg.quality, reliability_threshold=cfg.confidence_threshold)

    def _timed(self, stage: str):
        if self.pipeline_logger is None:
            return contextlib.nullcontext()
        return self.pipeline_logger.timed(stage)

    # ---- routing ----
    def analyzer_for(self, label: AudioLabel) -> BaseAnalyzer:
        label = AudioLabel(label)
        if label is AudioLabel.VOICE:
            return self.voice
        return self.instruments[LABEL_TO_FAMILY[label]]

    def _apply_adaptation(self, label: AudioLabel) -> bool:
        params = self.learner.parameters_for(label)
        if params.is_empty:
            return False
        if label is AudioLabel.VOICE:
            self.voice.update_parameters(params.vocal)
        else:
            self.analyzer_for(label).update_parameters(params.instrument)
        return True

    def _route(self, y: np.ndarray, detection: DetectionResult) -> Tuple[AnalysisResult, bool]:
        if detection.confidence >= self.config.confidence_threshold:
            return self.analyzer_for(detection.label).analyze(y), False

        instrument = self.instruments[InstrumentFamily.STRING]
        voice_result = self.voice.analyze(y)
        instrument_result = instrument.analyze(y)
        voice_score = self.quality.component_estimate(voice_result, self.voice.plausible_range)
        instrument_score = self.quality.component_estimate(instrument_result, instrument.plausible_range)
        logger.debug(
            "low-confidence %s (%.2f): voice %.2f vs instrument %.2f",
            detection.label.value, detection.confidence, voice_score, instrument_score,
        )
        if voice_score > instrument_score:
            return voice_result, True
        if voice_score == instrument_score and detection.label is AudioLabel.VOICE:
            return voice_result, True
        return instrument_result, True

    def _empty_result(self, start: float, replaced: int) -> AdaptiveAnalysisResult:
        return AdaptiveAnalysisResult(
            quality=self.quality.empty_record(),
            metadata=ProcessingMetadata(
                processing_time_s=time.perf_counter() - start,
                frame_size=self.config.frame_size,
                sample_rate=int(self.config.sample_rate),
                sanitized_samples=replaced,
            ),
        )

    def process(self, buffer: Any) -> AdaptiveAnalysisResult:
        start = time.perf_counter()
        cfg = self.config
        y, replaced = sanitize_buffer(buffer)
        if y.size == 0:
            return self._empty_result(start, replaced)

        with self._timed("detection"):
            detection = self.voter.vote(y)

        adaptation_applied = False
        if cfg.enable_adaptation:
            adaptation_applied = self._apply_adaptation(detection.label)

        with self._timed("analysis"):
            analysis, low_confidence = self._route(y, detection)

        if cfg.enable_quality_assessment:
            quality = self.quality.assess(y, detection.confidence, analysis)
        else:
            quality = self.quality.default_record(detection.confidence)

        result = AdaptiveAnalysisResult(
            label=detection.label,
            detection_confidence=detection.confidence,
            fundamental_frequency=analysis.fundamental_frequency,
            quality=quality,
            analysis=analysis,
            alternatives=list(detection.alternatives),
            metadata=ProcessingMetadata(
                processing_time_s=time.perf_counter() - start,
                frame_size=cfg.frame_size,
                sample_rate=int(cfg.sample_rate),
                passes_used=detection.passes_used,
                adaptation_applied=adaptation_applied,
                analyzer=analysis.analyzer,
                low_confidence_route=low_confidence,
                sanitized_samples=replaced,
            ),
        )

        if cfg.enable_adaptation:
            self.learner.record(detection.label, detection.confidence, quality.overall_quality)
        if cfg.validate_outputs:
            validate_result(result, pipeline_logger=self.pipeline_logger)
        if self.pipeline_logger is not None:
            self.pipeline_logger.log_event(
                "router",
                "result",
                {
                    "label": result.label.value,
                    "confidence": result.detection_confidence,
                    "f0_hz": result.fundamental_frequency,
                    "analyzer": analysis.analyzer,
                    "low_confidence_route": low_confidence,
                    "overall_quality": quality.overall_quality,
                },
            )
        return result

    # ---- state ----
    def get_processing_statistics(self) -> ProcessingStatistics:
        return self.learner.statistics()

    def reset_adaptation(self) -> None:
        self.learner.reset()
        self.voice.reset()
        for analyzer in self.instruments.values():
            analyzer.reset()

    @property
    def adapted_parameters(self) -> Dict[AudioLabel, AdaptedParameterSet]:
        return self.learner.adapted_parameters

    def update_config(self, overrides: Mapping[str, Any]) -> PipelineConfig:
        """Apply dotted overrides, re-validate, and rebuild the components.

        The current configuration is left untouched when an override is
        rejected. Adaptation history survives the rebuild.
        """
        candidate = copy.deepcopy(self.config)
        apply_dotted_overrides(candidate, overrides)
        candidate.validate()

        previous = self.learner
        self.config = candidate
        self.learner = AdaptationLearner(
            candidate.adaptation,
            history_length=candidate.adaptation_history_length,
            clock=previous.clock,
        )
        self.learner.restore(previous.history.snapshot())
        self._build()
        logger.info("pipeline reconfigured: %s", dict(overrides))
        if self.pipeline_logger is not None:
            self.pipeline_logger.emit_config("router", candidate, {"overrides": dict(overrides)})
        return candidate
