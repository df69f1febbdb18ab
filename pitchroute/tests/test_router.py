import json

import numpy as np
import pytest

from pitchroute.pipeline.config import ConfigurationError, PipelineConfig
from pitchroute.pipeline.instrumentation import PipelineLogger
from pitchroute.pipeline.models import AudioLabel, AudioTypeVote, QualityRecord
from pitchroute.pipeline.router import AdaptiveProcessor
from pitchroute.pipeline.validation import InvalidAudioError
from pitchroute.tests.audio_utils import generate_harmonic_tone, generate_sine_wave


class FixedClassifier:
    """Votes the same label and confidence for every segment."""

    def __init__(self, label, confidence):
        self.label = label
        self.confidence = confidence

    def classify(self, segment):
        return AudioTypeVote(self.label, self.confidence, {})


@pytest.fixture
def sr():
    return 44100


@pytest.fixture
def buffer(sr):
    # three frames of a 220 Hz harmonic tone
    return generate_harmonic_tone(220.0, 3 * 2048 / sr, sr)


class TestProcess:
    def test_empty_buffer(self):
        processor = AdaptiveProcessor()
        result = processor.process(np.array([], dtype=np.float32))
        assert result.label is AudioLabel.UNKNOWN
        assert result.fundamental_frequency == 0.0
        assert result.quality.overall_quality == 0.0
        assert not result.is_reliable
        assert processor.get_processing_statistics().total_processed == 0

    def test_silent_frame(self):
        result = AdaptiveProcessor().process(np.zeros(2048, dtype=np.float32))
        assert result.label is AudioLabel.UNKNOWN
        assert result.fundamental_frequency == 0.0
        assert result.analysis.confidence == 0.0
        assert not result.is_reliable

    def test_multichannel_rejected(self, buffer):
        with pytest.raises(InvalidAudioError):
            AdaptiveProcessor().process(np.stack([buffer, buffer]))

    def test_column_vector_accepted(self, buffer):
        result = AdaptiveProcessor().process(buffer.reshape(-1, 1))
        assert result.metadata.passes_used == 3

    def test_non_finite_samples_are_counted(self, buffer):
        y = buffer.copy()
        y[[5, 50, 500]] = [np.nan, np.inf, -np.inf]
        result = AdaptiveProcessor().process(y)
        assert result.metadata.sanitized_samples == 3
        assert np.isfinite(result.fundamental_frequency)

    def test_result_is_bounded_and_serializable(self, buffer):
        processor = AdaptiveProcessor()
        result = processor.process(buffer)
        assert 0.0 <= result.detection_confidence <= 1.0
        assert 0.0 <= result.quality.overall_quality <= 1.0
        assert result.fundamental_frequency >= 0.0
        assert result.label not in [a.label for a in result.alternatives]
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["metadata"]["frame_size"] == 2048
        assert processor.get_processing_statistics().total_processed == 1

    def test_deterministic(self, buffer):
        a = AdaptiveProcessor().process(buffer)
        b = AdaptiveProcessor().process(buffer)
        assert a.label == b.label
        assert a.detection_confidence == b.detection_confidence
        assert a.fundamental_frequency == b.fundamental_frequency


class TestRouting:
    @pytest.mark.parametrize(
        "label, analyzer",
        [
            (AudioLabel.VOICE, "voice"),
            (AudioLabel.KEYBOARD, "keyboard"),
            (AudioLabel.WIND, "wind"),
            (AudioLabel.PERCUSSION, "percussion"),
            (AudioLabel.STRING, "string"),
            (AudioLabel.UNKNOWN, "string"),
        ],
    )
    def test_confident_vote_dispatches_directly(self, buffer, label, analyzer):
        processor = AdaptiveProcessor(classifier=FixedClassifier(label, 0.95))
        result = processor.process(buffer)
        assert result.label is label
        assert result.metadata.analyzer == analyzer
        assert not result.metadata.low_confidence_route

    def test_low_confidence_compares_voice_and_string(self, buffer):
        processor = AdaptiveProcessor(classifier=FixedClassifier(AudioLabel.WIND, 0.2))
        result = processor.process(buffer)
        assert result.metadata.low_confidence_route
        assert result.metadata.analyzer in ("voice", "string")

    @pytest.mark.parametrize(
        "label, analyzer",
        [(AudioLabel.VOICE, "voice"), (AudioLabel.STRING, "string"), (AudioLabel.WIND, "string")],
    )
    def test_tie_prefers_voice_only_for_voice_votes(self, buffer, monkeypatch, label, analyzer):
        processor = AdaptiveProcessor(classifier=FixedClassifier(label, 0.2))
        monkeypatch.setattr(processor.quality, "component_estimate", lambda analysis, plausible_range=None: 0.5)
        assert processor.process(buffer).metadata.analyzer == analyzer


class TestAdaptation:
    def test_parameters_apply_after_enough_good_results(self, buffer, monkeypatch):
        processor = AdaptiveProcessor(classifier=FixedClassifier(AudioLabel.VOICE, 0.95))
        good = QualityRecord(overall_quality=0.9, detection_confidence=0.95)
        monkeypatch.setattr(processor.quality, "assess", lambda frame, det, analysis: good)

        first = processor.process(buffer)
        assert not first.metadata.adaptation_applied
        for _ in range(4):
            processor.process(buffer)
        assert not processor.adapted_parameters[AudioLabel.VOICE].is_empty
        assert processor.process(buffer).metadata.adaptation_applied

    def test_disabled_adaptation_records_nothing(self, buffer):
        processor = AdaptiveProcessor(PipelineConfig(enable_adaptation=False))
        processor.process(buffer)
        assert processor.get_processing_statistics().total_processed == 0

    def test_quality_assessment_off_uses_default_record(self, buffer):
        processor = AdaptiveProcessor(PipelineConfig(enable_quality_assessment=False))
        result = processor.process(buffer)
        assert result.quality.overall_quality == 0.8
        assert result.quality.snr_estimate_db == 15.0
        assert result.quality.detection_confidence == result.detection_confidence

    def test_silence_unreliable_without_quality_assessment(self):
        processor = AdaptiveProcessor(PipelineConfig(enable_quality_assessment=False))
        result = processor.process(np.zeros(3 * 2048, dtype=np.float32))
        assert result.label is AudioLabel.UNKNOWN
        assert result.quality.detection_confidence == 0.0
        assert not result.is_reliable

    def test_statistics_and_reset(self, buffer):
        processor = AdaptiveProcessor(classifier=FixedClassifier(AudioLabel.KEYBOARD, 0.9))
        for _ in range(3):
            processor.process(buffer)
        stats = processor.get_processing_statistics()
        assert stats.total_processed == 3
        assert stats.type_distribution == {"keyboard": 3}
        assert stats.average_confidence == pytest.approx(0.9)

        processor.reset_adaptation()
        assert processor.get_processing_statistics().total_processed == 0


class TestUpdateConfig:
    def test_rebuilds_and_keeps_history(self, buffer):
        processor = AdaptiveProcessor()
        processor.process(buffer)
        updated = processor.update_config({"multi_pass_count": 2, "fusion.enable_snapping": False})
        assert updated.multi_pass_count == 2
        assert processor.voter.multi_pass_count == 2
        assert processor.config.fusion.enable_snapping is False
        assert processor.get_processing_statistics().total_processed == 1
        assert processor.process(buffer).metadata.passes_used == 2

    def test_unknown_key_leaves_config_untouched(self):
        processor = AdaptiveProcessor()
        with pytest.raises(ConfigurationError):
            processor.update_config({"fusion.no_such_knob": 1})
        assert processor.config == PipelineConfig()

    def test_invalid_value_leaves_config_untouched(self):
        processor = AdaptiveProcessor()
        with pytest.raises(ConfigurationError):
            processor.update_config({"frame_size": 1000})
        assert processor.config.frame_size == 2048

    def test_invalid_constructor_config(self):
        with pytest.raises(ConfigurationError):
            AdaptiveProcessor(PipelineConfig(frame_size=1000))


class TestInstrumentation:
    def test_validated_outputs_and_events(self, buffer, tmp_path):
        pipeline_logger = PipelineLogger(str(tmp_path), run_name="router")
        processor = AdaptiveProcessor(PipelineConfig(validate_outputs=True), pipeline_logger=pipeline_logger)
        processor.process(buffer)

        lines = (tmp_path / "router" / "logs.jsonl").read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines]
        assert any(e["stage"] == "router" and e["event"] == "config" for e in events)
        assert any(e["stage"] == "router" and e["event"] == "result" for e in events)
        assert not any(e["stage"] == "contract" for e in events)
        assert {"detection", "analysis"} <= set(pipeline_logger.timing)

    def test_sine_fundamental(self, sr):
        processor = AdaptiveProcessor(classifier=FixedClassifier(AudioLabel.STRING, 0.9))
        result = processor.process(generate_sine_wave(440.0, 3 * 2048 / sr, sr, amplitude=0.5))
        assert result.fundamental_frequency == pytest.approx(440.0, abs=3.0)
