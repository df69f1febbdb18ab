import numpy as np
import pytest

from pitchroute.pipeline.models import AnalysisResult, QualityRecord
from pitchroute.pipeline.quality import QualityAssessor
from pitchroute.tests.audio_utils import generate_silence, generate_sine_wave


@pytest.fixture
def sr():
    return 44100


@pytest.fixture
def assessor():
    return QualityAssessor()


def loud_then_quiet(sr, quiet_amplitude):
    """441 Hz (exactly 100 samples per period): 3000 loud samples, 1096 quiet."""
    loud = generate_sine_wave(441.0, 3000 / sr, sr)
    quiet = generate_sine_wave(441.0, 1096 / sr, sr, amplitude=quiet_amplitude)
    return np.concatenate([loud, quiet])


class TestSNR:
    def test_too_short(self, assessor, sr):
        assert assessor.estimate_snr(generate_sine_wave(440.0, 500 / sr, sr)) == 0.0

    def test_silent(self, assessor, sr):
        assert assessor.estimate_snr(generate_silence(0.1, sr)) == 0.0

    def test_steady_tone_has_no_quiet_window(self, assessor, sr):
        snr = assessor.estimate_snr(generate_sine_wave(441.0, 4100 / sr, sr))
        assert 0.0 <= snr < 1.0

    def test_quiet_window_sets_noise_floor(self, assessor, sr):
        snr = assessor.estimate_snr(loud_then_quiet(sr, 0.1))
        assert 15.0 < snr < 25.0

    def test_clamped_to_max(self, assessor, sr):
        assert assessor.estimate_snr(loud_then_quiet(sr, 0.0)) == 60.0

    def test_offset_in_quiet_window_is_ignored(self, assessor, sr):
        clean = loud_then_quiet(sr, 0.1).astype(np.float64)
        drifted = clean.copy()
        drifted[3072:] += 0.3
        snr = assessor.estimate_snr(drifted)
        assert 15.0 < snr < 25.0
        assert snr == pytest.approx(assessor.estimate_snr(clean), abs=1.0)


class TestPlausibility:
    def test_three_levels(self, assessor):
        assert assessor.processing_plausibility(0.0) == 0.3
        assert assessor.processing_plausibility(440.0) == 0.8
        assert assessor.processing_plausibility(9000.0) == 0.6
        assert assessor.processing_plausibility(float("nan")) == 0.3


class TestComponentEstimate:
    def test_voice_bonuses(self, assessor):
        analysis = AnalysisResult(
            "voice", 220.0, 0.9,
            {"formants": [{}, {}], "vowel": {"confidence": 0.8}},
        )
        assert assessor.component_estimate(analysis, (80.0, 1000.0)) == pytest.approx(1.0)

    def test_instrument_bonuses_are_capped(self, assessor):
        analysis = AnalysisResult(
            "string", 220.0, 0.5,
            {"techniques": {"plucking": True, "bowing": False}, "family_specific": {"string_resonance": 0.2}},
        )
        assert assessor.component_estimate(analysis, (20.0, 8000.0)) == 1.0

    def test_no_pitch_is_base_score(self, assessor):
        assert assessor.component_estimate(AnalysisResult("voice"), (80.0, 1000.0)) == pytest.approx(0.5)

    def test_range_is_strict(self, assessor):
        edge = AnalysisResult("voice", 80.0, 0.9)
        assert assessor.component_estimate(edge, (80.0, 1000.0)) == pytest.approx(0.5)


class TestAssess:
    def test_weighted_sum(self, assessor, sr):
        frame = loud_then_quiet(sr, 0.1)
        analysis = AnalysisResult("string", 441.0, 0.9)
        record = assessor.assess(frame, 0.9, analysis)

        snr = assessor.estimate_snr(frame)
        expected = 0.3 * 0.9 + 0.3 * min(snr / 20.0, 1.0) + 0.4 * 0.8
        assert record.overall_quality == pytest.approx(expected)
        assert record.snr_estimate_db == pytest.approx(snr)
        assert set(record.component_breakdown) == {"detection", "snr", "processing"}

    def test_default_record(self, assessor):
        record = assessor.default_record(0.9)
        assert record.overall_quality == 0.8
        assert record.snr_estimate_db == 15.0
        assert record.detection_confidence == 0.9
        assert record.is_reliable

    def test_default_record_keeps_weak_detection_unreliable(self, assessor):
        record = assessor.default_record(0.3)
        assert record.detection_confidence == 0.3
        assert record.component_breakdown["detection"] == 0.3
        assert not record.is_reliable
        assert not assessor.default_record().is_reliable

    def test_empty_record(self, assessor):
        record = assessor.empty_record()
        assert record.overall_quality == 0.0
        assert not record.is_reliable


class TestReliability:
    def test_both_thresholds_are_strict(self):
        assert QualityRecord(overall_quality=0.8, detection_confidence=0.9).is_reliable
        assert not QualityRecord(overall_quality=0.7, detection_confidence=0.9).is_reliable
        assert not QualityRecord(overall_quality=0.8, detection_confidence=0.7).is_reliable

    def test_threshold_is_configurable(self):
        record = QualityRecord(overall_quality=0.8, detection_confidence=0.6, reliability_threshold=0.5)
        assert record.is_reliable
