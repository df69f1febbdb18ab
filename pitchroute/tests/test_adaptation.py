import pytest

from pitchroute.pipeline.adaptation import AdaptationLearner, HistoryRingBuffer
from pitchroute.pipeline.config import AdaptationConfig
from pitchroute.pipeline.models import AudioLabel, HistoryEntry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        self.now += 1.0
        return self.now


def entry(i, label=AudioLabel.VOICE):
    return HistoryEntry(float(i), label, 0.9, 0.9)


class TestHistoryRingBuffer:
    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            HistoryRingBuffer(0)

    def test_evicts_oldest_first(self):
        buf = HistoryRingBuffer(3)
        evicted = [buf.append(entry(i)) for i in range(5)]
        assert evicted[:3] == [None, None, None]
        assert [e.timestamp for e in evicted[3:]] == [0.0, 1.0]
        assert len(buf) == 3
        assert [e.timestamp for e in buf] == [2.0, 3.0, 4.0]

    def test_snapshot_and_clear(self):
        buf = HistoryRingBuffer(4)
        for i in range(2):
            buf.append(entry(i))
        assert [e.timestamp for e in buf.snapshot()] == [0.0, 1.0]
        buf.clear()
        assert len(buf) == 0
        assert buf.snapshot() == []


class TestAdaptationLearner:
    def test_needs_min_entries(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(4):
            learner.record(AudioLabel.VOICE, 0.9, 0.95)
        assert learner.parameters_for(AudioLabel.VOICE).is_empty

    def test_learns_from_high_quality_entries(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(5):
            learner.record(AudioLabel.VOICE, 0.9, 0.95)
        params = learner.parameters_for(AudioLabel.VOICE)
        assert not params.is_empty
        assert params.vocal == AdaptationConfig().vocal_defaults
        assert params.support == 5
        assert params.mean_quality == pytest.approx(0.95)

    def test_low_quality_keeps_previous_set(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(10):
            learner.record(AudioLabel.STRING, 0.9, 0.5)
        assert learner.parameters_for(AudioLabel.STRING).is_empty

        for _ in range(5):
            learner.record(AudioLabel.STRING, 0.9, 0.9)
        learned = learner.parameters_for(AudioLabel.STRING)
        assert learned.support == 5

        for _ in range(30):
            learner.record(AudioLabel.STRING, 0.9, 0.5)
        # all recent entries are poor: the last learned set survives
        assert not learner.parameters_for(AudioLabel.STRING).is_empty

    def test_quality_threshold_is_strict(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(5):
            learner.record(AudioLabel.WIND, 0.9, 0.8)
        assert learner.parameters_for(AudioLabel.WIND).is_empty

    def test_labels_learn_independently(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(5):
            learner.record(AudioLabel.KEYBOARD, 0.9, 0.9)
        assert not learner.parameters_for(AudioLabel.KEYBOARD).is_empty
        assert learner.parameters_for(AudioLabel.VOICE).is_empty
        assert AudioLabel.UNKNOWN not in learner.adapted_parameters

    def test_history_is_bounded(self):
        learner = AdaptationLearner(history_length=10, clock=FakeClock())
        for _ in range(25):
            learner.record(AudioLabel.VOICE, 0.5, 0.5)
        assert len(learner.history) == 10
        # FakeClock stamps 1001..1025; only the last ten survive, oldest first
        assert [e.timestamp for e in learner.history] == [float(t) for t in range(1016, 1026)]

    def test_timestamps_come_from_clock(self):
        learner = AdaptationLearner(clock=FakeClock())
        first = learner.record(AudioLabel.VOICE, 0.5, 0.5)
        second = learner.record(AudioLabel.VOICE, 0.5, 0.5)
        assert second.timestamp == first.timestamp + 1.0

    def test_statistics(self):
        learner = AdaptationLearner(clock=FakeClock())
        learner.record(AudioLabel.VOICE, 0.6, 0.4)
        learner.record(AudioLabel.VOICE, 0.8, 0.6)
        learner.record(AudioLabel.STRING, 1.0, 0.8)
        stats = learner.statistics()
        assert stats.total_processed == 3
        assert stats.type_distribution == {"voice": 2, "string": 1}
        assert stats.average_confidence == pytest.approx(0.8)
        assert stats.average_quality == pytest.approx(0.6)

    def test_empty_statistics(self):
        stats = AdaptationLearner().statistics()
        assert stats.total_processed == 0
        assert stats.type_distribution == {}

    def test_restore_replays_and_relearns(self):
        source = AdaptationLearner(clock=FakeClock())
        for _ in range(6):
            source.record(AudioLabel.VOICE, 0.9, 0.9)

        restored = AdaptationLearner()
        restored.restore(source.history.snapshot())
        assert len(restored.history) == 6
        assert restored.parameters_for(AudioLabel.VOICE).support == 6

    def test_reset(self):
        learner = AdaptationLearner(clock=FakeClock())
        for _ in range(5):
            learner.record(AudioLabel.VOICE, 0.9, 0.9)
        learner.reset()
        assert len(learner.history) == 0
        assert learner.parameters_for(AudioLabel.VOICE).is_empty
