import numpy as np
import pytest

from pitchroute.pipeline.config import ClassifierConfig
from pitchroute.pipeline.models import AudioLabel, AudioTypeVote
from pitchroute.pipeline.voting import MultiPassVoter, segment_bounds


class ScriptedClassifier:
    """Returns a fixed sequence of votes and remembers what it was given."""

    def __init__(self, votes):
        self.config = ClassifierConfig()
        self._votes = list(votes)
        self.calls = []

    def classify(self, segment):
        self.calls.append(len(segment))
        label, conf = self._votes[(len(self.calls) - 1) % len(self._votes)]
        return AudioTypeVote(label, conf, {"call": float(len(self.calls))})


def make_voter(votes, frame_size=10, passes=3, enabled=True):
    clf = ScriptedClassifier(votes)
    return MultiPassVoter(clf, frame_size=frame_size, multi_pass_count=passes, enabled=enabled), clf


BUFFER = np.ones(300, dtype=np.float32)


class TestSegmentBounds:
    def test_overlapping_windows(self):
        assert segment_bounds(300, 3) == [(0, 150), (100, 250), (200, 300)]

    def test_degenerate(self):
        assert segment_bounds(0, 3) == []
        assert segment_bounds(2, 3) == []


class TestMultiPassVoter:
    def test_majority_with_confidence_wins(self):
        voter, _ = make_voter([
            (AudioLabel.VOICE, 0.9),
            (AudioLabel.VOICE, 0.8),
            (AudioLabel.STRING, 0.6),
        ])
        result = voter.vote(BUFFER)
        assert result.label is AudioLabel.VOICE
        assert result.confidence == pytest.approx(0.85 * 2 / 3)
        assert result.frame_confidence == pytest.approx((0.9 + 0.8 + 0.6) / 3)
        assert result.passes_used == 3
        # string scored 0.2, below the alternative cutoff
        assert result.alternatives == []

    def test_alternatives_above_cutoff(self):
        voter, _ = make_voter([
            (AudioLabel.VOICE, 0.99),
            (AudioLabel.STRING, 0.95),
            (AudioLabel.STRING, 0.95),
        ])
        result = voter.vote(BUFFER)
        assert result.label is AudioLabel.STRING
        assert result.confidence == pytest.approx(0.95 * 2 / 3)
        assert [a.label for a in result.alternatives] == [AudioLabel.VOICE]
        assert result.alternatives[0].confidence == pytest.approx(0.33)

    def test_tie_goes_to_first_seen(self):
        voter, _ = make_voter([
            (AudioLabel.WIND, 0.6),
            (AudioLabel.VOICE, 0.6),
            (AudioLabel.STRING, 0.6),
        ])
        assert voter.vote(BUFFER).label is AudioLabel.WIND

    def test_features_come_from_a_winning_vote(self):
        voter, _ = make_voter([
            (AudioLabel.STRING, 0.4),
            (AudioLabel.VOICE, 0.9),
            (AudioLabel.VOICE, 0.9),
        ])
        result = voter.vote(BUFFER)
        assert result.label is AudioLabel.VOICE
        assert result.features == {"call": 2.0}

    def test_short_segments_are_discarded(self):
        voter, clf = make_voter([(AudioLabel.VOICE, 0.9)], frame_size=120)
        result = voter.vote(BUFFER)
        assert result.passes_used == 2
        assert clf.calls == [150, 150]

    def test_buffer_too_short_for_any_segment(self):
        voter, clf = make_voter([(AudioLabel.VOICE, 0.9)], frame_size=2048)
        result = voter.vote(BUFFER)
        assert result.label is AudioLabel.UNKNOWN
        assert result.confidence == 0.0
        assert result.passes_used == 0
        assert clf.calls == []

    def test_disabled_classifies_whole_buffer_once(self):
        voter, clf = make_voter([(AudioLabel.KEYBOARD, 0.75)], enabled=False)
        result = voter.vote(BUFFER)
        assert result.label is AudioLabel.KEYBOARD
        assert result.confidence == pytest.approx(0.75)
        assert result.passes_used == 1
        assert clf.calls == [300]
