# pitchroute/pipeline/adaptation.py
"""Bounded processing history and the per-label parameter learner."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

import numpy as np

from .config import AdaptationConfig
from .models import (
    AdaptedParameterSet,
    AudioLabel,
    HistoryEntry,
    ProcessingStatistics,
)

logger = logging.getLogger(__name__)


class HistoryRingBuffer:
    """
    Fixed-capacity FIFO over a preallocated slot list.

    ``append`` is O(1) and returns the entry it evicted (or None); iteration
    runs oldest to newest.
    """

    def __init__(self, capacity: int = 100):
        if int(capacity) < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity!r}")
        self._capacity = int(capacity)
        self._slots: List[Optional[HistoryEntry]] = [None] * self._capacity
        self._head = 0  # next write position
        self._size = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[HistoryEntry]:
        start = (self._head - self._size) % self._capacity
        for i in range(self._size):
            entry = self._slots[(start + i) % self._capacity]
            if entry is not None:
                yield entry

    def append(self, entry: HistoryEntry) -> Optional[HistoryEntry]:
        evicted = self._slots[self._head] if self._size == self._capacity else None
        self._slots[self._head] = entry
        self._head = (self._head + 1) % self._capacity
        self._size = min(self._size + 1, self._capacity)
        return evicted

    def snapshot(self) -> List[HistoryEntry]:
        return list(self)

    def clear(self) -> None:
        self._slots = [None] * self._capacity
        self._head = 0
        self._size = 0


class AdaptationLearner:
    """
    Records (label, confidence, quality) per processed buffer and keeps one
    AdaptedParameterSet per label.

    A label's set is recomputed once it has ``min_entries`` among its most
    recent ``recent_window`` entries, from those with quality above
    ``quality_threshold``. Without any such entry the previous set stays.
    """

    def __init__(
        self,
        config: Optional[AdaptationConfig] = None,
        history_length: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or AdaptationConfig()
        self.history = HistoryRingBuffer(history_length)
        self.clock = clock
        self._parameters: Dict[AudioLabel, AdaptedParameterSet] = {}
        self._init_parameters()

    def _init_parameters(self) -> None:
        self._parameters = {
            label: AdaptedParameterSet(label=label)
            for label in AudioLabel
            if label is not AudioLabel.UNKNOWN
        }

    def record(self, label: AudioLabel, confidence: float, quality: float) -> HistoryEntry:
        entry = HistoryEntry(self.clock(), AudioLabel(label), confidence, quality)
        evicted = self.history.append(entry)
        if evicted is not None:
            logger.debug("history full, evicted %s entry from %.3f", evicted.label.value, evicted.timestamp)
        self._learn(entry.label)
        return entry

    def _learn(self, label: AudioLabel) -> None:
        cfg = self.config
        relevant = [e for e in self.history if e.label == label][-cfg.recent_window:]
        if len(relevant) < cfg.min_entries:
            return
        good = [e for e in relevant if e.quality > cfg.quality_threshold]
        if not good:
            return
        self._parameters[label] = self._derive(label, good)
        logger.debug("adapted parameters for %s from %d entries", label.value, len(good))

    def _derive(self, label: AudioLabel, entries: List[HistoryEntry]) -> AdaptedParameterSet:
        # The learned values are the calibrated defaults; support and mean
        # quality record what backed them.
        return AdaptedParameterSet(
            label=label,
            vocal=dict(self.config.vocal_defaults),
            instrument=dict(self.config.instrument_defaults),
            support=len(entries),
            mean_quality=float(np.mean([e.quality for e in entries])),
        )

    def restore(self, entries: List[HistoryEntry]) -> None:
        """Replay existing entries (oldest first) into this learner's history."""
        for e in entries:
            self.history.append(e)
        for label in dict.fromkeys(e.label for e in self.history):
            self._learn(label)

    def parameters_for(self, label: AudioLabel) -> AdaptedParameterSet:
        label = AudioLabel(label)
        existing = self._parameters.get(label)
        if existing is None:
            return AdaptedParameterSet(label=label)
        return existing

    @property
    def adapted_parameters(self) -> Dict[AudioLabel, AdaptedParameterSet]:
        return dict(self._parameters)

    def statistics(self) -> ProcessingStatistics:
        entries = self.history.snapshot()
        if not entries:
            return ProcessingStatistics()
        distribution: Dict[str, int] = {}
        for e in entries:
            distribution[e.label.value] = distribution.get(e.label.value, 0) + 1
        return ProcessingStatistics(
            total_processed=len(entries),
            type_distribution=distribution,
            average_quality=float(np.mean([e.quality for e in entries])),
            average_confidence=float(np.mean([e.confidence for e in entries])),
        )

    def reset(self) -> None:
        self.history.clear()
        self._init_parameters()
