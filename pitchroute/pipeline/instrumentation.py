"""JSONL event trail and per-stage timing for routed analysis runs.

Every run gets its own directory holding ``logs.jsonl`` (one event per line)
and ``timing.json`` (stage totals written by :meth:`PipelineLogger.finalize`).
Writes never raise: failures go to the module logger and analysis carries on.
"""
from __future__ import annotations

import contextlib
import importlib.util
import json
import logging
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

import numpy as np

logger = logging.getLogger(__name__)

TRACKED_MODULES = ("numpy", "scipy", "librosa", "soundfile")


def _to_json(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def module_availability(names: Iterable[str]) -> Dict[str, bool]:
    """Map each module name to whether it can be imported here."""
    found = {}
    for name in names:
        try:
            found[name] = importlib.util.find_spec(name) is not None
        except (ImportError, ValueError):
            found[name] = False
    return found


class PipelineLogger:
    """Append-only event trail with stage timing totals for one analysis run."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.run_name = run_name or "analysis_%d" % int(time.time())
        run_dir = Path(base_dir) / self.run_name
        run_dir.mkdir(parents=True, exist_ok=True)
        self.run_dir = str(run_dir)
        self.logs_path = str(run_dir / "logs.jsonl")
        self.timing_path = str(run_dir / "timing.json")
        self._totals: Dict[str, float] = {}
        self._calls: Dict[str, int] = {}
        self._opened_at = time.perf_counter()
        self.log_event("pipeline", "start", {
            "run_dir": self.run_dir,
            "dependencies": module_availability(TRACKED_MODULES),
        })

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        record = dict(stage=stage, event=event, timestamp=time.time(), **(payload or {}))
        try:
            line = json.dumps(record, default=_to_json)
            with open(self.logs_path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("dropped %s.%s event: %s", stage, event, exc)

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        seconds = float(duration_s)
        self._totals[stage] = self._totals.get(stage, 0.0) + seconds
        self._calls[stage] = self._calls.get(stage, 0) + 1
        self.log_event(stage, "timing", {"duration_s": seconds, **(metadata or {})})

    @contextlib.contextmanager
    def timed(self, stage: str, metadata: Optional[Dict[str, Any]] = None) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(stage, time.perf_counter() - started, metadata)

    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._totals)

    def finalize(self) -> Dict[str, float]:
        """Write stage totals and call counts to ``timing.json`` and return them."""
        self._totals.setdefault("total", time.perf_counter() - self._opened_at)
        summary = dict(self._totals)
        for stage, count in self._calls.items():
            summary[stage + "_calls"] = float(count)
        try:
            Path(self.timing_path).write_text(json.dumps(summary, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("timing summary not written: %s", exc)
        return summary

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        """Log the effective configuration a stage is running with."""
        snapshot = asdict(config_obj) if is_dataclass(config_obj) else str(config_obj)
        self.log_event(stage, "config", {"config": snapshot, **(extras or {})})
