"""Confidence calibration curve built from predicted-vs-actual outcomes.

Keeps the most recent 500 (predicted confidence, actual outcome) points.
Once at least 10 are buffered the curve is rebuilt: predictions are
bucketed by decile (floor(p / 0.1) * 0.1) and each bucket maps to the
observed success rate inside it. Applying the curve looks up the nearest
bucket. Before any rebuild the curve is the identity on the decile grid.

Calibration quality is 1 - Brier score over the buffered history.
"""

from __future__ import annotations

import math
import threading
from collections import deque

import numpy as np
import structlog

from src.app.orchestration.config import ConfidenceConfig

logger = structlog.get_logger(__name__)

DECILES = tuple(round(x, 1) for x in np.linspace(0.0, 1.0, 11))


def bucket_of(prediction: float) -> float:
    clamped = min(max(prediction, 0.0), 1.0)
    return round(math.floor(round(clamped / 0.1, 9)) * 0.1, 1)


class CalibrationCurve:
    """Decile histogram calibration with a bounded history."""

    def __init__(self, config: ConfidenceConfig | None = None) -> None:
        self.config = config or ConfidenceConfig()
        self._lock = threading.RLock()
        self._history: deque[tuple[float, float]] = deque(maxlen=self.config.calibration_history_size)
        self._curve: dict[float, float] = {d: d for d in DECILES}

    def __len__(self) -> int:
        return len(self._history)

    @property
    def curve(self) -> dict[float, float]:
        with self._lock:
            return dict(self._curve)

    def add_point(self, predicted: float, actual: bool) -> None:
        with self._lock:
            self._history.append((min(max(predicted, 0.0), 1.0), 1.0 if actual else 0.0))
            if len(self._history) >= self.config.calibration_min_points:
                self.rebuild()

    def rebuild(self) -> None:
        """Recompute bucket -> observed rate from the current history.

        Idempotent: the curve is a pure function of the buffered points.
        """
        with self._lock:
            if len(self._history) < self.config.calibration_min_points:
                return
            predicted = np.array([p for p, _ in self._history])
            actual = np.array([a for _, a in self._history])
            buckets = np.array([bucket_of(p) for p in predicted])
            curve: dict[float, float] = {}
            for bucket in sorted(set(buckets.tolist())):
                mask = buckets == bucket
                curve[float(bucket)] = float(np.mean(actual[mask]))
            self._curve = curve
        logger.debug("calibration.curve_rebuilt", points=len(self._history), buckets=len(curve))

    def apply(self, raw: float) -> float:
        with self._lock:
            if not self._curve:
                return raw
            nearest = min(self._curve, key=lambda key: (abs(key - raw), key))
            return self._curve[nearest]

    def brier_score(self, window: int | None = None) -> float | None:
        with self._lock:
            points = list(self._history)
        if window is not None:
            points = points[-window:]
        if not points:
            return None
        predicted = np.array([p for p, _ in points])
        actual = np.array([a for _, a in points])
        return float(np.mean((predicted - actual) ** 2))

    def quality(self) -> float:
        """1 - Brier over the history; 0.5 until enough points exist."""
        if len(self) < self.config.calibration_min_points:
            return 0.5
        brier = self.brier_score()
        return max(0.0, 1.0 - (brier if brier is not None else 0.5))

