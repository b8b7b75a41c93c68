"""Standardized two-sided CUSUM."""

from collections import deque
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..models import Sensitivity
from .base import DOWN, UP, BaseDetector, DetectorSignal


@dataclass
class CusumState:
    baseline: deque
    s_up: float = 0.0
    s_down: float = 0.0
    up_start: Optional[int] = None  # index where the current upward excursion began
    down_start: Optional[int] = None
    held: list[tuple[int, float]] = field(default_factory=list)


class CusumDetector(BaseDetector):
    """Upper and lower CUSUM on standardized values.

        S+_t = max(0, S+_{t-1} + z_t - k)
        S-_t = max(0, S-_{t-1} - z_t - k)

    with z_t = (x_t - mu) / sigma; an arm signals when it exceeds h and is
    reset. mu and sigma come from a rolling baseline of in-control points.
    Points of an open excursion are held back and join the baseline once no
    arm's excursion covers them; an excursion that ends in a signal never does.
    """

    name = "cusum"
    DEFAULTS = {
        Sensitivity.LOW: {"k": 0.5, "h": 6.0, "baseline_window": 28, "min_baseline": 8},
        Sensitivity.MEDIUM: {"k": 0.5, "h": 5.0, "baseline_window": 28, "min_baseline": 8},
        Sensitivity.HIGH: {"k": 0.5, "h": 4.0, "baseline_window": 28, "min_baseline": 8},
    }

    def validate(self) -> None:
        super().validate()
        self._require(self.params["k"] >= 0, "'k' must be >= 0")
        self._require(self.params["h"] > 0, "'h' must be > 0")
        self._require_int("min_baseline", 2)
        self._require_int("baseline_window", self.params["min_baseline"])

    def new_state(self) -> CusumState:
        return CusumState(baseline=deque(maxlen=self.params["baseline_window"]))

    def update(self, state: CusumState, value: float, index: int) -> DetectorSignal | None:
        if len(state.baseline) < self.params["min_baseline"]:
            state.baseline.append(value)
            return None

        baseline = np.array(state.baseline)
        mu = float(baseline.mean())
        sigma = max(float(baseline.std(ddof=1)), 0.05 * abs(mu), 1e-6)

        k, h = self.params["k"], self.params["h"]
        z = (value - mu) / sigma
        s_up = max(0.0, state.s_up + z - k)
        s_down = max(0.0, state.s_down - z - k)

        if s_up == 0.0:
            state.up_start = None
        elif state.up_start is None:
            state.up_start = index
        if s_down == 0.0:
            state.down_start = None
        elif state.down_start is None:
            state.down_start = index
        state.s_up, state.s_down = s_up, s_down
        state.held.append((index, value))

        signal = None
        if s_up > h:
            signal = self._signal(index, s_up, h, s_up / h, state.up_start, UP)
            self._discard(state, state.up_start)
            state.s_up, state.up_start = 0.0, None
        elif s_down > h:
            signal = self._signal(index, s_down, h, s_down / h, state.down_start, DOWN)
            self._discard(state, state.down_start)
            state.s_down, state.down_start = 0.0, None

        self._release(state)
        return signal

    @staticmethod
    def _discard(state: CusumState, start: int) -> None:
        state.held = [(i, v) for i, v in state.held if i < start]

    def _release(self, state: CusumState) -> None:
        """Move held points no open excursion covers into the baseline."""
        starts = [s for s in (state.up_start, state.down_start) if s is not None]
        cutoff = min(starts) if starts else None
        kept = []
        for i, v in state.held:
            if cutoff is None or i < cutoff:
                state.baseline.append(v)
            else:
                kept.append((i, v))
        # A long excursion that never signals stops holding its oldest points
        overflow = len(kept) - self.params["baseline_window"]
        if overflow > 0:
            state.baseline.extend(v for _, v in kept[:overflow])
            kept = kept[overflow:]
        state.held = kept
