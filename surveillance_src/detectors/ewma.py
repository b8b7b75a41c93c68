"""Exponentially weighted moving average control chart."""

import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..models import Sensitivity
from .base import DOWN, UP, BaseDetector, DetectorSignal


@dataclass
class EWMAState:
    warmup: list[float] = field(default_factory=list)
    z: Optional[float] = None
    variance: float = 0.0


class EWMADetector(BaseDetector):
    """Signals when |x_t - z_{t-1}| exceeds L times the EWMA residual sigma."""

    name = "ewma"
    DEFAULTS = {
        Sensitivity.LOW: {"lambda_": 0.4, "L": 3.5, "warmup": 5},
        Sensitivity.MEDIUM: {"lambda_": 0.4, "L": 2.962, "warmup": 5},
        Sensitivity.HIGH: {"lambda_": 0.4, "L": 2.5, "warmup": 5},
    }

    def validate(self) -> None:
        super().validate()
        self._require(0 < self.params["lambda_"] <= 1, "'lambda_' must be in (0, 1]")
        self._require(self.params["L"] > 0, "'L' must be > 0")
        self._require_int("warmup", 2)

    def new_state(self) -> EWMAState:
        return EWMAState()

    def update(self, state: EWMAState, value: float, index: int) -> DetectorSignal | None:
        lam, limit = self.params["lambda_"], self.params["L"]

        if state.z is None:
            state.warmup.append(value)
            if len(state.warmup) >= self.params["warmup"]:
                history = np.array(state.warmup)
                state.z = float(history.mean())
                state.variance = float(history.var(ddof=1))
            return None

        residual = value - state.z
        sigma = max(math.sqrt(state.variance), 0.05 * abs(state.z), 1e-6)
        bound = limit * sigma
        signal = None
        if abs(residual) > bound:
            signal = self._signal(
                index, residual, bound, abs(residual) / bound, index,
                UP if residual > 0 else DOWN,
            )

        state.z = lam * value + (1 - lam) * state.z
        state.variance = (1 - lam) * (state.variance + lam * residual ** 2)
        return signal
