"""Farrington-style exceedance detector.

Each point is compared with an upper prediction limit built from
reference values taken around the same time in previous seasons. Streams
without enough seasonal history fall back to the most recent points.
"""

import math
from dataclasses import dataclass, field

import numpy as np
from scipy.stats import norm

from ..models import Sensitivity
from .base import BaseDetector, DetectorSignal

_COMMON = {
    "b": 5,
    "w": 2,
    "season_length": 365,
    "fallback_window": 14,
    "min_reference": 5,
    "min_trend_points": 10,
}


@dataclass
class FarringtonState:
    history: list[float] = field(default_factory=list)


class FarringtonDetector(BaseDetector):
    """U = mu + z_{1-alpha} * sqrt(phi * mu + se^2), signal when x_t > U."""

    name = "farrington"
    DEFAULTS = {
        Sensitivity.LOW: {**_COMMON, "alpha": 0.01},
        Sensitivity.MEDIUM: {**_COMMON, "alpha": 0.05},
        Sensitivity.HIGH: {**_COMMON, "alpha": 0.10},
    }

    def validate(self) -> None:
        super().validate()
        self._require(0 < self.params["alpha"] < 0.5, "'alpha' must be in (0, 0.5)")
        for key in ("b", "season_length", "fallback_window"):
            self._require_int(key, 1)
        self._require_int("w", 0)
        self._require_int("min_reference", 2)
        self._require_int("min_trend_points", 3)
        self.z = float(norm.ppf(1 - self.params["alpha"]))

    def new_state(self) -> FarringtonState:
        return FarringtonState()

    def reference_points(self, history: list[float], t: int) -> tuple[np.ndarray, np.ndarray]:
        """Indices and values of the reference set for time t."""
        p = self.params
        indices = []
        for year in range(1, p["b"] + 1):
            center = t - year * p["season_length"]
            for offset in range(-p["w"], p["w"] + 1):
                idx = center + offset
                if 0 <= idx < t:
                    indices.append(idx)

        if len(indices) < p["min_reference"]:
            indices = list(range(max(0, t - p["fallback_window"]), t))

        indices = sorted(set(indices))
        return np.array(indices, dtype=float), np.array([history[i] for i in indices], dtype=float)

    def threshold(self, history: list[float], t: int) -> tuple[float, float] | None:
        """Expected value and upper limit for time t, or None without enough reference."""
        xs, ys = self.reference_points(history, t)
        n = len(ys)
        if n < self.params["min_reference"]:
            return None

        if n >= self.params["min_trend_points"] and np.ptp(xs) > 0:
            slope, intercept = np.polyfit(xs, ys, 1)
            fitted = intercept + slope * xs
            mu = float(intercept + slope * t)
            dof = n - 2
            residual_var = float(np.sum((ys - fitted) ** 2)) / dof
            sxx = float(np.sum((xs - xs.mean()) ** 2))
            se_sq = residual_var * (1.0 / n + (t - xs.mean()) ** 2 / sxx)
            # Extrapolated trends must not push the expectation outside the data
            if mu < 0 or mu > ys.max() * 2:
                fitted = np.full(n, ys.mean())
                mu = float(ys.mean())
                dof = n - 1
                se_sq = float(ys.var(ddof=1)) / n
        else:
            fitted = np.full(n, ys.mean())
            mu = float(ys.mean())
            dof = n - 1
            se_sq = float(ys.var(ddof=1)) / n

        mu = max(mu, 0.0)
        positive = fitted > 0
        if positive.any():
            pearson = float(np.sum((ys[positive] - fitted[positive]) ** 2 / fitted[positive]))
            phi = max(1.0, pearson / max(dof, 1))
        else:
            phi = 1.0

        upper = mu + self.z * math.sqrt(phi * mu + se_sq)
        return mu, upper

    def update(self, state: FarringtonState, value: float, index: int) -> DetectorSignal | None:
        limits = self.threshold(state.history, len(state.history))
        state.history.append(value)
        if limits is None:
            return None

        mu, upper = limits
        if value <= upper:
            return None
        width = upper - mu
        score = (value - mu) / width if width > 0 else math.inf
        return self._signal(index, value, upper, score, index)
