"""Isolation-forest anomaly detector over recent stream values."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from sklearn.ensemble import IsolationForest

from ..config import config
from ..models import Sensitivity
from .base import DOWN, UP, BaseDetector, DetectorSignal

_COMMON = {"train_window": 30, "min_train": 10, "refit_every": 5, "n_estimators": 100}


@dataclass
class AnomalyState:
    history: list[float] = field(default_factory=list)
    model: Optional[IsolationForest] = None
    fitted_at: int = -1  # history length at the last fit
    median: float = 0.0
    spread: float = 1.0


def _features(values: np.ndarray) -> np.ndarray:
    """[value, first difference] per point."""
    diffs = np.diff(values, prepend=values[0])
    return np.column_stack([values, diffs])


class MLAnomalyDetector(BaseDetector):
    """Flags points the forest isolates as anomalous, directed by the side of the training median."""

    name = "ml_anomaly"
    DEFAULTS = {
        Sensitivity.LOW: {**_COMMON, "contamination": 0.02},
        Sensitivity.MEDIUM: {**_COMMON, "contamination": 0.05},
        Sensitivity.HIGH: {**_COMMON, "contamination": 0.10},
    }

    def __init__(self, sensitivity=Sensitivity.MEDIUM, random_state: int | None = None, **overrides):
        super().__init__(sensitivity, **overrides)
        self.random_state = config.RANDOM_SEED if random_state is None else random_state

    def validate(self) -> None:
        super().validate()
        self._require(0 < self.params["contamination"] <= 0.5, "'contamination' must be in (0, 0.5]")
        self._require_int("min_train", 5)
        self._require_int("train_window", self.params["min_train"])
        self._require_int("refit_every", 1)
        self._require_int("n_estimators", 1)

    def new_state(self) -> AnomalyState:
        return AnomalyState()

    def _fit(self, state: AnomalyState) -> None:
        train = np.array(state.history[-self.params["train_window"]:], dtype=float)
        model = IsolationForest(
            n_estimators=self.params["n_estimators"],
            contamination=self.params["contamination"],
            random_state=self.random_state,
        )
        model.fit(_features(train))
        state.model = model
        state.fitted_at = len(state.history)
        state.median = float(np.median(train))
        state.spread = max(float(train.std()), 0.05 * abs(state.median), 1e-6)

    def update(self, state: AnomalyState, value: float, index: int) -> DetectorSignal | None:
        if len(state.history) < self.params["min_train"]:
            state.history.append(value)
            return None

        if state.model is None or len(state.history) - state.fitted_at >= self.params["refit_every"]:
            self._fit(state)

        previous = state.history[-1]
        state.history.append(value)

        point = np.array([[value, value - previous]])
        if state.model.predict(point)[0] != -1 or value == state.median:
            return None

        decision = float(state.model.decision_function(point)[0])
        z = abs(value - state.median) / state.spread
        direction = UP if value > state.median else DOWN
        return self._signal(index, decision, 0.0, z / 3.0, index, direction)
