"""Base class for sequential outbreak detectors."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..errors import AlgorithmConfigInvalid
from ..models import Sensitivity

MAX_SCORE = 10.0

UP = "up"
DOWN = "down"


@dataclass(frozen=True)
class DetectorSignal:
    """One detector crossing its control limit at a stream index.

    ``score`` is 1.0 exactly at the limit and grows with the exceedance.
    ``direction`` is "up" for a rise above the expected level and "down"
    for a drop below it.
    """
    algorithm: str
    index: int
    score: float
    statistic: float
    threshold: float
    evidence_start: int
    direction: str = UP

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "index": self.index,
            "score": self.score,
            "statistic": self.statistic,
            "threshold": self.threshold,
            "evidence_start": self.evidence_start,
            "direction": self.direction,
        }


class BaseDetector(ABC):
    """Sequential detector over one time series.

    Detectors hold only parameters; everything that changes with the data
    lives in the state object from ``new_state`` so that one detector can
    serve many streams.
    """

    name: str = ""
    DEFAULTS: dict[Sensitivity, dict[str, Any]] = {}

    def __init__(self, sensitivity: Sensitivity | str = Sensitivity.MEDIUM, **overrides):
        self.sensitivity = Sensitivity.parse(sensitivity)
        params = dict(self.DEFAULTS[self.sensitivity])
        for key, value in overrides.items():
            if key not in params:
                raise AlgorithmConfigInvalid(f"{self.name}: unknown parameter '{key}'")
            params[key] = value
        self.params = params
        self.validate()

    def validate(self) -> None:
        """Check parameter values. Subclasses extend."""
        for key, value in self.params.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise AlgorithmConfigInvalid(f"{self.name}: '{key}' must be numeric, got {value!r}")
            if not math.isfinite(value):
                raise AlgorithmConfigInvalid(f"{self.name}: '{key}' must be finite")

    def _require(self, condition: bool, message: str) -> None:
        if not condition:
            raise AlgorithmConfigInvalid(f"{self.name}: {message}")

    def _require_int(self, key: str, minimum: int) -> None:
        value = self.params[key]
        self._require(
            float(value).is_integer() and value >= minimum,
            f"'{key}' must be an integer >= {minimum}, got {value!r}",
        )
        self.params[key] = int(value)

    def _signal(
        self, index: int, statistic: float, threshold: float, score: float,
        evidence_start: int, direction: str = UP,
    ) -> DetectorSignal:
        if math.isnan(score):
            score = 1.0
        return DetectorSignal(
            algorithm=self.name,
            index=index,
            score=float(min(max(score, 1.0), MAX_SCORE)),
            statistic=float(statistic),
            threshold=float(threshold),
            evidence_start=evidence_start,
            direction=direction,
        )

    @abstractmethod
    def new_state(self) -> Any:
        """Fresh per-stream state."""
        pass

    @abstractmethod
    def update(self, state: Any, value: float, index: int) -> DetectorSignal | None:
        """Consume the value at ``index``; return a signal if the limit is crossed."""
        pass

    def run(self, values: list[float]) -> list[DetectorSignal]:
        """Run over a whole series from a fresh state."""
        state = self.new_state()
        signals = []
        for index, value in enumerate(values):
            signal = self.update(state, float(value), index)
            if signal:
                signals.append(signal)
        return signals
