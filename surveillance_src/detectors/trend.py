"""Autoregressive trend projection used to annotate alerts."""

from dataclasses import dataclass

import numpy as np

RISING = "rising"
FALLING = "falling"
STABLE = "stable"


@dataclass(frozen=True)
class TrendAnnotation:
    direction: str
    slope: float  # projected change per step
    projection: tuple[float, ...]
    order: int

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "slope": self.slope,
            "projection": list(self.projection),
            "order": self.order,
        }


def ar_trend(
    values: list[float],
    order: int = 3,
    horizon: int = 3,
    window: int = 30,
    tolerance: float = 0.05,
) -> TrendAnnotation | None:
    """Fit AR(order) with intercept by least squares and project ``horizon`` steps.

    Returns None when there are too few points to fit.
    """
    y = np.asarray(values[-window:], dtype=float)
    if len(y) < order + 3:
        return None

    rows = [np.concatenate(([1.0], y[t - order:t][::-1])) for t in range(order, len(y))]
    X = np.array(rows)
    target = y[order:]
    coef, *_ = np.linalg.lstsq(X, target, rcond=None)

    recent = list(y[-order:][::-1])
    projection = []
    for _ in range(horizon):
        nxt = float(coef[0] + np.dot(coef[1:], recent))
        projection.append(nxt)
        recent = [nxt] + recent[:-1]

    last = float(y[-1])
    change = (projection[-1] - last) / max(abs(last), 1e-9)
    if change > tolerance:
        direction = RISING
    elif change < -tolerance:
        direction = FALLING
    else:
        direction = STABLE

    return TrendAnnotation(
        direction=direction,
        slope=(projection[-1] - last) / horizon,
        projection=tuple(projection),
        order=order,
    )
