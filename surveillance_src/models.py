"""Data models for surveillance fusion and outbreak detection."""

import asyncio
import hashlib
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .errors import AlgorithmConfigInvalid

WILDCARD = "*"
EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CircuitState(Enum):
    """State of a per-service circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class SourceStatus(Enum):
    """Outcome of one source call during an aggregation."""
    OK = "ok"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit_open"


class Sensitivity(Enum):
    """Detection sensitivity. LOW = wide limits, HIGH = tight limits."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: "Sensitivity | str") -> "Sensitivity":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise AlgorithmConfigInvalid(f"Unknown sensitivity: {value!r}") from None


class AlertStatus(Enum):
    """Lifecycle status of an outbreak alert."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertSeverity(Enum):
    """Severity level of an outbreak alert."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def from_score(cls, score: float) -> "AlertSeverity":
        """Map a combined consensus score in [0, 1] to a severity."""
        if score >= 0.9:
            return cls.CRITICAL
        if score >= 0.75:
            return cls.HIGH
        if score >= 0.6:
            return cls.MEDIUM
        return cls.LOW


@dataclass
class DataSource:
    """An external surveillance data provider."""
    id: str
    name: str
    diseases: frozenset[str] = frozenset({WILDCARD})
    regions: frozenset[str] = frozenset({WILDCARD})

    # Rolling success rate, exponentially smoothed
    reliability: float = 0.8
    # Relative error of the provider's values (Gaussian sigma / value)
    historical_error: float = 0.15

    active: bool = True
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_calls: int = 0
    total_failures: int = 0

    def supported_diseases(self, diseases: list[str]) -> list[str]:
        if WILDCARD in self.diseases:
            return list(diseases)
        return [d for d in diseases if d in self.diseases]

    def supported_regions(self, regions: list[str]) -> list[str]:
        if WILDCARD in self.regions:
            return list(regions)
        return [r for r in regions if r in self.regions]

    def covers(self, diseases: list[str], regions: list[str]) -> bool:
        """True if the capability set intersects the requested diseases and regions."""
        return bool(self.supported_diseases(diseases)) and bool(self.supported_regions(regions))

    def record_success(self, at: datetime, smoothing: float) -> None:
        self.total_calls += 1
        self.reliability = (1 - smoothing) * self.reliability + smoothing
        self.last_success_at = at

    def record_failure(self, at: datetime, smoothing: float) -> None:
        self.total_calls += 1
        self.total_failures += 1
        self.reliability = (1 - smoothing) * self.reliability
        self.last_failure_at = at

    def deactivate(self) -> None:
        self.active = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "diseases": sorted(self.diseases),
            "regions": sorted(self.regions),
            "reliability": self.reliability,
            "historical_error": self.historical_error,
            "active": self.active,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
        }


@dataclass(frozen=True)
class RawObservation:
    """A single reading reported by one source."""
    source_id: str
    disease_id: str
    region: str
    timestamp: datetime
    value: float
    unit: str = "cases"
    confidence: float = 1.0  # intrinsic hint from the source, 0..1
    filled_from: Optional[datetime] = None  # set when forward-filled onto a window

    @property
    def observed_at(self) -> datetime:
        """When the value was actually observed."""
        return self.filled_from or self.timestamp

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "disease_id": self.disease_id,
            "region": self.region,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "unit": self.unit,
            "confidence": self.confidence,
            "filled_from": _iso(self.filled_from),
        }


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open time interval [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end} must be after start {self.start}")

    @property
    def size(self) -> timedelta:
        return self.end - self.start

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def next(self) -> "TimeWindow":
        return TimeWindow(self.end, self.end + self.size)

    @classmethod
    def bucket(cls, ts: datetime, size: timedelta) -> "TimeWindow":
        """The grid-aligned window of the given size containing ts."""
        start = EPOCH + ((ts - EPOCH) // size) * size
        return cls(start, start + size)

    @classmethod
    def span(cls, start: datetime, end: datetime, size: timedelta) -> list["TimeWindow"]:
        """Grid-aligned windows covering [start, end)."""
        windows = []
        window = cls.bucket(start, size)
        while window.start < end:
            windows.append(window)
            window = window.next()
        return windows

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class SourceContribution:
    """How one source contributed to a fused estimate."""
    source_id: str
    value: float
    weight: float
    residual: float
    outlier: bool = False  # window-local, never fed back into reliability

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "value": self.value,
            "weight": self.weight,
            "residual": self.residual,
            "outlier": self.outlier,
        }


@dataclass(frozen=True)
class FusedEstimate:
    """One reconciled value for a (disease, region, window)."""
    disease_id: str
    region: str
    window: TimeWindow
    value: float
    uncertainty: float
    contributions: tuple[SourceContribution, ...]
    strategy: str
    quality_score: float
    interpolated: bool = False

    @property
    def id(self) -> str:
        key = "|".join([
            self.disease_id,
            self.region,
            self.window.start.isoformat(),
            self.window.end.isoformat(),
            self.strategy,
        ])
        return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]

    @property
    def stream_key(self) -> str:
        return StreamRef(self.disease_id, self.region).key

    @property
    def source_ids(self) -> list[str]:
        return [c.source_id for c in self.contributions]

    @property
    def outlier_source_ids(self) -> list[str]:
        return [c.source_id for c in self.contributions if c.outlier]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "disease_id": self.disease_id,
            "region": self.region,
            "window": self.window.to_dict(),
            "value": self.value,
            "uncertainty": self.uncertainty,
            "contributions": [c.to_dict() for c in self.contributions],
            "strategy": self.strategy,
            "quality_score": self.quality_score,
            "interpolated": self.interpolated,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass(frozen=True, order=True)
class StreamRef:
    """Identifies a time series: one disease in one region."""
    disease_id: str
    region: str

    @property
    def key(self) -> str:
        return f"{self.disease_id}:{self.region}"


@dataclass
class TimeSeriesStream:
    """Append-only ordered sequence of fused estimates for one stream."""
    ref: StreamRef
    estimates: list[FusedEstimate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.estimates)

    @property
    def key(self) -> str:
        return self.ref.key

    @property
    def values(self) -> list[float]:
        return [e.value for e in self.estimates]

    @property
    def last_window(self) -> Optional[TimeWindow]:
        return self.estimates[-1].window if self.estimates else None

    def append(self, estimate: FusedEstimate) -> None:
        """Append an estimate. Raises ValueError on key mismatch or stale window."""
        if (estimate.disease_id, estimate.region) != (self.ref.disease_id, self.ref.region):
            raise ValueError(f"Estimate {estimate.stream_key} does not belong to stream {self.key}")
        last = self.last_window
        if last is not None and estimate.window.start < last.end:
            raise ValueError(
                f"Estimate window {estimate.window.start} is not after {last.start} in {self.key}"
            )
        self.estimates.append(estimate)

    def extend(self, estimates: list[FusedEstimate]) -> int:
        """Append estimates newer than the last window; returns how many were added."""
        added = 0
        for estimate in sorted(estimates, key=lambda e: e.window.start):
            last = self.last_window
            if last is not None and estimate.window.start < last.end:
                continue
            self.append(estimate)
            added += 1
        return added


@dataclass
class StreamDetectorState:
    """Mutable detection state for one stream.

    Owned by exactly one evaluation actor; the lock must be held while
    the state or its stream is mutated.
    """
    ref: StreamRef
    algorithm_states: dict[str, Any] = field(default_factory=dict)
    cursor: int = 0  # number of estimates already evaluated
    pending_votes: dict[str, Any] = field(default_factory=dict)
    owner: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


@dataclass
class OutbreakAlert:
    """An outbreak signal raised for one stream."""
    id: str
    disease_id: str
    region: str
    severity: AlertSeverity
    score: float
    algorithms: dict[str, float]  # algorithm -> score

    # Evidence window, drawn from a single stream
    evidence_start: datetime
    evidence_end: datetime
    evidence_first_index: int
    evidence_last_index: int

    created_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    message: str = ""
    cluster_regions: list[str] = field(default_factory=list)
    trend: Optional[dict] = None

    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @property
    def stream_key(self) -> str:
        return StreamRef(self.disease_id, self.region).key

    def acknowledge(self, acknowledged_by: str, at: datetime | None = None) -> None:
        """Mark the alert as acknowledged."""
        if self.status != AlertStatus.OPEN:
            raise ValueError(f"Cannot acknowledge alert {self.id} in status {self.status.value}")
        self.status = AlertStatus.ACKNOWLEDGED
        self.acknowledged_by = acknowledged_by
        self.acknowledged_at = at or utcnow()

    def resolve(self, resolved_by: str, notes: str | None = None, at: datetime | None = None) -> None:
        """Mark the alert as resolved. Resolved is terminal."""
        if self.status == AlertStatus.RESOLVED:
            raise ValueError(f"Alert {self.id} is already resolved")
        self.status = AlertStatus.RESOLVED
        self.resolved_by = resolved_by
        self.resolved_at = at or utcnow()
        self.resolution_notes = notes

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "disease_id": self.disease_id,
            "region": self.region,
            "severity": self.severity.value,
            "score": self.score,
            "algorithms": dict(self.algorithms),
            "evidence_start": self.evidence_start.isoformat(),
            "evidence_end": self.evidence_end.isoformat(),
            "evidence_first_index": self.evidence_first_index,
            "evidence_last_index": self.evidence_last_index,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "message": self.message,
            "cluster_regions": list(self.cluster_regions),
            "trend": self.trend,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "resolution_notes": self.resolution_notes,
        }


@dataclass
class CircuitBreakerRecord:
    """Breaker state for one service. Times are monotonic clock seconds."""
    service_id: str
    cool_down: float
    state: CircuitState = CircuitState.CLOSED
    failure_times: deque = field(default_factory=deque)
    next_retry_at: Optional[float] = None
    opened_at: Optional[float] = None
    trial_in_flight: bool = False

    @property
    def failure_count(self) -> int:
        return len(self.failure_times)

    def to_dict(self) -> dict:
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "cool_down": self.cool_down,
            "next_retry_at": self.next_retry_at,
            "trial_in_flight": self.trial_in_flight,
        }


class SeenAlerts:
    """Ids of alerts already handled, forgotten as their evidence ages.

    Age is measured against the newest evidence seen so far, not the wall
    clock, so replayed history ages the same way as live data.
    """

    def __init__(self, retention: timedelta):
        self.retention = retention
        self._ids: dict[str, datetime] = {}
        self._newest: Optional[datetime] = None

    def __contains__(self, alert_id: str) -> bool:
        return alert_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, alert: OutbreakAlert) -> None:
        self._ids[alert.id] = alert.evidence_end
        if self._newest is None or alert.evidence_end > self._newest:
            self._newest = alert.evidence_end
            horizon = self._newest - self.retention
            for alert_id in [i for i, end in self._ids.items() if end < horizon]:
                del self._ids[alert_id]
