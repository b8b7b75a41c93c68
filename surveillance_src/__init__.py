"""Disease Surveillance Fusion and Outbreak Detection.

Ingests readings for the same (disease, region) from many unreliable
providers, reconciles them into one fused estimate per time window and
scans the resulting time series for outbreak signals:
- Resilient fan-out to providers (circuit breakers, retries)
- Unit harmonization and multi-strategy data fusion
- Sequential detectors (CUSUM, EWMA, Farrington, isolation forest)
  combined by N-of-M consensus, plus a spatial scan across regions
- Long-running monitoring sessions with alert dispatch
"""

from .config import config, Config
from .connectors import (
    CacheClearable,
    HealthCheckable,
    JSONAPIConnector,
    ProviderConnector,
    SourceQuery,
    load_sources_config,
)
from .db import SurveillanceDatabase
from .detector import OutbreakDetectionEngine, build_algorithms
from .errors import (
    AlgorithmConfigInvalid,
    CircuitOpenSkipped,
    DataQualityInsufficient,
    FusionStrategyUnsupported,
    SessionNotFound,
    SourceAuthFailure,
    SourceError,
    SourceTimeout,
    SourceUnavailable,
    SourceValidationError,
    StreamAlreadyMonitored,
    SurveillanceError,
)
from .fusion import FusionEngine, RunningKalmanFilter, interpolate_region
from .harmonize import UnitHarmonizer, resample_to_window
from .models import (
    AlertSeverity,
    AlertStatus,
    CircuitState,
    DataSource,
    FusedEstimate,
    OutbreakAlert,
    RawObservation,
    Sensitivity,
    SourceContribution,
    SourceStatus,
    StreamRef,
    TimeSeriesStream,
    TimeWindow,
)
from .monitor import AggregationStreamFeed, SessionConfig, SessionManager, StreamFeed
from .notifications import AlertDispatcher, BaseAlerter, LogAlerter, WebhookAlerter
from .orchestrator import AggregationQuery, SourceOrchestrator, SourceRegistry
from .resilience import CircuitBreakerRegistry, ResilienceManager, RetryPolicy
from .service import AggregationReport, SurveillanceService

__all__ = [
    # Config
    "config",
    "Config",
    # Errors
    "SurveillanceError",
    "SourceError",
    "SourceUnavailable",
    "SourceTimeout",
    "SourceAuthFailure",
    "SourceValidationError",
    "CircuitOpenSkipped",
    "DataQualityInsufficient",
    "FusionStrategyUnsupported",
    "AlgorithmConfigInvalid",
    "SessionNotFound",
    "StreamAlreadyMonitored",
    # Models
    "AlertSeverity",
    "AlertStatus",
    "CircuitState",
    "DataSource",
    "FusedEstimate",
    "OutbreakAlert",
    "RawObservation",
    "Sensitivity",
    "SourceContribution",
    "SourceStatus",
    "StreamRef",
    "TimeSeriesStream",
    "TimeWindow",
    # Sources
    "ProviderConnector",
    "HealthCheckable",
    "CacheClearable",
    "JSONAPIConnector",
    "SourceQuery",
    "load_sources_config",
    "SourceRegistry",
    "SourceOrchestrator",
    "AggregationQuery",
    "CircuitBreakerRegistry",
    "ResilienceManager",
    "RetryPolicy",
    # Fusion
    "UnitHarmonizer",
    "resample_to_window",
    "FusionEngine",
    "RunningKalmanFilter",
    "interpolate_region",
    "SurveillanceService",
    "AggregationReport",
    # Detection
    "OutbreakDetectionEngine",
    "build_algorithms",
    # Monitoring
    "SessionManager",
    "SessionConfig",
    "StreamFeed",
    "AggregationStreamFeed",
    # Notifications
    "AlertDispatcher",
    "BaseAlerter",
    "LogAlerter",
    "WebhookAlerter",
    # Database
    "SurveillanceDatabase",
]
