"""Outbreak detection algorithms."""

from ..errors import AlgorithmConfigInvalid
from .base import DOWN, UP, BaseDetector, DetectorSignal
from .cusum import CusumDetector
from .ewma import EWMADetector
from .farrington import FarringtonDetector
from .ml_anomaly import MLAnomalyDetector
from .spatial_scan import ScanCluster, SpatialScanStatistic
from .trend import TrendAnnotation, ar_trend

SPATIAL_SCAN = "spatial_scan"

# Per-stream detectors taking part in consensus
DETECTORS: dict[str, type[BaseDetector]] = {
    CusumDetector.name: CusumDetector,
    EWMADetector.name: EWMADetector,
    FarringtonDetector.name: FarringtonDetector,
    MLAnomalyDetector.name: MLAnomalyDetector,
}

ALIASES = {
    "isolation_forest": MLAnomalyDetector.name,
    "anomaly_detection": MLAnomalyDetector.name,
}


def canonical_name(name: str) -> str:
    """Resolve aliases; raise AlgorithmConfigInvalid for unsupported names."""
    key = name.strip().lower()
    key = ALIASES.get(key, key)
    if key not in DETECTORS and key != SPATIAL_SCAN:
        raise AlgorithmConfigInvalid(f"Unsupported detection algorithm: {name}")
    return key


__all__ = [
    "ALIASES",
    "BaseDetector",
    "CusumDetector",
    "DETECTORS",
    "DOWN",
    "DetectorSignal",
    "EWMADetector",
    "FarringtonDetector",
    "MLAnomalyDetector",
    "SPATIAL_SCAN",
    "ScanCluster",
    "SpatialScanStatistic",
    "TrendAnnotation",
    "UP",
    "ar_trend",
    "canonical_name",
]
