"""Configuration for the surveillance fusion and outbreak detection core."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Find and load .env file
_env_candidates = [
    Path(__file__).parent.parent / ".env",
    Path(__file__).parent.parent / ".env.template",
]

for env_path in _env_candidates:
    if env_path.exists():
        load_dotenv(env_path)
        break


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Surveillance core configuration."""

    # --- Database ---
    DB_PATH: str = os.getenv(
        "SURVEILLANCE_DB_PATH",
        str(Path.home() / ".surveillance" / "surveillance.db"),
    )

    # --- Data Sources ---
    SOURCES_CONFIG_PATH: str | None = os.getenv("SOURCES_CONFIG_PATH")
    SOURCE_CALL_TIMEOUT: float = float(os.getenv("SOURCE_CALL_TIMEOUT", "30"))  # seconds
    SOURCE_HTTP_TIMEOUT: float = float(os.getenv("SOURCE_HTTP_TIMEOUT", "15"))  # seconds
    MAX_PARALLEL_SOURCES: int = int(os.getenv("MAX_PARALLEL_SOURCES", "8"))
    MIN_SUCCESSFUL_SOURCES: int = int(os.getenv("MIN_SUCCESSFUL_SOURCES", "1"))
    # Above this fraction of open circuits the aggregation is logged as degraded
    DEGRADED_OPEN_FRACTION: float = float(os.getenv("DEGRADED_OPEN_FRACTION", "0.5"))
    DEFAULT_RELIABILITY: float = float(os.getenv("DEFAULT_RELIABILITY", "0.8"))
    RELIABILITY_SMOOTHING: float = float(os.getenv("RELIABILITY_SMOOTHING", "0.1"))
    SOURCE_CACHE_TTL_SECONDS: float = float(os.getenv("SOURCE_CACHE_TTL_SECONDS", "3600"))
    SOURCE_CACHE_MAX_ENTRIES: int = int(os.getenv("SOURCE_CACHE_MAX_ENTRIES", "256"))

    # --- Circuit Breaker ---
    BREAKER_FAILURE_THRESHOLD: int = int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
    BREAKER_WINDOW_SECONDS: float = float(os.getenv("BREAKER_WINDOW_SECONDS", "60"))
    BREAKER_COOL_DOWN_SECONDS: float = float(os.getenv("BREAKER_COOL_DOWN_SECONDS", "60"))
    BREAKER_BACKOFF_MULTIPLIER: float = float(os.getenv("BREAKER_BACKOFF_MULTIPLIER", "2.0"))
    BREAKER_MAX_COOL_DOWN_SECONDS: float = float(
        os.getenv("BREAKER_MAX_COOL_DOWN_SECONDS", "900")
    )

    # --- Retry ---
    RETRY_MAX_RETRIES: int = int(os.getenv("RETRY_MAX_RETRIES", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "30"))
    RETRY_MULTIPLIER: float = float(os.getenv("RETRY_MULTIPLIER", "2.0"))
    RETRY_JITTER: float = float(os.getenv("RETRY_JITTER", "0.25"))

    # --- Fusion ---
    DEFAULT_FUSION_STRATEGY: str = os.getenv("DEFAULT_FUSION_STRATEGY", "ensemble_fusion")
    QUALITY_THRESHOLD: float = float(os.getenv("QUALITY_THRESHOLD", "0.6"))
    FRESHNESS_TAU_HOURS: float = float(os.getenv("FRESHNESS_TAU_HOURS", "24"))
    OUTLIER_Z_THRESHOLD: float = float(os.getenv("OUTLIER_Z_THRESHOLD", "3.0"))
    DEFAULT_RELATIVE_ERROR: float = float(os.getenv("DEFAULT_RELATIVE_ERROR", "0.15"))
    KALMAN_PROCESS_NOISE: float = float(os.getenv("KALMAN_PROCESS_NOISE", "0.01"))  # per hour
    WINDOW_HOURS: int = int(os.getenv("WINDOW_HOURS", "24"))
    MAX_FILL_GAP_HOURS: float = float(os.getenv("MAX_FILL_GAP_HOURS", "72"))
    DEFAULT_CANONICAL_UNIT: str = os.getenv("DEFAULT_CANONICAL_UNIT", "cases")

    # --- Detection ---
    DETECTION_ALGORITHMS: list[str] = _csv(
        os.getenv("DETECTION_ALGORITHMS", "cusum,ewma,farrington")
    )
    DETECTION_SENSITIVITY: str = os.getenv("DETECTION_SENSITIVITY", "medium")
    CONSENSUS_MIN_VOTES: int = int(os.getenv("CONSENSUS_MIN_VOTES", "2"))
    CORROBORATION_WINDOW: int = int(os.getenv("CORROBORATION_WINDOW", "2"))  # points
    SPATIAL_SCAN_SIMULATIONS: int = int(os.getenv("SPATIAL_SCAN_SIMULATIONS", "999"))
    SPATIAL_SCAN_ALPHA: float = float(os.getenv("SPATIAL_SCAN_ALPHA", "0.05"))
    SPATIAL_MAX_CLUSTER_FRACTION: float = float(
        os.getenv("SPATIAL_MAX_CLUSTER_FRACTION", "0.5")
    )
    RANDOM_SEED: int = int(os.getenv("RANDOM_SEED", "42"))

    # --- Monitoring ---
    MONITOR_INTERVAL_SECONDS: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "300"))
    MONITOR_LOOKBACK_DAYS: int = int(os.getenv("MONITOR_LOOKBACK_DAYS", "90"))

    # --- Notifications ---
    ALERT_WEBHOOK_URL: str | None = os.getenv("ALERT_WEBHOOK_URL")
    ALERT_WEBHOOK_SECRET: str | None = os.getenv("ALERT_WEBHOOK_SECRET")
    ALERT_WEBHOOK_TIMEOUT: float = float(os.getenv("ALERT_WEBHOOK_TIMEOUT", "30"))
    ALERT_DELIVERY_MAX_ATTEMPTS: int = int(os.getenv("ALERT_DELIVERY_MAX_ATTEMPTS", "3"))
    ALERT_DELIVERY_BASE_DELAY: float = float(os.getenv("ALERT_DELIVERY_BASE_DELAY", "2.0"))
    ALERT_QUEUE_SIZE: int = int(os.getenv("ALERT_QUEUE_SIZE", "1000"))
    # Handled alert ids are forgotten once their evidence is this much older than the newest
    ALERT_SEEN_RETENTION_DAYS: int = int(os.getenv("ALERT_SEEN_RETENTION_DAYS", "30"))

    @classmethod
    def is_webhook_configured(cls) -> bool:
        """Check if an alert webhook is configured."""
        return bool(cls.ALERT_WEBHOOK_URL)

    @classmethod
    def is_sources_configured(cls) -> bool:
        """Check if a sources configuration file is available."""
        return bool(cls.SOURCES_CONFIG_PATH) and Path(cls.SOURCES_CONFIG_PATH).exists()


# Module-level convenience instance
config = Config()
