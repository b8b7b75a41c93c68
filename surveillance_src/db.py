"""Database operations for fused estimates, alerts and dead letters."""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from .config import config
from .models import (
    AlertSeverity,
    AlertStatus,
    FusedEstimate,
    OutbreakAlert,
    SourceContribution,
    StreamRef,
    TimeSeriesStream,
    TimeWindow,
    utcnow,
)

logger = logging.getLogger(__name__)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SurveillanceDatabase:
    """SQLite store for the surveillance core."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path or config.DB_PATH).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # --- Fused Estimates ---

    def save_estimate(self, estimate: FusedEstimate) -> None:
        """Save an estimate, superseding any previous one for the same window."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO fused_estimates (
                    id, disease_id, region, window_start, window_end,
                    value, uncertainty, strategy, quality_score, interpolated,
                    contributions, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    estimate.id,
                    estimate.disease_id,
                    estimate.region,
                    estimate.window.start.isoformat(),
                    estimate.window.end.isoformat(),
                    estimate.value,
                    estimate.uncertainty,
                    estimate.strategy,
                    estimate.quality_score,
                    int(estimate.interpolated),
                    json.dumps([c.to_dict() for c in estimate.contributions]),
                    utcnow().isoformat(),
                ),
            )
            conn.commit()

    def get_stream(
        self,
        disease_id: str,
        region: str,
        start: datetime | None = None,
        end: datetime | None = None,
        window_size: timedelta | None = None,
    ) -> TimeSeriesStream:
        """Load the stored time series for one stream, oldest window first."""
        query = "SELECT * FROM fused_estimates WHERE disease_id = ? AND region = ?"
        params: list[Any] = [disease_id, region]
        if start:
            query += " AND window_start >= ?"
            params.append(start.isoformat())
        if end:
            query += " AND window_end <= ?"
            params.append(end.isoformat())
        query += " ORDER BY window_start, window_end"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        stream = TimeSeriesStream(StreamRef(disease_id, region))
        for row in rows:
            estimate = self._row_to_estimate(row)
            if window_size is not None and estimate.window.size != window_size:
                continue
            stream.extend([estimate])
        return stream

    def _row_to_estimate(self, row: sqlite3.Row) -> FusedEstimate:
        contributions = tuple(
            SourceContribution(**c) for c in json.loads(row["contributions"])
        )
        return FusedEstimate(
            disease_id=row["disease_id"],
            region=row["region"],
            window=TimeWindow(
                datetime.fromisoformat(row["window_start"]),
                datetime.fromisoformat(row["window_end"]),
            ),
            value=row["value"],
            uncertainty=row["uncertainty"],
            contributions=contributions,
            strategy=row["strategy"],
            quality_score=row["quality_score"],
            interpolated=bool(row["interpolated"]),
        )

    # --- Alert Operations ---

    def save_alert(self, alert: OutbreakAlert) -> None:
        """Save or update an outbreak alert."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO outbreak_alerts (
                    id, disease_id, region, severity, score, algorithms,
                    evidence_start, evidence_end, evidence_first_index, evidence_last_index,
                    created_at, status, message, cluster_regions, trend,
                    acknowledged_by, acknowledged_at, resolved_by, resolved_at, resolution_notes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.id,
                    alert.disease_id,
                    alert.region,
                    alert.severity.value,
                    alert.score,
                    json.dumps(alert.algorithms, sort_keys=True),
                    alert.evidence_start.isoformat(),
                    alert.evidence_end.isoformat(),
                    alert.evidence_first_index,
                    alert.evidence_last_index,
                    alert.created_at.isoformat(),
                    alert.status.value,
                    alert.message,
                    json.dumps(alert.cluster_regions),
                    json.dumps(alert.trend) if alert.trend is not None else None,
                    alert.acknowledged_by,
                    alert.acknowledged_at.isoformat() if alert.acknowledged_at else None,
                    alert.resolved_by,
                    alert.resolved_at.isoformat() if alert.resolved_at else None,
                    alert.resolution_notes,
                ),
            )
            conn.commit()

    def get_alert(self, alert_id: str) -> Optional[OutbreakAlert]:
        """Get an alert by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM outbreak_alerts WHERE id = ?", (alert_id,)
            ).fetchone()
            return self._row_to_alert(row) if row else None

    def get_alerts(
        self,
        status: AlertStatus | None = None,
        disease_id: str | None = None,
        limit: int = 100,
    ) -> list[OutbreakAlert]:
        """Get alerts, newest first."""
        query = "SELECT * FROM outbreak_alerts WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if disease_id:
            query += " AND disease_id = ?"
            params.append(disease_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_alert(row) for row in rows]

    def get_open_alerts(self) -> list[OutbreakAlert]:
        return self.get_alerts(status=AlertStatus.OPEN)

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> Optional[OutbreakAlert]:
        """Acknowledge an open alert. Raises ValueError on an invalid transition."""
        alert = self.get_alert(alert_id)
        if alert is None:
            return None
        alert.acknowledge(acknowledged_by)
        self.save_alert(alert)
        return alert

    def resolve_alert(
        self, alert_id: str, resolved_by: str, notes: str | None = None
    ) -> Optional[OutbreakAlert]:
        """Resolve an alert. Raises ValueError if it is already resolved."""
        alert = self.get_alert(alert_id)
        if alert is None:
            return None
        alert.resolve(resolved_by, notes)
        self.save_alert(alert)
        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert

    def _row_to_alert(self, row: sqlite3.Row) -> OutbreakAlert:
        return OutbreakAlert(
            id=row["id"],
            disease_id=row["disease_id"],
            region=row["region"],
            severity=AlertSeverity(row["severity"]),
            score=row["score"],
            algorithms=json.loads(row["algorithms"]),
            evidence_start=datetime.fromisoformat(row["evidence_start"]),
            evidence_end=datetime.fromisoformat(row["evidence_end"]),
            evidence_first_index=row["evidence_first_index"],
            evidence_last_index=row["evidence_last_index"],
            created_at=datetime.fromisoformat(row["created_at"]),
            status=AlertStatus(row["status"]),
            message=row["message"] or "",
            cluster_regions=json.loads(row["cluster_regions"] or "[]"),
            trend=json.loads(row["trend"]) if row["trend"] else None,
            acknowledged_by=row["acknowledged_by"],
            acknowledged_at=_parse_dt(row["acknowledged_at"]),
            resolved_by=row["resolved_by"],
            resolved_at=_parse_dt(row["resolved_at"]),
            resolution_notes=row["resolution_notes"],
        )

    # --- Dead Letters ---

    def save_dead_letter(
        self,
        alert_id: str,
        alerter: str,
        attempts: int,
        last_error: str | None,
        payload: dict,
    ) -> None:
        """Record a delivery that exhausted its retries."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO alert_dead_letters (
                    alert_id, alerter, attempts, last_error, payload, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    alert_id,
                    alerter,
                    attempts,
                    last_error,
                    json.dumps(payload, sort_keys=True),
                    utcnow().isoformat(),
                ),
            )
            conn.commit()

    def get_dead_letters(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_dead_letters ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            results = []
            for row in rows:
                item = dict(row)
                item["payload"] = json.loads(item["payload"])
                results.append(item)
            return results

    # --- Statistics ---

    def get_summary_stats(self) -> dict[str, Any]:
        """Get summary statistics for reporting."""
        with self._get_connection() as conn:
            estimates = conn.execute("SELECT COUNT(*) FROM fused_estimates").fetchone()[0]

            streams = conn.execute(
                "SELECT COUNT(*) FROM (SELECT DISTINCT disease_id, region FROM fused_estimates)"
            ).fetchone()[0]

            by_status_rows = conn.execute(
                "SELECT status, COUNT(*) as count FROM outbreak_alerts GROUP BY status"
            ).fetchall()
            by_status = {row["status"]: row["count"] for row in by_status_rows}

            # Open alerts by severity
            by_severity_rows = conn.execute(
                """
                SELECT severity, COUNT(*) as count
                FROM outbreak_alerts
                WHERE status = 'open'
                GROUP BY severity
                """
            ).fetchall()
            by_severity = {row["severity"]: row["count"] for row in by_severity_rows}

            dead_letters = conn.execute(
                "SELECT COUNT(*) FROM alert_dead_letters"
            ).fetchone()[0]

            return {
                "estimates": estimates,
                "streams": streams,
                "open_alerts": by_status.get(AlertStatus.OPEN.value, 0),
                "acknowledged_alerts": by_status.get(AlertStatus.ACKNOWLEDGED.value, 0),
                "resolved_alerts": by_status.get(AlertStatus.RESOLVED.value, 0),
                "open_by_severity": by_severity,
                "dead_letters": dead_letters,
            }
