"""Telemetry tracking for the exercise engine."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_TELEMETRY_DB_ENV = "CRISIS_DRILL_TELEMETRY_DB"


class MetricType(Enum):
    """Types of metrics tracked."""
    SCHEDULER_TICK = "scheduler_tick"
    SESSION_CYCLE = "session_cycle"
    LLM_ACTIVITY = "llm_activity"
    INJECT_PUBLISHED = "inject_published"
    INJECT_CANCELLED = "inject_cancelled"
    DISPATCH = "dispatch"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry for scheduler ticks and oracle traffic."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        self.db_path = db_path or Path(os.getenv(_TELEMETRY_DB_ENV, "telemetry.db"))
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # Flush to DB every 60 seconds
        self._last_flush = time.time()

    def _init_database(self):
        """Initialize telemetry database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_timestamp
                ON metrics(timestamp DESC)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_error(
        self,
        error_type: str,
        source: Optional[str] = None,
        session_id: Optional[str] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if source:
            tags["source"] = source
        if session_id:
            tags["session_id"] = session_id

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_llm_activity(
        self,
        capability: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Record latency/outcome information for one oracle call."""

        metadata: Dict[str, Any] = {"duration_ms": duration_ms}
        if error:
            metadata["error"] = error

        self.record(
            MetricType.LLM_ACTIVITY,
            capability,
            duration_ms,
            tags={
                "capability": capability,
                "success": "true" if success else "false",
            },
            metadata=metadata,
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record scheduler start/stop or health events."""

        tags = {}
        if source:
            tags["source"] = source

        metadata = {}
        if reason:
            metadata["reason"] = reason

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata=metadata,
        )

    def track_publication(
        self,
        *,
        session_id: str,
        inject_id: str,
        origin: str,
        scope: str,
        source: str,
    ) -> None:
        """Record one committed publication."""

        self.record(
            MetricType.INJECT_PUBLISHED,
            source,
            1.0,
            tags={
                "session_id": session_id,
                "origin": origin,
                "scope": scope,
            },
            metadata={"inject_id": inject_id},
        )

    def track_cancellation(
        self,
        *,
        session_id: str,
        inject_id: str,
        reason: Optional[str] = None,
    ) -> None:
        self.record(
            MetricType.INJECT_CANCELLED,
            "time_scheduler",
            1.0,
            tags={"session_id": session_id},
            metadata={"inject_id": inject_id, "reason": reason},
        )

    def track_dispatch(
        self,
        *,
        session_id: str,
        decision_id: str,
        matched: int,
        published: int,
        generated: int,
    ) -> None:
        """Record the outcome of a decision-trigger dispatch."""

        self.record(
            MetricType.DISPATCH,
            "decision_dispatch",
            float(published + generated),
            tags={"session_id": session_id},
            metadata={
                "decision_id": decision_id,
                "matched": matched,
                "published": published,
                "generated": generated,
            },
        )

    def track_tick(
        self,
        *,
        scheduler: str,
        duration_ms: float,
        sessions: int,
        failures: int,
        published: int,
        cancelled: int = 0,
    ) -> None:
        """Record one scheduler tick summary."""

        self.record(
            MetricType.SCHEDULER_TICK,
            scheduler,
            duration_ms,
            tags={"healthy": "true" if failures == 0 else "false"},
            metadata={
                "sessions": sessions,
                "failures": failures,
                "published": published,
                "cancelled": cancelled,
            },
        )

    def track_session_cycle(
        self,
        *,
        scheduler: str,
        session_id: str,
        ok: bool,
        reason: Optional[str] = None,
    ) -> None:
        metadata: Dict[str, Any] = {}
        if reason:
            metadata["reason"] = reason
        self.record(
            MetricType.SESSION_CYCLE,
            scheduler,
            1.0 if ok else 0.0,
            tags={"session_id": session_id, "ok": "true" if ok else "false"},
            metadata=metadata,
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        # Auto-flush if buffer is getting large or enough time has passed
        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata)
                    ))
                conn.commit()

            logger.info(f"Flushed {len(self._metrics_buffer)} metrics to database")
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error(f"Failed to flush metrics: {e}")

    def get_error_summary(
        self,
        hours: int = 24
    ) -> Dict[str, int]:
        """Get error counts for the last N hours."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT name, COUNT(*) as error_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
            ORDER BY error_count DESC
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.ERROR_RATE.value,
                start_time
            ])
            return {row[0]: row[1] for row in cursor.fetchall()}

    def get_performance_summary(
        self,
        operation: Optional[str] = None,
        hours: int = 1
    ) -> Dict[str, Dict[str, float]]:
        """Get performance statistics for operations."""
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                AVG(value) as avg_duration,
                MIN(value) as min_duration,
                MAX(value) as max_duration,
                COUNT(*) as sample_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
        """
        params = [MetricType.PERFORMANCE.value, start_time]

        if operation:
            query += " AND name = ?"
            params.append(operation)

        query += " GROUP BY name"

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, params)
            results = {}
            for row in cursor.fetchall():
                results[row[0]] = {
                    "avg_duration_ms": row[1],
                    "min_duration_ms": row[2],
                    "max_duration_ms": row[3],
                    "sample_count": row[4]
                }
            return results

    def get_llm_activity_summary(
        self,
        hours: int = 24
    ) -> Dict[str, Dict[str, Any]]:
        """Summarise oracle activity per capability over the given window."""

        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'true' THEN 1 ELSE 0 END) as success_count,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'false' THEN 1 ELSE 0 END) as failure_count,
                COUNT(*) as total_calls,
                AVG(value) as avg_duration,
                MAX(value) as max_duration
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.LLM_ACTIVITY.value,
                start_time,
            ])
            summary: Dict[str, Dict[str, Any]] = {}
            for row in cursor.fetchall():
                successes = row[1] or 0
                failures = row[2] or 0
                total = row[3] or 0
                summary[row[0]] = {
                    "total_calls": total,
                    "successes": successes,
                    "failures": failures,
                    "success_rate": successes / total if total else 0.0,
                    "avg_duration_ms": row[4] or 0.0,
                    "max_duration_ms": row[5] or 0.0,
                }

            return summary

    def get_publication_summary(
        self,
        hours: int = 24
    ) -> Dict[str, Dict[str, int]]:
        """Count publications and cancellations per session."""

        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                json_extract(tags, '$.session_id') as session_id,
                SUM(CASE WHEN metric_type = ? THEN 1 ELSE 0 END) as published,
                SUM(CASE WHEN metric_type = ? THEN 1 ELSE 0 END) as cancelled
            FROM metrics
            WHERE metric_type IN (?, ?) AND timestamp >= ?
            GROUP BY session_id
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.INJECT_PUBLISHED.value,
                MetricType.INJECT_CANCELLED.value,
                MetricType.INJECT_PUBLISHED.value,
                MetricType.INJECT_CANCELLED.value,
                start_time,
            ])
            return {
                str(row[0]): {"published": row[1] or 0, "cancelled": row[2] or 0}
                for row in cursor.fetchall()
            }

    def get_tick_summary(
        self,
        hours: int = 24
    ) -> Dict[str, Dict[str, Any]]:
        """Tick counts, failures and latency per scheduler."""

        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                COUNT(*) as ticks,
                SUM(CASE WHEN json_extract(tags, '$.healthy') = 'false' THEN 1 ELSE 0 END) as unhealthy,
                AVG(value) as avg_duration,
                MAX(value) as max_duration,
                MAX(timestamp) as last_tick
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.SCHEDULER_TICK.value,
                start_time,
            ])
            summary: Dict[str, Dict[str, Any]] = {}
            for row in cursor.fetchall():
                summary[row[0]] = {
                    "ticks": row[1] or 0,
                    "unhealthy_ticks": row[2] or 0,
                    "avg_duration_ms": row[3] or 0.0,
                    "max_duration_ms": row[4] or 0.0,
                    "last_tick": datetime.fromtimestamp(row[5]).isoformat() if row[5] else None,
                }
            return summary

    def get_system_events(
        self,
        hours: int = 24,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Return recent system events such as scheduler start/stop."""

        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                timestamp,
                json_extract(tags, '$.source') as source,
                json_extract(metadata, '$.reason') as reason
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            LIMIT ?
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.SYSTEM_EVENT.value,
                start_time,
                limit,
            ])
            return [
                {
                    "event": row[0],
                    "timestamp": datetime.fromtimestamp(row[1]).isoformat(),
                    "source": row[2],
                    "reason": row[3],
                }
                for row in cursor.fetchall()
            ]

    def generate_report(self, hours: int = 24) -> Dict[str, Any]:
        """Bundle the summaries into one report."""
        self.flush()
        return {
            "generated_at": datetime.now().isoformat(),
            "window_hours": hours,
            "ticks": self.get_tick_summary(hours),
            "llm_activity": self.get_llm_activity_summary(hours),
            "publications": self.get_publication_summary(hours),
            "errors": self.get_error_summary(hours),
            "system_events": self.get_system_events(hours),
        }

    def cleanup_old_data(self, days_to_keep: int = 30):
        """Clean up old telemetry data."""
        cutoff_time = time.time() - (days_to_keep * 86400)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM metrics WHERE timestamp < ?",
                (cutoff_time,)
            )
            deleted = cursor.rowcount
            conn.commit()

        logger.info(f"Cleaned up {deleted} old metric events")
        return deleted


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


# Context manager for timing operations
class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        telemetry = get_telemetry()
        telemetry.track_performance(self.operation, duration_ms, self.tags)

        # Track error if exception occurred
        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                source=self.operation,
                error_details=str(exc_val)
            )


__all__ = ["MetricEvent", "MetricType", "TelemetryCollector", "get_telemetry", "track_duration"]
