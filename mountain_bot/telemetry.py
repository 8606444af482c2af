"""Usage and failure metrics for the mountain bot."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    COMMAND_USAGE = "command_usage"
    ERROR_RATE = "error_rate"
    PROVIDER_FAILURE = "provider_failure"
    QUIZ_COMPLETION = "quiz_completion"
    LLM_ACTIVITY = "llm_activity"


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
    """Buffers metric events and writes them to a sqlite database."""

    def __init__(self, db_path: Optional[Path] = None, flush_interval: float = 60.0, clock=time.time):
        self.db_path = db_path or Path("telemetry.db")
        self._clock = clock
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = flush_interval
        self._last_flush = clock()

    def _init_database(self):
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name, timestamp)
            """)
            conn.commit()

    def track_command(
        self,
        command_name: str,
        user_id: str,
        guild_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ):
        """Track Discord command usage."""
        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags={"user_id": user_id, "guild_id": guild_id, "success": str(success)},
            metadata={"duration_ms": duration_ms} if duration_ms else {},
        )

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        user_id: Optional[str] = None,
        error_details: Optional[str] = None,
    ):
        """Track errors and failures."""
        tags = {}
        if command:
            tags["command"] = command
        if user_id:
            tags["user_id"] = user_id
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_provider_failure(self, provider: str, reason: str):
        self.record(MetricType.PROVIDER_FAILURE, provider, 1.0, metadata={"reason": reason})

    def track_quiz_completion(self, user_id: str, score: int, correct: int, total_time_ms: int, stored: bool):
        self.record(
            MetricType.QUIZ_COMPLETION,
            "quiz",
            float(score),
            tags={"user_id": user_id, "stored": str(stored)},
            metadata={"correct": correct, "total_time_ms": total_time_ms},
        )

    def track_llm_activity(
        self,
        purpose: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Record latency/outcome information for an LLM generation attempt."""

        metadata: Dict[str, Any] = {"duration_ms": duration_ms}
        if error:
            metadata["error"] = error
        self.record(
            MetricType.LLM_ACTIVITY,
            purpose,
            duration_ms,
            tags={"success": "true" if success else "false"},
            metadata=metadata,
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Record a metric event."""
        self._metrics_buffer.append(
            MetricEvent(
                timestamp=self._clock(),
                metric_type=metric_type,
                name=name,
                value=value,
                tags=tags or {},
                metadata=metadata or {},
            )
        )
        if len(self._metrics_buffer) >= 100 or self._clock() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return
        try:
            with closing(sqlite3.connect(self.db_path)) as conn:
                conn.executemany(
                    "INSERT INTO metrics (timestamp, metric_type, name, value, tags, metadata) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        (
                            event.timestamp,
                            event.metric_type.value,
                            event.name,
                            event.value,
                            json.dumps(event.tags),
                            json.dumps(event.metadata, ensure_ascii=False),
                        )
                        for event in self._metrics_buffer
                    ],
                )
                conn.commit()
            logger.debug("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = self._clock()
        except sqlite3.Error as e:
            logger.error(f"Failed to flush metrics: {e}")

    def get_command_stats(self, start_time: Optional[float] = None) -> Dict[str, Dict[str, Any]]:
        """Usage count, success rate and unique users per command."""
        self.flush()
        query = """
            SELECT
                name,
                COUNT(*),
                AVG(CASE WHEN json_extract(tags, '$.success') = 'True' THEN 1 ELSE 0 END),
                COUNT(DISTINCT json_extract(tags, '$.user_id'))
            FROM metrics
            WHERE metric_type = ?
        """
        params: List[Any] = [MetricType.COMMAND_USAGE.value]
        if start_time:
            query += " AND timestamp >= ?"
            params.append(start_time)
        query += " GROUP BY name"
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(query, params).fetchall()
        return {
            row[0]: {"usage_count": row[1], "success_rate": row[2], "unique_users": row[3]}
            for row in rows
        }

    def get_provider_failures(self, hours: int = 24) -> Dict[str, int]:
        """Failure counts per provider over the last N hours."""
        self.flush()
        start_time = self._clock() - hours * 3600
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT name, COUNT(*) FROM metrics WHERE metric_type = ? AND timestamp >= ? "
                "GROUP BY name ORDER BY COUNT(*) DESC",
                (MetricType.PROVIDER_FAILURE.value, start_time),
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    def cleanup_old_data(self, days_to_keep: int = 30) -> int:
        """Clean up old telemetry data."""
        cutoff_time = self._clock() - days_to_keep * 86400
        with closing(sqlite3.connect(self.db_path)) as conn:
            deleted = conn.execute("DELETE FROM metrics WHERE timestamp < ?", (cutoff_time,)).rowcount
            conn.commit()
        logger.info(f"Cleaned up {deleted} old metric events")
        return deleted


_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector(Path(os.getenv("MOUNTAIN_BOT_TELEMETRY_DB", "telemetry.db")))
    return _telemetry


__all__ = ["MetricType", "TelemetryCollector", "get_telemetry"]
