"""Tests for telemetry collection and the command decorator."""
import sqlite3
from contextlib import closing
from pathlib import Path
from types import SimpleNamespace

import pytest

from mountain_bot import telemetry_decorator
from mountain_bot.telemetry import MetricType, TelemetryCollector


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _rows(db_path: Path):
    with closing(sqlite3.connect(db_path)) as conn:
        return conn.execute("SELECT metric_type, name, value FROM metrics ORDER BY id").fetchall()


def test_events_are_buffered_until_flush(tmp_path):
    db_path = tmp_path / "telemetry.db"
    collector = TelemetryCollector(db_path)
    collector.track_provider_failure("overpass", "timed out")
    assert _rows(db_path) == []
    collector.flush()
    assert _rows(db_path) == [(MetricType.PROVIDER_FAILURE.value, "overpass", 1.0)]


def test_buffer_flushes_automatically_when_full(tmp_path):
    db_path = tmp_path / "telemetry.db"
    collector = TelemetryCollector(db_path)
    for _ in range(100):
        collector.track_error("ValueError")
    assert len(_rows(db_path)) == 100


def test_command_stats(tmp_path):
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    collector.track_command("mountain_search", "u1", "g1", success=True, duration_ms=12.0)
    collector.track_command("mountain_search", "u2", "g1", success=False)
    collector.track_command("ping", "u1", "dm")
    stats = collector.get_command_stats()
    assert stats["mountain_search"]["usage_count"] == 2
    assert stats["mountain_search"]["success_rate"] == 0.5
    assert stats["mountain_search"]["unique_users"] == 2
    assert stats["ping"]["usage_count"] == 1


def test_provider_failures_and_cleanup(tmp_path):
    clock = FakeClock()
    collector = TelemetryCollector(tmp_path / "telemetry.db", clock=clock)
    collector.track_provider_failure("mountix", "HTTP 503")
    collector.flush()
    clock.now += 40 * 86400
    collector.track_provider_failure("mountix", "HTTP 503")
    collector.track_provider_failure("overpass", "timed out")
    collector.track_quiz_completion("u1", 9000, 9, 12000, True)
    collector.track_llm_activity("trivia", success=True, duration_ms=800.0)
    assert collector.get_provider_failures(hours=24) == {"mountix": 1, "overpass": 1}
    assert collector.cleanup_old_data(days_to_keep=30) == 1


@pytest.mark.asyncio
async def test_track_command_records_success_and_errors(tmp_path, monkeypatch):
    collector = TelemetryCollector(tmp_path / "telemetry.db")
    monkeypatch.setattr(telemetry_decorator, "get_telemetry", lambda: collector)
    interaction = SimpleNamespace(user=SimpleNamespace(id=42), guild_id=None)

    @telemetry_decorator.track_command
    async def quiz_rank(inter):
        return "ok"

    @telemetry_decorator.track_command
    async def mountain_info(inter):
        raise RuntimeError("boom")

    assert await quiz_rank(interaction) == "ok"
    with pytest.raises(RuntimeError):
        await mountain_info(interaction)

    stats = collector.get_command_stats()
    assert stats["quiz_rank"]["success_rate"] == 1.0
    assert stats["mountain_info"]["success_rate"] == 0.0
    assert (MetricType.ERROR_RATE.value, "RuntimeError", 1.0) in _rows(tmp_path / "telemetry.db")
