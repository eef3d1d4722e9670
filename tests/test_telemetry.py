"""Tests for telemetry collection and reporting."""
import json
import sys
import time

import pytest

from crisis_drill.telemetry import MetricEvent, MetricType, TelemetryCollector, get_telemetry, track_duration
from crisis_drill.tools import telemetry_report


@pytest.fixture
def collector(tmp_path):
    return TelemetryCollector(tmp_path / "metrics.db")


def test_metric_event_creation():
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.SCHEDULER_TICK,
        name="inject_scheduler",
        value=12.0,
        tags={"healthy": "true"},
    )
    assert event.metric_type == MetricType.SCHEDULER_TICK
    assert event.metadata == {}


def test_buffer_flushes_at_capacity(collector):
    for i in range(100):
        collector.track_error("oracle_timeout", source="reaction_scheduler", session_id=f"s{i % 3}")

    assert collector._metrics_buffer == []
    assert collector.get_error_summary() == {"oracle_timeout": 100}


def test_tick_summary_marks_unhealthy_ticks(collector):
    collector.track_tick(scheduler="inject_scheduler", duration_ms=10, sessions=2, failures=0, published=1)
    collector.track_tick(scheduler="inject_scheduler", duration_ms=30, sessions=2, failures=1, published=0)
    collector.flush()

    summary = collector.get_tick_summary()["inject_scheduler"]
    assert summary["ticks"] == 2
    assert summary["unhealthy_ticks"] == 1
    assert summary["avg_duration_ms"] == 20
    assert summary["last_tick"] is not None


def test_publication_summary_groups_by_session(collector):
    collector.track_publication(session_id="s1", inject_id="a", origin="scripted", scope="universal", source="x")
    collector.track_publication(session_id="s1", inject_id="b", origin="generated", scope="universal", source="x")
    collector.track_cancellation(session_id="s1", inject_id="c", reason="defused")
    collector.track_publication(session_id="s2", inject_id="a", origin="scripted", scope="universal", source="x")
    collector.flush()

    assert collector.get_publication_summary() == {
        "s1": {"published": 2, "cancelled": 1},
        "s2": {"published": 1, "cancelled": 0},
    }


def test_system_events_are_newest_first(collector):
    collector.track_system_event("scheduler_started", source="inject_scheduler")
    collector.track_system_event("scheduler_stopped", source="inject_scheduler", reason="shutdown")
    collector.flush()

    events = collector.get_system_events()
    assert {e["event"] for e in events} == {"scheduler_started", "scheduler_stopped"}
    stopped = next(e for e in events if e["event"] == "scheduler_stopped")
    assert stopped["reason"] == "shutdown"


def test_track_duration_records_performance_and_errors():
    with track_duration("escalation_refresh", {"session_id": "s1"}):
        pass
    with pytest.raises(ValueError):
        with track_duration("impact_refresh"):
            raise ValueError("bad scores")

    telemetry = get_telemetry()
    telemetry.flush()
    performance = telemetry.get_performance_summary()
    assert performance["escalation_refresh"]["sample_count"] == 1
    assert "impact_refresh" in performance
    assert telemetry.get_error_summary() == {"ValueError": 1}


def test_cleanup_old_data(collector):
    collector.record(MetricType.SYSTEM_EVENT, "ancient", 1.0)
    collector._metrics_buffer[0].timestamp = time.time() - 40 * 86400
    collector.record(MetricType.SYSTEM_EVENT, "recent", 1.0)
    collector.flush()

    assert collector.cleanup_old_data(days_to_keep=30) == 1
    assert [e["event"] for e in collector.get_system_events(hours=24 * 60)] == ["recent"]


def test_report_tool_prints_json(tmp_path, monkeypatch, capsys):
    path = tmp_path / "report.db"
    collector = TelemetryCollector(path)
    collector.track_llm_activity("classify_decision", True, 120.0)
    collector.track_llm_activity("classify_decision", False, 900.0, error="timeout")
    collector.flush()

    monkeypatch.setattr(sys, "argv", ["telemetry_report", "--db", str(path), "--json"])
    telemetry_report.main()
    report = json.loads(capsys.readouterr().out)

    activity = report["llm_activity"]["classify_decision"]
    assert activity["total_calls"] == 2
    assert activity["success_rate"] == 0.5

    monkeypatch.setattr(sys, "argv", ["telemetry_report", "--db", str(path)])
    telemetry_report.main()
    assert "classify_decision: 1/2 ok" in capsys.readouterr().out
