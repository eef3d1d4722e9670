"""Print the engine's telemetry report or prune old metrics."""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict

from ..telemetry import TelemetryCollector


def _print_report(report: Dict[str, Any]) -> None:
    print(f"Telemetry report ({report['window_hours']}h, generated {report['generated_at']})")
    print("\nScheduler ticks:")
    for name, tick in sorted(report["ticks"].items()):
        print(
            f"  {name}: {tick['ticks']} ticks, {tick['unhealthy_ticks']} unhealthy, "
            f"avg {tick['avg_duration_ms']:.1f}ms, last {tick['last_tick']}"
        )
    print("\nOracle calls:")
    for capability, stats in sorted(report["llm_activity"].items()):
        print(
            f"  {capability}: {stats['successes']}/{stats['total_calls']} ok "
            f"({stats['success_rate']:.0%}), avg {stats['avg_duration_ms']:.0f}ms"
        )
    print("\nInjects per session:")
    for session_id, counts in sorted(report["publications"].items()):
        print(f"  {session_id}: {counts['published']} published, {counts['cancelled']} cancelled")
    if report["errors"]:
        print("\nErrors:")
        for error, count in report["errors"].items():
            print(f"  {error}: {count}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Summarise crisis-drill telemetry")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path(os.getenv("CRISIS_DRILL_TELEMETRY_DB", "telemetry.db")),
        help="Telemetry database (default: $CRISIS_DRILL_TELEMETRY_DB or telemetry.db)",
    )
    parser.add_argument("--hours", type=int, default=24, help="Window to summarise")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    parser.add_argument("--cleanup-days", type=int, help="Delete metrics older than this many days and exit")
    args = parser.parse_args()

    collector = TelemetryCollector(args.db)
    if args.cleanup_days is not None:
        deleted = collector.cleanup_old_data(args.cleanup_days)
        print(f"Deleted {deleted} metric events older than {args.cleanup_days} days")
        return

    report = collector.generate_report(args.hours)
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
