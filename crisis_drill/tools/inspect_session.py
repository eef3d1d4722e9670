"""Print a session's publication log, escalation and impact snapshots."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict

from ..escalation import summarise_assessment
from ..impact import impact_trend
from ..state import ExerciseState
from ..themes import UNIVERSAL_SCOPE, build_theme_ledger


def session_overview(db_path: Path, session_id: str) -> Dict[str, Any]:
    state = ExerciseState(db_path)
    session = state.require_session(session_id)
    publications = state.publications(session_id)
    impact = state.latest_impact_matrix(session_id)
    ledger = build_theme_ledger(record.metadata for record in publications)

    return {
        "session": {
            "id": session.id,
            "scenario_id": session.scenario_id,
            "status": session.status.value,
            "start_time": session.start_time.isoformat() if session.start_time else None,
            "current_state": session.current_state,
        },
        "publications": [
            {
                "inject_id": record.inject_id,
                "published_at": record.timestamp.isoformat(),
                "title": record.metadata.get("title"),
                "origin": record.metadata.get("origin"),
                "scope": record.metadata.get("inject_scope"),
                "target_teams": record.metadata.get("target_teams"),
            }
            for record in publications
        ],
        "cancellations": [
            {
                "inject_id": record.inject_id,
                "cancelled_at": record.timestamp.isoformat(),
                "reason": record.reason,
            }
            for record in state.cancellations(session_id)
        ],
        "escalation": summarise_assessment(state.latest_escalation(session_id)),
        "impact": None
        if impact is None
        else {
            "timestamp": impact.timestamp.isoformat(),
            "matrix": impact.matrix,
            "robustness": impact.robustness,
            "response_taxonomy": impact.response_taxonomy,
            "trend": impact_trend(impact),
        },
        "themes": {
            "global": ledger.counts(),
            "universal": ledger.counts(UNIVERSAL_SCOPE),
            "teams": {team: ledger.counts(team) for team in state.teams(session_id)},
        },
    }


def _print_overview(overview: Dict[str, Any]) -> None:
    session = overview["session"]
    print(f"Session {session['id']} ({session['status']}), scenario {session['scenario_id']}")
    print(f"\nPublished injects ({len(overview['publications'])}):")
    for item in overview["publications"]:
        teams = f" -> {', '.join(item['target_teams'])}" if item["target_teams"] else ""
        print(f"  {item['published_at']}  [{item['origin']}/{item['scope']}{teams}] {item['title']}")
    if overview["cancellations"]:
        print(f"\nCancelled injects ({len(overview['cancellations'])}):")
        for item in overview["cancellations"]:
            print(f"  {item['cancelled_at']}  {item['inject_id']}: {item['reason'] or 'no reason given'}")
    escalation = overview["escalation"]
    print(
        "\nEscalation: {0} factors, {1} de-escalation factors, {2} pathways, {3} de-escalation pathways".format(
            len(escalation["escalation_factors"]),
            len(escalation["de_escalation_factors"]),
            len(escalation["escalation_pathways"]),
            len(escalation["de_escalation_pathways"]),
        )
    )
    impact = overview["impact"]
    if impact:
        print(f"Impact ({impact['timestamp']}): trend {impact['trend'] or 'n/a'}")
        for team, response in sorted(impact["response_taxonomy"].items()):
            print(f"  {team}: {response}")
    print("\nTheme usage (global):")
    for theme, count in sorted(overview["themes"]["global"].items(), key=lambda item: -item[1]):
        print(f"  {theme}: {count}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect a crisis-drill session")
    parser.add_argument("db", type=Path, help="Path to SQLite database")
    parser.add_argument("session_id", help="Session identifier")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args()

    overview = session_overview(args.db, args.session_id)
    if args.json:
        print(json.dumps(overview, indent=2, default=str))
    else:
        _print_overview(overview)


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
