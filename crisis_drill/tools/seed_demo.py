"""Seed a demo scenario and live session with two teams."""
from __future__ import annotations

import argparse
from pathlib import Path

from ..models import InjectScope, ObjectiveStatus, Severity
from ..service import ExerciseService

DEMO_SCENARIO_ID = "demo-flood"


def seed_demo(path: Path, *, start: bool = True) -> str:
    """Create the demo scenario, scripted injects and a session; return the session id."""

    service = ExerciseService(path)
    scenario = service.create_scenario(
        "Riverside flash flood",
        "Heavy rain overwhelms drainage near the riverside district; a hospital and two schools are at risk.",
        scenario_id=DEMO_SCENARIO_ID,
    )

    service.add_scripted_inject(
        scenario.id,
        inject_id="demo-t0",
        type="field_update",
        title="Water levels rising",
        content="River gauge at Station 4 has passed the amber threshold.",
        trigger_time_minutes=0,
        severity=Severity.MEDIUM,
    )
    service.add_scripted_inject(
        scenario.id,
        inject_id="demo-t10",
        type="media_report",
        title="Viral post claims dam breach",
        content="An unverified social media post claims the upstream dam has failed.",
        trigger_time_minutes=10,
        severity=Severity.HIGH,
        requires_response=True,
    )
    service.add_scripted_inject(
        scenario.id,
        inject_id="demo-t20",
        type="resource_request",
        title="Ambulance shortage",
        content="Two ambulance crews are stranded by flooded roads.",
        trigger_time_minutes=20,
        scope=InjectScope.TEAM_SPECIFIC,
        target_teams=["triage"],
        severity=Severity.HIGH,
    )
    service.add_scripted_inject(
        scenario.id,
        inject_id="demo-evac-followup",
        type="field_update",
        title="Shelter capacity questions",
        content="Community centre managers ask how many evacuees to expect.",
        trigger_condition="category:operational_action AND keyword:evacuation",
        scope=InjectScope.TEAM_SPECIFIC,
        target_teams=["evacuation"],
    )
    service.add_scripted_inject(
        scenario.id,
        inject_id="demo-press-followup",
        type="media_report",
        title="Press asks for a timeline",
        content="Reporters at the command post want a timeline for reopening roads.",
        trigger_condition=(
            '{"type": "decision_based", "match_criteria": {"categories": ["public_statement"]}, '
            '"match_mode": "any"}'
        ),
        requires_response=True,
    )

    session = service.create_session(scenario.id, trainer_id="trainer-1")
    service.join_session(session.id, "trainer-1", "trainer", display_name="Exercise Control")
    service.join_session(session.id, "medic-1", "medical_lead", display_name="Dr Tan", team="triage")
    service.join_session(session.id, "ops-1", "operations_lead", display_name="Ops Lead", team="evacuation")
    service.set_objective(session.id, ObjectiveStatus("obj-hospital", "Keep the hospital operational"))
    service.set_objective(session.id, ObjectiveStatus("obj-schools", "Evacuate both schools"))
    if start:
        service.start_session(session.id)
    print(f"Seeded scenario {scenario.id} and session {session.id} into {path}")
    return session.id


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a crisis-drill demo exercise")
    parser.add_argument("db", type=Path, help="Path to SQLite database")
    parser.add_argument("--no-start", action="store_true", help="Leave the session scheduled")
    args = parser.parse_args()
    seed_demo(args.db, start=not args.no_start)


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
