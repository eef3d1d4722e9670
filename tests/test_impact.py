"""Impact matrix sanitising and response taxonomy."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from crisis_drill.impact import (
    ImpactMatrixComputer,
    impact_trend,
    response_taxonomy,
    sanitise_impact,
)
from crisis_drill.models import Decision, DecisionStatus, ImpactMatrixSnapshot

NOW = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)
TEAMS = ["evacuation", "logistics", "triage"]


def _decision(decision_id, team):
    return Decision(
        id=decision_id,
        session_id="s1",
        title=f"Decision {decision_id}",
        description="",
        type="operational_action",
        proposed_by="u",
        status=DecisionStatus.EXECUTED,
        team=team,
        executed_at=NOW,
    )


def test_taxonomy_marks_teams_without_decisions_absent():
    taxonomy = response_taxonomy(TEAMS, [_decision("d1", "triage"), _decision("d2", None)])
    assert taxonomy == {"evacuation": "absent", "logistics": "absent", "triage": "textual"}


def test_sanitise_drops_rows_for_absent_teams_and_self_scores():
    decisions = [_decision("d1", "triage")]
    raw = {
        "matrix": {
            "triage": {"triage": 2, "evacuation": 5, "logistics": "-1", "police": 1},
            "evacuation": {"triage": 1},
        },
        "robustness": {"d1": 0, "d9": 8},
        "analysis": "  Triage eased pressure on evacuation.  ",
    }

    cleaned = sanitise_impact(raw, TEAMS, decisions)

    assert cleaned["matrix"] == {"triage": {"evacuation": 2, "logistics": -1}}
    assert cleaned["robustness"] == {"d1": 1}
    assert cleaned["analysis"] == "Triage eased pressure on evacuation."


def test_sanitise_rejects_non_numeric_scores():
    decisions = [_decision("d1", "triage")]
    raw = {"matrix": {"triage": {"evacuation": True, "logistics": "high"}}, "robustness": {"d1": None}}

    cleaned = sanitise_impact(raw, TEAMS, decisions)

    assert cleaned == {"matrix": {}, "robustness": {}, "analysis": None}


@pytest.mark.asyncio
async def test_compute_skips_oracle_without_decisions(oracle):
    snapshot = await ImpactMatrixComputer(oracle).compute("s1", TEAMS, [], timestamp=NOW)

    assert snapshot.is_empty()
    assert snapshot.timestamp == NOW
    assert set(snapshot.response_taxonomy.values()) == {"absent"}
    assert "compute_impact_matrix" not in oracle.calls


@pytest.mark.asyncio
async def test_compute_fails_soft_on_oracle_error(oracle):
    oracle.impact_error = RuntimeError("timeout")
    snapshot = await ImpactMatrixComputer(oracle).compute("s1", TEAMS, [_decision("d1", "triage")], timestamp=NOW)

    assert snapshot.is_empty()
    assert snapshot.response_taxonomy["triage"] == "textual"


@pytest.mark.asyncio
async def test_compute_handles_non_mapping_oracle_output(oracle):
    oracle.impact_response = ["not", "a", "mapping"]
    snapshot = await ImpactMatrixComputer(oracle).compute("s1", TEAMS, [_decision("d1", "triage")], timestamp=NOW)
    assert snapshot.is_empty()


@pytest.mark.parametrize(
    "matrix, robustness, expected",
    [
        ({"triage": {"evacuation": 2}}, {"d1": 8}, "improving"),
        ({"triage": {"evacuation": -2}}, {"d1": 3}, "worsening"),
        ({"triage": {"evacuation": 1}}, {"d1": 3}, "mixed"),
    ],
)
def test_impact_trend(matrix, robustness, expected):
    snapshot = ImpactMatrixSnapshot(session_id="s1", timestamp=NOW, matrix=matrix, robustness=robustness)
    assert impact_trend(snapshot) == expected


def test_impact_trend_of_empty_snapshot_is_unknown():
    assert impact_trend(None) is None
    assert impact_trend(ImpactMatrixSnapshot(session_id="s1", timestamp=NOW)) is None
