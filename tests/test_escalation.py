"""Escalation modelling fails soft and respects configured bounds."""
from __future__ import annotations

from dataclasses import replace

import pytest

from crisis_drill.escalation import EscalationContext, EscalationModeler, summarise_assessment
from crisis_drill.models import DeEscalationPathway, ObjectiveStatus

from conftest import make_settings


def _context():
    return EscalationContext(
        session_id="s1",
        scenario_title="Harbour fire",
        scenario_description="Fire at the terminal.",
        elapsed_minutes=15,
        current_state={"public_sentiment": 48},
        objectives=[ObjectiveStatus("o1", "Protect the hospital", "in_progress", 40)],
        recent_injects=[{"title": "Smoke drifts inland"}],
    )


@pytest.mark.asyncio
async def test_assessment_chains_each_step(oracle):
    assessment = await EscalationModeler(oracle, make_settings()).assess(_context())

    assert [f.id for f in assessment.factors] == ["ef-1", "ef-2", "ef-3"]
    assert len(assessment.de_escalation_factors) == 3
    assert len(assessment.pathways) == 2
    assert len(assessment.de_escalation_pathways) == 2
    # later steps receive the earlier artefacts
    assert oracle.calls["identify_de_escalation_factors"][0] == assessment.factors
    pathways, de_factors = oracle.calls["generate_de_escalation_pathways"][0]
    assert pathways == assessment.pathways
    assert de_factors == assessment.de_escalation_factors


@pytest.mark.asyncio
async def test_failed_step_is_replaced_with_empty_list(oracle):
    oracle.escalation_error = ValueError("bad json")
    assessment = await EscalationModeler(oracle, make_settings()).assess(_context())

    assert assessment.factors == []
    assert len(assessment.de_escalation_factors) == 3
    assert not assessment.is_empty()


@pytest.mark.asyncio
async def test_challenges_truncated_to_maximum(oracle):
    oracle.de_pathways = [DeEscalationPathway("dp-1", "Calm returns", ["a"], ["x", "y", "z"])]
    settings = replace(make_settings(), challenge_bounds=(0, 1))

    assessment = await EscalationModeler(oracle, settings).assess(_context())

    assert assessment.de_escalation_pathways[0].emerging_challenges == ["x"]


@pytest.mark.asyncio
async def test_refresh_records_snapshot(service, live_session, oracle):
    modeler = EscalationModeler(oracle, make_settings())
    await modeler.refresh(service.state, replace(_context(), session_id="sess-1"))

    assert service.state.count_escalation_snapshots("sess-1", "escalation_pathways") == 1
    assert service.state.latest_escalation("sess-1").pathways[0].trajectory == "Crowd breaches cordon."


def test_context_prompt_view():
    prompt = _context().as_prompt_dict()
    assert prompt["scenario"]["title"] == "Harbour fire"
    assert prompt["objectives"] == [{"name": "Protect the hospital", "status": "in_progress", "progress_percentage": 40}]


@pytest.mark.asyncio
async def test_summary_shape(oracle):
    assessment = await EscalationModeler(oracle, make_settings()).assess(_context())
    summary = summarise_assessment(assessment)

    assert summary["escalation_factors"][0] == {
        "name": "Crowd build-up",
        "description": "Crowds gather at the cordon.",
        "severity": "high",
    }
    assert summary["de_escalation_pathways"][0]["emerging_challenges"] == ["traffic"]
