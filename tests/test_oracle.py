"""Oracle response normalisation and the offline mock oracle."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from crisis_drill.escalation import EscalationContext
from crisis_drill.llm_client import LLMConfig, LLMGenerationError
from crisis_drill.models import Decision, Inject, InjectOrigin, InjectScope, Severity
from crisis_drill.oracle import (
    ExerciseOracle,
    MockExerciseOracle,
    build_oracle,
    parse_generated_inject,
)


class FakeClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def complete_json(self, system_prompt, user_prompt, **kwargs):
        self.prompts.append((system_prompt, user_prompt, kwargs))
        return self.responses.pop(0)


def _decision(title="Evacuate the pier", description="Clear a 300m radius"):
    return Decision(
        id="d1",
        session_id="s1",
        title=title,
        description=description,
        type="operational_action",
        proposed_by="u1",
        executed_at=datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc),
    )


def _context():
    return EscalationContext(session_id="s1", scenario_title="Fire", scenario_description="", elapsed_minutes=5)


@pytest.mark.asyncio
async def test_classify_decision_normalises_response():
    client = FakeClient({"primary_category": "emergency_declaration", "keywords": ["pier", ""], "confidence": "high"})
    classification = await ExerciseOracle(client).classify_decision(_decision())

    assert classification.primary_category == "emergency_declaration"
    assert classification.categories == ["emergency_declaration"]
    assert classification.keywords == ["pier"]
    assert classification.confidence == 0.8
    assert client.prompts[0][2]["capability"] == "classify_decision"


@pytest.mark.asyncio
async def test_should_cancel_requires_boolean():
    inject = Inject(id="i1", scenario_id="s", origin=InjectOrigin.SCRIPTED, type="x", title="Bomb", content="c")
    oracle = ExerciseOracle(FakeClient({"cancel": True, "reason": " Device disarmed "}, {"cancel": "yes"}))

    verdict = await oracle.should_cancel(inject, [_decision()])
    assert verdict.cancel is True
    assert verdict.reason == "Device disarmed"
    with pytest.raises(LLMGenerationError):
        await oracle.should_cancel(inject, [_decision()])


@pytest.mark.asyncio
async def test_factor_items_without_names_are_dropped():
    client = FakeClient(
        {
            "factors": [
                {"name": "Crowds", "description": "Dense crowds", "severity": "CRITICAL"},
                {"description": "nameless"},
                "not an object",
                {"id": "custom", "name": "Rumours", "severity": "unknown"},
            ]
        }
    )
    factors = await ExerciseOracle(client).identify_escalation_factors(_context(), (3, 8))

    assert [(f.id, f.name, f.severity) for f in factors] == [
        ("ef-1", "Crowds", Severity.CRITICAL),
        ("custom", "Rumours", Severity.MEDIUM),
    ]
    assert "between 3 and 8" in client.prompts[0][0]


@pytest.mark.asyncio
async def test_missing_list_raises():
    with pytest.raises(LLMGenerationError):
        await ExerciseOracle(FakeClient({"unexpected": []})).generate_escalation_pathways(_context(), [])


@pytest.mark.asyncio
async def test_de_escalation_pathways_parse_lists():
    client = FakeClient(
        {
            "pathways": [
                {"trajectory": "Crowd disperses", "mitigating_behaviours": ["patrols", 3], "emerging_challenges": "x"},
            ]
        }
    )
    pathways = await ExerciseOracle(client).generate_de_escalation_pathways(_context(), [], [])

    assert pathways[0].id == "dp-1"
    assert pathways[0].mitigating_behaviours == ["patrols", "3"]
    assert pathways[0].emerging_challenges == []


@pytest.mark.asyncio
async def test_generate_inject_declined_returns_none():
    class Context:
        def as_prompt_dict(self):
            return {}

    oracle = ExerciseOracle(FakeClient({"should_generate": False, "reason": "quiet"}))
    assert await oracle.generate_inject({"id": "d1"}, Context()) is None


def test_parse_generated_inject_defaults():
    candidate = parse_generated_inject({"title": "Smoke", "content": "Smoke drifts", "severity": "extreme"})

    assert candidate.type == "field_update"
    assert candidate.severity == Severity.MEDIUM
    assert candidate.scope == InjectScope.ROLE_SPECIFIC

    with pytest.raises(LLMGenerationError):
        parse_generated_inject({"title": "No content"})
    with pytest.raises(LLMGenerationError):
        parse_generated_inject(None)


@pytest.mark.asyncio
async def test_mock_oracle_classifies_by_keywords():
    mock = MockExerciseOracle()
    classification = await mock.classify_decision(_decision("Evacuate and deploy ambulances", ""))

    assert classification.primary_category == "emergency_declaration"
    assert "resource_allocation" in classification.categories
    assert "ambulances" in classification.keywords
    assert (await mock.should_cancel(None, [])).cancel is False


def test_build_oracle_selects_mock_in_mock_mode():
    assert isinstance(build_oracle(LLMConfig(mock_mode=True)), MockExerciseOracle)
    assert isinstance(build_oracle(LLMConfig(enabled=False)), ExerciseOracle)


@pytest.mark.parametrize(
    "raw, expected",
    [("false", False), ("no", False), ("0", False), ("true", True), ("Yes", True), (1, True), (0, False), (None, False)],
)
def test_parse_generated_inject_reads_textual_flags(raw, expected):
    candidate = parse_generated_inject(
        {"title": "Road reopened", "content": "Traffic flows again", "requires_response": raw, "requires_coordination": raw}
    )

    assert candidate.requires_response is expected
    assert candidate.requires_coordination is expected


@pytest.mark.asyncio
async def test_generate_inject_declined_by_string_flag():
    class Context:
        def as_prompt_dict(self):
            return {}

    oracle = ExerciseOracle(FakeClient({"should_generate": "false", "title": "Quiet", "content": "Nothing new"}))
    assert await oracle.generate_inject({"id": "d1"}, Context()) is None
