"""Shared fixtures: isolated telemetry, a scripted oracle and a live two-team session."""
from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from crisis_drill import telemetry
from crisis_drill.config import Settings
from crisis_drill.events import EventBus, reset_event_bus
from crisis_drill.models import (
    CancellationVerdict,
    DeEscalationFactor,
    DeEscalationPathway,
    DecisionClassification,
    EscalationFactor,
    EscalationPathway,
    GeneratedInject,
    InjectScope,
    Severity,
)
from crisis_drill.service import ExerciseService

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class ScriptedOracle:
    """Oracle double whose answers and failures are set per test."""

    def __init__(self) -> None:
        self.calls: Dict[str, List[Any]] = defaultdict(list)
        self.classification = DecisionClassification(
            primary_category="operational_action",
            categories=["operational_action"],
            keywords=[],
            semantic_tags=[],
        )
        self.classify_error: Optional[Exception] = None
        self.cancel_verdict = CancellationVerdict(cancel=False)
        self.cancel_error: Optional[Exception] = None
        self.factors = [
            EscalationFactor("ef-1", "Crowd build-up", "Crowds gather at the cordon.", Severity.HIGH),
            EscalationFactor("ef-2", "Rumours", "Unverified posts spread.", Severity.MEDIUM),
            EscalationFactor("ef-3", "Fatigue", "Crews are tiring.", Severity.LOW),
        ]
        self.de_factors = [
            DeEscalationFactor("df-1", "Briefings", "Regular official updates."),
            DeEscalationFactor("df-2", "Perimeter", "Cordon is holding."),
            DeEscalationFactor("df-3", "Relief", "Fresh crews arrive."),
        ]
        self.pathways = [
            EscalationPathway("ep-1", "Crowd breaches cordon.", ["late reinforcement"]),
            EscalationPathway("ep-2", "Panic buying spreads.", ["official silence"]),
        ]
        self.de_pathways = [
            DeEscalationPathway("dp-1", "Crowd disperses.", ["steady policing"], ["traffic"]),
            DeEscalationPathway("dp-2", "Confidence returns.", ["hourly briefings"], []),
        ]
        self.escalation_error: Optional[Exception] = None
        self.impact_response: Optional[Dict[str, Any]] = None
        self.impact_error: Optional[Exception] = None
        self.generate_error: Optional[Exception] = None
        self.inject_factory: Callable[[Dict[str, Any], Any], Optional[GeneratedInject]] = self._default_inject

    @staticmethod
    def _default_inject(decision: Dict[str, Any], context: Any) -> Optional[GeneratedInject]:
        return GeneratedInject(
            type="field_update",
            title=f"Reaction to {decision.get('title')}",
            content="Crews report a shift on the ground.",
            severity=Severity.MEDIUM,
            scope=InjectScope.ROLE_SPECIFIC,
            affected_roles=["operations_lead"],
        )

    async def classify_decision(self, decision):
        self.calls["classify_decision"].append(decision)
        if self.classify_error:
            raise self.classify_error
        return self.classification

    async def should_cancel(self, inject, recent_decisions):
        self.calls["should_cancel"].append((inject, list(recent_decisions)))
        if self.cancel_error:
            raise self.cancel_error
        return self.cancel_verdict

    async def identify_escalation_factors(self, context, bounds=(3, 8)):
        self.calls["identify_escalation_factors"].append(context)
        if self.escalation_error:
            raise self.escalation_error
        return list(self.factors)

    async def identify_de_escalation_factors(self, context, factors, bounds=(3, 8)):
        self.calls["identify_de_escalation_factors"].append(list(factors))
        return list(self.de_factors)

    async def generate_escalation_pathways(self, context, factors, bounds=(2, 6), behaviour_bounds=(1, 4)):
        self.calls["generate_escalation_pathways"].append(list(factors))
        return list(self.pathways)

    async def generate_de_escalation_pathways(
        self, context, pathways, de_factors, bounds=(2, 6), behaviour_bounds=(1, 4), challenge_bounds=(0, 2)
    ):
        self.calls["generate_de_escalation_pathways"].append((list(pathways), list(de_factors)))
        return list(self.de_pathways)

    async def compute_impact_matrix(self, teams, decisions, context):
        self.calls["compute_impact_matrix"].append((list(teams), list(decisions)))
        if self.impact_error:
            raise self.impact_error
        if self.impact_response is not None:
            return self.impact_response
        acting = sorted({d.team for d in decisions if d.team})
        return {
            "matrix": {team: {other: 1 for other in teams if other != team} for team in acting},
            "robustness": {d.id: 7 for d in decisions},
            "analysis": "Decisions helped neighbouring teams.",
        }

    async def generate_inject(self, decision, context):
        self.calls["generate_inject"].append((decision, context))
        if self.generate_error:
            raise self.generate_error
        return self.inject_factory(decision, context)


def make_settings(**overrides: Any) -> Settings:
    base = Settings.from_dict({"environment": "test", "dispatcher": {"mode": "match"}})
    return replace(base, **overrides)


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("CRISIS_DRILL_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(telemetry, "_telemetry", telemetry.TelemetryCollector(tmp_path / "telemetry.db"))
    reset_event_bus()
    yield
    reset_event_bus()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def oracle() -> ScriptedOracle:
    return ScriptedOracle()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def service(tmp_path, settings, oracle, bus) -> ExerciseService:
    return ExerciseService(tmp_path / "exercise.db", settings=settings, oracle=oracle, bus=bus)


@pytest.fixture
def live_session(service):
    """Started session with a trainer and teams ``triage`` and ``evacuation``."""

    scenario = service.create_scenario("Harbour fire", "Fire at the container terminal.", scenario_id="scn-1")
    session = service.create_session(scenario.id, trainer_id="trainer-1", session_id="sess-1")
    service.join_session(session.id, "trainer-1", "trainer")
    service.join_session(session.id, "medic-1", "medical_lead", display_name="Dr Lim", team="triage")
    service.join_session(session.id, "ops-1", "operations_lead", display_name="Ops", team="evacuation")
    return service.start_session(session.id, now=T0)


@pytest.fixture
def decide(service):
    """Propose, approve and execute a decision in one step."""

    async def _decide(
        session_id: str,
        user_id: str,
        title: str,
        description: str = "",
        type: str = "operational_action",
        *,
        now: datetime,
        resources: Optional[Dict[str, Any]] = None,
    ):
        proposed = service.propose_decision(
            session_id,
            user_id,
            title=title,
            description=description or title,
            type=type,
            resources_needed=resources,
        )
        service.approve_decision(proposed.id)
        return await service.execute_decision(proposed.id, now=now)

    return _decide
