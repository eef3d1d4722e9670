"""Decision-reaction cycles: snapshots, universal and per-team generation."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from crisis_drill.generation import ContextKind
from crisis_drill.models import GeneratedInject, InjectOrigin, InjectScope
from crisis_drill.reaction import DecisionReactionScheduler

from conftest import T0


def _reaction(service, settings, **overrides):
    return DecisionReactionScheduler(
        service.state, service.oracle, service.publisher, replace(settings, **overrides)
    )


@pytest.mark.asyncio
async def test_quiet_cycle_still_records_an_empty_impact_snapshot(service, live_session, oracle):
    report = await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    assert report.failures == []
    history = service.state.impact_matrices("sess-1")
    assert len(history) == 1
    snapshot = history[0]
    assert snapshot.matrix == {}
    assert snapshot.robustness == {}
    assert snapshot.response_taxonomy == {"evacuation": "absent", "triage": "absent"}
    # no teams acted, so the impact oracle is not asked
    assert "compute_impact_matrix" not in oracle.calls
    # without activity no universal inject is generated
    assert "generate_inject" not in oracle.calls
    assert service.state.publications("sess-1") == []
    assert service.state.count_escalation_snapshots("sess-1") == 1


@pytest.mark.asyncio
async def test_triage_only_activity_end_to_end(service, live_session, oracle, decide):
    decision, _ = await decide("sess-1", "medic-1", "Set up casualty clearing station", now=T0 + timedelta(minutes=8))

    report = await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    assert report.failures == []
    impact = service.state.latest_impact_matrix("sess-1")
    assert set(impact.matrix) == {"triage"}
    assert impact.matrix["triage"] == {"evacuation": 1}
    assert impact.robustness == {decision.id: 7}
    assert impact.response_taxonomy == {"triage": "textual", "evacuation": "absent"}

    published = [service.state.get_inject(inject_id) for inject_id in report.results[0].published]
    assert len(published) == 2
    scopes = sorted((inject.scope.value, tuple(inject.target_teams)) for inject in published)
    assert scopes == [("team_specific", ("triage",)), ("universal", ())]
    assert all(inject.origin == InjectOrigin.GENERATED for inject in published)
    assert not any("evacuation" in inject.target_teams for inject in published)

    contexts = [context for _, context in oracle.calls["generate_inject"]]
    assert [c.kind for c in contexts] == [ContextKind.UNIVERSAL, ContextKind.TEAM]
    assert contexts[1].target_team == "triage"
    assert [d.id for d in contexts[1].focus_decisions] == [decision.id]


@pytest.mark.asyncio
async def test_single_decision_is_passed_directly_and_batches_are_aggregated(service, live_session, oracle, decide):
    first, _ = await decide("sess-1", "medic-1", "Open triage tent", now=T0 + timedelta(minutes=7))
    await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=8))
    universal_decision, _ = oracle.calls["generate_inject"][0]
    assert universal_decision["id"] == first.id

    oracle.calls.clear()
    await decide("sess-1", "ops-1", "Close the coast road", now=T0 + timedelta(minutes=9))
    await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))
    universal_decision, _ = oracle.calls["generate_inject"][0]
    assert universal_decision["id"] == "aggregated"
    assert universal_decision["type"] == "coordination_order"
    assert universal_decision["description"].startswith("Based on 2 decisions")


@pytest.mark.asyncio
async def test_universal_context_forces_universal_scope(service, live_session, oracle, decide):
    oracle.inject_factory = lambda decision, context: GeneratedInject(
        type="media_report",
        title="Crowds film the smoke plume",
        content="Videos spread quickly.",
        scope=InjectScope.TEAM_SPECIFIC if context.kind == ContextKind.UNIVERSAL else InjectScope.UNIVERSAL,
        affected_roles=["operations_lead"],
    )
    await decide("sess-1", "ops-1", "Close the coast road", now=T0 + timedelta(minutes=9))

    report = await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    injects = {
        inject.provenance["context"]: inject
        for inject in (service.state.get_inject(i) for i in report.results[0].published)
    }
    assert injects["universal"].scope == InjectScope.UNIVERSAL
    assert injects["universal"].target_teams == []
    assert injects["universal"].provenance["proposed_scope"] == "team_specific"
    # a team context pins the team even when the oracle asks for universal
    assert injects["team"].scope == InjectScope.TEAM_SPECIFIC
    assert injects["team"].target_teams == ["evacuation"]


@pytest.mark.asyncio
async def test_universal_generation_without_activity_when_configured(service, live_session, oracle, settings):
    scheduler = _reaction(service, settings, universal_requires_activity=False)

    report = await scheduler.run_tick(T0 + timedelta(minutes=10))

    assert len(report.results[0].published) == 1
    decision, context = oracle.calls["generate_inject"][0]
    assert decision["id"] == "aggregated"
    assert context.kind == ContextKind.UNIVERSAL


@pytest.mark.asyncio
async def test_oracle_failures_degrade_to_fewer_injects(service, live_session, oracle, decide):
    await decide("sess-1", "medic-1", "Open triage tent", now=T0 + timedelta(minutes=9))
    oracle.escalation_error = RuntimeError("model offline")
    oracle.impact_error = RuntimeError("model offline")
    oracle.generate_error = RuntimeError("model offline")

    report = await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    assert report.failures == []
    assert report.published_count == 0
    impact = service.state.latest_impact_matrix("sess-1")
    assert impact.is_empty()
    assert impact.response_taxonomy["triage"] == "textual"
    assert service.state.latest_escalation("sess-1").factors == []
    # later steps still ran with empty factors
    assert oracle.calls["identify_de_escalation_factors"] == [[]]


@pytest.mark.asyncio
async def test_context_carries_snapshots_ledger_and_upcoming_injects(service, live_session, oracle, decide):
    service.add_scripted_inject(
        "scn-1",
        inject_id="t30",
        type="media_report",
        title="Minister visits",
        content="The minister arrives on scene.",
        trigger_time_minutes=30,
    )
    service.add_scripted_inject(
        "scn-1",
        inject_id="t0",
        type="media_report",
        title="Viral rumour",
        content="A fake casualty count spreads.",
        trigger_time_minutes=0,
    )
    await service.inject_scheduler.run_tick(T0 + timedelta(minutes=1))
    await decide("sess-1", "medic-1", "Open triage tent", now=T0 + timedelta(minutes=9))

    await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    _, context = oracle.calls["generate_inject"][0]
    prompt = context.as_prompt_dict()
    assert prompt["inject_context"] == "universal"
    assert [i["title"] for i in prompt["upcoming_scripted_injects"]] == ["Minister visits"]
    assert [i["title"] for i in prompt["recent_injects"]] == ["Viral rumour"]
    assert prompt["theme_usage"]["scope_usage"]["misinformation_media"]["count"] == 1
    assert len(prompt["escalation"]["escalation_factors"]) == 3
    assert prompt["impact"]["matrix"] == {"triage": {"evacuation": 1}}
    assert "decisions_last_5_minutes" in prompt


@pytest.mark.asyncio
async def test_escalation_lists_are_clamped_to_configured_maximum(service, live_session, oracle, settings):
    oracle.factors = oracle.factors * 4
    oracle.pathways = [
        replace(oracle.pathways[0], trigger_behaviours=["a", "b", "c", "d", "e", "f"])
    ]
    scheduler = _reaction(service, settings, factor_bounds=(3, 5), behaviour_bounds=(1, 2))

    await scheduler.run_tick(T0 + timedelta(minutes=10))

    latest = service.state.latest_escalation("sess-1")
    assert len(latest.factors) == 5
    assert latest.pathways[0].trigger_behaviours == ["a", "b"]


@pytest.mark.asyncio
async def test_team_context_sees_theme_of_universal_inject_from_same_cycle(service, live_session, oracle, decide):
    seen = []

    def factory(decision, context):
        seen.append((context.kind, context.as_prompt_dict()["theme_usage"]))
        return GeneratedInject(
            type="media_report",
            title="Viral rumour of a dam breach",
            content="A fake post spreads quickly.",
            scope=InjectScope.UNIVERSAL,
        )

    oracle.inject_factory = factory
    await decide("sess-1", "medic-1", "Open triage tent", now=T0 + timedelta(minutes=9))

    await service.reaction_scheduler.run_tick(T0 + timedelta(minutes=10))

    (universal_kind, universal_usage), (team_kind, team_usage) = seen
    assert (universal_kind, team_kind) == (ContextKind.UNIVERSAL, ContextKind.TEAM)
    assert "misinformation_media" not in universal_usage["global_usage"]
    assert team_usage["scope"] == "triage"
    assert team_usage["global_usage"]["misinformation_media"]["count"] == 1
