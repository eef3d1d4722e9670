"""Generation contexts and the inject generator."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import Settings
from .escalation import summarise_assessment
from .impact import impact_trend
from .models import (
    Decision,
    EscalationAssessment,
    GeneratedInject,
    ImpactMatrixSnapshot,
    Inject,
    InjectOrigin,
    InjectScope,
    ObjectiveStatus,
    Participant,
    Scenario,
    Session,
)
from .state import ExerciseState
from .themes import UNIVERSAL_SCOPE, ThemeLedger, build_theme_ledger

logger = logging.getLogger(__name__)


class ContextKind(str, Enum):
    UNIVERSAL = "universal"
    TEAM = "team"
    DECISION = "decision"


_INSTRUCTIONS = {
    ContextKind.UNIVERSAL: (
        "Generate a general inject that reflects the overall state of play and all decisions made. "
        "It will be visible to every participant and should give a high-level view of the situation."
    ),
    ContextKind.TEAM: (
        "Generate an inject for team {team} only, reacting to that team's own decisions. "
        "It will be visible to members of {team} and should stay within their remit."
    ),
    ContextKind.DECISION: (
        "React to the single decision that was just executed. Prefer the role-specific scope "
        "and address the roles most affected by it."
    ),
}


@dataclass
class SessionSnapshot:
    """Store reads shared by every context built for one session in a cycle."""

    session: Session
    scenario: Scenario
    now: datetime
    elapsed_minutes: int
    objectives: List[ObjectiveStatus]
    participants: List[Participant]
    teams: List[str]
    prior_decisions: List[Decision]
    recent_injects: List[Dict[str, Any]]
    upcoming_injects: List[Dict[str, Any]]
    theme_ledger: ThemeLedger


@dataclass
class GenerationContext:
    """Everything the oracle sees when asked for an inject."""

    kind: ContextKind
    session_id: str
    scenario_id: str
    scenario_title: str
    scenario_description: str
    elapsed_minutes: int
    current_state: Dict[str, Any]
    objectives: List[ObjectiveStatus]
    participants: List[Participant]
    teams: List[str]
    prior_decisions: List[Decision]
    window_decisions: List[Decision]
    focus_decisions: List[Decision]
    recent_injects: List[Dict[str, Any]]
    upcoming_injects: List[Dict[str, Any]]
    escalation: EscalationAssessment
    impact: Optional[ImpactMatrixSnapshot]
    theme_ledger: ThemeLedger
    target_team: Optional[str] = None
    window_minutes: int = 5
    instructions: str = ""

    @property
    def scope_key(self) -> str:
        if self.kind == ContextKind.TEAM and self.target_team:
            return self.target_team
        if self.kind == ContextKind.DECISION and self.target_team:
            return self.target_team
        return UNIVERSAL_SCOPE

    def as_prompt_dict(self) -> Dict[str, Any]:
        impact: Optional[Dict[str, Any]] = None
        if self.impact is not None:
            impact = {
                "matrix": self.impact.matrix,
                "robustness": self.impact.robustness,
                "response_taxonomy": self.impact.response_taxonomy,
                "analysis": self.impact.analysis,
                "trend": impact_trend(self.impact),
            }
        return {
            "inject_context": self.kind.value,
            "target_team": self.target_team,
            "instructions": self.instructions,
            "scenario": {"title": self.scenario_title, "description": self.scenario_description},
            "session_duration_minutes": self.elapsed_minutes,
            "current_state": self.current_state,
            "objectives": [
                {"name": o.name, "status": o.status, "progress_percentage": o.progress_percentage}
                for o in self.objectives
            ],
            "participants": [{"role": p.role, "team": p.team} for p in self.participants],
            "teams": self.teams,
            "all_executed_decisions": [d.summary() for d in self.prior_decisions],
            f"decisions_last_{self.window_minutes}_minutes": [d.summary() for d in self.window_decisions],
            "focus_decisions": [d.summary() for d in self.focus_decisions],
            "recent_injects": self.recent_injects,
            "upcoming_scripted_injects": self.upcoming_injects,
            "escalation": summarise_assessment(self.escalation),
            "impact": impact,
            "theme_usage": self.theme_ledger.as_prompt_dict(self.scope_key),
        }


def aggregate_decision(
    decisions: Sequence[Decision],
    recent_inject_count: int,
    window_minutes: int,
) -> Dict[str, Any]:
    """Decision payload for the generator; batches collapse into one pseudo-decision."""

    if len(decisions) == 1:
        return decisions[0].summary()
    return {
        "id": "aggregated",
        "title": "Recent Activity Summary",
        "description": (
            f"Based on {len(decisions)} decisions and {recent_inject_count} injects "
            f"in the last {window_minutes} minutes"
        ),
        "type": "coordination_order",
        "decisions": [d.title for d in decisions],
    }


def _inject_brief(inject: Inject) -> Dict[str, Any]:
    return {
        "trigger_time_minutes": inject.trigger_time_minutes,
        "type": inject.type,
        "title": inject.title,
        "content": inject.content,
        "severity": inject.severity.value,
    }


class GenerationContextBuilder:
    """Builds the universal, team and decision context variants."""

    def __init__(self, state: ExerciseState, settings: Settings) -> None:
        self._state = state
        self._settings = settings

    def gather(self, session: Session, now: datetime) -> SessionSnapshot:
        state = self._state
        settings = self._settings
        scenario = state.get_scenario(session.scenario_id) or Scenario(
            id=session.scenario_id, title=session.scenario_id
        )
        elapsed = session.elapsed_minutes(now)

        publications = state.publications(session.id)
        recent_injects = [
            {
                "type": record.metadata.get("type", "unknown"),
                "title": record.metadata.get("title", "Unknown"),
                "content": record.metadata.get("content", ""),
                "inject_scope": record.metadata.get("inject_scope"),
                "published_at": record.timestamp.isoformat(),
            }
            for record in publications[: settings.recent_inject_limit]
        ]

        excluded = state.published_inject_ids(session.id) | state.cancelled_inject_ids(session.id)
        upcoming = [
            _inject_brief(inject)
            for inject in state.upcoming_time_injects(
                session.scenario_id,
                elapsed,
                limit=settings.upcoming_inject_limit + len(excluded),
            )
            if inject.id not in excluded
        ][: settings.upcoming_inject_limit]

        return SessionSnapshot(
            session=session,
            scenario=scenario,
            now=now,
            elapsed_minutes=elapsed,
            objectives=state.objectives(session.id),
            participants=state.participants(session.id),
            teams=state.teams(session.id),
            prior_decisions=state.executed_decisions(session.id),
            recent_injects=recent_injects,
            upcoming_injects=upcoming,
            theme_ledger=build_theme_ledger(record.metadata for record in publications),
        )

    def _build(
        self,
        snapshot: SessionSnapshot,
        kind: ContextKind,
        window_decisions: Sequence[Decision],
        focus_decisions: Sequence[Decision],
        escalation: EscalationAssessment,
        impact: Optional[ImpactMatrixSnapshot],
        target_team: Optional[str] = None,
    ) -> GenerationContext:
        instructions = _INSTRUCTIONS[kind].format(team=target_team or "")
        return GenerationContext(
            kind=kind,
            session_id=snapshot.session.id,
            scenario_id=snapshot.session.scenario_id,
            scenario_title=snapshot.scenario.title,
            scenario_description=snapshot.scenario.description,
            elapsed_minutes=snapshot.elapsed_minutes,
            current_state=dict(snapshot.session.current_state),
            objectives=list(snapshot.objectives),
            participants=list(snapshot.participants),
            teams=list(snapshot.teams),
            prior_decisions=list(snapshot.prior_decisions),
            window_decisions=list(window_decisions),
            focus_decisions=list(focus_decisions),
            recent_injects=list(snapshot.recent_injects),
            upcoming_injects=list(snapshot.upcoming_injects),
            escalation=escalation,
            impact=impact,
            theme_ledger=snapshot.theme_ledger,
            target_team=target_team,
            window_minutes=self._settings.activity_window_minutes,
            instructions=instructions,
        )

    def universal(
        self,
        snapshot: SessionSnapshot,
        window_decisions: Sequence[Decision],
        escalation: EscalationAssessment,
        impact: Optional[ImpactMatrixSnapshot],
    ) -> GenerationContext:
        return self._build(
            snapshot, ContextKind.UNIVERSAL, window_decisions, window_decisions, escalation, impact
        )

    def for_team(
        self,
        snapshot: SessionSnapshot,
        team: str,
        window_decisions: Sequence[Decision],
        escalation: EscalationAssessment,
        impact: Optional[ImpactMatrixSnapshot],
    ) -> GenerationContext:
        team_decisions = [d for d in window_decisions if d.team == team]
        return self._build(
            snapshot, ContextKind.TEAM, window_decisions, team_decisions, escalation, impact, target_team=team
        )

    def for_decision(self, session: Session, decision: Decision, now: datetime) -> GenerationContext:
        """Context for reacting to one freshly executed decision, using stored snapshots."""

        snapshot = self.gather(session, now)
        since = now - timedelta(minutes=self._settings.activity_window_minutes)
        window = [d for d in snapshot.prior_decisions if d.executed_at and d.executed_at >= since]
        return self._build(
            snapshot,
            ContextKind.DECISION,
            window,
            [decision],
            self._state.latest_escalation(session.id),
            self._state.latest_impact_matrix(session.id),
            target_team=decision.team,
        )


def bind_scope(candidate: GeneratedInject, context: GenerationContext) -> Tuple[InjectScope, List[str]]:
    """Scope and target teams an inject must carry for the context it came from."""

    if context.kind == ContextKind.UNIVERSAL:
        return InjectScope.UNIVERSAL, []
    if context.kind == ContextKind.TEAM:
        return InjectScope.TEAM_SPECIFIC, [context.target_team] if context.target_team else []
    if candidate.scope == InjectScope.TEAM_SPECIFIC:
        if context.target_team:
            return InjectScope.TEAM_SPECIFIC, [context.target_team]
        return InjectScope.ROLE_SPECIFIC, []
    return candidate.scope, []


class InjectGenerator:
    """Turns oracle candidates into publishable injects bound to their context."""

    def __init__(self, oracle) -> None:
        self._oracle = oracle

    async def candidate(
        self,
        decision: Dict[str, Any],
        context: GenerationContext,
    ) -> Optional[GeneratedInject]:
        try:
            candidate = await self._oracle.generate_inject(decision, context)
        except Exception as exc:
            logger.warning(
                "Inject generation failed for session %s (%s context): %s",
                context.session_id,
                context.kind.value,
                exc,
            )
            return None
        if candidate is None:
            logger.debug(
                "No inject warranted for session %s (%s context)",
                context.session_id,
                context.kind.value,
            )
        return candidate

    async def generate(
        self,
        decision: Dict[str, Any],
        context: GenerationContext,
    ) -> Optional[Inject]:
        candidate = await self.candidate(decision, context)
        if candidate is None:
            return None
        scope, target_teams = bind_scope(candidate, context)
        return Inject(
            id=str(uuid.uuid4()),
            scenario_id=context.scenario_id,
            origin=InjectOrigin.GENERATED,
            type=candidate.type,
            title=candidate.title,
            content=candidate.content,
            severity=candidate.severity,
            scope=scope,
            affected_roles=list(candidate.affected_roles),
            target_teams=target_teams,
            requires_response=candidate.requires_response,
            requires_coordination=candidate.requires_coordination,
            provenance={
                "context": context.kind.value,
                "proposed_scope": candidate.scope.value,
                "decision_ids": [d.id for d in context.focus_decisions],
                "source_decision": decision.get("id"),
                "target_team": context.target_team,
            },
        )


__all__ = [
    "ContextKind",
    "GenerationContext",
    "GenerationContextBuilder",
    "InjectGenerator",
    "SessionSnapshot",
    "aggregate_decision",
    "bind_scope",
]
