"""Escalation and de-escalation modelling for live sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

from .config import Settings
from .models import (
    DeEscalationPathway,
    EscalationAssessment,
    EscalationPathway,
    ObjectiveStatus,
    utc_now,
)
from .state import ExerciseState
from .telemetry import track_duration

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class EscalationContext:
    """Point-in-time inputs for one escalation assessment."""

    session_id: str
    scenario_title: str
    scenario_description: str
    elapsed_minutes: int
    current_state: Dict[str, Any] = field(default_factory=dict)
    objectives: List[ObjectiveStatus] = field(default_factory=list)
    recent_injects: List[Dict[str, Any]] = field(default_factory=list)

    def as_prompt_dict(self) -> Dict[str, Any]:
        return {
            "scenario": {"title": self.scenario_title, "description": self.scenario_description},
            "elapsed_minutes": self.elapsed_minutes,
            "current_state": self.current_state,
            "objectives": [
                {"name": o.name, "status": o.status, "progress_percentage": o.progress_percentage}
                for o in self.objectives
            ],
            "recent_injects": self.recent_injects,
        }


def _clamp(items: List[T], bounds: Tuple[int, int], label: str) -> List[T]:
    low, high = bounds
    if len(items) < low:
        logger.debug("Oracle returned %d %s, expected at least %d", len(items), label, low)
    return items[:high]


class EscalationModeler:
    """Derives escalation factors and pathways, failing soft at every step."""

    def __init__(self, oracle, settings: Settings) -> None:
        self._oracle = oracle
        self._settings = settings

    async def _soft(self, label: str, session_id: str, call: Awaitable[List[T]]) -> List[T]:
        try:
            return list(await call)
        except Exception as exc:
            logger.warning(
                "Oracle %s failed for session %s, continuing without it: %s",
                label,
                session_id,
                exc,
            )
            return []

    async def assess(self, context: EscalationContext) -> EscalationAssessment:
        settings = self._settings
        sid = context.session_id

        factors = _clamp(
            await self._soft(
                "escalation factors",
                sid,
                self._oracle.identify_escalation_factors(context, settings.factor_bounds),
            ),
            settings.factor_bounds,
            "escalation factors",
        )
        de_factors = _clamp(
            await self._soft(
                "de-escalation factors",
                sid,
                self._oracle.identify_de_escalation_factors(context, factors, settings.factor_bounds),
            ),
            settings.factor_bounds,
            "de-escalation factors",
        )
        pathways = _clamp(
            await self._soft(
                "escalation pathways",
                sid,
                self._oracle.generate_escalation_pathways(
                    context, factors, settings.pathway_bounds, settings.behaviour_bounds
                ),
            ),
            settings.pathway_bounds,
            "escalation pathways",
        )
        de_pathways = _clamp(
            await self._soft(
                "de-escalation pathways",
                sid,
                self._oracle.generate_de_escalation_pathways(
                    context,
                    pathways,
                    de_factors,
                    settings.pathway_bounds,
                    settings.behaviour_bounds,
                    settings.challenge_bounds,
                ),
            ),
            settings.pathway_bounds,
            "de-escalation pathways",
        )

        max_behaviours = settings.behaviour_bounds[1]
        max_challenges = settings.challenge_bounds[1]
        return EscalationAssessment(
            factors=factors,
            de_escalation_factors=de_factors,
            pathways=[
                EscalationPathway(p.id, p.trajectory, p.trigger_behaviours[:max_behaviours])
                for p in pathways
            ],
            de_escalation_pathways=[
                DeEscalationPathway(
                    p.id,
                    p.trajectory,
                    p.mitigating_behaviours[:max_behaviours],
                    p.emerging_challenges[:max_challenges],
                )
                for p in de_pathways
            ],
        )

    async def refresh(
        self,
        state: ExerciseState,
        context: EscalationContext,
        *,
        timestamp: Optional[datetime] = None,
    ) -> EscalationAssessment:
        """Assess and store this cycle's snapshot batch."""

        with track_duration("escalation_refresh", {"session_id": context.session_id}):
            assessment = await self.assess(context)
        state.record_escalation(context.session_id, assessment, timestamp=timestamp or utc_now())
        logger.debug(
            "Escalation snapshot for session %s: %d factors, %d pathways",
            context.session_id,
            len(assessment.factors),
            len(assessment.pathways),
        )
        return assessment


def summarise_assessment(assessment: EscalationAssessment) -> Dict[str, Sequence[Dict[str, Any]]]:
    """Prompt-ready view of an assessment."""

    return {
        "escalation_factors": [
            {"name": f.name, "description": f.description, "severity": f.severity.value}
            for f in assessment.factors
        ],
        "de_escalation_factors": [
            {"name": f.name, "description": f.description} for f in assessment.de_escalation_factors
        ],
        "escalation_pathways": [
            {"trajectory": p.trajectory, "trigger_behaviours": p.trigger_behaviours}
            for p in assessment.pathways
        ],
        "de_escalation_pathways": [
            {
                "trajectory": p.trajectory,
                "mitigating_behaviours": p.mitigating_behaviours,
                "emerging_challenges": p.emerging_challenges,
            }
            for p in assessment.de_escalation_pathways
        ],
    }


__all__ = ["EscalationContext", "EscalationModeler", "summarise_assessment"]
