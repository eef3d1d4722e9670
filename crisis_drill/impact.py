"""Cross-team impact scoring for a decision window."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import Decision, ImpactMatrixSnapshot, TeamResponse, utc_now
from .state import ExerciseState
from .telemetry import track_duration

logger = logging.getLogger(__name__)

SCORE_RANGE = (-2, 2)
ROBUSTNESS_RANGE = (1, 10)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(round(value))
    if isinstance(value, str):
        try:
            return int(round(float(value)))
        except ValueError:
            return None
    return None


def _clamp(value: int, bounds: Sequence[int]) -> int:
    return max(bounds[0], min(bounds[1], value))


def response_taxonomy(teams: Iterable[str], decisions: Sequence[Decision]) -> Dict[str, str]:
    """Mark each team ``textual`` if it decided anything in the window, else ``absent``."""

    acting = {d.team for d in decisions if d.team}
    return {
        team: (TeamResponse.TEXTUAL if team in acting else TeamResponse.ABSENT).value
        for team in teams
    }


def sanitise_impact(
    raw: Dict[str, Any],
    teams: Sequence[str],
    decisions: Sequence[Decision],
) -> Dict[str, Any]:
    """Keep only well-formed scores for acting teams and in-window decisions."""

    team_set = set(teams)
    acting = {d.team for d in decisions if d.team in team_set}
    decision_ids = {d.id for d in decisions}

    matrix: Dict[str, Dict[str, int]] = {}
    raw_matrix = raw.get("matrix") if isinstance(raw.get("matrix"), dict) else {}
    for actor, row in raw_matrix.items():
        if actor not in acting or not isinstance(row, dict):
            continue
        scores = {}
        for affected, value in row.items():
            if affected == actor or affected not in team_set:
                continue
            score = _as_int(value)
            if score is not None:
                scores[affected] = _clamp(score, SCORE_RANGE)
        if scores:
            matrix[actor] = scores

    robustness: Dict[str, int] = {}
    raw_robustness = raw.get("robustness") if isinstance(raw.get("robustness"), dict) else {}
    for decision_id, value in raw_robustness.items():
        if decision_id not in decision_ids:
            continue
        score = _as_int(value)
        if score is not None:
            robustness[decision_id] = _clamp(score, ROBUSTNESS_RANGE)

    analysis = raw.get("analysis")
    return {
        "matrix": matrix,
        "robustness": robustness,
        "analysis": str(analysis).strip() if isinstance(analysis, str) and analysis.strip() else None,
    }


class ImpactMatrixComputer:
    """Asks the oracle for cross-team scores and enforces their shape."""

    def __init__(self, oracle) -> None:
        self._oracle = oracle

    async def compute(
        self,
        session_id: str,
        teams: Sequence[str],
        decisions: Sequence[Decision],
        context: Optional[Dict[str, Any]] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> ImpactMatrixSnapshot:
        taxonomy = response_taxonomy(teams, decisions)
        snapshot = ImpactMatrixSnapshot(
            session_id=session_id,
            timestamp=timestamp or utc_now(),
            response_taxonomy=taxonomy,
        )
        if not teams or not decisions:
            return snapshot

        try:
            raw = await self._oracle.compute_impact_matrix(list(teams), list(decisions), context or {})
        except Exception as exc:
            logger.warning("Impact matrix oracle failed for session %s: %s", session_id, exc)
            return snapshot

        cleaned = sanitise_impact(raw if isinstance(raw, dict) else {}, teams, decisions)
        snapshot.matrix = cleaned["matrix"]
        snapshot.robustness = cleaned["robustness"]
        snapshot.analysis = cleaned["analysis"]
        return snapshot

    async def refresh(
        self,
        state: ExerciseState,
        session_id: str,
        teams: Sequence[str],
        decisions: Sequence[Decision],
        context: Optional[Dict[str, Any]] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> ImpactMatrixSnapshot:
        """Compute and always record one snapshot, empty or not."""

        with track_duration("impact_refresh", {"session_id": session_id}):
            snapshot = await self.compute(session_id, teams, decisions, context, timestamp=timestamp)
        state.record_impact_matrix(snapshot)
        return snapshot


def impact_trend(snapshot: Optional[ImpactMatrixSnapshot]) -> Optional[str]:
    """Coarse reading of a snapshot for prompts: improving, worsening or mixed."""

    if snapshot is None or snapshot.is_empty():
        return None
    scores: List[int] = [s for row in snapshot.matrix.values() for s in row.values()]
    robustness = list(snapshot.robustness.values())
    impact_mean = sum(scores) / len(scores) if scores else 0.0
    robustness_mean = sum(robustness) / len(robustness) if robustness else 5.5
    if impact_mean > 0 and robustness_mean >= 6:
        return "improving"
    if impact_mean < 0 and robustness_mean <= 5:
        return "worsening"
    return "mixed"


__all__ = [
    "ImpactMatrixComputer",
    "impact_trend",
    "response_taxonomy",
    "sanitise_impact",
]
