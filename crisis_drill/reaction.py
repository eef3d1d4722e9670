"""Decision-reaction scheduler: periodic escalation refresh and generated injects."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .config import Settings
from .escalation import EscalationContext, EscalationModeler
from .generation import GenerationContext, GenerationContextBuilder, InjectGenerator, aggregate_decision
from .impact import ImpactMatrixComputer
from .models import Session
from .publisher import Publisher
from .scheduler import PollingScheduler, SessionResult
from .state import ExerciseState

logger = logging.getLogger(__name__)


class DecisionReactionScheduler(PollingScheduler):
    """Every cycle: refresh escalation and impact snapshots, then generate.

    One universal context covers all teams' decisions; each team with at
    least one decision in the window gets its own team context. A cycle with
    no decisions still records its (empty) impact matrix.
    """

    name = "reaction_scheduler"

    def __init__(
        self,
        state: ExerciseState,
        oracle,
        publisher: Publisher,
        settings: Settings,
        *,
        modeler: Optional[EscalationModeler] = None,
        impact: Optional[ImpactMatrixComputer] = None,
        generator: Optional[InjectGenerator] = None,
        builder: Optional[GenerationContextBuilder] = None,
    ) -> None:
        super().__init__(state, settings.reaction_interval_seconds)
        self._publisher = publisher
        self._settings = settings
        self._modeler = modeler or EscalationModeler(oracle, settings)
        self._impact = impact or ImpactMatrixComputer(oracle)
        self._generator = generator or InjectGenerator(oracle)
        self._builder = builder or GenerationContextBuilder(state, settings)

    async def process_session(self, session: Session, now: datetime) -> SessionResult:
        result = SessionResult(session_id=session.id)
        window = self._settings.activity_window_minutes
        since = now - timedelta(minutes=window)

        window_decisions = self._state.executed_decisions(session.id, since=since, newest_first=True)
        window_injects = [
            {
                "type": record.metadata.get("type", "unknown"),
                "title": record.metadata.get("title", "Unknown"),
                "content": record.metadata.get("content", ""),
                "published_at": record.timestamp.isoformat(),
            }
            for record in self._state.publications(session.id, since=since)
        ]
        snapshot = self._builder.gather(session, now)

        escalation = await self._modeler.refresh(
            self._state,
            EscalationContext(
                session_id=session.id,
                scenario_title=snapshot.scenario.title,
                scenario_description=snapshot.scenario.description,
                elapsed_minutes=snapshot.elapsed_minutes,
                current_state=dict(session.current_state),
                objectives=snapshot.objectives,
                recent_injects=window_injects,
            ),
            timestamp=now,
        )
        impact = await self._impact.refresh(
            self._state,
            session.id,
            snapshot.teams,
            window_decisions,
            {
                "scenario": snapshot.scenario.title,
                "elapsed_minutes": snapshot.elapsed_minutes,
                "current_state": session.current_state,
            },
            timestamp=now,
        )

        if window_decisions or window_injects or not self._settings.universal_requires_activity:
            context = self._builder.universal(snapshot, window_decisions, escalation, impact)
            await self._generate_and_publish(
                context,
                aggregate_decision(window_decisions, len(window_injects), window),
                result,
                now,
            )
        else:
            logger.debug("No activity in the last %d minutes for session %s", window, session.id)

        for team in snapshot.teams:
            team_decisions = [d for d in window_decisions if d.team == team]
            if not team_decisions:
                continue
            context = self._builder.for_team(snapshot, team, window_decisions, escalation, impact)
            await self._generate_and_publish(
                context,
                aggregate_decision(team_decisions, len(window_injects), window),
                result,
                now,
            )

        return result

    async def _generate_and_publish(
        self,
        context: GenerationContext,
        decision: Dict[str, Any],
        result: SessionResult,
        now: datetime,
    ) -> None:
        inject = await self._generator.generate(decision, context)
        if inject is None:
            return
        self._publisher.publish(context.session_id, inject, source=self.name, timestamp=now)
        # Later contexts in this cycle share the ledger
        context.theme_ledger.note(inject.announcement())
        result.published.append(inject.id)
        result.generated += 1


__all__ = ["DecisionReactionScheduler"]
