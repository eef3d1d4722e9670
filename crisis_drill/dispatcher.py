"""Reacts to a single executed decision.

Classification happens first and its failure propagates: an unclassified
decision cannot be matched safely. Matching scripted injects are then
published in discovery order, and a freshly generated inject may follow,
with the whole dispatch capped at ``max_injects_per_decision``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .config import Settings
from .generation import GenerationContextBuilder, InjectGenerator
from .models import Decision, DecisionClassification, Inject, Session, utc_now
from .publisher import Publisher
from .state import DuplicatePublicationError, ExerciseState, InjectCancelledError
from .telemetry import get_telemetry
from .triggers import matches_trigger_condition, parse_trigger_condition

logger = logging.getLogger(__name__)

MODE_MATCH = "match"
MODE_GENERATE = "generate"
MODE_BOTH = "both"


@dataclass
class DispatchResult:
    decision_id: str
    classification: DecisionClassification
    matched: List[str] = field(default_factory=list)
    published: List[str] = field(default_factory=list)
    generated: Optional[str] = None

    @property
    def total_published(self) -> int:
        return len(self.published) + (1 if self.generated else 0)


def find_matching_injects(
    candidates: List[Inject],
    classification: DecisionClassification,
    published_ids: set,
) -> List[Inject]:
    """Condition-triggered injects not yet published whose condition matches."""

    matches = []
    for inject in candidates:
        if inject.id in published_ids or not inject.is_condition_triggered:
            continue
        condition = parse_trigger_condition(inject.trigger_condition)
        if condition is None:
            logger.debug("Inject %s has an unparseable trigger condition", inject.id)
            continue
        if matches_trigger_condition(condition, classification):
            matches.append(inject)
    return matches


class DecisionDispatcher:
    """Drives trigger matching and decision-scoped generation for one decision."""

    def __init__(
        self,
        state: ExerciseState,
        oracle,
        publisher: Publisher,
        settings: Settings,
        generator: Optional[InjectGenerator] = None,
        builder: Optional[GenerationContextBuilder] = None,
    ) -> None:
        self._state = state
        self._oracle = oracle
        self._publisher = publisher
        self._settings = settings
        self._generator = generator or InjectGenerator(oracle)
        self._builder = builder or GenerationContextBuilder(state, settings)

    async def dispatch(
        self,
        session: Session,
        decision: Decision,
        *,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        now = now or utc_now()
        mode = self._settings.dispatch_mode
        limit = self._settings.max_injects_per_decision

        classification = await self._oracle.classify_decision(decision)
        decision.classification = classification
        self._state.save_classification(decision.id, classification)
        result = DispatchResult(decision_id=decision.id, classification=classification)

        if mode in (MODE_MATCH, MODE_BOTH):
            self._publish_matches(session, decision, classification, limit, result, now)

        if mode in (MODE_GENERATE, MODE_BOTH) and result.total_published < limit:
            await self._publish_generated(session, decision, now, result)

        get_telemetry().track_dispatch(
            session_id=session.id,
            decision_id=decision.id,
            matched=len(result.matched),
            published=len(result.published),
            generated=1 if result.generated else 0,
        )
        return result

    def _publish_matches(
        self,
        session: Session,
        decision: Decision,
        classification: DecisionClassification,
        limit: int,
        result: DispatchResult,
        now: datetime,
    ) -> None:
        candidates = self._state.condition_injects(session.scenario_id)
        published_ids = self._state.published_inject_ids(session.id)
        matches = find_matching_injects(candidates, classification, published_ids)
        result.matched = [inject.id for inject in matches]
        if not matches:
            logger.debug("No scripted injects matched decision %s", decision.id)
            return

        for inject in matches:
            if len(result.published) >= limit:
                break
            if self._state.is_published(session.id, inject.id):
                continue
            try:
                self._publisher.publish(
                    session.id,
                    inject,
                    source="decision_trigger",
                    actor_id=decision.proposed_by,
                    timestamp=now,
                )
            except DuplicatePublicationError:
                logger.debug("Inject %s was published concurrently, skipping", inject.id)
                continue
            except InjectCancelledError:
                logger.debug("Inject %s is cancelled for session %s, skipping", inject.id, session.id)
                continue
            result.published.append(inject.id)

        remaining = len(matches) - len(result.published)
        if remaining > 0:
            logger.info(
                "Decision %s matched %d more scripted injects than published; they stay available",
                decision.id,
                remaining,
            )

    async def _publish_generated(
        self,
        session: Session,
        decision: Decision,
        now: datetime,
        result: DispatchResult,
    ) -> None:
        context = self._builder.for_decision(session, decision, now)
        inject = await self._generator.generate(decision.summary(), context)
        if inject is None:
            return
        self._publisher.publish(
            session.id,
            inject,
            source="decision_generation",
            actor_id=decision.proposed_by,
            timestamp=now,
        )
        result.generated = inject.id


__all__ = [
    "DecisionDispatcher",
    "DispatchResult",
    "MODE_BOTH",
    "MODE_GENERATE",
    "MODE_MATCH",
    "find_matching_injects",
]
