"""High-level exercise service wiring the store, oracle and engine components."""
from __future__ import annotations

import copy
import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings, get_settings
from .dispatcher import DecisionDispatcher, DispatchResult
from .events import EventBus, get_event_bus
from .models import (
    Decision,
    DecisionStatus,
    Inject,
    InjectOrigin,
    InjectScope,
    ObjectiveStatus,
    Participant,
    Scenario,
    Session,
    SessionStatus,
    Severity,
    utc_now,
)
from .oracle import build_oracle
from .publisher import Publisher
from .reaction import DecisionReactionScheduler
from .scheduler import InjectScheduler, TickReport
from .state import ExerciseState
from .telemetry import get_telemetry
from .triggers import parse_trigger_condition
from .visibility import filter_visible

logger = logging.getLogger(__name__)

_RADIUS_PATTERN = re.compile(r"(\d+)\s*m(?:eter)?s?", re.IGNORECASE)
DEFAULT_EVACUATION_RADIUS_M = 500
# Marina Bay default used when a decision names no location
DEFAULT_ZONE_CENTRE = (1.2931, 103.8558)
NEUTRAL_SENTIMENT = 50


def apply_decision(state: Dict[str, Any], decision: Decision, now: datetime) -> Dict[str, Any]:
    """Return the session state after an executed decision takes effect."""

    updated = copy.deepcopy(state) if state else {}
    text = f"{decision.title} {decision.description}".lower()

    if decision.type in ("operational_action", "emergency_declaration") and "evacuation" in text:
        match = _RADIUS_PATTERN.search(decision.description)
        zone = {
            "id": f"evac-{decision.id}",
            "center_lat": DEFAULT_ZONE_CENTRE[0],
            "center_lng": DEFAULT_ZONE_CENTRE[1],
            "radius_meters": int(match.group(1)) if match else DEFAULT_EVACUATION_RADIUS_M,
            "title": decision.title,
            "created_at": now.isoformat(),
        }
        updated.setdefault("evacuation_zones", []).append(zone)
        logger.info("Evacuation zone added for decision %s", decision.id)
    elif decision.type == "resource_allocation":
        if decision.resources_needed:
            updated.setdefault("resource_allocations", {}).update(decision.resources_needed)
    elif decision.type == "public_statement":
        sentiment = updated.get("public_sentiment", NEUTRAL_SENTIMENT)
        change = 5 if "reassur" in decision.description.lower() else -2
        updated["public_sentiment"] = max(0, min(100, sentiment + change))
    else:
        logger.debug("No state update for decision type %s", decision.type)
    return updated


class ExerciseService:
    """Coordinates sessions, decisions and the inject engine."""

    class DecisionStateError(RuntimeError):
        """Raised when a decision transition is not allowed."""

    class SessionStateError(RuntimeError):
        """Raised when a session is not in a state that allows the action."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        oracle=None,
        bus: EventBus | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = ExerciseState(db_path)
        self.oracle = oracle or build_oracle()
        self.bus = bus or get_event_bus()
        self.publisher = Publisher(self.state, self.bus)
        self.dispatcher = DecisionDispatcher(self.state, self.oracle, self.publisher, self.settings)
        self.inject_scheduler = InjectScheduler(self.state, self.oracle, self.publisher, self.settings)
        self.reaction_scheduler = DecisionReactionScheduler(
            self.state, self.oracle, self.publisher, self.settings
        )
        self._telemetry = get_telemetry()

    # Scenarios ---------------------------------------------------------
    def create_scenario(self, title: str, description: str = "", scenario_id: Optional[str] = None) -> Scenario:
        scenario = Scenario(id=scenario_id or str(uuid.uuid4()), title=title, description=description)
        self.state.upsert_scenario(scenario)
        return scenario

    def add_scripted_inject(
        self,
        scenario_id: str,
        *,
        type: str,
        title: str,
        content: str,
        trigger_time_minutes: Optional[int] = None,
        trigger_condition: Optional[str] = None,
        severity: Severity = Severity.MEDIUM,
        scope: InjectScope = InjectScope.UNIVERSAL,
        affected_roles: Optional[List[str]] = None,
        target_teams: Optional[List[str]] = None,
        requires_response: bool = False,
        requires_coordination: bool = False,
        inject_id: Optional[str] = None,
    ) -> Inject:
        if (trigger_time_minutes is None) == (trigger_condition is None):
            raise ValueError("A scripted inject needs exactly one of a trigger time or a trigger condition")
        if trigger_time_minutes is not None and trigger_time_minutes < 0:
            raise ValueError("Trigger time cannot be negative")
        if trigger_condition is not None:
            condition = parse_trigger_condition(trigger_condition)
            if condition is None or not condition.has_criteria:
                logger.warning("Trigger condition for %r cannot be parsed and will never match", title)
        inject = Inject(
            id=inject_id or str(uuid.uuid4()),
            scenario_id=scenario_id,
            origin=InjectOrigin.SCRIPTED,
            type=type,
            title=title,
            content=content,
            severity=severity,
            scope=scope,
            affected_roles=list(affected_roles or []),
            target_teams=list(target_teams or []),
            requires_response=requires_response,
            requires_coordination=requires_coordination,
            trigger_time_minutes=trigger_time_minutes,
            trigger_condition=trigger_condition,
        )
        self.state.save_inject(inject, replace=True)
        logger.info(
            "Added %s inject %s to scenario %s",
            "time-triggered" if inject.is_time_triggered else "condition-triggered",
            inject.id,
            scenario_id,
        )
        return inject

    # Sessions ----------------------------------------------------------
    def create_session(self, scenario_id: str, trainer_id: str, session_id: Optional[str] = None) -> Session:
        if self.state.get_scenario(scenario_id) is None:
            raise ValueError(f"Unknown scenario: {scenario_id}")
        session = Session(
            id=session_id or str(uuid.uuid4()),
            scenario_id=scenario_id,
            status=SessionStatus.SCHEDULED,
            trainer_id=trainer_id,
        )
        self.state.upsert_session(session)
        return session

    def _transition(self, session_id: str, allowed: Tuple[SessionStatus, ...], target: SessionStatus) -> Session:
        session = self.state.require_session(session_id)
        if session.status not in allowed:
            raise self.SessionStateError(
                f"Session {session_id} is {session.status.value}; cannot move to {target.value}"
            )
        session.status = target
        return session

    def start_session(self, session_id: str, now: Optional[datetime] = None) -> Session:
        session = self._transition(session_id, (SessionStatus.SCHEDULED,), SessionStatus.IN_PROGRESS)
        session.start_time = now or utc_now()
        self.state.upsert_session(session)
        logger.info("Session %s started", session_id)
        return session

    def pause_session(self, session_id: str) -> Session:
        session = self._transition(session_id, (SessionStatus.IN_PROGRESS,), SessionStatus.PAUSED)
        self.state.upsert_session(session)
        return session

    def resume_session(self, session_id: str) -> Session:
        session = self._transition(session_id, (SessionStatus.PAUSED,), SessionStatus.IN_PROGRESS)
        self.state.upsert_session(session)
        return session

    def complete_session(self, session_id: str) -> Session:
        session = self._transition(
            session_id, (SessionStatus.IN_PROGRESS, SessionStatus.PAUSED), SessionStatus.COMPLETED
        )
        self.state.upsert_session(session)
        logger.info("Session %s completed", session_id)
        return session

    def join_session(
        self,
        session_id: str,
        user_id: str,
        role: str,
        *,
        display_name: Optional[str] = None,
        team: Optional[str] = None,
    ) -> Participant:
        session = self.state.require_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise self.SessionStateError(f"Session {session_id} is completed")
        participant = Participant(user_id=user_id, role=role, display_name=display_name, team=team)
        self.state.add_participant(session_id, participant)
        return participant

    def set_objective(self, session_id: str, objective: ObjectiveStatus) -> None:
        self.state.require_session(session_id)
        self.state.upsert_objective(session_id, objective)

    # Decisions ---------------------------------------------------------
    def _participant(self, session_id: str, user_id: str) -> Optional[Participant]:
        for participant in self.state.participants(session_id):
            if participant.user_id == user_id:
                return participant
        return None

    def propose_decision(
        self,
        session_id: str,
        user_id: str,
        *,
        title: str,
        description: str,
        type: str,
        resources_needed: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        session = self.state.require_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            raise self.SessionStateError(f"Session {session_id} is completed")
        participant = self._participant(session_id, user_id)
        decision = Decision(
            id=str(uuid.uuid4()),
            session_id=session_id,
            title=title,
            description=description,
            type=type,
            proposed_by=user_id,
            proposed_by_name=participant.display_name if participant else None,
            team=participant.team if participant else None,
            resources_needed=dict(resources_needed or {}),
        )
        self.state.save_decision(decision)
        return decision

    def _require_decision(self, decision_id: str) -> Decision:
        decision = self.state.get_decision(decision_id)
        if decision is None:
            raise self.DecisionStateError(f"Decision not found: {decision_id}")
        return decision

    def approve_decision(self, decision_id: str) -> Decision:
        decision = self._require_decision(decision_id)
        if decision.status != DecisionStatus.PROPOSED:
            raise self.DecisionStateError(f"Decision {decision_id} is {decision.status.value}; cannot approve")
        decision.status = DecisionStatus.APPROVED
        self.state.save_decision(decision)
        return decision

    def reject_decision(self, decision_id: str) -> Decision:
        decision = self._require_decision(decision_id)
        if decision.status not in (DecisionStatus.PROPOSED, DecisionStatus.APPROVED):
            raise self.DecisionStateError(f"Decision {decision_id} is {decision.status.value}; cannot reject")
        decision.status = DecisionStatus.REJECTED
        self.state.save_decision(decision)
        return decision

    async def execute_decision(
        self,
        decision_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Decision, Optional[DispatchResult]]:
        """Execute an approved decision once, update session state and dispatch triggers.

        A dispatch failure is logged; the execution itself stands.
        """

        now = now or utc_now()
        decision = self._require_decision(decision_id)
        session = self.state.require_session(decision.session_id)
        if session.status == SessionStatus.COMPLETED:
            raise self.SessionStateError(f"Session {session.id} is completed")
        if decision.status != DecisionStatus.APPROVED:
            raise self.DecisionStateError(f"Decision {decision_id} is {decision.status.value}; cannot execute")
        if not self.state.mark_decision_executed(decision_id, now):
            raise self.DecisionStateError(f"Decision {decision_id} was executed concurrently")

        decision = self._require_decision(decision_id)
        session.current_state = apply_decision(session.current_state, decision, now)
        self.state.update_session_state(session.id, session.current_state, decision_id=decision.id, timestamp=now)

        dispatch: Optional[DispatchResult] = None
        try:
            dispatch = await self.dispatcher.dispatch(session, decision, now=now)
        except Exception as exc:
            logger.exception("Decision dispatch failed for %s", decision_id)
            self._telemetry.track_error(
                type(exc).__name__, source="decision_dispatch", session_id=session.id, error_details=str(exc)
            )
        return decision, dispatch

    # Feeds -------------------------------------------------------------
    def visible_injects(
        self,
        session_id: str,
        role: str,
        team: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Published injects the given participant may see, newest first."""

        feed = [
            {**record.metadata, "published_at": record.timestamp.isoformat()}
            for record in self.state.publications(session_id)
        ]
        visible = filter_visible(feed, role, team)
        return [dict(item) for item in (visible[:limit] if limit else visible)]

    # Engine ------------------------------------------------------------
    def start_engine(self) -> None:
        self.inject_scheduler.start()
        self.reaction_scheduler.start()

    def stop_engine(self) -> None:
        self.inject_scheduler.stop()
        self.reaction_scheduler.stop()
        self._telemetry.flush()

    async def run_engine_once(self, now: Optional[datetime] = None) -> Tuple[TickReport, TickReport]:
        """Run one tick of each scheduler, time-based first."""

        inject_report = await self.inject_scheduler.run_tick(now)
        reaction_report = await self.reaction_scheduler.run_tick(now)
        return inject_report, reaction_report


__all__ = ["ExerciseService", "apply_decision"]
