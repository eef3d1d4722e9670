"""Commits injects to a session's event log and notifies subscribers."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .events import EventBus, EventType, get_event_bus
from .models import Inject, PublicationRecord, utc_now
from .state import ExerciseState
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)


class Publisher:
    """Appends publication and cancellation records.

    Callers check the publication log before publishing; the store's unique
    index rejects a second record for the same inject with
    ``DuplicatePublicationError`` and a cancelled scripted inject with
    ``InjectCancelledError``.
    """

    def __init__(self, state: ExerciseState, bus: Optional[EventBus] = None) -> None:
        self._state = state
        self._bus = bus or get_event_bus()

    def publish(
        self,
        session_id: str,
        inject: Inject,
        *,
        source: str,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> PublicationRecord:
        record = self._state.record_publication(
            session_id,
            inject,
            timestamp=timestamp or utc_now(),
            actor_id=actor_id,
        )
        logger.info(
            "Published inject %s (%s, %s) to session %s via %s",
            inject.id,
            inject.origin.value,
            inject.scope.value,
            session_id,
            source,
        )
        get_telemetry().track_publication(
            session_id=session_id,
            inject_id=inject.id,
            origin=inject.origin.value,
            scope=inject.scope.value,
            source=source,
        )
        self._bus.emit(
            EventType.INJECT_PUBLISHED,
            session_id,
            published_at=record.timestamp.isoformat(),
            source=source,
            **record.metadata,
        )
        return record

    def cancel(
        self,
        session_id: str,
        inject: Inject,
        reason: Optional[str],
        *,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Record a permanent cancellation; False if the inject was already published or cancelled."""

        moment = timestamp or utc_now()
        if not self._state.record_cancellation(session_id, inject, reason, timestamp=moment):
            logger.debug("Inject %s already settled for session %s, not cancelling", inject.id, session_id)
            return False
        logger.info("Cancelled inject %s for session %s: %s", inject.id, session_id, reason)
        get_telemetry().track_cancellation(session_id=session_id, inject_id=inject.id, reason=reason)
        self._bus.emit(
            EventType.INJECT_CANCELLED,
            session_id,
            inject_id=inject.id,
            title=inject.title,
            reason=reason,
            cancelled_at=moment.isoformat(),
        )
        return True


__all__ = ["Publisher"]
