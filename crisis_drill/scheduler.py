"""Polling schedulers for live exercise sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler

from .config import Settings
from .models import CancellationVerdict, Decision, Inject, Session, utc_now
from .publisher import Publisher
from .state import DuplicatePublicationError, ExerciseState, InjectCancelledError
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    """Outcome of processing one session within a tick."""

    session_id: str
    ok: bool = True
    reason: Optional[str] = None
    published: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    generated: int = 0


@dataclass
class TickReport:
    scheduler: str
    started_at: datetime
    results: List[SessionResult] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def sessions(self) -> int:
        return len(self.results)

    @property
    def failures(self) -> List[SessionResult]:
        return [r for r in self.results if not r.ok]

    @property
    def published_count(self) -> int:
        return sum(len(r.published) for r in self.results)

    @property
    def cancelled_count(self) -> int:
        return sum(len(r.cancelled) for r in self.results)


class PollingScheduler(ABC):
    """Runs ``process_session`` for every live session on a fixed interval.

    Ticks never overlap: the interval job is registered with
    ``max_instances=1`` and ``coalesce=True``. One session's failure is
    recorded in the tick report and the tick moves on.
    """

    name = "polling_scheduler"

    def __init__(self, state: ExerciseState, interval_seconds: float) -> None:
        self._state = state
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    def start(self) -> None:
        if self._scheduler is not None:
            logger.debug("%s already running", self.name)
            return
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self._run_job,
            "interval",
            seconds=self._interval_seconds,
            id=self.name,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("%s started with %.0fs interval", self.name, self._interval_seconds)
        get_telemetry().track_system_event("scheduler_started", source=self.name)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("%s stopped", self.name)
        get_telemetry().track_system_event("scheduler_stopped", source=self.name)

    def _run_job(self) -> None:
        try:
            asyncio.run(self.run_tick())
        except Exception:
            logger.exception("%s tick aborted", self.name)
            get_telemetry().track_error("tick_aborted", source=self.name)

    def sessions(self) -> List[Session]:
        return self._state.active_sessions()

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or utc_now()
        started = time.time()
        report = TickReport(scheduler=self.name, started_at=now)
        telemetry = get_telemetry()

        for session in self.sessions():
            try:
                result = await self.process_session(session, now)
            except Exception as exc:
                logger.exception("%s failed for session %s", self.name, session.id)
                result = SessionResult(session_id=session.id, ok=False, reason=f"{type(exc).__name__}: {exc}")
                telemetry.track_error(type(exc).__name__, source=self.name, session_id=session.id, error_details=str(exc))
            report.results.append(result)
            telemetry.track_session_cycle(
                scheduler=self.name, session_id=session.id, ok=result.ok, reason=result.reason
            )

        report.duration_ms = (time.time() - started) * 1000
        telemetry.track_tick(
            scheduler=self.name,
            duration_ms=report.duration_ms,
            sessions=report.sessions,
            failures=len(report.failures),
            published=report.published_count,
            cancelled=report.cancelled_count,
        )
        if report.sessions:
            logger.debug(
                "%s tick: %d sessions, %d published, %d cancelled, %d failed",
                self.name,
                report.sessions,
                report.published_count,
                report.cancelled_count,
                len(report.failures),
            )
        self.last_report = report
        return report

    @abstractmethod
    async def process_session(self, session: Session, now: datetime) -> SessionResult:
        """Run one cycle for a single session."""


class InjectScheduler(PollingScheduler):
    """Publishes scripted injects whose trigger minute has arrived."""

    name = "inject_scheduler"

    def __init__(
        self,
        state: ExerciseState,
        oracle,
        publisher: Publisher,
        settings: Settings,
    ) -> None:
        super().__init__(state, settings.inject_interval_seconds)
        self._oracle = oracle
        self._publisher = publisher
        self._settings = settings

    def start(self) -> None:
        if not self._settings.enable_auto_injects:
            logger.info("Automatic time-based injects disabled; %s not started", self.name)
            return
        super().start()

    async def _should_cancel(
        self,
        session: Session,
        inject: Inject,
        recent: Sequence[Decision],
    ) -> CancellationVerdict:
        try:
            return await self._oracle.should_cancel(inject, recent)
        except Exception as exc:
            logger.warning(
                "Cancellation check failed for inject %s in session %s, publishing anyway: %s",
                inject.id,
                session.id,
                exc,
            )
            return CancellationVerdict(cancel=False)

    async def process_session(self, session: Session, now: datetime) -> SessionResult:
        result = SessionResult(session_id=session.id)
        elapsed = session.elapsed_minutes(now)
        due = self._state.due_time_injects(session.scenario_id, elapsed)
        if not due:
            return result

        settled = self._state.published_inject_ids(session.id) | self._state.cancelled_inject_ids(session.id)
        candidates = [inject for inject in due if inject.id not in settled]
        if not candidates:
            return result

        since = now - timedelta(minutes=self._settings.activity_window_minutes)
        recent = self._state.executed_decisions(session.id, since=since, newest_first=True)

        for inject in candidates:
            if recent:
                verdict = await self._should_cancel(session, inject, recent)
                if verdict.cancel:
                    if self._publisher.cancel(session.id, inject, verdict.reason, timestamp=now):
                        result.cancelled.append(inject.id)
                    continue

            if self._state.is_published(session.id, inject.id):
                continue
            try:
                self._publisher.publish(session.id, inject, source=self.name, timestamp=now)
            except (DuplicatePublicationError, InjectCancelledError) as exc:
                logger.debug("Skipping inject %s for session %s: %s", inject.id, session.id, exc)
                continue
            result.published.append(inject.id)

        return result


__all__ = [
    "BackgroundScheduler",
    "InjectScheduler",
    "PollingScheduler",
    "SessionResult",
    "TickReport",
]
