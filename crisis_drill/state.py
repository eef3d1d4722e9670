"""Exercise state management and persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import (
    CancellationRecord,
    DeEscalationFactor,
    DeEscalationPathway,
    Decision,
    DecisionClassification,
    DecisionStatus,
    EscalationAssessment,
    EscalationFactor,
    EscalationPathway,
    EventKind,
    ImpactMatrixSnapshot,
    Inject,
    InjectOrigin,
    InjectScope,
    ObjectiveStatus,
    Participant,
    PublicationRecord,
    Scenario,
    Session,
    SessionStatus,
    Severity,
    utc_now,
)

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS scenarios (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    scenario_id TEXT NOT NULL,
    status TEXT NOT NULL,
    trainer_id TEXT,
    start_time TEXT,
    current_state TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_sessions_status
    ON sessions (status);
CREATE TABLE IF NOT EXISTS participants (
    session_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    display_name TEXT,
    PRIMARY KEY (session_id, user_id)
);
CREATE TABLE IF NOT EXISTS session_teams (
    session_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    team_name TEXT NOT NULL,
    PRIMARY KEY (session_id, user_id)
);
CREATE TABLE IF NOT EXISTS objectives (
    session_id TEXT NOT NULL,
    objective_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    progress_percentage INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (session_id, objective_id)
);
CREATE TABLE IF NOT EXISTS decisions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    type TEXT NOT NULL,
    proposed_by TEXT NOT NULL,
    proposed_by_name TEXT,
    team TEXT,
    status TEXT NOT NULL,
    executed_at TEXT,
    resources_needed TEXT NOT NULL DEFAULT '{}',
    classification TEXT
);
CREATE INDEX IF NOT EXISTS idx_decisions_executed
    ON decisions (session_id, status, executed_at);
CREATE TABLE IF NOT EXISTS injects (
    id TEXT PRIMARY KEY,
    scenario_id TEXT NOT NULL,
    origin TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    severity TEXT NOT NULL,
    scope TEXT NOT NULL,
    affected_roles TEXT NOT NULL DEFAULT '[]',
    target_teams TEXT NOT NULL DEFAULT '[]',
    requires_response INTEGER NOT NULL DEFAULT 0,
    requires_coordination INTEGER NOT NULL DEFAULT 0,
    trigger_time_minutes INTEGER,
    trigger_condition TEXT,
    provenance TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_injects_scenario
    ON injects (scenario_id, origin);
CREATE TABLE IF NOT EXISTS session_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    inject_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    description TEXT NOT NULL,
    metadata TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_session_events_published
    ON session_events (session_id, inject_id) WHERE event_type = 'inject';
CREATE UNIQUE INDEX IF NOT EXISTS uq_session_events_cancelled
    ON session_events (session_id, inject_id) WHERE event_type = 'inject_cancelled';
CREATE INDEX IF NOT EXISTS idx_session_events_time
    ON session_events (session_id, event_type, timestamp);
CREATE TABLE IF NOT EXISTS state_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    decision_id TEXT,
    created_at TEXT NOT NULL,
    state TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS escalation_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    created_at TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_escalation_snapshots_session
    ON escalation_snapshots (session_id, kind, id DESC);
CREATE TABLE IF NOT EXISTS impact_matrices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    matrix TEXT NOT NULL,
    robustness TEXT NOT NULL,
    response_taxonomy TEXT NOT NULL,
    analysis TEXT
);
CREATE INDEX IF NOT EXISTS idx_impact_matrices_session
    ON impact_matrices (session_id, id DESC);
"""

_ESCALATION_KINDS = (
    "escalation_factors",
    "de_escalation_factors",
    "escalation_pathways",
    "de_escalation_pathways",
)

_INJECT_COLUMNS = (
    "id, scenario_id, origin, type, title, content, severity, scope, affected_roles, "
    "target_teams, requires_response, requires_coordination, trigger_time_minutes, "
    "trigger_condition, provenance"
)


class StateError(RuntimeError):
    """Base class for store level failures."""


class DuplicatePublicationError(StateError):
    """Raised when an inject already has a publication record for the session."""


class InjectCancelledError(StateError):
    """Raised when publishing a scripted inject that has been cancelled."""


class UnknownSessionError(StateError):
    """Raised when a session id does not exist."""


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_inject(row: Iterable[Any]) -> Inject:
    (
        inject_id,
        scenario_id,
        origin,
        type_,
        title,
        content,
        severity,
        scope,
        affected_roles,
        target_teams,
        requires_response,
        requires_coordination,
        trigger_time_minutes,
        trigger_condition,
        provenance,
    ) = row
    return Inject(
        id=inject_id,
        scenario_id=scenario_id,
        origin=InjectOrigin(origin),
        type=type_,
        title=title,
        content=content,
        severity=Severity.coerce(severity),
        scope=InjectScope.coerce(scope, InjectScope.UNIVERSAL),
        affected_roles=json.loads(affected_roles),
        target_teams=json.loads(target_teams),
        requires_response=bool(requires_response),
        requires_coordination=bool(requires_coordination),
        trigger_time_minutes=trigger_time_minutes,
        trigger_condition=trigger_condition,
        provenance=json.loads(provenance),
    )


class ExerciseState:
    """High level interface for working with persistent exercise state."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=30.0)

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    # Scenarios ---------------------------------------------------------
    def upsert_scenario(self, scenario: Scenario) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "REPLACE INTO scenarios (id, title, description) VALUES (?, ?, ?)",
                (scenario.id, scenario.title, scenario.description),
            )
            conn.commit()

    def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, title, description FROM scenarios WHERE id = ?",
                (scenario_id,),
            ).fetchone()
        if not row:
            return None
        return Scenario(id=row[0], title=row[1], description=row[2])

    # Sessions ----------------------------------------------------------
    def upsert_session(self, session: Session) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "REPLACE INTO sessions (id, scenario_id, status, trainer_id, start_time, current_state)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.scenario_id,
                    session.status.value,
                    session.trainer_id,
                    _iso(session.start_time) if session.start_time else None,
                    json.dumps(session.current_state),
                ),
            )
            conn.commit()

    def get_session(self, session_id: str) -> Optional[Session]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, scenario_id, status, trainer_id, start_time, current_state"
                " FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def require_session(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session is None:
            raise UnknownSessionError(f"Session not found: {session_id}")
        return session

    def active_sessions(self) -> List[Session]:
        """Sessions in progress that have a recorded start time."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, scenario_id, status, trainer_id, start_time, current_state"
                " FROM sessions WHERE status = ? AND start_time IS NOT NULL ORDER BY start_time ASC",
                (SessionStatus.IN_PROGRESS.value,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    @staticmethod
    def _row_to_session(row: Iterable[Any]) -> Session:
        session_id, scenario_id, status, trainer_id, start_time, current_state = row
        try:
            state = json.loads(current_state) if current_state else {}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Malformed current_state for session %s", session_id)
            state = {}
        return Session(
            id=session_id,
            scenario_id=scenario_id,
            status=SessionStatus(status),
            trainer_id=trainer_id,
            start_time=_parse_ts(start_time),
            current_state=state,
        )

    def update_session_state(
        self,
        session_id: str,
        state: Dict[str, Any],
        *,
        decision_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Replace the session's state blob and keep a history snapshot."""

        state_json = json.dumps(state)
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE sessions SET current_state = ? WHERE id = ?",
                (state_json, session_id),
            )
            if cursor.rowcount == 0:
                raise UnknownSessionError(f"Session not found: {session_id}")
            conn.execute(
                "INSERT INTO state_history (session_id, decision_id, created_at, state) VALUES (?, ?, ?, ?)",
                (session_id, decision_id, _iso(timestamp or utc_now()), state_json),
            )
            conn.commit()

    def state_history(self, session_id: str) -> List[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT decision_id, created_at, state FROM state_history WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
        return [
            {"decision_id": row[0], "created_at": _parse_ts(row[1]), "state": json.loads(row[2])}
            for row in rows
        ]

    # Participants and teams --------------------------------------------
    def add_participant(self, session_id: str, participant: Participant) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "REPLACE INTO participants (session_id, user_id, role, display_name) VALUES (?, ?, ?, ?)",
                (session_id, participant.user_id, participant.role, participant.display_name),
            )
            if participant.team:
                conn.execute(
                    "REPLACE INTO session_teams (session_id, user_id, team_name) VALUES (?, ?, ?)",
                    (session_id, participant.user_id, participant.team),
                )
            else:
                conn.execute(
                    "DELETE FROM session_teams WHERE session_id = ? AND user_id = ?",
                    (session_id, participant.user_id),
                )
            conn.commit()

    def participants(self, session_id: str) -> List[Participant]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT p.user_id, p.role, p.display_name, t.team_name FROM participants p"
                " LEFT JOIN session_teams t ON t.session_id = p.session_id AND t.user_id = p.user_id"
                " WHERE p.session_id = ? ORDER BY p.user_id ASC",
                (session_id,),
            ).fetchall()
        return [
            Participant(user_id=row[0], role=row[1], display_name=row[2], team=row[3])
            for row in rows
        ]

    def teams(self, session_id: str) -> List[str]:
        """Names of teams that have at least one member in the session."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT DISTINCT team_name FROM session_teams WHERE session_id = ? ORDER BY team_name ASC",
                (session_id,),
            ).fetchall()
        return [row[0] for row in rows]

    # Objectives --------------------------------------------------------
    def upsert_objective(self, session_id: str, objective: ObjectiveStatus) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "REPLACE INTO objectives (session_id, objective_id, name, status, progress_percentage)"
                " VALUES (?, ?, ?, ?, ?)",
                (
                    session_id,
                    objective.objective_id,
                    objective.name,
                    objective.status,
                    objective.progress_percentage,
                ),
            )
            conn.commit()

    def objectives(self, session_id: str) -> List[ObjectiveStatus]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT objective_id, name, status, progress_percentage FROM objectives"
                " WHERE session_id = ? ORDER BY objective_id ASC",
                (session_id,),
            ).fetchall()
        return [
            ObjectiveStatus(objective_id=row[0], name=row[1], status=row[2], progress_percentage=row[3])
            for row in rows
        ]

    # Decisions ---------------------------------------------------------
    _DECISION_SELECT = (
        "SELECT d.id, d.session_id, d.title, d.description, d.type, d.proposed_by, d.proposed_by_name,"
        " COALESCE(d.team, t.team_name), d.status, d.executed_at, d.resources_needed, d.classification"
        " FROM decisions d LEFT JOIN session_teams t"
        " ON t.session_id = d.session_id AND t.user_id = d.proposed_by"
    )

    def save_decision(self, decision: Decision) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "REPLACE INTO decisions (id, session_id, title, description, type, proposed_by,"
                " proposed_by_name, team, status, executed_at, resources_needed, classification)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    decision.id,
                    decision.session_id,
                    decision.title,
                    decision.description,
                    decision.type,
                    decision.proposed_by,
                    decision.proposed_by_name,
                    decision.team,
                    decision.status.value,
                    _iso(decision.executed_at) if decision.executed_at else None,
                    json.dumps(decision.resources_needed),
                    json.dumps(decision.classification.to_dict()) if decision.classification else None,
                ),
            )
            conn.commit()

    def get_decision(self, decision_id: str) -> Optional[Decision]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"{self._DECISION_SELECT} WHERE d.id = ?",
                (decision_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_decision(row)

    def mark_decision_executed(self, decision_id: str, executed_at: datetime) -> bool:
        """Flip an approved decision to executed; returns False if it was not approved."""

        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "UPDATE decisions SET status = ?, executed_at = ? WHERE id = ? AND status = ?",
                (
                    DecisionStatus.EXECUTED.value,
                    _iso(executed_at),
                    decision_id,
                    DecisionStatus.APPROVED.value,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    def save_classification(self, decision_id: str, classification: DecisionClassification) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "UPDATE decisions SET classification = ? WHERE id = ?",
                (json.dumps(classification.to_dict()), decision_id),
            )
            conn.commit()

    def executed_decisions(
        self,
        session_id: str,
        *,
        since: Optional[datetime] = None,
        newest_first: bool = False,
    ) -> List[Decision]:
        query = f"{self._DECISION_SELECT} WHERE d.session_id = ? AND d.status = ?"
        params: List[Any] = [session_id, DecisionStatus.EXECUTED.value]
        if since is not None:
            query += " AND d.executed_at >= ?"
            params.append(_iso(since))
        query += " ORDER BY d.executed_at DESC" if newest_first else " ORDER BY d.executed_at ASC"
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_decision(row) for row in rows]

    @staticmethod
    def _row_to_decision(row: Iterable[Any]) -> Decision:
        (
            decision_id,
            session_id,
            title,
            description,
            type_,
            proposed_by,
            proposed_by_name,
            team,
            status,
            executed_at,
            resources_needed,
            classification,
        ) = row
        parsed_classification = None
        if classification:
            try:
                parsed_classification = DecisionClassification.from_dict(json.loads(classification))
            except (json.JSONDecodeError, TypeError, ValueError):
                logger.warning("Malformed classification stored for decision %s", decision_id)
        return Decision(
            id=decision_id,
            session_id=session_id,
            title=title,
            description=description,
            type=type_,
            proposed_by=proposed_by,
            proposed_by_name=proposed_by_name,
            team=team,
            status=DecisionStatus(status),
            executed_at=_parse_ts(executed_at),
            resources_needed=json.loads(resources_needed or "{}"),
            classification=parsed_classification,
        )

    # Injects -----------------------------------------------------------
    def save_inject(self, inject: Inject, *, replace: bool = False) -> bool:
        """Persist an inject; returns False if it already existed and ``replace`` is off."""

        verb = "REPLACE" if replace else "INSERT OR IGNORE"
        with closing(self._connect()) as conn:
            cursor = self._write_inject(conn, inject, verb)
            conn.commit()
            return cursor.rowcount == 1

    @staticmethod
    def _write_inject(conn: sqlite3.Connection, inject: Inject, verb: str) -> sqlite3.Cursor:
        return conn.execute(
            f"{verb} INTO injects ({_INJECT_COLUMNS}, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                inject.id,
                inject.scenario_id,
                inject.origin.value,
                inject.type,
                inject.title,
                inject.content,
                inject.severity.value,
                inject.scope.value,
                json.dumps(inject.affected_roles),
                json.dumps(inject.target_teams),
                int(inject.requires_response),
                int(inject.requires_coordination),
                inject.trigger_time_minutes,
                inject.trigger_condition,
                json.dumps(inject.provenance),
                _iso(utc_now()),
            ),
        )

    def get_inject(self, inject_id: str) -> Optional[Inject]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_INJECT_COLUMNS} FROM injects WHERE id = ?",
                (inject_id,),
            ).fetchone()
        if not row:
            return None
        return _row_to_inject(row)

    def due_time_injects(self, scenario_id: str, elapsed_minutes: int) -> List[Inject]:
        """Scripted time-triggered injects whose trigger minute has arrived."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_INJECT_COLUMNS} FROM injects WHERE scenario_id = ? AND origin = ?"
                " AND trigger_time_minutes IS NOT NULL AND trigger_time_minutes <= ?"
                " ORDER BY trigger_time_minutes ASC, id ASC",
                (scenario_id, InjectOrigin.SCRIPTED.value, elapsed_minutes),
            ).fetchall()
        return [_row_to_inject(row) for row in rows]

    def upcoming_time_injects(self, scenario_id: str, after_minute: int, limit: int = 10) -> List[Inject]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_INJECT_COLUMNS} FROM injects WHERE scenario_id = ? AND origin = ?"
                " AND trigger_time_minutes IS NOT NULL AND trigger_time_minutes > ?"
                " ORDER BY trigger_time_minutes ASC, id ASC LIMIT ?",
                (scenario_id, InjectOrigin.SCRIPTED.value, after_minute, limit),
            ).fetchall()
        return [_row_to_inject(row) for row in rows]

    def condition_injects(self, scenario_id: str) -> List[Inject]:
        """Scripted injects triggered by a decision condition rather than a clock."""

        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"SELECT {_INJECT_COLUMNS} FROM injects WHERE scenario_id = ? AND origin = ?"
                " AND trigger_time_minutes IS NULL AND trigger_condition IS NOT NULL"
                " ORDER BY created_at ASC, id ASC",
                (scenario_id, InjectOrigin.SCRIPTED.value),
            ).fetchall()
        return [_row_to_inject(row) for row in rows]

    # Publication and cancellation log ----------------------------------
    def _event_ids(self, session_id: str, kind: EventKind) -> Set[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT inject_id FROM session_events WHERE session_id = ? AND event_type = ?",
                (session_id, kind.value),
            ).fetchall()
        return {row[0] for row in rows}

    def published_inject_ids(self, session_id: str) -> Set[str]:
        return self._event_ids(session_id, EventKind.INJECT)

    def cancelled_inject_ids(self, session_id: str) -> Set[str]:
        return self._event_ids(session_id, EventKind.INJECT_CANCELLED)

    def is_published(self, session_id: str, inject_id: str) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM session_events WHERE session_id = ? AND event_type = ? AND inject_id = ?",
                (session_id, EventKind.INJECT.value, inject_id),
            ).fetchone()
        return row is not None

    def record_publication(
        self,
        session_id: str,
        inject: Inject,
        *,
        timestamp: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> PublicationRecord:
        """Persist the inject if needed and append its publication record.

        Runs as one immediate transaction so a concurrent cancellation or
        publication of the same inject cannot interleave.
        """

        moment = timestamp or utc_now()
        metadata = inject.announcement()
        metadata["origin"] = inject.origin.value
        if actor_id:
            metadata["actor_id"] = actor_id
        conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cancelled = conn.execute(
                    "SELECT 1 FROM session_events WHERE session_id = ? AND event_type = ? AND inject_id = ?",
                    (session_id, EventKind.INJECT_CANCELLED.value, inject.id),
                ).fetchone()
                if cancelled:
                    raise InjectCancelledError(
                        f"Inject {inject.id} was cancelled for session {session_id}"
                    )
                self._write_inject(conn, inject, "INSERT OR IGNORE")
                conn.execute(
                    "INSERT INTO session_events (session_id, event_type, inject_id, timestamp, description, metadata)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        EventKind.INJECT.value,
                        inject.id,
                        _iso(moment),
                        f"Inject published: {inject.title}",
                        json.dumps(metadata),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                conn.execute("ROLLBACK")
                raise DuplicatePublicationError(
                    f"Inject {inject.id} already published for session {session_id}"
                ) from exc
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        return PublicationRecord(
            session_id=session_id,
            inject_id=inject.id,
            timestamp=moment,
            metadata=metadata,
        )

    def record_cancellation(
        self,
        session_id: str,
        inject: Inject,
        reason: Optional[str],
        *,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Append a cancellation record; False if the inject is already published or cancelled."""

        moment = timestamp or utc_now()
        description = (
            f"Inject cancelled: {inject.title or inject.id} - "
            f"{reason or 'recent decisions made it obsolete'}"
        )
        conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                published = conn.execute(
                    "SELECT 1 FROM session_events WHERE session_id = ? AND event_type = ? AND inject_id = ?",
                    (session_id, EventKind.INJECT.value, inject.id),
                ).fetchone()
                if published:
                    conn.execute("ROLLBACK")
                    return False
                conn.execute(
                    "INSERT INTO session_events (session_id, event_type, inject_id, timestamp, description, metadata)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        EventKind.INJECT_CANCELLED.value,
                        inject.id,
                        _iso(moment),
                        description,
                        json.dumps({"inject_id": inject.id, "reason": reason, "cancelled_at": _iso(moment)}),
                    ),
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                return False
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        return True

    def publications(
        self,
        session_id: str,
        *,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PublicationRecord]:
        """Publication records, newest first."""

        query = (
            "SELECT inject_id, timestamp, metadata FROM session_events"
            " WHERE session_id = ? AND event_type = ?"
        )
        params: List[Any] = [session_id, EventKind.INJECT.value]
        if since is not None:
            query += " AND timestamp >= ?"
            params.append(_iso(since))
        query += " ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            PublicationRecord(
                session_id=session_id,
                inject_id=row[0],
                timestamp=_parse_ts(row[1]),
                metadata=json.loads(row[2]),
            )
            for row in rows
        ]

    def cancellations(self, session_id: str) -> List[CancellationRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT inject_id, timestamp, metadata FROM session_events"
                " WHERE session_id = ? AND event_type = ? ORDER BY id ASC",
                (session_id, EventKind.INJECT_CANCELLED.value),
            ).fetchall()
        return [
            CancellationRecord(
                session_id=session_id,
                inject_id=row[0],
                timestamp=_parse_ts(row[1]),
                reason=json.loads(row[2]).get("reason"),
            )
            for row in rows
        ]

    # Escalation snapshots ----------------------------------------------
    def record_escalation(
        self,
        session_id: str,
        assessment: EscalationAssessment,
        *,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Store one batch per artefact kind; empty batches are kept too."""

        moment = _iso(timestamp or utc_now())
        batches = {
            "escalation_factors": [
                {**asdict(item), "severity": item.severity.value} for item in assessment.factors
            ],
            "de_escalation_factors": [asdict(item) for item in assessment.de_escalation_factors],
            "escalation_pathways": [asdict(item) for item in assessment.pathways],
            "de_escalation_pathways": [asdict(item) for item in assessment.de_escalation_pathways],
        }
        with closing(self._connect()) as conn:
            for kind in _ESCALATION_KINDS:
                conn.execute(
                    "INSERT INTO escalation_snapshots (session_id, kind, created_at, payload) VALUES (?, ?, ?, ?)",
                    (session_id, kind, moment, json.dumps(batches[kind])),
                )
            conn.commit()

    def latest_escalation(self, session_id: str) -> EscalationAssessment:
        payloads: Dict[str, List[Dict[str, Any]]] = {}
        with closing(self._connect()) as conn:
            for kind in _ESCALATION_KINDS:
                row = conn.execute(
                    "SELECT payload FROM escalation_snapshots WHERE session_id = ? AND kind = ?"
                    " ORDER BY id DESC LIMIT 1",
                    (session_id, kind),
                ).fetchone()
                payloads[kind] = json.loads(row[0]) if row else []
        return EscalationAssessment(
            factors=[
                EscalationFactor(
                    id=item["id"],
                    name=item["name"],
                    description=item["description"],
                    severity=Severity.coerce(item.get("severity")),
                )
                for item in payloads["escalation_factors"]
            ],
            de_escalation_factors=[DeEscalationFactor(**item) for item in payloads["de_escalation_factors"]],
            pathways=[EscalationPathway(**item) for item in payloads["escalation_pathways"]],
            de_escalation_pathways=[DeEscalationPathway(**item) for item in payloads["de_escalation_pathways"]],
        )

    def count_escalation_snapshots(self, session_id: str, kind: str = "escalation_factors") -> int:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM escalation_snapshots WHERE session_id = ? AND kind = ?",
                (session_id, kind),
            ).fetchone()
        return int(row[0]) if row else 0

    # Impact matrices ---------------------------------------------------
    def record_impact_matrix(self, snapshot: ImpactMatrixSnapshot) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "INSERT INTO impact_matrices (session_id, created_at, matrix, robustness, response_taxonomy, analysis)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (
                    snapshot.session_id,
                    _iso(snapshot.timestamp),
                    json.dumps(snapshot.matrix),
                    json.dumps(snapshot.robustness),
                    json.dumps(snapshot.response_taxonomy),
                    snapshot.analysis,
                ),
            )
            conn.commit()

    def impact_matrices(self, session_id: str, limit: Optional[int] = None) -> List[ImpactMatrixSnapshot]:
        """Impact matrix history, newest first."""

        query = (
            "SELECT created_at, matrix, robustness, response_taxonomy, analysis FROM impact_matrices"
            " WHERE session_id = ? ORDER BY id DESC"
        )
        params: tuple = (session_id,)
        if limit is not None:
            query += " LIMIT ?"
            params = (session_id, limit)
        with closing(self._connect()) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ImpactMatrixSnapshot(
                session_id=session_id,
                timestamp=_parse_ts(row[0]),
                matrix=json.loads(row[1]),
                robustness=json.loads(row[2]),
                response_taxonomy=json.loads(row[3]),
                analysis=row[4],
            )
            for row in rows
        ]

    def latest_impact_matrix(self, session_id: str) -> Optional[ImpactMatrixSnapshot]:
        history = self.impact_matrices(session_id, limit=1)
        return history[0] if history else None


__all__ = [
    "DuplicatePublicationError",
    "ExerciseState",
    "InjectCancelledError",
    "StateError",
    "UnknownSessionError",
]
