"""Core data models for the exercise engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"


class DecisionStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    EXECUTED = "executed"
    REJECTED = "rejected"


class InjectOrigin(str, Enum):
    SCRIPTED = "scripted"
    GENERATED = "generated"


class InjectScope(str, Enum):
    UNIVERSAL = "universal"
    ROLE_SPECIFIC = "role_specific"
    TEAM_SPECIFIC = "team_specific"

    @classmethod
    def coerce(cls, value: Any, default: "InjectScope") -> "InjectScope":
        try:
            return cls(str(value).lower())
        except ValueError:
            return default


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def coerce(cls, value: Any, default: Optional["Severity"] = None) -> "Severity":
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.MEDIUM


class EventKind(str, Enum):
    """Entry types in the append-only session event log."""

    INJECT = "inject"
    INJECT_CANCELLED = "inject_cancelled"


class TeamResponse(str, Enum):
    """How a team showed up in an evaluation window."""

    ABSENT = "absent"
    TEXTUAL = "textual"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    scenario_id: str
    status: SessionStatus
    trainer_id: Optional[str] = None
    start_time: Optional[datetime] = None
    current_state: Dict[str, Any] = field(default_factory=dict)

    def elapsed_minutes(self, now: datetime) -> int:
        if self.start_time is None:
            return 0
        return max(0, int((now - self.start_time).total_seconds() // 60))


@dataclass
class Scenario:
    id: str
    title: str
    description: str = ""


@dataclass
class Participant:
    user_id: str
    role: str
    display_name: Optional[str] = None
    team: Optional[str] = None


@dataclass
class ObjectiveStatus:
    objective_id: str
    name: str
    status: str = "not_started"
    progress_percentage: int = 0


def _terms(value: Any) -> List[str]:
    # Single characters would substring-match almost any trigger keyword
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if len(str(v).strip()) >= 2]


@dataclass
class DecisionClassification:
    primary_category: str
    categories: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    semantic_tags: List[str] = field(default_factory=list)
    confidence: float = 0.8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_category": self.primary_category,
            "categories": list(self.categories),
            "keywords": list(self.keywords),
            "semantic_tags": list(self.semantic_tags),
            "confidence": self.confidence,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "DecisionClassification":
        primary = str(data.get("primary_category") or "operational_action")
        categories = data.get("categories")
        return DecisionClassification(
            primary_category=primary,
            categories=[str(c) for c in categories] if isinstance(categories, list) else [primary],
            keywords=_terms(data.get("keywords")),
            semantic_tags=_terms(data.get("semantic_tags")),
            confidence=float(data["confidence"]) if isinstance(data.get("confidence"), (int, float)) else 0.8,
        )


@dataclass
class Decision:
    id: str
    session_id: str
    title: str
    description: str
    type: str
    proposed_by: str
    status: DecisionStatus = DecisionStatus.PROPOSED
    team: Optional[str] = None
    proposed_by_name: Optional[str] = None
    executed_at: Optional[datetime] = None
    resources_needed: Dict[str, Any] = field(default_factory=dict)
    classification: Optional[DecisionClassification] = None

    def summary(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "team": self.team,
            "proposed_by": self.proposed_by_name or self.proposed_by,
        }
        if self.executed_at is not None:
            payload["executed_at"] = self.executed_at.isoformat()
        if self.classification is not None:
            payload["classification"] = self.classification.primary_category
        return payload


@dataclass
class Inject:
    id: str
    scenario_id: str
    origin: InjectOrigin
    type: str
    title: str
    content: str
    severity: Severity = Severity.MEDIUM
    scope: InjectScope = InjectScope.UNIVERSAL
    affected_roles: List[str] = field(default_factory=list)
    target_teams: List[str] = field(default_factory=list)
    requires_response: bool = False
    requires_coordination: bool = False
    trigger_time_minutes: Optional[int] = None
    trigger_condition: Optional[str] = None
    provenance: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_time_triggered(self) -> bool:
        return self.origin == InjectOrigin.SCRIPTED and self.trigger_time_minutes is not None

    @property
    def is_condition_triggered(self) -> bool:
        return (
            self.origin == InjectOrigin.SCRIPTED
            and self.trigger_time_minutes is None
            and bool(self.trigger_condition)
        )

    def announcement(self) -> Dict[str, Any]:
        """Payload broadcast to session subscribers on publication."""

        return {
            "inject_id": self.id,
            "type": self.type,
            "title": self.title,
            "content": self.content,
            "severity": self.severity.value,
            "inject_scope": self.scope.value,
            "affected_roles": list(self.affected_roles),
            "target_teams": list(self.target_teams) or None,
            "requires_response": self.requires_response,
            "requires_coordination": self.requires_coordination,
        }


@dataclass
class PublicationRecord:
    session_id: str
    inject_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CancellationRecord:
    session_id: str
    inject_id: str
    timestamp: datetime
    reason: Optional[str] = None


@dataclass
class CancellationVerdict:
    cancel: bool
    reason: Optional[str] = None


@dataclass
class EscalationFactor:
    id: str
    name: str
    description: str
    severity: Severity = Severity.MEDIUM


@dataclass
class DeEscalationFactor:
    id: str
    name: str
    description: str


@dataclass
class EscalationPathway:
    id: str
    trajectory: str
    trigger_behaviours: List[str] = field(default_factory=list)


@dataclass
class DeEscalationPathway:
    id: str
    trajectory: str
    mitigating_behaviours: List[str] = field(default_factory=list)
    emerging_challenges: List[str] = field(default_factory=list)


@dataclass
class EscalationAssessment:
    """One evaluation cycle's escalation artefacts."""

    factors: List[EscalationFactor] = field(default_factory=list)
    de_escalation_factors: List[DeEscalationFactor] = field(default_factory=list)
    pathways: List[EscalationPathway] = field(default_factory=list)
    de_escalation_pathways: List[DeEscalationPathway] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.factors
            or self.de_escalation_factors
            or self.pathways
            or self.de_escalation_pathways
        )


@dataclass
class ImpactMatrixSnapshot:
    session_id: str
    timestamp: datetime
    matrix: Dict[str, Dict[str, int]] = field(default_factory=dict)
    robustness: Dict[str, int] = field(default_factory=dict)
    response_taxonomy: Dict[str, str] = field(default_factory=dict)
    analysis: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.matrix and not self.robustness


@dataclass
class GeneratedInject:
    """Candidate inject proposed by the oracle, prior to persistence."""

    type: str
    title: str
    content: str
    severity: Severity = Severity.MEDIUM
    scope: InjectScope = InjectScope.ROLE_SPECIFIC
    affected_roles: List[str] = field(default_factory=list)
    requires_response: bool = False
    requires_coordination: bool = False
