"""Generative oracle capabilities consumed by the exercise engine.

Every capability is a single JSON-mode chat completion. Responses are
normalised into the engine's dataclasses here; malformed items are dropped
rather than repaired. Callers decide how failures are handled.
"""
from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from .llm_client import LLMClient, LLMConfig, LLMGenerationError, get_llm_client
from .models import (
    CancellationVerdict,
    DeEscalationFactor,
    DeEscalationPathway,
    Decision,
    DecisionClassification,
    EscalationFactor,
    EscalationPathway,
    GeneratedInject,
    Inject,
    InjectScope,
    Severity,
)

if TYPE_CHECKING:
    from .escalation import EscalationContext
    from .generation import GenerationContext

logger = logging.getLogger(__name__)

DECISION_CATEGORIES = (
    "emergency_declaration",
    "resource_allocation",
    "public_statement",
    "policy_change",
    "coordination_order",
    "operational_action",
)

_CLASSIFY_SYSTEM = """You are an expert crisis management analyst. Your task is to classify decisions made during emergency response scenarios.

Analyze the decision and classify it into one or more of these categories:
- emergency_declaration: Declarations of emergency, evacuation orders, safety measures
- resource_allocation: Allocation of personnel, equipment, or resources
- public_statement: Public communications, press releases, official statements
- policy_change: Changes to policies, procedures, or protocols
- coordination_order: Inter-agency coordination, joint operations
- operational_action: Tactical operations, field actions, direct interventions

Return ONLY valid JSON in this exact format:
{
  "primary_category": "emergency_declaration",
  "categories": ["emergency_declaration", "operational_action"],
  "keywords": ["evacuation", "zone", "500m", "radius"],
  "semantic_tags": ["evacuation_order", "geographic_restriction", "safety_measure"],
  "confidence": 0.95
}"""

_CANCEL_SYSTEM = """You review scheduled events in a crisis-response training exercise.
A scripted inject is about to be released. Decide whether decisions the players executed in the last few minutes have already made it obsolete or contradictory (for example a scheduled "device detonates" after players safely disarmed the device).
Only cancel when releasing the inject would clearly contradict what the players have done.

Return ONLY valid JSON in this exact format:
{"cancel": false, "reason": "short explanation"}"""

_FACTORS_SYSTEM = """You assess escalation risk in a live crisis-response training exercise.
Identify between {low} and {high} escalation factors: concrete conditions that could make the situation worse.
Each factor has a severity of low, medium, high or critical.

Return ONLY valid JSON in this exact format:
{{"factors": [{{"id": "ef-1", "name": "Short name", "description": "One or two sentences", "severity": "high"}}]}}"""

_DE_FACTORS_SYSTEM = """You assess mitigations in a live crisis-response training exercise.
Given the escalation factors below, identify between {low} and {high} de-escalation factors: conditions or capabilities that would counter them.
De-escalation factors are mitigations and carry no severity.

Return ONLY valid JSON in this exact format:
{{"factors": [{{"id": "df-1", "name": "Short name", "description": "One or two sentences"}}]}}"""

_PATHWAYS_SYSTEM = """You project how a live crisis-response training exercise could develop.
From the escalation factors below, derive between {low} and {high} escalation pathways.
Each pathway is a trajectory by which the situation could worsen, with {b_low} to {b_high} trigger behaviours that would set it off.

Return ONLY valid JSON in this exact format:
{{"pathways": [{{"id": "ep-1", "trajectory": "Narrative trajectory", "trigger_behaviours": ["behaviour"]}}]}}"""

_DE_PATHWAYS_SYSTEM = """You project how a live crisis-response training exercise could improve.
From the escalation pathways and de-escalation factors below, derive between {low} and {high} de-escalation pathways.
Each pathway has a trajectory, {b_low} to {b_high} mitigating behaviours, and {c_low} to {c_high} emerging challenges: new secondary problems that can surface even after mitigation so the exercise stays active.

Return ONLY valid JSON in this exact format:
{{"pathways": [{{"id": "dp-1", "trajectory": "Narrative trajectory", "mitigating_behaviours": ["behaviour"], "emerging_challenges": ["challenge"]}}]}}"""

_IMPACT_SYSTEM = """You evaluate inter-team consequences in a multi-agency crisis-response training exercise.
For each acting team that made decisions in the window, score every other team it affected from -2 (severely hindered) to +2 (strongly helped). Do not score a team against itself.
Optionally score each decision's robustness from 1 (increases escalation risk) to 10 (strongly mitigates it), keyed by decision id.

Return ONLY valid JSON in this exact format:
{"matrix": {"acting_team": {"affected_team": 1}}, "robustness": {"decision-id": 7}, "analysis": "Short reasoning"}"""

_INJECT_SYSTEM = """You are the exercise controller for a multi-agency crisis-response training exercise.
Decide whether the players' recent decisions warrant a new inject (a report, development or complication) and, if so, write it.

Rules:
- Returning no inject is a valid outcome. Set "should_generate" to false when nothing new is warranted.
- Default scope is "role_specific". Use "universal" only for information every participant must see.
- Set "requires_response" to true when the content needs active correction or operational action (misinformation, active threats, citizen emergencies); leave it false for purely informational updates.
- Avoid themes and angles already overused in this scope; the theme ledger lists them with counts.
- Never contradict upcoming scripted injects or decisions the players already executed.
- When robustness and impact scores show things improving, bias toward de-escalation content but still surface at least one unresolved problem.

Return ONLY valid JSON in this exact format:
{
  "should_generate": true,
  "reason": "Why this inject is warranted",
  "inject": {
    "type": "one of: media_report, field_update, citizen_call, intel_brief, resource_shortage, weather_change, political_pressure",
    "title": "Inject title",
    "content": "Detailed inject content",
    "severity": "one of: low, medium, high, critical",
    "inject_scope": "role_specific",
    "affected_roles": ["role"],
    "requires_response": false,
    "requires_coordination": false
  }
}"""


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [_text(item) for item in value if _text(item)]


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _items(response: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    raw = response.get(key)
    if not isinstance(raw, list):
        raise LLMGenerationError(f"Response is missing the '{key}' list")
    return [item for item in raw if isinstance(item, dict)]


def _format_decision(decision: Decision) -> str:
    return f"Title: {decision.title}\nDescription: {decision.description}\nType: {decision.type}"


class ExerciseOracle:
    """Model-backed implementation of the seven oracle capabilities."""

    def __init__(self, client: Optional[LLMClient] = None) -> None:
        self._client = client or get_llm_client()

    async def classify_decision(self, decision: Decision) -> DecisionClassification:
        response = await self._client.complete_json(
            _CLASSIFY_SYSTEM,
            f"Classify this decision:\n\n{_format_decision(decision)}\n\n"
            "Provide a detailed classification with high confidence.",
            capability="classify_decision",
            temperature=0.3,
            max_tokens=500,
        )
        return DecisionClassification.from_dict(response)

    async def should_cancel(
        self,
        inject: Inject,
        recent_decisions: Sequence[Decision],
    ) -> CancellationVerdict:
        response = await self._client.complete_json(
            _CANCEL_SYSTEM,
            "Scheduled inject:\n"
            f"{_dump({'title': inject.title, 'type': inject.type, 'content': inject.content})}\n\n"
            "Decisions executed in the last few minutes:\n"
            f"{_dump([d.summary() for d in recent_decisions])}",
            capability="should_cancel",
            temperature=0.2,
            max_tokens=300,
        )
        cancel = response.get("cancel")
        if not isinstance(cancel, bool):
            raise LLMGenerationError("Cancellation verdict is missing a boolean 'cancel'")
        reason = _text(response.get("reason")) or None
        return CancellationVerdict(cancel=cancel, reason=reason)

    async def identify_escalation_factors(
        self,
        context: "EscalationContext",
        bounds: Tuple[int, int] = (3, 8),
    ) -> List[EscalationFactor]:
        response = await self._client.complete_json(
            _FACTORS_SYSTEM.format(low=bounds[0], high=bounds[1]),
            f"Exercise context:\n{_dump(context.as_prompt_dict())}",
            capability="escalation_factors",
        )
        factors = []
        for index, item in enumerate(_items(response, "factors"), start=1):
            name = _text(item.get("name"))
            if not name:
                continue
            factors.append(
                EscalationFactor(
                    id=_text(item.get("id")) or f"ef-{index}",
                    name=name,
                    description=_text(item.get("description")),
                    severity=Severity.coerce(item.get("severity")),
                )
            )
        return factors

    async def identify_de_escalation_factors(
        self,
        context: "EscalationContext",
        factors: Sequence[EscalationFactor],
        bounds: Tuple[int, int] = (3, 8),
    ) -> List[DeEscalationFactor]:
        response = await self._client.complete_json(
            _DE_FACTORS_SYSTEM.format(low=bounds[0], high=bounds[1]),
            f"Exercise context:\n{_dump(context.as_prompt_dict())}\n\n"
            f"Escalation factors:\n{_dump([{'name': f.name, 'description': f.description, 'severity': f.severity.value} for f in factors])}",
            capability="de_escalation_factors",
        )
        result = []
        for index, item in enumerate(_items(response, "factors"), start=1):
            name = _text(item.get("name"))
            if not name:
                continue
            result.append(
                DeEscalationFactor(
                    id=_text(item.get("id")) or f"df-{index}",
                    name=name,
                    description=_text(item.get("description")),
                )
            )
        return result

    async def generate_escalation_pathways(
        self,
        context: "EscalationContext",
        factors: Sequence[EscalationFactor],
        bounds: Tuple[int, int] = (2, 6),
        behaviour_bounds: Tuple[int, int] = (1, 4),
    ) -> List[EscalationPathway]:
        response = await self._client.complete_json(
            _PATHWAYS_SYSTEM.format(
                low=bounds[0], high=bounds[1], b_low=behaviour_bounds[0], b_high=behaviour_bounds[1]
            ),
            f"Exercise context:\n{_dump(context.as_prompt_dict())}\n\n"
            f"Escalation factors:\n{_dump([{'name': f.name, 'description': f.description, 'severity': f.severity.value} for f in factors])}",
            capability="escalation_pathways",
        )
        result = []
        for index, item in enumerate(_items(response, "pathways"), start=1):
            trajectory = _text(item.get("trajectory"))
            if not trajectory:
                continue
            result.append(
                EscalationPathway(
                    id=_text(item.get("id")) or f"ep-{index}",
                    trajectory=trajectory,
                    trigger_behaviours=_string_list(item.get("trigger_behaviours")),
                )
            )
        return result

    async def generate_de_escalation_pathways(
        self,
        context: "EscalationContext",
        pathways: Sequence[EscalationPathway],
        de_factors: Sequence[DeEscalationFactor],
        bounds: Tuple[int, int] = (2, 6),
        behaviour_bounds: Tuple[int, int] = (1, 4),
        challenge_bounds: Tuple[int, int] = (0, 2),
    ) -> List[DeEscalationPathway]:
        response = await self._client.complete_json(
            _DE_PATHWAYS_SYSTEM.format(
                low=bounds[0],
                high=bounds[1],
                b_low=behaviour_bounds[0],
                b_high=behaviour_bounds[1],
                c_low=challenge_bounds[0],
                c_high=challenge_bounds[1],
            ),
            f"Exercise context:\n{_dump(context.as_prompt_dict())}\n\n"
            f"Escalation pathways:\n{_dump([{'trajectory': p.trajectory, 'trigger_behaviours': p.trigger_behaviours} for p in pathways])}\n\n"
            f"De-escalation factors:\n{_dump([{'name': f.name, 'description': f.description} for f in de_factors])}",
            capability="de_escalation_pathways",
        )
        result = []
        for index, item in enumerate(_items(response, "pathways"), start=1):
            trajectory = _text(item.get("trajectory"))
            if not trajectory:
                continue
            result.append(
                DeEscalationPathway(
                    id=_text(item.get("id")) or f"dp-{index}",
                    trajectory=trajectory,
                    mitigating_behaviours=_string_list(item.get("mitigating_behaviours")),
                    emerging_challenges=_string_list(item.get("emerging_challenges")),
                )
            )
        return result

    async def compute_impact_matrix(
        self,
        teams: Sequence[str],
        decisions: Sequence[Decision],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Return the raw ``matrix``/``robustness``/``analysis`` mapping."""

        response = await self._client.complete_json(
            _IMPACT_SYSTEM,
            f"Teams present: {_dump(list(teams))}\n\n"
            f"Decisions executed in the window:\n{_dump([d.summary() for d in decisions])}\n\n"
            f"Exercise context:\n{_dump(context)}",
            capability="impact_matrix",
            temperature=0.3,
        )
        if not isinstance(response.get("matrix", {}), dict):
            raise LLMGenerationError("Impact matrix response has a non-object 'matrix'")
        return response

    async def generate_inject(
        self,
        decision: Dict[str, Any],
        context: "GenerationContext",
    ) -> Optional[GeneratedInject]:
        """Return a candidate inject, or None when the oracle declines."""

        response = await self._client.complete_json(
            _INJECT_SYSTEM,
            f"Decision to react to:\n{_dump(decision)}\n\n"
            f"Exercise context:\n{_dump(context.as_prompt_dict())}",
            capability="generate_inject",
            temperature=0.8,
            max_tokens=2000,
        )
        if not _flag(response.get("should_generate")):
            logger.debug("Oracle declined to generate an inject: %s", response.get("reason"))
            return None
        return parse_generated_inject(response.get("inject"))


def parse_generated_inject(raw: Any) -> GeneratedInject:
    if not isinstance(raw, dict):
        raise LLMGenerationError("Inject payload is missing")
    title = _text(raw.get("title"))
    content = _text(raw.get("content"))
    if not title or not content:
        raise LLMGenerationError("Inject payload is missing a title or content")
    return GeneratedInject(
        type=_text(raw.get("type")) or "field_update",
        title=title,
        content=content,
        severity=Severity.coerce(raw.get("severity")),
        scope=InjectScope.coerce(raw.get("inject_scope") or raw.get("scope"), InjectScope.ROLE_SPECIFIC),
        affected_roles=_string_list(raw.get("affected_roles")),
        requires_response=_flag(raw.get("requires_response")),
        requires_coordination=_flag(raw.get("requires_coordination")),
    )


_MOCK_CATEGORY_RULES = (
    ("emergency_declaration", ("evacuat", "emergency", "cordon", "lockdown", "shelter")),
    ("resource_allocation", ("deploy", "allocat", "resource", "dispatch", "ambulance", "supplies")),
    ("public_statement", ("statement", "press", "announce", "public", "media")),
    ("policy_change", ("policy", "protocol", "procedure")),
    ("coordination_order", ("coordinat", "joint", "liaison", "command post")),
)
_WORD = re.compile(r"[a-z0-9]+")


class MockExerciseOracle:
    """Deterministic offline oracle used when ``LLM_MODE=mock``."""

    async def classify_decision(self, decision: Decision) -> DecisionClassification:
        text = f"{decision.title} {decision.description}".lower()
        categories = [
            category
            for category, markers in _MOCK_CATEGORY_RULES
            if any(marker in text for marker in markers)
        ] or ["operational_action"]
        words = [w for w in _WORD.findall(decision.title.lower()) if len(w) > 3]
        return DecisionClassification(
            primary_category=categories[0],
            categories=categories,
            keywords=list(dict.fromkeys(words))[:6],
            semantic_tags=[categories[0]],
            confidence=0.6,
        )

    async def should_cancel(self, inject: Inject, recent_decisions: Sequence[Decision]) -> CancellationVerdict:
        return CancellationVerdict(cancel=False, reason=None)

    async def identify_escalation_factors(self, context, bounds=(3, 8)) -> List[EscalationFactor]:
        return [
            EscalationFactor("ef-1", "Crowd density", "Large crowds remain near the incident site.", Severity.HIGH),
            EscalationFactor("ef-2", "Information gaps", "Unverified reports are circulating.", Severity.MEDIUM),
            EscalationFactor("ef-3", "Responder fatigue", "Front-line teams have worked without relief.", Severity.MEDIUM),
        ]

    async def identify_de_escalation_factors(self, context, factors, bounds=(3, 8)) -> List[DeEscalationFactor]:
        return [
            DeEscalationFactor("df-1", "Clear perimeter", "An enforced cordon limits crowd movement."),
            DeEscalationFactor("df-2", "Regular briefings", "Official updates displace rumours."),
            DeEscalationFactor("df-3", "Shift rotation", "Relief crews restore responder capacity."),
        ]

    async def generate_escalation_pathways(
        self, context, factors, bounds=(2, 6), behaviour_bounds=(1, 4)
    ) -> List[EscalationPathway]:
        return [
            EscalationPathway("ep-1", "Crowd surge overwhelms the cordon.", ["delayed perimeter"]),
            EscalationPathway("ep-2", "Rumours trigger panic buying.", ["silence from officials"]),
        ]

    async def generate_de_escalation_pathways(
        self,
        context,
        pathways,
        de_factors,
        bounds=(2, 6),
        behaviour_bounds=(1, 4),
        challenge_bounds=(0, 2),
    ) -> List[DeEscalationPathway]:
        return [
            DeEscalationPathway("dp-1", "Perimeter holds and crowds disperse.", ["staffed cordon"], ["traffic backlog"]),
            DeEscalationPathway("dp-2", "Briefings restore public confidence.", ["hourly updates"], []),
        ]

    async def compute_impact_matrix(self, teams, decisions, context) -> Dict[str, Any]:
        acting = sorted({d.team for d in decisions if d.team})
        return {
            "matrix": {team: {other: 0 for other in teams if other != team} for team in acting},
            "robustness": {d.id: 5 for d in decisions},
            "analysis": "Mock assessment: neutral impact.",
        }

    async def generate_inject(self, decision: Dict[str, Any], context) -> Optional[GeneratedInject]:
        title = decision.get("title") or "Recent activity"
        return GeneratedInject(
            type="field_update",
            title=f"Field update: {title}",
            content=f"Units on the ground report developments following '{title}'.",
            severity=Severity.MEDIUM,
            scope=InjectScope.ROLE_SPECIFIC,
        )


def build_oracle(config: Optional[LLMConfig] = None):
    """Select the model-backed oracle, or the mock one when ``LLM_MODE=mock``."""

    config = config or LLMConfig.from_env()
    if config.mock_mode:
        logger.info("Using mock exercise oracle")
        return MockExerciseOracle()
    return ExerciseOracle(LLMClient(config))


__all__ = [
    "DECISION_CATEGORIES",
    "ExerciseOracle",
    "MockExerciseOracle",
    "build_oracle",
    "parse_generated_inject",
]
