"""Trigger conditions for scripted injects released by decisions.

A stored condition is either a JSON object::

    {"type": "decision_based",
     "match_criteria": {"categories": [...], "keywords": [...], "semantic_tags": [...]},
     "match_mode": "any"}

or the short text form ``category:X AND keyword:Y AND tag:Z`` which always
matches in ``any`` mode.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .models import DecisionClassification

logger = logging.getLogger(__name__)

MATCH_ANY = "any"
MATCH_ALL = "all"

_TEXT_PREFIXES = (
    ("category:", "categories"),
    ("keyword:", "keywords"),
    ("tag:", "semantic_tags"),
)


@dataclass(frozen=True)
class TriggerCondition:
    categories: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    semantic_tags: List[str] = field(default_factory=list)
    match_mode: str = MATCH_ANY

    @property
    def has_criteria(self) -> bool:
        return bool(self.categories or self.keywords or self.semantic_tags)


def _clean(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [str(v).strip() for v in values if str(v).strip()]


def _from_json(data: Any) -> Optional[TriggerCondition]:
    if not isinstance(data, dict) or data.get("type") != "decision_based":
        return None
    criteria = data.get("match_criteria")
    if not isinstance(criteria, dict):
        return None
    mode = str(data.get("match_mode") or MATCH_ANY).lower()
    if mode not in (MATCH_ANY, MATCH_ALL):
        logger.warning("Unknown trigger match_mode %r, using 'any'", mode)
        mode = MATCH_ANY
    return TriggerCondition(
        categories=_clean(criteria.get("categories")),
        keywords=_clean(criteria.get("keywords")),
        semantic_tags=_clean(criteria.get("semantic_tags")),
        match_mode=mode,
    )


def _from_text(raw: str) -> Optional[TriggerCondition]:
    found = {"categories": [], "keywords": [], "semantic_tags": []}
    for part in raw.split(" AND "):
        part = part.strip()
        for prefix, key in _TEXT_PREFIXES:
            if part.startswith(prefix):
                value = part[len(prefix):].strip()
                if value:
                    found[key].append(value)
                break
    if not any(found.values()):
        return None
    return TriggerCondition(match_mode=MATCH_ANY, **found)


def parse_trigger_condition(raw: Optional[str]) -> Optional[TriggerCondition]:
    """Parse a stored condition; returns None when it cannot be understood."""

    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return _from_text(raw)
    return _from_json(data)


def matches_trigger_condition(
    condition: Optional[TriggerCondition],
    classification: DecisionClassification,
) -> bool:
    """Return True when the classification satisfies the condition.

    A condition without criteria never matches.
    """

    if condition is None:
        return False

    results: List[bool] = []
    if condition.categories:
        present = {c.lower() for c in classification.categories}
        results.append(any(c.lower() in present for c in condition.categories))

    if condition.keywords:
        pool = [k.strip().lower() for k in classification.keywords if len(k.strip()) >= 2]
        pool.extend(part for part in classification.primary_category.lower().split("_") if len(part) >= 2)
        results.append(
            any(
                wanted.lower() in candidate or candidate in wanted.lower()
                for wanted in condition.keywords
                for candidate in pool
            )
        )

    if condition.semantic_tags:
        tags = {t.lower() for t in classification.semantic_tags}
        results.append(any(t.lower() in tags for t in condition.semantic_tags))

    if not results:
        return False
    if condition.match_mode == MATCH_ALL:
        return all(results)
    return any(results)


__all__ = [
    "MATCH_ALL",
    "MATCH_ANY",
    "TriggerCondition",
    "matches_trigger_condition",
    "parse_trigger_condition",
]
