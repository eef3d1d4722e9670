"""Narrative theme tracking for inject diversity."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from .models import Inject, InjectScope

_THEME_RULES_PATH = Path(__file__).parent / "data" / "theme_rules.yaml"

UNIVERSAL_SCOPE = "universal"
MIN_KEYWORDS = 2
MAX_KEYWORDS = 5
_LEDGER_KEYWORD_SAMPLE = 8

_WORD = re.compile(r"[a-z][a-z'-]+")
_STOPWORDS = frozenset(
    {
        "about", "after", "again", "against", "their", "there", "these", "those",
        "this", "that", "with", "from", "into", "have", "been", "were", "will",
        "would", "could", "should", "which", "while", "where", "when", "what",
        "update", "report", "reports", "urgent", "some", "more", "than", "also",
    }
)


class ThemeLibrary:
    """Loads ordered theme rules and classifies inject text."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _THEME_RULES_PATH
        self._rules: List[Tuple[str, List[str]]] = []
        self._fallback = "general_development"
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            self._rules = []
            return
        with self._path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        self._fallback = str(raw.get("fallback") or self._fallback)
        self._rules = [
            (
                str(rule["id"]),
                [str(phrase).lower() for phrase in rule.get("phrases") or [] if phrase],
            )
            for rule in raw.get("themes") or []
            if isinstance(rule, dict) and rule.get("id")
        ]

    @property
    def theme_ids(self) -> List[str]:
        return [theme for theme, _ in self._rules]

    @property
    def fallback(self) -> str:
        return self._fallback

    def classify(self, title: str, content: str = "") -> Tuple[str, List[str]]:
        """Return ``(theme, keywords)``; the first rule with a matching phrase wins."""

        text = f"{title} {content}".lower()
        for theme, phrases in self._rules:
            hits = [phrase for phrase in phrases if phrase in text]
            if hits:
                return theme, _keywords(hits, title, content)
        return self._fallback, _keywords([], title, content)


def _keywords(hits: List[str], title: str, content: str) -> List[str]:
    keywords: List[str] = []
    for phrase in hits:
        if phrase not in keywords:
            keywords.append(phrase)
        if len(keywords) == MAX_KEYWORDS:
            return keywords
    if len(keywords) >= MIN_KEYWORDS:
        return keywords
    for word in _WORD.findall(f"{title} {content}".lower()):
        if len(word) < 4 or word in _STOPWORDS or word in keywords:
            continue
        if any(word in existing for existing in keywords):
            continue
        keywords.append(word)
        if len(keywords) >= MIN_KEYWORDS:
            break
    return keywords


@dataclass
class ThemeUsage:
    count: int = 0
    keywords: List[str] = field(default_factory=list)

    def add(self, keywords: Iterable[str]) -> None:
        self.count += 1
        for keyword in keywords:
            if keyword not in self.keywords and len(self.keywords) < _LEDGER_KEYWORD_SAMPLE:
                self.keywords.append(keyword)

    def as_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "keywords": list(self.keywords)}


@dataclass
class ThemeLedger:
    """Theme usage tallied globally and per delivery scope.

    Scope keys are ``"universal"`` or a team name. Role-specific injects only
    contribute to the global tally.
    """

    global_usage: Dict[str, ThemeUsage] = field(default_factory=dict)
    scopes: Dict[str, Dict[str, ThemeUsage]] = field(default_factory=dict)

    def record(self, theme: str, keywords: List[str], scope_keys: Iterable[str]) -> None:
        self.global_usage.setdefault(theme, ThemeUsage()).add(keywords)
        for key in scope_keys:
            self.scopes.setdefault(key, {}).setdefault(theme, ThemeUsage()).add(keywords)

    def note(self, entry: Mapping[str, Any], library: Optional["ThemeLibrary"] = None) -> str:
        """Classify one inject announcement into the ledger and return its theme."""

        library = library or get_theme_library()
        theme, keywords = library.classify(str(entry.get("title") or ""), str(entry.get("content") or ""))
        scope = str(entry.get("inject_scope") or InjectScope.UNIVERSAL.value)
        self.record(theme, keywords, _scope_keys(scope, entry.get("target_teams")))
        return theme

    def for_scope(self, scope_key: str) -> Dict[str, ThemeUsage]:
        return dict(self.scopes.get(scope_key, {}))

    def counts(self, scope_key: Optional[str] = None) -> Dict[str, int]:
        usage = self.global_usage if scope_key is None else self.scopes.get(scope_key, {})
        return {theme: entry.count for theme, entry in usage.items()}

    def as_prompt_dict(self, scope_key: str) -> Dict[str, Any]:
        """Ledger view handed to the generator for one scope."""

        def ordered(usage: Mapping[str, ThemeUsage]) -> Dict[str, Any]:
            ranked = sorted(usage.items(), key=lambda item: (-item[1].count, item[0]))
            return {theme: entry.as_dict() for theme, entry in ranked}

        return {
            "scope": scope_key,
            "scope_usage": ordered(self.scopes.get(scope_key, {})),
            "global_usage": ordered(self.global_usage),
        }


def _scope_keys(scope: str, target_teams: Optional[Iterable[str]]) -> List[str]:
    if scope == InjectScope.UNIVERSAL.value:
        return [UNIVERSAL_SCOPE]
    if scope == InjectScope.TEAM_SPECIFIC.value:
        return [team for team in target_teams or [] if team]
    return []


def build_theme_ledger(
    entries: Iterable[Mapping[str, Any]],
    library: Optional[ThemeLibrary] = None,
) -> ThemeLedger:
    """Tally themes for inject announcements (``title``/``content``/``inject_scope``/``target_teams``)."""

    library = library or get_theme_library()
    ledger = ThemeLedger()
    for entry in entries:
        ledger.note(entry, library)
    return ledger


def ledger_from_injects(injects: Iterable[Inject], library: Optional[ThemeLibrary] = None) -> ThemeLedger:
    return build_theme_ledger((inject.announcement() for inject in injects), library)


_THEME_LIBRARY: Optional[ThemeLibrary] = None


def get_theme_library() -> ThemeLibrary:
    global _THEME_LIBRARY
    if _THEME_LIBRARY is None:
        _THEME_LIBRARY = ThemeLibrary()
    return _THEME_LIBRARY


def classify_inject_theme(title: str, content: str = "") -> Tuple[str, List[str]]:
    """Lookup helper using the packaged theme rules."""

    return get_theme_library().classify(title, content)


__all__ = [
    "ThemeLedger",
    "ThemeLibrary",
    "ThemeUsage",
    "UNIVERSAL_SCOPE",
    "build_theme_ledger",
    "classify_inject_theme",
    "get_theme_library",
    "ledger_from_injects",
]
