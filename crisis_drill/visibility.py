"""Who may see a published inject."""
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from .models import InjectScope

OVERSIGHT_ROLES = frozenset({"trainer", "admin"})


def can_view(
    inject: Mapping[str, Any],
    role: str,
    team: Optional[str] = None,
) -> bool:
    """Visibility check over a publication payload (``inject_scope``, ``affected_roles``, ``target_teams``)."""

    if role in OVERSIGHT_ROLES:
        return True
    scope = InjectScope.coerce(inject.get("inject_scope"), InjectScope.UNIVERSAL)
    if scope == InjectScope.UNIVERSAL:
        return True
    if scope == InjectScope.TEAM_SPECIFIC:
        return bool(team) and team in (inject.get("target_teams") or [])
    return role in (inject.get("affected_roles") or [])


def filter_visible(
    injects: Iterable[Mapping[str, Any]],
    role: str,
    team: Optional[str] = None,
) -> List[Mapping[str, Any]]:
    return [inject for inject in injects if can_view(inject, role, team)]


__all__ = ["OVERSIGHT_ROLES", "can_view", "filter_visible"]
