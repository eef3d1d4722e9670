"""Configuration loading utilities for the exercise engine."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"

_DISPATCH_MODES = ("match", "generate", "both")


def _bounds(raw: Any, default: Tuple[int, int]) -> Tuple[int, int]:
    if not isinstance(raw, dict):
        return default
    low = int(raw.get("min", default[0]))
    high = int(raw.get("max", default[1]))
    if high < low:
        high = low
    return low, high


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    environment: str
    enable_auto_injects: bool
    inject_interval_seconds: float
    reaction_interval_seconds: float
    universal_requires_activity: bool
    activity_window_minutes: int
    upcoming_inject_limit: int
    recent_inject_limit: int
    max_injects_per_decision: int
    dispatch_mode: str
    factor_bounds: Tuple[int, int]
    pathway_bounds: Tuple[int, int]
    behaviour_bounds: Tuple[int, int]
    challenge_bounds: Tuple[int, int]

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        environment = str(data.get("environment", "development"))
        inject_cfg = data.get("inject_scheduler", {}) or {}
        reaction_cfg = data.get("reaction_scheduler", {}) or {}
        windows = data.get("windows", {}) or {}
        dispatcher = data.get("dispatcher", {}) or {}
        escalation = data.get("escalation", {}) or {}

        enabled = inject_cfg.get("enabled")
        if enabled is None:
            # Auto-injects default on in production only
            enabled = environment == "production"

        mode = str(dispatcher.get("mode", "both")).lower()
        if mode not in _DISPATCH_MODES:
            logger.warning("Unknown dispatch mode %r, using 'both'", mode)
            mode = "both"

        return Settings(
            environment=environment,
            enable_auto_injects=bool(enabled),
            inject_interval_seconds=float(inject_cfg.get("interval_seconds", 30)),
            reaction_interval_seconds=float(reaction_cfg.get("interval_seconds", 300)),
            universal_requires_activity=bool(reaction_cfg.get("universal_requires_activity", True)),
            activity_window_minutes=int(windows.get("activity_minutes", 5)),
            upcoming_inject_limit=int(windows.get("upcoming_inject_limit", 10)),
            recent_inject_limit=int(windows.get("recent_inject_limit", 10)),
            max_injects_per_decision=max(0, int(dispatcher.get("max_injects_per_decision", 2))),
            dispatch_mode=mode,
            factor_bounds=_bounds(escalation.get("factors"), (3, 8)),
            pathway_bounds=_bounds(escalation.get("pathways"), (2, 6)),
            behaviour_bounds=_bounds(escalation.get("behaviours"), (1, 4)),
            challenge_bounds=_bounds(escalation.get("emerging_challenges"), (0, 2)),
        )

    def with_env_overrides(self, env: Mapping[str, str]) -> "Settings":
        """Return a copy with ``CRISIS_DRILL_*`` environment values applied."""

        overrides: Dict[str, Any] = {}
        raw = env.get("CRISIS_DRILL_ENABLE_AUTO_INJECTS")
        if raw is not None:
            parsed = _parse_bool(raw)
            if parsed is None:
                logger.warning("Invalid CRISIS_DRILL_ENABLE_AUTO_INJECTS value: %s", raw)
            else:
                overrides["enable_auto_injects"] = parsed
        for key, field_name in (
            ("CRISIS_DRILL_INJECT_INTERVAL_SECONDS", "inject_interval_seconds"),
            ("CRISIS_DRILL_REACTION_INTERVAL_SECONDS", "reaction_interval_seconds"),
        ):
            raw = env.get(key)
            if raw is None:
                continue
            try:
                value = float(raw)
            except ValueError:
                logger.warning("Invalid %s value: %s", key, raw)
                continue
            if value > 0:
                overrides[field_name] = value
        raw = env.get("CRISIS_DRILL_MAX_INJECTS_PER_DECISION")
        if raw is not None:
            try:
                overrides["max_injects_per_decision"] = max(0, int(raw))
            except ValueError:
                logger.warning("Invalid CRISIS_DRILL_MAX_INJECTS_PER_DECISION value: %s", raw)
        raw = env.get("CRISIS_DRILL_DISPATCH_MODE")
        if raw is not None:
            if raw.lower() in _DISPATCH_MODES:
                overrides["dispatch_mode"] = raw.lower()
            else:
                logger.warning("Invalid CRISIS_DRILL_DISPATCH_MODE value: %s", raw)
        if not overrides:
            return self
        return replace(self, **overrides)


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data).with_env_overrides(os.environ)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
