"""Settings parsing and environment overrides."""
from __future__ import annotations

from crisis_drill.config import DEFAULT_SETTINGS_PATH, Settings, SettingsLoader


def test_defaults_from_empty_mapping():
    settings = Settings.from_dict({})

    assert settings.environment == "development"
    assert settings.enable_auto_injects is False
    assert settings.inject_interval_seconds == 30
    assert settings.reaction_interval_seconds == 300
    assert settings.activity_window_minutes == 5
    assert settings.max_injects_per_decision == 2
    assert settings.dispatch_mode == "both"
    assert settings.factor_bounds == (3, 8)
    assert settings.pathway_bounds == (2, 6)
    assert settings.behaviour_bounds == (1, 4)
    assert settings.challenge_bounds == (0, 2)


def test_auto_injects_default_on_in_production_only():
    assert Settings.from_dict({"environment": "production"}).enable_auto_injects is True
    explicit = Settings.from_dict({"environment": "production", "inject_scheduler": {"enabled": False}})
    assert explicit.enable_auto_injects is False
    assert Settings.from_dict({"inject_scheduler": {"enabled": True}}).enable_auto_injects is True


def test_inverted_bounds_and_unknown_mode_are_repaired():
    settings = Settings.from_dict(
        {
            "escalation": {"factors": {"min": 6, "max": 2}},
            "dispatcher": {"mode": "everything"},
        }
    )

    assert settings.factor_bounds == (6, 6)
    assert settings.dispatch_mode == "both"


def test_env_overrides_apply_valid_values_only():
    base = Settings.from_dict({})
    updated = base.with_env_overrides(
        {
            "CRISIS_DRILL_ENABLE_AUTO_INJECTS": "yes",
            "CRISIS_DRILL_INJECT_INTERVAL_SECONDS": "10",
            "CRISIS_DRILL_REACTION_INTERVAL_SECONDS": "-5",
            "CRISIS_DRILL_MAX_INJECTS_PER_DECISION": "three",
            "CRISIS_DRILL_DISPATCH_MODE": "GENERATE",
        }
    )

    assert updated.enable_auto_injects is True
    assert updated.inject_interval_seconds == 10
    assert updated.reaction_interval_seconds == 300
    assert updated.max_injects_per_decision == 2
    assert updated.dispatch_mode == "generate"


def test_env_overrides_without_matches_return_same_instance():
    base = Settings.from_dict({})
    assert base.with_env_overrides({"UNRELATED": "1"}) is base


def test_loader_reads_packaged_settings():
    loader = SettingsLoader()
    settings = loader.load()

    assert loader.path == DEFAULT_SETTINGS_PATH
    assert settings.environment == "development"
    assert settings.enable_auto_injects is False
    assert settings.universal_requires_activity is True
    assert loader.load() is settings


def test_loader_force_reload_picks_up_changes(tmp_path, monkeypatch):
    path = tmp_path / "settings.yaml"
    path.write_text("dispatcher:\n  max_injects_per_decision: 4\n")
    loader = SettingsLoader(path)
    assert loader.load().max_injects_per_decision == 4

    path.write_text("dispatcher:\n  max_injects_per_decision: 1\n")
    assert loader.load().max_injects_per_decision == 4
    assert loader.load(force=True).max_injects_per_decision == 1

    monkeypatch.setenv("CRISIS_DRILL_MAX_INJECTS_PER_DECISION", "3")
    assert loader.load(force=True).max_injects_per_decision == 3
