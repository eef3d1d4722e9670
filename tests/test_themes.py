"""Theme classification and the per-scope usage ledger."""
from __future__ import annotations

from crisis_drill.models import Inject, InjectOrigin, InjectScope
from crisis_drill.themes import (
    MAX_KEYWORDS,
    MIN_KEYWORDS,
    UNIVERSAL_SCOPE,
    ThemeLibrary,
    build_theme_ledger,
    classify_inject_theme,
    ledger_from_injects,
)


def _announcement(title, content="", scope="universal", teams=None):
    return {"title": title, "content": content, "inject_scope": scope, "target_teams": teams}


def test_first_matching_rule_wins():
    # mentions both a rumour and an ambulance shortage; misinformation is listed first
    theme, keywords = classify_inject_theme("Rumour of ambulance shortage", "A viral post claims crews quit.")

    assert theme == "misinformation_media"
    assert "rumour" in keywords
    assert MIN_KEYWORDS <= len(keywords) <= MAX_KEYWORDS


def test_unmatched_text_uses_fallback_theme_with_title_words():
    theme, keywords = classify_inject_theme("Weather forecast", "Light drizzle expected tonight.")

    assert theme == "general_development"
    assert keywords[:2] == ["weather", "forecast"]


def test_keywords_are_capped():
    text = "misinformation disinformation rumour viral fake journalist"
    _, keywords = classify_inject_theme(text)
    assert len(keywords) == MAX_KEYWORDS


def test_missing_rules_file_classifies_everything_as_fallback(tmp_path):
    library = ThemeLibrary(tmp_path / "absent.yaml")
    assert library.theme_ids == []
    assert library.classify("Viral rumour")[0] == "general_development"


def test_ledger_counts_per_scope_and_globally():
    entries = [
        _announcement("Viral rumour spreads", "Residents share a fake evacuation map."),
        _announcement("Journalist questions casualty figures"),
        _announcement("Social media claims hospital closed"),
        _announcement("Ambulance shortage", "Two crews are unavailable."),
    ]
    ledger = build_theme_ledger(entries)

    expected = {"misinformation_media": 3, "resource_strain": 1}
    assert ledger.counts(UNIVERSAL_SCOPE) == expected
    assert ledger.counts() == expected


def test_team_and_role_scopes_feed_the_ledger_differently():
    entries = [
        _announcement("Ambulance shortage", scope="team_specific", teams=["triage"]),
        _announcement("Fuel supplies low", scope="team_specific", teams=["triage", "evacuation"]),
        _announcement("Crowd at the cordon", scope="role_specific"),
    ]
    ledger = build_theme_ledger(entries)

    assert ledger.counts("triage") == {"resource_strain": 2}
    assert ledger.counts("evacuation") == {"resource_strain": 1}
    assert ledger.counts(UNIVERSAL_SCOPE) == {}
    assert ledger.counts() == {"resource_strain": 2, "evacuation_security": 1}


def test_prompt_view_orders_themes_by_usage():
    entries = [
        _announcement("Ambulance shortage"),
        _announcement("Viral rumour"),
        _announcement("Fake press release"),
    ]
    view = build_theme_ledger(entries).as_prompt_dict(UNIVERSAL_SCOPE)

    assert view["scope"] == UNIVERSAL_SCOPE
    assert list(view["scope_usage"]) == ["misinformation_media", "resource_strain"]
    assert view["scope_usage"]["misinformation_media"]["count"] == 2
    assert view["global_usage"]["resource_strain"]["count"] == 1


def test_ledger_from_injects_uses_announcements():
    inject = Inject(
        id="i-1",
        scenario_id="scn",
        origin=InjectOrigin.SCRIPTED,
        type="media_report",
        title="Viral video",
        content="A clip of the fire trends online.",
        scope=InjectScope.TEAM_SPECIFIC,
        target_teams=["evacuation"],
    )
    ledger = ledger_from_injects([inject])

    assert ledger.counts("evacuation") == {"misinformation_media": 1}
    assert ledger.for_scope("evacuation")["misinformation_media"].keywords[0] == "viral"
