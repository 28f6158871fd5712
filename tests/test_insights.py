"""Tests for visualization hints and follow-up suggestions."""

from discovery.insights import (
    VIZ_CHART,
    VIZ_MAP,
    VIZ_TIMELINE,
    suggest_followups,
    viz_hint,
)
from discovery.store.models import TOOL_COMPLETE, TOOL_FAILED, ToolCall, make_id


def _call(tool_name: str, result: dict | None, *, status: str = TOOL_COMPLETE, **arguments):
    return ToolCall(
        id=make_id(), tool_name=tool_name, arguments=arguments, status=status, result=result
    )


def _hits(n: int, **fields) -> list[dict]:
    return [{"id": f"exp-{i}", "title": f"Report {i}", **fields} for i in range(n)]


# -- viz_hint ----------------------------------------------------------------


def test_located_experiences_go_on_a_map() -> None:
    call = _call("search", {"total": 2, "experiences": _hits(2, location="Phoenix, USA")})
    assert viz_hint(call) == VIZ_MAP


def test_single_located_experience_is_not_a_map() -> None:
    call = _call("search", {"total": 1, "experiences": _hits(1, location="Phoenix, USA")})
    assert viz_hint(call) == VIZ_CHART


def test_dated_experiences_form_a_timeline() -> None:
    call = _call("search", {"total": 3, "experiences": _hits(3, occurred_at="1997-03-13")})
    assert viz_hint(call) == VIZ_TIMELINE


def test_time_series_is_a_timeline() -> None:
    result = {
        "trend": "increasing",
        "historical": [{"period": "1997-01", "count": 2}],
        "predictions": [],
    }
    assert viz_hint(_call("trend-predict", result)) == VIZ_TIMELINE


def test_category_counts_are_a_chart() -> None:
    result = {"total": 4, "categories": [{"category": "ufo", "count": 4, "share": 1.0}]}
    assert viz_hint(_call("category-stats", result)) == VIZ_CHART


def test_no_hint_for_failed_or_empty_results() -> None:
    assert viz_hint(_call("search", None, status=TOOL_FAILED)) is None
    assert viz_hint(_call("search", {"total": 0, "experiences": []})) is None


# -- suggest_followups -------------------------------------------------------


def test_followups_for_located_dated_results() -> None:
    hits = _hits(6, location="Leeds, UK", occurred_at="1997-05-01", category="ufo")
    call = _call("search", {"total": 6, "experiences": hits}, location="Leeds")

    followups = suggest_followups("UFO sightings in 1997?", [call])

    assert [f.label for f in followups] == [
        "Show on map",
        "Timeline view",
        "Detect patterns",
        "Predict trends",
        "Compare categories",
    ]
    assert followups[0].query == "Show me a map of UFO sightings in 1997"
    assert followups[0].to_dict() == {
        "kind": "visualize",
        "label": "Show on map",
        "query": "Show me a map of UFO sightings in 1997",
    }


def test_followups_skip_analyses_already_run() -> None:
    hits = _hits(4, occurred_at="1997-05-01", category="ufo")
    calls = [
        _call("search", {"total": 4, "experiences": hits}),
        _call("trend-predict", {"historical": [{"period": "1997-05", "count": 4}]}),
        _call("category-stats", {"total": 4, "categories": [{"category": "ufo"}]}),
    ]

    labels = [f.label for f in suggest_followups("ufo", calls)]

    assert "Predict trends" not in labels
    assert "Compare categories" not in labels
    assert labels == ["Timeline view", "Related experiences"]


def test_nearby_suggestion_uses_search_location() -> None:
    call = _call("search", {"total": 1, "experiences": _hits(1)}, location="Oslo")
    labels = {f.label: f.query for f in suggest_followups("orbs", [call])}
    assert labels["Nearby locations"] == "Find similar experiences near Oslo"


def test_no_followups_without_results() -> None:
    assert suggest_followups("hello", []) == []
    assert suggest_followups("ufo", [_call("search", None, status=TOOL_FAILED)]) == []
