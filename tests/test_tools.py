"""Tests for the analysis tools: search, trend-predict and category-stats."""

import pytest

from discovery.store import DiscoveryStore, ExperienceRecord
from discovery.store.models import TOOL_COMPLETE
from discovery.tools import registry
from discovery.tools.base import ToolContext
from discovery.tools.search import query_terms, score_record
from discovery.tools.trends import analyse_series, bucket_counts, next_period, period_of

# -- search helpers ------------------------------------------------------------


def test_query_terms_drop_stopwords() -> None:
    assert query_terms("Any UFO sightings in 1997?") == ["ufo", "sightings", "1997"]


def test_query_terms_empty() -> None:
    assert query_terms(None) == []
    assert query_terms("the of a") == []


def test_score_record_fraction_of_terms() -> None:
    record = ExperienceRecord(
        id="r", title="Lights", description="amber lights", category="ufo", occurred_at="1997"
    )
    assert score_record(record, ["ufo", "1997"]) == 1.0
    assert score_record(record, ["ufo", "ghost"]) == 0.5
    assert score_record(record, []) == 1.0


# -- search --------------------------------------------------------------------


async def test_search_finds_ufo_1997(corpus: DiscoveryStore) -> None:
    call = await registry.invoke("search", {"query": "UFO 1997"})

    assert call.status == TOOL_COMPLETE
    ids = [e["id"] for e in call.result["experiences"]]
    assert ids == ["exp-phoenix", "exp-leeds", "exp-oslo"]
    assert call.result["total"] == 3
    assert all(e["relevance"] == 1.0 for e in call.result["experiences"])


async def test_search_any_match_ranks_partial_hits_lower(corpus: DiscoveryStore) -> None:
    call = await registry.invoke("search", {"query": "ufo 1997", "match": "any"})
    hits = call.result["experiences"]
    assert [e["id"] for e in hits[:3]] == ["exp-phoenix", "exp-leeds", "exp-oslo"]
    assert {e["id"] for e in hits[3:]} == {"exp-dream", "exp-lyon"}
    assert all(e["relevance"] == 0.5 for e in hits[3:])


async def test_search_filters_and_limit(corpus: DiscoveryStore) -> None:
    call = await registry.invoke(
        "search",
        {"query": "ufo", "date_from": "1997-06-01", "date_to": "1998-12-31", "limit": 2},
    )
    assert [e["id"] for e in call.result["experiences"]] == ["exp-leeds", "exp-oslo"]
    assert call.result["total"] == 3


async def test_search_rejects_bad_date(corpus: DiscoveryStore) -> None:
    call = await registry.invoke("search", {"query": "ufo", "date_from": "last year"})
    assert call.error["code"] == "invalid_arguments"
    assert "date_from" in call.error["fields"]


# -- trend helpers -------------------------------------------------------------


def test_period_of() -> None:
    assert period_of("1997-03-13", "month") == "1997-03"
    assert period_of("1997-03-13", "year") == "1997"
    assert period_of("unknown", "month") is None
    assert period_of("1997-13-01", "month") is None


def test_next_period_wraps_year() -> None:
    assert next_period("1997-12", "month") == "1998-01"
    assert next_period("1997", "year") == "1998"


def test_bucket_counts_fills_gaps() -> None:
    series = bucket_counts(["1997-01-02", "1997-03-09", "1997-03-20"], "month")
    assert series == [("1997-01", 1), ("1997-02", 0), ("1997-03", 2)]


def test_analyse_series_increasing() -> None:
    series = [("2001", 1), ("2002", 2), ("2003", 3), ("2004", 4)]
    analysis = analyse_series(series, "year", forecast_periods=2, confidence_level=0.95)

    assert analysis["trend"] == "increasing"
    assert analysis["significance"] == "strong"
    assert analysis["slope"] == pytest.approx(1.0)
    assert [p["period"] for p in analysis["predictions"]] == ["2005", "2006"]
    assert analysis["predictions"][0]["predicted"] == pytest.approx(5.0)


def test_analyse_series_flat_is_stable() -> None:
    series = [("2001", 2), ("2002", 2), ("2003", 2)]
    analysis = analyse_series(series, "year", forecast_periods=1, confidence_level=0.9)
    assert analysis["trend"] == "stable"
    assert analysis["r_squared"] == 0.0


# -- trend-predict -------------------------------------------------------------


async def test_trend_predict_uses_upstream_search(store: DiscoveryStore) -> None:
    upstream = {
        "search": {
            "query": "ufo",
            "total": 4,
            "experiences": [
                {"id": f"r{i}", "occurred_at": f"{year}-06-01"}
                for i, year in enumerate([2001, 2002, 2002, 2003])
            ],
        }
    }
    context = ToolContext(turn_id="t").with_upstream(upstream)

    call = await registry.invoke("trend-predict", {"granularity": "year"}, context)

    assert call.status == TOOL_COMPLETE
    assert call.result["historical"] == [
        {"period": "2001", "count": 1},
        {"period": "2002", "count": 2},
        {"period": "2003", "count": 1},
    ]
    assert len(call.result["predictions"]) == 3


async def test_trend_predict_insufficient_data(corpus: DiscoveryStore) -> None:
    call = await registry.invoke(
        "trend-predict", {"query": "ufo", "granularity": "year", "min_data_points": 5}
    )
    assert call.status == TOOL_COMPLETE
    assert call.result["trend"] == "insufficient_data"
    assert call.result["predictions"] == []
    assert [h["period"] for h in call.result["historical"]] == ["1997", "1998"]


async def test_trend_predict_rejects_out_of_range_forecast(corpus: DiscoveryStore) -> None:
    call = await registry.invoke("trend-predict", {"forecast_periods": 40})
    assert call.error["code"] == "invalid_arguments"


def test_trend_predict_runs_after_search() -> None:
    assert registry.get("trend-predict").after == ("search",)


# -- category-stats ------------------------------------------------------------


async def test_category_stats(corpus: DiscoveryStore) -> None:
    call = await registry.invoke("category-stats", {})
    assert call.status == TOOL_COMPLETE
    assert call.result["total"] == 5
    assert call.result["categories"][0] == {"category": "ufo", "count": 4, "share": 0.8}


async def test_category_stats_date_range(corpus: DiscoveryStore) -> None:
    call = await registry.invoke(
        "category-stats", {"date_from": "1997-01-01", "date_to": "1997-12-31", "top": 1}
    )
    assert call.result["total"] == 4
    assert call.result["categories"] == [{"category": "ufo", "count": 3, "share": 0.75}]
