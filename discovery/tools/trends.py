"""Trend prediction — least-squares forecast of experience counts over time."""

from __future__ import annotations

import statistics
from collections import Counter
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field

from discovery.tools.base import ToolContext, ToolOutput, ToolParams, ToolResult
from discovery.tools.registry import registry
from discovery.tools.search import match_experiences

if TYPE_CHECKING:
    from collections.abc import Iterable

Granularity = Literal["month", "year"]


def period_of(occurred_at: str, granularity: str) -> str | None:
    """Bucket an ISO date into ``YYYY-MM`` or ``YYYY``; None if unparseable."""
    year = occurred_at[:4]
    if not year.isdigit():
        return None
    if granularity == "year":
        return year
    month = occurred_at[5:7]
    if not month.isdigit() or not 1 <= int(month) <= 12:
        return None
    return f"{year}-{month}"


def next_period(period: str, granularity: str) -> str:
    if granularity == "year":
        return str(int(period) + 1)
    year, month = (int(p) for p in period.split("-"))
    if month == 12:
        return f"{year + 1}-01"
    return f"{year}-{month + 1:02d}"


def bucket_counts(dates: Iterable[str], granularity: str) -> list[tuple[str, int]]:
    """Counts per period from first to last, with empty periods filled as zero."""
    counts = Counter(p for d in dates if (p := period_of(d, granularity)))
    if not counts:
        return []
    first, last = min(counts), max(counts)
    series = []
    period = first
    while period <= last:
        series.append((period, counts.get(period, 0)))
        period = next_period(period, granularity)
    return series


def _classify(slope: float, mean: float, r_squared: float) -> tuple[str, str]:
    if mean == 0 or abs(slope) < 0.05 * mean:
        trend = "stable"
    else:
        trend = "increasing" if slope > 0 else "decreasing"
    if r_squared >= 0.7:
        significance = "strong"
    elif r_squared >= 0.4:
        significance = "moderate"
    elif r_squared >= 0.1:
        significance = "weak"
    else:
        significance = "none"
    return trend, significance


def analyse_series(
    series: list[tuple[str, int]],
    granularity: str,
    forecast_periods: int,
    confidence_level: float,
) -> dict[str, Any]:
    """Fit ``count = slope * t + intercept`` and forecast with prediction bounds."""
    xs = list(range(len(series)))
    ys = [count for _, count in series]
    fit = statistics.linear_regression(xs, ys)
    mean = statistics.fmean(ys)

    if len(set(ys)) > 1:
        correlation = statistics.correlation(xs, ys)
    else:
        correlation = 0.0
    r_squared = correlation**2

    residuals = [y - (fit.slope * x + fit.intercept) for x, y in zip(xs, ys, strict=True)]
    dof = max(1, len(xs) - 2)
    std_error = (sum(r * r for r in residuals) / dof) ** 0.5
    z = statistics.NormalDist().inv_cdf(0.5 + confidence_level / 2)

    predictions = []
    period = series[-1][0]
    for step in range(1, forecast_periods + 1):
        period = next_period(period, granularity)
        x = len(xs) - 1 + step
        predicted = max(0.0, fit.slope * x + fit.intercept)
        margin = z * std_error
        predictions.append(
            {
                "period": period,
                "predicted": round(predicted, 2),
                "lower_bound": round(max(0.0, predicted - margin), 2),
                "upper_bound": round(predicted + margin, 2),
                "confidence": confidence_level,
            }
        )

    trend, significance = _classify(fit.slope, mean, r_squared)
    return {
        "slope": round(fit.slope, 4),
        "intercept": round(fit.intercept, 4),
        "r_squared": round(r_squared, 4),
        "trend": trend,
        "significance": significance,
        "predictions": predictions,
    }


# -- trend-predict -------------------------------------------------------------


class TrendParams(ToolParams):
    query: str | None = Field(
        default=None,
        description="Search terms selecting the experiences to analyse. Ignored when "
        "search results from the same turn are available.",
    )
    category: str | None = Field(default=None, description="Category slug to filter by")
    granularity: Granularity = Field(default="month", description="Time bucket size")
    forecast_periods: int = Field(
        default=3, ge=1, le=12, description="Number of future periods to forecast (1-12)"
    )
    min_data_points: int = Field(
        default=3, ge=2, le=100, description="Minimum periods required for a prediction"
    )
    confidence_level: float = Field(
        default=0.95, ge=0.5, le=0.99, description="Confidence level for prediction bounds"
    )


class PeriodCount(ToolOutput):
    period: str
    count: int = Field(ge=0)


class Prediction(ToolOutput):
    period: str
    predicted: float
    lower_bound: float
    upper_bound: float
    confidence: float


class TrendOutput(ToolOutput):
    granularity: Granularity
    trend: Literal["increasing", "decreasing", "stable", "insufficient_data"]
    significance: Literal["strong", "moderate", "weak", "none"]
    slope: float = 0.0
    intercept: float = 0.0
    r_squared: float = Field(default=0.0, ge=0.0, le=1.0)
    historical: list[PeriodCount]
    predictions: list[Prediction]


@registry.tool(
    name="trend-predict",
    description=(
        "Forecast how often experiences will be reported in coming months or years, "
        "using a linear trend over historical counts. Runs after 'search' when both "
        "are used and then analyses the search results."
    ),
    category="insights",
    params_model=TrendParams,
    result_model=TrendOutput,
    after=("search",),
)
async def trend_predict(
    query: str | None = None,
    category: str | None = None,
    granularity: str = "month",
    forecast_periods: int = 3,
    min_data_points: int = 3,
    confidence_level: float = 0.95,
    context: ToolContext | None = None,
) -> ToolResult:
    upstream = (context.upstream if context else {}).get("search")
    if upstream is not None:
        dates = [e["occurred_at"] for e in upstream.get("experiences", [])]
    else:
        matched = await match_experiences(query, category=category)
        dates = [record.occurred_at for record, _ in matched]

    series = bucket_counts(dates, granularity)
    historical = [{"period": p, "count": c} for p, c in series]

    if len(series) < min_data_points:
        return ToolResult(
            data={
                "granularity": granularity,
                "trend": "insufficient_data",
                "significance": "none",
                "historical": historical,
                "predictions": [],
            }
        )

    analysis = analyse_series(series, granularity, forecast_periods, confidence_level)
    return ToolResult(data={"granularity": granularity, "historical": historical, **analysis})
