"""Category statistics over matching experiences."""

from collections import Counter

from pydantic import Field

from discovery.tools.base import ToolOutput, ToolParams, ToolResult
from discovery.tools.registry import registry
from discovery.tools.search import match_experiences


class CategoryStatsParams(ToolParams):
    query: str | None = Field(default=None, description="Optional search terms to narrow the set")
    date_from: str | None = Field(
        default=None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="Start date (YYYY-MM-DD)"
    )
    date_to: str | None = Field(
        default=None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="End date (YYYY-MM-DD)"
    )
    top: int = Field(default=10, ge=1, le=54, description="How many categories to return")


class CategoryCount(ToolOutput):
    category: str
    count: int = Field(ge=0)
    share: float = Field(ge=0.0, le=1.0)


class CategoryStatsOutput(ToolOutput):
    total: int = Field(ge=0)
    categories: list[CategoryCount]


@registry.tool(
    name="category-stats",
    description=(
        "Count experiences per category, optionally narrowed by search terms and "
        "a date range. Use for 'which kinds of experiences are most common' questions."
    ),
    category="analytics",
    params_model=CategoryStatsParams,
    result_model=CategoryStatsOutput,
)
async def category_stats(
    query: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    top: int = 10,
) -> ToolResult:
    matched = await match_experiences(query, date_from=date_from, date_to=date_to)
    counts = Counter(record.category for record, _ in matched)
    total = sum(counts.values())
    categories = [
        {"category": name, "count": count, "share": round(count / total, 4)}
        for name, count in counts.most_common(top)
    ]
    return ToolResult(data={"total": total, "categories": categories})
