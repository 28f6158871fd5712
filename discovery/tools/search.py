"""Experience search over the corpus.

Structured filters (category, dates, location) go to the store; the free-text
query is scored here by term coverage across each record's text fields.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import Field

from discovery.store.models import ExperienceRecord
from discovery.store.store import DiscoveryStore
from discovery.tools.base import ToolOutput, ToolParams, ToolResult
from discovery.tools.registry import registry

SNIPPET_LENGTH = 200

_TOKEN_RE = re.compile(r"[\w-]+", re.UNICODE)
_STOPWORDS = frozenset(
    {"a", "an", "and", "are", "at", "by", "for", "from", "in", "is", "of", "on",
     "or", "the", "to", "was", "were", "with", "what", "any", "show", "me"}
)


def query_terms(query: str | None) -> list[str]:
    """Lower-cased search terms of a free-text query, stopwords removed."""
    if not query:
        return []
    return [t for t in _TOKEN_RE.findall(query.lower()) if t not in _STOPWORDS and len(t) > 1]


def score_record(record: ExperienceRecord, terms: list[str]) -> float:
    """Fraction of query terms found anywhere in the record (1.0 for no terms)."""
    if not terms:
        return 1.0
    haystack = " ".join(
        (
            record.title,
            record.description,
            record.category,
            record.location,
            record.occurred_at,
            " ".join(record.tags),
        )
    ).lower()
    hits = sum(1 for t in terms if t in haystack)
    return hits / len(terms)


async def match_experiences(
    query: str | None = None,
    *,
    category: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    location: str | None = None,
    min_score: float = 0.5,
) -> list[tuple[ExperienceRecord, float]]:
    """Return ``(record, score)`` pairs, best first."""
    records = await DiscoveryStore.get().find_experiences(
        category=category, date_from=date_from, date_to=date_to, location=location
    )
    terms = query_terms(query)
    scored = [(r, score_record(r, terms)) for r in records]
    scored = [(r, s) for r, s in scored if s >= min_score and s > 0]
    scored.sort(key=lambda pair: (-pair[1], pair[0].occurred_at, pair[0].id))
    return scored


def _snippet(text: str) -> str:
    text = text.strip()
    if len(text) > SNIPPET_LENGTH:
        return text[:SNIPPET_LENGTH].rstrip() + "..."
    return text


# -- search --------------------------------------------------------------------


class SearchParams(ToolParams):
    query: str = Field(description="Natural-language search terms, e.g. 'UFO 1997'")
    category: str | None = Field(
        default=None, description="Category slug to filter by, e.g. 'ufo' or 'dreams'"
    )
    date_from: str | None = Field(
        default=None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="Start date (YYYY-MM-DD)"
    )
    date_to: str | None = Field(
        default=None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="End date (YYYY-MM-DD)"
    )
    location: str | None = Field(
        default=None, description="City or country (case-insensitive partial match)"
    )
    match: Literal["any", "all"] = Field(
        default="all", description="Require all query terms, or any of them"
    )
    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of results")


class ExperienceHit(ToolOutput):
    id: str
    title: str
    category: str
    occurred_at: str
    location: str = ""
    snippet: str = ""
    relevance: float = Field(ge=0.0, le=1.0)


class SearchOutput(ToolOutput):
    query: str
    total: int = Field(ge=0)
    experiences: list[ExperienceHit]


@registry.tool(
    name="search",
    description=(
        "Search user-submitted experiences by free text with optional category, "
        "date range and location filters. Use this first whenever the user asks "
        "about specific experiences, places or years."
    ),
    category="search",
    params_model=SearchParams,
    result_model=SearchOutput,
)
async def search(
    query: str,
    category: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    location: str | None = None,
    match: str = "all",
    limit: int = 20,
) -> ToolResult:
    scored = await match_experiences(
        query,
        category=category,
        date_from=date_from,
        date_to=date_to,
        location=location,
        min_score=1.0 if match == "all" else 0.0,
    )
    hits = [
        {
            "id": record.id,
            "title": record.title,
            "category": record.category,
            "occurred_at": record.occurred_at,
            "location": record.location,
            "snippet": _snippet(record.description),
            "relevance": round(score, 3),
        }
        for record, score in scored[:limit]
    ]
    return ToolResult(data={"query": query, "total": len(scored), "experiences": hits})
