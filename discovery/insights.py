"""Presentation hints derived from tool results.

Each successful tool result gets a visualization hint the client can use to
pick a view (map, timeline or chart). A finished turn also carries a short
list of template follow-up questions based on what the results contain.
Nothing here renders anything; the hints are plain strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from discovery.store.models import ToolCall

VIZ_MAP = "map"
VIZ_TIMELINE = "timeline"
VIZ_CHART = "chart"

MAX_FOLLOWUPS = 5


def _records(result: dict[str, Any]) -> list[dict[str, Any]]:
    return [e for e in result.get("experiences") or [] if isinstance(e, dict)]


def _ratio(records: list[dict[str, Any]], key: str) -> float:
    if not records:
        return 0.0
    return sum(1 for r in records if r.get(key)) / len(records)


def viz_hint(call: ToolCall) -> str | None:
    """Pick the view that suits a tool result, or None when there is nothing to show.

    Time series (historical counts or predictions) map to a timeline and
    category counts to a chart. Experience lists go on a map when most of
    them carry a location and there are at least two, on a timeline when
    most are dated and there are at least three, and fall back to a chart.
    """
    result = call.result
    if not call.succeeded or not isinstance(result, dict):
        return None

    if result.get("historical") or result.get("predictions"):
        return VIZ_TIMELINE
    if result.get("categories"):
        return VIZ_CHART

    records = _records(result)
    if not records:
        return None
    if len(records) > 1 and _ratio(records, "location") > 0.5:
        return VIZ_MAP
    if len(records) > 2 and _ratio(records, "occurred_at") > 0.5:
        return VIZ_TIMELINE
    return VIZ_CHART


@dataclass
class FollowUp:
    """A suggested next question."""

    kind: str  # visualize | analyze | filter | explore
    label: str
    query: str
    priority: int

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "label": self.label, "query": self.query}


def suggest_followups(
    question: str, calls: list[ToolCall], *, limit: int = MAX_FOLLOWUPS
) -> list[FollowUp]:
    """Template follow-ups for a finished turn, highest priority first."""
    topic = question.strip().rstrip("?.! ")
    if not topic:
        return []

    ran = {c.tool_name for c in calls if c.succeeded}
    records: list[dict[str, Any]] = []
    total = 0
    has_series = False
    has_categories = False
    location = ""
    for call in calls:
        if not call.succeeded or not isinstance(call.result, dict):
            continue
        found = _records(call.result)
        records.extend(found)
        total = max(total, len(found), _as_int(call.result.get("total")))
        has_series = has_series or bool(call.result.get("historical"))
        has_categories = has_categories or bool(call.result.get("categories"))
        location = location or str(call.arguments.get("location") or "")

    has_geo = any(r.get("location") for r in records)
    has_time = has_series or any(r.get("occurred_at") for r in records)
    has_category = has_categories or any(r.get("category") for r in records)

    out: list[FollowUp] = []
    if has_geo and total > 1:
        out.append(FollowUp("visualize", "Show on map", f"Show me a map of {topic}", 8))
    if has_time and total > 2:
        out.append(FollowUp("visualize", "Timeline view", f"Show timeline of {topic}", 8))
    if total > 5:
        out.append(FollowUp("analyze", "Detect patterns", f"Analyze patterns in {topic}", 7))
    if has_time and total > 3 and "trend-predict" not in ran:
        out.append(
            FollowUp("analyze", "Predict trends", f"Predict future trends for {topic}", 7)
        )
    if has_category and total > 3 and "category-stats" not in ran:
        out.append(
            FollowUp("filter", "Compare categories", f"Compare categories for {topic}", 6)
        )
    if location:
        out.append(
            FollowUp(
                "filter",
                "Nearby locations",
                f"Find similar experiences near {location}",
                6,
            )
        )
    if records:
        out.append(
            FollowUp(
                "explore",
                "Related experiences",
                f"Show me experiences related to {topic}",
                5,
            )
        )

    out.sort(key=lambda f: f.priority, reverse=True)
    return out[:limit]


def _as_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0
