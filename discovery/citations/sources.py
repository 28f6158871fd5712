"""Source extraction and claim location for footnote-style citations.

Tool results reference experience records; the composer numbers them
``[1]``, ``[2]``, ... and the model cites them inline. After the reply text is
final, each marker is mapped back to the claim it closes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from discovery.store.models import ToolCall

DEFAULT_RELEVANCE = 0.9
SNIPPET_LENGTH = 200

_MARKER_RE = re.compile(r"\[(\d{1,3})\]")
_TRAILING_MARKERS_RE = re.compile(r"(\s*\[\d{1,3}\])+\s*$")
_SENTENCE_BREAKS = ".!?\n"


@dataclass
class Source:
    """A numbered experience record the reply may cite."""

    index: int
    record_id: str
    tool_name: str
    relevance: float
    title: str = ""
    snippet: str = ""
    category: str = ""
    occurred_at: str = ""
    location: str = ""

    def prompt_line(self) -> str:
        details = ", ".join(p for p in (self.category, self.occurred_at, self.location) if p)
        head = f"[{self.index}] {self.title}" if self.title else f"[{self.index}]"
        if details:
            head = f"{head} ({details})"
        return f"{head}: {self.snippet}" if self.snippet else head


@dataclass
class ClaimSpan:
    """A located claim: the text span a source marker closes."""

    source: Source
    start: int
    end: int


def _relevance(entry: dict[str, Any]) -> float:
    for key in ("relevance", "similarity_score", "score", "confidence"):
        value = entry.get(key)
        if isinstance(value, int | float):
            return min(1.0, max(0.0, float(value)))
    return DEFAULT_RELEVANCE


def _snippet(entry: dict[str, Any]) -> str:
    text = entry.get("snippet") or entry.get("description") or entry.get("title") or ""
    text = str(text).strip()
    if len(text) > SNIPPET_LENGTH:
        return text[:SNIPPET_LENGTH].rstrip() + "..."
    return text


def _collect(tool_name: str, payload: Any, out: list[Source]) -> None:
    if not isinstance(payload, dict):
        return
    for entry in payload.get("experiences") or []:
        if isinstance(entry, dict) and entry.get("id"):
            out.append(_source(tool_name, str(entry["id"]), entry))
    for entry in payload.get("results") or []:
        if isinstance(entry, dict) and entry.get("experience_id"):
            out.append(_source(tool_name, str(entry["experience_id"]), entry))
    nested = payload.get("data")
    if isinstance(nested, dict):
        _collect(tool_name, nested, out)


def _source(tool_name: str, record_id: str, entry: dict[str, Any]) -> Source:
    return Source(
        index=0,
        record_id=record_id,
        tool_name=tool_name,
        relevance=_relevance(entry),
        title=str(entry.get("title") or ""),
        snippet=_snippet(entry),
        category=str(entry.get("category") or ""),
        occurred_at=str(entry.get("occurred_at") or ""),
        location=str(entry.get("location") or ""),
    )


def extract_sources(tool_calls: list[ToolCall]) -> list[Source]:
    """Collect citable records from completed tool calls.

    Records are de-duplicated by id (first occurrence wins), sorted by
    relevance, and numbered from 1.
    """
    found: list[Source] = []
    for call in tool_calls:
        if call.succeeded and call.result:
            _collect(call.tool_name, call.result, found)

    unique: dict[str, Source] = {}
    for source in found:
        unique.setdefault(source.record_id, source)

    ranked = sorted(unique.values(), key=lambda s: s.relevance, reverse=True)
    for number, source in enumerate(ranked, start=1):
        source.index = number
    return ranked


def locate_claims(text: str, sources: list[Source]) -> list[ClaimSpan]:
    """Map ``[n]`` markers in final text to claim spans.

    A claim runs from the start of the sentence the marker closes through
    the end of the marker itself. Markers for unknown numbers are ignored,
    as are repeats of the same source on the same claim.
    """
    by_index = {s.index: s for s in sources}
    claims: list[ClaimSpan] = []
    seen: set[tuple[str, int, int]] = set()

    for match in _MARKER_RE.finditer(text):
        source = by_index.get(int(match.group(1)))
        if source is None:
            continue

        before = _TRAILING_MARKERS_RE.sub("", text[: match.start()])
        before = before.rstrip(" \t" + _SENTENCE_BREAKS)
        start = max(before.rfind(c) for c in _SENTENCE_BREAKS) + 1
        while start < match.start() and text[start].isspace():
            start += 1
        end = match.end()

        key = (source.record_id, start, end)
        if key in seen:
            continue
        seen.add(key)
        claims.append(ClaimSpan(source=source, start=start, end=end))

    return claims
