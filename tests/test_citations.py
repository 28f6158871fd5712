"""Tests for citation provenance: tracker, source extraction and claim location."""

import asyncio

import pytest

from discovery.branches import BranchManager
from discovery.citations import (
    CitationDraft,
    CitationTracker,
    Source,
    extract_sources,
    locate_claims,
)
from discovery.errors import InvalidSpan, NotFoundError
from discovery.store.models import TOOL_COMPLETE, TOOL_FAILED, ToolCall, make_id

REPLY = "Lights drifted over Phoenix [1]. A triangle hovered near Leeds [2]."


async def _reply(branches: BranchManager, content: str = REPLY, *, finalized: bool = True):
    _, root = await branches.create_chat("owner")
    return await branches.append_message(root.id, "assistant", content, finalized=finalized)


def _call(tool_name: str, result: dict, *, status: str = TOOL_COMPLETE) -> ToolCall:
    return ToolCall(
        id=make_id(), tool_name=tool_name, arguments={}, status=status, result=result
    )


# -- CitationTracker.attach ----------------------------------------------------


async def test_attach_and_list(branches: BranchManager, tracker: CitationTracker) -> None:
    message = await _reply(branches)
    citation = await tracker.attach(message.id, "exp-phoenix", (0, 32), 0.9)

    assert citation.span == (0, 32)
    listed = await tracker.get_for_message(message.id)
    assert [c.id for c in listed] == [citation.id]


async def test_attach_full_content_span(branches: BranchManager, tracker: CitationTracker) -> None:
    message = await _reply(branches)
    citation = await tracker.attach(message.id, "exp-1", (0, len(REPLY)), 1.0)
    assert citation.span_end == len(REPLY)


@pytest.mark.parametrize(
    "span",
    [(5, 5), (10, 3), (-1, 4), (0, len(REPLY) + 1)],
)
async def test_attach_rejects_bad_spans(
    branches: BranchManager, tracker: CitationTracker, span: tuple[int, int]
) -> None:
    message = await _reply(branches)
    with pytest.raises(InvalidSpan):
        await tracker.attach(message.id, "exp-1", span, 0.5)
    assert await tracker.get_for_message(message.id) == []


async def test_attach_rejects_bad_confidence(
    branches: BranchManager, tracker: CitationTracker
) -> None:
    message = await _reply(branches)
    with pytest.raises(InvalidSpan):
        await tracker.attach(message.id, "exp-1", (0, 5), 1.5)


async def test_attach_to_unknown_message(tracker: CitationTracker) -> None:
    with pytest.raises(NotFoundError):
        await tracker.attach("missing", "exp-1", (0, 1), 0.5)


async def test_attach_to_pending_message(
    branches: BranchManager, tracker: CitationTracker
) -> None:
    message = await _reply(branches, finalized=False)
    with pytest.raises(NotFoundError):
        await tracker.attach(message.id, "exp-1", (0, 5), 0.5)


async def test_get_for_message_ordered_by_start(
    branches: BranchManager, tracker: CitationTracker
) -> None:
    message = await _reply(branches)
    await asyncio.gather(
        tracker.attach(message.id, "b", (33, 67), 0.5),
        tracker.attach(message.id, "a", (0, 32), 0.5),
        tracker.attach(message.id, "c", (10, 20), 0.5),
    )
    listed = await tracker.get_for_message(message.id)
    assert [c.span_start for c in listed] == [0, 10, 33]


async def test_get_for_message_empty(branches: BranchManager, tracker: CitationTracker) -> None:
    message = await _reply(branches)
    assert await tracker.get_for_message(message.id) == []


# -- attach_many / prepare -----------------------------------------------------


async def test_attach_many_is_all_or_nothing(
    branches: BranchManager, tracker: CitationTracker
) -> None:
    message = await _reply(branches)
    drafts = [
        CitationDraft("exp-phoenix", (0, 32), 0.9),
        CitationDraft("exp-leeds", (33, 500), 0.9),
    ]
    with pytest.raises(InvalidSpan):
        await tracker.attach_many(message.id, drafts)
    assert await tracker.get_for_message(message.id) == []


async def test_attach_many_sorted(branches: BranchManager, tracker: CitationTracker) -> None:
    message = await _reply(branches)
    drafts = [
        CitationDraft("exp-leeds", (33, 67), 0.8, tool_name="search"),
        CitationDraft("exp-phoenix", (0, 32), 0.9, tool_name="search"),
    ]
    attached = await tracker.attach_many(message.id, drafts)
    assert [c.source_record_id for c in attached] == ["exp-phoenix", "exp-leeds"]
    assert all(c.tool_name == "search" for c in attached)


async def test_prepare_does_not_write(branches: BranchManager, tracker: CitationTracker) -> None:
    message = await _reply(branches)
    prepared = tracker.prepare(message, [CitationDraft("exp-1", (0, 5), 0.5)])
    assert prepared[0].message_id == message.id
    assert await tracker.get_for_message(message.id) == []


async def test_message_locks_released_after_attach(
    branches: BranchManager, tracker: CitationTracker
) -> None:
    messages = [await _reply(branches) for _ in range(3)]
    await asyncio.gather(
        *(tracker.attach(m.id, "exp-phoenix", (0, 32), 0.9) for m in messages)
    )
    assert len(tracker._locks) == 0


# -- extract_sources -----------------------------------------------------------


def test_extract_sources_ranks_and_numbers() -> None:
    calls = [
        _call(
            "search",
            {
                "experiences": [
                    {"id": "low", "title": "Low", "relevance": 0.4},
                    {"id": "high", "title": "High", "relevance": 0.95},
                ]
            },
        )
    ]
    sources = extract_sources(calls)
    assert [(s.index, s.record_id) for s in sources] == [(1, "high"), (2, "low")]


def test_extract_sources_dedupes_first_wins() -> None:
    calls = [
        _call("search", {"experiences": [{"id": "r1", "title": "From search"}]}),
        _call("other", {"results": [{"experience_id": "r1", "title": "From other"}]}),
    ]
    (source,) = extract_sources(calls)
    assert source.tool_name == "search"
    assert source.relevance == 0.9


def test_extract_sources_reads_nested_data_and_clamps() -> None:
    calls = [_call("x", {"data": {"experiences": [{"id": "r1", "score": 7}]}})]
    (source,) = extract_sources(calls)
    assert source.relevance == 1.0


def test_extract_sources_ignores_failed_calls() -> None:
    failed = _call("search", {"experiences": [{"id": "r1"}]}, status=TOOL_FAILED)
    assert extract_sources([failed]) == []


# -- locate_claims -------------------------------------------------------------


def _sources(*ids: str) -> list[Source]:
    return [
        Source(index=i, record_id=rid, tool_name="search", relevance=0.9)
        for i, rid in enumerate(ids, start=1)
    ]


def test_locate_claims_sentence_spans() -> None:
    claims = locate_claims(REPLY, _sources("exp-phoenix", "exp-leeds"))

    assert [c.source.record_id for c in claims] == ["exp-phoenix", "exp-leeds"]
    first, second = claims
    assert REPLY[first.start : first.end] == "Lights drifted over Phoenix [1]"
    assert REPLY[second.start : second.end] == "A triangle hovered near Leeds [2]"


def test_locate_claims_adjacent_markers_share_claim() -> None:
    text = "Both cases mention a humming sound [1][2]."
    claims = locate_claims(text, _sources("a", "b"))
    assert [c.start for c in claims] == [0, 0]
    assert text[claims[0].start : claims[0].end] == "Both cases mention a humming sound [1]"
    assert text[claims[1].start : claims[1].end] == "Both cases mention a humming sound [1][2]"


def test_locate_claims_ignores_unknown_numbers() -> None:
    assert locate_claims("Something odd happened [7].", _sources("a")) == []


def test_locate_claims_spans_in_bounds() -> None:
    text = "Intro line\n- Phoenix lights (ufo, 1997-03-13) [1]\n- Leeds triangle [2]"
    for claim in locate_claims(text, _sources("a", "b")):
        assert 0 <= claim.start < claim.end <= len(text)
    starts = [c.start for c in locate_claims(text, _sources("a", "b"))]
    assert text[starts[0]] == "-"
