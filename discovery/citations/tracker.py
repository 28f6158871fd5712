"""CitationTracker — binds spans of finalised messages to source records."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING

from discovery.errors import InvalidSpan, NotFoundError
from discovery.store.models import Citation, make_id

if TYPE_CHECKING:
    from discovery.store.models import Message
    from discovery.store.store import DiscoveryStore

logger = logging.getLogger(__name__)


class CitationTracker:
    """Validates and persists citations.

    Spans are measured against the message's final content, so only
    finalised messages accept citations. Writes for one message go through
    that message's lock; different messages never contend.
    """

    def __init__(self, store: DiscoveryStore) -> None:
        self._store = store
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock(self, message_id: str) -> asyncio.Lock:
        lock = self._locks.get(message_id)
        if lock is None:
            lock = self._locks[message_id] = asyncio.Lock()
        return lock

    async def attach(
        self,
        message_id: str,
        source_record_id: str,
        span: tuple[int, int],
        confidence: float,
        *,
        tool_name: str = "",
        snippet: str = "",
    ) -> Citation:
        """Attach a citation to ``span`` of a finalised message.

        Raises:
            NotFoundError: The message does not exist or is not finalised.
            InvalidSpan: ``span`` is not within ``0 <= start < end <= len(content)``
                or ``confidence`` is outside ``[0, 1]``.
        """
        async with self._lock(message_id):
            message = await self._finalised(message_id)
            citation = _build(
                message, source_record_id, span, confidence, tool_name=tool_name, snippet=snippet
            )
            await self._store.add_citations([citation])
            logger.debug(
                "Cited %s on message %s span=%s", source_record_id, message_id, citation.span
            )
            return citation

    async def attach_many(
        self, message_id: str, drafts: list[CitationDraft]
    ) -> list[Citation]:
        """Attach several citations all-or-nothing.

        Every draft is validated before anything is written; the batch is
        then inserted in one transaction.
        """
        if not drafts:
            return []
        async with self._lock(message_id):
            message = await self._finalised(message_id)
            citations = self.prepare(message, drafts)
            await self._store.add_citations(citations)
            logger.info("Attached %d citation(s) to message %s", len(citations), message_id)
            return citations

    def prepare(self, message: Message, drafts: list[CitationDraft]) -> list[Citation]:
        """Validate drafts against ``message`` content without writing them.

        Used when the message and its citations are persisted together.

        Raises:
            InvalidSpan: Any draft fails validation.
        """
        citations = [
            _build(
                message,
                d.source_record_id,
                d.span,
                d.confidence,
                tool_name=d.tool_name,
                snippet=d.snippet,
            )
            for d in drafts
        ]
        return sorted(citations, key=lambda c: c.span)

    async def get_for_message(self, message_id: str) -> list[Citation]:
        """Return a message's citations ordered by span start (possibly empty)."""
        return await self._store.list_citations(message_id)

    async def _finalised(self, message_id: str) -> Message:
        message = await self._store.get_message(message_id)
        if message is None or not message.finalized:
            msg = f"Message not found or not finalised: {message_id}"
            raise NotFoundError(msg)
        return message


@dataclass
class CitationDraft:
    """A citation waiting to be validated and attached."""

    source_record_id: str
    span: tuple[int, int]
    confidence: float
    tool_name: str = ""
    snippet: str = ""


def _build(
    message: Message,
    source_record_id: str,
    span: tuple[int, int],
    confidence: float,
    *,
    tool_name: str,
    snippet: str,
) -> Citation:
    start, end = span
    if not 0 <= start < end <= len(message.content):
        msg = (
            f"Span ({start}, {end}) is outside message content "
            f"of length {len(message.content)}"
        )
        raise InvalidSpan(msg)
    if not 0.0 <= confidence <= 1.0:
        msg = f"Confidence {confidence} is outside [0, 1]"
        raise InvalidSpan(msg)
    if not source_record_id:
        msg = "A citation needs a source record id"
        raise InvalidSpan(msg)
    return Citation(
        id=make_id(),
        message_id=message.id,
        source_record_id=source_record_id,
        span_start=start,
        span_end=end,
        confidence=round(confidence, 4),
        tool_name=tool_name,
        snippet=snippet,
    )
