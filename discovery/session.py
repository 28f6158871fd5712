"""DiscoverySession — runs one conversational turn end to end.

A turn moves through received -> planning -> executing -> composing and ends
finalized, failed or cancelled. The user message is written pending at the
start and becomes visible together with the assistant reply, its tool calls
and its citations in one transaction. Cancelling a turn before that point
removes every record it created.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from discovery.agents.base import Envelope, Priority
from discovery.agents.planner import PLAN_REQUEST, PLANNER_ID, PlanStep
from discovery.citations import CitationDraft, extract_sources, locate_claims
from discovery.config import settings
from discovery.errors import (
    DiscoveryError,
    OperationTimeoutError,
    UpstreamError,
    ValidationError,
)
from discovery.insights import FollowUp, suggest_followups, viz_hint
from discovery.llm.prompt import (
    build_compose_prompt,
    fallback_reply,
    history_messages,
    unavailable_note,
)
from discovery.llm.streaming import ResumableStream
from discovery.store.models import Message, make_id
from discovery.tools.base import ToolContext

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from discovery.agents.bus import AgentBus
    from discovery.branches.manager import BranchManager
    from discovery.citations import CitationTracker, Source
    from discovery.llm.client import TextGenerator
    from discovery.store.models import Branch, Chat, Citation, ToolCall
    from discovery.store.store import DiscoveryStore
    from discovery.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

PLANNER_UNAVAILABLE_REPLY = (
    "I couldn't work out how to look into that right now. Please try again in a moment."
)
TOOLS_UNAVAILABLE_REPLY = (
    "I couldn't run any of the analyses for that question right now. Please try again."
)
GENERATION_FAILED_REPLY = "Something went wrong while writing the answer. Please try again."


class TurnState(str, Enum):
    RECEIVED = "received"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPOSING = "composing"
    FINALIZED = "finalized"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DiscoveryResponse:
    """What a finished turn hands back to the transport."""

    turn_id: str
    chat_id: str
    branch_id: str
    state: TurnState
    text: str
    degraded: bool = False
    user_message_id: str = ""
    assistant_message_id: str = ""
    citations: list[Citation] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    followups: list[FollowUp] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "chat_id": self.chat_id,
            "branch_id": self.branch_id,
            "state": self.state.value,
            "text": self.text,
            "degraded": self.degraded,
            "user_message_id": self.user_message_id,
            "assistant_message_id": self.assistant_message_id,
            "citations": [c.to_dict() for c in self.citations],
            "tool_results": [_public_tool_result(c) for c in self.tool_calls],
            "followups": [f.to_dict() for f in self.followups],
        }


def _public_tool_result(call: ToolCall) -> dict[str, Any]:
    data: dict[str, Any] = {
        "tool_name": call.tool_name,
        "status": call.status,
        "result": call.result,
    }
    hint = viz_hint(call)
    if hint is not None:
        data["viz"] = hint
    if call.error:
        # Only the code leaves the process; detail stays in the logs.
        data["error"] = {"code": call.error.get("code", "error")}
    return data


class Turn:
    """Handle on an in-flight turn: await ``result()`` or ``cancel()`` it."""

    def __init__(self, turn_id: str, chat_id: str, branch_id: str) -> None:
        self.id = turn_id
        self.chat_id = chat_id
        self.branch_id = branch_id
        self.state = TurnState.RECEIVED
        self._task: asyncio.Task[DiscoveryResponse] | None = None

    def _advance(self, state: TurnState) -> None:
        logger.debug("Turn %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        """Request cancellation. Has no effect once finalisation has begun."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def result(self) -> DiscoveryResponse:
        """Wait for the turn. Raises CancelledError if it was cancelled."""
        if self._task is None:
            msg = f"Turn {self.id} has not been started"
            raise RuntimeError(msg)
        return await self._task


class DiscoverySession:
    """Orchestrates planning, tool execution, composition and persistence.

    Args:
        store: Persistence for messages, tool calls, citations and checkpoints.
        branches: Branch operations (history, ordinals).
        citations: Citation validation.
        registry: Frozen tool catalog.
        bus: Running agent bus with a planner registered under ``planner``.
        generator: Text generator used to compose replies.
    """

    def __init__(
        self,
        store: DiscoveryStore,
        branches: BranchManager,
        citations: CitationTracker,
        registry: ToolRegistry,
        bus: AgentBus,
        generator: TextGenerator,
    ) -> None:
        self._store = store
        self._branches = branches
        self._citations = citations
        self._registry = registry
        self._bus = bus
        self._generator = generator
        self._streams = ResumableStream(generator, store)
        self._turn_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._turns: dict[str, Turn] = {}

    @property
    def branches(self) -> BranchManager:
        return self._branches

    @property
    def citations(self) -> CitationTracker:
        return self._citations

    # -- Entry points ------------------------------------------------------------

    async def start_chat(self, owner_id: str) -> tuple[Chat, Branch]:
        return await self._branches.create_chat(owner_id)

    async def submit(
        self,
        branch_id: str,
        content: str,
        *,
        on_text_delta: Callable[[str], Awaitable[None]] | None = None,
    ) -> Turn:
        """Start a turn on ``branch_id`` and return its handle immediately.

        Raises:
            NotFoundError: The branch does not exist.
            ValidationError: ``content`` is empty.
        """
        branch = await self._branches.get_branch(branch_id)
        content = content.strip()
        if not content:
            msg = "Message content must not be empty"
            raise ValidationError(msg)

        turn = Turn(make_id(), branch.chat_id, branch.id)
        turn._task = asyncio.create_task(
            self._run(turn, branch, content, on_text_delta), name=f"turn-{turn.id}"
        )
        self._turns[turn.id] = turn
        turn._task.add_done_callback(lambda _: self._turns.pop(turn.id, None))
        logger.info("Turn %s received on branch %s", turn.id, branch.id)
        return turn

    async def send(
        self,
        branch_id: str,
        content: str,
        *,
        on_text_delta: Callable[[str], Awaitable[None]] | None = None,
    ) -> DiscoveryResponse:
        """Run a turn to completion."""
        turn = await self.submit(branch_id, content, on_text_delta=on_text_delta)
        return await turn.result()

    async def ask(
        self,
        owner_id: str,
        content: str,
        *,
        on_text_delta: Callable[[str], Awaitable[None]] | None = None,
    ) -> DiscoveryResponse:
        """First message of a new conversation: creates the chat, then runs the turn."""
        _, root = await self.start_chat(owner_id)
        return await self.send(root.id, content, on_text_delta=on_text_delta)

    def get_turn(self, turn_id: str) -> Turn | None:
        return self._turns.get(turn_id)

    def cancel_turn(self, turn_id: str) -> bool:
        turn = self._turns.get(turn_id)
        return turn.cancel() if turn is not None else False

    # -- Turn lifecycle ----------------------------------------------------------

    def _turn_lock(self, branch_id: str) -> asyncio.Lock:
        lock = self._turn_locks.get(branch_id)
        if lock is None:
            lock = self._turn_locks[branch_id] = asyncio.Lock()
        return lock

    async def _run(
        self,
        turn: Turn,
        branch: Branch,
        content: str,
        on_text_delta: Callable[[str], Awaitable[None]] | None,
    ) -> DiscoveryResponse:
        # Turns on one branch run one at a time so each sees the previous reply.
        async with self._turn_lock(branch.id):
            history = await self._branches.resolve_history(branch.id)
            user_msg = await self._branches.append_message(
                branch.id, "user", content, finalized=False
            )
            finalising: asyncio.Task[DiscoveryResponse] | None = None
            try:
                outcome = await self._process(turn, branch, content, history, on_text_delta)
                finalising = asyncio.ensure_future(
                    self._finalise(turn, branch, user_msg, *outcome)
                )
                return await asyncio.shield(finalising)
            except asyncio.CancelledError:
                if finalising is not None:
                    # Too late to cancel: the turn lands as if never interrupted.
                    current = asyncio.current_task()
                    if current is not None:
                        current.uncancel()
                    logger.info("Turn %s cancelled during finalisation; completing", turn.id)
                    return await finalising
                turn._advance(TurnState.CANCELLED)
                await asyncio.shield(self._discard(turn, user_msg))
                raise
            except Exception:
                if finalising is not None:
                    await asyncio.shield(self._discard(turn, user_msg))
                    raise
                logger.exception("Turn %s crashed (correlation=%s)", turn.id, turn.id)
                try:
                    return await self._finalise(
                        turn, branch, user_msg, GENERATION_FAILED_REPLY, [], [], failed=True
                    )
                except Exception:
                    await asyncio.shield(self._discard(turn, user_msg))
                    raise

    async def _discard(self, turn: Turn, user_msg: Message) -> None:
        self._bus.cancel(turn.id)
        removed = await self._store.delete_pending_messages([user_msg.id])
        await self._streams.discard(turn.id)
        logger.info("Turn %s cancelled; removed %d pending message(s)", turn.id, removed)

    async def _process(
        self,
        turn: Turn,
        branch: Branch,
        content: str,
        history: list[Message],
        on_text_delta: Callable[[str], Awaitable[None]] | None,
    ) -> tuple[str, list[ToolCall], list[Source], bool, bool]:
        """Plan, execute and compose.

        Returns ``(text, tool_calls, sources, degraded, failed)``.
        """
        turn._advance(TurnState.PLANNING)
        try:
            steps = await self._plan(turn, content, history)
        except (OperationTimeoutError, UpstreamError) as exc:
            logger.error(
                "Planning failed for turn %s (correlation=%s): %s", turn.id, turn.id, exc.detail
            )
            return PLANNER_UNAVAILABLE_REPLY, [], [], True, True

        turn._advance(TurnState.EXECUTING)
        context = ToolContext(
            turn_id=turn.id, chat_id=branch.chat_id, branch_id=branch.id, history=history
        )
        calls = await self._execute(steps, context)
        if calls and all(not c.succeeded and not c.timed_out for c in calls):
            logger.error(
                "Every tool failed for turn %s: %s",
                turn.id,
                {c.tool_name: (c.error or {}).get("code") for c in calls},
            )
            return TOOLS_UNAVAILABLE_REPLY, calls, [], True, True

        turn._advance(TurnState.COMPOSING)
        sources = extract_sources(calls)
        prompt = build_compose_prompt(content, history, calls, sources)
        degraded = False
        try:
            text = await asyncio.wait_for(
                self._generate(turn, prompt, on_text_delta),
                settings.generation_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Generation timed out for turn %s after %.1fs; using fallback reply",
                turn.id,
                settings.generation_timeout_seconds,
            )
            text = fallback_reply(calls, sources)
            degraded = True
        except DiscoveryError as exc:
            logger.error(
                "Generation failed for turn %s (correlation=%s): %s", turn.id, turn.id, exc.detail
            )
            return GENERATION_FAILED_REPLY, calls, [], True, True

        text = text.strip() or fallback_reply(calls, sources)
        unavailable = [c.tool_name for c in calls if not c.succeeded]
        if unavailable:
            text = f"{text}\n\n{unavailable_note(unavailable)}"
            degraded = True
        return text, calls, sources, degraded, False

    async def _plan(self, turn: Turn, content: str, history: list[Message]) -> list[PlanStep]:
        request = Envelope(
            sender_id=f"session:{turn.id}",
            recipient_id=PLANNER_ID,
            priority=Priority.HIGH,
            kind=PLAN_REQUEST,
            payload={"message": content, "history": history_messages(history)},
            correlation_id=turn.id,
        )
        reply = await self._bus.request(request, timeout=settings.planner_timeout_seconds)
        if reply.failed:
            msg = f"Planner failed: {reply.error}"
            raise UpstreamError(msg)
        return [PlanStep.from_dict(s) for s in reply.payload.get("steps") or []]

    async def _execute(self, steps: list[PlanStep], context: ToolContext) -> list[ToolCall]:
        """Run plan steps in dependency waves.

        Steps whose dependencies have all finished run together; a step whose
        dependency failed still runs, just without that upstream result.
        """
        done: dict[int, ToolCall] = {}
        remaining = list(range(len(steps)))
        while remaining:
            ready = [
                i
                for i in remaining
                if all(d in done for d in steps[i].depends_on if 0 <= d < len(steps) and d != i)
            ]
            if not ready:
                logger.warning("Plan dependencies cannot be satisfied; running the rest together")
                ready = list(remaining)

            calls = await asyncio.gather(
                *(
                    self._registry.invoke(
                        steps[i].tool,
                        steps[i].arguments,
                        context.with_upstream(_upstream(steps[i], done)),
                        position=i,
                    )
                    for i in ready
                )
            )
            done.update(zip(ready, calls, strict=True))
            remaining = [i for i in remaining if i not in done]
        return [done[i] for i in range(len(steps))]

    async def _generate(
        self,
        turn: Turn,
        prompt: str,
        on_text_delta: Callable[[str], Awaitable[None]] | None,
    ) -> str:
        if on_text_delta is None:
            return await self._generator.complete(prompt)
        try:
            return await self._streams.run(turn.id, prompt, on_text_delta)
        except UpstreamError:
            logger.warning("Stream for turn %s interrupted; resuming from checkpoint", turn.id)
            return await self._streams.resume(turn.id, on_text_delta)

    async def _finalise(
        self,
        turn: Turn,
        branch: Branch,
        user_msg: Message,
        text: str,
        calls: list[ToolCall],
        sources: list[Source],
        degraded: bool = False,
        failed: bool = False,
    ) -> DiscoveryResponse:
        async with self._store.writer(branch.id):
            assistant = Message(
                id=make_id(),
                branch_id=branch.id,
                role="assistant",
                content=text,
                ordinal=await self._branches.next_ordinal(branch),
                degraded=degraded or failed,
            )

            citations: list[Citation] = []
            if sources and not failed:
                try:
                    citations = self._citations.prepare(assistant, _drafts(text, sources))
                except DiscoveryError as exc:
                    if settings.citations_fail_turn:
                        logger.error(
                            "Citations invalid for turn %s; failing the turn: %s",
                            turn.id,
                            exc.detail,
                        )
                        assistant.content = GENERATION_FAILED_REPLY
                        assistant.degraded = True
                        failed = True
                    else:
                        logger.warning(
                            "Citations invalid for turn %s; continuing without them: %s",
                            turn.id,
                            exc.detail,
                        )

            await self._store.finalize_turn(user_msg.id, assistant, calls, citations)

        await self._streams.discard(turn.id)
        turn._advance(TurnState.FAILED if failed else TurnState.FINALIZED)
        logger.info(
            "Turn %s %s: tools=%d citations=%d degraded=%s",
            turn.id,
            turn.state.value,
            len(calls),
            len(citations),
            assistant.degraded,
        )
        return DiscoveryResponse(
            turn_id=turn.id,
            chat_id=branch.chat_id,
            branch_id=branch.id,
            state=turn.state,
            text=assistant.content,
            degraded=assistant.degraded,
            user_message_id=user_msg.id,
            assistant_message_id=assistant.id,
            citations=citations,
            tool_calls=calls,
            followups=[] if failed else suggest_followups(user_msg.content, calls),
        )


def _upstream(step: PlanStep, done: dict[int, ToolCall]) -> dict[str, dict[str, Any]]:
    results: dict[str, dict[str, Any]] = {}
    for index in step.depends_on:
        call = done.get(index)
        if call is not None and call.succeeded and call.result is not None:
            results[call.tool_name] = call.result
    return results


def _drafts(text: str, sources: list[Source]) -> list[CitationDraft]:
    return [
        CitationDraft(
            source_record_id=claim.source.record_id,
            span=(claim.start, claim.end),
            confidence=claim.source.relevance,
            tool_name=claim.source.tool_name,
            snippet=claim.source.snippet,
        )
        for claim in locate_claims(text, sources)
    ]
