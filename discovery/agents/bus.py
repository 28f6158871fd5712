"""AgentBus — priority routing of envelopes between cooperating agents."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from discovery.agents.base import STATUS_AGENT_FAILED, Envelope
from discovery.errors import ConflictError, OperationTimeoutError, UpstreamError

if TYPE_CHECKING:
    from discovery.agents.base import Agent

logger = logging.getLogger(__name__)

# Cancelled correlation ids remembered for dropping late replies.
MAX_CANCELLED = 4096


@dataclass
class _Waiter:
    requester_id: str
    request_id: str
    future: asyncio.Future[Envelope]


class AgentBus:
    """Routes envelopes to registered agents.

    Each agent has its own priority mailbox and a single worker task, so an
    agent never handles two envelopes at once while distinct agents run
    concurrently. Delivery order per mailbox is priority (high, normal, low)
    and then FIFO.

    Callers that are not agents themselves (a discovery turn, for instance)
    use ``request()`` and receive the reply matching their correlation id.
    """

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._queues: dict[str, asyncio.PriorityQueue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, _Waiter] = {}
        self._cancelled: dict[str, None] = {}
        self._seq = itertools.count()
        self._running = False

    # -- Lifecycle -------------------------------------------------------------

    def register(self, agent: Agent) -> None:
        """Register an agent. Raises ConflictError on a duplicate id."""
        if not agent.agent_id:
            msg = "Agent id must not be empty"
            raise ValueError(msg)
        if agent.agent_id in self._agents:
            msg = f"Agent '{agent.agent_id}' is already registered"
            raise ConflictError(msg)
        self._agents[agent.agent_id] = agent
        self._queues[agent.agent_id] = asyncio.PriorityQueue()
        if self._running:
            self._spawn(agent)
        logger.info("Registered agent: %s", agent.agent_id)

    @property
    def agent_ids(self) -> list[str]:
        return list(self._agents)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start one worker per registered agent."""
        if self._running:
            return
        self._running = True
        for agent in self._agents.values():
            self._spawn(agent)
        logger.info("Agent bus started with %d agent(s)", len(self._agents))

    async def stop(self) -> None:
        """Stop all workers and fail outstanding requests."""
        self._running = False
        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for waiter in self._waiters.values():
            if not waiter.future.done():
                waiter.future.set_exception(UpstreamError("Agent bus stopped"))
        logger.info("Agent bus stopped")

    def _spawn(self, agent: Agent) -> None:
        self._workers[agent.agent_id] = asyncio.create_task(
            self._run(agent), name=f"agent:{agent.agent_id}"
        )

    # -- Routing ---------------------------------------------------------------

    def publish(self, envelope: Envelope) -> int:
        """Route an envelope. Returns the number of deliveries made.

        Envelopes for a cancelled correlation id are dropped silently.
        """
        cid = envelope.correlation_id
        if cid in self._cancelled:
            logger.debug("Dropped envelope %s for cancelled correlation %s", envelope.kind, cid)
            return 0

        waiter = self._waiters.get(cid)
        if (
            waiter is not None
            and envelope.recipient_id == waiter.requester_id
            and envelope.id != waiter.request_id
        ):
            if not waiter.future.done():
                waiter.future.set_result(envelope)
            return 1

        if envelope.is_broadcast:
            targets = [aid for aid in self._agents if aid != envelope.sender_id]
        elif envelope.recipient_id in self._agents:
            targets = [envelope.recipient_id]
        else:
            logger.warning(
                "Undeliverable envelope %s from %s to %s (correlation=%s)",
                envelope.kind,
                envelope.sender_id,
                envelope.recipient_id,
                cid,
            )
            return 0

        for aid in targets:
            self._queues[aid].put_nowait((envelope.priority.rank, next(self._seq), envelope))
        return len(targets)

    async def request(self, envelope: Envelope, timeout: float | None = None) -> Envelope:
        """Publish ``envelope`` and wait for the reply with its correlation id.

        Raises:
            UpstreamError: No agent could receive the request.
            OperationTimeoutError: No reply within ``timeout`` seconds; the
                correlation is cancelled so a late reply is dropped.
        """
        cid = envelope.correlation_id
        future: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._waiters[cid] = _Waiter(envelope.sender_id, envelope.id, future)
        try:
            if self.publish(envelope) == 0:
                msg = f"No agent available for '{envelope.recipient_id}'"
                raise UpstreamError(msg)
            return await asyncio.wait_for(future, timeout)
        except TimeoutError as exc:
            self.cancel(cid)
            msg = f"No reply from '{envelope.recipient_id}' within {timeout}s"
            raise OperationTimeoutError(msg) from exc
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                self.cancel(cid)
                raise
            msg = f"Request {cid} was cancelled"
            raise UpstreamError(msg) from None
        finally:
            self._waiters.pop(cid, None)

    def cancel(self, correlation_id: str) -> bool:
        """Cancel a pending request. Returns True if a waiter was cancelled."""
        self._cancelled[correlation_id] = None
        while len(self._cancelled) > MAX_CANCELLED:
            self._cancelled.pop(next(iter(self._cancelled)))
        waiter = self._waiters.pop(correlation_id, None)
        if waiter is not None and not waiter.future.done():
            waiter.future.cancel()
            logger.info("Cancelled request %s", correlation_id)
            return True
        return False

    # -- Workers ---------------------------------------------------------------

    async def _run(self, agent: Agent) -> None:
        queue = self._queues[agent.agent_id]
        while True:
            _, _, envelope = await queue.get()
            try:
                if envelope.correlation_id in self._cancelled:
                    continue
                await self._dispatch(agent, envelope)
            except Exception:
                logger.exception(
                    "Worker for agent '%s' hit an error routing %s", agent.agent_id, envelope.kind
                )
            finally:
                queue.task_done()

    async def _dispatch(self, agent: Agent, envelope: Envelope) -> None:
        try:
            outgoing = _as_envelopes(await agent.handle(envelope))
            for out in outgoing:
                self.publish(out)
        except Exception as exc:
            logger.exception(
                "Agent '%s' failed handling %s (correlation=%s)",
                agent.agent_id,
                envelope.kind,
                envelope.correlation_id,
            )
            self.publish(
                Envelope(
                    sender_id=agent.agent_id,
                    recipient_id=envelope.sender_id,
                    priority=envelope.priority,
                    kind=f"{envelope.kind}.failed",
                    correlation_id=envelope.correlation_id,
                    status=STATUS_AGENT_FAILED,
                    error=f"{type(exc).__name__}: {exc}",
                )
            )

    async def drain(self) -> None:
        """Wait until every mailbox is empty and its envelope handled."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))


def _as_envelopes(outgoing: object) -> list[Envelope]:
    """Check a handler's return value: None or a list/tuple of envelopes."""
    if outgoing is None:
        return []
    if isinstance(outgoing, list | tuple) and all(isinstance(e, Envelope) for e in outgoing):
        return list(outgoing)
    msg = f"handle() must return a list of envelopes, got {type(outgoing).__name__}"
    raise TypeError(msg)
