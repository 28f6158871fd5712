"""Resumable text streams checkpointed to the store.

Generated text is written to a checkpoint before it is emitted, so a
consumer that disconnects can reattach with ``resume()`` and receive exactly
the text that follows what it already saw.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discovery.config import settings
from discovery.errors import NotFoundError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from discovery.llm.client import TextGenerator
    from discovery.store.store import DiscoveryStore

logger = logging.getLogger(__name__)


class ResumableStream:
    """Runs a streaming generation as a checkpointed, cancellable task.

    Args:
        generator: Streaming text generator.
        store: Where checkpoints live.
        checkpoint_chars: Characters buffered between checkpoints; 0 writes
            a checkpoint (and emits) for every chunk.
    """

    def __init__(
        self,
        generator: TextGenerator,
        store: DiscoveryStore,
        *,
        checkpoint_chars: int | None = None,
    ) -> None:
        self._generator = generator
        self._store = store
        self._checkpoint_chars = (
            settings.stream_checkpoint_chars if checkpoint_chars is None else checkpoint_chars
        )

    async def run(
        self,
        stream_id: str,
        prompt: str,
        on_chunk: Callable[[str], Awaitable[None]] | None = None,
    ) -> str:
        """Start a new stream and return its full text."""
        await self._store.save_checkpoint(stream_id, prompt, "")
        return await self._consume(stream_id, prompt, "", on_chunk)

    async def resume(
        self,
        stream_id: str,
        on_chunk: Callable[[str], Awaitable[None]] | None = None,
    ) -> str:
        """Reattach to an interrupted stream and continue from its checkpoint.

        ``on_chunk`` receives only text generated after the checkpoint. The
        return value is the full text, checkpointed prefix included.
        """
        checkpoint = await self._store.get_checkpoint(stream_id)
        if checkpoint is None:
            msg = f"No stream to resume: {stream_id}"
            raise NotFoundError(msg)
        if checkpoint.done:
            return checkpoint.content
        logger.info(
            "Resuming stream %s from %d checkpointed chars", stream_id, len(checkpoint.content)
        )
        return await self._consume(stream_id, checkpoint.prompt, checkpoint.content, on_chunk)

    async def discard(self, stream_id: str) -> None:
        await self._store.delete_checkpoint(stream_id)

    async def _consume(
        self,
        stream_id: str,
        prompt: str,
        content: str,
        on_chunk: Callable[[str], Awaitable[None]] | None,
    ) -> str:
        pending = ""
        async for chunk in self._generator.stream(prompt, prefix=content):
            pending += chunk
            if len(pending) >= self._checkpoint_chars:
                content += pending
                await self._store.save_checkpoint(stream_id, prompt, content)
                if on_chunk is not None:
                    await on_chunk(pending)
                pending = ""

        if pending:
            content += pending
            await self._store.save_checkpoint(stream_id, prompt, content)
            if on_chunk is not None:
                await on_chunk(pending)

        await self._store.save_checkpoint(stream_id, prompt, content, done=True)
        return content
