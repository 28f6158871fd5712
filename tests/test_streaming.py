"""Tests for ResumableStream — checkpointed generation and resume."""

import pytest

from discovery.errors import NotFoundError, UpstreamError
from discovery.llm.streaming import ResumableStream
from discovery.store import DiscoveryStore

FULL_TEXT = "Three reports came in during 1997. All describe silent lights."


class ScriptedGenerator:
    """Streams FULL_TEXT in fixed-size chunks, optionally failing part way."""

    def __init__(self, chunk: int = 8, fail_after: int | None = None) -> None:
        self.chunk = chunk
        self.fail_after = fail_after
        self.prefixes: list[str] = []

    async def complete(self, prompt: str) -> str:
        return FULL_TEXT

    async def stream(self, prompt: str, *, prefix: str = ""):
        self.prefixes.append(prefix)
        assert FULL_TEXT.startswith(prefix)
        rest = FULL_TEXT[len(prefix) :]
        for emitted, i in enumerate(range(0, len(rest), self.chunk)):
            if self.fail_after is not None and emitted == self.fail_after:
                self.fail_after = None
                msg = "connection reset"
                raise UpstreamError(msg)
            yield rest[i : i + self.chunk]


async def test_run_emits_everything_once(store: DiscoveryStore) -> None:
    received: list[str] = []

    async def on_chunk(text: str) -> None:
        received.append(text)

    stream = ResumableStream(ScriptedGenerator(), store, checkpoint_chars=0)
    text = await stream.run("s1", "prompt", on_chunk)

    assert text == FULL_TEXT
    assert "".join(received) == FULL_TEXT
    checkpoint = await store.get_checkpoint("s1")
    assert checkpoint.done
    assert checkpoint.content == FULL_TEXT


async def test_resume_continues_without_duplication(store: DiscoveryStore) -> None:
    generator = ScriptedGenerator(chunk=8, fail_after=3)
    stream = ResumableStream(generator, store, checkpoint_chars=0)
    first: list[str] = []
    second: list[str] = []

    async def on_first(text: str) -> None:
        first.append(text)

    async def on_second(text: str) -> None:
        second.append(text)

    with pytest.raises(UpstreamError):
        await stream.run("s1", "prompt", on_first)

    seen = "".join(first)
    assert seen == FULL_TEXT[:24]
    assert (await store.get_checkpoint("s1")).content == seen

    text = await stream.resume("s1", on_second)

    assert text == FULL_TEXT
    assert seen + "".join(second) == FULL_TEXT
    assert generator.prefixes == ["", seen]


async def test_buffered_checkpoints_flush_at_end(store: DiscoveryStore) -> None:
    received: list[str] = []

    async def on_chunk(text: str) -> None:
        received.append(text)

    stream = ResumableStream(ScriptedGenerator(chunk=5), store, checkpoint_chars=20)
    text = await stream.run("s1", "prompt", on_chunk)

    assert text == FULL_TEXT
    assert "".join(received) == FULL_TEXT
    assert all(len(c) >= 20 for c in received[:-1])


async def test_resume_finished_stream_returns_content(store: DiscoveryStore) -> None:
    generator = ScriptedGenerator()
    stream = ResumableStream(generator, store)
    await stream.run("s1", "prompt")

    assert await stream.resume("s1") == FULL_TEXT
    assert generator.prefixes == [""]


async def test_resume_unknown_stream(store: DiscoveryStore) -> None:
    stream = ResumableStream(ScriptedGenerator(), store)
    with pytest.raises(NotFoundError):
        await stream.resume("missing")


async def test_discard_removes_checkpoint(store: DiscoveryStore) -> None:
    stream = ResumableStream(ScriptedGenerator(), store)
    await stream.run("s1", "prompt")
    await stream.discard("s1")
    assert await store.get_checkpoint("s1") is None
