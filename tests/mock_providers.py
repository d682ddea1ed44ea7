"""
Mock LLM providers for testing.

Provides canned responses so tests can exercise the accumulator,
orchestrator and sessions without hitting real APIs.
"""

from __future__ import annotations

import json
from typing import AsyncIterator

from assistcore.llm.errors import ProviderError, RateLimitError
from assistcore.llm.providers.base import Provider
from assistcore.llm.token_counter import TokenCounter
from assistcore.llm.types import (
    ContextBundle,
    FinishReason,
    ImageAttachment,
    Message,
    ModelConfig,
    RawToolDelta,
    StreamChunk,
    UsageCounters,
)


class MockProvider(Provider):
    """
    A provider that yields pre-configured ``StreamChunk`` sequences.

    Usage::

        provider = MockProvider(rounds=[
            text_chunks("Hello ", "world!"),
        ])

    Each call to ``stream_turn`` plays the next round; once the rounds are
    used up the last one repeats.

    Parameters
    ----------
    rounds:
        One ``StreamChunk`` list per ``stream_turn`` call.
    probe_answer:
        Reply returned by ``probe``.
    probe_error:
        Raised by ``probe`` instead of answering, when set.
    max_ctx:
        Value for ``max_context_tokens``.
    max_out:
        Value for ``max_output_tokens``.
    """

    def __init__(
        self,
        rounds: list[list[StreamChunk]] | None = None,
        model_name: str = "mock-model",
        probe_answer: str = "false",
        probe_error: Exception | None = None,
        max_ctx: int = 8192,
        max_out: int = 1024,
    ) -> None:
        config = ModelConfig(
            provider="mock",
            model=model_name,
            max_output_tokens=max_out,
            max_context_tokens=max_ctx,
        )
        super().__init__(config)
        self._counter = TokenCounter(None, use_tiktoken=False)
        self._rounds = rounds or [text_chunks()]
        self.probe_answer = probe_answer
        self.probe_error = probe_error
        self.calls: list[dict] = []
        self.probe_calls: list[tuple[str, ImageAttachment]] = []
        self.aborted = 0
        self.closed = False

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def stream_turn(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None = None,
        tools: list[dict] | None = None,
        *,
        trailing: list[Message] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        idx = min(len(self.calls), len(self._rounds) - 1)
        self.calls.append(
            {
                "history": list(history),
                "current": current,
                "image": context.image if context else None,
                "context": context,
                "tools": tools,
                "trailing": list(trailing or []),
            }
        )
        finished = False
        try:
            for chunk in self._rounds[idx]:
                if isinstance(chunk, Exception):
                    raise chunk
                if chunk.done:
                    finished = True
                yield chunk
            finished = True
        finally:
            if not finished:
                self.aborted += 1

    async def probe(self, prompt: str, image: ImageAttachment) -> str:
        self.probe_calls.append((prompt, image))
        if self.probe_error is not None:
            raise self.probe_error
        return self.probe_answer

    async def aclose(self) -> None:
        self.closed = True


class RateLimitedProvider(MockProvider):
    """Always answers with a throttling error before yielding anything."""

    def __init__(self, retry_after: float | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.retry_after = retry_after

    async def stream_turn(self, history, current, context=None, tools=None, *, trailing=None):
        self.calls.append({"history": list(history), "current": current})
        raise RateLimitError("429 Too Many Requests", provider="mock", retry_after=self.retry_after)
        yield StreamChunk()  # pragma: no cover


class FailingProvider(MockProvider):
    """Raises *error* when a turn is streamed."""

    def __init__(self, error: ProviderError, **kwargs) -> None:
        super().__init__(**kwargs)
        self.error = error

    async def stream_turn(self, history, current, context=None, tools=None, *, trailing=None):
        self.calls.append({"history": list(history), "current": current})
        raise self.error
        yield StreamChunk()  # pragma: no cover


# ---------------------------------------------------------------------------
# Chunk builders
# ---------------------------------------------------------------------------


def text_chunks(
    *fragments: str,
    usage: UsageCounters | None = None,
    finish: str = FinishReason.STOP,
) -> list[StreamChunk]:
    """Stream *fragments* as text deltas, then a terminal chunk."""
    chunks = [StreamChunk(delta=f) for f in fragments]
    if usage is not None:
        chunks.append(StreamChunk(usage=usage))
    chunks.append(StreamChunk(finish_reason=finish, done=True))
    return chunks


def tool_call_chunks(
    tool_name: str,
    tool_args: dict,
    call_id: str = "call_abc123",
    content_prefix: str = "",
    call_index: int = 0,
    terminal: bool = True,
) -> list[StreamChunk]:
    """
    Stream one tool call the way OpenAI-style providers do.

    The name is split in two and the arguments in thirds to exercise the
    assembler.
    """
    args_json = json.dumps(tool_args)
    chunks: list[StreamChunk] = []

    # Optional text content before the tool call.
    if content_prefix:
        chunks.append(StreamChunk(delta=content_prefix))

    half = len(tool_name) // 2
    chunks.append(
        StreamChunk(
            tool_deltas=[
                RawToolDelta(call_index=call_index, id=call_id, name_delta=tool_name[:half])
            ]
        )
    )
    chunks.append(
        StreamChunk(tool_deltas=[RawToolDelta(call_index=call_index, name_delta=tool_name[half:])])
    )

    third = max(1, len(args_json) // 3)
    for part in (args_json[:third], args_json[third : 2 * third], args_json[2 * third :]):
        if part:
            chunks.append(
                StreamChunk(tool_deltas=[RawToolDelta(call_index=call_index, args_delta=part)])
            )

    if terminal:
        chunks.append(StreamChunk(finish_reason=FinishReason.TOOL_CALLS, done=True))
    return chunks


def multi_tool_call_chunks(calls: list[tuple[str, dict, str]]) -> list[StreamChunk]:
    """
    Stream several tool calls with interleaved fragments.

    *calls* is a list of ``(tool_name, tool_args, call_id)`` tuples.
    """
    chunks: list[StreamChunk] = []

    # Emit all names first (interleaved).
    for idx, (tool_name, _, call_id) in enumerate(calls):
        chunks.append(
            StreamChunk(tool_deltas=[RawToolDelta(call_index=idx, id=call_id, name_delta=tool_name)])
        )

    # Then the arguments, also interleaved, in two halves each.
    halves = []
    for _, tool_args, _ in calls:
        args_json = json.dumps(tool_args)
        mid = len(args_json) // 2
        halves.append((args_json[:mid], args_json[mid:]))
    for part in (0, 1):
        for idx, pair in enumerate(halves):
            chunks.append(StreamChunk(tool_deltas=[RawToolDelta(call_index=idx, args_delta=pair[part])]))

    chunks.append(StreamChunk(finish_reason=FinishReason.TOOL_CALLS, done=True))
    return chunks


def make_text_provider(text: str, model_name: str = "mock-text") -> MockProvider:
    """
    Convenience: create a ``MockProvider`` that streams a simple text response
    one word at a time.
    """
    words = text.split(" ")
    fragments = [w + (" " if i < len(words) - 1 else "") for i, w in enumerate(words)]
    return MockProvider(rounds=[text_chunks(*fragments)], model_name=model_name)


def make_tool_call_provider(
    tool_name: str,
    tool_args: dict,
    followup_text: str = "Done.",
    call_id: str = "call_abc123",
) -> MockProvider:
    """A provider that asks for one tool call, then answers with text."""
    return MockProvider(
        rounds=[
            tool_call_chunks(tool_name, tool_args, call_id=call_id),
            text_chunks(followup_text),
        ]
    )
