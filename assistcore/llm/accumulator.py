"""
Per-turn delta accumulation.

A ``DeltaAccumulator`` consumes the ``StreamChunk`` sequence of exactly one
provider turn and moves through::

    IDLE -> ACCUMULATING -> FINALIZING -> DONE
                                      \\-> FAILED

Text fragments are handed back from ``feed`` immediately so the caller can
forward them in arrival order without batching.  Tool-call fragments are
buffered in a ``ToolCallAssembler`` and only assembled once the terminal
chunk arrives.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from assistcore.llm.errors import MalformedResponseError, ProviderConnectionError
from assistcore.llm.tool_call_assembler import AssembledCall, ToolCallAssembler
from assistcore.llm.types import (
    FinishReason,
    Message,
    MessageStatus,
    Role,
    StreamChunk,
    UsageCounters,
)

logger = logging.getLogger(__name__)


class AccumulatorState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AccumulatedTurn:
    """The outcome of one provider turn."""

    message: Message
    finish_reason: str
    tool_calls: list[AssembledCall] = field(default_factory=list)
    usage: UsageCounters = field(default_factory=UsageCounters)

    @property
    def needs_followup(self) -> bool:
        """True when tool calls were assembled and a second round is required."""
        return self.finish_reason == FinishReason.TOOL_CALLS and bool(self.tool_calls)


class DeltaAccumulator:
    """Builds one assistant message out of a provider's stream."""

    def __init__(self, *, model: str | None = None, provider: str | None = None) -> None:
        self.model = model
        self.provider = provider
        self.state = AccumulatorState.IDLE
        self.usage = UsageCounters()
        self._parts: list[str] = []
        self._assembler = ToolCallAssembler()
        self._result: AccumulatedTurn | None = None

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def result(self) -> AccumulatedTurn | None:
        return self._result

    def feed(self, chunk: StreamChunk) -> str:
        """
        Consume one chunk and return the text to forward (possibly ``""``).

        The terminal chunk (``done=True``) finalizes the turn; ``result`` is
        available afterwards.
        """
        if self.state in (AccumulatorState.DONE, AccumulatorState.FAILED):
            raise RuntimeError(f"accumulator already {self.state.value}")
        self.state = AccumulatorState.ACCUMULATING

        if chunk.delta:
            self._parts.append(chunk.delta)

        if chunk.tool_deltas:
            for td in chunk.tool_deltas:
                self._assembler.feed(td)

        if chunk.usage is not None:
            self.usage.merge_partial(chunk.usage)

        if chunk.done:
            self.finalize(chunk.finish_reason)

        return chunk.delta

    def finalize(self, finish_reason: str | None) -> AccumulatedTurn:
        """
        Close the turn.

        Raises ``MalformedResponseError`` for an ``error`` finish and
        ``ProviderConnectionError`` when the stream ended without any finish
        reason; in both cases the accumulator ends in ``FAILED``.
        """
        if self._result is not None:
            return self._result
        self.state = AccumulatorState.FINALIZING

        if finish_reason is None:
            self.state = AccumulatorState.FAILED
            raise ProviderConnectionError(
                "stream ended before the provider reported a finish reason",
                provider=self.provider or "",
            )
        if finish_reason == FinishReason.ERROR:
            self.state = AccumulatorState.FAILED
            raise MalformedResponseError(
                "provider terminated the turn with an error",
                provider=self.provider or "",
            )

        tool_calls: list[AssembledCall] = []
        if finish_reason == FinishReason.TOOL_CALLS:
            tool_calls = self._assembler.finalize()
            for failed in (c for c in tool_calls if not c.ok):
                logger.warning(
                    "Tool call %s could not be assembled: %s",
                    failed.call.id,
                    failed.error,
                )
        elif self._assembler.pending:
            logger.warning(
                "Discarding %d tool-call fragment buffer(s) on finish_reason=%s",
                self._assembler.pending,
                finish_reason,
            )
            self._assembler.reset()

        message = Message(
            role=Role.ASSISTANT,
            content=self.content or None,
            status=MessageStatus.COMPLETE,
            tool_calls=[c.call for c in tool_calls] or None,
            usage=UsageCounters(
                self.usage.prompt_tokens,
                self.usage.completion_tokens,
                self.usage.total_tokens,
            ),
            model=self.model,
            provider=self.provider,
        )
        self._result = AccumulatedTurn(
            message=message,
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            usage=message.usage,
        )
        self.state = AccumulatorState.DONE
        return self._result

    def fail(self) -> None:
        """Mark the turn failed (network error, cancellation)."""
        self.state = AccumulatorState.FAILED
        self._assembler.reset()
