"""Abstract base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

import httpx

from assistcore.llm.token_counter import TokenCounter
from assistcore.llm.types import (
    ContextBundle,
    ImageAttachment,
    Message,
    MessageStatus,
    ModelConfig,
    Role,
    StreamChunk,
)
from assistcore.prompts.system import frame_image_query, render_context_section


class Provider(ABC):
    """
    A provider encapsulates access to a single LLM endpoint.

    One instance is built per ``ModelConfig`` and owned by exactly one
    session.  Implementations must support:
      - Streaming one turn (``stream_turn``) as uniform ``StreamChunk``
        events, the last one carrying ``done=True`` and a finish reason.
      - A short, non-streamed multimodal question (``probe``).
      - Token counting and reporting context-window limits.

    Adapters never retry; throttling surfaces as ``RateLimitError`` for the
    retry controller to handle.
    """

    def __init__(self, config: ModelConfig, system_prompt: str = "") -> None:
        self.config = config
        self.system_prompt = system_prompt
        self._counter = TokenCounter(config.model)

    @abstractmethod
    async def stream_turn(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None = None,
        tools: list[dict] | None = None,
        *,
        trailing: list[Message] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream one turn.

        *history* is sent as text only; an image in *context* is attached to
        *current* alone.  *tools* are function schemas in OpenAI form.
        *trailing* carries the current turn's tool-call message and tool
        results during a follow-up round; they are sent after *current*.
        Closing the returned generator aborts the upstream request.
        """
        ...
        # Make the method an async generator so sub-classes can ``yield``.
        # This line is unreachable but satisfies the type checker.
        if False:  # pragma: no cover
            yield StreamChunk()  # type: ignore[misc]

    @abstractmethod
    async def probe(self, prompt: str, image: ImageAttachment) -> str:
        """Ask a short question about *image* and return the raw answer text."""
        ...

    def count_tokens(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
    ) -> int:
        """Estimate the total token count for the given conversation."""
        return self._counter.count_messages(messages, tools)

    @property
    def token_counter(self) -> TokenCounter:
        return self._counter

    @property
    def max_context_tokens(self) -> int:
        """Maximum number of tokens the model can accept as input."""
        return self.config.max_context_tokens

    @property
    def max_output_tokens(self) -> int:
        """Maximum number of tokens the model can generate."""
        return self.config.max_output_tokens

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. ``"openai"``)."""
        ...

    async def aclose(self) -> None:
        """Release any client held by the adapter."""

    # ------------------------------------------------------------------
    # Shared request shaping
    # ------------------------------------------------------------------

    def system_sections(self, context: ContextBundle | None) -> list[str]:
        """System prompt plus the per-turn context section, if any."""
        sections = [self.system_prompt] if self.system_prompt else []
        extra = render_context_section(context)
        if extra:
            sections.append(extra)
        return sections

    @staticmethod
    def wire_history(history: list[Message]) -> list[Message]:
        """History as sent upstream: error messages are never replayed.

        Assistant messages carrying neither text nor tool calls are left out
        too; the provider APIs reject them.
        """
        return [
            m
            for m in history
            if m.status != MessageStatus.ERROR
            and not (m.role == Role.ASSISTANT and not m.text and not m.tool_calls)
        ]

    @staticmethod
    def current_text(current: Message, image: ImageAttachment | None) -> str:
        """Current-turn text, framed relative to the query when an image rides along."""
        if image is not None:
            return frame_image_query(current.text)
        return current.text


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """
    Yield the payload of every ``data:`` line of a Server-Sent Events body.

    Each SSE event has the form::

        data: {json}\\n\\n

    Blank lines (event boundaries), comments and other fields are skipped.
    Lines come from ``aiter_lines`` so multi-byte characters split across
    network reads decode intact.
    """
    async for line in response.aiter_lines():
        line = line.rstrip("\r")
        if line.startswith("data:"):
            yield line[len("data:"):].strip()
