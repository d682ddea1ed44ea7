"""Core types for the LLM subsystem."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone


class Role:
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessageStatus:
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


class FinishReason:
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"


@dataclass(frozen=True)
class ModelConfig:
    """
    Everything needed to build one provider adapter.

    Immutable: switching models builds a new adapter from a new config.
    """

    provider: str
    model: str
    temperature: float = 0.7
    max_output_tokens: int = 2000
    credential: str = field(default="", repr=False)
    api_base: str = ""
    max_context_tokens: int = 128_000
    timeout: float = 120.0

    @property
    def model_id(self) -> str:
        return f"{self.provider}:{self.model}"

    def with_credential(self, credential: str) -> ModelConfig:
        return replace(self, credential=credential)


@dataclass
class UsageCounters:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: UsageCounters) -> None:
        """Accumulate *other* into this counter (used across rounds)."""
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def merge_partial(self, update: UsageCounters) -> None:
        """
        Apply a partial usage update from within one stream.

        Providers report running totals (Anthropic sends input tokens at the
        start and output tokens at the end), so non-zero fields overwrite.
        """
        if update.prompt_tokens:
            self.prompt_tokens = update.prompt_tokens
        if update.completion_tokens:
            self.completion_tokens = update.completion_tokens
        self.total_tokens = update.total_tokens or (
            self.prompt_tokens + self.completion_tokens
        )


@dataclass(frozen=True)
class ImageAttachment:
    """A captured screen image: base64 payload plus capture time."""

    base64: str = field(repr=False)
    media_type: str = "image/png"
    path: str = ""
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64}"


@dataclass(frozen=True)
class SearchResult:
    title: str
    content: str
    url: str
    score: float = 0.0


@dataclass
class ContextBundle:
    """
    Non-text material attached to a single turn.

    Owned by the turn that produced it and discarded when the turn resolves.
    """

    image: ImageAttachment | None = None
    selected_text: str | None = None
    search_results: list[SearchResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.image is None and not self.selected_text and not self.search_results


@dataclass
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user", "assistant", "system", "tool"
    content: str | None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: str = MessageStatus.COMPLETE
    image: ImageAttachment | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    usage: UsageCounters | None = None
    model: str | None = None
    provider: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.content or ""


@dataclass
class RawToolDelta:
    """
    An incremental delta for a streaming tool call.

    Providers emit these as tool-call fragments arrive.  The ToolCallAssembler
    concatenates fragments per ``call_index`` in arrival order.  Absent
    fragments (``None`` / empty) never overwrite what was already received.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""


@dataclass
class StreamChunk:
    """
    A single event yielded while streaming one provider turn.

    *delta* carries new text content.
    *tool_deltas* carries incremental tool-call fragments.
    *usage* carries a partial usage update.
    The final chunk has ``done=True`` and a *finish_reason* of
    ``"stop"``, ``"tool_calls"`` or ``"error"``.
    """

    delta: str = ""
    tool_deltas: list[RawToolDelta] | None = None
    usage: UsageCounters | None = None
    finish_reason: str | None = None
    done: bool = False
