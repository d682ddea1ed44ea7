"""
Turn stream event model.

A submitted turn produces a lazy, finite, non-restartable sequence of
events for the caller:

  - ``TextFragment``: a piece of assistant text, in provider order;
  - ``ToolNotice``: a tool is about to run (progress only, not content);

terminated by one ``TurnResult`` that is available on the stream once it
has been exhausted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from assistcore.llm.errors import ProviderError
from assistcore.llm.types import Message, MessageStatus, UsageCounters


@dataclass(frozen=True)
class TextFragment:
    text: str
    round: int = 0


@dataclass(frozen=True)
class ToolNotice:
    tool_name: str
    call_id: str

    @property
    def text(self) -> str:
        return f"Using tool: {self.tool_name}..."


TurnEvent = Union[TextFragment, ToolNotice]


@dataclass
class TurnResult:
    """
    Final state of one turn.

    *status* is ``complete`` or ``error``; *message* is the final assistant
    message (for errors, the diagnostic message); *usage* aggregates every
    provider round of the turn.
    """

    status: str
    message: Message
    usage: UsageCounters = field(default_factory=UsageCounters)
    error: ProviderError | None = None
    rounds: int = 1

    @property
    def ok(self) -> bool:
        return self.status == MessageStatus.COMPLETE
