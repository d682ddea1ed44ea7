"""
Token-budgeted history truncation.

:class:`TokenBudgetManager` trims the conversation history so that the
request about to be sent stays under a configured ceiling.  The strategy:

1.  Fixed costs are the system prompt, the tool schemas, every system-role
    message in the history and the current turn as it goes on the wire:
    the image framing around the query and the per-turn context section
    (search results, selected text).  These are always kept;
    if they alone exceed the ceiling the turn fails fast with
    :class:`~assistcore.llm.errors.TurnTooLargeError`.
2.  Walk the remaining history newest to oldest, accumulating token costs.
3.  At the first message that would push the total over the ceiling, stop:
    that message and every older non-system message are dropped, so the
    kept history is always a contiguous recent suffix.
4.  Return the kept messages in their original order together with a
    :class:`~assistcore.types.BudgetReport`.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from assistcore.llm.errors import TurnTooLargeError
from assistcore.llm.token_counter import TokenCounter
from assistcore.llm.types import ContextBundle, Message, MessageStatus, Role
from assistcore.prompts.system import frame_image_query, render_context_section
from assistcore.types import BudgetReport

logger = logging.getLogger(__name__)


def derive_ceiling(
    max_context_tokens: int,
    max_output_tokens: int,
    headroom_tokens: int = 200,
) -> int:
    """Ceiling below the provider window, leaving room for the response."""
    return max(0, max_context_tokens - max_output_tokens - headroom_tokens)


class TokenBudgetManager:
    """
    Fit a conversation into a token ceiling.

    Parameters
    ----------
    token_counter:
        Any object exposing ``count_text(str) -> int`` and
        ``count_message(Message) -> int``.
    ceiling_tokens:
        Upper bound for system prompt + tools + kept history + current turn.
    system_prompt:
        The fixed system prompt whose cost is charged to every request.
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        ceiling_tokens: int,
        system_prompt: str = "",
    ) -> None:
        self.token_counter = token_counter
        self.ceiling_tokens = ceiling_tokens
        self.system_prompt = system_prompt
        self.system_prompt_tokens = token_counter.count_text(system_prompt)

    def fit(
        self,
        history: list[Message],
        current: Message,
        tools: list[dict] | None = None,
        followups: list[Message] | None = None,
        context: ContextBundle | None = None,
    ) -> tuple[list[Message], BudgetReport]:
        """
        Truncate *history* so the request fits under the ceiling.

        *history* must not contain *current*.  *followups* are the messages
        of the current turn that come after the user message (tool calls and
        their results); they are charged to the current turn, together with the
        *context* section the adapters add for this turn.  Messages with
        ``error`` status are never sent and are left out.  Raises
        ``TurnTooLargeError`` when the fixed costs alone exceed the ceiling.
        """
        count = self.token_counter.count_message
        history = [m for m in history if m.status != MessageStatus.ERROR]
        tool_schema_tokens = self.token_counter.count_tools(tools)
        current_tokens = self._current_cost(current, context) + sum(
            count(m) for m in followups or ()
        )

        system_tokens = sum(count(m) for m in history if m.role == Role.SYSTEM)

        fixed = (
            self.system_prompt_tokens + tool_schema_tokens + current_tokens + system_tokens
        )
        if fixed > self.ceiling_tokens:
            raise TurnTooLargeError(
                f"Turn too large: needs ~{fixed} tokens but the ceiling is "
                f"{self.ceiling_tokens}",
                required=fixed,
                ceiling=self.ceiling_tokens,
            )

        remaining = self.ceiling_tokens - fixed
        keep = [m.role == Role.SYSTEM for m in history]
        running = 0

        # -- Walk backwards, stop at the first message that does not fit --
        for idx in range(len(history) - 1, -1, -1):
            msg = history[idx]
            if msg.role == Role.SYSTEM:
                continue
            cost = count(msg)
            if running + cost > remaining:
                break
            running += cost
            keep[idx] = True

        # A tool result whose tool-call message was dropped cannot be sent alone.
        for idx, msg in enumerate(history):
            if not keep[idx] or msg.role == Role.SYSTEM:
                continue
            if msg.role != Role.TOOL:
                break
            keep[idx] = False
            running -= count(msg)

        kept = [m for m, k in zip(history, keep) if k]
        dropped = len(history) - len(kept)
        if dropped:
            logger.info(
                "Budget: dropped %d oldest message(s) to fit %d-token ceiling",
                dropped,
                self.ceiling_tokens,
            )

        report = BudgetReport(
            ceiling_tokens=self.ceiling_tokens,
            system_prompt_tokens=self.system_prompt_tokens,
            tool_schema_tokens=tool_schema_tokens,
            current_turn_tokens=current_tokens,
            history_tokens=system_tokens + running,
            kept_messages=len(kept),
            dropped_messages=dropped,
        )
        return kept, report

    def _current_cost(self, current: Message, context: ContextBundle | None) -> int:
        """Cost of the current turn as the adapters send it."""
        framed = current
        if current.image is not None:
            framed = replace(current, content=frame_image_query(current.text))
        section = render_context_section(context) or ""
        return self.token_counter.count_message(framed) + self.token_counter.count_text(section)
