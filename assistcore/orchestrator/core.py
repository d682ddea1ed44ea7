"""
Orchestrator core -- the two-phase turn engine.

For one user turn the orchestrator:
1. Resolves the turn's context (screenshot policy, optional web search)
2. Fits the history into the token budget
3. Streams the provider response through the retry controller, forwarding
   text fragments as they arrive
4. If the model asked for tools: executes them in call order, folds the
   results into the turn and streams a follow-up round (bounded, one by
   default)
5. Records the final assistant message (or one error message) in history

Any provider failure resolves the turn to ``error``; history keeps the user
message and gains a diagnostic message that is never replayed upstream.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from assistcore.llm.accumulator import DeltaAccumulator
from assistcore.llm.errors import ProviderError
from assistcore.llm.providers.base import Provider
from assistcore.llm.retry import RetryController
from assistcore.llm.types import (
    ContextBundle,
    ImageAttachment,
    Message,
    MessageStatus,
    Role,
    UsageCounters,
)
from assistcore.search import TavilyClient, gather_search_context
from assistcore.session.budget import TokenBudgetManager
from assistcore.session.context_policy import ContextPolicy
from assistcore.session.events import TextFragment, ToolNotice, TurnEvent, TurnResult
from assistcore.tools.dispatcher import ToolDispatcher
from assistcore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class TurnState:
    """Where ``Orchestrator.run`` leaves its result; set on every exit path."""

    result: TurnResult | None = None


class Orchestrator:
    """
    Two-phase turn engine bound to one provider adapter.

    Parameters
    ----------
    provider : Provider
        The session's adapter.
    registry : ToolRegistry
        Registered tools (frozen by the time turns run).
    budget : TokenBudgetManager
        History truncation for this provider's window.
    retry : RetryController
        Spacing/backoff policy for this adapter instance.
    context_policy : ContextPolicy
        Screenshot decision; owned by the session.
    max_followup_rounds : int
        Automatic continuations after tool execution.
    tool_timeout : float
        Max seconds for a single tool execution.
    search : TavilyClient | None
        When set, turns that look like current-events questions get web
        search results in their context.
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        budget: TokenBudgetManager,
        retry: RetryController,
        context_policy: ContextPolicy,
        max_followup_rounds: int = 1,
        tool_timeout: float = 30.0,
        search: TavilyClient | None = None,
        search_max_results: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.budget = budget
        self.retry = retry
        self.context_policy = context_policy
        self.max_followup_rounds = max_followup_rounds
        self.dispatcher = ToolDispatcher(registry, tool_timeout=tool_timeout)
        self.search = search
        self.search_max_results = search_max_results
        self._clock = clock

    async def run(
        self,
        history: list[Message],
        user_text: str,
        pending_image: ImageAttachment | None,
        state: TurnState,
    ) -> AsyncIterator[TurnEvent]:
        """
        Process one user turn, appending its messages to *history*.

        Yields ``TextFragment`` and ``ToolNotice`` events.  ``state.result``
        is set before the generator finishes, including when the caller
        closes it early (the turn then resolves to ``error``).
        """
        started = self._clock()
        user_msg = Message(role=Role.USER, content=user_text, status=MessageStatus.SENDING)
        usage = UsageCounters()
        rounds = 0

        try:
            context = await self._resolve_context(user_text, pending_image)
            user_msg.image = context.image
            tools = self.registry.to_openai_schema() or None

            prior = list(history)
            history.append(user_msg)
            trailing: list[Message] = []
            kept, report = self.budget.fit(prior, user_msg, tools, context=context)
            logger.debug("Budget report: %s", report)

            while True:
                rounds += 1
                acc = DeltaAccumulator(
                    model=self.provider.config.model, provider=self.provider.name
                )
                upstream = self.retry.stream(
                    lambda: self.provider.stream_turn(
                        kept, user_msg, context, tools, trailing=trailing
                    )
                )
                try:
                    async for chunk in upstream:
                        text = acc.feed(chunk)
                        if text:
                            yield TextFragment(text, round=rounds - 1)
                        if acc.result is not None:
                            break
                finally:
                    await upstream.aclose()

                turn = acc.result or acc.finalize(None)
                usage.add(turn.usage)

                if not turn.needs_followup:
                    break

                if rounds > self.max_followup_rounds:
                    # Bound reached: the further calls are not executed.
                    logger.info(
                        "Tool round limit reached; ignoring %d further call(s)",
                        len(turn.tool_calls),
                    )
                    unanswered = [c.call.name for c in turn.tool_calls]
                    turn.message.tool_calls = None
                    turn.message.metadata["unanswered_tool_calls"] = unanswered
                    if not turn.message.text:
                        # Replayed assistant messages need text or tool calls.
                        note = f"(Tool-call limit reached; not run: {', '.join(unanswered)})"
                        turn.message.content = note
                        yield TextFragment(note, round=rounds - 1)
                    break

                trailing.append(turn.message)
                for call in turn.tool_calls:
                    yield ToolNotice(tool_name=call.call.name, call_id=call.call.id)
                    trailing.append(await self.dispatcher.dispatch_one(call))

                kept, report = self.budget.fit(
                    prior, user_msg, tools, followups=trailing, context=context
                )

            final = turn.message
            final.usage = usage
            final.metadata.update(
                model=self.provider.config.model,
                provider=self.provider.name,
                processing_time=round(self._clock() - started, 3),
                has_image_analysis=context.image is not None,
                token_usage={
                    "prompt": usage.prompt_tokens,
                    "completion": usage.completion_tokens,
                    "total": usage.total_tokens,
                },
            )
            user_msg.status = MessageStatus.COMPLETE
            history.extend(trailing)
            history.append(final)
            state.result = TurnResult(
                status=MessageStatus.COMPLETE, message=final, usage=usage, rounds=rounds
            )

        except ProviderError as exc:
            logger.warning("Turn failed [%s]: %s", exc.code, exc)
            self._fail(history, user_msg, state, exc, usage, rounds)
        except Exception as exc:
            logger.exception("Unexpected error during turn")
            self._fail(history, user_msg, state, ProviderError(str(exc)), usage, rounds)
        finally:
            # Closed by the caller (cancellation) before a result was recorded.
            if state.result is None:
                logger.info("Turn cancelled by caller")
                self._fail(
                    history, user_msg, state, ProviderError("turn cancelled"), usage, rounds
                )
            # The bundle lives for one request/response cycle only.
            user_msg.image = None

    async def _resolve_context(
        self, user_text: str, pending_image: ImageAttachment | None
    ) -> ContextBundle:
        context = await self.context_policy.resolve(user_text, pending_image, self.provider)
        if self.search is not None:
            context.search_results = await gather_search_context(
                self.search, user_text, self.search_max_results
            )
        return context

    def _fail(
        self,
        history: list[Message],
        user_msg: Message,
        state: TurnState,
        exc: ProviderError,
        usage: UsageCounters,
        rounds: int,
    ) -> None:
        if not any(m is user_msg for m in history):
            history.append(user_msg)
        # A failed exchange is kept for display but never replayed upstream.
        user_msg.status = MessageStatus.ERROR
        error_msg = Message(
            role=Role.ASSISTANT,
            content=f"Error: {exc}",
            status=MessageStatus.ERROR,
            model=self.provider.config.model,
            provider=self.provider.name,
            usage=usage,
            metadata={"error_code": exc.code},
        )
        history.append(error_msg)
        state.result = TurnResult(
            status=MessageStatus.ERROR,
            message=error_msg,
            usage=usage,
            error=exc,
            rounds=max(rounds, 1),
        )
