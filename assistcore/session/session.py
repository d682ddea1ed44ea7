"""
Conversation session.

A :class:`ChatSession` owns everything one conversation needs:

- its provider adapter (never shared with another session);
- the message history;
- the context policy (its one-shot first-turn flag is per conversation);
- a retry controller and token budget bound to the current adapter.

At most one turn is in flight per session.  ``submit_turn`` and
``switch_model`` both raise :class:`SessionBusyError` while a turn is
running; callers queue or reject, they never interleave.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from assistcore.collaborators import CredentialResolver
from assistcore.llm.errors import ProviderError, SessionBusyError
from assistcore.llm.providers.base import Provider
from assistcore.llm.registry import ProviderRegistry
from assistcore.llm.retry import RetryController
from assistcore.llm.types import ImageAttachment, Message, MessageStatus, ModelConfig, Role
from assistcore.orchestrator.core import Orchestrator, TurnState
from assistcore.prompts.system import build_system_prompt
from assistcore.search import TavilyClient
from assistcore.session.budget import TokenBudgetManager, derive_ceiling
from assistcore.session.context_policy import ContextPolicy
from assistcore.session.events import TurnEvent, TurnResult
from assistcore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class SessionOptions:
    """Per-session engine knobs (normally filled from ``AssistConfig``)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    min_interval: float = 0.5
    ceiling_tokens: int = 0
    headroom_tokens: int = 200
    probe_enabled: bool = True
    probe_first_turn_only: bool = True
    max_followup_rounds: int = 1
    tool_timeout: float = 30.0
    search_max_results: int = 3


class TurnStream:
    """
    Async iterator over one turn's events.

    The stream is lazy, finite and cannot be restarted.  Once it is
    exhausted (or closed) ``result`` holds the ``TurnResult``.  Closing it
    early cancels the turn and aborts the upstream request.  Use it as an
    ``async with`` block, or call ``aclose()``, when it may not be drained;
    a stream dropped unfinished is closed from its finalizer.
    """

    def __init__(
        self,
        events: AsyncIterator[TurnEvent],
        state: TurnState,
        on_finish: Callable[[], None],
    ) -> None:
        self._events = events
        self._state = state
        self._on_finish = on_finish
        self._finished = False

    def __aiter__(self) -> TurnStream:
        return self

    async def __aenter__(self) -> TurnStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self._finish()

    def __del__(self) -> None:
        if self._finished:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to close the upstream on; at least free the session.
            self._finished = True
            self._on_finish()
            return
        loop.create_task(self._finish())

    async def __anext__(self) -> TurnEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except BaseException:
            # StopAsyncIteration on normal exhaustion; anything else aborts.
            await self._finish()
            raise

    @property
    def result(self) -> TurnResult | None:
        return self._state.result

    @property
    def done(self) -> bool:
        return self._finished

    async def aclose(self) -> None:
        """Cancel the turn if it is still running."""
        await self._finish()

    async def collect(self) -> TurnResult:
        """Drain the remaining events and return the result."""
        async for _ in self:
            pass
        assert self._state.result is not None
        return self._state.result

    async def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            await self._events.aclose()
        finally:
            if self._state.result is None:
                # Closed before the turn started: nothing reached history.
                error = ProviderError("turn cancelled")
                self._state.result = TurnResult(
                    status=MessageStatus.ERROR,
                    message=Message(
                        role=Role.ASSISTANT,
                        content=f"Error: {error}",
                        status=MessageStatus.ERROR,
                        metadata={"error_code": error.code},
                    ),
                    error=error,
                )
            self._on_finish()


class ChatSession:
    """
    One conversation bound to one provider adapter.

    Parameters
    ----------
    provider:
        The adapter this session starts with.  The session takes ownership
        and closes it on ``switch_model`` / ``aclose``.
    registry:
        Tool definitions.  Frozen when the first turn is submitted.
    session_id:
        Identifier; a random one is generated when omitted.
    options:
        Retry, budget and context-policy settings.
    providers:
        Factory used by ``switch_model`` to build replacement adapters.
    credentials:
        Fills in ``ModelConfig.credential`` on ``switch_model`` when the
        new config carries none.
    search:
        Optional Tavily client for current-events questions.
    system_prompt:
        Fixed system prompt.  When omitted it is built from the registered
        tools at the first turn.
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry | None = None,
        *,
        session_id: str | None = None,
        options: SessionOptions | None = None,
        providers: ProviderRegistry | None = None,
        credentials: CredentialResolver | None = None,
        search: TavilyClient | None = None,
        system_prompt: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.provider = provider
        self.registry = registry if registry is not None else ToolRegistry()
        self.options = options or SessionOptions()
        self.providers = providers
        self.credentials = credentials
        self.search = search
        self.system_prompt = system_prompt
        self.history: list[Message] = []
        self.context_policy = ContextPolicy(
            probe_enabled=self.options.probe_enabled,
            first_turn_only=self.options.probe_first_turn_only,
        )
        self._sleep = sleep
        self._clock = clock
        self._orchestrator: Orchestrator | None = None
        self._busy = False
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        """True while a submitted turn has not resolved."""
        return self._busy

    @property
    def model_config(self) -> ModelConfig:
        return self.provider.config

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def submit_turn(
        self,
        user_text: str,
        pending_image: ImageAttachment | None = None,
    ) -> TurnStream:
        """
        Start a turn and return its event stream.

        The session stays busy until the stream is exhausted or closed.
        """
        if self._closed:
            raise RuntimeError(f"Session {self.session_id} is closed")
        if self._busy:
            raise SessionBusyError(
                f"Session {self.session_id} already has a turn in flight"
            )
        self.registry.freeze()
        orchestrator = self._engine()
        self._busy = True

        state = TurnState()
        events = orchestrator.run(self.history, user_text, pending_image, state)
        return TurnStream(events, state, self._release)

    def _release(self) -> None:
        self._busy = False

    # ------------------------------------------------------------------
    # Model switching
    # ------------------------------------------------------------------

    async def switch_model(self, config: ModelConfig) -> Provider:
        """
        Replace the adapter with a fresh one built from *config*.

        The old adapter is closed.  History and the context-policy state
        carry over; retry spacing starts fresh with the new adapter.
        """
        if self._busy:
            raise SessionBusyError(
                f"Cannot switch model while session {self.session_id} has a turn in flight"
            )
        if self.providers is None:
            raise RuntimeError("Session has no provider registry; cannot switch models")
        if not config.credential and self.credentials is not None:
            config = config.with_credential(self.credentials.credential_for(config.provider))

        new_provider = self.providers.create(config, self.provider.system_prompt)
        old = self.provider
        self.provider = new_provider
        self._orchestrator = None
        await old.aclose()
        logger.info(
            "Session %s switched model %s -> %s",
            self.session_id,
            old.config.model_id,
            config.model_id,
        )
        return new_provider

    async def aclose(self) -> None:
        self._closed = True
        await self.provider.aclose()

    # ------------------------------------------------------------------
    # Engine wiring
    # ------------------------------------------------------------------

    def _engine(self) -> Orchestrator:
        if self._orchestrator is not None:
            return self._orchestrator

        if self.system_prompt is None:
            self.system_prompt = build_system_prompt(self.registry.list())
        self.provider.system_prompt = self.system_prompt

        opts = self.options
        retry = RetryController(
            max_attempts=opts.max_attempts,
            base_delay=opts.base_delay,
            max_delay=opts.max_delay,
            min_interval=opts.min_interval,
            sleep=self._sleep,
            clock=self._clock,
        )
        self.context_policy.retry = retry
        ceiling = opts.ceiling_tokens or derive_ceiling(
            self.provider.max_context_tokens,
            self.provider.max_output_tokens,
            opts.headroom_tokens,
        )
        budget = TokenBudgetManager(self.provider.token_counter, ceiling, self.system_prompt)
        self._orchestrator = Orchestrator(
            self.provider,
            self.registry,
            budget,
            retry,
            self.context_policy,
            max_followup_rounds=opts.max_followup_rounds,
            tool_timeout=opts.tool_timeout,
            search=self.search,
            search_max_results=opts.search_max_results,
            clock=self._clock,
        )
        logger.debug(
            "Session %s engine ready: %s, ceiling=%d tokens",
            self.session_id,
            self.provider.config.model_id,
            ceiling,
        )
        return self._orchestrator
