"""
Session manager -- the entry points collaborators call.

Sessions are independent: each owns its adapter and history, and the only
thing they share is the tool registry, which is frozen once the first turn
of any session has been submitted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from assistcore.collaborators import CredentialResolver, EnvCredentialResolver
from assistcore.llm.registry import ProviderRegistry, default_registry
from assistcore.llm.types import ImageAttachment, ModelConfig
from assistcore.search import TavilyClient
from assistcore.session.session import ChatSession, SessionOptions, TurnStream
from assistcore.tools.base import Tool
from assistcore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Create sessions, route turns to them and switch their models.

    Parameters
    ----------
    providers:
        Adapter factories; ``default_registry()`` when omitted.
    tools:
        Shared tool registry.
    credentials:
        Used when a ``ModelConfig`` arrives without a credential.
    options:
        Defaults for every session created here.
    search:
        Optional web-search client handed to each session.
    system_prompt:
        Fixed system prompt; built from the tools when omitted.
    """

    def __init__(
        self,
        providers: ProviderRegistry | None = None,
        tools: ToolRegistry | None = None,
        *,
        credentials: CredentialResolver | None = None,
        options: SessionOptions | None = None,
        search: TavilyClient | None = None,
        system_prompt: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.providers = providers or default_registry()
        self.tools = tools if tools is not None else ToolRegistry()
        self.credentials = credentials or EnvCredentialResolver()
        self.options = options or SessionOptions()
        self.search = search
        self.system_prompt = system_prompt
        self._sleep = sleep
        self._clock = clock
        self._sessions: dict[str, ChatSession] = {}

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def register_tool(self, tool: Tool, *, overwrite: bool = False) -> None:
        """
        Add a tool definition.

        Raises ``RegistryFrozenError`` once any session has submitted a turn.
        """
        self.tools.register(tool, overwrite=overwrite)
        logger.debug("Registered tool %s", tool.name)

    def create_session(
        self,
        config: ModelConfig,
        *,
        session_id: str | None = None,
    ) -> str:
        """Build a session with a fresh adapter for *config*; return its id."""
        if session_id is not None and session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        config = self._with_credential(config)
        provider = self.providers.create(config, self.system_prompt or "")
        session = ChatSession(
            provider,
            self.tools,
            session_id=session_id,
            options=self.options,
            providers=self.providers,
            credentials=self.credentials,
            search=self.search,
            system_prompt=self.system_prompt,
            sleep=self._sleep,
            clock=self._clock,
        )
        self._sessions[session.session_id] = session
        logger.info("Created session %s (%s)", session.session_id, config.model_id)
        return session.session_id

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> ChatSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit_turn(
        self,
        session_id: str,
        user_text: str,
        pending_image: ImageAttachment | None = None,
    ) -> TurnStream:
        return self.get(session_id).submit_turn(user_text, pending_image)

    async def switch_model(self, session_id: str, config: ModelConfig) -> None:
        """Replace a session's adapter; rejected while it has a turn in flight."""
        await self.get(session_id).switch_model(self._with_credential(config))

    async def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.aclose()

    async def close(self) -> None:
        """Close every session and release their adapters."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _with_credential(self, config: ModelConfig) -> ModelConfig:
        if config.credential:
            return config
        return config.with_credential(self.credentials.credential_for(config.provider))
