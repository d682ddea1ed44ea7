"""Tests for ChatSession and SessionManager."""

from __future__ import annotations

import asyncio
import gc

import pytest

from assistcore.collaborators import CredentialResolver
from assistcore.llm.errors import SessionBusyError
from assistcore.llm.registry import ProviderRegistry
from assistcore.llm.types import MessageStatus, ModelConfig
from assistcore.session.events import TextFragment
from assistcore.session.manager import SessionManager
from assistcore.session.session import ChatSession, SessionOptions
from assistcore.tools.registry import RegistryFrozenError
from tests.mock_providers import MockProvider, text_chunks
from tests.mock_tools import CalcTool, EchoTool


async def _no_wait(seconds: float) -> None:
    return None


class DictCredentials(CredentialResolver):
    def __init__(self, secrets: dict[str, str]) -> None:
        self.secrets = secrets
        self.asked: list[str] = []

    def credential_for(self, provider_id: str) -> str:
        self.asked.append(provider_id)
        return self.secrets.get(provider_id, "")


def _mock_providers(built: list[MockProvider]) -> ProviderRegistry:
    """Registry whose ``mock`` adapters answer with their own model name."""

    def factory(config: ModelConfig, system_prompt: str) -> MockProvider:
        provider = MockProvider(
            rounds=[text_chunks(f"from {config.model}")], model_name=config.model
        )
        provider.config = config
        provider.system_prompt = system_prompt
        built.append(provider)
        return provider

    registry = ProviderRegistry()
    registry.register("mock", factory)
    return registry


def _manager(built: list[MockProvider], **kwargs) -> SessionManager:
    kwargs.setdefault("credentials", DictCredentials({"mock": "sk-mock"}))
    return SessionManager(
        _mock_providers(built),
        options=SessionOptions(min_interval=0.0),
        sleep=_no_wait,
        **kwargs,
    )


async def _text(stream) -> str:
    return "".join([e.text async for e in stream if isinstance(e, TextFragment)])


class TestChatSession:
    async def test_second_submit_while_busy_rejected(self):
        session = ChatSession(MockProvider(rounds=[text_chunks("a", "b")]), sleep=_no_wait)
        stream = session.submit_turn("one")
        await stream.__anext__()

        assert session.busy
        with pytest.raises(SessionBusyError):
            session.submit_turn("two")

        await stream.collect()
        assert not session.busy
        assert stream.result.ok

    async def test_busy_until_stream_consumed(self):
        session = ChatSession(MockProvider(rounds=[text_chunks("a")]), sleep=_no_wait)
        stream = session.submit_turn("one")
        # Nothing has run yet, but the slot is taken.
        assert session.busy
        await stream.collect()
        assert not session.busy

    async def test_async_with_closes_unfinished_stream(self):
        provider = MockProvider(rounds=[text_chunks("a", "b", "c")])
        session = ChatSession(provider, sleep=_no_wait)

        async with session.submit_turn("one") as stream:
            await stream.__anext__()

        assert not session.busy
        assert provider.aborted == 1
        assert stream.result.status == MessageStatus.ERROR

    async def test_dropped_stream_releases_session(self):
        provider = MockProvider(rounds=[text_chunks("a", "b", "c")])
        session = ChatSession(provider, sleep=_no_wait)

        stream = session.submit_turn("one")
        await stream.__anext__()
        del stream
        gc.collect()
        for _ in range(5):
            await asyncio.sleep(0)

        assert not session.busy
        assert provider.aborted == 1
        assert session.history[-1].status == MessageStatus.ERROR
        assert (await session.submit_turn("two").collect()).ok

    async def test_collect_returns_result(self):
        session = ChatSession(MockProvider(rounds=[text_chunks("fine")]), sleep=_no_wait)
        result = await session.submit_turn("hi").collect()
        assert result.message.content == "fine"

    async def test_switch_while_busy_rejected(self):
        built: list[MockProvider] = []
        session = ChatSession(
            MockProvider(rounds=[text_chunks("a", "b")]),
            providers=_mock_providers(built),
            sleep=_no_wait,
        )
        stream = session.submit_turn("one")
        await stream.__anext__()

        with pytest.raises(SessionBusyError):
            await session.switch_model(ModelConfig(provider="mock", model="other"))
        await stream.aclose()
        assert built == []

    async def test_switch_without_registry(self):
        session = ChatSession(MockProvider())
        with pytest.raises(RuntimeError):
            await session.switch_model(ModelConfig(provider="mock", model="x"))

    async def test_submit_after_close(self):
        session = ChatSession(MockProvider())
        await session.aclose()
        with pytest.raises(RuntimeError, match="closed"):
            session.submit_turn("hi")

    async def test_explicit_system_prompt_used(self):
        provider = MockProvider(rounds=[text_chunks("ok")])
        session = ChatSession(provider, system_prompt="Be terse.", sleep=_no_wait)
        await session.submit_turn("hi").collect()
        assert provider.system_prompt == "Be terse."

    async def test_registry_frozen_on_first_submit(self):
        session = ChatSession(MockProvider(rounds=[text_chunks("ok")]), sleep=_no_wait)
        session.registry.register(EchoTool())
        await session.submit_turn("hi").collect()
        with pytest.raises(RegistryFrozenError):
            session.registry.register(CalcTool())


class TestSwitchModel:
    async def test_switch_builds_fresh_adapter(self):
        built: list[MockProvider] = []
        credentials = DictCredentials({"mock": "sk-new"})
        original = MockProvider(rounds=[text_chunks("from original")])
        session = ChatSession(
            original,
            providers=_mock_providers(built),
            credentials=credentials,
            sleep=_no_wait,
        )

        assert await _text(session.submit_turn("first")) == "from original"
        await session.switch_model(ModelConfig(provider="mock", model="m2"))

        assert original.closed
        (replacement,) = built
        assert session.provider is replacement
        assert replacement.config.credential == "sk-new"
        assert replacement.system_prompt == original.system_prompt

        assert await _text(session.submit_turn("second")) == "from m2"
        # History carries over and is replayed to the new adapter.
        assert [m.content for m in replacement.calls[0]["history"]] == ["first", "from original"]
        assert len(session.history) == 4

    async def test_first_turn_flag_survives_switch(self):
        built: list[MockProvider] = []
        session = ChatSession(
            MockProvider(rounds=[text_chunks("ok")]),
            providers=_mock_providers(built),
            sleep=_no_wait,
        )
        await session.submit_turn("hi").collect()
        await session.switch_model(ModelConfig(provider="mock", model="m2"))
        assert not session.context_policy.first_turn_pending


class TestSessionManager:
    async def test_create_and_submit(self):
        built: list[MockProvider] = []
        manager = _manager(built)

        sid = manager.create_session(ModelConfig(provider="mock", model="alpha"))

        assert sid in manager
        assert manager.session_ids == [sid]
        assert built[0].config.credential == "sk-mock"
        assert await _text(manager.submit_turn(sid, "hello")) == "from alpha"

    async def test_sessions_are_independent(self):
        built: list[MockProvider] = []
        manager = _manager(built)
        a = manager.create_session(ModelConfig(provider="mock", model="a"), session_id="a")
        b = manager.create_session(ModelConfig(provider="mock", model="b"), session_id="b")

        stream_a = manager.submit_turn(a, "to a")
        await stream_a.__anext__()
        # A busy session does not block another one.
        assert await _text(manager.submit_turn(b, "to b")) == "from b"
        await stream_a.collect()

        assert built[0] is not built[1]
        assert [m.content for m in manager.get(a).history] == ["to a", "from a"]
        assert [m.content for m in manager.get(b).history] == ["to b", "from b"]

    async def test_duplicate_session_id(self):
        manager = _manager([])
        manager.create_session(ModelConfig(provider="mock", model="a"), session_id="same")
        with pytest.raises(ValueError):
            manager.create_session(ModelConfig(provider="mock", model="a"), session_id="same")

    async def test_unknown_session(self):
        with pytest.raises(KeyError, match="Unknown session"):
            _manager([]).submit_turn("ghost", "hi")

    async def test_unknown_provider(self):
        with pytest.raises(KeyError, match="Unknown provider"):
            _manager([]).create_session(ModelConfig(provider="nope", model="x"))

    async def test_register_tool_after_turn_rejected(self):
        manager = _manager([])
        manager.register_tool(EchoTool())
        sid = manager.create_session(ModelConfig(provider="mock", model="a"))
        await manager.submit_turn(sid, "hi").collect()

        with pytest.raises(RegistryFrozenError):
            manager.register_tool(CalcTool())

    async def test_switch_model_through_manager(self):
        built: list[MockProvider] = []
        manager = _manager(built)
        sid = manager.create_session(ModelConfig(provider="mock", model="a"))

        await manager.switch_model(sid, ModelConfig(provider="mock", model="b"))

        assert built[0].closed
        assert manager.get(sid).model_config.model == "b"
        assert manager.get(sid).model_config.credential == "sk-mock"

    async def test_close(self):
        built: list[MockProvider] = []
        manager = _manager(built)
        sid = manager.create_session(ModelConfig(provider="mock", model="a"))
        manager.create_session(ModelConfig(provider="mock", model="b"))

        await manager.close_session(sid)
        assert sid not in manager
        await manager.close()

        assert manager.session_ids == []
        assert all(p.closed for p in built)

    async def test_failed_turn_keeps_session_usable(self):
        built: list[MockProvider] = []
        manager = _manager(built)
        sid = manager.create_session(ModelConfig(provider="mock", model="a"))
        built[0]._rounds = [[ConnectionResetError("gone")], text_chunks("back")]

        first = await manager.submit_turn(sid, "hi").collect()
        second = await manager.submit_turn(sid, "hi").collect()

        assert first.status == MessageStatus.ERROR
        assert second.ok
