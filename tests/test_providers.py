"""
Wire-level tests for the provider adapters.

HTTP adapters are exercised through ``httpx.MockTransport``; the Anthropic
adapter gets a fake client whose ``messages.stream`` replays SDK-shaped
events.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from assistcore.llm.accumulator import DeltaAccumulator
from assistcore.llm.errors import (
    AuthenticationError,
    MalformedResponseError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
    RequestTooLargeError,
)
from assistcore.llm.providers.anthropic import AnthropicProvider, _map_error
from assistcore.llm.providers.gemini import GeminiProvider
from assistcore.llm.providers.ollama import OllamaProvider
from assistcore.llm.providers.openai_compat import OpenAICompatProvider
from assistcore.llm.registry import default_registry
from assistcore.llm.types import (
    ContextBundle,
    FinishReason,
    ImageAttachment,
    Message,
    MessageStatus,
    ModelConfig,
    Role,
    SearchResult,
    ToolCall,
)

CALC_SCHEMA = [
    {
        "type": "function",
        "function": {
            "name": "calc",
            "description": "Adds numbers.",
            "parameters": {
                "type": "object",
                "properties": {"expr": {"type": "string"}},
                "required": ["expr"],
                "additionalProperties": False,
            },
        },
    }
]


def _user(text: str = "hi") -> Message:
    return Message(role=Role.USER, content=text)


def _trailing() -> list[Message]:
    call = ToolCall(id="call_1", name="calc", arguments={"expr": "2+2"})
    return [
        Message(role=Role.ASSISTANT, content=None, tool_calls=[call]),
        Message(role=Role.TOOL, content="4", tool_call_id="call_1", tool_name="calc"),
    ]


def _image() -> ImageAttachment:
    return ImageAttachment(base64="aW1n", media_type="image/png")


async def _collect(provider, current=None, **kwargs):
    history = kwargs.pop("history", [])
    return [c async for c in provider.stream_turn(history, current or _user(), **kwargs)]


def _accumulate(chunks):
    acc = DeltaAccumulator()
    for chunk in chunks:
        acc.feed(chunk)
    return acc.result


class Recorder:
    """An ``httpx.MockTransport`` handler that replays one canned response."""

    def __init__(self, status: int = 200, body: bytes | str = b"", headers: dict | None = None):
        self.status = status
        self.body = body.encode() if isinstance(body, str) else body
        self.headers = headers or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, content=self.body, headers=self.headers)

    @property
    def json(self) -> dict:
        return json.loads(self.requests[-1].content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _sse(*events: dict, done: bool = True) -> str:
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)
    return body + ("data: [DONE]\n\n" if done else "")


def _split_transport(body: str, char: str) -> httpx.MockTransport:
    """Serve *body* in two network reads cut through the bytes of *char*."""
    raw = body.encode()
    cut = raw.index(char.encode()) + 1

    async def reads():
        yield raw[:cut]
        yield raw[cut:]

    return httpx.MockTransport(lambda request: httpx.Response(200, content=reads()))


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


def _openai(recorder: Recorder, **config) -> OpenAICompatProvider:
    config.setdefault("credential", "sk-test")
    cfg = ModelConfig(provider="openai", model="gpt-4o", **config)
    return OpenAICompatProvider(cfg, "You are terse.", transport=recorder.transport)


class TestOpenAIStream:
    async def test_text_and_usage(self):
        recorder = Recorder(
            body=_sse(
                {"choices": [{"delta": {"role": "assistant", "content": ""}}]},
                {"choices": [{"delta": {"content": "Hi"}}]},
                {"choices": [{"delta": {"content": " there"}}]},
                {"choices": [{"delta": {}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}},
            )
        )
        chunks = await _collect(_openai(recorder))

        assert [c.delta for c in chunks if c.delta] == ["Hi", " there"]
        assert chunks[-1].done and chunks[-1].finish_reason == FinishReason.STOP
        turn = _accumulate(chunks)
        assert turn.message.content == "Hi there"
        assert turn.usage.total_tokens == 11

    async def test_tool_call_fragments(self):
        recorder = Recorder(
            body=_sse(
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "id": "call_9", "type": "function",
                     "function": {"name": "calc", "arguments": ""}}]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": '{"expr"'}}]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"arguments": ': "2+2"}'}}]}}]},
                {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            )
        )
        turn = _accumulate(await _collect(_openai(recorder), tools=CALC_SCHEMA))

        assert turn.needs_followup
        call = turn.tool_calls[0].call
        assert (call.id, call.name, call.arguments) == ("call_9", "calc", {"expr": "2+2"})

    async def test_request_shape(self):
        recorder = Recorder(body=_sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        history = [
            Message(role=Role.USER, content="earlier"),
            Message(role=Role.ASSISTANT, content="oops", status=MessageStatus.ERROR),
            Message(role=Role.ASSISTANT, content="answer"),
        ]
        context = ContextBundle(
            image=_image(),
            search_results=[SearchResult("Title", "Body", "https://example.com")],
        )

        await _collect(
            _openai(recorder, temperature=0.2),
            current=_user("what now?"),
            history=history,
            context=context,
            tools=CALC_SCHEMA,
            trailing=_trailing(),
        )

        request = recorder.requests[0]
        assert request.url == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = recorder.json
        assert body["stream"] is True
        assert body["temperature"] == 0.2
        assert body["tool_choice"] == "auto"
        roles = [m["role"] for m in body["messages"]]
        assert roles == ["system", "system", "user", "assistant", "user", "assistant", "tool"]
        assert body["messages"][0]["content"] == "You are terse."
        assert "https://example.com" in body["messages"][1]["content"]
        current = body["messages"][4]["content"]
        assert current[0]["type"] == "text" and "what now?" in current[0]["text"]
        assert current[1]["image_url"]["url"] == "data:image/png;base64,aW1n"
        assistant = body["messages"][5]
        assert assistant["tool_calls"][0]["function"]["arguments"] == json.dumps({"expr": "2+2"})
        assert body["messages"][6] == {"role": "tool", "content": "4", "tool_call_id": "call_1"}

    async def test_custom_base_url_and_no_credential(self):
        recorder = Recorder(body=_sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        await _collect(_openai(recorder, api_base="http://localhost:8000/v1/", credential=""))
        request = recorder.requests[0]
        assert str(request.url) == "http://localhost:8000/v1/chat/completions"
        assert "authorization" not in request.headers

    async def test_cut_stream_has_no_terminal(self):
        recorder = Recorder(body=_sse({"choices": [{"delta": {"content": "par"}}]}, done=False))
        chunks = await _collect(_openai(recorder))
        assert not any(c.done for c in chunks)

    async def test_multibyte_char_split_across_reads(self):
        events = [
            {"choices": [{"delta": {"content": "café"}}]},
            {"choices": [{"delta": {}, "finish_reason": "stop"}]},
        ]
        body = "".join(f"data: {json.dumps(e, ensure_ascii=False)}\n\n" for e in events)
        provider = OpenAICompatProvider(
            ModelConfig(provider="openai", model="gpt-4o", credential="sk-test"),
            transport=_split_transport(body + "data: [DONE]\n\n", "é"),
        )

        turn = _accumulate(await _collect(provider))

        assert turn.message.content == "café"

    async def test_in_stream_rate_limit(self):
        recorder = Recorder(
            body=_sse({"error": {"type": "rate_limit_exceeded", "message": "slow down"}})
        )
        with pytest.raises(RateLimitError):
            await _collect(_openai(recorder))

    async def test_unparseable_event(self):
        recorder = Recorder(body="data: {not json\n\n")
        with pytest.raises(MalformedResponseError):
            await _collect(_openai(recorder))

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        provider = OpenAICompatProvider(
            ModelConfig(provider="openai", model="gpt-4o"), transport=httpx.MockTransport(handler)
        )
        with pytest.raises(ProviderConnectionError):
            await _collect(provider)


class TestOpenAIErrors:
    @pytest.mark.parametrize(
        "status,body,expected",
        [
            (401, {"error": {"message": "Incorrect API key"}}, AuthenticationError),
            (413, {"error": {"message": "too big"}}, RequestTooLargeError),
            (
                400,
                {"error": {"code": "context_length_exceeded", "message": "maximum context length"}},
                RequestTooLargeError,
            ),
            (500, {"error": {"message": "oops"}}, ProviderConnectionError),
            (404, {"error": {"message": "no such model"}}, ProviderError),
        ],
    )
    async def test_status_mapping(self, status, body, expected):
        recorder = Recorder(status=status, body=json.dumps(body))
        with pytest.raises(expected) as info:
            await _collect(_openai(recorder))
        assert info.value.status == status
        assert info.value.provider == "openai"

    async def test_rate_limit_retry_after(self):
        recorder = Recorder(status=429, body="{}", headers={"retry-after": "7"})
        with pytest.raises(RateLimitError) as info:
            await _collect(_openai(recorder))
        assert info.value.retry_after == 7.0


class TestOpenAIProbe:
    async def test_probe_answer(self):
        recorder = Recorder(body=json.dumps({"choices": [{"message": {"content": "true"}}]}))
        answer = await _openai(recorder).probe("needs it?", _image())

        assert answer == "true"
        body = recorder.json
        assert body["stream"] is False
        assert body["max_tokens"] == 10
        assert body["messages"][0]["content"][1]["image_url"]["detail"] == "low"

    async def test_probe_without_choices(self):
        recorder = Recorder(body=json.dumps({"choices": []}))
        with pytest.raises(MalformedResponseError):
            await _openai(recorder).probe("q", _image())


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


def _ndjson(*objs: dict) -> str:
    return "".join(json.dumps(o) + "\n" for o in objs)


def _ollama(recorder: Recorder) -> OllamaProvider:
    cfg = ModelConfig(provider="local", model="llama3.1")
    return OllamaProvider(cfg, "sys", transport=recorder.transport)


class TestOllama:
    async def test_text_stream(self):
        recorder = Recorder(
            body=_ndjson(
                {"message": {"role": "assistant", "content": "Hi"}, "done": False},
                {"message": {"content": " there"}, "done": False},
                {"message": {"content": ""}, "done": True, "prompt_eval_count": 5, "eval_count": 2},
            )
        )
        turn = _accumulate(await _collect(_ollama(recorder)))

        assert turn.message.content == "Hi there"
        assert turn.finish_reason == FinishReason.STOP
        assert turn.usage.total_tokens == 7
        assert str(recorder.requests[0].url) == "http://localhost:11434/api/chat"

    async def test_tool_call(self):
        recorder = Recorder(
            body=_ndjson(
                {
                    "message": {
                        "content": "",
                        "tool_calls": [{"function": {"name": "calc", "arguments": {"expr": "2+2"}}}],
                    },
                    "done": False,
                },
                {"message": {"content": ""}, "done": True, "done_reason": "stop"},
            )
        )
        turn = _accumulate(await _collect(_ollama(recorder), tools=CALC_SCHEMA))

        assert turn.finish_reason == FinishReason.TOOL_CALLS
        call = turn.tool_calls[0].call
        assert (call.id, call.name, call.arguments) == ("local_call_0", "calc", {"expr": "2+2"})

    async def test_request_shape(self):
        recorder = Recorder(body=_ndjson({"message": {"content": ""}, "done": True}))
        await _collect(
            _ollama(recorder),
            context=ContextBundle(image=_image()),
            trailing=_trailing(),
        )
        messages = recorder.json["messages"]
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool"]
        assert messages[1]["images"] == ["aW1n"]
        assert messages[2]["tool_calls"][0]["function"]["arguments"] == {"expr": "2+2"}
        assert messages[3]["tool_name"] == "calc"

    async def test_multibyte_char_split_across_reads(self):
        lines = [
            {"message": {"content": "naïve"}, "done": False},
            {"message": {"content": ""}, "done": True},
        ]
        body = "".join(json.dumps(o, ensure_ascii=False) + "\n" for o in lines)
        provider = OllamaProvider(
            ModelConfig(provider="local", model="llama3.1"),
            transport=_split_transport(body, "ï"),
        )

        turn = _accumulate(await _collect(provider))

        assert turn.message.content == "naïve"

    async def test_error_line(self):
        recorder = Recorder(body=_ndjson({"error": "model not found"}))
        with pytest.raises(MalformedResponseError, match="model not found"):
            await _collect(_ollama(recorder))

    async def test_http_error(self):
        recorder = Recorder(status=503, body="busy")
        with pytest.raises(ProviderConnectionError):
            await _collect(_ollama(recorder))

    async def test_probe(self):
        recorder = Recorder(body=json.dumps({"message": {"content": "false"}}))
        assert await _ollama(recorder).probe("q", _image()) == "false"
        assert recorder.json["messages"][0]["images"] == ["aW1n"]


# ---------------------------------------------------------------------------
# Gemini (google)
# ---------------------------------------------------------------------------


def _gemini(recorder: Recorder) -> GeminiProvider:
    cfg = ModelConfig(provider="google", model="gemini-2.0-flash", credential="g-key")
    return GeminiProvider(cfg, "Be brief.", transport=recorder.transport)


class TestGemini:
    async def test_text_stream(self):
        recorder = Recorder(
            body=_sse(
                {"candidates": [{"content": {"role": "model", "parts": [{"text": "Hel"}]}}]},
                {
                    "candidates": [
                        {"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}
                    ],
                    "usageMetadata": {
                        "promptTokenCount": 4,
                        "candidatesTokenCount": 2,
                        "totalTokenCount": 6,
                    },
                },
                done=False,
            )
        )
        turn = _accumulate(await _collect(_gemini(recorder)))

        assert turn.message.content == "Hello"
        assert turn.finish_reason == FinishReason.STOP
        assert turn.usage.total_tokens == 6
        request = recorder.requests[0]
        assert request.url.path.endswith("/models/gemini-2.0-flash:streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        assert request.headers["x-goog-api-key"] == "g-key"

    async def test_function_call(self):
        recorder = Recorder(
            body=_sse(
                {
                    "candidates": [
                        {
                            "content": {
                                "parts": [{"functionCall": {"name": "calc", "args": {"expr": "2+2"}}}]
                            },
                            "finishReason": "STOP",
                        }
                    ]
                },
                done=False,
            )
        )
        turn = _accumulate(await _collect(_gemini(recorder), tools=CALC_SCHEMA))

        assert turn.finish_reason == FinishReason.TOOL_CALLS
        call = turn.tool_calls[0].call
        assert (call.id, call.name, call.arguments) == ("google_call_0", "calc", {"expr": "2+2"})

    async def test_in_stream_quota_error_is_rate_limit(self):
        recorder = Recorder(
            body=_sse(
                {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}},
                done=False,
            )
        )
        with pytest.raises(RateLimitError, match="Quota exceeded"):
            await _collect(_gemini(recorder))

    async def test_in_stream_error(self):
        recorder = Recorder(
            body=_sse({"error": {"code": 500, "message": "internal", "status": "INTERNAL"}}, done=False)
        )
        with pytest.raises(ProviderError) as info:
            await _collect(_gemini(recorder))
        assert not isinstance(info.value, RateLimitError)

    async def test_blocked_response(self):
        recorder = Recorder(
            body=_sse({"candidates": [{"finishReason": "SAFETY"}]}, done=False)
        )
        chunks = await _collect(_gemini(recorder))
        assert chunks[-1].finish_reason == FinishReason.ERROR

    async def test_request_shape(self):
        recorder = Recorder(body=_sse({"candidates": [{"finishReason": "STOP"}]}, done=False))
        await _collect(
            _gemini(recorder),
            history=[Message(role=Role.ASSISTANT, content="prior")],
            context=ContextBundle(image=_image()),
            tools=CALC_SCHEMA,
            trailing=_trailing(),
        )
        body = recorder.json
        assert body["systemInstruction"]["parts"][0]["text"] == "Be brief."
        assert [c["role"] for c in body["contents"]] == ["model", "user", "model", "user"]
        assert body["contents"][1]["parts"][0]["inline_data"]["data"] == "aW1n"
        assert body["contents"][2]["parts"][0]["functionCall"]["name"] == "calc"
        assert body["contents"][3]["parts"][0]["functionResponse"] == {
            "name": "calc",
            "response": {"content": "4"},
        }
        declaration = body["tools"][0]["functionDeclarations"][0]
        assert "additionalProperties" not in declaration["parameters"]

    async def test_invalid_key(self):
        recorder = Recorder(
            status=400, body=json.dumps({"error": {"message": "API key not valid. Please pass a valid API key."}})
        )
        with pytest.raises(AuthenticationError):
            await _collect(_gemini(recorder))

    async def test_probe(self):
        recorder = Recorder(
            body=json.dumps({"candidates": [{"content": {"parts": [{"text": "true"}]}}]})
        )
        assert await _gemini(recorder).probe("q", _image()) == "true"
        assert recorder.requests[0].url.path.endswith(":generateContent")


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _event(kind: str, **fields) -> SimpleNamespace:
    return SimpleNamespace(type=kind, **fields)


class FakeStream:
    def __init__(self, events):
        self._events = events

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event


class FakeMessages:
    def __init__(self, events=None, reply="false"):
        self.events = events or []
        self.reply = reply
        self.stream_kwargs: list[dict] = []
        self.create_kwargs: list[dict] = []

    def stream(self, **kwargs):
        self.stream_kwargs.append(kwargs)
        return FakeStream(self.events)

    async def create(self, **kwargs):
        self.create_kwargs.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.reply)])


def _anthropic(messages: FakeMessages) -> AnthropicProvider:
    cfg = ModelConfig(provider="anthropic", model="claude-sonnet-4-20250514")
    return AnthropicProvider(cfg, "Be kind.", client=SimpleNamespace(messages=messages))


class TestAnthropic:
    async def test_tool_use_events(self):
        messages = FakeMessages(
            [
                _event("message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=11, output_tokens=1))),
                _event("content_block_start", content_block=SimpleNamespace(type="text")),
                _event("content_block_delta", delta=SimpleNamespace(type="text_delta", text="Checking. ")),
                _event("content_block_stop"),
                _event(
                    "content_block_start",
                    content_block=SimpleNamespace(type="tool_use", id="toolu_1", name="calc"),
                ),
                _event("content_block_delta", delta=SimpleNamespace(type="input_json_delta", partial_json='{"expr":')),
                _event("content_block_delta", delta=SimpleNamespace(type="input_json_delta", partial_json=' "2+2"}')),
                _event("content_block_stop"),
                _event(
                    "message_delta",
                    delta=SimpleNamespace(stop_reason="tool_use"),
                    usage=SimpleNamespace(output_tokens=7),
                ),
                _event("message_stop"),
            ]
        )
        turn = _accumulate(await _collect(_anthropic(messages), tools=CALC_SCHEMA))

        assert turn.message.content == "Checking. "
        assert turn.finish_reason == FinishReason.TOOL_CALLS
        call = turn.tool_calls[0].call
        assert (call.id, call.name, call.arguments) == ("toolu_1", "calc", {"expr": "2+2"})
        assert (turn.usage.prompt_tokens, turn.usage.completion_tokens) == (11, 7)

    async def test_request_shape(self):
        messages = FakeMessages([_event("message_stop")])
        history = [
            Message(role=Role.USER, content="first"),
            Message(role=Role.USER, content="second"),
            Message(role=Role.ASSISTANT, content="reply"),
        ]
        await _collect(
            _anthropic(messages),
            history=history,
            context=ContextBundle(image=_image()),
            tools=CALC_SCHEMA,
            trailing=_trailing(),
        )

        kwargs = messages.stream_kwargs[0]
        assert kwargs["system"] == "Be kind."
        assert kwargs["tools"][0]["input_schema"]["required"] == ["expr"]
        sent = kwargs["messages"]
        assert [m["role"] for m in sent] == ["user", "assistant", "user", "assistant", "user"]
        assert sent[0]["content"] == "first\n\nsecond"
        assert sent[2]["content"][0]["source"]["data"] == "aW1n"
        assert sent[3]["content"][0] == {
            "type": "tool_use",
            "id": "call_1",
            "name": "calc",
            "input": {"expr": "2+2"},
        }
        assert sent[4]["content"][0]["type"] == "tool_result"
        assert sent[4]["content"][0]["tool_use_id"] == "call_1"

    async def test_end_turn(self):
        messages = FakeMessages(
            [
                _event("content_block_delta", delta=SimpleNamespace(type="text_delta", text="ok")),
                _event("message_delta", delta=SimpleNamespace(stop_reason="end_turn"), usage=None),
                _event("message_stop"),
            ]
        )
        turn = _accumulate(await _collect(_anthropic(messages)))
        assert turn.finish_reason == FinishReason.STOP

    async def test_probe(self):
        messages = FakeMessages(reply="true")
        assert await _anthropic(messages).probe("q", _image()) == "true"
        assert messages.create_kwargs[0]["max_tokens"] == 10


class TestAnthropicErrors:
    @staticmethod
    def _response(status: int, headers: dict | None = None) -> httpx.Response:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        return httpx.Response(status, headers=headers or {}, request=request)

    def test_rate_limit(self):
        exc = anthropic.RateLimitError(
            "slow down", response=self._response(429, {"retry-after": "3"}), body=None
        )
        mapped = _map_error(exc)
        assert isinstance(mapped, RateLimitError)
        assert mapped.retry_after == 3.0

    def test_auth(self):
        exc = anthropic.AuthenticationError("bad key", response=self._response(401), body=None)
        assert isinstance(_map_error(exc), AuthenticationError)

    def test_too_large(self):
        exc = anthropic.APIStatusError("too big", response=self._response(413), body=None)
        assert isinstance(_map_error(exc), RequestTooLargeError)

    def test_connection(self):
        exc = anthropic.APIConnectionError(request=httpx.Request("POST", "https://x"))
        assert isinstance(_map_error(exc), ProviderConnectionError)


# ---------------------------------------------------------------------------
# Shared request shaping
# ---------------------------------------------------------------------------


class TestWireHistory:
    def test_drops_errors_and_empty_assistant_messages(self):
        call = ToolCall(id="call_1", name="calc", arguments={})
        history = [
            _user("one"),
            Message(role=Role.ASSISTANT, content=None),
            _user("two"),
            Message(role=Role.ASSISTANT, content="Error: boom", status=MessageStatus.ERROR),
            Message(role=Role.ASSISTANT, content="", tool_calls=[call]),
            Message(role=Role.ASSISTANT, content="answer"),
        ]

        sent = OpenAICompatProvider.wire_history(history)

        assert [m.text for m in sent] == ["one", "two", "", "answer"]
        assert sent[2].tool_calls == [call]

    async def test_empty_assistant_not_sent(self):
        recorder = Recorder(body=_sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        history = [_user("one"), Message(role=Role.ASSISTANT, content=None)]

        await _collect(_openai(recorder), history=history)

        roles = [m["role"] for m in recorder.json["messages"]]
        assert roles == ["system", "user", "user"]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestProviderRegistry:
    def test_builtin_ids(self):
        assert default_registry().provider_ids == ["anthropic", "google", "local", "openai"]

    def test_fresh_instance_per_create(self):
        registry = default_registry()
        cfg = ModelConfig(provider="local", model="llama3.1")
        a = registry.create(cfg, "sys")
        b = registry.create(cfg, "sys")
        assert a is not b
        assert isinstance(a, OllamaProvider)
        assert a.system_prompt == "sys"

    def test_duplicate_registration(self):
        with pytest.raises(ValueError):
            default_registry().register("openai", OpenAICompatProvider)
