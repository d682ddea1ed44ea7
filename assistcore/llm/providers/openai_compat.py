"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from assistcore.llm.errors import (
    MalformedResponseError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
    error_from_status,
    parse_retry_after,
)
from assistcore.llm.providers.base import Provider, iter_sse_data
from assistcore.llm.types import (
    ContextBundle,
    FinishReason,
    ImageAttachment,
    Message,
    ModelConfig,
    RawToolDelta,
    Role,
    StreamChunk,
    UsageCounters,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAICompatProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    config:
        Model settings.  ``config.api_base`` overrides the OpenAI URL and
        ``config.credential`` is sent as a bearer token when non-empty.
    system_prompt:
        Prepended to every request as the first system message.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: ModelConfig,
        system_prompt: str = "",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, system_prompt)
        self._url = (config.api_base or DEFAULT_BASE_URL).rstrip("/")
        self._transport = transport

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.provider or "openai"

    async def stream_turn(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None = None,
        tools: list[dict] | None = None,
        *,
        trailing: list[Message] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        body = self._build_body(history, current, context, tools, trailing)
        async for chunk in self._stream_request(body):
            yield chunk

    async def probe(self, prompt: str, image: ImageAttachment) -> str:
        body = {
            "model": self.config.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": image.data_url, "detail": "low"},
                        },
                    ],
                }
            ],
            "max_tokens": 10,
            "stream": False,
        }
        data = await self._post_json(body)
        choices = data.get("choices") or []
        if not choices:
            raise MalformedResponseError("probe response has no choices", provider=self.name)
        return (choices[0].get("message") or {}).get("content") or ""

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_headers(self, stream: bool = True) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self.config.credential:
            headers["Authorization"] = f"Bearer {self.config.credential}"
        return headers

    def _build_body(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None,
        tools: list[dict] | None,
        trailing: list[Message] | None = None,
    ) -> dict:
        wire_messages: list[dict] = [
            {"role": "system", "content": section}
            for section in self.system_sections(context)
        ]
        for msg in self.wire_history(history):
            wire_messages.append(self._history_message(msg))

        image = context.image if context else None
        text = self.current_text(current, image)
        if image is not None:
            content: str | list[dict] = [
                {"type": "text", "text": text},
                {
                    "type": "image_url",
                    "image_url": {"url": image.data_url, "detail": "high"},
                },
            ]
        else:
            content = text
        wire_messages.append({"role": "user", "content": content})
        for msg in trailing or ():
            wire_messages.append(self._history_message(msg))

        body: dict = {
            "model": self.config.model,
            "messages": wire_messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_output_tokens,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        logger.info(
            "REQUEST: model=%s tools=%d messages=%d image=%s",
            self.config.model,
            len(tools) if tools else 0,
            len(wire_messages),
            image is not None,
        )
        return body

    @staticmethod
    def _history_message(msg: Message) -> dict:
        m: dict = {"role": msg.role, "content": msg.content}
        if msg.tool_calls:
            m["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments),
                    },
                }
                for tc in msg.tool_calls
            ]
        if msg.role == Role.TOOL and msg.tool_call_id:
            m["tool_call_id"] = msg.tool_call_id
        return m

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        await response.aread()
        raise error_from_status(
            response.status_code,
            _error_detail(response),
            provider=self.name,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _post_json(self, body: dict) -> dict:
        url = f"{self._url}/chat/completions"
        try:
            async with self._client() as client:
                response = await client.post(
                    url, json=body, headers=self._build_headers(stream=False)
                )
                await self._raise_for_status(response)
                return response.json()
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(
                f"invalid JSON response: {exc}", provider=self.name
            ) from exc

    async def _stream_request(self, body: dict) -> AsyncIterator[StreamChunk]:
        url = f"{self._url}/chat/completions"
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", url, json=body, headers=self._build_headers()
                ) as response:
                    await self._raise_for_status(response)
                    async for chunk in self._parse_sse_stream(response):
                        yield chunk
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc

    # ------------------------------------------------------------------
    # Stream parsing
    # ------------------------------------------------------------------

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamChunk]:
        """
        Parse Server-Sent Events from the response byte stream.

        The sentinel ``data: [DONE]`` terminates the stream.  The finish
        reason arrives before the usage-only chunk, so it is held back and
        reported on the terminal chunk.
        """
        finish_reason: str | None = None
        saw_tool_calls = False
        async for data_str in iter_sse_data(response):
            if not data_str:
                continue
            if data_str == "[DONE]":
                if finish_reason is not None:
                    yield self._terminal(finish_reason, saw_tool_calls)
                return

            try:
                data = json.loads(data_str)
            except json.JSONDecodeError as exc:
                raise MalformedResponseError(
                    f"unparseable stream event: {data_str[:200]}",
                    provider=self.name,
                ) from exc

            if "error" in data:
                raise self._stream_error(data["error"])

            chunk, reason = self._sse_data_to_chunk(data)
            if reason is not None:
                finish_reason = reason
            if chunk is not None:
                saw_tool_calls = saw_tool_calls or bool(chunk.tool_deltas)
                yield chunk

        # Stream closed without [DONE]; only a reported finish counts as complete.
        if finish_reason is not None:
            yield self._terminal(finish_reason, saw_tool_calls)

    @staticmethod
    def _terminal(reason: str, saw_tool_calls: bool) -> StreamChunk:
        if reason in ("tool_calls", "function_call") or saw_tool_calls:
            mapped = FinishReason.TOOL_CALLS
        else:
            mapped = FinishReason.STOP
        return StreamChunk(finish_reason=mapped, done=True)

    def _sse_data_to_chunk(self, data: dict) -> tuple[StreamChunk | None, str | None]:
        """Convert a parsed SSE ``data`` payload into a chunk and finish reason."""
        usage = _usage_from(data.get("usage"))
        choices = data.get("choices")
        if not choices:
            return (StreamChunk(usage=usage) if usage else None), None

        choice = choices[0]
        delta = choice.get("delta") or {}
        finish_reason = choice.get("finish_reason")

        text_delta = delta.get("content") or ""

        tool_deltas: list[RawToolDelta] | None = None
        raw_tcs = delta.get("tool_calls")
        if raw_tcs:
            tool_deltas = []
            for raw_tc in raw_tcs:
                func = raw_tc.get("function") or {}
                tool_deltas.append(
                    RawToolDelta(
                        call_index=raw_tc.get("index", 0),
                        id=raw_tc.get("id"),
                        name_delta=func.get("name") or "",
                        args_delta=func.get("arguments") or "",
                    )
                )

        if not text_delta and not tool_deltas and usage is None:
            return None, finish_reason
        return (
            StreamChunk(delta=text_delta, tool_deltas=tool_deltas, usage=usage),
            finish_reason,
        )

    def _stream_error(self, err: dict | str) -> ProviderError:
        if isinstance(err, dict):
            message = err.get("message") or json.dumps(err)
            kind = f"{err.get('type', '')} {err.get('code', '')}"
        else:
            message, kind = str(err), ""
        if "rate_limit" in kind:
            return RateLimitError(message, provider=self.name)
        return MalformedResponseError(f"stream error: {message}", provider=self.name)


def _usage_from(raw: dict | None) -> UsageCounters | None:
    if not raw:
        return None
    return UsageCounters(
        prompt_tokens=raw.get("prompt_tokens") or 0,
        completion_tokens=raw.get("completion_tokens") or 0,
        total_tokens=raw.get("total_tokens") or 0,
    )


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from an OpenAI-style error body."""
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text[:300]
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        parts = [err.get("code") or "", err.get("message") or ""]
        return " ".join(p for p in parts if p) or json.dumps(err)[:300]
    return json.dumps(data)[:300]
