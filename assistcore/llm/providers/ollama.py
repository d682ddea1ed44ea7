"""
Ollama provider.

Streams responses from a local Ollama instance via its ``/api/chat`` endpoint.
Supports tool calling when the Ollama model advertises it.  No credential is
needed; this is the ``local`` provider.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from assistcore.llm.errors import (
    MalformedResponseError,
    ProviderConnectionError,
    error_from_status,
)
from assistcore.llm.providers.base import Provider
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

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider(Provider):
    """
    Provider for a local `Ollama <https://ollama.com>`_ instance.

    ``config.api_base`` overrides the default ``http://localhost:11434``.
    Ollama context sizes vary by model; ``config.max_context_tokens`` should
    be set to match the pulled model.
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
        self._next_index = 0

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "local"

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
                {"role": "user", "content": prompt, "images": [image.base64]}
            ],
            "stream": False,
            "options": {"num_predict": 10},
        }
        try:
            async with self._client() as client:
                resp = await client.post(f"{self._url}/api/chat", json=body)
                if resp.status_code >= 400:
                    raise error_from_status(
                        resp.status_code, resp.text[:300], provider=self.name
                    )
                data = resp.json()
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(str(exc), provider=self.name) from exc
        return (data.get("message") or {}).get("content") or ""

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

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
            wire_messages.append(_wire_message(msg))

        image = context.image if context else None
        current_msg: dict = {
            "role": "user",
            "content": self.current_text(current, image),
        }
        if image is not None:
            current_msg["images"] = [image.base64]
        wire_messages.append(current_msg)
        for msg in trailing or ():
            wire_messages.append(_wire_message(msg))

        body: dict = {
            "model": self.config.model,
            "messages": wire_messages,
            "stream": True,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_output_tokens,
            },
        }
        if tools:
            body["tools"] = tools

        logger.info(
            "REQUEST: model=%s tools=%d messages=%d image=%s",
            self.config.model,
            len(tools) if tools else 0,
            len(wire_messages),
            image is not None,
        )
        return body

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    async def _stream_request(self, body: dict) -> AsyncIterator[StreamChunk]:
        """
        Ollama streams newline-delimited JSON objects from ``/api/chat``.
        Each line is a complete JSON object; the last one has ``done: true``.
        """
        url = f"{self._url}/api/chat"
        self._next_index = 0
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise error_from_status(
                            response.status_code,
                            response.text[:300],
                            provider=self.name,
                        )

                    # One JSON object per line; aiter_lines decodes incrementally.
                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        chunk = self._data_to_chunk(self._parse_line(line))
                        yield chunk
                        if chunk.done:
                            return
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc

    def _parse_line(self, line: str) -> dict:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(
                f"Ollama: unparseable line: {line[:200]}", provider=self.name
            ) from exc
        if "error" in data:
            raise MalformedResponseError(f"Ollama: {data['error']}", provider=self.name)
        return data

    def _data_to_chunk(self, data: dict) -> StreamChunk:
        """Convert a single Ollama JSON object to a ``StreamChunk``."""
        is_done = bool(data.get("done", False))

        message = data.get("message") or {}
        content = message.get("content", "") or ""

        # Tool calls arrive whole in message.tool_calls; each becomes one delta.
        tool_deltas: list[RawToolDelta] | None = None
        raw_tool_calls = message.get("tool_calls")
        if raw_tool_calls:
            tool_deltas = []
            for tc in raw_tool_calls:
                func = tc.get("function") or {}
                idx = self._next_index
                self._next_index += 1
                tool_deltas.append(
                    RawToolDelta(
                        call_index=idx,
                        id=tc.get("id") or f"local_call_{idx}",
                        name_delta=func.get("name", ""),
                        args_delta=json.dumps(func.get("arguments", {})),
                    )
                )

        usage = None
        finish_reason = None
        if is_done:
            prompt = data.get("prompt_eval_count") or 0
            completion = data.get("eval_count") or 0
            usage = UsageCounters(prompt, completion, prompt + completion)
            # Ollama reports done_reason "stop" even when it returned tool calls.
            finish_reason = (
                FinishReason.TOOL_CALLS if self._next_index else FinishReason.STOP
            )

        return StreamChunk(
            delta=content,
            tool_deltas=tool_deltas,
            usage=usage,
            finish_reason=finish_reason,
            done=is_done,
        )


def _wire_message(msg: Message) -> dict:
    m: dict = {"role": msg.role, "content": msg.content or ""}
    if msg.tool_calls:
        m["tool_calls"] = [
            {
                "function": {
                    "name": tc.name,
                    "arguments": tc.arguments,  # Ollama expects dict, not string
                },
            }
            for tc in msg.tool_calls
        ]
    if msg.role == Role.TOOL and msg.tool_name:
        m["tool_name"] = msg.tool_name
    return m
