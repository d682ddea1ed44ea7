"""
Anthropic provider backed by the official ``anthropic`` SDK.

Streams with ``AsyncAnthropic.messages.stream`` and translates the raw
Messages API events into uniform ``StreamChunk`` objects:

  - ``content_block_start`` (``tool_use``) opens a tool call with id and name;
  - ``content_block_delta`` carries ``text_delta`` or ``input_json_delta``;
  - ``message_start`` / ``message_delta`` carry usage and the stop reason;
  - ``message_stop`` ends the turn.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import anthropic

from assistcore.llm.errors import (
    AuthenticationError,
    ProviderConnectionError,
    ProviderError,
    RateLimitError,
    error_from_status,
    parse_retry_after,
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


class AnthropicProvider(Provider):
    """
    Provider for Anthropic's Messages API.

    Parameters
    ----------
    config:
        Model settings; ``config.credential`` is the API key and
        ``config.api_base`` optionally overrides the base URL.
    system_prompt:
        Sent in the top-level ``system`` field.
    client:
        Optional pre-built ``AsyncAnthropic`` (or compatible) client.
    """

    def __init__(
        self,
        config: ModelConfig,
        system_prompt: str = "",
        *,
        client: Any = None,
    ) -> None:
        super().__init__(config, system_prompt)
        self._client = client

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "anthropic"

    def _get_client(self):
        if self._client is not None:
            return self._client
        kwargs: dict = {"timeout": self.config.timeout, "max_retries": 0}
        if self.config.credential:
            kwargs["api_key"] = self.config.credential
        if self.config.api_base:
            kwargs["base_url"] = self.config.api_base
        self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None

    async def stream_turn(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None = None,
        tools: list[dict] | None = None,
        *,
        trailing: list[Message] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(history, current, context, tools, trailing)
        client = self._get_client()
        try:
            async with client.messages.stream(**kwargs) as stream_mgr:
                async for chunk in self._translate(stream_mgr):
                    yield chunk
        except anthropic.APIError as exc:
            raise _map_error(exc) from exc

    async def probe(self, prompt: str, image: ImageAttachment) -> str:
        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self.config.model,
                max_tokens=10,
                messages=[
                    {
                        "role": "user",
                        "content": [_image_block(image), {"type": "text", "text": prompt}],
                    }
                ],
            )
        except anthropic.APIError as exc:
            raise _map_error(exc) from exc
        return "".join(
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", None) == "text"
        )

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_kwargs(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None,
        tools: list[dict] | None,
        trailing: list[Message] | None = None,
    ) -> dict:
        converted = self._convert_history(self.wire_history(history))

        image = context.image if context else None
        text = self.current_text(current, image)
        if image is not None:
            content: str | list[dict] = [_image_block(image), {"type": "text", "text": text}]
        else:
            content = text
        converted.append({"role": "user", "content": content})
        converted.extend(self._convert_history(list(trailing or ())))

        kwargs: dict = {
            "model": self.config.model,
            "messages": converted,
            "max_tokens": self.config.max_output_tokens,
            "temperature": self.config.temperature,
        }
        system = "\n\n".join(self.system_sections(context))
        if system:
            kwargs["system"] = system
        converted_tools = _convert_tools(tools)
        if converted_tools:
            kwargs["tools"] = converted_tools

        logger.info(
            "REQUEST: model=%s tools=%d messages=%d image=%s",
            self.config.model,
            len(converted_tools or []),
            len(converted),
            image is not None,
        )
        return kwargs

    @staticmethod
    def _convert_history(messages: list[Message]) -> list[dict]:
        """
        Convert history to Anthropic's format.

        Tool results become ``tool_result`` blocks in a user turn; results
        answering the same assistant turn are merged into one message.
        """
        converted: list[dict] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                # In-history system notes ride along as user-visible context.
                converted.append({"role": "user", "content": msg.text})
                continue

            if msg.role == Role.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.text,
                }
                prev = converted[-1] if converted else None
                if (
                    prev is not None
                    and prev["role"] == "user"
                    and isinstance(prev["content"], list)
                    and prev["content"]
                    and prev["content"][0].get("type") == "tool_result"
                ):
                    prev["content"].append(block)
                else:
                    converted.append({"role": "user", "content": [block]})
                continue

            if msg.role == Role.ASSISTANT and msg.tool_calls:
                content_blocks: list[dict] = []
                if msg.content:
                    content_blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content_blocks})
                continue

            prev = converted[-1] if converted else None
            if prev is not None and prev["role"] == msg.role and isinstance(prev["content"], str):
                # The API rejects consecutive turns with the same role.
                prev["content"] = f"{prev['content']}\n\n{msg.text}"
            else:
                converted.append({"role": msg.role, "content": msg.text})
        return converted

    # ------------------------------------------------------------------
    # Event translation
    # ------------------------------------------------------------------

    async def _translate(self, events: AsyncIterator[Any]) -> AsyncIterator[StreamChunk]:
        tool_call_idx = -1
        open_tool_block = False
        stop_reason: str | None = None

        async for event in events:
            event_type = getattr(event, "type", None)

            if event_type == "message_start":
                usage = getattr(getattr(event, "message", None), "usage", None)
                if usage is not None:
                    yield StreamChunk(
                        usage=UsageCounters(
                            prompt_tokens=getattr(usage, "input_tokens", 0) or 0,
                            completion_tokens=getattr(usage, "output_tokens", 0) or 0,
                        )
                    )

            elif event_type == "content_block_start":
                block = getattr(event, "content_block", None)
                open_tool_block = getattr(block, "type", None) == "tool_use"
                if open_tool_block:
                    tool_call_idx += 1
                    yield StreamChunk(
                        tool_deltas=[
                            RawToolDelta(
                                call_index=tool_call_idx,
                                id=getattr(block, "id", None),
                                name_delta=getattr(block, "name", "") or "",
                            )
                        ]
                    )

            elif event_type == "content_block_delta":
                delta_obj = getattr(event, "delta", None)
                delta_type = getattr(delta_obj, "type", None)
                if delta_type == "text_delta":
                    text = getattr(delta_obj, "text", "")
                    if text:
                        yield StreamChunk(delta=text)
                elif delta_type == "input_json_delta" and open_tool_block:
                    partial_json = getattr(delta_obj, "partial_json", "")
                    if partial_json:
                        yield StreamChunk(
                            tool_deltas=[
                                RawToolDelta(call_index=tool_call_idx, args_delta=partial_json)
                            ]
                        )

            elif event_type == "content_block_stop":
                open_tool_block = False

            elif event_type == "message_delta":
                stop_reason = getattr(getattr(event, "delta", None), "stop_reason", None)
                usage = getattr(event, "usage", None)
                if usage is not None:
                    yield StreamChunk(
                        usage=UsageCounters(
                            completion_tokens=getattr(usage, "output_tokens", 0) or 0,
                        )
                    )

            elif event_type == "message_stop":
                finish = (
                    FinishReason.TOOL_CALLS
                    if stop_reason == "tool_use"
                    else FinishReason.STOP
                )
                yield StreamChunk(finish_reason=finish, done=True)
                return


def _image_block(image: ImageAttachment) -> dict:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": image.media_type,
            "data": image.base64,
        },
    }


def _convert_tools(tools: list[dict] | None) -> list[dict] | None:
    """Convert OpenAI-style tool schemas to Anthropic's format."""
    if not tools:
        return None
    converted = []
    for tool in tools:
        func = tool.get("function", tool)
        converted.append({
            "name": func["name"],
            "description": func.get("description", ""),
            "input_schema": func.get("parameters", {"type": "object"}),
        })
    return converted


def _map_error(exc: anthropic.APIError) -> ProviderError:
    if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return AuthenticationError(str(exc), provider="anthropic", status=exc.status_code)
    if isinstance(exc, anthropic.RateLimitError):
        return RateLimitError(
            str(exc),
            provider="anthropic",
            retry_after=parse_retry_after(exc.response.headers.get("retry-after")),
        )
    if isinstance(exc, anthropic.APIStatusError):
        return error_from_status(exc.status_code, exc.message, provider="anthropic")
    if isinstance(exc, anthropic.APIConnectionError):
        return ProviderConnectionError(str(exc), provider="anthropic")
    return ProviderError(str(exc), provider="anthropic")
