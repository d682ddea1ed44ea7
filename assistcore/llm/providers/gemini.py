"""
Google Gemini provider.

Talks to the Gemini REST API (``generativelanguage.googleapis.com``) with
``httpx``; streaming uses ``:streamGenerateContent?alt=sse``.  Gemini
returns each ``functionCall`` part whole, so every call becomes exactly one
tool delta carrying the complete id, name and JSON arguments.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from assistcore.llm.errors import (
    AuthenticationError,
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

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# Finish reasons that mean the answer was withheld.
_BLOCKED = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

# JSON-schema keywords the Gemini function-declaration schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = {"additionalProperties", "$schema", "default"}


class GeminiProvider(Provider):
    """
    Provider for Google's Gemini models.

    ``config.credential`` is sent in the ``x-goog-api-key`` header;
    ``config.api_base`` overrides the v1beta endpoint.
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
        return "google"

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
        url = f"{self._url}/models/{self.config.model}:streamGenerateContent"
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    json=body,
                    headers=self._headers(),
                ) as response:
                    await self._raise_for_status(response)
                    async for chunk in self._parse_stream(response):
                        yield chunk
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc

    async def probe(self, prompt: str, image: ImageAttachment) -> str:
        body = {
            "contents": [
                {"role": "user", "parts": [_inline_image(image), {"text": prompt}]}
            ],
            "generationConfig": {"maxOutputTokens": 10},
        }
        url = f"{self._url}/models/{self.config.model}:generateContent"
        try:
            async with self._client() as client:
                response = await client.post(url, json=body, headers=self._headers())
                await self._raise_for_status(response)
                data = response.json()
        except httpx.TransportError as exc:
            raise ProviderConnectionError(str(exc), provider=self.name) from exc
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(str(exc), provider=self.name) from exc

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.credential:
            headers["x-goog-api-key"] = self.config.credential
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    def _build_body(
        self,
        history: list[Message],
        current: Message,
        context: ContextBundle | None,
        tools: list[dict] | None,
        trailing: list[Message] | None = None,
    ) -> dict:
        contents = _convert_history(self.wire_history(history))

        image = context.image if context else None
        parts: list[dict] = []
        if image is not None:
            parts.append(_inline_image(image))
        parts.append({"text": self.current_text(current, image)})
        contents.append({"role": "user", "parts": parts})
        contents.extend(_convert_history(list(trailing or ())))

        body: dict = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }
        system = "\n\n".join(self.system_sections(context))
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            body["tools"] = [{"functionDeclarations": _convert_tools(tools)}]

        logger.info(
            "REQUEST: model=%s tools=%d messages=%d image=%s",
            self.config.model,
            len(tools) if tools else 0,
            len(contents),
            image is not None,
        )
        return body

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        await response.aread()
        detail = _error_detail(response)
        if response.status_code == 400 and "API key not valid" in detail:
            raise AuthenticationError(detail, provider=self.name, status=400)
        raise error_from_status(
            response.status_code,
            detail,
            provider=self.name,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _parse_stream(self, response: httpx.Response) -> AsyncIterator[StreamChunk]:
        call_index = 0
        finish: str | None = None
        async for data_str in iter_sse_data(response):
            if not data_str:
                continue
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError as exc:
                raise MalformedResponseError(
                    f"unparseable stream event: {data_str[:200]}", provider=self.name
                ) from exc
            if "error" in data:
                raise self._stream_error(data["error"])

            usage = _usage_from(data.get("usageMetadata"))
            text_parts: list[str] = []
            tool_deltas: list[RawToolDelta] = []
            for candidate in (data.get("candidates") or [])[:1]:
                for part in (candidate.get("content") or {}).get("parts") or []:
                    if "text" in part and not part.get("thought"):
                        text_parts.append(part["text"])
                    elif "functionCall" in part:
                        fc = part["functionCall"]
                        tool_deltas.append(
                            RawToolDelta(
                                call_index=call_index,
                                id=fc.get("id") or f"google_call_{call_index}",
                                name_delta=fc.get("name", ""),
                                args_delta=json.dumps(fc.get("args") or {}),
                            )
                        )
                        call_index += 1
                if candidate.get("finishReason"):
                    finish = candidate["finishReason"]

            text = "".join(text_parts)
            if text or tool_deltas or usage is not None:
                yield StreamChunk(delta=text, tool_deltas=tool_deltas or None, usage=usage)

        if finish is None:
            return
        if finish in _BLOCKED:
            logger.warning("Gemini withheld the response: finishReason=%s", finish)
            reason = FinishReason.ERROR
        elif call_index:
            reason = FinishReason.TOOL_CALLS
        else:
            reason = FinishReason.STOP
        yield StreamChunk(finish_reason=reason, done=True)

    def _stream_error(self, err: dict | str) -> ProviderError:
        if isinstance(err, dict):
            message = err.get("message") or json.dumps(err)
            throttled = err.get("code") == 429 or err.get("status") == "RESOURCE_EXHAUSTED"
        else:
            message, throttled = str(err), False
        if throttled:
            return RateLimitError(message, provider=self.name)
        return ProviderError(f"stream error: {message}", provider=self.name)


def _inline_image(image: ImageAttachment) -> dict:
    return {"inline_data": {"mime_type": image.media_type, "data": image.base64}}


def _convert_history(messages: list[Message]) -> list[dict]:
    """Map history onto Gemini ``contents`` (roles ``user`` / ``model``)."""
    contents: list[dict] = []
    for msg in messages:
        if msg.role == Role.TOOL:
            part = {
                "functionResponse": {
                    "name": msg.tool_name or "",
                    "response": {"content": msg.text},
                }
            }
            prev = contents[-1] if contents else None
            if prev and prev["role"] == "user" and "functionResponse" in prev["parts"][0]:
                prev["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})
            continue

        if msg.role == Role.ASSISTANT:
            parts: list[dict] = []
            if msg.content:
                parts.append({"text": msg.content})
            for tc in msg.tool_calls or []:
                parts.append({"functionCall": {"name": tc.name, "args": tc.arguments}})
            if parts:
                contents.append({"role": "model", "parts": parts})
            continue

        contents.append({"role": "user", "parts": [{"text": msg.text}]})
    return contents


def _clean_schema(schema: dict) -> dict:
    cleaned: dict = {}
    for key, value in schema.items():
        if key in _UNSUPPORTED_SCHEMA_KEYS:
            continue
        if isinstance(value, dict):
            value = _clean_schema(value)
        cleaned[key] = value
    return cleaned


def _convert_tools(tools: list[dict]) -> list[dict]:
    """Convert OpenAI-style tool schemas to Gemini function declarations."""
    declarations = []
    for tool in tools:
        func = tool.get("function", tool)
        decl = {"name": func["name"], "description": func.get("description", "")}
        params = func.get("parameters")
        if params and params.get("properties"):
            decl["parameters"] = _clean_schema(params)
        declarations.append(decl)
    return declarations


def _usage_from(raw: dict | None) -> UsageCounters | None:
    if not raw:
        return None
    return UsageCounters(
        prompt_tokens=raw.get("promptTokenCount") or 0,
        completion_tokens=raw.get("candidatesTokenCount") or 0,
        total_tokens=raw.get("totalTokenCount") or 0,
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text[:300]
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return err.get("message") or json.dumps(err)[:300]
    return json.dumps(data)[:300]
