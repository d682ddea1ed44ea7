"""
Token counting with a tiktoken backend.

The counter delegates to tiktoken's BPE encoder for the requested model.
When the encoding cannot be loaded (unknown model, no network to fetch the
BPE file) a simple character-based heuristic is used (~4 characters per
token).  Provider-native tokenizers are not consulted: every provider is
estimated with the same counter, which is good enough for budgeting since
the ceiling already carries headroom.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import tiktoken

logger = logging.getLogger(__name__)

# Per-message overhead (role markers, separators, priming).
MESSAGE_OVERHEAD = 4

# Flat estimate for one attached screenshot.  Vision models bill images by
# tile; 765 is what a 1024x1024 image costs at high detail.
IMAGE_TOKENS = 765


class TokenCounter:
    """
    Estimate token counts for text and message lists.

    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.
    use_tiktoken:
        Set to False to force the character heuristic (deterministic counts
        in tests).
    """

    def __init__(self, model: str | None = None, *, use_tiktoken: bool = True) -> None:
        self.model = model
        self._use_tiktoken = use_tiktoken
        self._tiktoken_enc: Any = None

    def _encoding(self) -> Any:
        """Load the BPE encoding on first use; ``None`` means heuristic."""
        if not self._use_tiktoken:
            return None
        if self._tiktoken_enc is None:
            try:
                try:
                    self._tiktoken_enc = tiktoken.encoding_for_model(self.model or "gpt-4o")
                except KeyError:
                    self._tiktoken_enc = tiktoken.get_encoding("o200k_base")
            except Exception as exc:
                # Encoding files could not be fetched -- fall back to the heuristic.
                logger.debug("tiktoken unavailable (%s); using heuristic", exc)
                self._use_tiktoken = False
        return self._tiktoken_enc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def count_text(self, text: str) -> int:
        """Return the estimated token count for a plain string."""
        if not text:
            return 0
        enc = self._encoding()
        if enc is not None:
            return len(enc.encode(text))
        # Heuristic: roughly 4 characters per token for English text.
        return max(1, len(text) // 4)

    def count_message(self, msg: Any) -> int:
        """Estimate the token cost of a single message."""
        tokens = MESSAGE_OVERHEAD + self.count_text(getattr(msg, "content", None) or "")

        tool_calls = getattr(msg, "tool_calls", None)
        if tool_calls:
            for tc in tool_calls:
                tokens += self.count_text(tc.name)
                tokens += self.count_text(json.dumps(tc.arguments))

        # Tool-result messages include a tool_call_id.
        tool_call_id = getattr(msg, "tool_call_id", None)
        if tool_call_id:
            tokens += self.count_text(tool_call_id)

        if getattr(msg, "image", None) is not None:
            tokens += IMAGE_TOKENS

        return tokens

    def count_messages(
        self,
        messages: list,
        tools: list[dict] | None = None,
    ) -> int:
        """
        Estimate the total token count for a conversation.

        If *tools* are provided (function-calling schema list) their JSON
        representation is counted as well -- the model "sees" them in the
        prompt.
        """
        total = sum(self.count_message(msg) for msg in messages)
        if tools:
            total += self.count_tools(tools)
        return total

    def count_tools(self, tools: list[dict] | None) -> int:
        return self.count_text(json.dumps(tools)) if tools else 0
