"""
Assembles streaming tool-call deltas into complete ToolCall objects.

Design goals:
  - Accumulate ``RawToolDelta`` fragments keyed by ``call_index``, appending
    each present field to its buffer in arrival order.
  - Nothing is parsed until the provider signals the end of the turn; then
    ``finalize()`` walks the buffers in index order and JSON-parses each
    argument string.
  - A call that cannot be completed (no name, malformed JSON) is not
    dropped silently: it is returned with its ``error`` set so the
    dispatcher can answer it with a synthetic error result and the
    conversation keeps going.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from assistcore.llm.types import RawToolDelta, ToolCall


@dataclass
class AssembledCall:
    """
    One finalized tool call.

    *error* is set when the call could not be assembled; *call* then still
    carries the id and whatever name was received so a synthetic result can
    reference it.
    """

    call: ToolCall
    error: str | None = None
    raw_arguments: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolCallAssembler:
    """Buffers raw tool-call deltas and emits finished ``ToolCall`` objects."""

    def __init__(self) -> None:
        self._buf: dict[int, dict] = {}
        self.errors: list[str] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, delta: RawToolDelta) -> None:
        """Append the fragments carried by *delta* to its call buffer."""
        buf = self._buf.get(delta.call_index)
        if buf is None:
            buf = {"id": "", "name": "", "args": ""}
            self._buf[delta.call_index] = buf

        if delta.id:
            buf["id"] += delta.id

        if delta.name_delta:
            buf["name"] += delta.name_delta

        if delta.args_delta:
            buf["args"] += delta.args_delta

    @property
    def pending(self) -> int:
        """Number of call buffers accumulated so far."""
        return len(self._buf)

    def finalize(self) -> list[AssembledCall]:
        """
        Close every buffer, in ascending ``call_index`` order.

        Returns one ``AssembledCall`` per buffer (failed ones included) in
        assembly order, and clears the buffers.
        """
        assembled: list[AssembledCall] = []
        for idx in sorted(self._buf):
            result = self._close(idx)
            if result.error is not None:
                self.errors.append(
                    f"tool_call_assembly_failed idx={idx} err={result.error}"
                )
            assembled.append(result)
        self._buf.clear()
        return assembled

    def reset(self) -> None:
        """Discard all accumulated state."""
        self._buf.clear()
        self.errors.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _close(self, idx: int) -> AssembledCall:
        buf = self._buf[idx]
        name = buf["name"].strip()
        call_id = buf["id"] or f"call_{idx}"
        raw_args = buf["args"]

        if not name:
            return AssembledCall(
                ToolCall(id=call_id, name="", arguments={}),
                error="missing tool name",
                raw_arguments=raw_args,
            )

        try:
            args = json.loads(raw_args) if raw_args.strip() else {}
        except (json.JSONDecodeError, ValueError) as exc:
            return AssembledCall(
                ToolCall(id=call_id, name=name, arguments={}),
                error=f"malformed JSON arguments: {exc}",
                raw_arguments=raw_args,
            )

        if not isinstance(args, dict):
            return AssembledCall(
                ToolCall(id=call_id, name=name, arguments={}),
                error=f"arguments must be a JSON object, got {type(args).__name__}",
                raw_arguments=raw_args,
            )

        return AssembledCall(
            ToolCall(id=call_id, name=name, arguments=args), raw_arguments=raw_args
        )
