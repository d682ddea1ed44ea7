"""
Tool dispatcher -- executes assembled tool calls and packages the results.

Every call produces exactly one ``tool`` role message referencing the call
id, whether the tool ran or not.  Problems with an individual call
(unassemblable arguments, unknown name, schema violation, exception,
timeout) become a synthetic error result; they never fail the turn.
Calls run one at a time in assembly order.
"""

from __future__ import annotations

import asyncio
import logging
import time

from assistcore.llm.tool_call_assembler import AssembledCall
from assistcore.llm.types import Message, Role
from assistcore.tools.registry import ToolRegistry
from assistcore.tools.validation import ToolValidator
from assistcore.types import ErrorCode, ToolResult

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    Parameters
    ----------
    registry : ToolRegistry
        Registered tools.
    tool_timeout : float
        Max seconds for a single tool execution.
    """

    def __init__(self, registry: ToolRegistry, tool_timeout: float = 30.0) -> None:
        self.registry = registry
        self.tool_timeout = tool_timeout

    async def dispatch(self, calls: list[AssembledCall]) -> list[Message]:
        """Run *calls* sequentially and return their tool messages in the same order."""
        messages: list[Message] = []
        for call in calls:
            messages.append(await self.dispatch_one(call))
        return messages

    async def dispatch_one(self, assembled: AssembledCall) -> Message:
        result = await self.execute(assembled)
        return Message(
            role=Role.TOOL,
            content=result.as_text(),
            tool_call_id=assembled.call.id,
            tool_name=assembled.call.name,
            metadata={"success": result.success, "error_code": result.error_code},
        )

    async def execute(self, assembled: AssembledCall) -> ToolResult:
        """
        Execute a single call through the lifecycle.

        Steps:
        1. Reject calls that failed assembly
        2. Registry lookup
        3. Validate args
        4. Execute with timeout
        """
        tool_call = assembled.call

        # 1. Assembly failure (malformed JSON, missing name)
        if not assembled.ok:
            return ToolResult(
                success=False,
                content=f"Could not parse tool call: {assembled.error}",
                error=f"Could not parse tool call: {assembled.error}",
                error_code=ErrorCode.LLM_PROTOCOL_ERROR,
            )

        # 2. Registry lookup
        tool = self.registry.get(tool_call.name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", tool_call.name)
            return ToolResult(
                success=False,
                content=f"Unknown tool: {tool_call.name}",
                error=f"Unknown tool: {tool_call.name}",
                error_code=ErrorCode.UNKNOWN_TOOL,
            )

        # 3. Validate args
        valid, error_msg = ToolValidator.validate(tool, tool_call.arguments)
        if not valid:
            return ToolResult(
                success=False,
                content=f"Validation error: {error_msg}",
                error=error_msg,
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        # 4. Execute with timeout
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                tool.execute(**tool_call.arguments),
                timeout=self.tool_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", tool_call.name, self.tool_timeout)
            return ToolResult(
                success=False,
                content=f"Tool timed out after {self.tool_timeout}s",
                error=f"Timeout after {self.tool_timeout}s",
                error_code=ErrorCode.TIMEOUT,
            )
        except Exception as e:
            logger.exception("Tool %s raised", tool_call.name)
            return ToolResult(
                success=False,
                content=f"Tool exception: {e}",
                error=str(e),
                error_code=ErrorCode.TOOL_EXCEPTION,
            )

        result.metadata.setdefault("duration_ms", int((time.monotonic() - start) * 1000))
        return result
