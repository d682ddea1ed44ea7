from dataclasses import dataclass, field


@dataclass
class ToolResult:
    success: bool
    content: str
    data: dict | list | None = None
    error: str | None = None
    error_code: str | None = None
    metadata: dict = field(default_factory=dict)

    def as_text(self) -> str:
        """Render the result the way it is fed back to the model."""
        if not self.success and self.error:
            return f"[Error: {self.error_code}] {self.error}"
        return self.content


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"
    TOOL_EXCEPTION = "tool_exception"
    UNKNOWN_TOOL = "unknown_tool"
    LLM_PROTOCOL_ERROR = "llm_protocol_error"


@dataclass
class BudgetReport:
    ceiling_tokens: int
    system_prompt_tokens: int
    tool_schema_tokens: int
    current_turn_tokens: int
    history_tokens: int
    kept_messages: int
    dropped_messages: int

    @property
    def total_tokens(self) -> int:
        return (
            self.system_prompt_tokens
            + self.tool_schema_tokens
            + self.current_turn_tokens
            + self.history_tokens
        )
