"""LLM subsystem -- providers, streaming delta accumulation, retry and budgeting."""

from assistcore.llm.accumulator import AccumulatedTurn, DeltaAccumulator
from assistcore.llm.registry import ProviderRegistry, default_registry
from assistcore.llm.retry import RetryController
from assistcore.llm.token_counter import TokenCounter
from assistcore.llm.tool_call_assembler import AssembledCall, ToolCallAssembler
from assistcore.llm.types import (
    ContextBundle,
    ImageAttachment,
    Message,
    ModelConfig,
    RawToolDelta,
    StreamChunk,
    ToolCall,
    UsageCounters,
)

__all__ = [
    "AccumulatedTurn",
    "AssembledCall",
    "ContextBundle",
    "DeltaAccumulator",
    "ImageAttachment",
    "Message",
    "ModelConfig",
    "ProviderRegistry",
    "RawToolDelta",
    "RetryController",
    "StreamChunk",
    "TokenCounter",
    "ToolCall",
    "ToolCallAssembler",
    "UsageCounters",
    "default_registry",
]
