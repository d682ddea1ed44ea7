"""System prompt and per-turn prompt scaffolding."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from assistcore.llm.types import ContextBundle, SearchResult
    from assistcore.tools.base import Tool


def build_system_prompt(
    tools: list[Tool] | None = None,
    extra_sections: list[str] | None = None,
    assistant_name: str = "Assist",
) -> str:
    """
    Build the system prompt sent with every turn.

    Tool descriptions are listed so models without native tool support
    still know what the host can do.
    """
    sections: list[str] = [IDENTITY_SECTION.format(name=assistant_name)]
    sections.append(CAPABILITIES_SECTION)

    if tools:
        tool_lines = [f"- **{t.name}**: {t.description}" for t in tools]
        sections.append("## Available Tools\n\n" + "\n".join(tool_lines))

    if extra_sections:
        sections.extend(extra_sections)

    return "\n\n".join(sections)


def frame_image_query(user_text: str) -> str:
    """
    Text that accompanies an attached screenshot on the current turn.

    The image is always framed relative to the literal query; an empty query
    gets the proactive "look at my screen" instruction instead.
    """
    if user_text.strip():
        return (
            f'Analyze the attached screenshot in the context of my query: "{user_text}". '
            "Please provide a direct and relevant response."
        )
    return PROACTIVE_SCREEN_PROMPT


def build_probe_prompt(user_text: str) -> str:
    """Question for the screenshot-necessity probe."""
    return (
        "Does the following query require the attached screenshot to be answered "
        'effectively? Respond with only "true" or "false".\n\n'
        f'Query: "{user_text}"'
    )


def render_context_section(context: ContextBundle | None) -> str | None:
    """Render search results and selected text as one extra system section."""
    if context is None:
        return None
    parts: list[str] = []
    if context.selected_text:
        parts.append(
            "The user has selected the following text:\n\n" + context.selected_text
        )
    if context.search_results:
        parts.append(_render_search_results(context.search_results))
    return "\n\n".join(parts) or None


def _render_search_results(results: list[SearchResult]) -> str:
    body = "\n\n".join(
        f"Title: {r.title}\nContent: {r.content}\nURL: {r.url}" for r in results
    )
    return (
        "Recent web search results for the user's query:\n\n"
        f"{body}\n\n"
        "Use this information to provide accurate, up-to-date responses. "
        "Cite sources when relevant."
    )


IDENTITY_SECTION = (
    "You are {name}, a helpful AI assistant that can help with any task and "
    "respond to any queries. You may be provided with a screenshot of the "
    "user's screen to help provide context for your response."
)

CAPABILITIES_SECTION = """## What You Can Do

- Answer questions about anything
- Use attached screenshots to understand what the user is seeing
- Use real-time web search results when provided to give current information
- Help with coding, writing and problem-solving

Be helpful, concise, and friendly. When using search results, cite the
sources with their URLs when relevant."""

PROACTIVE_SCREEN_PROMPT = """I've taken a screenshot but didn't provide a specific question. Please analyze what's on my screen and provide helpful assistance. Look for:

- Questions, problems, or errors that need solving
- Forms, interfaces, or tasks that might need completion
- Content that could benefit from explanation or guidance
- Any issues, prompts, or decisions that require attention
- Learning opportunities or educational content visible

Provide practical, actionable help based on what you see. If there's a clear question or problem visible, solve it. If there's content that could be explained or improved, do so. Be proactive and helpful while being concise and relevant."""
