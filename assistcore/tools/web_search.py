from __future__ import annotations

from assistcore.search import SearchError, TavilyClient
from assistcore.tools.base import Tool
from assistcore.types import ErrorCode, ToolResult


class WebSearchTool(Tool):
    def __init__(self, client: TavilyClient, max_results: int = 3) -> None:
        self.client = client
        self.max_results = max_results

    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return (
            "Search the web for current information. Returns the top results with "
            "title, content snippet and URL."
        )

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for"},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 10},
            },
            "required": ["query"],
        }

    async def execute(self, query: str, max_results: int | None = None, **kwargs) -> ToolResult:
        try:
            results = await self.client.search(query, max_results=max_results or self.max_results)
        except SearchError as e:
            return ToolResult(success=False, content="", error=str(e), error_code=ErrorCode.TOOL_EXCEPTION)
        if not results:
            return ToolResult(success=True, content="No results found.", data=[])
        text = "\n\n".join(
            f"Title: {r.title}\nContent: {r.content}\nURL: {r.url}" for r in results
        )
        return ToolResult(
            success=True,
            content=text,
            data=[{"title": r.title, "url": r.url, "score": r.score} for r in results],
        )
