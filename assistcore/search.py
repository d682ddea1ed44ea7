"""
Web-search context for turns that ask about current events.

``should_perform_search`` is a cheap keyword heuristic; when it fires (and
search is enabled) the turn's ``ContextBundle`` is populated with results
from the Tavily search API.  Search is advisory: failures are logged and the
turn goes ahead without results.
"""

from __future__ import annotations

import logging
import re

import httpx

from assistcore.llm.types import SearchResult

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"

# Keywords that suggest current/recent information is needed.
_SEARCH_TRIGGERS = re.compile(
    r"\b(latest|current|recent|news|whats happening|today|now|2024|2025|this year"
    r"|this month|what happened|yesterday)\b",
    re.IGNORECASE,
)
_FACTUAL_QUESTION = re.compile(
    r"\b(what is|who is|when did|when was|tell me about|what are|how much|the price)\b",
    re.IGNORECASE,
)
_TECH_UPDATES = re.compile(
    r"\b(features|update|version|release|announcement|launched)\b", re.IGNORECASE
)
_MARKET_QUERIES = re.compile(
    r"\b(stock|price|market|trading|earnings|value)\b", re.IGNORECASE
)
_NEWS_EVENTS = re.compile(r"\b(news|event|happening|announced|reported)\b", re.IGNORECASE)


def should_perform_search(message: str) -> bool:
    """True when *message* likely needs real-time information."""
    if _SEARCH_TRIGGERS.search(message):
        return True
    if not _FACTUAL_QUESTION.search(message):
        return False
    return bool(
        _TECH_UPDATES.search(message)
        or _MARKET_QUERIES.search(message)
        or _NEWS_EVENTS.search(message)
    )


class SearchError(Exception):
    """Raised by ``TavilyClient.search`` on any failure."""


class TavilyClient:
    """
    Minimal async client for the Tavily search API.

    Parameters
    ----------
    api_key:
        Tavily API key (sent as a bearer token).
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport for tests.
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 15.0,
        *,
        url: str = TAVILY_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.url = url
        self._transport = transport

    async def search(self, query: str, max_results: int = 3) -> list[SearchResult]:
        if not self.api_key:
            raise SearchError("No Tavily API key configured")
        body = {
            "query": query,
            "search_depth": "basic",
            "include_answer": True,
            "max_results": max_results,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=body, headers=headers)
        except httpx.TransportError as exc:
            raise SearchError(f"Network error during web search: {exc}") from exc

        if resp.status_code == 401:
            raise SearchError("Tavily API authentication failed. Please check your API key.")
        if resp.status_code == 429:
            raise SearchError("Tavily API rate limit exceeded. Please try again later.")
        if resp.status_code >= 400:
            raise SearchError(f"Tavily API error: HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise SearchError(f"Tavily returned invalid JSON: {exc}") from exc

        return [
            SearchResult(
                title=r.get("title") or "",
                content=r.get("content") or "",
                url=r.get("url") or "",
                score=float(r.get("score") or 0.0),
            )
            for r in data.get("results") or []
        ]


async def gather_search_context(
    client: TavilyClient | None,
    message: str,
    max_results: int = 3,
) -> list[SearchResult]:
    """
    Search for *message* when the heuristic fires.

    Returns ``[]`` when no client is configured, the heuristic does not fire
    or the search fails.
    """
    if client is None or not message.strip() or not should_perform_search(message):
        return []
    try:
        results = await client.search(message, max_results=max_results)
    except SearchError as exc:
        logger.warning("Web search failed, continuing without results: %s", exc)
        return []
    logger.info("Web search returned %d result(s)", len(results))
    return results
