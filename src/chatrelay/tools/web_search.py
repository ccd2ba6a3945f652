"""Web search tool backed by DuckDuckGo (lite HTML, then instant answers)."""

from __future__ import annotations

import asyncio
import html
import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from chatrelay.config import ToolsConfig
from chatrelay.tools.base import Tool

logger = structlog.get_logger()

_SNIPPET_RE = re.compile(r"<td\s+class=['\"]result-snippet['\"]>(.*?)</td>", re.I | re.S)
_LINK_RE = re.compile(
    r"<a\s+[^>]*class=['\"]result-link['\"][^>]*href=['\"]([^'\"]+)['\"][^>]*>(.*?)</a>",
    re.I | re.S,
)
_LINK_RE_HREF_FIRST = re.compile(
    r"<a\s+[^>]*href=['\"]([^'\"]+)['\"][^>]*class=['\"]result-link['\"][^>]*>(.*?)</a>",
    re.I | re.S,
)
_BLOCK_RE = re.compile(
    r"<(script|style|nav|footer|header|form)\b.*?</\1\s*>",
    re.I | re.S,
)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")

CITATION_INSTRUCTION = (
    "Use these search results and page content to give the user a detailed, "
    "accurate, up-to-date answer. Cite sources when possible."
)


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str


def strip_markup(text: str) -> str:
    """Drop tags and collapse whitespace. Tolerates broken markup."""
    text = _BLOCK_RE.sub(" ", text or "")
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _SPACE_RE.sub(" ", text).strip()


def parse_lite_results(page: str, limit: int = 5) -> list[SearchResult]:
    """Pair up snippets and result links from a DuckDuckGo lite page."""
    snippets = [strip_markup(m.group(1)) for m in _SNIPPET_RE.finditer(page or "")][:limit]

    links: list[tuple[str, str]] = []
    for regex in (_LINK_RE, _LINK_RE_HREF_FIRST):
        for match in regex.finditer(page or ""):
            url = html.unescape(match.group(1).strip())
            if url.startswith("http") and all(url != seen for seen, _ in links):
                links.append((url, strip_markup(match.group(2))))
        if links:
            break
    links = links[:limit]

    results: list[SearchResult] = []
    for idx in range(max(len(snippets), len(links))):
        url, title = links[idx] if idx < len(links) else ("", "")
        results.append(
            SearchResult(
                title=title,
                url=url,
                snippet=snippets[idx] if idx < len(snippets) else "",
            )
        )
    return results


def parse_instant_answer(payload: dict[str, Any], query: str) -> list[SearchResult]:
    results: list[SearchResult] = []
    if payload.get("AbstractText"):
        results.append(
            SearchResult(
                title=payload.get("Heading") or query,
                url=payload.get("AbstractURL") or "",
                snippet=payload["AbstractText"],
            )
        )
    if payload.get("Answer"):
        results.append(SearchResult(title="Answer", url="", snippet=str(payload["Answer"])))
    if not results:
        for topic in (payload.get("RelatedTopics") or [])[:3]:
            if isinstance(topic, dict) and topic.get("Text"):
                first_url = topic.get("FirstURL") or ""
                results.append(SearchResult(title=first_url, url=first_url, snippet=topic["Text"]))
    return results


class WebSearchTool(Tool):
    """Search the web, read the top pages, and return a citation-ready digest."""

    def __init__(
        self,
        config: ToolsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ToolsConfig()
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return (
            "Search the internet for current/real-time information including weather, "
            "news, prices, sports scores, events, people, places, or any factual question. "
            "Use this whenever the user asks about something that might need "
            "up-to-date information."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "The search query to look up on the internet",
                },
            },
            "required": ["query"],
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            headers={"User-Agent": self.config.user_agent},
            follow_redirects=True,
        )

    async def execute(self, query: str = "", **_: Any) -> str:
        query = str(query or "").strip()
        if not query:
            return "Error: query is required."

        logger.info("tool.web_search.start", query=query)
        try:
            async with self._client() as client:
                results = await self._search_lite(client, query)
                if not results:
                    results = await self._search_instant(client, query)
                if not results:
                    return (
                        f'No search results found for: "{query}". '
                        "Please answer based on your knowledge."
                    )
                pages = await self._fetch_pages(client, results)
        except Exception as e:
            logger.warning("tool.web_search.failed", query=query, error=str(e))
            return (
                f"Web search failed ({e}). Please answer based on your knowledge and let "
                "the user know the information might not be fully current."
            )

        logger.info("tool.web_search.done", query=query, results=len(results), pages=len(pages))
        return self._format(query, results, pages)

    async def _search_lite(self, client: httpx.AsyncClient, query: str) -> list[SearchResult]:
        try:
            resp = await client.post(
                self.config.search_url,
                data={"q": query},
                timeout=self.config.search_timeout_s,
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("tool.web_search.lite_failed", error=str(e))
            return []
        return parse_lite_results(resp.text, limit=self.config.max_results)

    async def _search_instant(self, client: httpx.AsyncClient, query: str) -> list[SearchResult]:
        try:
            resp = await client.get(
                self.config.instant_answer_url,
                params={"q": query, "format": "json", "no_redirect": 1, "no_html": 1},
                timeout=self.config.instant_answer_timeout_s,
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("tool.web_search.instant_failed", error=str(e))
            return []
        if not isinstance(payload, dict):
            return []
        return parse_instant_answer(payload, query)

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        results: list[SearchResult],
    ) -> dict[str, str]:
        targets = [r.url for r in results if r.url][: self.config.max_pages]
        bodies = await asyncio.gather(
            *(self.fetch_page_text(client, url) for url in targets),
            return_exceptions=True,
        )
        return {
            url: body
            for url, body in zip(targets, bodies)
            if isinstance(body, str) and body
        }

    async def fetch_page_text(self, client: httpx.AsyncClient, url: str) -> str:
        """Body text of a page, or '' on any fetch or decode error."""
        try:
            resp = await client.get(url, timeout=self.config.page_timeout_s)
            if resp.status_code >= 400:
                return ""
            return strip_markup(resp.text)[: self.config.page_chars]
        except Exception as e:
            logger.debug("tool.web_search.page_failed", url=url, error=str(e))
            return ""

    @staticmethod
    def _format(query: str, results: list[SearchResult], pages: dict[str, str]) -> str:
        lines = [f'Web search results for "{query}":', ""]
        for idx, result in enumerate(results, start=1):
            lines.append(f"[{idx}] {result.title}")
            if result.url:
                lines.append(f"URL: {result.url}")
            lines.append(f"Snippet: {result.snippet}")
            if result.url in pages:
                lines.append(f"Page content: {pages[result.url]}")
            lines.append("")
        lines.append(CITATION_INSTRUCTION)
        return "\n".join(lines)
