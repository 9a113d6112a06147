"""web_search 工具：通过 SearXNG 的 JSON 接口检索网页。

- URL: {searxng_url}/search?q=<query>&format=json
- 仅依赖返回体中的 results[].title/url/content 字段。
"""

import json
from typing import Any, Dict, List

import httpx

from agent_runtime.domain.exceptions import ConnectionRefused, MalformedResponse, SearchFailed, ToolExecutionError
from .definitions import Tool, ToolOutput, ToolParam


class WebSearchTool(Tool):
    name = "web_search"
    description = "Search the web using SearXNG"
    params = {
        "query": ToolParam(
            name="query",
            description="The search query",
            required=True,
            schema={"type": "string"},
        )
    }

    def __init__(self, searxng_url: str, timeout: float = 30.0, max_results: int = 10):
        self._base = searxng_url.rstrip("/")
        self._timeout = timeout
        self._max_results = max_results

    def execute(self, query: str = "", **_: Any) -> ToolOutput:
        if not query or not query.strip():
            raise ToolExecutionError.of("Missing required argument: query", tool=self.name)
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.get(
                    f"{self._base}/search",
                    params={"q": query, "format": "json"},
                )
        except httpx.ConnectError as e:
            raise ConnectionRefused.of(f"Connection refused: {self._base} ({e})", tool=self.name)
        except httpx.RequestError as e:
            raise ToolExecutionError.of(f"Search request failed: {e}", tool=self.name)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise SearchFailed.of(f"Search failed: HTTP {resp.status_code}", tool=self.name)
        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MalformedResponse.of(f"Invalid JSON response from search: {e}", tool=self.name)

        results = self._parse_results(data)
        return ToolOutput(success=True, data={"query": query, "results": results}, text=self._render(results))

    def _parse_results(self, data: Any) -> List[Dict[str, str]]:
        if not isinstance(data, dict):
            raise MalformedResponse.of("Invalid search response: expected an object", tool=self.name)
        items: List[Dict[str, str]] = []
        for raw in (data.get("results") or [])[: self._max_results]:
            if not isinstance(raw, dict):
                continue
            items.append(
                {
                    "title": str(raw.get("title") or ""),
                    "url": str(raw.get("url") or ""),
                    "content": str(raw.get("content") or ""),
                }
            )
        return items

    @staticmethod
    def _render(results: List[Dict[str, str]]) -> str:
        if not results:
            return "No results found."
        return "\n\n".join(f"{r['title']}\n{r['url']}\n{r['content']}" for r in results)
