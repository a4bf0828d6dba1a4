"""Web tools: Brave search and page fetch."""

import html
import json
import os
import re
from typing import Any, Dict, Optional

import httpx
import structlog

from relay.capabilities.base import ToolCapability, ToolContext, optional_int, require_string
from relay.core.exceptions import ToolExecutionError

logger = structlog.get_logger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; relay-agent/0.1)"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
DEFAULT_MAX_CHARS = 50_000
DEFAULT_MAX_RESULTS = 5

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BREAKS = re.compile(r"<(br|/p|/div|/li|/h[1-6]|/tr)\s*/?>", re.IGNORECASE)
_TAGS = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def strip_html_tags(markup: str) -> str:
    text = _SCRIPT_STYLE.sub("", markup)
    text = _BREAKS.sub("\n", text)
    text = _TAGS.sub("", text)
    text = html.unescape(text)
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


class WebSearchTool(ToolCapability):
    name = "web_search"
    description = (
        "Search the web using Brave Search API. Returns a numbered list of "
        "results with titles, URLs, and descriptions."
    )

    def __init__(self, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self._transport = transport

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "count": {
                    "type": "integer",
                    "description": "Number of results (1-10, default 5)",
                    "minimum": 1,
                    "maximum": 10,
                },
            },
            "required": ["query"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        query = require_string(arguments, "query")
        count = optional_int(arguments, "count", DEFAULT_MAX_RESULTS)
        api_key = self.api_key or os.environ.get("BRAVE_API_KEY")
        if not api_key:
            raise ToolExecutionError("No Brave API key configured (set BRAVE_API_KEY)")

        async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
            try:
                response = await client.get(
                    BRAVE_SEARCH_URL,
                    params={"q": query, "count": count},
                    headers={"X-Subscription-Token": api_key, "User-Agent": USER_AGENT},
                )
            except httpx.HTTPError as e:
                raise ToolExecutionError(f"Brave API request failed: {e}") from e

        if response.status_code >= 400:
            raise ToolExecutionError(f"Brave API returned {response.status_code}: {response.text[:200]}")

        results = (response.json().get("web") or {}).get("results") or []
        if not results:
            return "No results found."

        lines = []
        for index, item in enumerate(results, start=1):
            title = item.get("title") or "(no title)"
            lines.append(f"{index}. {title}\n   {item.get('url', '')}\n   {item.get('description', '')}")
        return "\n\n".join(lines)


class WebFetchTool(ToolCapability):
    name = "web_fetch"
    description = (
        "Fetch and extract the main text content from a web page URL. "
        "Supports HTML (converted to text) and JSON."
    )

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch"},
                "max_chars": {
                    "type": "integer",
                    "description": "Maximum characters to return (default 50000)",
                    "minimum": 100,
                },
            },
            "required": ["url"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        url = require_string(arguments, "url")
        max_chars = optional_int(arguments, "max_chars", DEFAULT_MAX_CHARS)
        if not url.startswith(("http://", "https://")):
            raise ToolExecutionError("Invalid URL: must start with http:// or https://")

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=30.0,
            follow_redirects=True,
            max_redirects=5,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                raise ToolExecutionError(f"HTTP request failed: {e}") from e

        content_type = response.headers.get("content-type", "")
        body = response.text
        if "json" in content_type:
            try:
                text, extractor = json.dumps(json.loads(body), indent=2), "json"
            except ValueError:
                text, extractor = body, "raw"
        elif "html" in content_type or body.lstrip().startswith("<"):
            text, extractor = strip_html_tags(body), "text"
        else:
            text, extractor = body, "raw"

        truncated = len(text) > max_chars
        if truncated:
            text = text[:max_chars]

        logger.debug("Fetched page", url=url, status=response.status_code, extractor=extractor)
        return json.dumps({
            "url": url,
            "final_url": str(response.url),
            "status": response.status_code,
            "extractor": extractor,
            "truncated": truncated,
            "length": len(text),
            "text": text,
        })
