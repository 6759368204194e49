"""Web tools: web_search (Brave Search API) and read_url.

Both are read-only. They use their own httpx client, never the gateway's,
so API credentials cannot leak into fetched URLs.
"""

from __future__ import annotations

import asyncio
import html as html_module
import ipaddress
import logging
import re
import socket
import time
from typing import Literal
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import BaseModel, Field

from adjutant.api.models import ToolOutcome
from adjutant.api.tools import ToolContext, ToolDefinition, ToolRegistry
from adjutant.config import Settings

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
_MAX_REDIRECTS = 5
_MAX_FETCH_CHARS = 50000

# Blocked IP ranges for SSRF protection
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]
_BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "metadata.google.internal"}


async def _is_url_safe(url: str) -> tuple[bool, str]:
    """Resolve the URL's host and refuse private, loopback and link-local targets.

    Returns (is_safe, error_message).
    """
    parsed = urlparse(url)
    hostname = parsed.hostname
    if not hostname:
        return False, "Could not parse hostname from URL"
    if hostname.lower() in _BLOCKED_HOSTNAMES:
        return False, f"Blocked hostname: {hostname}"

    try:
        infos = await asyncio.get_running_loop().getaddrinfo(hostname, None)
    except socket.gaierror:
        return False, f"Could not resolve hostname: {hostname}"

    for info in infos:
        ip = ipaddress.ip_address(info[4][0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                return False, f"URL resolves to blocked IP range ({network})"
    return True, ""


class DailyQuota:
    """In-memory per-day call counter. Resets at local midnight or restart."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._date = ""
        self._count = 0

    def take(self) -> str | None:
        """Consume one unit. Returns an error message when exhausted."""
        today = time.strftime("%Y-%m-%d")
        if self._date != today:
            self._date = today
            self._count = 0
        if self._count >= self.limit:
            return f"Daily web search limit reached ({self.limit}). Resets tomorrow."
        self._count += 1
        if self._count >= int(self.limit * 0.8):
            logger.warning("Web search quota at %d/%d", self._count, self.limit)
        return None


def extract_readable(html: str) -> str:
    """Strip markup, scripts and page chrome from an HTML document."""
    text = re.sub(
        r"<(script|style|noscript|nav|header|footer|svg)[^>]*>.*?</\1>",
        "", html, flags=re.DOTALL | re.IGNORECASE,
    )
    text = re.sub(r"<!--.*?-->", "", text, flags=re.DOTALL)
    text = re.sub(r"<(br|p|div|li|h[1-6]|tr)[^>]*>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = html_module.unescape(text)
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


class WebSearchParams(BaseModel):
    query: str = Field(min_length=1, description="Search query")
    max_results: int = Field(5, ge=1, le=10, description="Number of results (1-10, default 5)")
    freshness: Literal["day", "week", "month"] | None = Field(None, description="Restrict to recent results")


class ReadUrlParams(BaseModel):
    url: str = Field(description="http or https URL to fetch")
    max_chars: int | None = Field(None, ge=100, le=_MAX_FETCH_CHARS, description="Maximum characters to return")


def create_web_tools(settings: Settings, http: httpx.AsyncClient) -> tuple[ToolDefinition, ToolDefinition]:
    """Build web_search and read_url bound to *http*."""
    quota = DailyQuota(settings.web_search_daily_limit)

    async def web_search(params: WebSearchParams, ctx: ToolContext) -> ToolOutcome:
        if not settings.brave_search_api_key:
            return ToolOutcome(
                success=False,
                error="BRAVE_SEARCH_API_KEY not configured. Set it to enable web search.",
            )
        quota_error = quota.take()
        if quota_error:
            return ToolOutcome(success=False, error=quota_error)

        query: dict[str, str | int] = {"q": params.query, "count": params.max_results}
        if params.freshness:
            query["freshness"] = {"day": "pd", "week": "pw", "month": "pm"}[params.freshness]

        try:
            response = await http.get(
                BRAVE_SEARCH_URL,
                params=query,
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": settings.brave_search_api_key,
                },
                timeout=10,
            )
        except httpx.TimeoutException:
            return ToolOutcome(success=False, error="Web search timed out. Try again.")
        except httpx.TransportError as e:
            return ToolOutcome(success=False, error=f"Could not reach search service: {e}")

        if response.status_code != 200:
            return ToolOutcome(success=False, error=f"Search failed (HTTP {response.status_code})")

        results = response.json().get("web", {}).get("results", [])[: params.max_results]
        if not results:
            return ToolOutcome(success=True, result=f"No results found for: {params.query}")

        lines = [f"Search results for: {params.query}\n"]
        for i, item in enumerate(results, 1):
            lines.append(f"{i}. {item.get('title', '')}")
            lines.append(f"   URL: {item.get('url', '')}")
            lines.append(f"   {item.get('description', '')}\n")
        return ToolOutcome(success=True, result="\n".join(lines))

    async def read_url(params: ReadUrlParams, ctx: ToolContext) -> ToolOutcome:
        url = params.url
        if not url.startswith(("http://", "https://")):
            return ToolOutcome(success=False, error="URL must start with http:// or https://")

        safe, reason = await _is_url_safe(url)
        if not safe:
            return ToolOutcome(success=False, error=f"Blocked: {reason}")

        limit = min(params.max_chars or settings.web_fetch_max_chars, _MAX_FETCH_CHARS)
        current = url
        try:
            # Follow redirects by hand so every hop is checked
            for _ in range(_MAX_REDIRECTS + 1):
                response = await http.get(
                    current,
                    headers={"User-Agent": "adjutant/0.1"},
                    follow_redirects=False,
                    timeout=15,
                )
                if response.status_code not in (301, 302, 303, 307, 308):
                    break
                location = response.headers.get("location", "")
                if not location:
                    break
                current = urljoin(current, location)
                safe, reason = await _is_url_safe(current)
                if not safe:
                    return ToolOutcome(success=False, error=f"Blocked redirect to unsafe URL: {reason}")
            else:
                return ToolOutcome(success=False, error=f"Too many redirects (max {_MAX_REDIRECTS})")
        except httpx.TimeoutException:
            return ToolOutcome(success=False, error=f"Fetch timed out for: {url}")
        except httpx.TransportError as e:
            return ToolOutcome(success=False, error=f"Could not connect to {url}: {e}")

        if response.status_code >= 400:
            return ToolOutcome(success=False, error=f"HTTP {response.status_code} for {url}")

        content_type = response.headers.get("content-type", "")
        textual = ("text/", "application/json", "application/xml", "application/xhtml")
        if content_type and not any(t in content_type for t in textual):
            return ToolOutcome(success=False, error=f"Cannot extract text from {content_type}")

        text = extract_readable(response.text) if "html" in content_type else response.text
        if len(text) > limit:
            text = text[:limit] + "\n\n[... truncated]"
        return ToolOutcome(
            success=True,
            result=f"Content from {url} ({len(text)} chars):\n\n{text}",
            meta={"url": current, "status": response.status_code},
        )

    search_tool = ToolDefinition(
        name="web_search",
        description="Search the web. Returns titles, URLs and snippets.",
        params=WebSearchParams,
        handler=web_search,
        read_only=True,
    )
    fetch_tool = ToolDefinition(
        name="read_url",
        description="Fetch a web page and return its readable text.",
        params=ReadUrlParams,
        handler=read_url,
        read_only=True,
    )
    return search_tool, fetch_tool


def register_web_tools(registry: ToolRegistry, settings: Settings, http: httpx.AsyncClient) -> None:
    """Register web_search and read_url.

    *http* must be a client without gateway credentials.
    """
    for tool in create_web_tools(settings, http):
        registry.register(tool)
