"""Unit tests for adjutant/api/web_tools.py -- web_search, read_url, SSRF, quota.

HTTP calls go through httpx.MockTransport. DNS resolution is mocked via
a socket.getaddrinfo patch.
"""

import logging
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from adjutant.api.tools import ToolExecutor, ToolRegistry
from adjutant.api.web_tools import (
    BRAVE_SEARCH_URL,
    DailyQuota,
    _is_url_safe,
    create_web_tools,
    extract_readable,
    register_web_tools,
)
from tests.conftest import make_settings

PUBLIC_DNS = [(2, 1, 6, "", ("93.184.216.34", 0))]


def _brave_payload(results: list[dict] | None = None) -> dict:
    """Build a Brave Search API response payload."""
    if results is None:
        results = [
            {"title": "Example Result", "url": "https://example.com", "description": "An example search result."}
        ]
    return {"web": {"results": results}}


def _tools(workspace, handler, **overrides):
    settings = make_settings(workspace, **{"BRAVE_SEARCH_API_KEY": "test-brave-key", **overrides})
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    search, fetch = create_web_tools(settings, http)
    return search, fetch, http


async def _call(tool, **args):
    return await tool.handler(tool.params(**args), None)


# ---------------------------------------------------------------------------
# SSRF protection
# ---------------------------------------------------------------------------


class TestIsUrlSafe:
    """Tests for _is_url_safe() SSRF protection."""

    @pytest.mark.asyncio
    @patch("socket.getaddrinfo")
    async def test_blocks_localhost(self, mock_dns):
        """localhost is blocked before DNS resolution."""
        safe, error = await _is_url_safe("http://localhost/admin")
        assert safe is False
        assert "Blocked hostname" in error
        mock_dns.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ip", ["127.0.0.1", "169.254.169.254", "10.1.2.3", "192.168.0.10", "::1"])
    @patch("socket.getaddrinfo")
    async def test_blocks_private_ranges(self, mock_dns, ip):
        mock_dns.return_value = [(2, 1, 6, "", (ip, 0))]
        safe, error = await _is_url_safe("http://internal.example/secret")
        assert safe is False
        assert "blocked IP range" in error

    @pytest.mark.asyncio
    @patch("socket.getaddrinfo")
    async def test_allows_public_url(self, mock_dns):
        mock_dns.return_value = PUBLIC_DNS
        assert await _is_url_safe("https://example.com/page") == (True, "")

    @pytest.mark.asyncio
    async def test_no_hostname(self):
        safe, error = await _is_url_safe("http:///path")
        assert safe is False
        assert "hostname" in error


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------


class TestDailyQuota:
    def test_limit_enforced(self):
        quota = DailyQuota(2)
        assert quota.take() is None
        assert quota.take() is None
        assert "Daily web search limit reached (2)" in quota.take()

    def test_resets_on_new_day(self):
        quota = DailyQuota(1)
        quota.take()
        quota._date = "2000-01-01"
        assert quota.take() is None

    def test_warns_near_limit(self, caplog):
        quota = DailyQuota(5)
        with caplog.at_level(logging.WARNING, logger="adjutant.api.web_tools"):
            for _ in range(4):
                quota.take()
        assert "quota at 4/5" in caplog.text


# ---------------------------------------------------------------------------
# web_search
# ---------------------------------------------------------------------------


class TestWebSearch:
    @pytest.mark.asyncio
    async def test_successful_search(self, workspace):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json=_brave_payload())

        search, _, http = _tools(workspace, handler)
        outcome = await _call(search, query="python asyncio", max_results=3, freshness="week")
        await http.aclose()

        assert outcome.success
        assert "1. Example Result" in outcome.result
        assert "URL: https://example.com" in outcome.result
        request = seen["request"]
        assert str(request.url).startswith(BRAVE_SEARCH_URL)
        assert request.headers["X-Subscription-Token"] == "test-brave-key"
        assert request.url.params["count"] == "3"
        assert request.url.params["freshness"] == "pw"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, workspace):
        handler = AsyncMock()
        search, _, http = _tools(workspace, handler, BRAVE_SEARCH_API_KEY="")
        outcome = await _call(search, query="x")
        await http.aclose()
        assert not outcome.success
        assert "BRAVE_SEARCH_API_KEY not configured" in outcome.error

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, workspace):
        search, _, http = _tools(
            workspace, lambda r: httpx.Response(200, json=_brave_payload()), web_search_daily_limit=1
        )
        assert (await _call(search, query="a")).success
        outcome = await _call(search, query="b")
        await http.aclose()
        assert "Daily web search limit" in outcome.error

    @pytest.mark.asyncio
    async def test_http_error(self, workspace):
        search, _, http = _tools(workspace, lambda r: httpx.Response(401, json={}))
        outcome = await _call(search, query="x")
        await http.aclose()
        assert outcome.error == "Search failed (HTTP 401)"

    @pytest.mark.asyncio
    async def test_timeout(self, workspace):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        search, _, http = _tools(workspace, handler)
        outcome = await _call(search, query="x")
        await http.aclose()
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_no_results(self, workspace):
        search, _, http = _tools(workspace, lambda r: httpx.Response(200, json=_brave_payload([])))
        outcome = await _call(search, query="zzz")
        await http.aclose()
        assert outcome.success
        assert outcome.result == "No results found for: zzz"


# ---------------------------------------------------------------------------
# read_url
# ---------------------------------------------------------------------------


@pytest.fixture
def safe_urls():
    with patch("adjutant.api.web_tools._is_url_safe", AsyncMock(return_value=(True, ""))) as mock:
        yield mock


class TestReadUrl:
    @pytest.mark.asyncio
    async def test_html_extracted(self, workspace, safe_urls):
        page = "<html><head><script>evil()</script></head><body><h1>Title</h1><p>Body &amp; soul</p></body></html>"
        _, fetch, http = _tools(
            workspace, lambda r: httpx.Response(200, text=page, headers={"content-type": "text/html"})
        )
        outcome = await _call(fetch, url="https://example.com")
        await http.aclose()

        assert outcome.success
        assert "Title" in outcome.result
        assert "Body & soul" in outcome.result
        assert "evil" not in outcome.result
        assert outcome.meta == {"url": "https://example.com", "status": 200}

    @pytest.mark.asyncio
    async def test_binary_rejected(self, workspace, safe_urls):
        _, fetch, http = _tools(
            workspace, lambda r: httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        )
        outcome = await _call(fetch, url="https://example.com/logo.png")
        await http.aclose()
        assert outcome.error == "Cannot extract text from image/png"

    @pytest.mark.asyncio
    async def test_truncated(self, workspace, safe_urls):
        _, fetch, http = _tools(
            workspace, lambda r: httpx.Response(200, text="a" * 500, headers={"content-type": "text/plain"})
        )
        outcome = await _call(fetch, url="https://example.com/a.txt", max_chars=100)
        await http.aclose()
        assert "a" * 100 + "\n\n[... truncated]" in outcome.result
        assert "a" * 101 not in outcome.result

    @pytest.mark.asyncio
    async def test_scheme_rejected(self, workspace):
        _, fetch, http = _tools(workspace, AsyncMock())
        outcome = await _call(fetch, url="file:///etc/passwd")
        await http.aclose()
        assert "http:// or https://" in outcome.error

    @pytest.mark.asyncio
    @patch("socket.getaddrinfo")
    async def test_private_target_blocked(self, mock_dns, workspace):
        mock_dns.return_value = [(2, 1, 6, "", ("10.0.0.5", 0))]
        _, fetch, http = _tools(workspace, AsyncMock())
        outcome = await _call(fetch, url="http://intranet.example/")
        await http.aclose()
        assert outcome.error.startswith("Blocked: ")

    @pytest.mark.asyncio
    async def test_redirect_checked_each_hop(self, workspace):
        """A public URL redirecting to a private one is refused."""

        async def checker(url):
            if "169.254" in url:
                return False, "URL resolves to blocked IP range (169.254.0.0/16)"
            return True, ""

        def handler(request):
            return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data"})

        _, fetch, http = _tools(workspace, handler)
        with patch("adjutant.api.web_tools._is_url_safe", side_effect=checker):
            outcome = await _call(fetch, url="https://example.com/r")
        await http.aclose()
        assert outcome.error.startswith("Blocked redirect to unsafe URL")

    @pytest.mark.asyncio
    async def test_redirect_followed(self, workspace, safe_urls):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(301, headers={"location": "/new"})
            return httpx.Response(200, text="moved here", headers={"content-type": "text/plain"})

        _, fetch, http = _tools(workspace, handler)
        outcome = await _call(fetch, url="https://example.com/old")
        await http.aclose()
        assert outcome.success
        assert outcome.meta["url"] == "https://example.com/new"
        assert "moved here" in outcome.result

    @pytest.mark.asyncio
    async def test_connect_error(self, workspace, safe_urls):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        _, fetch, http = _tools(workspace, handler)
        outcome = await _call(fetch, url="https://example.com")
        await http.aclose()
        assert outcome.error.startswith("Could not connect to https://example.com")


class TestExtractReadable:
    def test_strips_chrome_and_comments(self):
        html = "<nav>menu</nav><!-- hidden --><style>p{}</style><div>Main</div><footer>foot</footer>"
        assert extract_readable(html) == "Main"

    def test_normalizes_whitespace(self):
        out = extract_readable("<p>one   two</p>\n\n\n<p>three</p>")
        assert "one two" in out
        assert "three" in out
        assert "\n\n\n" not in out

    def test_plain_text_passthrough(self):
        assert extract_readable("just text") == "just text"


class TestRegisterWebTools:
    @pytest.mark.asyncio
    async def test_registered_read_only_and_dispatchable(self, workspace, settings):
        registry = ToolRegistry()
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        register_web_tools(registry, settings, http)

        assert set(registry.names) == {"web_search", "read_url"}
        assert registry.is_read_only("web_search") and registry.is_read_only("read_url")

        outcome = await ToolExecutor(registry, settings).execute("web_search", {"query": "x"}, workspace)
        await http.aclose()
        assert "BRAVE_SEARCH_API_KEY not configured" in outcome.error
