from unittest.mock import AsyncMock, patch

import httpx
import pytest

from services.web_content import (
    BlockedAddressError,
    count_words,
    ensure_public_url,
    enrich_sources_with_full_content,
    fetch_multiple_urls,
    fetch_web_content,
    fetch_with_retry,
    html_to_text,
)


ARTICLE_WORDS = " ".join(f"sentence{index}" for index in range(120))
ARTICLE_HTML = f"""
<html>
  <head><title>Breach explainer</title><script>var tracking = true;</script></head>
  <body>
    <nav>Home | About</nav>
    <article><h1>How breaches happen</h1><p>{ARTICLE_WORDS}</p></article>
  </body>
</html>
"""


@pytest.fixture(autouse=True)
def public_dns():
    with patch("services.web_content._resolve_host", new_callable=AsyncMock, return_value=["93.184.216.34"]) as resolver:
        yield resolver


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_count_words_and_html_to_text():
    assert count_words(None) == 0
    assert count_words("") == 0
    assert count_words("one  two\nthree\tfour") == 4

    text = html_to_text("<html><body><script>var hidden = 1;</script><p>Hello world</p></body></html>")
    assert "Hello world" in text
    assert "var hidden" not in text
    assert html_to_text(None) == ""


@pytest.mark.asyncio
async def test_reader_result_is_preferred():
    requested = []

    def handler(request):
        requested.append((request.url.host, str(request.url).endswith("example.com/a")))
        assert request.headers["X-Return-Format"] == "text"
        return httpx.Response(200, text=ARTICLE_WORDS)

    async with _client(handler) as client:
        result = await fetch_web_content("https://example.com/a", client=client)

    assert result["success"] is True
    assert result["method"] == "reader"
    assert result["word_count"] == 120
    assert requested == [("r.jina.ai", True)]


@pytest.mark.asyncio
async def test_direct_fetch_used_when_reader_fails():
    def handler(request):
        if request.url.host == "r.jina.ai":
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, text=ARTICLE_HTML, headers={"Content-Type": "text/html"})

    async with _client(handler) as client:
        result = await fetch_web_content("https://example.com/a", client=client)

    assert result["success"] is True
    assert result["method"] == "direct"
    assert "sentence42" in result["content"]
    assert "var tracking" not in result["content"]
    assert result["word_count"] >= 100


@pytest.mark.asyncio
async def test_fetch_failures_are_reported_not_raised():
    def short_handler(request):
        return httpx.Response(200, text="<p>Paywalled</p>")

    def timeout_handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(short_handler) as client:
        short = await fetch_web_content("https://example.com/short", client=client)
    async with _client(timeout_handler) as client:
        timed_out = await fetch_web_content("https://example.com/slow", client=client)

    assert short["success"] is False
    assert short["error"] == "Content too short"
    assert timed_out == {
        "success": False,
        "error": "Fetch timeout",
        "content": "",
        "word_count": 0,
        "url": "https://example.com/slow",
    }
    assert (await fetch_web_content("ftp://example.com/file"))["error"] == "Only HTTP(S) URLs are supported"
    assert (await fetch_web_content(""))["error"] == "Invalid URL provided"


@pytest.mark.asyncio
async def test_retry_skips_client_errors_and_retries_server_errors():
    calls = {"missing": 0, "flaky": 0}

    def handler(request):
        if request.url.path == "/missing":
            calls["missing"] += 1
            return httpx.Response(404)
        calls["flaky"] += 1
        return httpx.Response(500)

    async with _client(handler) as client:
        missing = await fetch_with_retry("https://example.com/missing", client=client, use_reader=False, retry_delay=0)
        flaky = await fetch_with_retry(
            "https://example.com/flaky",
            client=client,
            use_reader=False,
            max_retries=2,
            retry_delay=0,
        )

    assert missing["error"] == "HTTP 404"
    assert calls["missing"] == 1
    assert flaky["error"] == "HTTP 500"
    assert calls["flaky"] == 3


@pytest.mark.asyncio
async def test_fetch_multiple_keeps_substantial_pages_in_order():
    def handler(request):
        path = request.url.path
        if path.endswith("/thin"):
            return httpx.Response(200, text=" ".join(["word"] * 60))
        if path.endswith("/gone"):
            return httpx.Response(404)
        return httpx.Response(200, text=ARTICLE_WORDS)

    urls = [
        "https://example.com/one",
        "https://example.com/thin",
        "https://example.com/gone",
        "https://example.com/two",
    ]
    async with _client(handler) as client:
        results = await fetch_multiple_urls(urls, max_concurrent=2, min_word_count=100, client=client)

    assert [row["url"] for row in results] == ["https://example.com/one", "https://example.com/two"]


@pytest.mark.asyncio
async def test_enrich_replaces_only_thin_web_sources():
    def handler(request):
        return httpx.Response(200, text=ARTICLE_WORDS + " " + ARTICLE_WORDS)

    sources = [
        {"source_url": "https://example.com/thin", "source_type": "web", "source_content": "short extract"},
        {"source_url": "#ai-synthesis", "source_type": "synthesis", "source_content": "summary"},
        {"source_url": "https://example.com/rich", "source_type": "web", "source_content": ARTICLE_WORDS * 2},
    ]
    async with _client(handler) as client:
        enriched = await enrich_sources_with_full_content(sources, min_words=150, client=client)

    assert enriched[0]["content_method"] == "reader"
    assert count_words(enriched[0]["source_content"]) == 240
    assert enriched[1] == sources[1]
    assert enriched[2] == sources[2]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    [
        "http://169.254.169.254/latest/meta-data/",
        "http://127.0.0.1:8000/health",
        "http://10.0.0.5/admin",
        "http://[::1]/",
        "http://[::ffff:192.168.1.1]/",
    ],
)
async def test_internal_addresses_are_never_requested(url):
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, text=ARTICLE_WORDS)

    async with _client(handler) as client:
        result = await fetch_web_content(url, use_reader=False, client=client)

    assert result["success"] is False
    assert result["error"].startswith("Blocked")
    assert requested == []


@pytest.mark.asyncio
async def test_hostnames_resolving_to_private_addresses_are_blocked(public_dns):
    public_dns.return_value = ["192.168.0.10"]
    with pytest.raises(BlockedAddressError):
        await ensure_public_url("https://intranet.example/wiki")

    public_dns.side_effect = OSError("Name or service not known")
    with pytest.raises(BlockedAddressError, match="could not resolve"):
        await ensure_public_url("https://missing.example/")


@pytest.mark.asyncio
async def test_redirects_are_followed_but_not_into_internal_hosts():
    requested = []

    def handler(request):
        requested.append(request.url.path)
        if request.url.path == "/moved":
            return httpx.Response(302, headers={"Location": "/article"})
        if request.url.path == "/sneaky":
            return httpx.Response(302, headers={"Location": "http://169.254.169.254/latest/meta-data/"})
        return httpx.Response(200, text=ARTICLE_HTML, headers={"Content-Type": "text/html"})

    async with _client(handler) as client:
        moved = await fetch_web_content("https://example.com/moved", use_reader=False, client=client)
        sneaky = await fetch_with_retry(
            "https://example.com/sneaky", use_reader=False, client=client, retry_delay=0
        )

    assert moved["success"] is True
    assert "sentence42" in moved["content"]
    assert sneaky["success"] is False
    assert sneaky["error"].startswith("Blocked")
    assert requested == ["/moved", "/article", "/sneaky"]
