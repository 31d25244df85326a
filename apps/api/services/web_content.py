"""Full-text web page fetcher (reader service first, direct fetch fallback)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Any, Dict, List, Optional, Sequence

import httpx
import trafilatura
from bs4 import BeautifulSoup

from config import settings

logger = logging.getLogger(__name__)

MIN_PAGE_WORDS = 50
MAX_REDIRECTS = 5
NON_RETRYABLE_MARKERS = ("404", "403", "too short", "Blocked")


class BlockedAddressError(ValueError):
    """Raised for URLs that point at loopback, private or otherwise non-public hosts."""


def count_words(text: Any) -> int:
    if not text or not isinstance(text, str):
        return 0
    return len(text.split())


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\t", " ")
    text = re.sub(r" +", " ", text)
    text = re.sub(r"\n +", "\n", text)
    text = re.sub(r" \n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html: Any) -> str:
    """Main-content extraction with a whole-document fallback."""
    if not html or not isinstance(html, str):
        return ""
    extracted = trafilatura.extract(html, include_comments=False, include_tables=False)
    if extracted:
        return _normalize_whitespace(extracted)
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return _normalize_whitespace(soup.get_text("\n"))


async def _resolve_host(host: str) -> List[str]:
    infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def _is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_global and not ip.is_multicast


async def ensure_public_url(url: str) -> None:
    """Reject URLs whose host is not a public internet address."""
    parsed = httpx.URL(url)
    if parsed.scheme not in ("http", "https"):
        raise BlockedAddressError("Blocked: only HTTP(S) URLs are supported")
    host = parsed.host
    if not host:
        raise BlockedAddressError("Blocked: URL has no host")
    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        try:
            addresses = await _resolve_host(host)
        except OSError as exc:
            raise BlockedAddressError(f"Blocked: could not resolve {host}") from exc
    if not addresses or not all(_is_public_address(address) for address in addresses):
        raise BlockedAddressError(f"Blocked: {host} resolves to a non-public address")


def _failure(url: str, error: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "content": "", "word_count": 0, "url": url}


def _success(url: str, content: str, method: str) -> Dict[str, Any]:
    return {
        "success": True,
        "content": content,
        "method": method,
        "word_count": count_words(content),
        "url": url,
    }


async def _fetch_via_reader(client: httpx.AsyncClient, url: str, timeout: float, return_format: str) -> Dict[str, Any]:
    reader_url = f"{settings.WEB_READER_BASE_URL}{url}"
    response = await client.get(
        reader_url,
        timeout=timeout,
        headers={
            "Accept": "text/plain",
            "X-Return-Format": return_format,
            "X-With-Generated-Alt": "true",
        },
    )
    if response.status_code >= 400:
        return _failure(url, f"Reader fetch failed: {response.status_code} {response.reason_phrase}")
    content = response.text.strip()
    if count_words(content) < MIN_PAGE_WORDS:
        return _failure(url, "Content too short (may be blocked or paywalled)")
    return _success(url, content, "reader")


async def _fetch_directly(client: httpx.AsyncClient, url: str, timeout: float) -> Dict[str, Any]:
    # Redirects are followed by hand so every hop passes ensure_public_url.
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        await ensure_public_url(current)
        response = await client.get(
            current,
            timeout=timeout,
            follow_redirects=False,
            headers={
                "User-Agent": settings.WEB_FETCH_USER_AGENT,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
            },
        )
        location = response.headers.get("location")
        if not (response.is_redirect and location):
            break
        current = str(response.url.join(location))
    else:
        return _failure(url, "Too many redirects")

    if response.status_code >= 400:
        return _failure(url, f"HTTP {response.status_code}")
    text = html_to_text(response.text)
    if count_words(text) < MIN_PAGE_WORDS:
        return _failure(url, "Content too short")
    return _success(url, text, "direct")


async def fetch_web_content(
    url: Any,
    *,
    timeout: Optional[float] = None,
    use_reader: bool = True,
    fallback_to_raw: bool = True,
    return_format: str = "text",
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """Fetch readable page text. Never raises; failures come back as ``success: False``."""
    if not url or not isinstance(url, str):
        return _failure(str(url or ""), "Invalid URL provided")
    if not url.startswith("http://") and not url.startswith("https://"):
        return _failure(url, "Only HTTP(S) URLs are supported")
    try:
        await ensure_public_url(url)
    except BlockedAddressError as exc:
        logger.warning("Refusing to fetch %s: %s", url, exc)
        return _failure(url, str(exc))

    request_timeout = float(timeout if timeout is not None else settings.WEB_FETCH_TIMEOUT_SECONDS)
    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        if use_reader:
            try:
                result = await _fetch_via_reader(http, url, request_timeout, return_format)
                if result["success"]:
                    return result
                logger.debug("Reader fetch failed for %s: %s", url, result["error"])
            except httpx.TimeoutException:
                logger.debug("Reader fetch timed out for %s", url)
            except httpx.HTTPError as exc:
                logger.debug("Reader fetch error for %s: %s", url, exc)

        if not fallback_to_raw:
            return _failure(url, "All fetch methods failed")
        try:
            return await _fetch_directly(http, url, request_timeout)
        except BlockedAddressError as exc:
            logger.warning("Refusing redirect from %s: %s", url, exc)
            return _failure(url, str(exc))
        except httpx.TimeoutException:
            return _failure(url, "Fetch timeout")
        except httpx.HTTPError as exc:
            return _failure(url, str(exc) or exc.__class__.__name__)
    finally:
        if owns_client:
            await http.aclose()


async def fetch_multiple_urls(
    urls: Sequence[str],
    *,
    max_concurrent: int = 5,
    min_word_count: int = 100,
    timeout: Optional[float] = None,
    use_reader: bool = True,
    fallback_to_raw: bool = True,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """Fetch URLs in fixed-size concurrent batches, keeping substantial pages only."""
    results: List[Dict[str, Any]] = []
    batch_size = max(int(max_concurrent), 1)
    owns_client = client is None
    http = client or httpx.AsyncClient()
    try:
        for start in range(0, len(urls), batch_size):
            batch = list(urls[start:start + batch_size])
            outcomes = await asyncio.gather(
                *[
                    fetch_web_content(
                        url,
                        timeout=timeout,
                        use_reader=use_reader,
                        fallback_to_raw=fallback_to_raw,
                        client=http,
                    )
                    for url in batch
                ],
                return_exceptions=True,
            )
            for url, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning("Fetch of %s raised: %s", url, outcome)
                    continue
                if outcome["success"] and outcome["word_count"] >= min_word_count:
                    results.append(outcome)
    finally:
        if owns_client:
            await http.aclose()
    return results


async def fetch_with_retry(
    url: str,
    *,
    max_retries: int = 2,
    retry_delay: float = 1.0,
    client: Optional[httpx.AsyncClient] = None,
    **fetch_options: Any,
) -> Dict[str, Any]:
    """Retry transient failures with linear backoff; client errors are final."""
    last_error: Optional[str] = None
    for attempt in range(1, max_retries + 2):
        result = await fetch_web_content(url, client=client, **fetch_options)
        if result["success"]:
            return result
        last_error = result.get("error")
        if last_error and any(marker in last_error for marker in NON_RETRYABLE_MARKERS):
            break
        if attempt <= max_retries and retry_delay > 0:
            await asyncio.sleep(retry_delay * attempt)
    return _failure(url, last_error or "Max retries exceeded")


async def enrich_sources_with_full_content(
    sources: List[Dict[str, Any]],
    *,
    min_words: Optional[int] = None,
    max_concurrent: int = 3,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """Replace thin web-source extracts with the fetched page text."""
    threshold = int(min_words if min_words is not None else settings.RESEARCH_FULL_CONTENT_MIN_WORDS)
    thin_urls = [
        source["source_url"]
        for source in sources
        if source.get("source_type") == "web"
        and str(source.get("source_url") or "").startswith(("http://", "https://"))
        and count_words(source.get("source_content")) < threshold
    ]
    if not thin_urls:
        return sources

    fetched = await fetch_multiple_urls(
        thin_urls,
        max_concurrent=max_concurrent,
        min_word_count=threshold,
        client=client,
    )
    by_url = {row["url"]: row for row in fetched}
    enriched: List[Dict[str, Any]] = []
    for source in sources:
        page = by_url.get(source.get("source_url"))
        if page:
            source = {**source, "source_content": page["content"], "content_method": page["method"]}
        enriched.append(source)
    logger.info("Enriched %s of %s thin sources with full page content", len(by_url), len(thin_urls))
    return enriched
