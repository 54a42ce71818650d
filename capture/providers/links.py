"""Link metadata providers: OpenGraph/HTML extraction over HTTP."""

import asyncio
import ipaddress
import logging
import math
import socket
from typing import Optional
from urllib.parse import urljoin, urlparse

import httpx

from ..types import LinkResult, WebContext, url_host
from .base import LinkMetadataProvider, get_registry

logger = logging.getLogger(__name__)

# Words per minute for reading-time estimates
READING_WPM = 200


def extract_html_text(html_content: str) -> str:
    """
    Extract readable text from HTML, removing scripts and styles.

    Args:
        html_content: Raw HTML string

    Returns:
        Extracted text with whitespace normalized
    """
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html_content, "html.parser")
    for script in soup(["script", "style", "noscript"]):
        script.decompose()

    text = soup.get_text()
    lines = (line.strip() for line in text.splitlines())
    chunks = (phrase.strip() for line in lines for phrase in line.split("  "))
    return '\n'.join(chunk for chunk in chunks if chunk)


def _meta(soup, *names: str) -> Optional[str]:
    """First non-empty <meta> content among property/name candidates."""
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content", "").strip():
            return tag["content"].strip()
    return None


def parse_link_metadata(html_content: str, url: str) -> Optional[LinkResult]:
    """Build a LinkResult from an HTML page. None if the page has nothing usable."""
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html_content, "html.parser")

    title = _meta(soup, "og:title", "twitter:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip()
    description = _meta(soup, "og:description", "twitter:description", "description")
    image = _meta(soup, "og:image", "twitter:image")
    if image:
        image = urljoin(url, image)
    keywords = _meta(soup, "keywords")
    tags = tuple(sorted({k.strip().lower() for k in keywords.split(",") if k.strip()})) if keywords else ()

    icon = soup.find("link", rel=lambda r: bool(r) and "icon" in r.lower())
    structured = soup.find("script", attrs={"type": "application/ld+json"})

    text = extract_html_text(html_content)
    words = len(text.split())
    web = WebContext(
        site_name=_meta(soup, "og:site_name") or url_host(url) or None,
        favicon_url=urljoin(url, icon["href"]) if icon and icon.get("href") else None,
        reading_time_minutes=max(1, math.ceil(words / READING_WPM)) if words else None,
        is_reader_available=soup.find("article") is not None,
        text_content=text[:20000] or None,
        structured_data=structured.string.strip() if structured and structured.string else None,
    )

    if not (title or description or text):
        return None
    return LinkResult(title=title, description=description, image=image, tags=tags, web=web)


class HttpLinkProvider:
    """
    Fetches a page over HTTP(S) and extracts OpenGraph metadata.

    Private and link-local addresses are refused; redirects are followed
    manually so each hop is validated.
    """

    _MAX_REDIRECTS = 5

    def __init__(self, timeout: float = 20.0, max_size: int = 5_000_000):
        """
        Args:
            timeout: Request timeout in seconds
            max_size: Maximum content size in bytes
        """
        self.timeout = timeout
        self.max_size = max_size

    @staticmethod
    def _is_private_url(url: str) -> bool:
        """Check if URL targets a private/internal network address."""
        hostname = urlparse(url).hostname
        if not hostname:
            return True
        if hostname in ("metadata.google.internal",):
            return True

        def blocked(addr) -> bool:
            return (addr.is_private or addr.is_loopback or addr.is_link_local
                    or addr.is_reserved or addr.is_unspecified or addr.is_multicast)

        try:
            return blocked(ipaddress.ip_address(hostname))
        except ValueError:
            pass  # Not an IP literal; resolve it

        try:
            for _, _, _, _, sockaddr in socket.getaddrinfo(hostname, None):
                if blocked(ipaddress.ip_address(sockaddr[0])):
                    return True
        except socket.gaierror:
            pass  # DNS failure surfaces from the request itself
        return False

    async def fetch(self, url: str) -> Optional[LinkResult]:
        from capture import __version__

        if await asyncio.to_thread(self._is_private_url, url):
            raise IOError(f"Blocked request to private/internal address: {url}")

        target = url
        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": f"capture/{__version__}"},
            follow_redirects=False,
        ) as client:
            for _ in range(self._MAX_REDIRECTS):
                resp = await client.get(target)
                if not resp.is_redirect:
                    break
                target = urljoin(target, resp.headers.get("Location", ""))
                if not target.startswith(("http://", "https://")):
                    raise IOError(f"Redirect to unsupported scheme: {target}")
                if await asyncio.to_thread(self._is_private_url, target):
                    raise IOError(f"Redirect to private/internal address blocked: {target}")
            else:
                raise IOError(f"Too many redirects: {url}")

            resp.raise_for_status()
            content_type = resp.headers.get("content-type", "")
            if "html" not in content_type:
                logger.debug("Skipping non-HTML link %s (%s)", url, content_type)
                return None
            if len(resp.content) > self.max_size:
                raise IOError(f"Content too large: {len(resp.content)} bytes (max {self.max_size})")
            return parse_link_metadata(resp.text, str(resp.url))


class CompositeLinkProvider:
    """
    Tries link providers in order until one returns a result.

    A provider that raises is logged and skipped.
    """

    def __init__(self, providers: Optional[list[LinkMetadataProvider]] = None):
        self._providers = providers if providers is not None else [HttpLinkProvider()]

    async def fetch(self, url: str) -> Optional[LinkResult]:
        for provider in self._providers:
            try:
                result = await provider.fetch(url)
            except Exception as e:
                logger.debug("Link provider %s failed for %s: %s",
                             type(provider).__name__, url, e)
                continue
            if result is not None:
                return result
        return None


# Register providers
_registry = get_registry()
_registry.register("links", "http", HttpLinkProvider)
_registry.register("links", "composite", CompositeLinkProvider)
