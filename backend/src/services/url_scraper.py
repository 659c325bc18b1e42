"""
Link crawling: fetch a bookmarked URL and pull out what the page offers.

`HttpLinkCrawler` is the default `LinkCrawler`. It has no browser, so it never
produces screenshots; a browser-backed crawler can fill those in behind the
same protocol.
"""
import asyncio
import ipaddress
import logging
import socket
from dataclasses import dataclass, fields
from io import BytesIO
from typing import Protocol
from urllib.parse import urljoin, urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from services.exceptions import PermanentUpstreamError, TransientUpstreamError

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; Bookmarks/1.0)'
DEFAULT_TIMEOUT = 10.0

LOCAL_HOSTNAMES = frozenset({'localhost', 'localhost.localdomain'})
# Besides 5xx, the only client errors worth retrying
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})

# Lookup order for each metadata field: (tag attribute, attribute value)
TITLE_META = (('property', 'og:title'), ('name', 'twitter:title'))
DESCRIPTION_META = (
    ('name', 'description'),
    ('property', 'og:description'),
    ('name', 'twitter:description'),
)
IMAGE_META = (('property', 'og:image'), ('name', 'twitter:image'))


class BlockedUrlError(PermanentUpstreamError):
    """The URL, or a redirect target, points at a loopback or private network."""


# =============================================================================
# Address checks
# =============================================================================


def is_internal_address(address: str) -> bool:
    """Whether an IP address is loopback, private or otherwise not public."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    return not ip.is_global or ip.is_multicast


def check_public_url(url: str) -> None:
    """
    Reject URLs a crawler must not request.

    The hostname is resolved and every address it maps to is checked, so a
    public name pointing at an internal address is caught too. Blocking, so
    async callers run it in a thread.

    Raises:
        BlockedUrlError: The URL targets localhost or an internal address.
        PermanentUpstreamError: The URL is not http(s), has no host, or the
            host does not resolve.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        raise PermanentUpstreamError(f"Unsupported URL scheme: {url}")
    host = parsed.hostname
    if not host:
        raise PermanentUpstreamError(f"URL has no host: {url}")
    if host.lower() in LOCAL_HOSTNAMES:
        raise BlockedUrlError(f"Refusing to crawl localhost: {url}")

    try:
        resolved = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise PermanentUpstreamError(f"Host does not resolve: {host}") from e

    # the last item is the socket address; its first element is the IP
    for *_, sockaddr in resolved:
        if is_internal_address(sockaddr[0]):
            raise BlockedUrlError(f"Refusing to crawl {url}: {host} is {sockaddr[0]}")


# =============================================================================
# Fetching
# =============================================================================


@dataclass
class Page:
    """A fetched HTML page or PDF document."""

    url: str  # after redirects
    content_type: str
    body: bytes
    text: str

    @property
    def is_pdf(self) -> bool:
        return 'application/pdf' in self.content_type.lower()

    @property
    def is_html(self) -> bool:
        return 'text/html' in self.content_type.lower()


async def fetch_page(
    url: str,
    client: httpx.AsyncClient,
    timeout: float = DEFAULT_TIMEOUT,  # noqa: ASYNC109
) -> Page:
    """
    GET a URL, following redirects, and return the page if it is HTML or PDF.

    Both the requested URL and the final URL after redirects must pass
    `check_public_url`.

    Raises:
        TransientUpstreamError: Timeouts, network errors, 5xx and the
            retryable 4xx codes.
        PermanentUpstreamError: Blocked URLs, other HTTP errors and content
            that is neither HTML nor PDF.
    """
    await asyncio.to_thread(check_public_url, url)
    try:
        response = await client.get(url, timeout=timeout)
    except httpx.TimeoutException as e:
        raise TransientUpstreamError(f"Timed out fetching {url}") from e
    except httpx.RequestError as e:
        raise TransientUpstreamError(f"Could not fetch {url}: {e}") from e

    final_url = str(response.url)
    if final_url != url:
        await asyncio.to_thread(check_public_url, final_url)

    status_code = response.status_code
    if not response.is_success:
        message = f"HTTP {status_code} from {final_url}"
        if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
            raise TransientUpstreamError(message)
        raise PermanentUpstreamError(message)

    page = Page(
        url=final_url,
        content_type=response.headers.get('content-type', ''),
        body=response.content,
        text='',
    )
    if page.is_html:
        page.text = response.text
    elif not page.is_pdf:
        raise PermanentUpstreamError(f"Cannot crawl content type {page.content_type!r}")
    return page


# =============================================================================
# Extraction
# =============================================================================


@dataclass
class PageMetadata:
    title: str | None = None
    description: str | None = None
    image_url: str | None = None


def _first_meta(soup: BeautifulSoup, candidates: tuple[tuple[str, str], ...]) -> str | None:
    for attr, value in candidates:
        tag = soup.find('meta', attrs={attr: value})
        content = (tag.get('content') or '').strip() if tag else ''
        if content:
            return content
    return None


def parse_html_metadata(html: str, base_url: str | None = None) -> PageMetadata:
    """
    Title, description and preview image of an HTML page.

    `<title>` wins over Open Graph and Twitter card tags; descriptions prefer
    the plain `description` meta tag. A relative image is resolved against
    `base_url`.
    """
    soup = BeautifulSoup(html, 'lxml')
    title_tag = soup.find('title')
    title = title_tag.get_text(strip=True) if title_tag else ''

    image_url = _first_meta(soup, IMAGE_META)
    if image_url and base_url:
        image_url = urljoin(base_url, image_url)

    return PageMetadata(
        title=title or _first_meta(soup, TITLE_META),
        description=_first_meta(soup, DESCRIPTION_META),
        image_url=image_url,
    )


def readable_text(html: str) -> str | None:
    """Main article text of a page (boilerplate stripped), via trafilatura."""
    return trafilatura.extract(html)


def pdf_metadata(data: bytes) -> PageMetadata:
    """PDF /Title and /Subject as title and description; often both missing."""
    try:
        info = PdfReader(BytesIO(data)).metadata
    except (PyPdfError, ValueError):
        return PageMetadata()
    if info is None:
        return PageMetadata()
    return PageMetadata(title=info.title or None, description=info.subject or None)


def pdf_text(data: bytes) -> str | None:
    """
    Text of every page joined by newlines, or None for scanned or unreadable PDFs.

    NUL bytes are dropped since PostgreSQL text columns reject them.
    """
    try:
        pages = PdfReader(BytesIO(data)).pages
        chunks = [page.extract_text() or '' for page in pages]
    except (PyPdfError, ValueError):
        logger.debug("Could not read PDF text", exc_info=True)
        return None
    text = '\n'.join(chunk.replace('\x00', '') for chunk in chunks if chunk)
    return text or None


# =============================================================================
# Crawler capability
# =============================================================================


@dataclass
class CrawlResult:
    """
    Everything a crawl produced. Fields left as None were not produced and
    must not overwrite stored values.
    """

    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    html_content: str | None = None
    content: str | None = None
    screenshot: bytes | None = None
    full_page_screenshot: bytes | None = None

    def produced_fields(self) -> dict[str, str]:
        """Text fields the crawl produced, keyed by link column name."""
        blobs = {'screenshot', 'full_page_screenshot'}
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in blobs and getattr(self, f.name) is not None
        }


class LinkCrawler(Protocol):
    """Capability that turns a URL into metadata, content and screenshots."""

    async def crawl(self, url: str) -> CrawlResult:
        """
        Crawl a URL.

        Raises:
            TransientUpstreamError: Network failure, timeout or server error.
            PermanentUpstreamError: Malformed or blocked URL, or a page that
                cannot be crawled.
        """
        ...


class HttpLinkCrawler:
    """LinkCrawler backed by a plain HTTP client."""

    def __init__(
        self,
        navigate_timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.navigate_timeout = navigate_timeout
        self._client = client

    async def crawl(self, url: str) -> CrawlResult:
        """Fetch a URL and extract metadata, raw HTML and readable text."""
        if self._client is not None:
            page = await fetch_page(url, self._client, self.navigate_timeout)
        else:
            async with httpx.AsyncClient(
                follow_redirects=True,
                headers={'User-Agent': USER_AGENT},
                http2=True,
            ) as client:
                page = await fetch_page(url, client, self.navigate_timeout)

        if page.is_pdf:
            meta = pdf_metadata(page.body)
            return CrawlResult(
                title=meta.title,
                description=meta.description,
                content=pdf_text(page.body),
            )

        meta = parse_html_metadata(page.text, base_url=page.url)
        return CrawlResult(
            title=meta.title,
            description=meta.description,
            image_url=meta.image_url,
            html_content=page.text,
            content=readable_text(page.text),
        )
