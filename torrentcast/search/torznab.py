"""Torznab indexer client.

Issues search and capabilities requests to a single Torznab endpoint and
parses the RSS feed into release candidates. Malformed items are skipped,
never failing the whole response.

Protocol reference: https://torznab.github.io/spec-1.3-draft/
"""

import asyncio
import base64
import re
from urllib.parse import quote_plus
from xml.etree import ElementTree

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from torrentcast.config import IndexerConfig
from torrentcast.errors import (
    IndexerAuthError,
    IndexerError,
    IndexerParseError,
    IndexerTimeoutError,
    NetworkError,
)
from torrentcast.search.titles import detect_quality

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Request timeout in seconds
REQUEST_TIMEOUT = 15.0

# Retry settings for transient failures (5xx, connection errors)
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5  # seconds, multiplied by attempt number

RETRYABLE_STATUS_CODES = (500, 502, 503, 504)

# Newznab/Torznab category IDs
CATEGORY_MOVIES = 2000
CATEGORY_TV = 5000
VIDEO_CATEGORIES = (CATEGORY_MOVIES, CATEGORY_TV)

# Torznab error codes 100-199 are account/credential errors
AUTH_ERROR_CODES = range(100, 200)

# Public trackers appended to magnets built from a bare infohash
DEFAULT_TRACKERS = [
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://open.stealth.si:80/announce",
    "udp://tracker.torrent.eu.org:451/announce",
    "udp://exodus.desync.com:6969/announce",
]

_BTIH_PATTERN = re.compile(r"xt=urn:btih:([0-9A-Za-z]+)")


# =============================================================================
# Data Models
# =============================================================================


class Indexer(BaseModel):
    """A configured Torznab indexer. Immutable after config load."""

    model_config = ConfigDict(frozen=True)

    name: str
    base_url: str
    api_key: SecretStr

    @classmethod
    def from_config(cls, config: IndexerConfig) -> "Indexer":
        """Build an indexer from its settings entry."""
        return cls(name=config.name, base_url=config.url, api_key=config.api_key)

    @property
    def api_url(self) -> str:
        """Full Torznab API endpoint."""
        return f"{self.base_url.rstrip('/')}/api"


class IndexerCapabilities(BaseModel):
    """Search parameters advertised by an indexer's t=caps response."""

    model_config = ConfigDict(frozen=True)

    search_params: frozenset[str] = Field(default_factory=lambda: frozenset({"q"}))
    max_limit: int | None = None
    categories: frozenset[int] = Field(default_factory=frozenset)

    def supports(self, param: str) -> bool:
        """Check whether the plain search mode accepts a parameter."""
        return param in self.search_params


class SearchQuery(BaseModel):
    """Free-text search term with an optional year hint."""

    model_config = ConfigDict(frozen=True)

    term: str = Field(..., min_length=1)
    year: int | None = Field(default=None, ge=1870, le=2100)


class ReleaseCandidate(BaseModel):
    """One torrent result, identified by its infohash.

    Attributes:
        title: Release title as reported by the indexer.
        seeders: Number of seeders.
        leechers: Number of leechers.
        size: Size in bytes (0 when unknown).
        uri: Magnet URI or .torrent download link.
        info_hash: Lower-case hex infohash, the deduplication key.
        indexers: Names of every indexer that reported this release.
        confidence: Metadata match confidence (0.0 when no match).
    """

    model_config = ConfigDict(frozen=True)

    title: str
    seeders: int = Field(default=0, ge=0)
    leechers: int = Field(default=0, ge=0)
    size: int = Field(default=0, ge=0)
    uri: str
    info_hash: str | None = None
    indexers: tuple[str, ...] = ()
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def indexer(self) -> str:
        """Name of the first indexer that reported this release."""
        return self.indexers[0] if self.indexers else ""

    @property
    def dedup_key(self) -> str:
        """Key used to merge duplicate reports across indexers."""
        return self.info_hash or self.uri

    @property
    def is_magnet(self) -> bool:
        """Check if the URI is a magnet link."""
        return self.uri.startswith("magnet:")

    @property
    def quality(self) -> str | None:
        """Video quality detected from the title."""
        return detect_quality(self.title)

    @property
    def size_human(self) -> str:
        """Human-readable size."""
        return format_size(self.size)

    def to_display_string(self) -> str:
        """Format candidate for display to user."""
        quality_str = f" [{self.quality}]" if self.quality else ""
        return (
            f"{self.title}{quality_str} | {self.size_human} | "
            f"S:{self.seeders} | {', '.join(self.indexers)}"
        )


# =============================================================================
# Helper Functions
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format size in bytes to human-readable string.

    Args:
        size_bytes: Size in bytes.

    Returns:
        Human-readable size string.
    """
    if size_bytes <= 0:
        return "?"

    gib = 1024**3
    mib = 1024**2
    if size_bytes >= gib:
        return f"{size_bytes / gib:.2f} GB"
    return f"{size_bytes / mib:.1f} MB"


def normalize_info_hash(value: str | None) -> str | None:
    """Normalize an infohash to lower-case hex.

    Accepts 40-character hex or 32-character base32 hashes.

    Returns:
        Lower-case hex hash, or None if the value is not a valid hash.
    """
    if not value:
        return None
    value = value.strip()
    if len(value) == 40 and re.fullmatch(r"[0-9A-Fa-f]{40}", value):
        return value.lower()
    if len(value) == 32:
        try:
            return base64.b32decode(value.upper()).hex()
        except ValueError:
            return None
    return None


def extract_info_hash(magnet_link: str) -> str | None:
    """Extract the infohash from a magnet link.

    Args:
        magnet_link: Magnet URI.

    Returns:
        Lower-case hex infohash or None.
    """
    match = _BTIH_PATTERN.search(magnet_link)
    if not match:
        return None
    return normalize_info_hash(match.group(1))


def build_magnet_link(info_hash: str, name: str = "") -> str:
    """Build a magnet link from an infohash.

    Args:
        info_hash: BitTorrent infohash.
        name: Optional display name for the torrent.

    Returns:
        Complete magnet URI.
    """
    magnet = f"magnet:?xt=urn:btih:{info_hash}"

    if name:
        magnet += f"&dn={quote_plus(name)}"

    for tracker in DEFAULT_TRACKERS:
        magnet += f"&tr={quote_plus(tracker)}"

    return magnet


def _parse_int(value: str | None) -> int | None:
    """Parse an integer attribute, returning None when absent or invalid."""
    if value is None:
        return None
    try:
        return max(int(float(value.strip())), 0)
    except (ValueError, OverflowError):
        return None


def _local_name(tag: str) -> str:
    """Strip the XML namespace from a tag name."""
    return tag.rsplit("}", 1)[-1]


def parse_item(item: ElementTree.Element, indexer_name: str) -> ReleaseCandidate:
    """Parse a single feed item into a candidate.

    Args:
        item: The <item> element.
        indexer_name: Name of the reporting indexer.

    Returns:
        Parsed ReleaseCandidate.

    Raises:
        IndexerParseError: If the item has no title or no usable URI.
    """
    title = ""
    link: str | None = None
    enclosure_url: str | None = None
    size: int | None = None
    attrs: dict[str, str] = {}

    for child in item:
        name = _local_name(child.tag)
        if name == "title":
            title = (child.text or "").strip()
        elif name == "link":
            link = (child.text or "").strip() or None
        elif name == "size":
            size = _parse_int(child.text)
        elif name == "enclosure":
            enclosure_url = child.get("url") or None
            if size is None:
                size = _parse_int(child.get("length"))
        elif name == "attr":
            attr_name = child.get("name")
            attr_value = child.get("value")
            if attr_name and attr_value is not None:
                attrs[attr_name.lower()] = attr_value

    if not title:
        raise IndexerParseError("item without title", indexer=indexer_name)

    if "size" in attrs:
        size = _parse_int(attrs["size"]) or size

    magnet_url = attrs.get("magneturl") or None
    info_hash = normalize_info_hash(attrs.get("infohash"))

    if magnet_url is None:
        for candidate_link in (link, enclosure_url):
            if candidate_link and candidate_link.startswith("magnet:"):
                magnet_url = candidate_link
                break

    if info_hash is None and magnet_url:
        info_hash = extract_info_hash(magnet_url)

    if magnet_url:
        uri = magnet_url
    elif info_hash:
        uri = build_magnet_link(info_hash, title)
    elif link or enclosure_url:
        # .torrent download link (e.g. a Prowlarr proxy URL)
        uri = link or enclosure_url or ""
    else:
        raise IndexerParseError(f"item without link: {title}", indexer=indexer_name)

    try:
        return ReleaseCandidate(
            title=title,
            seeders=_parse_int(attrs.get("seeders")) or 0,
            leechers=_parse_int(attrs.get("peers") or attrs.get("leechers")) or 0,
            size=size or 0,
            uri=uri,
            info_hash=info_hash,
            indexers=(indexer_name,),
        )
    except ValidationError as e:
        raise IndexerParseError(f"invalid item {title}: {e}", indexer=indexer_name) from e


def parse_search_response(xml_content: str, indexer_name: str) -> list[ReleaseCandidate]:
    """Parse a Torznab search feed.

    Args:
        xml_content: Raw XML response body.
        indexer_name: Name of the reporting indexer.

    Returns:
        List of candidates; malformed items are skipped.

    Raises:
        IndexerAuthError: If the feed is a credential error document.
        IndexerError: If the document is not valid XML or is another error document.
    """
    root = _parse_document(xml_content, indexer_name)

    results: list[ReleaseCandidate] = []
    skipped = 0
    for item in root.iter("item"):
        try:
            results.append(parse_item(item, indexer_name))
        except IndexerParseError as e:
            skipped += 1
            logger.warning("torznab_item_skipped", indexer=indexer_name, error=str(e))
            continue

    logger.debug(
        "torznab_response_parsed",
        indexer=indexer_name,
        count=len(results),
        skipped=skipped,
    )
    return results


def parse_capabilities(xml_content: str, indexer_name: str) -> IndexerCapabilities:
    """Parse a t=caps response.

    Args:
        xml_content: Raw XML response body.
        indexer_name: Name of the indexer.

    Returns:
        Parsed capabilities.
    """
    root = _parse_document(xml_content, indexer_name)

    search_params: set[str] = {"q"}
    search_elem = root.find("./searching/search")
    if search_elem is not None:
        if search_elem.get("available", "yes").lower() != "yes":
            search_params = set()
        supported = search_elem.get("supportedParams", "")
        search_params.update(p.strip().lower() for p in supported.split(",") if p.strip())

    max_limit: int | None = None
    limits_elem = root.find("./limits")
    if limits_elem is not None:
        max_limit = _parse_int(limits_elem.get("max"))

    categories: set[int] = set()
    for category in root.iter():
        if _local_name(category.tag) not in ("category", "subcat"):
            continue
        cat_id = _parse_int(category.get("id"))
        if cat_id is not None:
            categories.add(cat_id)

    return IndexerCapabilities(
        search_params=frozenset(search_params),
        max_limit=max_limit,
        categories=frozenset(categories),
    )


def _parse_document(xml_content: str, indexer_name: str) -> ElementTree.Element:
    """Parse XML and turn Torznab error documents into exceptions."""
    try:
        root = ElementTree.fromstring(xml_content)
    except ElementTree.ParseError as e:
        raise IndexerError(f"Invalid XML from indexer: {e}", indexer=indexer_name) from e

    if _local_name(root.tag) == "error":
        code = _parse_int(root.get("code"))
        description = root.get("description", "unknown error")
        if code is not None and code in AUTH_ERROR_CODES:
            raise IndexerAuthError(f"{description} (code {code})", indexer=indexer_name)
        raise IndexerError(f"{description} (code {code})", indexer=indexer_name)

    return root


# =============================================================================
# Torznab Client
# =============================================================================


class TorznabClient:
    """Async client for a single Torznab indexer.

    Example:
        async with TorznabClient(indexer) as client:
            caps = await client.capabilities()
            results = await client.search(SearchQuery(term="Dune"), caps)
    """

    def __init__(
        self,
        indexer: Indexer,
        timeout: float = REQUEST_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF,
        limit: int | None = None,
    ) -> None:
        """Initialize Torznab client.

        Args:
            indexer: Indexer to query.
            timeout: Per-request timeout in seconds.
            max_retries: Attempts for transient failures.
            retry_backoff: Base delay between attempts in seconds.
            limit: Result limit requested when the indexer supports it.
        """
        self.indexer = indexer
        self.timeout = timeout
        self.max_retries = max(max_retries, 1)
        self.retry_backoff = retry_backoff
        self.limit = limit
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "TorznabClient":
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={"Accept": "application/rss+xml, application/xml;q=0.9, */*;q=0.8"},
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, ensuring it's initialized.

        Raises:
            RuntimeError: If client is not initialized (not in context manager).
        """
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    @property
    def name(self) -> str:
        """Indexer name."""
        return self.indexer.name

    def build_search_params(
        self,
        query: SearchQuery,
        capabilities: IndexerCapabilities | None = None,
    ) -> dict[str, str]:
        """Build query parameters for t=search, gated by capabilities.

        Args:
            query: Search query.
            capabilities: Indexer capabilities; None sends only the term.

        Returns:
            Query parameter dict.
        """
        params = {
            "t": "search",
            "apikey": self.indexer.api_key.get_secret_value(),
            "q": query.term,
        }

        if capabilities is None:
            return params

        if self.limit and capabilities.max_limit:
            params["limit"] = str(min(self.limit, capabilities.max_limit))

        if query.year is not None and capabilities.supports("year"):
            params["year"] = str(query.year)

        categories = [c for c in VIDEO_CATEGORIES if c in capabilities.categories]
        if categories:
            params["cat"] = ",".join(str(c) for c in categories)

        return params

    async def _get(self, params: dict[str, str]) -> str:
        """Issue a GET to the API endpoint with retry on transient errors.

        Returns:
            Response body.

        Raises:
            IndexerTimeoutError: If the request times out.
            IndexerAuthError: If the API key is rejected.
            NetworkError: If transient failures persist after all retries.
            IndexerError: For other HTTP errors.
        """
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.get(self.indexer.api_url, params=params)
                response.raise_for_status()
                return response.text
            except httpx.TimeoutException as e:
                logger.warning("indexer_timeout", indexer=self.name, error=str(e))
                raise IndexerTimeoutError(
                    f"Indexer timed out after {self.timeout}s", indexer=self.name
                ) from e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status in (401, 403):
                    raise IndexerAuthError(
                        f"Indexer rejected API key (HTTP {status})", indexer=self.name
                    ) from e
                if status not in RETRYABLE_STATUS_CODES:
                    logger.error("indexer_http_error", indexer=self.name, status=status)
                    raise IndexerError(f"HTTP error {status}", indexer=self.name) from e
                last_error = e
            except httpx.TransportError as e:
                last_error = e

            if attempt < self.max_retries - 1:
                logger.warning(
                    "indexer_retry",
                    indexer=self.name,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error=str(last_error),
                )
                await asyncio.sleep(self.retry_backoff * (attempt + 1))

        logger.error("indexer_all_retries_failed", indexer=self.name, attempts=self.max_retries)
        raise NetworkError(
            f"{self.name}: request failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    async def capabilities(self) -> IndexerCapabilities:
        """Query the indexer's supported search parameters (t=caps).

        Returns:
            Parsed capabilities.
        """
        params = {"t": "caps", "apikey": self.indexer.api_key.get_secret_value()}
        xml_content = await self._get(params)
        caps = parse_capabilities(xml_content, self.name)
        logger.debug(
            "indexer_capabilities",
            indexer=self.name,
            search_params=sorted(caps.search_params),
            max_limit=caps.max_limit,
        )
        return caps

    async def search(
        self,
        query: SearchQuery,
        capabilities: IndexerCapabilities | None = None,
    ) -> list[ReleaseCandidate]:
        """Search the indexer.

        Args:
            query: Search query.
            capabilities: Capabilities used to gate optional parameters.

        Returns:
            Parsed candidates in feed order.
        """
        logger.info("searching_indexer", indexer=self.name, query=query.term, year=query.year)
        params = self.build_search_params(query, capabilities)
        xml_content = await self._get(params)
        results = parse_search_response(xml_content, self.name)
        logger.info("indexer_results_found", indexer=self.name, count=len(results))
        return results
