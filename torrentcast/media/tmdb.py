"""TMDB (The Movie Database) API client and metadata enricher.

Resolves a search term to canonical metadata (title, year, overview) used to
break ranking ties and to validate raced torrents. Enrichment is best-effort:
every failure degrades to "no metadata", never to a failed search.

API Documentation: https://developers.themoviedb.org/3
"""

import asyncio
import time
from difflib import SequenceMatcher
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from torrentcast.errors import MetadataError, NetworkError
from torrentcast.search.titles import parse_release_title

logger = structlog.get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

TMDB_BASE_URL = "https://api.themoviedb.org/3"

# Request timeout in seconds
REQUEST_TIMEOUT = 10.0

DEFAULT_LANGUAGE = "en-US"

# Cache TTL in seconds
DEFAULT_CACHE_TTL = 3600

# Transient failure retry settings
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5

# Score adjustments applied on top of title similarity
YEAR_MATCH_BONUS = 0.1
YEAR_MISMATCH_PENALTY = 0.2


# =============================================================================
# Enums
# =============================================================================


class MediaType(str, Enum):
    """Type of media content."""

    MOVIE = "movie"
    TV = "tv"


# =============================================================================
# Exceptions
# =============================================================================


class TMDBError(MetadataError):
    """Base exception for TMDB API errors."""

    pass


class TMDBNotFoundError(TMDBError):
    """Raised when a resource is not found on TMDB."""

    pass


class TMDBRateLimitError(TMDBError):
    """Raised when TMDB rate limit is exceeded."""

    def __init__(self, retry_after: int = 1):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after {retry_after} seconds.")


class TMDBAuthError(TMDBError):
    """Raised when TMDB API key is invalid."""

    pass


# =============================================================================
# Data Models
# =============================================================================


class MetadataRecord(BaseModel):
    """Canonical metadata for a movie or TV show."""

    id: int
    media_type: MediaType
    title: str
    original_title: str = ""
    overview: str = ""
    release_date: str = ""
    vote_average: float = 0.0
    popularity: float = 0.0

    def get_year(self) -> int | None:
        """Extract year from release date."""
        if self.release_date and len(self.release_date) >= 4:
            try:
                return int(self.release_date[:4])
            except ValueError:
                return None
        return None


# =============================================================================
# Cache Implementation
# =============================================================================


class SimpleCache:
    """Simple in-memory cache with TTL support.

    Single event loop use only; no locking.
    """

    def __init__(self, ttl: int = DEFAULT_CACHE_TTL):
        self._cache: dict[str, tuple[Any, float]] = {}
        self._ttl = ttl

    def get(self, key: str) -> Any | None:
        """Get value from cache if not expired."""
        if key not in self._cache:
            return None

        value, timestamp = self._cache[key]
        if time.time() - timestamp > self._ttl:
            del self._cache[key]
            return None

        return value

    def set(self, key: str, value: Any) -> None:
        """Set value in cache."""
        self._cache[key] = (value, time.time())

    def clear(self) -> None:
        """Clear all cached values."""
        self._cache.clear()


# =============================================================================
# TMDB Client
# =============================================================================


class TMDBClient:
    """Async client for The Movie Database search API.

    Example:
        async with TMDBClient(api_key) as client:
            results = await client.search_movie("Inception", year=2010)
    """

    def __init__(
        self,
        api_key: str,
        language: str = DEFAULT_LANGUAGE,
        timeout: float = REQUEST_TIMEOUT,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF,
    ):
        """Initialize TMDB client.

        Args:
            api_key: TMDB API key.
            language: Language for results.
            timeout: Request timeout in seconds.
            cache_ttl: Cache TTL in seconds.
            max_retries: Attempts for transient network failures.
            retry_backoff: Base delay between attempts in seconds.
        """
        self._api_key = api_key
        self._language = language
        self._timeout = timeout
        self._max_retries = max(max_retries, 1)
        self._retry_backoff = retry_backoff
        self._client: httpx.AsyncClient | None = None
        self._cache = SimpleCache(ttl=cache_ttl)

    async def __aenter__(self) -> "TMDBClient":
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(
        self,
        _exc_type: Any,
        _exc_val: Any,
        _exc_tb: Any,
    ) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, ensuring it's initialized.

        Raises:
            RuntimeError: If client not initialized (not in context manager)
        """
        if self._client is None:
            raise RuntimeError("TMDBClient must be used as async context manager")
        return self._client

    def _get_cache_key(self, endpoint: str, params: dict[str, Any]) -> str:
        """Generate cache key from endpoint and parameters."""
        param_str = "&".join(f"{k}={v}" for k, v in sorted(params.items()) if k != "api_key")
        return f"{endpoint}?{param_str}"

    async def _request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        """Make authenticated request to TMDB API.

        Transport failures are retried with backoff; HTTP errors are not.

        Raises:
            TMDBNotFoundError: Resource not found (404)
            TMDBRateLimitError: Rate limit exceeded (429)
            TMDBAuthError: Invalid API key (401)
            NetworkError: Transport failures persisted after all retries
            TMDBError: Other API errors
        """
        full_params: dict[str, Any] = {
            "api_key": self._api_key,
            "language": self._language,
        }
        if params:
            full_params.update(params)

        cache_key = self._get_cache_key(endpoint, full_params)
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.debug("cache_hit", endpoint=endpoint)
                return cached

        url = f"{TMDB_BASE_URL}{endpoint}"
        logger.debug("tmdb_request", endpoint=endpoint, params=params)

        response: httpx.Response | None = None
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                response = await self.client.get(url, params=full_params)
                break
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    "tmdb_transport_error",
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(self._retry_backoff * (attempt + 1))

        if response is None:
            raise NetworkError(f"TMDB request failed: {last_error}") from last_error

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                raise TMDBError(f"Invalid JSON from TMDB: {e}") from e
            if not isinstance(data, dict):
                raise TMDBError("Unexpected TMDB response shape")
            if use_cache:
                self._cache.set(cache_key, data)
            return data

        if response.status_code == 401:
            raise TMDBAuthError("Invalid TMDB API key")
        if response.status_code == 404:
            raise TMDBNotFoundError(f"Resource not found: {endpoint}")
        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", 1))
            raise TMDBRateLimitError(retry_after)

        error_msg = response.text[:200] if response.text else "Unknown error"
        raise TMDBError(f"TMDB API error {response.status_code}: {error_msg}")

    # =========================================================================
    # Search Methods
    # =========================================================================

    async def search_movie(self, query: str, year: int | None = None) -> list[MetadataRecord]:
        """Search for movies by title.

        Args:
            query: Movie title to search for
            year: Optional year filter

        Returns:
            List of search results
        """
        params: dict[str, Any] = {"query": query}
        if year:
            params["year"] = year

        data = await self._request("/search/movie", params)
        results = [
            MetadataRecord(
                id=item["id"],
                media_type=MediaType.MOVIE,
                title=item.get("title", ""),
                original_title=item.get("original_title", ""),
                overview=item.get("overview") or "",
                release_date=item.get("release_date") or "",
                vote_average=item.get("vote_average", 0.0),
                popularity=item.get("popularity", 0.0),
            )
            for item in data.get("results", [])
        ]

        logger.info("tmdb_search_movie", query=query, year=year, results_count=len(results))
        return results

    async def search_tv(self, query: str, year: int | None = None) -> list[MetadataRecord]:
        """Search for TV shows by title.

        Args:
            query: TV show title to search for
            year: Optional first air year filter

        Returns:
            List of search results
        """
        params: dict[str, Any] = {"query": query}
        if year:
            params["first_air_date_year"] = year

        data = await self._request("/search/tv", params)
        results = [
            MetadataRecord(
                id=item["id"],
                media_type=MediaType.TV,
                title=item.get("name", ""),
                original_title=item.get("original_name", ""),
                overview=item.get("overview") or "",
                release_date=item.get("first_air_date") or "",
                vote_average=item.get("vote_average", 0.0),
                popularity=item.get("popularity", 0.0),
            )
            for item in data.get("results", [])
        ]

        logger.info("tmdb_search_tv", query=query, year=year, results_count=len(results))
        return results

    async def search_multi(self, query: str) -> list[MetadataRecord]:
        """Search for both movies and TV shows.

        People and other media types are skipped.

        Args:
            query: Search query

        Returns:
            List of movie and TV results in TMDB relevance order
        """
        data = await self._request("/search/multi", {"query": query, "include_adult": "false"})
        results = []

        for item in data.get("results", []):
            media_type = item.get("media_type")
            if media_type == MediaType.MOVIE.value:
                title = item.get("title", "")
                original = item.get("original_title", "")
                release_date = item.get("release_date") or ""
            elif media_type == MediaType.TV.value:
                title = item.get("name", "")
                original = item.get("original_name", "")
                release_date = item.get("first_air_date") or ""
            else:
                continue

            results.append(
                MetadataRecord(
                    id=item["id"],
                    media_type=MediaType(media_type),
                    title=title,
                    original_title=original,
                    overview=item.get("overview") or "",
                    release_date=release_date,
                    vote_average=item.get("vote_average", 0.0),
                    popularity=item.get("popularity", 0.0),
                )
            )

        logger.info("tmdb_search_multi", query=query, results_count=len(results))
        return results


# =============================================================================
# Metadata Enricher
# =============================================================================


def title_similarity(left: str, right: str) -> float:
    """Case-insensitive similarity ratio between two titles."""
    a = " ".join(left.lower().split())
    b = " ".join(right.lower().split())
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


class MetadataEnricher:
    """Best-effort metadata lookup and candidate scoring.

    Attributes:
        threshold: Confidence below which a match counts as "no match".
        timeout: Upper bound for one lookup, in seconds.
    """

    def __init__(self, client: TMDBClient, threshold: float = 0.6, timeout: float = REQUEST_TIMEOUT):
        self.client = client
        self.threshold = threshold
        self.timeout = timeout

    async def lookup(self, term: str, year: int | None = None) -> MetadataRecord | None:
        """Resolve a search term to canonical metadata.

        Movies are tried first, then TV shows. Any failure, including the
        timeout, is logged and reported as no metadata.

        Args:
            term: Free-text title.
            year: Optional year hint.

        Returns:
            Best matching record, or None.
        """
        try:
            async with asyncio.timeout(self.timeout):
                results = await self.client.search_movie(term, year=year)
                if not results:
                    results = await self.client.search_tv(term, year=year)
        except TimeoutError:
            logger.warning("metadata_lookup_timeout", term=term, timeout=self.timeout)
            return None
        except (MetadataError, NetworkError, ValidationError) as e:
            logger.warning("metadata_lookup_failed", term=term, error=str(e))
            return None

        if not results:
            logger.info("metadata_not_found", term=term, year=year)
            return None

        best = max(results, key=lambda r: self.record_score(term, year, r))
        if self.record_score(term, year, best) < self.threshold:
            logger.info("metadata_below_threshold", term=term, candidate=best.title)
            return None

        logger.info("metadata_resolved", term=term, title=best.title, year=best.get_year())
        return best

    def record_score(self, term: str, year: int | None, record: MetadataRecord) -> float:
        """Score a metadata record against the user's search term."""
        similarity = max(
            title_similarity(term, record.title),
            title_similarity(term, record.original_title),
        )
        return _adjust_for_year(similarity, year, record.get_year())

    def confidence(self, release_title: str, record: MetadataRecord | None) -> float:
        """Score how well a release title matches the resolved metadata.

        Args:
            release_title: Raw torrent title.
            record: Resolved metadata, or None.

        Returns:
            Confidence in [0, 1]; 0.0 when below the threshold or without metadata.
        """
        if record is None:
            return 0.0

        clean_title, release_year = parse_release_title(release_title)
        similarity = max(
            title_similarity(clean_title, record.title),
            title_similarity(clean_title, record.original_title),
        )
        score = _adjust_for_year(similarity, release_year, record.get_year())

        if score < self.threshold:
            return 0.0
        return score


def _adjust_for_year(similarity: float, year: int | None, expected: int | None) -> float:
    """Apply the year bonus or penalty and clamp to [0, 1]."""
    if year is not None and expected is not None:
        if year == expected:
            similarity += YEAR_MATCH_BONUS
        elif abs(year - expected) > 1:
            similarity -= YEAR_MISMATCH_PENALTY
    return min(max(similarity, 0.0), 1.0)
