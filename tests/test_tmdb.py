"""Tests for the TMDB client and metadata enricher."""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

from torrentcast.errors import NetworkError
from torrentcast.media.tmdb import (
    MediaType,
    MetadataEnricher,
    MetadataRecord,
    SimpleCache,
    TMDBAuthError,
    TMDBClient,
    TMDBError,
    TMDBNotFoundError,
    TMDBRateLimitError,
    title_similarity,
)

# =============================================================================
# Sample API Responses
# =============================================================================

SAMPLE_MOVIE_SEARCH_RESPONSE = {
    "page": 1,
    "results": [
        {
            "id": 27205,
            "title": "Inception",
            "original_title": "Inception",
            "overview": "A skilled thief is given a chance at redemption.",
            "release_date": "2010-07-16",
            "vote_average": 8.4,
            "popularity": 100.5,
        },
        {
            "id": 27206,
            "title": "Inception: The Cobol Job",
            "original_title": "Inception: The Cobol Job",
            "overview": None,
            "release_date": "2010-12-07",
            "vote_average": 7.2,
            "popularity": 10.0,
        },
    ],
    "total_pages": 1,
    "total_results": 2,
}

SAMPLE_TV_SEARCH_RESPONSE = {
    "page": 1,
    "results": [
        {
            "id": 1396,
            "name": "Breaking Bad",
            "original_name": "Breaking Bad",
            "overview": "A high school chemistry teacher diagnosed with lung cancer.",
            "first_air_date": "2008-01-20",
            "vote_average": 9.5,
            "popularity": 200.0,
        },
    ],
}

SAMPLE_MULTI_SEARCH_RESPONSE = {
    "page": 1,
    "results": [
        {"id": 27205, "media_type": "movie", "title": "Inception", "release_date": "2010-07-16"},
        {"id": 525, "media_type": "person", "name": "Christopher Nolan"},
        {"id": 1396, "media_type": "tv", "name": "Breaking Bad", "first_air_date": "2008-01-20"},
    ],
}


def _record(title: str, release_date: str = "", original_title: str = "") -> MetadataRecord:
    return MetadataRecord(
        id=1,
        media_type=MediaType.MOVIE,
        title=title,
        original_title=original_title,
        release_date=release_date,
    )


# =============================================================================
# Tests for Data Models
# =============================================================================


class TestMetadataRecord:
    """Tests for MetadataRecord model."""

    def test_get_year(self):
        assert _record("Dune", "2021-09-15").get_year() == 2021

    def test_get_year_missing(self):
        assert _record("Dune").get_year() is None

    def test_get_year_invalid(self):
        assert _record("Dune", "unknown").get_year() is None


class TestSimpleCache:
    """Tests for SimpleCache."""

    def test_set_and_get(self):
        cache = SimpleCache(ttl=60)
        cache.set("key", {"a": 1})
        assert cache.get("key") == {"a": 1}

    def test_missing_key(self):
        assert SimpleCache().get("nope") is None

    def test_expired(self):
        cache = SimpleCache(ttl=1)
        cache.set("key", "value")
        with patch("torrentcast.media.tmdb.time.time", return_value=time.time() + 5):
            assert cache.get("key") is None

    def test_clear(self):
        cache = SimpleCache()
        cache.set("key", "value")
        cache.clear()
        assert cache.get("key") is None


# =============================================================================
# Tests for TMDBClient
# =============================================================================


class TestTMDBClient:
    """Tests for TMDBClient."""

    @pytest.fixture
    def mock_response(self):
        """Create a mock HTTP response."""

        def _create_response(data: dict | None = None, status_code: int = 200, headers=None):
            response = MagicMock(spec=httpx.Response)
            response.status_code = status_code
            response.json.return_value = data
            response.text = str(data) if data is not None else "Error"
            response.headers = headers or {}
            return response

        return _create_response

    @pytest.mark.asyncio
    async def test_client_context_manager(self):
        async with TMDBClient("test_key") as client:
            assert client._client is not None
        assert client._client is None

    def test_client_not_in_context(self):
        client = TMDBClient("test_key")
        with pytest.raises(RuntimeError, match="must be used as async context"):
            _ = client.client

    @pytest.mark.asyncio
    async def test_search_movie(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(SAMPLE_MOVIE_SEARCH_RESPONSE))

            results = await client.search_movie("Inception", year=2010)

            assert len(results) == 2
            assert results[0].title == "Inception"
            assert results[0].media_type == MediaType.MOVIE
            assert results[1].overview == ""
            params = client._client.get.call_args.kwargs["params"]
            assert params["year"] == 2010
            assert params["api_key"] == "test_key"

    @pytest.mark.asyncio
    async def test_search_tv(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(SAMPLE_TV_SEARCH_RESPONSE))

            results = await client.search_tv("Breaking Bad", year=2008)

            assert results[0].title == "Breaking Bad"
            assert results[0].media_type == MediaType.TV
            assert results[0].get_year() == 2008
            assert client._client.get.call_args.kwargs["params"]["first_air_date_year"] == 2008

    @pytest.mark.asyncio
    async def test_search_multi_skips_people(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(SAMPLE_MULTI_SEARCH_RESPONSE))

            results = await client.search_multi("nolan")

            assert [(r.title, r.media_type) for r in results] == [
                ("Inception", MediaType.MOVIE),
                ("Breaking Bad", MediaType.TV),
            ]

    @pytest.mark.asyncio
    async def test_responses_are_cached(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(SAMPLE_MOVIE_SEARCH_RESPONSE))

            await client.search_movie("Inception")
            await client.search_movie("Inception")

            assert client._client.get.call_count == 1

    @pytest.mark.asyncio
    async def test_auth_error(self, mock_response):
        async with TMDBClient("bad_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(status_code=401))

            with pytest.raises(TMDBAuthError, match="Invalid TMDB API key"):
                await client.search_movie("test")

    @pytest.mark.asyncio
    async def test_not_found_error(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(status_code=404))

            with pytest.raises(TMDBNotFoundError, match="Resource not found"):
                await client.search_movie("test")

    @pytest.mark.asyncio
    async def test_rate_limit_error(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(
                return_value=mock_response(status_code=429, headers={"Retry-After": "5"})
            )

            with pytest.raises(TMDBRateLimitError) as exc_info:
                await client.search_movie("test")

            assert exc_info.value.retry_after == 5

    @pytest.mark.asyncio
    async def test_server_error(self, mock_response):
        async with TMDBClient("test_key") as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=mock_response(status_code=500))

            with pytest.raises(TMDBError, match="TMDB API error 500"):
                await client.search_movie("test")

    @pytest.mark.asyncio
    async def test_invalid_json_is_tmdb_error(self, mock_response):
        async with TMDBClient("test_key") as client:
            response = mock_response()
            response.json.side_effect = ValueError("Expecting value: line 1 column 1")
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=response)

            with pytest.raises(TMDBError, match="Invalid JSON from TMDB"):
                await client.search_movie("test")

    @pytest.mark.asyncio
    async def test_non_object_body_is_tmdb_error(self, mock_response):
        async with TMDBClient("test_key") as client:
            response = mock_response()
            response.json.return_value = ["not", "an", "object"]
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(return_value=response)

            with pytest.raises(TMDBError, match="Unexpected TMDB response shape"):
                await client.search_tv("test")

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, mock_response):
        async with TMDBClient("test_key", retry_backoff=0) as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(
                side_effect=[httpx.ConnectError("refused"), mock_response(SAMPLE_TV_SEARCH_RESPONSE)]
            )

            results = await client.search_tv("Breaking Bad")

            assert len(results) == 1
            assert client._client.get.call_count == 2

    @pytest.mark.asyncio
    async def test_transport_error_exhausted(self):
        async with TMDBClient("test_key", max_retries=2, retry_backoff=0) as client:
            client._client = MagicMock(spec=httpx.AsyncClient)
            client._client.get = AsyncMock(side_effect=httpx.ReadTimeout("Timeout"))

            with pytest.raises(NetworkError, match="TMDB request failed"):
                await client.search_movie("test")
            assert client._client.get.call_count == 2


# =============================================================================
# Tests for MetadataEnricher
# =============================================================================


class TestTitleSimilarity:
    """Tests for title_similarity function."""

    def test_identical_ignoring_case_and_spaces(self):
        assert title_similarity("The  Matrix", "the matrix") == 1.0

    def test_empty(self):
        assert title_similarity("", "Dune") == 0.0

    def test_unrelated(self):
        assert title_similarity("Arrival", "Dune") < 0.5


class TestMetadataEnricher:
    """Tests for MetadataEnricher."""

    @pytest.fixture
    def tmdb(self):
        client = MagicMock(spec=TMDBClient)
        client.search_movie = AsyncMock(return_value=[])
        client.search_tv = AsyncMock(return_value=[])
        return client

    @pytest.mark.asyncio
    async def test_lookup_movie(self, tmdb):
        tmdb.search_movie.return_value = [
            _record("Inception: The Cobol Job", "2010-12-07"),
            _record("Inception", "2010-07-16"),
        ]

        record = await MetadataEnricher(tmdb).lookup("inception", 2010)

        assert record.title == "Inception"
        tmdb.search_tv.assert_not_called()

    @pytest.mark.asyncio
    async def test_lookup_falls_back_to_tv(self, tmdb):
        tmdb.search_tv.return_value = [_record("Breaking Bad", "2008-01-20")]

        record = await MetadataEnricher(tmdb).lookup("Breaking Bad")

        assert record.title == "Breaking Bad"
        tmdb.search_tv.assert_awaited_once_with("Breaking Bad", year=None)

    @pytest.mark.asyncio
    async def test_lookup_uses_original_title(self, tmdb):
        tmdb.search_movie.return_value = [_record("Le Fabuleux Destin", original_title="Amelie")]

        record = await MetadataEnricher(tmdb).lookup("Amelie")

        assert record is not None

    @pytest.mark.asyncio
    async def test_lookup_below_threshold(self, tmdb):
        tmdb.search_movie.return_value = [_record("Something Completely Different")]

        assert await MetadataEnricher(tmdb, threshold=0.6).lookup("Dune") is None

    @pytest.mark.asyncio
    async def test_lookup_not_found(self, tmdb):
        assert await MetadataEnricher(tmdb).lookup("zzzz") is None

    @pytest.mark.asyncio
    async def test_lookup_error_is_no_metadata(self, tmdb):
        tmdb.search_movie.side_effect = TMDBAuthError("Invalid TMDB API key")

        assert await MetadataEnricher(tmdb).lookup("Dune") is None

    @pytest.mark.asyncio
    async def test_lookup_invalid_reply_is_no_metadata(self, tmdb):
        tmdb.search_movie.side_effect = TMDBError("Invalid JSON from TMDB: Expecting value")

        assert await MetadataEnricher(tmdb).lookup("Dune") is None

    @pytest.mark.asyncio
    async def test_lookup_malformed_result_is_no_metadata(self, tmdb):
        with pytest.raises(ValidationError) as exc_info:
            MetadataRecord(id="not-a-number", media_type=MediaType.MOVIE, title="Dune")
        tmdb.search_movie.side_effect = exc_info.value

        assert await MetadataEnricher(tmdb).lookup("Dune") is None

    @pytest.mark.asyncio
    async def test_lookup_network_error_is_no_metadata(self, tmdb):
        tmdb.search_movie.side_effect = NetworkError("TMDB request failed")

        assert await MetadataEnricher(tmdb).lookup("Dune") is None

    @pytest.mark.asyncio
    async def test_lookup_timeout(self, tmdb):
        async def slow_search(*args, **kwargs):
            await asyncio.sleep(5)
            return [_record("Dune")]

        tmdb.search_movie.side_effect = slow_search

        assert await MetadataEnricher(tmdb, timeout=0.05).lookup("Dune") is None

    def test_confidence_exact_match(self, tmdb):
        enricher = MetadataEnricher(tmdb)
        assert enricher.confidence("Dune.2021.1080p.BluRay.x264", _record("Dune", "2021-09-15")) == 1.0

    def test_confidence_year_mismatch(self, tmdb):
        enricher = MetadataEnricher(tmdb)
        score = enricher.confidence("Dune.1984.720p", _record("Dune", "2021-09-15"))
        assert score == pytest.approx(0.8)

    def test_confidence_below_threshold(self, tmdb):
        enricher = MetadataEnricher(tmdb)
        assert enricher.confidence("Arrival.2016.1080p", _record("Dune", "2021-09-15")) == 0.0

    def test_confidence_without_record(self, tmdb):
        assert MetadataEnricher(tmdb).confidence("Dune.2021", None) == 0.0
