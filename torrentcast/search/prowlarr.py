"""Prowlarr client for indexer discovery.

Prowlarr proxies every configured indexer behind a Torznab endpoint at
<prowlarr>/<indexer-id>/api, so a single instance can feed the aggregator
with all of its torrent indexers.
"""

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from torrentcast.errors import IndexerAuthError, IndexerError, IndexerTimeoutError, NetworkError
from torrentcast.search.torznab import Indexer

logger = structlog.get_logger(__name__)

REQUEST_TIMEOUT = 15.0


class ProwlarrIndexer(BaseModel):
    """Indexer entry from the Prowlarr /api/v1/indexer listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    name: str
    enable: bool = False
    protocol: str = ""
    privacy: str = ""
    supports_search: bool = Field(default=False, alias="supportsSearch")

    @property
    def is_usable(self) -> bool:
        """Check if the indexer is an enabled torrent indexer with search."""
        return self.enable and self.protocol == "torrent" and self.supports_search


class ProwlarrClient:
    """Async client for the Prowlarr API.

    Example:
        async with ProwlarrClient(url, api_key) as client:
            indexers = await client.get_usable_indexers()
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = REQUEST_TIMEOUT):
        """Initialize Prowlarr client.

        Args:
            base_url: Prowlarr base URL.
            api_key: Prowlarr API key.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ProwlarrClient":
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"X-Api-Key": self._api_key, "Accept": "application/json"},
        )
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, raising if not in context."""
        if self._client is None:
            raise RuntimeError("ProwlarrClient must be used as async context manager")
        return self._client

    async def get_indexers(self) -> list[ProwlarrIndexer]:
        """List all indexers configured in Prowlarr.

        Raises:
            IndexerAuthError: If the API key is rejected.
            IndexerTimeoutError: If Prowlarr does not answer in time.
            NetworkError: If Prowlarr cannot be reached.
            IndexerError: For other failures.
        """
        url = f"{self.base_url}/api/v1/indexer"
        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            raise IndexerTimeoutError("Prowlarr request timed out", indexer="prowlarr") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Cannot connect to Prowlarr: {e}") from e

        if response.status_code in (401, 403):
            raise IndexerAuthError("Invalid Prowlarr API key", indexer="prowlarr")
        if response.status_code != 200:
            raise IndexerError(f"Prowlarr returned HTTP {response.status_code}", indexer="prowlarr")

        try:
            data = response.json()
            return [ProwlarrIndexer.model_validate(item) for item in data]
        except (ValueError, TypeError) as e:
            raise IndexerError(f"Invalid Prowlarr response: {e}", indexer="prowlarr") from e

    async def get_usable_indexers(self) -> list[Indexer]:
        """List enabled torrent indexers as Torznab endpoints.

        Returns:
            Indexers whose base URL is the Prowlarr Torznab proxy for each entry.
        """
        entries = await self.get_indexers()
        indexers = [
            Indexer(
                name=entry.name,
                base_url=f"{self.base_url}/{entry.id}",
                api_key=SecretStr(self._api_key),
            )
            for entry in entries
            if entry.is_usable
        ]
        logger.info("prowlarr_indexers_discovered", total=len(entries), usable=len(indexers))
        return indexers
