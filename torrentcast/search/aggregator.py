"""Search aggregation across Torznab indexers.

Fans a query out to every indexer concurrently, merges duplicate releases by
infohash, scores them against canonical metadata and ranks the result.
"""

import asyncio
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from torrentcast.errors import IndexerError, IndexerTimeoutError, NetworkError
from torrentcast.media.tmdb import MetadataEnricher, MetadataRecord
from torrentcast.search.torznab import (
    MAX_RETRIES,
    REQUEST_TIMEOUT,
    RETRY_BACKOFF,
    Indexer,
    IndexerCapabilities,
    ReleaseCandidate,
    SearchQuery,
    TorznabClient,
)

logger = structlog.get_logger(__name__)

# Ordered, immutable result of one search
RankedList = tuple[ReleaseCandidate, ...]

ClientFactory = Callable[[Indexer], TorznabClient]

# Share of the per-indexer timeout a first-time capabilities probe may use
CAPS_TIMEOUT_SHARE = 0.5


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class SearchOutcome:
    """Result of a fan-out search.

    An empty candidate list is the "no results" outcome; it is a normal
    return value, never an exception.

    Attributes:
        query: The query that produced this outcome.
        candidates: Merged and ranked candidates.
        warnings: One diagnostic line per failed indexer.
        failed_indexers: Names of the indexers that failed or timed out.
        metadata: Canonical metadata, when enrichment succeeded.
    """

    query: SearchQuery
    candidates: RankedList = ()
    warnings: tuple[str, ...] = ()
    failed_indexers: tuple[str, ...] = ()
    metadata: MetadataRecord | None = None

    @property
    def no_results(self) -> bool:
        """Check if the search produced nothing to choose from."""
        return not self.candidates

    def top(self, n: int) -> RankedList:
        """First n candidates in rank order."""
        return self.candidates[: max(n, 0)]


@dataclass
class _IndexerRun:
    """Per-indexer outcome collected before the merge."""

    indexer: Indexer
    candidates: list[ReleaseCandidate] = field(default_factory=list)
    error: BaseException | None = None


# =============================================================================
# Merge and Ranking
# =============================================================================


def merge_candidates(candidates: Iterable[ReleaseCandidate]) -> list[ReleaseCandidate]:
    """Merge candidates that describe the same release.

    Two candidates are the same release when their infohash matches (or
    their URI when no infohash is known). The merged entry keeps the maximum
    seeder and leecher counts, the union of reporting indexers, a magnet URI
    when any report had one, and the largest known size.

    Args:
        candidates: Candidates from all indexers, in any order.

    Returns:
        One candidate per release, in first-seen order.
    """
    merged: dict[str, ReleaseCandidate] = {}

    for candidate in candidates:
        key = candidate.dedup_key
        existing = merged.get(key)
        if existing is None:
            merged[key] = candidate
            continue

        uri = existing.uri
        if not existing.is_magnet and candidate.is_magnet:
            uri = candidate.uri

        indexers = existing.indexers + tuple(
            name for name in candidate.indexers if name not in existing.indexers
        )

        merged[key] = existing.model_copy(
            update={
                "seeders": max(existing.seeders, candidate.seeders),
                "leechers": max(existing.leechers, candidate.leechers),
                "size": max(existing.size, candidate.size),
                "uri": uri,
                "info_hash": existing.info_hash or candidate.info_hash,
                "indexers": indexers,
            }
        )

    return list(merged.values())


def rank_candidates(candidates: Iterable[ReleaseCandidate]) -> RankedList:
    """Order candidates by seeders desc, size asc, then confidence desc."""
    return tuple(sorted(candidates, key=lambda c: (-c.seeders, c.size, -c.confidence)))


def _describe_failure(name: str, error: BaseException) -> str:
    """Human-readable warning line for a failed indexer."""
    if isinstance(error, IndexerTimeoutError | TimeoutError):
        return f"{name}: timed out"
    return f"{name}: {error}" if str(error) else f"{name}: {type(error).__name__}"


# =============================================================================
# Aggregator
# =============================================================================


class SearchAggregator:
    """Concurrent search across a fixed set of indexers.

    Each indexer call runs under its own timeout and fails independently;
    failures become warnings on the outcome. Starting a new search cancels
    the one still in flight, whose caller receives ``asyncio.CancelledError``.

    Example:
        aggregator = SearchAggregator(indexers, enricher=enricher)
        outcome = await aggregator.search(SearchQuery(term="Dune", year=2021))
    """

    def __init__(
        self,
        indexers: Sequence[Indexer],
        enricher: MetadataEnricher | None = None,
        timeout: float = REQUEST_TIMEOUT,
        limit: int | None = None,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF,
        client_factory: ClientFactory | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            indexers: Indexers to query.
            enricher: Optional metadata enricher for confidence scoring.
            timeout: Per-indexer timeout in seconds, covering probe and search.
            limit: Result limit requested from indexers that support one.
            max_retries: Attempts for transient indexer failures.
            retry_backoff: Base delay between attempts in seconds.
            client_factory: Builds the client for an indexer.
        """
        self.indexers = tuple(indexers)
        self.enricher = enricher
        self.timeout = timeout
        self.limit = limit
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client_factory = client_factory or self._default_client
        self._capabilities: dict[str, IndexerCapabilities] = {}
        self._current: asyncio.Task[SearchOutcome] | None = None

    def _default_client(self, indexer: Indexer) -> TorznabClient:
        return TorznabClient(
            indexer,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_backoff=self.retry_backoff,
            limit=self.limit,
        )

    async def search(self, query: SearchQuery) -> SearchOutcome:
        """Search all indexers and return the ranked outcome.

        Args:
            query: Search term with optional year.

        Returns:
            SearchOutcome; check ``no_results`` for the empty case.
        """
        await self.cancel()

        task = asyncio.create_task(self._run(query))
        self._current = task
        try:
            return await task
        finally:
            if self._current is task:
                self._current = None

    async def cancel(self) -> None:
        """Cancel the in-flight search, if any, and wait for it to unwind."""
        task = self._current
        self._current = None
        if task is None or task.done():
            return

        logger.info("search_cancelled")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self, query: SearchQuery) -> SearchOutcome:
        logger.info(
            "aggregated_search_started",
            query=query.term,
            year=query.year,
            indexers=len(self.indexers),
        )

        if not self.indexers:
            logger.warning("no_indexers_configured")
            return SearchOutcome(query=query, warnings=("no indexers configured",))

        metadata_task: asyncio.Task[MetadataRecord | None] | None = None
        if self.enricher is not None:
            metadata_task = asyncio.create_task(self.enricher.lookup(query.term, query.year))

        try:
            runs = await asyncio.gather(
                *(self._search_indexer(indexer, query) for indexer in self.indexers)
            )
            metadata = await self._await_metadata(metadata_task)
        finally:
            if metadata_task and not metadata_task.done():
                metadata_task.cancel()

        warnings: list[str] = []
        failed: list[str] = []
        found: list[ReleaseCandidate] = []
        for run in runs:
            if run.error is not None:
                failed.append(run.indexer.name)
                warnings.append(_describe_failure(run.indexer.name, run.error))
            else:
                found.extend(run.candidates)

        merged = merge_candidates(found)
        if metadata is not None and self.enricher is not None:
            merged = [
                c.model_copy(update={"confidence": self.enricher.confidence(c.title, metadata)})
                for c in merged
            ]

        outcome = SearchOutcome(
            query=query,
            candidates=rank_candidates(merged),
            warnings=tuple(warnings),
            failed_indexers=tuple(failed),
            metadata=metadata,
        )

        if outcome.no_results:
            logger.warning(
                "aggregated_search_no_results",
                query=query.term,
                failed_indexers=len(failed),
            )
        else:
            logger.info(
                "aggregated_search_completed",
                query=query.term,
                raw_count=len(found),
                merged_count=len(outcome.candidates),
                failed_indexers=len(failed),
                metadata=metadata.title if metadata else None,
            )
        return outcome

    async def _search_indexer(self, indexer: Indexer, query: SearchQuery) -> _IndexerRun:
        """Probe (once) and search a single indexer, capturing any failure."""
        run = _IndexerRun(indexer=indexer)
        try:
            async with asyncio.timeout(self.timeout):
                async with self._client_factory(indexer) as client:
                    caps = await self._get_capabilities(client, indexer)
                    run.candidates = await client.search(query, caps)
        except (IndexerError, NetworkError, TimeoutError) as e:
            run.error = e
            logger.warning(
                "indexer_search_failed",
                indexer=indexer.name,
                error=str(e),
                error_type=type(e).__name__,
            )
        except Exception as e:
            run.error = e
            logger.exception("indexer_search_crashed", indexer=indexer.name, error=str(e))
        return run

    async def _get_capabilities(
        self, client: TorznabClient, indexer: Indexer
    ) -> IndexerCapabilities:
        """Return cached capabilities, probing the indexer on first use.

        A failed probe falls back to plain ``q`` searches and is retried on
        the next search.
        """
        cached = self._capabilities.get(indexer.base_url)
        if cached is not None:
            return cached

        try:
            caps = await asyncio.wait_for(
                client.capabilities(), timeout=self.timeout * CAPS_TIMEOUT_SHARE
            )
        except (IndexerError, NetworkError, TimeoutError) as e:
            logger.warning("indexer_caps_probe_failed", indexer=indexer.name, error=str(e))
            return IndexerCapabilities()

        self._capabilities[indexer.base_url] = caps
        return caps

    @staticmethod
    async def _await_metadata(
        task: "asyncio.Task[MetadataRecord | None] | None",
    ) -> MetadataRecord | None:
        """Result of the metadata lookup; any failure means no metadata."""
        if task is None:
            return None
        try:
            return await task
        except Exception as e:
            logger.warning("metadata_lookup_crashed", error=str(e), error_type=type(e).__name__)
            return None
