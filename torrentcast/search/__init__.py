"""Search module for Torznab indexers.

This module provides the async Torznab client, Prowlarr indexer discovery,
release-title helpers, and the aggregator that merges and ranks results
from all indexers.
"""

from torrentcast.search.aggregator import (
    RankedList,
    SearchAggregator,
    SearchOutcome,
    merge_candidates,
    rank_candidates,
)
from torrentcast.search.prowlarr import ProwlarrClient, ProwlarrIndexer
from torrentcast.search.titles import (
    ReleaseValidation,
    detect_quality,
    extract_keywords,
    parse_episode,
    parse_release_title,
)
from torrentcast.search.torznab import (
    Indexer,
    IndexerCapabilities,
    ReleaseCandidate,
    SearchQuery,
    TorznabClient,
)

__all__ = [
    # Torznab
    "Indexer",
    "IndexerCapabilities",
    "ReleaseCandidate",
    "SearchQuery",
    "TorznabClient",
    # Prowlarr
    "ProwlarrClient",
    "ProwlarrIndexer",
    # Aggregation
    "RankedList",
    "SearchAggregator",
    "SearchOutcome",
    "merge_candidates",
    "rank_candidates",
    # Titles
    "ReleaseValidation",
    "detect_quality",
    "extract_keywords",
    "parse_episode",
    "parse_release_title",
]
