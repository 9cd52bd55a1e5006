"""Media metadata module.

Provides the TMDB client and the enricher that scores releases against
canonical titles. Enrichment is optional and best-effort.
"""

from torrentcast.media.tmdb import (
    MediaType,
    MetadataEnricher,
    MetadataRecord,
    TMDBAuthError,
    TMDBClient,
    TMDBError,
    TMDBNotFoundError,
    TMDBRateLimitError,
)

__all__ = [
    "MediaType",
    "MetadataEnricher",
    "MetadataRecord",
    "TMDBAuthError",
    "TMDBClient",
    "TMDBError",
    "TMDBNotFoundError",
    "TMDBRateLimitError",
]
