"""Exception hierarchy shared by the search and streaming layers.

Per-indexer and per-candidate failures are absorbed at the aggregator and
race boundaries; the rest surface to the caller after resources have been
released.
"""


class TorrentcastError(Exception):
    """Base exception for all torrentcast errors."""

    pass


# =============================================================================
# Search
# =============================================================================


class IndexerError(TorrentcastError):
    """Raised when an indexer request fails."""

    def __init__(self, message: str, indexer: str | None = None):
        self.indexer = indexer
        super().__init__(message)


class IndexerTimeoutError(IndexerError):
    """Raised when an indexer does not answer within its timeout."""

    pass


class IndexerAuthError(IndexerError):
    """Raised when an indexer rejects the API key."""

    pass


class IndexerParseError(IndexerError):
    """Raised for a malformed feed item.

    Item-level parse errors are logged and the item is skipped; they never
    fail the whole response.
    """

    pass


class NetworkError(TorrentcastError):
    """Transient network failure, eligible for a bounded retry."""

    pass


class MetadataError(TorrentcastError):
    """Raised when the metadata provider request fails."""

    pass


# =============================================================================
# Streaming
# =============================================================================


class TorrentError(TorrentcastError):
    """Base exception for torrent session failures."""

    pass


class TorrentStartFailure(TorrentError):
    """Raised when the engine rejects a torrent or it cannot start."""

    pass


class NoPlayableFile(TorrentError):
    """Raised when a torrent contains no video file."""

    pass


class NotReadyTimeout(TorrentError):
    """Raised when a session does not become ready within its timeout."""

    pass


class RaceExhausted(TorrentcastError):
    """Raised when every raced candidate failed or timed out."""

    def __init__(self, message: str, failures: dict[str, str] | None = None):
        self.failures = failures or {}
        super().__init__(message)


class PlayerLaunchFailure(TorrentcastError):
    """Raised when the external player cannot be started."""

    pass
