"""Streaming module.

Drives the torrent engine for sequential playback, races candidates,
supervises the external player, and releases every resource afterwards.
"""

from torrentcast.streaming.engine import (
    EngineHandle,
    FileOrdering,
    RqbitEngine,
    TorrentEngine,
    TorrentFile,
    TorrentProgress,
)
from torrentcast.streaming.lifecycle import ResourceLifecycleManager, ResourceRegistry
from torrentcast.streaming.player import (
    PlaybackController,
    PlaybackOutcome,
    PlaybackProcess,
    PlaybackState,
    calculate_progress,
)
from torrentcast.streaming.race import RaceSelector
from torrentcast.streaming.session import SessionState, TorrentSession, TorrentSessionManager

__all__ = [
    # Engine
    "EngineHandle",
    "FileOrdering",
    "RqbitEngine",
    "TorrentEngine",
    "TorrentFile",
    "TorrentProgress",
    # Sessions
    "SessionState",
    "TorrentSession",
    "TorrentSessionManager",
    "RaceSelector",
    # Player
    "PlaybackController",
    "PlaybackOutcome",
    "PlaybackProcess",
    "PlaybackState",
    "calculate_progress",
    # Lifecycle
    "ResourceLifecycleManager",
    "ResourceRegistry",
]
