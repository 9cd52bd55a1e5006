"""torrentcast: search torrent indexers and stream a release straight to a media player."""

__version__ = "0.1.0"
