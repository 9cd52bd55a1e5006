"""Torrent engine interface and the rqbit HTTP implementation.

The engine does the actual BitTorrent work (peers, pieces, disk). This
module only tells it what to download and in which order, and reads back
progress. ``TorrentEngine`` is the seam the session manager depends on, so
tests can substitute an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import unquote, urljoin

import httpx
import structlog

from torrentcast.errors import TorrentError, TorrentStartFailure

logger = structlog.get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

VIDEO_EXTENSIONS = frozenset({"mp4", "mkv", "avi", "mov", "wmv", "flv", "webm", "m4v"})

DEFAULT_ENGINE_URL = "http://127.0.0.1:3030"

# Timeouts in seconds
REQUEST_TIMEOUT = 30.0
ADD_TIMEOUT = 60.0

# Redirect hops followed when fetching a .torrent file
MAX_REDIRECTS = 10


# ============================================================================
# Models
# ============================================================================


@dataclass(frozen=True)
class EngineHandle:
    """Engine-side identity of an added torrent."""

    id: str
    info_hash: str | None = None
    name: str = ""


@dataclass(frozen=True)
class TorrentFile:
    """One file inside a torrent.

    Attributes:
        index: Position in the torrent's file list (used by the stream URL).
        path: Path relative to the torrent root.
        length: Size in bytes.
    """

    index: int
    path: str
    length: int = 0

    @property
    def name(self) -> str:
        """File name without directories."""
        return PurePosixPath(self.path).name

    @property
    def extension(self) -> str:
        """Lower-case extension without the dot."""
        return PurePosixPath(self.path).suffix.lower().lstrip(".")

    @property
    def is_video(self) -> bool:
        """Check the extension against the video container allow-list."""
        return self.extension in VIDEO_EXTENSIONS


@dataclass(frozen=True)
class FileOrdering:
    """Download directive for a single file.

    Attributes:
        file_index: The only file to download.
        lead_bytes: Leading bytes that should arrive first; engines without
            prefix priority may ignore it.
    """

    file_index: int
    lead_bytes: int = 0


@dataclass(frozen=True)
class TorrentProgress:
    """Download progress snapshot reported by the engine."""

    downloaded: int = 0
    total: int = 0
    file_downloaded: tuple[int, ...] = ()
    peers: int = 0
    error: str | None = None

    @property
    def fraction(self) -> float:
        """Overall progress in [0, 1]."""
        if self.total <= 0:
            return 0.0
        return min(self.downloaded / self.total, 1.0)

    def bytes_for(self, file_index: int) -> int:
        """Downloaded bytes of a single file.

        Falls back to the overall count when the engine does not report
        per-file progress, which is accurate when only one file is selected.
        """
        if 0 <= file_index < len(self.file_downloaded):
            return self.file_downloaded[file_index]
        return self.downloaded


# ============================================================================
# Base Engine
# ============================================================================


class TorrentEngine(ABC):
    """Capability interface of the embedded torrent engine.

    Concrete implementations must implement:
    - add()
    - files()
    - set_priority()
    - progress()
    - remove()
    - stream_url()
    """

    @abstractmethod
    async def add(self, uri: str, output_dir: Path) -> EngineHandle:
        """Add a magnet URI or .torrent link.

        Raises:
            TorrentStartFailure: If the engine rejects the torrent.
        """

    @abstractmethod
    async def files(self, handle: EngineHandle) -> list[TorrentFile]:
        """List the torrent's files."""

    @abstractmethod
    async def set_priority(self, handle: EngineHandle, ordering: FileOrdering) -> None:
        """Restrict and order downloading according to the directive."""

    @abstractmethod
    async def progress(self, handle: EngineHandle) -> TorrentProgress:
        """Read current download progress."""

    @abstractmethod
    async def remove(self, handle: EngineHandle) -> None:
        """Stop the torrent and delete its downloaded data."""

    @abstractmethod
    def stream_url(self, handle: EngineHandle, file_index: int) -> str:
        """HTTP URL a player can read the file from."""


# ============================================================================
# rqbit Engine
# ============================================================================


class MagnetRedirect(Exception):
    """Internal signal: a .torrent link redirected to a magnet URI."""

    def __init__(self, magnet: str):
        self.magnet = magnet
        super().__init__(magnet)


class RqbitEngine(TorrentEngine):
    """Engine backed by an rqbit server's HTTP API.

    rqbit's stream endpoint prioritizes the pieces its reader is waiting on,
    so sequential ordering only needs the download restricted to the selected
    file.

    Example:
        async with RqbitEngine("http://127.0.0.1:3030") as engine:
            handle = await engine.add(magnet, Path("/tmp/torrentcast"))
    """

    def __init__(
        self,
        base_url: str = DEFAULT_ENGINE_URL,
        timeout: float = REQUEST_TIMEOUT,
        add_timeout: float = ADD_TIMEOUT,
    ):
        """Initialize the engine client.

        Args:
            base_url: rqbit HTTP API base URL.
            timeout: Timeout for status and control requests in seconds.
            add_timeout: Timeout for adding a torrent (includes metadata resolution).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.add_timeout = add_timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "RqbitEngine":
        """Enter async context."""
        self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=False)
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: Any,
    ) -> None:
        """Exit async context and close client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get HTTP client, raising if not in context."""
        if self._client is None:
            raise RuntimeError("RqbitEngine must be used as async context manager")
        return self._client

    async def ping(self) -> bool:
        """Check whether the engine API answers."""
        try:
            response = await self.client.get(f"{self.base_url}/torrents")
        except httpx.HTTPError as e:
            logger.debug("engine_ping_failed", error=str(e))
            return False
        return response.status_code == 200

    async def add(self, uri: str, output_dir: Path) -> EngineHandle:
        """Add a magnet or .torrent link to rqbit.

        Raises:
            TorrentStartFailure: If the link cannot be fetched or rqbit rejects it.
        """
        if uri.startswith("magnet:"):
            body: str | bytes = uri
        elif uri.startswith(("http://", "https://")):
            try:
                body = await self.fetch_torrent_file(uri)
            except MagnetRedirect as redirect:
                logger.info("torrent_link_redirected_to_magnet")
                body = redirect.magnet
        else:
            raise TorrentStartFailure(f"Unsupported torrent URI: {uri[:60]}")

        try:
            response = await self.client.post(
                f"{self.base_url}/torrents",
                params={"overwrite": "true", "output_folder": str(output_dir)},
                content=body,
                timeout=self.add_timeout,
            )
        except httpx.TimeoutException as e:
            raise TorrentStartFailure(f"Engine did not accept torrent within {self.add_timeout}s") from e
        except httpx.TransportError as e:
            raise TorrentStartFailure(f"Cannot connect to torrent engine: {e}") from e

        if response.status_code != 200:
            raise TorrentStartFailure(
                f"Engine rejected torrent (HTTP {response.status_code}): {response.text[:200]}"
            )

        try:
            data = response.json()
            details = data.get("details") or {}
            handle = EngineHandle(
                id=str(data["id"]),
                info_hash=details.get("info_hash"),
                name=details.get("name") or "",
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise TorrentStartFailure(f"Unexpected engine reply to add: {e!r}") from e
        logger.info("engine_torrent_added", torrent_id=handle.id, name=handle.name)
        return handle

    async def fetch_torrent_file(self, url: str) -> bytes:
        """Download a .torrent file, following redirects by hand.

        Indexer proxies answer some download links with a redirect to a
        magnet URI, which httpx cannot follow.

        Raises:
            MagnetRedirect: If a redirect points at a magnet URI.
            TorrentStartFailure: On HTTP errors or too many redirects.
        """
        current_url = url
        for _ in range(MAX_REDIRECTS + 1):
            try:
                response = await self.client.get(current_url)
            except httpx.HTTPError as e:
                raise TorrentStartFailure(f"Failed to fetch torrent file: {e}") from e

            if response.is_success:
                return response.content

            if not response.is_redirect:
                raise TorrentStartFailure(f"Torrent download failed: HTTP {response.status_code}")

            location = response.headers.get("location")
            if not location:
                raise TorrentStartFailure("Redirect without location header")

            decoded = unquote(location)
            if "magnet:" in decoded:
                raise MagnetRedirect(decoded[decoded.index("magnet:") :])

            current_url = urljoin(current_url, location)

        raise TorrentStartFailure("Too many redirects fetching torrent file")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a control request, mapping failures to TorrentError."""
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise TorrentError(f"Torrent engine request failed: {e}") from e

        if response.status_code != 200:
            raise TorrentError(f"Torrent engine error {response.status_code}: {response.text[:200]}")
        return response

    async def files(self, handle: EngineHandle) -> list[TorrentFile]:
        response = await self._request("GET", f"/torrents/{handle.id}")
        try:
            data = response.json()
            files = []
            for index, entry in enumerate(data.get("files") or []):
                components = entry.get("components")
                path = "/".join(components) if components else entry.get("name", "")
                files.append(TorrentFile(index=index, path=path, length=int(entry.get("length", 0))))
        except (ValueError, TypeError, AttributeError) as e:
            raise TorrentError(f"Unexpected engine file list for {handle.id}: {e!r}") from e
        return files

    async def set_priority(self, handle: EngineHandle, ordering: FileOrdering) -> None:
        """Download only the selected file.

        rqbit has no prefix-priority API; its stream reader fetches the pieces
        ahead of the read position, which covers ``lead_bytes`` once the
        player connects.
        """
        await self._request(
            "POST",
            f"/torrents/{handle.id}/update_only_files",
            json={"only_files": [ordering.file_index]},
        )
        logger.debug(
            "engine_priority_set",
            torrent_id=handle.id,
            file_index=ordering.file_index,
            lead_bytes=ordering.lead_bytes,
        )

    async def progress(self, handle: EngineHandle) -> TorrentProgress:
        response = await self._request("GET", f"/torrents/{handle.id}/stats/v1")
        try:
            data = response.json()

            peers = 0
            live = data.get("live") or {}
            peer_stats = (live.get("snapshot") or {}).get("peer_stats") or {}
            if isinstance(peer_stats, dict):
                peers = int(peer_stats.get("live", 0))

            return TorrentProgress(
                downloaded=int(data.get("progress_bytes", 0)),
                total=int(data.get("total_bytes", 0)),
                file_downloaded=tuple(int(b) for b in data.get("file_progress") or []),
                peers=peers,
                error=data.get("error"),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise TorrentError(f"Unexpected engine stats for {handle.id}: {e!r}") from e

    async def remove(self, handle: EngineHandle) -> None:
        """Delete the torrent and its files; an unknown id is not an error."""
        try:
            response = await self.client.post(f"{self.base_url}/torrents/{handle.id}/delete")
        except httpx.HTTPError as e:
            raise TorrentError(f"Failed to remove torrent {handle.id}: {e}") from e

        if response.status_code not in (200, 404):
            raise TorrentError(f"Failed to remove torrent {handle.id}: HTTP {response.status_code}")
        logger.debug("engine_torrent_removed", torrent_id=handle.id)

    def stream_url(self, handle: EngineHandle, file_index: int) -> str:
        return f"{self.base_url}/torrents/{handle.id}/stream/{file_index}"
