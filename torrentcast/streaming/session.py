"""Torrent sessions and the session manager.

A session wraps one engine handle from "add" through "ready to stream" to
teardown. The session alone removes its handle from the engine; everything
else closes it through the lifecycle manager.
"""

import asyncio
import uuid
from enum import Enum
from pathlib import Path

import structlog

from torrentcast.errors import NoPlayableFile, NotReadyTimeout, TorrentError, TorrentStartFailure
from torrentcast.search.titles import parse_episode
from torrentcast.search.torznab import ReleaseCandidate
from torrentcast.streaming.engine import (
    EngineHandle,
    FileOrdering,
    TorrentEngine,
    TorrentFile,
)
from torrentcast.streaming.lifecycle import ResourceLifecycleManager

logger = structlog.get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

# Leading bytes of the selected file that must be present before playback
DEFAULT_READY_MIN_BYTES = 10 * 1024 * 1024

# Timeouts in seconds
DEFAULT_ADD_TIMEOUT = 60.0
DEFAULT_READY_TIMEOUT = 90.0
DEFAULT_POLL_INTERVAL = 0.5


# ============================================================================
# Session
# ============================================================================


class SessionState(str, Enum):
    """Lifecycle state of a torrent session."""

    PENDING = "pending"
    ADDING = "adding"
    FETCHING = "fetching"
    READY = "ready"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PENDING: frozenset({SessionState.ADDING}),
    SessionState.ADDING: frozenset({SessionState.FETCHING}),
    SessionState.FETCHING: frozenset({SessionState.READY}),
    SessionState.READY: frozenset({SessionState.STREAMING}),
    SessionState.STREAMING: frozenset(),
    SessionState.STOPPED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def sort_video_files(files: list[TorrentFile]) -> list[TorrentFile]:
    """Order video files by season/episode, then path.

    Files without an episode marker sort after episodes.
    """

    def key(f: TorrentFile) -> tuple[int, int, int, str]:
        episode = parse_episode(f.name)
        if episode is None:
            return (1, 0, 0, f.path.lower())
        return (0, episode[0], episode[1], f.path.lower())

    return sorted((f for f in files if f.is_video), key=key)


class TorrentSession:
    """One candidate being fetched by the engine.

    Attributes:
        id: Session id, also used for lifecycle lookups.
        candidate: The release being streamed.
        state: Current lifecycle state.
        handle: Engine handle; None once closed.
        files: All files in the torrent.
        selected_file: Video file chosen for playback.
        stream_url: URL the player reads from.
        progress: Last-known overall download fraction.
        error: Failure reason, when the session failed.
    """

    def __init__(self, candidate: ReleaseCandidate, engine: TorrentEngine):
        self.id = uuid.uuid4().hex[:12]
        self.candidate = candidate
        self.state = SessionState.PENDING
        self.handle: EngineHandle | None = None
        self.files: list[TorrentFile] = []
        self.selected_file: TorrentFile | None = None
        self.stream_url: str | None = None
        self.progress = 0.0
        self.error: str | None = None
        self._engine = engine
        self._close_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f"TorrentSession(id={self.id!r}, title={self.candidate.title!r}, "
            f"state={self.state.value}, progress={self.progress:.1%})"
        )

    @property
    def video_files(self) -> list[TorrentFile]:
        """Playable files in episode order."""
        return sort_video_files(self.files)

    def transition(self, new_state: SessionState) -> None:
        """Move to a new state.

        Stopped and Failed are reachable from any non-terminal state.

        Raises:
            RuntimeError: If the transition is not allowed.
        """
        if self.state.is_terminal:
            raise RuntimeError(f"Session {self.id} is already {self.state.value}")
        if not new_state.is_terminal and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid session transition {self.state.value} -> {new_state.value}"
            )

        logger.debug(
            "session_state_changed",
            session_id=self.id,
            old_state=self.state.value,
            new_state=new_state.value,
        )
        self.state = new_state

    async def close(self, failed: bool = False) -> None:
        """Remove the engine handle and mark the session Stopped or Failed.

        Idempotent. Engine errors during removal are logged, not raised.
        """
        async with self._close_lock:
            handle, self.handle = self.handle, None
            if handle is not None:
                try:
                    await self._engine.remove(handle)
                except TorrentError as e:
                    logger.warning("session_remove_failed", session_id=self.id, error=str(e))

            if not self.state.is_terminal:
                self.transition(SessionState.FAILED if failed else SessionState.STOPPED)
                logger.info("session_closed", session_id=self.id, state=self.state.value)


# ============================================================================
# Session Manager
# ============================================================================


class TorrentSessionManager:
    """Opens sessions on the engine and tracks them until ready.

    Example:
        session = await manager.open(candidate)
        await manager.await_ready(session, timeout=90)
        url = manager.stream_url(session)
    """

    def __init__(
        self,
        engine: TorrentEngine,
        lifecycle: ResourceLifecycleManager,
        temp_dir: Path,
        ready_min_bytes: int = DEFAULT_READY_MIN_BYTES,
        add_timeout: float = DEFAULT_ADD_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the manager.

        Args:
            engine: Torrent engine implementation.
            lifecycle: Lifecycle manager that owns registration and release.
            temp_dir: Root directory for downloaded data.
            ready_min_bytes: Leading bytes required before a session is Ready.
            add_timeout: Upper bound for the engine to accept a torrent.
            poll_interval: Delay between readiness polls in seconds.
        """
        self.engine = engine
        self.lifecycle = lifecycle
        self.temp_dir = temp_dir
        self.ready_min_bytes = ready_min_bytes
        self.add_timeout = add_timeout
        self.poll_interval = poll_interval

    def ready_threshold(self, file: TorrentFile) -> int:
        """Bytes of the file needed to count as Ready."""
        if file.length <= 0:
            return self.ready_min_bytes
        return min(self.ready_min_bytes, file.length)

    async def open(self, candidate: ReleaseCandidate, file_index: int | None = None) -> TorrentSession:
        """Add a candidate to the engine and start fetching its video file.

        Args:
            candidate: Release to open.
            file_index: Specific file to play; defaults to the largest video file.

        Returns:
            Session in the Fetching state.

        Raises:
            TorrentStartFailure: If the engine rejects the torrent or times out.
            NoPlayableFile: If the torrent has no (matching) video file.
        """
        session = TorrentSession(candidate, self.engine)
        self.lifecycle.register_session(session)
        log = logger.bind(session_id=session.id, title=candidate.title)

        try:
            session.transition(SessionState.ADDING)
            output_dir = self.temp_dir / session.id
            try:
                session.handle = await asyncio.wait_for(
                    self.engine.add(candidate.uri, output_dir), timeout=self.add_timeout
                )
            except TimeoutError as e:
                raise TorrentStartFailure(
                    f"Engine did not accept torrent within {self.add_timeout}s"
                ) from e

            session.files = await self.engine.files(session.handle)
            session.selected_file = self._select_file(session, file_index)

            await self.engine.set_priority(
                session.handle,
                FileOrdering(
                    file_index=session.selected_file.index,
                    lead_bytes=self.ready_threshold(session.selected_file),
                ),
            )
            session.stream_url = self.engine.stream_url(session.handle, session.selected_file.index)
            session.transition(SessionState.FETCHING)
        except BaseException as e:
            cancelled = isinstance(e, asyncio.CancelledError)
            if not cancelled:
                session.error = str(e) or type(e).__name__
                log.warning("session_open_failed", error=session.error, error_type=type(e).__name__)
            await asyncio.shield(self.lifecycle.release_session(session.id, failed=not cancelled))
            raise

        log.info(
            "session_opened",
            file=session.selected_file.path,
            file_size=session.selected_file.length,
            video_files=len(session.video_files),
        )
        return session

    def _select_file(self, session: TorrentSession, file_index: int | None) -> TorrentFile:
        videos = session.video_files
        if not videos:
            raise NoPlayableFile(f"No video files in torrent: {session.candidate.title}")

        if file_index is None:
            return max(videos, key=lambda f: f.length)

        for video in videos:
            if video.index == file_index:
                return video
        raise NoPlayableFile(f"File {file_index} is not a playable video")

    async def await_ready(self, session: TorrentSession, timeout: float = DEFAULT_READY_TIMEOUT) -> None:
        """Poll the engine until the file's leading bytes are buffered.

        Raises:
            NotReadyTimeout: If the threshold is not met in time.
            TorrentStartFailure: If the engine reports an error for the torrent.
        """
        if session.state != SessionState.FETCHING or session.handle is None:
            raise TorrentError(f"Session {session.id} is not fetching ({session.state.value})")

        if session.selected_file is None:
            raise TorrentError(f"Session {session.id} has no selected file")
        file_index = session.selected_file.index
        threshold = self.ready_threshold(session.selected_file)

        try:
            async with asyncio.timeout(timeout):
                while True:
                    if session.handle is None:
                        raise TorrentError(f"Session {session.id} was closed")
                    progress = await self.engine.progress(session.handle)
                    session.progress = progress.fraction

                    if progress.error:
                        raise TorrentStartFailure(f"Engine error: {progress.error}")

                    if progress.bytes_for(file_index) >= threshold:
                        session.transition(SessionState.READY)
                        logger.info(
                            "session_ready",
                            session_id=session.id,
                            buffered=progress.bytes_for(file_index),
                            peers=progress.peers,
                        )
                        return

                    await asyncio.sleep(self.poll_interval)
        except TimeoutError as e:
            session.error = f"not ready within {timeout}s"
            logger.warning("session_not_ready", session_id=session.id, timeout=timeout)
            await asyncio.shield(self.lifecycle.release_session(session.id, failed=True))
            raise NotReadyTimeout(f"{session.candidate.title}: not ready within {timeout}s") from e
        except BaseException as e:
            cancelled = isinstance(e, asyncio.CancelledError)
            if not cancelled:
                session.error = str(e) or type(e).__name__
            await asyncio.shield(self.lifecycle.release_session(session.id, failed=not cancelled))
            raise

    def stream_url(self, session: TorrentSession) -> str:
        """Stream URL of a Ready or Streaming session.

        Raises:
            TorrentError: If the session is not ready.
        """
        if session.state not in (SessionState.READY, SessionState.STREAMING) or not session.stream_url:
            raise TorrentError(f"Session {session.id} is not ready ({session.state.value})")
        return session.stream_url

    def mark_streaming(self, session: TorrentSession) -> None:
        """Promote a Ready session to Streaming."""
        session.transition(SessionState.STREAMING)

    async def close(self, session: TorrentSession, failed: bool = False) -> None:
        """Release the session through the lifecycle manager."""
        await self.lifecycle.release_session(session.id, failed=failed)
