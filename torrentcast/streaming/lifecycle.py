"""Resource lifecycle management.

Every torrent session and player process is registered here when created
and released here exactly once, whatever path the program takes out of the
flow that created it.
"""

import asyncio
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from torrentcast.streaming.player import PlaybackProcess
    from torrentcast.streaming.session import TorrentSession

logger = structlog.get_logger(__name__)

# Seconds a player gets to exit after SIGTERM before it is killed
DEFAULT_KILL_GRACE = 3.0


class ResourceRegistry:
    """Table of open sessions and running processes, keyed by id."""

    def __init__(self) -> None:
        self.sessions: dict[str, "TorrentSession"] = {}
        self.processes: dict[str, "PlaybackProcess"] = {}

    def __len__(self) -> int:
        return len(self.sessions) + len(self.processes)


class ResourceLifecycleManager:
    """Registers resources and releases them in a safe order.

    ``release_all`` terminates processes first, then closes sessions, then
    purges the temp directory. It is idempotent and never raises for a
    single resource failing to release.

    Example:
        lifecycle = ResourceLifecycleManager(temp_dir=settings.temp_dir)
        async with lifecycle.scope():
            session = await manager.open(candidate)
            ...
    """

    def __init__(
        self,
        registry: ResourceRegistry | None = None,
        temp_dir: Path | None = None,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ):
        self.registry = registry if registry is not None else ResourceRegistry()
        self.temp_dir = temp_dir
        self.kill_grace = kill_grace
        self._lock = asyncio.Lock()

    @property
    def open_sessions(self) -> int:
        return len(self.registry.sessions)

    @property
    def running_processes(self) -> int:
        return len(self.registry.processes)

    def register_session(self, session: "TorrentSession") -> None:
        self.registry.sessions[session.id] = session
        logger.debug("session_registered", session_id=session.id, open=self.open_sessions)

    def register_process(self, process: "PlaybackProcess") -> None:
        self.registry.processes[process.id] = process
        logger.debug("process_registered", process_id=process.id, pid=process.pid)

    async def release_session(self, session_id: str, failed: bool = False) -> None:
        """Close and unregister a session. Unknown ids are ignored."""
        session = self.registry.sessions.pop(session_id, None)
        if session is None:
            return
        await session.close(failed=failed)

    async def release_process(self, process_id: str) -> None:
        """Terminate and unregister a process. Unknown ids are ignored."""
        process = self.registry.processes.pop(process_id, None)
        if process is None:
            return
        await process.terminate(grace=self.kill_grace)

    async def release_all(self) -> None:
        """Release every registered resource.

        Order: processes, sessions, temp storage. Safe to call repeatedly.
        """
        async with self._lock:
            processes = len(self.registry.processes)
            sessions = len(self.registry.sessions)
            if processes or sessions:
                logger.info("releasing_resources", processes=processes, sessions=sessions)

            for process_id in list(self.registry.processes):
                try:
                    await self.release_process(process_id)
                except Exception as e:
                    logger.error("process_release_failed", process_id=process_id, error=str(e))

            for session_id in list(self.registry.sessions):
                try:
                    await self.release_session(session_id)
                except Exception as e:
                    logger.error("session_release_failed", session_id=session_id, error=str(e))

            await self._purge_temp_dir()

    async def _purge_temp_dir(self) -> None:
        if self.temp_dir is None or not self.temp_dir.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self.temp_dir)
            logger.debug("temp_dir_purged", path=str(self.temp_dir))
        except OSError as e:
            logger.error("temp_dir_purge_failed", path=str(self.temp_dir), error=str(e))

    @asynccontextmanager
    async def scope(self) -> AsyncIterator["ResourceLifecycleManager"]:
        """Release everything when the block exits, including on cancellation."""
        try:
            yield self
        finally:
            await asyncio.shield(self.release_all())
