"""Shared fixtures: an in-memory torrent engine and candidate builders."""

import asyncio
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from torrentcast.errors import TorrentStartFailure
from torrentcast.search.torznab import ReleaseCandidate
from torrentcast.streaming.engine import (
    EngineHandle,
    FileOrdering,
    TorrentEngine,
    TorrentFile,
    TorrentProgress,
)
from torrentcast.streaming.lifecycle import ResourceLifecycleManager
from torrentcast.streaming.session import TorrentSessionManager

MIB = 1024 * 1024


def make_candidate(
    title: str = "Dune.2021.1080p.BluRay.x264",
    seeders: int = 10,
    size: int = 2_000 * MIB,
    info_hash: str | None = None,
    indexer: str = "alpha",
) -> ReleaseCandidate:
    info_hash = info_hash or hashlib.sha1(title.encode()).hexdigest()
    return ReleaseCandidate(
        title=title,
        seeders=seeders,
        size=size,
        uri=f"magnet:?xt=urn:btih:{info_hash}",
        info_hash=info_hash,
        indexers=(indexer,),
    )


@dataclass
class FakeTorrent:
    """Behaviour of one torrent in the fake engine.

    ready_after: progress polls until the whole file is reported; None never.
    """

    files: list[tuple[str, int]] = field(default_factory=lambda: [("Movie.2021.1080p.mkv", 50 * MIB)])
    ready_after: int | None = 1
    error: str | None = None
    add_error: str | None = None
    add_delay: float = 0.0


class FakeEngine(TorrentEngine):
    """In-memory engine; torrents are configured per URI."""

    def __init__(self) -> None:
        self.specs: dict[str, FakeTorrent] = {}
        self.handles: dict[str, EngineHandle] = {}
        self.polls: dict[str, int] = {}
        self.priorities: dict[str, FileOrdering] = {}
        self.removed: list[str] = []
        self._uris: dict[str, str] = {}
        self._next_id = 0

    def configure(self, candidate: ReleaseCandidate, **kwargs) -> FakeTorrent:
        spec = FakeTorrent(**kwargs)
        self.specs[candidate.uri] = spec
        return spec

    @property
    def open_handles(self) -> set[str]:
        return set(self.handles)

    def _spec(self, handle: EngineHandle) -> FakeTorrent:
        return self.specs.get(self._uris[handle.id], FakeTorrent())

    async def add(self, uri: str, output_dir: Path) -> EngineHandle:
        spec = self.specs.get(uri, FakeTorrent())
        if spec.add_delay:
            await asyncio.sleep(spec.add_delay)
        if spec.add_error:
            raise TorrentStartFailure(spec.add_error)

        handle = EngineHandle(id=str(self._next_id), name=uri)
        self._next_id += 1
        self.handles[handle.id] = handle
        self._uris[handle.id] = uri
        self.polls[handle.id] = 0
        return handle

    async def files(self, handle: EngineHandle) -> list[TorrentFile]:
        return [
            TorrentFile(index=i, path=path, length=length)
            for i, (path, length) in enumerate(self._spec(handle).files)
        ]

    async def set_priority(self, handle: EngineHandle, ordering: FileOrdering) -> None:
        self.priorities[handle.id] = ordering

    async def progress(self, handle: EngineHandle) -> TorrentProgress:
        spec = self._spec(handle)
        self.polls[handle.id] += 1
        if spec.error:
            return TorrentProgress(error=spec.error)

        lengths = [length for _, length in spec.files]
        total = sum(lengths)
        if spec.ready_after is not None and self.polls[handle.id] >= spec.ready_after:
            return TorrentProgress(downloaded=total, total=total, file_downloaded=tuple(lengths), peers=5)
        return TorrentProgress(downloaded=0, total=total, file_downloaded=tuple(0 for _ in lengths))

    async def remove(self, handle: EngineHandle) -> None:
        self.handles.pop(handle.id, None)
        self.removed.append(handle.id)

    def stream_url(self, handle: EngineHandle, file_index: int) -> str:
        return f"http://127.0.0.1:3030/torrents/{handle.id}/stream/{file_index}"



class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    exit_code: exits on its own with this code after exit_after seconds;
    None runs until terminated.
    """

    def __init__(self, exit_code: int | None = None, exit_after: float = 0.0, ignore_term: bool = False):
        self.pid = 4242
        self.returncode: int | None = None
        self.exit_code = exit_code
        self.exit_after = exit_after
        self.ignore_term = ignore_term
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()

    def _finish(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        if self.returncode is None and self.exit_code is not None:
            await asyncio.sleep(self.exit_after)
            self._finish(self.exit_code)
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_term:
            self._finish(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self._finish(-9)


def patch_exec(process=None, side_effect=None):
    """Patch player subprocess creation."""
    return patch(
        "torrentcast.streaming.player.asyncio.create_subprocess_exec",
        new=AsyncMock(return_value=process, side_effect=side_effect),
    )


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def lifecycle(tmp_path: Path) -> ResourceLifecycleManager:
    return ResourceLifecycleManager(temp_dir=tmp_path / "downloads", kill_grace=0.5)


@pytest.fixture
def manager(fake_engine: FakeEngine, lifecycle: ResourceLifecycleManager, tmp_path: Path) -> TorrentSessionManager:
    return TorrentSessionManager(
        fake_engine,
        lifecycle,
        temp_dir=tmp_path / "downloads",
        ready_min_bytes=10 * MIB,
        add_timeout=2.0,
        poll_interval=0.01,
    )
