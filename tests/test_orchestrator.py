"""Tests for the end-to-end streaming flow."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import FakeProcess, make_candidate, patch_exec

from torrentcast.config import Settings
from torrentcast.errors import NetworkError
from torrentcast.orchestrator import StreamOrchestrator, WatchStatus, resolve_indexers
from torrentcast.search.aggregator import SearchAggregator, SearchOutcome
from torrentcast.search.torznab import Indexer, SearchQuery
from torrentcast.streaming.player import PlaybackController
from torrentcast.streaming.race import RaceSelector

QUERY = SearchQuery(term="Dune", year=2021)


def _outcome(*candidates, warnings=()) -> SearchOutcome:
    return SearchOutcome(query=QUERY, candidates=tuple(candidates), warnings=tuple(warnings))


def _orchestrator(manager, lifecycle, outcome, width=3, **kwargs) -> StreamOrchestrator:
    aggregator = MagicMock(spec=SearchAggregator)
    aggregator.search = AsyncMock(return_value=outcome)
    aggregator.cancel = AsyncMock()
    return StreamOrchestrator(
        aggregator,
        manager,
        RaceSelector(manager, width=width, ready_timeout=1.0),
        PlaybackController(lifecycle, command="vlc", kill_grace=0.1),
        lifecycle,
        ready_timeout=1.0,
        **kwargs,
    )


class TestWatch:
    """Tests for StreamOrchestrator.watch."""

    @pytest.mark.asyncio
    async def test_race_and_play(self, manager, fake_engine, lifecycle):
        best = make_candidate("Dune.2021.1080p", seeders=90)
        other = make_candidate("Dune.2021.720p", seeders=40)
        fake_engine.configure(other, ready_after=None)
        orchestrator = _orchestrator(manager, lifecycle, _outcome(best, other))

        with patch_exec(FakeProcess(exit_code=0, exit_after=0.01)) as mock_exec:
            report = await orchestrator.watch(QUERY)

        assert report.ok
        assert report.status == WatchStatus.PLAYED
        assert report.title == "Dune.2021.1080p"
        assert report.playback.clean
        assert mock_exec.call_args.args[-1].startswith("http://127.0.0.1:3030/torrents/")
        assert fake_engine.open_handles == set()
        assert len(lifecycle.registry) == 0

    @pytest.mark.asyncio
    async def test_no_results(self, manager, fake_engine, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome(warnings=["alpha: timed out"]))

        with patch_exec(FakeProcess()) as mock_exec:
            report = await orchestrator.watch(QUERY)

        assert report.status == WatchStatus.NO_RESULTS
        assert report.warnings == ["alpha: timed out"]
        assert fake_engine.handles == {}
        assert fake_engine.removed == []
        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_race_exhausted(self, manager, fake_engine, lifecycle):
        a, b = make_candidate("A"), make_candidate("B")
        fake_engine.configure(a, add_error="bad torrent")
        fake_engine.configure(b, files=[("notes.txt", 10)])
        orchestrator = _orchestrator(manager, lifecycle, _outcome(a, b))

        with patch_exec(FakeProcess()) as mock_exec:
            report = await orchestrator.watch(QUERY)

        assert report.status == WatchStatus.RACE_EXHAUSTED
        assert any(w.startswith("A: ") for w in report.warnings)
        assert any(w.startswith("B: ") for w in report.warnings)
        assert report.search.candidates == (a, b)
        mock_exec.assert_not_called()
        assert len(lifecycle.registry) == 0

    @pytest.mark.asyncio
    async def test_manual_pick(self, manager, fake_engine, lifecycle):
        first, second = make_candidate("First"), make_candidate("Second")
        orchestrator = _orchestrator(manager, lifecycle, _outcome(first, second))

        with patch_exec(FakeProcess(exit_code=0)):
            report = await orchestrator.watch(QUERY, pick=1)

        assert report.title == "Second"
        assert fake_engine._next_id == 1

    @pytest.mark.asyncio
    async def test_pick_out_of_range(self, manager, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome(make_candidate()))

        report = await orchestrator.watch(QUERY, pick=4)

        assert report.status == WatchStatus.START_FAILED
        assert report.error == "No candidate at rank 5"

    @pytest.mark.asyncio
    async def test_racing_disabled_opens_best(self, manager, fake_engine, lifecycle):
        best, other = make_candidate("Best"), make_candidate("Other")
        orchestrator = _orchestrator(manager, lifecycle, _outcome(best, other), width=0)

        with patch_exec(FakeProcess(exit_code=0)):
            report = await orchestrator.watch(QUERY)

        assert report.title == "Best"
        assert fake_engine._next_id == 1

    @pytest.mark.asyncio
    async def test_manual_start_failure(self, manager, fake_engine, lifecycle):
        candidate = make_candidate()
        fake_engine.configure(candidate, ready_after=None)
        orchestrator = _orchestrator(manager, lifecycle, _outcome(candidate), width=0)

        report = await orchestrator.watch(QUERY)

        assert report.status == WatchStatus.START_FAILED
        assert "not ready" in report.error
        assert len(lifecycle.registry) == 0

    @pytest.mark.asyncio
    async def test_player_missing(self, manager, fake_engine, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome(make_candidate()))

        with patch_exec(side_effect=FileNotFoundError("vlc")):
            report = await orchestrator.watch(QUERY)

        assert report.status == WatchStatus.PLAYER_FAILED
        assert "not found" in report.error
        assert fake_engine.open_handles == set()
        assert lifecycle.open_sessions == 0

    @pytest.mark.asyncio
    async def test_startup_warnings_reported(self, manager, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome())
        orchestrator.startup_warnings = ["Prowlarr: connection refused"]

        report = await orchestrator.watch(QUERY)

        assert report.warnings == ["Prowlarr: connection refused"]

    @pytest.mark.asyncio
    async def test_progress_is_tracked(self, manager, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome(make_candidate()), progress_interval=0.01)
        orchestrator.player.playback_position = AsyncMock(return_value=(30.0, 120.0))

        with patch_exec(FakeProcess(exit_code=0, exit_after=0.1)):
            report = await orchestrator.watch(QUERY)

        assert report.watched_percent == 25.0

    @pytest.mark.asyncio
    async def test_cancelled_watch_releases_everything(self, manager, fake_engine, lifecycle):
        orchestrator = _orchestrator(manager, lifecycle, _outcome(make_candidate()))

        with patch_exec(FakeProcess()):
            task = asyncio.create_task(orchestrator.watch(QUERY))
            await asyncio.sleep(0.1)
            assert lifecycle.running_processes == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert fake_engine.open_handles == set()
        assert len(lifecycle.registry) == 0


class TestResolveIndexers:
    """Tests for resolve_indexers function."""

    @staticmethod
    def _settings(**kwargs) -> Settings:
        return Settings(
            indexers=[{"name": "alpha", "url": "https://alpha.example", "api_key": "a"}],
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_configured_only(self):
        indexers, warnings = await resolve_indexers(self._settings())

        assert [i.name for i in indexers] == ["alpha"]
        assert warnings == []

    @pytest.mark.asyncio
    async def test_prowlarr_discovery(self):
        discovered = [
            Indexer(name="alpha-dup", base_url="https://alpha.example", api_key="x"),
            Indexer(name="beta", base_url="http://prowlarr:9696/2", api_key="x"),
        ]
        with patch("torrentcast.orchestrator.ProwlarrClient") as mock_cls:
            client = mock_cls.return_value.__aenter__.return_value
            client.get_usable_indexers = AsyncMock(return_value=discovered)

            indexers, warnings = await resolve_indexers(
                self._settings(prowlarr_url="http://prowlarr:9696", prowlarr_api_key="key")
            )

        assert [i.name for i in indexers] == ["alpha", "beta"]
        assert warnings == []
        assert mock_cls.call_args.args == ("http://prowlarr:9696", "key")

    @pytest.mark.asyncio
    async def test_prowlarr_failure_is_warning(self):
        with patch("torrentcast.orchestrator.ProwlarrClient") as mock_cls:
            client = mock_cls.return_value.__aenter__.return_value
            client.get_usable_indexers = AsyncMock(side_effect=NetworkError("connection refused"))

            indexers, warnings = await resolve_indexers(
                self._settings(prowlarr_url="http://prowlarr:9696", prowlarr_api_key="key")
            )

        assert [i.name for i in indexers] == ["alpha"]
        assert warnings == ["Prowlarr: connection refused"]
