"""End-to-end streaming flow.

query -> aggregated search -> race or manual pick -> player -> release.
Every path out of ``watch`` goes through the lifecycle manager, so no
session or player process outlives the flow that created it.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

import structlog

from torrentcast.config import Settings, settings
from torrentcast.errors import (
    IndexerError,
    NetworkError,
    PlayerLaunchFailure,
    RaceExhausted,
    TorrentError,
)
from torrentcast.media.tmdb import MetadataEnricher, TMDBClient
from torrentcast.search.aggregator import SearchAggregator, SearchOutcome
from torrentcast.search.prowlarr import ProwlarrClient
from torrentcast.search.torznab import Indexer, SearchQuery
from torrentcast.streaming.engine import RqbitEngine
from torrentcast.streaming.lifecycle import ResourceLifecycleManager
from torrentcast.streaming.player import (
    PlaybackController,
    PlaybackOutcome,
    PlaybackProcess,
    calculate_progress,
)
from torrentcast.streaming.race import RaceSelector
from torrentcast.streaming.session import TorrentSession, TorrentSessionManager

logger = structlog.get_logger(__name__)

# Seconds between playback position polls
DEFAULT_PROGRESS_INTERVAL = 30.0


class WatchStatus(str, Enum):
    """How a watch flow ended."""

    PLAYED = "played"
    NO_RESULTS = "no_results"
    RACE_EXHAUSTED = "race_exhausted"
    START_FAILED = "start_failed"
    PLAYER_FAILED = "player_failed"


@dataclass
class WatchReport:
    """Summary of one watch flow for display."""

    status: WatchStatus
    search: SearchOutcome | None = None
    title: str | None = None
    playback: PlaybackOutcome | None = None
    watched_percent: float | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == WatchStatus.PLAYED


class StreamOrchestrator:
    """Composes search, selection, playback and cleanup."""

    def __init__(
        self,
        aggregator: SearchAggregator,
        manager: TorrentSessionManager,
        race_selector: RaceSelector,
        player: PlaybackController,
        lifecycle: ResourceLifecycleManager,
        ready_timeout: float,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    ):
        self.aggregator = aggregator
        self.manager = manager
        self.race_selector = race_selector
        self.player = player
        self.lifecycle = lifecycle
        self.ready_timeout = ready_timeout
        self.progress_interval = progress_interval
        self.watched_percent: float | None = None
        self.startup_warnings: list[str] = []
        self._race_task: asyncio.Task[TorrentSession] | None = None

    async def search(self, query: SearchQuery) -> SearchOutcome:
        """Run a fresh search, abandoning any race started for the last one."""
        await self._cancel_race()
        return await self.aggregator.search(query)

    async def choose(self, outcome: SearchOutcome, pick: int | None = None) -> TorrentSession:
        """Select a candidate and return its session in the Streaming state.

        Args:
            outcome: Result of the latest search.
            pick: Zero-based rank to open manually; None races the top candidates
                (or opens the best one when racing is disabled).

        Raises:
            RaceExhausted: If every raced candidate failed.
            TorrentError: If a manually picked candidate cannot be started.
            IndexError: If pick is out of range.
        """
        if pick is None and self.race_selector.enabled:
            await self._cancel_race()
            task = asyncio.create_task(
                self.race_selector.race(outcome.candidates, outcome.query, outcome.metadata)
            )
            self._race_task = task
            try:
                return await task
            finally:
                if self._race_task is task:
                    self._race_task = None

        rank = pick or 0
        if not 0 <= rank < len(outcome.candidates):
            raise IndexError(f"No candidate at rank {rank + 1}")
        candidate = outcome.candidates[rank]
        logger.info("manual_pick", title=candidate.title, rank=rank)
        session = await self.manager.open(candidate)
        await self.manager.await_ready(session, timeout=self.ready_timeout)
        self.manager.mark_streaming(session)
        return session

    async def play(self, session: TorrentSession) -> PlaybackOutcome:
        """Play a Streaming session until the player exits.

        The session is released when the player exits or fails to launch.

        Raises:
            PlayerLaunchFailure: If the player cannot be started.
        """
        url = self.manager.stream_url(session)
        try:
            process = await self.player.launch(url, session_id=session.id)
        except PlayerLaunchFailure:
            await self.manager.close(session, failed=True)
            raise

        self.watched_percent = None
        monitor = asyncio.create_task(self._monitor_progress(process))
        try:
            return await self.player.wait(process)
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

    async def _monitor_progress(self, process: PlaybackProcess) -> None:
        """Log the watched percentage while the player runs."""
        while process.is_running:
            await asyncio.sleep(self.progress_interval)
            position = await self.player.playback_position(process)
            if position is None:
                continue
            self.watched_percent = calculate_progress(*position)
            logger.info(
                "playback_progress",
                pid=process.pid,
                percent=round(self.watched_percent, 1),
                position=round(position[0]),
            )

    async def watch(self, query: SearchQuery, pick: int | None = None) -> WatchReport:
        """Search, select, and play; always releases everything it created."""
        async with self.lifecycle.scope():
            outcome = await self.search(query)
            warnings = list(self.startup_warnings) + list(outcome.warnings)

            if outcome.no_results:
                return WatchReport(status=WatchStatus.NO_RESULTS, search=outcome, warnings=warnings)

            try:
                session = await self.choose(outcome, pick)
            except RaceExhausted as e:
                warnings.extend(f"{title}: {reason}" for title, reason in e.failures.items())
                return WatchReport(
                    status=WatchStatus.RACE_EXHAUSTED,
                    search=outcome,
                    warnings=warnings,
                    error=str(e),
                )
            except (TorrentError, IndexError) as e:
                return WatchReport(
                    status=WatchStatus.START_FAILED,
                    search=outcome,
                    warnings=warnings,
                    error=str(e),
                )

            title = session.candidate.title
            try:
                playback = await self.play(session)
            except PlayerLaunchFailure as e:
                return WatchReport(
                    status=WatchStatus.PLAYER_FAILED,
                    search=outcome,
                    title=title,
                    warnings=warnings,
                    error=str(e),
                )

            return WatchReport(
                status=WatchStatus.PLAYED,
                search=outcome,
                title=title,
                playback=playback,
                watched_percent=self.watched_percent,
                warnings=warnings,
            )

    async def cancel(self) -> None:
        """Abandon in-flight work and release every resource."""
        await self.aggregator.cancel()
        await self._cancel_race()
        await self.lifecycle.release_all()

    async def _cancel_race(self) -> None:
        task, self._race_task = self._race_task, None
        if task is not None and not task.done():
            logger.info("race_cancelled")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


# =============================================================================
# Construction
# =============================================================================


async def resolve_indexers(config: Settings) -> tuple[list[Indexer], list[str]]:
    """Configured indexers plus any discovered through Prowlarr.

    Returns:
        Tuple of (indexers, warnings). Discovery failure is a warning.
    """
    indexers = [Indexer.from_config(entry) for entry in config.indexers]
    warnings: list[str] = []

    if config.prowlarr_url and config.prowlarr_api_key:
        try:
            async with ProwlarrClient(
                config.prowlarr_url,
                config.prowlarr_api_key.get_secret_value(),
                timeout=config.indexer_timeout,
            ) as prowlarr:
                discovered = await prowlarr.get_usable_indexers()
        except (IndexerError, NetworkError) as e:
            logger.warning("prowlarr_discovery_failed", error=str(e))
            warnings.append(f"Prowlarr: {e}")
        else:
            known = {i.base_url for i in indexers}
            indexers.extend(i for i in discovered if i.base_url not in known)

    return indexers, warnings


@asynccontextmanager
async def open_orchestrator(config: Settings = settings) -> AsyncIterator[StreamOrchestrator]:
    """Build an orchestrator from settings and tear it down afterwards.

    Example:
        async with open_orchestrator() as orchestrator:
            report = await orchestrator.watch(SearchQuery(term="Dune"))
    """
    async with AsyncExitStack() as stack:
        lifecycle = ResourceLifecycleManager(temp_dir=config.temp_dir, kill_grace=config.player_kill_grace)
        stack.push_async_callback(lifecycle.release_all)

        engine = await stack.enter_async_context(
            RqbitEngine(config.engine_url, timeout=config.engine_timeout, add_timeout=config.engine_add_timeout)
        )

        enricher = None
        if config.has_tmdb:
            tmdb = await stack.enter_async_context(
                TMDBClient(
                    config.tmdb_api_key.get_secret_value(),
                    timeout=config.metadata_timeout,
                    max_retries=config.network_max_retries,
                    retry_backoff=config.network_retry_backoff,
                )
            )
            enricher = MetadataEnricher(
                tmdb, threshold=config.metadata_match_threshold, timeout=config.metadata_timeout
            )

        indexers, warnings = await resolve_indexers(config)

        aggregator = SearchAggregator(
            indexers,
            enricher=enricher,
            timeout=config.indexer_timeout,
            limit=config.search_limit,
            max_retries=config.network_max_retries,
            retry_backoff=config.network_retry_backoff,
        )
        manager = TorrentSessionManager(
            engine,
            lifecycle,
            temp_dir=config.temp_dir,
            ready_min_bytes=config.ready_min_bytes,
            add_timeout=config.engine_add_timeout,
            poll_interval=config.ready_poll_interval,
        )
        race_selector = RaceSelector(manager, width=config.race_width, ready_timeout=config.ready_timeout)
        player = PlaybackController(
            lifecycle,
            command=config.player_command,
            args=config.player_args,
            exit_timeout=config.player_exit_timeout,
            kill_grace=config.player_kill_grace,
        )

        orchestrator = StreamOrchestrator(
            aggregator,
            manager,
            race_selector,
            player,
            lifecycle,
            ready_timeout=config.ready_timeout,
        )
        orchestrator.startup_warnings = warnings
        logger.info(
            "orchestrator_ready",
            indexers=len(indexers),
            metadata=enricher is not None,
            race_width=config.race_width,
        )
        yield orchestrator
