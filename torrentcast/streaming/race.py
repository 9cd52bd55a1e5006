"""Race Selector: open several candidates at once and keep the fastest.

Each attempt opens a session and waits for it to become ready. The first
ready session is promoted to Streaming; every other attempt is cancelled
and its session closed, including sessions that turn ready after the
winner was declared.
"""

import asyncio
from collections.abc import Sequence

import structlog

from torrentcast.errors import RaceExhausted, TorrentError
from torrentcast.media.tmdb import MetadataRecord
from torrentcast.search.titles import ReleaseValidation
from torrentcast.search.torznab import ReleaseCandidate, SearchQuery
from torrentcast.streaming.session import (
    DEFAULT_READY_TIMEOUT,
    TorrentSession,
    TorrentSessionManager,
)

logger = structlog.get_logger(__name__)

DEFAULT_RACE_WIDTH = 3


class ValidationMismatch(TorrentError):
    """Raised when a raced torrent does not look like what was searched."""

    pass


def build_validation(
    query: SearchQuery | None, metadata: MetadataRecord | None = None
) -> ReleaseValidation | None:
    """Validation criteria from the search term and canonical metadata."""
    if query is None:
        return None
    year = query.year
    title = None
    if metadata is not None:
        title = metadata.title
        year = year or metadata.get_year()
    return ReleaseValidation.from_texts(query.term, title, year=year)


class RaceSelector:
    """Races the top candidates and returns the first Streaming session.

    Attributes:
        width: Number of candidates raced at once; 0 disables racing.
        ready_timeout: Readiness timeout for each attempt.
    """

    def __init__(
        self,
        manager: TorrentSessionManager,
        width: int = DEFAULT_RACE_WIDTH,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
    ):
        self.manager = manager
        self.width = width
        self.ready_timeout = ready_timeout

    @property
    def enabled(self) -> bool:
        return self.width > 0

    async def race(
        self,
        candidates: Sequence[ReleaseCandidate],
        query: SearchQuery | None = None,
        metadata: MetadataRecord | None = None,
    ) -> TorrentSession:
        """Race up to ``width`` candidates.

        Args:
            candidates: Ranked candidates; only the first ``width`` are used.
            query: Search query, used to reject unrelated torrents.
            metadata: Canonical metadata, used the same way.

        Returns:
            The winning session, already in the Streaming state.

        Raises:
            RaceExhausted: If racing is disabled or every attempt failed.
        """
        if not self.enabled:
            raise RaceExhausted("Racing is disabled")

        contenders = list(candidates[: self.width])
        if not contenders:
            raise RaceExhausted("No candidates to race")

        validation = build_validation(query, metadata)
        logger.info(
            "race_started",
            width=len(contenders),
            titles=[c.title for c in contenders],
            validation=validation.keywords if validation else None,
        )

        tasks = {
            asyncio.create_task(self._attempt(candidate, validation)): candidate
            for candidate in contenders
        }
        pending: set[asyncio.Task[TorrentSession]] = set(tasks)
        failures: dict[str, str] = {}
        winner: TorrentSession | None = None

        try:
            while pending and winner is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    candidate = tasks[task]
                    if task.cancelled():
                        failures[candidate.title] = "cancelled"
                        continue
                    error = task.exception()
                    if error is not None:
                        if not isinstance(error, Exception):
                            raise error
                        failures[candidate.title] = str(error) or type(error).__name__
                        logger.warning(
                            "race_candidate_failed",
                            title=candidate.title,
                            error=str(error),
                            error_type=type(error).__name__,
                        )
                        continue

                    session = task.result()
                    if winner is None:
                        self.manager.mark_streaming(session)
                        winner = session
                        logger.info("race_winner", session_id=session.id, title=candidate.title)
                    else:
                        logger.info("race_late_ready_closed", session_id=session.id)
                        await self.manager.close(session)
        finally:
            await self._stop_losers(pending, winner)

        if winner is None:
            logger.warning("race_exhausted", attempts=len(contenders), failures=failures)
            raise RaceExhausted(
                f"All {len(contenders)} raced candidates failed", failures=failures
            )
        return winner

    async def _attempt(
        self, candidate: ReleaseCandidate, validation: ReleaseValidation | None
    ) -> TorrentSession:
        """Open one candidate and wait until it is ready."""
        session = await self.manager.open(candidate)

        if validation is not None and session.selected_file is not None:
            names = (session.selected_file.path, candidate.title)
            if not any(validation.matches(name) for name in names):
                await self.manager.close(session, failed=True)
                raise ValidationMismatch(
                    f"{session.selected_file.name} does not match the search"
                )

        await self.manager.await_ready(session, timeout=self.ready_timeout)
        return session

    async def _stop_losers(
        self, pending: set[asyncio.Task[TorrentSession]], winner: TorrentSession | None
    ) -> None:
        """Cancel unfinished attempts and close any session they still produced."""
        for task in pending:
            task.cancel()
        if not pending:
            return

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, TorrentSession) and result is not winner:
                logger.info("race_late_ready_closed", session_id=result.id)
                await self.manager.close(result)
