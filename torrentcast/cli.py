"""Command-line entry point.

Usage:
    torrentcast search "Dune" --year 2021
    torrentcast watch "Dune" --year 2021 [--pick 2] [--race 0]
    torrentcast doctor
"""

import argparse
import asyncio
import sys

import structlog

from torrentcast.config import Settings, settings
from torrentcast.doctor import CheckStatus, print_results, run_checks
from torrentcast.logger import configure_logging
from torrentcast.orchestrator import WatchReport, WatchStatus, open_orchestrator
from torrentcast.search.aggregator import SearchOutcome
from torrentcast.search.torznab import SearchQuery

logger = structlog.get_logger(__name__)

# Candidates shown by the search command
DEFAULT_SHOW = 20


def positive_int(value: str) -> int:
    """argparse type for 1-based ranks and counts."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be 1 or greater, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torrentcast",
        description="Search torrent indexers and stream the result to a media player",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    search = commands.add_parser("search", help="Search indexers and list ranked releases")
    search.add_argument("term", help="Title to search for")
    search.add_argument("--year", type=int, help="Release year hint")
    search.add_argument(
        "--show", type=positive_int, default=DEFAULT_SHOW, help=f"Number of results to list (default: {DEFAULT_SHOW})"
    )

    watch = commands.add_parser("watch", help="Search and stream the best release")
    watch.add_argument("term", help="Title to search for")
    watch.add_argument("--year", type=int, help="Release year hint")
    watch.add_argument("--pick", type=positive_int, help="Stream the release at this rank (1-based) instead of racing")
    watch.add_argument("--race", type=int, help="Override race width (0 disables racing)")

    commands.add_parser("doctor", help="Check configuration and external dependencies")
    return parser


def print_outcome(outcome: SearchOutcome, show: int = DEFAULT_SHOW) -> None:
    """Print ranked candidates and indexer warnings."""
    if outcome.metadata is not None:
        year = outcome.metadata.get_year()
        print(f"\n{outcome.metadata.title}" + (f" ({year})" if year else ""))
        if outcome.metadata.overview:
            print(f"  {outcome.metadata.overview[:200]}")

    for warning in outcome.warnings:
        print(f"  ! {warning}")

    if outcome.no_results:
        print(f"\nNo results for '{outcome.query.term}'. Try a different title or check `torrentcast doctor`.")
        return

    print()
    for rank, candidate in enumerate(outcome.top(show), start=1):
        print(f"{rank:>3}. {candidate.to_display_string()}")
    if len(outcome.candidates) > show:
        print(f"     ... {len(outcome.candidates) - show} more")


def print_report(report: WatchReport) -> None:
    for warning in report.warnings:
        print(f"  ! {warning}")

    if report.status == WatchStatus.NO_RESULTS and report.search is not None:
        print_outcome(report.search)
    elif report.status == WatchStatus.RACE_EXHAUSTED:
        print(f"\n{report.error}. Pick a release manually with --pick:")
        if report.search is not None:
            print_outcome(report.search, show=10)
    elif report.status == WatchStatus.START_FAILED:
        print(f"\nCould not start the torrent: {report.error}")
    elif report.status == WatchStatus.PLAYER_FAILED:
        print(f"\nPlayer failed: {report.error}")
    elif report.playback is not None:
        watched = f", {report.watched_percent:.0f}% watched" if report.watched_percent is not None else ""
        print(
            f"\nFinished {report.title} "
            f"({report.playback.state.value}, {report.playback.duration / 60:.0f} min{watched})"
        )


async def _search(config: Settings, args: argparse.Namespace) -> int:
    query = SearchQuery(term=args.term, year=args.year)
    async with open_orchestrator(config) as orchestrator:
        for warning in orchestrator.startup_warnings:
            print(f"  ! {warning}")
        outcome = await orchestrator.search(query)
    print_outcome(outcome, show=args.show)
    return 0 if not outcome.no_results else 1


async def _watch(config: Settings, args: argparse.Namespace) -> int:
    if args.race is not None:
        config = config.model_copy(update={"race_width": max(args.race, 0)})
    pick = args.pick - 1 if args.pick is not None else None

    query = SearchQuery(term=args.term, year=args.year)
    async with open_orchestrator(config) as orchestrator:
        print(f"Searching for '{query.term}'...")
        report = await orchestrator.watch(query, pick=pick)
    print_report(report)
    return 0 if report.ok else 1


async def _doctor(config: Settings) -> int:
    results = await run_checks(config)
    print_results(results)
    return 1 if any(r.status == CheckStatus.ERROR for r in results) else 0


async def run(args: argparse.Namespace, config: Settings = settings) -> int:
    if args.command == "search":
        return await _search(config, args)
    if args.command == "watch":
        return await _watch(config, args)
    return await _doctor(config)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    logger.info("cli_started", command=args.command)
    logger.debug("cli_config", **settings.get_safe_dict())

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
