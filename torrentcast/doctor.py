"""Environment health checks for the ``doctor`` command."""

import asyncio
import shutil
from dataclasses import dataclass
from enum import Enum

import structlog

from torrentcast.config import Settings, settings
from torrentcast.errors import IndexerError, MetadataError, NetworkError
from torrentcast.media.tmdb import TMDBClient
from torrentcast.search.prowlarr import ProwlarrClient
from torrentcast.search.torznab import Indexer, TorznabClient
from torrentcast.streaming.engine import RqbitEngine

logger = structlog.get_logger(__name__)


class CheckStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


_ICONS = {CheckStatus.OK: "✓", CheckStatus.WARNING: "⚠", CheckStatus.ERROR: "✗"}
_COLORS = {CheckStatus.OK: "\x1b[32m", CheckStatus.WARNING: "\x1b[33m", CheckStatus.ERROR: "\x1b[31m"}
_RESET = "\x1b[0m"


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    message: str

    @classmethod
    def ok(cls, name: str, message: str) -> "CheckResult":
        return cls(name, CheckStatus.OK, message)

    @classmethod
    def warning(cls, name: str, message: str) -> "CheckResult":
        return cls(name, CheckStatus.WARNING, message)

    @classmethod
    def error(cls, name: str, message: str) -> "CheckResult":
        return cls(name, CheckStatus.ERROR, message)


async def check_indexer(indexer: Indexer, timeout: float) -> CheckResult:
    """Probe an indexer's capabilities endpoint."""
    name = f"Indexer {indexer.name}"
    try:
        async with TorznabClient(indexer, timeout=timeout, max_retries=1) as client:
            caps = await client.capabilities()
    except (IndexerError, NetworkError) as e:
        return CheckResult.error(name, str(e))
    params = ", ".join(sorted(caps.search_params)) or "none"
    return CheckResult.ok(name, f"Reachable, search params: {params}")


async def check_prowlarr(config: Settings) -> CheckResult:
    if not (config.prowlarr_url and config.prowlarr_api_key):
        return CheckResult.warning("Prowlarr", "Not configured")
    try:
        async with ProwlarrClient(
            config.prowlarr_url, config.prowlarr_api_key.get_secret_value(), timeout=config.indexer_timeout
        ) as client:
            indexers = await client.get_usable_indexers()
    except (IndexerError, NetworkError) as e:
        return CheckResult.error("Prowlarr", f"Connection failed: {e}")

    if not indexers:
        return CheckResult.warning(
            "Prowlarr", "Connected but no usable indexers found. Add indexers in Prowlarr."
        )
    return CheckResult.ok("Prowlarr", f"Connected, {len(indexers)} indexers available")


async def check_tmdb(config: Settings) -> CheckResult:
    if config.tmdb_api_key is None:
        return CheckResult.warning("TMDB", "No API key configured. Metadata enrichment disabled.")
    try:
        async with TMDBClient(
            config.tmdb_api_key.get_secret_value(), timeout=config.metadata_timeout, max_retries=1
        ) as client:
            await client.search_multi("test")
    except (MetadataError, NetworkError) as e:
        return CheckResult.error("TMDB", f"API error: {e}")
    return CheckResult.ok("TMDB", "API key valid")


async def check_engine(config: Settings) -> CheckResult:
    async with RqbitEngine(config.engine_url, timeout=config.engine_timeout) as engine:
        reachable = await engine.ping()
    if not reachable:
        return CheckResult.error("Engine", f"Torrent engine not reachable at {config.engine_url}")
    return CheckResult.ok("Engine", f"rqbit API at {config.engine_url}")


def check_player(config: Settings) -> CheckResult:
    path = shutil.which(config.player_command)
    if path is None:
        return CheckResult.error("Player", f"'{config.player_command}' not found in PATH")
    return CheckResult.ok("Player", f"{config.player_command} found at {path}")


def check_storage(config: Settings) -> CheckResult:
    temp_dir = config.temp_dir
    created = not temp_dir.exists()
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
        probe = temp_dir / ".torrentcast_test"
        probe.write_text("test")
        probe.unlink()
    except OSError as e:
        return CheckResult.error("Storage", f"Temp dir not writable: {e}")

    if created:
        return CheckResult.ok("Storage", f"Created temp dir: {temp_dir}")
    return CheckResult.ok("Storage", f"Temp dir: {temp_dir}")


async def run_checks(config: Settings = settings) -> list[CheckResult]:
    """Run every check; network checks run concurrently."""
    network_checks = [check_indexer(Indexer.from_config(i), config.indexer_timeout) for i in config.indexers]
    if config.has_prowlarr:
        network_checks.append(check_prowlarr(config))
    network_checks += [check_tmdb(config), check_engine(config)]

    results = list(await asyncio.gather(*network_checks))
    if not config.indexers and not config.has_prowlarr:
        results.insert(0, CheckResult.error("Indexers", "No indexers or Prowlarr configured"))

    results.append(check_player(config))
    results.append(check_storage(config))

    logger.info(
        "doctor_completed",
        errors=sum(1 for r in results if r.status == CheckStatus.ERROR),
        warnings=sum(1 for r in results if r.status == CheckStatus.WARNING),
    )
    return results


def print_results(results: list[CheckResult]) -> None:
    print("\ntorrentcast doctor\n")
    for result in results:
        print(
            f"  {_COLORS[result.status]}{_ICONS[result.status]} {result.name}{_RESET}  {result.message}"
        )

    errors = sum(1 for r in results if r.status == CheckStatus.ERROR)
    warnings = sum(1 for r in results if r.status == CheckStatus.WARNING)
    print()
    if errors:
        print(f"  {errors} error(s), {warnings} warning(s)")
    elif warnings:
        print(f"  All good, {warnings} warning(s)")
    else:
        print("  All checks passed")
    print()
