"""Playback Controller: launches and supervises the external player.

The player is pointed at the session's stream URL with a fixed set of
playback options. Whatever way the player exits, the session it was
playing is released.
"""

import asyncio
import contextlib
import json
import tempfile
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from torrentcast.errors import PlayerLaunchFailure
from torrentcast.streaming.lifecycle import ResourceLifecycleManager

logger = structlog.get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_PLAYER = "mpv"

# Applied to every launch, before user arguments
PLAYER_FLAGS = [
    "--force-seekable=yes",
    "--cache=yes",
    "--demuxer-max-bytes=150M",
    "--hwdec=auto",
]

# Timeouts in seconds
DEFAULT_EXIT_TIMEOUT = 6 * 3600.0
DEFAULT_KILL_GRACE = 3.0
IPC_TIMEOUT = 2.0


# ============================================================================
# Models
# ============================================================================


class PlaybackState(str, Enum):
    """State of a player process."""

    LAUNCHED = "launched"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


@dataclass(frozen=True)
class PlaybackOutcome:
    """How a player process ended."""

    state: PlaybackState
    return_code: int | None
    duration: float = 0.0

    @property
    def clean(self) -> bool:
        """Player exited on its own with status 0."""
        return self.state == PlaybackState.EXITED and self.return_code == 0


class PlaybackProcess:
    """A running external player.

    Only the session id is kept, never the session itself; the session is
    looked up through the lifecycle registry when it must be released.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: list[str],
        session_id: str | None = None,
        ipc_socket: Path | None = None,
    ):
        self.id = uuid.uuid4().hex[:12]
        self.process = process
        self.command = command
        self.session_id = session_id
        self.ipc_socket = ipc_socket
        self.state = PlaybackState.LAUNCHED
        self.return_code: int | None = None
        self.started_at = time.monotonic()

    def __repr__(self) -> str:
        return f"PlaybackProcess(id={self.id!r}, pid={self.pid}, state={self.state.value})"

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def mark_exited(self, return_code: int) -> None:
        """Record the exit status; negative codes mean a signal ended it."""
        self.return_code = return_code
        if self.state != PlaybackState.KILLED:
            self.state = PlaybackState.EXITED if return_code >= 0 else PlaybackState.KILLED

    async def terminate(self, grace: float = DEFAULT_KILL_GRACE) -> None:
        """Stop the player: SIGTERM, then SIGKILL after the grace period.

        Safe to call on a process that already exited.
        """
        if self.is_running:
            logger.info("player_terminating", pid=self.pid)
            self.state = PlaybackState.KILLED
            with contextlib.suppress(ProcessLookupError):
                self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace)
            except TimeoutError:
                logger.warning("player_kill", pid=self.pid, grace=grace)
                with contextlib.suppress(ProcessLookupError):
                    self.process.kill()
                await self.process.wait()

        if self.process.returncode is not None:
            self.mark_exited(self.process.returncode)

        if self.ipc_socket is not None:
            with contextlib.suppress(OSError):
                self.ipc_socket.unlink(missing_ok=True)

    def outcome(self) -> PlaybackOutcome:
        return PlaybackOutcome(state=self.state, return_code=self.return_code, duration=self.elapsed)


# ============================================================================
# Helper Functions
# ============================================================================


def calculate_progress(position: float | None, duration: float | None) -> float:
    """Percent of the video watched, clamped to [0, 100]."""
    if not position or not duration or duration <= 0:
        return 0.0
    return max(0.0, min(position / duration * 100.0, 100.0))


def supports_ipc(command: str) -> bool:
    """Check whether the player speaks mpv's JSON IPC protocol."""
    return Path(command).name.lower().startswith("mpv")


# ============================================================================
# Controller
# ============================================================================


class PlaybackController:
    """Launches the player and releases the session when it exits.

    Example:
        process = await controller.launch(url, session_id=session.id)
        outcome = await controller.wait(process)
    """

    def __init__(
        self,
        lifecycle: ResourceLifecycleManager,
        command: str = DEFAULT_PLAYER,
        args: list[str] | None = None,
        exit_timeout: float = DEFAULT_EXIT_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
        ipc_dir: Path | None = None,
    ):
        """Initialize the controller.

        Args:
            lifecycle: Lifecycle manager the process is registered with.
            command: Player executable.
            args: Extra user arguments, placed after the fixed flags.
            exit_timeout: Upper bound for a playback in seconds.
            kill_grace: Delay between SIGTERM and SIGKILL in seconds.
            ipc_dir: Directory for mpv IPC sockets.
        """
        self.lifecycle = lifecycle
        self.command = command
        self.args = list(args or [])
        self.exit_timeout = exit_timeout
        self.kill_grace = kill_grace
        self.ipc_dir = ipc_dir or Path(tempfile.gettempdir())

    def build_command(self, stream_url: str, ipc_socket: Path | None = None) -> list[str]:
        """Full argv: player, fixed flags, user args, IPC flag, then the URL."""
        command = [self.command, *PLAYER_FLAGS, *self.args]
        if ipc_socket is not None:
            command.append(f"--input-ipc-server={ipc_socket}")
        command.append(stream_url)
        return command

    async def launch(self, stream_url: str, session_id: str | None = None) -> PlaybackProcess:
        """Start the player on a stream URL.

        Args:
            stream_url: URL served by the torrent engine.
            session_id: Session being played, released when the player exits.

        Returns:
            The running process, registered with the lifecycle manager.

        Raises:
            PlayerLaunchFailure: If the player cannot be started.
        """
        ipc_socket = None
        if supports_ipc(self.command):
            ipc_socket = self.ipc_dir / f"torrentcast-mpv-{uuid.uuid4().hex[:8]}.sock"

        command = self.build_command(stream_url, ipc_socket)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise PlayerLaunchFailure(
                f"Player '{self.command}' not found. Install it or set TORRENTCAST_PLAYER_COMMAND."
            ) from e
        except OSError as e:
            raise PlayerLaunchFailure(f"Failed to start player '{self.command}': {e}") from e

        playback = PlaybackProcess(process, command, session_id=session_id, ipc_socket=ipc_socket)
        playback.state = PlaybackState.RUNNING
        self.lifecycle.register_process(playback)
        logger.info("player_launched", pid=playback.pid, player=self.command, session_id=session_id)
        return playback

    async def wait(self, playback: PlaybackProcess, timeout: float | None = None) -> PlaybackOutcome:
        """Wait for the player to exit, then release it and its session.

        On timeout or cancellation the player is terminated and reported as
        Killed.
        """
        timeout = timeout if timeout is not None else self.exit_timeout
        try:
            return_code = await asyncio.wait_for(playback.process.wait(), timeout=timeout)
            playback.mark_exited(return_code)
        except TimeoutError:
            logger.warning("player_exit_timeout", pid=playback.pid, timeout=timeout)
        finally:
            await asyncio.shield(self._release(playback))

        outcome = playback.outcome()
        logger.info(
            "player_exited",
            pid=playback.pid,
            state=outcome.state.value,
            return_code=outcome.return_code,
            duration=round(outcome.duration, 1),
        )
        return outcome

    async def _release(self, playback: PlaybackProcess) -> None:
        await self.lifecycle.release_process(playback.id)
        # Released directly if it was never registered
        await playback.terminate(grace=self.kill_grace)
        if playback.session_id is not None:
            await self.lifecycle.release_session(playback.session_id)

    async def playback_position(self, playback: PlaybackProcess) -> tuple[float, float] | None:
        """Read (position, duration) in seconds over the mpv IPC socket.

        Returns:
            Tuple, or None when the player does not answer.
        """
        if playback.ipc_socket is None or not playback.is_running:
            return None

        try:
            async with asyncio.timeout(IPC_TIMEOUT):
                reader, writer = await asyncio.open_unix_connection(str(playback.ipc_socket))
                try:
                    position = await _ipc_get_property(reader, writer, "time-pos", 1)
                    duration = await _ipc_get_property(reader, writer, "duration", 2)
                finally:
                    writer.close()
                    with contextlib.suppress(OSError):
                        await writer.wait_closed()
        except (OSError, TimeoutError, ValueError) as e:
            logger.debug("player_ipc_failed", pid=playback.pid, error=str(e))
            return None

        if position is None or duration is None:
            return None
        return position, duration


async def _ipc_get_property(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    name: str,
    request_id: int,
) -> float | None:
    """Send a get_property command and wait for its reply, skipping events."""
    payload = {"command": ["get_property", name], "request_id": request_id}
    writer.write(json.dumps(payload).encode() + b"\n")
    await writer.drain()

    while True:
        line = await reader.readline()
        if not line:
            return None
        message = json.loads(line)
        if message.get("request_id") != request_id:
            continue
        if message.get("error") != "success":
            return None
        data = message.get("data")
        return float(data) if isinstance(data, int | float) else None
