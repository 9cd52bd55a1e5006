"""Tests for the playback controller."""

import asyncio
from pathlib import Path

import pytest
from conftest import FakeProcess, make_candidate, patch_exec

from torrentcast.errors import PlayerLaunchFailure
from torrentcast.streaming.player import (
    PLAYER_FLAGS,
    PlaybackController,
    PlaybackOutcome,
    PlaybackState,
    calculate_progress,
    supports_ipc,
)
from torrentcast.streaming.session import SessionState

STREAM_URL = "http://127.0.0.1:3030/torrents/0/stream/0"


@pytest.fixture
def controller(lifecycle):
    return PlaybackController(lifecycle, command="vlc", kill_grace=0.1)


# =============================================================================
# Tests for Helper Functions
# =============================================================================


class TestCalculateProgress:
    """Tests for calculate_progress function."""

    @pytest.mark.parametrize(
        "position,duration,expected",
        [
            (30.0, 120.0, 25.0),
            (150.0, 120.0, 100.0),
            (None, 120.0, 0.0),
            (30.0, None, 0.0),
            (30.0, 0.0, 0.0),
        ],
    )
    def test_calculate_progress(self, position, duration, expected):
        assert calculate_progress(position, duration) == expected


class TestSupportsIpc:
    """Tests for supports_ipc function."""

    def test_mpv(self):
        assert supports_ipc("mpv")
        assert supports_ipc("/usr/local/bin/mpv")

    def test_other_players(self):
        assert not supports_ipc("vlc")


class TestPlaybackOutcome:
    """Tests for PlaybackOutcome."""

    def test_clean(self):
        assert PlaybackOutcome(PlaybackState.EXITED, 0).clean
        assert not PlaybackOutcome(PlaybackState.EXITED, 2).clean
        assert not PlaybackOutcome(PlaybackState.KILLED, -15).clean


# =============================================================================
# Tests for PlaybackController
# =============================================================================


class TestBuildCommand:
    """Tests for argv construction."""

    def test_flags_then_args_then_url(self, lifecycle):
        controller = PlaybackController(lifecycle, command="mpv", args=["--fs"])
        command = controller.build_command(STREAM_URL, ipc_socket=Path("/tmp/mpv.sock"))

        assert command[0] == "mpv"
        assert command[1 : 1 + len(PLAYER_FLAGS)] == PLAYER_FLAGS
        assert command[-3:] == ["--fs", "--input-ipc-server=/tmp/mpv.sock", STREAM_URL]

    def test_without_ipc(self, controller):
        assert controller.build_command(STREAM_URL) == ["vlc", *PLAYER_FLAGS, STREAM_URL]


class TestLaunch:
    """Tests for PlaybackController.launch."""

    @pytest.mark.asyncio
    async def test_launch_registers_process(self, controller, lifecycle):
        process = FakeProcess()
        with patch_exec(process) as mock_exec:
            playback = await controller.launch(STREAM_URL, session_id="abc")

        assert playback.state == PlaybackState.RUNNING
        assert playback.pid == 4242
        assert playback.session_id == "abc"
        assert lifecycle.running_processes == 1
        assert mock_exec.call_args.args[-1] == STREAM_URL
        assert mock_exec.call_args.kwargs["stdin"] == asyncio.subprocess.DEVNULL

    @pytest.mark.asyncio
    async def test_mpv_gets_ipc_socket(self, lifecycle, tmp_path):
        controller = PlaybackController(lifecycle, command="mpv", ipc_dir=tmp_path)
        with patch_exec(FakeProcess()) as mock_exec:
            playback = await controller.launch(STREAM_URL)

        assert playback.ipc_socket.parent == tmp_path
        assert f"--input-ipc-server={playback.ipc_socket}" in mock_exec.call_args.args

    @pytest.mark.asyncio
    async def test_player_not_installed(self, controller, lifecycle):
        with patch_exec(side_effect=FileNotFoundError("vlc")):
            with pytest.raises(PlayerLaunchFailure, match="not found"):
                await controller.launch(STREAM_URL)
        assert lifecycle.running_processes == 0

    @pytest.mark.asyncio
    async def test_player_not_executable(self, controller):
        with patch_exec(side_effect=PermissionError("denied")):
            with pytest.raises(PlayerLaunchFailure, match="Failed to start"):
                await controller.launch(STREAM_URL)


class TestWait:
    """Tests for PlaybackController.wait."""

    @pytest.mark.asyncio
    async def test_clean_exit_releases_session(self, controller, manager, lifecycle):
        session = await manager.open(make_candidate())
        process = FakeProcess(exit_code=0, exit_after=0.01)
        with patch_exec(process):
            playback = await controller.launch(STREAM_URL, session_id=session.id)

        outcome = await controller.wait(playback)

        assert outcome.clean
        assert outcome.state == PlaybackState.EXITED
        assert process.terminate_calls == 0
        assert session.state == SessionState.STOPPED
        assert lifecycle.open_sessions == 0
        assert lifecycle.running_processes == 0

    @pytest.mark.asyncio
    async def test_signal_exit_is_killed(self, controller):
        with patch_exec(FakeProcess(exit_code=-11)):
            playback = await controller.launch(STREAM_URL)

        outcome = await controller.wait(playback)

        assert outcome.state == PlaybackState.KILLED
        assert outcome.return_code == -11

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, controller):
        with patch_exec(FakeProcess(exit_code=2)):
            playback = await controller.launch(STREAM_URL)

        outcome = await controller.wait(playback)

        assert outcome.state == PlaybackState.EXITED
        assert not outcome.clean

    @pytest.mark.asyncio
    async def test_exit_timeout_terminates_player(self, controller, manager, lifecycle):
        session = await manager.open(make_candidate())
        process = FakeProcess()
        with patch_exec(process):
            playback = await controller.launch(STREAM_URL, session_id=session.id)

        outcome = await controller.wait(playback, timeout=0.05)

        assert outcome.state == PlaybackState.KILLED
        assert process.terminate_calls == 1
        assert process.kill_calls == 0
        assert session.state == SessionState.STOPPED
        assert lifecycle.open_sessions == 0

    @pytest.mark.asyncio
    async def test_kill_after_grace(self, controller):
        process = FakeProcess(ignore_term=True)
        with patch_exec(process):
            playback = await controller.launch(STREAM_URL)

        outcome = await controller.wait(playback, timeout=0.05)

        assert process.kill_calls == 1
        assert outcome.return_code == -9
        assert outcome.state == PlaybackState.KILLED

    @pytest.mark.asyncio
    async def test_cancelled_wait_stops_everything(self, controller, manager, lifecycle):
        session = await manager.open(make_candidate())
        process = FakeProcess()
        with patch_exec(process):
            playback = await controller.launch(STREAM_URL, session_id=session.id)

        task = asyncio.create_task(controller.wait(playback))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert process.terminate_calls == 1
        assert lifecycle.running_processes == 0
        assert lifecycle.open_sessions == 0


class TestPlaybackPosition:
    """Tests for IPC position queries."""

    @pytest.mark.asyncio
    async def test_no_ipc_socket(self, controller):
        with patch_exec(FakeProcess()):
            playback = await controller.launch(STREAM_URL)
        assert await controller.playback_position(playback) is None

    @pytest.mark.asyncio
    async def test_socket_missing(self, lifecycle, tmp_path):
        controller = PlaybackController(lifecycle, command="mpv", ipc_dir=tmp_path)
        with patch_exec(FakeProcess()):
            playback = await controller.launch(STREAM_URL)
        assert await controller.playback_position(playback) is None
