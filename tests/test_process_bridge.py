"""
Test suite for the ProcessBridge.

Most tests run the scripted fake CLI in ``tests/dummy_qodo.py`` as a real
subprocess; the rest patch ``asyncio.create_subprocess_exec``.
"""

import asyncio
import os
import signal
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from qodo_acp.errors import (
    ErrorProfile,
    ProcessExitError,
    ProcessSpawnError,
    SessionNotFoundError,
    TurnInProgressError,
)
from qodo_acp.process_bridge import INTERRUPT, ProcessBridge
from qodo_acp.settings import Settings


async def _wait_until_active(bridge: ProcessBridge, session_id: str, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not bridge.get_session(session_id).is_active:
        if loop.time() > deadline:
            raise AssertionError("process never became active")
        await asyncio.sleep(0.01)


async def _wait_for_output(chunks: List[str], text: str, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while text not in "".join(chunks):
        if loop.time() > deadline:
            raise AssertionError(f"never saw {text!r}")
        await asyncio.sleep(0.01)


class TestSessions:
    def test_empty_command_rejected(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            ProcessBridge([])

    def test_create_session_generates_id(self, bridge):
        session_id = bridge.create_session()

        session = bridge.get_session(session_id)
        assert session is not None
        assert session.is_active is False
        assert bridge.list_sessions() == [session_id]

    def test_create_session_honours_metadata_session_id(self, bridge):
        assert bridge.create_session({"sessionId": "chosen"}) == "chosen"
        assert bridge.create_session({"sessionId": 12}) != "12"

    def test_from_settings(self, dummy_command):
        settings = Settings(
            command=tuple(dummy_command),
            args=("--ci",),
            grace_period=2.5,
            tools_file=None,
            error_profile=ErrorProfile.ACP_BASIC,
        )

        bridge = ProcessBridge.from_settings(settings)

        assert bridge._command == dummy_command
        assert bridge._args == ["--ci"]
        assert bridge._grace_period == 2.5
        assert bridge._env_overrides == {"CI": "true", "NO_COLOR": "1", "TERM": "dumb"}


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_streams_output(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []

        result = await bridge.send_message(session_id, "echo hello world", chunks.append)

        assert "".join(chunks) == "hello world"
        assert result.returncode == 0
        assert result.has_output is True

    @pytest.mark.asyncio
    async def test_chunks_arrive_in_order(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []

        await bridge.send_message(session_id, "chunks", chunks.append)

        assert "".join(chunks) == "one\ntwo\nthree\n"
        assert len(chunks) >= 2

    @pytest.mark.asyncio
    async def test_prompt_is_last_argument_after_flags(self, dummy_command):
        bridge = ProcessBridge(dummy_command, args=("--ci", "-y"))
        session_id = bridge.create_session()
        chunks: List[str] = []

        await bridge.send_message(session_id, "args", chunks.append)

        assert "".join(chunks) == "--ci -y args"

    @pytest.mark.asyncio
    async def test_environment_overrides_are_set(self, bridge, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "0")
        monkeypatch.setenv("TERM", "xterm-256color")
        session_id = bridge.create_session()
        chunks: List[str] = []

        await bridge.send_message(session_id, "env", chunks.append)

        assert "".join(chunks) == "CI=true NO_COLOR=1 TERM=dumb"

    @pytest.mark.asyncio
    async def test_zero_exit_without_output_succeeds(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []

        result = await bridge.send_message(session_id, "silent", chunks.append)

        assert chunks == []
        assert result.returncode == 0
        assert result.has_output is False

    @pytest.mark.asyncio
    async def test_non_zero_exit_with_output_succeeds(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []

        result = await bridge.send_message(session_id, "partial", chunks.append)

        assert "".join(chunks) == "partial answer\n"
        assert result.returncode == 1

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_output_fails_with_stderr(self, bridge):
        session_id = bridge.create_session()

        with pytest.raises(ProcessExitError) as excinfo:
            await bridge.send_message(session_id, "fail", lambda chunk: None)

        assert excinfo.value.returncode == 3
        assert "boom: authentication required" in excinfo.value.stderr
        assert "exited with code 3" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_unknown_session_spawns_nothing(self, bridge):
        with patch("asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(SessionNotFoundError):
                await bridge.send_message("missing", "echo hi", lambda chunk: None)

        mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_state_cleared_after_exit(self, bridge):
        session_id = bridge.create_session()

        await bridge.send_message(session_id, "echo done", lambda chunk: None)

        session = bridge.get_session(session_id)
        assert session.is_active is False
        assert session.active_process is None

    @pytest.mark.asyncio
    async def test_session_state_cleared_after_failure(self, bridge):
        session_id = bridge.create_session()

        with pytest.raises(ProcessExitError):
            await bridge.send_message(session_id, "fail", lambda chunk: None)

        assert bridge.get_session(session_id).is_active is False

    @pytest.mark.asyncio
    async def test_session_is_active_while_running(self, bridge):
        session_id = bridge.create_session()
        seen: List[bool] = []

        def on_progress(chunk: str) -> None:
            seen.append(bridge.get_session(session_id).is_active)

        await bridge.send_message(session_id, "echo hi", on_progress)

        assert seen and all(seen)

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        bridge = ProcessBridge(["/nonexistent/qodo-binary"], args=())
        session_id = bridge.create_session()

        with pytest.raises(ProcessSpawnError, match="Failed to start"):
            await bridge.send_message(session_id, "hi", lambda chunk: None)

        assert bridge.get_session(session_id).is_active is False

    @pytest.mark.asyncio
    async def test_second_turn_is_rejected_while_running(self, bridge):
        session_id = bridge.create_session()
        first = asyncio.create_task(bridge.send_message(session_id, "hang", lambda chunk: None))
        await _wait_until_active(bridge, session_id)
        process = bridge.get_session(session_id).active_process

        with pytest.raises(TurnInProgressError):
            await bridge.send_message(session_id, "echo again", lambda chunk: None)

        assert bridge.get_session(session_id).active_process is process
        await bridge.cleanup()
        await asyncio.gather(first, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_callback_failure_kills_process(self, bridge):
        session_id = bridge.create_session()

        def on_progress(chunk: str) -> None:
            raise RuntimeError("client went away")

        with pytest.raises(RuntimeError, match="client went away"):
            await bridge.send_message(session_id, "hang", on_progress)

        assert bridge.get_session(session_id).is_active is False


class TestStopGeneration:
    @pytest.mark.asyncio
    async def test_unknown_session_is_noop(self, bridge):
        await bridge.stop_generation("missing")

    @pytest.mark.asyncio
    async def test_idle_session_is_noop(self, bridge):
        session_id = bridge.create_session()

        await bridge.stop_generation(session_id)

        assert bridge._kill_timers == {}

    @pytest.mark.asyncio
    async def test_interrupt_lets_process_exit_and_cancels_timer(self, bridge):
        bridge._grace_period = 5.0
        session_id = bridge.create_session()
        chunks: List[str] = []
        turn = asyncio.create_task(bridge.send_message(session_id, "interruptible", chunks.append))
        await _wait_until_active(bridge, session_id)

        await bridge.stop_generation(session_id)
        assert session_id in bridge._kill_timers
        timer = bridge._kill_timers[session_id]

        result = await asyncio.wait_for(turn, timeout=3)

        assert "interrupted" in "".join(chunks)
        assert result.returncode == 130
        assert timer.cancelled()
        assert session_id not in bridge._kill_timers

    @pytest.mark.asyncio
    async def test_process_ignoring_interrupt_is_killed(self, bridge):
        session_id = bridge.create_session()
        turn = asyncio.create_task(bridge.send_message(session_id, "hang", lambda chunk: None))
        await _wait_until_active(bridge, session_id)

        await bridge.stop_generation(session_id)
        result = await asyncio.wait_for(turn, timeout=5)

        # Output was produced before the kill, so the turn still resolves.
        assert result.has_output is True
        assert result.returncode != 0
        assert bridge.get_session(session_id).is_active is False

    @pytest.mark.asyncio
    async def test_stop_twice_is_safe(self, bridge):
        session_id = bridge.create_session()
        turn = asyncio.create_task(bridge.send_message(session_id, "hang", lambda chunk: None))
        await _wait_until_active(bridge, session_id)

        await bridge.stop_generation(session_id)
        timer = bridge._kill_timers[session_id]
        await bridge.stop_generation(session_id)

        assert bridge._kill_timers[session_id] is timer
        await asyncio.wait_for(turn, timeout=5)

    @pytest.mark.asyncio
    async def test_interrupt_byte_written_to_stdin(self, bridge):
        session_id = bridge.create_session()
        process = MagicMock()
        process.pid = 4242
        process.returncode = None
        process.stdin.write = MagicMock()
        process.stdin.drain = AsyncMock()
        bridge.get_session(session_id).attach(process)

        await bridge.stop_generation(session_id)

        process.stdin.write.assert_called_once_with(INTERRUPT)
        bridge._cancel_kill_timer(session_id)

    @pytest.mark.asyncio
    async def test_broken_stdin_still_arms_timer(self, bridge):
        session_id = bridge.create_session()
        process = MagicMock()
        process.pid = 4242
        process.returncode = None
        process.stdin.write = MagicMock(side_effect=BrokenPipeError())
        bridge.get_session(session_id).attach(process)

        await bridge.stop_generation(session_id)

        assert session_id in bridge._kill_timers
        bridge._cancel_kill_timer(session_id)


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_kills_active_processes_and_clears_registry(self, bridge):
        first = bridge.create_session()
        second = bridge.create_session()
        idle = bridge.create_session()
        turns = [
            asyncio.create_task(bridge.send_message(first, "hang", lambda chunk: None)),
            asyncio.create_task(bridge.send_message(second, "hang", lambda chunk: None)),
        ]
        await _wait_until_active(bridge, first)
        await _wait_until_active(bridge, second)
        processes = [bridge.get_session(s).active_process for s in (first, second)]

        await bridge.cleanup()

        assert all(process.returncode is not None for process in processes)
        assert bridge.list_sessions() == []
        assert bridge.get_session(idle) is None
        await asyncio.wait_for(asyncio.gather(*turns, return_exceptions=True), timeout=5)

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, bridge):
        bridge.create_session()

        await bridge.cleanup()
        await bridge.cleanup()

        assert bridge.list_sessions() == []

    @pytest.mark.asyncio
    async def test_cleanup_cancels_pending_kill_timers(self, bridge):
        session_id = bridge.create_session()
        turn = asyncio.create_task(bridge.send_message(session_id, "hang", lambda chunk: None))
        await _wait_until_active(bridge, session_id)
        await bridge.stop_generation(session_id)
        timer = bridge._kill_timers[session_id]

        await bridge.cleanup()

        assert timer.cancelled()
        await asyncio.wait_for(asyncio.gather(turn, return_exceptions=True), timeout=5)


class TestHelperProcesses:
    """The CLI may start helpers that inherit its stdout and outlive it."""

    @pytest.mark.asyncio
    async def test_stop_kills_helpers_holding_stdout(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []
        turn = asyncio.create_task(bridge.send_message(session_id, "helper", chunks.append))
        await _wait_for_output(chunks, "ready")

        await bridge.stop_generation(session_id)
        result = await asyncio.wait_for(turn, timeout=3)

        assert result.has_output is True
        assert bridge.get_session(session_id).is_active is False

    @pytest.mark.asyncio
    async def test_session_can_take_a_new_turn_after_stop(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []
        turn = asyncio.create_task(bridge.send_message(session_id, "helper", chunks.append))
        await _wait_for_output(chunks, "ready")
        await bridge.stop_generation(session_id)
        await asyncio.wait_for(turn, timeout=3)

        follow_up: List[str] = []
        await asyncio.wait_for(bridge.send_message(session_id, "echo next", follow_up.append), timeout=5)

        assert "".join(follow_up) == "next"

    @pytest.mark.asyncio
    async def test_turn_ends_when_cli_exits_despite_lingering_helper(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []

        result = await asyncio.wait_for(
            bridge.send_message(session_id, "lingering", chunks.append), timeout=5
        )

        assert "".join(chunks) == "done\n"
        assert result.returncode == 0
        assert bridge.get_session(session_id).is_active is False

    @pytest.mark.asyncio
    async def test_cleanup_kills_helpers(self, bridge):
        session_id = bridge.create_session()
        chunks: List[str] = []
        turn = asyncio.create_task(bridge.send_message(session_id, "helper", chunks.append))
        await _wait_for_output(chunks, "ready")

        await bridge.cleanup()

        await asyncio.wait_for(asyncio.gather(turn, return_exceptions=True), timeout=3)


class TestSpawnArguments:
    @patch("qodo_acp.process_bridge.os.killpg")
    @patch("asyncio.create_subprocess_exec")
    @pytest.mark.asyncio
    async def test_pipes_env_and_cwd(self, mock_exec, mock_killpg):
        process = MagicMock()
        process.pid = 4321
        process.stdout.read = AsyncMock(side_effect=[b"hi", b""])
        process.stderr = None
        process.wait = AsyncMock(return_value=0)
        process.returncode = 0
        mock_exec.return_value = process

        bridge = ProcessBridge(["qodo"], args=("--ci", "-y"))
        session_id = bridge.create_session()
        chunks: List[str] = []

        await bridge.send_message(session_id, "hello", chunks.append)

        args, kwargs = mock_exec.call_args
        assert args == ("qodo", "--ci", "-y", "hello")
        assert kwargs["stdin"] == asyncio.subprocess.PIPE
        assert kwargs["stdout"] == asyncio.subprocess.PIPE
        assert kwargs["stderr"] == asyncio.subprocess.PIPE
        assert kwargs["start_new_session"] is True
        assert kwargs["cwd"] == os.getcwd()
        assert kwargs["env"]["CI"] == "true"
        assert kwargs["env"]["PATH"] == os.environ["PATH"]
        assert chunks == ["hi"]
        # Leftover helpers in the CLI's process group are reaped on exit.
        mock_killpg.assert_called_once_with(4321, signal.SIGKILL)
