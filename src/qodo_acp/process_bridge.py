from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from asyncio import StreamReader
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import ProcessExitError, ProcessSpawnError, TurnInProgressError
from .session_registry import Session, SessionRegistry
from .settings import (
    DEFAULT_GRACE_PERIOD,
    NON_INTERACTIVE_ENV,
    Settings,
)

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[str], None]

INTERRUPT = b"\x03"
READ_CHUNK_SIZE = 64 * 1024
CLEANUP_WAIT = 2.0


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one completed CLI run."""

    returncode: Optional[int]
    has_output: bool
    stderr: str


class ProcessBridge:
    """Run one Qodo CLI process per session turn and stream its output."""

    def __init__(
        self,
        command: Sequence[str] = ("qodo",),
        *,
        args: Sequence[str] = ("--ci", "-y"),
        grace_period: float = DEFAULT_GRACE_PERIOD,
        env_overrides: Optional[Mapping[str, str]] = None,
        registry: Optional[SessionRegistry] = None,
        log: logging.Logger | None = None,
    ) -> None:
        if not command:
            raise ValueError("Qodo command cannot be empty")
        self._command = list(command)
        self._args = list(args)
        self._grace_period = grace_period
        self._env_overrides = dict(NON_INTERACTIVE_ENV if env_overrides is None else env_overrides)
        self._registry = registry or SessionRegistry()
        self._logger = log or logger.getChild("ProcessBridge")
        self._kill_timers: Dict[str, asyncio.TimerHandle] = {}
        # Sessions between the turn check and the process being attached.
        self._starting: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ProcessBridge":
        return cls(
            settings.command,
            args=settings.args,
            grace_period=settings.grace_period,
            env_overrides=settings.env_overrides,
            **kwargs,
        )

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def create_session(self, metadata: Optional[Mapping[str, Any]] = None) -> str:
        """Register a session; the process is only spawned on its first turn."""
        requested = (metadata or {}).get("sessionId")
        session_id = requested if isinstance(requested, str) and requested else None
        session = self._registry.create(session_id)
        self._logger.debug("Created session", extra={"session_id": session.id})
        return session.id

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        return self._registry.get(session_id)

    def list_sessions(self) -> List[str]:
        return self._registry.ids()

    def _build_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self._env_overrides)
        return env

    async def send_message(
        self,
        session_id: str,
        message: str,
        on_progress: ProgressHandler,
    ) -> TurnResult:
        """Run the CLI once against ``message``, forwarding stdout chunks as they arrive.

        The turn succeeds when the process exits with status zero or produced any
        output at all; exit codes are not reliable once output has been streamed.
        """
        session = self._registry.require(session_id)
        if session.is_active or session_id in self._starting:
            raise TurnInProgressError(session_id)

        argv = [*self._command, *self._args, message]
        self._logger.debug(
            "Starting qodo process",
            extra={"session_id": session_id, "command": self._command, "message_length": len(message)},
        )

        self._starting.add(session_id)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=os.getcwd(),
                start_new_session=True,
            )
        except OSError as exc:
            self._logger.error(
                "Failed to start qodo process",
                extra={"session_id": session_id, "error": str(exc)},
            )
            raise ProcessSpawnError(f"Failed to start {self._command[0]}: {exc}") from exc
        finally:
            self._starting.discard(session_id)

        session.attach(process)
        self._logger.info("Qodo process started", extra={"session_id": session_id, "pid": process.pid})

        stderr_buffer: List[str] = []
        stderr_task: Optional[asyncio.Task[None]] = None
        if process.stderr is not None:
            stderr_task = asyncio.create_task(
                self._collect_stderr(process.stderr, stderr_buffer, session_id)
            )

        has_output = False

        async def pump_stdout() -> None:
            nonlocal has_output
            assert process.stdout is not None
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                data = await process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                has_output = True
                text = decoder.decode(data)
                if text:
                    on_progress(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                on_progress(tail)

        stdout_task = asyncio.create_task(pump_stdout())
        wait_task = asyncio.create_task(process.wait())
        try:
            done, _ = await asyncio.wait(
                {stdout_task, wait_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if stdout_task in done:
                # Surfaces a failing progress callback before the process exits.
                stdout_task.result()
            returncode = await wait_task
            session.detach()
            self._cancel_kill_timer(session_id)

            # Helpers started by the CLI may still hold its stdout open.
            self._kill(process, session_id)
            try:
                await asyncio.wait_for(stdout_task, timeout=CLEANUP_WAIT)
            except asyncio.TimeoutError:
                self._logger.warning(
                    "Qodo output did not close after exit", extra={"session_id": session_id}
                )
            if stderr_task is not None:
                await asyncio.wait({stderr_task}, timeout=CLEANUP_WAIT)
        except BaseException:
            self._kill(process, session_id)
            with suppress(Exception):
                await asyncio.wait_for(asyncio.shield(wait_task), timeout=CLEANUP_WAIT)
            raise
        finally:
            for task in (stdout_task, wait_task, stderr_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(task for task in (stdout_task, wait_task, stderr_task) if task is not None),
                return_exceptions=True,
            )
            self._cancel_kill_timer(session_id)
            if session.active_process is process:
                session.detach()

        stderr = "".join(stderr_buffer)
        self._logger.info(
            "Qodo process exited",
            extra={"session_id": session_id, "returncode": returncode, "has_output": has_output},
        )

        if returncode == 0 or has_output:
            return TurnResult(returncode=returncode, has_output=has_output, stderr=stderr)
        raise ProcessExitError(returncode, stderr)

    async def _collect_stderr(self, stream: StreamReader, buffer: List[str], session_id: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                buffer.append(text)
                if text.strip():
                    self._logger.debug(
                        "Qodo stderr output", extra={"session_id": session_id, "stderr": text}
                    )
            buffer.append(decoder.decode(b"", final=True))
        except asyncio.CancelledError:
            self._logger.debug("Stderr collection cancelled", extra={"session_id": session_id})
            raise
        except Exception:  # pragma: no cover - best effort logging
            self._logger.exception("Error collecting qodo stderr")

    async def stop_generation(self, session_id: str) -> None:
        """Interrupt the running turn, escalating to a kill after the grace period."""
        session = self._registry.get(session_id)
        if session is None or session.active_process is None:
            return

        process = session.active_process
        self._logger.info("Stopping generation", extra={"session_id": session_id, "pid": process.pid})

        if process.stdin is not None:
            try:
                process.stdin.write(INTERRUPT)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
                self._logger.debug(
                    "Could not deliver interrupt", extra={"session_id": session_id, "error": str(exc)}
                )

        # The turn may have finished while the interrupt was draining.
        if session.active_process is not process or session_id in self._kill_timers:
            return
        loop = asyncio.get_running_loop()
        self._kill_timers[session_id] = loop.call_later(
            self._grace_period, self._force_kill, session, process
        )

    def _force_kill(self, session: Session, process: asyncio.subprocess.Process) -> None:
        self._kill_timers.pop(session.id, None)
        if session.active_process is process:
            self._logger.warning(
                "Qodo process ignored interrupt, killing",
                extra={"session_id": session.id, "pid": process.pid},
            )
            self._kill(process, session.id)

    def _cancel_kill_timer(self, session_id: str) -> None:
        timer = self._kill_timers.pop(session_id, None)
        if timer is not None:
            timer.cancel()

    def _kill(self, process: asyncio.subprocess.Process, session_id: str) -> None:
        """Kill the CLI together with every helper it started."""
        # The CLI leads its own session, so its pid is also its process group id.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            self._logger.debug("Process group already gone", extra={"session_id": session_id})
        except PermissionError as exc:
            self._logger.warning(
                "Could not kill process group", extra={"session_id": session_id, "error": str(exc)}
            )
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()

    async def cleanup(self) -> None:
        """Kill every running process and forget all sessions."""
        self._logger.debug("Cleaning up all sessions", extra={"sessions": len(self._registry)})
        for timer in self._kill_timers.values():
            timer.cancel()
        self._kill_timers.clear()

        processes = []
        for session in self._registry.active():
            process = session.active_process
            self._kill(process, session.id)
            processes.append(process)

        for process in processes:
            try:
                await asyncio.wait_for(process.wait(), timeout=CLEANUP_WAIT)
            except asyncio.TimeoutError:
                self._logger.warning("Qodo process did not exit after kill", extra={"pid": process.pid})

        self._registry.clear()
