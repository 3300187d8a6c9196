"""Tool server subprocess lifecycle: spawn, write, read, exit, terminate."""

from __future__ import annotations

import asyncio
import os
import signal
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from loguru import logger

from shopify_mcp_bridge.engine.errors import ProcessSpawnError, ProcessTerminatedError

CHUNK_SIZE = 64 * 1024


class ProcessState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"  # a line failed to parse; process still serving
    TERMINATED = "terminated"


ExitCallback = Callable[[Optional[int]], None]


class ProcessSupervisor:
    """Owns one child process speaking line-delimited JSON over stdio.

    There is no restart: once the child exits the supervisor stays
    TERMINATED and a new instance is needed.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size
        self.state = ProcessState.STARTING
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._write_lock = asyncio.Lock()
        self._exit_callbacks: list[ExitCallback] = []
        self._exit_notified = False
        self._returncode: Optional[int] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    async def start(self, command: str, args: Optional[list[str]] = None, env: Optional[dict[str, str]] = None) -> None:
        if self._proc is not None or self.state == ProcessState.TERMINATED:
            raise ProcessSpawnError("Supervisor already started")

        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        logger.info("Starting tool server: {}", command)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                command, *(args or []),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                start_new_session=True,
            )
        except OSError as e:
            self.state = ProcessState.TERMINATED
            raise ProcessSpawnError(f"Failed to start {command}: {e}") from e

        self.state = ProcessState.READY
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("Tool server started (pid={})", self._proc.pid)

    async def write(self, line: str) -> None:
        """Append one complete line to the child's stdin."""
        if "\n" in line:
            raise ValueError("Payload must not contain a newline")
        if self._proc is None or self._proc.stdin is None or self.state == ProcessState.TERMINATED:
            raise ProcessTerminatedError("Tool server is not running", self._returncode)

        data = (line + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                self._proc.stdin.write(data)
                await self._proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ProcessTerminatedError(f"Tool server stdin closed: {e}", self._returncode) from e

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield raw stdout chunks until EOF, then announce the exit."""
        if self._proc is None or self._proc.stdout is None:
            return
        stdout = self._proc.stdout
        while True:
            chunk = await stdout.read(self.chunk_size)
            if not chunk:
                break
            yield chunk
        returncode = await self._proc.wait()
        self._notify_exit(returncode)

    def on_exit(self, callback: ExitCallback) -> None:
        if self._exit_notified:
            callback(self._returncode)
            return
        self._exit_callbacks.append(callback)

    def mark_degraded(self, reason: str = "") -> None:
        if self.state == ProcessState.READY:
            logger.warning("Tool server transport degraded: {}", reason)
            self.state = ProcessState.DEGRADED

    async def wait(self) -> Optional[int]:
        if self._proc is None:
            return self._returncode
        return await self._proc.wait()

    async def terminate(self, grace: float = 5.0) -> None:
        proc = self._proc
        if proc is None:
            self.state = ProcessState.TERMINATED
            return
        if proc.returncode is None:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            self._signal_group(signal.SIGTERM)
            if not await self._wait_exit(grace):
                logger.warning("Tool server ignored SIGTERM for {}s, killing", grace)
                self._signal_group(signal.SIGKILL)
                await self._wait_exit(grace)
        # Leftover children in the session may still hold the pipes open.
        self._signal_group(signal.SIGKILL)
        if self._stderr_task is not None and not self._stderr_task.done():
            try:
                await asyncio.wait_for(self._stderr_task, timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("Tool server stderr still open after {}s, no longer reading it", grace)
        self._notify_exit(proc.returncode)

    async def _wait_exit(self, timeout: float) -> bool:
        assert self._proc is not None
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _signal_group(self, sig: int) -> None:
        """Signal the child's whole process group (it leads its own session)."""
        assert self._proc is not None
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass

    def _notify_exit(self, returncode: Optional[int]) -> None:
        if self._exit_notified:
            return
        self._exit_notified = True
        self._returncode = returncode
        self.state = ProcessState.TERMINATED
        logger.info("Tool server exited with code {}", returncode)
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            callback(returncode)

    async def _drain_stderr(self) -> None:
        assert self._proc is not None
        stream = self._proc.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("[tool-server] stderr line exceeded buffer limit, skipped")
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("[tool-server] {}", text)
