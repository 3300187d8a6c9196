"""Shared fixtures for bridge tests."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Callable, Optional

import pytest
from loguru import logger

from shopify_mcp_bridge.config.settings import ServerConfig, Settings
from shopify_mcp_bridge.engine.errors import ProcessTerminatedError
from shopify_mcp_bridge.engine.process import ProcessState

STUB_SERVER = Path(__file__).parent / "fixtures" / "stub_tool_server.py"

INIT_RESULT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"tools": {}},
    "serverInfo": {"name": "fake-shopify", "version": "0.0.1"},
}


class FakeSupervisor:
    """In-memory stand-in for ProcessSupervisor.

    Lines written by the bridge land in ``written``; bytes pushed with
    ``feed`` come out of ``chunks()``. ``responder`` may answer requests
    automatically.
    """

    def __init__(self, responder: Optional[Callable[[dict], list]] = None):
        self.state = ProcessState.STARTING
        self.pid = 4242
        self.returncode: Optional[int] = None
        self.started_with = None
        self.written: list[str] = []
        self.responder = responder
        self._queue: asyncio.Queue = asyncio.Queue()
        self._callbacks = []
        self._exited = False

    async def start(self, command, args=None, env=None):
        self.started_with = (command, args, env)
        self.state = ProcessState.READY

    async def write(self, line: str) -> None:
        if self.state == ProcessState.TERMINATED:
            raise ProcessTerminatedError("Tool server is not running", self.returncode)
        self.written.append(line)
        if self.responder is not None:
            for reply in self.responder(json.loads(line)) or []:
                self.feed(json.dumps(reply) + "\n")

    def feed(self, data) -> None:
        self._queue.put_nowait(data.encode("utf-8") if isinstance(data, str) else data)

    def kill(self, returncode: int = 1) -> None:
        self.returncode = returncode
        self._queue.put_nowait(None)

    async def chunks(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk
        self._notify_exit()

    def on_exit(self, callback) -> None:
        if self._exited:
            callback(self.returncode)
        else:
            self._callbacks.append(callback)

    def mark_degraded(self, reason: str = "") -> None:
        if self.state == ProcessState.READY:
            self.state = ProcessState.DEGRADED

    async def terminate(self, grace: float = 5.0) -> None:
        if not self._exited:
            if self.returncode is None:
                self.returncode = -15
            self._queue.put_nowait(None)
            self._notify_exit()

    def requests(self) -> list[dict]:
        return [json.loads(line) for line in self.written]

    def _notify_exit(self) -> None:
        if self._exited:
            return
        self._exited = True
        self.state = ProcessState.TERMINATED
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self.returncode)


def answer_initialize(request: dict) -> list:
    if request.get("method") == "initialize":
        return [{"jsonrpc": "2.0", "id": request["id"], "result": INIT_RESULT}]
    return []


def response(request_id, result=None, error=None) -> str:
    d = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        d["error"] = error
    else:
        d["result"] = result
    return json.dumps(d) + "\n"


async def settle(rounds: int = 10) -> None:
    """Let the output pump and waiting tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        server=ServerConfig(command="fake-tool-server", args=[], pass_credentials=False),
        request_timeout=0.5,
        shutdown_grace=1.0,
        prefetch_tools=False,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def stub_settings(tmp_path):
    return Settings(
        server=ServerConfig(command=sys.executable, args=[str(STUB_SERVER)], pass_credentials=False),
        request_timeout=5.0,
        shutdown_grace=2.0,
        prefetch_tools=True,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor(responder=answer_initialize)


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: list[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG", format="{message}")
    yield records
    logger.remove(handler_id)
