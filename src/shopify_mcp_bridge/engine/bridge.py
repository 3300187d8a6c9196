"""Bridge state machine: handshake, tool listing and tool calls.

Uninitialized → Initializing → Ready → Terminated. Terminated is reachable
from every state when the tool server dies and nothing leaves it; a new
bridge is needed to recover.
"""

from __future__ import annotations

import asyncio
import copy
from enum import Enum
from typing import Any, Optional

from loguru import logger

from shopify_mcp_bridge.config.settings import Settings
from shopify_mcp_bridge.engine.correlator import RequestCorrelator
from shopify_mcp_bridge.engine.errors import (
    BridgeError,
    JsonRpcError,
    NotReadyError,
    ProcessSpawnError,
    ProcessTerminatedError,
    ProtocolError,
    ToolExecutionError,
    TransportParseError,
    UnknownToolError,
)
from shopify_mcp_bridge.engine.framing import FrameDecoder
from shopify_mcp_bridge.engine.process import ProcessSupervisor
from shopify_mcp_bridge.server.protocol import Notification, ToolDescriptor, parse_message


class BridgeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    TERMINATED = "terminated"


class RPCBridge:
    """Exposes list_tools/call_tool over one tool server subprocess.

    Calls made before the handshake completes fail with NotReadyError;
    they are never queued.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.settings = settings or Settings.load()
        self.supervisor = supervisor or ProcessSupervisor()
        self.correlator = RequestCorrelator(
            send=self.supervisor.write,
            default_timeout=self.settings.request_timeout,
        )
        self.state = BridgeState.UNINITIALIZED
        self.capabilities: dict = {}
        self.server_info: Optional[dict] = None

        self._decoder = FrameDecoder(on_error=self._on_parse_error)
        self._tools: Optional[list[ToolDescriptor]] = None
        self._terminal_error: Optional[ProcessTerminatedError] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._started = False

    async def __aenter__(self) -> RPCBridge:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Spawn the tool server, start reading its output, and handshake."""
        if self._started:
            raise NotReadyError("Bridge already started")
        self._started = True

        try:
            command, args = self.settings.build_command()
            await self.supervisor.start(command, args, self.settings.server.env or None)
        except ProcessSpawnError as e:
            logger.error("Could not start tool server: {}", e.message)
            self._enter_terminated(ProcessTerminatedError(e.message))
            raise

        self.supervisor.on_exit(self._on_process_exit)
        self._pump_task = asyncio.create_task(self._pump())

        await self.initialize()
        if self.settings.prefetch_tools:
            try:
                await self.list_tools()
            except BridgeError as e:
                logger.warning("Could not load tool list after initialization: {}", e)

    async def initialize(self) -> dict:
        if self.state == BridgeState.TERMINATED:
            raise self._terminal()
        if self.state != BridgeState.UNINITIALIZED:
            raise NotReadyError(f"Cannot initialize from state {self.state.value}")

        self.state = BridgeState.INITIALIZING
        self._tools = None
        params = {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": {},
            "clientInfo": self.settings.client.model_dump(),
        }
        try:
            result = await self.correlator.request("initialize", params)
            await self.supervisor.write(Notification("notifications/initialized").to_json_line())
        except BridgeError as e:
            logger.error("Tool server initialization failed: {}", e)
            await self._abort_handshake(f"Initialization failed: {e}")
            raise
        except asyncio.CancelledError:
            logger.warning("Tool server initialization cancelled")
            await self._abort_handshake("Initialization cancelled")
            raise

        if self.state != BridgeState.INITIALIZING:
            raise self._terminal()

        result = result if isinstance(result, dict) else {}
        self.capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo")
        self.state = BridgeState.READY
        logger.info("Tool server initialized: {}", self.server_info or "unknown server")
        return result

    async def list_tools(self, refresh: bool = False) -> list[ToolDescriptor]:
        self._require_ready()
        if self._tools is not None and not refresh:
            return copy.deepcopy(self._tools)

        tools: list[ToolDescriptor] = []
        cursor = None
        seen_cursors: set[str] = set()
        while True:
            result = await self.correlator.request("tools/list", {"cursor": cursor} if cursor else {})
            if isinstance(result, list):
                raw_tools, cursor = result, None
            elif isinstance(result, dict) and isinstance(result.get("tools"), list):
                raw_tools, cursor = result["tools"], result.get("nextCursor")
            else:
                raise ProtocolError("tools/list result carries no tools array")
            tools.extend(
                ToolDescriptor.from_dict(t) for t in raw_tools
                if isinstance(t, dict) and t.get("name")
            )
            if not cursor:
                break
            if cursor in seen_cursors:
                logger.warning("tools/list repeated cursor {!r}, stopping pagination", cursor)
                break
            seen_cursors.add(cursor)

        self._tools = tools
        logger.info("Loaded {} tools", len(tools))
        return copy.deepcopy(tools)

    async def call_tool(self, name: str, arguments: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        self._require_ready()
        if self._tools is not None and name not in {t.name for t in self._tools}:
            raise UnknownToolError(name)

        params = {"name": name, "arguments": arguments or {}}
        try:
            return await self.correlator.request("tools/call", params, timeout=timeout)
        except JsonRpcError as e:
            raise ToolExecutionError(name, e.code, e.message, e.remote_data) from e

    async def shutdown(self) -> None:
        if self.state != BridgeState.TERMINATED:
            logger.info("Shutting down bridge")
        self._enter_terminated(ProcessTerminatedError("Bridge shut down"))
        await self.supervisor.terminate(self.settings.shutdown_grace)
        if self._pump_task is not None and not self._pump_task.done():
            try:
                await asyncio.wait_for(self._pump_task, timeout=self.settings.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning("Tool server output still open after shutdown, reader cancelled")

    def health(self) -> dict:
        return {
            "state": self.state.value,
            "processState": self.supervisor.state.value,
            "pid": self.supervisor.pid,
            "ready": self.state == BridgeState.READY,
            "toolsLoaded": self._tools is not None,
            "toolCount": len(self._tools or []),
            "pending": self.correlator.pending_count,
            "serverInfo": self.server_info,
        }

    def _require_ready(self) -> None:
        if self.state == BridgeState.TERMINATED:
            raise self._terminal()
        if self.state != BridgeState.READY:
            raise NotReadyError(f"Bridge is {self.state.value}, not ready")

    def _terminal(self) -> ProcessTerminatedError:
        if self._terminal_error is None:
            return ProcessTerminatedError()
        return self._terminal_error.clone()

    def _enter_terminated(self, error: ProcessTerminatedError) -> None:
        if self._terminal_error is None:
            self._terminal_error = error
        self.state = BridgeState.TERMINATED
        self.correlator.on_process_terminated(self._terminal_error)

    async def _abort_handshake(self, reason: str) -> None:
        self._enter_terminated(ProcessTerminatedError(reason))
        await self.supervisor.terminate(self.settings.shutdown_grace)

    def _on_process_exit(self, returncode: Optional[int]) -> None:
        self._enter_terminated(
            ProcessTerminatedError(f"Tool server exited with code {returncode}", returncode)
        )

    def _on_parse_error(self, err: TransportParseError) -> None:
        self.supervisor.mark_degraded(err.message)

    async def _pump(self) -> None:
        """Feed stdout chunks through the decoder into the correlator."""
        try:
            async for chunk in self.supervisor.chunks():
                for obj in self._decoder.feed(chunk):
                    try:
                        msg = parse_message(obj)
                    except ProtocolError as e:
                        logger.warning("Discarding invalid JSON-RPC message: {}", e.message)
                        self.supervisor.mark_degraded(e.message)
                        continue
                    self.correlator.on_message(msg)
        except Exception as e:
            logger.exception("Tool server output reader failed")
            self._enter_terminated(ProcessTerminatedError(f"Output reader failed: {e}"))
            return

        if self._decoder.pending:
            logger.warning("Discarding {} bytes of incomplete output at EOF", self._decoder.pending)
            self._decoder.reset()
        # chunks() reports the exit itself; this covers supervisors that end without one.
        self._enter_terminated(self._terminal_error or ProcessTerminatedError("Tool server output closed"))
