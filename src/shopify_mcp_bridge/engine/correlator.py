"""Request/response correlation over a shared, unordered message stream.

Every outgoing request gets the next integer id and one PendingRequest.
An entry leaves the table exactly once: by a matching response, by its
timer, by caller cancellation or by process termination. Each of those
paths pops the entry first and acts only if the pop found it, so a late
response after a timeout (or the reverse) is a no-op.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generator, Optional

from loguru import logger

from shopify_mcp_bridge.engine.errors import (
    JsonRpcError,
    ProcessTerminatedError,
    RequestCancelledError,
    RequestTimeoutError,
)
from shopify_mcp_bridge.server.protocol import Message, Request

DEFAULT_TIMEOUT = 30.0

SendLine = Callable[[str], Awaitable[None]]


@dataclass
class PendingRequest:
    id: int
    method: str
    issued_at: float
    timeout: float
    timeout_handle: asyncio.TimerHandle
    future: asyncio.Future


class Completion:
    """Awaitable handle for one issued request."""

    def __init__(self, correlator: RequestCorrelator, request_id: int, method: str, future: asyncio.Future):
        self._correlator = correlator
        self._future = future
        self.id = request_id
        self.method = method

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        return self._correlator.cancel(self.id)

    async def wait(self) -> Any:
        try:
            return await self._future
        except asyncio.CancelledError:
            # The awaiting task was cancelled; drop our entry with it.
            self._correlator.cancel(self.id)
            raise

    def __await__(self) -> Generator[Any, None, Any]:
        return self.wait().__await__()


class RequestCorrelator:
    def __init__(self, send: SendLine, default_timeout: float = DEFAULT_TIMEOUT):
        self._send = send
        self.default_timeout = default_timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._terminal_error: Optional[ProcessTerminatedError] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._terminal_error is not None

    def pending_ids(self) -> list[int]:
        return sorted(self._pending)

    async def issue(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Completion:
        """Register, arm the timer, and write the request line."""
        if self._terminal_error is not None:
            raise self._terminal_error.clone()

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        timeout = self.default_timeout if timeout is None else timeout
        future = loop.create_future()
        handle = loop.call_later(timeout, self.on_timeout, request_id)
        self._pending[request_id] = PendingRequest(
            id=request_id,
            method=method,
            issued_at=loop.time(),
            timeout=timeout,
            timeout_handle=handle,
            future=future,
        )

        line = Request(id=request_id, method=method, params=params or {}).to_json_line()
        try:
            await self._send(line)
        except BaseException:
            entry = self._pending.pop(request_id, None)
            if entry is not None:
                entry.timeout_handle.cancel()
            raise

        logger.debug("-> {} (id={})", method, request_id)
        return Completion(self, request_id, method, future)

    async def request(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        completion = await self.issue(method, params, timeout)
        return await completion

    def on_message(self, msg: Message) -> None:
        if msg.is_notification:
            if msg.error:
                logger.warning("Tool server reported an error without id: {}", msg.error_message)
            else:
                logger.debug("Ignoring notification {}", msg.method)
            return
        if not msg.is_response:
            logger.debug("Ignoring server request {} (id={})", msg.method, msg.id)
            return

        entry = self._pending.pop(msg.id, None) if isinstance(msg.id, int) else None
        if entry is None:
            logger.debug("No matching pending request for id {}, dropping response", msg.id)
            return

        entry.timeout_handle.cancel()
        if entry.future.done():
            return
        if msg.error is not None:
            entry.future.set_exception(
                JsonRpcError(msg.error_code, msg.error_message, msg.error.get("data"))
            )
        else:
            entry.future.set_result(msg.result)
        logger.debug("<- {} (id={})", entry.method, entry.id)

    def on_timeout(self, request_id: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        elapsed = asyncio.get_running_loop().time() - entry.issued_at
        logger.warning("{} (id={}) timed out after {:.1f}s", entry.method, request_id, elapsed)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeoutError(entry.method, request_id, entry.timeout))

    def cancel(self, request_id: int) -> bool:
        """Drop a pending request locally. Nothing is sent to the server."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timeout_handle.cancel()
        if not entry.future.done():
            entry.future.set_exception(RequestCancelledError(entry.method, request_id))
        return True

    def on_process_terminated(self, error: Optional[ProcessTerminatedError] = None) -> None:
        if self._terminal_error is None:
            self._terminal_error = error or ProcessTerminatedError()
        error = self._terminal_error

        pending, self._pending = self._pending, {}
        if pending:
            logger.warning("Failing {} pending request(s): {}", len(pending), error.message)
        for entry in pending.values():
            entry.timeout_handle.cancel()
            if not entry.future.done():
                entry.future.set_exception(error.clone())
