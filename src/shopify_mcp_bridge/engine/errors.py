"""Typed errors raised by the tool-server bridge.

Every caller-facing failure is a ``BridgeError`` subclass. ``status_code``
is the HTTP status an outer façade should answer with.
"""

from __future__ import annotations

from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge failures."""

    kind = "internal"
    status_code = 500
    rpc_code = -32603

    def __init__(self, message: str, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        """JSON-RPC style error object."""
        d: dict[str, Any] = {"code": self.rpc_code, "message": self.message}
        if self.data:
            d["data"] = self.data
        return d


class TransportParseError(BridgeError):
    """A single output line was not a JSON object. Never fatal."""

    kind = "parse_error"
    rpc_code = -32700

    def __init__(self, message: str, line: str = ""):
        super().__init__(message, {"line": line[:200]} if line else None)
        self.line = line


class ProtocolError(BridgeError):
    """A well-formed JSON line that is not a valid JSON-RPC 2.0 message."""

    kind = "protocol_error"
    rpc_code = -32600


class ProcessSpawnError(BridgeError):
    kind = "spawn_failed"


class ProcessTerminatedError(BridgeError):
    kind = "process_terminated"

    def __init__(self, message: str = "tool server process terminated", returncode: Optional[int] = None):
        super().__init__(message, {"returncode": returncode} if returncode is not None else None)
        self.returncode = returncode

    def clone(self) -> ProcessTerminatedError:
        """Same condition, fresh traceback."""
        return type(self)(self.message, self.returncode)


class NotReadyError(BridgeError):
    kind = "not_ready"
    status_code = 503


class UnknownToolError(BridgeError):
    kind = "unknown_tool"
    status_code = 404
    rpc_code = -32602

    def __init__(self, tool: str):
        super().__init__(f"Unknown tool: {tool}", {"tool": tool})
        self.tool = tool


class RequestTimeoutError(BridgeError):
    kind = "timeout"
    status_code = 504

    def __init__(self, method: str, request_id: int, timeout: float):
        super().__init__(
            f"{method} (id={request_id}) timed out after {timeout:g}s",
            {"method": method, "id": request_id},
        )
        self.method = method
        self.request_id = request_id
        self.timeout = timeout


class RequestCancelledError(BridgeError):
    kind = "cancelled"

    def __init__(self, method: str, request_id: int):
        super().__init__(f"{method} (id={request_id}) was cancelled", {"method": method, "id": request_id})
        self.method = method
        self.request_id = request_id


class JsonRpcError(BridgeError):
    """The tool server answered with a JSON-RPC error object."""

    kind = "rpc_error"

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.rpc_code = code
        self.remote_data = data

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.remote_data is not None:
            d["data"] = self.remote_data
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ToolExecutionError(JsonRpcError):
    """A tools/call request was answered with an error response."""

    kind = "tool_error"

    def __init__(self, tool: str, code: int, message: str, data: Any = None):
        super().__init__(code, message, data)
        self.tool = tool

    def __str__(self) -> str:
        return f"{self.tool}: {self.code}: {self.message}"
