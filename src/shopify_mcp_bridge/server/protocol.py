"""JSON-RPC 2.0 messages exchanged with the tool server subprocess."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from shopify_mcp_bridge.engine.errors import ProtocolError

JSONRPC_VERSION = "2.0"

RequestId = Union[int, str]


@dataclass
class Request:
    """Outgoing request; expects a response carrying the same id."""
    id: int
    method: str
    params: dict = field(default_factory=dict)

    def to_json_line(self) -> str:
        return json.dumps({
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        })


@dataclass
class Notification:
    """Outgoing message with no id; the server sends nothing back."""
    method: str
    params: dict = field(default_factory=dict)

    def to_json_line(self) -> str:
        d: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params:
            d["params"] = self.params
        return json.dumps(d)


@dataclass
class Message:
    """Decoded inbound message: a response, a server request or a notification."""
    version: str
    id: Optional[RequestId] = None
    method: Optional[str] = None
    params: Optional[Any] = None
    result: Any = None
    error: Optional[dict] = None

    @property
    def is_response(self) -> bool:
        return self.method is None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    @property
    def error_code(self) -> int:
        return int(self.error["code"]) if self.error else 0

    @property
    def error_message(self) -> str:
        return str(self.error.get("message", "")) if self.error else ""


def parse_message(data: dict) -> Message:
    """Validate a decoded JSON object as a JSON-RPC 2.0 message.

    Raises ProtocolError when the envelope is malformed.
    """
    version = data.get("jsonrpc")
    if version != JSONRPC_VERSION:
        raise ProtocolError(f"Unsupported JSON-RPC version: {version!r}")

    msg_id = data.get("id")
    if msg_id is not None and (isinstance(msg_id, bool) or not isinstance(msg_id, (int, str))):
        raise ProtocolError(f"Invalid id: {msg_id!r}")

    if "method" in data:
        method = data["method"]
        if not isinstance(method, str) or not method:
            raise ProtocolError(f"Invalid method: {method!r}")
        return Message(version=version, id=msg_id, method=method, params=data.get("params"))

    has_result = "result" in data
    has_error = "error" in data
    if has_result == has_error:
        raise ProtocolError("Response must carry exactly one of result or error")
    if msg_id is None and has_result:
        raise ProtocolError("Response without id")

    if has_error:
        error = data["error"]
        if (
            not isinstance(error, dict)
            or isinstance(error.get("code"), bool)
            or not isinstance(error.get("code"), int)
            or not isinstance(error.get("message"), str)
        ):
            raise ProtocolError(f"Malformed error object: {error!r}")
        return Message(version=version, id=msg_id, error=error)

    return Message(version=version, id=msg_id, result=data["result"])


@dataclass(frozen=True)
class ToolDescriptor:
    """One entry of a tools/list result."""
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> ToolDescriptor:
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=copy.deepcopy(data.get("inputSchema") or {}),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
