"""Newline-delimited JSON framing for the tool server's stdout."""

from __future__ import annotations

import json
from typing import Callable, Optional, Union

from loguru import logger

from shopify_mcp_bridge.engine.errors import TransportParseError

DELIMITER = b"\n"


class FrameDecoder:
    """Reassembles arbitrarily chunked bytes into decoded JSON objects.

    The buffer always holds exactly the bytes after the last delimiter seen.
    Splitting happens on bytes, so a UTF-8 sequence cut across two chunks is
    decoded only once the whole line is present.
    """

    def __init__(self, on_error: Optional[Callable[[TransportParseError], None]] = None):
        self._buffer = b""
        self._on_error = on_error
        self.errors = 0

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete line."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer = b""

    def feed(self, chunk: Union[bytes, str]) -> list[dict]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(DELIMITER)

        messages: list[dict] = []
        for raw in lines:
            if not raw.strip():
                continue
            decoded = self._decode(raw)
            if decoded is not None:
                messages.append(decoded)
        return messages

    def _decode(self, raw: bytes) -> Optional[dict]:
        text = raw.decode("utf-8", errors="replace").strip()
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as e:
            self._reject(TransportParseError(f"Invalid JSON: {e}", line=text))
            return None
        if not isinstance(obj, dict):
            self._reject(TransportParseError(f"Expected a JSON object, got {type(obj).__name__}", line=text))
            return None
        return obj

    def _reject(self, err: TransportParseError) -> None:
        self.errors += 1
        logger.warning("Discarding tool server output line: {} ({})", err.line[:200], err.message)
        if self._on_error is not None:
            self._on_error(err)
