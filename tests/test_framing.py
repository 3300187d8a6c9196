"""Tests for newline-delimited JSON frame reassembly."""

from __future__ import annotations

import json

import pytest

from shopify_mcp_bridge.engine.framing import FrameDecoder

LINE = json.dumps({"jsonrpc": "2.0", "id": 7, "result": {"text": "café ☕ ok"}}) + "\n"
LINE_BYTES = LINE.encode("utf-8")


class TestFeed:
    def test_single_complete_line(self):
        decoder = FrameDecoder()
        assert decoder.feed(LINE_BYTES) == [json.loads(LINE)]
        assert decoder.pending == 0

    def test_partial_line_is_buffered(self):
        decoder = FrameDecoder()
        assert decoder.feed(LINE_BYTES[:10]) == []
        assert decoder.pending == 10
        assert decoder.feed(LINE_BYTES[10:]) == [json.loads(LINE)]
        assert decoder.pending == 0

    def test_several_lines_in_one_chunk(self):
        decoder = FrameDecoder()
        chunk = b'{"a": 1}\n{"b": 2}\n{"c"'
        assert decoder.feed(chunk) == [{"a": 1}, {"b": 2}]
        assert decoder.feed(b": 3}\n") == [{"c": 3}]

    def test_blank_lines_are_skipped(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'\n   \n{"a": 1}\n\r\n') == [{"a": 1}]
        assert decoder.errors == 0

    def test_accepts_text_chunks(self):
        decoder = FrameDecoder()
        assert decoder.feed(LINE) == [json.loads(LINE)]

    def test_crlf_terminated_line(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'{"a": 1}\r\n') == [{"a": 1}]

    def test_reset_drops_buffer(self):
        decoder = FrameDecoder()
        decoder.feed(b'{"half":')
        decoder.reset()
        assert decoder.pending == 0
        assert decoder.feed(b'{"a": 1}\n') == [{"a": 1}]


class TestReassemblyIdempotence:
    @pytest.mark.parametrize("offset", range(1, len(LINE_BYTES)))
    def test_split_at_every_offset(self, offset):
        whole = FrameDecoder().feed(LINE_BYTES)

        decoder = FrameDecoder()
        parts = decoder.feed(LINE_BYTES[:offset]) + decoder.feed(LINE_BYTES[offset:])
        assert parts == whole

    def test_byte_at_a_time(self):
        decoder = FrameDecoder()
        out = []
        for i in range(len(LINE_BYTES)):
            out += decoder.feed(LINE_BYTES[i:i + 1])
        assert out == [json.loads(LINE)]
        assert decoder.pending == 0


class TestMalformedLines:
    def test_invalid_line_between_valid_lines(self, log_records):
        errors = []
        decoder = FrameDecoder(on_error=errors.append)
        stream = b'{"id": 1}\n{this is not json\n{"id": 2}\n'

        assert decoder.feed(stream[:15]) + decoder.feed(stream[15:]) == [{"id": 1}, {"id": 2}]
        assert decoder.errors == 1
        assert len(errors) == 1
        assert "{this is not json" in errors[0].line
        assert any(r["level"].name == "WARNING" and "Discarding" in r["message"] for r in log_records)

    def test_non_object_json_is_rejected(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'[1, 2, 3]\n"str"\n{"ok": true}\n') == [{"ok": True}]
        assert decoder.errors == 2

    def test_invalid_utf8_does_not_raise(self):
        decoder = FrameDecoder()
        assert decoder.feed(b'\xff\xfe garbage\n{"a": 1}\n') == [{"a": 1}]
        assert decoder.errors == 1
