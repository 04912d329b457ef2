"""Tests for client/sse.py: incremental SSE framing."""

import json

from client.sse import SSEDecoder, extract_text_delta


def _delta(text):
    return {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}


class TestSSEDecoder:
    def test_single_complete_frame(self):
        decoder = SSEDecoder()
        events = decoder.feed(f"data: {json.dumps(_delta('Hi'))}\n\n")
        assert events == [_delta("Hi")]

    def test_frame_split_across_chunks(self):
        decoder = SSEDecoder()
        line = f"data: {json.dumps(_delta('Hello'))}\n\n"
        assert decoder.feed(line[:10]) == []
        assert decoder.feed(line[10:25]) == []
        assert decoder.feed(line[25:]) == [_delta("Hello")]

    def test_multiple_frames_in_one_chunk_keep_order(self):
        decoder = SSEDecoder()
        chunk = "".join(f"data: {json.dumps(_delta(t))}\n\n" for t in ("a", "b", "c"))
        assert [e["delta"]["text"] for e in decoder.feed(chunk)] == ["a", "b", "c"]

    def test_data_prefix_without_space(self):
        decoder = SSEDecoder()
        assert decoder.feed('data:{"type": "ping"}\n') == [{"type": "ping"}]

    def test_event_and_comment_lines_ignored(self):
        decoder = SSEDecoder()
        events = decoder.feed(': keep-alive\nevent: content_block_delta\nid: 7\ndata: {"type": "ping"}\n')
        assert events == [{"type": "ping"}]
        assert decoder.skipped_frames == 0

    def test_malformed_json_is_skipped_and_counted(self):
        decoder = SSEDecoder()
        events = decoder.feed('data: {not json\n\ndata: {"type": "ping"}\n\ndata: [1, 2]\n\n')
        assert events == [{"type": "ping"}]
        assert decoder.skipped_frames == 2

    def test_done_sentinel_stops_decoding(self):
        decoder = SSEDecoder()
        events = decoder.feed('data: {"type": "a"}\n\ndata: [DONE]\n\ndata: {"type": "b"}\n\n')
        assert events == [{"type": "a"}]
        assert decoder.done is True
        assert decoder.feed('data: {"type": "c"}\n') == []

    def test_flush_decodes_trailing_line_without_newline(self):
        decoder = SSEDecoder()
        assert decoder.feed('data: {"type": "tail"}') == []
        assert decoder.flush() == [{"type": "tail"}]
        assert decoder.flush() == []


class TestExtractTextDelta:
    def test_content_block_delta(self):
        assert extract_text_delta(_delta("x")) == "x"

    def test_other_event_types(self):
        assert extract_text_delta({"type": "message_start"}) is None
        assert extract_text_delta({"type": "content_block_delta", "delta": {"type": "input_json_delta"}}) is None

    def test_empty_text_is_none(self):
        assert extract_text_delta(_delta("")) is None
